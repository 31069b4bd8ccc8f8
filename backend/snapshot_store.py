"""
Snapshot persistence for engine state.

The engine serializes its components into one dict; a SnapshotStore only
moves that dict to and from durable storage.
"""

import json
import logging
import os
import tempfile
import time
from abc import ABC, abstractmethod
from typing import Optional

from errors import PersistenceFailedError

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


class SnapshotStore(ABC):
    """Durable home for engine snapshots"""

    @abstractmethod
    def save(self, state: dict) -> None:
        """Persist a snapshot. Raises PersistenceFailedError."""
        pass

    @abstractmethod
    def load(self) -> Optional[dict]:
        """Return the latest snapshot, or None if there is none. Raises PersistenceFailedError."""
        pass


class JSONSnapshotStore(SnapshotStore):
    """
    Snapshot in a single JSON file.

    Writes go to a temp file in the same directory and are moved into place
    with os.replace, so a crash mid-write leaves the previous snapshot intact.
    """

    def __init__(self, path: str):
        self.path = path
        self.last_saved: Optional[float] = None

    def _get_state_path(self) -> str:
        return self.path

    def save(self, state: dict) -> None:
        path = self._get_state_path()
        directory = os.path.dirname(path) or "."
        payload = {"version": SNAPSHOT_VERSION, "saved_at": time.time(), "state": state}

        tmp_path = None
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".snapshot-", suffix=".json", dir=directory)
            with os.fdopen(fd, "w") as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
            tmp_path = None
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceFailedError(f"Failed to save snapshot to {path}: {e}") from e
        finally:
            if tmp_path and os.path.exists(tmp_path):
                os.remove(tmp_path)

        self.last_saved = payload["saved_at"]
        logger.debug(f"Snapshot saved to {path}")

    def load(self) -> Optional[dict]:
        path = self._get_state_path()
        if not os.path.exists(path):
            return None

        try:
            with open(path, "r") as f:
                payload = json.load(f)
        except (OSError, ValueError) as e:
            raise PersistenceFailedError(f"Failed to load snapshot from {path}: {e}") from e

        if not isinstance(payload, dict) or "state" not in payload:
            raise PersistenceFailedError(f"Snapshot {path} has no state section")

        version = payload.get("version")
        if version != SNAPSHOT_VERSION:
            logger.warning(f"Snapshot version {version} differs from {SNAPSHOT_VERSION}, loading anyway")
        return payload["state"]
