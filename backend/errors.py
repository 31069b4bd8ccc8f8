"""
Error taxonomy for the dip trading engine.

Only ConfigValidationError is surfaced to callers that create strategies,
triggers or tracked assets. Everything else is raised by a component and
caught and logged one level up (monitor tick, refresh loop, snapshot timer).
"""

from typing import Optional


class EngineError(Exception):
    """Base class for all engine errors."""


class UnknownAssetError(EngineError):
    """Operation referenced an asset that is not tracked."""

    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Asset not tracked: {address}")


class InsufficientDataError(EngineError):
    """Not enough price history to evaluate a window."""

    def __init__(self, address: str, window: str, samples: int = 0):
        self.address = address
        self.window = window
        self.samples = samples
        super().__init__(f"Insufficient data for {address} over {window} ({samples} samples)")


class QuoteUnavailableError(EngineError):
    """No quote provider returned a usable price."""

    def __init__(self, address: str, reason: str = ""):
        self.address = address
        self.reason = reason
        msg = f"Quote unavailable for {address}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ExecutionFailedError(EngineError):
    """Swap execution failed or timed out."""

    def __init__(self, message: str, tx_ref: Optional[str] = None):
        self.tx_ref = tx_ref
        super().__init__(message)


class PersistenceFailedError(EngineError):
    """Snapshot could not be written or read."""


class ConfigValidationError(EngineError, ValueError):
    """Invalid configuration for a strategy, trigger or asset."""
