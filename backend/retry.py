"""
Retry helpers with exponential backoff for quote and swap HTTP calls,
plus a small health tracker for named upstream endpoints.
"""

import asyncio
import logging
import random
import time
from typing import Callable, Optional

import aiohttp

logger = logging.getLogger(__name__)


class RetryConfig:
    """Backoff policy for one class of upstream call."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[tuple] = None,
        retryable_status_codes: Optional[set] = None,
    ):
        """
        Args:
            max_retries: Retries after the first attempt (0 = single attempt)
            base_delay: Delay before the first retry, in seconds
            max_delay: Upper bound on any single delay
            exponential_base: Growth factor between retries
            jitter: Randomize delays by up to 25%
            retryable_exceptions: Exception types worth another attempt
            retryable_status_codes: HTTP statuses worth another attempt
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or (
            aiohttp.ClientError,
            asyncio.TimeoutError,
            ConnectionError,
        )
        self.retryable_status_codes = retryable_status_codes or {408, 429, 500, 502, 503, 504}


# Price quotes are cheap to repeat
QUOTE_RETRY_CONFIG = RetryConfig(max_retries=3, base_delay=0.5, max_delay=5.0)


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Backoff delay for a zero-based attempt number."""
    delay = min(config.base_delay * (config.exponential_base ** attempt), config.max_delay)
    if config.jitter:
        spread = delay * 0.25
        delay += random.uniform(-spread, spread)
    return max(0.1, delay)


async def retry_http_request(
    session: aiohttp.ClientSession,
    method: str,
    url: str,
    config: Optional[RetryConfig] = None,
    **kwargs,
) -> aiohttp.ClientResponse:
    """
    session.request() with retries on transient errors and retryable statuses.

    The final response is returned even if its status is retryable; the
    caller decides what a non-200 means.
    """
    if config is None:
        config = QUOTE_RETRY_CONFIG

    attempts = config.max_retries + 1
    for attempt in range(attempts):
        last_attempt = attempt + 1 >= attempts
        try:
            resp = await session.request(method, url, **kwargs)
        except config.retryable_exceptions as e:
            if last_attempt:
                logger.error(f"[Retry] {method} {url} gave up after {attempts} attempts: {type(e).__name__}: {e}")
                raise
            delay = calculate_delay(attempt, config)
            logger.warning(f"[Retry] {method} {url} failed ({type(e).__name__}: {e}). Next try in {delay:.1f}s")
            await asyncio.sleep(delay)
            continue

        if resp.status in config.retryable_status_codes and not last_attempt:
            delay = calculate_delay(attempt, config)
            logger.warning(f"[Retry] {method} {url} returned {resp.status}. Next try in {delay:.1f}s")
            resp.close()
            await asyncio.sleep(delay)
            continue

        return resp


class ConnectionHealthMonitor:
    """Last-success bookkeeping for named upstreams (quote APIs, swap APIs)."""

    def __init__(self, stale_threshold_sec: float = 60.0, clock: Callable[[], float] = time.time):
        self.stale_threshold = stale_threshold_sec
        self.clock = clock
        self._last_success: dict[str, float] = {}
        self._error_counts: dict[str, int] = {}

    def register_connection(self, name: str):
        self._last_success.setdefault(name, self.clock())
        self._error_counts.setdefault(name, 0)

    def mark_success(self, name: str):
        self._last_success[name] = self.clock()
        self._error_counts[name] = 0

    def mark_error(self, name: str):
        self._error_counts[name] = self._error_counts.get(name, 0) + 1

    def is_healthy(self, name: str) -> bool:
        if name not in self._last_success:
            return False
        return self.clock() - self._last_success[name] < self.stale_threshold

    def get_status(self) -> dict:
        now = self.clock()
        return {
            name: {
                "last_success_age_sec": round(now - last, 1),
                "is_healthy": self.is_healthy(name),
                "error_count": self._error_counts.get(name, 0),
            }
            for name, last in self._last_success.items()
        }
