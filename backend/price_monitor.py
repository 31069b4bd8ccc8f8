"""
Price Monitor - bulk refresh loop feeding the Price Store.

Every cycle fetches a quote for each tracked asset in parallel, joins the
results, ingests fresh prices and then evaluates triggers. A failed quote
falls back to the cached price while it is younger than the staleness bound;
otherwise the asset has no price for that tick. Every failed quote counts
towards the consecutive-failure counter, and an asset that keeps failing for
long enough is dropped from tracking.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from config import DAY, HOUR, WLD_ADDRESS
from events import EventBus, EventType
from executor import QuoteProvider
from price_store import PriceStore

logger = logging.getLogger(__name__)

# Assets without a fresh quote for this long count as stale in health status
HEALTH_STALE_SEC = 2 * HOUR

# Assets with more consecutive failures than this count as unhealthy
HEALTH_MAX_FAILURES = 5


@dataclass
class FetchState:
    """Quote bookkeeping for one monitored asset"""
    address: str
    symbol: str = ""
    added_at: float = 0.0
    last_success: float = 0.0
    last_failure: Optional[float] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    price_source: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "symbol": self.symbol,
            "added_at": self.added_at,
            "last_success": self.last_success,
            "last_failure": self.last_failure,
            "last_error": self.last_error,
            "consecutive_failures": self.consecutive_failures,
            "price_source": self.price_source,
        }


class PriceMonitor:
    """
    Keeps every monitored asset's price fresh.

    Triggers are evaluated after each refresh through `on_refresh`
    callbacks (the engine registers TriggerEngine.check_all).
    """

    def __init__(
        self,
        store: PriceStore,
        quotes: QuoteProvider,
        bus: Optional[EventBus] = None,
        base_token: str = WLD_ADDRESS,
        interval_sec: float = 2.0,
        refresh_timeout_sec: float = 15.0,
        quote_timeout_sec: float = 10.0,
        stale_price_max_age_sec: float = DAY,
        failure_drop_threshold: int = 20,
        failure_drop_window_sec: float = DAY,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.quotes = quotes
        self.bus = bus
        self.base_token = base_token.lower()
        self.interval_sec = interval_sec
        self.refresh_timeout_sec = refresh_timeout_sec
        self.quote_timeout_sec = quote_timeout_sec
        self.stale_price_max_age_sec = stale_price_max_age_sec
        self.failure_drop_threshold = failure_drop_threshold
        self.failure_drop_window_sec = failure_drop_window_sec
        self.clock = clock

        self.on_refresh: list[Callable] = []
        self.on_drop: list[Callable[[str], None]] = []

        self._states: dict[str, FetchState] = {}
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.cycles = 0

    # -------------------------------------------------------------------------
    # ASSETS
    # -------------------------------------------------------------------------

    def add_asset(self, address: str, symbol: str = "") -> FetchState:
        key = address.lower()
        state = self._states.get(key)
        if state is None:
            now = self.clock()
            state = FetchState(address=key, symbol=symbol, added_at=now, last_success=now)
            self._states[key] = state
            self.store.track(key, symbol)
        return state

    def remove_asset(self, address: str) -> bool:
        return self._states.pop(address.lower(), None) is not None

    def is_monitored(self, address: str) -> bool:
        return address.lower() in self._states

    def assets(self) -> list[str]:
        return list(self._states.keys())

    def state(self, address: str) -> Optional[FetchState]:
        return self._states.get(address.lower())

    # -------------------------------------------------------------------------
    # REFRESH
    # -------------------------------------------------------------------------

    async def fetch_price(self, address: str, now: Optional[float] = None) -> Optional[float]:
        """
        Refresh one asset.

        Returns:
            The fresh or cached price, or None if the asset has no usable
            price this tick
        """
        state = self._states.get(address.lower())
        if state is None:
            return None
        now = self.clock() if now is None else now

        try:
            price = await asyncio.wait_for(
                self.quotes.get_price(state.address, self.base_token),
                timeout=self.quote_timeout_sec,
            )
        except asyncio.TimeoutError:
            return self._handle_failure(state, "quote timeout", now)
        except Exception as e:
            return self._handle_failure(state, str(e), now)

        if not price or price <= 0:
            return self._handle_failure(state, f"invalid price {price}", now)

        state.consecutive_failures = 0
        state.last_success = now
        state.last_error = None
        state.price_source = getattr(self.quotes, "name", "quote")
        self.store.ingest(state.address, price, source="quote", timestamp=now)
        return price

    def _handle_failure(self, state: FetchState, error: str, now: float) -> Optional[float]:
        state.consecutive_failures += 1
        state.last_failure = now
        state.last_error = error

        cached = self.store.current_price(state.address)
        last_update = self.store.last_update(state.address) or 0.0
        age = now - last_update
        if cached and age < self.stale_price_max_age_sec:
            state.price_source = "cached"
            logger.warning(
                f"Using cached price for {state.symbol or state.address}: {cached:.8f} "
                f"({age / HOUR:.1f}h old) after quote failure: {error}"
            )
            return cached

        state.price_source = None
        logger.warning(
            f"Failed to get price for {state.symbol or state.address} "
            f"({state.consecutive_failures} consecutive failures): {error}"
        )
        return None

    def should_drop(self, state: FetchState, now: Optional[float] = None) -> bool:
        now = self.clock() if now is None else now
        return (
            state.consecutive_failures >= self.failure_drop_threshold
            and now - state.last_success > self.failure_drop_window_sec
        )

    def drop_failing_assets(self, now: Optional[float] = None) -> list[str]:
        """Stop tracking assets that have failed persistently"""
        now = self.clock() if now is None else now
        dropped = []
        for state in list(self._states.values()):
            if not self.should_drop(state, now):
                continue
            hours = (now - state.last_success) / HOUR
            logger.warning(
                f"Removing problematic asset {state.symbol or state.address} "
                f"({state.consecutive_failures} failures over {hours:.1f}h)"
            )
            del self._states[state.address]
            self.store.untrack(state.address)
            dropped.append(state.address)
            for callback in self.on_drop:
                try:
                    callback(state.address)
                except Exception as e:
                    logger.error(f"Asset drop callback failed: {e}")
            if self.bus:
                self.bus.publish(EventType.ASSET_DROPPED, {
                    "asset": state.address,
                    "symbol": state.symbol,
                    "consecutive_failures": state.consecutive_failures,
                    "hours_since_success": hours,
                })
        return dropped

    async def refresh_all(self, now: Optional[float] = None) -> dict[str, Optional[float]]:
        """
        Fetch every monitored asset in parallel and join the results.

        Returns:
            address -> price (None where unavailable)
        """
        now = self.clock() if now is None else now
        addresses = list(self._states.keys())
        if not addresses:
            return {}

        tasks = [asyncio.ensure_future(self.fetch_price(a, now)) for a in addresses]
        done, pending = await asyncio.wait(tasks, timeout=self.refresh_timeout_sec)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Bulk refresh timed out for {len(pending)}/{len(tasks)} assets")
            await asyncio.gather(*pending, return_exceptions=True)

        results = {}
        for address, task in zip(addresses, tasks):
            if task in done and not task.cancelled() and task.exception() is None:
                results[address] = task.result()
            else:
                results[address] = None

        self.drop_failing_assets(now)
        self.cycles += 1
        return results

    async def run_once(self) -> dict[str, Optional[float]]:
        """One refresh cycle followed by the refresh callbacks"""
        results = await self.refresh_all()
        for callback in self.on_refresh:
            try:
                outcome = callback()
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception as e:
                logger.error(f"Post-refresh callback failed: {e}")
        return results

    # -------------------------------------------------------------------------
    # LIFECYCLE
    # -------------------------------------------------------------------------

    async def _loop(self) -> None:
        logger.info(f"Price monitor started ({self.interval_sec}s interval)")
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Price refresh cycle error: {e}")
            await asyncio.sleep(self.interval_sec)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._running = True
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Price monitor stopped")

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # -------------------------------------------------------------------------
    # STATUS
    # -------------------------------------------------------------------------

    def get_health_status(self, now: Optional[float] = None) -> dict:
        now = self.clock() if now is None else now
        healthy = unhealthy = stale = 0
        for state in self._states.values():
            since_success = now - state.last_success
            if state.consecutive_failures == 0 and since_success < HEALTH_STALE_SEC:
                healthy += 1
            elif state.consecutive_failures > HEALTH_MAX_FAILURES:
                unhealthy += 1
            elif since_success > HEALTH_STALE_SEC:
                stale += 1

        total = len(self._states)
        return {
            "total_assets": total,
            "healthy_assets": healthy,
            "unhealthy_assets": unhealthy,
            "stale_assets": stale,
            "health_percentage": healthy / total * 100 if total else 0.0,
            "cycles": self.cycles,
            "running": self.is_running,
        }

    def to_dict(self) -> dict:
        return {address: state.to_dict() for address, state in self._states.items()}

    def load_dict(self, data: dict) -> None:
        for address, payload in data.items():
            known = {k: v for k, v in payload.items() if k in FetchState.__dataclass_fields__}
            self._states[address] = FetchState(**known)
            self.store.track(address, payload.get("symbol", ""))
