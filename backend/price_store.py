"""
Price Store - per-asset price history with SMA caches.

Holds a time-ordered list of PricePoints per tracked asset, prunes anything
older than the retention horizon, and keeps throttled SMA caches for the
standard windows (5min, 1h, 6h, 24h, 1d, 7d).
"""

import bisect
import logging
import time
from dataclasses import dataclass, field, asdict
from typing import Callable, Iterable, Optional

from config import DAY, PRICE_RETENTION_SEC, SMA_WINDOWS, format_timeframe, resolve_window
from errors import ConfigValidationError, InsufficientDataError
from events import EventBus, EventType

logger = logging.getLogger(__name__)


# ============================================================================
# DATA TYPES
# ============================================================================

@dataclass(frozen=True)
class PricePoint:
    """A single price observation (base currency per token)"""
    timestamp: float
    price: float
    source: str = "quote"

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "PricePoint":
        return cls(
            timestamp=float(data["timestamp"]),
            price=float(data["price"]),
            source=data.get("source", "quote"),
        )


@dataclass
class SMAValue:
    """Cached simple moving average for one window"""
    window: str
    average: float
    sample_count: int
    computed_at: float
    available: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AssetPrices:
    """Price history and caches for one asset"""
    address: str
    symbol: str = ""
    points: list[PricePoint] = field(default_factory=list)
    current_price: float = 0.0
    last_update: float = 0.0
    change_24h: float = 0.0
    sma_cache: dict[str, SMAValue] = field(default_factory=dict)
    last_sma_compute: float = 0.0

    def timestamps(self) -> list[float]:
        return [p.timestamp for p in self.points]


# ============================================================================
# PRICE STORE
# ============================================================================

class PriceStore:
    """
    Exclusive owner of price history and SMA caches.

    All lookups on an unknown asset return None (or an empty result) and
    log at debug level; ingesting a price for an unknown asset starts
    tracking it.
    """

    def __init__(
        self,
        bus: Optional[EventBus] = None,
        retention_sec: float = PRICE_RETENTION_SEC,
        sma_interval_sec: float = 30.0,
        min_sma_samples: int = 3,
        clock: Callable[[], float] = time.time,
    ):
        self.bus = bus
        self.retention_sec = retention_sec
        self.sma_interval_sec = sma_interval_sec
        self.min_sma_samples = min_sma_samples
        self.clock = clock
        self._assets: dict[str, AssetPrices] = {}

    # -------------------------------------------------------------------------
    # TRACKING
    # -------------------------------------------------------------------------

    def track(self, address: str, symbol: str = "") -> AssetPrices:
        key = address.lower()
        entry = self._assets.get(key)
        if entry is None:
            entry = AssetPrices(address=key, symbol=symbol)
            self._assets[key] = entry
            logger.info(f"Tracking prices for {symbol or key}")
        elif symbol and not entry.symbol:
            entry.symbol = symbol
        return entry

    def untrack(self, address: str) -> bool:
        removed = self._assets.pop(address.lower(), None)
        if removed:
            logger.info(f"Stopped tracking prices for {removed.symbol or removed.address}")
        return removed is not None

    def is_tracked(self, address: str) -> bool:
        return address.lower() in self._assets

    def assets(self) -> list[str]:
        return list(self._assets.keys())

    def get(self, address: str) -> Optional[AssetPrices]:
        return self._assets.get(address.lower())

    # -------------------------------------------------------------------------
    # INGEST
    # -------------------------------------------------------------------------

    def ingest(
        self,
        address: str,
        price: float,
        source: str = "quote",
        timestamp: Optional[float] = None,
    ) -> Optional[PricePoint]:
        """
        Append a price observation.

        Args:
            address: Asset address
            price: Price in base currency; non-positive prices are ignored
            source: Where the price came from (quote, cached, trade)
            timestamp: Observation time, defaults to now

        Returns:
            The stored PricePoint, or None if the price was rejected
        """
        if price is None or price <= 0:
            logger.warning(f"Ignoring non-positive price {price} for {address}")
            return None

        ts = self.clock() if timestamp is None else float(timestamp)
        entry = self.track(address)
        point = PricePoint(timestamp=ts, price=float(price), source=source)

        if not entry.points or ts >= entry.points[-1].timestamp:
            entry.points.append(point)
        else:
            idx = bisect.bisect_right(entry.timestamps(), ts)
            entry.points.insert(idx, point)

        self._prune(entry, ts)

        if ts >= entry.last_update:
            entry.current_price = point.price
            entry.last_update = ts

        past = self.price_at(address, ts - DAY)
        entry.change_24h = ((point.price - past) / past) * 100 if past else 0.0

        self._refresh_smas(entry, ts)

        if self.bus:
            self.bus.publish(EventType.PRICE_UPDATE, {
                "asset": entry.address,
                "symbol": entry.symbol,
                "price": point.price,
                "change_24h": entry.change_24h,
                "source": source,
                "timestamp": ts,
            })
        return point

    def _prune(self, entry: AssetPrices, now: float) -> None:
        cutoff = now - self.retention_sec
        if entry.points and entry.points[0].timestamp < cutoff:
            idx = bisect.bisect_left(entry.timestamps(), cutoff)
            del entry.points[:idx]

    # -------------------------------------------------------------------------
    # QUERIES
    # -------------------------------------------------------------------------

    def points(self, address: str, window_sec: Optional[float] = None, now: Optional[float] = None) -> list[PricePoint]:
        """Points within [now - window, now]; all points if no window"""
        entry = self.get(address)
        if entry is None:
            logger.debug(f"No price history for {address}")
            return []
        if window_sec is None:
            return list(entry.points)
        now = self.clock() if now is None else now
        start = now - window_sec
        return [p for p in entry.points if start <= p.timestamp <= now]

    def prices_in_window(self, address: str, window_sec: float, now: Optional[float] = None) -> list[float]:
        return [p.price for p in self.points(address, window_sec, now)]

    def require_window(
        self,
        address: str,
        window_sec: float,
        min_points: int = 1,
        now: Optional[float] = None,
    ) -> list[float]:
        """
        Prices in the window, insisting on at least `min_points` of them.

        Raises:
            InsufficientDataError: fewer than min_points observations
        """
        prices = self.prices_in_window(address, window_sec, now)
        if len(prices) < min_points:
            raise InsufficientDataError(address, format_timeframe(window_sec), len(prices))
        return prices

    def current_price(self, address: str) -> Optional[float]:
        entry = self.get(address)
        if entry is None or entry.current_price <= 0:
            return None
        return entry.current_price

    def last_update(self, address: str) -> Optional[float]:
        entry = self.get(address)
        return entry.last_update if entry and entry.last_update else None

    def price_at(self, address: str, timestamp: float) -> Optional[float]:
        """Price of the point closest to timestamp"""
        entry = self.get(address)
        if entry is None or not entry.points:
            return None
        stamps = entry.timestamps()
        idx = bisect.bisect_left(stamps, timestamp)
        candidates = [i for i in (idx - 1, idx) if 0 <= i < len(stamps)]
        best = min(candidates, key=lambda i: abs(stamps[i] - timestamp))
        return entry.points[best].price

    def price_change(self, address: str, window: float, now: Optional[float] = None) -> float:
        """Percent change from the price `window` seconds ago to the current price"""
        current = self.current_price(address)
        now = self.clock() if now is None else now
        past = self.price_at(address, now - window)
        if not current or not past:
            return 0.0
        return ((current - past) / past) * 100

    # -------------------------------------------------------------------------
    # SMA
    # -------------------------------------------------------------------------

    def _refresh_smas(self, entry: AssetPrices, now: float, force: bool = False) -> bool:
        if not force and entry.sma_cache and now - entry.last_sma_compute < self.sma_interval_sec:
            return False

        for label, duration in SMA_WINDOWS.items():
            start = now - duration
            prices = [p.price for p in entry.points if start <= p.timestamp <= now]
            available = len(prices) >= self.min_sma_samples
            entry.sma_cache[label] = SMAValue(
                window=label,
                average=sum(prices) / len(prices) if available else 0.0,
                sample_count=len(prices),
                computed_at=now,
                available=available,
            )
        entry.last_sma_compute = now
        return True

    def compute_sma(
        self,
        address: str,
        window: str = "5min",
        now: Optional[float] = None,
        force: bool = False,
    ) -> Optional[SMAValue]:
        """
        SMA for one window, recomputed at most once per sma_interval_sec.

        Args:
            address: Asset address
            window: One of the SMA window labels
            now: Evaluation time, defaults to now
            force: Recompute even if the cache is fresh

        Returns:
            SMAValue (available=False when fewer than min samples), or None
            for an untracked asset
        """
        if window not in SMA_WINDOWS:
            raise ConfigValidationError(f"Not an SMA window: {window}")
        entry = self.get(address)
        if entry is None:
            logger.debug(f"SMA requested for untracked asset {address}")
            return None
        now = self.clock() if now is None else now
        self._refresh_smas(entry, now, force=force)
        return entry.sma_cache.get(window)

    def sma(self, address: str, window: str = "5min", now: Optional[float] = None) -> Optional[float]:
        """SMA average, or None when unavailable"""
        value = self.compute_sma(address, window, now)
        if value is None or not value.available:
            return None
        return value.average

    def sma_analysis(self, address: str, current_price: Optional[float] = None) -> Optional[dict]:
        """
        Compare the current price with each available SMA.

        Price above most SMAs reads as a sell signal, below most as a buy
        signal.
        """
        entry = self.get(address)
        if entry is None:
            return None
        price = current_price if current_price is not None else entry.current_price
        if not price:
            return None

        comparisons = {}
        buy_signals = []
        sell_signals = []
        bullish = 0
        bearish = 0

        for label, sma in entry.sma_cache.items():
            if not sma.available or sma.average <= 0:
                continue
            diff = ((price - sma.average) / sma.average) * 100
            above = price > sma.average
            below = price < sma.average
            comparisons[label] = {
                "sma": sma.average,
                "percent_difference": diff,
                "samples": sma.sample_count,
                "signal": "BUY" if above else "SELL" if below else "NEUTRAL",
            }
            if above:
                bullish += 1
                if abs(diff) > 2:
                    sell_signals.append(f"Above {label} SMA by {diff:.1f}%")
            elif below:
                bearish += 1
                if abs(diff) > 2:
                    buy_signals.append(f"Below {label} SMA by {abs(diff):.1f}%")

        overall = "NEUTRAL"
        total = bullish + bearish
        if total:
            ratio = bullish / total
            if ratio >= 0.7:
                overall = "STRONG_SELL"
            elif ratio >= 0.5:
                overall = "WEAK_SELL"
            elif ratio <= 0.3:
                overall = "STRONG_BUY"
            else:
                overall = "WEAK_BUY"

        return {
            "current_price": price,
            "comparisons": comparisons,
            "buy_signals": buy_signals,
            "sell_signals": sell_signals,
            "overall_signal": overall,
        }

    # -------------------------------------------------------------------------
    # ANALYSIS
    # -------------------------------------------------------------------------

    def period_analysis(
        self,
        address: str,
        current_price: Optional[float] = None,
        periods: Iterable[str] = ("5min", "1h", "6h", "24h", "7d"),
        now: Optional[float] = None,
    ) -> dict:
        """High/low/average per period and where the current price sits"""
        price = current_price if current_price is not None else self.current_price(address)
        result = {"periods": {}, "recommendations": [], "summary": "Near averages"}
        if not price:
            return result

        summary = []
        for label in periods:
            prices = self.prices_in_window(address, resolve_window(label), now)
            if not prices:
                continue
            highest = max(prices)
            lowest = min(prices)
            average = sum(prices) / len(prices)
            data = {
                "highest": highest,
                "lowest": lowest,
                "average": average,
                "drop_from_high": ((highest - price) / highest) * 100,
                "rise_from_low": ((price - lowest) / lowest) * 100,
                "vs_average": ((price - average) / average) * 100,
                "samples": len(prices),
            }
            result["periods"][label] = data

            if data["drop_from_high"] > 10:
                result["recommendations"].append(f"Strong dip vs {label} high (-{data['drop_from_high']:.1f}%)")
            if data["rise_from_low"] < 5:
                result["recommendations"].append(f"Near {label} low (+{data['rise_from_low']:.1f}%)")
            if abs(data["vs_average"]) > 2:
                sign = "+" if data["vs_average"] > 0 else ""
                summary.append(f"{label}:{sign}{data['vs_average']:.1f}%")

        if summary:
            result["summary"] = " ".join(summary)
        return result

    def price_stats(self, address: str, now: Optional[float] = None) -> Optional[dict]:
        entry = self.get(address)
        if entry is None:
            return None
        now = self.clock() if now is None else now
        return {
            "address": entry.address,
            "symbol": entry.symbol,
            "current_price": entry.current_price,
            "change_24h": entry.change_24h,
            "change_5min": self.price_change(address, SMA_WINDOWS["5min"], now),
            "change_1h": self.price_change(address, SMA_WINDOWS["1h"], now),
            "change_6h": self.price_change(address, SMA_WINDOWS["6h"], now),
            "sma": {label: sma.to_dict() for label, sma in entry.sma_cache.items()},
            "last_update": entry.last_update,
            "data_points": len(entry.points),
        }

    # -------------------------------------------------------------------------
    # SNAPSHOT
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict:
        return {
            address: {
                "symbol": entry.symbol,
                "points": [p.to_dict() for p in entry.points],
            }
            for address, entry in self._assets.items()
        }

    def load_dict(self, data: dict) -> None:
        """Restore history from a snapshot; SMA caches are rebuilt lazily"""
        for address, payload in data.items():
            entry = self.track(address, payload.get("symbol", ""))
            entry.points = sorted(
                (PricePoint.from_dict(p) for p in payload.get("points", [])),
                key=lambda p: p.timestamp,
            )
            if entry.points:
                last = entry.points[-1]
                entry.current_price = last.price
                entry.last_update = last.timestamp
            entry.sma_cache = {}
            entry.last_sma_compute = 0.0
        logger.info(f"Restored price history for {len(data)} assets")
