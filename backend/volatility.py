"""
Volatility Classifier - buckets recent price behaviour into four profiles.

Works on absolute percentage changes between consecutive observations in a
bounded rolling window. Until enough observations exist the profile stays
NORMAL.
"""

import logging
from collections import deque
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


class VolatilityProfile(Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    EXTREME = "extreme"


# (max single change %, recent average change %) lower bounds, checked top down
PROFILE_RULES = [
    (VolatilityProfile.EXTREME, 100.0, 50.0),
    (VolatilityProfile.HIGH, 50.0, 25.0),
    (VolatilityProfile.NORMAL, 20.0, 10.0),
]

RECENT_CHANGES = 5


@dataclass
class VolatilityStats:
    avg_volatility: float
    max_change: float
    recent_avg_volatility: float
    samples: int

    def to_dict(self) -> dict:
        return asdict(self)


def compute_stats(prices: Iterable[float]) -> Optional[VolatilityStats]:
    """Stats over absolute % changes between consecutive prices"""
    prices = [p for p in prices if p > 0]
    if len(prices) < 2:
        return None

    changes = [abs((cur - prev) / prev) * 100 for prev, cur in zip(prices, prices[1:])]
    recent = changes[-RECENT_CHANGES:]
    return VolatilityStats(
        avg_volatility=sum(changes) / len(changes),
        max_change=max(changes),
        recent_avg_volatility=sum(recent) / len(recent),
        samples=len(prices),
    )


def classify(stats: VolatilityStats) -> VolatilityProfile:
    """First matching rule wins; anything calmer is LOW"""
    for profile, max_bound, recent_bound in PROFILE_RULES:
        if stats.max_change > max_bound or stats.recent_avg_volatility > recent_bound:
            return profile
    return VolatilityProfile.LOW


class VolatilityClassifier:
    """Rolling-window classifier, one per strategy"""

    def __init__(
        self,
        window: int = 50,
        min_samples: int = 10,
        profile: VolatilityProfile = VolatilityProfile.NORMAL,
    ):
        self.window = window
        self.min_samples = min_samples
        self.profile = profile
        self.last_stats: Optional[VolatilityStats] = None
        self._prices: deque = deque(maxlen=window)

    @property
    def prices(self) -> list[float]:
        return list(self._prices)

    def observe(self, price: float) -> VolatilityProfile:
        """
        Add an observation and reclassify.

        Returns:
            The current profile (unchanged while below min_samples)
        """
        if price is None or price <= 0:
            return self.profile

        self._prices.append(price)
        if len(self._prices) < self.min_samples:
            return self.profile

        stats = compute_stats(self._prices)
        if stats is None:
            return self.profile
        self.last_stats = stats

        new_profile = classify(stats)
        if new_profile != self.profile:
            logger.info(
                f"Volatility profile changed: {self.profile.value} -> {new_profile.value} "
                f"(max {stats.max_change:.2f}%, avg {stats.avg_volatility:.2f}%, "
                f"recent {stats.recent_avg_volatility:.2f}%)"
            )
            self.profile = new_profile
        return self.profile

    def to_dict(self) -> dict:
        return {
            "profile": self.profile.value,
            "prices": self.prices,
            "stats": self.last_stats.to_dict() if self.last_stats else None,
        }

    def load_dict(self, data: dict) -> None:
        self.profile = VolatilityProfile(data.get("profile", VolatilityProfile.NORMAL.value))
        self._prices.clear()
        self._prices.extend(data.get("prices", [])[-self.window:])
        if len(self._prices) >= self.min_samples:
            self.last_stats = compute_stats(self._prices)
