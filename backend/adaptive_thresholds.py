"""
Adaptive Threshold Engine - maps a volatility profile onto dip tiers,
sell tiers and position sizing.

D is the strategy's base dip %, P its base profit % (profit_range_min).
Pure functions: the same inputs always produce the same thresholds.
"""

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional

from volatility import VolatilityProfile


class DipTier(Enum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"
    EXTREME = "extreme"


class SellTier(Enum):
    QUICK = "quick"
    NORMAL = "normal"
    GOOD = "good"
    EXCELLENT = "excellent"
    EXTREME = "extreme"


# Multipliers of D for small/medium/large/extreme dips
DIP_MULTIPLIERS = {
    VolatilityProfile.LOW: (0.5, 1.0, 1.5, 2.0),
    VolatilityProfile.NORMAL: (1.0, 2.0, 3.0, 4.0),
    VolatilityProfile.HIGH: (1.5, 3.0, 4.5, 6.0),
    VolatilityProfile.EXTREME: (2.0, 4.0, 6.0, 8.0),
}

# Multipliers of P for quick/normal/good/excellent/extreme profit
SELL_MULTIPLIERS = {
    VolatilityProfile.LOW: (0.3, 0.7, 1.5, 3.0, 5.0),
    VolatilityProfile.NORMAL: (0.5, 1.0, 2.0, 5.0, 10.0),
    VolatilityProfile.HIGH: (0.7, 1.5, 3.0, 7.0, 15.0),
    VolatilityProfile.EXTREME: (1.0, 2.0, 5.0, 10.0, 25.0),
}

# Multipliers of the base trade amount, profile independent
SIZING_MULTIPLIERS = (0.5, 1.0, 1.5, 2.0)

SELL_REASONS = {
    SellTier.QUICK: "quick_profit",
    SellTier.NORMAL: "profit_target_reached",
    SellTier.GOOD: "good_profit",
    SellTier.EXCELLENT: "excellent_profit",
    SellTier.EXTREME: "extreme_profit_jump",
}

SELL_URGENCY = {
    SellTier.QUICK: "low",
    SellTier.NORMAL: "medium",
    SellTier.GOOD: "high",
    SellTier.EXCELLENT: "immediate",
    SellTier.EXTREME: "emergency",
}


@dataclass
class DipThresholds:
    small: float
    medium: float
    large: float
    extreme: float

    def classify(self, dip_percent: float) -> Optional[DipTier]:
        """Highest tier whose threshold the dip reaches, or None"""
        for tier in (DipTier.EXTREME, DipTier.LARGE, DipTier.MEDIUM, DipTier.SMALL):
            if dip_percent >= getattr(self, tier.value):
                return tier
        return None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SellThresholds:
    quick: float
    normal: float
    good: float
    excellent: float
    extreme: float

    def classify(self, profit_percent: float) -> Optional[SellTier]:
        """Highest tier whose threshold the profit reaches, or None"""
        for tier in (SellTier.EXTREME, SellTier.EXCELLENT, SellTier.GOOD, SellTier.NORMAL, SellTier.QUICK):
            if profit_percent >= getattr(self, tier.value):
                return tier
        return None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PositionSizing:
    small: float
    medium: float
    large: float
    extreme: float

    def amount_for(self, tier: DipTier) -> float:
        return getattr(self, tier.value)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AdaptiveThresholds:
    profile: VolatilityProfile
    dip: DipThresholds
    sell: SellThresholds
    sizing: PositionSizing

    def to_dict(self) -> dict:
        return {
            "profile": self.profile.value,
            "dip": self.dip.to_dict(),
            "sell": self.sell.to_dict(),
            "sizing": self.sizing.to_dict(),
        }


def compute_thresholds(
    profile: VolatilityProfile,
    base_dip: float,
    base_profit: float,
    base_amount: float,
) -> AdaptiveThresholds:
    """
    Derive all tiers for a profile.

    Args:
        profile: Current volatility profile
        base_dip: D, the strategy's base dip threshold in %
        base_profit: P, the strategy's base profit in %
        base_amount: Base trade amount in base currency

    Returns:
        AdaptiveThresholds for the profile
    """
    dip = DIP_MULTIPLIERS[profile]
    sell = SELL_MULTIPLIERS[profile]
    return AdaptiveThresholds(
        profile=profile,
        dip=DipThresholds(*(base_dip * m for m in dip)),
        sell=SellThresholds(*(base_profit * m for m in sell)),
        sizing=PositionSizing(*(base_amount * m for m in SIZING_MULTIPLIERS)),
    )
