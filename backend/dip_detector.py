"""
Dip Detector & Position Sizer.

NO_POSITION -> EVALUATING_DIP -> (BUY_APPROVED | WAITING)

A stopped strategy without positions sits in NO_POSITION; starting it (or
closing its last position while active) moves it to EVALUATING_DIP, and each
entry check leaves the decision's state behind.

A strategy holding open positions only ever buys below its weighted average
entry price. The dip is measured from the highest price in the lookback
window and classified against the adaptive dip tiers; the tier picks the
trade size.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from adaptive_thresholds import AdaptiveThresholds, DipTier

logger = logging.getLogger(__name__)


class DipState(Enum):
    NO_POSITION = "no_position"
    EVALUATING_DIP = "evaluating_dip"
    BUY_APPROVED = "buy_approved"
    WAITING = "waiting"


@dataclass
class DipDecision:
    state: DipState
    reason: str
    current_price: float
    highest_price: Optional[float] = None
    dip_percent: float = 0.0
    tier: Optional[DipTier] = None
    amount: float = 0.0
    average_price: Optional[float] = None

    @property
    def approved(self) -> bool:
        return self.state == DipState.BUY_APPROVED

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "reason": self.reason,
            "current_price": self.current_price,
            "highest_price": self.highest_price,
            "dip_percent": self.dip_percent,
            "tier": self.tier.value if self.tier else None,
            "amount": self.amount,
            "average_price": self.average_price,
        }


def dip_percent(highest: float, current: float) -> float:
    if highest <= 0:
        return 0.0
    return (highest - current) / highest * 100


def evaluate_dip(
    current_price: float,
    window_prices: list[float],
    thresholds: AdaptiveThresholds,
    average_price: Optional[float] = None,
) -> DipDecision:
    """
    Decide whether the current price is a dip worth buying.

    Args:
        current_price: Latest price
        window_prices: Prices observed within the dip lookback window
        thresholds: The strategy's current adaptive thresholds
        average_price: Weighted average entry of open positions, if any

    Returns:
        DipDecision; approved decisions carry the tier and sized amount
    """
    if average_price is not None and current_price >= average_price:
        return DipDecision(
            state=DipState.WAITING,
            reason=f"Price {current_price:.8f} not below average {average_price:.8f}",
            current_price=current_price,
            average_price=average_price,
        )

    if not window_prices:
        return DipDecision(
            state=DipState.WAITING,
            reason="No prices in lookback window",
            current_price=current_price,
            average_price=average_price,
        )

    highest = max(window_prices)
    dip = dip_percent(highest, current_price)
    tier = thresholds.dip.classify(dip)

    if tier is None:
        return DipDecision(
            state=DipState.WAITING,
            reason=f"Dip {dip:.2f}% below smallest tier {thresholds.dip.small:.2f}%",
            current_price=current_price,
            highest_price=highest,
            dip_percent=dip,
            average_price=average_price,
        )

    amount = thresholds.sizing.amount_for(tier)
    return DipDecision(
        state=DipState.BUY_APPROVED,
        reason=f"{tier.value} dip {dip:.2f}% ({thresholds.profile.value} volatility)",
        current_price=current_price,
        highest_price=highest,
        dip_percent=dip,
        tier=tier,
        amount=amount,
        average_price=average_price,
    )


def clamp_to_liquidity(amount: float, max_safe_amount: Optional[float]) -> float:
    """Cap a trade at what the pool can absorb within slippage"""
    if max_safe_amount is None or amount <= max_safe_amount:
        return amount
    if max_safe_amount <= 0:
        logger.warning(f"No safe liquidity for {amount:.6f}, skipping trade")
        return 0.0
    logger.warning(
        f"Liquidity cap: requested {amount:.6f} exceeds safe amount {max_safe_amount:.6f}, adjusting"
    )
    return max_safe_amount
