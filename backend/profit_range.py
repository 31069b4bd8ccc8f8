"""
Profit-Range Exit Scheduler.

Splits an exit into N partial sells spread over a profit band
[profit_range_min, profit_range_max]. Trigger prices float with the current
weighted average entry price. A separate fast-exit check classifies the
unrealized P&L against the adaptive sell tiers; a match liquidates everything
and discards whatever steps are still pending.

State machine: HOLDING -> RANGE_ACTIVE -> (step executed)* -> COMPLETED
"""

import logging
import math
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional, TYPE_CHECKING

from adaptive_thresholds import SELL_REASONS, SELL_URGENCY, SellThresholds, SellTier
from errors import ConfigValidationError

if TYPE_CHECKING:
    from strategy import Position

logger = logging.getLogger(__name__)

# Positions with fewer tokens than this are closed
POSITION_EPSILON = 0.000001


class ProfitRangeMode(Enum):
    LINEAR = "linear"
    AGGRESSIVE = "aggressive"
    CONSERVATIVE = "conservative"


class RangeState(Enum):
    HOLDING = "holding"
    RANGE_ACTIVE = "range_active"
    COMPLETED = "completed"


# ============================================================================
# STEPS
# ============================================================================

@dataclass
class ProfitStep:
    step_number: int
    profit_percent: float
    sell_percentage: float
    trigger_price: float = 0.0
    expected_tokens: float = 0.0
    executed: bool = False
    executed_at: Optional[float] = None
    tokens_sold: float = 0.0
    base_received: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ProfitStep":
        return cls(**data)


def build_steps(
    min_percent: float,
    max_percent: float,
    steps: int,
    mode: ProfitRangeMode = ProfitRangeMode.LINEAR,
) -> list[ProfitStep]:
    """
    Compute the step schedule for a profit band.

    linear: evenly spaced profits, equal sell portions.
    aggressive: sqrt-spaced profits, step 1 sells 50% and the rest share 50%.
    conservative: square-spaced profits, the last step sells 50% and the
    rest share 50%.
    A single step always sells 100%.

    Raises:
        ConfigValidationError: steps < 1 or max below min
    """
    if steps < 1:
        raise ConfigValidationError(f"profit_range_steps must be >= 1 (got {steps})")
    if max_percent < min_percent:
        raise ConfigValidationError(
            f"profit_range_max ({max_percent}) must be >= profit_range_min ({min_percent})"
        )

    mode = ProfitRangeMode(mode)
    span = max_percent - min_percent
    schedule = []

    for i in range(1, steps + 1):
        frac = i / steps
        if mode == ProfitRangeMode.LINEAR:
            profit = min_percent + span * frac
            sell = 100.0 / steps
        elif mode == ProfitRangeMode.AGGRESSIVE:
            profit = min_percent + span * math.sqrt(frac)
            sell = 100.0 if steps == 1 else (50.0 if i == 1 else 50.0 / (steps - 1))
        else:
            profit = min_percent + span * frac ** 2
            sell = 100.0 if steps == 1 else (50.0 if i == steps else 50.0 / (steps - 1))

        schedule.append(ProfitStep(step_number=i, profit_percent=profit, sell_percentage=sell))

    return schedule


@dataclass
class ProfitRangeSchedule:
    """Pending and executed steps for one holding cycle"""
    steps: list[ProfitStep] = field(default_factory=list)
    state: RangeState = RangeState.HOLDING
    total_sold: float = 0.0

    @classmethod
    def create(
        cls,
        min_percent: float,
        max_percent: float,
        steps: int,
        mode: ProfitRangeMode = ProfitRangeMode.LINEAR,
    ) -> "ProfitRangeSchedule":
        schedule = cls(steps=build_steps(min_percent, max_percent, steps, mode), state=RangeState.RANGE_ACTIVE)
        logger.info(f"Profit range steps calculated ({ProfitRangeMode(mode).value} mode):")
        for step in schedule.steps:
            logger.info(
                f"  Step {step.step_number}: {step.profit_percent:.1f}% profit -> sell {step.sell_percentage:.1f}%"
            )
        return schedule

    @property
    def pending(self) -> list[ProfitStep]:
        return [s for s in self.steps if not s.executed]

    @property
    def is_complete(self) -> bool:
        return self.state == RangeState.COMPLETED

    def tokens_for(self, step: ProfitStep, remaining_tokens: float) -> float:
        """
        Tokens a pending step should sell out of what is still held.

        The last pending step sells everything that remains.
        """
        pending = self.pending
        if not pending or step not in pending:
            return 0.0
        if step is pending[-1]:
            return remaining_tokens
        pending_pct = sum(s.sell_percentage for s in pending)
        if pending_pct <= 0:
            return 0.0
        return remaining_tokens * step.sell_percentage / pending_pct

    def refresh(self, average_price: float, remaining_tokens: float) -> None:
        """Recompute trigger prices and expected tokens for pending steps"""
        for step in self.pending:
            step.trigger_price = average_price * (1 + step.profit_percent / 100)
            step.expected_tokens = self.tokens_for(step, remaining_tokens)

    def due_steps(self, current_price: float) -> list[ProfitStep]:
        return [s for s in self.pending if s.trigger_price > 0 and current_price >= s.trigger_price]

    def mark_executed(self, step: ProfitStep, tokens_sold: float, base_received: float, timestamp: float) -> None:
        step.executed = True
        step.executed_at = timestamp
        step.tokens_sold = tokens_sold
        step.base_received = base_received
        self.total_sold += tokens_sold
        if not self.pending:
            self.state = RangeState.COMPLETED

    def discard_pending(self) -> int:
        """Full exit happened: drop pending steps and close the schedule"""
        dropped = len(self.pending)
        self.steps = [s for s in self.steps if s.executed]
        self.state = RangeState.COMPLETED
        if dropped:
            logger.info(f"Discarded {dropped} pending profit range steps after full exit")
        return dropped

    def to_dict(self) -> dict:
        return {
            "steps": [s.to_dict() for s in self.steps],
            "state": self.state.value,
            "total_sold": self.total_sold,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProfitRangeSchedule":
        return cls(
            steps=[ProfitStep.from_dict(s) for s in data.get("steps", [])],
            state=RangeState(data.get("state", RangeState.HOLDING.value)),
            total_sold=data.get("total_sold", 0.0),
        )


# ============================================================================
# POSITION HELPERS
# ============================================================================

def open_totals(positions: list["Position"]) -> tuple[float, float]:
    """(base spent, tokens held) across open positions"""
    base = sum(p.entry_amount_base for p in positions if p.is_open)
    tokens = sum(p.entry_amount_asset for p in positions if p.is_open)
    return base, tokens


def average_entry_price(positions: list["Position"]) -> Optional[float]:
    base, tokens = open_totals(positions)
    if tokens <= 0:
        return None
    return base / tokens


def unrealized_pnl_percent(total_tokens: float, current_price: float, total_cost: float) -> float:
    if total_cost <= 0:
        return 0.0
    return (total_tokens * current_price - total_cost) / total_cost * 100


def reduce_positions(
    positions: list["Position"],
    tokens_sold: float,
    exit_price: float,
    timestamp: float,
    reason: str,
    epsilon: float = POSITION_EPSILON,
) -> list["Position"]:
    """
    Shrink every open position by the same ratio after a partial sell.

    Returns:
        Positions closed because their residual fell below epsilon
    """
    _, total_tokens = open_totals(positions)
    if total_tokens <= 0 or tokens_sold <= 0:
        return []

    ratio = min(1.0, tokens_sold / total_tokens)
    closed = []
    for pos in positions:
        if not pos.is_open:
            continue
        sold = pos.entry_amount_asset * ratio
        cost = pos.entry_amount_base * ratio
        pos.entry_amount_asset -= sold
        pos.entry_amount_base -= cost
        pos.realized_pnl = (pos.realized_pnl or 0.0) + sold * exit_price - cost

        if pos.entry_amount_asset < epsilon:
            pos.close(exit_price, timestamp, reason)
            closed.append(pos)
    return closed


# ============================================================================
# FAST EXIT
# ============================================================================

@dataclass
class ExitSignal:
    tier: SellTier
    threshold: float
    profit_percent: float
    reason: str
    urgency: str

    def to_dict(self) -> dict:
        return {
            "tier": self.tier.value,
            "threshold": self.threshold,
            "profit_percent": self.profit_percent,
            "reason": self.reason,
            "urgency": self.urgency,
        }


SELL_TIER_ORDER = [SellTier.QUICK, SellTier.NORMAL, SellTier.GOOD, SellTier.EXCELLENT, SellTier.EXTREME]


def evaluate_fast_exit(
    profit_percent: float,
    thresholds: SellThresholds,
    min_tier: SellTier = SellTier.QUICK,
) -> Optional[ExitSignal]:
    """
    Classify unrealized P&L against the sell tiers.

    Args:
        profit_percent: Unrealized P&L in %
        thresholds: Current adaptive sell thresholds
        min_tier: Lowest tier allowed to force a full exit

    Returns:
        ExitSignal for the highest matching tier, or None
    """
    tier = thresholds.classify(profit_percent)
    if tier is None:
        return None
    if SELL_TIER_ORDER.index(tier) < SELL_TIER_ORDER.index(min_tier):
        return None
    return ExitSignal(
        tier=tier,
        threshold=getattr(thresholds, tier.value),
        profit_percent=profit_percent,
        reason=SELL_REASONS[tier],
        urgency=SELL_URGENCY[tier],
    )
