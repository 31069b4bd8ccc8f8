"""
Strategy and Position data model.

A Strategy owns its positions, its volatility profile and its own copy of the
adaptive thresholds. Validation happens once, at creation.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from adaptive_thresholds import AdaptiveThresholds, SellTier, compute_thresholds
from config import WLD_ADDRESS, normalize_address
from dip_detector import DipState
from errors import ConfigValidationError
from profit_range import ProfitRangeMode, ProfitRangeSchedule, average_entry_price, open_totals
from volatility import VolatilityProfile


class PositionStatus(Enum):
    OPEN = "open"
    CLOSED = "closed"


class StrategyStatus(Enum):
    CREATED = "created"
    ACTIVE = "active"
    STOPPED = "stopped"
    COMPLETED = "completed"


# ============================================================================
# POSITION
# ============================================================================

@dataclass
class Position:
    """One approved buy and what is left of it"""
    id: str
    entry_price: float
    entry_amount_base: float
    entry_amount_asset: float
    entry_timestamp: float
    status: PositionStatus = PositionStatus.OPEN
    exit_price: Optional[float] = None
    exit_timestamp: Optional[float] = None
    exit_reason: Optional[str] = None
    realized_pnl: Optional[float] = None
    dip_tier: Optional[str] = None
    dip_percent: Optional[float] = None
    volatility_profile: Optional[str] = None
    tx_ref: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    def close(self, exit_price: float, timestamp: float, reason: str) -> None:
        self.status = PositionStatus.CLOSED
        self.exit_price = exit_price
        self.exit_timestamp = timestamp
        self.exit_reason = reason

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entry_price": self.entry_price,
            "entry_amount_base": self.entry_amount_base,
            "entry_amount_asset": self.entry_amount_asset,
            "entry_timestamp": self.entry_timestamp,
            "status": self.status.value,
            "exit_price": self.exit_price,
            "exit_timestamp": self.exit_timestamp,
            "exit_reason": self.exit_reason,
            "realized_pnl": self.realized_pnl,
            "dip_tier": self.dip_tier,
            "dip_percent": self.dip_percent,
            "volatility_profile": self.volatility_profile,
            "tx_ref": self.tx_ref,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Position":
        data = dict(data)
        data["status"] = PositionStatus(data.get("status", "open"))
        return cls(**data)


def new_position_id() -> str:
    return f"pos_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


# ============================================================================
# STRATEGY
# ============================================================================

@dataclass
class Strategy:
    """Dip-buy / profit-range strategy for one asset against the base token"""
    id: str
    name: str
    target_asset: str
    token_symbol: str = ""
    base_token: str = WLD_ADDRESS

    # Trading parameters
    dip_threshold_base: float = 15.0
    profit_target: float = 1.0
    trade_amount_base: float = 0.1
    max_slippage: float = 1.0

    # Profit range
    enable_profit_range: bool = False
    profit_range_min: float = 1.0
    profit_range_max: float = 2.0
    profit_range_steps: int = 3
    profit_range_mode: ProfitRangeMode = ProfitRangeMode.LINEAR
    fast_exit_min_tier: SellTier = SellTier.QUICK

    # Monitoring
    price_check_interval: float = 3.0
    dip_lookback_window: float = 300.0
    average_down: bool = False

    # Cycles
    max_cycles: int = 0
    completed_cycles: int = 0

    # State
    status: StrategyStatus = StrategyStatus.CREATED
    is_active: bool = False
    dip_state: DipState = DipState.NO_POSITION
    volatility_profile: VolatilityProfile = VolatilityProfile.NORMAL
    thresholds: Optional[AdaptiveThresholds] = None
    positions: list[Position] = field(default_factory=list)
    profit_range_state: Optional[ProfitRangeSchedule] = None
    completion_reason: Optional[str] = None

    # Performance
    created_at: float = field(default_factory=time.time)
    last_executed: Optional[float] = None
    total_trades: int = 0
    successful_trades: int = 0
    total_profit: float = 0.0

    def __post_init__(self):
        if self.thresholds is None:
            self.recompute_thresholds()

    # -------------------------------------------------------------------------
    # DERIVED STATE
    # -------------------------------------------------------------------------

    @property
    def open_positions(self) -> list[Position]:
        return [p for p in self.positions if p.is_open]

    @property
    def has_open_position(self) -> bool:
        return any(p.is_open for p in self.positions)

    @property
    def average_entry_price(self) -> Optional[float]:
        return average_entry_price(self.positions)

    def holdings(self) -> tuple[float, float]:
        """(base spent, tokens held) across open positions"""
        return open_totals(self.positions)

    @property
    def cycles_exhausted(self) -> bool:
        return self.max_cycles > 0 and self.completed_cycles >= self.max_cycles

    def recompute_thresholds(self) -> AdaptiveThresholds:
        self.thresholds = compute_thresholds(
            self.volatility_profile,
            self.dip_threshold_base,
            self.profit_range_min,
            self.trade_amount_base,
        )
        return self.thresholds

    # -------------------------------------------------------------------------
    # SERIALIZATION
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict:
        base_spent, tokens_held = self.holdings()
        return {
            "id": self.id,
            "name": self.name,
            "target_asset": self.target_asset,
            "token_symbol": self.token_symbol,
            "base_token": self.base_token,
            "dip_threshold_base": self.dip_threshold_base,
            "profit_target": self.profit_target,
            "trade_amount_base": self.trade_amount_base,
            "max_slippage": self.max_slippage,
            "enable_profit_range": self.enable_profit_range,
            "profit_range_min": self.profit_range_min,
            "profit_range_max": self.profit_range_max,
            "profit_range_steps": self.profit_range_steps,
            "profit_range_mode": self.profit_range_mode.value,
            "fast_exit_min_tier": self.fast_exit_min_tier.value,
            "price_check_interval": self.price_check_interval,
            "dip_lookback_window": self.dip_lookback_window,
            "average_down": self.average_down,
            "max_cycles": self.max_cycles,
            "completed_cycles": self.completed_cycles,
            "status": self.status.value,
            "is_active": self.is_active,
            "dip_state": self.dip_state.value,
            "volatility_profile": self.volatility_profile.value,
            "smart_dip_thresholds": self.thresholds.dip.to_dict(),
            "smart_sell_thresholds": self.thresholds.sell.to_dict(),
            "smart_position_sizing": self.thresholds.sizing.to_dict(),
            "positions": [p.to_dict() for p in self.positions],
            "profit_range_state": self.profit_range_state.to_dict() if self.profit_range_state else None,
            "completion_reason": self.completion_reason,
            "created_at": self.created_at,
            "last_executed": self.last_executed,
            "total_trades": self.total_trades,
            "successful_trades": self.successful_trades,
            "total_profit": self.total_profit,
            "base_spent": base_spent,
            "tokens_held": tokens_held,
            "average_entry_price": self.average_entry_price,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Strategy":
        strategy = cls(
            id=data["id"],
            name=data["name"],
            target_asset=data["target_asset"],
            token_symbol=data.get("token_symbol", ""),
            base_token=data.get("base_token", WLD_ADDRESS),
            dip_threshold_base=data.get("dip_threshold_base", 15.0),
            profit_target=data.get("profit_target", 1.0),
            trade_amount_base=data.get("trade_amount_base", 0.1),
            max_slippage=data.get("max_slippage", 1.0),
            enable_profit_range=data.get("enable_profit_range", False),
            profit_range_min=data.get("profit_range_min", 1.0),
            profit_range_max=data.get("profit_range_max", 2.0),
            profit_range_steps=data.get("profit_range_steps", 3),
            profit_range_mode=ProfitRangeMode(data.get("profit_range_mode", "linear")),
            fast_exit_min_tier=SellTier(data.get("fast_exit_min_tier", "quick")),
            price_check_interval=data.get("price_check_interval", 3.0),
            dip_lookback_window=data.get("dip_lookback_window", 300.0),
            average_down=data.get("average_down", False),
            max_cycles=data.get("max_cycles", 0),
            completed_cycles=data.get("completed_cycles", 0),
            status=StrategyStatus(data.get("status", "created")),
            is_active=data.get("is_active", False),
            dip_state=DipState(data.get("dip_state", DipState.NO_POSITION.value)),
            volatility_profile=VolatilityProfile(data.get("volatility_profile", "normal")),
            positions=[Position.from_dict(p) for p in data.get("positions", [])],
            completion_reason=data.get("completion_reason"),
            created_at=data.get("created_at", time.time()),
            last_executed=data.get("last_executed"),
            total_trades=data.get("total_trades", 0),
            successful_trades=data.get("successful_trades", 0),
            total_profit=data.get("total_profit", 0.0),
        )
        if data.get("profit_range_state"):
            strategy.profit_range_state = ProfitRangeSchedule.from_dict(data["profit_range_state"])
        return strategy


def build_strategy(config: dict, base_token: str = WLD_ADDRESS) -> Strategy:
    """
    Validate a creation request and build a Strategy.

    Required keys: target_asset. Everything else falls back to defaults;
    profit_range_min defaults to profit_target and profit_range_max to
    twice profit_target.

    Raises:
        ConfigValidationError: any invalid field
    """
    if "target_asset" not in config:
        raise ConfigValidationError("target_asset is required")
    target = normalize_address(config["target_asset"])
    if target == base_token.lower():
        raise ConfigValidationError("target_asset cannot be the base token")

    symbol = config.get("token_symbol", "")
    profit_target = float(config.get("profit_target", 1.0))
    range_min = float(config.get("profit_range_min") or profit_target)
    range_max = float(config.get("profit_range_max") or profit_target * 2)

    numeric = {
        "dip_threshold_base": float(config.get("dip_threshold_base", 15.0)),
        "profit_target": profit_target,
        "trade_amount_base": float(config.get("trade_amount_base", 0.1)),
        "max_slippage": float(config.get("max_slippage", 1.0)),
        "price_check_interval": float(config.get("price_check_interval", 3.0)),
        "dip_lookback_window": float(config.get("dip_lookback_window", 300.0)),
    }
    for key, value in numeric.items():
        if value <= 0:
            raise ConfigValidationError(f"{key} must be positive (got {value})")

    if range_min <= 0 or range_max < range_min:
        raise ConfigValidationError(
            f"Invalid profit range: min={range_min}, max={range_max}"
        )

    steps = int(config.get("profit_range_steps", 3))
    if steps < 1:
        raise ConfigValidationError(f"profit_range_steps must be >= 1 (got {steps})")

    max_cycles = int(config.get("max_cycles", 0))
    if max_cycles < 0:
        raise ConfigValidationError(f"max_cycles must be >= 0 (got {max_cycles})")

    try:
        mode = ProfitRangeMode(config.get("profit_range_mode", "linear"))
        min_tier = SellTier(config.get("fast_exit_min_tier", "quick"))
    except ValueError as e:
        raise ConfigValidationError(str(e))

    return Strategy(
        id=config.get("id") or f"strategy_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}",
        name=config.get("name") or f"Strategy for {symbol or target[:10]}",
        target_asset=target,
        token_symbol=symbol,
        base_token=base_token.lower(),
        enable_profit_range=bool(config.get("enable_profit_range", False)),
        profit_range_min=range_min,
        profit_range_max=range_max,
        profit_range_steps=steps,
        profit_range_mode=mode,
        fast_exit_min_tier=min_tier,
        average_down=bool(config.get("average_down", False)),
        max_cycles=max_cycles,
        **numeric,
    )
