"""
Trigger Engine - generic condition -> action rules.

Conditions:
    price_drop  change over timeframe <= -threshold %
    price_rise  change over timeframe >= threshold %
    below_sma   (sma - price) / sma * 100 >= threshold
    above_sma   (price - sma) / sma * 100 >= threshold

A trigger fires at most max_triggers times. Failed executions do not count.
Executions run as shielded in-flight tasks; a trigger is not re-evaluated
while its previous execution is still running.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Union

from config import DAY, WLD_ADDRESS, format_timeframe, normalize_address, resolve_window, sma_label_for
from cost_basis_ledger import CostBasisLedger, TradeType
from errors import ConfigValidationError, ExecutionFailedError
from events import EventBus, EventType
from executor import ExecutionService, SwapResult, execute_swap_bounded
from price_store import PriceStore

logger = logging.getLogger(__name__)


class TriggerAction(Enum):
    BUY = "buy"
    SELL = "sell"


class TriggerCondition(Enum):
    PRICE_DROP = "price_drop"
    PRICE_RISE = "price_rise"
    BELOW_SMA = "below_sma"
    ABOVE_SMA = "above_sma"

    @property
    def uses_sma(self) -> bool:
        return self in (TriggerCondition.BELOW_SMA, TriggerCondition.ABOVE_SMA)


@dataclass
class Trigger:
    id: str
    name: str
    asset_address: str
    action: TriggerAction
    condition: TriggerCondition
    threshold: float
    timeframe: Union[str, float] = 300.0
    amount: float = 0.1
    max_slippage: float = 2.0
    token_symbol: str = ""
    is_active: bool = True
    trigger_count: int = 0
    max_triggers: int = 1
    created_at: float = field(default_factory=time.time)
    last_checked: float = 0.0
    last_fired: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "asset_address": self.asset_address,
            "token_symbol": self.token_symbol,
            "action": self.action.value,
            "condition": self.condition.value,
            "threshold": self.threshold,
            "timeframe": self.timeframe,
            "amount": self.amount,
            "max_slippage": self.max_slippage,
            "is_active": self.is_active,
            "trigger_count": self.trigger_count,
            "max_triggers": self.max_triggers,
            "created_at": self.created_at,
            "last_checked": self.last_checked,
            "last_fired": self.last_fired,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Trigger":
        data = dict(data)
        data["action"] = TriggerAction(data["action"])
        data["condition"] = TriggerCondition(data["condition"])
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class TriggerCheck:
    met: bool
    value: Optional[float]
    details: str


class TriggerEngine:
    """Owns all triggers and evaluates them against the price store."""

    def __init__(
        self,
        store: PriceStore,
        ledger: CostBasisLedger,
        executor: ExecutionService,
        bus: Optional[EventBus] = None,
        base_token: str = WLD_ADDRESS,
        wallet_address: Optional[str] = None,
        swap_timeout: float = 60.0,
        stale_price_max_age_sec: float = DAY,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.ledger = ledger
        self.executor = executor
        self.bus = bus
        self.base_token = base_token.lower()
        self.wallet_address = wallet_address
        self.swap_timeout = swap_timeout
        self.stale_price_max_age_sec = stale_price_max_age_sec
        self.clock = clock
        self.triggers: dict[str, Trigger] = {}
        self._inflight: dict[str, asyncio.Task] = {}

    # -------------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------------

    def create_trigger(self, config: dict) -> Trigger:
        """
        Validate and register a trigger.

        Raises:
            ConfigValidationError: invalid address, enum value, threshold,
                amount, timeframe or max_triggers
        """
        address = normalize_address(config.get("asset_address", ""))
        try:
            action = TriggerAction(config.get("action"))
            condition = TriggerCondition(config.get("condition"))
        except ValueError as e:
            raise ConfigValidationError(str(e))

        threshold = float(config.get("threshold", 0))
        amount = float(config.get("amount", 0.1))
        max_triggers = int(config.get("max_triggers", 1))
        timeframe = config.get("timeframe", 300.0)
        if threshold <= 0:
            raise ConfigValidationError(f"threshold must be positive (got {threshold})")
        if amount <= 0:
            raise ConfigValidationError(f"amount must be positive (got {amount})")
        if max_triggers < 1:
            raise ConfigValidationError(f"max_triggers must be >= 1 (got {max_triggers})")
        if condition.uses_sma:
            timeframe = sma_label_for(timeframe)
        else:
            timeframe = resolve_window(timeframe)

        symbol = config.get("token_symbol", "")
        if not self.ledger.is_tracked(address):
            self.ledger.track_asset(address, symbol)
        self.store.track(address, symbol)

        trigger = Trigger(
            id=config.get("id") or f"trigger_{int(self.clock() * 1000)}_{uuid.uuid4().hex[:8]}",
            name=config.get("name") or f"{action.value} {symbol or address[:10]} trigger",
            asset_address=address,
            token_symbol=symbol,
            action=action,
            condition=condition,
            threshold=threshold,
            timeframe=timeframe,
            amount=amount,
            max_slippage=float(config.get("max_slippage", 2.0)),
            max_triggers=max_triggers,
            created_at=self.clock(),
        )
        self.triggers[trigger.id] = trigger

        window = timeframe if isinstance(timeframe, str) else format_timeframe(timeframe)
        logger.info(
            f"Created trigger {trigger.name}: {condition.value} {threshold}% in {window} -> "
            f"{action.value} {amount}"
        )
        return trigger

    def remove_trigger(self, trigger_id: str) -> bool:
        removed = self.triggers.pop(trigger_id, None)
        if removed:
            logger.info(f"Removed trigger {removed.name}")
        return removed is not None

    def remove_for_asset(self, address: str) -> int:
        address = address.lower()
        doomed = [t.id for t in self.triggers.values() if t.asset_address == address]
        for trigger_id in doomed:
            del self.triggers[trigger_id]
        return len(doomed)

    def get(self, trigger_id: str) -> Optional[Trigger]:
        return self.triggers.get(trigger_id)

    def list_triggers(self) -> list[Trigger]:
        return list(self.triggers.values())

    # -------------------------------------------------------------------------
    # EVALUATION
    # -------------------------------------------------------------------------

    def check_condition(self, trigger: Trigger, now: Optional[float] = None) -> TriggerCheck:
        """Evaluate a trigger's condition without executing anything"""
        now = self.clock() if now is None else now
        price = self.store.current_price(trigger.asset_address)
        if not price:
            return TriggerCheck(False, None, "No price data")
        age = now - (self.store.last_update(trigger.asset_address) or 0.0)
        if age > self.stale_price_max_age_sec:
            return TriggerCheck(False, None, f"Price is stale ({format_timeframe(round(age))} old)")

        cond = trigger.condition
        if cond == TriggerCondition.PRICE_DROP:
            change = self.store.price_change(trigger.asset_address, resolve_window(trigger.timeframe), now)
            return TriggerCheck(
                change <= -abs(trigger.threshold),
                change,
                f"Price dropped {abs(change):.2f}% (need {trigger.threshold}%)",
            )

        if cond == TriggerCondition.PRICE_RISE:
            change = self.store.price_change(trigger.asset_address, resolve_window(trigger.timeframe), now)
            return TriggerCheck(
                change >= trigger.threshold,
                change,
                f"Price rose {change:.2f}% (need {trigger.threshold}%)",
            )

        sma = self.store.sma(trigger.asset_address, str(trigger.timeframe), now)
        if not sma:
            return TriggerCheck(False, None, f"SMA {trigger.timeframe} unavailable")

        if cond == TriggerCondition.BELOW_SMA:
            distance = (sma - price) / sma * 100
            label = "below"
        else:
            distance = (price - sma) / sma * 100
            label = "above"
        return TriggerCheck(
            distance >= trigger.threshold,
            distance,
            f"Price {distance:.2f}% {label} {trigger.timeframe} SMA (need {trigger.threshold}%)",
        )

    async def check_trigger(self, trigger: Trigger) -> bool:
        """Evaluate and, if met, execute one trigger. Returns True if it fired."""
        await self.wait_for_trades(trigger.id)
        if not trigger.is_active or trigger.trigger_count >= trigger.max_triggers:
            return False

        trigger.last_checked = self.clock()
        try:
            check = self.check_condition(trigger)
        except Exception as e:
            logger.error(f"Error checking trigger {trigger.name}: {e}")
            return False

        if not check.met:
            return False

        logger.info(f"TRIGGER ACTIVATED: {trigger.name} | {check.details}")
        task = asyncio.ensure_future(self._execute(trigger, check))
        self._inflight[trigger.id] = task
        task.add_done_callback(lambda t: self._trade_finished(trigger.id, t))
        return await asyncio.shield(task)

    def _trade_finished(self, trigger_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(trigger_id) is task:
            del self._inflight[trigger_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Trigger {trigger_id} execution raised: {task.exception()}")

    async def wait_for_trades(self, trigger_id: Optional[str] = None) -> None:
        """Wait until in-flight executions (of one trigger, or all) have finished"""
        if trigger_id is None:
            pending = [t for t in self._inflight.values() if not t.done()]
        else:
            task = self._inflight.get(trigger_id)
            pending = [task] if task is not None and not task.done() else []
        if pending:
            await asyncio.wait(pending)

    async def check_all(self) -> list[Trigger]:
        fired = []
        for trigger in list(self.triggers.values()):
            if await self.check_trigger(trigger):
                fired.append(trigger)
        return fired

    async def _swap(self, trigger: Trigger) -> SwapResult:
        if trigger.action == TriggerAction.BUY:
            token_in, token_out = self.base_token, trigger.asset_address
        else:
            token_in, token_out = trigger.asset_address, self.base_token
        return await execute_swap_bounded(
            self.executor, self.wallet_address, token_in, token_out,
            trigger.amount, trigger.max_slippage, self.swap_timeout,
        )

    async def _execute(self, trigger: Trigger, check: TriggerCheck) -> bool:
        try:
            result = await self._swap(trigger)
        except ExecutionFailedError as e:
            logger.warning(f"TRIGGER EXECUTION FAILED: {trigger.name}: {e}")
            return False

        now = self.clock()
        trigger.trigger_count += 1
        trigger.last_fired = now
        if trigger.trigger_count >= trigger.max_triggers:
            trigger.is_active = False
            logger.info(f"Trigger {trigger.name} deactivated (max executions reached)")

        if trigger.action == TriggerAction.BUY:
            price, quantity, trade_type = trigger.amount / result.amount_out, result.amount_out, TradeType.BUY
        else:
            price, quantity, trade_type = result.amount_out / trigger.amount, trigger.amount, TradeType.SELL
        self.ledger.record_trade(trigger.asset_address, trade_type, price, quantity, timestamp=now)

        logger.info(
            f"Trigger executed: {trigger.name} {trigger.action.value} {quantity:.6f} @ {price:.8f} "
            f"({trigger.trigger_count}/{trigger.max_triggers}) tx={result.tx_ref}"
        )
        if self.bus:
            self.bus.publish(EventType.TRIGGER_FIRED, {
                "trigger": trigger.to_dict(),
                "details": check.details,
                "price": price,
                "quantity": quantity,
                "tx_ref": result.tx_ref,
            })
        return True

    # -------------------------------------------------------------------------
    # SNAPSHOT
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict:
        return {tid: t.to_dict() for tid, t in self.triggers.items()}

    def load_dict(self, data: dict) -> None:
        for tid, payload in data.items():
            self.triggers[tid] = Trigger.from_dict(payload)
        logger.info(f"Restored {len(data)} triggers")
