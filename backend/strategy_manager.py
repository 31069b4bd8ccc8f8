"""
Strategy Manager - lifecycle and per-tick evaluation of dip-buy strategies.

Each active strategy runs in its own task:

    tick:
        quote -> Price Store -> volatility profile (thresholds on change)
        open positions?  fast exit -> profit-range steps (or simple target)
        no positions?    dip detector -> sized buy

Swaps and their ledger bookkeeping run as shielded in-flight tasks, so
stopping a strategy never leaves a filled trade unrecorded. Ticks of one
strategy are serialized by a per-strategy lock, and a tick never starts
evaluating while a trade from a cancelled tick is still running.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from config import DAY, WLD_ADDRESS
from cost_basis_ledger import CostBasisLedger, TradeType
from dip_detector import DipDecision, DipState, clamp_to_liquidity, evaluate_dip
from errors import ConfigValidationError, ExecutionFailedError, InsufficientDataError, QuoteUnavailableError
from events import EventBus, EventType
from executor import ExecutionService, QuoteProvider, SwapResult, execute_swap_bounded
from price_store import PriceStore
from profit_range import (
    ExitSignal,
    ProfitRangeSchedule,
    ProfitStep,
    evaluate_fast_exit,
    reduce_positions,
    unrealized_pnl_percent,
)
from strategy import Position, Strategy, StrategyStatus, build_strategy, new_position_id
from volatility import VolatilityClassifier

logger = logging.getLogger(__name__)


class StrategyManager:
    """Owns all strategies, their volatility classifiers and their run loops"""

    def __init__(
        self,
        store: PriceStore,
        ledger: CostBasisLedger,
        quotes: QuoteProvider,
        executor: ExecutionService,
        bus: Optional[EventBus] = None,
        base_token: str = WLD_ADDRESS,
        wallet_address: Optional[str] = None,
        quote_timeout_sec: float = 10.0,
        swap_timeout_sec: float = 60.0,
        stale_price_max_age_sec: float = DAY,
        volatility_window: int = 50,
        volatility_min_samples: int = 10,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.ledger = ledger
        self.quotes = quotes
        self.executor = executor
        self.bus = bus
        self.base_token = base_token.lower()
        self.wallet_address = wallet_address
        self.quote_timeout_sec = quote_timeout_sec
        self.swap_timeout_sec = swap_timeout_sec
        self.stale_price_max_age_sec = stale_price_max_age_sec
        self.volatility_window = volatility_window
        self.volatility_min_samples = volatility_min_samples
        self.clock = clock

        self.strategies: dict[str, Strategy] = {}
        self._classifiers: dict[str, VolatilityClassifier] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._inflight: dict[str, asyncio.Task] = {}

    def _publish(self, event_type: EventType, data: dict) -> None:
        if self.bus:
            self.bus.publish(event_type, data)

    def _lock(self, strategy_id: str) -> asyncio.Lock:
        lock = self._locks.get(strategy_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[strategy_id] = lock
        return lock

    # =========================================================================
    # IN-FLIGHT TRADES
    # =========================================================================

    def _trade_finished(self, strategy_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(strategy_id) is task:
            del self._inflight[strategy_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Trade for strategy {strategy_id} raised: {task.exception()}")

    async def _run_trade(self, strategy_id: str, trade) -> bool:
        """
        Run a swap-plus-record coroutine as the strategy's in-flight trade.

        Cancelling the caller does not cancel the trade; the task stays
        registered until it finishes so later ticks and stops can wait on it.
        """
        task = asyncio.ensure_future(trade)
        self._inflight[strategy_id] = task
        task.add_done_callback(lambda t: self._trade_finished(strategy_id, t))
        return await asyncio.shield(task)

    async def wait_for_trades(self, strategy_id: Optional[str] = None) -> None:
        """Wait until in-flight trades (of one strategy, or all) have finished"""
        if strategy_id is None:
            pending = [t for t in self._inflight.values() if not t.done()]
        else:
            task = self._inflight.get(strategy_id)
            pending = [task] if task is not None and not task.done() else []
        if pending:
            logger.info(f"Waiting for {len(pending)} in-flight trade(s)")
            await asyncio.wait(pending)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def create_strategy(self, config: dict) -> Strategy:
        """
        Validate a configuration and register a new (stopped) strategy.

        Raises:
            ConfigValidationError: invalid configuration or duplicate id
        """
        strategy = build_strategy(config, self.base_token)
        if strategy.id in self.strategies:
            raise ConfigValidationError(f"Strategy {strategy.id} already exists")
        strategy.created_at = self.clock()

        self.ledger.track_asset(strategy.target_asset, strategy.token_symbol)
        self.store.track(strategy.target_asset, strategy.token_symbol)

        self.strategies[strategy.id] = strategy
        self._classifiers[strategy.id] = VolatilityClassifier(
            window=self.volatility_window,
            min_samples=self.volatility_min_samples,
            profile=strategy.volatility_profile,
        )

        logger.info(
            f"Created strategy {strategy.name} ({strategy.id}): dip {strategy.dip_threshold_base}%, "
            f"profit {strategy.profit_target}%, amount {strategy.trade_amount_base}"
        )
        if strategy.enable_profit_range:
            logger.info(
                f"  Profit range {strategy.profit_range_min}%-{strategy.profit_range_max}% "
                f"in {strategy.profit_range_steps} steps ({strategy.profit_range_mode.value})"
            )
        return strategy

    def get(self, strategy_id: str) -> Optional[Strategy]:
        return self.strategies.get(strategy_id)

    def list_strategies(self) -> list[Strategy]:
        return list(self.strategies.values())

    def classifier(self, strategy_id: str) -> Optional[VolatilityClassifier]:
        return self._classifiers.get(strategy_id)

    def start_strategy(self, strategy_id: str, spawn_task: bool = True) -> Strategy:
        """
        Activate a strategy.

        Args:
            strategy_id: Strategy to start
            spawn_task: Launch the tick loop (needs a running event loop)

        Raises:
            KeyError: unknown strategy
            ConfigValidationError: strategy already completed its cycles
        """
        strategy = self.strategies[strategy_id]
        if strategy.cycles_exhausted:
            raise ConfigValidationError(
                f"Strategy {strategy.name} already completed {strategy.completed_cycles} cycles"
            )

        strategy.is_active = True
        strategy.status = StrategyStatus.ACTIVE
        if not strategy.has_open_position:
            strategy.dip_state = DipState.EVALUATING_DIP
        if spawn_task:
            task = self._tasks.get(strategy_id)
            if task is None or task.done():
                self._tasks[strategy_id] = asyncio.create_task(self._run_loop(strategy_id))

        logger.info(f"Started strategy {strategy.name} (every {strategy.price_check_interval}s)")
        self._publish(EventType.STRATEGY_STARTED, {"strategy_id": strategy.id, "name": strategy.name})
        return strategy

    async def stop_strategy(self, strategy_id: str) -> Strategy:
        """
        Deactivate a strategy, cancel its loop and wait for any in-flight trade.

        Raises:
            KeyError: unknown strategy
        """
        strategy = self.strategies[strategy_id]
        strategy.is_active = False
        if strategy.status == StrategyStatus.ACTIVE:
            strategy.status = StrategyStatus.STOPPED
        if not strategy.has_open_position:
            strategy.dip_state = DipState.NO_POSITION

        task = self._tasks.pop(strategy_id, None)
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.wait_for_trades(strategy_id)

        logger.info(f"Stopped strategy {strategy.name}")
        self._publish(EventType.STRATEGY_STOPPED, {"strategy_id": strategy.id, "name": strategy.name})
        return strategy

    async def delete_strategy(self, strategy_id: str) -> bool:
        if strategy_id not in self.strategies:
            return False
        await self.stop_strategy(strategy_id)
        strategy = self.strategies.pop(strategy_id)
        self._classifiers.pop(strategy_id, None)
        self._locks.pop(strategy_id, None)
        logger.info(f"Deleted strategy {strategy.name}")
        return True

    async def stop_all(self) -> None:
        for strategy_id in list(self._tasks.keys()):
            task = self._tasks.pop(strategy_id)
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        await self.wait_for_trades()

    async def _run_loop(self, strategy_id: str) -> None:
        while True:
            strategy = self.strategies.get(strategy_id)
            if strategy is None or not strategy.is_active:
                return
            try:
                await self.tick(strategy_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Strategy {strategy.name} tick error: {e}")
            if not strategy.is_active:
                return
            await asyncio.sleep(strategy.price_check_interval)

    # =========================================================================
    # TICK
    # =========================================================================

    async def tick(self, strategy_id: str) -> dict:
        """
        Run one evaluation cycle for a strategy.

        Returns:
            Summary dict with the observed price and the action taken
            (none, no_price, buy, profit_step, full_exit)
        """
        strategy = self.strategies[strategy_id]
        async with self._lock(strategy_id):
            await self.wait_for_trades(strategy_id)
            now = self.clock()
            summary = {"strategy_id": strategy_id, "price": None, "action": "none"}

            price, fresh = await self._current_price(strategy, now)
            if price is None:
                summary["action"] = "no_price"
                return summary
            summary["price"] = price
            self.ledger.mark_price(strategy.target_asset, price)

            # Only fresh quotes count as volatility samples
            if fresh:
                self._observe_volatility(strategy, price)
            summary["profile"] = strategy.volatility_profile.value

            if strategy.has_open_position:
                action = await self._evaluate_exit(strategy, price, now)
                if action is None and strategy.average_down and strategy.is_active:
                    if await self._evaluate_entry(strategy, price, now):
                        action = "buy"
            else:
                action = "buy" if await self._evaluate_entry(strategy, price, now) else None

            strategy.last_executed = now
            summary["action"] = action or "none"
            return summary

    async def _current_price(self, strategy: Strategy, now: float) -> tuple[Optional[float], bool]:
        """Fresh quote, else the cached price while it is young enough. Returns (price, fresh)."""
        asset = strategy.target_asset
        try:
            price = await asyncio.wait_for(
                self.quotes.get_price(asset, self.base_token),
                timeout=self.quote_timeout_sec,
            )
        except (QuoteUnavailableError, asyncio.TimeoutError) as e:
            cached = self.store.current_price(asset)
            age = now - (self.store.last_update(asset) or 0.0)
            if cached and age < self.stale_price_max_age_sec:
                logger.debug(f"Quote failed for {strategy.token_symbol or asset}, using cached price: {e}")
                return cached, False
            logger.warning(f"No price for {strategy.token_symbol or asset}: {e}")
            return None, False

        self.store.ingest(asset, price, source="strategy", timestamp=now)
        return price, True

    def _observe_volatility(self, strategy: Strategy, price: float) -> None:
        classifier = self._classifiers.setdefault(
            strategy.id,
            VolatilityClassifier(
                window=self.volatility_window,
                min_samples=self.volatility_min_samples,
                profile=strategy.volatility_profile,
            ),
        )
        profile = classifier.observe(price)
        if profile == strategy.volatility_profile:
            return

        old = strategy.volatility_profile
        strategy.volatility_profile = profile
        thresholds = strategy.recompute_thresholds()
        logger.info(
            f"{strategy.name}: volatility {old.value} -> {profile.value}, "
            f"dip tiers {thresholds.dip.small:.1f}/{thresholds.dip.medium:.1f}/"
            f"{thresholds.dip.large:.1f}/{thresholds.dip.extreme:.1f}%"
        )
        self._publish(EventType.THRESHOLDS_UPDATED, {
            "strategy_id": strategy.id,
            "old_profile": old.value,
            "new_profile": profile.value,
            "thresholds": thresholds.to_dict(),
        })

    # =========================================================================
    # ENTRY
    # =========================================================================

    def evaluate_entry(self, strategy: Strategy, price: float, now: Optional[float] = None) -> DipDecision:
        """Dip decision for the current price without executing anything"""
        now = self.clock() if now is None else now
        try:
            window = self.store.require_window(strategy.target_asset, strategy.dip_lookback_window, now=now)
        except InsufficientDataError as e:
            return DipDecision(state=DipState.WAITING, reason=str(e), current_price=price)
        return evaluate_dip(price, window, strategy.thresholds, strategy.average_entry_price)

    async def _evaluate_entry(self, strategy: Strategy, price: float, now: float) -> bool:
        decision = self.evaluate_entry(strategy, price, now)
        strategy.dip_state = decision.state
        if not decision.approved:
            logger.debug(f"{strategy.name}: {decision.reason}")
            return False

        logger.info(f"{strategy.name}: dip detected - {decision.reason}")
        try:
            analysis = await self.executor.analyze_liquidity(
                self.base_token, strategy.target_asset, strategy.max_slippage
            )
            max_safe = analysis.max_safe_amount
        except Exception as e:
            logger.warning(f"Liquidity analysis failed for {strategy.name}, using requested size: {e}")
            max_safe = None

        amount = clamp_to_liquidity(decision.amount, max_safe)
        if amount <= 0:
            return False
        return await self._run_trade(strategy.id, self._buy(strategy, decision, amount))

    async def _swap(self, token_in: str, token_out: str, amount: float, max_slippage: float) -> Optional[SwapResult]:
        # Failed swaps leave the strategy as it was; the next tick re-evaluates
        try:
            return await execute_swap_bounded(
                self.executor, self.wallet_address, token_in, token_out,
                amount, max_slippage, self.swap_timeout_sec,
            )
        except ExecutionFailedError as e:
            logger.warning(str(e))
            return None

    async def _buy(self, strategy: Strategy, decision: DipDecision, amount: float) -> bool:
        strategy.total_trades += 1
        result = await self._swap(self.base_token, strategy.target_asset, amount, strategy.max_slippage)
        if result is None:
            return False

        now = self.clock()
        tokens = result.amount_out
        fill_price = amount / tokens
        position = Position(
            id=new_position_id(),
            entry_price=fill_price,
            entry_amount_base=amount,
            entry_amount_asset=tokens,
            entry_timestamp=now,
            dip_tier=decision.tier.value if decision.tier else None,
            dip_percent=decision.dip_percent,
            volatility_profile=strategy.volatility_profile.value,
            tx_ref=result.tx_ref,
        )
        strategy.positions.append(position)
        strategy.successful_trades += 1
        self.ledger.record_trade(strategy.target_asset, TradeType.BUY, fill_price, tokens, timestamp=now)

        if strategy.enable_profit_range and (
            strategy.profit_range_state is None or strategy.profit_range_state.is_complete
        ):
            strategy.profit_range_state = ProfitRangeSchedule.create(
                strategy.profit_range_min,
                strategy.profit_range_max,
                strategy.profit_range_steps,
                strategy.profit_range_mode,
            )
        if strategy.profit_range_state:
            base_spent, held = strategy.holdings()
            strategy.profit_range_state.refresh(base_spent / held, held)

        logger.info(
            f"DIP BUY {strategy.name}: {amount:.6f} base -> {tokens:.6f} {strategy.token_symbol} "
            f"@ {fill_price:.8f} ({decision.tier.value if decision.tier else '-'} dip "
            f"{decision.dip_percent:.2f}%), avg now {strategy.average_entry_price:.8f}"
        )
        self._publish(EventType.DIP_BUY, {
            "strategy_id": strategy.id,
            "name": strategy.name,
            "asset": strategy.target_asset,
            "symbol": strategy.token_symbol,
            "price": fill_price,
            "amount_base": amount,
            "tokens": tokens,
            "tier": position.dip_tier,
            "dip_percent": decision.dip_percent,
            "volatility_profile": strategy.volatility_profile.value,
            "average_price": strategy.average_entry_price,
            "tx_ref": result.tx_ref,
        })
        return True

    # =========================================================================
    # EXIT
    # =========================================================================

    async def _evaluate_exit(self, strategy: Strategy, price: float, now: float) -> Optional[str]:
        base_spent, tokens = strategy.holdings()
        if tokens <= 0:
            return None
        pnl = unrealized_pnl_percent(tokens, price, base_spent)

        if not strategy.enable_profit_range:
            if pnl >= strategy.profit_target:
                logger.info(f"{strategy.name}: profit target {strategy.profit_target}% reached ({pnl:.2f}%)")
                done = await self._run_trade(strategy.id, self._full_exit(strategy, "profit_target_reached", pnl))
                return "full_exit" if done else None
            return None

        signal = evaluate_fast_exit(pnl, strategy.thresholds.sell, strategy.fast_exit_min_tier)
        if signal:
            logger.info(
                f"{strategy.name}: fast exit {signal.tier.value} at {pnl:.2f}% "
                f"(threshold {signal.threshold:.2f}%, {signal.urgency})"
            )
            done = await self._run_trade(strategy.id, self._full_exit(strategy, signal.reason, pnl, signal))
            return "full_exit" if done else None

        schedule = strategy.profit_range_state
        if schedule is None or schedule.is_complete:
            schedule = ProfitRangeSchedule.create(
                strategy.profit_range_min,
                strategy.profit_range_max,
                strategy.profit_range_steps,
                strategy.profit_range_mode,
            )
            strategy.profit_range_state = schedule
        schedule.refresh(base_spent / tokens, tokens)

        action = None
        for step in schedule.due_steps(price):
            if not await self._run_trade(strategy.id, self._sell_step(strategy, step, price)):
                break
            action = "profit_step"
            if not strategy.has_open_position:
                self._complete_cycle(strategy, "profit_range_completed")
                action = "full_exit"
                break
            _, remaining = strategy.holdings()
            schedule.refresh(strategy.average_entry_price, remaining)
        return action

    async def _sell_step(self, strategy: Strategy, step: ProfitStep, price: float) -> bool:
        schedule = strategy.profit_range_state
        base_spent, held = strategy.holdings()
        tokens = schedule.tokens_for(step, held)
        if tokens <= 0:
            return False

        strategy.total_trades += 1
        result = await self._swap(strategy.target_asset, self.base_token, tokens, strategy.max_slippage)
        if result is None:
            return False

        now = self.clock()
        received = result.amount_out
        exit_price = received / tokens
        cost = base_spent * tokens / held
        profit = received - cost

        reduce_positions(strategy.positions, tokens, exit_price, now, f"profit_step_{step.step_number}")
        schedule.mark_executed(step, tokens, received, now)
        strategy.successful_trades += 1
        strategy.total_profit += profit
        self.ledger.record_trade(strategy.target_asset, TradeType.SELL, exit_price, tokens, timestamp=now)

        logger.info(
            f"PROFIT STEP {step.step_number} {strategy.name}: sold {tokens:.6f} {strategy.token_symbol} "
            f"@ {exit_price:.8f} (target {step.profit_percent:.2f}%) for {received:.6f}, profit {profit:+.6f}"
        )
        self._publish(EventType.PROFIT_STEP, {
            "strategy_id": strategy.id,
            "name": strategy.name,
            "asset": strategy.target_asset,
            "step": step.to_dict(),
            "tokens_sold": tokens,
            "price": exit_price,
            "base_received": received,
            "profit": profit,
            "tx_ref": result.tx_ref,
        })
        return True

    async def _full_exit(
        self,
        strategy: Strategy,
        reason: str,
        pnl_percent: float,
        signal: Optional[ExitSignal] = None,
    ) -> bool:
        base_spent, tokens = strategy.holdings()
        if tokens <= 0:
            return False

        strategy.total_trades += 1
        result = await self._swap(strategy.target_asset, self.base_token, tokens, strategy.max_slippage)
        if result is None:
            return False

        now = self.clock()
        received = result.amount_out
        exit_price = received / tokens
        profit = received - base_spent

        reduce_positions(strategy.positions, tokens, exit_price, now, reason)
        for position in strategy.open_positions:
            position.close(exit_price, now, reason)
        discarded = strategy.profit_range_state.discard_pending() if strategy.profit_range_state else 0

        strategy.successful_trades += 1
        strategy.total_profit += profit
        self.ledger.record_trade(strategy.target_asset, TradeType.SELL, exit_price, tokens, timestamp=now)

        logger.info(
            f"FULL EXIT {strategy.name}: sold {tokens:.6f} {strategy.token_symbol} @ {exit_price:.8f} "
            f"for {received:.6f} ({pnl_percent:+.2f}%, profit {profit:+.6f}) - {reason}"
        )
        self._publish(EventType.FULL_EXIT, {
            "strategy_id": strategy.id,
            "name": strategy.name,
            "asset": strategy.target_asset,
            "reason": reason,
            "tier": signal.tier.value if signal else None,
            "tokens_sold": tokens,
            "price": exit_price,
            "base_received": received,
            "profit": profit,
            "profit_percent": pnl_percent,
            "discarded_steps": discarded,
            "tx_ref": result.tx_ref,
        })
        self._complete_cycle(strategy, reason)
        return True

    def _complete_cycle(self, strategy: Strategy, reason: str) -> None:
        strategy.completed_cycles += 1
        strategy.profit_range_state = None
        strategy.dip_state = DipState.EVALUATING_DIP if strategy.is_active else DipState.NO_POSITION
        logger.info(
            f"{strategy.name}: cycle {strategy.completed_cycles} complete, "
            f"total profit {strategy.total_profit:+.6f}"
        )
        if not strategy.cycles_exhausted:
            return

        strategy.is_active = False
        strategy.status = StrategyStatus.COMPLETED
        strategy.dip_state = DipState.NO_POSITION
        strategy.completion_reason = f"max_cycles_reached ({reason})"
        logger.info(f"Strategy {strategy.name} completed after {strategy.completed_cycles} cycles")
        self._publish(EventType.STRATEGY_COMPLETED, {
            "strategy_id": strategy.id,
            "name": strategy.name,
            "completed_cycles": strategy.completed_cycles,
            "total_profit": strategy.total_profit,
            "reason": strategy.completion_reason,
        })

    # =========================================================================
    # REPORTING
    # =========================================================================

    def get_statistics(self) -> dict:
        strategies = list(self.strategies.values())
        return {
            "total_strategies": len(strategies),
            "active_strategies": sum(1 for s in strategies if s.is_active),
            "completed_strategies": sum(1 for s in strategies if s.status == StrategyStatus.COMPLETED),
            "open_positions": sum(len(s.open_positions) for s in strategies),
            "total_trades": sum(s.total_trades for s in strategies),
            "successful_trades": sum(s.successful_trades for s in strategies),
            "total_profit": sum(s.total_profit for s in strategies),
        }

    def to_dict(self) -> dict:
        return {
            sid: {
                "strategy": strategy.to_dict(),
                "volatility": self._classifiers[sid].to_dict() if sid in self._classifiers else None,
            }
            for sid, strategy in self.strategies.items()
        }

    def load_dict(self, data: dict) -> list[str]:
        """
        Restore strategies from a snapshot.

        Returns:
            Ids of strategies that were active when the snapshot was taken
        """
        was_active = []
        for sid, payload in data.items():
            strategy = Strategy.from_dict(payload["strategy"])
            classifier = VolatilityClassifier(
                window=self.volatility_window,
                min_samples=self.volatility_min_samples,
                profile=strategy.volatility_profile,
            )
            if payload.get("volatility"):
                classifier.load_dict(payload["volatility"])

            self.strategies[sid] = strategy
            self._classifiers[sid] = classifier
            if not self.ledger.is_tracked(strategy.target_asset):
                self.ledger.track_asset(strategy.target_asset, strategy.token_symbol)
            self.store.track(strategy.target_asset, strategy.token_symbol)

            if strategy.is_active:
                was_active.append(sid)
                strategy.is_active = False
        logger.info(f"Restored {len(data)} strategies ({len(was_active)} were active)")
        return was_active
