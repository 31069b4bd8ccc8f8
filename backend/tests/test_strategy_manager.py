"""
Tests for the Strategy Manager (strategy_manager.py).

Tests cover:
- Strategy creation and validation
- Start / stop / delete lifecycle
- Dip buys, liquidity clamping and averaging down
- Simple profit-target exits and cycle limits
- Profit-range steps and fast exits
- Volatility-driven threshold updates
- Snapshot restore
"""
import asyncio
import pytest
from unittest.mock import AsyncMock

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import WLD_ADDRESS
from dip_detector import DipState
from errors import ConfigValidationError
from events import EventType
from executor import LiquidityAnalysis, SwapResult
from strategy import PositionStatus, StrategyStatus
from strategy_manager import StrategyManager
from volatility import VolatilityProfile
from conftest import ASSET, GatedExecutionService


def strategy_config(**overrides):
    config = {
        "id": "s1",
        "name": "Test strategy",
        "target_asset": ASSET,
        "token_symbol": "TKN",
        "dip_threshold_base": 15,
        "profit_target": 1,
        "trade_amount_base": 0.1,
        "dip_lookback_window": 300,
    }
    config.update(overrides)
    return config


async def buy_the_dip(manager, store, quotes, clock, strategy_id="s1"):
    """Seed a 1.0 high and tick at 0.8: a 20% small-tier dip."""
    store.ingest(ASSET, 1.0, timestamp=clock.now - 60)
    quotes.set_price(ASSET, 0.8)
    return await manager.tick(strategy_id)


class TestCreateStrategy:
    """Tests for create_strategy."""

    def test_defaults_and_tracking(self, manager, ledger, store):
        """A new strategy is stopped and its asset tracked."""
        strategy = manager.create_strategy(strategy_config())
        assert strategy.status == StrategyStatus.CREATED
        assert not strategy.is_active
        assert strategy.profit_range_min == 1
        assert strategy.profit_range_max == 2
        assert not strategy.enable_profit_range
        assert ledger.is_tracked(ASSET)
        assert store.is_tracked(ASSET)

    def test_invalid_address_rejected(self, manager):
        with pytest.raises(ConfigValidationError):
            manager.create_strategy(strategy_config(target_asset="0xnope"))

    def test_base_token_rejected(self, manager):
        with pytest.raises(ConfigValidationError):
            manager.create_strategy(strategy_config(target_asset=WLD_ADDRESS))

    def test_invalid_range_rejected(self, manager):
        with pytest.raises(ConfigValidationError):
            manager.create_strategy(strategy_config(profit_range_min=10, profit_range_max=5))
        with pytest.raises(ConfigValidationError):
            manager.create_strategy(strategy_config(profit_range_steps=0))

    def test_duplicate_id_rejected(self, manager):
        manager.create_strategy(strategy_config())
        with pytest.raises(ConfigValidationError):
            manager.create_strategy(strategy_config())


class TestLifecycle:
    """Tests for start / stop / delete."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, manager, bus):
        manager.create_strategy(strategy_config())
        strategy = manager.start_strategy("s1", spawn_task=False)
        assert strategy.is_active
        assert strategy.status == StrategyStatus.ACTIVE

        await manager.stop_strategy("s1")
        assert not strategy.is_active
        assert strategy.status == StrategyStatus.STOPPED
        assert len(bus.recent(event_type=EventType.STRATEGY_STARTED)) == 1
        assert len(bus.recent(event_type=EventType.STRATEGY_STOPPED)) == 1

    @pytest.mark.asyncio
    async def test_run_loop_ticks_until_stopped(self, manager, store):
        manager.create_strategy(strategy_config(price_check_interval=0.01))
        manager.start_strategy("s1")
        await asyncio.sleep(0.05)
        await manager.stop_strategy("s1")
        assert manager.get("s1").last_executed is not None
        assert store.current_price(ASSET) == 0.1

    @pytest.mark.asyncio
    async def test_delete(self, manager):
        manager.create_strategy(strategy_config())
        assert await manager.delete_strategy("s1")
        assert manager.get("s1") is None
        assert not await manager.delete_strategy("s1")

    def test_unknown_strategy(self, manager):
        with pytest.raises(KeyError):
            manager.start_strategy("missing", spawn_task=False)


class TestInFlightTrades:
    """Tests for trades that outlive a cancelled tick."""

    @pytest.fixture
    def gated(self, quotes):
        return GatedExecutionService(quotes, WLD_ADDRESS)

    @pytest.fixture
    def gated_manager(self, store, ledger, quotes, gated, bus, clock):
        return StrategyManager(store, ledger, quotes, gated, bus=bus, clock=clock)

    @pytest.mark.asyncio
    async def test_cancelled_tick_blocks_next_tick_until_trade_lands(
        self, gated_manager, gated, store, ledger, quotes, clock
    ):
        """A new tick waits for the running buy and then sees its position."""
        gated_manager.create_strategy(strategy_config())
        store.ingest(ASSET, 1.0, timestamp=clock.now - 60)
        quotes.set_price(ASSET, 0.8)

        first = asyncio.create_task(gated_manager.tick("s1"))
        await gated.started.wait()
        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        second = asyncio.create_task(gated_manager.tick("s1"))
        await asyncio.sleep(0.01)
        assert not second.done()

        gated.gate.set()
        summary = await second

        assert summary["action"] == "none"
        assert gated.calls == 1
        assert len(gated_manager.get("s1").positions) == 1
        assert ledger.get(ASSET).quantity_held == pytest.approx(0.0625)

    @pytest.mark.asyncio
    async def test_stop_waits_for_running_trade(self, gated_manager, gated, store, ledger, quotes, clock):
        """Stopping mid-swap returns only after the fill is recorded."""
        gated_manager.create_strategy(strategy_config(price_check_interval=0.01))
        store.ingest(ASSET, 1.0, timestamp=clock.now - 60)
        quotes.set_price(ASSET, 0.8)
        gated_manager.start_strategy("s1")
        await gated.started.wait()

        stop = asyncio.create_task(gated_manager.stop_strategy("s1"))
        await asyncio.sleep(0.01)
        assert not stop.done()

        gated.gate.set()
        strategy = await stop
        assert strategy.status == StrategyStatus.STOPPED
        assert len(strategy.positions) == 1
        assert ledger.get(ASSET).buy_count == 1

        # Restarting sees the position, so the same dip is not bought twice
        await gated_manager.tick("s1")
        assert gated.calls == 1


class TestDipBuy:
    """Tests for the entry side of a tick."""

    @pytest.mark.asyncio
    async def test_dip_state_follows_the_cycle(self, manager, store, quotes, clock):
        strategy = manager.create_strategy(strategy_config())
        assert strategy.dip_state == DipState.NO_POSITION

        manager.start_strategy("s1", spawn_task=False)
        assert strategy.dip_state == DipState.EVALUATING_DIP

        await manager.tick("s1")
        assert strategy.dip_state == DipState.WAITING

        clock.advance(10)
        await buy_the_dip(manager, store, quotes, clock)
        assert strategy.dip_state == DipState.BUY_APPROVED

        clock.advance(10)
        quotes.set_price(ASSET, 0.9)
        assert (await manager.tick("s1"))["action"] == "full_exit"
        assert strategy.dip_state == DipState.EVALUATING_DIP

        await manager.stop_strategy("s1")
        assert strategy.dip_state == DipState.NO_POSITION

    @pytest.mark.asyncio
    async def test_dip_buy_creates_position(self, manager, store, ledger, quotes, clock, bus):
        """A 20% dip under normal volatility buys half the base amount."""
        manager.create_strategy(strategy_config())
        summary = await buy_the_dip(manager, store, quotes, clock)

        assert summary["action"] == "buy"
        strategy = manager.get("s1")
        assert len(strategy.open_positions) == 1
        position = strategy.open_positions[0]
        assert position.entry_amount_base == pytest.approx(0.05)
        assert position.entry_amount_asset == pytest.approx(0.0625)
        assert position.entry_price == pytest.approx(0.8)
        assert position.dip_tier == "small"
        assert ledger.get(ASSET).quantity_held == pytest.approx(0.0625)

        events = bus.recent(event_type=EventType.DIP_BUY)
        assert events[0]["data"]["tier"] == "small"

    @pytest.mark.asyncio
    async def test_no_dip_no_trade(self, manager, quotes):
        manager.create_strategy(strategy_config())
        summary = await manager.tick("s1")
        assert summary["action"] == "none"
        assert manager.get("s1").positions == []

    @pytest.mark.asyncio
    async def test_liquidity_clamps_size(self, manager, store, quotes, executor, clock):
        """Buys never exceed the pool's safe amount."""
        executor.set_liquidity_cap(ASSET, 0.02)
        manager.create_strategy(strategy_config())
        await buy_the_dip(manager, store, quotes, clock)
        assert manager.get("s1").positions[0].entry_amount_base == pytest.approx(0.02)

    @pytest.mark.asyncio
    async def test_no_liquidity_skips_buy(self, manager, store, quotes, executor, clock):
        executor.set_liquidity_cap(ASSET, 0.0)
        manager.create_strategy(strategy_config())
        summary = await buy_the_dip(manager, store, quotes, clock)
        assert summary["action"] == "none"
        assert manager.get("s1").positions == []

    @pytest.mark.asyncio
    async def test_failed_swap_leaves_no_state(self, store, ledger, quotes, bus, clock):
        """A failed buy creates no position and no ledger entry."""
        executor = AsyncMock()
        executor.analyze_liquidity = AsyncMock(return_value=LiquidityAnalysis(WLD_ADDRESS, ASSET, 1.0, None))
        executor.execute_swap = AsyncMock(return_value=SwapResult(
            success=False, token_in=WLD_ADDRESS, token_out=ASSET, amount_in=0.05, error="reverted",
        ))
        manager = StrategyManager(store, ledger, quotes, executor, bus=bus, clock=clock)
        manager.create_strategy(strategy_config())

        summary = await buy_the_dip(manager, store, quotes, clock)

        assert summary["action"] == "none"
        strategy = manager.get("s1")
        assert strategy.positions == []
        assert strategy.total_trades == 1
        assert strategy.successful_trades == 0
        assert ledger.get(ASSET).buy_count == 0

    @pytest.mark.asyncio
    async def test_holding_blocks_new_dips_by_default(self, manager, store, quotes, clock):
        manager.create_strategy(strategy_config())
        await buy_the_dip(manager, store, quotes, clock)

        clock.advance(10)
        quotes.set_price(ASSET, 0.6)
        await manager.tick("s1")
        assert len(manager.get("s1").positions) == 1

    @pytest.mark.asyncio
    async def test_average_down_requires_lower_price(self, manager, store, quotes, clock):
        """With averaging down, a deeper dip below the average buys again."""
        manager.create_strategy(strategy_config(average_down=True))
        await buy_the_dip(manager, store, quotes, clock)

        clock.advance(10)
        quotes.set_price(ASSET, 0.6)
        summary = await manager.tick("s1")

        strategy = manager.get("s1")
        assert summary["action"] == "buy"
        assert len(strategy.open_positions) == 2
        # 40% dip is a medium tier buy of 0.1 at 0.6
        assert strategy.positions[1].entry_amount_base == pytest.approx(0.1)
        assert strategy.average_entry_price < 0.8

    def test_entry_waits_without_history(self, manager):
        """With no observations in the lookback window the entry check waits."""
        strategy = manager.create_strategy(strategy_config())
        decision = manager.evaluate_entry(strategy, 0.8)
        assert decision.state == DipState.WAITING
        assert "Insufficient data" in decision.reason

    @pytest.mark.asyncio
    async def test_no_price_skips_tick(self, manager, quotes):
        manager.create_strategy(strategy_config())
        quotes.remove_price(ASSET)
        summary = await manager.tick("s1")
        assert summary["action"] == "no_price"


class TestSimpleExit:
    """Tests for the profit-target exit."""

    @pytest.mark.asyncio
    async def test_profit_target_sells_everything(self, manager, store, ledger, quotes, clock, bus):
        manager.create_strategy(strategy_config())
        await buy_the_dip(manager, store, quotes, clock)

        clock.advance(10)
        quotes.set_price(ASSET, 0.81)
        summary = await manager.tick("s1")

        strategy = manager.get("s1")
        assert summary["action"] == "full_exit"
        assert not strategy.has_open_position
        assert strategy.positions[0].status == PositionStatus.CLOSED
        assert strategy.positions[0].exit_reason == "profit_target_reached"
        assert strategy.completed_cycles == 1
        assert strategy.total_profit == pytest.approx(0.0625 * 0.81 - 0.05)
        assert ledger.get(ASSET).quantity_held == pytest.approx(0.0)
        assert len(bus.recent(event_type=EventType.FULL_EXIT)) == 1

    @pytest.mark.asyncio
    async def test_below_target_holds(self, manager, store, quotes, clock):
        manager.create_strategy(strategy_config())
        await buy_the_dip(manager, store, quotes, clock)

        clock.advance(10)
        quotes.set_price(ASSET, 0.805)
        summary = await manager.tick("s1")
        assert summary["action"] == "none"
        assert manager.get("s1").has_open_position

    @pytest.mark.asyncio
    async def test_max_cycles_completes_strategy(self, manager, store, quotes, clock, bus):
        manager.create_strategy(strategy_config(max_cycles=1))
        manager.start_strategy("s1", spawn_task=False)
        await buy_the_dip(manager, store, quotes, clock)

        clock.advance(10)
        quotes.set_price(ASSET, 0.9)
        await manager.tick("s1")

        strategy = manager.get("s1")
        assert strategy.status == StrategyStatus.COMPLETED
        assert not strategy.is_active
        assert strategy.completion_reason.startswith("max_cycles_reached")
        assert len(bus.recent(event_type=EventType.STRATEGY_COMPLETED)) == 1
        with pytest.raises(ConfigValidationError):
            manager.start_strategy("s1", spawn_task=False)


class TestProfitRange:
    """Tests for profit-range steps and fast exits."""

    @pytest.mark.asyncio
    async def test_steps_execute_in_order(self, manager, store, quotes, clock, bus):
        """Linear [10, 40] in 3 steps sells a third at each target."""
        manager.create_strategy(strategy_config(
            enable_profit_range=True,
            profit_range_min=10,
            profit_range_max=40,
            profit_range_steps=3,
            fast_exit_min_tier="extreme",
        ))
        await buy_the_dip(manager, store, quotes, clock)
        strategy = manager.get("s1")
        schedule = strategy.profit_range_state
        assert [s.trigger_price for s in schedule.steps] == pytest.approx([0.96, 1.04, 1.12])

        clock.advance(10)
        quotes.set_price(ASSET, 0.97)
        summary = await manager.tick("s1")
        assert summary["action"] == "profit_step"
        _, held = strategy.holdings()
        assert held == pytest.approx(0.0625 * 2 / 3)
        assert schedule.steps[0].executed

        clock.advance(10)
        quotes.set_price(ASSET, 1.13)
        summary = await manager.tick("s1")
        assert summary["action"] == "full_exit"
        assert not strategy.has_open_position
        assert strategy.completed_cycles == 1
        assert strategy.profit_range_state is None
        assert len(bus.recent(event_type=EventType.PROFIT_STEP)) == 3

    @pytest.mark.asyncio
    async def test_fast_exit_discards_pending_steps(self, manager, store, quotes, clock, bus):
        """Profit above the quick tier exits fully before any step."""
        manager.create_strategy(strategy_config(
            enable_profit_range=True,
            profit_range_min=10,
            profit_range_max=40,
            profit_range_steps=3,
        ))
        await buy_the_dip(manager, store, quotes, clock)

        clock.advance(10)
        # 6.25% profit: above the 5% quick tier, below the first 20% step
        quotes.set_price(ASSET, 0.85)
        summary = await manager.tick("s1")

        strategy = manager.get("s1")
        assert summary["action"] == "full_exit"
        assert not strategy.has_open_position
        event = bus.recent(event_type=EventType.FULL_EXIT)[0]["data"]
        assert event["reason"] == "quick_profit"
        assert event["discarded_steps"] == 3
        assert bus.recent(event_type=EventType.PROFIT_STEP) == []


class TestVolatility:
    """Tests for volatility-driven thresholds."""

    @pytest.mark.asyncio
    async def test_profile_change_recomputes_thresholds(self, store, ledger, quotes, executor, bus, clock):
        manager = StrategyManager(
            store, ledger, quotes, executor, bus=bus, clock=clock,
            volatility_min_samples=2,
        )
        manager.create_strategy(strategy_config())
        quotes.set_price(ASSET, 1.0)
        await manager.tick("s1")

        clock.advance(10)
        quotes.set_price(ASSET, 2.2)
        await manager.tick("s1")

        strategy = manager.get("s1")
        assert strategy.volatility_profile == VolatilityProfile.EXTREME
        assert strategy.thresholds.dip.small == pytest.approx(30.0)
        events = bus.recent(event_type=EventType.THRESHOLDS_UPDATED)
        assert events[0]["data"]["new_profile"] == "extreme"

    @pytest.mark.asyncio
    async def test_cached_price_is_not_a_volatility_sample(self, manager, quotes, clock):
        """Ticks that fall back to the cached price leave the classifier alone."""
        manager.create_strategy(strategy_config())
        quotes.set_price(ASSET, 1.0)
        await manager.tick("s1")

        quotes.remove_price(ASSET)
        clock.advance(10)
        summary = await manager.tick("s1")

        assert summary["price"] == 1.0
        assert manager.classifier("s1").prices == [1.0]


class TestSnapshot:
    """Tests for to_dict / load_dict."""

    @pytest.mark.asyncio
    async def test_restore_keeps_positions_and_activity(self, manager, store, ledger, quotes, executor, clock):
        manager.create_strategy(strategy_config(enable_profit_range=True, profit_range_min=10, profit_range_max=40))
        manager.start_strategy("s1", spawn_task=False)
        await buy_the_dip(manager, store, quotes, clock)

        restored = StrategyManager(store, ledger, quotes, executor, clock=clock)
        was_active = restored.load_dict(manager.to_dict())

        assert was_active == ["s1"]
        strategy = restored.get("s1")
        assert not strategy.is_active
        assert len(strategy.open_positions) == 1
        assert strategy.profit_range_state is not None
        assert len(strategy.profit_range_state.pending) == 3

    def test_statistics(self, manager):
        manager.create_strategy(strategy_config())
        stats = manager.get_statistics()
        assert stats["total_strategies"] == 1
        assert stats["active_strategies"] == 0
