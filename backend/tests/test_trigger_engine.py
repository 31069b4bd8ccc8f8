"""
Tests for the Trigger Engine (trigger_engine.py).

Tests cover:
- Trigger validation
- Condition evaluation against the price store
- Execution, counting and deactivation
- Failure handling and stale prices
- Executions that outlive a cancelled check
"""
import asyncio
import pytest
from unittest.mock import AsyncMock

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import DAY, WLD_ADDRESS
from errors import ConfigValidationError
from events import EventType
from executor import SwapResult
from trigger_engine import Trigger, TriggerAction, TriggerCondition, TriggerEngine
from conftest import ASSET, START_TIME, GatedExecutionService, seed_prices


@pytest.fixture
def engine(store, ledger, executor, bus, clock):
    """Create a trigger engine with paper execution."""
    return TriggerEngine(store, ledger, executor, bus=bus, base_token=WLD_ADDRESS, clock=clock)


def drop_trigger(**overrides):
    config = {
        "asset_address": ASSET,
        "token_symbol": "TKN",
        "action": "buy",
        "condition": "price_drop",
        "threshold": 10,
        "timeframe": 300,
        "amount": 1.0,
    }
    config.update(overrides)
    return config


class TestCreateTrigger:
    """Tests for trigger creation."""

    def test_defaults(self, engine, ledger, store):
        """A valid trigger is registered and its asset tracked."""
        trigger = engine.create_trigger({
            "asset_address": ASSET,
            "action": "sell",
            "condition": "price_rise",
            "threshold": 5,
        })
        assert trigger.timeframe == 300.0
        assert trigger.amount == 0.1
        assert trigger.max_slippage == 2.0
        assert trigger.max_triggers == 1
        assert trigger.is_active
        assert ledger.is_tracked(ASSET)
        assert store.is_tracked(ASSET)
        assert engine.get(trigger.id) is trigger

    def test_rejects_bad_address(self, engine):
        with pytest.raises(ConfigValidationError):
            engine.create_trigger(drop_trigger(asset_address="not-an-address"))

    def test_rejects_unknown_condition(self, engine):
        with pytest.raises(ConfigValidationError):
            engine.create_trigger(drop_trigger(condition="sideways"))

    def test_rejects_non_positive_values(self, engine):
        with pytest.raises(ConfigValidationError):
            engine.create_trigger(drop_trigger(threshold=0))
        with pytest.raises(ConfigValidationError):
            engine.create_trigger(drop_trigger(amount=-1))
        with pytest.raises(ConfigValidationError):
            engine.create_trigger(drop_trigger(max_triggers=0))

    def test_sma_condition_needs_sma_window(self, engine):
        """SMA conditions map their timeframe onto an SMA window label."""
        trigger = engine.create_trigger(drop_trigger(condition="below_sma", timeframe=3600))
        assert trigger.timeframe == "1h"
        with pytest.raises(ConfigValidationError):
            engine.create_trigger(drop_trigger(condition="above_sma", timeframe=1234))

    def test_remove(self, engine):
        trigger = engine.create_trigger(drop_trigger())
        assert engine.remove_trigger(trigger.id)
        assert not engine.remove_trigger(trigger.id)
        assert engine.list_triggers() == []


class TestConditions:
    """Tests for check_condition."""

    def test_no_price_data(self, engine):
        trigger = engine.create_trigger(drop_trigger())
        check = engine.check_condition(trigger)
        assert not check.met
        assert check.details == "No price data"

    def test_price_drop_met(self, engine, store, clock):
        """A 20% drop over the timeframe meets a 10% drop trigger."""
        trigger = engine.create_trigger(drop_trigger())
        store.ingest(ASSET, 1.0, timestamp=START_TIME)
        store.ingest(ASSET, 0.8, timestamp=START_TIME + 300)
        clock.now = START_TIME + 300

        check = engine.check_condition(trigger)
        assert check.met
        assert check.value == pytest.approx(-20.0)

    def test_price_drop_not_met(self, engine, store, clock):
        trigger = engine.create_trigger(drop_trigger())
        store.ingest(ASSET, 1.0, timestamp=START_TIME)
        store.ingest(ASSET, 0.95, timestamp=START_TIME + 300)
        clock.now = START_TIME + 300
        assert not engine.check_condition(trigger).met

    def test_price_rise(self, engine, store, clock):
        trigger = engine.create_trigger(drop_trigger(condition="price_rise", action="sell"))
        store.ingest(ASSET, 1.0, timestamp=START_TIME)
        store.ingest(ASSET, 1.2, timestamp=START_TIME + 300)
        clock.now = START_TIME + 300
        assert engine.check_condition(trigger).met

    def test_below_sma(self, engine, store, clock):
        """Price 10% under the 5min SMA meets a 5% below_sma trigger."""
        trigger = engine.create_trigger(drop_trigger(condition="below_sma", timeframe="5min", threshold=5))
        last = seed_prices(store, ASSET, [1.0, 1.0, 1.0, 0.7], START_TIME, step=60)
        clock.now = last

        check = engine.check_condition(trigger)
        # SMA over the window is (1 + 1 + 1 + 0.7) / 4 = 0.925
        assert check.value == pytest.approx((0.925 - 0.7) / 0.925 * 100)
        assert check.met

    def test_stale_price_never_meets(self, engine, store, clock):
        """A price older than the staleness bound is not acted on."""
        trigger = engine.create_trigger(drop_trigger())
        store.ingest(ASSET, 1.0, timestamp=START_TIME)
        store.ingest(ASSET, 0.8, timestamp=START_TIME + 300)
        clock.now = START_TIME + 300 + DAY + 1

        check = engine.check_condition(trigger)
        assert not check.met
        assert "stale" in check.details

    def test_sma_unavailable(self, engine, store, clock):
        """Too little history never meets an SMA condition."""
        trigger = engine.create_trigger(drop_trigger(condition="above_sma", timeframe="5min", threshold=1))
        store.ingest(ASSET, 1.0, timestamp=START_TIME)
        clock.now = START_TIME
        check = engine.check_condition(trigger)
        assert not check.met
        assert "unavailable" in check.details


class TestExecution:
    """Tests for trigger execution."""

    @pytest.mark.asyncio
    async def test_fires_records_and_deactivates(self, engine, store, ledger, quotes, bus, clock):
        """A met buy trigger swaps, records the buy and deactivates."""
        trigger = engine.create_trigger(drop_trigger())
        quotes.set_price(ASSET, 0.8)
        store.ingest(ASSET, 1.0, timestamp=START_TIME)
        store.ingest(ASSET, 0.8, timestamp=START_TIME + 300)
        clock.now = START_TIME + 300

        fired = await engine.check_all()

        assert fired == [trigger]
        assert trigger.trigger_count == 1
        assert not trigger.is_active
        entry = ledger.get(ASSET)
        assert entry.quantity_held == pytest.approx(1.25)
        assert entry.weighted_average_price == pytest.approx(0.8)
        assert len(bus.recent(event_type=EventType.TRIGGER_FIRED)) == 1

        # Inactive triggers do not fire again
        assert await engine.check_all() == []

    @pytest.mark.asyncio
    async def test_repeats_up_to_max_triggers(self, engine, store, quotes, clock):
        trigger = engine.create_trigger(drop_trigger(max_triggers=2))
        quotes.set_price(ASSET, 0.8)
        store.ingest(ASSET, 1.0, timestamp=START_TIME)
        store.ingest(ASSET, 0.8, timestamp=START_TIME + 300)
        clock.now = START_TIME + 300

        assert await engine.check_trigger(trigger)
        assert trigger.is_active
        assert await engine.check_trigger(trigger)
        assert not trigger.is_active
        assert not await engine.check_trigger(trigger)
        assert trigger.trigger_count == 2

    @pytest.mark.asyncio
    async def test_sell_trigger_records_sell(self, engine, store, ledger, quotes, clock):
        """Sell triggers sell `amount` tokens at the quoted price."""
        ledger.track_asset(ASSET, "TKN")
        ledger.record_trade(ASSET, "buy", 1.0, 5)
        trigger = engine.create_trigger(drop_trigger(condition="price_rise", action="sell", amount=2))
        quotes.set_price(ASSET, 1.5)
        store.ingest(ASSET, 1.0, timestamp=START_TIME)
        store.ingest(ASSET, 1.5, timestamp=START_TIME + 300)
        clock.now = START_TIME + 300

        assert await engine.check_trigger(trigger)
        entry = ledger.get(ASSET)
        assert entry.quantity_held == pytest.approx(3)
        assert entry.realized_profit == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_failed_execution_does_not_count(self, store, ledger, bus, clock):
        """A failed swap leaves the trigger armed."""
        executor = AsyncMock()
        executor.execute_swap = AsyncMock(return_value=SwapResult(
            success=False, token_in=WLD_ADDRESS, token_out=ASSET, amount_in=1.0, error="no route",
        ))
        engine = TriggerEngine(store, ledger, executor, bus=bus, clock=clock)
        trigger = engine.create_trigger(drop_trigger())
        store.ingest(ASSET, 1.0, timestamp=START_TIME)
        store.ingest(ASSET, 0.8, timestamp=START_TIME + 300)
        clock.now = START_TIME + 300

        assert not await engine.check_trigger(trigger)
        assert trigger.trigger_count == 0
        assert trigger.is_active
        assert ledger.get(ASSET).buy_count == 0

    @pytest.mark.asyncio
    async def test_cancelled_check_does_not_fire_twice(self, store, ledger, quotes, bus, clock):
        """A re-check waits for the running execution instead of firing again."""
        gated = GatedExecutionService(quotes, WLD_ADDRESS)
        engine = TriggerEngine(store, ledger, gated, bus=bus, clock=clock)
        trigger = engine.create_trigger(drop_trigger())
        quotes.set_price(ASSET, 0.8)
        store.ingest(ASSET, 1.0, timestamp=START_TIME)
        store.ingest(ASSET, 0.8, timestamp=START_TIME + 300)
        clock.now = START_TIME + 300

        first = asyncio.create_task(engine.check_trigger(trigger))
        await gated.started.wait()
        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        second = asyncio.create_task(engine.check_trigger(trigger))
        await asyncio.sleep(0.01)
        assert not second.done()

        gated.gate.set()
        assert not await second
        assert gated.calls == 1
        assert trigger.trigger_count == 1
        assert ledger.get(ASSET).buy_count == 1


class TestTriggerSerialization:
    """Tests for Trigger persistence."""

    def test_restore(self, engine, store, ledger, executor, clock):
        trigger = engine.create_trigger(drop_trigger(condition="below_sma", timeframe="1h"))
        restored = TriggerEngine(store, ledger, executor, clock=clock)
        restored.load_dict(engine.to_dict())

        copy = restored.get(trigger.id)
        assert isinstance(copy, Trigger)
        assert copy.condition == TriggerCondition.BELOW_SMA
        assert copy.action == TriggerAction.BUY
        assert copy.timeframe == "1h"
