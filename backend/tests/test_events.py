"""
Tests for the Event Bus (events.py).
"""
import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from events import EventBus, EventType


class TestPublish:
    """Tests for publish and history."""

    def test_publish_records_history(self, bus):
        bus.publish(EventType.DIP_BUY, {"strategy_id": "s1"})
        bus.publish(EventType.FULL_EXIT, {"strategy_id": "s1"})

        recent = bus.recent()
        assert [e["type"] for e in recent] == ["dip_buy", "full_exit"]
        assert bus.recent(event_type=EventType.FULL_EXIT)[0]["data"] == {"strategy_id": "s1"}
        assert bus.pending == 2

    def test_recent_limit(self, bus):
        for i in range(5):
            bus.publish(EventType.PRICE_UPDATE, {"i": i})
        assert [e["data"]["i"] for e in bus.recent(limit=2)] == [3, 4]

    def test_full_queue_drops_oldest(self):
        """Publishing never blocks; the oldest queued event is dropped."""
        bus = EventBus(max_queue=2)
        for i in range(3):
            bus.publish(EventType.PRICE_UPDATE, {"i": i})
        assert bus.pending == 2
        assert bus.dropped_events == 1


class TestDelivery:
    """Tests for subscriber delivery."""

    @pytest.mark.asyncio
    async def test_drain_delivers_to_sync_and_async_handlers(self, bus):
        sync_handler = MagicMock(return_value=None)
        async_handler = AsyncMock()
        bus.subscribe(sync_handler)
        bus.subscribe(async_handler, [EventType.DIP_BUY])

        bus.publish(EventType.DIP_BUY, {})
        bus.publish(EventType.PRICE_UPDATE, {})
        delivered = await bus.drain()

        assert delivered == 2
        assert sync_handler.call_count == 2
        async_handler.assert_awaited_once()
        assert async_handler.await_args.args[0].type == EventType.DIP_BUY

    @pytest.mark.asyncio
    async def test_handler_errors_are_isolated(self, bus):
        """A failing handler does not stop delivery to the others."""
        failing = MagicMock(side_effect=RuntimeError("boom"))
        healthy = MagicMock(return_value=None)
        bus.subscribe(failing)
        bus.subscribe(healthy)

        bus.publish(EventType.TRADE_RECORDED, {})
        await bus.drain()
        healthy.assert_called_once()

    @pytest.mark.asyncio
    async def test_slow_handler_times_out(self):
        bus = EventBus(handler_timeout=0.01)

        async def slow(event):
            await asyncio.sleep(1)

        healthy = MagicMock(return_value=None)
        bus.subscribe(slow)
        bus.subscribe(healthy)
        bus.publish(EventType.TRADE_RECORDED, {})
        await bus.drain()
        healthy.assert_called_once()

    @pytest.mark.asyncio
    async def test_unsubscribe(self, bus):
        handler = MagicMock(return_value=None)
        bus.subscribe(handler)
        bus.unsubscribe(handler)
        bus.publish(EventType.DIP_BUY, {})
        await bus.drain()
        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_dispatcher_task(self, bus):
        """The running dispatcher delivers without an explicit drain."""
        received = []
        bus.subscribe(received.append)
        bus.start()
        assert bus.get_status()["running"]

        bus.publish(EventType.DIP_BUY, {})
        await asyncio.sleep(0.01)
        await bus.stop()

        assert len(received) == 1
        assert not bus.get_status()["running"]
