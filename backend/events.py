"""
Event Bus - decoupled notification channel for engine state changes.

Publishers (price store, ledger, strategy manager, trigger engine) call
publish() synchronously; it only enqueues. A dispatcher task delivers
events to subscribers, so a slow subscriber never blocks a publisher.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)


class EventType(Enum):
    PRICE_UPDATE = "price_update"
    TRADE_RECORDED = "trade_recorded"
    DIP_BUY = "dip_buy"
    PROFIT_STEP = "profit_step"
    FULL_EXIT = "full_exit"
    TRIGGER_FIRED = "trigger_fired"
    THRESHOLDS_UPDATED = "thresholds_updated"
    STRATEGY_STARTED = "strategy_started"
    STRATEGY_STOPPED = "strategy_stopped"
    STRATEGY_COMPLETED = "strategy_completed"
    ASSET_DROPPED = "asset_dropped"
    PERSISTENCE_FAILED = "persistence_failed"


@dataclass
class Event:
    type: EventType
    data: dict
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "data": self.data,
            "timestamp": self.timestamp,
        }


Handler = Callable[[Event], Union[None, Awaitable[None]]]


@dataclass
class _Subscription:
    handler: Handler
    types: Optional[frozenset] = None

    def wants(self, event: Event) -> bool:
        return self.types is None or event.type in self.types


class EventBus:
    """
    Bounded in-process pub/sub.

    When the queue is full the oldest undelivered event is dropped, so
    publishers never wait.
    """

    def __init__(self, max_queue: int = 1000, history_size: int = 200, handler_timeout: float = 10.0):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self._subscriptions: list[_Subscription] = []
        self._history: deque = deque(maxlen=history_size)
        self._handler_timeout = handler_timeout
        self._task: Optional[asyncio.Task] = None
        self.dropped_events = 0

    def subscribe(self, handler: Handler, types: Optional[list[EventType]] = None) -> Handler:
        """
        Register a handler (sync or async).

        Args:
            handler: Called with each matching Event
            types: Event types to receive; None means all

        Returns:
            The handler, for use with unsubscribe()
        """
        self._subscriptions.append(
            _Subscription(handler=handler, types=frozenset(types) if types else None)
        )
        return handler

    def unsubscribe(self, handler: Handler) -> None:
        self._subscriptions = [s for s in self._subscriptions if s.handler is not handler]

    def publish(self, event_type: EventType, data: Optional[dict] = None) -> Event:
        """Record and enqueue an event. Never blocks."""
        event = Event(type=event_type, data=data or {})
        self._history.append(event)

        if self._queue.full():
            try:
                self._queue.get_nowait()
                self.dropped_events += 1
                logger.warning(f"Event queue full, dropped oldest event ({self.dropped_events} total)")
            except asyncio.QueueEmpty:
                pass
        self._queue.put_nowait(event)
        return event

    def recent(self, limit: int = 50, event_type: Optional[EventType] = None) -> list[dict]:
        """Most recent events, newest last"""
        events = [e for e in self._history if event_type is None or e.type == event_type]
        return [e.to_dict() for e in events[-limit:]]

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    # -------------------------------------------------------------------------
    # DISPATCH
    # -------------------------------------------------------------------------

    async def _deliver(self, event: Event) -> None:
        for sub in list(self._subscriptions):
            if not sub.wants(event):
                continue
            try:
                result = sub.handler(event)
                if asyncio.iscoroutine(result):
                    await asyncio.wait_for(result, timeout=self._handler_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Event handler {sub.handler!r} timed out on {event.type.value}")
            except Exception as e:
                logger.error(f"Event handler {sub.handler!r} failed on {event.type.value}: {e}")

    async def drain(self) -> int:
        """Deliver everything currently queued. Returns number delivered."""
        delivered = 0
        while True:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return delivered
            await self._deliver(event)
            delivered += 1

    async def _dispatch_loop(self) -> None:
        while True:
            event = await self._queue.get()
            await self._deliver(event)

    def start(self) -> None:
        """Start the dispatcher task (requires a running loop)"""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._dispatch_loop())

    async def stop(self) -> None:
        """Stop the dispatcher after delivering queued events"""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.drain()

    def get_status(self) -> dict:
        return {
            "running": self._task is not None and not self._task.done(),
            "pending": self.pending,
            "subscribers": len(self._subscriptions),
            "dropped_events": self.dropped_events,
        }
