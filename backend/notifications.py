"""
Notification sinks for trade events.

The dispatcher subscribes to the EventBus and fans formatted messages out to
every configured sink. Sends are fire-and-forget: sink failures are logged
and never reach the trading loop.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from events import Event, EventBus, EventType

logger = logging.getLogger(__name__)

NOTIFY_EVENTS = [
    EventType.DIP_BUY,
    EventType.PROFIT_STEP,
    EventType.FULL_EXIT,
    EventType.TRIGGER_FIRED,
    EventType.STRATEGY_COMPLETED,
    EventType.ASSET_DROPPED,
    EventType.PERSISTENCE_FAILED,
]


class NotificationSink(ABC):
    name = "sink"

    @abstractmethod
    async def send(self, title: str, message: str) -> None:
        pass


class LogNotifier(NotificationSink):
    """Writes notifications to the log; always available"""

    name = "log"

    async def send(self, title: str, message: str) -> None:
        logger.info(f"ALERT: [{title}] {message}")


class TelegramNotifier(NotificationSink):
    name = "telegram"

    def __init__(self, bot_token: str, chat_id: str, timeout: float = 10.0):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.timeout = timeout

    async def send(self, title: str, message: str) -> None:
        url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(url, json={
                    "chat_id": self.chat_id,
                    "text": f"[{title}] {message}",
                    "disable_web_page_preview": True,
                }, timeout=self.timeout)
                if response.status_code != 200:
                    logger.warning(f"Telegram API returned {response.status_code}: {response.text}")
        except Exception as e:
            logger.error(f"Telegram alert failed: {e}")


class DiscordNotifier(NotificationSink):
    name = "discord"

    def __init__(self, webhook_url: str, timeout: float = 10.0):
        self.webhook_url = webhook_url
        self.timeout = timeout

    async def send(self, title: str, message: str) -> None:
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(self.webhook_url, json={
                    "content": f"**{title}** {message}",
                }, timeout=self.timeout)
                if response.status_code >= 400:
                    logger.warning(f"Discord webhook returned {response.status_code}")
        except Exception as e:
            logger.error(f"Discord alert failed: {e}")


def format_event(event: Event) -> Optional[tuple[str, str]]:
    """(title, message) for a notifiable event, or None"""
    d = event.data
    if event.type == EventType.DIP_BUY:
        return "DIP BUY", (
            f"{d.get('name')}: bought {d.get('tokens', 0):.4f} {d.get('symbol', '')} "
            f"@ {d.get('price', 0):.8f} ({d.get('tier')} dip {d.get('dip_percent', 0):.2f}%)"
        )
    if event.type == EventType.PROFIT_STEP:
        step = d.get("step", {})
        return "PROFIT STEP", (
            f"{d.get('name')}: step {step.get('step_number')} sold {d.get('tokens_sold', 0):.4f} "
            f"@ {d.get('price', 0):.8f}, profit {d.get('profit', 0):+.6f}"
        )
    if event.type == EventType.FULL_EXIT:
        return "FULL EXIT", (
            f"{d.get('name')}: sold {d.get('tokens_sold', 0):.4f} @ {d.get('price', 0):.8f} "
            f"({d.get('profit_percent', 0):+.2f}%, {d.get('reason')})"
        )
    if event.type == EventType.TRIGGER_FIRED:
        trigger = d.get("trigger", {})
        return "TRIGGER", f"{trigger.get('name')}: {d.get('details')}"
    if event.type == EventType.STRATEGY_COMPLETED:
        return "STRATEGY COMPLETED", (
            f"{d.get('name')}: {d.get('completed_cycles')} cycles, "
            f"total profit {d.get('total_profit', 0):+.6f}"
        )
    if event.type == EventType.ASSET_DROPPED:
        return "ASSET DROPPED", (
            f"{d.get('symbol') or d.get('asset')}: {d.get('consecutive_failures')} failed quotes"
        )
    if event.type == EventType.PERSISTENCE_FAILED:
        return "PERSISTENCE FAILED", str(d.get("error"))
    return None


class NotificationDispatcher:
    """Routes bus events to sinks"""

    def __init__(self, sinks: list[NotificationSink]):
        self.sinks = list(sinks)
        self.sent = 0

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(self.handle, NOTIFY_EVENTS)

    async def handle(self, event: Event) -> None:
        formatted = format_event(event)
        if formatted is None or not self.sinks:
            return
        title, message = formatted
        results = await asyncio.gather(
            *(sink.send(title, message) for sink in self.sinks),
            return_exceptions=True,
        )
        for sink, result in zip(self.sinks, results):
            if isinstance(result, Exception):
                logger.error(f"{sink.name} notification failed: {result}")
        self.sent += 1


def build_sinks(
    telegram_bot_token: Optional[str] = None,
    telegram_chat_id: Optional[str] = None,
    discord_webhook_url: Optional[str] = None,
) -> list[NotificationSink]:
    sinks: list[NotificationSink] = [LogNotifier()]
    if telegram_bot_token and telegram_chat_id:
        sinks.append(TelegramNotifier(telegram_bot_token, telegram_chat_id))
    if discord_webhook_url:
        sinks.append(DiscordNotifier(discord_webhook_url))
    return sinks
