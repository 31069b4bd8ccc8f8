"""
Trading Engine - wires the components together and owns their lifecycle.

Construction order follows the data flow:

    EventBus -> PriceStore -> CostBasisLedger -> ExecutionService
             -> TriggerEngine -> PriceMonitor -> StrategyManager

There are no module-level singletons; everything hangs off one engine.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from config import EngineConfig
from cost_basis_ledger import CostBasisLedger
from errors import ConfigValidationError, PersistenceFailedError
from events import EventBus, EventType
from executor import ExecutionService, PaperExecutionService, QuoteProvider
from notifications import NotificationDispatcher, NotificationSink, build_sinks
from price_monitor import PriceMonitor
from price_store import PriceStore
from snapshot_store import JSONSnapshotStore, SnapshotStore
from strategy import Strategy
from strategy_manager import StrategyManager
from trigger_engine import Trigger, TriggerEngine

logger = logging.getLogger(__name__)


class TradingEngine:
    """Composition root for one engine instance"""

    def __init__(
        self,
        config: EngineConfig,
        quotes: QuoteProvider,
        executor: Optional[ExecutionService] = None,
        snapshot_store: Optional[SnapshotStore] = None,
        sinks: Optional[list[NotificationSink]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.quotes = quotes
        self.clock = clock
        base = config.base_token_address.lower()

        self.bus = EventBus()
        self.store = PriceStore(
            bus=self.bus,
            retention_sec=config.price_retention_sec,
            sma_interval_sec=config.sma_recompute_interval_sec,
            min_sma_samples=config.min_sma_samples,
            clock=clock,
        )
        self.ledger = CostBasisLedger(bus=self.bus, base_token_address=base, clock=clock)
        self.executor = executor or PaperExecutionService(quotes, base)
        self.triggers = TriggerEngine(
            self.store,
            self.ledger,
            self.executor,
            bus=self.bus,
            base_token=base,
            wallet_address=config.wallet_address,
            swap_timeout=config.swap_timeout_sec,
            stale_price_max_age_sec=config.stale_price_max_age_sec,
            clock=clock,
        )
        self.monitor = PriceMonitor(
            self.store,
            quotes,
            bus=self.bus,
            base_token=base,
            interval_sec=config.price_refresh_interval_sec,
            refresh_timeout_sec=config.refresh_timeout_sec,
            quote_timeout_sec=config.quote_timeout_sec,
            stale_price_max_age_sec=config.stale_price_max_age_sec,
            failure_drop_threshold=config.failure_drop_threshold,
            failure_drop_window_sec=config.failure_drop_window_sec,
            clock=clock,
        )
        self.monitor.on_refresh.append(self.triggers.check_all)
        self.monitor.on_drop.append(self._on_asset_dropped)
        self.strategies = StrategyManager(
            self.store,
            self.ledger,
            quotes,
            self.executor,
            bus=self.bus,
            base_token=base,
            wallet_address=config.wallet_address,
            quote_timeout_sec=config.quote_timeout_sec,
            swap_timeout_sec=config.swap_timeout_sec,
            stale_price_max_age_sec=config.stale_price_max_age_sec,
            volatility_window=config.volatility_window,
            volatility_min_samples=config.volatility_min_samples,
            clock=clock,
        )
        self.snapshots = snapshot_store or JSONSnapshotStore(config.snapshot_path)

        if sinks is None:
            sinks = build_sinks(
                config.telegram_bot_token,
                config.telegram_chat_id,
                config.discord_webhook_url,
            )
        self.notifier = NotificationDispatcher(sinks)
        self.notifier.attach(self.bus)

        self.started_at: Optional[float] = None
        self._snapshot_task: Optional[asyncio.Task] = None

    # -------------------------------------------------------------------------
    # FACADE
    # -------------------------------------------------------------------------

    def track_asset(self, address: str, symbol: str = "") -> None:
        ledger = self.ledger.track_asset(address, symbol)
        self.monitor.add_asset(ledger.address, symbol)

    def untrack_asset(self, address: str) -> bool:
        """
        Stop tracking an asset everywhere and drop its triggers.

        Returns:
            False if nothing tracked the asset

        Raises:
            ConfigValidationError: a strategy still targets the asset
        """
        key = address.lower()
        users = [s.id for s in self.strategies.list_strategies() if s.target_asset == key]
        if users:
            raise ConfigValidationError(f"Asset {key} is used by strategies: {', '.join(users)}")

        triggers = self.triggers.remove_for_asset(key)
        removed = [self.monitor.remove_asset(key), self.store.untrack(key), self.ledger.untrack_asset(key)]
        if any(removed):
            logger.info(f"Untracked asset {key} ({triggers} triggers removed)")
        return any(removed) or triggers > 0

    def create_strategy(self, config: dict) -> Strategy:
        strategy = self.strategies.create_strategy(config)
        self.monitor.add_asset(strategy.target_asset, strategy.token_symbol)
        return strategy

    def create_trigger(self, config: dict) -> Trigger:
        trigger = self.triggers.create_trigger(config)
        self.monitor.add_asset(trigger.asset_address, trigger.token_symbol)
        return trigger

    def _on_asset_dropped(self, address: str) -> None:
        removed = self.triggers.remove_for_asset(address)
        if removed:
            logger.warning(f"Removed {removed} triggers for dropped asset {address}")

    # -------------------------------------------------------------------------
    # SNAPSHOTS
    # -------------------------------------------------------------------------

    def snapshot(self) -> dict:
        return {
            "config": self.config.to_dict(),
            "prices": self.store.to_dict(),
            "ledger": self.ledger.to_dict(),
            "monitor": self.monitor.to_dict(),
            "triggers": self.triggers.to_dict(),
            "strategies": self.strategies.to_dict(),
        }

    def save_snapshot(self) -> bool:
        """Persist current state. Failures are logged and reported, not raised."""
        try:
            self.snapshots.save(self.snapshot())
        except PersistenceFailedError as e:
            logger.error(f"Snapshot save failed: {e}")
            self.bus.publish(EventType.PERSISTENCE_FAILED, {"operation": "save", "error": str(e)})
            return False
        return True

    def restore(self) -> list[str]:
        """
        Load the latest snapshot into the components.

        Returns:
            Ids of strategies that were active in the snapshot
        """
        try:
            state = self.snapshots.load()
        except PersistenceFailedError as e:
            logger.error(f"Snapshot load failed, starting empty: {e}")
            self.bus.publish(EventType.PERSISTENCE_FAILED, {"operation": "load", "error": str(e)})
            return []
        if not state:
            logger.info("No snapshot found, starting empty")
            return []

        self.store.load_dict(state.get("prices", {}))
        self.ledger.load_dict(state.get("ledger", {}))
        self.monitor.load_dict(state.get("monitor", {}))
        self.triggers.load_dict(state.get("triggers", {}))
        was_active = self.strategies.load_dict(state.get("strategies", {}))

        for strategy in self.strategies.list_strategies():
            self.monitor.add_asset(strategy.target_asset, strategy.token_symbol)
        for trigger in self.triggers.list_triggers():
            self.monitor.add_asset(trigger.asset_address, trigger.token_symbol)
        return was_active

    async def _snapshot_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.snapshot_interval_sec)
            self.save_snapshot()

    # -------------------------------------------------------------------------
    # LIFECYCLE
    # -------------------------------------------------------------------------

    async def start(self, restore: bool = True) -> None:
        self.bus.start()
        was_active = self.restore() if restore else []

        self.monitor.start()
        for strategy_id in was_active:
            try:
                self.strategies.start_strategy(strategy_id)
            except Exception as e:
                logger.error(f"Could not resume strategy {strategy_id}: {e}")

        if self.config.snapshot_interval_sec > 0:
            self._snapshot_task = asyncio.create_task(self._snapshot_loop())
        self.started_at = self.clock()
        logger.info(
            f"Engine started: {len(self.monitor.assets())} assets, "
            f"{len(self.strategies.strategies)} strategies, {len(self.triggers.triggers)} triggers"
        )

    async def stop(self) -> None:
        logger.info("Engine shutting down...")
        # In-flight trades land before the final snapshot
        await self.strategies.stop_all()
        await self.monitor.stop()
        await self.triggers.wait_for_trades()

        if self._snapshot_task:
            self._snapshot_task.cancel()
            try:
                await self._snapshot_task
            except asyncio.CancelledError:
                pass
            self._snapshot_task = None

        self.save_snapshot()
        await self.bus.stop()

        for provider in getattr(self.quotes, "providers", [self.quotes]):
            close = getattr(provider, "close", None)
            if close:
                await close()
        logger.info("Engine stopped")

    def get_status(self) -> dict:
        health = getattr(self.quotes, "health", None)
        return {
            "started_at": self.started_at,
            "uptime_sec": self.clock() - self.started_at if self.started_at else 0.0,
            "assets": len(self.monitor.assets()),
            "monitor": self.monitor.get_health_status(),
            "quote_providers": health.get_status() if health else {},
            "strategies": self.strategies.get_statistics(),
            "triggers": len(self.triggers.triggers),
            "events": self.bus.get_status(),
            "last_snapshot": getattr(self.snapshots, "last_saved", None),
        }
