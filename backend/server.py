#!/usr/bin/env python3
"""
REST API for the dip trading engine.

Read-only status routes are open; control routes require the X-API-Key
header.
"""

import logging
import os
import secrets
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
import uvicorn

from config import SMA_WINDOWS, EngineConfig, setup_logging
from engine import TradingEngine
from errors import ConfigValidationError
from events import EventType
from executor import PaperExecutionService, QuoteProvider, QuoteRouter, StaticQuoteProvider
from quote_client import HTTPQuoteProvider

logger = logging.getLogger(__name__)

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def create_app(engine: TradingEngine, api_key: Optional[str] = None, manage_lifecycle: bool = True) -> FastAPI:
    """
    Build the FastAPI app around an engine.

    Args:
        engine: The engine to expose
        api_key: Key for control routes; a temporary one is generated if unset
        manage_lifecycle: Start/stop the engine with the app
    """
    if not api_key:
        api_key = secrets.token_urlsafe(32)
        logger.warning(f"[Security] API_KEY not set. Generated temporary key: {api_key}")

    async def verify_api_key(key: str = Security(api_key_header)) -> str:
        if not key or not secrets.compare_digest(key, api_key):
            raise HTTPException(
                status_code=403,
                detail="Invalid or missing API key. Include X-API-Key header."
            )
        return key

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            await engine.start()
        yield
        if manage_lifecycle:
            await engine.stop()

    app = FastAPI(
        title="Dipwatch API",
        description="Adaptive dip-buy / profit-range trading engine",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.engine = engine

    # ========================================================================
    # STATUS
    # ========================================================================

    @app.get("/health")
    async def health():
        return {"status": "ok", **engine.get_status()}

    @app.get("/assets")
    async def list_assets():
        """Tracked assets with their latest price and cost basis"""
        assets = []
        for address in engine.store.assets():
            entry = engine.store.get(address)
            ledger = engine.ledger.get(address) if engine.ledger.is_tracked(address) else None
            monitor_state = engine.monitor.state(address)
            assets.append({
                "address": address,
                "symbol": entry.symbol,
                "current_price": entry.current_price,
                "last_update": entry.last_update,
                "change_24h": entry.change_24h,
                "data_points": len(entry.points),
                "ledger": ledger.to_dict() if ledger else None,
                "monitor": monitor_state.to_dict() if monitor_state else None,
            })
        return {"assets": assets}

    @app.get("/assets/{address}")
    async def get_asset(address: str):
        if not engine.store.is_tracked(address):
            raise HTTPException(status_code=404, detail=f"Asset {address} is not tracked")
        price = engine.store.current_price(address)
        in_ledger = engine.ledger.is_tracked(address)
        return {
            "address": address.lower(),
            "stats": engine.store.price_stats(address),
            "sma_analysis": engine.store.sma_analysis(address),
            "period_analysis": engine.store.period_analysis(address),
            "trading": engine.ledger.get_trading_analysis(address) if in_ledger else None,
            "buy_recommendation": (
                engine.ledger.get_buy_recommendation(address, price) if in_ledger and price else None
            ),
        }

    @app.get("/assets/{address}/sma")
    async def get_asset_sma(address: str, window: Optional[str] = None):
        if not engine.store.is_tracked(address):
            raise HTTPException(status_code=404, detail=f"Asset {address} is not tracked")
        windows = [window] if window else list(SMA_WINDOWS)
        result = {}
        for label in windows:
            try:
                value = engine.store.compute_sma(address, label)
            except ConfigValidationError as e:
                return JSONResponse({"error": str(e)}, status_code=400)
            result[label] = value.to_dict() if value else None
        return {"address": address.lower(), "sma": result}

    @app.post("/assets", dependencies=[Depends(verify_api_key)])
    async def track_asset(config: dict):
        try:
            engine.track_asset(config.get("address", ""), config.get("symbol", ""))
        except ConfigValidationError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        return {"status": "ok", "address": config["address"].lower()}

    @app.delete("/assets/{address}", dependencies=[Depends(verify_api_key)])
    async def untrack_asset(address: str):
        try:
            removed = engine.untrack_asset(address)
        except ConfigValidationError as e:
            return JSONResponse({"error": str(e)}, status_code=409)
        if not removed:
            raise HTTPException(status_code=404, detail=f"Asset {address} is not tracked")
        return {"status": "ok", "address": address.lower()}

    # ========================================================================
    # STRATEGIES
    # ========================================================================

    @app.get("/strategies")
    async def list_strategies():
        return {
            "strategies": [s.to_dict() for s in engine.strategies.list_strategies()],
            "statistics": engine.strategies.get_statistics(),
        }

    @app.get("/strategies/{strategy_id}")
    async def get_strategy(strategy_id: str):
        strategy = engine.strategies.get(strategy_id)
        if strategy is None:
            raise HTTPException(status_code=404, detail=f"Strategy {strategy_id} not found")
        return strategy.to_dict()

    @app.post("/strategies", dependencies=[Depends(verify_api_key)])
    async def create_strategy(config: dict):
        try:
            strategy = engine.create_strategy(config)
        except ConfigValidationError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        return {"status": "ok", "strategy": strategy.to_dict()}

    @app.post("/strategies/{strategy_id}/start", dependencies=[Depends(verify_api_key)])
    async def start_strategy(strategy_id: str):
        if engine.strategies.get(strategy_id) is None:
            raise HTTPException(status_code=404, detail=f"Strategy {strategy_id} not found")
        try:
            strategy = engine.strategies.start_strategy(strategy_id, spawn_task=manage_lifecycle)
        except ConfigValidationError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        return {"status": "ok", "strategy": strategy.to_dict()}

    @app.post("/strategies/{strategy_id}/stop", dependencies=[Depends(verify_api_key)])
    async def stop_strategy(strategy_id: str):
        if engine.strategies.get(strategy_id) is None:
            raise HTTPException(status_code=404, detail=f"Strategy {strategy_id} not found")
        strategy = await engine.strategies.stop_strategy(strategy_id)
        return {"status": "ok", "strategy": strategy.to_dict()}

    @app.delete("/strategies/{strategy_id}", dependencies=[Depends(verify_api_key)])
    async def delete_strategy(strategy_id: str):
        if not await engine.strategies.delete_strategy(strategy_id):
            raise HTTPException(status_code=404, detail=f"Strategy {strategy_id} not found")
        return {"status": "ok"}

    # ========================================================================
    # TRIGGERS
    # ========================================================================

    @app.get("/triggers")
    async def list_triggers():
        return {"triggers": [t.to_dict() for t in engine.triggers.list_triggers()]}

    @app.post("/triggers", dependencies=[Depends(verify_api_key)])
    async def create_trigger(config: dict):
        try:
            trigger = engine.create_trigger(config)
        except ConfigValidationError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        return {"status": "ok", "trigger": trigger.to_dict()}

    @app.delete("/triggers/{trigger_id}", dependencies=[Depends(verify_api_key)])
    async def delete_trigger(trigger_id: str):
        if not engine.triggers.remove_trigger(trigger_id):
            raise HTTPException(status_code=404, detail=f"Trigger {trigger_id} not found")
        return {"status": "ok"}

    # ========================================================================
    # EVENTS
    # ========================================================================

    @app.get("/events")
    async def recent_events(limit: int = 50, type: Optional[str] = None):
        event_type = None
        if type:
            try:
                event_type = EventType(type)
            except ValueError:
                return JSONResponse({"error": f"Unknown event type: {type}"}, status_code=400)
        return {"events": engine.bus.recent(limit, event_type)}

    return app


# ============================================================================
# MAIN
# ============================================================================

def build_engine(config: EngineConfig) -> TradingEngine:
    """Paper-trading engine with the HTTP quote API when one is configured"""
    providers: list[QuoteProvider] = []
    if config.quote_api_url:
        providers.append(HTTPQuoteProvider(config.quote_api_url, timeout=config.quote_timeout_sec))
    else:
        logger.warning("DIPWATCH_QUOTE_API_URL not set, prices must be pushed into the static provider")
        providers.append(StaticQuoteProvider())

    quotes = QuoteRouter(providers, timeout=config.quote_timeout_sec)
    executor = PaperExecutionService(quotes, config.base_token_address)
    return TradingEngine(config, quotes, executor=executor)


def main():
    """Run the server"""
    config = EngineConfig.from_env()
    setup_logging(config.log_dir)
    os.makedirs(config.data_dir, exist_ok=True)

    if not config.api_key and os.getenv("ENV", "development").lower() == "production":
        logger.error("[Security] FATAL: API_KEY environment variable not set.")
        raise SystemExit(1)

    engine = build_engine(config)
    app = create_app(engine, api_key=config.api_key)
    uvicorn.run(app, host=config.host, port=config.port, log_level="info")


if __name__ == "__main__":
    main()
