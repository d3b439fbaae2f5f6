"""bridgewatch status API: main application."""

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from bridgewatch import config
from bridgewatch.cache import CacheStore
from bridgewatch.events import EventsFeed
from bridgewatch.fallback import FallbackChain
from bridgewatch.history_store import HistoryStore
from bridgewatch.log_redact import install_log_redaction, register_secret
from bridgewatch.routers.bridge import router as bridge_router
from bridgewatch.traffic import TrafficAggregator

# --- Logging ---
logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
)
logger = logging.getLogger("bridgewatch.api")


def _log_startup_env_warnings() -> None:
    if not config.TOMTOM_API_KEY:
        logger.warning("TOMTOM_API_KEY is not set; live traffic lookups will report unknown.")
    if not config.HISTORY_PATH:
        logger.warning("HISTORY_PATH is empty; status history will use static fallback records.")


# --- Shared instances: the one place the process-wide cache is created ---
cache_store: CacheStore[Any] = CacheStore(stale_ratio=config.CACHE_STALE_RATIO)
history_store = HistoryStore(config.HISTORY_PATH, config.HISTORY_MAX_BYTES)
traffic_aggregator = TrafficAggregator(config.TOMTOM_API_KEY)
fallback_chain = FallbackChain(cache_store, traffic_aggregator, history_store)
events_feed = EventsFeed(cache_store, history_store)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    register_secret(config.TOMTOM_API_KEY)
    install_log_redaction()
    _log_startup_env_warnings()
    try:
        yield
    finally:
        await fallback_chain.drain()
        await traffic_aggregator.aclose()


# --- App ---
app = FastAPI(
    title="bridgewatch",
    version="1.0.0",
    lifespan=_lifespan,
)
app.state.cache_store = cache_store
app.state.fallback_chain = fallback_chain
app.state.events_feed = events_feed

if config.CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_methods=["GET"],
        allow_headers=["Content-Type"],
    )

app.include_router(bridge_router)


@app.get("/healthz")
async def healthz(request: Request):
    return {"status": "ok", "cache": request.app.state.cache_store.summary()}
