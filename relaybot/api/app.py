"""FastAPI application factory."""

from __future__ import annotations

import time
from collections import deque
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from relaybot import __version__
from relaybot.api.auth import router as auth_router
from relaybot.api.routes import router as core_router
from relaybot.core.channels.telegram import router as telegram_router
from relaybot.core.config.loader import load_config
from relaybot.memory.store import MemoryStore
from relaybot.pipeline.registry import BotRegistry

RATE_WINDOW_S = 60.0
# Telegram retries webhooks on 429, so they are never throttled
_UNTHROTTLED_PREFIXES = ("/health", "/docs", "/openapi.json", "/redoc", "/webhooks/")


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-client request budget over a rolling minute (``auth.rate_limit``)."""

    def __init__(self, app: FastAPI) -> None:
        super().__init__(app)
        self._hits: dict[str, deque[float]] = {}

    def _over_budget(self, client: str, budget: int) -> bool:
        now = time.monotonic()
        hits = self._hits.setdefault(client, deque())
        while hits and now - hits[0] >= RATE_WINDOW_S:
            hits.popleft()
        if len(hits) >= budget:
            return True
        hits.append(now)
        return False

    async def dispatch(self, request: Request, call_next):
        config = getattr(request.app.state, "config", None)
        limits = config.auth.rate_limit if config else None
        if limits is None or not limits.enabled or request.url.path.startswith(_UNTHROTTLED_PREFIXES):
            return await call_next(request)

        client = request.client.host if request.client else "unknown"
        if self._over_budget(client, limits.requests_per_minute + limits.burst):
            logger.warning(f"Rate limit hit: {client} {request.method} {request.url.path}")
            return JSONResponse(
                {"detail": "Too many requests"},
                status_code=429,
                headers={"Retry-After": str(int(RATE_WINDOW_S))},
            )
        return await call_next(request)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire config, store and bot registry into app.state; stop every bot on shutdown."""
    config = load_config()
    app.state.config = config
    app.state.db = MemoryStore(str(config.db_path), default_quota=config.bot.default_token_quota)
    app.state.registry = BotRegistry(config, app.state.db)
    logger.info(f"RelayBot API {__version__} up (model {config.bot.model})")
    try:
        yield
    finally:
        await app.state.registry.stop_all()
        logger.info("RelayBot API stopped")


def create_app() -> FastAPI:
    app = FastAPI(
        title="RelayBot API",
        description="Telegram, webapp and programmatic chat front-end",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RateLimitMiddleware)

    for router in (core_router, auth_router, telegram_router):
        app.include_router(router)
    return app


app = create_app()
