"""
FastAPI application factory.
Wires up routes, middleware, lifespan and the health probes.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Awaitable, Callable

from fastapi import FastAPI

from shared.config import get_settings
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger, setup_logging
from shared.utils.metrics import start_metrics_server
from shared.utils.redis_manager import RedisManager
from ingest.factory import build_components

from api.dependencies import init_dependencies
from api.middleware import setup_middleware
from api.routes.admin import router as admin_router
from api.routes.matches import router as matches_router

logger = get_logger(__name__)

# Retry connection on startup (Redis/DB may not be ready yet)
_CONNECT_RETRY_ATTEMPTS = 10
_CONNECT_RETRY_BASE_DELAY_S = 2.0

_probes: dict[str, Callable[[], Awaitable[Any]]] = {}


async def _connect_with_retry(connect_fn: Callable[[], Awaitable[None]], name: str) -> None:
    """Call async connect_fn(); retry with exponential backoff on failure."""
    for attempt in range(1, _CONNECT_RETRY_ATTEMPTS + 1):
        try:
            await connect_fn()
            return
        except Exception as exc:
            if attempt == _CONNECT_RETRY_ATTEMPTS:
                raise
            delay = _CONNECT_RETRY_BASE_DELAY_S * (2 ** (attempt - 1))
            logger.warning(
                "connect_retry",
                name=name,
                attempt=attempt,
                max_attempts=_CONNECT_RETRY_ATTEMPTS,
                delay_s=delay,
                error=str(exc),
            )
            await asyncio.sleep(delay)


@asynccontextmanager
async def _noop_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """No-op lifespan for testing without DB/Redis."""
    yield


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    settings = get_settings()
    setup_logging("api")
    start_metrics_server()

    redis = RedisManager(settings)
    db = DatabaseManager(settings, application_name="fixturehub-api")
    await _connect_with_retry(redis.connect, "redis")
    await _connect_with_retry(db.connect, "postgres")

    components = build_components(db, redis, settings)
    init_dependencies(redis, components.matches, components.lifecycle)

    _probes["redis"] = redis.client.ping
    _probes["database"] = db.ping

    logger.info("api_service_started", host=settings.api_host, port=settings.api_port)
    yield

    _probes.clear()
    await db.disconnect()
    await redis.disconnect()
    logger.info("api_service_stopped")


def create_app(*, use_lifespan: bool = True) -> FastAPI:
    """Create and configure the FastAPI application. Set use_lifespan=False for testing without DB/Redis."""
    app = FastAPI(
        title="Fixture Hub API",
        description="Merged multi-provider fixtures with lifecycle tracking",
        version="1.0.0",
        lifespan=lifespan if use_lifespan else _noop_lifespan,
    )

    setup_middleware(app)
    app.include_router(matches_router)
    app.include_router(admin_router)

    @app.get("/health", tags=["system"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "api"}

    @app.get("/ready", tags=["system"])
    async def readiness() -> dict[str, Any]:
        """Readiness probe: checks downstream dependencies."""
        checks: dict[str, bool] = {}
        for name, probe in _probes.items():
            try:
                await probe()
                checks[name] = True
            except Exception as exc:
                logger.warning("readiness_probe_failed", dependency=name, error=str(exc))
                checks[name] = False
        status = "ok" if all(checks.values()) else "degraded"
        return {"status": status, **checks}

    return app


app = create_app()
