"""
Foodhub - FastAPI application entrypoint
"""
import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator

from foodhub.api import dashboard, health, orders, restaurants, users
from foodhub.core.config import get_settings
from foodhub.core.errors import install_error_handlers
from foodhub.core.logging import configure_logging
from foodhub.core.redis_client import close_redis
from foodhub.db.database import engine, init_db
from foodhub.middleware.auth import JWTAuthMiddleware
from foodhub.middleware.idempotency import IdempotencyMiddleware
from foodhub.middleware.rate_limiter import LoginRateLimiter
from foodhub.services.connection_registry import get_registry
from foodhub.services.device_store import get_device_store
from foodhub.services.dispatcher import get_dispatcher
from foodhub.services.order_lifecycle import get_lifecycle
from foodhub.services.push_provider import close_push_provider
from foodhub.tasks.scheduler import build_scheduler

settings = get_settings()
logger = logging.getLogger("foodhub")

SHUTDOWN_DRAIN_SECONDS = 5.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    await init_db()

    registry = get_registry()
    lifecycle = get_lifecycle()
    dispatcher = get_dispatcher()

    # Orders left Placed by a previous process lost their in-memory timers
    recovered = await lifecycle.cancel_stale_orders()
    if recovered:
        logger.info("Startup recovery cancelled %d stale orders", recovered)

    scheduler = None
    if settings.SCHEDULER_ENABLED:
        scheduler = build_scheduler(registry, get_device_store(), lifecycle)
        scheduler.start()

    yield

    if scheduler is not None:
        await scheduler.stop()
    await lifecycle.close()
    await registry.close_all()
    try:
        await asyncio.wait_for(dispatcher.drain(), timeout=SHUTDOWN_DRAIN_SECONDS)
    except asyncio.TimeoutError:
        logger.warning("Shutting down with undelivered notifications")
    await dispatcher.close()
    await close_push_provider()
    await close_redis()
    await engine.dispose()


app = FastAPI(
    title="Foodhub API",
    description="Food ordering backend with real-time order notifications for restaurants and customers.",
    version=settings.SERVICE_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url=None,
)

install_error_handlers(app)

# ── Idempotent order placement / login rate limiting ──────────────────────────
if settings.IDEMPOTENCY_ENABLED:
    app.add_middleware(IdempotencyMiddleware)
if settings.RATE_LIMIT_ENABLED:
    app.add_middleware(LoginRateLimiter)

# ── JWT Auth ──────────────────────────────────────────────────────────────────
app.add_middleware(JWTAuthMiddleware)

# ── CORS ──────────────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Prometheus Metrics ────────────────────────────────────────────────────────
if settings.METRICS_ENABLED:
    Instrumentator().instrument(app).expose(app, endpoint="/metrics")

# ── Routers ───────────────────────────────────────────────────────────────────
app.include_router(users.router)
app.include_router(orders.router)
app.include_router(restaurants.router)
app.include_router(health.router)
app.include_router(dashboard.router)


@app.get("/")
async def root():
    return {"service": settings.SERVICE_NAME, "version": settings.SERVICE_VERSION}


def run() -> None:
    # Dashboard liveness relies on the websockets backend pinging every
    # connection at the heartbeat cadence.
    uvicorn.run(
        "foodhub.main:app",
        host=settings.HOST,
        port=settings.PORT,
        ws="websockets",
        ws_ping_interval=settings.WS_HEARTBEAT_INTERVAL_SECONDS,
        ws_ping_timeout=settings.WS_PING_TIMEOUT_SECONDS,
    )


if __name__ == "__main__":
    run()
