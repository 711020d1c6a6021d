"""
Foodhub - Health endpoint
"""
import asyncio

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from foodhub.core.config import get_settings
from foodhub.core.redis_client import redis_status
from foodhub.db.database import get_db, utcnow
from foodhub.services.connection_registry import ConnectionRegistry, get_registry
from foodhub.services.push_provider import get_push_provider

settings = get_settings()
router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health_check(db: AsyncSession = Depends(get_db),
                       registry: ConnectionRegistry = Depends(get_registry)):
    deps: dict[str, str] = {}
    healthy = True

    # The store is the only hard dependency
    try:
        await asyncio.wait_for(db.execute(text("SELECT 1")), timeout=settings.HEALTH_CHECK_TIMEOUT)
        deps["database"] = "ok"
    except Exception as e:
        deps["database"] = f"error: {str(e)[:100]}"
        healthy = False

    redis = await redis_status()
    if redis is not None:
        deps["redis"] = redis

    deps["push"] = "ok" if get_push_provider() is not None else "disabled"
    deps["liveChannels"] = str(len(registry))

    return JSONResponse(
        content={
            "status": "healthy" if healthy else "degraded",
            "service": settings.SERVICE_NAME,
            "version": settings.SERVICE_VERSION,
            "timestamp": utcnow().isoformat(),
            "dependencies": deps,
        },
        status_code=200 if healthy else 503,
    )
