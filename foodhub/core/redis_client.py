"""
Foodhub - Redis client

Redis only backs the idempotency cache and the login rate limiter, so it is
created lazily on first use and is never needed when both are disabled.
"""
import asyncio

import redis.asyncio as aioredis

from foodhub.core.config import get_settings

settings = get_settings()
_client: aioredis.Redis | None = None


def redis_required() -> bool:
    return settings.IDEMPOTENCY_ENABLED or settings.RATE_LIMIT_ENABLED


def get_redis() -> aioredis.Redis:
    global _client
    if _client is None:
        _client = aioredis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=settings.HEALTH_CHECK_TIMEOUT,
        )
    return _client


async def redis_status() -> str | None:
    """"ok" / "degraded: ..." for the health report, None when redis is unused."""
    if not redis_required():
        return None
    try:
        await asyncio.wait_for(get_redis().ping(), timeout=settings.HEALTH_CHECK_TIMEOUT)
    except (aioredis.RedisError, OSError, asyncio.TimeoutError) as exc:
        return f"degraded: {str(exc)[:100]}"
    return "ok"


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
