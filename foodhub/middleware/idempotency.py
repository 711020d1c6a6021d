"""
Foodhub - Idempotency Key Middleware

Order placement may be retried by flaky mobile clients. With an
Idempotency-Key header:
  - Cache hit  -> replay the stored response (no second order)
  - Cache miss -> run the handler, store the response for the TTL
Keys are scoped to the caller's Authorization header.
"""
import hashlib
import json
import logging

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from foodhub.core.config import get_settings
from foodhub.core.redis_client import get_redis

settings = get_settings()
logger = logging.getLogger(__name__)

ORDER_PLACEMENT_PATHS = ("/api/orders", "/api/orders/")


def replay_key(request: Request) -> str | None:
    """Redis key for this request, or None when it is not a keyed order placement."""
    if request.method != "POST" or request.url.path not in ORDER_PLACEMENT_PATHS:
        return None
    key = request.headers.get("Idempotency-Key")
    if not key:
        return None
    caller = hashlib.sha256(request.headers.get("Authorization", "").encode()).hexdigest()[:16]
    return f"idempotent:{caller}:{key}"


def _decode_body(raw: bytes):
    try:
        return json.loads(raw)
    except ValueError:
        return raw.decode("utf-8", errors="replace")


class IdempotencyMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, redis_factory=get_redis):
        super().__init__(app)
        self._redis_factory = redis_factory

    async def dispatch(self, request: Request, call_next) -> Response:
        cache_key = replay_key(request)
        if cache_key is None:
            return await call_next(request)

        redis = self._redis_factory()
        stored = await redis.get(cache_key)
        if stored:
            snapshot = json.loads(stored)
            logger.info("Replaying stored order response for %s", cache_key)
            return JSONResponse(
                snapshot["body"],
                status_code=snapshot["status_code"],
                headers={"X-Idempotency-Replay": "true"},
            )

        response = await call_next(request)
        raw = b"".join([chunk async for chunk in response.body_iterator])

        # Only successful placements are replayed; failures may be retried.
        if 200 <= response.status_code < 300:
            snapshot = {"body": _decode_body(raw), "status_code": response.status_code}
            await redis.setex(cache_key, settings.IDEMPOTENCY_KEY_TTL_SECONDS, json.dumps(snapshot))

        return Response(
            content=raw,
            status_code=response.status_code,
            media_type=response.media_type,
            headers=dict(response.headers),
        )
