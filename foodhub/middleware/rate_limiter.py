"""
Foodhub - Sliding window login rate limiter (Redis-backed)

RATE_LIMIT_MAX_ATTEMPTS login attempts per RATE_LIMIT_WINDOW_SECONDS per
mobile number. Each key is a sorted set of attempt timestamps; members
older than the window are trimmed on every hit. Falls back to the client
address when the body has no mobile number.
"""
import json
import time

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from foodhub.core.config import get_settings
from foodhub.core.errors import ErrorCode, error_response
from foodhub.core.redis_client import get_redis

settings = get_settings()

LOGIN_PATHS = ("/api/users/login", "/api/users/login/")


class SlidingWindow:
    def __init__(self, redis_factory=get_redis, clock=time.time, limit: int | None = None,
                 window_seconds: int | None = None, prefix: str = "ratelimit:login:"):
        self._redis_factory = redis_factory
        self._clock = clock
        self.limit = limit or settings.RATE_LIMIT_MAX_ATTEMPTS
        self.window_seconds = window_seconds or settings.RATE_LIMIT_WINDOW_SECONDS
        self._prefix = prefix

    async def hit(self, key: str) -> bool:
        """Record an attempt for key. False when the window was already full."""
        now = self._clock()
        bucket = self._prefix + key
        pipe = self._redis_factory().pipeline()
        pipe.zremrangebyscore(bucket, "-inf", now - self.window_seconds)
        pipe.zcard(bucket)
        pipe.zadd(bucket, {repr(now): now})
        pipe.expire(bucket, self.window_seconds + 1)
        _, earlier, _, _ = await pipe.execute()
        return earlier < self.limit


def login_identity(request: Request, body: bytes) -> str:
    try:
        data = json.loads(body)
    except ValueError:
        data = None
    mobile = data.get("mobileNumber") if isinstance(data, dict) else None
    if mobile:
        return str(mobile)
    return request.client.host if request.client else "unknown"


class LoginRateLimiter(BaseHTTPMiddleware):
    def __init__(self, app, redis_factory=get_redis, clock=time.time):
        super().__init__(app)
        self.window = SlidingWindow(redis_factory, clock)

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.method != "POST" or request.url.path not in LOGIN_PATHS:
            return await call_next(request)

        # BaseHTTPMiddleware replays the consumed body to the route
        identity = login_identity(request, await request.body())
        if not await self.window.hit(identity):
            retry_after = self.window.window_seconds
            return error_response(
                429,
                f"Too many login attempts. Maximum {self.window.limit} "
                f"attempts per {retry_after} seconds.",
                ErrorCode.RATE_LIMITED,
                headers={"Retry-After": str(retry_after)},
                retryAfterSeconds=retry_after,
            )
        return await call_next(request)
