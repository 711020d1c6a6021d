"""
Foodhub - JWT Authentication Middleware
Validates the Bearer token on protected routes and attaches the decoded
claims to request.state.user. Restaurant browsing is public.
"""
from fastapi import Request, Response
from jose import JWTError
from starlette.middleware.base import BaseHTTPMiddleware

from foodhub.core.errors import ErrorCode, error_response
from foodhub.core.security import decode_token

# Paths that do NOT require authentication
PUBLIC_PATHS = {
    "/",
    "/api/health",
    "/api/users/register",
    "/api/users/login",
    "/metrics",
    "/docs",
    "/openapi.json",
}

PUBLIC_GET_PREFIXES = ("/api/restaurants",)


def is_public(method: str, path: str) -> bool:
    path = path.rstrip("/") or "/"
    if path in PUBLIC_PATHS or path.startswith("/metrics"):
        return True
    # opening-time is owner-only even for reads
    if method == "GET" and path.startswith(PUBLIC_GET_PREFIXES) and not path.endswith("/opening-time"):
        return True
    return False


def _unauthorized(message: str):
    return error_response(401, message, ErrorCode.UNAUTHORIZED, headers={"WWW-Authenticate": "Bearer"})


class JWTAuthMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        if request.method == "OPTIONS" or is_public(request.method, request.url.path):
            return await call_next(request)

        scheme, _, token = request.headers.get("Authorization", "").partition(" ")
        if scheme != "Bearer" or not token:
            return _unauthorized("Missing or invalid Authorization header. Expected: Bearer <token>")

        try:
            request.state.user = decode_token(token)
        except JWTError as exc:
            return _unauthorized(f"Invalid or expired token: {exc}")
        return await call_next(request)
