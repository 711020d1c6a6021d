"""
Foodhub - Request dependencies (current user, role guards)
"""
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from foodhub.core.errors import Forbidden, Unauthorized
from foodhub.db.database import get_db
from foodhub.models.user import User, UserRole


async def get_current_user(request: Request, db: AsyncSession = Depends(get_db)) -> User:
    """Load the user named by the token claims set in JWTAuthMiddleware."""
    claims = getattr(request.state, "user", None)
    if not claims or not claims.get("sub"):
        raise Unauthorized("Authentication required.")
    user = await db.get(User, claims["sub"])
    if user is None or not user.is_active:
        raise Unauthorized("User not found or inactive.")
    return user


def require_role(*roles: UserRole):
    async def checker(user: User = Depends(get_current_user)) -> User:
        if UserRole(user.role) not in roles:
            raise Forbidden(
                f"This action requires role: {', '.join(r.value for r in roles)}."
            )
        return user
    return checker
