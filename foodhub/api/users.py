"""
Foodhub - User routes (auth, devices, role assignment)
"""
import logging

from fastapi import APIRouter, Body, Depends, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from foodhub.api.deps import get_current_user, require_role
from foodhub.core.config import get_settings
from foodhub.core.errors import Conflict, Forbidden, NotFound, Unauthorized
from foodhub.core.security import create_user_token, hash_password, verify_password
from foodhub.db.database import get_db
from foodhub.db.restaurant_ops import assign_role, restaurant_for_owner
from foodhub.models.user import User, UserRole
from foodhub.schemas.auth import (
    AssignRoleRequest,
    DeviceOut,
    DeviceRequest,
    LoginRequest,
    RegisterRequest,
    UserOut,
)
from foodhub.schemas.common import success
from foodhub.services.device_store import DeviceStore, get_device_store

settings = get_settings()
logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/users", tags=["users"])


def _device_out(device) -> dict:
    return DeviceOut(
        token=device.token, kind=device.kind, info=device.info or {},
        last_active=device.last_active, expires_at=device.expires_at,
    ).dump()


async def _user_payload(db: AsyncSession, user: User) -> dict:
    restaurant = await restaurant_for_owner(db, user.id) if user.role == UserRole.RESTAURANT else None
    return UserOut.from_user(user, restaurant).dump()


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(payload: RegisterRequest, db: AsyncSession = Depends(get_db)):
    existing = await db.execute(select(User.id).where(User.mobile_number == payload.mobile_number))
    if existing.scalar_one_or_none():
        raise Conflict("Mobile number already registered.")

    user = User(
        username=payload.username.strip(),
        mobile_number=payload.mobile_number,
        hashed_password=hash_password(payload.password),
        role=UserRole.USER,
    )
    db.add(user)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise Conflict("Mobile number already registered.")
    await db.refresh(user)
    logger.info("Registered user %s", user.id)
    return success({"token": create_user_token(user), "user": await _user_payload(db, user)},
                   "Registration successful")


@router.post("/login")
async def login(payload: LoginRequest, db: AsyncSession = Depends(get_db),
                devices: DeviceStore = Depends(get_device_store)):
    """Validate credentials, migrate a legacy push token and issue a JWT."""
    result = await db.execute(select(User).where(User.mobile_number == payload.mobile_number))
    user: User | None = result.scalar_one_or_none()

    if not user or not verify_password(payload.password, user.hashed_password):
        raise Unauthorized("Invalid mobile number or password.")
    if not user.is_active:
        raise Forbidden("Account is disabled.")

    if user.fcm_token:
        await devices.migrate_legacy_token(user.id)

    return success({"token": create_user_token(user), "user": await _user_payload(db, user)},
                   "Login successful")


@router.get("/verify-token")
async def verify_token(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return success({"user": await _user_payload(db, user)})


@router.post("/logout")
async def logout(token: str | None = Body(None, embed=True),
                 user: User = Depends(get_current_user),
                 devices: DeviceStore = Depends(get_device_store)):
    """Tokens are stateless; logging out only unregisters this device's push token."""
    if token:
        await devices.remove_token(user.id, token)
    return success(message="Logged out successfully")


# ── Devices ───────────────────────────────────────────────────────────────────

@router.get("/devices")
async def list_devices(user: User = Depends(get_current_user),
                       devices: DeviceStore = Depends(get_device_store)):
    return success([_device_out(d) for d in await devices.active_tokens(user.id)])


@router.post("/devices")
async def register_device(payload: DeviceRequest, user: User = Depends(get_current_user),
                          devices: DeviceStore = Depends(get_device_store)):
    device = await devices.upsert_device(user.id, payload.token, payload.kind, payload.info)
    if device is None:
        raise NotFound("User not found.")
    return success(_device_out(device), "Device registered")


@router.delete("/devices/{token}")
async def remove_device(token: str, user: User = Depends(get_current_user),
                        devices: DeviceStore = Depends(get_device_store)):
    if not await devices.remove_token(user.id, token):
        raise NotFound("Device not found.")
    return success(message="Device removed")


# ── Admin ─────────────────────────────────────────────────────────────────────

@router.post("/assign-role/{user_id}")
async def assign_user_role(user_id: str, payload: AssignRoleRequest,
                           admin: User = Depends(require_role(UserRole.ADMIN)),
                           db: AsyncSession = Depends(get_db)):
    user, restaurant = await assign_role(db, user_id, payload.role, payload.restaurant_id)
    logger.info("Admin %s set role of %s to %s", admin.id, user.id, payload.role.value)
    return success({"user": UserOut.from_user(user, restaurant).dump()}, "Role assigned")
