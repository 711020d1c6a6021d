"""
Foodhub - Device token store

Each user owns at most DEVICE_CAP_PER_USER device records. Every change to
the list is a read-modify-write guarded by users.version:

    read user + devices (version = v)
    migrate legacy token, purge expired, merge/append, cap
    UPDATE users SET version = v + 1 WHERE id = ? AND version = v

A lost race raises StaleDataError and with_optimistic_retry replays the
whole operation on a fresh session.
"""
import logging
from datetime import timedelta
from functools import lru_cache
from typing import Any, Callable

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from foodhub.core.config import get_settings
from foodhub.core.optimistic_lock import compare_and_bump, with_optimistic_retry
from foodhub.db.database import SessionLocal, utcnow
from foodhub.models.user import Device, DeviceKind, User

settings = get_settings()
logger = logging.getLogger(__name__)


class DeviceStore:
    def __init__(self, session_factory: async_sessionmaker = SessionLocal,
                 clock: Callable = utcnow,
                 cap: int | None = None, ttl_days: int | None = None):
        self._session_factory = session_factory
        self._clock = clock
        self.cap = cap or settings.DEVICE_CAP_PER_USER
        self.ttl = timedelta(days=ttl_days or settings.DEVICE_TTL_DAYS)

    # ── Helpers ──────────────────────────────────────────────

    async def _load_user(self, session: AsyncSession, user_id: str) -> User | None:
        return await session.get(User, user_id)

    def _migrate(self, user: User, now) -> bool:
        if not user.fcm_token:
            return False
        if not any(d.token == user.fcm_token for d in user.devices):
            user.devices.append(Device(
                token=user.fcm_token,
                kind=DeviceKind.UNKNOWN,
                info={"migrated": True},
                last_active=now,
                expires_at=now + self.ttl,
            ))
        user.fcm_token = None
        return True

    @staticmethod
    def _purge(user: User, now) -> int:
        expired = [d for d in user.devices if d.expires_at <= now]
        for device in expired:
            user.devices.remove(device)
        return len(expired)

    # ── Operations ───────────────────────────────────────────

    @with_optimistic_retry()
    async def upsert_device(self, user_id: str, token: str,
                            kind: DeviceKind | str = DeviceKind.UNKNOWN,
                            info: dict[str, Any] | None = None) -> Device | None:
        now = self._clock()
        async with self._session_factory() as session:
            user = await self._load_user(session, user_id)
            if user is None:
                return None
            read_version = user.version

            self._migrate(user, now)
            self._purge(user, now)

            device = next((d for d in user.devices if d.token == token), None)
            if device is not None:
                device.info = {**(device.info or {}), **(info or {})}
                if DeviceKind(kind) is not DeviceKind.UNKNOWN:
                    device.kind = DeviceKind(kind)
                device.last_active = now
                device.expires_at = now + self.ttl
            else:
                device = Device(
                    token=token,
                    kind=DeviceKind(kind),
                    info=dict(info or {}),
                    last_active=now,
                    expires_at=now + self.ttl,
                )
                user.devices.append(device)

            if len(user.devices) > self.cap:
                ranked = sorted(user.devices, key=lambda d: d.last_active, reverse=True)
                for evicted in ranked[self.cap:]:
                    logger.info("Evicting device %s... for user %s (cap %d)",
                                evicted.token[:12], user_id, self.cap)
                    user.devices.remove(evicted)

            await compare_and_bump(session, User, user_id, read_version)
            return device

    @with_optimistic_retry()
    async def remove_token(self, user_id: str, token: str) -> bool:
        async with self._session_factory() as session:
            user = await self._load_user(session, user_id)
            if user is None:
                return False
            read_version = user.version
            matches = [d for d in user.devices if d.token == token]
            cleared_legacy = user.fcm_token == token
            if not matches and not cleared_legacy:
                return False
            for device in matches:
                user.devices.remove(device)
            if cleared_legacy:
                user.fcm_token = None
            await compare_and_bump(session, User, user_id, read_version)
            return True

    async def active_tokens(self, user_id: str) -> list[Device]:
        now = self._clock()
        async with self._session_factory() as session:
            result = await session.execute(
                select(Device)
                .where(Device.user_id == user_id, Device.expires_at > now)
                .order_by(Device.last_active.desc())
            )
            return list(result.scalars().all())

    async def sweep_expired(self) -> int:
        """Delete expired records for every user; bumps owners' versions."""
        now = self._clock()
        async with self._session_factory() as session:
            owners = (await session.execute(
                select(Device.user_id).where(Device.expires_at <= now).distinct()
            )).scalars().all()
            if not owners:
                return 0
            result = await session.execute(delete(Device).where(Device.expires_at <= now))
            await session.execute(
                update(User)
                .where(User.id.in_(owners))
                .values(version=User.version + 1)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            removed = result.rowcount or 0
        logger.info("Swept %d expired device tokens across %d users", removed, len(owners))
        return removed

    @with_optimistic_retry()
    async def migrate_legacy_token(self, user_id: str) -> bool:
        now = self._clock()
        async with self._session_factory() as session:
            user = await self._load_user(session, user_id)
            if user is None or not user.fcm_token:
                return False
            read_version = user.version
            self._migrate(user, now)
            await compare_and_bump(session, User, user_id, read_version)
            logger.info("Migrated legacy push token for user %s", user_id)
            return True


@lru_cache()
def get_device_store() -> DeviceStore:
    return DeviceStore()
