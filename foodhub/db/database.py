"""
Foodhub - Async database engine and session factory
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import AsyncGenerator

from sqlalchemy import DateTime, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

from foodhub.core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def _engine_kwargs(url: str) -> dict:
    if url.startswith("postgresql+asyncpg"):
        return {
            "pool_pre_ping": True,
            "connect_args": {
                "timeout": settings.DB_CONNECT_TIMEOUT_SECONDS,
                "command_timeout": settings.DB_COMMAND_TIMEOUT_SECONDS,
            },
        }
    return {}


engine = create_async_engine(settings.database_url, **_engine_kwargs(settings.database_url))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with SessionLocal() as session:
        yield session


async def init_db() -> None:
    """
    Wait for the store with bounded exponential backoff, then create tables.
    Raises the last connection error once retries are exhausted so the
    process exits instead of serving without a store.
    """
    delay = settings.DB_STARTUP_BASE_DELAY_SECONDS
    for attempt in range(1, settings.DB_STARTUP_MAX_RETRIES + 1):
        try:
            async with engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
                await conn.run_sync(Base.metadata.create_all)
            return
        except (OSError, asyncio.TimeoutError, DBAPIError) as exc:
            if attempt == settings.DB_STARTUP_MAX_RETRIES:
                logger.critical("Database unreachable after %d attempts: %s", attempt, exc)
                raise
            logger.warning("Database unreachable (attempt %d/%d), retrying in %.1fs: %s",
                           attempt, settings.DB_STARTUP_MAX_RETRIES, delay, exc)
            await asyncio.sleep(delay)
            delay *= 2
