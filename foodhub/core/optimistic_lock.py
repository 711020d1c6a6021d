"""
Foodhub - Compare-and-set on a version column

Device lists are guarded by users.version. A writer reads the row, applies
its changes in the session and then calls compare_and_bump(), which issues

    UPDATE <table> SET version = v + 1 WHERE id = :id AND version = v

and commits. A writer that lost the race matches no row: the session is
rolled back and StaleDataError is raised, and with_optimistic_retry replays
the whole read-modify-write on a fresh session.
"""
import asyncio
import functools
import logging
import random

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import exc as orm_exc

from foodhub.core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


class StaleDataError(Exception):
    """The version column changed between our read and our write."""


async def compare_and_bump(session: AsyncSession, model, row_id: str, read_version: int) -> None:
    """Flush pending changes, bump the version if it is still read_version, commit."""
    try:
        result = await session.execute(
            update(model)
            .where(model.id == row_id, model.version == read_version)
            .values(version=read_version + 1)
            .execution_options(synchronize_session=False)
        )
    except orm_exc.StaleDataError as exc:
        await session.rollback()
        raise StaleDataError(str(exc)) from exc
    if result.rowcount != 1:
        await session.rollback()
        raise StaleDataError(f"{model.__tablename__}.version moved past {read_version} for {row_id}")
    await session.commit()


def backoff_delay(attempt: int) -> float:
    base = settings.DEVICE_CAS_BASE_DELAY_MS / 1000.0
    cap = settings.DEVICE_CAS_MAX_DELAY_MS / 1000.0
    return min(base * (2 ** attempt), cap) + random.uniform(0, settings.DEVICE_CAS_JITTER_MS / 1000.0)


def with_optimistic_retry(max_retries: int | None = None):
    """
    Retry an async read-modify-write on StaleDataError with exponential
    backoff and jitter. The last conflict is re-raised.
    """
    attempts = max_retries or settings.DEVICE_CAS_MAX_RETRIES

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(1, attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except StaleDataError as exc:
                    if attempt == attempts:
                        logger.error("%s lost %d version races in a row: %s",
                                     func.__qualname__, attempts, exc)
                        raise
                    delay = backoff_delay(attempt)
                    logger.warning("%s: version conflict (attempt %d/%d), retrying in %.3fs",
                                   func.__qualname__, attempt, attempts, delay)
                    await asyncio.sleep(delay)
        return wrapper
    return decorator
