"""
Device token store tests

  1. Upsert merges by token and caps each user at five devices (LRU eviction)
  2. Expired records are invisible and purged
  3. Legacy scalar token migration is idempotent
  4. users.version guards every device-list write
"""
from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from conftest import add_device, create_user
from foodhub.core.optimistic_lock import StaleDataError
from foodhub.models import Device, DeviceKind, User
from foodhub.services.device_store import DeviceStore


async def tokens_of(session_factory, user_id: str) -> list[str]:
    async with session_factory() as session:
        rows = await session.execute(
            select(Device.token).where(Device.user_id == user_id).order_by(Device.token)
        )
        return list(rows.scalars())


async def version_of(session_factory, user_id: str) -> int:
    async with session_factory() as session:
        return (await session.get(User, user_id)).version


# ─── Test 1: Upsert / cap ──────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_upsert_merges_existing_token(device_store, session_factory, clock):
    user = await create_user(session_factory, "9100000001")
    await device_store.upsert_device(user.id, "tok-a", DeviceKind.ANDROID, {"model": "Pixel"})
    clock.advance(hours=1)
    device = await device_store.upsert_device(user.id, "tok-a", info={"appVersion": "2.1"})

    assert device.kind == DeviceKind.ANDROID, "An unknown kind must not overwrite a known one"
    assert device.info == {"model": "Pixel", "appVersion": "2.1"}
    assert device.last_active == clock.now
    assert device.expires_at == clock.now + timedelta(days=30)
    assert await tokens_of(session_factory, user.id) == ["tok-a"]
    assert await version_of(session_factory, user.id) == 3


@pytest.mark.asyncio
async def test_sixth_device_evicts_least_recently_active(device_store, session_factory, clock):
    user = await create_user(session_factory, "9100000002")
    for n in range(1, 7):
        await device_store.upsert_device(user.id, f"tok-{n}", DeviceKind.IOS)
        clock.advance(minutes=1)

    assert await tokens_of(session_factory, user.id) == ["tok-2", "tok-3", "tok-4", "tok-5", "tok-6"]


@pytest.mark.asyncio
async def test_refreshing_a_device_protects_it_from_eviction(device_store, session_factory, clock):
    user = await create_user(session_factory, "9100000003")
    for n in range(1, 6):
        await device_store.upsert_device(user.id, f"tok-{n}")
        clock.advance(minutes=1)
    await device_store.upsert_device(user.id, "tok-1")
    clock.advance(minutes=1)
    await device_store.upsert_device(user.id, "tok-6")

    assert "tok-1" in await tokens_of(session_factory, user.id)
    assert "tok-2" not in await tokens_of(session_factory, user.id)


@pytest.mark.asyncio
async def test_upsert_for_unknown_user_returns_none(device_store):
    assert await device_store.upsert_device("0" * 32, "tok") is None


# ─── Test 2: Expiry ────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_expired_devices_are_not_active(device_store, session_factory, clock):
    user = await create_user(session_factory, "9100000004")
    await add_device(session_factory, user, "fresh", last_active=clock.now)
    await add_device(session_factory, user, "stale", last_active=clock.now - timedelta(days=31),
                     expires_at=clock.now - timedelta(days=1))

    active = await device_store.active_tokens(user.id)
    assert [d.token for d in active] == ["fresh"]


@pytest.mark.asyncio
async def test_upsert_purges_expired_devices(device_store, session_factory, clock):
    user = await create_user(session_factory, "9100000005")
    await add_device(session_factory, user, "stale", expires_at=clock.now - timedelta(seconds=1))
    await device_store.upsert_device(user.id, "fresh")
    assert await tokens_of(session_factory, user.id) == ["fresh"]


@pytest.mark.asyncio
async def test_sweep_removes_expired_and_bumps_versions(device_store, session_factory, clock):
    first = await create_user(session_factory, "9100000006")
    second = await create_user(session_factory, "9100000007")
    await add_device(session_factory, first, "keep")
    await add_device(session_factory, first, "gone-1", expires_at=clock.now - timedelta(hours=1))
    await add_device(session_factory, second, "gone-2", expires_at=clock.now - timedelta(hours=1))

    assert await device_store.sweep_expired() == 2
    assert await tokens_of(session_factory, first.id) == ["keep"]
    assert await tokens_of(session_factory, second.id) == []
    assert await version_of(session_factory, first.id) == 2
    assert await device_store.sweep_expired() == 0


# ─── Test 3: Legacy migration ──────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_legacy_token_migrates_once(device_store, session_factory):
    user = await create_user(session_factory, "9100000008", fcm_token="legacy-token")

    assert await device_store.migrate_legacy_token(user.id) is True
    assert await device_store.migrate_legacy_token(user.id) is False

    async with session_factory() as session:
        migrated = await session.get(User, user.id)
        assert migrated.fcm_token is None
        assert [(d.token, d.kind, d.info) for d in migrated.devices] == [
            ("legacy-token", DeviceKind.UNKNOWN, {"migrated": True}),
        ]


@pytest.mark.asyncio
async def test_upsert_migrates_legacy_token_first(device_store, session_factory):
    user = await create_user(session_factory, "9100000009", fcm_token="legacy-token")
    await device_store.upsert_device(user.id, "new-token", DeviceKind.WEB)
    assert await tokens_of(session_factory, user.id) == ["legacy-token", "new-token"]


@pytest.mark.asyncio
async def test_legacy_token_already_listed_is_not_duplicated(device_store, session_factory):
    user = await create_user(session_factory, "9100000010", fcm_token="same")
    await add_device(session_factory, user, "same")
    await device_store.migrate_legacy_token(user.id)
    async with session_factory() as session:
        count = (await session.execute(
            select(func.count(Device.id)).where(Device.user_id == user.id)
        )).scalar_one()
    assert count == 1


@pytest.mark.asyncio
async def test_remove_token(device_store, session_factory):
    user = await create_user(session_factory, "9100000011", fcm_token="legacy")
    await add_device(session_factory, user, "tok-a")

    assert await device_store.remove_token(user.id, "tok-a") is True
    assert await device_store.remove_token(user.id, "tok-a") is False
    assert await device_store.remove_token(user.id, "legacy") is True
    async with session_factory() as session:
        assert (await session.get(User, user.id)).fcm_token is None


# ─── Test 4: Compare-and-set ───────────────────────────────────────────────────
class RacingStore(DeviceStore):
    """Moves users.version between the read and the CAS write `races` times."""

    def __init__(self, *args, races: int = 1, **kwargs):
        super().__init__(*args, **kwargs)
        self.races = races
        self.loads = 0

    async def _load_user(self, session, user_id):
        user = await super()._load_user(session, user_id)
        self.loads += 1
        if self.races:
            self.races -= 1
            await session.execute(
                update(User).where(User.id == user_id).values(version=User.version + 1)
                .execution_options(synchronize_session=False)
            )
        return user


@pytest.mark.asyncio
async def test_lost_race_is_retried(session_factory, clock):
    user = await create_user(session_factory, "9100000012")
    store = RacingStore(session_factory, clock, races=1)

    device = await store.upsert_device(user.id, "tok-a")

    assert device is not None
    assert store.loads == 2
    assert await tokens_of(session_factory, user.id) == ["tok-a"]
    assert await version_of(session_factory, user.id) == 2


@pytest.mark.asyncio
async def test_unresolved_race_raises_stale_data(session_factory, clock):
    user = await create_user(session_factory, "9100000013")
    store = RacingStore(session_factory, clock, races=100)

    with pytest.raises(StaleDataError):
        await store.upsert_device(user.id, "tok-a")
    assert store.loads == 5
    assert await tokens_of(session_factory, user.id) == []
