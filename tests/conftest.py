"""
Foodhub test fixtures

Every test gets its own in-memory SQLite database and its own registry,
device store, dispatcher and lifecycle wired to fakes for the clock, the
push provider and retry sleeps. The FastAPI app is driven in-process
through httpx.ASGITransport with those components swapped in via
dependency_overrides.
"""
import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["ENVIRONMENT"] = "test"
os.environ["JWT_SECRET_KEY"] = "test-secret"
os.environ["IDEMPOTENCY_ENABLED"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["METRICS_ENABLED"] = "false"
os.environ["FCM_PROJECT_ID"] = ""
os.environ["FCM_ACCESS_TOKEN"] = ""

import asyncio  # noqa: E402
from datetime import datetime, timedelta, timezone  # noqa: E402
from decimal import Decimal  # noqa: E402
from types import SimpleNamespace  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from starlette.websockets import WebSocketState  # noqa: E402

from foodhub.core.security import create_user_token, hash_password  # noqa: E402
from foodhub.db.database import Base, get_db  # noqa: E402
from foodhub.models import Device, DeviceKind, MenuItem, Restaurant, User, UserRole  # noqa: E402
from foodhub.services.connection_registry import (  # noqa: E402
    ConnectionRegistry,
    get_registry,
    restaurant_owner_lookup,
)
from foodhub.services.device_store import DeviceStore, get_device_store  # noqa: E402
from foodhub.services.dispatcher import NotificationDispatcher, get_dispatcher  # noqa: E402
from foodhub.services.order_lifecycle import OrderLifecycle, get_lifecycle  # noqa: E402
from foodhub.services.push_provider import PushError, PushResult  # noqa: E402

PASSWORD = "secret123"
_PASSWORD_HASH = hash_password(PASSWORD)


# ─── Fakes ─────────────────────────────────────────────────────────────────────

class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime.now(tz=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakePushProvider:
    """Records every message; failures are scripted per token."""

    def __init__(self, delay: float = 0.0):
        self.sent = []
        self.batches = []
        self.delay = delay
        self._scripted: dict[str, list[PushError]] = {}
        self._always: dict[str, PushError] = {}

    def fail(self, token: str, error: PushError, times: int | None = None) -> None:
        if times is None:
            self._always[token] = error
        else:
            self._scripted.setdefault(token, []).extend([error] * times)

    def tokens(self, recipient: str | None = None, kind: str | None = None) -> list[str]:
        return [
            m.token for m in self.sent
            if (recipient is None or m.data.get("recipient") == recipient)
            and (kind is None or m.data.get("type") == kind)
        ]

    async def send(self, message) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.sent.append(message)
        if message.token in self._always:
            raise self._always[message.token]
        scripted = self._scripted.get(message.token)
        if scripted:
            raise scripted.pop(0)
        return f"projects/test/messages/{len(self.sent)}"

    async def send_batch(self, messages):
        self.batches.append([m.token for m in messages])
        results = []
        for message in messages:
            try:
                results.append(PushResult(message.token, message_id=await self.send(message)))
            except PushError as exc:
                results.append(PushResult(message.token, error=exc))
        return results


class FakeSocket:
    """Stands in for a Starlette WebSocket inside the registry."""

    def __init__(self, fail_send: bool = False):
        self.accepted = False
        self.sent: list[dict] = []
        self.closed: tuple[int, str] | None = None
        self.fail_send = fail_send
        self.client_state = WebSocketState.CONNECTING
        self.application_state = WebSocketState.CONNECTING

    @property
    def types(self) -> list[str]:
        return [frame["type"] for frame in self.sent]

    async def accept(self):
        self.accepted = True
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED

    def drop(self):
        """The peer vanished without a close frame."""
        self.client_state = WebSocketState.DISCONNECTED

    async def send_json(self, data):
        if self.fail_send:
            raise RuntimeError("connection reset by peer")
        if self.closed is not None:
            raise RuntimeError("socket already closed")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str = ""):
        if self.closed is not None:
            raise RuntimeError("socket already closed")
        self.closed = (code, reason)
        self.application_state = WebSocketState.DISCONNECTED


class FakeRedis:
    """The subset of redis.asyncio used by the middleware."""

    def __init__(self):
        self.values: dict[str, str] = {}
        self.zsets: dict[str, dict[str, float]] = {}

    async def get(self, key):
        return self.values.get(key)

    async def setex(self, key, ttl, value):
        self.values[key] = value

    async def ping(self):
        return True

    def pipeline(self):
        return _FakePipeline(self)


class _FakePipeline:
    def __init__(self, redis: FakeRedis):
        self._redis = redis
        self._ops = []

    def zremrangebyscore(self, key, low, high):
        self._ops.append(("zrem", key, high))

    def zcard(self, key):
        self._ops.append(("zcard", key))

    def zadd(self, key, mapping):
        self._ops.append(("zadd", key, mapping))

    def expire(self, key, ttl):
        self._ops.append(("expire", key))

    async def execute(self):
        results = []
        for op in self._ops:
            zset = self._redis.zsets.setdefault(op[1], {})
            if op[0] == "zrem":
                stale = [m for m, score in zset.items() if score <= op[2]]
                for member in stale:
                    del zset[member]
                results.append(len(stale))
            elif op[0] == "zcard":
                results.append(len(zset))
            elif op[0] == "zadd":
                zset.update(op[2])
                results.append(len(op[2]))
            else:
                results.append(True)
        return results


# ─── Database ──────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


# ─── Components ────────────────────────────────────────────────────────────────

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def push():
    return FakePushProvider()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def sleep(delay):
        sleeps.append(delay)
    return sleep


@pytest.fixture
def registry(session_factory, clock):
    return ConnectionRegistry(owner_resolver=restaurant_owner_lookup(session_factory), clock=clock)


@pytest.fixture
def device_store(session_factory, clock):
    return DeviceStore(session_factory, clock)


@pytest_asyncio.fixture
async def dispatcher(registry, device_store, push, fake_sleep):
    dispatcher = NotificationDispatcher(registry, device_store, push, sleep=fake_sleep)
    yield dispatcher
    await dispatcher.close()
    await registry.close_all()


@pytest_asyncio.fixture
async def lifecycle(session_factory, dispatcher, clock):
    lifecycle = OrderLifecycle(session_factory, dispatcher, clock)
    yield lifecycle
    await lifecycle.close()


# ─── Seed data ─────────────────────────────────────────────────────────────────

async def create_user(session_factory, mobile: str, role: UserRole = UserRole.USER,
                      username: str = "tester", **fields) -> User:
    async with session_factory() as session:
        user = User(username=username, mobile_number=mobile, hashed_password=_PASSWORD_HASH,
                    role=role, **fields)
        session.add(user)
        await session.commit()
        return user


async def create_restaurant(session_factory, owner: User | None, name: str = "Spice Hub",
                            **fields) -> Restaurant:
    async with session_factory() as session:
        restaurant = Restaurant(name=name, address="Block C, Campus Road",
                                owner_id=owner.id if owner else None, **fields)
        session.add(restaurant)
        await session.flush()
        session.add(MenuItem(restaurant_id=restaurant.id, position=0, name="Pizza",
                             category="main", price=Decimal("210.00"),
                             sizes={"Medium": "210.00", "Large": "260.00"}))
        if owner is not None:
            db_owner = await session.get(User, owner.id)
            db_owner.restaurant_id = restaurant.id
        await session.commit()
        return restaurant


async def add_device(session_factory, user: User, token: str, kind: DeviceKind = DeviceKind.ANDROID,
                     last_active: datetime | None = None, expires_at: datetime | None = None) -> None:
    now = datetime.now(tz=timezone.utc)
    async with session_factory() as session:
        session.add(Device(user_id=user.id, token=token, kind=kind, info={},
                           last_active=last_active or now,
                           expires_at=expires_at or now + timedelta(days=30)))
        await session.commit()


@pytest_asyncio.fixture
async def world(session_factory):
    """
    Customer U1, restaurant owner O1 of restaurant R1 (menu item M1),
    and an admin. Owner and customer each have one push device.
    """
    customer = await create_user(session_factory, "9000000001", username="U1")
    owner = await create_user(session_factory, "9000000002", UserRole.RESTAURANT, username="O1")
    admin = await create_user(session_factory, "9000000003", UserRole.ADMIN, username="admin")
    restaurant = await create_restaurant(session_factory, owner)
    owner.restaurant_id = restaurant.id
    await add_device(session_factory, owner, "owner-token-1")
    await add_device(session_factory, customer, "customer-token-1")

    async with session_factory() as session:
        menu_item_id = (await session.get(Restaurant, restaurant.id)).menu[0].id

    return SimpleNamespace(
        customer=customer,
        owner=owner,
        admin=admin,
        restaurant=restaurant,
        menu_item_id=menu_item_id,
        customer_token=create_user_token(customer),
        owner_token=create_user_token(owner),
        admin_token=create_user_token(admin),
    )


def order_payload(world, **overrides) -> dict:
    payload = {
        "restaurant": world.restaurant.id,
        "restaurantName": world.restaurant.name,
        "items": [{"menuItem": world.menu_item_id, "itemName": "Pizza", "quantity": 2, "size": "Medium"}],
        "totalAmount": 420.00,
        "address": "Hostel H5",
    }
    payload.update(overrides)
    return payload


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


# ─── App ───────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def client(session_factory, registry, device_store, dispatcher, lifecycle):
    from foodhub.main import app

    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_registry] = lambda: registry
    app.dependency_overrides[get_device_store] = lambda: device_store
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_lifecycle] = lambda: lifecycle

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
