"""
Dashboard channel registry tests

  1. Handshake rejection codes (4001 auth, 4003 not the owner)
  2. Supersede: the first channel is closed with 1000 and lookup returns the second
  3. Heartbeat: listening channels survive, dropped transports are terminated
  4. Inbound framing: ping -> pong, malformed JSON or binary closes the channel
  5. Backpressure and send errors
  6. The /ws endpoint end to end
"""
import asyncio

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import FakeSocket
from foodhub import main
from foodhub.api import dashboard
from foodhub.core.security import create_access_token
from foodhub.services.connection_registry import ConnectionRegistry, get_registry, restaurant_owner_lookup


async def attach(registry, world, socket=None):
    socket = socket or FakeSocket()
    channel = await registry.attach(socket, world.owner.id, world.restaurant.id, world.owner_token)
    return socket, channel


# ─── Test 1: Handshake ─────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_missing_parameters_close_with_4001(registry, world):
    socket = FakeSocket()
    assert await registry.attach(socket, world.owner.id, world.restaurant.id, None) is None
    assert socket.accepted
    assert socket.closed[0] == 4001
    assert registry.lookup(world.restaurant.id) is None


@pytest.mark.asyncio
async def test_token_for_another_user_closes_with_4001(registry, world):
    socket = FakeSocket()
    assert await registry.attach(socket, world.owner.id, world.restaurant.id, world.customer_token) is None
    assert socket.closed[0] == 4001


@pytest.mark.asyncio
async def test_invalid_token_closes_with_4001(registry, world):
    socket = FakeSocket()
    assert await registry.attach(socket, world.owner.id, world.restaurant.id, "not-a-jwt") is None
    assert socket.closed[0] == 4001


@pytest.mark.asyncio
async def test_non_owner_closes_with_4003(registry, world):
    socket = FakeSocket()
    channel = await registry.attach(socket, world.customer.id, world.restaurant.id, world.customer_token)
    assert channel is None
    assert socket.closed[0] == 4003


@pytest.mark.asyncio
async def test_slow_authorization_times_out_with_4001(clock):
    async def slow_owner(restaurant_id):
        await asyncio.sleep(1)
        return "owner-1"

    registry = ConnectionRegistry(owner_resolver=slow_owner, clock=clock, handshake_timeout=0.05)
    socket = FakeSocket()
    token = create_access_token({"sub": "owner-1"})
    assert await registry.attach(socket, "owner-1", "r1", token) is None
    assert socket.closed[0] == 4001


@pytest.mark.asyncio
async def test_attach_confirms_connection(registry, world):
    socket, channel = await attach(registry, world)
    assert socket.types == ["connectionConfirmed"]
    assert channel.is_alive
    assert registry.lookup(world.restaurant.id) is channel
    await registry.close_all()


# ─── Test 2: Supersede ─────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_second_channel_supersedes_first(registry, world):
    first_socket, first = await attach(registry, world)

    class ObservingSocket(FakeSocket):
        async def send_json(self, data):
            # By the time the new channel gets its first frame the old one is gone
            assert first_socket.closed == (1000, "superseded")
            assert registry.lookup(world.restaurant.id) is not first
            await super().send_json(data)

    second_socket, second = await attach(registry, world, ObservingSocket())
    assert second is not None
    assert first.closing
    assert registry.lookup(world.restaurant.id) is second
    assert len(registry) == 1
    assert registry.send(world.restaurant.id, {"type": "newOrder", "order": {}})
    await second.flush()
    assert first_socket.types == ["connectionConfirmed"]
    assert second_socket.types == ["connectionConfirmed", "newOrder"]

    # The superseded socket's own disconnect must not evict its replacement
    assert await registry.detach(world.restaurant.id, first) is False
    assert registry.lookup(world.restaurant.id) is second
    await registry.close_all()


# ─── Test 3: Heartbeat ─────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_listening_channel_survives_many_ticks(registry, world, clock):
    socket, channel = await attach(registry, world)
    for _ in range(10):
        clock.advance(seconds=30)
        assert await registry.heartbeat_tick() == 0
        assert channel.is_alive
        assert channel.last_pong == clock.now
    assert registry.lookup(world.restaurant.id) is channel
    await channel.flush()
    assert socket.types == ["connectionConfirmed"]
    await registry.close_all()


@pytest.mark.asyncio
async def test_dropped_transport_is_terminated_on_the_next_tick(registry, world):
    socket, channel = await attach(registry, world)
    assert await registry.heartbeat_tick() == 0

    socket.drop()
    assert await registry.heartbeat_tick() == 0
    assert channel.is_alive is False
    assert registry.lookup(world.restaurant.id) is channel

    assert await registry.heartbeat_tick() == 1
    assert registry.lookup(world.restaurant.id) is None
    assert socket.closed == (1001, "heartbeat timeout")


@pytest.mark.asyncio
async def test_inbound_frame_revives_channel_before_the_tick(registry, world, clock):
    socket, channel = await attach(registry, world)
    socket.drop()
    await registry.heartbeat_tick()
    assert channel.is_alive is False

    clock.advance(seconds=5)
    await registry.handle_inbound(channel, '{"type": "ping"}')
    assert channel.last_pong == clock.now
    assert await registry.heartbeat_tick() == 0
    await registry.close_all()


# ─── Test 4: Inbound frames ────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_client_ping_is_answered_with_pong(registry, world):
    socket, channel = await attach(registry, world)
    channel.is_alive = False
    await registry.handle_inbound(channel, '{"type": "ping"}')
    await channel.flush()
    assert socket.types[-1] == "pong"
    assert channel.is_alive
    await registry.close_all()


@pytest.mark.asyncio
async def test_other_messages_go_to_the_handler(clock, world, session_factory):
    received = []

    async def on_message(channel, frame):
        received.append(frame)

    registry = ConnectionRegistry(restaurant_owner_lookup(session_factory), clock, on_message=on_message)
    _, channel = await attach(registry, world)
    await registry.handle_inbound(channel, '{"type": "orderSeen", "orderId": "abc"}')
    assert received == [{"type": "orderSeen", "orderId": "abc"}]
    await registry.close_all()


@pytest.mark.asyncio
async def test_malformed_frame_closes_only_that_channel(registry, world):
    socket, channel = await attach(registry, world)
    await registry.handle_inbound(channel, "{not json")
    assert socket.closed[0] == 1003
    assert registry.lookup(world.restaurant.id) is None


@pytest.mark.asyncio
async def test_binary_frame_closes_the_channel_with_1003(registry, world):
    socket, channel = await attach(registry, world)
    await registry.handle_inbound(channel, b'{"type": "ping"}')
    assert socket.closed[0] == 1003
    assert registry.lookup(world.restaurant.id) is None


# ─── Test 5: Backpressure / send errors ────────────────────────────────────────
@pytest.mark.asyncio
async def test_full_queue_drops_oldest_frame(registry, world):
    socket, channel = await attach(registry, world)
    # Writer has not run yet: everything below is queued synchronously
    for n in range(70):
        assert registry.send(world.restaurant.id, {"type": "tick", "n": n})
    assert channel.dropped == 6

    await channel.flush()
    ticks = [f["n"] for f in socket.sent if f["type"] == "tick"]
    assert ticks == list(range(6, 70))
    await registry.close_all()


@pytest.mark.asyncio
async def test_send_error_closes_the_channel(registry, world):
    socket, channel = await attach(registry, world)
    socket.fail_send = True
    registry.send(world.restaurant.id, {"type": "newOrder", "order": {}})
    await channel.flush()
    await asyncio.sleep(0)
    assert registry.lookup(world.restaurant.id) is None
    assert channel.closing


@pytest.mark.asyncio
async def test_send_without_channel_returns_false(registry):
    assert registry.send("unknown-restaurant", {"type": "newOrder", "order": {}}) is False


# ─── Test 6: /ws endpoint ──────────────────────────────────────────────────────
def _ws_app(registry: ConnectionRegistry) -> FastAPI:
    app = FastAPI()
    app.include_router(dashboard.router)
    app.dependency_overrides[get_registry] = lambda: registry
    return app


def test_ws_endpoint_supersedes_and_rejects():
    async def owner_of(restaurant_id):
        return "owner-1" if restaurant_id == "r1" else None

    registry = ConnectionRegistry(owner_resolver=owner_of)
    token = create_access_token({"sub": "owner-1"})
    url = f"/ws?userId=owner-1&restaurantId=r1&token={token}"

    with TestClient(_ws_app(registry)) as client:
        with client.websocket_connect("/ws?userId=owner-1&restaurantId=r1") as ws:
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
            assert exc.value.code == 4001

        with client.websocket_connect(f"/ws?userId=owner-1&restaurantId=r2&token={token}") as ws:
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
            assert exc.value.code == 4003

        with client.websocket_connect(url) as first:
            assert first.receive_json()["type"] == "connectionConfirmed"
            first_channel = registry.lookup("r1")

            with client.websocket_connect(url) as second:
                assert second.receive_json()["type"] == "connectionConfirmed"
                with pytest.raises(WebSocketDisconnect) as exc:
                    first.receive_json()
                assert exc.value.code == 1000
                assert registry.lookup("r1") is not first_channel

                second.send_json({"type": "ping"})
                assert second.receive_json() == {"type": "pong"}


def test_ws_endpoint_refuses_binary_frames():
    async def owner_of(restaurant_id):
        return "owner-1"

    registry = ConnectionRegistry(owner_resolver=owner_of)
    token = create_access_token({"sub": "owner-1"})

    with TestClient(_ws_app(registry)) as client:
        with client.websocket_connect(f"/ws?userId=owner-1&restaurantId=r1&token={token}") as ws:
            assert ws.receive_json()["type"] == "connectionConfirmed"
            ws.send_bytes(b'{"type": "ping"}')
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
            assert exc.value.code == 1003
    assert registry.lookup("r1") is None


def test_server_pings_dashboards_at_the_heartbeat_cadence(monkeypatch):
    captured = {}
    monkeypatch.setattr(main.uvicorn, "run", lambda target, **kwargs: captured.update(kwargs, target=target))

    main.run()

    assert captured["target"] == "foodhub.main:app"
    assert captured["ws"] == "websockets"
    assert captured["ws_ping_interval"] == main.settings.WS_HEARTBEAT_INTERVAL_SECONDS == 30
    assert captured["ws_ping_timeout"] == main.settings.WS_PING_TIMEOUT_SECONDS
