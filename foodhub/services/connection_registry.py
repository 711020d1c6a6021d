"""
Foodhub - Live dashboard channel registry

One channel per restaurant. The map is only touched under the registry
lock and no socket I/O happens while the lock is held: callers collect
the channels to close inside the lock and close them afterwards.

Frames to a channel go through a bounded outbound queue drained by a
per-channel writer task. When the queue is full the oldest frame is
dropped.
"""
import asyncio
import json
import logging
from functools import lru_cache
from typing import Any, Awaitable, Callable

from jose import JWTError
from sqlalchemy import select
from starlette.websockets import WebSocketState

from foodhub.core.config import get_settings
from foodhub.core.metrics import live_channel_dropped_frames_total, live_channels_terminated_total
from foodhub.core.security import decode_token
from foodhub.db.database import SessionLocal, utcnow
from foodhub.models.restaurant import Restaurant

settings = get_settings()
logger = logging.getLogger(__name__)

CLOSE_SUPERSEDED = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_UNSUPPORTED_DATA = 1003
CLOSE_INTERNAL_ERROR = 1011
CLOSE_AUTH = 4001
CLOSE_FORBIDDEN = 4003

OwnerResolver = Callable[[str], Awaitable[str | None]]


class LiveChannel:
    """A connected dashboard socket plus its liveness state and outbound queue."""

    def __init__(self, socket, restaurant_id: str, owner_user_id: str,
                 clock: Callable = utcnow, queue_size: int | None = None):
        self.socket = socket
        self.restaurant_id = restaurant_id
        self.owner_user_id = owner_user_id
        self.is_alive = True
        self.last_pong = clock()
        self.closing = False
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size or settings.WS_OUTBOUND_QUEUE_SIZE)
        self._writer: asyncio.Task | None = None

    def __repr__(self) -> str:
        return f"<LiveChannel restaurant={self.restaurant_id} alive={self.is_alive} closing={self.closing}>"

    def enqueue(self, frame: dict[str, Any]) -> bool:
        if self.closing:
            return False
        if self._queue.full():
            self._queue.get_nowait()
            self._queue.task_done()
            self.dropped += 1
            live_channel_dropped_frames_total.inc()
            logger.warning("Outbound queue full for restaurant %s, dropped oldest frame",
                           self.restaurant_id)
        self._queue.put_nowait(frame)
        return True

    def start_writer(self, on_error: Callable[["LiveChannel", Exception], Awaitable[None]]) -> None:
        self._writer = asyncio.create_task(self._write_loop(on_error))

    async def _write_loop(self, on_error) -> None:
        while True:
            frame = await self._queue.get()
            try:
                await self.socket.send_json(frame)
            except Exception as exc:
                self._queue.task_done()
                await on_error(self, exc)
                return
            self._queue.task_done()

    def transport_connected(self) -> bool:
        """False once either side of the socket has gone away."""
        return (self.socket.client_state == WebSocketState.CONNECTED
                and self.socket.application_state == WebSocketState.CONNECTED)

    async def flush(self) -> None:
        """Wait until every queued frame has been written."""
        await self._queue.join()

    async def close(self, code: int, reason: str = "") -> None:
        self.closing = True
        writer, self._writer = self._writer, None
        if writer is not None and writer is not asyncio.current_task():
            writer.cancel()
        try:
            await self.socket.close(code=code, reason=reason)
        except Exception as exc:
            logger.debug("Close on restaurant %s socket failed: %s", self.restaurant_id, exc)


def restaurant_owner_lookup(session_factory=SessionLocal) -> OwnerResolver:
    """Looks up restaurants.owner_id for the handshake's ownership check."""
    async def resolve(restaurant_id: str) -> str | None:
        async with session_factory() as session:
            return (await session.execute(
                select(Restaurant.owner_id).where(Restaurant.id == restaurant_id)
            )).scalar_one_or_none()
    return resolve


class ConnectionRegistry:
    def __init__(self, owner_resolver: OwnerResolver | None = None,
                 clock: Callable = utcnow,
                 handshake_timeout: float | None = None,
                 queue_size: int | None = None,
                 on_message: Callable[[LiveChannel, dict], Awaitable[None]] | None = None):
        self._owner_resolver = owner_resolver or restaurant_owner_lookup()
        self._clock = clock
        self._handshake_timeout = handshake_timeout or settings.WS_HANDSHAKE_TIMEOUT_SECONDS
        self._queue_size = queue_size or settings.WS_OUTBOUND_QUEUE_SIZE
        self._on_message = on_message or self._log_message
        self._channels: dict[str, LiveChannel] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._channels)

    # ── Attach / detach ──────────────────────────────────────

    async def _authorize(self, user_id: str | None, restaurant_id: str | None,
                         token: str | None) -> int | None:
        """Returns a close code when the handshake must be rejected."""
        if not (user_id and restaurant_id and token):
            return CLOSE_AUTH
        try:
            claims = decode_token(token)
        except JWTError:
            return CLOSE_AUTH
        if claims.get("sub") != user_id:
            return CLOSE_AUTH
        owner = await self._owner_resolver(restaurant_id)
        if owner is None or owner != user_id:
            return CLOSE_FORBIDDEN
        return None

    async def attach(self, socket, user_id: str | None, restaurant_id: str | None,
                     token: str | None) -> LiveChannel | None:
        await socket.accept()
        try:
            rejection = await asyncio.wait_for(
                self._authorize(user_id, restaurant_id, token), timeout=self._handshake_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Dashboard handshake for restaurant %s timed out", restaurant_id)
            rejection = CLOSE_AUTH
        if rejection is not None:
            logger.info("Rejected dashboard channel user=%s restaurant=%s code=%d",
                        user_id, restaurant_id, rejection)
            try:
                await socket.close(code=rejection)
            except Exception as exc:
                logger.debug("Close after rejected handshake failed: %s", exc)
            return None

        channel = LiveChannel(socket, restaurant_id, user_id, self._clock, self._queue_size)
        async with self._lock:
            prior = self._channels.pop(restaurant_id, None)
            if prior is not None:
                prior.closing = True
            self._channels[restaurant_id] = channel

        if prior is not None:
            await prior.close(CLOSE_SUPERSEDED, "superseded")
            live_channels_terminated_total.labels(reason="superseded").inc()
            logger.info("Superseded dashboard channel for restaurant %s", restaurant_id)

        channel.is_alive = True
        channel.last_pong = self._clock()
        try:
            await socket.send_json({
                "type": "connectionConfirmed",
                "message": f"Connected to order notifications for restaurant {restaurant_id}",
            })
        except Exception as exc:
            await self._terminate(channel, CLOSE_INTERNAL_ERROR, "send-error", exc)
            return None
        channel.start_writer(self._on_send_error)
        logger.info("Dashboard channel attached for restaurant %s", restaurant_id)
        return channel

    async def detach(self, restaurant_id: str, channel: LiveChannel) -> bool:
        async with self._lock:
            removed = self._channels.get(restaurant_id) is channel
            if removed:
                del self._channels[restaurant_id]
            channel.closing = True
        await channel.close(CLOSE_GOING_AWAY, "disconnected")
        if removed:
            logger.info("Dashboard channel detached for restaurant %s", restaurant_id)
        return removed

    async def _terminate(self, channel: LiveChannel, code: int, reason: str,
                         exc: Exception | None = None) -> None:
        async with self._lock:
            if self._channels.get(channel.restaurant_id) is channel:
                del self._channels[channel.restaurant_id]
            channel.closing = True
        if exc is not None:
            logger.warning("Closing channel for restaurant %s (%s): %s",
                           channel.restaurant_id, reason, exc)
        live_channels_terminated_total.labels(reason=reason).inc()
        await channel.close(code, reason)

    async def _on_send_error(self, channel: LiveChannel, exc: Exception) -> None:
        await self._terminate(channel, CLOSE_INTERNAL_ERROR, "send-error", exc)

    # ── Lookup / send ────────────────────────────────────────

    def lookup(self, restaurant_id: str) -> LiveChannel | None:
        channel = self._channels.get(restaurant_id)
        if channel is None or channel.closing:
            return None
        return channel

    def send(self, restaurant_id: str, frame: dict[str, Any]) -> bool:
        channel = self.lookup(restaurant_id)
        if channel is None:
            return False
        return channel.enqueue(frame)

    # ── Inbound ──────────────────────────────────────────────

    async def handle_inbound(self, channel: LiveChannel, data: str | bytes) -> None:
        """Feed one client frame to the channel. Anything but a JSON object in a text frame closes it with 1003."""
        channel.is_alive = True
        channel.last_pong = self._clock()
        if isinstance(data, bytes):
            await self._terminate(channel, CLOSE_UNSUPPORTED_DATA, "parse-error",
                                  ValueError("binary frames are not accepted"))
            return
        try:
            frame = json.loads(data)
        except ValueError as exc:
            await self._terminate(channel, CLOSE_UNSUPPORTED_DATA, "parse-error", exc)
            return
        if not isinstance(frame, dict):
            await self._terminate(channel, CLOSE_UNSUPPORTED_DATA, "parse-error",
                                  ValueError("frame is not a JSON object"))
            return

        if frame.get("type") == "ping":
            channel.enqueue({"type": "pong"})
        else:
            await self._on_message(channel, frame)

    @staticmethod
    async def _log_message(channel: LiveChannel, frame: dict) -> None:
        logger.info("Dashboard message from restaurant %s: %s", channel.restaurant_id, frame.get("type"))

    # ── Maintenance ──────────────────────────────────────────

    async def heartbeat_tick(self) -> int:
        """
        Terminate channels found dead at the previous tick and re-arm the rest.

        Pings are protocol-level control frames sent by the server itself
        (ws_ping_interval in foodhub.main.run); a peer that misses its pong
        within ws_ping_timeout has its transport dropped. A channel stays
        alive while its transport is connected, so a dashboard that only
        listens is never cut off. A dropped transport leaves is_alive false
        and the next tick removes the channel.
        """
        now = self._clock()
        async with self._lock:
            dead = [c for c in self._channels.values() if not c.is_alive]
            for channel in dead:
                del self._channels[channel.restaurant_id]
                channel.closing = True
            for channel in self._channels.values():
                channel.is_alive = channel.transport_connected()
                if channel.is_alive:
                    channel.last_pong = now

        for channel in dead:
            logger.info("Terminating unresponsive channel for restaurant %s (last pong %s)",
                        channel.restaurant_id, channel.last_pong.isoformat())
            live_channels_terminated_total.labels(reason="heartbeat").inc()
            await channel.close(CLOSE_GOING_AWAY, "heartbeat timeout")
        return len(dead)

    async def close_all(self) -> None:
        async with self._lock:
            channels = list(self._channels.values())
            self._channels.clear()
            for channel in channels:
                channel.closing = True
        for channel in channels:
            await channel.close(CLOSE_GOING_AWAY, "server shutdown")


@lru_cache()
def get_registry() -> ConnectionRegistry:
    return ConnectionRegistry()
