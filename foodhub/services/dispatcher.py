"""
Foodhub - Notification dispatcher

Events are queued per order and handled by one worker task per order, so
every recipient sees the events of an order in the order they were
submitted. Workers for different orders run concurrently and retire as
soon as their queue is empty.

For each event the live channel (restaurant) and push (restaurant owner
and customer) are delivered concurrently. Push messages go out in batches;
transient failures are retried one message at a time with exponential
delays, permanent failures remove the token.
"""
import asyncio
import logging
from functools import lru_cache
from typing import Any, Awaitable, Callable

from foodhub.core.config import get_settings
from foodhub.core.logging import AUDIT_LOGGER
from foodhub.core.metrics import notification_attempts_total
from foodhub.services.connection_registry import ConnectionRegistry, get_registry
from foodhub.services.device_store import DeviceStore, get_device_store
from foodhub.services.events import NotificationEvent, NotificationKind, Recipient
from foodhub.services.notification_content import (
    ANDROID_CHANNELS,
    data_payload,
    is_web_target,
    priority_for,
    title_and_body,
)
from foodhub.services.push_provider import PushError, PushMessage, PushProvider, get_push_provider

settings = get_settings()
logger = logging.getLogger(__name__)
audit = logging.getLogger(AUDIT_LOGGER)

LIVE = "live"
PUSH = "push"


def live_frame(event: NotificationEvent) -> dict[str, Any]:
    if event.kind is NotificationKind.ORDER_PLACED:
        return {"type": "newOrder", "order": event.order, "messageId": event.message_id}
    return {
        "type": event.kind.value,
        "order": event.order,
        "event": {
            "type": event.kind.value,
            "orderId": event.order_id,
            "restaurantId": event.restaurant_id,
            "status": event.status,
            "timestamp": event.timestamp.isoformat(),
        },
        "messageId": event.message_id,
    }


def compose_push(event: NotificationEvent, recipient: Recipient, device) -> PushMessage:
    kind = getattr(device.kind, "value", device.kind)
    web = is_web_target(kind, event)
    title, body = title_and_body(event, recipient)
    return PushMessage(
        token=device.token,
        title=title,
        body=body,
        data=data_payload(event, recipient, web),
        priority=priority_for(event),
        android_channel=ANDROID_CHANNELS[recipient],
        web=web,
    )


class NotificationDispatcher:
    def __init__(self, registry: ConnectionRegistry, device_store: DeviceStore,
                 push_provider: PushProvider | None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 max_retries: int | None = None, retry_base: float | None = None,
                 batch_size: int | None = None):
        self._registry = registry
        self._devices = device_store
        self._push = push_provider
        self._sleep = sleep
        self._max_retries = settings.PUSH_MAX_RETRIES if max_retries is None else max_retries
        self._retry_base = retry_base or settings.PUSH_RETRY_BASE_SECONDS
        self._batch_size = batch_size or settings.PUSH_BATCH_SIZE
        self._queues: dict[str, asyncio.Queue] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._pending = 0
        self._idle = asyncio.Event()
        self._idle.set()

    # ── Queueing ─────────────────────────────────────────────

    def submit(self, event: NotificationEvent) -> None:
        queue = self._queues.get(event.order_id)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[event.order_id] = queue
            self._workers[event.order_id] = asyncio.create_task(
                self._worker(event.order_id, queue), name=f"dispatch:{event.order_id}",
            )
        queue.put_nowait(event)
        self._pending += 1
        self._idle.clear()

    async def _worker(self, order_id: str, queue: asyncio.Queue) -> None:
        while True:
            try:
                event = queue.get_nowait()
            except asyncio.QueueEmpty:
                self._queues.pop(order_id, None)
                self._workers.pop(order_id, None)
                return
            try:
                await self.dispatch(event)
            except Exception:
                logger.exception("Dispatch of %s for order %s failed", event.kind.value, order_id)
            finally:
                self._pending -= 1
                if self._pending == 0:
                    self._idle.set()

    async def drain(self) -> None:
        """Wait until every submitted event has been handled."""
        await self._idle.wait()

    async def close(self) -> None:
        workers = list(self._workers.values())
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        self._queues.clear()
        self._pending = 0
        self._idle.set()

    # ── Delivery ─────────────────────────────────────────────

    async def dispatch(self, event: NotificationEvent) -> None:
        results = await asyncio.gather(
            self._deliver_live(event),
            self._deliver_push(event, Recipient.RESTAURANT),
            self._deliver_push(event, Recipient.CUSTOMER),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.error("Transport failure for %s on order %s: %r",
                             event.kind.value, event.order_id, result)

    def _audit(self, transport: str, recipient: Recipient, outcome: str,
               event: NotificationEvent, token: str | None = None, detail: str = "") -> None:
        audit.info(
            "transport=%s recipient=%s outcome=%s messageId=%s orderId=%s kind=%s token=%s %s",
            transport, recipient.value, outcome, event.message_id, event.order_id,
            event.kind.value, (token or "-")[:12], detail,
        )
        notification_attempts_total.labels(transport=transport, outcome=outcome).inc()

    async def _deliver_live(self, event: NotificationEvent) -> None:
        if self._registry.send(event.restaurant_id, live_frame(event)):
            self._audit(LIVE, Recipient.RESTAURANT, "sent", event)
        else:
            self._audit(LIVE, Recipient.RESTAURANT, "dropped", event, detail="no live channel")

    async def _deliver_push(self, event: NotificationEvent, recipient: Recipient) -> None:
        user_id = event.recipient_user(recipient)
        if self._push is None:
            self._audit(PUSH, recipient, "dropped", event, detail="push provider not configured")
            return
        if user_id is None:
            self._audit(PUSH, recipient, "dropped", event, detail="no recipient")
            return

        devices = await self._devices.active_tokens(user_id)
        if not devices:
            self._audit(PUSH, recipient, "dropped", event, detail="no active devices")
            return

        messages = [compose_push(event, recipient, device) for device in devices]
        for start in range(0, len(messages), self._batch_size):
            batch = messages[start:start + self._batch_size]
            results = await self._push.send_batch(batch)
            for message, result in zip(batch, results):
                if result.success:
                    self._audit(PUSH, recipient, "sent", event, message.token)
                elif result.error.permanent:
                    await self._invalidate(event, recipient, user_id, message.token, result.error)
                else:
                    self._audit(PUSH, recipient, "transient-fail", event, message.token,
                                result.error.code)
                    await self._retry(event, recipient, user_id, message)

    async def _invalidate(self, event: NotificationEvent, recipient: Recipient, user_id: str,
                          token: str, error: PushError) -> None:
        self._audit(PUSH, recipient, "permanent-fail", event, token, error.code)
        await self._devices.remove_token(user_id, token)
        logger.info("Removed invalid push token %s... for user %s (%s)", token[:12], user_id, error.code)

    async def _retry(self, event: NotificationEvent, recipient: Recipient, user_id: str,
                     message: PushMessage) -> bool:
        for retry in range(1, self._max_retries + 1):
            delay = self._retry_base * (2 ** (retry - 1))
            self._audit(PUSH, recipient, "retried", event, message.token, f"retry={retry} delay={delay}")
            await self._sleep(delay)
            try:
                await self._push.send(message)
            except PushError as exc:
                if exc.permanent:
                    await self._invalidate(event, recipient, user_id, message.token, exc)
                    return False
                self._audit(PUSH, recipient, "transient-fail", event, message.token, exc.code)
                continue
            self._audit(PUSH, recipient, "sent", event, message.token)
            return True
        logger.error("Giving up on push %s for order %s to %s... after %d retries",
                     event.kind.value, event.order_id, message.token[:12], self._max_retries)
        return False


@lru_cache()
def get_dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher(get_registry(), get_device_store(), get_push_provider())
