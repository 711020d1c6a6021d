"""
Foodhub - Order state machine

    Placed ─confirm─▶ Accepted ─prepare─▶ Preparing ─ready─▶ Ready ─deliver─▶ Delivered
      │                 ├──────────ready───────────────────▶ Ready
      │                 └──────────deliver (also from Preparing/Ready)────────▶ Delivered
      └─cancel / auto-cancel (cancel also from Accepted, Preparing)──────────▶ Cancelled

Every transition is a conditional UPDATE (WHERE status IN allowed) run
under a per-order lock that also covers the event hand-off, so a lost
race surfaces as CONFLICT and events leave in commit order. The
dispatcher is fire-and-forget: delivery failures never undo a commit.
"""
import asyncio
import logging
import weakref
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from foodhub.core.config import get_settings
from foodhub.core.errors import Conflict, Forbidden, InvalidInput, NotFound
from foodhub.db.database import SessionLocal, utcnow
from foodhub.models.order import ITEM_SIZES, Order, OrderStatus, Platform
from foodhub.models.restaurant import Restaurant
from foodhub.models.user import User, new_id
from foodhub.schemas.order import OrderCreateRequest, order_snapshot
from foodhub.services.dispatcher import get_dispatcher
from foodhub.services.events import NotificationEvent, NotificationKind

settings = get_settings()
logger = logging.getLogger(__name__)

S = OrderStatus

AUTO_CANCEL_REASON = (
    "Your chosen restaurant couldn't take your order this time, but don't worry — "
    "we have plenty of other amazing restaurants waiting to serve you. "
    "Explore your next favorite meal now!"
)
DEFAULT_CANCEL_REASON = "Cancelled by restaurant"

# action -> (allowed from, target, event)
TRANSITIONS: dict[str, tuple[frozenset, OrderStatus, NotificationKind | None]] = {
    "confirm": (frozenset({S.PLACED}), S.ACCEPTED, NotificationKind.ORDER_CONFIRMED),
    "prepare": (frozenset({S.ACCEPTED}), S.PREPARING, None),
    "ready": (frozenset({S.ACCEPTED, S.PREPARING}), S.READY, NotificationKind.ORDER_READY),
    "deliver": (frozenset({S.ACCEPTED, S.PREPARING, S.READY}), S.DELIVERED,
                NotificationKind.ORDER_DELIVERED),
    "cancel": (frozenset({S.PLACED, S.ACCEPTED, S.PREPARING}), S.CANCELLED,
               NotificationKind.ORDER_CANCELLED),
}


def validate_order_request(payload: OrderCreateRequest) -> Decimal:
    """Raise InvalidInput for a malformed order; returns the total."""
    if not payload.restaurant:
        raise InvalidInput("Restaurant is required.")
    if not payload.items:
        raise InvalidInput("Order must contain at least one item.")
    for index, item in enumerate(payload.items):
        if not item.menu_item or not item.item_name or not item.size:
            raise InvalidInput(f"Item {index + 1} is missing menuItem, itemName or size.")
        if item.quantity is None or item.quantity < 1:
            raise InvalidInput(f"Item {index + 1} must have a quantity of at least 1.")
        if item.size not in ITEM_SIZES:
            raise InvalidInput(
                f"Item {index + 1} has unknown size '{item.size}'. "
                f"Expected one of: {', '.join(ITEM_SIZES)}."
            )
    try:
        total = Decimal(payload.total_amount).quantize(Decimal("0.01"))
    except (InvalidOperation, TypeError):
        raise InvalidInput("Total amount must be a number.")
    if total <= 0:
        raise InvalidInput("Total amount must be greater than zero.")
    if not payload.address or not payload.address.strip():
        raise InvalidInput("Delivery address is required.")
    return total


class OrderLifecycle:
    def __init__(self, session_factory: async_sessionmaker = SessionLocal,
                 dispatcher=None, clock: Callable = utcnow,
                 auto_cancel_after: float | None = None):
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._clock = clock
        self.auto_cancel_after = (
            settings.AUTO_CANCEL_AFTER_SECONDS if auto_cancel_after is None else auto_cancel_after
        )
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._timers: dict[str, asyncio.Task] = {}

    def _lock(self, order_id: str) -> asyncio.Lock:
        lock = self._locks.get(order_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[order_id] = lock
        return lock

    @staticmethod
    async def _restaurant_owner(session: AsyncSession, restaurant_id: str) -> str | None:
        return (await session.execute(
            select(Restaurant.owner_id).where(Restaurant.id == restaurant_id)
        )).scalar_one_or_none()

    def _emit(self, order: Order, kind: NotificationKind, owner_id: str | None) -> None:
        if self._dispatcher is None:
            return
        event = NotificationEvent(
            kind=kind,
            order_id=order.id,
            restaurant_id=order.restaurant_id,
            restaurant_name=order.restaurant_name,
            restaurant_owner_id=owner_id,
            customer_id=order.customer_id,
            total_amount=float(order.total_amount),
            status=OrderStatus(order.status).value,
            platform=Platform(order.platform).value,
            timestamp=order.updated_at,
            order=order_snapshot(order),
        )
        try:
            self._dispatcher.submit(event)
        except Exception:
            logger.exception("Could not queue %s for order %s", kind.value, order.id)

    # ── Placement ────────────────────────────────────────────

    async def place_order(self, customer: User, payload: OrderCreateRequest) -> Order:
        total = validate_order_request(payload)
        order_id = new_id()
        async with self._lock(order_id):
            async with self._session_factory() as session:
                restaurant = await session.get(Restaurant, payload.restaurant)
                if restaurant is None:
                    raise InvalidInput("Restaurant not found.")
                if restaurant.owner_id == customer.id:
                    raise InvalidInput("You cannot order from your own restaurant.")

                now = self._clock()
                order = Order(
                    id=order_id,
                    restaurant_id=restaurant.id,
                    restaurant_name=restaurant.name,
                    customer_id=customer.id,
                    items=[
                        {"menuItem": i.menu_item, "itemName": i.item_name,
                         "quantity": i.quantity, "size": i.size}
                        for i in payload.items
                    ],
                    total_amount=total,
                    address=payload.address.strip(),
                    status=S.PLACED,
                    platform=payload.platform,
                    cancellation_reason="",
                    created_at=now,
                    updated_at=now,
                )
                session.add(order)
                await session.commit()
                owner_id = restaurant.owner_id

            logger.info("Order %s placed at restaurant %s by %s", order_id, order.restaurant_id, customer.id)
            self._arm_timer(order_id)
            self._emit(order, NotificationKind.ORDER_PLACED, owner_id)
        return order

    # ── Transitions ──────────────────────────────────────────

    async def transition(self, order_id: str, action: str, actor_id: str,
                         reason: str | None = None) -> Order:
        if action not in TRANSITIONS:
            raise InvalidInput(f"Unknown order action '{action}'.")
        allowed, target, kind = TRANSITIONS[action]

        async with self._lock(order_id):
            async with self._session_factory() as session:
                order = await session.get(Order, order_id)
                if order is None:
                    raise NotFound("Order not found.")
                owner_id = await self._restaurant_owner(session, order.restaurant_id)
                if owner_id != actor_id:
                    raise Forbidden("Not authorized to update this order.")
                current = OrderStatus(order.status)
                if current not in allowed:
                    raise Conflict(f"Cannot {action} an order that is {current.value}.")

                values = {"status": target, "updated_at": self._clock()}
                if target is S.CANCELLED:
                    values["cancellation_reason"] = (reason or "").strip() or DEFAULT_CANCEL_REASON
                result = await session.execute(
                    update(Order)
                    .where(Order.id == order_id, Order.status.in_(allowed))
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await session.rollback()
                    raise Conflict(f"Order {order_id} changed concurrently; {action} rejected.")
                await session.commit()
                order = await session.get(Order, order_id, populate_existing=True)

            logger.info("Order %s: %s -> %s by %s", order_id, current.value, target.value, actor_id)
            if kind is not None:
                self._emit(order, kind, owner_id)
        self._disarm_timer(order_id)
        return order

    # ── Auto-cancel ──────────────────────────────────────────

    def _arm_timer(self, order_id: str) -> None:
        if self.auto_cancel_after <= 0:
            return
        self._timers[order_id] = asyncio.create_task(
            self._fire_after(order_id, self.auto_cancel_after), name=f"auto-cancel:{order_id}",
        )

    def _disarm_timer(self, order_id: str) -> None:
        task = self._timers.pop(order_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _fire_after(self, order_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        self._timers.pop(order_id, None)
        try:
            await self.auto_cancel(order_id)
        except Exception:
            logger.exception("Auto-cancel timer for order %s failed", order_id)

    async def auto_cancel(self, order_id: str) -> bool:
        """Placed -> Cancelled with the fixed reason; no-op once the order moved on."""
        async with self._lock(order_id):
            async with self._session_factory() as session:
                result = await session.execute(
                    update(Order)
                    .where(Order.id == order_id, Order.status == S.PLACED)
                    .values(status=S.CANCELLED, cancellation_reason=AUTO_CANCEL_REASON,
                            updated_at=self._clock())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await session.rollback()
                    return False
                await session.commit()
                order = await session.get(Order, order_id, populate_existing=True)
                owner_id = await self._restaurant_owner(session, order.restaurant_id)
            logger.info("Order %s auto-cancelled after %ss without confirmation",
                        order_id, self.auto_cancel_after)
            self._emit(order, NotificationKind.ORDER_CANCELLED, owner_id)
        self._disarm_timer(order_id)
        return True

    async def cancel_stale_orders(self) -> int:
        cutoff = self._clock() - timedelta(seconds=self.auto_cancel_after)
        async with self._session_factory() as session:
            stale = (await session.execute(
                select(Order.id).where(Order.status == S.PLACED, Order.created_at < cutoff)
            )).scalars().all()
        cancelled = 0
        for order_id in stale:
            if await self.auto_cancel(order_id):
                cancelled += 1
        if cancelled:
            logger.info("Cancelled %d stale orders", cancelled)
        return cancelled

    async def close(self) -> None:
        timers = list(self._timers.values())
        self._timers.clear()
        for task in timers:
            task.cancel()
        await asyncio.gather(*timers, return_exceptions=True)


@lru_cache()
def get_lifecycle() -> OrderLifecycle:
    return OrderLifecycle(dispatcher=get_dispatcher())
