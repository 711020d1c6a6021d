"""
Foodhub - Orders API

Flow for a mutation:
  1. JWT validated by middleware, user loaded by dependency
  2. OrderLifecycle validates, persists and hands the event to the dispatcher
  3. The fresh snapshot is returned; notification delivery happens in the background
"""
from datetime import datetime, time, timezone

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from foodhub.api.deps import get_current_user, require_role
from foodhub.core.errors import Forbidden, NotFound
from foodhub.db.database import get_db, utcnow
from foodhub.db.restaurant_ops import owned_restaurant
from foodhub.models.order import Order, OrderStatus
from foodhub.models.restaurant import Restaurant
from foodhub.models.user import User, UserRole
from foodhub.schemas.common import success
from foodhub.schemas.order import CancelRequest, OrderCreateRequest, order_snapshot
from foodhub.services.order_lifecycle import OrderLifecycle, get_lifecycle

router = APIRouter(prefix="/api/orders", tags=["orders"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_order(payload: OrderCreateRequest,
                       user: User = Depends(require_role(UserRole.USER)),
                       lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    """Place an order. Idempotency-Key replays are handled by IdempotencyMiddleware."""
    order = await lifecycle.place_order(user, payload)
    return success(order_snapshot(order), "Order placed successfully")


@router.get("")
async def my_orders(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    result = await db.execute(
        select(Order).where(Order.customer_id == user.id).order_by(Order.created_at.desc())
    )
    return success([order_snapshot(o) for o in result.scalars().all()])


@router.get("/restaurant/{restaurant_id}")
async def restaurant_orders(restaurant_id: str,
                            order_status: OrderStatus | None = Query(None, alias="status"),
                            user: User = Depends(get_current_user),
                            db: AsyncSession = Depends(get_db)):
    """Today's orders (UTC day) for the caller's restaurant, newest first."""
    await owned_restaurant(db, restaurant_id, user.id)
    start_of_day = datetime.combine(utcnow().date(), time.min, tzinfo=timezone.utc)
    query = select(Order).where(
        Order.restaurant_id == restaurant_id, Order.created_at >= start_of_day,
    )
    if order_status is not None:
        query = query.where(Order.status == order_status)
    result = await db.execute(query.order_by(Order.created_at.desc()))
    return success([order_snapshot(o) for o in result.scalars().all()])


@router.get("/{order_id}")
async def get_order(order_id: str, user: User = Depends(get_current_user),
                    db: AsyncSession = Depends(get_db)):
    order = await db.get(Order, order_id)
    if order is None:
        raise NotFound("Order not found.")
    if order.customer_id != user.id:
        owner_id = (await db.execute(
            select(Restaurant.owner_id).where(Restaurant.id == order.restaurant_id)
        )).scalar_one_or_none()
        if owner_id != user.id:
            raise Forbidden("Not authorized to view this order.")
    return success(order_snapshot(order))


# ── Transitions (restaurant owner) ────────────────────────────────────────────

async def _transition(lifecycle: OrderLifecycle, order_id: str, action: str, user: User,
                      reason: str | None = None) -> dict:
    order = await lifecycle.transition(order_id, action, user.id, reason)
    return success(order_snapshot(order), f"Order {order.short_id} updated to {order.status.value}")


@router.patch("/{order_id}/confirm")
async def confirm_order(order_id: str, user: User = Depends(get_current_user),
                        lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    return await _transition(lifecycle, order_id, "confirm", user)


@router.patch("/{order_id}/prepare")
async def prepare_order(order_id: str, user: User = Depends(get_current_user),
                        lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    return await _transition(lifecycle, order_id, "prepare", user)


@router.patch("/{order_id}/ready")
async def ready_order(order_id: str, user: User = Depends(get_current_user),
                      lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    return await _transition(lifecycle, order_id, "ready", user)


@router.patch("/{order_id}/deliver")
async def deliver_order(order_id: str, user: User = Depends(get_current_user),
                        lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    return await _transition(lifecycle, order_id, "deliver", user)


@router.patch("/{order_id}/cancel")
async def cancel_order(order_id: str, payload: CancelRequest | None = None,
                       user: User = Depends(get_current_user),
                       lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    return await _transition(lifecycle, order_id, "cancel", user, payload.reason if payload else None)
