"""
Foodhub - Order schemas

Request models only check shapes and types; business validation
(non-empty items, positive total, known sizes ...) happens in the order
lifecycle so it reports INVALID_INPUT with a readable message.
"""
from datetime import datetime
from decimal import Decimal

from pydantic import Field

from foodhub.models.order import Order, OrderStatus, Platform
from foodhub.schemas.common import CamelModel


class OrderItemIn(CamelModel):
    menu_item: str | None = Field(None, examples=["5f1c0e..."])
    item_name: str | None = Field(None, examples=["Pizza"])
    quantity: int | None = Field(None, examples=[2])
    size: str = Field("Regular", examples=["Medium"])


class OrderCreateRequest(CamelModel):
    restaurant: str | None = None
    restaurant_name: str | None = None
    items: list[OrderItemIn] = Field(default_factory=list)
    total_amount: Decimal | None = Field(None, examples=["420.00"])
    address: str | None = None
    platform: Platform = Platform.APP


class CancelRequest(CamelModel):
    reason: str | None = Field(None, max_length=500)


class OrderItemOut(CamelModel):
    menu_item: str
    item_name: str
    quantity: int
    size: str


class OrderOut(CamelModel):
    id: str
    restaurant: str
    restaurant_name: str
    customer: str
    items: list[OrderItemOut]
    total_amount: float
    address: str
    status: OrderStatus
    platform: Platform
    cancellation_reason: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_order(cls, order: Order) -> "OrderOut":
        return cls(
            id=order.id,
            restaurant=order.restaurant_id,
            restaurant_name=order.restaurant_name,
            customer=order.customer_id,
            items=[OrderItemOut.model_validate(item) for item in order.items],
            total_amount=float(order.total_amount),
            address=order.address,
            status=order.status,
            platform=order.platform,
            cancellation_reason=order.cancellation_reason or "",
            created_at=order.created_at,
            updated_at=order.updated_at,
        )


def order_snapshot(order: Order) -> dict:
    return OrderOut.from_order(order).dump()
