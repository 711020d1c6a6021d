"""
Foodhub - Order notification events

An event is built once per persisted transition and handed to the
dispatcher; it carries everything the transports need so no recipient
has to re-read the order.
"""
import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class NotificationKind(str, Enum):
    ORDER_PLACED = "ORDER_PLACED"
    ORDER_CONFIRMED = "ORDER_CONFIRMED"
    ORDER_READY = "ORDER_READY"
    ORDER_DELIVERED = "ORDER_DELIVERED"
    ORDER_CANCELLED = "ORDER_CANCELLED"


class Recipient(str, Enum):
    RESTAURANT = "restaurant"
    CUSTOMER = "customer"


def message_id(order_id: str, kind: NotificationKind, at: datetime) -> str:
    """Deterministic per (order, kind, minute) so client retries collapse."""
    bucket = int(at.timestamp()) // 60
    return hashlib.sha256(f"{order_id}:{kind.value}:{bucket}".encode()).hexdigest()


@dataclass(frozen=True)
class NotificationEvent:
    kind: NotificationKind
    order_id: str
    restaurant_id: str
    restaurant_name: str
    restaurant_owner_id: str | None
    customer_id: str
    total_amount: float
    status: str
    platform: str
    timestamp: datetime
    order: dict[str, Any] = field(default_factory=dict)

    @property
    def message_id(self) -> str:
        return message_id(self.order_id, self.kind, self.timestamp)

    @property
    def short_id(self) -> str:
        return self.order_id[-6:]

    def recipient_user(self, recipient: Recipient) -> str | None:
        if recipient is Recipient.RESTAURANT:
            return self.restaurant_owner_id
        return self.customer_id
