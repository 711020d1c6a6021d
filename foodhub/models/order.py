"""
Foodhub - Order documents

Line items are embedded as a JSON list, matching the document shape the
dashboards and apps consume.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import Enum, ForeignKey, Index, JSON, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from foodhub.db.database import Base, UTCDateTime
from foodhub.models.user import new_id


class OrderStatus(str, PyEnum):
    PLACED = "Placed"
    ACCEPTED = "Accepted"
    PREPARING = "Preparing"
    READY = "Ready"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})


class Platform(str, PyEnum):
    APP = "app"
    WEB = "web"


ITEM_SIZES = ("Small", "Medium", "Large", "Regular")


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_restaurant_created", "restaurant_id", "created_at"),
        Index("ix_orders_customer_created", "customer_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    restaurant_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("restaurants.id", ondelete="CASCADE"), nullable=False
    )
    restaurant_name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    items: Mapped[list] = mapped_column(JSON, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    address: Mapped[str] = mapped_column(String(500), nullable=False)
    status: Mapped[str] = mapped_column(
        Enum(OrderStatus, name="order_status", native_enum=False,
             values_callable=lambda e: [m.value for m in e]),
        default=OrderStatus.PLACED, nullable=False,
    )
    platform: Mapped[str] = mapped_column(
        Enum(Platform, name="order_platform", native_enum=False,
             values_callable=lambda e: [m.value for m in e]),
        default=Platform.APP, nullable=False,
    )
    cancellation_reason: Mapped[str] = mapped_column(Text, default="", nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    @property
    def short_id(self) -> str:
        return self.id[-6:]

    @property
    def is_terminal(self) -> bool:
        return OrderStatus(self.status) in TERMINAL_STATUSES
