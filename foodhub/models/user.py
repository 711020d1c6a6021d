"""
Foodhub - User and device records
"""
import uuid
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import Boolean, Enum, ForeignKey, Integer, JSON, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from foodhub.db.database import Base, UTCDateTime


def new_id() -> str:
    return uuid.uuid4().hex


class UserRole(str, PyEnum):
    USER = "user"
    RESTAURANT = "restaurant"
    ADMIN = "admin"


class DeviceKind(str, PyEnum):
    ANDROID = "android"
    IOS = "ios"
    WEB = "web"
    UNKNOWN = "unknown"


class User(Base):
    """
    A customer, restaurant owner or admin.
    version is bumped on every device-list change (compare-and-set).
    """
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    username: Mapped[str] = mapped_column(String(100), nullable=False)
    mobile_number: Mapped[str] = mapped_column(String(10), unique=True, index=True, nullable=False)
    hashed_password: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(
        Enum(UserRole, name="user_role", native_enum=False,
             values_callable=lambda e: [m.value for m in e]),
        default=UserRole.USER, nullable=False,
    )
    restaurant_id: Mapped[str | None] = mapped_column(
        String(32), ForeignKey("restaurants.id", ondelete="SET NULL", use_alter=True), nullable=True
    )
    address: Mapped[str] = mapped_column(String(500), default="", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    fcm_token: Mapped[str | None] = mapped_column(String(4096), nullable=True)  # legacy scalar token
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )

    devices: Mapped[list["Device"]] = relationship(
        back_populates="user", cascade="all, delete-orphan", lazy="selectin",
        order_by="Device.last_active.desc()",
    )

    def __repr__(self) -> str:
        return f"<User mobile={self.mobile_number} role={self.role}>"


class Device(Base):
    """One installed app or browser that can receive push messages."""
    __tablename__ = "user_devices"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
    )
    token: Mapped[str] = mapped_column(String(4096), index=True, nullable=False)
    kind: Mapped[str] = mapped_column(
        Enum(DeviceKind, name="device_kind", native_enum=False,
             values_callable=lambda e: [m.value for m in e]),
        default=DeviceKind.UNKNOWN, nullable=False,
    )
    info: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    last_active: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True, nullable=False)

    user: Mapped[User] = relationship(back_populates="devices")
