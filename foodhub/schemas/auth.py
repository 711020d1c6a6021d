"""
Foodhub - User and auth schemas
"""
from typing import Any

from pydantic import Field

from foodhub.models.user import DeviceKind, User, UserRole
from foodhub.schemas.common import CamelModel


class RegisterRequest(CamelModel):
    username: str = Field(..., min_length=1, max_length=100)
    mobile_number: str = Field(..., pattern=r"^\d{10}$", examples=["9876543210"])
    password: str = Field(..., min_length=6, max_length=72)


class LoginRequest(CamelModel):
    mobile_number: str = Field(..., pattern=r"^\d{10}$")
    password: str = Field(..., min_length=1, max_length=72)


class AssignRoleRequest(CamelModel):
    role: UserRole
    restaurant_id: str | None = None


class DeviceRequest(CamelModel):
    token: str = Field(..., min_length=1, max_length=4096)
    kind: DeviceKind = DeviceKind.UNKNOWN
    info: dict[str, Any] = Field(default_factory=dict)


class DeviceOut(CamelModel):
    token: str
    kind: DeviceKind
    info: dict[str, Any]
    last_active: Any
    expires_at: Any


class RestaurantBrief(CamelModel):
    id: str
    name: str
    address: str
    is_active: bool


class UserOut(CamelModel):
    id: str
    username: str
    mobile_number: str
    role: UserRole
    address: str
    is_active: bool
    restaurant: RestaurantBrief | None = None

    @classmethod
    def from_user(cls, user: User, restaurant=None) -> "UserOut":
        return cls(
            id=user.id,
            username=user.username,
            mobile_number=user.mobile_number,
            role=user.role,
            address=user.address,
            is_active=user.is_active,
            restaurant=RestaurantBrief(
                id=restaurant.id, name=restaurant.name,
                address=restaurant.address, is_active=restaurant.is_active,
            ) if restaurant is not None else None,
        )
