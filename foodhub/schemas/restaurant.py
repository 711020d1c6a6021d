"""
Foodhub - Restaurant and menu schemas
"""
from datetime import datetime
from decimal import Decimal

from pydantic import Field

from foodhub.models.restaurant import MenuItem, Restaurant
from foodhub.schemas.common import CamelModel


class MenuItemIn(CamelModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    category: str = Field("main", max_length=100)
    image_url: str | None = None
    price: Decimal = Field(..., ge=0)
    is_available: bool = True
    sizes: dict[str, Decimal] = Field(default_factory=dict)


class MenuItemUpdate(CamelModel):
    name: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = None
    category: str | None = None
    image_url: str | None = None
    price: Decimal | None = Field(None, ge=0)
    is_available: bool | None = None
    sizes: dict[str, Decimal] | None = None


class MenuItemOut(CamelModel):
    id: str
    name: str
    description: str | None
    category: str
    image_url: str | None
    price: float
    is_available: bool
    sizes: dict[str, float]

    @classmethod
    def from_item(cls, item: MenuItem) -> "MenuItemOut":
        return cls(
            id=item.id,
            name=item.name,
            description=item.description,
            category=item.category,
            image_url=item.image_url,
            price=float(item.price),
            is_available=item.is_available,
            sizes={k: float(v) for k, v in (item.sizes or {}).items()},
        )


class RestaurantCreateRequest(CamelModel):
    name: str = Field(..., min_length=1, max_length=255)
    address: str = Field(..., min_length=1, max_length=500)
    image_url: str | None = None
    is_active: bool = True


class OpeningTimeRequest(CamelModel):
    opening_time: datetime


class RestaurantOut(CamelModel):
    id: str
    name: str
    address: str
    image_url: str | None
    is_active: bool
    owner: str | None
    opening_time: datetime | None
    menu: list[MenuItemOut]

    @classmethod
    def from_restaurant(cls, restaurant: Restaurant) -> "RestaurantOut":
        return cls(
            id=restaurant.id,
            name=restaurant.name,
            address=restaurant.address,
            image_url=restaurant.image_url,
            is_active=restaurant.is_active,
            owner=restaurant.owner_id,
            opening_time=restaurant.opening_time,
            menu=[MenuItemOut.from_item(item) for item in restaurant.menu],
        )
