"""
Foodhub - Restaurants and menus API

Browsing is public; menu and schedule changes are restricted to the owner,
creation to admins.
"""
import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from foodhub.api.deps import get_current_user, require_role
from foodhub.core.errors import Conflict, InvalidInput, NotFound
from foodhub.db.database import get_db, utcnow
from foodhub.db.restaurant_ops import owned_restaurant
from foodhub.models.restaurant import MenuItem, Restaurant
from foodhub.models.user import User, UserRole
from foodhub.schemas.common import success
from foodhub.schemas.restaurant import (
    MenuItemIn,
    MenuItemOut,
    MenuItemUpdate,
    OpeningTimeRequest,
    RestaurantCreateRequest,
    RestaurantOut,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/restaurants", tags=["restaurants"])


def _menu_item(restaurant_id: str, position: int, payload: MenuItemIn) -> MenuItem:
    return MenuItem(
        restaurant_id=restaurant_id,
        position=position,
        name=payload.name,
        description=payload.description,
        category=payload.category,
        image_url=payload.image_url,
        price=payload.price,
        is_available=payload.is_available,
        sizes={k: str(v) for k, v in payload.sizes.items()},
    )


async def _reload(db: AsyncSession, restaurant_id: str) -> Restaurant:
    return await db.get(Restaurant, restaurant_id, populate_existing=True)


async def _owned_item(db: AsyncSession, item_id: str, user: User) -> MenuItem:
    item = await db.get(MenuItem, item_id)
    if item is None:
        raise NotFound("Menu item not found.")
    await owned_restaurant(db, item.restaurant_id, user.id)
    return item


@router.get("")
async def list_restaurants(db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(Restaurant).order_by(Restaurant.name))
    return success([RestaurantOut.from_restaurant(r).dump() for r in result.scalars().all()])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_restaurant(payload: RestaurantCreateRequest,
                            admin: User = Depends(require_role(UserRole.ADMIN)),
                            db: AsyncSession = Depends(get_db)):
    restaurant = Restaurant(
        name=payload.name, address=payload.address,
        image_url=payload.image_url, is_active=payload.is_active,
    )
    db.add(restaurant)
    await db.commit()
    restaurant = await _reload(db, restaurant.id)
    logger.info("Admin %s created restaurant %s", admin.id, restaurant.id)
    return success(RestaurantOut.from_restaurant(restaurant).dump(), "Restaurant created")


@router.get("/{restaurant_id}")
async def get_restaurant(restaurant_id: str, db: AsyncSession = Depends(get_db)):
    restaurant = await db.get(Restaurant, restaurant_id)
    if restaurant is None:
        raise NotFound("Restaurant not found.")
    return success(RestaurantOut.from_restaurant(restaurant).dump())


@router.get("/{restaurant_id}/menu")
async def get_menu(restaurant_id: str, db: AsyncSession = Depends(get_db)):
    restaurant = await db.get(Restaurant, restaurant_id)
    if restaurant is None:
        raise NotFound("Restaurant not found.")
    return success([MenuItemOut.from_item(i).dump() for i in restaurant.menu])


@router.put("/{restaurant_id}/menu")
async def replace_menu(restaurant_id: str, items: list[MenuItemIn],
                       user: User = Depends(get_current_user),
                       db: AsyncSession = Depends(get_db)):
    await owned_restaurant(db, restaurant_id, user.id)
    await db.execute(delete(MenuItem).where(MenuItem.restaurant_id == restaurant_id))
    db.add_all(_menu_item(restaurant_id, position, item) for position, item in enumerate(items))
    await db.commit()
    restaurant = await _reload(db, restaurant_id)
    return success([MenuItemOut.from_item(i).dump() for i in restaurant.menu], "Menu updated")


@router.post("/{restaurant_id}/menu", status_code=status.HTTP_201_CREATED)
async def add_menu_item(restaurant_id: str, payload: MenuItemIn,
                        user: User = Depends(get_current_user),
                        db: AsyncSession = Depends(get_db)):
    await owned_restaurant(db, restaurant_id, user.id)
    next_position = (await db.execute(
        select(func.coalesce(func.max(MenuItem.position) + 1, 0))
        .where(MenuItem.restaurant_id == restaurant_id)
    )).scalar_one()
    item = _menu_item(restaurant_id, next_position, payload)
    db.add(item)
    await db.commit()
    return success(MenuItemOut.from_item(item).dump(), "Menu item added")


@router.put("/menu/{item_id}")
async def update_menu_item(item_id: str, payload: MenuItemUpdate,
                           user: User = Depends(get_current_user),
                           db: AsyncSession = Depends(get_db)):
    item = await _owned_item(db, item_id, user)
    changes = payload.model_dump(exclude_unset=True)
    if "sizes" in changes and changes["sizes"] is not None:
        changes["sizes"] = {k: str(v) for k, v in changes["sizes"].items()}
    for field, value in changes.items():
        if value is None and field in ("name", "price", "is_available", "category", "sizes"):
            raise InvalidInput(f"{field} cannot be null.")
        setattr(item, field, value)
    await db.commit()
    return success(MenuItemOut.from_item(item).dump(), "Menu item updated")


@router.delete("/menu/{item_id}")
async def delete_menu_item(item_id: str, user: User = Depends(get_current_user),
                           db: AsyncSession = Depends(get_db)):
    item = await _owned_item(db, item_id, user)
    await db.delete(item)
    await db.commit()
    return success(message="Menu item deleted")


@router.put("/{restaurant_id}/toggle-status")
async def toggle_status(restaurant_id: str, user: User = Depends(get_current_user),
                        db: AsyncSession = Depends(get_db)):
    restaurant = await owned_restaurant(db, restaurant_id, user.id)
    restaurant.is_active = not restaurant.is_active
    if restaurant.is_active:
        restaurant.opening_time = None
    await db.commit()
    logger.info("Restaurant %s is now %s", restaurant_id, "open" if restaurant.is_active else "closed")
    return success({"isActive": restaurant.is_active},
                   f"Restaurant is now {'open' if restaurant.is_active else 'closed'}")


@router.get("/{restaurant_id}/opening-time")
async def get_opening_time(restaurant_id: str, user: User = Depends(get_current_user),
                           db: AsyncSession = Depends(get_db)):
    restaurant = await owned_restaurant(db, restaurant_id, user.id)
    return success({
        "openingTime": restaurant.opening_time.isoformat() if restaurant.opening_time else None,
        "isActive": restaurant.is_active,
    })


@router.put("/{restaurant_id}/opening-time")
async def set_opening_time(restaurant_id: str, payload: OpeningTimeRequest,
                           user: User = Depends(get_current_user),
                           db: AsyncSession = Depends(get_db)):
    restaurant = await owned_restaurant(db, restaurant_id, user.id)
    opening_time = payload.opening_time
    if opening_time.tzinfo is None:
        raise InvalidInput("openingTime must include a timezone offset.")
    if opening_time <= utcnow():
        raise InvalidInput("openingTime must be in the future.")
    if restaurant.is_active:
        raise Conflict("Close the restaurant before scheduling an opening time.")
    restaurant.opening_time = opening_time
    await db.commit()
    return success({"openingTime": restaurant.opening_time.isoformat(), "isActive": False},
                   "Opening time scheduled")
