"""
Foodhub - Restaurant ownership and scheduling operations
"""
import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from foodhub.core.errors import Forbidden, InvalidInput, NotFound
from foodhub.models.restaurant import Restaurant
from foodhub.models.user import User, UserRole

logger = logging.getLogger(__name__)


async def assign_role(db: AsyncSession, user_id: str, role: UserRole,
                      restaurant_id: str | None = None) -> tuple[User, Restaurant | None]:
    """
    Change a user's role in a single transaction.

    Granting "restaurant" makes the user the sole owner of restaurant_id:
      - users.restaurant_id  -> restaurant_id
      - restaurants.owner_id -> user_id
      - any previous owner loses the link (and the restaurant role)
      - any restaurant the user owned before is released
    Any other role releases the user's restaurant.
    """
    user = await db.get(User, user_id)
    if user is None:
        raise NotFound("User not found.")

    restaurant = None
    if role is UserRole.RESTAURANT:
        if not restaurant_id:
            raise InvalidInput("restaurantId is required for the restaurant role.")
        restaurant = await db.get(Restaurant, restaurant_id)
        if restaurant is None:
            raise NotFound("Restaurant not found.")

        previous_owner_id = restaurant.owner_id
        if previous_owner_id and previous_owner_id != user.id:
            await db.execute(
                update(User)
                .where(User.id == previous_owner_id)
                .values(restaurant_id=None, role=UserRole.USER)
                .execution_options(synchronize_session=False)
            )
            logger.info("Restaurant %s ownership moves from %s to %s",
                        restaurant.id, previous_owner_id, user.id)

    if user.restaurant_id and (restaurant is None or user.restaurant_id != restaurant.id):
        await db.execute(
            update(Restaurant)
            .where(Restaurant.id == user.restaurant_id, Restaurant.owner_id == user.id)
            .values(owner_id=None)
            .execution_options(synchronize_session=False)
        )

    user.role = role
    user.restaurant_id = restaurant.id if restaurant is not None else None
    if restaurant is not None:
        restaurant.owner_id = user.id
    await db.commit()
    return user, restaurant


async def open_scheduled_restaurants(session_factory: async_sessionmaker, now: datetime) -> int:
    """Activate inactive restaurants whose opening time has passed."""
    async with session_factory() as session:
        result = await session.execute(
            update(Restaurant)
            .where(
                Restaurant.is_active.is_(False),
                Restaurant.opening_time.is_not(None),
                Restaurant.opening_time <= now,
            )
            .values(is_active=True, opening_time=None)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    opened = result.rowcount or 0
    if opened:
        logger.info("Opened %d restaurants on schedule", opened)
    return opened


async def owned_restaurant(db: AsyncSession, restaurant_id: str, user_id: str) -> Restaurant:
    restaurant = await db.get(Restaurant, restaurant_id)
    if restaurant is None:
        raise NotFound("Restaurant not found.")
    if restaurant.owner_id != user_id:
        raise Forbidden("You do not own this restaurant.")
    return restaurant


async def restaurant_for_owner(db: AsyncSession, user_id: str) -> Restaurant | None:
    return (await db.execute(
        select(Restaurant).where(Restaurant.owner_id == user_id)
    )).scalar_one_or_none()
