from foodhub.models.user import User, Device, UserRole, DeviceKind  # noqa: F401
from foodhub.models.restaurant import Restaurant, MenuItem  # noqa: F401
from foodhub.models.order import Order, OrderStatus, Platform, TERMINAL_STATUSES, ITEM_SIZES  # noqa: F401
