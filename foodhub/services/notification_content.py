"""
Foodhub - Notification copy, actions and routing per recipient
"""
import json

from foodhub.models.user import DeviceKind
from foodhub.services.events import NotificationEvent, NotificationKind, Recipient

K = NotificationKind

_RESTAURANT_COPY = {
    K.ORDER_PLACED: ("New Order Received", "#{short_id} — ₹{total:.2f}"),
    K.ORDER_CONFIRMED: ("Order Confirmed", "Order #{short_id} has been confirmed"),
    K.ORDER_READY: ("Order Ready for Pickup", "Order #{short_id} is ready for pickup"),
    K.ORDER_DELIVERED: ("Order Delivered", "Order #{short_id} has been delivered"),
    K.ORDER_CANCELLED: ("Order Cancelled", "Order #{short_id} has been cancelled"),
}

_CUSTOMER_COPY = {
    K.ORDER_PLACED: ("Order Placed Successfully", "Your order at {name} has been placed"),
    K.ORDER_CONFIRMED: ("Order Confirmed", "{name} has confirmed your order"),
    K.ORDER_READY: ("Order Ready for Pickup", "Your order at {name} is ready for pickup"),
    K.ORDER_DELIVERED: ("Order Delivered", "Your order from {name} has been delivered"),
    K.ORDER_CANCELLED: ("Order Cancelled", "Your order at {name} has been cancelled"),
}

_ACTION_TITLES = {
    "view": "View Order",
    "track": "Track Order",
    "contact": "Contact Restaurant",
    "directions": "Get Directions",
    "review": "Rate Order",
    "reorder": "Order Again",
    "accept": "Accept Order",
    "view_details": "View Details",
    "contact_customer": "Contact Customer",
}

_CUSTOMER_ACTIONS = {
    K.ORDER_PLACED: ("view", "track"),
    K.ORDER_CONFIRMED: ("track", "contact"),
    K.ORDER_READY: ("track", "directions"),
    K.ORDER_DELIVERED: ("review", "reorder"),
}

# Restaurant-side "view"/"contact" point at the order details and the customer.
_RESTAURANT_ACTIONS = {
    K.ORDER_PLACED: (("accept", "accept"), ("view", "view_details")),
    K.ORDER_CONFIRMED: (("view", "view_details"), ("contact", "contact_customer")),
    K.ORDER_READY: (("view", "view_details"), ("contact", "contact_customer")),
}

HIGH_PRIORITY = frozenset({K.ORDER_PLACED, K.ORDER_CANCELLED})

ANDROID_CHANNELS = {Recipient.RESTAURANT: "new_orders", Recipient.CUSTOMER: "orders"}


def title_and_body(event: NotificationEvent, recipient: Recipient) -> tuple[str, str]:
    table = _RESTAURANT_COPY if recipient is Recipient.RESTAURANT else _CUSTOMER_COPY
    title, body = table[event.kind]
    return title, body.format(
        short_id=event.short_id, total=event.total_amount, name=event.restaurant_name,
    )


def actions_for(event: NotificationEvent, recipient: Recipient) -> list[dict[str, str]]:
    if recipient is Recipient.RESTAURANT:
        pairs = _RESTAURANT_ACTIONS.get(event.kind, ())
        return [{"action": action, "title": _ACTION_TITLES[key]} for action, key in pairs]
    return [
        {"action": action, "title": _ACTION_TITLES[action]}
        for action in _CUSTOMER_ACTIONS.get(event.kind, ())
    ]


def priority_for(event: NotificationEvent) -> str:
    return "high" if event.kind in HIGH_PRIORITY else "normal"


def url_for(event: NotificationEvent, recipient: Recipient) -> str:
    if recipient is Recipient.RESTAURANT:
        return f"/restaurant/orders/{event.order_id}"
    if event.kind is K.ORDER_DELIVERED:
        return f"/orders/{event.order_id}/review"
    return f"/orders/{event.order_id}"


def is_web_target(device_kind: str, event: NotificationEvent) -> bool:
    return device_kind == DeviceKind.WEB.value or event.platform == "web"


def data_payload(event: NotificationEvent, recipient: Recipient, web: bool) -> dict[str, str]:
    """Flat string map; push providers reject nested or non-string data values."""
    data = {
        "type": event.kind.value,
        "orderId": event.order_id,
        "restaurantId": event.restaurant_id,
        "restaurantName": event.restaurant_name,
        "totalAmount": f"{event.total_amount:.2f}",
        "status": event.status,
        "platform": event.platform,
        "timestamp": event.timestamp.isoformat(),
        "messageId": event.message_id,
        "priority": priority_for(event),
        "recipient": recipient.value,
    }
    if web:
        data["url"] = url_for(event, recipient)
        data["actions"] = json.dumps(actions_for(event, recipient))
    return data
