"""
Foodhub - Restaurant dashboard live channel

    ws://host/ws?userId=<owner>&restaurantId=<restaurant>&token=<jwt>

The registry owns the handshake (4001 bad auth, 4003 not the owner) and
supersedes any older channel for the same restaurant. This loop only
feeds inbound frames to the registry until the client goes away; binary
frames are refused with 1003.
"""
import logging

from fastapi import APIRouter, Depends, Query, WebSocket

from foodhub.services.connection_registry import ConnectionRegistry, get_registry

logger = logging.getLogger(__name__)
router = APIRouter(tags=["dashboard"])


@router.websocket("/ws")
async def dashboard_channel(websocket: WebSocket,
                            user_id: str | None = Query(None, alias="userId"),
                            restaurant_id: str | None = Query(None, alias="restaurantId"),
                            token: str | None = Query(None),
                            registry: ConnectionRegistry = Depends(get_registry)):
    channel = await registry.attach(websocket, user_id, restaurant_id, token)
    if channel is None:
        return
    try:
        while not channel.closing:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.info("Dashboard for restaurant %s disconnected (code %s)",
                            restaurant_id, message.get("code"))
                break
            text = message.get("text")
            await registry.handle_inbound(channel, text if text is not None else message.get("bytes") or b"")
    finally:
        await registry.detach(restaurant_id, channel)
