"""
Router events : flux temps réel par websocket.
Le client se connecte avec ?token=<JWT> ; il reçoit son canal personnel, le canal de
son rôle (couriers / admins), et peut suivre une commande en envoyant
{"action": "join", "order_id": "..."}.
"""
import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder

from core.dependencies import load_user_from_token
from models.common import UserRole
from services import order_store
from services.notification_service import ADMINS_CHANNEL, COURIERS_CHANNEL, order_channel, user_channel

logger = logging.getLogger(__name__)
router = APIRouter()


def _channels_for(user: dict) -> list[str]:
    channels = [user_channel(user["user_id"])]
    if user.get("role") == UserRole.COURIER.value:
        channels.append(COURIERS_CHANNEL)
    elif user.get("role") == UserRole.ADMIN.value:
        channels.append(ADMINS_CHANNEL)
    return channels


async def _may_follow(user: dict, order_id: str) -> bool:
    if user.get("role") == UserRole.ADMIN.value:
        return True
    order = await order_store.get_order(order_id)
    if not order:
        return False
    if order["customer_id"] == user["user_id"]:
        return True
    for shop_order in await order_store.shop_orders_of(order_id):
        if user["user_id"] in (shop_order.get("owner_id"), shop_order.get("courier_id")):
            return True
    return False


async def _forward(websocket: WebSocket, inbox: asyncio.Queue) -> None:
    while True:
        event = await inbox.get()
        await websocket.send_json(jsonable_encoder(event))


@router.websocket("/events")
async def events(websocket: WebSocket, token: str = ""):
    notifier = getattr(websocket.app.state, "notifier", None)
    user = await load_user_from_token(token)
    if not user or notifier is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    inbox = notifier.subscribe(*_channels_for(user))
    sender = asyncio.create_task(_forward(websocket, inbox))
    logger.info(f"Websocket ouvert pour {user['user_id']}")
    try:
        while True:
            message = await websocket.receive_json()
            if message.get("action") != "join" or not message.get("order_id"):
                continue
            if await _may_follow(user, message["order_id"]):
                notifier.join(inbox, order_channel(message["order_id"]))
                await websocket.send_json({"event": "joined", "order_id": message["order_id"]})
            else:
                await websocket.send_json({"event": "error", "detail": "Accès refusé"})
    except WebSocketDisconnect:
        logger.info(f"Websocket fermé pour {user['user_id']}")
    finally:
        sender.cancel()
        notifier.unsubscribe(inbox)
