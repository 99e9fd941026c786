"""
Router orders : passage de commande, lecture, transitions et annulation des sous-commandes.
"""
from typing import Optional

from fastapi import APIRouter, Depends

from core.dependencies import get_current_user, get_notifier, require_customer, require_merchant
from models.order import CancelRequest, ItemsUpdate, OrderCreate, StatusUpdate
from services import order_service

router = APIRouter()


@router.post("", summary="Passer une commande")
async def place_order(
    body: OrderCreate,
    current_user: dict = Depends(require_customer),
    notifier=Depends(get_notifier),
):
    return await order_service.place_order(current_user, body, notifier)


@router.get("", summary="Mes commandes")
async def list_orders(
    status: Optional[str] = None,
    limit: int = 50,
    current_user: dict = Depends(get_current_user),
):
    return {"orders": await order_service.list_orders_for(current_user, status, min(limit, 200))}


@router.get("/cancellations/week", summary="Annulations de la semaine (commerçant)")
async def weekly_cancellations(current_user: dict = Depends(require_merchant)):
    return await order_service.weekly_cancellation_count(current_user["user_id"])


@router.get("/{order_id}", summary="Détail d'une commande")
async def get_order(order_id: str, current_user: dict = Depends(get_current_user)):
    return await order_service.get_order_detail(order_id, current_user)


@router.post("/{order_id}/checkout", summary="Payer une commande en ligne")
async def checkout(order_id: str, current_user: dict = Depends(require_customer)):
    return await order_service.start_order_checkout(order_id, current_user)


@router.put("/{order_id}/shops/{shop_order_id}/status", summary="Faire avancer une sous-commande")
async def update_status(
    order_id: str,
    shop_order_id: str,
    body: StatusUpdate,
    current_user: dict = Depends(require_merchant),
    notifier=Depends(get_notifier),
):
    return await order_service.update_status(
        order_id, shop_order_id, body.new_status, current_user, notifier, body.reason,
    )


@router.post("/{order_id}/shops/{shop_order_id}/cancel", summary="Annuler une sous-commande")
async def cancel(
    order_id: str,
    shop_order_id: str,
    body: CancelRequest,
    current_user: dict = Depends(get_current_user),
    notifier=Depends(get_notifier),
):
    return await order_service.cancel_shop_order(order_id, shop_order_id, current_user, body.reason, notifier)


@router.put("/{order_id}/shops/{shop_order_id}/items", summary="Modifier les articles (avant préparation)")
async def update_items(
    order_id: str,
    shop_order_id: str,
    body: ItemsUpdate,
    current_user: dict = Depends(require_customer),
    notifier=Depends(get_notifier),
):
    return await order_service.update_items(order_id, shop_order_id, current_user, body.items, notifier)
