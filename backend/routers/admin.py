"""
Router admin : tableau de bord, retraits, réaffectation des courses, paramètres globaux.
"""
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends

from core.dependencies import get_notifier, require_admin
from database import db
from models.common import ShopOrderStatus, UserRole
from models.order import CourierAssignment, StatusUpdate
from models.shop import SystemSettingsUpdate
from models.wallet import PayoutRequestStatus, PayoutResolution
from services import assignment_service, order_service, settings_service, wallet_service

router = APIRouter()


@router.get("/dashboard", summary="KPIs temps réel")
async def dashboard(_admin=Depends(require_admin)):
    now = datetime.now(timezone.utc)
    today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)

    total_orders  = await db.orders.count_documents({})
    orders_today  = await db.orders.count_documents({"created_at": {"$gte": today_start}})
    delivered     = await db.shop_orders.count_documents({"status": ShopOrderStatus.DELIVERED.value})
    cancelled     = await db.shop_orders.count_documents({"status": ShopOrderStatus.CANCELLED.value})
    unassigned    = await db.shop_orders.count_documents({
        "status": {"$in": assignment_service.CLAIMABLE_STATUSES}, "courier_id": None,
    })
    active_couriers = await db.users.count_documents({"role": UserRole.COURIER.value, "is_active": True})
    pending_payouts = await db.payout_requests.count_documents({"status": PayoutRequestStatus.PENDING.value})

    # Revenu plateforme : commissions figées à la récupération
    pipeline = [
        {"$match": {"platform_income": {"$ne": None}}},
        {"$group": {"_id": None, "total": {"$sum": "$platform_income"}}},
    ]
    income = await db.shop_orders.aggregate(pipeline).to_list(length=1)

    return {
        "total_orders":    total_orders,
        "orders_today":    orders_today,
        "delivered":       delivered,
        "cancelled":       cancelled,
        "unassigned":      unassigned,
        "active_couriers": active_couriers,
        "pending_payouts": pending_payouts,
        "platform_income": round(income[0]["total"], 2) if income else 0.0,
    }


# ── Retraits ──────────────────────────────────────────────────────────────────
@router.get("/payout-requests", summary="Demandes de retrait")
async def list_payout_requests(
    status: Optional[str] = None,
    skip: int = 0,
    limit: int = 50,
    _admin=Depends(require_admin),
):
    return await wallet_service.list_payout_requests(status, skip, limit)


@router.put("/payout-requests/{request_id}", summary="Traiter une demande de retrait")
async def resolve_payout_request(
    request_id: str,
    body: PayoutResolution,
    admin: dict = Depends(require_admin),
    notifier=Depends(get_notifier),
):
    return await wallet_service.resolve_payout_request(request_id, body.status, admin["user_id"], notifier)


# ── Courses ───────────────────────────────────────────────────────────────────
@router.put("/orders/{order_id}/shops/{shop_order_id}/courier", summary="Affecter ou retirer un livreur")
async def set_courier(
    order_id: str,
    shop_order_id: str,
    body: CourierAssignment,
    admin: dict = Depends(require_admin),
    notifier=Depends(get_notifier),
):
    return await assignment_service.admin_set_courier(order_id, shop_order_id, body.courier_id, admin, notifier)


@router.put("/orders/{order_id}/shops/{shop_order_id}/status", summary="Forcer un statut")
async def force_status(
    order_id: str,
    shop_order_id: str,
    body: StatusUpdate,
    admin: dict = Depends(require_admin),
    notifier=Depends(get_notifier),
):
    return await order_service.update_status(order_id, shop_order_id, body.new_status, admin, notifier, body.reason)


# ── Paramètres ────────────────────────────────────────────────────────────────
@router.get("/settings", summary="Paramètres globaux")
async def get_settings(_admin=Depends(require_admin)):
    return await settings_service.get_system_settings()


@router.put("/settings", summary="Modifier les paramètres globaux")
async def update_settings(body: SystemSettingsUpdate, _admin=Depends(require_admin)):
    return await settings_service.update_system_settings(body)
