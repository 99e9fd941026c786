"""
Service affectation : courses disponibles pour les livreurs, classement par distance,
prise en charge atomique (try_claim), libération et réaffectation admin.

La prise en charge est une seule écriture conditionnelle :
    courier_id = moi  SI  statut ∈ CLAIMABLE_STATUSES  ET  courier_id est vide
Deux livreurs simultanés : un seul document correspond, l'autre voit « déjà prise ».
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from core.exceptions import bad_request_exception, conflict_exception, forbidden_exception, not_found_exception
from core.geo import distance_between, visibility_delay_seconds
from database import db
from models.common import ShopOrderStatus, UserRole
from models.notification import EventName
from models.order import AssignmentPayload
from services import order_store
from services.notification_service import COURIERS_CHANNEL, order_channel, safe_publish, user_channel
from services.settings_service import get_system_settings, resolve_pickup_location

logger = logging.getLogger(__name__)

# Les courses en préparation sont visibles : le livreur peut se mettre en route
# pendant la cuisson. Le retrait exige toujours out_for_delivery.
CLAIMABLE_STATUSES = [
    ShopOrderStatus.PREPARING.value,
    ShopOrderStatus.OUT_FOR_DELIVERY.value,
]

_SHOP_PROJECTION = {"_id": 0, "payments": 0, "payouts": 0}


def build_assignment_payload(
    order: dict,
    shop_order: dict,
    shop: Optional[dict],
    system_settings: dict,
    courier_location: Optional[dict] = None,
) -> dict:
    shop = shop or {}
    pickup = resolve_pickup_location(shop, system_settings)
    distance = distance_between(courier_location, pickup)
    payload = AssignmentPayload(
        assignment_id=shop_order["shop_order_id"],
        order_id=order["order_id"],
        order_code=order.get("order_code", ""),
        shop_order_id=shop_order["shop_order_id"],
        shop_id=shop_order["shop_id"],
        shop_name=shop.get("name", ""),
        pickup_location=pickup,
        delivery_address=order.get("delivery_address") or {},
        distance_km=round(distance, 3) if distance is not None else None,
        visibility_delay_seconds=visibility_delay_seconds(distance),
        items=[
            {"name": i.get("name"), "quantity": i.get("quantity"), "selected_options": i.get("selected_options", [])}
            for i in shop_order.get("items", [])
        ],
        delivery_fee=order.get("delivery_fee", 0.0),
        subtotal=shop_order["subtotal"],
        status=shop_order["status"],
        created_at=shop_order["created_at"],
    )
    return payload.model_dump(mode="json")


async def payload_for(order: dict, shop_order: dict, courier_location: Optional[dict] = None) -> dict:
    shop = await db.shops.find_one({"shop_id": shop_order["shop_id"]}, _SHOP_PROJECTION)
    system = await get_system_settings()
    return build_assignment_payload(order, shop_order, shop, system, courier_location)


def broadcast_assignment(notifier, payload: dict) -> None:
    safe_publish(notifier, COURIERS_CHANNEL, EventName.DELIVERY_ASSIGNMENT, payload)


def broadcast_assignment_removed(notifier, shop_order: dict, reason: str) -> None:
    safe_publish(notifier, COURIERS_CHANNEL, EventName.DELIVERY_ASSIGNMENT_REMOVED, {
        "assignment_id": shop_order["shop_order_id"],
        "order_id":      shop_order["order_id"],
        "reason":        reason,
    })


# ── Flux des courses ──────────────────────────────────────────────────────────
async def list_available_assignments(
    courier: dict,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    limit: int = 100,
) -> list[dict]:
    """Courses libres triées par distance croissante ; distance inconnue en dernier."""
    if lat is not None and lng is not None:
        location = {"lat": lat, "lng": lng}
    else:
        location = courier.get("current_location")

    candidates = await order_store.list_shop_orders(
        {"status": {"$in": CLAIMABLE_STATUSES}, "courier_id": None},
        limit=limit,
    )
    if not candidates:
        return []

    order_ids = list({c["order_id"] for c in candidates})
    shop_ids = list({c["shop_id"] for c in candidates})
    orders = {
        o["order_id"]: o
        for o in await db.orders.find({"order_id": {"$in": order_ids}}, {"_id": 0}).to_list(length=len(order_ids))
    }
    shops = {
        s["shop_id"]: s
        for s in await db.shops.find({"shop_id": {"$in": shop_ids}}, _SHOP_PROJECTION).to_list(length=len(shop_ids))
    }
    system = await get_system_settings()

    feed = []
    for shop_order in candidates:
        order = orders.get(shop_order["order_id"])
        if not order:
            continue
        feed.append(build_assignment_payload(order, shop_order, shops.get(shop_order["shop_id"]), system, location))

    feed.sort(key=lambda p: (p["distance_km"] is None, p["distance_km"] or 0.0))
    return feed


# ── Prise en charge ───────────────────────────────────────────────────────────
async def try_claim(order_id: str, shop_order_id: str, courier: dict, notifier=None) -> tuple[bool, Optional[dict]]:
    """
    Retourne (True, sous-commande) si la course est à ce livreur après l'appel,
    (False, None) si un autre l'a prise ou si elle n'est plus disponible.
    """
    courier_id = courier["user_id"]
    now = datetime.now(timezone.utc)
    job = await order_store.find_and_update_if(
        shop_order_id,
        {"order_id": order_id, "status": {"$in": CLAIMABLE_STATUSES}, "courier_id": None},
        {"courier_id": courier_id, "assigned_at": now},
    )
    if job is None:
        current = await order_store.get_shop_order(shop_order_id, order_id)
        if current and current.get("courier_id") == courier_id:
            return True, current   # rejeu du même livreur
        logger.info(f"Course {shop_order_id} perdue par {courier_id} (déjà prise ou indisponible)")
        return False, None

    logger.info(f"Course {shop_order_id} prise par {courier_id}")
    order = await order_store.get_order(order_id) or {}
    safe_publish(notifier, COURIERS_CHANNEL, EventName.DELIVERY_ASSIGNMENT_TAKEN, {
        "assignment_id": shop_order_id,
        "order_id":      order_id,
        "courier_id":    courier_id,
    })
    taken = {
        "order_id":      order_id,
        "order_code":    order.get("order_code"),
        "shop_order_id": shop_order_id,
        "courier_id":    courier_id,
        "courier_name":  courier.get("name"),
        "status":        job["status"],
    }
    if order.get("customer_id"):
        safe_publish(notifier, user_channel(order["customer_id"]), EventName.DELIVERY_ASSIGNMENT_TAKEN, taken)
    safe_publish(notifier, user_channel(job["owner_id"]), EventName.DELIVERY_ASSIGNMENT_TAKEN, taken)
    safe_publish(notifier, order_channel(order_id), EventName.DELIVERY_ASSIGNMENT_TAKEN, taken)
    return True, job


async def release_assignment(order_id: str, shop_order_id: str, courier: dict, notifier=None) -> dict:
    """Le livreur rend une course non encore récupérée ; elle repart dans le pool."""
    courier_id = courier["user_id"]
    shop_order = await order_store.get_shop_order(shop_order_id, order_id)
    if not shop_order:
        raise not_found_exception("Course")
    if shop_order.get("courier_id") != courier_id:
        raise forbidden_exception("Cette course ne vous est pas assignée")
    if shop_order.get("picked_up_at"):
        raise conflict_exception("Commande déjà récupérée, libération impossible")
    if shop_order["status"] not in CLAIMABLE_STATUSES:
        raise bad_request_exception(f"Libération impossible au statut {shop_order['status']}")

    released = await order_store.update_if(
        shop_order_id,
        {"status": {"$in": CLAIMABLE_STATUSES}, "courier_id": courier_id, "picked_up_at": None},
        {"courier_id": None, "assigned_at": None},
    )
    if not released:
        raise conflict_exception("La course a changé entre-temps")

    logger.info(f"Course {shop_order_id} libérée par {courier_id}")
    shop_order.update({"courier_id": None, "assigned_at": None})
    order = await order_store.get_order(order_id)
    payload = await payload_for(order, shop_order)
    broadcast_assignment(notifier, payload)
    safe_publish(notifier, user_channel(shop_order["owner_id"]), EventName.ORDER_STATUS_UPDATED, {
        "order_id": order_id, "shop_order_id": shop_order_id, "status": shop_order["status"],
        "message": "Le livreur s'est désisté, la course est de nouveau proposée",
    })
    return payload


# ── Réaffectation admin ───────────────────────────────────────────────────────
async def admin_set_courier(
    order_id: str,
    shop_order_id: str,
    courier_id: Optional[str],
    admin: dict,
    notifier=None,
) -> dict:
    """
    Affecte (ou retire, courier_id=None) un livreur sans passer par la règle de course.
    Au retrait, le statut revient à une étape proposable : out_for_delivery si la
    commande était déjà prête, sinon preparing.
    """
    shop_order = await order_store.get_shop_order(shop_order_id, order_id)
    if not shop_order:
        raise not_found_exception("Commande")
    if shop_order.get("picked_up_at"):
        raise conflict_exception("Commande déjà récupérée par un livreur")
    if shop_order["status"] not in CLAIMABLE_STATUSES:
        raise bad_request_exception(f"Réaffectation impossible au statut {shop_order['status']}")

    previous = shop_order.get("courier_id")
    now = datetime.now(timezone.utc)

    if courier_id:
        courier = await db.users.find_one({"user_id": courier_id, "role": UserRole.COURIER.value}, {"_id": 0})
        if not courier:
            raise not_found_exception("Livreur")
        patch = {"courier_id": courier_id, "assigned_at": now}
    else:
        status = (
            ShopOrderStatus.OUT_FOR_DELIVERY.value
            if shop_order.get("ready_for_delivery_at")
            else ShopOrderStatus.PREPARING.value
        )
        patch = {"courier_id": None, "assigned_at": None, "status": status}

    written = await order_store.update_if(
        shop_order_id,
        {"status": shop_order["status"], "picked_up_at": None},
        patch,
    )
    if not written:
        raise conflict_exception("La commande a changé entre-temps")
    shop_order.update(patch)
    logger.info(f"Admin {admin['user_id']} : course {shop_order_id} {previous} → {courier_id}")

    if previous and previous != courier_id:
        safe_publish(notifier, user_channel(previous), EventName.DELIVERY_ASSIGNMENT_REMOVED, {
            "assignment_id": shop_order_id, "order_id": order_id, "reason": "reassigned",
        })
    order = await order_store.get_order(order_id)
    if courier_id:
        if not previous:
            broadcast_assignment_removed(notifier, shop_order, "assigned")
        safe_publish(notifier, user_channel(courier_id), EventName.DELIVERY_ASSIGNMENT, await payload_for(order, shop_order))
    else:
        broadcast_assignment(notifier, await payload_for(order, shop_order))
    return shop_order


async def update_courier_location(courier_id: str, lat: float, lng: float) -> dict:
    now = datetime.now(timezone.utc)
    await db.users.update_one(
        {"user_id": courier_id},
        {"$set": {"current_location": {"lat": lat, "lng": lng}, "location_updated_at": now, "updated_at": now}},
    )
    return {"lat": lat, "lng": lng, "updated_at": now}
