"""
Service commandes : placement, machine d'états des sous-commandes, annulation,
modification des articles, arrivée chez le client et flux OTP legacy.
"""
import logging
import math
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from pymongo.errors import DuplicateKeyError

from config import settings
from core.exceptions import (
    bad_request_exception,
    conflict_exception,
    forbidden_exception,
    not_found_exception,
    service_unavailable_exception,
)
from core.geo import distance_between, point_in_polygon
from core.money import money_sum, round2, to_decimal
from core.security import generate_order_code
from database import db
from models.common import ONLINE_METHODS, ShopOrderStatus, UserRole
from models.notification import EventName
from models.order import CartItem, OrderCreate
from services import order_store
from services.assignment_service import (
    CLAIMABLE_STATUSES,
    broadcast_assignment,
    broadcast_assignment_removed,
    payload_for,
)
from services.notification_service import ADMINS_CHANNEL, order_channel, safe_publish, user_channel
from services.otp_service import check_delivery_otp, issue_delivery_otp, send_otp_sms
from services.payment_service import create_checkout_session, create_refund
from services.settings_service import get_system_settings, resolve_pickup_location
from services.settlement_service import discard_unfinished_pickup, settle_delivery
from services.shop_service import check_shop_orderable

logger = logging.getLogger(__name__)

# ── Machine d'états ───────────────────────────────────────────────────────────
ALLOWED_TRANSITIONS: dict[ShopOrderStatus, list[ShopOrderStatus]] = {
    ShopOrderStatus.PENDING: [
        ShopOrderStatus.PREPARING,
        ShopOrderStatus.CANCELLED,
    ],
    ShopOrderStatus.PREPARING: [
        ShopOrderStatus.OUT_FOR_DELIVERY,
        ShopOrderStatus.CANCELLED,
    ],
    ShopOrderStatus.OUT_FOR_DELIVERY: [
        ShopOrderStatus.DELIVERED,   # uniquement via le règlement de livraison
        ShopOrderStatus.CANCELLED,
    ],
    # États terminaux
    ShopOrderStatus.DELIVERED: [],
    ShopOrderStatus.CANCELLED: [],
}

# Statuts depuis lesquels chaque acteur peut annuler
CANCELLABLE_FROM: dict[str, set[str]] = {
    UserRole.CUSTOMER.value: {"pending", "preparing", "out_for_delivery"},
    UserRole.MERCHANT.value: {"pending", "preparing"},
    UserRole.COURIER.value:  {"out_for_delivery"},
    UserRole.ADMIN.value:    {"pending", "preparing", "out_for_delivery"},
}


# ── Helpers ───────────────────────────────────────────────────────────────────
async def _build_line_items(shop_id: str, cart_items: list[CartItem]) -> tuple[list[dict], float]:
    """Prix instantanés depuis le catalogue (jamais ceux du client)."""
    lines = []
    for ci in cart_items:
        item = await db.items.find_one({"item_id": ci.item_id, "shop_id": shop_id}, {"_id": 0})
        if not item:
            raise not_found_exception("Article")
        if not item.get("is_available", True):
            raise bad_request_exception(f"{item['name']} n'est plus disponible")
        options = {o["name"]: o.get("price", 0.0) for o in item.get("options") or []}
        unit = to_decimal(item["price"])
        for name in ci.selected_options:
            if name not in options:
                raise bad_request_exception(f"Option inconnue pour {item['name']} : {name}")
            unit += to_decimal(options[name])
        lines.append({
            "item_id":  ci.item_id,
            "name":     item["name"],
            "price":    round2(unit),
            "quantity": ci.quantity,
            "selected_options": list(ci.selected_options),
        })
    subtotal = money_sum(to_decimal(line["price"]) * line["quantity"] for line in lines)
    return lines, subtotal


def compute_delivery_fee(origin: Optional[dict], destination: dict, system: dict) -> float:
    """floor(base + km × tarif) depuis le premier commerce ; 0 si l'origine est inconnue."""
    distance = distance_between(origin, destination)
    if distance is None:
        return 0.0
    base = system.get("base_delivery_fee") or 0.0
    per_km = system.get("price_per_km")
    per_km = 5.0 if per_km is None else per_km
    return float(math.floor(base + distance * per_km))


def _status_payload(order: dict, shop_order: dict, **extra) -> dict:
    return {
        "order_id":      order["order_id"],
        "order_code":    order.get("order_code"),
        "shop_order_id": shop_order["shop_order_id"],
        "shop_id":       shop_order["shop_id"],
        "status":        shop_order["status"],
        **extra,
    }


# ── Placement ─────────────────────────────────────────────────────────────────
async def place_order(customer: dict, body: OrderCreate, notifier=None) -> dict:
    system = await get_system_settings()
    if system.get("maintenance_mode") or not system.get("is_system_open", True):
        raise service_unavailable_exception("Le service est fermé pour le moment")
    if not body.cart_items:
        raise bad_request_exception("Panier vide")

    address = body.delivery_address
    zone = system.get("delivery_zone")
    if zone and not point_in_polygon(address.lat, address.lng, zone):
        raise bad_request_exception("Adresse hors de la zone de livraison")

    now = datetime.now(timezone.utc)
    grouped: dict[str, list[CartItem]] = {}
    for ci in body.cart_items:
        grouped.setdefault(ci.shop_id, []).append(ci)

    order_id = order_store.new_order_id()
    shops: dict[str, dict] = {}
    shop_orders = []
    for shop_id, cart_items in grouped.items():
        shop = await db.shops.find_one({"shop_id": shop_id}, {"_id": 0, "payments": 0, "payouts": 0})
        check_shop_orderable(shop, now)
        shops[shop_id] = shop
        items, subtotal = await _build_line_items(shop_id, cart_items)
        shop_orders.append({
            "shop_order_id": order_store.new_shop_order_id(),
            "order_id":      order_id,
            "shop_id":       shop_id,
            "owner_id":      shop["owner_id"],
            "items":         items,
            "subtotal":      subtotal,
            "status":        ShopOrderStatus.PENDING.value,
            "courier_id":    None,
            "cancel_reason": None,
            "cancelled_by":  None,
            "otp":           None,
            "otp_expires_at": None,
            "platform_income":   None,
            "merchant_earnings": None,
            "preparing_started_at":   None,
            "ready_for_delivery_at":  None,
            "assigned_at":            None,
            "picked_up_at":           None,
            "arrived_at_customer_at": None,
            "delivered_at":           None,
            "cancelled_at":           None,
            "created_at":    now,
            "updated_at":    now,
        })

    first_shop = shops[shop_orders[0]["shop_id"]]
    origin = resolve_pickup_location(first_shop, system)
    delivery_fee = compute_delivery_fee(origin, {"lat": address.lat, "lng": address.lng}, system)
    subtotal = money_sum(s["subtotal"] for s in shop_orders)

    order = {
        "order_id":         order_id,
        "order_code":       None,
        "customer_id":      customer["user_id"],
        "payment_method":   body.payment_method.value,
        "delivery_address": address.model_dump(),
        "subtotal":         subtotal,
        "delivery_fee":     delivery_fee,
        "total_amount":     money_sum([subtotal, delivery_fee]),
        "shop_order_ids":   [s["shop_order_id"] for s in shop_orders],
        "payment_captured": False,
        "payment_status":   "unpaid",
        "payment_ref":      None,
        "refunds":          [],
        "created_at":       now,
        "updated_at":       now,
    }

    for _ in range(5):
        code = generate_order_code()
        if await order_store.order_code_exists(code):
            continue
        order["order_code"] = code
        try:
            await order_store.insert_order(order, shop_orders)
            break
        except DuplicateKeyError:
            continue
    else:
        raise service_unavailable_exception("Impossible de générer un code commande, réessayez")

    logger.info(
        f"Commande {order['order_code']} créée : client={customer['user_id']} "
        f"commerces={len(shop_orders)} total={order['total_amount']} paiement={order['payment_method']}"
    )
    for shop_order in shop_orders:
        payload = _status_payload(order, shop_order, total_amount=order["total_amount"])
        safe_publish(notifier, user_channel(shop_order["owner_id"]), EventName.ORDER_PLACED, payload)
        safe_publish(notifier, ADMINS_CHANNEL, EventName.ORDER_PLACED, payload)

    order["shop_orders"] = shop_orders
    return order


# ── Lecture ───────────────────────────────────────────────────────────────────
async def get_order_detail(order_id: str, actor: dict) -> dict:
    order = await order_store.get_order(order_id)
    if not order:
        raise not_found_exception("Commande")
    shop_orders = await order_store.shop_orders_of(order_id)
    role, user_id = actor.get("role"), actor.get("user_id")
    if role == UserRole.MERCHANT.value:
        shop_orders = [s for s in shop_orders if s["owner_id"] == user_id]
        allowed = bool(shop_orders)
    elif role == UserRole.COURIER.value:
        shop_orders = [s for s in shop_orders if s.get("courier_id") == user_id]
        allowed = bool(shop_orders)
    else:
        allowed = role == UserRole.ADMIN.value or order["customer_id"] == user_id
    if not allowed:
        raise forbidden_exception()
    for s in shop_orders:
        s.pop("otp", None)
    order["shop_orders"] = shop_orders
    return order


async def list_orders_for(actor: dict, status: Optional[str] = None, limit: int = 50) -> list[dict]:
    role, user_id = actor.get("role"), actor.get("user_id")
    if role == UserRole.CUSTOMER.value:
        cursor = db.orders.find({"customer_id": user_id}, {"_id": 0}).sort("created_at", -1).limit(limit)
        return await cursor.to_list(length=limit)

    if role == UserRole.MERCHANT.value:
        query: dict = {"owner_id": user_id}
    elif role == UserRole.COURIER.value:
        query = {"courier_id": user_id}
    else:
        query = {}
    if status:
        query["status"] = status
    shop_orders = await order_store.list_shop_orders(query, limit=limit)
    for s in shop_orders:
        s.pop("otp", None)
    return shop_orders


# ── Transitions ───────────────────────────────────────────────────────────────
async def _load(order_id: str, shop_order_id: str) -> tuple[dict, dict]:
    shop_order = await order_store.get_shop_order(shop_order_id, order_id)
    if not shop_order:
        raise not_found_exception("Commande")
    order = await order_store.get_order(order_id)
    if not order:
        raise not_found_exception("Commande")
    return order, shop_order


async def update_status(
    order_id: str,
    shop_order_id: str,
    new_status: ShopOrderStatus,
    actor: dict,
    notifier=None,
    reason: Optional[str] = None,
) -> dict:
    """
    Transition officielle d'une sous-commande, par le commerçant (ou l'admin).
    Écriture conditionnelle sur le statut attendu : une requête concurrente qui
    a déjà changé le statut fait échouer celle-ci proprement.
    """
    if new_status == ShopOrderStatus.CANCELLED:
        return await cancel_shop_order(order_id, shop_order_id, actor, reason or "", notifier)

    order, shop_order = await _load(order_id, shop_order_id)
    is_admin = actor.get("role") == UserRole.ADMIN.value
    if not is_admin and not (actor.get("role") == UserRole.MERCHANT.value and shop_order["owner_id"] == actor.get("user_id")):
        raise forbidden_exception("Seul le commerçant peut faire avancer cette commande")

    if new_status == ShopOrderStatus.DELIVERED:
        if not is_admin:
            raise bad_request_exception("La livraison est confirmée par le livreur")
        return await settle_delivery(order, shop_order, notifier)

    current = ShopOrderStatus(shop_order["status"])
    if current == new_status:
        return {**_status_payload(order, shop_order), "assignment": None, "already_applied": True}
    if new_status not in ALLOWED_TRANSITIONS.get(current, []):
        raise bad_request_exception(f"Transition interdite : {current.value} → {new_status.value}")

    now = datetime.now(timezone.utc)
    patch: dict = {"status": new_status.value}
    if new_status == ShopOrderStatus.PREPARING and not shop_order.get("preparing_started_at"):
        patch["preparing_started_at"] = now
    if new_status == ShopOrderStatus.OUT_FOR_DELIVERY:
        patch["ready_for_delivery_at"] = now

    written = await order_store.update_if(shop_order_id, {"status": current.value}, patch)
    if not written:
        fresh = await order_store.get_shop_order(shop_order_id, order_id)
        if fresh and fresh["status"] == new_status.value:
            return {**_status_payload(order, fresh), "assignment": None, "already_applied": True}
        raise conflict_exception("La commande a changé de statut entre-temps")
    shop_order.update(patch)
    logger.info(f"Sous-commande {shop_order_id} : {current.value} → {new_status.value} par {actor.get('user_id')}")

    payload = _status_payload(order, shop_order)
    safe_publish(notifier, user_channel(order["customer_id"]), EventName.ORDER_STATUS_UPDATED, payload)
    safe_publish(notifier, order_channel(order_id), EventName.ORDER_STATUS_UPDATED, payload)
    if shop_order.get("courier_id"):
        safe_publish(notifier, user_channel(shop_order["courier_id"]), EventName.ORDER_STATUS_UPDATED, payload)

    assignment = None
    if new_status.value in CLAIMABLE_STATUSES and not shop_order.get("courier_id"):
        assignment = await payload_for(order, shop_order)
        broadcast_assignment(notifier, assignment)
    return {**payload, "assignment": assignment, "already_applied": False}


async def cancel_shop_order(
    order_id: str,
    shop_order_id: str,
    actor: dict,
    reason: str,
    notifier=None,
) -> dict:
    reason = (reason or "").strip()
    if not reason:
        raise bad_request_exception("Le motif d'annulation est obligatoire")

    order, shop_order = await _load(order_id, shop_order_id)
    role, user_id = actor.get("role"), actor.get("user_id")
    expected: dict = {"picked_up_at": None}
    if role == UserRole.CUSTOMER.value:
        if order["customer_id"] != user_id:
            raise forbidden_exception()
    elif role == UserRole.MERCHANT.value:
        if shop_order["owner_id"] != user_id:
            raise forbidden_exception()
    elif role == UserRole.COURIER.value:
        if shop_order.get("courier_id") != user_id:
            raise forbidden_exception("Cette course ne vous est pas assignée")
        expected["courier_id"] = user_id
    elif role == UserRole.ADMIN.value:
        expected = {}
    else:
        raise forbidden_exception()

    if shop_order["status"] == ShopOrderStatus.CANCELLED.value:
        return {**_status_payload(order, shop_order), "already_applied": True, "refund": None}
    if shop_order.get("picked_up_at") and role in (UserRole.CUSTOMER.value, UserRole.COURIER.value):
        raise conflict_exception("Commande déjà récupérée : annulation impossible, contactez le support")
    if shop_order["status"] == ShopOrderStatus.DELIVERED.value:
        raise conflict_exception("Commande déjà livrée")
    if shop_order["status"] not in CANCELLABLE_FROM[role]:
        raise forbidden_exception(f"Annulation impossible au statut {shop_order['status']}")

    previous_status = shop_order["status"]
    now = datetime.now(timezone.utc)
    patch = {
        "status":        ShopOrderStatus.CANCELLED.value,
        "cancelled_at":  now,
        "cancel_reason": reason,
        "cancelled_by":  role,
    }
    written = await order_store.update_if(shop_order_id, {"status": previous_status, **expected}, patch)
    if not written:
        fresh = await order_store.get_shop_order(shop_order_id, order_id)
        if fresh and fresh["status"] == ShopOrderStatus.CANCELLED.value:
            return {**_status_payload(order, fresh), "already_applied": True, "refund": None}
        raise conflict_exception("La commande a changé entre-temps, annulation non appliquée")
    shop_order.update(patch)
    logger.info(f"Sous-commande {shop_order_id} annulée par {role} {user_id} : {reason}")

    if not shop_order.get("picked_up_at"):
        await discard_unfinished_pickup(shop_order)
    elif role == UserRole.ADMIN.value:
        logger.warning(f"Annulation admin après retrait pour {shop_order_id} : ledgers à régulariser manuellement")

    refund = await _refund_cancelled(order, shop_order)

    payload = _status_payload(order, shop_order, reason=reason, cancelled_by=role)
    safe_publish(notifier, user_channel(order["customer_id"]), EventName.ORDER_CANCELLED, payload)
    safe_publish(notifier, user_channel(shop_order["owner_id"]), EventName.ORDER_CANCELLED, payload)
    safe_publish(notifier, order_channel(order_id), EventName.ORDER_CANCELLED, payload)
    if shop_order.get("courier_id"):
        safe_publish(notifier, user_channel(shop_order["courier_id"]), EventName.ORDER_CANCELLED, payload)
    elif previous_status in CLAIMABLE_STATUSES:
        broadcast_assignment_removed(notifier, shop_order, "cancelled")
    return {**payload, "already_applied": False, "refund": refund}


async def _refund_cancelled(order: dict, shop_order: dict) -> Optional[dict]:
    """
    Remboursement best-effort : sous-total, plus les frais de livraison si plus aucune
    sous-commande n'est active. Un échec est journalisé ; l'annulation reste acquise.
    """
    if not order.get("payment_captured") or order["payment_method"] not in ONLINE_METHODS:
        return None
    if not order.get("payment_ref"):
        logger.error(f"Remboursement impossible pour {order['order_id']} : référence de paiement absente")
        return {"success": False, "error": "missing payment reference"}

    siblings = await order_store.shop_orders_of(order["order_id"])
    others_active = any(
        s["shop_order_id"] != shop_order["shop_order_id"] and s["status"] != ShopOrderStatus.CANCELLED.value
        for s in siblings
    )
    amount = shop_order["subtotal"] if others_active else money_sum([shop_order["subtotal"], order["delivery_fee"]])

    result = await create_refund(order["payment_ref"], amount)
    record = {
        "shop_order_id": shop_order["shop_order_id"],
        "amount":        amount,
        "refund_id":     result.get("refund_id"),
        "status":        "succeeded" if result.get("success") else "failed",
        "error":         result.get("error"),
        "created_at":    datetime.now(timezone.utc),
    }
    await db.orders.update_one(
        {"order_id": order["order_id"], "refunds.shop_order_id": {"$ne": shop_order["shop_order_id"]}},
        {"$push": {"refunds": record}},
    )
    if result.get("success"):
        logger.info(f"Remboursement {record['refund_id']} : {amount} pour {shop_order['shop_order_id']}")
    else:
        logger.error(
            f"Remboursement échoué pour {shop_order['shop_order_id']} ({amount}), "
            f"à régulariser manuellement : {result.get('error')}"
        )
    return {"success": bool(result.get("success")), "amount": amount, "refund_id": result.get("refund_id")}


# ── Modification des articles ─────────────────────────────────────────────────
_TOTALS_ATTEMPTS = 5


async def _refresh_order_totals(order_id: str) -> dict:
    """
    Recalcule les totaux depuis les sous-commandes et les écrit seulement si ceux
    lus n'ont pas bougé entre-temps ; sinon relit et recommence.
    """
    for _ in range(_TOTALS_ATTEMPTS):
        order = await order_store.get_order(order_id)
        if not order:
            raise not_found_exception("Commande")
        siblings = await order_store.shop_orders_of(order_id)
        order_subtotal = money_sum(s["subtotal"] for s in siblings)
        totals = {
            "subtotal":     order_subtotal,
            "total_amount": money_sum([order_subtotal, order["delivery_fee"]]),
        }
        expected = {"subtotal": order["subtotal"], "total_amount": order["total_amount"]}
        if await order_store.update_order_if(order_id, expected, totals):
            return totals
    logger.error(f"Totaux de la commande {order_id} non recalculés après {_TOTALS_ATTEMPTS} essais")
    raise conflict_exception("La commande a été modifiée entre-temps, réessayez")

async def update_items(order_id: str, shop_order_id: str, actor: dict, items: list[CartItem], notifier=None) -> dict:
    order, shop_order = await _load(order_id, shop_order_id)
    if order["customer_id"] != actor.get("user_id"):
        raise forbidden_exception()
    if shop_order["status"] != ShopOrderStatus.PENDING.value:
        raise conflict_exception("La commande n'est plus modifiable")
    if order.get("payment_captured"):
        raise conflict_exception("Commande déjà payée : modification impossible")
    if not items:
        raise bad_request_exception("Au moins un article est requis")
    if any(ci.shop_id != shop_order["shop_id"] for ci in items):
        raise bad_request_exception("Tous les articles doivent provenir du même commerce")

    lines, subtotal = await _build_line_items(shop_order["shop_id"], items)
    written = await order_store.update_if(
        shop_order_id,
        {"status": ShopOrderStatus.PENDING.value},
        {"items": lines, "subtotal": subtotal},
    )
    if not written:
        raise conflict_exception("La commande n'est plus modifiable")

    totals = await _refresh_order_totals(order_id)
    order.update(totals)
    shop_order.update({"items": lines, "subtotal": subtotal})

    safe_publish(notifier, user_channel(shop_order["owner_id"]), EventName.ORDER_ITEMS_UPDATED,
                 _status_payload(order, shop_order, subtotal=subtotal))
    return {**order, "shop_order": shop_order}


# ── Arrivée / OTP ─────────────────────────────────────────────────────────────
def _check_assigned(shop_order: dict, actor: dict) -> None:
    if actor.get("role") == UserRole.ADMIN.value:
        return
    if actor.get("role") != UserRole.COURIER.value or shop_order.get("courier_id") != actor.get("user_id"):
        raise forbidden_exception("Cette course ne vous est pas assignée")


async def confirm_arrival(order_id: str, shop_order_id: str, actor: dict, notifier=None) -> dict:
    order, shop_order = await _load(order_id, shop_order_id)
    _check_assigned(shop_order, actor)
    if shop_order.get("arrived_at_customer_at"):
        return {**_status_payload(order, shop_order), "arrived_at_customer_at": shop_order["arrived_at_customer_at"]}
    if shop_order["status"] != ShopOrderStatus.OUT_FOR_DELIVERY.value or not shop_order.get("picked_up_at"):
        raise bad_request_exception("La commande n'est pas en cours de livraison")

    now = datetime.now(timezone.utc)
    written = await order_store.update_if(
        shop_order_id,
        {"status": ShopOrderStatus.OUT_FOR_DELIVERY.value, "arrived_at_customer_at": None},
        {"arrived_at_customer_at": now},
    )
    if not written:
        fresh = await order_store.get_shop_order(shop_order_id, order_id)
        if fresh and fresh.get("arrived_at_customer_at"):
            return {**_status_payload(order, fresh), "arrived_at_customer_at": fresh["arrived_at_customer_at"]}
        raise conflict_exception("La commande a changé entre-temps")

    payload = _status_payload(order, shop_order, arrived_at_customer_at=now)
    safe_publish(notifier, user_channel(order["customer_id"]), EventName.COURIER_ARRIVED, payload)
    safe_publish(notifier, order_channel(order_id), EventName.COURIER_ARRIVED, payload)
    return payload


async def send_delivery_otp(order_id: str, shop_order_id: str, actor: dict, notifier=None) -> dict:
    order, shop_order = await _load(order_id, shop_order_id)
    _check_assigned(shop_order, actor)
    if shop_order["status"] != ShopOrderStatus.OUT_FOR_DELIVERY.value:
        raise bad_request_exception("La commande n'est pas en cours de livraison")

    otp_code, expires_at, reused = await issue_delivery_otp(shop_order)
    sms_sent = await send_otp_sms(order["customer_id"], order.get("order_code", ""), otp_code)
    safe_publish(notifier, user_channel(order["customer_id"]), EventName.DELIVERY_OTP, {
        "order_id":   order_id,
        "order_code": order.get("order_code"),
        "otp":        otp_code,
        "expires_at": expires_at,
        "message":    f"Code de livraison : {otp_code}",
    })
    return {"sent": True, "sms_sent": sms_sent, "reused": reused, "expires_at": expires_at}


async def verify_delivery_otp(order_id: str, shop_order_id: str, actor: dict, otp_code: str, notifier=None) -> dict:
    order, shop_order = await _load(order_id, shop_order_id)
    _check_assigned(shop_order, actor)
    if shop_order["status"] == ShopOrderStatus.DELIVERED.value:
        return await settle_delivery(order, shop_order, notifier)
    problem = check_delivery_otp(shop_order, otp_code)
    if problem:
        raise bad_request_exception(problem)
    result = await settle_delivery(order, shop_order, notifier)
    await order_store.update_if(shop_order_id, {"status": ShopOrderStatus.DELIVERED.value}, {"otp": None, "otp_expires_at": None})
    return result


# ── Tableaux de bord ──────────────────────────────────────────────────────────
# Jours et semaines en UTC ; la semaine commence le lundi à 00:00.
_DASHBOARD_SCAN = 500


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def week_start(now: datetime) -> datetime:
    start, _ = _day_bounds(_aware(now).date())
    return start - timedelta(days=start.weekday())


async def _delivered_between(courier_id: str, start: datetime, end: datetime) -> list[dict]:
    shop_orders = await order_store.list_shop_orders(
        {"courier_id": courier_id, "status": ShopOrderStatus.DELIVERED.value},
        limit=_DASHBOARD_SCAN,
        sort_field="delivered_at",
    )
    return [s for s in shop_orders if s.get("delivered_at") and start <= _aware(s["delivered_at"]) < end]


async def deliveries_for_day(courier_id: str, day: Optional[date] = None) -> dict:
    """Courses livrées par le livreur ce jour-là, tous modes de paiement confondus."""
    day = day or datetime.now(timezone.utc).date()
    start, end = _day_bounds(day)
    shop_orders = await _delivered_between(courier_id, start, end)
    orders = await order_store.orders_by_ids(list({s["order_id"] for s in shop_orders}))

    deliveries = []
    for s in shop_orders:
        s.pop("otp", None)
        order = orders.get(s["order_id"]) or {}
        deliveries.append({
            **s,
            "order_code":       order.get("order_code"),
            "payment_method":   order.get("payment_method"),
            "delivery_fee":     order.get("delivery_fee", 0.0),
            "delivery_address": order.get("delivery_address"),
        })
    return {"date": day.isoformat(), "deliveries": deliveries, "total": len(deliveries)}


async def courier_financial_summary(courier_id: str, now: Optional[datetime] = None) -> dict:
    """
    Gains du jour (frais de livraison des commandes livrées aujourd'hui, une fois
    par commande), nombre total de courses livrées et crédit de course.
    """
    now = _aware(now) or datetime.now(timezone.utc)
    start, end = _day_bounds(now.date())
    today = await _delivered_between(courier_id, start, end)
    orders = await order_store.orders_by_ids(list({s["order_id"] for s in today}))
    completed = await order_store.count_shop_orders(
        {"courier_id": courier_id, "status": ShopOrderStatus.DELIVERED.value},
    )
    user = await db.users.find_one({"user_id": courier_id}, {"_id": 0, "job_credit": 1}) or {}
    return {
        "today_income":    money_sum(o.get("delivery_fee") for o in orders.values()),
        "completed_tasks": completed,
        "job_credit":      round2(user.get("job_credit", 0.0)),
    }


async def weekly_cancellation_count(owner_id: str, now: Optional[datetime] = None) -> dict:
    since = week_start(now or datetime.now(timezone.utc))
    cancelled = await order_store.list_shop_orders(
        {"owner_id": owner_id, "status": ShopOrderStatus.CANCELLED.value},
        limit=_DASHBOARD_SCAN,
        sort_field="cancelled_at",
    )
    count = sum(1 for s in cancelled if s.get("cancelled_at") and _aware(s["cancelled_at"]) >= since)
    return {"count": count, "max_count": settings.MAX_WEEKLY_CANCELLATIONS, "week_start": since}


# ── Paiement en ligne ─────────────────────────────────────────────────────────
async def start_order_checkout(order_id: str, customer: dict) -> dict:
    """Session Checkout pour une commande en ligne ; la capture arrive par webhook."""
    order = await order_store.get_order(order_id)
    if not order:
        raise not_found_exception("Commande")
    if order["customer_id"] != customer.get("user_id"):
        raise forbidden_exception()
    if order["payment_method"] not in ONLINE_METHODS:
        raise bad_request_exception("Commande payable à la livraison")
    if order.get("payment_captured"):
        raise conflict_exception("Commande déjà payée")

    result = await create_checkout_session(
        order["total_amount"],
        description=f"Commande {order['order_code']}",
        metadata={"type": "order", "order_id": order_id, "order_code": order["order_code"]},
    )
    if not result.get("success"):
        raise bad_request_exception("Paiement indisponible, réessayez plus tard")
    await order_store.update_order_if(order_id, {}, {"checkout_session_id": result["session_id"]})
    return {"order_id": order_id, "session_id": result["session_id"], "url": result["url"]}
