"""
Router webhooks : notifications de la passerelle de paiement (Stripe).
Chaque événement est traité de façon idempotente : on retrouve d'abord l'entité par
sa référence externe, puis on n'écrit que si l'effet n'est pas déjà acquis.
Docs : https://docs.stripe.com/webhooks
"""
import json
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from config import settings
from core.dependencies import get_notifier
from core.money import round2, to_decimal
from core.security import verify_webhook_signature
from database import db
from models.notification import EventName
from models.wallet import PayoutStatus
from services import order_store
from services.notification_service import order_channel, safe_publish, user_channel
from services.wallet_service import apply_gateway_payout_status, apply_job_credit, record_gateway_shop_payout

logger = logging.getLogger(__name__)
router = APIRouter()

# Noms Stripe natifs → noms internes
EVENT_ALIASES = {
    "checkout.session.completed":    "checkout.completed",
    "payment_intent.succeeded":      "payment.succeeded",
    "payment_intent.payment_failed": "payment.failed",
}


def _major(amount_minor) -> Optional[float]:
    if amount_minor is None:
        return None
    return round2(to_decimal(amount_minor) / 100)


async def _find_order(payment_ref: Optional[str], metadata: dict) -> Optional[dict]:
    if payment_ref:
        order = await db.orders.find_one({"payment_ref": payment_ref}, {"_id": 0})
        if order:
            return order
    if metadata.get("order_id"):
        return await order_store.get_order(metadata["order_id"])
    return None


async def _mark_order_paid(order: dict, payment_ref: Optional[str], notifier) -> bool:
    applied = await order_store.update_order_if(
        order["order_id"],
        {"payment_captured": False},
        {"payment_captured": True, "payment_status": "paid", "payment_ref": payment_ref or order.get("payment_ref")},
    )
    if applied:
        logger.info(f"Paiement capturé pour {order['order_id']} (ref={payment_ref})")
        payload = {"order_id": order["order_id"], "order_code": order.get("order_code"), "payment_status": "paid"}
        safe_publish(notifier, user_channel(order["customer_id"]), EventName.PAYMENT_UPDATED, payload)
        safe_publish(notifier, order_channel(order["order_id"]), EventName.PAYMENT_UPDATED, payload)
    return applied


# ── Handlers ──────────────────────────────────────────────────────────────────
async def _on_checkout_completed(obj: dict, notifier) -> None:
    metadata = obj.get("metadata") or {}
    if metadata.get("type") == "credit_topup":
        user_id = metadata.get("user_id")
        amount = _major(obj.get("amount_total"))
        if amount is None:
            amount = round2(metadata.get("amount"))
        if not user_id or not amount:
            logger.warning(f"Recharge sans utilisateur ou montant : session={obj.get('id')}")
            return
        applied = await apply_job_credit(user_id, amount, f"topup:{obj.get('id')}", "topup")
        if applied:
            logger.info(f"Crédit de course rechargé : livreur={user_id} montant={amount}")
            safe_publish(notifier, user_channel(user_id), EventName.JOB_CREDIT_TOPPED_UP, {"amount": amount})
        return

    payment_ref = obj.get("payment_intent") or obj.get("id")
    order = await _find_order(payment_ref, metadata)
    if not order:
        logger.warning(f"Aucune commande pour la session {obj.get('id')}")
        return
    await _mark_order_paid(order, payment_ref, notifier)


async def _on_payment_succeeded(obj: dict, notifier) -> None:
    order = await _find_order(obj.get("id"), obj.get("metadata") or {})
    if not order:
        logger.warning(f"Aucune commande pour le paiement {obj.get('id')}")
        return
    await _mark_order_paid(order, obj.get("id"), notifier)


async def _on_payment_failed(obj: dict, notifier) -> None:
    order = await _find_order(obj.get("id"), obj.get("metadata") or {})
    error = (obj.get("last_payment_error") or {}).get("message")
    logger.warning(f"Paiement échoué {obj.get('id')} : {error}")
    if not order:
        return
    applied = await order_store.update_order_if(
        order["order_id"],
        {"payment_captured": False},
        {"payment_status": "failed", "payment_error": error},
    )
    if applied:
        safe_publish(notifier, user_channel(order["customer_id"]), EventName.PAYMENT_UPDATED, {
            "order_id": order["order_id"], "order_code": order.get("order_code"), "payment_status": "failed",
        })


async def _on_payout_created(obj: dict, notifier) -> None:
    metadata = obj.get("metadata") or {}
    if metadata.get("payout_ref"):
        await apply_gateway_payout_status(PayoutStatus.IN_TRANSIT, obj.get("id"), metadata["payout_ref"], notifier)
        return
    shop_id = metadata.get("shop_id")
    if not shop_id:
        logger.info(f"Virement {obj.get('id')} sans commerce associé, ignoré")
        return
    arrival = obj.get("arrival_date")
    await record_gateway_shop_payout(
        shop_id,
        obj.get("id"),
        _major(obj.get("amount")) or 0.0,
        datetime.fromtimestamp(arrival, tz=timezone.utc) if arrival else None,
    )


async def _on_payout_paid(obj: dict, notifier) -> None:
    metadata = obj.get("metadata") or {}
    await apply_gateway_payout_status(PayoutStatus.PAID, obj.get("id"), metadata.get("payout_ref"), notifier)


async def _on_payout_failed(obj: dict, notifier) -> None:
    metadata = obj.get("metadata") or {}
    await apply_gateway_payout_status(PayoutStatus.FAILED, obj.get("id"), metadata.get("payout_ref"), notifier)


HANDLERS = {
    "checkout.completed": _on_checkout_completed,
    "payment.succeeded":  _on_payment_succeeded,
    "payment.failed":     _on_payment_failed,
    "payout.created":     _on_payout_created,
    "payout.paid":        _on_payout_paid,
    "payout.failed":      _on_payout_failed,
}


@router.post("/stripe", summary="Événements de la passerelle de paiement")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    notifier=Depends(get_notifier),
):
    body = await request.body()
    if settings.STRIPE_WEBHOOK_SECRET:
        if not verify_webhook_signature(
            body, stripe_signature, settings.STRIPE_WEBHOOK_SECRET, settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        ):
            raise HTTPException(status_code=401, detail="Signature invalide")

    try:
        event = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="JSON invalide")

    event_type = EVENT_ALIASES.get(event.get("type"), event.get("type"))
    event_id = event.get("id")
    obj = (event.get("data") or {}).get("object") or {}
    logger.info(f"Webhook Stripe reçu : {event_type} ({event_id})")

    handler = HANDLERS.get(event_type)
    if not handler:
        return {"received": True}

    if event_id and await db.webhook_events.find_one({"event_id": event_id}, {"_id": 1}):
        return {"received": True, "duplicate": True}

    await handler(obj, notifier)

    if event_id:
        await db.webhook_events.update_one(
            {"event_id": event_id},
            {"$setOnInsert": {"event_id": event_id, "type": event_type, "received_at": datetime.now(timezone.utc)}},
            upsert=True,
        )
    return {"received": True}
