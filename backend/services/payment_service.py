"""
Service paiement : intégration Stripe (remboursements, virements, sessions Checkout).
Docs : https://docs.stripe.com/api

Aucune fonction ne lève : le résultat porte `success` et l'erreur est journalisée.
Sans STRIPE_SECRET_KEY, les appels sont simulés (dev / tests).
"""
import logging
import uuid
from typing import Optional

import httpx

from config import settings
from core.money import to_decimal

logger = logging.getLogger(__name__)

STRIPE_BASE_URL = "https://api.stripe.com/v1"


def _headers(idempotency_key: Optional[str] = None) -> dict:
    headers = {"Authorization": f"Bearer {settings.STRIPE_SECRET_KEY}"}
    if idempotency_key:
        headers["Idempotency-Key"] = idempotency_key
    return headers


def _minor_units(amount: float) -> int:
    return int((to_decimal(amount) * 100).to_integral_value())


def _form_metadata(metadata: Optional[dict], prefix: str = "metadata") -> dict:
    return {f"{prefix}[{k}]": str(v) for k, v in (metadata or {}).items() if v is not None}


async def _post(path: str, data: dict, idempotency_key: Optional[str] = None) -> dict:
    try:
        async with httpx.AsyncClient(timeout=15.0) as client:
            resp = await client.post(
                f"{STRIPE_BASE_URL}{path}",
                data=data,
                headers=_headers(idempotency_key),
            )
            body = resp.json()
            if resp.status_code >= 400:
                message = (body.get("error") or {}).get("message") or resp.text
                logger.error(f"Stripe erreur {path} : {message}")
                return {"success": False, "error": message}
            return {"success": True, "data": body}
    except Exception as e:
        logger.error(f"Erreur réseau Stripe {path} : {e}")
        return {"success": False, "error": str(e)}


async def create_refund(payment_ref: str, amount: float, reason: str = "requested_by_customer") -> dict:
    """Rembourse tout ou partie d'un paiement (payment_intent)."""
    if not settings.STRIPE_SECRET_KEY:
        logger.warning("Stripe non configuré, remboursement simulé")
        return {"success": True, "refund_id": f"re_sim_{uuid.uuid4().hex[:12]}", "simulated": True}

    result = await _post(
        "/refunds",
        {
            "payment_intent": payment_ref,
            "amount":         _minor_units(amount),
            "reason":         reason,
        },
        idempotency_key=f"refund-{payment_ref}-{_minor_units(amount)}",
    )
    if result["success"]:
        return {"success": True, "refund_id": result["data"].get("id")}
    return result


async def create_payout(amount: float, metadata: dict, idempotency_key: Optional[str] = None) -> dict:
    """Virement sortant vers le compte bancaire (compte plateforme ou compte connecté)."""
    if not settings.STRIPE_SECRET_KEY:
        logger.warning("Stripe non configuré, virement simulé")
        return {"success": True, "payout_id": f"po_sim_{uuid.uuid4().hex[:12]}", "simulated": True}

    result = await _post(
        "/payouts",
        {
            "amount":   _minor_units(amount),
            "currency": settings.CURRENCY,
            **_form_metadata(metadata),
        },
        idempotency_key=idempotency_key,
    )
    if result["success"]:
        return {"success": True, "payout_id": result["data"].get("id")}
    return result


async def create_checkout_session(
    amount: float,
    description: str,
    metadata: dict,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> dict:
    """Crée une session Checkout ; l'issue arrive par webhook `checkout.completed`."""
    if not settings.STRIPE_SECRET_KEY:
        logger.warning("Stripe non configuré, session Checkout simulée")
        session_id = f"cs_sim_{uuid.uuid4().hex[:12]}"
        return {
            "success":    True,
            "session_id": session_id,
            "url":        f"https://checkout.example.com/{session_id}",
            "simulated":  True,
        }

    result = await _post(
        "/checkout/sessions",
        {
            "mode": "payment",
            "success_url": success_url or f"{settings.BASE_URL}/payment/success",
            "cancel_url":  cancel_url or f"{settings.BASE_URL}/payment/cancel",
            "line_items[0][quantity]": 1,
            "line_items[0][price_data][currency]": settings.CURRENCY,
            "line_items[0][price_data][unit_amount]": _minor_units(amount),
            "line_items[0][price_data][product_data][name]": description,
            **_form_metadata(metadata),
            **_form_metadata(metadata, prefix="payment_intent_data[metadata]"),
        },
    )
    if result["success"]:
        data = result["data"]
        return {"success": True, "session_id": data.get("id"), "url": data.get("url")}
    return result
