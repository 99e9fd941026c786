"""
Service règlement : crédits commerçant / livreur au retrait et à la livraison.

Deux points de règlement par sous-commande, chacun idempotent :
  - retrait (pickup)  : crédit net de commission au commerce, débit du crédit de course
                        du livreur si paiement espèces, horodatage picked_up_at ;
  - livraison         : frais de livraison crédités au livreur (paiement en ligne
                        uniquement), statut delivered, horodatage delivered_at.

L'écriture conditionnelle du statut / horodatage est faite en dernier et sert de
marqueur de validation. Avec MONGO_TRANSACTIONS, l'ensemble est une transaction ;
sans, une écriture perdue entraîne le retrait des écritures de ledger ajoutées par
cet appel, sauf si l'effet demandé est déjà acquis (appel concurrent gagnant).
"""
import logging
from datetime import datetime, timezone

from config import settings
from core.exceptions import bad_request_exception, conflict_exception, forbidden_exception, not_found_exception
from core.money import commission_rate, split_commission
from database import transaction
from models.common import ONLINE_METHODS, PaymentMethod, ShopOrderStatus, UserRole
from models.notification import EventName
from models.wallet import PayoutSource, PayoutStatus, PayoutType
from services import order_store
from services.notification_service import order_channel, safe_publish, user_channel
from services.settings_service import get_system_settings
from services.wallet_service import (
    append_courier_payout,
    append_shop_payment,
    apply_job_credit,
    remove_courier_payout,
    remove_shop_payment,
    revert_job_credit,
)

logger = logging.getLogger(__name__)


class _SettlementLost(Exception):
    """L'écriture conditionnelle finale n'a trouvé aucun document."""


def pickup_payment_key(order_id: str) -> str:
    return f"{order_id}:pickup"


def cod_debit_key(order_id: str, shop_order_id: str) -> str:
    return f"{order_id}:{shop_order_id}:cod_pickup"


def delivery_fee_key(order_id: str) -> str:
    return f"{order_id}:delivery_fee"


async def _load(order_id: str, shop_order_id: str) -> tuple[dict, dict]:
    shop_order = await order_store.get_shop_order(shop_order_id, order_id)
    if not shop_order:
        raise not_found_exception("Commande")
    order = await order_store.get_order(order_id)
    if not order:
        raise not_found_exception("Commande")
    return order, shop_order


def _check_courier(shop_order: dict, actor: dict) -> None:
    if actor.get("role") == UserRole.ADMIN.value:
        return
    if actor.get("role") != UserRole.COURIER.value or shop_order.get("courier_id") != actor.get("user_id"):
        raise forbidden_exception("Seul le livreur assigné peut confirmer cette étape")


async def current_commission_rate(session=None):
    system = await get_system_settings(session=session)
    return commission_rate(system.get("commission_percentage"))


# ── Retrait chez le commerçant ────────────────────────────────────────────────
async def confirm_pickup(order_id: str, shop_order_id: str, actor: dict, notifier=None) -> dict:
    order, shop_order = await _load(order_id, shop_order_id)
    _check_courier(shop_order, actor)

    if shop_order.get("picked_up_at"):
        return _pickup_result(shop_order, already_settled=True)
    if shop_order["status"] != ShopOrderStatus.OUT_FOR_DELIVERY.value:
        raise bad_request_exception("La commande doit être prête (out_for_delivery) pour être récupérée")
    courier_id = shop_order.get("courier_id")
    if not courier_id:
        raise bad_request_exception("Aucun livreur assigné")

    rate = await current_commission_rate()
    platform_income, net = split_commission(shop_order["subtotal"], rate)
    is_cod = order["payment_method"] == PaymentMethod.COD.value
    now = datetime.now(timezone.utc)

    charge_id = f"COD-{order_id}" if is_cod else f"ORDER-{order.get('payment_ref') or order_id}"
    payment_entry = {
        "dedup_key":     pickup_payment_key(order_id),
        "charge_id":     charge_id,
        "order_id":      order_id,
        "shop_order_id": shop_order_id,
        "amount":        net,
        "wallet_credit": True,
        "created_at":    now,
    }

    credited = debited = False
    try:
        async with transaction() as session:
            credited = await append_shop_payment(shop_order["shop_id"], payment_entry, session=session)
            if is_cod and net > 0:
                debited = await apply_job_credit(
                    courier_id, -net, cod_debit_key(order_id, shop_order_id), "cod_pickup",
                    order_id=order_id, session=session,
                )
            won = await order_store.update_if(
                shop_order_id,
                {"status": ShopOrderStatus.OUT_FOR_DELIVERY.value, "picked_up_at": None, "courier_id": courier_id},
                {"picked_up_at": now, "platform_income": platform_income, "merchant_earnings": net},
                session=session,
            )
            if not won:
                raise _SettlementLost()
    except _SettlementLost:
        fresh = await order_store.get_shop_order(shop_order_id, order_id)
        if fresh and fresh.get("picked_up_at"):
            return _pickup_result(fresh, already_settled=True)
        if not _transactional():
            await _undo_pickup(shop_order, order_id, shop_order_id, credited, debited)
        raise conflict_exception("La commande a changé entre-temps, retrait non confirmé")

    logger.info(
        f"Retrait confirmé {shop_order_id} : commerce={shop_order['shop_id']} net={net} "
        f"commission={platform_income} cod={is_cod} livreur={courier_id}"
    )
    shop_order.update({"picked_up_at": now, "platform_income": platform_income, "merchant_earnings": net})

    payload = {
        "order_id":      order_id,
        "order_code":    order.get("order_code"),
        "shop_order_id": shop_order_id,
        "status":        shop_order["status"],
        "picked_up_at":  now,
    }
    safe_publish(notifier, order_channel(order_id), EventName.PICKUP_CONFIRMED, payload)
    safe_publish(notifier, user_channel(order["customer_id"]), EventName.PICKUP_CONFIRMED, payload)
    if credited:
        safe_publish(notifier, user_channel(shop_order["owner_id"]), EventName.WALLET_CREDITED, {
            "order_id": order_id, "shop_id": shop_order["shop_id"], "amount": net,
        })
    if debited:
        safe_publish(notifier, user_channel(courier_id), EventName.JOB_CREDIT_DEBITED, {
            "order_id": order_id, "amount": net,
        })
    return _pickup_result(shop_order, already_settled=False, cod_debit=net if is_cod else 0.0)


async def _undo_pickup(shop_order: dict, order_id: str, shop_order_id: str, credited: bool, debited: bool) -> None:
    if credited:
        await remove_shop_payment(shop_order["shop_id"], pickup_payment_key(order_id))
    if debited:
        await revert_job_credit(shop_order["courier_id"], cod_debit_key(order_id, shop_order_id))
    if credited or debited:
        logger.warning(f"Retrait {shop_order_id} annulé : écritures de ledger retirées")


def _pickup_result(shop_order: dict, already_settled: bool, cod_debit: float = 0.0) -> dict:
    return {
        "order_id":          shop_order["order_id"],
        "shop_order_id":     shop_order["shop_order_id"],
        "status":            shop_order["status"],
        "picked_up_at":      shop_order.get("picked_up_at"),
        "merchant_credit":   shop_order.get("merchant_earnings"),
        "platform_income":   shop_order.get("platform_income"),
        "job_credit_debit":  cod_debit,
        "already_settled":   already_settled,
    }


# ── Livraison au client ───────────────────────────────────────────────────────
async def confirm_delivery(order_id: str, shop_order_id: str, actor: dict, notifier=None) -> dict:
    order, shop_order = await _load(order_id, shop_order_id)
    _check_courier(shop_order, actor)
    return await settle_delivery(order, shop_order, notifier)


async def settle_delivery(order: dict, shop_order: dict, notifier=None) -> dict:
    """Règlement de livraison ; appelé aussi par la vérification OTP."""
    order_id = order["order_id"]
    shop_order_id = shop_order["shop_order_id"]

    if shop_order["status"] == ShopOrderStatus.DELIVERED.value:
        return _delivery_result(shop_order, already_settled=True)
    if shop_order["status"] != ShopOrderStatus.OUT_FOR_DELIVERY.value:
        raise bad_request_exception("La commande n'est pas en cours de livraison")
    if not shop_order.get("picked_up_at"):
        raise bad_request_exception("Le retrait chez le commerçant n'a pas été confirmé")

    rate = await current_commission_rate()
    platform_income, merchant_earnings = split_commission(shop_order["subtotal"], rate)
    courier_id = shop_order.get("courier_id")
    is_online = order["payment_method"] in ONLINE_METHODS
    delivery_fee = order.get("delivery_fee") or 0.0
    now = datetime.now(timezone.utc)

    fee_entry = None
    if is_online and courier_id and delivery_fee > 0:
        fee_entry = {
            "payout_id":  f"WALLET-{order_id}-{int(now.timestamp())}",
            "dedup_key":  delivery_fee_key(order_id),
            "amount":     delivery_fee,
            "currency":   settings.CURRENCY,
            "status":     PayoutStatus.PAID.value,
            "method":     "wallet",
            "type":       PayoutType.AUTOMATIC.value,
            "source":     PayoutSource.WALLET.value,
            "order_id":   order_id,
            "gateway_payout_id": None,
            "arrival_date": now,
            "created_at": now,
        }

    fee_credited = False
    try:
        async with transaction() as session:
            if fee_entry:
                fee_credited = await append_courier_payout(courier_id, fee_entry, session=session)
            won = await order_store.update_if(
                shop_order_id,
                {"status": ShopOrderStatus.OUT_FOR_DELIVERY.value},
                {
                    "status":            ShopOrderStatus.DELIVERED.value,
                    "delivered_at":      now,
                    "platform_income":   platform_income,
                    "merchant_earnings": merchant_earnings,
                },
                session=session,
            )
            if not won:
                raise _SettlementLost()
    except _SettlementLost:
        fresh = await order_store.get_shop_order(shop_order_id, order_id)
        if fresh and fresh["status"] == ShopOrderStatus.DELIVERED.value:
            return _delivery_result(fresh, already_settled=True)
        if fee_credited and not _transactional():
            await remove_courier_payout(courier_id, delivery_fee_key(order_id))
        raise conflict_exception("La commande a changé entre-temps, livraison non confirmée")

    logger.info(
        f"Livraison confirmée {shop_order_id} : commission={platform_income} "
        f"commerce={merchant_earnings} frais_livreur={delivery_fee if fee_credited else 0}"
    )
    shop_order.update({
        "status":            ShopOrderStatus.DELIVERED.value,
        "delivered_at":      now,
        "platform_income":   platform_income,
        "merchant_earnings": merchant_earnings,
    })

    payload = {
        "order_id":      order_id,
        "order_code":    order.get("order_code"),
        "shop_order_id": shop_order_id,
        "status":        ShopOrderStatus.DELIVERED.value,
        "delivered_at":  now,
    }
    safe_publish(notifier, order_channel(order_id), EventName.ORDER_DELIVERED, payload)
    safe_publish(notifier, user_channel(order["customer_id"]), EventName.ORDER_DELIVERED, payload)
    safe_publish(notifier, user_channel(shop_order["owner_id"]), EventName.ORDER_DELIVERED, payload)
    if fee_credited:
        safe_publish(notifier, user_channel(courier_id), EventName.WALLET_CREDITED, {
            "order_id": order_id, "amount": delivery_fee,
        })
    return _delivery_result(shop_order, already_settled=False, courier_credit=delivery_fee if fee_credited else 0.0)


def _delivery_result(shop_order: dict, already_settled: bool, courier_credit: float = 0.0) -> dict:
    return {
        "order_id":          shop_order["order_id"],
        "shop_order_id":     shop_order["shop_order_id"],
        "status":            shop_order["status"],
        "delivered_at":      shop_order.get("delivered_at"),
        "platform_income":   shop_order.get("platform_income"),
        "merchant_earnings": shop_order.get("merchant_earnings"),
        "courier_credit":    courier_credit,
        "already_settled":   already_settled,
    }


async def discard_unfinished_pickup(shop_order: dict) -> None:
    """
    Retire les écritures d'un retrait jamais validé (picked_up_at absent) :
    appelé après l'annulation d'une sous-commande.
    """
    order_id = shop_order["order_id"]
    removed = await remove_shop_payment(shop_order["shop_id"], pickup_payment_key(order_id))
    if shop_order.get("courier_id"):
        removed = await revert_job_credit(
            shop_order["courier_id"], cod_debit_key(order_id, shop_order["shop_order_id"]),
        ) or removed
    if removed:
        logger.warning(f"Écritures orphelines retirées pour {shop_order['shop_order_id']}")


def _transactional() -> bool:
    return settings.MONGO_TRANSACTIONS
