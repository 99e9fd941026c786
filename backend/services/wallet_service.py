"""
Service wallet : ledgers embarqués (commerce et livreur), soldes calculés à la lecture,
demandes de retrait et leur résolution.

Les ledgers sont append-only. Chaque écriture porte une `dedup_key` et l'insertion
est un « insert si absent » atomique au niveau du document propriétaire : rejouer
un règlement ne crée jamais de doublon.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from config import settings
from core.exceptions import bad_gateway_exception, bad_request_exception, conflict_exception, not_found_exception
from core.money import available_balance, money_sum, parse_amount, round2
from database import db
from models.notification import EventName
from models.wallet import (
    LEDGER_STATUS_FOR_REQUEST,
    PENDING_PAYOUT_STATUSES,
    PayoutRequestStatus,
    PayoutSource,
    PayoutStatus,
    PayoutType,
    RequesterType,
)
from services.notification_service import ADMINS_CHANNEL, safe_publish, user_channel
from services.payment_service import create_payout, create_checkout_session

logger = logging.getLogger(__name__)

_OWNER_KEYS = {
    RequesterType.SHOP:    ("shops", "shop_id"),
    RequesterType.COURIER: ("users", "user_id"),
}


def _payout_id() -> str:
    return f"pay_{uuid.uuid4().hex[:12]}"


def _request_id() -> str:
    return f"preq_{uuid.uuid4().hex[:12]}"


def _entry_id() -> str:
    return f"jce_{uuid.uuid4().hex[:12]}"


# ── Ledger commerce : payments ────────────────────────────────────────────────
async def append_shop_payment(shop_id: str, entry: dict, session=None) -> bool:
    """Ajoute l'écriture si aucune ne porte déjà sa dedup_key. True si ajoutée."""
    result = await db.shops.update_one(
        {"shop_id": shop_id, "payments.dedup_key": {"$ne": entry["dedup_key"]}},
        {"$push": {"payments": entry}},
        session=session,
    )
    return result.modified_count == 1


async def remove_shop_payment(shop_id: str, dedup_key: str, session=None) -> bool:
    result = await db.shops.update_one(
        {"shop_id": shop_id, "payments.dedup_key": dedup_key},
        {"$pull": {"payments": {"dedup_key": dedup_key}}},
        session=session,
    )
    return result.modified_count == 1


# ── Ledger livreur : payouts + crédit de course ───────────────────────────────
async def append_courier_payout(user_id: str, entry: dict, session=None) -> bool:
    result = await db.users.update_one(
        {"user_id": user_id, "payouts.dedup_key": {"$ne": entry["dedup_key"]}},
        {"$push": {"payouts": entry}},
        session=session,
    )
    return result.modified_count == 1


async def remove_courier_payout(user_id: str, dedup_key: str, session=None) -> bool:
    result = await db.users.update_one(
        {"user_id": user_id, "payouts.dedup_key": dedup_key},
        {"$pull": {"payouts": {"dedup_key": dedup_key}}},
        session=session,
    )
    return result.modified_count == 1


async def apply_job_credit(
    user_id: str,
    amount: float,
    dedup_key: str,
    kind: str,
    order_id: Optional[str] = None,
    session=None,
) -> bool:
    """
    Mouvement de crédit de course (signé) : l'écriture du ledger et le $inc du solde
    sont faits dans la même mise à jour, donc ensemble ou pas du tout.
    """
    entry = {
        "entry_id":   _entry_id(),
        "dedup_key":  dedup_key,
        "amount":     round2(amount),
        "kind":       kind,
        "order_id":   order_id,
        "created_at": datetime.now(timezone.utc),
    }
    result = await db.users.update_one(
        {"user_id": user_id, "job_credit_ledger.dedup_key": {"$ne": dedup_key}},
        {"$push": {"job_credit_ledger": entry}, "$inc": {"job_credit": entry["amount"]}},
        session=session,
    )
    return result.modified_count == 1


async def revert_job_credit(user_id: str, dedup_key: str, session=None) -> bool:
    """Annule un mouvement s'il est présent (compensation)."""
    user = await db.users.find_one(
        {"user_id": user_id, "job_credit_ledger.dedup_key": dedup_key},
        {"_id": 0, "job_credit_ledger": 1},
        session=session,
    )
    if not user:
        return False
    entry = next(e for e in user["job_credit_ledger"] if e.get("dedup_key") == dedup_key)
    result = await db.users.update_one(
        {"user_id": user_id, "job_credit_ledger.dedup_key": dedup_key},
        {"$pull": {"job_credit_ledger": {"dedup_key": dedup_key}}, "$inc": {"job_credit": -entry["amount"]}},
        session=session,
    )
    return result.modified_count == 1


# ── Soldes ────────────────────────────────────────────────────────────────────
def _is_courier_withdrawal(p: dict) -> bool:
    return p.get("type") == PayoutType.MANUAL.value and p.get("source") == PayoutSource.WALLET.value


def shop_balance(shop: dict) -> dict:
    payouts = shop.get("payouts") or []
    earnings = money_sum(p.get("amount") for p in shop.get("payments") or [])
    completed = money_sum(p.get("amount") for p in payouts if p.get("status") == PayoutStatus.PAID.value)
    pending = money_sum(p.get("amount") for p in payouts if p.get("status") in PENDING_PAYOUT_STATUSES)
    return {
        "total_earnings":    earnings,
        "completed_payouts": completed,
        "pending_payouts":   pending,
        "available":         available_balance(earnings, completed, pending),
    }


def courier_balance(user: dict) -> dict:
    payouts = user.get("payouts") or []
    earnings = money_sum(
        p.get("amount") for p in payouts
        if p.get("type") == PayoutType.AUTOMATIC.value and p.get("source") == PayoutSource.WALLET.value
    )
    withdrawals = [p for p in payouts if _is_courier_withdrawal(p)]
    completed = money_sum(p.get("amount") for p in withdrawals if p.get("status") == PayoutStatus.PAID.value)
    pending = money_sum(p.get("amount") for p in withdrawals if p.get("status") in PENDING_PAYOUT_STATUSES)
    return {
        "total_earnings":    earnings,
        "completed_payouts": completed,
        "pending_payouts":   pending,
        "available":         available_balance(earnings, completed, pending),
        "job_credit":        round2(user.get("job_credit", 0.0)),
    }


async def get_shop_wallet(shop_id: str) -> dict:
    shop = await db.shops.find_one({"shop_id": shop_id}, {"_id": 0})
    if not shop:
        raise not_found_exception("Commerce")
    return {
        "shop_id":  shop_id,
        **shop_balance(shop),
        "payments": shop.get("payments") or [],
        "payouts":  shop.get("payouts") or [],
        "currency": settings.CURRENCY,
    }


async def get_courier_wallet(user_id: str) -> dict:
    user = await db.users.find_one({"user_id": user_id}, {"_id": 0})
    if not user:
        raise not_found_exception("Livreur")
    return {
        "user_id":           user_id,
        **courier_balance(user),
        "payouts":           user.get("payouts") or [],
        "job_credit_ledger": user.get("job_credit_ledger") or [],
        "currency":          settings.CURRENCY,
    }


# ── Demande de retrait ────────────────────────────────────────────────────────
async def request_withdrawal(
    requester_type: RequesterType,
    owner_id: str,
    user_id: str,
    amount: float,
    notifier=None,
) -> dict:
    """
    Valide le montant contre le solde disponible, refuse s'il existe déjà une demande
    en attente, puis écrit l'entrée `pending` du ledger et la PayoutRequest.
    Le marqueur `pending_payout_ref` du propriétaire, pris par écriture conditionnelle,
    sérialise les demandes concurrentes.
    """
    value = parse_amount(amount)
    if value is None:
        raise bad_request_exception("Montant invalide")

    collection_name, key = _OWNER_KEYS[requester_type]
    collection = db[collection_name]
    owner = await collection.find_one({key: owner_id}, {"_id": 0})
    if not owner:
        raise not_found_exception("Compte")
    if not owner.get("bank_account"):
        raise bad_request_exception("Aucune coordonnée bancaire enregistrée")

    existing = await db.payout_requests.find_one(
        {"requester_type": requester_type.value, "requester_id": owner_id, "status": PayoutRequestStatus.PENDING.value},
        {"_id": 0, "request_id": 1},
    )
    if existing:
        raise conflict_exception("Une demande de retrait est déjà en attente")

    balance = shop_balance(owner) if requester_type == RequesterType.SHOP else courier_balance(owner)
    if value > balance["available"]:
        raise bad_request_exception("Solde insuffisant")

    payout_ref = _payout_id()
    claimed = await collection.update_one(
        {key: owner_id, "pending_payout_ref": None},
        {"$set": {"pending_payout_ref": payout_ref}},
    )
    if claimed.matched_count == 0:
        raise conflict_exception("Une demande de retrait est déjà en attente")

    try:
        # Relecture sous marqueur : le solde ne peut plus bouger côté retraits
        owner = await collection.find_one({key: owner_id}, {"_id": 0})
        balance = shop_balance(owner) if requester_type == RequesterType.SHOP else courier_balance(owner)
        if value > balance["available"]:
            raise bad_request_exception("Solde insuffisant")

        now = datetime.now(timezone.utc)
        entry = {
            "payout_id":  payout_ref,
            "dedup_key":  f"withdrawal:{payout_ref}",
            "amount":     value,
            "currency":   settings.CURRENCY,
            "status":     PayoutStatus.PENDING.value,
            "method":     "bank_transfer",
            "type":       PayoutType.MANUAL.value,
            "source":     PayoutSource.WALLET.value,
            "order_id":   None,
            "gateway_payout_id": None,
            "arrival_date": None,
            "created_at": now,
        }
        await collection.update_one({key: owner_id}, {"$push": {"payouts": entry}})

        request = {
            "request_id":     _request_id(),
            "payout_ref":     payout_ref,
            "requester_type": requester_type.value,
            "requester_id":   owner_id,
            "user_id":        user_id,
            "amount":         value,
            "status":         PayoutRequestStatus.PENDING.value,
            "gateway_payout_id": None,
            "created_at":     now,
            "updated_at":     now,
        }
        await db.payout_requests.insert_one(dict(request))
    except Exception:
        await collection.update_one({key: owner_id}, {"$pull": {"payouts": {"payout_id": payout_ref}}})
        await collection.update_one(
            {key: owner_id, "pending_payout_ref": payout_ref},
            {"$set": {"pending_payout_ref": None}},
        )
        raise

    logger.info(f"Demande de retrait {request['request_id']} : {requester_type.value}={owner_id} montant={value}")
    safe_publish(notifier, ADMINS_CHANNEL, EventName.PAYOUT_REQUESTED, {
        "request_id":     request["request_id"],
        "requester_type": requester_type.value,
        "requester_id":   owner_id,
        "amount":         value,
    })
    return {
        "request_id": request["request_id"],
        "payout_ref": payout_ref,
        "status":     PayoutRequestStatus.PENDING.value,
        "amount":     value,
        "available":  round2(balance["available"] - value),
    }


# ── Résolution (admin) ────────────────────────────────────────────────────────
_NEXT_REQUEST_STATUSES = {
    PayoutRequestStatus.PENDING:  {PayoutRequestStatus.APPROVED, PayoutRequestStatus.REJECTED, PayoutRequestStatus.PAID},
    PayoutRequestStatus.APPROVED: {PayoutRequestStatus.PAID, PayoutRequestStatus.REJECTED},
    PayoutRequestStatus.REJECTED: set(),
    PayoutRequestStatus.PAID:     set(),
    PayoutRequestStatus.FAILED:   set(),
}

# Demandes encore susceptibles de recevoir un événement de virement
_LIVE_REQUEST_STATUSES = [
    PayoutRequestStatus.PENDING.value,
    PayoutRequestStatus.APPROVED.value,
    PayoutRequestStatus.PAID.value,
]


def _parse_resolution(status: str) -> PayoutRequestStatus:
    value = (status or "").strip().lower()
    if value == "completed":
        value = PayoutRequestStatus.PAID.value
    try:
        target = PayoutRequestStatus(value)
    except ValueError:
        raise bad_request_exception(f"Statut de retrait invalide : {status}")
    if target == PayoutRequestStatus.PENDING:
        raise bad_request_exception("Une demande ne peut pas revenir en attente")
    if target == PayoutRequestStatus.FAILED:
        raise bad_request_exception("L'échec d'un virement est signalé par la passerelle")
    return target


async def _sync_ledger_entry(request: dict, ledger_status: PayoutStatus) -> None:
    """Aligne l'écriture embarquée sur la demande (rejouable : clé = payout_ref)."""
    collection_name, key = _OWNER_KEYS[RequesterType(request["requester_type"])]
    patch = {"payouts.$.status": ledger_status.value}
    if request.get("gateway_payout_id"):
        patch["payouts.$.gateway_payout_id"] = request["gateway_payout_id"]
    await db[collection_name].update_one(
        {key: request["requester_id"], "payouts.payout_id": request["payout_ref"]},
        {"$set": patch},
    )
    if request["status"] != PayoutRequestStatus.PENDING.value:
        await db[collection_name].update_one(
            {key: request["requester_id"], "pending_payout_ref": request["payout_ref"]},
            {"$set": {"pending_payout_ref": None}},
        )


async def _defer_payout(request: dict, current: PayoutRequestStatus, admin_id: str, error: Optional[str]) -> None:
    """Virement non émis : la demande reste approuvée, montant toujours réservé."""
    patch = {
        "status":        PayoutRequestStatus.APPROVED.value,
        "resolved_by":   admin_id,
        "gateway_error": error,
        "updated_at":    datetime.now(timezone.utc),
    }
    updated = await db.payout_requests.update_one(
        {"request_id": request["request_id"], "status": current.value},
        {"$set": patch, "$inc": {"payout_attempts": 1}},
    )
    if updated.matched_count == 0:
        raise conflict_exception("La demande a été modifiée entre-temps")
    request.update(patch)
    request["payout_attempts"] = (request.get("payout_attempts") or 0) + 1
    await _sync_ledger_entry(request, PayoutStatus.IN_TRANSIT)
    logger.error(f"Virement {request['payout_ref']} non émis, demande laissée approuvée : {error}")


async def resolve_payout_request(request_id: str, status: str, admin_id: str, notifier=None) -> dict:
    target = _parse_resolution(status)
    request = await db.payout_requests.find_one({"request_id": request_id}, {"_id": 0})
    if not request:
        raise not_found_exception("Demande de retrait")

    current = PayoutRequestStatus(request["status"])
    if current == target:
        # Rejeu : on ré-aligne seulement le ledger embarqué
        await _sync_ledger_entry(request, LEDGER_STATUS_FOR_REQUEST[target])
        return request
    if target not in _NEXT_REQUEST_STATUSES[current]:
        raise conflict_exception(f"Demande déjà {current.value}")

    now = datetime.now(timezone.utc)
    patch = {"status": target.value, "resolved_by": admin_id, "updated_at": now}
    if target == PayoutRequestStatus.PAID and not request.get("gateway_payout_id"):
        attempt = request.get("payout_attempts") or 0
        result = await create_payout(
            request["amount"],
            metadata={
                "payout_ref":     request["payout_ref"],
                "request_id":     request_id,
                "requester_type": request["requester_type"],
                "requester_id":   request["requester_id"],
                "user_id":        request["user_id"],
            },
            idempotency_key=f"payout-{request['payout_ref']}-{attempt}",
        )
        if not result.get("success"):
            await _defer_payout(request, current, admin_id, result.get("error"))
            raise bad_gateway_exception("Virement refusé par la passerelle, la demande reste approuvée")
        patch["gateway_payout_id"] = result["payout_id"]
        patch["gateway_error"] = None

    updated = await db.payout_requests.update_one(
        {"request_id": request_id, "status": current.value},
        {"$set": patch},
    )
    if updated.matched_count == 0:
        raise conflict_exception("La demande a été modifiée entre-temps")

    request.update(patch)
    await _sync_ledger_entry(request, LEDGER_STATUS_FOR_REQUEST[target])
    logger.info(f"Demande {request_id} : {current.value} → {target.value} par {admin_id}")

    safe_publish(notifier, user_channel(request["user_id"]), EventName.PAYOUT_UPDATED, {
        "request_id": request_id,
        "payout_ref": request["payout_ref"],
        "status":     target.value,
        "amount":     request["amount"],
    })
    return request


async def list_payout_requests(status: Optional[str] = None, skip: int = 0, limit: int = 50) -> dict:
    query = {"status": status} if status else {}
    cursor = db.payout_requests.find(query, {"_id": 0}).sort("created_at", -1).skip(skip).limit(limit)
    total = await db.payout_requests.count_documents(query)
    return {"requests": await cursor.to_list(length=limit), "total": total}


# ── Événements passerelle : virements ─────────────────────────────────────────
async def apply_gateway_payout_status(
    ledger_status: PayoutStatus,
    gateway_payout_id: Optional[str],
    payout_ref: Optional[str] = None,
    notifier=None,
) -> bool:
    """payout.paid / payout.failed : met à jour la demande et l'écriture embarquée."""
    if not payout_ref and not gateway_payout_id:
        return False
    if payout_ref:
        query = {"payout_ref": payout_ref}
    else:
        query = {"$or": [{"gateway_payout_id": gateway_payout_id}, {"failed_payout_ids": gateway_payout_id}]}
    request = await db.payout_requests.find_one(query, {"_id": 0})
    if not request:
        # virement automatique d'un commerce, hors demande
        if not gateway_payout_id:
            return False
        result = await db.shops.update_one(
            {"payouts.gateway_payout_id": gateway_payout_id},
            {"$set": {"payouts.$.status": ledger_status.value}},
        )
        return result.matched_count == 1

    if request["status"] not in _LIVE_REQUEST_STATUSES:
        # déjà close (rejetée ou en échec) : seul un rejeu réaligne le ledger
        if ledger_status == LEDGER_STATUS_FOR_REQUEST[PayoutRequestStatus(request["status"])]:
            await _sync_ledger_entry(request, ledger_status)
        else:
            logger.warning(f"Événement {ledger_status.value} ignoré, demande {request['request_id']} {request['status']}")
        return False

    patch = {"gateway_status": ledger_status.value, "updated_at": datetime.now(timezone.utc)}
    update = {"$set": patch}
    if ledger_status == PayoutStatus.FAILED:
        # le virement échoué est archivé ; une nouvelle demande émettra un nouveau virement
        patch["status"] = PayoutRequestStatus.FAILED.value
        patch["gateway_payout_id"] = None
        failed_id = gateway_payout_id or request.get("gateway_payout_id")
        if failed_id:
            update["$addToSet"] = {"failed_payout_ids": failed_id}
    else:
        if gateway_payout_id:
            patch["gateway_payout_id"] = gateway_payout_id
        if ledger_status == PayoutStatus.PAID:
            patch["status"] = PayoutRequestStatus.PAID.value

    updated = await db.payout_requests.update_one(
        {"request_id": request["request_id"], "status": request["status"]},
        update,
    )
    if updated.matched_count == 0:
        logger.warning(f"Demande {request['request_id']} modifiée pendant l'événement {ledger_status.value}")
        return False
    request.update(patch)
    if request["status"] == PayoutRequestStatus.PAID.value and ledger_status == PayoutStatus.IN_TRANSIT:
        # payout.created arrivé après le paiement : pas de retour en arrière
        ledger_status = PayoutStatus.PAID
    await _sync_ledger_entry(request, ledger_status)

    safe_publish(notifier, user_channel(request["user_id"]), EventName.PAYOUT_UPDATED, {
        "request_id": request["request_id"],
        "payout_ref": request["payout_ref"],
        "status":     ledger_status.value,
        "amount":     request["amount"],
    })
    return True


async def record_gateway_shop_payout(
    shop_id: str,
    gateway_payout_id: str,
    amount: float,
    arrival_date: Optional[datetime] = None,
) -> bool:
    """payout.created : virement déclenché côté passerelle, ajouté une seule fois."""
    known = await db.payout_requests.find_one({"gateway_payout_id": gateway_payout_id}, {"_id": 1})
    if known:
        return False
    entry = {
        "payout_id":  gateway_payout_id,
        "dedup_key":  f"gateway:{gateway_payout_id}",
        "amount":     round2(amount),
        "currency":   settings.CURRENCY,
        "status":     PayoutStatus.IN_TRANSIT.value,
        "method":     "bank_transfer",
        "type":       PayoutType.AUTOMATIC.value,
        "source":     PayoutSource.WALLET.value,
        "order_id":   None,
        "gateway_payout_id": gateway_payout_id,
        "arrival_date": arrival_date,
        "created_at": datetime.now(timezone.utc),
    }
    result = await db.shops.update_one(
        {"shop_id": shop_id, "payouts.dedup_key": {"$ne": entry["dedup_key"]}},
        {"$push": {"payouts": entry}},
    )
    return result.modified_count == 1


# ── Recharge du crédit de course ──────────────────────────────────────────────
async def start_job_credit_topup(user_id: str, amount: float) -> dict:
    value = parse_amount(amount)
    if value is None:
        raise bad_request_exception("Montant invalide")
    result = await create_checkout_session(
        value,
        description="Recharge crédit de course",
        metadata={"type": "credit_topup", "user_id": user_id, "amount": value},
    )
    if not result.get("success"):
        raise bad_request_exception("Paiement indisponible, réessayez plus tard")
    return {"session_id": result["session_id"], "url": result["url"], "amount": value}
