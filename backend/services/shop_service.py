"""
Service commerces : contrôles d'ouverture à la commande (validation, fermeture
temporaire, horaires) et balayage de réouverture automatique.
"""
import logging
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from core.exceptions import bad_request_exception, not_found_exception
from database import db

logger = logging.getLogger(__name__)

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _minutes(hhmm: str) -> int:
    hours, _, minutes = hhmm.partition(":")
    return int(hours) * 60 + int(minutes or 0)


def is_shop_open(shop: dict, now: datetime) -> bool:
    """Horaires hebdomadaires ; un créneau dont close < open déborde sur le lendemain."""
    hours = shop.get("opening_hours")
    if not hours:
        return True
    try:
        local = now.astimezone(ZoneInfo(shop.get("timezone") or "UTC"))
    except Exception:
        local = now
    current = local.hour * 60 + local.minute
    today = WEEKDAYS[local.weekday()]
    yesterday = WEEKDAYS[(local.weekday() - 1) % 7]

    for slot in hours.get(today) or []:
        start, end = _minutes(slot["open"]), _minutes(slot["close"])
        if start <= end and start <= current < end:
            return True
        if start > end and current >= start:
            return True
    for slot in hours.get(yesterday) or []:
        start, end = _minutes(slot["open"]), _minutes(slot["close"])
        if start > end and current < end:
            return True
    return False


def check_shop_orderable(shop: Optional[dict], now: datetime) -> None:
    if not shop:
        raise not_found_exception("Commerce")
    name = shop.get("name", "Ce commerce")
    if not shop.get("is_approved"):
        raise bad_request_exception(f"{name} n'accepte pas encore de commandes")
    closure = shop.get("temporary_closure") or {}
    if closure.get("is_closed"):
        until = _aware(closure.get("closed_until"))
        if until is None or until > now:
            raise bad_request_exception(f"{name} est temporairement fermé")
    if not is_shop_open(shop, now):
        raise bad_request_exception(f"{name} est fermé à cette heure")


async def reopen_elapsed_closures(now: Optional[datetime] = None) -> dict:
    """Rouvre commerces et articles dont la fermeture temporaire est échue."""
    now = now or datetime.now(timezone.utc)
    shops = await db.shops.update_many(
        {"temporary_closure.is_closed": True, "temporary_closure.closed_until": {"$ne": None, "$lte": now}},
        {"$set": {
            "temporary_closure": {"is_closed": False, "reason": None, "closed_until": None},
            "updated_at": now,
        }},
    )
    items = await db.items.update_many(
        {"is_available": False, "unavailable_until": {"$ne": None, "$lte": now}},
        {"$set": {"is_available": True, "unavailable_until": None, "updated_at": now}},
    )
    if shops.modified_count or items.modified_count:
        logger.info(
            f"Réouverture automatique : {shops.modified_count} commerce(s), {items.modified_count} article(s)"
        )
    return {"shops_reopened": shops.modified_count, "items_reopened": items.modified_count}
