"""
Service paramètres : lecture/écriture du document system_settings.
Relu à chaque placement et à chaque règlement, jamais mis en cache.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from config import settings
from database import db
from models.shop import SystemSettings, SystemSettingsUpdate

logger = logging.getLogger(__name__)

SETTINGS_KEY = "global"


def _defaults() -> dict:
    return SystemSettings(
        commission_percentage=settings.DEFAULT_COMMISSION_PERCENTAGE,
        base_delivery_fee=settings.DEFAULT_BASE_DELIVERY_FEE,
        price_per_km=settings.DEFAULT_PRICE_PER_KM,
    ).model_dump()


async def get_system_settings(session=None) -> dict:
    doc = await db.system_settings.find_one({"key": SETTINGS_KEY}, {"_id": 0, "key": 0}, session=session)
    merged = _defaults()
    if doc:
        merged.update({k: v for k, v in doc.items() if v is not None})
    return merged


async def update_system_settings(body: SystemSettingsUpdate) -> dict:
    patch = body.model_dump(exclude_none=True)
    if patch:
        patch["updated_at"] = datetime.now(timezone.utc)
        await db.system_settings.update_one(
            {"key": SETTINGS_KEY},
            {"$set": patch},
            upsert=True,
        )
        logger.info(f"Paramètres système mis à jour : {sorted(patch)}")
    return await get_system_settings()


def resolve_pickup_location(shop: dict, system_settings: dict) -> Optional[dict]:
    """
    Point de retrait d'un commerce : d'abord l'emplacement de sa cafétéria/zone
    dans la table cafeteria_settings, sinon les coordonnées du commerce.
    """
    cafeteria = shop.get("cafeteria")
    if cafeteria:
        for entry in system_settings.get("cafeteria_settings") or []:
            loc = entry.get("location") or {}
            if entry.get("name") == cafeteria and loc.get("lat") is not None and loc.get("lng") is not None:
                return {"lat": loc["lat"], "lng": loc["lng"], "address": entry.get("address")}
    loc = shop.get("location") or {}
    if loc.get("lat") is not None and loc.get("lng") is not None:
        return {"lat": loc["lat"], "lng": loc["lng"], "address": shop.get("address")}
    return None
