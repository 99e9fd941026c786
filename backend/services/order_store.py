"""
Store des commandes : documents `orders` (racine) et `shop_orders` (une sous-commande
par commerce, indexée par order_id + shop_order_id).

Toute écriture de statut ou d'horodatage passe par `update_if` : une mise à jour
conditionnelle sur l'état attendu. Si zéro document correspond, l'écriture est perdue
et l'appelant décide (no-op idempotent, conflit, ou « déjà prise »).
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from pymongo import ReturnDocument

from database import db

logger = logging.getLogger(__name__)


def new_order_id() -> str:
    return f"ord_{uuid.uuid4().hex[:12]}"


def new_shop_order_id() -> str:
    return f"sho_{uuid.uuid4().hex[:12]}"


# ── Lecture ───────────────────────────────────────────────────────────────────
async def get_order(order_id: str, session=None) -> Optional[dict]:
    return await db.orders.find_one({"order_id": order_id}, {"_id": 0}, session=session)


async def get_shop_order(shop_order_id: str, order_id: Optional[str] = None, session=None) -> Optional[dict]:
    query = {"shop_order_id": shop_order_id}
    if order_id:
        query["order_id"] = order_id
    return await db.shop_orders.find_one(query, {"_id": 0}, session=session)


async def list_shop_orders(query: dict, limit: int = 200, sort_field: str = "created_at") -> list[dict]:
    cursor = db.shop_orders.find(query, {"_id": 0}).sort(sort_field, -1).limit(limit)
    return await cursor.to_list(length=limit)


async def shop_orders_of(order_id: str, session=None) -> list[dict]:
    cursor = db.shop_orders.find({"order_id": order_id}, {"_id": 0}, session=session)
    return await cursor.to_list(length=50)


async def order_code_exists(code: str) -> bool:
    return await db.orders.find_one({"order_code": code}, {"_id": 1}) is not None


# ── Écriture ──────────────────────────────────────────────────────────────────
async def insert_order(order: dict, shop_orders: list[dict]) -> None:
    await db.orders.insert_one(dict(order))
    if shop_orders:
        await db.shop_orders.insert_many([dict(s) for s in shop_orders])


async def update_if(
    shop_order_id: str,
    expected: dict,
    patch: dict,
    unset: Optional[list[str]] = None,
    session=None,
) -> bool:
    """
    Applique `patch` à la sous-commande SI elle satisfait encore `expected`
    (prédicat Mongo : {"status": "pending"}, {"courier_id": None}, ...).
    Retourne True si l'écriture a eu lieu.
    """
    update: dict = {"$set": {**patch, "updated_at": datetime.now(timezone.utc)}}
    if unset:
        update["$unset"] = {field: "" for field in unset}
    result = await db.shop_orders.update_one(
        {"shop_order_id": shop_order_id, **expected},
        update,
        session=session,
    )
    return result.matched_count == 1


async def find_and_update_if(shop_order_id: str, expected: dict, patch: dict, session=None) -> Optional[dict]:
    """Comme update_if, mais retourne le document APRÈS écriture (None si perdu)."""
    return await db.shop_orders.find_one_and_update(
        {"shop_order_id": shop_order_id, **expected},
        {"$set": {**patch, "updated_at": datetime.now(timezone.utc)}},
        projection={"_id": 0},
        return_document=ReturnDocument.AFTER,
        session=session,
    )


async def update_order_if(order_id: str, expected: dict, patch: dict, session=None) -> bool:
    result = await db.orders.update_one(
        {"order_id": order_id, **expected},
        {"$set": {**patch, "updated_at": datetime.now(timezone.utc)}},
        session=session,
    )
    return result.matched_count == 1


async def count_shop_orders(query: dict) -> int:
    return await db.shop_orders.count_documents(query)


async def orders_by_ids(order_ids: list[str]) -> dict[str, dict]:
    cursor = db.orders.find({"order_id": {"$in": order_ids}}, {"_id": 0})
    return {o["order_id"]: o for o in await cursor.to_list(length=len(order_ids) or 1)}
