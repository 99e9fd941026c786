import logging
from contextlib import asynccontextmanager
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import IndexModel, ASCENDING, DESCENDING
from config import settings

logger = logging.getLogger(__name__)

client: AsyncIOMotorClient = None
_db_instance = None
_owns_client = False


class _DbProxy:
    """
    Proxy transparent vers l'instance Motor.
    Permet aux services de faire `from database import db` AVANT connect_db().
    db.collection → délégué à _db_instance.collection au moment de l'appel.
    """
    def __getattr__(self, name):
        if _db_instance is None:
            raise RuntimeError("Database not connected. Call connect_db() first.")
        return getattr(_db_instance, name)

    def __getitem__(self, name):
        if _db_instance is None:
            raise RuntimeError("Database not connected. Call connect_db() first.")
        return _db_instance[name]


db = _DbProxy()


def get_db():
    return _db_instance


def use_client(mongo_client) -> None:
    """Branche un client déjà construit (tests : AsyncMongoMockClient)."""
    global client, _db_instance, _owns_client
    client = mongo_client
    _db_instance = mongo_client[settings.DB_NAME]
    _owns_client = False


async def connect_db(mongo_client: Optional[AsyncIOMotorClient] = None):
    global client, _db_instance, _owns_client
    if mongo_client is not None:
        use_client(mongo_client)
    elif _db_instance is None:
        client = AsyncIOMotorClient(
            settings.MONGO_URL,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=10000,
        )
        _db_instance = client[settings.DB_NAME]
        _owns_client = True
    logger.info(f"Connected to MongoDB: {settings.DB_NAME}")
    try:
        await create_indexes()
    except Exception as e:
        logger.warning(f"Could not create indexes (non-blocking): {e}")


async def close_db():
    global client, _db_instance
    # un client injecté reste à la charge de celui qui l'a fourni
    if client and _owns_client:
        client.close()
        client = None
        _db_instance = None
        logger.info("MongoDB connection closed")


@asynccontextmanager
async def transaction():
    """
    Ouvre une transaction multi-documents si MONGO_TRANSACTIONS est actif.
    Produit la session à passer à chaque opération, ou None en mode standalone
    (les services s'appuient alors sur leurs clés de déduplication et compensations).
    """
    if not settings.MONGO_TRANSACTIONS:
        yield None
        return
    async with await client.start_session() as session:
        async with session.start_transaction():
            yield session


async def create_indexes():
    collections_to_index = {
        "users": [
            IndexModel([("user_id", 1)], unique=True),
            IndexModel([("role", 1)]),
        ],
        "shops": [
            IndexModel([("shop_id", 1)], unique=True),
            IndexModel([("owner_id", 1)]),
            IndexModel([("temporary_closure.closed_until", 1)], sparse=True),
        ],
        "items": [
            IndexModel([("item_id", 1)], unique=True),
            IndexModel([("shop_id", 1)]),
            IndexModel([("unavailable_until", 1)], sparse=True),
        ],
        "orders": [
            IndexModel([("order_id", 1)], unique=True),
            IndexModel([("order_code", 1)], unique=True),
            IndexModel([("customer_id", 1)]),
            IndexModel([("payment_ref", 1)], sparse=True),
            IndexModel([("created_at", DESCENDING)]),
        ],
        "shop_orders": [
            IndexModel([("shop_order_id", 1)], unique=True),
            IndexModel([("order_id", ASCENDING), ("shop_order_id", ASCENDING)]),
            IndexModel([("shop_id", 1)]),
            IndexModel([("owner_id", 1)]),
            IndexModel([("status", 1), ("courier_id", 1)]),
        ],
        "payout_requests": [
            IndexModel([("request_id", 1)], unique=True),
            IndexModel([("payout_ref", 1)], unique=True),
            IndexModel([("requester_id", 1), ("status", 1)]),
        ],
        "notifications": [
            IndexModel([("user_id", 1)]),
            IndexModel([("created_at", 1)]),
        ],
        "webhook_events": [
            IndexModel([("event_id", 1)], unique=True),
        ],
    }

    for collection_name, index_models in collections_to_index.items():
        try:
            await _db_instance[collection_name].create_indexes(index_models)
            logger.info(f"Indexes created for collection: {collection_name}")
        except Exception as e:
            logger.error(f"Failed to create indexes for collection {collection_name}: {e}")

    logger.info("All MongoDB indexes creation attempts completed.")
