import uuid
from datetime import datetime, timezone
from enum import Enum

import httpx
import pytest
from mongomock_motor import AsyncMongoMockClient

import database
from config import settings
from core.security import create_access_token
from models.common import DeliveryAddress, GeoPin, PaymentMethod, ShopOrderStatus, UserRole
from models.order import CartItem, OrderCreate
from models.shop import Item, ItemOption, Shop, SystemSettings
from models.user import User
from services import assignment_service, order_service, settlement_service

SHOP_LOCATION = {"lat": 48.8566, "lng": 2.3522}
# ~1.5 km au nord du commerce
CUSTOMER_ADDRESS = {"text": "12 rue des Lilas", "lat": 48.8701, "lng": 2.3522}


class RecordingNotifier:
    """Notifier de test : garde chaque publication en mémoire."""

    def __init__(self):
        self.events = []

    def publish(self, channel, event_name, payload):
        self.events.append({"channel": channel, "event": getattr(event_name, "value", event_name), "payload": payload})

    def named(self, event_name):
        value = getattr(event_name, "value", event_name)
        return [e for e in self.events if e["event"] == value]

    def on(self, channel):
        return [e for e in self.events if e["channel"] == channel]


def _doc(model) -> dict:
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in model.model_dump().items()}


@pytest.fixture
def mongo(monkeypatch):
    """Base mongomock isolée par test."""
    monkeypatch.setattr(settings, "DB_NAME", f"foodrun_test_{uuid.uuid4().hex[:8]}")
    monkeypatch.setattr(settings, "MONGO_TRANSACTIONS", False)
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", None)
    monkeypatch.setattr(settings, "TWILIO_ACCOUNT_SID", None)
    monkeypatch.setattr(settings, "PUSH_ENABLED", False)
    database.use_client(AsyncMongoMockClient())
    return database.get_db()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
async def world(mongo):
    now = datetime.now(timezone.utc)
    users = {
        "customer": User(user_id="usr_customer", name="Awa", phone="+33600000001",
                         role=UserRole.CUSTOMER, created_at=now, updated_at=now),
        "other_customer": User(user_id="usr_other", name="Binta", role=UserRole.CUSTOMER,
                               created_at=now, updated_at=now),
        "merchant": User(user_id="usr_merchant", name="Moussa", role=UserRole.MERCHANT,
                         created_at=now, updated_at=now),
        "courier": User(user_id="usr_courier", name="Ibou", role=UserRole.COURIER,
                        current_location=GeoPin(lat=48.8570, lng=2.3522), bank_account="FR7630001007941234567890185",
                        created_at=now, updated_at=now),
        "rival": User(user_id="usr_rival", name="Modou", role=UserRole.COURIER,
                      created_at=now, updated_at=now),
        "admin": User(user_id="usr_admin", name="Admin", role=UserRole.ADMIN, created_at=now, updated_at=now),
    }
    shop = Shop(
        shop_id="shp_moussa", owner_id="usr_merchant", name="Chez Moussa",
        location=GeoPin(**SHOP_LOCATION), is_approved=True, bank_account="FR7630004000031234567890143",
        created_at=now,
    )
    items = [
        Item(item_id="itm_burger", shop_id="shp_moussa", name="Burger", price=10.0,
             options=[ItemOption(name="cheese", price=1.5)]),
        Item(item_id="itm_fries", shop_id="shp_moussa", name="Frites", price=4.0),
        Item(item_id="itm_platter", shop_id="shp_moussa", name="Plateau", price=100.0),
    ]
    system = SystemSettings(commission_percentage=20, base_delivery_fee=2, price_per_km=5)

    await mongo.users.insert_many([_doc(u) for u in users.values()])
    await mongo.shops.insert_one(_doc(shop))
    await mongo.items.insert_many([_doc(i) for i in items])
    await mongo.system_settings.insert_one({"key": "global", **system.model_dump()})
    return {
        "users": {k: _doc(u) for k, u in users.items()},
        "shop": _doc(shop),
    }


class Flow:
    """Raccourcis pour amener une sous-commande à une étape donnée."""

    def __init__(self, world, notifier):
        self.world = world
        self.notifier = notifier
        self.users = world["users"]

    def cart(self, *lines):
        lines = lines or (("itm_burger", 2, ["cheese"]), ("itm_fries", 1, []))
        return [
            CartItem(shop_id="shp_moussa", item_id=item_id, quantity=qty, selected_options=opts)
            for item_id, qty, opts in lines
        ]

    async def place(self, payment_method=PaymentMethod.COD, cart=None, address=None):
        body = OrderCreate(
            cart_items=cart or self.cart(),
            delivery_address=DeliveryAddress(**(address or CUSTOMER_ADDRESS)),
            payment_method=payment_method,
        )
        order = await order_service.place_order(self.users["customer"], body, self.notifier)
        return order, order["shop_orders"][0]

    async def advance(self, order, shop_order, status):
        return await order_service.update_status(
            order["order_id"], shop_order["shop_order_id"], status, self.users["merchant"], self.notifier,
        )

    async def ready(self, payment_method=PaymentMethod.COD, cart=None, address=None):
        order, shop_order = await self.place(payment_method, cart, address)
        await self.advance(order, shop_order, ShopOrderStatus.PREPARING)
        await self.advance(order, shop_order, ShopOrderStatus.OUT_FOR_DELIVERY)
        return order, shop_order

    async def claimed(self, payment_method=PaymentMethod.COD, cart=None, address=None, courier="courier"):
        order, shop_order = await self.ready(payment_method, cart, address)
        won, _ = await assignment_service.try_claim(
            order["order_id"], shop_order["shop_order_id"], self.users[courier], self.notifier,
        )
        assert won
        return order, shop_order

    async def picked_up(self, payment_method=PaymentMethod.COD, cart=None, address=None):
        order, shop_order = await self.claimed(payment_method, cart, address)
        await settlement_service.confirm_pickup(
            order["order_id"], shop_order["shop_order_id"], self.users["courier"], self.notifier,
        )
        return order, shop_order


@pytest.fixture
def flow(world, notifier):
    return Flow(world, notifier)


@pytest.fixture
def auth():
    def _headers(user: dict) -> dict:
        token = create_access_token({"sub": user["user_id"], "role": user["role"]})
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
async def api(mongo, notifier):
    from main import app

    app.state.notifier = notifier
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
