from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException

from models.common import PaymentMethod, ShopOrderStatus
from models.notification import EventName
from services import order_service, order_store, settings_service, settlement_service
from models.shop import SystemSettingsUpdate


class TestPlaceOrder:
    async def test_prices_come_from_catalog(self, flow):
        order, shop_order = await flow.place()

        assert order["order_code"].startswith("FRN-")
        assert len(order["order_code"]) == 10
        assert shop_order["subtotal"] == 27.0
        assert shop_order["items"][0]["price"] == 11.5
        assert order["subtotal"] == 27.0
        assert shop_order["status"] == ShopOrderStatus.PENDING.value

    async def test_delivery_fee_is_floored_distance_price(self, flow):
        order, _ = await flow.place()
        # 2 + 1.50 km × 5 = 9.5 → 9
        assert order["delivery_fee"] == 9.0
        assert order["total_amount"] == 36.0

    async def test_merchant_and_admins_are_notified(self, flow, notifier):
        order, _ = await flow.place()
        placed = notifier.named(EventName.ORDER_PLACED)
        assert {e["channel"] for e in placed} == {"user:usr_merchant", "admins"}
        assert placed[0]["payload"]["order_code"] == order["order_code"]

    async def test_persisted_without_mongo_ids(self, flow):
        order, shop_order = await flow.place()
        stored = await order_store.get_order(order["order_id"])
        assert stored["shop_order_ids"] == [shop_order["shop_order_id"]]
        assert "_id" not in order

    async def test_closed_system_is_unavailable(self, flow):
        await settings_service.update_system_settings(SystemSettingsUpdate(is_system_open=False))
        with pytest.raises(HTTPException) as exc:
            await flow.place()
        assert exc.value.status_code == 503

    async def test_address_outside_zone_is_refused(self, flow):
        zone = [[2.30, 48.84], [2.40, 48.84], [2.40, 48.86], [2.30, 48.86], [2.30, 48.84]]
        await settings_service.update_system_settings(SystemSettingsUpdate(delivery_zone=zone))
        with pytest.raises(HTTPException) as exc:
            await flow.place()
        assert exc.value.status_code == 400

    async def test_temporarily_closed_shop_is_refused(self, flow, mongo):
        until = datetime.now(timezone.utc) + timedelta(hours=1)
        await mongo.shops.update_one(
            {"shop_id": "shp_moussa"},
            {"$set": {"temporary_closure": {"is_closed": True, "reason": "inventaire", "closed_until": until}}},
        )
        with pytest.raises(HTTPException) as exc:
            await flow.place()
        assert exc.value.status_code == 400

    async def test_unknown_option_is_refused(self, flow):
        with pytest.raises(HTTPException) as exc:
            await flow.place(cart=flow.cart(("itm_fries", 1, ["truffe"])))
        assert exc.value.status_code == 400


class TestTransitions:
    async def test_merchant_walks_the_happy_path(self, flow, notifier):
        order, shop_order = await flow.place()
        await flow.advance(order, shop_order, ShopOrderStatus.PREPARING)
        result = await flow.advance(order, shop_order, ShopOrderStatus.OUT_FOR_DELIVERY)

        stored = await order_store.get_shop_order(shop_order["shop_order_id"])
        assert stored["status"] == ShopOrderStatus.OUT_FOR_DELIVERY.value
        assert stored["preparing_started_at"] is not None
        assert stored["ready_for_delivery_at"] is not None
        assert result["already_applied"] is False
        assert notifier.on("user:usr_customer")

    async def test_preparing_opens_the_job_to_couriers(self, flow, notifier):
        order, shop_order = await flow.place()
        result = await flow.advance(order, shop_order, ShopOrderStatus.PREPARING)

        broadcast = [e for e in notifier.on("couriers") if e["event"] == EventName.DELIVERY_ASSIGNMENT.value]
        assert len(broadcast) == 1
        assert result["assignment"]["shop_order_id"] == shop_order["shop_order_id"]

    async def test_skipping_preparation_is_refused(self, flow):
        order, shop_order = await flow.place()
        with pytest.raises(HTTPException) as exc:
            await flow.advance(order, shop_order, ShopOrderStatus.OUT_FOR_DELIVERY)
        assert exc.value.status_code == 400

    async def test_repeating_a_transition_is_a_noop(self, flow):
        order, shop_order = await flow.place()
        await flow.advance(order, shop_order, ShopOrderStatus.PREPARING)
        again = await flow.advance(order, shop_order, ShopOrderStatus.PREPARING)
        assert again["already_applied"] is True

    async def test_only_the_owner_merchant_may_advance(self, flow, world):
        order, shop_order = await flow.place()
        with pytest.raises(HTTPException) as exc:
            await order_service.update_status(
                order["order_id"], shop_order["shop_order_id"], ShopOrderStatus.PREPARING,
                world["users"]["courier"],
            )
        assert exc.value.status_code == 403

    async def test_merchant_cannot_mark_delivered(self, flow):
        order, shop_order = await flow.ready()
        with pytest.raises(HTTPException) as exc:
            await flow.advance(order, shop_order, ShopOrderStatus.DELIVERED)
        assert exc.value.status_code == 400

    async def test_stale_expected_status_loses(self, flow):
        order, shop_order = await flow.place()
        won = await order_store.update_if(shop_order["shop_order_id"], {"status": "preparing"}, {"status": "cancelled"})
        assert won is False
        stored = await order_store.get_shop_order(shop_order["shop_order_id"])
        assert stored["status"] == ShopOrderStatus.PENDING.value


class TestCancellation:
    async def test_reason_is_required(self, flow, world):
        order, shop_order = await flow.place()
        with pytest.raises(HTTPException) as exc:
            await order_service.cancel_shop_order(
                order["order_id"], shop_order["shop_order_id"], world["users"]["customer"], "  ",
            )
        assert exc.value.status_code == 400

    async def test_customer_cancels_pending_order(self, flow, world, notifier):
        order, shop_order = await flow.place()
        result = await order_service.cancel_shop_order(
            order["order_id"], shop_order["shop_order_id"], world["users"]["customer"], "Plus faim", notifier,
        )
        assert result["status"] == ShopOrderStatus.CANCELLED.value
        assert result["refund"] is None
        assert notifier.named(EventName.ORDER_CANCELLED)

    async def test_cancel_twice_is_a_noop(self, flow, world):
        order, shop_order = await flow.place()
        customer = world["users"]["customer"]
        await order_service.cancel_shop_order(order["order_id"], shop_order["shop_order_id"], customer, "Erreur")
        again = await order_service.cancel_shop_order(order["order_id"], shop_order["shop_order_id"], customer, "Erreur")
        assert again["already_applied"] is True

    async def test_merchant_cannot_cancel_once_ready(self, flow, world):
        order, shop_order = await flow.ready()
        with pytest.raises(HTTPException) as exc:
            await order_service.cancel_shop_order(
                order["order_id"], shop_order["shop_order_id"], world["users"]["merchant"], "Rupture",
            )
        assert exc.value.status_code == 403

    async def test_another_customer_cannot_cancel(self, flow, world):
        order, shop_order = await flow.place()
        with pytest.raises(HTTPException) as exc:
            await order_service.cancel_shop_order(
                order["order_id"], shop_order["shop_order_id"], world["users"]["other_customer"], "Pourquoi pas",
            )
        assert exc.value.status_code == 403

    async def test_courier_cannot_cancel_after_pickup(self, flow, world):
        order, shop_order = await flow.picked_up()
        with pytest.raises(HTTPException) as exc:
            await order_service.cancel_shop_order(
                order["order_id"], shop_order["shop_order_id"], world["users"]["courier"], "Client absent",
            )
        assert exc.value.status_code == 409
        stored = await order_store.get_shop_order(shop_order["shop_order_id"])
        assert stored["status"] == ShopOrderStatus.OUT_FOR_DELIVERY.value

    async def test_online_paid_cancellation_is_refunded(self, flow, world):
        order, shop_order = await flow.place(PaymentMethod.ONLINE_CARD)
        await order_store.update_order_if(
            order["order_id"], {}, {"payment_captured": True, "payment_ref": "pi_test_123", "payment_status": "paid"},
        )
        result = await order_service.cancel_shop_order(
            order["order_id"], shop_order["shop_order_id"], world["users"]["customer"], "Trop long",
        )
        # seule sous-commande : sous-total + frais de livraison
        assert result["refund"]["success"] is True
        assert result["refund"]["amount"] == 36.0
        stored = await order_store.get_order(order["order_id"])
        assert len(stored["refunds"]) == 1


class TestItemsUpdate:
    async def test_pending_items_can_be_changed(self, flow, world):
        order, shop_order = await flow.place()
        result = await order_service.update_items(
            order["order_id"], shop_order["shop_order_id"], world["users"]["customer"],
            flow.cart(("itm_fries", 3, [])),
        )
        assert result["shop_order"]["subtotal"] == 12.0
        assert result["total_amount"] == 21.0

    async def test_totals_write_retries_when_the_order_moved(self, flow, world, mongo, monkeypatch):
        order, shop_order = await flow.place()
        real_update = order_store.update_order_if
        calls = []

        async def raced(order_id, expected, patch, session=None):
            calls.append(dict(expected))
            if len(calls) == 1:
                # une autre écriture passe entre la lecture et l'écriture conditionnelle
                await mongo.orders.update_one({"order_id": order_id}, {"$set": {"total_amount": 99.0}})
            return await real_update(order_id, expected, patch, session=session)

        monkeypatch.setattr(order_store, "update_order_if", raced)
        result = await order_service.update_items(
            order["order_id"], shop_order["shop_order_id"], world["users"]["customer"],
            flow.cart(("itm_fries", 3, [])),
        )

        assert len(calls) == 2
        assert calls[0] == {"subtotal": 27.0, "total_amount": 36.0}
        assert calls[1]["total_amount"] == 99.0
        assert result["total_amount"] == 21.0
        stored = await order_store.get_order(order["order_id"])
        assert stored["subtotal"] == 12.0
        assert stored["total_amount"] == 21.0

    async def test_totals_write_gives_up_after_repeated_races(self, flow, world, monkeypatch):
        order, shop_order = await flow.place()

        async def always_lost(*args, **kwargs):
            return False

        monkeypatch.setattr(order_store, "update_order_if", always_lost)
        with pytest.raises(HTTPException) as exc:
            await order_service.update_items(
                order["order_id"], shop_order["shop_order_id"], world["users"]["customer"],
                flow.cart(("itm_fries", 3, [])),
            )
        assert exc.value.status_code == 409

    async def test_items_are_frozen_once_preparing(self, flow, world):
        order, shop_order = await flow.place()
        await flow.advance(order, shop_order, ShopOrderStatus.PREPARING)
        with pytest.raises(HTTPException) as exc:
            await order_service.update_items(
                order["order_id"], shop_order["shop_order_id"], world["users"]["customer"],
                flow.cart(("itm_fries", 1, [])),
            )
        assert exc.value.status_code == 409


class TestDashboards:
    async def _deliver(self, flow, world, payment_method=PaymentMethod.COD):
        order, shop_order = await flow.picked_up(payment_method)
        await settlement_service.confirm_delivery(order["order_id"], shop_order["shop_order_id"], world["users"]["courier"])
        return order, shop_order

    async def test_deliveries_of_the_day(self, flow, world):
        order, shop_order = await self._deliver(flow, world)

        today = await order_service.deliveries_for_day("usr_courier")
        assert today["total"] == 1
        delivery = today["deliveries"][0]
        assert delivery["shop_order_id"] == shop_order["shop_order_id"]
        assert delivery["order_code"] == order["order_code"]
        assert delivery["delivery_fee"] == 9.0
        assert delivery["payment_method"] == PaymentMethod.COD.value
        assert "otp" not in delivery

        yesterday = datetime.now(timezone.utc).date() - timedelta(days=1)
        assert (await order_service.deliveries_for_day("usr_courier", yesterday))["total"] == 0
        assert (await order_service.deliveries_for_day("usr_rival"))["total"] == 0

    async def test_financial_summary(self, flow, world, mongo):
        await self._deliver(flow, world, PaymentMethod.ONLINE_CARD)
        _, older = await self._deliver(flow, world, PaymentMethod.COD)
        await mongo.shop_orders.update_one(
            {"shop_order_id": older["shop_order_id"]},
            {"$set": {"delivered_at": datetime.now(timezone.utc) - timedelta(days=2)}},
        )

        summary = await order_service.courier_financial_summary("usr_courier")
        assert summary["today_income"] == 9.0
        assert summary["completed_tasks"] == 2
        assert summary["job_credit"] == -21.6

    def test_week_starts_on_monday(self):
        wednesday = datetime(2026, 10, 14, 15, 30, tzinfo=timezone.utc)
        assert order_service.week_start(wednesday) == datetime(2026, 10, 12, tzinfo=timezone.utc)
        monday = datetime(2026, 10, 12, 0, 0, tzinfo=timezone.utc)
        assert order_service.week_start(monday) == monday

    async def test_weekly_cancellations(self, flow, world, mongo):
        for reason in ("Rupture", "Fermeture"):
            order, shop_order = await flow.place()
            await order_service.cancel_shop_order(
                order["order_id"], shop_order["shop_order_id"], world["users"]["merchant"], reason,
            )
        last_week = order_service.week_start(datetime.now(timezone.utc)) - timedelta(days=3)
        await mongo.shop_orders.update_one(
            {"shop_order_id": shop_order["shop_order_id"]}, {"$set": {"cancelled_at": last_week}},
        )

        result = await order_service.weekly_cancellation_count("usr_merchant")
        assert result["count"] == 1
        assert result["max_count"] == 7
        assert (await order_service.weekly_cancellation_count("usr_someone"))["count"] == 0
