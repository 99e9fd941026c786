ORDER_BODY = {
    "cart_items": [
        {"shop_id": "shp_moussa", "item_id": "itm_burger", "quantity": 2, "selected_options": ["cheese"]},
        {"shop_id": "shp_moussa", "item_id": "itm_fries", "quantity": 1},
    ],
    "delivery_address": {"text": "12 rue des Lilas", "lat": 48.8701, "lng": 2.3522},
    "payment_method": "cod",
}


async def _place(api, auth, world, body=None):
    response = await api.post("/api/orders", json=body or ORDER_BODY, headers=auth(world["users"]["customer"]))
    assert response.status_code == 200, response.text
    order = response.json()
    return order, order["shop_orders"][0]


class TestHealth:
    async def test_health(self, api):
        response = await api.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "app": "foodrun", "version": "1.0.0"}


class TestAuth:
    async def test_missing_token_is_rejected(self, api, world):
        response = await api.get("/api/orders")
        assert response.status_code == 401

    async def test_bad_token_is_rejected(self, api, world):
        response = await api.get("/api/orders", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    async def test_courier_cannot_place_orders(self, api, auth, world):
        response = await api.post("/api/orders", json=ORDER_BODY, headers=auth(world["users"]["courier"]))
        assert response.status_code == 403

    async def test_customer_cannot_reach_admin(self, api, auth, world):
        response = await api.get("/api/admin/dashboard", headers=auth(world["users"]["customer"]))
        assert response.status_code == 403


class TestOrderRoutes:
    async def test_place_and_read_back(self, api, auth, world):
        order, _ = await _place(api, auth, world)
        assert order["total_amount"] == 36.0

        listed = await api.get("/api/orders", headers=auth(world["users"]["customer"]))
        assert [o["order_id"] for o in listed.json()["orders"]] == [order["order_id"]]

        detail = await api.get(f"/api/orders/{order['order_id']}", headers=auth(world["users"]["customer"]))
        assert detail.status_code == 200
        assert detail.json()["order_code"] == order["order_code"]

    async def test_other_customer_cannot_read(self, api, auth, world):
        order, _ = await _place(api, auth, world)
        response = await api.get(f"/api/orders/{order['order_id']}", headers=auth(world["users"]["other_customer"]))
        assert response.status_code == 403

    async def test_invalid_quantity_is_unprocessable(self, api, auth, world):
        body = {**ORDER_BODY, "cart_items": [{"shop_id": "shp_moussa", "item_id": "itm_fries", "quantity": 0}]}
        response = await api.post("/api/orders", json=body, headers=auth(world["users"]["customer"]))
        assert response.status_code == 422

    async def test_cancel_route(self, api, auth, world):
        order, shop_order = await _place(api, auth, world)
        response = await api.post(
            f"/api/orders/{order['order_id']}/shops/{shop_order['shop_order_id']}/cancel",
            json={"reason": "Erreur de panier"},
            headers=auth(world["users"]["customer"]),
        )
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"


class TestDeliveryFlow:
    async def test_full_lifecycle_over_http(self, api, auth, world, mongo, notifier):
        users = world["users"]
        order, shop_order = await _place(api, auth, world)
        path = f"{order['order_id']}/{shop_order['shop_order_id']}"
        status_url = f"/api/orders/{order['order_id']}/shops/{shop_order['shop_order_id']}/status"

        for new_status in ("preparing", "out_for_delivery"):
            response = await api.put(status_url, json={"new_status": new_status}, headers=auth(users["merchant"]))
            assert response.status_code == 200, response.text

        feed = await api.get("/api/deliveries/available", headers=auth(users["courier"]))
        assert feed.json()["total"] == 1
        assert "otp" not in feed.json()["assignments"][0]

        accepted = await api.post(f"/api/deliveries/{path}/accept", headers=auth(users["courier"]))
        assert accepted.status_code == 200
        assert accepted.json()["courier_id"] == "usr_courier"

        lost = await api.post(f"/api/deliveries/{path}/accept", headers=auth(users["rival"]))
        assert lost.status_code == 404
        assert lost.json()["detail"] == "Course déjà prise"

        mine = await api.get("/api/deliveries/mine", headers=auth(users["courier"]))
        assert [j["shop_order_id"] for j in mine.json()["assignments"]] == [shop_order["shop_order_id"]]

        picked = await api.post(f"/api/deliveries/{path}/pickup", headers=auth(users["courier"]))
        assert picked.status_code == 200
        assert picked.json()["merchant_credit"] == 21.6

        delivered = await api.post(f"/api/deliveries/{path}/deliver", headers=auth(users["courier"]))
        assert delivered.status_code == 200
        assert delivered.json()["status"] == "delivered"

        wallet = await api.get("/api/wallets/shops/shp_moussa", headers=auth(users["merchant"]))
        assert wallet.json()["available"] == 21.6
        courier_wallet = await api.get("/api/wallets/couriers/me", headers=auth(users["courier"]))
        assert courier_wallet.json()["job_credit"] == -21.6

        dashboard = await api.get("/api/admin/dashboard", headers=auth(users["admin"]))
        assert dashboard.json()["delivered"] == 1
        assert dashboard.json()["platform_income"] == 5.4

    async def test_location_update_validates_coordinates(self, api, auth, world):
        headers = auth(world["users"]["courier"])
        ok = await api.put("/api/deliveries/location", json={"lat": 48.86, "lng": 2.35}, headers=headers)
        assert ok.status_code == 200
        bad = await api.put("/api/deliveries/location", json={"lat": 123, "lng": 2.35}, headers=headers)
        assert bad.status_code == 422


class TestWalletRoutes:
    async def test_merchant_cannot_read_another_shop(self, api, auth, world, mongo):
        await mongo.shops.insert_one({"shop_id": "shp_autre", "owner_id": "usr_someone", "name": "Autre"})
        response = await api.get("/api/wallets/shops/shp_autre", headers=auth(world["users"]["merchant"]))
        assert response.status_code == 403

    async def test_withdrawal_then_admin_resolution(self, api, auth, world, flow):
        await flow.picked_up()
        users = world["users"]
        requested = await api.post(
            "/api/wallets/shops/shp_moussa/withdraw", json={"amount": 15}, headers=auth(users["merchant"]),
        )
        assert requested.status_code == 200, requested.text
        request_id = requested.json()["request_id"]

        listed = await api.get("/api/admin/payout-requests?status=pending", headers=auth(users["admin"]))
        assert listed.json()["total"] == 1

        resolved = await api.put(
            f"/api/admin/payout-requests/{request_id}", json={"status": "completed"}, headers=auth(users["admin"]),
        )
        assert resolved.status_code == 200
        assert resolved.json()["status"] == "paid"

    async def test_topup_opens_a_checkout(self, api, auth, world):
        response = await api.post("/api/wallets/couriers/me/topup", json={"amount": 30}, headers=auth(world["users"]["courier"]))
        assert response.status_code == 200
        assert response.json()["amount"] == 30.0


class TestAdminRoutes:
    async def test_settings_round_trip(self, api, auth, world):
        headers = auth(world["users"]["admin"])
        updated = await api.put("/api/admin/settings", json={"commission_percentage": 12.5}, headers=headers)
        assert updated.status_code == 200
        current = await api.get("/api/admin/settings", headers=headers)
        assert current.json()["commission_percentage"] == 12.5


class TestDashboardRoutes:
    async def test_courier_summary_and_day(self, api, auth, world, flow):
        order, shop_order = await flow.picked_up()
        headers = auth(world["users"]["courier"])
        await api.post(f"/api/deliveries/{order['order_id']}/{shop_order['shop_order_id']}/deliver", headers=headers)

        summary = await api.get("/api/deliveries/summary", headers=headers)
        assert summary.status_code == 200
        assert summary.json() == {"today_income": 9.0, "completed_tasks": 1, "job_credit": -21.6}

        today = await api.get("/api/deliveries/today", headers=headers)
        assert today.json()["total"] == 1
        other_day = await api.get("/api/deliveries/today?date=2020-01-06", headers=headers)
        assert other_day.json() == {"date": "2020-01-06", "deliveries": [], "total": 0}
        bad_day = await api.get("/api/deliveries/today?date=hier", headers=headers)
        assert bad_day.status_code == 422

    async def test_merchant_cancellation_count(self, api, auth, world):
        order, shop_order = await _place(api, auth, world)
        await api.post(
            f"/api/orders/{order['order_id']}/shops/{shop_order['shop_order_id']}/cancel",
            json={"reason": "Rupture"},
            headers=auth(world["users"]["merchant"]),
        )
        response = await api.get("/api/orders/cancellations/week", headers=auth(world["users"]["merchant"]))
        assert response.status_code == 200
        assert response.json()["count"] == 1
        assert response.json()["max_count"] == 7

        denied = await api.get("/api/orders/cancellations/week", headers=auth(world["users"]["customer"]))
        assert denied.status_code == 403
