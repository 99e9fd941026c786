from routers.events import _channels_for, _may_follow


class TestChannels:
    def test_courier_also_listens_to_the_pool(self, world):
        assert _channels_for(world["users"]["courier"]) == ["user:usr_courier", "couriers"]

    def test_admin_listens_to_admins(self, world):
        assert _channels_for(world["users"]["admin"]) == ["user:usr_admin", "admins"]

    def test_customer_has_only_a_personal_channel(self, world):
        assert _channels_for(world["users"]["customer"]) == ["user:usr_customer"]


class TestFollowOrder:
    async def test_participants_may_follow(self, flow, world):
        order, _ = await flow.claimed()
        for role in ("customer", "merchant", "courier", "admin"):
            assert await _may_follow(world["users"][role], order["order_id"]), role

    async def test_outsiders_may_not_follow(self, flow, world):
        order, _ = await flow.claimed()
        assert not await _may_follow(world["users"]["other_customer"], order["order_id"])
        assert not await _may_follow(world["users"]["rival"], order["order_id"])

    async def test_unknown_order(self, world):
        assert not await _may_follow(world["users"]["customer"], "ord_missing")
