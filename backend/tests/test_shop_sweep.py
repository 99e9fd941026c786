from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException

from services.shop_service import check_shop_orderable, is_shop_open, reopen_elapsed_closures

# un mercredi
WEDNESDAY_NOON = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)


def _shop(**extra):
    return {"shop_id": "shp_x", "name": "Chez X", "is_approved": True, **extra}


class TestOpeningHours:
    def test_no_hours_means_always_open(self):
        assert is_shop_open(_shop(), WEDNESDAY_NOON)

    def test_inside_and_outside_a_slot(self):
        shop = _shop(opening_hours={"wednesday": [{"open": "11:00", "close": "14:00"}]})
        assert is_shop_open(shop, WEDNESDAY_NOON)
        assert not is_shop_open(shop, WEDNESDAY_NOON.replace(hour=15))

    def test_overnight_slot_spills_into_next_day(self):
        shop = _shop(opening_hours={"tuesday": [{"open": "20:00", "close": "02:00"}]})
        assert is_shop_open(shop, WEDNESDAY_NOON.replace(hour=1, minute=30))
        assert not is_shop_open(shop, WEDNESDAY_NOON.replace(hour=2, minute=30))

    def test_shop_timezone_is_honoured(self):
        shop = _shop(
            timezone="Europe/Paris",
            opening_hours={"wednesday": [{"open": "13:00", "close": "15:00"}]},
        )
        # 12:00 UTC = 14:00 à Paris (heure d'été)
        assert is_shop_open(shop, WEDNESDAY_NOON)


class TestOrderable:
    def test_unapproved_shop_is_refused(self):
        with pytest.raises(HTTPException) as exc:
            check_shop_orderable(_shop(is_approved=False), WEDNESDAY_NOON)
        assert exc.value.status_code == 400

    def test_missing_shop_is_not_found(self):
        with pytest.raises(HTTPException) as exc:
            check_shop_orderable(None, WEDNESDAY_NOON)
        assert exc.value.status_code == 404

    def test_elapsed_closure_no_longer_blocks(self):
        closure = {"is_closed": True, "closed_until": WEDNESDAY_NOON - timedelta(minutes=1)}
        check_shop_orderable(_shop(temporary_closure=closure), WEDNESDAY_NOON)

    def test_open_ended_closure_blocks(self):
        with pytest.raises(HTTPException):
            check_shop_orderable(_shop(temporary_closure={"is_closed": True, "closed_until": None}), WEDNESDAY_NOON)


class TestReopenSweep:
    async def test_elapsed_closures_are_reopened(self, world, mongo):
        now = datetime.now(timezone.utc)
        await mongo.shops.update_one(
            {"shop_id": "shp_moussa"},
            {"$set": {"temporary_closure": {"is_closed": True, "reason": "pause", "closed_until": now - timedelta(minutes=5)}}},
        )
        await mongo.items.update_one(
            {"item_id": "itm_fries"},
            {"$set": {"is_available": False, "unavailable_until": now - timedelta(minutes=5)}},
        )
        await mongo.items.update_one(
            {"item_id": "itm_burger"},
            {"$set": {"is_available": False, "unavailable_until": now + timedelta(hours=2)}},
        )

        result = await reopen_elapsed_closures(now)
        assert result == {"shops_reopened": 1, "items_reopened": 1}

        shop = await mongo.shops.find_one({"shop_id": "shp_moussa"})
        assert shop["temporary_closure"]["is_closed"] is False
        fries = await mongo.items.find_one({"item_id": "itm_fries"})
        assert fries["is_available"] is True
        burger = await mongo.items.find_one({"item_id": "itm_burger"})
        assert burger["is_available"] is False

    async def test_indefinite_closure_stays_closed(self, world, mongo):
        await mongo.shops.update_one(
            {"shop_id": "shp_moussa"},
            {"$set": {"temporary_closure": {"is_closed": True, "reason": "travaux", "closed_until": None}}},
        )
        result = await reopen_elapsed_closures()
        assert result["shops_reopened"] == 0
