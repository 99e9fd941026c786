from decimal import Decimal

from core.money import (
    available_balance,
    commission_rate,
    money_sum,
    parse_amount,
    quantize,
    round2,
    split_commission,
)


class TestCommission:
    def test_rate_is_clamped(self):
        assert commission_rate(20) == Decimal("0.2")
        assert commission_rate(150) == Decimal("1")
        assert commission_rate(-5) == Decimal("0")
        assert commission_rate(None) == Decimal("0")

    def test_split_of_hundred_at_twenty_percent(self):
        assert split_commission(100, commission_rate(20)) == (20.0, 80.0)

    def test_split_rounds_half_up(self):
        # 10.05 × 15 % = 1.5075 → 1.51
        platform, net = split_commission(10.05, commission_rate(15))
        assert platform == 1.51
        assert net == 8.54

    def test_split_parts_always_sum_to_subtotal(self):
        rate = commission_rate(17.5)
        for subtotal in (0.01, 0.99, 3.33, 19.99, 27.0, 1234.57):
            platform, net = split_commission(subtotal, rate)
            assert quantize(platform) + quantize(net) == quantize(subtotal)

    def test_zero_commission_credits_everything(self):
        assert split_commission(42.5, commission_rate(0)) == (0.0, 42.5)


class TestRounding:
    def test_round2_is_half_up(self):
        assert round2(2.675) == 2.68
        assert round2(10.005) == 10.01

    def test_money_sum_avoids_float_drift(self):
        assert money_sum([0.1, 0.2]) == 0.3
        assert money_sum([]) == 0.0

    def test_parse_amount(self):
        assert parse_amount(10.004) == 10.0
        assert parse_amount("25.5") == 25.5
        assert parse_amount(0) is None
        assert parse_amount(-3) is None
        assert parse_amount("abc") is None


class TestAvailableBalance:
    def test_pending_reduces_available(self):
        assert available_balance(100, 30, 20) == 50.0

    def test_never_negative(self):
        assert available_balance(100, 120, 0) == 0.0
        assert available_balance(100, 90, 20) == 0.0
        assert available_balance(0, 0, 5) == 0.0
