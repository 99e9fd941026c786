import pytest

from core.geo import distance_between, haversine_km, point_in_polygon, visibility_delay_seconds


class TestVisibilityDelay:
    @pytest.mark.parametrize(
        "distance_km, expected",
        [
            (None, 60),
            (0.0, 1),
            (0.05, 1),
            (0.1, 1),
            (0.5, 10),
            (1.0, 10),
            (1.5, 15),
            (2.0, 20),
            (3.0, 30),
            (1.01, 11),
        ],
    )
    def test_tiers(self, distance_km, expected):
        assert visibility_delay_seconds(distance_km) == expected


class TestDistance:
    def test_one_hundredth_degree_of_latitude(self):
        assert haversine_km(48.0, 2.0, 48.01, 2.0) == pytest.approx(1.112, abs=0.001)

    def test_incomplete_points_have_no_distance(self):
        assert distance_between(None, {"lat": 1, "lng": 1}) is None
        assert distance_between({"lat": 1, "lng": None}, {"lat": 1, "lng": 1}) is None

    def test_same_point(self):
        assert distance_between({"lat": 14.7, "lng": -17.4}, {"lat": 14.7, "lng": -17.4}) == 0.0


class TestDeliveryZone:
    # carré [lng, lat] autour de Paris centre
    ZONE = [[2.30, 48.84], [2.40, 48.84], [2.40, 48.89], [2.30, 48.89], [2.30, 48.84]]

    def test_inside(self):
        assert point_in_polygon(48.8566, 2.3522, self.ZONE)

    def test_outside(self):
        assert not point_in_polygon(48.95, 2.3522, self.ZONE)
        assert not point_in_polygon(48.8566, 2.45, self.ZONE)

    def test_degenerate_ring(self):
        assert not point_in_polygon(48.8566, 2.3522, [[2.3, 48.8], [2.4, 48.9]])
