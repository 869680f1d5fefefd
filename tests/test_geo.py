"""Tests for great-circle distance."""

import math

import pytest

from app.models.location import Location
from app.services.geo import EARTH_RADIUS_KM, Coordinate, distance_km

POINTS = [
    Coordinate(0.0, 0.0),
    Coordinate(51.5074, -0.1278),
    Coordinate(40.7128, -74.0060),
    Coordinate(-33.8688, 151.2093),
    Coordinate(89.9, 179.9),
    Coordinate(-90.0, -180.0),
]


class TestDistance:
    def test_identity_is_zero(self):
        for p in POINTS:
            assert distance_km(p, p) == 0.0

    def test_symmetric(self):
        for a in POINTS:
            for b in POINTS:
                assert distance_km(a, b) == distance_km(b, a)

    def test_one_degree_of_latitude(self):
        d = distance_km(Coordinate(0.0, 0.0), Coordinate(1.0, 0.0))
        assert d == pytest.approx(EARTH_RADIUS_KM * math.pi / 180)

    def test_london_to_new_york(self):
        d = distance_km(POINTS[1], POINTS[2])
        assert d == pytest.approx(5570, rel=0.01)

    def test_antipodal_points(self):
        d = distance_km(Coordinate(0.0, 0.0), Coordinate(0.0, 180.0))
        assert d == pytest.approx(EARTH_RADIUS_KM * math.pi)

    def test_accepts_location_model(self):
        a = Location(latitude=10.0, longitude=10.0, address="somewhere")
        assert distance_km(a, Coordinate(10.0, 10.0)) == 0.0

    def test_rejects_latitude_out_of_range(self):
        with pytest.raises(ValueError):
            distance_km(Coordinate(91.0, 0.0), Coordinate(0.0, 0.0))

    def test_rejects_longitude_out_of_range(self):
        with pytest.raises(ValueError):
            distance_km(Coordinate(0.0, 0.0), Coordinate(0.0, -181.0))
