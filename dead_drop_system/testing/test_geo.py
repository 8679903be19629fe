"""
Geospatial Helper Tests

Haversine distance and boundary validation for coordinates.
"""

import math

import pytest

from dead_drop_system.core.error_handler import ValidationError
from dead_drop_system.dead_drop.geo import EARTH_RADIUS_METERS, distance_meters, validate_coordinates

METERS_PER_DEGREE = EARTH_RADIUS_METERS * math.pi / 180


class TestDistance:

    def test_same_point_is_zero(self):
        """
        HAPPY PATH: Distance from a point to itself is zero.
        """
        assert distance_meters(52.5163, 13.3777, 52.5163, 13.3777) == 0.0

    def test_one_degree_of_latitude(self):
        """
        HAPPY PATH: One degree along a meridian is R * pi / 180.
        """
        assert distance_meters(0.0, 0.0, 1.0, 0.0) == pytest.approx(METERS_PER_DEGREE)

    def test_symmetric(self):
        """
        HAPPY PATH: d(a, b) == d(b, a).
        """
        a = (40.7128, -74.0060)
        b = (51.5074, -0.1278)
        assert distance_meters(*a, *b) == pytest.approx(distance_meters(*b, *a))

    def test_known_city_pair(self):
        """
        HAPPY PATH: New York to London is roughly 5570 km.
        """
        d = distance_meters(40.7128, -74.0060, 51.5074, -0.1278)
        assert 5_550_000 < d < 5_600_000

    def test_antimeridian(self):
        """
        EDGE: Points either side of the antimeridian are close, not half a world apart.
        """
        d = distance_meters(0.0, 179.9999, 0.0, -179.9999)
        assert d == pytest.approx(0.0002 * METERS_PER_DEGREE, rel=1e-3)

    def test_antipodes(self):
        """
        EDGE: Antipodal points are half the circumference apart.
        """
        d = distance_meters(0.0, 0.0, 0.0, 180.0)
        assert d == pytest.approx(math.pi * EARTH_RADIUS_METERS)


class TestValidateCoordinates:

    @pytest.mark.parametrize("lat,lon", [(0, 0), (90, 180), (-90, -180), (52.5, 13.4)])
    def test_valid(self, lat, lon):
        """
        HAPPY PATH: In-range coordinates (including the bounds) pass.
        """
        validate_coordinates(lat, lon)

    @pytest.mark.parametrize("lat,lon", [(90.0001, 0), (-91, 0), (0, 180.5), (0, -181)])
    def test_out_of_range(self, lat, lon):
        """
        EDGE: Out-of-range coordinates are rejected at the boundary.
        """
        with pytest.raises(ValidationError):
            validate_coordinates(lat, lon)

    @pytest.mark.parametrize("lat,lon", [("52.5", 13.4), (None, 0), (True, 0), (float('nan'), 0), (0, float('inf'))])
    def test_not_a_number(self, lat, lon):
        """
        EDGE: Strings, None, booleans and non-finite floats are rejected.
        """
        with pytest.raises(ValidationError):
            validate_coordinates(lat, lon)
