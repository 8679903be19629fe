#!/usr/bin/env python3
"""
Geospatial helpers for geographic triggers

distance_meters() is a pure haversine over a spherical Earth. It trusts its
inputs; range checking happens at the boundary through validate_coordinates().
"""

import math

from dead_drop_system.core.error_handler import ValidationError

EARTH_RADIUS_METERS = 6_371_000.0


def distance_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two lat/lon points, in meters"""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = (math.sin(d_phi / 2) ** 2
         + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_METERS * c


def validate_coordinates(lat, lon) -> None:
    """Reject non-numeric or out-of-range coordinates"""
    for name, value in (("latitude", lat), ("longitude", lon)):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(f"{name} must be a number")
        if math.isnan(value) or math.isinf(value):
            raise ValidationError(f"{name} must be finite")

    if not -90.0 <= lat <= 90.0:
        raise ValidationError(f"latitude {lat} out of range [-90, 90]")
    if not -180.0 <= lon <= 180.0:
        raise ValidationError(f"longitude {lon} out of range [-180, 180]")
