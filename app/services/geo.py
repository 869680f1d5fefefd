"""Great-circle distance between two points on the Earth's surface."""

import math
from typing import NamedTuple, Protocol

EARTH_RADIUS_KM = 6371.0


class HasCoordinates(Protocol):
    latitude: float
    longitude: float


class Coordinate(NamedTuple):
    latitude: float
    longitude: float


def _check_range(point: HasCoordinates) -> None:
    if not -90.0 <= point.latitude <= 90.0:
        raise ValueError(f"latitude out of range: {point.latitude}")
    if not -180.0 <= point.longitude <= 180.0:
        raise ValueError(f"longitude out of range: {point.longitude}")


def distance_km(a: HasCoordinates, b: HasCoordinates) -> float:
    """Haversine distance in kilometres between two (latitude, longitude) points in degrees."""
    _check_range(a)
    _check_range(b)

    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    d_lat = math.radians(b.latitude - a.latitude)
    d_lon = math.radians(b.longitude - a.longitude)

    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    )
    h = min(1.0, h)
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
