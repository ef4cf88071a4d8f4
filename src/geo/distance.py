"""Great-circle distance, coordinate and service-area checks.

All proximity decisions in the engine (nearby rides, nearby drivers, fare
distance) are computed here rather than delegated to the store.
"""

from collections.abc import Callable, Iterable
from math import atan2, cos, radians, sin, sqrt
from typing import TypeVar

from core.exceptions import ValidationError

EARTH_MEAN_RADIUS_KM = 6371.0

# Approximate service area (Dhaka); quotes outside it are flagged, not refused
SERVICE_AREA_BOUNDS = {
    "north": 23.9,
    "south": 23.7,
    "east": 90.5,
    "west": 90.3,
}

T = TypeVar("T")


def haversine_distance_km(
    lat1: float,
    lon1: float,
    lat2: float,
    lon2: float,
) -> float:
    """Calculate the great-circle distance between two points in kilometers.

    Args:
        lat1: Latitude of first point in degrees
        lon1: Longitude of first point in degrees
        lat2: Latitude of second point in degrees
        lon2: Longitude of second point in degrees

    Returns:
        Distance on a sphere of Earth's mean radius, in kilometers
    """
    lat1, lon1, lat2, lon2 = map(radians, [lat1, lon1, lat2, lon2])
    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    c = 2 * atan2(sqrt(a), sqrt(1 - a))

    return EARTH_MEAN_RADIUS_KM * c


def validate_coordinates(latitude: float, longitude: float, field: str = "location") -> None:
    """Raise ValidationError unless the pair is a finite, in-range lat/lon."""
    try:
        lat = float(latitude)
        lon = float(longitude)
    except (TypeError, ValueError) as e:
        raise ValidationError(
            f"{field} coordinates must be numbers",
            details={"field": field, "latitude": latitude, "longitude": longitude},
        ) from e

    # NaN fails every comparison, so it is rejected here as well
    if not (-90.0 <= lat <= 90.0) or not (-180.0 <= lon <= 180.0):
        raise ValidationError(
            f"{field} coordinates out of range",
            details={"field": field, "latitude": latitude, "longitude": longitude},
        )


def is_within_service_area(latitude: float, longitude: float) -> bool:
    return (
        SERVICE_AREA_BOUNDS["south"] <= latitude <= SERVICE_AREA_BOUNDS["north"]
        and SERVICE_AREA_BOUNDS["west"] <= longitude <= SERVICE_AREA_BOUNDS["east"]
    )


def rank_by_distance(
    origin: tuple[float, float],
    items: Iterable[T],
    position: Callable[[T], tuple[float, float]],
    tie_key: Callable[[T], str],
    radius_km: float,
) -> list[tuple[T, float]]:
    """Keep items within radius of origin, nearest first, ties broken by tie_key."""
    lat, lon = origin
    ranked: list[tuple[T, float]] = []
    for item in items:
        item_lat, item_lon = position(item)
        distance = haversine_distance_km(lat, lon, item_lat, item_lon)
        if distance <= radius_km:
            ranked.append((item, distance))

    ranked.sort(key=lambda pair: (pair[1], tie_key(pair[0])))
    return ranked
