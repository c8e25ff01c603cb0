"""
Geographic helpers: great-circle distance and viewport reduction.

All functions are pure. Out-of-range coordinates are programmer errors and
raise ValueError instead of being clamped.
"""
import math
from typing import Tuple

from market_finder.models import Coordinates, MapBounds

EARTH_RADIUS_M = 6371000.0


def validate_point(lat: float, lng: float) -> None:
    if lat is None or lng is None:
        raise ValueError("latitude and longitude are required")
    if not -90.0 <= lat <= 90.0:
        raise ValueError(f"latitude out of range: {lat}")
    if not -180.0 <= lng <= 180.0:
        raise ValueError(f"longitude out of range: {lng}")


def haversine_meters(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    validate_point(lat1, lng1)
    validate_point(lat2, lng2)
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lng2 - lng1)
    a = (
        math.sin(dphi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def haversine_distance(a: Coordinates, b: Coordinates) -> float:
    """Distance in meters between two points."""
    return haversine_meters(a.lat, a.lng, b.lat, b.lng)


def bounds_to_center_radius(bounds: MapBounds) -> Tuple[Coordinates, int]:
    """Reduce a viewport to a query center and radius.

    The center is the plain average of the edges; the radius is half the
    south-west to north-east corner distance, rounded up.

    Args:
        bounds: Viewport to reduce

    Returns:
        Tuple of (center, radius in meters)
    """
    if bounds.north < bounds.south:
        raise ValueError(f"north edge {bounds.north} is below south edge {bounds.south}")
    center = Coordinates(
        lat=(bounds.north + bounds.south) / 2,
        lng=(bounds.east + bounds.west) / 2,
    )
    corner = haversine_meters(bounds.south, bounds.west, bounds.north, bounds.east)
    return center, int(math.ceil(corner / 2))


def bbox_contains(bounds: MapBounds, lat: float, lng: float) -> bool:
    return bounds.south <= lat <= bounds.north and bounds.west <= lng <= bounds.east

