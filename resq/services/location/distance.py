"""
Distance Calculations for Location Services

Haversine formula for great-circle distance between two lat/lng points.
Used by report de-duplication (metres) and nearby-unit ranking (km).
"""

import math
from typing import Tuple

EARTH_RADIUS_M = 6371000.0

# ~50 m expressed in degrees of latitude. Applied unchanged to longitude,
# so the box narrows in metres away from the equator.
DEDUP_BOX_DEGREES = 0.00045


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Calculate great-circle distance between two points in metres.
    Uses the Haversine formula.
    """
    lat1_r = math.radians(lat1)
    lat2_r = math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = (math.sin(dlat / 2) ** 2 +
         math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlng / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    return haversine_m(lat1, lng1, lat2, lng2) / 1000.0


def bounding_box(
    lat: float, lng: float, delta: float = DEDUP_BOX_DEGREES
) -> Tuple[float, float, float, float]:
    """(min_lat, max_lat, min_lng, max_lng) of a square box in degrees."""
    return (lat - delta, lat + delta, lng - delta, lng + delta)


def is_finite_lat_lng(lat, lng) -> bool:
    """True only for real, finite numbers (bools rejected)."""
    for value in (lat, lng):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        if not math.isfinite(value):
            return False
    return True


def is_valid_lat_lng(lat, lng) -> bool:
    return is_finite_lat_lng(lat, lng) and -90 <= lat <= 90 and -180 <= lng <= 180


def offset_point(lat: float, lng: float, bearing_deg: float, distance_m: float) -> Tuple[float, float]:
    """Destination point given a start, bearing and distance (sphere)."""
    d = distance_m / EARTH_RADIUS_M
    brng = math.radians(bearing_deg)
    lat_r = math.radians(lat)
    lng_r = math.radians(lng)

    new_lat = math.asin(math.sin(lat_r) * math.cos(d) +
                        math.cos(lat_r) * math.sin(d) * math.cos(brng))
    new_lng = lng_r + math.atan2(math.sin(brng) * math.sin(d) * math.cos(lat_r),
                                 math.cos(d) - math.sin(lat_r) * math.sin(new_lat))
    return math.degrees(new_lat), math.degrees(new_lng)
