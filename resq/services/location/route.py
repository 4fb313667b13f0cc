"""
Route Service - unit to incident routing

Primary:  Google Directions API (when RESQ_GOOGLE_API_KEY is set)
Fallback: straight line interpolated between unit and incident

Both return the same shape:
    {
        "route": [[lat, lng], ...],     # ordered, unit first, incident last
        "distance_km": 3.42,
        "eta_minutes": 7,
        "provider": "google" | "straight_line",
    }

Dependencies:
    - httpx
"""

import logging
from typing import Optional, Dict, List

import httpx

from resq.services.location.distance import haversine_km

logger = logging.getLogger(__name__)

DIRECTIONS_BASE = "https://maps.googleapis.com/maps/api/directions/json"
DIRECTIONS_TIMEOUT = 10

# Straight-line estimate: 11 points, 2 minutes per km (~30 km/h urban average)
STRAIGHT_LINE_SEGMENTS = 10
MINUTES_PER_KM = 2.0


def straight_line_route(
    origin_lat: float,
    origin_lng: float,
    dest_lat: float,
    dest_lng: float,
) -> Dict:
    """Interpolated straight line from origin (unit) to destination (incident)."""
    points = []
    for i in range(STRAIGHT_LINE_SEGMENTS + 1):
        frac = i / STRAIGHT_LINE_SEGMENTS
        points.append([
            origin_lat + (dest_lat - origin_lat) * frac,
            origin_lng + (dest_lng - origin_lng) * frac,
        ])

    distance_km = haversine_km(origin_lat, origin_lng, dest_lat, dest_lng)
    return {
        "route": points,
        "distance_km": round(distance_km, 2),
        "eta_minutes": max(1, round(distance_km * MINUTES_PER_KM)),
        "provider": "straight_line",
    }


def decode_polyline(encoded: str) -> List[List[float]]:
    """Decode a Google encoded polyline into [[lat, lng], ...]."""
    points = []
    index = 0
    lat = 0
    lng = 0
    length = len(encoded)

    while index < length:
        deltas = []
        for _ in range(2):
            shift = 0
            result = 0
            while True:
                b = ord(encoded[index]) - 63
                index += 1
                result |= (b & 0x1F) << shift
                shift += 5
                if b < 0x20:
                    break
            deltas.append(~(result >> 1) if result & 1 else result >> 1)
        lat += deltas[0]
        lng += deltas[1]
        points.append([lat / 1e5, lng / 1e5])

    return points


def fetch_route(
    origin_lat: float,
    origin_lng: float,
    dest_lat: float,
    dest_lng: float,
    google_api_key: str,
) -> Optional[Dict]:
    """
    Fetch driving route from origin (unit) to destination (incident).

    Returns the route dict described in the module docstring, or None on failure.
    """
    if not google_api_key:
        return None

    params = {
        "origin": f"{origin_lat},{origin_lng}",
        "destination": f"{dest_lat},{dest_lng}",
        "mode": "driving",
        "key": google_api_key,
    }

    try:
        resp = httpx.get(DIRECTIONS_BASE, params=params, timeout=DIRECTIONS_TIMEOUT)
        data = resp.json()

        if data.get("status") != "OK" or not data.get("routes"):
            logger.warning(f"Directions API returned status={data.get('status')}")
            return None

        route = data["routes"][0]
        leg = route["legs"][0]

        return {
            "route": decode_polyline(route["overview_polyline"]["points"]),
            "distance_km": round(leg["distance"]["value"] / 1000.0, 2),
            "eta_minutes": max(1, round(leg["duration"]["value"] / 60)),
            "provider": "google",
        }

    except httpx.TimeoutException:
        logger.warning("Directions API timed out")
        return None
    except (httpx.HTTPError, KeyError, IndexError, ValueError) as e:
        logger.error(f"Directions API error: {e}")
        return None


def plan_route(
    origin_lat: float,
    origin_lng: float,
    dest_lat: float,
    dest_lng: float,
    google_api_key: Optional[str] = None,
) -> Dict:
    """Directions API when configured, straight line otherwise or on failure."""
    if google_api_key:
        result = fetch_route(origin_lat, origin_lng, dest_lat, dest_lng, google_api_key)
        if result:
            return result
        logger.info("Falling back to straight-line route")
    return straight_line_route(origin_lat, origin_lng, dest_lat, dest_lng)
