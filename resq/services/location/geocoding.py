"""
Reverse Geocoding for Location Services

Converts report coordinates to a readable address using the
OpenStreetMap Nominatim API (free, no key, needs a User-Agent).

If the lookup fails the coordinates themselves are returned as the
address ("40.7589, -73.9851") so callers always get something to show.
"""

import logging
from typing import Dict

import httpx

from resq.config import NOMINATIM_URL, USER_AGENT

logger = logging.getLogger(__name__)

NOMINATIM_TIMEOUT = 10


def coordinate_label(lat: float, lng: float) -> str:
    return f"{lat:.4f}, {lng:.4f}"


def reverse_geocode(lat: float, lng: float) -> Dict:
    """
    Reverse geocode coordinates.

    Returns dict with:
        address, city, state, country, postcode,
        provider ('nominatim' or 'coordinates')
    """
    params = {
        "format": "json",
        "lat": lat,
        "lon": lng,
        "zoom": 18,
        "addressdetails": 1,
    }

    try:
        with httpx.Client(timeout=NOMINATIM_TIMEOUT, headers={"User-Agent": USER_AGENT}) as client:
            response = client.get(NOMINATIM_URL, params=params)
            response.raise_for_status()
            data = response.json()
    except httpx.HTTPError as e:
        logger.warning(f"Reverse geocoding failed for {lat},{lng}: {e}")
        return _fallback(lat, lng)
    except ValueError as e:
        logger.warning(f"Reverse geocoding returned invalid JSON: {e}")
        return _fallback(lat, lng)

    if not data or data.get("error"):
        logger.info(f"No address found for {lat},{lng}: {data.get('error') if data else 'empty'}")
        return _fallback(lat, lng)

    parts_src = data.get("address") or {}
    city = parts_src.get("city") or parts_src.get("town") or parts_src.get("village")
    parts = [
        parts_src.get("road") or parts_src.get("suburb") or parts_src.get("neighbourhood"),
        city,
        parts_src.get("state"),
        parts_src.get("country"),
    ]
    parts = [p for p in parts if p]

    return {
        "address": ", ".join(parts) if parts else data.get("display_name", coordinate_label(lat, lng)),
        "city": city,
        "state": parts_src.get("state"),
        "country": parts_src.get("country"),
        "postcode": parts_src.get("postcode"),
        "provider": "nominatim",
    }


def _fallback(lat: float, lng: float) -> Dict:
    return {
        "address": coordinate_label(lat, lng),
        "city": None,
        "state": None,
        "country": None,
        "postcode": None,
        "provider": "coordinates",
    }
