"""
Location Services Router

Endpoints:
    GET /api/location/reverse?lat=&lng=    - Address for a reported position
"""

import logging

from fastapi import APIRouter
from pydantic import BaseModel
from typing import Optional
from starlette.concurrency import run_in_threadpool

from resq.errors import ValidationError
from resq.services.location.distance import is_valid_lat_lng
from resq.services.location.geocoding import reverse_geocode

logger = logging.getLogger(__name__)

router = APIRouter()


class ReverseGeocodeResponse(BaseModel):
    lat: float
    lng: float
    address: str
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    postcode: Optional[str] = None
    provider: str


@router.get("/reverse", response_model=ReverseGeocodeResponse)
async def reverse_geocode_endpoint(lat: float, lng: float):
    """
    Readable address for a position. Never fails on provider errors:
    the coordinates themselves come back as the address.
    """
    if not is_valid_lat_lng(lat, lng):
        raise ValidationError("lat/lng must be finite, lat in [-90, 90], lng in [-180, 180]")

    result = await run_in_threadpool(reverse_geocode, lat, lng)
    return ReverseGeocodeResponse(lat=lat, lng=lng, **result)
