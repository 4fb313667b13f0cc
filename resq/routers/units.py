"""
Units Router

Endpoints:
    GET  /api/units                  - All units (optional status/type filter)
    GET  /api/units/nearby           - Available units for an incident type, nearest first
    GET  /api/units/{id}             - One unit
    POST /api/units/{id}/release     - Complete active dispatch, unit back to available
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from starlette.concurrency import run_in_threadpool

from resq.config import NEARBY_RADIUS_KM
from resq.incident_helpers import emit_change_events, get_client_ip
from resq.jwt_auth import TokenClaims, require_roles, DISPATCH_ROLES
from resq.services.dispatch_service import DispatchService, get_dispatch_service, NEARBY_LIMIT

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("")
async def list_units(
    status: Optional[str] = None,
    type: Optional[str] = None,
    service: DispatchService = Depends(get_dispatch_service),
):
    units = await run_in_threadpool(service.list_units, status=status, type=type)
    return {"units": units, "count": len(units)}


@router.get("/nearby")
async def nearby_units(
    incident_type: str,
    lat: float,
    lng: float,
    radius_km: float = Query(NEARBY_RADIUS_KM, gt=0, le=500),
    limit: int = Query(NEARBY_LIMIT, ge=1, le=100),
    service: DispatchService = Depends(get_dispatch_service),
):
    units = await run_in_threadpool(
        service.nearby_units, incident_type, lat, lng, radius_km=radius_km, limit=limit
    )
    return {"units": units, "count": len(units)}


@router.get("/{unit_id}")
async def get_unit(
    unit_id: str,
    service: DispatchService = Depends(get_dispatch_service),
):
    return await run_in_threadpool(service.get_unit, unit_id)


@router.post("/{unit_id}/release")
async def release_unit(
    unit_id: str,
    request: Request,
    claims: TokenClaims = Depends(require_roles(*DISPATCH_ROLES)),
    service: DispatchService = Depends(get_dispatch_service),
):
    result = await run_in_threadpool(service.release_unit, unit_id, claims.user_id, get_client_ip(request))
    await emit_change_events(result.changes)
    return {
        "success": True,
        "unit": result.unit,
        "completed_dispatch_ids": result.completed_dispatch_ids,
    }
