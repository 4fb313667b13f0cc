"""
Dispatch Router

Endpoints:
    POST /api/dispatch/preview   - Routes + ETAs for candidate units (read-only)
    POST /api/dispatch/commit    - Atomically dispatch units (dispatcher/admin)
    GET  /api/dispatch           - Active dispatches
    GET  /api/dispatch/{id}      - One dispatch
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from starlette.concurrency import run_in_threadpool

from resq.incident_helpers import emit_change_events, get_client_ip
from resq.jwt_auth import TokenClaims, require_roles, DISPATCH_ROLES
from resq.schemas_incidents import UnitSelection, PreviewResponse, DispatchResponse
from resq.services.dispatch_service import DispatchService, get_dispatch_service

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/preview", response_model=PreviewResponse)
async def preview_routes(
    selection: UnitSelection,
    service: DispatchService = Depends(get_dispatch_service),
):
    routes = await run_in_threadpool(service.preview_routes, selection.incident_id, selection.unit_ids)
    return {"incident_id": selection.incident_id, "routes": routes}


@router.post("/commit", response_model=DispatchResponse)
async def commit_dispatch(
    selection: UnitSelection,
    request: Request,
    claims: TokenClaims = Depends(require_roles(*DISPATCH_ROLES)),
    service: DispatchService = Depends(get_dispatch_service),
):
    """
    Dispatch every selected unit or none of them.
    409 if the incident is resolved or any unit is not available.
    """
    result = await run_in_threadpool(
        service.create_dispatch,
        selection.incident_id,
        selection.unit_ids,
        claims.user_id,
        get_client_ip(request),
    )
    await emit_change_events(result.changes)
    return result.to_dict()


@router.get("")
async def list_dispatches(
    incident_id: Optional[str] = None,
    active_only: bool = True,
    service: DispatchService = Depends(get_dispatch_service),
):
    dispatches = await run_in_threadpool(
        service.list_dispatches, incident_id=incident_id, active_only=active_only
    )
    return {"dispatches": dispatches, "count": len(dispatches)}


@router.get("/{dispatch_id}")
async def get_dispatch(
    dispatch_id: str,
    service: DispatchService = Depends(get_dispatch_service),
):
    return await run_in_threadpool(service.get_dispatch, dispatch_id)
