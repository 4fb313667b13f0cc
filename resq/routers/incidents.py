"""
Incidents Router

Endpoints:
    POST /api/incidents/report              - Report (anonymous or signed in), merges duplicates
    GET  /api/incidents                     - List, newest first
    GET  /api/incidents/stats               - Dashboard counts
    GET  /api/incidents/{id}                - One incident
    POST /api/incidents/{id}/verify         - Mark verified (responder+)
    POST /api/incidents/{id}/resolve        - Close, release units (responder+)
    GET  /api/incidents/{id}/audit-log      - Audit trail (dispatcher/admin)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from starlette.concurrency import run_in_threadpool

from resq.incident_helpers import emit_change_events, get_client_ip
from resq.jwt_auth import (
    TokenClaims,
    get_optional_claims,
    require_roles,
    DISPATCH_ROLES,
    VERIFY_ROLES,
)
from resq.schemas_incidents import IncidentReport, ReportResponse, VerifyResponse
from resq.services.incident_service import IncidentService, get_incident_service

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# REPORTING
# =============================================================================

@router.post("/report", response_model=ReportResponse)
async def report_incident(
    report: IncidentReport,
    request: Request,
    claims: Optional[TokenClaims] = Depends(get_optional_claims),
    service: IncidentService = Depends(get_incident_service),
):
    """
    Report an incident. A report within 50 m / 30 minutes of an open
    incident of the same type is merged into it instead of creating one.
    """
    reporter_name = report.reported_by_name or (claims.name if claims else None)

    result = await run_in_threadpool(
        service.report_incident,
        type=report.type,
        severity=report.severity,
        description=report.description,
        lat=report.lat,
        lng=report.lng,
        address=report.address,
        image_url=report.image_url,
        reporter_id=claims.user_id if claims else None,
        reporter_name=reporter_name,
        ip_address=get_client_ip(request),
    )
    await emit_change_events(result.changes)
    return result.to_dict()


# =============================================================================
# READS
# =============================================================================

@router.get("")
async def list_incidents(
    type: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    service: IncidentService = Depends(get_incident_service),
):
    """List incidents, newest report first"""
    incidents = await run_in_threadpool(service.list_incidents, type=type, status=status, limit=limit)
    return {"incidents": incidents, "count": len(incidents)}


@router.get("/stats")
async def incident_stats(service: IncidentService = Depends(get_incident_service)):
    return await run_in_threadpool(service.stats)


@router.get("/{incident_id}")
async def get_incident(
    incident_id: str,
    service: IncidentService = Depends(get_incident_service),
):
    return await run_in_threadpool(service.get_incident, incident_id)


# =============================================================================
# VERIFY / RESOLVE
# =============================================================================

@router.post("/{incident_id}/verify", response_model=VerifyResponse)
async def verify_incident(
    incident_id: str,
    request: Request,
    claims: TokenClaims = Depends(require_roles(*VERIFY_ROLES)),
    service: IncidentService = Depends(get_incident_service),
):
    result = await run_in_threadpool(
        service.verify_incident, incident_id, claims.user_id, get_client_ip(request)
    )
    await emit_change_events(result.changes)
    return result.to_dict()


@router.post("/{incident_id}/resolve")
async def resolve_incident(
    incident_id: str,
    request: Request,
    claims: TokenClaims = Depends(require_roles(*VERIFY_ROLES)),
    service: IncidentService = Depends(get_incident_service),
):
    """Resolve an incident; its active dispatches complete and units return to available."""
    result = await run_in_threadpool(
        service.resolve_incident, incident_id, claims.user_id, get_client_ip(request)
    )
    await emit_change_events(result.changes)
    return {
        "success": True,
        "incident": result.incident,
        "released_unit_ids": result.released_unit_ids,
    }


# =============================================================================
# AUDIT LOG
# =============================================================================

@router.get("/{incident_id}/audit-log")
async def get_incident_audit_log(
    incident_id: str,
    claims: TokenClaims = Depends(require_roles(*DISPATCH_ROLES)),
    service: IncidentService = Depends(get_incident_service),
):
    """Audit entries for one incident, oldest first"""
    entries = await run_in_threadpool(service.get_audit_log, incident_id)
    return {"incident_id": incident_id, "entries": entries}
