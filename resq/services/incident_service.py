"""
Incident Service

Reporting (with de-duplication), verification, resolution and read
queries over incidents. Every mutating call runs in exactly one
transaction; change events are returned on the result and published by
the caller after commit.

Merging
-------
A report merges into an existing incident when it has the same type, the
incident is pending or responding, was reported no more than 30 minutes
ago, and lies within 50 m (both bounds inclusive). The newest such
incident wins. Otherwise a new INC-YYYYMMDD-NNNN incident is created.

Concurrent reports of the same type are serialized: a per-type lock in
this process, plus a transaction-scoped advisory lock on PostgreSQL so
separate workers cannot both decide to create.
"""

import logging
import threading
import zlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy import func, text
from sqlalchemy.orm import Session, sessionmaker

from resq.config import MERGE_RADIUS_METERS, MERGE_WINDOW_MINUTES
from resq.database import session_scope, is_postgres
from resq.errors import ValidationError, NotFoundError, ConflictError
from resq.incident_helpers import (
    ChangeEvent,
    allocate_incident_id,
    record_audit,
)
from resq.models import (
    AuditLog,
    Dispatch,
    Incident,
    Unit,
    INCIDENT_TYPES,
    INCIDENT_TYPE_ALIASES,
    INCIDENT_SEVERITIES,
    INCIDENT_STATUSES,
    ACTIVE_DISPATCH_STATUSES,
    utcnow,
)
from resq.services.deduplication import candidate_query, select_merge_target
from resq.services.location.distance import haversine_m, is_valid_lat_lng

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 500

_report_locks: Dict[str, threading.Lock] = {t: threading.Lock() for t in INCIDENT_TYPES}


def _advisory_key(incident_type: str) -> int:
    return zlib.crc32(f"resq:report:{incident_type}".encode())


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class ReportResult:
    status: str                 # created | merged
    incident_id: str
    verification_count: int
    changes: List[ChangeEvent] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "incident_id": self.incident_id,
            "verification_count": self.verification_count,
        }


@dataclass
class VerifyResult:
    incident_id: str
    is_verified: bool
    changes: List[ChangeEvent] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"success": True, "incident_id": self.incident_id, "is_verified": self.is_verified}


@dataclass
class ResolveResult:
    incident: dict
    released_unit_ids: List[str]
    changes: List[ChangeEvent] = field(default_factory=list)


# =============================================================================
# SERVICE
# =============================================================================

class IncidentService:
    """Owns a session factory; one transaction per mutating call."""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        clock: Callable[[], datetime] = utcnow,
        merge_radius_m: float = MERGE_RADIUS_METERS,
        merge_window_minutes: int = MERGE_WINDOW_MINUTES,
        distance_fn: Callable[[float, float, float, float], float] = haversine_m,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.merge_radius_m = merge_radius_m
        self.merge_window_minutes = merge_window_minutes
        self.distance_fn = distance_fn

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def report_incident(
        self,
        type: str,
        severity: str,
        description: str,
        lat: float,
        lng: float,
        address: Optional[str] = None,
        image_url: Optional[str] = None,
        reporter_id: Optional[str] = None,
        reporter_name: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> ReportResult:
        incident_type, severity, description = _validate_report(type, severity, description, lat, lng)

        with _report_locks[incident_type]:
            with session_scope(self.session_factory) as db:
                if is_postgres(db):
                    db.execute(
                        text("SELECT pg_advisory_xact_lock(:key)"),
                        {"key": _advisory_key(incident_type)},
                    )

                now = self.clock()
                candidates = candidate_query(
                    db, incident_type, lat, lng, now,
                    window_minutes=self.merge_window_minutes,
                ).all()
                target = select_merge_target(
                    candidates, lat, lng,
                    radius_m=self.merge_radius_m,
                    distance_fn=self.distance_fn,
                )

                if target is not None:
                    result = self._merge(db, target, image_url, reporter_id, ip_address, now)
                else:
                    result = self._create(
                        db, incident_type, severity, description, lat, lng,
                        address, image_url, reporter_id, reporter_name, ip_address, now,
                    )

        logger.info(
            f"Report {result.status}: {result.incident_id} "
            f"({incident_type}, count={result.verification_count})"
        )
        return result

    def _merge(
        self,
        db: Session,
        incident: Incident,
        image_url: Optional[str],
        reporter_id: Optional[str],
        ip_address: Optional[str],
        now: datetime,
    ) -> ReportResult:
        old_data = {
            "verification_count": incident.verification_count,
            "image_url": incident.image_url,
        }

        incident.verification_count = (incident.verification_count or 1) + 1
        if not incident.image_url and image_url:
            incident.image_url = image_url
        incident.updated_at = now

        record_audit(
            db, reporter_id, "MERGE_REPORT", "incidents", incident.id,
            old_data=old_data,
            new_data={
                "verification_count": incident.verification_count,
                "image_url": incident.image_url,
            },
            ip_address=ip_address,
            now=now,
        )

        return ReportResult(
            status="merged",
            incident_id=incident.id,
            verification_count=incident.verification_count,
            changes=[ChangeEvent("incidents", "UPDATE", incident.to_dict())],
        )

    def _create(
        self,
        db: Session,
        incident_type: str,
        severity: str,
        description: str,
        lat: float,
        lng: float,
        address: Optional[str],
        image_url: Optional[str],
        reporter_id: Optional[str],
        reporter_name: Optional[str],
        ip_address: Optional[str],
        now: datetime,
    ) -> ReportResult:
        incident = Incident(
            id=allocate_incident_id(db, now),
            type=incident_type,
            severity=severity,
            status="pending",
            description=description,
            lat=lat,
            lng=lng,
            address=address,
            image_url=image_url,
            reported_by=reporter_id,
            reported_by_name=reporter_name or "Anonymous",
            reported_at=now,
            verification_count=1,
            is_verified=False,
            assigned_unit_ids=[],
            created_at=now,
            updated_at=now,
        )
        db.add(incident)
        db.flush()

        record_audit(
            db, reporter_id, "REPORT_INCIDENT", "incidents", incident.id,
            old_data=None,
            new_data=incident.to_dict(),
            ip_address=ip_address,
            now=now,
        )

        return ReportResult(
            status="created",
            incident_id=incident.id,
            verification_count=1,
            changes=[ChangeEvent("incidents", "INSERT", incident.to_dict())],
        )

    # -------------------------------------------------------------------------
    # Verification / resolution
    # -------------------------------------------------------------------------

    def verify_incident(
        self,
        incident_id: str,
        verifier_id: str,
        ip_address: Optional[str] = None,
    ) -> VerifyResult:
        with session_scope(self.session_factory) as db:
            incident = _locked_incident(db, incident_id)
            now = self.clock()

            old_data = {
                "is_verified": bool(incident.is_verified),
                "verified_by": incident.verified_by,
                "verified_at": incident.verified_at.isoformat() if incident.verified_at else None,
            }
            incident.is_verified = True
            incident.verified_by = verifier_id
            incident.verified_at = now
            incident.updated_at = now

            record_audit(
                db, verifier_id, "VERIFY_INCIDENT", "incidents", incident.id,
                old_data=old_data,
                new_data={
                    "is_verified": True,
                    "verified_by": verifier_id,
                    "verified_at": now.isoformat(),
                },
                ip_address=ip_address,
                now=now,
            )
            change = ChangeEvent("incidents", "UPDATE", incident.to_dict())

        logger.info(f"Incident {incident_id} verified by {verifier_id}")
        return VerifyResult(incident_id=incident_id, is_verified=True, changes=[change])

    def resolve_incident(
        self,
        incident_id: str,
        user_id: str,
        ip_address: Optional[str] = None,
    ) -> ResolveResult:
        """
        Close an incident. Its active dispatches are completed and the
        units on them return to available.
        """
        with session_scope(self.session_factory) as db:
            incident = _locked_incident(db, incident_id)
            if incident.status == "resolved":
                raise ConflictError(f"Incident {incident_id} is already resolved")

            now = self.clock()
            changes = []

            active = (
                db.query(Dispatch)
                .filter(
                    Dispatch.incident_id == incident_id,
                    Dispatch.status.in_(ACTIVE_DISPATCH_STATUSES),
                )
                .order_by(Dispatch.unit_id)
                .with_for_update()
                .all()
            )
            released = []
            for dispatch in active:
                dispatch.status = "completed"
                dispatch.completed_at = now
                dispatch.updated_at = now
                changes.append(ChangeEvent("dispatches", "UPDATE", dispatch.to_dict()))

                unit = db.query(Unit).filter(Unit.id == dispatch.unit_id).with_for_update().first()
                if unit is not None and unit.status == "dispatched":
                    unit.status = "available"
                    unit.updated_at = now
                    released.append(unit.id)
                    changes.append(ChangeEvent("units", "UPDATE", unit.to_dict()))

            old_status = incident.status
            incident.status = "resolved"
            incident.updated_at = now

            record_audit(
                db, user_id, "RESOLVE_INCIDENT", "incidents", incident.id,
                old_data={"status": old_status},
                new_data={
                    "status": "resolved",
                    "completed_dispatch_ids": [d.id for d in active],
                    "released_unit_ids": released,
                },
                ip_address=ip_address,
                now=now,
            )
            snapshot = incident.to_dict()
            changes.append(ChangeEvent("incidents", "UPDATE", snapshot))

        logger.info(f"Incident {incident_id} resolved by {user_id} ({len(released)} units released)")
        return ResolveResult(incident=snapshot, released_unit_ids=released, changes=changes)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def list_incidents(
        self,
        type: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> List[dict]:
        if type is not None:
            type = INCIDENT_TYPE_ALIASES.get(type, type)
            if type not in INCIDENT_TYPES:
                raise ValidationError(f"Unknown incident type: {type}")
        if status is not None and status not in INCIDENT_STATUSES:
            raise ValidationError(f"Unknown incident status: {status}")
        if limit < 1 or limit > MAX_LIST_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_LIST_LIMIT}")

        with session_scope(self.session_factory) as db:
            query = db.query(Incident)
            if type:
                query = query.filter(Incident.type == type)
            if status:
                query = query.filter(Incident.status == status)
            rows = query.order_by(Incident.reported_at.desc(), Incident.id.desc()).limit(limit).all()
            return [i.to_dict() for i in rows]

    def get_incident(self, incident_id: str) -> dict:
        with session_scope(self.session_factory) as db:
            incident = db.query(Incident).filter(Incident.id == incident_id).first()
            if not incident:
                raise NotFoundError(f"Incident {incident_id} not found")
            return incident.to_dict()

    def get_audit_log(self, incident_id: str) -> List[dict]:
        with session_scope(self.session_factory) as db:
            exists = db.query(Incident.id).filter(Incident.id == incident_id).first()
            if not exists:
                raise NotFoundError(f"Incident {incident_id} not found")
            entries = (
                db.query(AuditLog)
                .filter(AuditLog.table_name == "incidents", AuditLog.record_id == incident_id)
                .order_by(AuditLog.created_at, AuditLog.id)
                .all()
            )
            return [e.to_dict() for e in entries]

    def stats(self) -> dict:
        """Counts for the admin dashboard"""
        with session_scope(self.session_factory) as db:
            def grouped(column):
                rows = db.query(column, func.count(Incident.id)).group_by(column).all()
                return {key: count for key, count in rows}

            by_status = grouped(Incident.status)
            verified = db.query(func.count(Incident.id)).filter(Incident.is_verified.is_(True)).scalar()
            reports = db.query(func.coalesce(func.sum(Incident.verification_count), 0)).scalar()

            return {
                "total": sum(by_status.values()),
                "active": by_status.get("pending", 0) + by_status.get("responding", 0),
                "verified": verified or 0,
                "total_reports": int(reports or 0),
                "by_status": {s: by_status.get(s, 0) for s in INCIDENT_STATUSES},
                "by_type": {t: c for t, c in grouped(Incident.type).items()},
                "by_severity": {s: c for s, c in grouped(Incident.severity).items()},
            }


# =============================================================================
# HELPERS
# =============================================================================

def _validate_report(incident_type, severity, description, lat, lng):
    """Normalize and check report input before any database work."""
    incident_type = (incident_type or "").strip().lower()
    incident_type = INCIDENT_TYPE_ALIASES.get(incident_type, incident_type)
    if incident_type not in INCIDENT_TYPES:
        raise ValidationError(f"type must be one of {', '.join(INCIDENT_TYPES)}")

    severity = (severity or "").strip().lower()
    if severity not in INCIDENT_SEVERITIES:
        raise ValidationError(f"severity must be one of {', '.join(INCIDENT_SEVERITIES)}")

    description = (description or "").strip()
    if not description:
        raise ValidationError("description is required")

    if not is_valid_lat_lng(lat, lng):
        logger.warning(f"Rejected report with invalid coordinates: lat={lat!r} lng={lng!r}")
        raise ValidationError("lat/lng must be finite, lat in [-90, 90], lng in [-180, 180]")

    return incident_type, severity, description


def _locked_incident(db: Session, incident_id: str) -> Incident:
    incident = db.query(Incident).filter(Incident.id == incident_id).with_for_update().first()
    if not incident:
        raise NotFoundError(f"Incident {incident_id} not found")
    return incident


def get_incident_service() -> IncidentService:
    """FastAPI dependency (overridden in tests)"""
    return IncidentService()
