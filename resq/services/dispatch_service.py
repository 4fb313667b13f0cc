"""
Dispatch Service

Route preview, atomic dispatch commit, unit release and unit queries.

Commit is all-or-nothing: the incident and every requested unit are
row-locked, every check runs before the first write, and any failure
rolls the whole transaction back. A successful commit of N units leaves
N new dispatch records, N units in "dispatched", the incident in
"responding", and one DISPATCH_UNIT audit entry on the incident.
"""

import functools
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session, sessionmaker

from resq.config import GOOGLE_API_KEY, NEARBY_RADIUS_KM
from resq.database import session_scope
from resq.errors import ValidationError, NotFoundError, ConflictError
from resq.incident_helpers import ChangeEvent, record_audit
from resq.models import (
    Dispatch,
    Incident,
    Unit,
    INCIDENT_TYPES,
    UNIT_STATUSES,
    UNIT_TYPES,
    ACTIVE_DISPATCH_STATUSES,
    utcnow,
)
from resq.services.location.distance import haversine_km, is_valid_lat_lng
from resq.services.location.route import plan_route

logger = logging.getLogger(__name__)

# Which unit types answer which incident type
UNIT_TYPES_FOR_INCIDENT = {
    "fire": ("fire-truck",),
    "medical": ("ambulance",),
    "accident": ("ambulance", "police-car"),
    "crime": ("police-car",),
    "other": ("police-car",),
}

NEARBY_LIMIT = 20
MAX_UNITS_PER_DISPATCH = 50

RoutePlanner = Callable[[float, float, float, float], dict]

# Commits in this process run one at a time; row locks cover other workers.
_commit_lock = threading.Lock()


def default_route_planner() -> RoutePlanner:
    return functools.partial(plan_route, google_api_key=GOOGLE_API_KEY or None)


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class DispatchResult:
    incident_id: str
    dispatches: List[dict]
    changes: List[ChangeEvent] = field(default_factory=list)

    @property
    def dispatched_count(self) -> int:
        return len(self.dispatches)

    def to_dict(self) -> dict:
        return {
            "success": True,
            "incident_id": self.incident_id,
            "dispatches": self.dispatches,
            "dispatched_count": self.dispatched_count,
        }


@dataclass
class ReleaseResult:
    unit: dict
    completed_dispatch_ids: List[str]
    changes: List[ChangeEvent] = field(default_factory=list)


# =============================================================================
# SERVICE
# =============================================================================

class DispatchService:

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        clock: Callable[[], datetime] = utcnow,
        route_planner: Optional[RoutePlanner] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.route_planner = route_planner or default_route_planner()

    # -------------------------------------------------------------------------
    # Preview (read-only)
    # -------------------------------------------------------------------------

    def preview_routes(self, incident_id: str, unit_ids: Sequence[str]) -> List[dict]:
        """Route, distance and ETA for each candidate unit. Writes nothing."""
        unit_ids = _check_unit_ids(unit_ids)

        with session_scope(self.session_factory) as db:
            incident = db.query(Incident).filter(Incident.id == incident_id).first()
            if not incident:
                raise NotFoundError(f"Incident {incident_id} not found")

            units = _units_by_id(db, unit_ids, lock=False)

            previews = []
            for unit_id in unit_ids:
                unit = units[unit_id]
                route = self.route_planner(unit.lat, unit.lng, incident.lat, incident.lng)
                previews.append({
                    "unit_id": unit.id,
                    "unit_name": unit.name,
                    "route": route["route"],
                    "eta_minutes": route["eta_minutes"],
                    "distance_km": route["distance_km"],
                })
            return previews

    # -------------------------------------------------------------------------
    # Commit
    # -------------------------------------------------------------------------

    def create_dispatch(
        self,
        incident_id: str,
        unit_ids: Sequence[str],
        dispatcher_id: Optional[str],
        ip_address: Optional[str] = None,
    ) -> DispatchResult:
        """
        Routes are planned from a read-only snapshot, outside _commit_lock
        and the row locks. Every check runs again under the locks before
        the first write.
        """
        unit_ids = _check_unit_ids(unit_ids)

        with session_scope(self.session_factory) as db:
            incident, units = _dispatchable(db, incident_id, unit_ids, lock=False)
            target = (incident.lat, incident.lng)
            origins = {u: (units[u].lat, units[u].lng) for u in unit_ids}

        routes = {u: self.route_planner(*origins[u], *target) for u in unit_ids}

        with _commit_lock:
            with session_scope(self.session_factory) as db:
                incident, units = _dispatchable(db, incident_id, unit_ids, lock=True)

                now = self.clock()
                old_data = {
                    "status": incident.status,
                    "assigned_unit_ids": list(incident.assigned_unit_ids or []),
                }

                records = []
                changes = []
                for unit_id in unit_ids:
                    unit = units[unit_id]
                    route = routes[unit_id]

                    dispatch = Dispatch(
                        id=str(uuid.uuid4()),
                        incident_id=incident.id,
                        unit_id=unit.id,
                        dispatcher_id=dispatcher_id,
                        eta_minutes=route["eta_minutes"],
                        route=route["route"],
                        status="dispatched",
                        dispatched_at=now,
                        created_at=now,
                        updated_at=now,
                    )
                    db.add(dispatch)

                    unit.status = "dispatched"
                    unit.updated_at = now

                    records.append({
                        "dispatch_id": dispatch.id,
                        "unit_id": unit.id,
                        "unit_name": unit.name,
                        "eta": dispatch.eta_minutes,
                        "route": dispatch.route,
                    })
                    changes.append(ChangeEvent("dispatches", "INSERT", dispatch.to_dict()))
                    changes.append(ChangeEvent("units", "UPDATE", unit.to_dict()))

                assigned = list(old_data["assigned_unit_ids"])
                assigned.extend(u for u in unit_ids if u not in assigned)
                incident.assigned_unit_ids = assigned
                incident.status = "responding"
                incident.updated_at = now
                db.flush()

                record_audit(
                    db, dispatcher_id, "DISPATCH_UNIT", "incidents", incident.id,
                    old_data=old_data,
                    new_data={
                        "status": incident.status,
                        "assigned_unit_ids": assigned,
                        "dispatch_ids": [r["dispatch_id"] for r in records],
                    },
                    ip_address=ip_address,
                    now=now,
                )
                changes.append(ChangeEvent("incidents", "UPDATE", incident.to_dict()))

        logger.info(f"Dispatched {len(records)} unit(s) to {incident_id}: {', '.join(unit_ids)}")
        return DispatchResult(incident_id=incident_id, dispatches=records, changes=changes)

    # -------------------------------------------------------------------------
    # Release
    # -------------------------------------------------------------------------

    def release_unit(
        self,
        unit_id: str,
        user_id: Optional[str],
        ip_address: Optional[str] = None,
    ) -> ReleaseResult:
        """Complete the unit's active dispatch and make it available again."""
        with session_scope(self.session_factory) as db:
            unit = db.query(Unit).filter(Unit.id == unit_id).with_for_update().first()
            if not unit:
                raise NotFoundError(f"Unit {unit_id} not found")
            if unit.is_available:
                raise ConflictError(f"Unit {unit_id} is already available")

            now = self.clock()
            changes = []

            active = (
                db.query(Dispatch)
                .filter(Dispatch.unit_id == unit_id, Dispatch.status.in_(ACTIVE_DISPATCH_STATUSES))
                .with_for_update()
                .all()
            )
            for dispatch in active:
                dispatch.status = "completed"
                dispatch.completed_at = now
                dispatch.updated_at = now
                changes.append(ChangeEvent("dispatches", "UPDATE", dispatch.to_dict()))

            old_status = unit.status
            unit.status = "available"
            unit.updated_at = now

            record_audit(
                db, user_id, "RELEASE_UNIT", "units", unit.id,
                old_data={"status": old_status},
                new_data={
                    "status": "available",
                    "completed_dispatch_ids": [d.id for d in active],
                },
                ip_address=ip_address,
                now=now,
            )
            snapshot = unit.to_dict()
            changes.append(ChangeEvent("units", "UPDATE", snapshot))

        logger.info(f"Unit {unit_id} released ({old_status} -> available)")
        return ReleaseResult(
            unit=snapshot,
            completed_dispatch_ids=[d.id for d in active],
            changes=changes,
        )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def list_units(self, status: Optional[str] = None, type: Optional[str] = None) -> List[dict]:
        if status is not None and status not in UNIT_STATUSES:
            raise ValidationError(f"Unknown unit status: {status}")
        if type is not None and type not in UNIT_TYPES:
            raise ValidationError(f"Unknown unit type: {type}")

        with session_scope(self.session_factory) as db:
            query = db.query(Unit)
            if status:
                query = query.filter(Unit.status == status)
            if type:
                query = query.filter(Unit.type == type)
            return [u.to_dict() for u in query.order_by(Unit.id).all()]

    def get_unit(self, unit_id: str) -> dict:
        with session_scope(self.session_factory) as db:
            unit = db.query(Unit).filter(Unit.id == unit_id).first()
            if not unit:
                raise NotFoundError(f"Unit {unit_id} not found")
            return unit.to_dict()

    def nearby_units(
        self,
        incident_type: str,
        lat: float,
        lng: float,
        radius_km: float = NEARBY_RADIUS_KM,
        limit: int = NEARBY_LIMIT,
    ) -> List[dict]:
        """Available units that answer this incident type, nearest first."""
        if incident_type not in INCIDENT_TYPES:
            raise ValidationError(f"Unknown incident type: {incident_type}")
        if not is_valid_lat_lng(lat, lng):
            raise ValidationError("lat/lng must be finite, lat in [-90, 90], lng in [-180, 180]")
        if radius_km <= 0:
            raise ValidationError("radius_km must be positive")

        with session_scope(self.session_factory) as db:
            units = (
                db.query(Unit)
                .filter(
                    Unit.status == "available",
                    Unit.type.in_(UNIT_TYPES_FOR_INCIDENT[incident_type]),
                )
                .all()
            )

            ranked = []
            for unit in units:
                distance = haversine_km(lat, lng, unit.lat, unit.lng)
                if distance <= radius_km:
                    row = unit.to_dict()
                    row["distance_km"] = round(distance, 2)
                    ranked.append((distance, unit.id, row))

        ranked.sort(key=lambda r: (r[0], r[1]))
        return [row for _, _, row in ranked[:limit]]

    def get_dispatch(self, dispatch_id: str) -> dict:
        with session_scope(self.session_factory) as db:
            dispatch = db.query(Dispatch).filter(Dispatch.id == dispatch_id).first()
            if not dispatch:
                raise NotFoundError(f"Dispatch {dispatch_id} not found")
            return dispatch.to_dict()

    def list_dispatches(self, incident_id: Optional[str] = None, active_only: bool = True) -> List[dict]:
        with session_scope(self.session_factory) as db:
            query = db.query(Dispatch)
            if incident_id:
                query = query.filter(Dispatch.incident_id == incident_id)
            if active_only:
                query = query.filter(Dispatch.status.in_(ACTIVE_DISPATCH_STATUSES))
            rows = query.order_by(Dispatch.dispatched_at.desc(), Dispatch.id).all()
            return [d.to_dict() for d in rows]


# =============================================================================
# HELPERS
# =============================================================================

def _check_unit_ids(unit_ids: Sequence[str]) -> List[str]:
    cleaned = [str(u).strip() for u in (unit_ids or [])]
    if not cleaned:
        raise ValidationError("unit_ids must not be empty")
    if len(cleaned) > MAX_UNITS_PER_DISPATCH:
        raise ValidationError(f"At most {MAX_UNITS_PER_DISPATCH} units per dispatch")
    if any(not u for u in cleaned):
        raise ValidationError("unit_ids must not contain blank ids")
    if len(set(cleaned)) != len(cleaned):
        raise ValidationError("unit_ids must not contain duplicates")
    return cleaned


def _units_by_id(db: Session, unit_ids: List[str], lock: bool) -> Dict[str, Unit]:
    """Fetch the requested units (locked in id order), 404 if any is unknown."""
    query = db.query(Unit).filter(Unit.id.in_(unit_ids)).order_by(Unit.id)
    if lock:
        query = query.with_for_update()
    units = {u.id: u for u in query.all()}

    missing = [u for u in unit_ids if u not in units]
    if missing:
        raise NotFoundError(f"Units not found: {', '.join(missing)}")
    return units


def _dispatchable(db: Session, incident_id: str, unit_ids: List[str], lock: bool):
    """Incident and units for a dispatch, after every precondition check."""
    query = db.query(Incident).filter(Incident.id == incident_id)
    if lock:
        query = query.with_for_update()
    incident = query.first()
    if not incident:
        raise NotFoundError(f"Incident {incident_id} not found")
    if not incident.is_active:
        raise ConflictError(f"Incident {incident_id} is {incident.status}, cannot dispatch")

    units = _units_by_id(db, unit_ids, lock=lock)

    unavailable = [u for u in unit_ids if not units[u].is_available]
    if unavailable:
        raise ConflictError(f"Units not available: {', '.join(unavailable)}")

    already = (
        db.query(Dispatch.unit_id)
        .filter(
            Dispatch.incident_id == incident_id,
            Dispatch.unit_id.in_(unit_ids),
            Dispatch.status.in_(ACTIVE_DISPATCH_STATUSES),
        )
        .all()
    )
    if already:
        ids = ", ".join(sorted(row[0] for row in already))
        raise ConflictError(f"Units already assigned to {incident_id}: {ids}")

    return incident, units


def get_dispatch_service() -> DispatchService:
    """FastAPI dependency (overridden in tests)"""
    return DispatchService()
