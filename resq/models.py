"""
SQLAlchemy models for ResQ

Tables: profiles, incidents, units, dispatches, audit_logs, id_sequences.
JSON columns are JSONB on PostgreSQL and plain JSON elsewhere.
All timestamps are stored and returned as timezone-aware UTC.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Boolean, Text, Float, ForeignKey, DateTime, JSON,
    Index, event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator

from resq.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """DateTime that always round-trips as aware UTC (SQLite drops tzinfo)."""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


JSONType = JSON().with_variant(JSONB(), "postgresql")


def _iso(value):
    return value.isoformat() if value else None


# =============================================================================
# ENUMERATIONS
# =============================================================================

INCIDENT_TYPES = ("fire", "medical", "accident", "crime", "other")
# Client label -> stored type
INCIDENT_TYPE_ALIASES = {"police": "crime"}
INCIDENT_SEVERITIES = ("low", "medium", "high", "critical")

# Forward-only lifecycle: pending -> responding -> resolved
INCIDENT_STATUSES = ("pending", "responding", "resolved")
ACTIVE_INCIDENT_STATUSES = ("pending", "responding")

UNIT_TYPES = ("ambulance", "fire-truck", "police-car")
UNIT_STATUSES = ("available", "dispatched", "busy", "offline")

DISPATCH_STATUSES = ("dispatched", "en_route", "arrived", "completed", "cancelled")
ACTIVE_DISPATCH_STATUSES = ("dispatched", "en_route", "arrived")

ROLES = ("citizen", "dispatcher", "responder", "admin")


# =============================================================================
# PROFILES
# =============================================================================

class Profile(Base):
    """Registered user (citizen, dispatcher, responder, admin)"""
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True)
    email = Column(String(255), unique=True, nullable=False)
    full_name = Column(String(100))
    role = Column(String(20), nullable=False, default="citizen")
    phone = Column(String(30))
    password_hash = Column(String(255))
    active = Column(Boolean, default=True)
    created_at = Column(UTCDateTime, default=utcnow)

    @property
    def display_name(self):
        return self.full_name or self.email


# =============================================================================
# INCIDENTS
# =============================================================================

class Incident(Base):
    """
    Citizen-reported emergency.

    id is human readable (INC-YYYYMMDD-NNNN) and never changes.
    verification_count only ever goes up, via report merges.
    """
    __tablename__ = "incidents"

    id = Column(String(32), primary_key=True)
    type = Column(String(20), nullable=False)
    severity = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    description = Column(Text, nullable=False)

    lat = Column(Float, nullable=False)
    lng = Column(Float, nullable=False)
    address = Column(Text)
    image_url = Column(Text)

    reported_by = Column(String(36), ForeignKey("profiles.id", ondelete="SET NULL"))
    reported_by_name = Column(String(100), default="Anonymous")
    reported_at = Column(UTCDateTime, nullable=False, default=utcnow)

    verification_count = Column(Integer, nullable=False, default=1)
    is_verified = Column(Boolean, nullable=False, default=False)
    verified_by = Column(String(36), ForeignKey("profiles.id", ondelete="SET NULL"))
    verified_at = Column(UTCDateTime)

    assigned_unit_ids = Column(JSONType, default=list)

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow)

    __table_args__ = (
        Index("idx_incidents_dedup", "type", "status", "reported_at"),
        Index("idx_incidents_location", "lat", "lng"),
    )

    @property
    def is_active(self):
        return self.status in ACTIVE_INCIDENT_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "severity": self.severity,
            "status": self.status,
            "description": self.description,
            "lat": self.lat,
            "lng": self.lng,
            "address": self.address,
            "image_url": self.image_url,
            "reported_by": self.reported_by,
            "reported_by_name": self.reported_by_name or "Anonymous",
            "reported_at": _iso(self.reported_at),
            "verification_count": self.verification_count,
            "is_verified": bool(self.is_verified),
            "verified_by": self.verified_by,
            "verified_at": _iso(self.verified_at),
            "assigned_unit_ids": list(self.assigned_unit_ids or []),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


# =============================================================================
# UNITS
# =============================================================================

class Unit(Base):
    """Emergency unit (ambulance, fire truck, police car)"""
    __tablename__ = "units"

    id = Column(String(32), primary_key=True)          # FIRE-001
    name = Column(String(100), nullable=False)         # Fire Unit Bravo
    type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default="available")
    lat = Column(Float, nullable=False)
    lng = Column(Float, nullable=False)
    call_sign = Column(String(20))
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow)

    @property
    def is_available(self):
        return self.status == "available"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "status": self.status,
            "lat": self.lat,
            "lng": self.lng,
            "call_sign": self.call_sign,
            "updated_at": _iso(self.updated_at),
        }


# =============================================================================
# DISPATCHES
# =============================================================================

class Dispatch(Base):
    """One unit assigned to one incident, with its route and ETA"""
    __tablename__ = "dispatches"

    id = Column(String(36), primary_key=True)
    incident_id = Column(String(32), ForeignKey("incidents.id", ondelete="CASCADE"), nullable=False, index=True)
    unit_id = Column(String(32), ForeignKey("units.id", ondelete="CASCADE"), nullable=False, index=True)
    dispatcher_id = Column(String(36), ForeignKey("profiles.id", ondelete="SET NULL"))

    eta_minutes = Column(Integer)
    route = Column(JSONType)                           # [[lat, lng], ...]
    status = Column(String(20), nullable=False, default="dispatched")

    dispatched_at = Column(UTCDateTime, default=utcnow)
    completed_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow)

    @property
    def is_active(self):
        return self.status in ACTIVE_DISPATCH_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "incident_id": self.incident_id,
            "unit_id": self.unit_id,
            "dispatcher_id": self.dispatcher_id,
            "eta_minutes": self.eta_minutes,
            "route": self.route or [],
            "status": self.status,
            "dispatched_at": _iso(self.dispatched_at),
            "completed_at": _iso(self.completed_at),
            "updated_at": _iso(self.updated_at),
        }


# =============================================================================
# AUDIT LOG
# =============================================================================

class AuditLog(Base):
    """
    Append-only audit trail.
    One row per state-changing action, written in the same transaction.
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Who (NULL = anonymous citizen report)
    user_id = Column(String(36))

    # What
    action = Column(String(50), nullable=False)        # DISPATCH_UNIT, VERIFY_INCIDENT
    table_name = Column(String(50), nullable=False)    # incidents, units
    record_id = Column(String(64))

    # Details
    old_data = Column(JSONType)
    new_data = Column(JSONType)

    # Context
    ip_address = Column(String(45))
    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "action": self.action,
            "table_name": self.table_name,
            "record_id": self.record_id,
            "old_data": self.old_data,
            "new_data": self.new_data,
            "ip_address": self.ip_address,
            "created_at": _iso(self.created_at),
        }


@event.listens_for(AuditLog, "before_update")
def _audit_log_no_update(mapper, connection, target):
    raise ValueError(f"Audit log entry {target.id} is immutable")


@event.listens_for(AuditLog, "before_delete")
def _audit_log_no_delete(mapper, connection, target):
    raise ValueError(f"Audit log entry {target.id} cannot be deleted")


# =============================================================================
# SEQUENCES
# =============================================================================

class IdSequence(Base):
    """Named monotonic counters (portable stand-in for a DB sequence)"""
    __tablename__ = "id_sequences"

    name = Column(String(50), primary_key=True)
    value = Column(Integer, nullable=False, default=0)
