"""
Incident Helper Functions

Contains:
- Audit logging (record_audit)
- Incident number allocation (INC-YYYYMMDD-NNNN)
- Change events and their WebSocket emission
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any
import logging

from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from resq.models import AuditLog, IdSequence, utcnow

logger = logging.getLogger(__name__)


# =============================================================================
# AUDIT LOGGING HELPER
# =============================================================================

AUDIT_ACTIONS = (
    "REPORT_INCIDENT",
    "MERGE_REPORT",
    "DISPATCH_UNIT",
    "VERIFY_INCIDENT",
    "RESOLVE_INCIDENT",
    "RELEASE_UNIT",
)


def record_audit(
    db: Session,
    user_id: Optional[str],
    action: str,
    table_name: str,
    record_id: str,
    old_data: Optional[dict],
    new_data: Optional[dict],
    ip_address: Optional[str] = None,
    now: Optional[datetime] = None,
) -> AuditLog:
    """
    Append one audit entry inside the caller's transaction.

    created_at never goes backwards: if the clock reads earlier than the
    newest entry already written, the newest timestamp is reused.
    """
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")

    created_at = now or utcnow()
    latest = db.query(func.max(AuditLog.created_at)).scalar()
    if latest is not None:
        if latest.tzinfo is None:
            latest = latest.replace(tzinfo=timezone.utc)
        if latest > created_at:
            created_at = latest

    entry = AuditLog(
        user_id=user_id,
        action=action,
        table_name=table_name,
        record_id=record_id,
        old_data=old_data,
        new_data=new_data,
        ip_address=ip_address,
        created_at=created_at,
    )
    db.add(entry)
    db.flush()
    return entry


# =============================================================================
# INCIDENT NUMBER UTILITIES
# =============================================================================

INCIDENT_SEQUENCE = "incidents"

_UPSERT_INSERTS = {"postgresql": postgresql_insert, "sqlite": sqlite_insert}


def ensure_sequence(db: Session, name: str):
    """Create a counter at 0 unless it exists. Safe against concurrent creators."""
    insert = _UPSERT_INSERTS.get(db.get_bind().dialect.name)
    if insert is None:
        if db.get(IdSequence, name) is None:
            db.add(IdSequence(name=name, value=0))
            db.flush()
        return
    db.execute(
        insert(IdSequence).values(name=name, value=0).on_conflict_do_nothing(index_elements=["name"])
    )


def next_sequence_value(db: Session, name: str) -> int:
    """Increment and return a named counter, row-locked until commit."""
    ensure_sequence(db, name)
    seq = db.query(IdSequence).filter(IdSequence.name == name).with_for_update().one()
    seq.value = (seq.value or 0) + 1
    db.flush()
    return seq.value


def format_incident_id(created: datetime, seq: int) -> str:
    """INC-20250101-0007 (UTC date, sequence padded to at least 4 digits)"""
    return f"INC-{created.astimezone(timezone.utc):%Y%m%d}-{seq:04d}"


def allocate_incident_id(db: Session, now: datetime) -> str:
    return format_incident_id(now, next_sequence_value(db, INCIDENT_SEQUENCE))


# =============================================================================
# CHANGE EVENTS
# =============================================================================

@dataclass
class ChangeEvent:
    """One row insert/update, broadcast after the transaction commits."""
    table: str                  # incidents, units, dispatches
    event: str                  # INSERT, UPDATE
    record: Dict[str, Any]
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_message(self) -> dict:
        return {
            "type": self.event,
            "table": self.table,
            "record": self.record,
            "timestamp": self.timestamp,
        }


# Import WebSocket NOTIFY helper (deferred to avoid circular imports)
_ws_notify = None


def _get_ws_notify():
    """Lazy import of the change-feed publisher"""
    global _ws_notify
    if _ws_notify is None:
        from resq.routers.websocket import notify_change_event
        _ws_notify = notify_change_event
    return _ws_notify


async def emit_change_events(events: List[ChangeEvent]):
    """
    Publish committed row changes to every change-feed subscriber.

    Delivery failures are logged, never raised: the write has already
    committed and the caller must still get its result.
    """
    if not events:
        return
    notify = _get_ws_notify()
    for change in events:
        try:
            await notify(change.to_message())
            logger.debug(f"Change feed: {change.event} {change.table} {change.record.get('id')}")
        except Exception as e:
            logger.warning(f"Change feed publish failed for {change.table}: {e}")


def get_client_ip(request) -> Optional[str]:
    """Caller address for the audit log (first X-Forwarded-For hop behind a proxy)"""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None
