from __future__ import annotations

import pytest

from resq.errors import ConflictError, NotFoundError, ValidationError
from resq.models import AuditLog, Dispatch, Unit
from resq.services.dispatch_service import DispatchService
from resq.services.incident_service import IncidentService
from resq.services.location.route import straight_line_route
from tests.conftest import add_units

TIMES_SQUARE = (40.7589, -73.9851)


def _services(session_factory, clock):
    incidents = IncidentService(session_factory=session_factory, clock=clock)
    dispatch = DispatchService(session_factory=session_factory, clock=clock, route_planner=straight_line_route)
    return incidents, dispatch


def _new_incident(service: IncidentService, type: str = "fire", at: tuple = TIMES_SQUARE) -> str:
    return service.report_incident(
        type=type, severity="high", description="Kitchen fire", lat=at[0], lng=at[1]
    ).incident_id


def test_verify_sets_flags_and_writes_one_audit_entry(session_factory, clock) -> None:
    incidents, _ = _services(session_factory, clock)
    incident_id = _new_incident(incidents)
    clock.advance(minutes=2)

    result = incidents.verify_incident(incident_id, "responder-1", ip_address="10.0.0.5")

    assert result.to_dict() == {"success": True, "incident_id": incident_id, "is_verified": True}
    incident = incidents.get_incident(incident_id)
    assert incident["is_verified"] is True
    assert incident["verified_by"] == "responder-1"
    assert incident["verified_at"] == clock.now.isoformat()

    with session_factory() as session:
        entries = session.query(AuditLog).filter(AuditLog.action == "VERIFY_INCIDENT").all()
        assert len(entries) == 1
        assert entries[0].table_name == "incidents"
        assert entries[0].record_id == incident_id
        assert entries[0].user_id == "responder-1"
        assert entries[0].ip_address == "10.0.0.5"


def test_verify_unknown_incident_is_not_found(session_factory, clock) -> None:
    incidents, _ = _services(session_factory, clock)
    with pytest.raises(NotFoundError):
        incidents.verify_incident("INC-20250115-9999", "responder-1")


def test_audit_timestamps_never_go_backwards(session_factory, clock) -> None:
    incidents, _ = _services(session_factory, clock)
    incident_id = _new_incident(incidents)
    clock.advance(minutes=10)
    incidents.verify_incident(incident_id, "responder-1")

    # Clock skew: the next action reads an earlier time
    clock.advance(minutes=-20)
    incidents.verify_incident(incident_id, "dispatcher-1")

    entries = incidents.get_audit_log(incident_id)
    stamps = [e["created_at"] for e in entries]
    assert stamps == sorted(stamps)
    assert entries[-1]["user_id"] == "dispatcher-1"
    assert entries[-1]["created_at"] == entries[-2]["created_at"]


def test_audit_entries_cannot_be_edited_or_deleted(session_factory, clock) -> None:
    incidents, _ = _services(session_factory, clock)
    _new_incident(incidents)

    with session_factory() as session:
        entry = session.query(AuditLog).first()
        entry.action = "VERIFY_INCIDENT"
        with pytest.raises(ValueError):
            session.flush()
        session.rollback()

        entry = session.query(AuditLog).first()
        session.delete(entry)
        with pytest.raises(ValueError):
            session.flush()
        session.rollback()

        assert session.query(AuditLog).count() == 1


def test_resolve_completes_dispatches_and_frees_units(session_factory, clock) -> None:
    add_units(session_factory, ("FIRE-001", "fire-truck", 40.7600, -73.9800), ("AMB-001", "ambulance", 40.7580, -73.9855))
    incidents, dispatch = _services(session_factory, clock)
    incident_id = _new_incident(incidents)
    dispatch.create_dispatch(incident_id, ["FIRE-001", "AMB-001"], "dispatcher-1")

    clock.advance(minutes=45)
    result = incidents.resolve_incident(incident_id, "responder-1")

    assert result.incident["status"] == "resolved"
    assert sorted(result.released_unit_ids) == ["AMB-001", "FIRE-001"]
    with session_factory() as session:
        assert {u.status for u in session.query(Unit).all()} == {"available"}
        assert {d.status for d in session.query(Dispatch).all()} == {"completed"}
        resolve_entries = session.query(AuditLog).filter(AuditLog.action == "RESOLVE_INCIDENT").all()
        assert len(resolve_entries) == 1
        assert resolve_entries[0].old_data == {"status": "responding"}


def test_resolve_twice_is_a_conflict(session_factory, clock) -> None:
    incidents, _ = _services(session_factory, clock)
    incident_id = _new_incident(incidents)
    incidents.resolve_incident(incident_id, "responder-1")

    with pytest.raises(ConflictError):
        incidents.resolve_incident(incident_id, "responder-1")


def test_list_incidents_filters_and_orders_newest_first(session_factory, clock) -> None:
    incidents, _ = _services(session_factory, clock)
    first = _new_incident(incidents, "fire")
    clock.advance(minutes=1)
    second = _new_incident(incidents, "medical")
    clock.advance(minutes=1)
    third = _new_incident(incidents, "fire", at=(40.7484, -73.9857))
    incidents.resolve_incident(third, "responder-1")

    assert [i["id"] for i in incidents.list_incidents()] == [third, second, first]
    assert [i["id"] for i in incidents.list_incidents(type="fire")] == [third, first]
    assert [i["id"] for i in incidents.list_incidents(status="pending")] == [second, first]
    assert len(incidents.list_incidents(limit=1)) == 1

    with pytest.raises(ValidationError):
        incidents.list_incidents(status="closed")


def test_stats_count_incidents_and_reports(session_factory, clock) -> None:
    incidents, _ = _services(session_factory, clock)
    fire = _new_incident(incidents, "fire")
    _new_incident(incidents, "fire")  # merges
    _new_incident(incidents, "medical")
    incidents.verify_incident(fire, "responder-1")

    stats = incidents.stats()

    assert stats["total"] == 2
    assert stats["active"] == 2
    assert stats["verified"] == 1
    assert stats["total_reports"] == 3
    assert stats["by_type"] == {"fire": 1, "medical": 1}
    assert stats["by_status"] == {"pending": 2, "responding": 0, "resolved": 0}


def test_get_audit_log_for_unknown_incident(session_factory, clock) -> None:
    incidents, _ = _services(session_factory, clock)
    with pytest.raises(NotFoundError):
        incidents.get_audit_log("INC-20250115-0404")
