from __future__ import annotations

import threading

import pytest

from resq.errors import ConflictError, NotFoundError, ValidationError
from resq.models import AuditLog, Dispatch, Incident, Unit
from resq.services.dispatch_service import DispatchService
from resq.services.incident_service import IncidentService
from resq.services.location.route import straight_line_route
from tests.conftest import add_units

TIMES_SQUARE = (40.7589, -73.9851)

UNITS = (
    ("AMB-001", "ambulance", 40.7580, -73.9855),
    ("FIRE-001", "fire-truck", 40.7600, -73.9800),
    ("FIRE-002", "fire-truck", 40.7570, -73.9820),
    ("POL-001", "police-car", 40.7560, -73.9870),
    ("POL-002", "police-car", 40.7540, -73.9790, "busy"),
)


@pytest.fixture
def setup(session_factory, clock):
    add_units(session_factory, *UNITS)
    incidents = IncidentService(session_factory=session_factory, clock=clock)
    dispatch = DispatchService(session_factory=session_factory, clock=clock, route_planner=straight_line_route)
    incident_id = incidents.report_incident(
        type="fire", severity="critical", description="Warehouse fire",
        lat=TIMES_SQUARE[0], lng=TIMES_SQUARE[1],
    ).incident_id
    return incidents, dispatch, incident_id


def _snapshot(session_factory) -> dict:
    with session_factory() as session:
        return {
            "units": {u.id: u.status for u in session.query(Unit).all()},
            "incidents": {i.id: (i.status, list(i.assigned_unit_ids or [])) for i in session.query(Incident).all()},
            "dispatches": session.query(Dispatch).count(),
            "audit": session.query(AuditLog).count(),
        }


def test_dispatch_n_units(setup, session_factory) -> None:
    incidents, dispatch, incident_id = setup

    result = dispatch.create_dispatch(incident_id, ["FIRE-001", "FIRE-002", "AMB-001"], "dispatcher-1")

    assert result.dispatched_count == 3
    body = result.to_dict()
    assert body["success"] is True
    assert [d["unit_id"] for d in body["dispatches"]] == ["FIRE-001", "FIRE-002", "AMB-001"]
    for record in body["dispatches"]:
        assert record["eta"] >= 1
        assert len(record["route"]) == 11
        assert record["route"][-1] == pytest.approx(list(TIMES_SQUARE))

    with session_factory() as session:
        assert session.query(Dispatch).count() == 3
        statuses = {u.id: u.status for u in session.query(Unit).all()}
        assert statuses["FIRE-001"] == statuses["FIRE-002"] == statuses["AMB-001"] == "dispatched"
        assert statuses["POL-001"] == "available"

    incident = incidents.get_incident(incident_id)
    assert incident["status"] == "responding"
    assert incident["assigned_unit_ids"] == ["FIRE-001", "FIRE-002", "AMB-001"]


def test_dispatch_writes_one_audit_entry_on_the_incident(setup, session_factory) -> None:
    _, dispatch, incident_id = setup

    result = dispatch.create_dispatch(incident_id, ["FIRE-001", "AMB-001"], "dispatcher-1")

    with session_factory() as session:
        entries = session.query(AuditLog).filter(AuditLog.action == "DISPATCH_UNIT").all()
        assert len(entries) == 1
        entry = entries[0]
        assert (entry.table_name, entry.record_id, entry.user_id) == ("incidents", incident_id, "dispatcher-1")
        assert entry.old_data == {"status": "pending", "assigned_unit_ids": []}
        assert entry.new_data["status"] == "responding"
        assert entry.new_data["dispatch_ids"] == [d["dispatch_id"] for d in result.dispatches]


def test_second_dispatch_extends_assigned_units(setup) -> None:
    incidents, dispatch, incident_id = setup

    dispatch.create_dispatch(incident_id, ["FIRE-001"], "dispatcher-1")
    dispatch.create_dispatch(incident_id, ["AMB-001"], "dispatcher-1")

    assert incidents.get_incident(incident_id)["assigned_unit_ids"] == ["FIRE-001", "AMB-001"]


def test_unavailable_unit_rolls_back_everything(setup, session_factory) -> None:
    _, dispatch, incident_id = setup
    before = _snapshot(session_factory)

    with pytest.raises(ConflictError):
        dispatch.create_dispatch(incident_id, ["FIRE-001", "POL-002"], "dispatcher-1")

    assert _snapshot(session_factory) == before


def test_unit_already_dispatched_elsewhere_is_a_conflict(setup, session_factory) -> None:
    incidents, dispatch, incident_id = setup
    other = incidents.report_incident(
        type="medical", severity="low", description="Fall", lat=40.70, lng=-74.00
    ).incident_id
    dispatch.create_dispatch(other, ["AMB-001"], "dispatcher-1")
    before = _snapshot(session_factory)

    with pytest.raises(ConflictError):
        dispatch.create_dispatch(incident_id, ["FIRE-001", "AMB-001"], "dispatcher-1")

    assert _snapshot(session_factory) == before


def test_route_failure_midway_leaves_no_partial_state(session_factory, clock, setup) -> None:
    _, _, incident_id = setup
    calls = []

    def flaky_planner(*args):
        calls.append(args)
        if len(calls) == 2:
            raise RuntimeError("routing backend down")
        return straight_line_route(*args)

    dispatch = DispatchService(session_factory=session_factory, clock=clock, route_planner=flaky_planner)
    before = _snapshot(session_factory)

    with pytest.raises(RuntimeError):
        dispatch.create_dispatch(incident_id, ["FIRE-001", "FIRE-002"], "dispatcher-1")

    assert _snapshot(session_factory) == before


def test_unknown_incident_or_unit_is_not_found(setup) -> None:
    _, dispatch, incident_id = setup

    with pytest.raises(NotFoundError):
        dispatch.create_dispatch("INC-20250115-0404", ["FIRE-001"], "dispatcher-1")
    with pytest.raises(NotFoundError):
        dispatch.create_dispatch(incident_id, ["FIRE-001", "FIRE-999"], "dispatcher-1")


def test_resolved_incident_cannot_be_dispatched(setup) -> None:
    incidents, dispatch, incident_id = setup
    incidents.resolve_incident(incident_id, "responder-1")

    with pytest.raises(ConflictError):
        dispatch.create_dispatch(incident_id, ["FIRE-001"], "dispatcher-1")


@pytest.mark.parametrize("unit_ids", [[], ["FIRE-001", "FIRE-001"], [""]])
def test_bad_unit_lists_are_rejected(setup, unit_ids: list) -> None:
    _, dispatch, incident_id = setup
    with pytest.raises(ValidationError):
        dispatch.create_dispatch(incident_id, unit_ids, "dispatcher-1")


def test_preview_is_read_only(setup, session_factory) -> None:
    _, dispatch, incident_id = setup
    before = _snapshot(session_factory)

    routes = dispatch.preview_routes(incident_id, ["FIRE-001", "POL-002"])

    assert [r["unit_id"] for r in routes] == ["FIRE-001", "POL-002"]
    assert all(len(r["route"]) == 11 for r in routes)
    assert all(r["distance_km"] >= 0 for r in routes)
    assert _snapshot(session_factory) == before


def test_preview_unknown_ids_are_not_found(setup) -> None:
    _, dispatch, incident_id = setup
    with pytest.raises(NotFoundError):
        dispatch.preview_routes("INC-20250115-0404", ["FIRE-001"])
    with pytest.raises(NotFoundError):
        dispatch.preview_routes(incident_id, ["NOPE-1"])


def test_release_completes_dispatch_and_frees_unit(setup, session_factory) -> None:
    _, dispatch, incident_id = setup
    dispatch.create_dispatch(incident_id, ["FIRE-001"], "dispatcher-1")

    result = dispatch.release_unit("FIRE-001", "dispatcher-1")

    assert result.unit["status"] == "available"
    assert len(result.completed_dispatch_ids) == 1
    assert dispatch.list_dispatches(incident_id=incident_id) == []
    with session_factory() as session:
        completed = session.query(Dispatch).one()
        assert completed.status == "completed"
        assert completed.completed_at is not None
        entry = session.query(AuditLog).filter(AuditLog.action == "RELEASE_UNIT").one()
        assert (entry.table_name, entry.record_id) == ("units", "FIRE-001")


def test_released_unit_can_be_dispatched_again(setup) -> None:
    _, dispatch, incident_id = setup
    dispatch.create_dispatch(incident_id, ["FIRE-001"], "dispatcher-1")
    dispatch.release_unit("FIRE-001", "dispatcher-1")

    result = dispatch.create_dispatch(incident_id, ["FIRE-001"], "dispatcher-1")

    assert result.dispatched_count == 1
    assert len(dispatch.list_dispatches(incident_id=incident_id, active_only=False)) == 2


def test_release_of_available_unit_is_a_conflict(setup) -> None:
    _, dispatch, _ = setup
    with pytest.raises(ConflictError):
        dispatch.release_unit("FIRE-001", "dispatcher-1")
    with pytest.raises(NotFoundError):
        dispatch.release_unit("FIRE-404", "dispatcher-1")


def test_nearby_units_match_incident_type_nearest_first(setup) -> None:
    _, dispatch, _ = setup

    fire = dispatch.nearby_units("fire", *TIMES_SQUARE)
    assert [u["id"] for u in fire] == ["FIRE-002", "FIRE-001"]
    assert fire[0]["distance_km"] <= fire[1]["distance_km"]

    accident = dispatch.nearby_units("accident", *TIMES_SQUARE)
    assert {u["id"] for u in accident} == {"AMB-001", "POL-001"}  # POL-002 is busy

    assert dispatch.nearby_units("fire", -33.8688, 151.2093) == []
    with pytest.raises(ValidationError):
        dispatch.nearby_units("fire", float("nan"), 0.0)


def test_list_units_filters(setup) -> None:
    _, dispatch, _ = setup
    assert [u["id"] for u in dispatch.list_units(type="police-car")] == ["POL-001", "POL-002"]
    assert [u["id"] for u in dispatch.list_units(status="busy")] == ["POL-002"]
    with pytest.raises(ValidationError):
        dispatch.list_units(status="sleeping")


def test_dispatch_changes_cover_every_touched_row(setup) -> None:
    _, dispatch, incident_id = setup

    result = dispatch.create_dispatch(incident_id, ["FIRE-001", "AMB-001"], "dispatcher-1")

    touched = [(c.table, c.event) for c in result.changes]
    assert touched.count(("dispatches", "INSERT")) == 2
    assert touched.count(("units", "UPDATE")) == 2
    assert touched[-1] == ("incidents", "UPDATE")


def test_slow_routing_does_not_block_other_dispatches(setup, session_factory, clock) -> None:
    incidents, fast, incident_id = setup
    other_id = incidents.report_incident(
        type="medical", severity="high", description="Collapse", lat=40.7500, lng=-73.9900
    ).incident_id
    planning = threading.Event()
    release = threading.Event()

    def slow_planner(*args):
        planning.set()
        release.wait(timeout=10)
        return straight_line_route(*args)

    slow = DispatchService(session_factory=session_factory, clock=clock, route_planner=slow_planner)
    outcome = {}
    worker = threading.Thread(
        target=lambda: outcome.setdefault("slow", slow.create_dispatch(incident_id, ["FIRE-001"], "dispatcher-1"))
    )
    worker.start()
    try:
        assert planning.wait(timeout=5)
        result = fast.create_dispatch(other_id, ["AMB-001"], "dispatcher-2")
        assert result.dispatched_count == 1
        assert "slow" not in outcome
    finally:
        release.set()
        worker.join(timeout=10)

    assert outcome["slow"].dispatched_count == 1


def test_unit_taken_while_routing_is_a_conflict(setup, session_factory, clock) -> None:
    incidents, fast, incident_id = setup
    other_id = incidents.report_incident(
        type="medical", severity="high", description="Collapse", lat=40.7500, lng=-73.9900
    ).incident_id

    def racing_planner(*args):
        fast.create_dispatch(other_id, ["AMB-001"], "dispatcher-2")
        return straight_line_route(*args)

    racer = DispatchService(session_factory=session_factory, clock=clock, route_planner=racing_planner)

    with pytest.raises(ConflictError):
        racer.create_dispatch(incident_id, ["AMB-001"], "dispatcher-1")

    assert fast.list_dispatches(incident_id=incident_id) == []
    assert [d["incident_id"] for d in fast.list_dispatches()] == [other_id]
