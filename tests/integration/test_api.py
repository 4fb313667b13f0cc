from __future__ import annotations

import json
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from resq.database import get_db
from resq.jwt_auth import create_access_token
from resq.main import app
from resq.models import Profile
from resq.routers.auth import hash_password
from resq.services.dispatch_service import DispatchService, get_dispatch_service
from resq.services.incident_service import IncidentService, get_incident_service
from resq.services.location.route import straight_line_route
from tests.conftest import add_units

REPORT = {
    "type": "fire",
    "severity": "high",
    "description": "Smoke from third floor",
    "lat": 40.7589,
    "lng": -73.9851,
}


def _bearer(role: str, user_id: str | None = None) -> dict:
    token = create_access_token(user_id or f"{role}-1", role, name=f"Test {role}")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(session_factory, clock) -> Generator[TestClient, None, None]:
    add_units(
        session_factory,
        ("FIRE-001", "fire-truck", 40.7600, -73.9800),
        ("AMB-001", "ambulance", 40.7580, -73.9855),
    )

    def _db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_incident_service] = lambda: IncidentService(
        session_factory=session_factory, clock=clock
    )
    app.dependency_overrides[get_dispatch_service] = lambda: DispatchService(
        session_factory=session_factory, clock=clock, route_planner=straight_line_route
    )
    app.dependency_overrides[get_db] = _db
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


# =============================================================================
# Reporting
# =============================================================================

def test_anonymous_report_is_created_then_merged(client: TestClient) -> None:
    first = client.post("/api/incidents/report", json=REPORT)
    assert first.status_code == 200
    assert first.json() == {
        "status": "created",
        "incident_id": "INC-20250115-0001",
        "verification_count": 1,
    }

    second = client.post("/api/incidents/report", json=REPORT)
    assert second.json()["status"] == "merged"
    assert second.json()["verification_count"] == 2

    listed = client.get("/api/incidents").json()
    assert listed["count"] == 1
    assert listed["incidents"][0]["reported_by_name"] == "Anonymous"


def test_signed_in_reporter_name_comes_from_token(client: TestClient) -> None:
    created = client.post("/api/incidents/report", json=REPORT, headers=_bearer("citizen")).json()

    incident = client.get(f"/api/incidents/{created['incident_id']}").json()

    assert incident["reported_by"] == "citizen-1"
    assert incident["reported_by_name"] == "Test citizen"


@pytest.mark.parametrize("bad", ["NaN", "Infinity", "-91", "\"north\""])
def test_report_with_bad_latitude_is_rejected(client: TestClient, bad: str) -> None:
    body = json.dumps({**REPORT, "lat": 0}).replace('"lat": 0', f'"lat": {bad}')

    response = client.post(
        "/api/incidents/report", content=body, headers={"Content-Type": "application/json"}
    )

    assert response.status_code == 422
    assert response.json()["detail"][0]["loc"] == ["body", "lat"]
    assert client.get("/api/incidents").json()["count"] == 0


def test_report_with_unknown_type_is_rejected(client: TestClient) -> None:
    response = client.post("/api/incidents/report", json={**REPORT, "type": "flood"})
    assert response.status_code == 422


def test_report_with_garbage_token_is_unauthorized(client: TestClient) -> None:
    response = client.post(
        "/api/incidents/report", json=REPORT, headers={"Authorization": "Bearer not-a-jwt"}
    )
    assert response.status_code == 401


def test_unknown_incident_is_404(client: TestClient) -> None:
    assert client.get("/api/incidents/INC-20250115-0404").status_code == 404


# =============================================================================
# Roles
# =============================================================================

def test_dispatch_commit_requires_dispatcher(client: TestClient) -> None:
    incident_id = client.post("/api/incidents/report", json=REPORT).json()["incident_id"]
    body = {"incident_id": incident_id, "unit_ids": ["FIRE-001"]}

    anonymous = client.post("/api/dispatch/commit", json=body)
    assert anonymous.status_code == 401
    assert anonymous.headers["www-authenticate"] == "Bearer"

    citizen = client.post("/api/dispatch/commit", json=body, headers=_bearer("citizen"))
    assert citizen.status_code == 403

    dispatcher = client.post("/api/dispatch/commit", json=body, headers=_bearer("dispatcher"))
    assert dispatcher.status_code == 200
    assert dispatcher.json()["dispatched_count"] == 1
    assert dispatcher.json()["dispatches"][0]["unit_id"] == "FIRE-001"

    again = client.post("/api/dispatch/commit", json=body, headers=_bearer("dispatcher"))
    assert again.status_code == 409


def test_dispatch_commit_rejects_duplicate_units(client: TestClient) -> None:
    incident_id = client.post("/api/incidents/report", json=REPORT).json()["incident_id"]

    response = client.post(
        "/api/dispatch/commit",
        json={"incident_id": incident_id, "unit_ids": ["FIRE-001", "FIRE-001"]},
        headers=_bearer("dispatcher"),
    )

    assert response.status_code == 422


def test_preview_returns_routes(client: TestClient) -> None:
    incident_id = client.post("/api/incidents/report", json=REPORT).json()["incident_id"]

    response = client.post(
        "/api/dispatch/preview", json={"incident_id": incident_id, "unit_ids": ["FIRE-001", "AMB-001"]}
    )

    assert response.status_code == 200
    routes = response.json()["routes"]
    assert [r["unit_id"] for r in routes] == ["FIRE-001", "AMB-001"]
    assert all(len(r["route"]) == 11 for r in routes)


def test_verify_needs_responder_and_audit_log_needs_dispatcher(client: TestClient) -> None:
    incident_id = client.post("/api/incidents/report", json=REPORT).json()["incident_id"]

    assert client.post(f"/api/incidents/{incident_id}/verify", headers=_bearer("citizen")).status_code == 403
    verified = client.post(f"/api/incidents/{incident_id}/verify", headers=_bearer("responder"))
    assert verified.json() == {"success": True, "incident_id": incident_id, "is_verified": True}

    assert client.get(f"/api/incidents/{incident_id}/audit-log", headers=_bearer("responder")).status_code == 403
    audit = client.get(f"/api/incidents/{incident_id}/audit-log", headers=_bearer("dispatcher")).json()
    assert [e["action"] for e in audit["entries"]] == ["REPORT_INCIDENT", "VERIFY_INCIDENT"]
    assert audit["entries"][1]["user_id"] == "responder-1"


def test_resolve_then_release_conflict(client: TestClient) -> None:
    incident_id = client.post("/api/incidents/report", json=REPORT).json()["incident_id"]
    client.post(
        "/api/dispatch/commit",
        json={"incident_id": incident_id, "unit_ids": ["FIRE-001"]},
        headers=_bearer("dispatcher"),
    )

    resolved = client.post(f"/api/incidents/{incident_id}/resolve", headers=_bearer("responder"))
    assert resolved.status_code == 200
    assert resolved.json()["released_unit_ids"] == ["FIRE-001"]

    release = client.post("/api/units/FIRE-001/release", headers=_bearer("dispatcher"))
    assert release.status_code == 409


def test_single_unit_and_dispatch_rows_can_be_refetched(client: TestClient) -> None:
    incident_id = client.post("/api/incidents/report", json=REPORT).json()["incident_id"]
    committed = client.post(
        "/api/dispatch/commit",
        json={"incident_id": incident_id, "unit_ids": ["FIRE-001"]},
        headers=_bearer("dispatcher"),
    ).json()
    dispatch_id = committed["dispatches"][0]["dispatch_id"]

    dispatch = client.get(f"/api/dispatch/{dispatch_id}").json()
    assert dispatch["id"] == dispatch_id
    assert dispatch["route"] == committed["dispatches"][0]["route"]
    assert client.get("/api/units/FIRE-001").json()["status"] == "dispatched"
    assert client.get("/api/units/FIRE-404").status_code == 404
    assert client.get("/api/dispatch/nope").status_code == 404


def test_nearby_units_endpoint(client: TestClient) -> None:
    response = client.get(
        "/api/units/nearby", params={"incident_type": "medical", "lat": 40.7589, "lng": -73.9851}
    )
    assert response.status_code == 200
    assert [u["id"] for u in response.json()["units"]] == ["AMB-001"]


# =============================================================================
# Auth
# =============================================================================

def test_login_sets_cookie_and_me_reads_it(client: TestClient, session_factory) -> None:
    with session_factory() as session:
        session.add(Profile(
            id="staff-1", email="dispatch@resq.local", full_name="Dana Dispatch",
            role="dispatcher", password_hash=hash_password("correct horse"),
        ))
        session.commit()

    bad = client.post("/api/auth/login", json={"email": "dispatch@resq.local", "password": "wrong"})
    assert bad.status_code == 401

    good = client.post("/api/auth/login", json={"email": "Dispatch@ResQ.local", "password": "correct horse"})
    assert good.status_code == 200
    assert good.json()["role"] == "dispatcher"
    assert "resq_jwt" in good.cookies

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {good.json()['access_token']}"})
    assert me.json()["user_id"] == "staff-1"
    assert me.json()["name"] == "Dana Dispatch"


def test_disabled_account_cannot_log_in(client: TestClient, session_factory) -> None:
    with session_factory() as session:
        session.add(Profile(
            id="staff-2", email="gone@resq.local", role="responder",
            password_hash=hash_password("pw"), active=False,
        ))
        session.commit()

    response = client.post("/api/auth/login", json={"email": "gone@resq.local", "password": "pw"})
    assert response.status_code == 403


def test_profile_with_unknown_role_cannot_log_in(client: TestClient, session_factory) -> None:
    with session_factory() as session:
        session.add(Profile(
            id="staff-3", email="odd@resq.local", role="superuser", password_hash=hash_password("pw"),
        ))
        session.commit()

    response = client.post("/api/auth/login", json={"email": "odd@resq.local", "password": "pw"})
    assert response.status_code == 403


def test_health_and_root(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "healthy"}
    assert client.get("/").json()["service"] == "ResQ API"


# =============================================================================
# Change feed
# =============================================================================

def test_change_feed_delivers_new_incident(client: TestClient) -> None:
    with client.websocket_connect("/ws/changes") as ws:
        hello = ws.receive_json()
        assert hello["type"] == "connected"
        assert hello["role"] == "anonymous"

        incident_id = client.post("/api/incidents/report", json=REPORT).json()["incident_id"]

        message = ws.receive_json()
        assert message["type"] == "INSERT"
        assert message["table"] == "incidents"
        assert message["record"]["id"] == incident_id
        assert message["record"]["lat"] == pytest.approx(40.7589)


def test_change_feed_answers_ping(client: TestClient) -> None:
    with client.websocket_connect(f"/ws/changes?token={create_access_token('u-1', 'dispatcher')}") as ws:
        assert ws.receive_json()["role"] == "dispatcher"
        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}


def test_change_feed_refuses_bad_token(client: TestClient) -> None:
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect("/ws/changes?token=garbage") as ws:
            ws.receive_json()
    assert excinfo.value.code == 4001
