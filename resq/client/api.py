"""
Thin HTTP client for the ResQ API (httpx).

Every failed call raises: ResQApiError for an HTTP error answer,
httpx.TransportError when the server cannot be reached. refresh()
additionally flags the EntityState as degraded on transport errors so
the cached rows stay on screen.
"""

import logging
from typing import List, Optional

import httpx

from resq.client.state import EntityState

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10


class ResQApiError(Exception):
    def __init__(self, status_code: int, detail):
        super().__init__(f"HTTP {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class ResQClient:

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.token = token
        self._http = httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout, transport=transport)

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # -------------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------------

    def _request(self, method: str, path: str, **kwargs):
        headers = kwargs.pop("headers", {})
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        response = self._http.request(method, path, headers=headers, **kwargs)
        if response.status_code >= 400:
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            raise ResQApiError(response.status_code, detail)
        return response.json()

    # -------------------------------------------------------------------------
    # Auth
    # -------------------------------------------------------------------------

    def login(self, email: str, password: str) -> dict:
        data = self._request("POST", "/api/auth/login", json={"email": email, "password": password})
        self.token = data["access_token"]
        return data

    # -------------------------------------------------------------------------
    # Incidents
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
        reported_by_name: Optional[str] = None,
    ) -> dict:
        body = {
            "type": type,
            "severity": severity,
            "description": description,
            "lat": lat,
            "lng": lng,
            "address": address,
            "image_url": image_url,
            "reported_by_name": reported_by_name,
        }
        return self._request("POST", "/api/incidents/report", json=body)

    def list_incidents(self, type: Optional[str] = None, status: Optional[str] = None, limit: int = 100) -> List[dict]:
        params = {"limit": limit}
        if type:
            params["type"] = type
        if status:
            params["status"] = status
        return self._request("GET", "/api/incidents", params=params)["incidents"]

    def get_incident(self, incident_id: str) -> dict:
        return self._request("GET", f"/api/incidents/{incident_id}")

    def verify_incident(self, incident_id: str) -> dict:
        return self._request("POST", f"/api/incidents/{incident_id}/verify")

    def resolve_incident(self, incident_id: str) -> dict:
        return self._request("POST", f"/api/incidents/{incident_id}/resolve")

    # -------------------------------------------------------------------------
    # Units / dispatch
    # -------------------------------------------------------------------------

    def list_units(self) -> List[dict]:
        return self._request("GET", "/api/units")["units"]

    def nearby_units(self, incident_type: str, lat: float, lng: float) -> List[dict]:
        params = {"incident_type": incident_type, "lat": lat, "lng": lng}
        return self._request("GET", "/api/units/nearby", params=params)["units"]

    def preview_routes(self, incident_id: str, unit_ids: List[str]) -> List[dict]:
        body = {"incident_id": incident_id, "unit_ids": list(unit_ids)}
        return self._request("POST", "/api/dispatch/preview", json=body)["routes"]

    def dispatch(self, incident_id: str, unit_ids: List[str]) -> dict:
        body = {"incident_id": incident_id, "unit_ids": list(unit_ids)}
        return self._request("POST", "/api/dispatch/commit", json=body)

    def release_unit(self, unit_id: str) -> dict:
        return self._request("POST", f"/api/units/{unit_id}/release")

    def get_unit(self, unit_id: str) -> dict:
        return self._request("GET", f"/api/units/{unit_id}")

    def get_dispatch(self, dispatch_id: str) -> dict:
        return self._request("GET", f"/api/dispatch/{dispatch_id}")

    def fetch_row(self, table: str, row_id: str) -> dict:
        """Current server copy of one incidents/units/dispatches row."""
        getters = {
            "incidents": self.get_incident,
            "units": self.get_unit,
            "dispatches": self.get_dispatch,
        }
        if table not in getters:
            raise ValueError(f"Unknown table: {table}")
        return getters[table](row_id)

    # -------------------------------------------------------------------------
    # State sync
    # -------------------------------------------------------------------------

    def refresh(self, state: EntityState) -> int:
        """
        Reload incidents and units into state. On a transport error the
        state goes degraded (cache kept) and the error is re-raised.
        Returns how many rows the state refused.
        """
        try:
            incidents = self.list_incidents(limit=500)
            units = self.list_units()
        except httpx.TransportError as e:
            state.mark_degraded(f"refresh: {e}")
            raise

        refused = state.load(incidents=incidents, units=units)
        state.mark_live()
        return refused
