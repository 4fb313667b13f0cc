"""
Incident and Dispatch Pydantic Schemas

Request bodies are validated here, before any service call runs:
unknown enum values, blank descriptions and out-of-range or non-finite
coordinates never reach the database.
"""

import math
from typing import Optional, List

from pydantic import BaseModel, Field, field_validator, model_validator

from resq.models import INCIDENT_TYPES, INCIDENT_SEVERITIES, INCIDENT_TYPE_ALIASES


def _finite(value: float, name: str) -> float:
    if value is None or not math.isfinite(value):
        raise ValueError(f"{name} must be a finite number")
    return value


# =============================================================================
# REPORTING
# =============================================================================

class IncidentReport(BaseModel):
    """Citizen report (authenticated or anonymous)"""
    type: str
    severity: str
    description: str = Field(..., max_length=5000)
    lat: float = Field(..., allow_inf_nan=True)
    lng: float = Field(..., allow_inf_nan=True)
    address: Optional[str] = Field(None, max_length=500)
    image_url: Optional[str] = Field(None, max_length=2000)
    reported_by_name: Optional[str] = Field(None, max_length=100)

    @field_validator("type")
    @classmethod
    def _check_type(cls, v: str) -> str:
        v = (v or "").strip().lower()
        v = INCIDENT_TYPE_ALIASES.get(v, v)
        if v not in INCIDENT_TYPES:
            raise ValueError(f"type must be one of {', '.join(INCIDENT_TYPES)}")
        return v

    @field_validator("severity")
    @classmethod
    def _check_severity(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v not in INCIDENT_SEVERITIES:
            raise ValueError(f"severity must be one of {', '.join(INCIDENT_SEVERITIES)}")
        return v

    @field_validator("description")
    @classmethod
    def _check_description(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("description is required")
        return v

    @field_validator("lat")
    @classmethod
    def _check_lat(cls, v: float) -> float:
        v = _finite(v, "lat")
        if not -90 <= v <= 90:
            raise ValueError("lat must be between -90 and 90")
        return v

    @field_validator("lng")
    @classmethod
    def _check_lng(cls, v: float) -> float:
        v = _finite(v, "lng")
        if not -180 <= v <= 180:
            raise ValueError("lng must be between -180 and 180")
        return v

    @field_validator("address", "image_url", "reported_by_name")
    @classmethod
    def _blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None


class ReportResponse(BaseModel):
    status: str                     # created | merged
    incident_id: str
    verification_count: int


# =============================================================================
# DISPATCH
# =============================================================================

class UnitSelection(BaseModel):
    """Incident + candidate units (preview and commit share this body)"""
    incident_id: str = Field(..., min_length=1)
    unit_ids: List[str] = Field(..., min_length=1, max_length=50)

    @model_validator(mode="after")
    def _check_units(self):
        cleaned = [u.strip() for u in self.unit_ids]
        if any(not u for u in cleaned):
            raise ValueError("unit_ids must not contain blank ids")
        if len(set(cleaned)) != len(cleaned):
            raise ValueError("unit_ids must not contain duplicates")
        self.unit_ids = cleaned
        return self


class PreviewRoute(BaseModel):
    unit_id: str
    unit_name: str
    route: List[List[float]]
    eta_minutes: int
    distance_km: float


class PreviewResponse(BaseModel):
    incident_id: str
    routes: List[PreviewRoute]


class DispatchRecord(BaseModel):
    dispatch_id: str
    unit_id: str
    unit_name: str
    eta: int
    route: List[List[float]]


class DispatchResponse(BaseModel):
    success: bool
    incident_id: str
    dispatches: List[DispatchRecord]
    dispatched_count: int


class VerifyResponse(BaseModel):
    success: bool
    incident_id: str
    is_verified: bool


# =============================================================================
# AUTH
# =============================================================================

class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=200)


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: str
    role: str
    name: Optional[str] = None
