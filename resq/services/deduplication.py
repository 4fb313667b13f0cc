"""
Report de-duplication.

Two-stage filter for "is this report already a known incident?":

1. candidate_query: active incidents of the same type, reported within
   the merge window, whose coordinates fall in a small lat/lng box
   around the report. Cheap, index-backed, and only an approximation.
2. select_merge_target: exact Haversine distance on those candidates,
   keeping the ones within the merge radius, newest first.

The box is DEDUP_BOX_DEGREES on both axes. One degree of longitude
shrinks toward the poles, so at high latitudes the box is narrower than
the merge radius east/west and a report inside the radius can be missed.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Query, Session

from resq.models import Incident, ACTIVE_INCIDENT_STATUSES
from resq.services.location.distance import (
    DEDUP_BOX_DEGREES,
    bounding_box,
    haversine_m,
)

logger = logging.getLogger(__name__)


def candidate_query(
    db: Session,
    incident_type: str,
    lat: float,
    lng: float,
    now: datetime,
    window_minutes: int = 30,
    box_degrees: float = DEDUP_BOX_DEGREES,
    lock: bool = True,
) -> Query:
    """
    Recent, active, same-type incidents inside the bounding box.

    The window is inclusive: an incident reported exactly window_minutes
    ago is still a candidate. With lock=True the rows are selected
    FOR UPDATE so a concurrent merge waits for this transaction.
    """
    min_lat, max_lat, min_lng, max_lng = bounding_box(lat, lng, box_degrees)
    since = now - timedelta(minutes=window_minutes)

    query = db.query(Incident).filter(
        Incident.type == incident_type,
        Incident.status.in_(ACTIVE_INCIDENT_STATUSES),
        Incident.reported_at >= since,
        Incident.lat.between(min_lat, max_lat),
        Incident.lng.between(min_lng, max_lng),
    )
    if lock:
        query = query.with_for_update()
    return query


def within_radius(
    candidates: Iterable[Incident],
    lat: float,
    lng: float,
    radius_m: float,
    distance_fn: Callable[[float, float, float, float], float] = haversine_m,
) -> List[Tuple[Incident, float]]:
    """(incident, distance_m) for every candidate at or inside radius_m."""
    matches = []
    for incident in candidates:
        distance = distance_fn(lat, lng, incident.lat, incident.lng)
        if distance <= radius_m:
            matches.append((incident, distance))
    return matches


def select_merge_target(
    candidates: Iterable[Incident],
    lat: float,
    lng: float,
    radius_m: float = 50.0,
    distance_fn: Callable[[float, float, float, float], float] = haversine_m,
) -> Optional[Incident]:
    """
    The incident a new report should merge into, or None.

    Most recently reported wins; equal reported_at falls back to the
    highest id (ids sort by date then sequence).
    """
    matches = within_radius(candidates, lat, lng, radius_m, distance_fn)
    if not matches:
        return None

    target, distance = max(matches, key=lambda m: (m[0].reported_at, m[0].id))
    logger.debug(f"Merge target {target.id} at {distance:.1f} m ({len(matches)} in radius)")
    return target
