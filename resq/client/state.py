"""
Client-side state containers.

Two independent objects instead of one shared store:

EntityState     - server-derived rows (incidents, units, dispatches) plus
                  the connection health flag. Every write goes through the
                  upsert_* methods, which reject rows with non-finite or
                  out-of-range coordinates and drop per-row updates older
                  than the copy already held.
UiPreferences   - pure presentation state (dark mode, type filter,
                  selection, heatmap, sidebar). Never touched by the feed.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Dict, List, Optional

from resq.models import INCIDENT_TYPES, ACTIVE_INCIDENT_STATUSES
from resq.services.location.distance import is_valid_lat_lng

logger = logging.getLogger(__name__)


class InvalidEntity(ValueError):
    """Row refused by the validated mutation path"""


def _parse_timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise InvalidEntity(f"Unparseable timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _check_coordinates(kind: str, record: dict):
    if not is_valid_lat_lng(record.get("lat"), record.get("lng")):
        raise InvalidEntity(
            f"{kind} {record.get('id')!r} has invalid coordinates "
            f"lat={record.get('lat')!r} lng={record.get('lng')!r}"
        )


def _check_route(record: dict):
    for point in record.get("route") or []:
        if not isinstance(point, (list, tuple)) or len(point) != 2 or not is_valid_lat_lng(*point):
            raise InvalidEntity(f"dispatch {record.get('id')!r} has an invalid route point {point!r}")


# =============================================================================
# SERVER-DERIVED ENTITIES
# =============================================================================

class EntityState:

    def __init__(self):
        self.incidents: Dict[str, dict] = {}
        self.units: Dict[str, dict] = {}
        self.dispatches: Dict[str, dict] = {}
        self.degraded = False
        self.last_error: Optional[str] = None

    # -------------------------------------------------------------------------
    # Validated mutation path
    # -------------------------------------------------------------------------

    def upsert_incident(self, record: dict) -> bool:
        _check_coordinates("incident", record)
        return self._upsert(self.incidents, "incident", record)

    def upsert_unit(self, record: dict) -> bool:
        _check_coordinates("unit", record)
        return self._upsert(self.units, "unit", record)

    def upsert_dispatch(self, record: dict) -> bool:
        _check_route(record)
        return self._upsert(self.dispatches, "dispatch", record)

    def _upsert(self, table: Dict[str, dict], kind: str, record: dict) -> bool:
        """
        Store a copy of record. Returns False (and keeps the held copy)
        when the incoming row is older than the one already applied.
        """
        row_id = record.get("id")
        if not row_id:
            raise InvalidEntity(f"{kind} without id")

        incoming = _parse_timestamp(record.get("updated_at"))
        held = table.get(row_id)
        if held is not None and incoming is not None:
            current = _parse_timestamp(held.get("updated_at"))
            if current is not None and incoming < current:
                logger.debug(f"Dropped stale {kind} {row_id} ({incoming} < {current})")
                return False

        table[row_id] = dict(record)
        return True

    def remove(self, table_name: str, row_id: str) -> bool:
        return self._table(table_name).pop(row_id, None) is not None

    def _table(self, table_name: str) -> Dict[str, dict]:
        tables = {"incidents": self.incidents, "units": self.units, "dispatches": self.dispatches}
        if table_name not in tables:
            raise InvalidEntity(f"Unknown table: {table_name}")
        return tables[table_name]

    def load(self, incidents: List[dict] = (), units: List[dict] = (), dispatches: List[dict] = ()) -> int:
        """
        Bulk load from a REST fetch. Invalid rows are refused one by one
        (logged); returns how many were refused.
        """
        refused = 0
        for upsert, rows in (
            (self.upsert_incident, incidents),
            (self.upsert_unit, units),
            (self.upsert_dispatch, dispatches),
        ):
            for row in rows:
                try:
                    upsert(row)
                except InvalidEntity as e:
                    logger.warning(f"Refused row on load: {e}")
                    refused += 1
        return refused

    # -------------------------------------------------------------------------
    # Connection health
    # -------------------------------------------------------------------------

    def mark_degraded(self, reason: str):
        if not self.degraded:
            logger.warning(f"Entering degraded mode, showing cached data: {reason}")
        self.degraded = True
        self.last_error = reason

    def mark_live(self):
        if self.degraded:
            logger.info("Connection restored, leaving degraded mode")
        self.degraded = False
        self.last_error = None

    # -------------------------------------------------------------------------
    # Views
    # -------------------------------------------------------------------------

    def active_incidents(self) -> List[dict]:
        rows = [i for i in self.incidents.values() if i.get("status") in ACTIVE_INCIDENT_STATUSES]
        return sorted(rows, key=lambda i: i.get("reported_at") or "", reverse=True)

    def visible_incidents(self, prefs: "UiPreferences") -> List[dict]:
        rows = self.active_incidents()
        if prefs.type_filter:
            rows = [i for i in rows if i.get("type") == prefs.type_filter]
        return rows

    def available_units(self) -> List[dict]:
        return sorted(
            (u for u in self.units.values() if u.get("status") == "available"),
            key=lambda u: u["id"],
        )


# =============================================================================
# UI PREFERENCES
# =============================================================================

@dataclass
class UiPreferences:
    dark_mode: bool = False
    type_filter: Optional[str] = None
    selected_incident_id: Optional[str] = None
    show_heatmap: bool = False
    sidebar_open: bool = True

    def toggle_dark_mode(self) -> bool:
        self.dark_mode = not self.dark_mode
        return self.dark_mode

    def toggle_heatmap(self) -> bool:
        self.show_heatmap = not self.show_heatmap
        return self.show_heatmap

    def toggle_sidebar(self) -> bool:
        self.sidebar_open = not self.sidebar_open
        return self.sidebar_open

    def set_filter(self, incident_type: Optional[str]):
        """None or "all" clears the filter"""
        if incident_type in (None, "", "all"):
            self.type_filter = None
            return
        if incident_type not in INCIDENT_TYPES:
            raise ValueError(f"Unknown incident type filter: {incident_type}")
        self.type_filter = incident_type

    def select_incident(self, incident_id: Optional[str]):
        self.selected_incident_id = incident_id

    def to_dict(self) -> dict:
        return asdict(self)
