"""
Change-feed consumer.

Reads /ws/changes and applies every row event to an EntityState through
the same upsert_* methods local writes use, so an invalid row from the
server is refused exactly like an invalid local one.

Events for different rows may arrive out of order; per row, EntityState
drops anything older than what it holds. A dropped connection puts the
state in degraded mode (cached rows stay visible) and the consumer
reconnects with exponential backoff.

Rows too large for a NOTIFY payload arrive as refresh hints (id only);
with a ResQClient attached they are re-fetched over HTTP and applied
through the same path.
"""

import asyncio
import json
import logging
from typing import Optional, Set, Tuple
from urllib.parse import urlencode

import httpx
import websockets
from websockets.exceptions import WebSocketException

from resq.client.api import ResQApiError, ResQClient
from resq.client.state import EntityState, InvalidEntity

logger = logging.getLogger(__name__)

CONTROL_TYPES = ("connected", "ping", "pong")
ROW_EVENTS = ("INSERT", "UPDATE", "DELETE")
REFRESH_TABLES = ("incidents", "units", "dispatches")

RECONNECT_MIN_DELAY = 1
RECONNECT_MAX_DELAY = 30


class ChangeFeedConsumer:

    def __init__(
        self,
        state: EntityState,
        url: str,
        token: Optional[str] = None,
        client: Optional[ResQClient] = None,
    ):
        self.state = state
        self.url = url
        self.token = token
        # Used to re-fetch rows announced by refresh hints
        self.client = client
        self.applied = 0
        self.dropped = 0
        self.rejected = 0
        # (table, id) of rows whose payload was too large for NOTIFY;
        # drain_refresh() fetches and applies them
        self.pending_refresh: Set[Tuple[str, str]] = set()

    def connect_url(self) -> str:
        if not self.token:
            return self.url
        sep = "&" if "?" in self.url else "?"
        return f"{self.url}{sep}{urlencode({'token': self.token})}"

    # -------------------------------------------------------------------------
    # Event application
    # -------------------------------------------------------------------------

    def apply(self, event: dict) -> bool:
        """
        Apply one feed message. True if EntityState changed.

        Invalid rows are counted in `rejected` and logged; stale ones in
        `dropped`. Neither stops the feed.
        """
        msg_type = event.get("type")
        if msg_type in CONTROL_TYPES:
            return False
        if msg_type not in ROW_EVENTS:
            logger.warning(f"Unknown change-feed message type: {msg_type!r}")
            self.rejected += 1
            return False

        table = event.get("table")
        record = event.get("record") or {}

        if event.get("refresh") and msg_type != "DELETE":
            if table not in REFRESH_TABLES or not record.get("id"):
                logger.warning(f"Unusable refresh hint: table={table!r} id={record.get('id')!r}")
                self.rejected += 1
                return False
            self.pending_refresh.add((table, record["id"]))
            return False

        if msg_type == "DELETE":
            try:
                changed = self.state.remove(table, record.get("id"))
            except InvalidEntity as e:
                logger.warning(f"Refused change-feed delete: {e}")
                self.rejected += 1
                return False
            return self._count(changed)

        return self._apply_row(table, record)

    def _apply_row(self, table: str, record: dict) -> bool:
        try:
            if table == "incidents":
                changed = self.state.upsert_incident(record)
            elif table == "units":
                changed = self.state.upsert_unit(record)
            elif table == "dispatches":
                changed = self.state.upsert_dispatch(record)
            else:
                raise InvalidEntity(f"Unknown table: {table}")
        except InvalidEntity as e:
            logger.warning(f"Refused change-feed row: {e}")
            self.rejected += 1
            return False

        return self._count(changed)

    def _count(self, changed: bool) -> bool:
        if changed:
            self.applied += 1
        else:
            self.dropped += 1
        return changed

    def drain_refresh(self, client: Optional[ResQClient] = None) -> int:
        """
        Re-fetch every row named by a refresh hint and apply it through the
        validated upsert path. Returns how many rows changed state.

        A row the server no longer has is discarded. A transport error marks
        the state degraded and propagates; hints not yet fetched stay pending.
        """
        client = client or self.client
        if client is None:
            raise ValueError("drain_refresh needs a ResQClient")

        changed = 0
        for table, row_id in sorted(self.pending_refresh):
            try:
                record = client.fetch_row(table, row_id)
            except ResQApiError as e:
                if e.status_code != 404:
                    raise
                logger.info(f"Refresh hint for missing {table} row {row_id}, discarding")
                self.pending_refresh.discard((table, row_id))
                continue
            except httpx.TransportError as e:
                self.state.mark_degraded(f"row refresh: {e}")
                raise

            self.pending_refresh.discard((table, row_id))
            if self._apply_row(table, record):
                changed += 1
        return changed

    def _decode(self, raw) -> Optional[dict]:
        try:
            event = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Invalid JSON on change feed: {e}")
            self.rejected += 1
            return None
        if not isinstance(event, dict):
            self.rejected += 1
            return None
        return event

    def apply_raw(self, raw: str) -> bool:
        event = self._decode(raw)
        return self.apply(event) if event is not None else False

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def run(self, stop_event: Optional[asyncio.Event] = None):
        """Consume until stop_event is set (or forever), reconnecting on errors."""
        stop_event = stop_event or asyncio.Event()
        retry_delay = RECONNECT_MIN_DELAY

        while not stop_event.is_set():
            try:
                async with websockets.connect(self.connect_url()) as ws:
                    self.state.mark_live()
                    retry_delay = RECONNECT_MIN_DELAY
                    await self._consume(ws, stop_event)
            except asyncio.CancelledError:
                raise
            except (OSError, WebSocketException) as e:
                self.state.mark_degraded(f"change feed: {e}")
                logger.warning(f"Change feed disconnected, retrying in {retry_delay}s")
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=retry_delay)
                except asyncio.TimeoutError:
                    pass
                retry_delay = min(retry_delay * 2, RECONNECT_MAX_DELAY)

    async def _consume(self, ws, stop_event: asyncio.Event):
        while not stop_event.is_set():
            try:
                raw = await asyncio.wait_for(ws.recv(), timeout=1)
            except asyncio.TimeoutError:
                continue
            event = self._decode(raw)
            if event is None:
                continue
            if event.get("type") == "ping":
                await ws.send(json.dumps({"type": "pong"}))
                continue
            self.apply(event)
            if self.pending_refresh and self.client is not None:
                try:
                    await asyncio.to_thread(self.drain_refresh)
                except (httpx.HTTPError, ResQApiError) as e:
                    logger.warning(f"Row refresh failed, {len(self.pending_refresh)} still pending: {e}")
