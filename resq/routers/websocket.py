"""
WebSocket change feed.

/ws/changes - every insert/update to incidents, units and dispatches:
    { "type": "INSERT" | "UPDATE", "table": "incidents",
      "record": {...}, "timestamp": "..." }

Anonymous clients may subscribe (citizens see the incident map). A token,
when sent, must be valid.

Multi-worker: with RESQ_NOTIFY_DSN set, changes go out through a
PostgreSQL NOTIFY on the resq_changes channel and every worker's LISTEN
subscriber broadcasts them to its own connections. Without it (or when
the LISTEN connection is down) changes are broadcast directly on this
worker only.
"""

import asyncio
import json
import logging
from typing import Optional, Set

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from resq.config import NOTIFY_CHANNEL, NOTIFY_DSN
from resq.jwt_auth import extract_token_from_websocket_params, validate_access_token

logger = logging.getLogger(__name__)

router = APIRouter()

_connections: Set[WebSocket] = set()
_connections_lock = asyncio.Lock()

# Server-side ping interval (seconds) - keep under common proxy idle timeouts
SERVER_PING_INTERVAL = 30

# Postgres rejects NOTIFY payloads of 8000 bytes or more
NOTIFY_PAYLOAD_LIMIT = 7500


# =============================================================================
# Connection management
# =============================================================================

async def _add_connection(websocket: WebSocket):
    async with _connections_lock:
        _connections.add(websocket)
        logger.info(f"WebSocket /ws/changes connected (total: {len(_connections)})")


async def _remove_connection(websocket: WebSocket):
    async with _connections_lock:
        _connections.discard(websocket)
        logger.info(f"WebSocket /ws/changes disconnected (total: {len(_connections)})")


async def broadcast_change(message: dict):
    """Send one change message to every connection on this worker."""
    async with _connections_lock:
        connections = list(_connections)

    if not connections:
        return

    # Serialize once
    message_json = json.dumps(message)

    failed = []
    for websocket in connections:
        try:
            await websocket.send_text(message_json)
        except Exception as e:
            logger.warning(f"Failed to send to /ws/changes WebSocket: {e}")
            failed.append(websocket)

    if failed:
        async with _connections_lock:
            for ws in failed:
                _connections.discard(ws)


def get_connection_count() -> dict:
    return {
        "changes_connections": len(_connections),
        "notify_enabled": bool(NOTIFY_DSN),
        "listen_connected": bool(_listen_connection and not _listen_connection.is_closed()),
    }


# =============================================================================
# Ping / receive loops
# =============================================================================

async def _server_ping_loop(websocket: WebSocket, stop_event: asyncio.Event):
    """Periodic server pings keep the connection alive through proxies"""
    try:
        while not stop_event.is_set():
            await asyncio.sleep(SERVER_PING_INTERVAL)
            if stop_event.is_set():
                break
            try:
                await websocket.send_json({"type": "ping"})
            except Exception:
                break
    except asyncio.CancelledError:
        pass


async def _receive_loop(websocket: WebSocket, stop_event: asyncio.Event):
    """Answer client pings; anything else from the client is ignored."""
    try:
        while not stop_event.is_set():
            try:
                data = await websocket.receive_text()
                message = json.loads(data)
                if message.get("type") == "ping":
                    await websocket.send_json({"type": "pong"})
            except json.JSONDecodeError as e:
                logger.warning(f"Ignoring non-JSON client frame: {e}")
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"Change feed receive failed: {e}")
    finally:
        stop_event.set()


# =============================================================================
# LISTEN/NOTIFY - cross-worker broadcasting
# =============================================================================

_listen_task: Optional[asyncio.Task] = None
_listen_connection = None  # asyncpg connection for LISTEN (and NOTIFY)
# Broadcasts scheduled from NOTIFY callbacks; the loop only keeps weak refs
_broadcast_tasks: Set[asyncio.Task] = set()


async def notify_change_event(message: dict):
    """
    Publish a change to all workers.

    Goes through pg_notify when the LISTEN connection is up: the LISTEN
    handler on every worker (this one included) does the broadcast, so
    this must not also broadcast directly. Falls back to a direct local
    broadcast otherwise.
    """
    notify_data = json.dumps(message)

    if len(notify_data) > NOTIFY_PAYLOAD_LIMIT:
        logger.warning(f"NOTIFY payload too large ({len(notify_data)} bytes), sending refresh hint")
        # Clients refetch the row by id
        record = message.get("record") or {}
        notify_data = json.dumps({
            "type": message.get("type"),
            "table": message.get("table"),
            "record": {"id": record.get("id"), "updated_at": record.get("updated_at")},
            "timestamp": message.get("timestamp"),
            "refresh": True,
        })

    try:
        if _listen_connection and not _listen_connection.is_closed():
            await _listen_connection.execute("SELECT pg_notify($1, $2)", NOTIFY_CHANNEL, notify_data)
            return
    except Exception as e:
        logger.error(f"NOTIFY failed, falling back to direct broadcast: {e}")

    await broadcast_change(message)


def _on_notification(connection, pid, channel, payload_str):
    """
    asyncpg LISTEN callback (synchronous) - schedules the broadcast.
    """
    try:
        message = json.loads(payload_str)
        if not isinstance(message, dict) or not message.get("table"):
            logger.warning(f"Change notification without table: {payload_str[:200]}")
            return
        loop = asyncio.get_running_loop()
        task = loop.create_task(broadcast_change(message))
        _broadcast_tasks.add(task)
        task.add_done_callback(_broadcast_tasks.discard)
    except json.JSONDecodeError:
        logger.warning(f"Unparseable change notification: {payload_str[:200]}")
    except RuntimeError as e:
        logger.error(f"Could not schedule change broadcast: {e}")


async def start_listen_subscriber(dsn: str = NOTIFY_DSN):
    """
    Keep a direct asyncpg connection LISTENing on the change channel.
    Reconnects with exponential backoff. Runs until cancelled.
    """
    import asyncpg

    global _listen_connection

    retry_delay = 1
    while True:
        try:
            logger.info("LISTEN subscriber connecting to PostgreSQL")
            _listen_connection = await asyncpg.connect(dsn)
            retry_delay = 1

            await _listen_connection.add_listener(NOTIFY_CHANNEL, _on_notification)
            logger.info(f"LISTEN subscriber active on channel '{NOTIFY_CHANNEL}'")

            while True:
                await asyncio.sleep(60)
                if _listen_connection.is_closed():
                    logger.warning("Change channel connection dropped, reconnecting")
                    break

        except asyncio.CancelledError:
            logger.info("Change channel subscriber stopped")
            if _listen_connection and not _listen_connection.is_closed():
                await _listen_connection.close()
            _listen_connection = None
            return
        except Exception as e:
            logger.error(f"Change channel LISTEN failed ({e}), retry in {retry_delay}s")
            _listen_connection = None
            await asyncio.sleep(retry_delay)
            retry_delay = min(retry_delay * 2, 30)


def launch_listen_subscriber() -> Optional[asyncio.Task]:
    """Start the subscriber task when a NOTIFY DSN is configured."""
    global _listen_task
    if not NOTIFY_DSN:
        logger.info("RESQ_NOTIFY_DSN not set - change feed is local to this worker")
        return None
    _listen_task = asyncio.create_task(start_listen_subscriber(NOTIFY_DSN))
    return _listen_task


async def stop_listen_subscriber():
    global _listen_task, _listen_connection

    if _listen_task:
        _listen_task.cancel()
        try:
            await _listen_task
        except asyncio.CancelledError:
            pass
        _listen_task = None

    if _listen_connection and not _listen_connection.is_closed():
        await _listen_connection.close()
    _listen_connection = None


# =============================================================================
# Endpoints
# =============================================================================

@router.websocket("/ws/changes")
async def websocket_changes(websocket: WebSocket):
    """
    Real-time change feed. JWT (query param or cookie) is optional but
    validated before accept() when present.
    """
    token = extract_token_from_websocket_params(websocket)
    role = "anonymous"
    if token:
        claims = validate_access_token(token)
        if not claims:
            await websocket.close(code=4001, reason="Invalid or expired token")
            return
        role = claims.role

    await websocket.accept()
    await _add_connection(websocket)

    try:
        await websocket.send_json({
            "type": "connected",
            "role": role,
            "message": "Connected to ResQ change feed",
        })
    except Exception as e:
        logger.error(f"Change feed greeting failed: {e}")
        await _remove_connection(websocket)
        return

    stop_event = asyncio.Event()
    ping_task = asyncio.create_task(_server_ping_loop(websocket, stop_event))
    receive_task = asyncio.create_task(_receive_loop(websocket, stop_event))

    try:
        done, pending = await asyncio.wait(
            [ping_task, receive_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
    except Exception as e:
        logger.error(f"Change feed connection error: {e}")
    finally:
        stop_event.set()
        ping_task.cancel()
        receive_task.cancel()
        await _remove_connection(websocket)


@router.get("/ws/status")
async def websocket_status():
    return get_connection_count()
