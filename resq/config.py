"""
Configuration for ResQ

All settings come from environment variables with development defaults.
Read once at import time; restart the service to pick up changes.
"""

import os
import logging
import secrets

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}, using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={raw!r}, using {default}")
        return default


# =============================================================================
# DATABASE
# =============================================================================

DATABASE_URL = os.environ.get("RESQ_DATABASE_URL", "sqlite:///./resq.db")

# Direct PostgreSQL DSN for the LISTEN/NOTIFY change feed (asyncpg).
# Empty = change feed stays in-process (single worker).
NOTIFY_DSN = os.environ.get("RESQ_NOTIFY_DSN", "")
NOTIFY_CHANNEL = "resq_changes"

# =============================================================================
# AUTH
# =============================================================================

# If not set, a random key is generated (tokens invalidated on restart).
_default_secret = secrets.token_urlsafe(64)
JWT_SECRET = os.environ.get("RESQ_JWT_SECRET", _default_secret)
if JWT_SECRET == _default_secret:
    logger.warning(
        "RESQ_JWT_SECRET not set in environment - using random key. "
        "Tokens will be invalidated on restart."
    )

ACCESS_TOKEN_MINUTES = _env_int("RESQ_ACCESS_TOKEN_MINUTES", 60)

# =============================================================================
# EXTERNAL SERVICES
# =============================================================================

GOOGLE_API_KEY = os.environ.get("RESQ_GOOGLE_API_KEY", "")
NOMINATIM_URL = os.environ.get(
    "RESQ_NOMINATIM_URL", "https://nominatim.openstreetmap.org/reverse"
)
USER_AGENT = "ResQ Emergency Response App"

# =============================================================================
# DEDUPLICATION / DISPATCH TUNING
# =============================================================================

MERGE_RADIUS_METERS = _env_float("RESQ_MERGE_RADIUS_METERS", 50.0)
MERGE_WINDOW_MINUTES = _env_int("RESQ_MERGE_WINDOW_MINUTES", 30)
NEARBY_RADIUS_KM = _env_float("RESQ_NEARBY_RADIUS_KM", 50.0)

# =============================================================================
# HTTP
# =============================================================================

CORS_ORIGINS = [
    o.strip() for o in os.environ.get("RESQ_CORS_ORIGINS", "*").split(",") if o.strip()
]

LOG_LEVEL = os.environ.get("RESQ_LOG_LEVEL", "INFO").upper()
