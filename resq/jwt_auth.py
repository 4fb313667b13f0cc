"""
JWT Authentication Module for ResQ

Access tokens are signed JWTs (HS256) carrying the user id, role and
display name. Validated by signature only, no database hit.

Delivery:
- API clients: Authorization: Bearer <token> header
- Browser: httpOnly cookie named "resq_jwt"
- WebSocket: ?token=<jwt> query parameter during handshake

Roles:
- citizen:    report incidents
- responder:  verify and resolve incidents
- dispatcher: everything a responder can, plus dispatch and unit release
- admin:      everything

DEPENDENCIES: PyJWT
"""

import logging
from datetime import datetime, timezone, timedelta
from typing import Optional

import jwt  # PyJWT
from fastapi import Request

from resq.config import JWT_SECRET, ACCESS_TOKEN_MINUTES
from resq.errors import AuthorizationError, PermissionDenied
from resq.models import ROLES

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_LIFETIME = timedelta(minutes=ACCESS_TOKEN_MINUTES)

ACCESS_COOKIE = "resq_jwt"

DISPATCH_ROLES = ("dispatcher", "admin")
VERIFY_ROLES = ("dispatcher", "admin", "responder")

# =============================================================================
# TOKEN CREATION
# =============================================================================


def create_access_token(
    user_id: str,
    role: str,
    name: Optional[str] = None,
    lifetime: Optional[timedelta] = None,
) -> str:
    """
    Create a signed JWT access token.

    Args:
        user_id: Profile ID
        role: citizen, responder, dispatcher or admin
        name: Display name (denormalized onto reports)
        lifetime: Override the configured token lifetime

    Returns:
        Encoded JWT string
    """
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role}")

    now = datetime.now(timezone.utc)

    payload = {
        "user_id": user_id,
        "role": role,
        "name": name,
        "iat": now,
        "exp": now + (lifetime or ACCESS_TOKEN_LIFETIME),
    }

    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


# =============================================================================
# TOKEN VALIDATION
# =============================================================================


class TokenClaims:
    """Parsed and validated JWT claims."""

    __slots__ = ("user_id", "role", "name", "exp")

    def __init__(self, payload: dict):
        self.user_id = payload["user_id"]
        self.role = payload.get("role", "citizen")
        self.name = payload.get("name")
        self.exp = payload.get("exp")

    def has_role(self, *roles: str) -> bool:
        return self.role in roles


def validate_access_token(token: str) -> Optional[TokenClaims]:
    """
    Validate a JWT access token by checking its signature and expiration.

    Returns:
        TokenClaims if valid, None if invalid/expired.
    """
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        return TokenClaims(payload)
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid JWT: {e}")
        return None
    except KeyError:
        logger.warning("JWT missing user_id claim")
        return None


# =============================================================================
# TOKEN EXTRACTION (multi-transport)
# =============================================================================


def extract_token_from_request(request) -> Optional[str]:
    """
    Extract JWT access token from request.

    Priority order:
    1. Authorization: Bearer <token> header
    2. resq_jwt cookie (browser)
    """
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None

    token = request.cookies.get(ACCESS_COOKIE)
    if token:
        return token

    return None


def extract_token_from_websocket_params(websocket) -> Optional[str]:
    """
    Extract JWT from WebSocket query parameters, falling back to the cookie.
    """
    token = websocket.query_params.get("token")
    if token:
        return token

    token = websocket.cookies.get(ACCESS_COOKIE)
    if token:
        return token

    return None


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================


def get_optional_claims(request: Request) -> Optional[TokenClaims]:
    """Claims if a valid token was sent, None for anonymous callers.

    A token that is present but invalid is still an error: the caller
    meant to authenticate.
    """
    token = extract_token_from_request(request)
    if not token:
        return None
    claims = validate_access_token(token)
    if not claims:
        raise AuthorizationError("Invalid or expired token")
    return claims


def get_current_claims(request: Request) -> TokenClaims:
    token = extract_token_from_request(request)
    if not token:
        raise AuthorizationError("Missing authorization header")
    claims = validate_access_token(token)
    if not claims:
        raise AuthorizationError("Invalid or expired token")
    return claims


def require_roles(*roles: str):
    """Dependency factory: valid token AND one of the given roles."""
    unknown = [r for r in roles if r not in ROLES]
    if unknown:
        raise ValueError(f"Unknown role(s): {', '.join(unknown)}")

    def _dependency(request: Request) -> TokenClaims:
        claims = get_current_claims(request)
        if not claims.has_role(*roles):
            logger.warning(f"User {claims.user_id} ({claims.role}) denied; needs {roles}")
            raise PermissionDenied(f"Role '{claims.role}' does not have permission for this action")
        return claims

    return _dependency
