"""
Auth Router

Email/password login for staff and registered citizens. Issues a JWT
access token, returned in the body and set as an httpOnly cookie.

Endpoints:
    POST /api/auth/login    - Email + password -> access token
    POST /api/auth/logout   - Clear the access cookie
    GET  /api/auth/me       - Claims of the current token
"""

import logging
from datetime import datetime, timezone

import bcrypt
from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from resq.database import get_db
from resq.errors import AuthorizationError, PermissionDenied
from resq.jwt_auth import (
    ACCESS_COOKIE,
    ACCESS_TOKEN_LIFETIME,
    TokenClaims,
    create_access_token,
    get_current_claims,
)
from resq.models import Profile, ROLES
from resq.schemas_incidents import LoginRequest, LoginResponse

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# HELPERS
# =============================================================================


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError as e:
        logger.error(f"Password verification error: {e}")
        return False


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')


# =============================================================================
# LOGIN / LOGOUT
# =============================================================================


@router.post("/login", response_model=LoginResponse)
async def login(
    data: LoginRequest,
    response: Response,
    db: Session = Depends(get_db),
):
    email = data.email.strip().lower()
    profile = db.query(Profile).filter(Profile.email == email).first()

    if not profile or not verify_password(data.password, profile.password_hash):
        logger.warning(f"Failed login for {email}")
        raise AuthorizationError("Invalid email or password")

    if not profile.active:
        raise PermissionDenied("Account is disabled")
    if profile.role not in ROLES:
        logger.error(f"Profile {profile.id} has unknown role {profile.role!r}")
        raise PermissionDenied("Account role is not recognised")

    token = create_access_token(profile.id, profile.role, name=profile.display_name)

    response.set_cookie(
        key=ACCESS_COOKIE,
        value=token,
        max_age=int(ACCESS_TOKEN_LIFETIME.total_seconds()),
        httponly=True,
        samesite="lax",
    )

    logger.info(f"Login: {email} ({profile.role})")

    return LoginResponse(
        access_token=token,
        user_id=profile.id,
        role=profile.role,
        name=profile.display_name,
    )


@router.post("/logout")
async def logout(response: Response):
    response.delete_cookie(ACCESS_COOKIE)
    return {"status": "ok", "message": "Logged out"}


# =============================================================================
# SESSION CHECK (no DB hit)
# =============================================================================


@router.get("/me")
async def me(claims: TokenClaims = Depends(get_current_claims)):
    expires_at = None
    if claims.exp:
        expires_at = datetime.fromtimestamp(claims.exp, tz=timezone.utc).isoformat()
    return {
        "user_id": claims.user_id,
        "role": claims.role,
        "name": claims.name,
        "expires_at": expires_at,
    }
