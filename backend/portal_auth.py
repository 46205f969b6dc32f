# portal_auth.py - Signed stakeholder sessions for the customer portal
# A portal session is an HS256 JWT stored in a per-space cookie
# (portal_session_<space_id>). It proves an email for exactly one space; it
# never proves authorization on its own (see access_control.resolve_access).

import os
import secrets
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import jwt, JWTError

logger = logging.getLogger("launchpad.portal-auth")

PORTAL_SESSION_SECRET = os.getenv("PORTAL_SESSION_SECRET", "")
if not PORTAL_SESSION_SECRET or len(PORTAL_SESSION_SECRET) < 32:
    PORTAL_SESSION_SECRET = secrets.token_urlsafe(48)
    logger.warning(
        "PORTAL_SESSION_SECRET not set or shorter than 32 chars. Generated ephemeral key; "
        "portal sessions will not survive a restart."
    )

ALGORITHM = "HS256"
PORTAL_SESSION_DAYS = int(os.getenv("PORTAL_SESSION_DAYS", "30"))
COOKIE_SECURE = os.getenv("COOKIE_SECURE", "false").lower() == "true"
COOKIE_PREFIX = "portal_session_"


@dataclass(frozen=True)
class PortalSession:
    email: str
    space_id: str
    expires_at: datetime


def cookie_name(space_id: str) -> str:
    return f"{COOKIE_PREFIX}{space_id}"


def create_portal_session(space_id: str, email: str, expires_delta: Optional[timedelta] = None) -> str:
    """Sign a session token for (space_id, email)."""
    now = datetime.now(timezone.utc)
    expires_at = now + (expires_delta or timedelta(days=PORTAL_SESSION_DAYS))
    claims = {
        "email": email.lower(),
        "space_id": space_id,
        "type": "portal",
        "iat": now,
        "exp": expires_at,
    }
    return jwt.encode(claims, PORTAL_SESSION_SECRET, algorithm=ALGORITHM)


def verify_portal_session(space_id: str, token: Optional[str]) -> Optional[PortalSession]:
    """Return the session if the token is valid, unexpired and issued for this space."""
    if not token:
        return None
    try:
        payload = jwt.decode(token, PORTAL_SESSION_SECRET, algorithms=[ALGORITHM])
    except JWTError as e:
        logger.info(f"Portal session rejected for space {space_id[:8]}: {e}")
        return None

    if payload.get("type") != "portal" or not payload.get("email"):
        return None
    if payload.get("space_id") != space_id:
        logger.warning(
            f"Portal session space mismatch: expected {space_id[:8]}, got {str(payload.get('space_id'))[:8]}"
        )
        return None

    return PortalSession(
        email=payload["email"],
        space_id=space_id,
        expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
    )


def set_session_cookie(response, space_id: str, token: str) -> None:
    response.set_cookie(
        cookie_name(space_id),
        token,
        max_age=PORTAL_SESSION_DAYS * 24 * 3600,
        httponly=True,
        secure=COOKIE_SECURE,
        samesite="lax",
        path="/",
    )


def clear_session_cookie(response, space_id: str) -> None:
    response.delete_cookie(cookie_name(space_id), path="/")
