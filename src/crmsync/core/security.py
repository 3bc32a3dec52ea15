"""Session token handling for the external auth service.

Authentication itself lives elsewhere; this service only verifies the HS256
session JWTs that service issues and turns them into an AuthSession. Tokens
are accepted from the ``Authorization: Bearer`` header or the ``session``
cookie set by the web app.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import structlog
from jose import JWTError, jwt

from src.crmsync.config import get_settings
from src.crmsync.integrations.schemas import AuthSession

logger = structlog.get_logger(__name__)

SESSION_COOKIE = "session"


# ── JWT Token Creation ────────────────────────────────────────────────────────


def create_session_token(
    user_id: str,
    organization_id: str,
    role: str = "member",
    expires_delta: timedelta | None = None,
) -> str:
    """Issue a session token (used by local tooling and tests).

    Claims: sub (user id), org (organization id), role, iat, exp, type="access".
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES))
    claims = {
        "sub": user_id,
        "org": organization_id,
        "role": role,
        "iat": now,
        "exp": expire,
        "type": "access",
    }
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


# ── JWT Token Verification ────────────────────────────────────────────────────


def decode_session_token(token: str) -> AuthSession | None:
    """Decode a session token.

    Returns:
        AuthSession, or None if the token is invalid, expired, the wrong
        type, or carries no organization.
    """
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError as exc:
        logger.debug("auth.token_invalid", error=str(exc))
        return None

    if payload.get("type") != "access" or not payload.get("sub") or not payload.get("org"):
        return None
    return AuthSession(
        user_id=str(payload["sub"]),
        organization_id=str(payload["org"]),
        role=str(payload.get("role") or "member"),
    )
