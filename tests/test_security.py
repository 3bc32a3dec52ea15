"""Session token tests.

Covers issuing and verifying the HS256 session JWTs accepted by the API,
and the header/cookie resolution in the auth dependency.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt
from starlette.requests import Request

from src.crmsync.api.deps import get_auth_session
from src.crmsync.config import get_settings
from src.crmsync.core.security import SESSION_COOKIE, create_session_token, decode_session_token


def _request(headers: dict[str, str]) -> Request:
    raw = [(k.lower().encode(), v.encode()) for k, v in headers.items()]
    return Request({"type": "http", "method": "GET", "path": "/", "headers": raw})


# ── Token Round Trip ──────────────────────────────────────────────────────────


def test_session_token_round_trip():
    """A freshly issued token decodes to the same user and organization."""
    token = create_session_token("user-1", "org-1", role="admin")

    session = decode_session_token(token)

    assert session is not None
    assert session.user_id == "user-1"
    assert session.organization_id == "org-1"
    assert session.role == "admin"


def test_expired_token_rejected():
    token = create_session_token("user-1", "org-1", expires_delta=timedelta(seconds=-5))

    assert decode_session_token(token) is None


def test_token_signed_with_other_key_rejected():
    settings = get_settings()
    token = jwt.encode(
        {"sub": "user-1", "org": "org-1", "type": "access"},
        "not-the-configured-key",
        algorithm=settings.JWT_ALGORITHM,
    )

    assert decode_session_token(token) is None


def test_wrong_token_type_rejected():
    """Refresh-style tokens must not authenticate API calls."""
    settings = get_settings()
    token = jwt.encode(
        {
            "sub": "user-1",
            "org": "org-1",
            "type": "refresh",
            "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
        },
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )

    assert decode_session_token(token) is None


def test_token_without_organization_rejected():
    settings = get_settings()
    token = jwt.encode(
        {
            "sub": "user-1",
            "type": "access",
            "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
        },
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )

    assert decode_session_token(token) is None


def test_garbage_rejected():
    assert decode_session_token("not.a.jwt") is None


# ── Request Resolution ────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_bearer_header_resolves_session():
    token = create_session_token("user-1", "org-1")

    session = await get_auth_session(_request({"Authorization": f"Bearer {token}"}))

    assert session.organization_id == "org-1"


@pytest.mark.asyncio
async def test_session_cookie_resolves_session():
    token = create_session_token("user-2", "org-2")

    session = await get_auth_session(_request({"Cookie": f"{SESSION_COOKIE}={token}"}))

    assert session.user_id == "user-2"


@pytest.mark.asyncio
async def test_header_takes_precedence_over_cookie():
    header = create_session_token("user-1", "org-header")
    cookie = create_session_token("user-1", "org-cookie")

    session = await get_auth_session(
        _request({"Authorization": f"Bearer {header}", "Cookie": f"{SESSION_COOKIE}={cookie}"})
    )

    assert session.organization_id == "org-header"


@pytest.mark.asyncio
async def test_no_credentials():
    assert await get_auth_session(_request({})) is None
