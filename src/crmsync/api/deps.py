"""FastAPI dependency injection for sessions and integration services.

Services are built once in the application lifespan and hung off
``app.state``; the getters below fetch them per request and answer 503 when
startup did not initialize one.
"""

from __future__ import annotations

from typing import Any

from fastapi import Depends, HTTPException, Request, status

from src.crmsync.config import CRMSyncConfig
from src.crmsync.core.security import SESSION_COOKIE, decode_session_token
from src.crmsync.integrations.schemas import AuthSession


async def get_auth_session(request: Request) -> AuthSession | None:
    """Resolve the caller's session, or None when unauthenticated.

    Checks the Authorization header for a Bearer token first, then the
    session cookie the web app sets for browser navigations (OAuth redirects
    carry no header).
    """
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return decode_session_token(auth_header[7:])
    cookie = request.cookies.get(SESSION_COOKIE)
    if cookie:
        return decode_session_token(cookie)
    return None


async def require_session(
    session: AuthSession | None = Depends(get_auth_session),
) -> AuthSession:
    """Like get_auth_session, but 401 when there is no valid session."""
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return session


def _from_state(request: Request, name: str, label: str) -> Any:
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return service


def get_crm_config(request: Request) -> CRMSyncConfig:
    return _from_state(request, "crm_config", "CRM configuration")


def get_provider_registry(request: Request) -> Any:
    return _from_state(request, "provider_registry", "Provider registry")


def get_integration_repository(request: Request) -> Any:
    return _from_state(request, "integration_repository", "Integration repository")


def get_oauth_manager(request: Request) -> Any:
    return _from_state(request, "oauth_manager", "OAuth manager")


def get_sync_engine(request: Request) -> Any:
    return _from_state(request, "sync_engine", "Sync engine")


def get_webhook_ingestor(request: Request) -> Any:
    return _from_state(request, "webhook_ingestor", "Webhook ingestion")


def get_recipient_service(request: Request) -> Any:
    return _from_state(request, "recipient_service", "Recipient service")


def get_demo_service(request: Request) -> Any:
    return _from_state(request, "demo_service", "Demo service")


def get_task_queue(request: Request) -> Any:
    return _from_state(request, "task_queue", "Task queue")
