"""REST endpoints for CRM connection management.

Browser-facing OAuth routes (authorize, callback) always answer with a
redirect back to the integrations page, carrying either ``connected`` or an
``error`` code; JSON routes (demo, status, sync, disconnect, sync logs)
require a session and answer with status codes.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import urlencode

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field

from src.crmsync.api.deps import (
    get_auth_session,
    get_crm_config,
    get_demo_service,
    get_integration_repository,
    get_oauth_manager,
    get_provider_registry,
    get_sync_engine,
    get_task_queue,
    require_session,
)
from src.crmsync.config import CRMSyncConfig, get_settings
from src.crmsync.integrations.demo import DEMO_PROVIDERS
from src.crmsync.integrations.errors import (
    CRMSyncError,
    IntegrationExistsError,
    IntegrationNotConnectedError,
    InvalidStateError,
    SyncInProgressError,
)
from src.crmsync.integrations.schemas import (
    AuthSession,
    CRMProvider,
    IntegrationRead,
    IntegrationStatus,
    SyncLogRead,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/integrations", tags=["integrations"])

STATUS_LOG_LIMIT = 10
MAX_LOG_LIMIT = 100


# ── Response Schemas ─────────────────────────────────────────────────────────


class SyncLogResponse(BaseModel):
    """One sync log row, datetimes as ISO strings."""

    id: str
    entity_type: str
    operation: str
    direction: str
    status: str
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_skipped: int = 0
    records_failed: int = 0
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    started_at: str | None = None
    completed_at: str | None = None


class IntegrationResponse(BaseModel):
    """Integration status without credentials."""

    id: str
    provider: str
    status: str
    is_demo: bool = False
    instance_url: str | None = None
    last_sync_at: str | None = None
    last_sync_status: str | None = None
    last_sync_error: str | None = None
    created_at: str | None = None


class IntegrationStatusResponse(BaseModel):
    connected: bool
    integration: IntegrationResponse | None = None
    recent_logs: list[SyncLogResponse] = Field(default_factory=list)


class SyncResponse(BaseModel):
    success: bool
    counts: dict[str, Any] | None = None
    error: str | None = None


class ActionResponse(BaseModel):
    success: bool
    message: str | None = None


# ── Conversion Helpers ───────────────────────────────────────────────────────


def _iso(value: Any) -> str | None:
    return value.isoformat() if value else None


def _integration_to_response(integration: IntegrationRead) -> IntegrationResponse:
    return IntegrationResponse(
        id=integration.id,
        provider=integration.provider.value,
        status=integration.status.value,
        is_demo=integration.is_demo,
        instance_url=integration.instance_url,
        last_sync_at=_iso(integration.last_sync_at),
        last_sync_status=(
            integration.last_sync_status.value if integration.last_sync_status else None
        ),
        last_sync_error=integration.last_sync_error,
        created_at=_iso(integration.created_at),
    )


def _sync_log_to_response(log: SyncLogRead) -> SyncLogResponse:
    return SyncLogResponse(
        id=log.id,
        entity_type=log.entity_type,
        operation=log.operation.value,
        direction=log.direction.value,
        status=log.status.value,
        records_processed=log.records_processed,
        records_created=log.records_created,
        records_updated=log.records_updated,
        records_skipped=log.records_skipped,
        records_failed=log.records_failed,
        error_message=log.error_message,
        metadata=log.metadata,
        started_at=_iso(log.started_at),
        completed_at=_iso(log.completed_at),
    )


def _integrations_redirect(**params: str) -> RedirectResponse:
    """302 back to the integrations page with a query string."""
    url = f"{get_settings().frontend_url}/integrations"
    if params:
        url = f"{url}?{urlencode(params)}"
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)


# ── OAuth Flow ───────────────────────────────────────────────────────────────


@router.get("/{provider}/authorize")
async def authorize(
    provider: str,
    request: Request,
    session: AuthSession | None = Depends(get_auth_session),
) -> RedirectResponse:
    """Start the OAuth flow: redirect to the provider's consent page."""
    if session is None:
        login = f"{get_settings().frontend_url}/login?{urlencode({'callbackUrl': '/integrations'})}"
        return RedirectResponse(login, status_code=status.HTTP_302_FOUND)

    registry = get_provider_registry(request)
    if not registry.is_valid_provider(provider):
        return _integrations_redirect(error="invalid_provider")

    oauth = get_oauth_manager(request)
    try:
        state = oauth.generate_oauth_state(session.organization_id, provider)
        url = registry.get(provider).get_auth_url(state, oauth.get_redirect_uri(provider))
    except CRMSyncError as exc:
        logger.warning(
            "oauth.authorize_failed",
            organization_id=session.organization_id,
            provider=provider,
            error=str(exc),
        )
        return _integrations_redirect(error=str(exc))

    logger.info("oauth.authorize_started", organization_id=session.organization_id, provider=provider)
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)


@router.get("/{provider}/callback")
async def callback(
    provider: str,
    request: Request,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
) -> RedirectResponse:
    """Complete the OAuth flow and queue webhook setup plus the initial sync.

    The organization comes from the verified state token, never from the
    request, so the callback needs no session.
    """
    registry = get_provider_registry(request)
    if not registry.is_valid_provider(provider):
        return _integrations_redirect(error="invalid_provider")
    if error:
        return _integrations_redirect(error=error)
    if not code or not state:
        return _integrations_redirect(error="missing_parameters")

    oauth = get_oauth_manager(request)
    try:
        oauth_state = oauth.verify_oauth_state(state)
    except InvalidStateError as exc:
        logger.warning("oauth.state_invalid", provider=provider, error=str(exc))
        return _integrations_redirect(error="invalid_state")
    if oauth_state.provider.value != provider:
        return _integrations_redirect(error="provider_mismatch")

    organization_id = oauth_state.organization_id
    try:
        tokens = await registry.get(provider).exchange_code(
            code, oauth.get_redirect_uri(provider)
        )
        integration = await oauth.store_integration_tokens(organization_id, provider, tokens)
    except CRMSyncError as exc:
        logger.warning(
            "oauth.callback_failed",
            organization_id=organization_id,
            provider=provider,
            error=str(exc),
        )
        return _integrations_redirect(error=str(exc))

    engine = get_sync_engine(request)
    get_task_queue(request).submit(
        f"setup_integration:{integration.id}",
        engine.setup_integration(organization_id),
    )
    logger.info(
        "oauth.connected",
        organization_id=organization_id,
        provider=provider,
        integration_id=integration.id,
    )
    return _integrations_redirect(connected=provider)


# ── Demo ─────────────────────────────────────────────────────────────────────


@router.post("/demo/{provider}", response_model=ActionResponse)
async def connect_demo(
    provider: str,
    request: Request,
    session: AuthSession | None = Depends(get_auth_session),
    config: CRMSyncConfig = Depends(get_crm_config),
) -> ActionResponse:
    """Create a seeded demo integration without a real OAuth round trip."""
    if not config.demo_mode:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Demo mode is disabled")
    if not get_provider_registry(request).is_valid_provider(provider):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid provider")
    if session is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    try:
        await get_demo_service(request).create_demo_integration(session.organization_id, provider)
    except IntegrationExistsError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    label = DEMO_PROVIDERS[CRMProvider(provider)]
    return ActionResponse(success=True, message=f"{label} connected")


# ── Status & Control ─────────────────────────────────────────────────────────


@router.get("/status", response_model=IntegrationStatusResponse)
async def integration_status(
    session: AuthSession = Depends(require_session),
    repository: Any = Depends(get_integration_repository),
) -> IntegrationStatusResponse:
    """Current integration and its most recent sync logs."""
    integration = await repository.get_integration(session.organization_id)
    if integration is None:
        return IntegrationStatusResponse(connected=False)
    logs = await repository.list_sync_logs(integration.id, limit=STATUS_LOG_LIMIT)
    return IntegrationStatusResponse(
        connected=integration.status != IntegrationStatus.DISCONNECTED,
        integration=_integration_to_response(integration),
        recent_logs=[_sync_log_to_response(log) for log in logs],
    )


@router.post("/sync", response_model=SyncResponse)
async def trigger_sync(
    session: AuthSession = Depends(require_session),
    engine: Any = Depends(get_sync_engine),
) -> SyncResponse:
    """Run a manual sync and report its counts.

    Sync failures are already recorded on the integration and in the sync
    log; the route reports them in the body rather than as a 5xx.
    """
    try:
        counts = await engine.trigger_sync(session.organization_id)
    except (IntegrationNotConnectedError, SyncInProgressError) as exc:
        return SyncResponse(success=False, error=str(exc))
    except CRMSyncError as exc:
        logger.warning("sync.manual_failed", organization_id=session.organization_id, error=str(exc))
        return SyncResponse(success=False, error=str(exc))
    return SyncResponse(success=True, counts=counts.model_dump(exclude={"errors"}))


@router.post("/disconnect", response_model=ActionResponse)
async def disconnect(
    session: AuthSession = Depends(require_session),
    engine: Any = Depends(get_sync_engine),
) -> ActionResponse:
    """Disconnect the organization's CRM. Recipients are kept."""
    try:
        await engine.disconnect_integration(session.organization_id)
    except IntegrationNotConnectedError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return ActionResponse(success=True)


@router.get("/sync-logs", response_model=list[SyncLogResponse])
async def sync_logs(
    limit: int = Query(default=20, ge=1, le=MAX_LOG_LIMIT),
    session: AuthSession = Depends(require_session),
    repository: Any = Depends(get_integration_repository),
) -> list[SyncLogResponse]:
    """Sync history for the organization's integration, newest first."""
    integration = await repository.get_integration(session.organization_id)
    if integration is None:
        return []
    logs = await repository.list_sync_logs(integration.id, limit=limit)
    return [_sync_log_to_response(log) for log in logs]
