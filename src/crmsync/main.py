"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events that wire the CRM integration services onto ``app.state``,
and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.crmsync.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.crmsync.api.v1 import health
from src.crmsync.api.v1.router import router as v1_router
from src.crmsync.config import CRMSyncConfig, get_settings
from src.crmsync.core.database import close_db, get_session, init_db
from src.crmsync.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.crmsync.integrations import (
    OAuthManager,
    ProviderRegistry,
    RecipientEditService,
    SyncEngine,
    WebhookIngestor,
)
from src.crmsync.integrations.encryption import TokenCipher
from src.crmsync.integrations.handlers import build_handlers
from src.crmsync.integrations.repository import IntegrationRepository
from src.crmsync.integrations.tasks import TaskQueue

SERVICE_NAMES = (
    "crm_config",
    "provider_registry",
    "integration_repository",
    "oauth_manager",
    "sync_engine",
    "webhook_ingestor",
    "recipient_service",
    "demo_service",
)


def wire_services(app: FastAPI, config: CRMSyncConfig, task_queue: TaskQueue) -> None:
    """Build the integration services and attach them to app.state."""
    registry = ProviderRegistry.from_config(config)
    repository = IntegrationRepository(get_session)
    cipher = TokenCipher(config.token_encryption_key)
    oauth = OAuthManager(config, registry, repository, cipher)
    handlers = build_handlers(repository)
    engine = SyncEngine(config, registry, repository, oauth, handlers, task_queue)

    app.state.crm_config = config
    app.state.provider_registry = registry
    app.state.integration_repository = repository
    app.state.oauth_manager = oauth
    app.state.sync_engine = engine
    app.state.webhook_ingestor = WebhookIngestor(registry, repository, oauth, handlers)
    app.state.recipient_service = RecipientEditService(repository, engine)
    app.state.demo_service = engine.demo


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and services on startup, drain on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    task_queue = TaskQueue()
    app.state.task_queue = task_queue

    # A missing encryption key leaves the integration routes answering 503
    # while health and metrics stay up.
    try:
        wire_services(app, CRMSyncConfig.from_settings(settings), task_queue)
        log.info("crmsync.services_initialized", demo_mode=settings.DEMO_MODE)
    except Exception:
        log.warning("crmsync.services_init_failed", exc_info=True)
        for name in SERVICE_NAMES:
            setattr(app.state, name, None)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    await task_queue.shutdown()
    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="CRM Sync API",
        version="0.1.0",
        description="CRM integrations and bidirectional recipient sync",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    # Health probes at the root, everything else under /api/v1
    app.include_router(health.router)
    app.include_router(v1_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
