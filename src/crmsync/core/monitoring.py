"""Prometheus metrics, Sentry integration, and sync run tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- init_sentry(): Initialize Sentry with organization-aware before_send callback
- track_sync_run(): Context manager for sync run metrics
- record_sync_records() / record_webhook_event() / record_push(): counters
- get_metrics_response(): FastAPI route handler body for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.get_logger(__name__)

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Sync Metrics ─────────────────────────────────────────────────────────────

crm_sync_runs_total = Counter(
    "crm_sync_runs_total",
    "CRM sync runs by outcome",
    ["provider", "operation", "status"],
)

crm_sync_duration_seconds = Histogram(
    "crm_sync_duration_seconds",
    "CRM sync run duration in seconds",
    ["provider", "operation"],
    buckets=(0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0),
)

crm_sync_records_total = Counter(
    "crm_sync_records_total",
    "Inbound CRM records by upsert outcome",
    ["provider", "outcome"],
)

crm_webhook_events_total = Counter(
    "crm_webhook_events_total",
    "CRM webhook events by action and outcome",
    ["provider", "action", "status"],
)

crm_push_total = Counter(
    "crm_push_total",
    "Outbound pushes of local edits to a CRM",
    ["provider", "status"],
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Uses the matched route template (``/api/v1/webhooks/{provider}``) as the
    endpoint label to keep cardinality bounded. Skips /metrics itself.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or request.url.path

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Sync Metrics Helpers ────────────────────────────────────────────────────


@asynccontextmanager
async def track_sync_run(provider: str, operation: str) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks one sync run.

    Usage:
        async with track_sync_run("hubspot", "full_sync") as tracker:
            counts = await ...
            tracker["status"] = counts.status.value

    The status defaults to "SUCCESS" and becomes "FAILED" if the block raises.
    """
    tracker: dict[str, Any] = {"status": "SUCCESS"}
    start_time = time.perf_counter()
    try:
        yield tracker
    except Exception:
        tracker["status"] = "FAILED"
        raise
    finally:
        crm_sync_runs_total.labels(
            provider=provider, operation=operation, status=tracker["status"]
        ).inc()
        crm_sync_duration_seconds.labels(provider=provider, operation=operation).observe(
            time.perf_counter() - start_time
        )


def record_sync_records(provider: str, outcome: str, count: int = 1) -> None:
    if count:
        crm_sync_records_total.labels(provider=provider, outcome=outcome).inc(count)


def record_webhook_event(provider: str, action: str, status: str) -> None:
    crm_webhook_events_total.labels(provider=provider, action=action, status=status).inc()


def record_push(provider: str, success: bool) -> None:
    crm_push_total.labels(provider=provider, status="success" if success else "error").inc()


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK with organization-aware event tagging.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.starlette import StarletteIntegration

    traces_sample_rate = 0.1 if environment == "production" else 1.0

    def before_send(event: dict, hint: dict) -> dict:
        """Tag events with the organization/integration bound to the log context."""
        context = structlog.contextvars.get_contextvars()
        tags = event.setdefault("tags", {})
        for key in ("organization_id", "integration_id", "provider"):
            if context.get(key):
                tags[key] = context[key]
        return event

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
        before_send=before_send,
    )
    logger.info("sentry.initialized", environment=environment)


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
