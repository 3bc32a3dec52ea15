"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready). Readiness checks
the database and that the integration services were wired at startup.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.crmsync.config import get_settings
from src.crmsync.core.database import get_engine

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check database connectivity and service wiring. Returns check results dict."""
    checks: dict = {"database": "ok", "services": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    missing = [
        name
        for name in ("oauth_manager", "sync_engine", "webhook_ingestor")
        if getattr(request.app.state, name, None) is None
    ]
    if missing:
        checks["services"] = "error"
        checks["services_missing"] = missing

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: 200 if all checks pass, 503 otherwise."""
    checks = await _check_dependencies(request)
    all_healthy = checks.get("database") == "ok" and checks.get("services") == "ok"

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
        },
    )
