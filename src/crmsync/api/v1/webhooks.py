"""Inbound CRM webhook endpoint.

The provider id is validated before anything touches the registry or the
datastore. The raw body is read once and handed to the ingestor untouched,
since signatures are computed over the exact bytes sent. Once the signature
has verified, every outcome is acknowledged with 200 so providers do not
retry deliveries whose failures are already recorded in sync logs.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from src.crmsync.api.deps import get_provider_registry, get_webhook_ingestor
from src.crmsync.integrations.errors import WebhookSignatureError

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/{provider}")
async def receive_webhook(
    provider: str,
    request: Request,
    integration_id: str | None = Query(default=None),
    registry: Any = Depends(get_provider_registry),
) -> dict[str, Any]:
    """Verify and reconcile one provider webhook delivery."""
    if not registry.is_valid_provider(provider):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid provider")

    ingestor = get_webhook_ingestor(request)
    raw_body = await request.body()
    try:
        outcome = await ingestor.ingest(provider, raw_body, request.headers, integration_id)
    except WebhookSignatureError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    except Exception:
        logger.exception("webhook.processing_failed", provider=provider)
        return {"received": True, "error": "processing_failed"}

    if outcome.error:
        return {"received": True, "error": outcome.error}
    return {"received": True, "processed": outcome.processed}
