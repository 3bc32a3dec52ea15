"""Recipient edit endpoint.

Only the sync-relevant edit path lives here: a PATCH is applied locally and
its CRM-syncable fields are pushed in the background. Generic recipient CRUD
belongs to the main application.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from src.crmsync.api.deps import get_recipient_service, require_session
from src.crmsync.integrations.errors import RecipientNotFoundError
from src.crmsync.integrations.schemas import AuthSession, RecipientRead, RecipientUpdate

router = APIRouter(prefix="/recipients", tags=["recipients"])


class RecipientEditResponse(BaseModel):
    """Updated recipient plus which fields were queued for the CRM."""

    recipient: RecipientRead
    pushed_fields: list[str] = Field(default_factory=list)
    local_fields: list[str] = Field(default_factory=list)


@router.patch("/{recipient_id}", response_model=RecipientEditResponse)
async def update_recipient(
    recipient_id: str,
    body: RecipientUpdate,
    session: AuthSession = Depends(require_session),
    service: Any = Depends(get_recipient_service),
) -> RecipientEditResponse:
    """Apply a local edit; CRM-syncable changes are pushed asynchronously."""
    try:
        result = await service.update_recipient(session.organization_id, recipient_id, body)
    except RecipientNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return RecipientEditResponse(
        recipient=result.recipient,
        pushed_fields=result.pushed_fields,
        local_fields=result.local_fields,
    )
