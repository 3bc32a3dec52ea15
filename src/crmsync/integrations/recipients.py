"""Local edits to recipients and their propagation to the CRM.

Editing a CRM-managed recipient splits the changed fields into CRM-syncable
and local-only. Only syncable fields the provider accepts for the record's
entity type are pushed; local-only fields (notes, tags, custom fields,
do_not_send) never leave the service. The recipient is marked PENDING in
the same write as the edit, and the push runs on the task queue so the
request never waits on the CRM.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

import structlog

from src.crmsync.integrations.errors import RecipientNotFoundError
from src.crmsync.integrations.mappers import diff_fields, map_local_to_external, split_changes
from src.crmsync.integrations.repository import IntegrationRepository
from src.crmsync.integrations.schemas import (
    EntityType,
    PushResult,
    RecipientRead,
    RecipientUpdate,
)
from src.crmsync.integrations.sync import SyncEngine

logger = structlog.get_logger(__name__)


@dataclass
class RecipientEditResult:
    recipient: RecipientRead
    pushed_fields: list[str] = field(default_factory=list)
    local_fields: list[str] = field(default_factory=list)
    push: asyncio.Task[PushResult] | None = None


class RecipientEditService:
    """Applies local edits and schedules CRM pushes.

    Args:
        repository: Recipient persistence.
        engine: Sync engine used to enqueue pushes.
    """

    def __init__(self, repository: IntegrationRepository, engine: SyncEngine) -> None:
        self._repository = repository
        self._engine = engine

    @staticmethod
    def pushable_fields(recipient: RecipientRead, syncable: dict[str, Any]) -> dict[str, Any]:
        """Syncable changes the recipient's CRM record type actually accepts."""
        if not recipient.crm_managed or not syncable:
            return {}
        entity_type = recipient.external_entity_type or EntityType.CONTACT
        return {
            name: value
            for name, value in syncable.items()
            if map_local_to_external(recipient.external_source, entity_type, {name: value})
        }

    async def update_recipient(
        self,
        organization_id: str,
        recipient_id: str,
        update: RecipientUpdate,
    ) -> RecipientEditResult:
        """Apply an edit and enqueue a push of its CRM-syncable part.

        Raises:
            RecipientNotFoundError: No such recipient in the organization.
        """
        current = await self._repository.get_recipient(organization_id, recipient_id)
        if current is None:
            raise RecipientNotFoundError(f"Recipient {recipient_id} not found")

        changes = diff_fields(current.model_dump(), update.model_dump(exclude_unset=True))
        if not changes:
            return RecipientEditResult(recipient=current)

        syncable, local_only = split_changes(changes)
        push_fields = self.pushable_fields(current, syncable)

        updated = await self._repository.update_recipient(
            organization_id, recipient_id, changes, mark_pending=bool(push_fields)
        )
        if updated is None:
            raise RecipientNotFoundError(f"Recipient {recipient_id} not found")

        task = None
        if push_fields:
            task = self._engine.enqueue_push(
                organization_id,
                current.external_entity_type or EntityType.CONTACT,
                current.external_id,
                push_fields,
                pending_since=updated.updated_at,
            )
        logger.info(
            "recipient.updated",
            organization_id=organization_id,
            recipient_id=recipient_id,
            pushed_fields=sorted(push_fields),
            local_fields=sorted(local_only),
        )
        return RecipientEditResult(
            recipient=updated,
            pushed_fields=sorted(push_fields),
            local_fields=sorted(local_only),
            push=task,
        )
