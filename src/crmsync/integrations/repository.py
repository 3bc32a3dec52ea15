"""Integration repository -- async persistence for integrations, sync logs and recipients.

Provides IntegrationRepository with the session_factory callable pattern.
Handles serialization between SQLAlchemy models and the read schemas, and
owns the two datastore-level concurrency primitives of the sync layer:

- try_mark_syncing(): CONNECTED/ERROR -> SYNCING check-and-set (with takeover
  of a stale SYNCING row), so several server instances coordinate through
  the integration row alone.
- upsert_recipient(): insert-or-update keyed by (organization_id,
  external_id, external_source), backed by the unique constraint so
  concurrent sync and webhook writers never create duplicates.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy import and_, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.crmsync.integrations.errors import IntegrationExistsError
from src.crmsync.integrations.mappers import diff_fields
from src.crmsync.integrations.models import (
    IntegrationModel,
    RecipientModel,
    SyncLogModel,
)
from src.crmsync.integrations.schemas import (
    CRMProvider,
    EntityType,
    IntegrationRead,
    IntegrationStatus,
    IntegrationWrite,
    LastSyncStatus,
    MappedRecord,
    RecipientRead,
    RecipientSyncStatus,
    SyncCounts,
    SyncDirection,
    SyncLogRead,
    SyncLogStatus,
    SyncOperation,
    UpsertOutcome,
    object_kind,
)

logger = structlog.get_logger(__name__)

# Recipient columns a local edit may touch.
EDITABLE_RECIPIENT_FIELDS = frozenset({
    "email",
    "first_name",
    "last_name",
    "phone",
    "company",
    "job_title",
    "linkedin_url",
    "address",
    "lead_status",
    "notes",
    "tags",
    "custom_fields",
    "do_not_send",
})


# ── Serialization Helpers ───────────────────────────────────────────────────


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def _model_to_integration(model: IntegrationModel) -> IntegrationRead:
    """Convert IntegrationModel to IntegrationRead schema."""
    return IntegrationRead(
        id=str(model.id),
        organization_id=model.organization_id,
        provider=CRMProvider(model.provider),
        status=IntegrationStatus(model.status),
        access_token=model.access_token,
        refresh_token=model.refresh_token,
        token_expires_at=model.token_expires_at,
        instance_url=model.instance_url,
        webhook_id=model.webhook_id,
        webhook_secret=model.webhook_secret,
        last_sync_at=model.last_sync_at,
        last_sync_status=(
            LastSyncStatus(model.last_sync_status) if model.last_sync_status else None
        ),
        last_sync_error=model.last_sync_error,
        sync_started_at=model.sync_started_at,
        is_demo=bool(model.is_demo),
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_sync_log(model: SyncLogModel) -> SyncLogRead:
    """Convert SyncLogModel to SyncLogRead schema."""
    return SyncLogRead(
        id=str(model.id),
        integration_id=str(model.integration_id),
        entity_type=model.entity_type,
        operation=SyncOperation(model.operation),
        direction=SyncDirection(model.direction),
        status=SyncLogStatus(model.status),
        records_processed=model.records_processed or 0,
        records_created=model.records_created or 0,
        records_updated=model.records_updated or 0,
        records_skipped=model.records_skipped or 0,
        records_failed=model.records_failed or 0,
        error_message=model.error_message,
        metadata=model.metadata_json or {},
        started_at=model.started_at,
        completed_at=model.completed_at,
    )


def _model_to_recipient(model: RecipientModel) -> RecipientRead:
    """Convert RecipientModel to RecipientRead schema."""
    return RecipientRead(
        id=str(model.id),
        organization_id=model.organization_id,
        email=model.email,
        first_name=model.first_name,
        last_name=model.last_name,
        phone=model.phone,
        company=model.company,
        job_title=model.job_title,
        linkedin_url=model.linkedin_url,
        address=model.address,
        lead_status=model.lead_status,
        lead_source=model.lead_source,
        notes=model.notes,
        tags=list(model.tags or []),
        custom_fields=dict(model.custom_fields or {}),
        do_not_send=bool(model.do_not_send),
        external_id=model.external_id,
        external_source=CRMProvider(model.external_source) if model.external_source else None,
        external_url=model.external_url,
        external_entity_type=(
            EntityType(model.external_entity_type) if model.external_entity_type else None
        ),
        sync_status=RecipientSyncStatus(model.sync_status) if model.sync_status else None,
        last_synced_at=model.last_synced_at,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _external_key(
    organization_id: str, external_id: str, source: str, entity_type: EntityType | str
) -> tuple:
    """WHERE clauses matching one CRM record's recipient."""
    return (
        RecipientModel.organization_id == organization_id,
        RecipientModel.external_source == source,
        RecipientModel.external_object == object_kind(entity_type),
        RecipientModel.external_id == external_id,
    )


def recipient_changes(current: dict[str, Any], mapped: MappedRecord) -> dict[str, Any]:
    """Column values that applying ``mapped`` would change on a recipient.

    ``custom_fields["crm"]`` is replaced wholesale while other custom_fields
    keys (local data) are preserved.
    """
    incoming = {k: v for k, v in mapped.fields.items() if k != "custom_fields"}
    incoming["external_url"] = mapped.external_url
    incoming["external_entity_type"] = mapped.entity_type.value
    changes = diff_fields(current, incoming)

    crm_details = (mapped.fields.get("custom_fields") or {}).get("crm")
    existing_custom = dict(current.get("custom_fields") or {})
    if crm_details is not None and existing_custom.get("crm") != crm_details:
        changes["custom_fields"] = {**existing_custom, "crm": crm_details}
    return changes


# ── Repository ──────────────────────────────────────────────────────────────


class IntegrationRepository:
    """Async persistence for the CRM integration layer.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Integrations ────────────────────────────────────────────────────────

    async def get_integration(self, organization_id: str) -> IntegrationRead | None:
        """Get the organization's integration row (any status)."""
        async for session in self._session_factory():
            stmt = select(IntegrationModel).where(
                IntegrationModel.organization_id == organization_id
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_integration(model) if model else None

    async def get_integration_by_id(self, integration_id: str) -> IntegrationRead | None:
        key = _as_uuid(integration_id)
        if key is None:
            return None
        async for session in self._session_factory():
            model = await session.get(IntegrationModel, key)
            return _model_to_integration(model) if model else None

    async def save_integration(
        self, data: IntegrationWrite, replace_active: bool = True
    ) -> IntegrationRead:
        """Insert or replace the organization's integration.

        The row is reset to CONNECTED with fresh tokens and no webhook
        registration. With ``replace_active=False`` an existing row is only
        replaced when it is DISCONNECTED.

        Raises:
            IntegrationExistsError: If ``replace_active`` is False and an
                active integration already exists.
        """
        values = {
            "organization_id": data.organization_id,
            "provider": data.provider.value,
            "status": IntegrationStatus.CONNECTED.value,
            "access_token": data.access_token,
            "refresh_token": data.refresh_token,
            "token_expires_at": data.token_expires_at,
            "instance_url": data.instance_url,
            "webhook_id": None,
            "webhook_secret": data.webhook_secret,
            "is_demo": data.is_demo,
            "last_sync_at": data.last_sync_at,
            "last_sync_status": (
                data.last_sync_status.value if data.last_sync_status else None
            ),
            "last_sync_error": None,
            "sync_started_at": None,
        }
        update_values = {k: v for k, v in values.items() if k != "organization_id"}
        update_values["updated_at"] = _now()

        stmt = pg_insert(IntegrationModel).values(id=uuid.uuid4(), **values)
        stmt = stmt.on_conflict_do_update(
            constraint="uq_crm_integration_organization",
            set_=update_values,
            where=(
                None
                if replace_active
                else IntegrationModel.status == IntegrationStatus.DISCONNECTED.value
            ),
        ).returning(IntegrationModel.id)

        async for session in self._session_factory():
            result = await session.execute(stmt)
            integration_id = result.scalar_one_or_none()
            await session.commit()
            if integration_id is None:
                raise IntegrationExistsError(
                    f"Organization {data.organization_id} already has an active integration"
                )
            model = await session.get(IntegrationModel, integration_id, populate_existing=True)
            logger.info(
                "integration.saved",
                organization_id=data.organization_id,
                provider=data.provider.value,
                integration_id=str(integration_id),
                is_demo=data.is_demo,
            )
            return _model_to_integration(model)

    async def list_webhook_candidates(
        self, provider: str, integration_id: str | None = None
    ) -> list[IntegrationRead]:
        """CONNECTED or SYNCING integrations for ``provider``.

        Narrowed to one row when the webhook URL carried an integration id.
        """
        stmt = select(IntegrationModel).where(
            IntegrationModel.provider == provider,
            IntegrationModel.status.in_([
                IntegrationStatus.CONNECTED.value,
                IntegrationStatus.SYNCING.value,
            ]),
        )
        if integration_id is not None:
            key = _as_uuid(integration_id)
            if key is None:
                return []
            stmt = stmt.where(IntegrationModel.id == key)

        async for session in self._session_factory():
            result = await session.execute(stmt.order_by(IntegrationModel.created_at))
            return [_model_to_integration(m) for m in result.scalars().all()]

    async def update_tokens(
        self,
        integration_id: str,
        access_token: str,
        refresh_token: str | None,
        token_expires_at: datetime | None,
        instance_url: str | None = None,
    ) -> None:
        """Persist refreshed (already encrypted) tokens."""
        values: dict[str, Any] = {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "token_expires_at": token_expires_at,
            "updated_at": _now(),
        }
        if instance_url:
            values["instance_url"] = instance_url
        await self._update_integration(integration_id, values)

    async def set_webhook(
        self, integration_id: str, webhook_id: str, webhook_secret: str | None = None
    ) -> None:
        values: dict[str, Any] = {"webhook_id": webhook_id, "updated_at": _now()}
        if webhook_secret:
            values["webhook_secret"] = webhook_secret
        await self._update_integration(integration_id, values)

    async def try_mark_syncing(self, integration_id: str, stale_after: timedelta) -> bool:
        """Atomically move an integration into SYNCING.

        Succeeds from CONNECTED or ERROR, or from a SYNCING row whose
        ``sync_started_at`` is older than ``stale_after`` (a crashed run).

        Returns:
            True if this caller now holds the sync.
        """
        now = _now()
        stmt = (
            update(IntegrationModel)
            .where(
                IntegrationModel.id == uuid.UUID(integration_id),
                or_(
                    IntegrationModel.status.in_([
                        IntegrationStatus.CONNECTED.value,
                        IntegrationStatus.ERROR.value,
                    ]),
                    and_(
                        IntegrationModel.status == IntegrationStatus.SYNCING.value,
                        or_(
                            IntegrationModel.sync_started_at.is_(None),
                            IntegrationModel.sync_started_at < now - stale_after,
                        ),
                    ),
                ),
            )
            .values(
                status=IntegrationStatus.SYNCING.value,
                sync_started_at=now,
                updated_at=now,
            )
            .returning(IntegrationModel.id)
        )
        async for session in self._session_factory():
            result = await session.execute(stmt)
            acquired = result.scalar_one_or_none() is not None
            await session.commit()
            return acquired

    async def finish_sync(
        self,
        integration_id: str,
        last_sync_status: LastSyncStatus,
        synced_at: datetime | None = None,
        error: str | None = None,
    ) -> None:
        """Release the SYNCING lock and record the run outcome.

        FAILED moves the integration to ERROR and keeps ``last_sync_at``;
        SUCCESS/PARTIAL return it to CONNECTED. A row that was disconnected
        while the sync ran is left alone. A FAILED run also settles a row
        that mark_error() already moved to ERROR during the run (token
        refresh failure), so ``last_sync_status`` reflects this run.
        """
        now = _now()
        values: dict[str, Any] = {
            "sync_started_at": None,
            "last_sync_status": last_sync_status.value,
            "last_sync_error": error,
            "updated_at": now,
        }
        settled = [IntegrationStatus.SYNCING.value]
        if last_sync_status == LastSyncStatus.FAILED:
            values["status"] = IntegrationStatus.ERROR.value
            settled.append(IntegrationStatus.ERROR.value)
        else:
            values["status"] = IntegrationStatus.CONNECTED.value
            values["last_sync_at"] = synced_at or now

        stmt = (
            update(IntegrationModel)
            .where(
                IntegrationModel.id == uuid.UUID(integration_id),
                IntegrationModel.status.in_(settled),
            )
            .values(**values)
        )
        async for session in self._session_factory():
            await session.execute(stmt)
            await session.commit()

    async def mark_error(self, integration_id: str, message: str) -> None:
        await self._update_integration(integration_id, {
            "status": IntegrationStatus.ERROR.value,
            "last_sync_error": message,
            "sync_started_at": None,
            "updated_at": _now(),
        })

    async def disconnect(self, integration_id: str) -> None:
        """Move to DISCONNECTED and clear credentials. Recipients are untouched."""
        await self._update_integration(integration_id, {
            "status": IntegrationStatus.DISCONNECTED.value,
            "access_token": None,
            "refresh_token": None,
            "token_expires_at": None,
            "webhook_id": None,
            "webhook_secret": None,
            "sync_started_at": None,
            "updated_at": _now(),
        })

    async def _update_integration(self, integration_id: str, values: dict[str, Any]) -> None:
        stmt = (
            update(IntegrationModel)
            .where(IntegrationModel.id == uuid.UUID(integration_id))
            .values(**values)
        )
        async for session in self._session_factory():
            await session.execute(stmt)
            await session.commit()

    # ── Sync Logs ───────────────────────────────────────────────────────────

    async def create_sync_log(
        self,
        integration_id: str,
        entity_type: str,
        operation: SyncOperation,
        direction: SyncDirection,
        metadata: dict[str, Any] | None = None,
    ) -> SyncLogRead:
        """Open a SyncLog in ``started``."""
        async for session in self._session_factory():
            model = SyncLogModel(
                integration_id=uuid.UUID(integration_id),
                entity_type=entity_type,
                operation=operation.value,
                direction=direction.value,
                status=SyncLogStatus.STARTED.value,
                metadata_json=metadata or {},
                started_at=_now(),
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_sync_log(model)

    async def finalize_sync_log(
        self,
        log_id: str,
        status: SyncLogStatus,
        counts: SyncCounts | None = None,
        error_message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Close a started SyncLog exactly once.

        Returns:
            False if the log was already completed or failed.
        """
        counts = counts or SyncCounts()
        values: dict[str, Any] = {
            "status": status.value,
            "records_processed": counts.processed,
            "records_created": counts.created,
            "records_updated": counts.updated,
            "records_skipped": counts.skipped,
            "records_failed": counts.failed,
            "error_message": error_message,
            "completed_at": _now(),
        }
        if metadata is not None:
            values["metadata_json"] = metadata

        stmt = (
            update(SyncLogModel)
            .where(
                SyncLogModel.id == uuid.UUID(log_id),
                SyncLogModel.status == SyncLogStatus.STARTED.value,
            )
            .values(**values)
            .returning(SyncLogModel.id)
        )
        async for session in self._session_factory():
            result = await session.execute(stmt)
            finalized = result.scalar_one_or_none() is not None
            await session.commit()
            if not finalized:
                logger.warning("sync_log.already_finalized", log_id=log_id)
            return finalized

    async def list_sync_logs(self, integration_id: str, limit: int = 20) -> list[SyncLogRead]:
        """Most recent SyncLogs first."""
        async for session in self._session_factory():
            stmt = (
                select(SyncLogModel)
                .where(SyncLogModel.integration_id == uuid.UUID(integration_id))
                .order_by(SyncLogModel.started_at.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_sync_log(m) for m in result.scalars().all()]

    # ── Recipients ──────────────────────────────────────────────────────────

    @staticmethod
    async def _find_recipient(
        session: AsyncSession,
        organization_id: str,
        external_id: str,
        source: str,
        entity_type: EntityType,
    ) -> RecipientModel | None:
        stmt = select(RecipientModel).where(*_external_key(
            organization_id, external_id, source, entity_type
        ))
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert_recipient(
        self, organization_id: str, mapped: MappedRecord
    ) -> tuple[UpsertOutcome, RecipientRead]:
        """Create or update the recipient for a mapped CRM record.

        Idempotent on (organization_id, external_source, object kind,
        external_id): a replay with identical values writes nothing and reports UNCHANGED.

        Args:
            organization_id: Owning organization.
            mapped: Output of the field mapper.

        Returns:
            Tuple of (outcome, recipient after the write).
        """
        source = mapped.external_source.value
        now = _now()

        async for session in self._session_factory():
            model = await self._find_recipient(
                session, organization_id, mapped.external_id, source, mapped.entity_type
            )
            if model is None:
                values = {
                    **mapped.fields,
                    "id": uuid.uuid4(),
                    "organization_id": organization_id,
                    "external_id": mapped.external_id,
                    "external_source": source,
                    "external_url": mapped.external_url,
                    "external_entity_type": mapped.entity_type.value,
                    "external_object": object_kind(mapped.entity_type),
                    "sync_status": RecipientSyncStatus.SYNCED.value,
                    "last_synced_at": now,
                }
                values.setdefault("custom_fields", {})
                stmt = (
                    pg_insert(RecipientModel)
                    .values(**values)
                    .on_conflict_do_nothing(constraint="uq_recipient_org_external")
                    .returning(RecipientModel.id)
                )
                result = await session.execute(stmt)
                inserted_id = result.scalar_one_or_none()
                await session.commit()
                if inserted_id is not None:
                    created = await session.get(RecipientModel, inserted_id)
                    return UpsertOutcome.CREATED, _model_to_recipient(created)
                # A concurrent writer inserted the same record first
                model = await self._find_recipient(
                    session, organization_id, mapped.external_id, source, mapped.entity_type
                )

            current = {column: getattr(model, column) for column in (
                *mapped.fields.keys(), "external_url", "external_entity_type"
            ) if column != "custom_fields"}
            current["custom_fields"] = model.custom_fields or {}
            changes = recipient_changes(current, mapped)

            if not changes:
                if model.sync_status != RecipientSyncStatus.SYNCED.value:
                    model.sync_status = RecipientSyncStatus.SYNCED.value
                    model.last_synced_at = now
                    await session.commit()
                return UpsertOutcome.UNCHANGED, _model_to_recipient(model)

            for column, value in changes.items():
                setattr(model, column, value)
            model.sync_status = RecipientSyncStatus.SYNCED.value
            model.last_synced_at = now
            await session.commit()
            await session.refresh(model)
            return UpsertOutcome.UPDATED, _model_to_recipient(model)

    async def soft_unlink_recipient(
        self,
        organization_id: str,
        external_id: str,
        external_source: str,
        entity_type: EntityType,
    ) -> bool:
        """Clear a recipient's CRM linkage without deleting it.

        Returns:
            True if a recipient was unlinked.
        """
        stmt = (
            update(RecipientModel)
            .where(*_external_key(organization_id, external_id, external_source, entity_type))
            .values(
                external_id=None,
                external_source=None,
                external_url=None,
                external_entity_type=None,
                external_object=None,
                sync_status=None,
                updated_at=_now(),
            )
            .returning(RecipientModel.id)
        )
        async for session in self._session_factory():
            result = await session.execute(stmt)
            unlinked = result.scalars().all()
            await session.commit()
            return bool(unlinked)

    async def get_recipient(
        self, organization_id: str, recipient_id: str
    ) -> RecipientRead | None:
        key = _as_uuid(recipient_id)
        if key is None:
            return None
        async for session in self._session_factory():
            stmt = select(RecipientModel).where(
                RecipientModel.organization_id == organization_id,
                RecipientModel.id == key,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_recipient(model) if model else None

    async def get_recipient_by_external(
        self,
        organization_id: str,
        external_id: str,
        external_source: str,
        entity_type: EntityType,
    ) -> RecipientRead | None:
        async for session in self._session_factory():
            model = await self._find_recipient(
                session, organization_id, external_id, external_source, entity_type
            )
            return _model_to_recipient(model) if model else None

    async def update_recipient(
        self,
        organization_id: str,
        recipient_id: str,
        changes: dict[str, Any],
        mark_pending: bool = False,
    ) -> RecipientRead | None:
        """Apply a local edit. Unknown columns are ignored.

        Args:
            mark_pending: Also set sync_status=PENDING in the same write.

        Returns:
            The updated recipient, or None if it does not exist.
        """
        values = {k: v for k, v in changes.items() if k in EDITABLE_RECIPIENT_FIELDS}
        if mark_pending:
            values["sync_status"] = RecipientSyncStatus.PENDING.value
        key = _as_uuid(recipient_id)
        if key is None:
            return None

        async for session in self._session_factory():
            stmt = select(RecipientModel).where(
                RecipientModel.organization_id == organization_id,
                RecipientModel.id == key,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            for column, value in values.items():
                setattr(model, column, value)
            await session.commit()
            await session.refresh(model)
            return _model_to_recipient(model)

    async def set_recipient_sync_status(
        self,
        organization_id: str,
        external_id: str,
        external_source: str,
        entity_type: EntityType,
        status: RecipientSyncStatus,
        synced_at: datetime | None = None,
        pending_since: datetime | None = None,
    ) -> bool:
        """Settle a recipient's sync status after a push.

        Args:
            pending_since: ``updated_at`` of the edit being pushed. When given,
                only a row still PENDING from that same edit is touched, so a
                later edit's PENDING state survives an earlier push finishing.

        Returns:
            True if a row was updated.
        """
        values: dict[str, Any] = {"sync_status": status.value}
        if synced_at is not None:
            values["last_synced_at"] = synced_at
        conditions = _external_key(organization_id, external_id, external_source, entity_type)
        if pending_since is not None:
            conditions += (
                RecipientModel.sync_status == RecipientSyncStatus.PENDING.value,
                RecipientModel.updated_at == pending_since,
            )
        stmt = (
            update(RecipientModel)
            .where(*conditions)
            .values(**values)
            .returning(RecipientModel.id)
        )
        async for session in self._session_factory():
            result = await session.execute(stmt)
            updated = result.scalars().all()
            await session.commit()
            return bool(updated)
