"""Sync engine -- inbound full/incremental sync, outbound push, disconnect.

Integration state machine::

    DISCONNECTED -> CONNECTED -> SYNCING -> {CONNECTED, ERROR}

Only one sync runs per integration at a time. The lock is the integration
row itself (IntegrationRepository.try_mark_syncing), so several server
instances coordinate through the datastore.

Inbound runs isolate failures at two levels: a record that fails to map or
upsert increments ``records_failed`` and the run moves on; a provider error
while paging one entity type skips that entity's batch. Only failures that
make the whole run meaningless (auth rejected, no usable credentials) fail
the run outright and move the integration to ERROR.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from src.crmsync.config import CRMSyncConfig
from src.crmsync.core.monitoring import record_push, record_sync_records, track_sync_run
from src.crmsync.integrations.demo import DemoService
from src.crmsync.integrations.errors import (
    CRMSyncError,
    IntegrationNotConnectedError,
    ProviderApiError,
    SyncInProgressError,
)
from src.crmsync.integrations.handlers import RecipientHandler
from src.crmsync.integrations.mappers import (
    CRM_SYNCABLE_FIELDS,
    map_external_to_local,
    map_local_to_external,
)
from src.crmsync.integrations.oauth import OAuthManager
from src.crmsync.integrations.providers import ProviderAdapter, ProviderRegistry
from src.crmsync.integrations.repository import IntegrationRepository
from src.crmsync.integrations.schemas import (
    AccessCredentials,
    EntityType,
    IntegrationRead,
    IntegrationStatus,
    LastSyncStatus,
    ProviderRecord,
    PushResult,
    RecipientSyncStatus,
    SyncCounts,
    SyncDirection,
    SyncLogStatus,
    SyncOperation,
)
from src.crmsync.integrations.tasks import TaskQueue

logger = structlog.get_logger(__name__)

# Provider statuses that mean the credentials themselves were rejected
AUTH_FAILURE_STATUSES = (401, 403)
MAX_LOGGED_ERRORS = 20


def _summarize_errors(errors: list[str]) -> str | None:
    if not errors:
        return None
    summary = "; ".join(errors[:5])
    if len(errors) > 5:
        summary += f" (+{len(errors) - 5} more)"
    return summary


class SyncEngine:
    """Runs syncs and pushes for one deployment.

    Args:
        config: Integration configuration (page size, lock staleness, base URL).
        registry: Provider adapters.
        repository: Integration persistence.
        oauth: Hands out live credentials.
        handlers: Entity strategy map.
        task_queue: Background runner for pushes and post-connect setup.
        demo: Demo integration service; built from the other collaborators
            when omitted.
    """

    def __init__(
        self,
        config: CRMSyncConfig,
        registry: ProviderRegistry,
        repository: IntegrationRepository,
        oauth: OAuthManager,
        handlers: dict[EntityType, RecipientHandler],
        task_queue: TaskQueue,
        demo: DemoService | None = None,
    ) -> None:
        self._config = config
        self._registry = registry
        self._repository = repository
        self._oauth = oauth
        self._handlers = handlers
        self._tasks = task_queue
        self._stale_after = timedelta(minutes=config.sync_stale_after_minutes)
        self._demo = demo or DemoService(repository, oauth, handlers, self._stale_after)

    @property
    def demo(self) -> DemoService:
        return self._demo

    # ── Inbound ─────────────────────────────────────────────────────────────

    async def run_initial_sync(self, organization_id: str) -> SyncCounts:
        """Pull every record of every supported entity type.

        Raises:
            IntegrationNotConnectedError: No usable integration.
            SyncInProgressError: Another sync holds the integration.
        """
        return await self._run(organization_id, SyncOperation.FULL_SYNC)

    async def run_incremental_sync(self, organization_id: str) -> SyncCounts:
        """Pull records modified since the last successful sync.

        Falls back to a full pull when the integration has never synced.
        """
        return await self._run(organization_id, SyncOperation.INCREMENTAL_SYNC)

    async def trigger_sync(self, organization_id: str) -> SyncCounts:
        """Manual sync: incremental once a sync has succeeded, full before that."""
        integration = await self._require_integration(organization_id)
        if integration.last_sync_at is not None:
            return await self.run_incremental_sync(organization_id)
        return await self.run_initial_sync(organization_id)

    async def _require_integration(self, organization_id: str) -> IntegrationRead:
        integration = await self._repository.get_integration(organization_id)
        if integration is None or integration.status == IntegrationStatus.DISCONNECTED:
            raise IntegrationNotConnectedError(
                f"Organization {organization_id} has no connected CRM integration"
            )
        return integration

    async def _run(self, organization_id: str, operation: SyncOperation) -> SyncCounts:
        integration = await self._require_integration(organization_id)
        if integration.is_demo:
            return await self._demo.simulate_demo_sync(integration)

        if not await self._repository.try_mark_syncing(integration.id, self._stale_after):
            raise SyncInProgressError(f"Sync already in progress for {integration.id}")

        provider = integration.provider.value
        since = integration.last_sync_at if operation == SyncOperation.INCREMENTAL_SYNC else None
        if operation == SyncOperation.INCREMENTAL_SYNC and since is None:
            operation = SyncOperation.FULL_SYNC

        log = logger.bind(
            organization_id=organization_id,
            integration_id=integration.id,
            provider=provider,
            operation=operation.value,
        )
        started_at = datetime.now(timezone.utc)
        sync_log = await self._repository.create_sync_log(
            integration.id,
            "all",
            operation,
            SyncDirection.INBOUND,
            metadata={"since": since.isoformat() if since else None},
        )
        log.info("sync.started", sync_log_id=sync_log.id)

        totals = SyncCounts()
        per_entity: dict[str, dict[str, Any]] = {}
        failed_entities: list[str] = []

        async with track_sync_run(provider, operation.value) as tracker:
            try:
                credentials = await self._oauth.credentials_for(integration)
                adapter = self._registry.get(integration.provider)
                for entity_type in adapter.SYNC_ENTITIES:
                    counts = SyncCounts()
                    entity_meta: dict[str, Any] = {}
                    try:
                        await self._sync_entity(
                            adapter, integration, credentials, entity_type, since, counts
                        )
                    except ProviderApiError as exc:
                        if exc.status_code in AUTH_FAILURE_STATUSES:
                            raise
                        failed_entities.append(entity_type.value)
                        entity_meta["error"] = str(exc)
                        counts.errors.append(f"{entity_type.value} batch skipped: {exc}")
                        log.warning(
                            "sync.entity_batch_failed",
                            entity_type=entity_type.value,
                            error=str(exc),
                        )
                    totals.merge(counts)
                    entity_meta.update(counts.model_dump(exclude={"errors"}))
                    per_entity[entity_type.value] = entity_meta
            except Exception as exc:
                error = str(exc) or type(exc).__name__
                await self._repository.finalize_sync_log(
                    sync_log.id,
                    SyncLogStatus.FAILED,
                    totals,
                    error_message=error,
                    metadata={"since": since.isoformat() if since else None, "entities": per_entity},
                )
                await self._repository.finish_sync(
                    integration.id, LastSyncStatus.FAILED, error=error
                )
                log.error("sync.failed", error=error, processed=totals.processed)
                raise

            status = self._run_status(totals, failed_entities, len(per_entity))
            tracker["status"] = status.value

        error_summary = _summarize_errors(totals.errors)
        await self._repository.finalize_sync_log(
            sync_log.id,
            SyncLogStatus.FAILED if status == LastSyncStatus.FAILED else SyncLogStatus.COMPLETED,
            totals,
            error_message=error_summary,
            metadata={
                "since": since.isoformat() if since else None,
                "entities": per_entity,
                "errors": totals.errors[:MAX_LOGGED_ERRORS],
            },
        )
        await self._repository.finish_sync(
            integration.id,
            status,
            synced_at=started_at,
            error=error_summary,
        )
        record_sync_records(provider, "created", totals.created)
        record_sync_records(provider, "updated", totals.updated - totals.created)
        record_sync_records(provider, "unchanged", totals.skipped)
        record_sync_records(provider, "failed", totals.failed)
        log.info(
            "sync.completed",
            status=status.value,
            processed=totals.processed,
            created=totals.created,
            updated=totals.updated,
            skipped=totals.skipped,
            failed=totals.failed,
        )
        return totals

    @staticmethod
    def _run_status(
        totals: SyncCounts, failed_entities: list[str], entity_count: int
    ) -> LastSyncStatus:
        if failed_entities and len(failed_entities) == entity_count and totals.processed == 0:
            return LastSyncStatus.FAILED
        if failed_entities and totals.status == LastSyncStatus.SUCCESS:
            return LastSyncStatus.PARTIAL
        return totals.status

    async def _sync_entity(
        self,
        adapter: ProviderAdapter,
        integration: IntegrationRead,
        credentials: AccessCredentials,
        entity_type: EntityType,
        since: datetime | None,
        counts: SyncCounts,
    ) -> None:
        if since is not None:
            records = await adapter.fetch_records_modified_since(
                entity_type,
                credentials.access_token,
                since,
                instance_url=credentials.instance_url,
            )
            for record in records:
                await self._apply_record(integration, credentials, entity_type, record, counts)
            return

        cursor: str | None = None
        while True:
            page = await adapter.fetch_records(
                entity_type,
                credentials.access_token,
                cursor=cursor,
                limit=self._config.page_size,
                instance_url=credentials.instance_url,
            )
            for record in page.records:
                await self._apply_record(integration, credentials, entity_type, record, counts)
            if not page.has_more or not page.next_cursor or page.next_cursor == cursor:
                return
            cursor = page.next_cursor

    async def _apply_record(
        self,
        integration: IntegrationRead,
        credentials: AccessCredentials,
        entity_type: EntityType,
        record: ProviderRecord,
        counts: SyncCounts,
    ) -> None:
        """Map and upsert one record, isolating any failure to this record."""
        try:
            mapped = map_external_to_local(
                integration.provider, entity_type, record, credentials.instance_url
            )
            outcome, _ = await self._handlers[entity_type].upsert(
                integration.organization_id, mapped
            )
        except Exception as exc:
            counts.record_failure(f"{entity_type.value} {record.id}: {exc}")
            logger.warning(
                "sync.record_failed",
                integration_id=integration.id,
                entity_type=entity_type.value,
                external_id=record.id,
                error=str(exc),
            )
            return
        counts.record(outcome)

    # ── Outbound ────────────────────────────────────────────────────────────

    def enqueue_push(
        self,
        organization_id: str,
        entity_type: EntityType,
        external_id: str,
        fields: dict[str, Any],
        pending_since: datetime | None = None,
    ) -> asyncio.Task[PushResult]:
        """Schedule push_to_crm without blocking the caller."""
        return self._tasks.submit(
            f"crm_push:{organization_id}:{external_id}",
            self.push_to_crm(
                organization_id, entity_type, external_id, fields, pending_since=pending_since
            ),
        )

    async def push_to_crm(
        self,
        organization_id: str,
        entity_type: EntityType | str,
        external_id: str,
        fields: dict[str, Any],
        pending_since: datetime | None = None,
    ) -> PushResult:
        """Write local edits back to the CRM record. Never raises.

        Only CRM-syncable fields leave the service. On success the recipient
        becomes SYNCED with a fresh ``last_synced_at``; on failure it becomes
        ERROR. With ``pending_since`` (the ``updated_at`` of the pushed edit)
        a recipient edited again meanwhile stays PENDING for the newer push.
        There is no automatic retry.

        Returns:
            PushResult with ``success`` and, on failure, ``error``.
        """
        integration: IntegrationRead | None = None
        sync_log_id: str | None = None
        pushed = sorted(k for k in fields if k in CRM_SYNCABLE_FIELDS)
        log = logger.bind(organization_id=organization_id, external_id=external_id)

        try:
            entity_type = EntityType(entity_type)
            integration = await self._require_integration(organization_id)
            log = log.bind(integration_id=integration.id, provider=integration.provider.value)
            properties = map_local_to_external(integration.provider, entity_type, fields)

            sync_log = await self._repository.create_sync_log(
                integration.id,
                entity_type.value,
                SyncOperation.PUSH,
                SyncDirection.OUTBOUND,
                metadata={"external_id": external_id, "fields": pushed},
            )
            sync_log_id = sync_log.id

            if properties and not integration.is_demo:
                credentials = await self._oauth.credentials_for(integration)
                adapter = self._registry.get(integration.provider)
                await adapter.update_record(
                    entity_type,
                    credentials.access_token,
                    external_id,
                    properties,
                    instance_url=credentials.instance_url,
                )
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            log.warning("push.failed", error=error, fields=pushed)
            await self._record_push_failure(
                organization_id, integration, entity_type, external_id, sync_log_id, error,
                pending_since,
            )
            return PushResult(success=False, error=error, pushed_fields=pushed)

        counts = SyncCounts()
        counts.processed = 1
        counts.updated = 1 if properties else 0
        counts.skipped = 0 if properties else 1
        await self._safely(
            self._repository.finalize_sync_log(sync_log_id, SyncLogStatus.COMPLETED, counts),
            log,
        )
        await self._safely(
            self._repository.set_recipient_sync_status(
                organization_id,
                external_id,
                integration.provider.value,
                entity_type,
                RecipientSyncStatus.SYNCED,
                synced_at=datetime.now(timezone.utc),
                pending_since=pending_since,
            ),
            log,
        )
        record_push(integration.provider.value, success=True)
        log.info("push.completed", fields=pushed, demo=integration.is_demo)
        return PushResult(success=True, pushed_fields=pushed)

    async def _record_push_failure(
        self,
        organization_id: str,
        integration: IntegrationRead | None,
        entity_type: EntityType | str,
        external_id: str,
        sync_log_id: str | None,
        error: str,
        pending_since: datetime | None,
    ) -> None:
        log = logger.bind(organization_id=organization_id, external_id=external_id)
        if sync_log_id is not None:
            counts = SyncCounts()
            counts.record_failure(error)
            await self._safely(
                self._repository.finalize_sync_log(
                    sync_log_id, SyncLogStatus.FAILED, counts, error_message=error
                ),
                log,
            )
        if integration is not None:
            await self._safely(
                self._repository.set_recipient_sync_status(
                    organization_id,
                    external_id,
                    integration.provider.value,
                    entity_type,
                    RecipientSyncStatus.ERROR,
                    pending_since=pending_since,
                ),
                log,
            )
            record_push(integration.provider.value, success=False)

    @staticmethod
    async def _safely(awaitable: Any, log: Any) -> None:
        """Await a bookkeeping write; a failure is logged, never raised."""
        try:
            await awaitable
        except Exception as exc:
            log.error("push.bookkeeping_failed", error=str(exc))

    # ── Lifecycle ───────────────────────────────────────────────────────────

    def webhook_url(self, provider: str, integration_id: str) -> str:
        """Per-integration webhook URL; the id narrows signature matching."""
        return (
            f"{self._config.app_base_url}/api/v1/webhooks/{provider}"
            f"?integration_id={integration_id}"
        )

    async def setup_integration(self, organization_id: str) -> SyncCounts | None:
        """Post-connect work: register the webhook, then run the initial sync.

        Webhook registration is best-effort. Sync failures are already
        recorded in the SyncLog and on the integration, so they are logged
        here rather than raised.
        """
        integration = await self._require_integration(organization_id)
        log = logger.bind(
            organization_id=organization_id,
            integration_id=integration.id,
            provider=integration.provider.value,
        )
        try:
            credentials = await self._oauth.credentials_for(integration)
            adapter = self._registry.get(integration.provider)
            registration = await adapter.register_webhook(
                credentials.access_token,
                self.webhook_url(integration.provider.value, integration.id),
                instance_url=credentials.instance_url,
            )
            if registration is not None:
                await self._repository.set_webhook(
                    integration.id, registration.webhook_id, registration.secret
                )
                log.info("sync.webhook_registered", webhook_id=registration.webhook_id)
        except CRMSyncError as exc:
            log.warning("sync.webhook_registration_failed", error=str(exc))

        try:
            return await self.run_initial_sync(organization_id)
        except CRMSyncError as exc:
            log.warning("sync.initial_sync_failed", error=str(exc))
            return None

    async def disconnect_integration(self, organization_id: str) -> None:
        """Disconnect and clear credentials. Recipients keep their sync fields.

        Raises:
            IntegrationNotConnectedError: Nothing to disconnect.
        """
        integration = await self._require_integration(organization_id)
        log = logger.bind(
            organization_id=organization_id,
            integration_id=integration.id,
            provider=integration.provider.value,
        )
        if integration.webhook_id and not integration.is_demo:
            try:
                credentials = await self._oauth.credentials_for(integration)
                adapter = self._registry.get(integration.provider)
                await adapter.delete_webhook(
                    credentials.access_token,
                    integration.webhook_id,
                    instance_url=credentials.instance_url,
                )
            except CRMSyncError as exc:
                log.warning("sync.webhook_delete_failed", error=str(exc))

        await self._repository.disconnect(integration.id)
        log.info("sync.integration_disconnected")
