"""Shared fixtures for the CRM sync tests.

Provides:
- InMemoryIntegrationRepository: IntegrationRepository test double with the
  same check-and-set and upsert semantics, no database
- FakeAdapter: scriptable ProviderAdapter (pages, single records, failures)
- Fixtures wiring config, cipher, registry, OAuth manager, handlers, task
  queue and sync engine around the double
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import pytest_asyncio
from cryptography.fernet import Fernet

from src.crmsync.config import CRMSyncConfig, ProviderCredentials
from src.crmsync.integrations.encryption import TokenCipher
from src.crmsync.integrations.errors import IntegrationExistsError
from src.crmsync.integrations.handlers import build_handlers
from src.crmsync.integrations.oauth import OAuthManager
from src.crmsync.integrations.providers import ProviderRegistry
from src.crmsync.integrations.providers.base import ProviderAdapter
from src.crmsync.integrations.repository import EDITABLE_RECIPIENT_FIELDS, recipient_changes
from src.crmsync.integrations.schemas import (
    CRMProvider,
    EntityType,
    IntegrationRead,
    IntegrationStatus,
    IntegrationWrite,
    LastSyncStatus,
    MappedRecord,
    OAuthTokens,
    PaginatedRecords,
    ProviderRecord,
    RecipientRead,
    RecipientSyncStatus,
    SyncCounts,
    SyncDirection,
    SyncLogRead,
    SyncLogStatus,
    SyncOperation,
    UpsertOutcome,
    WebhookEvent,
    object_kind,
)
from src.crmsync.integrations.sync import SyncEngine
from src.crmsync.integrations.tasks import TaskQueue

ORG_ID = "org-alpha"


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── In-Memory Test Double ────────────────────────────────────────────────────


class InMemoryIntegrationRepository:
    """In-memory IntegrationRepository for testing without database."""

    def __init__(self) -> None:
        self.integrations: dict[str, IntegrationRead] = {}
        self.sync_logs: dict[str, SyncLogRead] = {}
        self.recipients: dict[str, RecipientRead] = {}

    # ── Integrations ──────────────────────────────────────────────────────

    async def get_integration(self, organization_id: str) -> IntegrationRead | None:
        for integration in self.integrations.values():
            if integration.organization_id == organization_id:
                return integration
        return None

    async def get_integration_by_id(self, integration_id: str) -> IntegrationRead | None:
        return self.integrations.get(integration_id)

    async def save_integration(
        self, data: IntegrationWrite, replace_active: bool = True
    ) -> IntegrationRead:
        existing = await self.get_integration(data.organization_id)
        if (
            existing is not None
            and not replace_active
            and existing.status != IntegrationStatus.DISCONNECTED
        ):
            raise IntegrationExistsError(
                f"Organization {data.organization_id} already has an active integration"
            )
        now = _now()
        integration = IntegrationRead(
            id=existing.id if existing else str(uuid.uuid4()),
            organization_id=data.organization_id,
            provider=data.provider,
            status=IntegrationStatus.CONNECTED,
            access_token=data.access_token,
            refresh_token=data.refresh_token,
            token_expires_at=data.token_expires_at,
            instance_url=data.instance_url,
            webhook_secret=data.webhook_secret,
            is_demo=data.is_demo,
            last_sync_at=data.last_sync_at,
            last_sync_status=data.last_sync_status,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        self.integrations[integration.id] = integration
        return integration

    async def list_webhook_candidates(
        self, provider: str, integration_id: str | None = None
    ) -> list[IntegrationRead]:
        return [
            i for i in self.integrations.values()
            if i.provider.value == provider
            and i.status in (IntegrationStatus.CONNECTED, IntegrationStatus.SYNCING)
            and (integration_id is None or i.id == integration_id)
        ]

    def _patch(self, integration_id: str, **values: Any) -> None:
        current = self.integrations[integration_id]
        self.integrations[integration_id] = current.model_copy(
            update={**values, "updated_at": _now()}
        )

    async def update_tokens(
        self,
        integration_id: str,
        access_token: str,
        refresh_token: str | None,
        token_expires_at: datetime | None,
        instance_url: str | None = None,
    ) -> None:
        values: dict[str, Any] = {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "token_expires_at": token_expires_at,
        }
        if instance_url:
            values["instance_url"] = instance_url
        self._patch(integration_id, **values)

    async def set_webhook(
        self, integration_id: str, webhook_id: str, webhook_secret: str | None = None
    ) -> None:
        values: dict[str, Any] = {"webhook_id": webhook_id}
        if webhook_secret:
            values["webhook_secret"] = webhook_secret
        self._patch(integration_id, **values)

    async def try_mark_syncing(self, integration_id: str, stale_after: timedelta) -> bool:
        current = self.integrations.get(integration_id)
        if current is None:
            return False
        now = _now()
        stale = current.status == IntegrationStatus.SYNCING and (
            current.sync_started_at is None or current.sync_started_at < now - stale_after
        )
        if current.status in (IntegrationStatus.CONNECTED, IntegrationStatus.ERROR) or stale:
            self._patch(integration_id, status=IntegrationStatus.SYNCING, sync_started_at=now)
            return True
        return False

    async def finish_sync(
        self,
        integration_id: str,
        last_sync_status: LastSyncStatus,
        synced_at: datetime | None = None,
        error: str | None = None,
    ) -> None:
        current = self.integrations[integration_id]
        settled = {IntegrationStatus.SYNCING}
        if last_sync_status == LastSyncStatus.FAILED:
            settled.add(IntegrationStatus.ERROR)
        if current.status not in settled:
            return
        values: dict[str, Any] = {
            "sync_started_at": None,
            "last_sync_status": last_sync_status,
            "last_sync_error": error,
        }
        if last_sync_status == LastSyncStatus.FAILED:
            values["status"] = IntegrationStatus.ERROR
        else:
            values["status"] = IntegrationStatus.CONNECTED
            values["last_sync_at"] = synced_at or _now()
        self._patch(integration_id, **values)

    async def mark_error(self, integration_id: str, message: str) -> None:
        self._patch(
            integration_id,
            status=IntegrationStatus.ERROR,
            last_sync_error=message,
            sync_started_at=None,
        )

    async def disconnect(self, integration_id: str) -> None:
        self._patch(
            integration_id,
            status=IntegrationStatus.DISCONNECTED,
            access_token=None,
            refresh_token=None,
            token_expires_at=None,
            webhook_id=None,
            webhook_secret=None,
            sync_started_at=None,
        )

    # ── Sync Logs ─────────────────────────────────────────────────────────

    async def create_sync_log(
        self,
        integration_id: str,
        entity_type: str,
        operation: SyncOperation,
        direction: SyncDirection,
        metadata: dict[str, Any] | None = None,
    ) -> SyncLogRead:
        log = SyncLogRead(
            id=str(uuid.uuid4()),
            integration_id=integration_id,
            entity_type=entity_type,
            operation=operation,
            direction=direction,
            status=SyncLogStatus.STARTED,
            metadata=metadata or {},
            started_at=_now(),
        )
        self.sync_logs[log.id] = log
        return log

    async def finalize_sync_log(
        self,
        log_id: str,
        status: SyncLogStatus,
        counts: SyncCounts | None = None,
        error_message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        log = self.sync_logs.get(log_id)
        if log is None or log.status != SyncLogStatus.STARTED:
            return False
        counts = counts or SyncCounts()
        values: dict[str, Any] = {
            "status": status,
            "records_processed": counts.processed,
            "records_created": counts.created,
            "records_updated": counts.updated,
            "records_skipped": counts.skipped,
            "records_failed": counts.failed,
            "error_message": error_message,
            "completed_at": _now(),
        }
        if metadata is not None:
            values["metadata"] = metadata
        self.sync_logs[log_id] = log.model_copy(update=values)
        return True

    async def list_sync_logs(self, integration_id: str, limit: int = 20) -> list[SyncLogRead]:
        logs = [l for l in self.sync_logs.values() if l.integration_id == integration_id]
        logs.sort(key=lambda l: l.started_at, reverse=True)
        return logs[:limit]

    def logs_for(
        self, operation: SyncOperation | None = None, status: SyncLogStatus | None = None
    ) -> list[SyncLogRead]:
        """Test helper: sync logs filtered by operation and status."""
        return [
            l for l in self.sync_logs.values()
            if (operation is None or l.operation == operation)
            and (status is None or l.status == status)
        ]

    # ── Recipients ────────────────────────────────────────────────────────

    def _find(
        self, organization_id: str, external_id: str, source: str, entity_type: EntityType
    ) -> RecipientRead | None:
        for recipient in self.recipients.values():
            if (
                recipient.organization_id == organization_id
                and recipient.external_id == external_id
                and recipient.external_source is not None
                and recipient.external_source.value == source
                and recipient.external_entity_type is not None
                and object_kind(recipient.external_entity_type) == object_kind(entity_type)
            ):
                return recipient
        return None

    async def upsert_recipient(
        self, organization_id: str, mapped: MappedRecord
    ) -> tuple[UpsertOutcome, RecipientRead]:
        source = mapped.external_source.value
        now = _now()
        current = self._find(organization_id, mapped.external_id, source, mapped.entity_type)
        if current is None:
            recipient = RecipientRead(
                **{k: v for k, v in mapped.fields.items()},
                id=str(uuid.uuid4()),
                organization_id=organization_id,
                external_id=mapped.external_id,
                external_source=mapped.external_source,
                external_url=mapped.external_url,
                external_entity_type=mapped.entity_type,
                sync_status=RecipientSyncStatus.SYNCED,
                last_synced_at=now,
                created_at=now,
            )
            self.recipients[recipient.id] = recipient
            return UpsertOutcome.CREATED, recipient

        snapshot = current.model_dump(mode="json")
        changes = recipient_changes(snapshot, mapped)
        if not changes:
            if current.sync_status != RecipientSyncStatus.SYNCED:
                current = current.model_copy(
                    update={"sync_status": RecipientSyncStatus.SYNCED, "last_synced_at": now}
                )
                self.recipients[current.id] = current
            return UpsertOutcome.UNCHANGED, current

        updated = RecipientRead.model_validate({
            **current.model_dump(),
            **changes,
            "sync_status": RecipientSyncStatus.SYNCED,
            "last_synced_at": now,
            "updated_at": now,
        })
        self.recipients[updated.id] = updated
        return UpsertOutcome.UPDATED, updated

    async def soft_unlink_recipient(
        self,
        organization_id: str,
        external_id: str,
        external_source: str,
        entity_type: EntityType,
    ) -> bool:
        current = self._find(organization_id, external_id, external_source, entity_type)
        if current is None:
            return False
        self.recipients[current.id] = current.model_copy(update={
            "external_id": None,
            "external_source": None,
            "external_url": None,
            "external_entity_type": None,
            "sync_status": None,
            "updated_at": _now(),
        })
        return True

    async def get_recipient(self, organization_id: str, recipient_id: str) -> RecipientRead | None:
        recipient = self.recipients.get(recipient_id)
        if recipient and recipient.organization_id == organization_id:
            return recipient
        return None

    async def get_recipient_by_external(
        self,
        organization_id: str,
        external_id: str,
        external_source: str,
        entity_type: EntityType,
    ) -> RecipientRead | None:
        return self._find(organization_id, external_id, external_source, entity_type)

    async def update_recipient(
        self,
        organization_id: str,
        recipient_id: str,
        changes: dict[str, Any],
        mark_pending: bool = False,
    ) -> RecipientRead | None:
        current = await self.get_recipient(organization_id, recipient_id)
        if current is None:
            return None
        values = {k: v for k, v in changes.items() if k in EDITABLE_RECIPIENT_FIELDS}
        if mark_pending:
            values["sync_status"] = RecipientSyncStatus.PENDING
        updated = current.model_copy(update={**values, "updated_at": _now()})
        self.recipients[updated.id] = updated
        return updated

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
        current = self._find(organization_id, external_id, external_source, entity_type)
        if current is None:
            return False
        if pending_since is not None and (
            current.sync_status != RecipientSyncStatus.PENDING
            or current.updated_at != pending_since
        ):
            return False
        values: dict[str, Any] = {"sync_status": status}
        if synced_at is not None:
            values["last_synced_at"] = synced_at
        self.recipients[current.id] = current.model_copy(update=values)
        return True


# ── Fake Provider ────────────────────────────────────────────────────────────


class FakeAdapter(ProviderAdapter):
    """Scriptable HubSpot-shaped adapter.

    ``pages[entity]`` is a list of record pages; ``entity_errors[entity]``
    raises on the first fetch of that entity; ``records`` backs fetch_record.
    """

    provider = CRMProvider.HUBSPOT
    SIGNATURE_HEADERS = ("x-hubspot-signature-v3",)
    SYNC_ENTITIES = (EntityType.COMPANY, EntityType.CONTACT, EntityType.DEAL)

    def __init__(self) -> None:
        super().__init__(ProviderCredentials("client-id", "client-secret"), timeout=1.0)
        self.pages: dict[EntityType, list[list[ProviderRecord]]] = {}
        self.modified: dict[EntityType, list[ProviderRecord]] = {}
        self.records: dict[str, ProviderRecord] = {}
        self.entity_errors: dict[EntityType, Exception] = {}
        self.update_error: Exception | None = None
        self.refresh_error: Exception | None = None
        self.updates: list[tuple[EntityType, str, dict[str, Any]]] = []
        self.fetch_calls: list[tuple[EntityType, str | None]] = []
        self.refresh_calls = 0

    def get_auth_url(self, state: str, redirect_uri: str) -> str:
        return f"https://auth.example.com/authorize?state={state}"

    async def exchange_code(self, code: str, redirect_uri: str) -> OAuthTokens:
        return OAuthTokens(
            access_token=f"access-{code}",
            refresh_token=f"refresh-{code}",
            expires_at=_now() + timedelta(hours=1),
        )

    async def refresh_token(self, refresh_token: str) -> OAuthTokens:
        self.refresh_calls += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        return OAuthTokens(
            access_token="refreshed-access",
            refresh_token=None,
            expires_at=_now() + timedelta(hours=1),
        )

    async def fetch_records(
        self,
        entity_type: EntityType,
        access_token: str,
        cursor: str | None = None,
        limit: int = 100,
        instance_url: str | None = None,
    ) -> PaginatedRecords:
        self.fetch_calls.append((entity_type, cursor))
        if entity_type in self.entity_errors:
            raise self.entity_errors[entity_type]
        pages = self.pages.get(entity_type, [])
        index = int(cursor) if cursor else 0
        if index >= len(pages):
            return PaginatedRecords()
        has_more = index + 1 < len(pages)
        return PaginatedRecords(
            records=pages[index],
            next_cursor=str(index + 1) if has_more else None,
            has_more=has_more,
        )

    async def fetch_records_modified_since(
        self,
        entity_type: EntityType,
        access_token: str,
        since: datetime,
        instance_url: str | None = None,
    ) -> list[ProviderRecord]:
        if entity_type in self.entity_errors:
            raise self.entity_errors[entity_type]
        return list(self.modified.get(entity_type, []))

    async def fetch_record(
        self,
        entity_type: EntityType,
        access_token: str,
        external_id: str,
        instance_url: str | None = None,
    ) -> ProviderRecord | None:
        return self.records.get(external_id)

    async def update_record(
        self,
        entity_type: EntityType,
        access_token: str,
        external_id: str,
        properties: dict[str, Any],
        instance_url: str | None = None,
    ) -> None:
        if self.update_error is not None:
            raise self.update_error
        self.updates.append((entity_type, external_id, properties))

    def parse_webhook_payload(self, payload: Any) -> list[WebhookEvent]:
        items = payload if isinstance(payload, list) else [payload]
        return [WebhookEvent.model_validate(item) for item in items if isinstance(item, dict)]


def contact_record(index: int, **overrides: Any) -> ProviderRecord:
    """HubSpot-shaped contact record."""
    properties = {
        "email": f"person{index}@example.com",
        "firstname": f"Person{index}",
        "lastname": "Example",
        "jobtitle": "Engineer",
    }
    properties.update(overrides)
    return ProviderRecord(id=f"c-{index}", properties=properties)


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def crm_config() -> CRMSyncConfig:
    return CRMSyncConfig(
        app_base_url="https://crm.example.com",
        oauth_state_secret="test-state-secret",
        token_encryption_key=Fernet.generate_key().decode(),
        credentials={"hubspot": ProviderCredentials("client-id", "client-secret")},
        demo_mode=True,
    )


@pytest.fixture
def cipher(crm_config: CRMSyncConfig) -> TokenCipher:
    return TokenCipher(crm_config.token_encryption_key)


@pytest.fixture
def repository() -> InMemoryIntegrationRepository:
    return InMemoryIntegrationRepository()


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def registry(adapter: FakeAdapter) -> ProviderRegistry:
    return ProviderRegistry({"hubspot": adapter})


@pytest.fixture
def oauth(crm_config, registry, repository, cipher) -> OAuthManager:
    return OAuthManager(crm_config, registry, repository, cipher)


@pytest.fixture
def handlers(repository):
    return build_handlers(repository)


@pytest_asyncio.fixture
async def task_queue():
    queue = TaskQueue()
    yield queue
    await queue.shutdown(timeout=1.0)


@pytest.fixture
def engine(crm_config, registry, repository, oauth, handlers, task_queue) -> SyncEngine:
    return SyncEngine(crm_config, registry, repository, oauth, handlers, task_queue)


@pytest_asyncio.fixture
async def integration(oauth: OAuthManager) -> IntegrationRead:
    """A CONNECTED HubSpot integration for ORG_ID."""
    return await oauth.store_integration_tokens(
        ORG_ID,
        "hubspot",
        OAuthTokens(
            access_token="live-access",
            refresh_token="live-refresh",
            expires_at=_now() + timedelta(hours=1),
        ),
    )
