"""Pydantic schemas for the CRM integration layer.

Defines all structured types shared by adapters, mappers, the sync engine
and the HTTP surface:
- Enums: CRMProvider, EntityType, IntegrationStatus, LastSyncStatus,
  RecipientSyncStatus, SyncOperation, SyncDirection, SyncLogStatus,
  WebhookAction, UpsertOutcome
- Provider payloads: OAuthTokens, ProviderRecord, PaginatedRecords,
  WebhookEvent, WebhookRegistration
- Sync payloads: MappedRecord, SyncCounts, PushResult
- Read models: IntegrationRead, SyncLogRead, RecipientRead
- Auth: AuthSession, OAuthState, AccessCredentials
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class CRMProvider(str, Enum):
    """Supported external CRM providers."""

    HUBSPOT = "hubspot"
    SALESFORCE = "salesforce"
    ATTIO = "attio"


class EntityType(str, Enum):
    """CRM entity kinds. All of them land in the local recipients table."""

    LEAD = "lead"
    CONTACT = "contact"
    COMPANY = "company"
    DEAL = "deal"


# Provider id namespaces. Leads and contacts are the same CRM object (HubSpot
# contacts, Attio people); companies and deals are numbered independently, so
# an id is only unique together with its object kind.
ENTITY_OBJECT_KIND: dict[EntityType, str] = {
    EntityType.LEAD: "person",
    EntityType.CONTACT: "person",
    EntityType.COMPANY: "company",
    EntityType.DEAL: "deal",
}


def object_kind(entity_type: EntityType | str) -> str:
    return ENTITY_OBJECT_KIND[EntityType(entity_type)]


# Companies first so contacts and leads can reference them by name.
SYNC_ENTITY_ORDER: tuple[EntityType, ...] = (
    EntityType.COMPANY,
    EntityType.CONTACT,
    EntityType.LEAD,
    EntityType.DEAL,
)


class IntegrationStatus(str, Enum):
    """Integration lifecycle: DISCONNECTED -> CONNECTED -> SYNCING -> {CONNECTED, ERROR}."""

    CONNECTED = "CONNECTED"
    SYNCING = "SYNCING"
    ERROR = "ERROR"
    DISCONNECTED = "DISCONNECTED"


class LastSyncStatus(str, Enum):
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


class RecipientSyncStatus(str, Enum):
    """Per-recipient sync state. None on a recipient means locally created."""

    SYNCED = "SYNCED"
    PENDING = "PENDING"
    ERROR = "ERROR"


class SyncOperation(str, Enum):
    FULL_SYNC = "full_sync"
    INCREMENTAL_SYNC = "incremental_sync"
    WEBHOOK = "webhook"
    PUSH = "push"


class SyncDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class SyncLogStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


class WebhookAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class UpsertOutcome(str, Enum):
    """Result of applying one mapped record to the local store."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


# ── Provider Payloads ───────────────────────────────────────────────────────


class OAuthTokens(BaseModel):
    """Tokens returned by a provider code exchange or refresh."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    instance_url: str | None = None


class ProviderRecord(BaseModel):
    """One provider-native record, already flattened to property name -> value."""

    id: str
    properties: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class PaginatedRecords(BaseModel):
    records: list[ProviderRecord] = Field(default_factory=list)
    next_cursor: str | None = None
    has_more: bool = False


class WebhookEvent(BaseModel):
    """Provider webhook notification normalized to a single record change."""

    entity_type: EntityType
    action: WebhookAction
    external_id: str
    data: dict[str, Any] | None = None
    occurred_at: datetime | None = None


class WebhookRegistration(BaseModel):
    webhook_id: str
    secret: str | None = None


# ── Sync Payloads ───────────────────────────────────────────────────────────


class MappedRecord(BaseModel):
    """Provider record translated into local recipient field names.

    ``fields`` only ever contains recipient columns; company and deal
    attributes without a recipient column live under ``custom_fields["crm"]``.
    """

    entity_type: EntityType
    external_id: str
    external_source: CRMProvider
    external_url: str | None = None
    fields: dict[str, Any] = Field(default_factory=dict)


class SyncCounts(BaseModel):
    """Per-run record counters.

    ``updated`` counts rows actually written with a change (new rows
    included), ``created`` is the new-row subset, ``skipped`` counts
    idempotent no-ops.
    """

    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)

    def record(self, outcome: UpsertOutcome) -> None:
        self.processed += 1
        if outcome == UpsertOutcome.CREATED:
            self.created += 1
            self.updated += 1
        elif outcome == UpsertOutcome.UPDATED:
            self.updated += 1
        else:
            self.skipped += 1

    def record_failure(self, message: str) -> None:
        self.processed += 1
        self.failed += 1
        self.errors.append(message)

    def merge(self, other: SyncCounts) -> None:
        self.processed += other.processed
        self.created += other.created
        self.updated += other.updated
        self.skipped += other.skipped
        self.failed += other.failed
        self.errors.extend(other.errors)

    @property
    def status(self) -> LastSyncStatus:
        if self.failed == 0:
            return LastSyncStatus.SUCCESS
        if self.failed < self.processed:
            return LastSyncStatus.PARTIAL
        return LastSyncStatus.FAILED


class PushResult(BaseModel):
    """Completion contract of an outbound push: resolves, never raises."""

    success: bool
    error: str | None = None
    pushed_fields: list[str] = Field(default_factory=list)


# ── Auth ────────────────────────────────────────────────────────────────────


class AuthSession(BaseModel):
    """Authenticated caller as exposed by the external auth service."""

    user_id: str
    organization_id: str
    role: str = "member"


class OAuthState(BaseModel):
    organization_id: str
    provider: CRMProvider


class AccessCredentials(BaseModel):
    access_token: str
    instance_url: str | None = None


# ── Read Models ─────────────────────────────────────────────────────────────


class IntegrationRead(BaseModel):
    """Integration row as seen by services. Tokens are still encrypted here."""

    id: str
    organization_id: str
    provider: CRMProvider
    status: IntegrationStatus
    access_token: str | None = None
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    instance_url: str | None = None
    webhook_id: str | None = None
    webhook_secret: str | None = None
    last_sync_at: datetime | None = None
    last_sync_status: LastSyncStatus | None = None
    last_sync_error: str | None = None
    sync_started_at: datetime | None = None
    is_demo: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


class IntegrationWrite(BaseModel):
    """Values written when an integration is connected or reconnected."""

    organization_id: str
    provider: CRMProvider
    access_token: str
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    instance_url: str | None = None
    webhook_secret: str | None = None
    is_demo: bool = False
    last_sync_at: datetime | None = None
    last_sync_status: LastSyncStatus | None = None


class SyncLogRead(BaseModel):
    id: str
    integration_id: str
    entity_type: str
    operation: SyncOperation
    direction: SyncDirection
    status: SyncLogStatus
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_skipped: int = 0
    records_failed: int = 0
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime | None = None
    completed_at: datetime | None = None


class RecipientRead(BaseModel):
    id: str
    organization_id: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    company: str | None = None
    job_title: str | None = None
    linkedin_url: str | None = None
    address: str | None = None
    lead_status: str | None = None
    lead_source: str | None = None
    notes: str | None = None
    tags: list[str] = Field(default_factory=list)
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    do_not_send: bool = False
    external_id: str | None = None
    external_source: CRMProvider | None = None
    external_url: str | None = None
    external_entity_type: EntityType | None = None
    sync_status: RecipientSyncStatus | None = None
    last_synced_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def crm_managed(self) -> bool:
        return self.external_id is not None and self.external_source is not None


class RecipientUpdate(BaseModel):
    """Local edit to a recipient. Only fields that are set are applied."""

    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    company: str | None = None
    job_title: str | None = None
    linkedin_url: str | None = None
    address: str | None = None
    lead_status: str | None = None
    notes: str | None = None
    tags: list[str] | None = None
    custom_fields: dict[str, Any] | None = None
    do_not_send: bool | None = None
