"""Webhook ingestion -- verify, resolve the integration, reconcile each event.

An inbound webhook carries no organization context. The integration is the
candidate (CONNECTED or SYNCING for the provider, optionally narrowed by the
``integration_id`` baked into the registered webhook URL) whose own
``webhook_secret`` verifies the signature. Nothing is written before that
check passes.

Each event gets its own SyncLog and succeeds or fails independently. Events
for the same record are serialized by a keyed in-process lock; events for
different records run concurrently.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import structlog

from src.crmsync.core.monitoring import record_webhook_event
from src.crmsync.integrations.errors import WebhookSignatureError
from src.crmsync.integrations.handlers import RecipientHandler
from src.crmsync.integrations.mappers import map_external_to_local
from src.crmsync.integrations.oauth import OAuthManager
from src.crmsync.integrations.providers import ProviderAdapter, ProviderRegistry
from src.crmsync.integrations.repository import IntegrationRepository
from src.crmsync.integrations.schemas import (
    AccessCredentials,
    EntityType,
    IntegrationRead,
    ProviderRecord,
    SyncCounts,
    SyncDirection,
    SyncLogStatus,
    SyncOperation,
    UpsertOutcome,
    WebhookAction,
    WebhookEvent,
    object_kind,
)
from src.crmsync.integrations.tasks import KeyedLocks

logger = structlog.get_logger(__name__)


@dataclass
class WebhookOutcome:
    """Result of one webhook delivery."""

    processed: int = 0
    failed: int = 0
    integration_id: str | None = None
    error: str | None = None


class _CredentialCache:
    """Fetch live credentials at most once per delivery, and only if needed."""

    def __init__(self, oauth: OAuthManager, integration: IntegrationRead) -> None:
        self._oauth = oauth
        self._integration = integration
        self._lock = asyncio.Lock()
        self._credentials: AccessCredentials | None = None

    async def get(self) -> AccessCredentials:
        async with self._lock:
            if self._credentials is None:
                self._credentials = await self._oauth.credentials_for(self._integration)
            return self._credentials


class WebhookIngestor:
    """Processes provider webhook deliveries.

    Args:
        registry: Provider adapters (signature checks, parsing, hydration).
        repository: Integration persistence.
        oauth: Credentials for hydrating events that carry no inline record.
        handlers: Entity strategy map.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        repository: IntegrationRepository,
        oauth: OAuthManager,
        handlers: dict[EntityType, RecipientHandler],
    ) -> None:
        self._registry = registry
        self._repository = repository
        self._oauth = oauth
        self._handlers = handlers
        self._locks = KeyedLocks()

    async def resolve_integration(
        self,
        adapter: ProviderAdapter,
        raw_body: bytes,
        headers: Mapping[str, str],
        integration_id: str | None = None,
    ) -> IntegrationRead | None:
        """Find the integration whose webhook secret verifies this delivery.

        Returns:
            The integration, or None when the provider has no candidates.

        Raises:
            WebhookSignatureError: Candidates exist but none verifies.
        """
        candidates = await self._repository.list_webhook_candidates(
            adapter.provider.value, integration_id
        )
        if not candidates:
            return None

        signature = adapter.signature_header(headers)
        if not signature:
            raise WebhookSignatureError("Missing webhook signature")

        for candidate in candidates:
            if candidate.webhook_secret and adapter.verify_webhook_signature(
                raw_body, signature, candidate.webhook_secret
            ):
                return candidate
        raise WebhookSignatureError("Invalid webhook signature")

    async def ingest(
        self,
        provider: str,
        raw_body: bytes,
        headers: Mapping[str, str],
        integration_id: str | None = None,
    ) -> WebhookOutcome:
        """Verify and process one webhook delivery.

        Raises:
            UnsupportedProviderError: Unknown provider id.
            WebhookSignatureError: No candidate integration verifies the signature.
        """
        adapter = self._registry.get(provider)
        log = logger.bind(provider=provider)

        try:
            integration = await self.resolve_integration(
                adapter, raw_body, headers, integration_id
            )
        except WebhookSignatureError as exc:
            log.warning("webhook.signature_invalid", error=str(exc))
            record_webhook_event(provider, "unknown", "rejected")
            raise

        if integration is None:
            log.info("webhook.no_integration", integration_id=integration_id)
            return WebhookOutcome()

        log = log.bind(
            organization_id=integration.organization_id,
            integration_id=integration.id,
        )
        try:
            payload = json.loads(raw_body or b"null")
        except ValueError as exc:
            return await self._reject_payload(integration, f"Invalid JSON payload: {exc}", log)

        try:
            events = adapter.parse_webhook_payload(payload)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            return await self._reject_payload(integration, f"Unreadable webhook payload: {exc}", log)

        credentials = _CredentialCache(self._oauth, integration)
        results = await asyncio.gather(*(
            self._process_event(adapter, integration, event, credentials)
            for event in events
        ))
        outcome = WebhookOutcome(
            processed=sum(1 for ok in results if ok),
            failed=sum(1 for ok in results if not ok),
            integration_id=integration.id,
        )
        log.info(
            "webhook.processed",
            events=len(events),
            processed=outcome.processed,
            failed=outcome.failed,
        )
        return outcome

    async def _reject_payload(
        self, integration: IntegrationRead, message: str, log: Any
    ) -> WebhookOutcome:
        """Record a delivery that could not be turned into events."""
        sync_log = await self._repository.create_sync_log(
            integration.id, "all", SyncOperation.WEBHOOK, SyncDirection.INBOUND
        )
        await self._repository.finalize_sync_log(
            sync_log.id, SyncLogStatus.FAILED, error_message=message
        )
        log.warning("webhook.invalid_payload", error=message)
        return WebhookOutcome(integration_id=integration.id, error="invalid_payload")

    async def _process_event(
        self,
        adapter: ProviderAdapter,
        integration: IntegrationRead,
        event: WebhookEvent,
        credentials: _CredentialCache,
    ) -> bool:
        """Reconcile one event under its record lock. Never raises."""
        provider = integration.provider.value
        key = (integration.id, object_kind(event.entity_type), event.external_id)
        log = logger.bind(
            integration_id=integration.id,
            provider=provider,
            entity_type=event.entity_type.value,
            external_id=event.external_id,
            action=event.action.value,
        )

        async with self._locks.hold(key):
            counts = SyncCounts()
            metadata = {"action": event.action.value, "external_id": event.external_id}
            sync_log = None
            try:
                sync_log = await self._repository.create_sync_log(
                    integration.id,
                    event.entity_type.value,
                    SyncOperation.WEBHOOK,
                    SyncDirection.INBOUND,
                    metadata=metadata,
                )
                if event.action == WebhookAction.DELETE:
                    unlinked = await self._repository.soft_unlink_recipient(
                        integration.organization_id, event.external_id, provider, event.entity_type
                    )
                    counts.record(UpsertOutcome.UPDATED if unlinked else UpsertOutcome.UNCHANGED)
                else:
                    record = await self._hydrate(adapter, event, credentials)
                    if record is None:
                        metadata["missing"] = True
                        counts.record(UpsertOutcome.UNCHANGED)
                    else:
                        mapped = map_external_to_local(
                            integration.provider,
                            event.entity_type,
                            record,
                            integration.instance_url,
                        )
                        outcome, _ = await self._handlers[event.entity_type].upsert(
                            integration.organization_id, mapped
                        )
                        counts.record(outcome)
                await self._repository.finalize_sync_log(
                    sync_log.id, SyncLogStatus.COMPLETED, counts, metadata=metadata
                )
            except Exception as exc:
                error = str(exc) or type(exc).__name__
                counts.record_failure(error)
                log.warning("webhook.event_failed", error=error)
                record_webhook_event(provider, event.action.value, "failed")
                if sync_log is not None:
                    try:
                        await self._repository.finalize_sync_log(
                            sync_log.id, SyncLogStatus.FAILED, counts,
                            error_message=error, metadata=metadata,
                        )
                    except Exception as log_exc:
                        log.error("webhook.sync_log_failed", error=str(log_exc))
                return False

            record_webhook_event(provider, event.action.value, "completed")
            log.info("webhook.event_processed", updated=counts.updated, skipped=counts.skipped)
            return True

    @staticmethod
    async def _hydrate(
        adapter: ProviderAdapter,
        event: WebhookEvent,
        credentials: _CredentialCache,
    ) -> ProviderRecord | None:
        """Inline record data when the provider sent it, else fetch the record."""
        if event.data:
            return ProviderRecord(id=event.external_id, properties=event.data)
        creds = await credentials.get()
        return await adapter.fetch_record(
            event.entity_type,
            creds.access_token,
            event.external_id,
            instance_url=creds.instance_url,
        )
