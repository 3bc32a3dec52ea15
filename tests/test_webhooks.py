"""Tests for WebhookIngestor.

Covers signature matching against per-integration secrets, the
no-candidate and invalid-payload paths, inline vs hydrated events, delete
soft-unlinking and per-event failure isolation.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import uuid
from unittest.mock import patch

import pytest
import pytest_asyncio

from src.crmsync.integrations.errors import UnsupportedProviderError, WebhookSignatureError
from src.crmsync.integrations.mappers import map_external_to_local
from src.crmsync.integrations.schemas import (
    EntityType,
    IntegrationRead,
    OAuthTokens,
    ProviderRecord,
    SyncLogStatus,
    SyncOperation,
)
from src.crmsync.integrations.webhooks import WebhookIngestor
from tests.conftest import ORG_ID, contact_record

SIGNATURE_HEADER = "x-hubspot-signature-v3"


def _signed(events, secret: str) -> tuple[bytes, dict[str, str]]:
    body = json.dumps(events).encode()
    signature = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return body, {SIGNATURE_HEADER: signature}


def _event(external_id: str, action: str = "update", data: dict | None = None) -> dict:
    event = {"entity_type": "contact", "action": action, "external_id": external_id}
    if data is not None:
        event["data"] = data
    return event


@pytest.fixture
def ingestor(registry, repository, oauth, handlers) -> WebhookIngestor:
    return WebhookIngestor(registry, repository, oauth, handlers)


@pytest_asyncio.fixture
async def linked_contact(integration, handlers, repository):
    """A recipient already synced from HubSpot contact c-1."""
    mapped = map_external_to_local("hubspot", EntityType.CONTACT, contact_record(1))
    _, recipient = await handlers[EntityType.CONTACT].upsert(ORG_ID, mapped)
    return recipient


def _webhook_logs(repository, status=None):
    return repository.logs_for(operation=SyncOperation.WEBHOOK, status=status)


# ── Signature & Resolution ──────────────────────────────────────────────────


class TestSignature:
    @pytest.mark.asyncio
    async def test_invalid_signature_rejected_before_any_write(
        self, ingestor, integration: IntegrationRead, repository
    ):
        body, headers = _signed([_event("c-1", data={"email": "x@example.com"})], "wrong-secret")

        with pytest.raises(WebhookSignatureError):
            await ingestor.ingest("hubspot", body, headers)

        assert repository.sync_logs == {}
        assert repository.recipients == {}

    @pytest.mark.asyncio
    async def test_missing_signature(self, ingestor, integration):
        body = json.dumps([_event("c-1")]).encode()

        with pytest.raises(WebhookSignatureError, match="Missing"):
            await ingestor.ingest("hubspot", body, {})

    @pytest.mark.asyncio
    async def test_no_candidates_is_a_noop(self, ingestor, repository):
        body, headers = _signed([_event("c-1")], "any-secret")

        outcome = await ingestor.ingest("hubspot", body, headers)

        assert outcome.processed == 0
        assert outcome.integration_id is None
        assert repository.sync_logs == {}

    @pytest.mark.asyncio
    async def test_disconnected_integration_is_not_a_candidate(
        self, ingestor, integration, repository
    ):
        secret = integration.webhook_secret
        await repository.disconnect(integration.id)
        body, headers = _signed([_event("c-1")], secret)

        outcome = await ingestor.ingest("hubspot", body, headers)

        assert outcome.processed == 0
        assert repository.sync_logs == {}

    @pytest.mark.asyncio
    async def test_integration_id_narrows_candidates(self, ingestor, integration, repository):
        body, headers = _signed([_event("c-1", data={"email": "a@example.com"})], integration.webhook_secret)

        outcome = await ingestor.ingest("hubspot", body, headers, integration_id=str(uuid.uuid4()))

        assert outcome.processed == 0
        assert repository.sync_logs == {}

    @pytest.mark.asyncio
    async def test_matches_integration_by_secret(self, ingestor, oauth, integration, repository):
        other = await oauth.store_integration_tokens(
            "org-beta", "hubspot", OAuthTokens(access_token="beta-access")
        )
        body, headers = _signed(
            [_event("c-9", data={"email": "beta@example.com"})], other.webhook_secret
        )

        outcome = await ingestor.ingest("hubspot", body, headers)

        assert outcome.integration_id == other.id
        recipient = next(iter(repository.recipients.values()))
        assert recipient.organization_id == "org-beta"

    @pytest.mark.asyncio
    async def test_unknown_provider(self, ingestor):
        with pytest.raises(UnsupportedProviderError):
            await ingestor.ingest("salesforce", b"{}", {})


# ── Event Processing ────────────────────────────────────────────────────────


class TestEventProcessing:
    @pytest.mark.asyncio
    async def test_inline_create(self, ingestor, integration, repository):
        body, headers = _signed(
            [_event("c-5", action="create", data={"email": "new@example.com", "firstname": "New"})],
            integration.webhook_secret,
        )

        outcome = await ingestor.ingest("hubspot", body, headers)

        assert outcome.processed == 1
        assert outcome.failed == 0
        recipient = next(iter(repository.recipients.values()))
        assert recipient.email == "new@example.com"
        assert recipient.external_id == "c-5"
        logs = _webhook_logs(repository, SyncLogStatus.COMPLETED)
        assert len(logs) == 1
        assert logs[0].entity_type == "contact"
        assert logs[0].records_created == 1
        assert logs[0].metadata["action"] == "create"

    @pytest.mark.asyncio
    async def test_event_without_data_is_hydrated(self, ingestor, integration, repository, adapter):
        adapter.records["c-2"] = contact_record(2)
        body, headers = _signed([_event("c-2")], integration.webhook_secret)

        outcome = await ingestor.ingest("hubspot", body, headers)

        assert outcome.processed == 1
        recipient = next(iter(repository.recipients.values()))
        assert recipient.email == "person2@example.com"

    @pytest.mark.asyncio
    async def test_missing_record_is_skipped(self, ingestor, integration, repository):
        body, headers = _signed([_event("gone")], integration.webhook_secret)

        outcome = await ingestor.ingest("hubspot", body, headers)

        assert outcome.processed == 1
        assert repository.recipients == {}
        log = _webhook_logs(repository, SyncLogStatus.COMPLETED)[0]
        assert log.records_skipped == 1
        assert log.metadata["missing"] is True

    @pytest.mark.asyncio
    async def test_update_existing_recipient(self, ingestor, integration, repository, linked_contact):
        body, headers = _signed(
            [_event("c-1", data={"email": "person1@example.com", "firstname": "Renamed",
                                 "lastname": "Example", "jobtitle": "Engineer"})],
            integration.webhook_secret,
        )

        await ingestor.ingest("hubspot", body, headers)

        recipient = repository.recipients[linked_contact.id]
        assert recipient.first_name == "Renamed"
        assert _webhook_logs(repository)[0].records_updated == 1

    @pytest.mark.asyncio
    async def test_delete_soft_unlinks(self, ingestor, integration, repository, linked_contact):
        body, headers = _signed([_event("c-1", action="delete")], integration.webhook_secret)

        outcome = await ingestor.ingest("hubspot", body, headers)

        assert outcome.processed == 1
        recipient = repository.recipients[linked_contact.id]
        # the local row survives, only its CRM link is removed
        assert recipient.email == "person1@example.com"
        assert recipient.external_id is None
        assert recipient.external_source is None
        assert recipient.sync_status is None

    @pytest.mark.asyncio
    async def test_delete_only_unlinks_matching_object(
        self, ingestor, integration, repository, handlers, linked_contact
    ):
        company_record = ProviderRecord(id="c-1", properties={"name": "Acme Corp"})
        _, company = await handlers[EntityType.COMPANY].upsert(
            ORG_ID, map_external_to_local("hubspot", EntityType.COMPANY, company_record)
        )
        body, headers = _signed(
            [{"entity_type": "company", "action": "delete", "external_id": "c-1"}],
            integration.webhook_secret,
        )

        outcome = await ingestor.ingest("hubspot", body, headers)

        assert outcome.processed == 1
        assert repository.recipients[company.id].external_id is None
        contact = repository.recipients[linked_contact.id]
        assert contact.external_id == "c-1"
        assert contact.external_entity_type == EntityType.CONTACT

    @pytest.mark.asyncio
    async def test_delete_unknown_record(self, ingestor, integration, repository):
        body, headers = _signed([_event("nobody", action="delete")], integration.webhook_secret)

        outcome = await ingestor.ingest("hubspot", body, headers)

        assert outcome.processed == 1
        assert _webhook_logs(repository)[0].records_skipped == 1

    @pytest.mark.asyncio
    async def test_failing_event_does_not_affect_others(self, ingestor, integration, repository):
        body, headers = _signed(
            [
                _event("", data={"email": "broken@example.com"}),
                _event("c-7", data={"email": "fine@example.com"}),
            ],
            integration.webhook_secret,
        )

        outcome = await ingestor.ingest("hubspot", body, headers)

        assert outcome.processed == 1
        assert outcome.failed == 1
        assert [r.email for r in repository.recipients.values()] == ["fine@example.com"]
        failed = _webhook_logs(repository, SyncLogStatus.FAILED)
        assert len(failed) == 1
        assert failed[0].records_failed == 1
        assert failed[0].error_message

    @pytest.mark.asyncio
    async def test_invalid_json(self, ingestor, integration, repository):
        body = b"{not json"
        signature = hmac.new(integration.webhook_secret.encode(), body, hashlib.sha256).hexdigest()

        outcome = await ingestor.ingest("hubspot", body, {SIGNATURE_HEADER: signature})

        assert outcome.error == "invalid_payload"
        failed = _webhook_logs(repository, SyncLogStatus.FAILED)
        assert len(failed) == 1
        assert "Invalid JSON" in failed[0].error_message

    @pytest.mark.asyncio
    async def test_unreadable_payload_is_logged(self, ingestor, integration, repository, adapter):
        body, headers = _signed([_event("c-1")], integration.webhook_secret)

        with patch.object(adapter, "parse_webhook_payload", side_effect=TypeError("bad shape")):
            outcome = await ingestor.ingest("hubspot", body, headers)

        assert outcome.error == "invalid_payload"
        assert outcome.processed == 0
        assert repository.recipients == {}
        failed = _webhook_logs(repository, SyncLogStatus.FAILED)
        assert len(failed) == 1
        assert "Unreadable webhook payload" in failed[0].error_message

    @pytest.mark.asyncio
    async def test_events_for_same_record_are_all_applied(self, ingestor, integration, repository):
        body, headers = _signed(
            [
                _event("c-3", action="create", data={"email": "first@example.com"}),
                _event("c-3", data={"email": "second@example.com"}),
            ],
            integration.webhook_secret,
        )

        outcome = await ingestor.ingest("hubspot", body, headers)

        assert outcome.processed == 2
        assert len(repository.recipients) == 1
        assert len(ingestor._locks) == 0
