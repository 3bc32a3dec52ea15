"""Integration tests for the HTTP surface.

Builds the real app with create_app(), hangs the conftest services (in-memory
repository, FakeAdapter) off app.state, and drives it with httpx AsyncClient
over ASGITransport. The lifespan is not run, so no database is needed.
"""

from __future__ import annotations

import dataclasses
import hashlib
import hmac
import json
from urllib.parse import parse_qs, urlparse
from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.crmsync.config import ProviderCredentials, get_settings
from src.crmsync.core.security import SESSION_COOKIE, create_session_token
from src.crmsync.integrations.providers import SalesforceAdapter
from src.crmsync.integrations.recipients import RecipientEditService
from src.crmsync.integrations.schemas import (
    EntityType,
    IntegrationStatus,
    RecipientSyncStatus,
    SyncOperation,
)
from src.crmsync.integrations.webhooks import WebhookIngestor
from src.crmsync.main import create_app
from tests.conftest import ORG_ID, contact_record

FRONTEND = get_settings().frontend_url


def _auth(organization_id: str = ORG_ID) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_session_token('user-1', organization_id)}"}


def _query(location: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlparse(location).query).items()}


@pytest.fixture
def app(crm_config, registry, repository, oauth, engine, handlers, task_queue):
    application = create_app()
    application.state.crm_config = crm_config
    application.state.provider_registry = registry
    application.state.integration_repository = repository
    application.state.oauth_manager = oauth
    application.state.sync_engine = engine
    application.state.webhook_ingestor = WebhookIngestor(registry, repository, oauth, handlers)
    application.state.recipient_service = RecipientEditService(repository, engine)
    application.state.demo_service = engine.demo
    application.state.task_queue = task_queue
    return application


@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ── OAuth: authorize ────────────────────────────────────────────────────────


class TestAuthorize:
    @pytest.mark.asyncio
    async def test_unauthenticated_redirects_to_login(self, client):
        response = await client.get("/api/v1/integrations/hubspot/authorize")

        assert response.status_code == 302
        assert response.headers["location"] == f"{FRONTEND}/login?callbackUrl=%2Fintegrations"

    @pytest.mark.asyncio
    async def test_invalid_provider(self, client):
        response = await client.get("/api/v1/integrations/pipedrive/authorize", headers=_auth())

        assert response.status_code == 302
        assert response.headers["location"] == f"{FRONTEND}/integrations?error=invalid_provider"

    @pytest.mark.asyncio
    async def test_redirects_to_consent_with_signed_state(self, client, oauth):
        response = await client.get("/api/v1/integrations/hubspot/authorize", headers=_auth())

        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith("https://auth.example.com/authorize")
        state = oauth.verify_oauth_state(_query(location)["state"])
        assert state.organization_id == ORG_ID

    @pytest.mark.asyncio
    async def test_session_cookie_accepted(self, client):
        client.cookies.set(SESSION_COOKIE, create_session_token("user-1", ORG_ID))

        response = await client.get("/api/v1/integrations/hubspot/authorize")

        assert response.headers["location"].startswith("https://auth.example.com/authorize")

    @pytest.mark.asyncio
    async def test_unconfigured_provider(self, client, registry):
        registry._adapters["salesforce"] = SalesforceAdapter(ProviderCredentials("", ""))

        response = await client.get("/api/v1/integrations/salesforce/authorize", headers=_auth())

        assert response.status_code == 302
        error = _query(response.headers["location"])["error"]
        assert "not configured" in error


# ── OAuth: callback ─────────────────────────────────────────────────────────


class TestCallback:
    @pytest.mark.asyncio
    async def test_invalid_provider(self, client):
        response = await client.get("/api/v1/integrations/pipedrive/callback?code=x&state=y")

        assert _query(response.headers["location"]) == {"error": "invalid_provider"}

    @pytest.mark.asyncio
    async def test_provider_error_is_forwarded(self, client):
        response = await client.get("/api/v1/integrations/hubspot/callback?error=access_denied")

        assert _query(response.headers["location"]) == {"error": "access_denied"}

    @pytest.mark.asyncio
    async def test_missing_parameters(self, client):
        response = await client.get("/api/v1/integrations/hubspot/callback?code=abc")

        assert _query(response.headers["location"]) == {"error": "missing_parameters"}

    @pytest.mark.asyncio
    async def test_invalid_state(self, client, repository):
        response = await client.get("/api/v1/integrations/hubspot/callback?code=abc&state=forged")

        assert _query(response.headers["location"]) == {"error": "invalid_state"}
        assert repository.integrations == {}

    @pytest.mark.asyncio
    async def test_provider_mismatch(self, client, oauth, repository):
        state = oauth.generate_oauth_state(ORG_ID, "salesforce")

        response = await client.get(
            "/api/v1/integrations/hubspot/callback", params={"code": "abc", "state": state}
        )

        assert _query(response.headers["location"]) == {"error": "provider_mismatch"}
        assert repository.integrations == {}

    @pytest.mark.asyncio
    async def test_success_stores_tokens_and_runs_setup(
        self, client, oauth, repository, cipher, task_queue
    ):
        state = oauth.generate_oauth_state(ORG_ID, "hubspot")

        response = await client.get(
            "/api/v1/integrations/hubspot/callback", params={"code": "abc", "state": state}
        )

        assert response.status_code == 302
        assert response.headers["location"] == f"{FRONTEND}/integrations?connected=hubspot"
        integration = await repository.get_integration(ORG_ID)
        assert integration.organization_id == ORG_ID
        assert cipher.decrypt(integration.access_token) == "access-abc"

        await task_queue.drain()
        assert len(repository.logs_for(operation=SyncOperation.FULL_SYNC)) == 1


# ── Demo ────────────────────────────────────────────────────────────────────


class TestDemo:
    @pytest.mark.asyncio
    async def test_demo_disabled(self, app, client, crm_config):
        app.state.crm_config = dataclasses.replace(crm_config, demo_mode=False)

        response = await client.post("/api/v1/integrations/demo/hubspot", headers=_auth())

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_invalid_provider(self, client):
        response = await client.post("/api/v1/integrations/demo/pipedrive", headers=_auth())

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_requires_session(self, client):
        response = await client.post("/api/v1/integrations/demo/hubspot")

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_creates_seeded_demo(self, client, repository):
        response = await client.post("/api/v1/integrations/demo/hubspot", headers=_auth())

        assert response.status_code == 200
        assert response.json()["success"] is True
        integration = await repository.get_integration(ORG_ID)
        assert integration.is_demo is True
        assert len(repository.recipients) > 0

    @pytest.mark.asyncio
    async def test_conflict_with_active_integration(self, client, integration):
        response = await client.post("/api/v1/integrations/demo/hubspot", headers=_auth())

        assert response.status_code == 409


# ── Status, Sync, Disconnect, Logs ──────────────────────────────────────────


class TestStatusAndControl:
    @pytest.mark.asyncio
    async def test_status_requires_session(self, client):
        response = await client.get("/api/v1/integrations/status")

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_status_without_integration(self, client):
        response = await client.get("/api/v1/integrations/status", headers=_auth())

        assert response.status_code == 200
        assert response.json() == {"connected": False, "integration": None, "recent_logs": []}

    @pytest.mark.asyncio
    async def test_status_never_exposes_tokens(self, client, integration):
        response = await client.get("/api/v1/integrations/status", headers=_auth())

        body = response.json()
        assert body["connected"] is True
        assert body["integration"]["provider"] == "hubspot"
        assert body["integration"]["status"] == "CONNECTED"
        assert "access_token" not in body["integration"]
        assert "webhook_secret" not in body["integration"]

    @pytest.mark.asyncio
    async def test_manual_sync(self, client, integration, adapter):
        adapter.pages = {EntityType.CONTACT: [[contact_record(1)]]}

        response = await client.post("/api/v1/integrations/sync", headers=_auth())

        body = response.json()
        assert body["success"] is True
        assert body["counts"]["processed"] == 1
        assert body["counts"]["created"] == 1
        assert "errors" not in body["counts"]

    @pytest.mark.asyncio
    async def test_manual_sync_without_integration(self, client):
        response = await client.post("/api/v1/integrations/sync", headers=_auth())

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["error"]

    @pytest.mark.asyncio
    async def test_disconnect(self, client, integration, repository):
        response = await client.post("/api/v1/integrations/disconnect", headers=_auth())

        assert response.status_code == 200
        assert repository.integrations[integration.id].status == IntegrationStatus.DISCONNECTED

        status = await client.get("/api/v1/integrations/status", headers=_auth())
        assert status.json()["connected"] is False

    @pytest.mark.asyncio
    async def test_disconnect_without_integration(self, client):
        response = await client.post("/api/v1/integrations/disconnect", headers=_auth())

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_sync_logs(self, client, integration, engine):
        await engine.run_initial_sync(ORG_ID)

        response = await client.get("/api/v1/integrations/sync-logs", headers=_auth())

        logs = response.json()
        assert len(logs) == 1
        assert logs[0]["operation"] == "full_sync"
        assert logs[0]["status"] == "completed"

    @pytest.mark.asyncio
    async def test_sync_logs_limit_validated(self, client):
        response = await client.get("/api/v1/integrations/sync-logs?limit=0", headers=_auth())

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_other_org_sees_nothing(self, client, integration):
        response = await client.get("/api/v1/integrations/status", headers=_auth("org-beta"))

        assert response.json()["connected"] is False


# ── Webhooks ────────────────────────────────────────────────────────────────


class TestWebhookRoute:
    @pytest.mark.asyncio
    async def test_invalid_provider(self, client):
        response = await client.post("/api/v1/webhooks/pipedrive", content=b"[]")

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_bad_signature(self, client, integration):
        response = await client.post(
            "/api/v1/webhooks/hubspot",
            content=b"[]",
            headers={"x-hubspot-signature-v3": "0" * 64},
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_processed(self, client, integration, repository):
        body = json.dumps([{
            "entity_type": "contact",
            "action": "create",
            "external_id": "c-1",
            "data": {"email": "hook@example.com"},
        }]).encode()
        signature = hmac.new(integration.webhook_secret.encode(), body, hashlib.sha256).hexdigest()

        response = await client.post(
            f"/api/v1/webhooks/hubspot?integration_id={integration.id}",
            content=body,
            headers={"x-hubspot-signature-v3": signature, "content-type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json() == {"received": True, "processed": 1}
        assert next(iter(repository.recipients.values())).email == "hook@example.com"

    @pytest.mark.asyncio
    async def test_invalid_payload_acknowledged(self, client, integration):
        body = b"not json"
        signature = hmac.new(integration.webhook_secret.encode(), body, hashlib.sha256).hexdigest()

        response = await client.post(
            "/api/v1/webhooks/hubspot", content=body, headers={"x-hubspot-signature-v3": signature}
        )

        assert response.status_code == 200
        assert response.json() == {"received": True, "error": "invalid_payload"}


# ── Recipients ──────────────────────────────────────────────────────────────


class TestRecipientRoute:
    @pytest_asyncio.fixture
    async def recipient(self, integration, engine, adapter, repository):
        adapter.pages = {EntityType.CONTACT: [[contact_record(1)]]}
        await engine.run_initial_sync(ORG_ID)
        return next(iter(repository.recipients.values()))

    @pytest.mark.asyncio
    async def test_crm_field_is_pushed(self, client, recipient, adapter, task_queue, repository):
        response = await client.patch(
            f"/api/v1/recipients/{recipient.id}",
            json={"email": "changed@example.com", "notes": "met at conference"},
            headers=_auth(),
        )

        body = response.json()
        assert response.status_code == 200
        assert body["pushed_fields"] == ["email"]
        assert body["local_fields"] == ["notes"]
        assert body["recipient"]["sync_status"] == "PENDING"

        await task_queue.drain()
        assert adapter.updates == [(EntityType.CONTACT, "c-1", {"email": "changed@example.com"})]
        assert repository.recipients[recipient.id].sync_status == RecipientSyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_local_only_edit_is_not_pushed(self, client, recipient, adapter, task_queue):
        response = await client.patch(
            f"/api/v1/recipients/{recipient.id}",
            json={"tags": ["vip"], "do_not_send": True},
            headers=_auth(),
        )

        assert response.json()["pushed_fields"] == []
        assert response.json()["recipient"]["sync_status"] == "SYNCED"
        await task_queue.drain()
        assert adapter.updates == []

    @pytest.mark.asyncio
    async def test_unknown_recipient(self, client):
        response = await client.patch(
            "/api/v1/recipients/nope", json={"email": "x@example.com"}, headers=_auth()
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_requires_session(self, client):
        response = await client.patch("/api/v1/recipients/nope", json={"email": "x@example.com"})

        assert response.status_code == 401


# ── Health & Wiring ─────────────────────────────────────────────────────────


class TestHealthAndWiring:
    @pytest.mark.asyncio
    async def test_liveness(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    @pytest.mark.asyncio
    async def test_readiness_degraded_without_database(self, client):
        with patch("src.crmsync.api.v1.health.get_engine", side_effect=RuntimeError("db down")):
            response = await client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["checks"]["database"] == "error"
        assert response.json()["checks"]["services"] == "ok"

    @pytest.mark.asyncio
    async def test_services_missing_returns_503(self):
        bare = create_app()
        transport = ASGITransport(app=bare)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.get("/api/v1/integrations/status", headers=_auth())

        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, client):
        response = await client.get("/health", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"

    @pytest.mark.asyncio
    async def test_metrics_endpoint(self, client):
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text
