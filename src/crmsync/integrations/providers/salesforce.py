"""Salesforce adapter -- REST API v59.0 with SOQL queries.

Every record call needs the org's ``instance_url`` returned at code
exchange. Record properties are normalized to lowercase field names with
``attributes`` and ``Id`` removed. Webhooks arrive through Platform Events or
Outbound Messages configured in Salesforce setup.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode

import structlog

from src.crmsync.config import ProviderCredentials
from src.crmsync.integrations.errors import (
    OAuthExchangeError,
    ProviderApiError,
    TokenRefreshError,
)
from src.crmsync.integrations.providers.base import ProviderAdapter, parse_timestamp
from src.crmsync.integrations.schemas import (
    CRMProvider,
    EntityType,
    OAuthTokens,
    PaginatedRecords,
    ProviderRecord,
    WebhookAction,
    WebhookEvent,
)

logger = structlog.get_logger(__name__)

SALESFORCE_API_VERSION = "v59.0"
# Salesforce does not return expires_in; sessions default to two hours.
SALESFORCE_TOKEN_LIFETIME = timedelta(hours=2)

ENTITY_TO_SOBJECT: dict[EntityType, str] = {
    EntityType.LEAD: "Lead",
    EntityType.CONTACT: "Contact",
    EntityType.COMPANY: "Account",
    EntityType.DEAL: "Opportunity",
}

SOBJECT_TO_ENTITY: dict[str, EntityType] = {v: k for k, v in ENTITY_TO_SOBJECT.items()}

ENTITY_FIELDS: dict[EntityType, list[str]] = {
    EntityType.LEAD: [
        "Id", "Email", "FirstName", "LastName", "Phone", "Company", "Title",
        "LeadSource", "Status", "CreatedDate", "LastModifiedDate",
    ],
    EntityType.CONTACT: [
        "Id", "Email", "FirstName", "LastName", "Phone", "Title", "Department",
        "AccountId", "MailingStreet", "MailingCity", "MailingState",
        "MailingCountry", "LeadSource", "CreatedDate", "LastModifiedDate",
    ],
    EntityType.COMPANY: [
        "Id", "Name", "Website", "Industry", "NumberOfEmployees", "AnnualRevenue",
        "Phone", "BillingStreet", "BillingCity", "BillingState", "BillingCountry",
        "Description", "CreatedDate", "LastModifiedDate",
    ],
    EntityType.DEAL: [
        "Id", "Name", "Amount", "StageName", "Probability", "CloseDate",
        "IsClosed", "IsWon", "AccountId", "LeadSource", "CreatedDate",
        "LastModifiedDate",
    ],
}


def _soql_datetime(value: datetime) -> str:
    """SOQL datetime literal (unquoted, UTC, second precision)."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class SalesforceAdapter(ProviderAdapter):
    """Salesforce CRM adapter.

    Args:
        credentials: Connected App consumer key/secret.
        login_url: OAuth host, ``https://test.salesforce.com`` for sandboxes.
    """

    provider = CRMProvider.SALESFORCE
    SIGNATURE_HEADERS = ("x-salesforce-signature",)

    def __init__(
        self,
        credentials: ProviderCredentials,
        timeout: float = 30.0,
        max_attempts: int = 3,
        login_url: str = "https://login.salesforce.com",
    ) -> None:
        super().__init__(credentials, timeout=timeout, max_attempts=max_attempts)
        self._oauth_base = f"{login_url.rstrip('/')}/services/oauth2"

    def _api_base(self, instance_url: str | None) -> str:
        if not instance_url:
            raise ProviderApiError(self.provider.value, 400, "Salesforce instance_url is required")
        return f"{instance_url.rstrip('/')}/services/data/{SALESFORCE_API_VERSION}"

    def get_auth_url(self, state: str, redirect_uri: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "state": state,
            "scope": "api refresh_token offline_access",
        }
        return f"{self._oauth_base}/authorize?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> OAuthTokens:
        body = await self._token_request(
            f"{self._oauth_base}/token",
            {
                "grant_type": "authorization_code",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": redirect_uri,
                "code": code,
            },
            error_cls=OAuthExchangeError,
        )
        if not body.get("instance_url"):
            raise OAuthExchangeError("salesforce token response missing instance_url")
        return OAuthTokens(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            instance_url=body["instance_url"],
            expires_at=datetime.now(timezone.utc) + SALESFORCE_TOKEN_LIFETIME,
        )

    async def refresh_token(self, refresh_token: str) -> OAuthTokens:
        body = await self._token_request(
            f"{self._oauth_base}/token",
            {
                "grant_type": "refresh_token",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
            },
            error_cls=TokenRefreshError,
        )
        # Salesforce keeps the original refresh token valid
        return OAuthTokens(
            access_token=body["access_token"],
            refresh_token=refresh_token,
            instance_url=body.get("instance_url"),
            expires_at=datetime.now(timezone.utc) + SALESFORCE_TOKEN_LIFETIME,
        )

    def _soql(self, entity_type: EntityType, since: datetime | None = None) -> str:
        query = f"SELECT {', '.join(ENTITY_FIELDS[entity_type])} FROM {ENTITY_TO_SOBJECT[entity_type]}"
        if since is not None:
            query += f" WHERE LastModifiedDate > {_soql_datetime(since)}"
        query += " ORDER BY LastModifiedDate DESC"
        return query

    async def _query_page(
        self,
        url: str,
        access_token: str,
        params: dict | None = None,
        batch_size: int = 200,
    ) -> dict:
        headers = self._bearer(access_token)
        # Salesforce accepts batch sizes between 200 and 2000
        headers["Sforce-Query-Options"] = f"batchSize={min(max(batch_size, 200), 2000)}"
        response = await self._read("GET", url, params=params, headers=headers)
        return response.json()

    async def fetch_records(
        self,
        entity_type: EntityType,
        access_token: str,
        cursor: str | None = None,
        limit: int = 100,
        instance_url: str | None = None,
    ) -> PaginatedRecords:
        api_base = self._api_base(instance_url)
        if cursor:
            # nextRecordsUrl is relative to the instance
            data = await self._query_page(
                f"{instance_url.rstrip('/')}{cursor}", access_token, batch_size=limit
            )
        else:
            data = await self._query_page(
                f"{api_base}/query",
                access_token,
                params={"q": self._soql(entity_type)},
                batch_size=limit,
            )
        next_cursor = data.get("nextRecordsUrl")
        return PaginatedRecords(
            records=[self._normalize(r) for r in data.get("records", [])],
            next_cursor=next_cursor,
            has_more=bool(next_cursor),
        )

    async def fetch_records_modified_since(
        self,
        entity_type: EntityType,
        access_token: str,
        since: datetime,
        instance_url: str | None = None,
    ) -> list[ProviderRecord]:
        api_base = self._api_base(instance_url)
        data = await self._query_page(
            f"{api_base}/query",
            access_token,
            params={"q": self._soql(entity_type, since=since)},
        )
        records = [self._normalize(r) for r in data.get("records", [])]
        while data.get("nextRecordsUrl"):
            data = await self._query_page(
                f"{instance_url.rstrip('/')}{data['nextRecordsUrl']}", access_token
            )
            records.extend(self._normalize(r) for r in data.get("records", []))
        return records

    async def fetch_record(
        self,
        entity_type: EntityType,
        access_token: str,
        external_id: str,
        instance_url: str | None = None,
    ) -> ProviderRecord | None:
        api_base = self._api_base(instance_url)
        response = await self._read(
            "GET",
            f"{api_base}/sobjects/{ENTITY_TO_SOBJECT[entity_type]}/{external_id}",
            params={"fields": ",".join(ENTITY_FIELDS[entity_type])},
            headers=self._bearer(access_token),
            allow_status=(404,),
        )
        if response.status_code == 404:
            return None
        return self._normalize(response.json())

    async def update_record(
        self,
        entity_type: EntityType,
        access_token: str,
        external_id: str,
        properties: dict[str, Any],
        instance_url: str | None = None,
    ) -> None:
        api_base = self._api_base(instance_url)
        # 204 No Content on success
        await self._send(
            "PATCH",
            f"{api_base}/sobjects/{ENTITY_TO_SOBJECT[entity_type]}/{external_id}",
            json=properties,
            headers=self._bearer(access_token),
        )
        logger.info(
            "salesforce.record_updated",
            entity_type=entity_type.value,
            external_id=external_id,
            fields=sorted(properties),
        )

    def parse_webhook_payload(self, payload: Any) -> list[WebhookEvent]:
        items = payload if isinstance(payload, list) else [payload]
        events: list[WebhookEvent] = []
        for item in items:
            sobject = item.get("sobject") if isinstance(item, dict) else None
            record_id = sobject.get("Id") if isinstance(sobject, dict) else None
            if not isinstance(record_id, str) or not record_id:
                logger.debug("salesforce.webhook_event_skipped")
                continue
            entity_type = SOBJECT_TO_ENTITY.get(str(sobject.get("type") or ""), EntityType.CONTACT)
            event = item.get("event") if isinstance(item.get("event"), dict) else {}
            change_type = str(event.get("type") or "").lower()
            if change_type == "created":
                action = WebhookAction.CREATE
            elif change_type == "deleted":
                action = WebhookAction.DELETE
            else:
                action = WebhookAction.UPDATE
            events.append(WebhookEvent(
                entity_type=entity_type,
                action=action,
                external_id=record_id,
                occurred_at=parse_timestamp(event.get("createdDate")),
            ))
        return events

    @staticmethod
    def _normalize(record: dict[str, Any]) -> ProviderRecord:
        properties = {
            key.lower(): value
            for key, value in record.items()
            if key not in ("attributes", "Id")
        }
        return ProviderRecord(
            id=str(record.get("Id", "")),
            properties=properties,
            created_at=parse_timestamp(record.get("CreatedDate")),
            updated_at=parse_timestamp(record.get("LastModifiedDate")),
        )
