"""HubSpot adapter -- CRM v3 objects API with OAuth v1 tokens.

HubSpot has no separate lead object: leads and contacts both live under
``contacts``. Webhook subscriptions are configured in the HubSpot developer
portal, so register/delete are no-ops here.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from urllib.parse import urlencode

import structlog

from src.crmsync.integrations.errors import OAuthExchangeError, TokenRefreshError
from src.crmsync.integrations.providers.base import (
    ProviderAdapter,
    expires_in_to_datetime,
    parse_timestamp,
)
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

HUBSPOT_API_BASE = "https://api.hubapi.com"
HUBSPOT_OAUTH_BASE = "https://app.hubspot.com/oauth"

HUBSPOT_SCOPES = [
    "crm.objects.contacts.read",
    "crm.objects.contacts.write",
    "crm.objects.companies.read",
    "crm.objects.companies.write",
    "crm.objects.deals.read",
    "crm.objects.deals.write",
]

ENTITY_TO_OBJECT: dict[EntityType, str] = {
    EntityType.LEAD: "contacts",
    EntityType.CONTACT: "contacts",
    EntityType.COMPANY: "companies",
    EntityType.DEAL: "deals",
}

ENTITY_PROPERTIES: dict[EntityType, list[str]] = {
    EntityType.LEAD: [
        "email", "firstname", "lastname", "phone", "company", "jobtitle",
        "lifecyclestage", "hs_lead_status", "hs_analytics_source",
        "createdate", "lastmodifieddate",
    ],
    EntityType.CONTACT: [
        "email", "firstname", "lastname", "phone", "jobtitle", "company",
        "department", "linkedin_url", "address", "city", "state", "country",
        "lifecyclestage", "hs_lead_status", "hs_analytics_source",
        "associatedcompanyid", "createdate", "lastmodifieddate",
    ],
    EntityType.COMPANY: [
        "name", "domain", "industry", "numberofemployees", "annualrevenue",
        "website", "phone", "address", "city", "state", "country",
        "description", "createdate", "lastmodifieddate",
    ],
    EntityType.DEAL: [
        "dealname", "amount", "dealstage", "pipeline", "closedate",
        "hs_deal_stage_probability", "hs_is_closed", "hs_is_closed_won",
        "createdate", "lastmodifieddate",
    ],
}


def _object_entity(object_type: Any) -> EntityType | None:
    kind = object_type.lower() if isinstance(object_type, str) else ""
    if kind in ("contact", "contacts"):
        return EntityType.CONTACT
    if kind in ("company", "companies"):
        return EntityType.COMPANY
    if kind in ("deal", "deals"):
        return EntityType.DEAL
    return None


class HubSpotAdapter(ProviderAdapter):
    """HubSpot CRM adapter."""

    provider = CRMProvider.HUBSPOT
    SIGNATURE_HEADERS = ("x-hubspot-signature-v3", "x-hubspot-signature")
    # Leads are contacts in HubSpot; syncing both would visit every person twice
    SYNC_ENTITIES = (EntityType.COMPANY, EntityType.CONTACT, EntityType.DEAL)

    def get_auth_url(self, state: str, redirect_uri: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "scope": " ".join(HUBSPOT_SCOPES),
            "state": state,
        }
        return f"{HUBSPOT_OAUTH_BASE}/authorize?{urlencode(params)}"

    def _tokens(self, body: dict[str, Any], fallback_refresh: str | None = None) -> OAuthTokens:
        return OAuthTokens(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token") or fallback_refresh,
            expires_at=expires_in_to_datetime(body.get("expires_in")),
        )

    async def exchange_code(self, code: str, redirect_uri: str) -> OAuthTokens:
        body = await self._token_request(
            f"{HUBSPOT_API_BASE}/oauth/v1/token",
            {
                "grant_type": "authorization_code",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": redirect_uri,
                "code": code,
            },
            error_cls=OAuthExchangeError,
        )
        return self._tokens(body)

    async def refresh_token(self, refresh_token: str) -> OAuthTokens:
        body = await self._token_request(
            f"{HUBSPOT_API_BASE}/oauth/v1/token",
            {
                "grant_type": "refresh_token",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
            },
            error_cls=TokenRefreshError,
        )
        return self._tokens(body, fallback_refresh=refresh_token)

    async def fetch_records(
        self,
        entity_type: EntityType,
        access_token: str,
        cursor: str | None = None,
        limit: int = 100,
        instance_url: str | None = None,
    ) -> PaginatedRecords:
        params: dict[str, Any] = {
            "limit": limit,
            "properties": ",".join(ENTITY_PROPERTIES[entity_type]),
        }
        if cursor:
            params["after"] = cursor

        response = await self._read(
            "GET",
            f"{HUBSPOT_API_BASE}/crm/v3/objects/{ENTITY_TO_OBJECT[entity_type]}",
            params=params,
            headers=self._bearer(access_token),
        )
        data = response.json()
        next_cursor = ((data.get("paging") or {}).get("next") or {}).get("after")
        return PaginatedRecords(
            records=[self._normalize(r) for r in data.get("results", [])],
            next_cursor=str(next_cursor) if next_cursor else None,
            has_more=bool(next_cursor),
        )

    async def fetch_records_modified_since(
        self,
        entity_type: EntityType,
        access_token: str,
        since: datetime,
        instance_url: str | None = None,
    ) -> list[ProviderRecord]:
        url = f"{HUBSPOT_API_BASE}/crm/v3/objects/{ENTITY_TO_OBJECT[entity_type]}/search"
        records: list[ProviderRecord] = []
        after: str | None = None
        while True:
            payload: dict[str, Any] = {
                "filterGroups": [{
                    "filters": [{
                        "propertyName": "lastmodifieddate",
                        "operator": "GTE",
                        "value": int(since.timestamp() * 1000),
                    }],
                }],
                "properties": ENTITY_PROPERTIES[entity_type],
                "limit": 100,
            }
            if after:
                payload["after"] = after
            response = await self._read(
                "POST", url, json=payload, headers=self._bearer(access_token)
            )
            data = response.json()
            records.extend(self._normalize(r) for r in data.get("results", []))
            after = ((data.get("paging") or {}).get("next") or {}).get("after")
            if not after:
                return records

    async def fetch_record(
        self,
        entity_type: EntityType,
        access_token: str,
        external_id: str,
        instance_url: str | None = None,
    ) -> ProviderRecord | None:
        response = await self._read(
            "GET",
            f"{HUBSPOT_API_BASE}/crm/v3/objects/{ENTITY_TO_OBJECT[entity_type]}/{external_id}",
            params={"properties": ",".join(ENTITY_PROPERTIES[entity_type])},
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
        await self._send(
            "PATCH",
            f"{HUBSPOT_API_BASE}/crm/v3/objects/{ENTITY_TO_OBJECT[entity_type]}/{external_id}",
            json={"properties": properties},
            headers=self._bearer(access_token),
        )
        logger.info(
            "hubspot.record_updated",
            entity_type=entity_type.value,
            external_id=external_id,
            fields=sorted(properties),
        )

    def _normalize_signature(self, signature: str) -> str:
        signature = signature.strip()
        if signature.lower().startswith("sha256="):
            signature = signature[len("sha256="):]
        return signature.lower()

    def parse_webhook_payload(self, payload: Any) -> list[WebhookEvent]:
        items = payload if isinstance(payload, list) else [payload]
        events: list[WebhookEvent] = []
        for item in items:
            object_id = item.get("objectId") if isinstance(item, dict) else None
            if not isinstance(object_id, (str, int)) or object_id == "":
                logger.debug("hubspot.webhook_event_skipped", payload_type=type(item).__name__)
                continue

            subscription = str(item.get("subscriptionType") or "")
            object_type = item.get("objectType") or subscription.split(".")[0]
            entity_type = _object_entity(object_type)
            if entity_type is None:
                logger.debug("hubspot.webhook_event_skipped", subscription=subscription)
                continue

            if "creation" in subscription:
                action = WebhookAction.CREATE
            elif "deletion" in subscription:
                action = WebhookAction.DELETE
            else:
                action = WebhookAction.UPDATE

            events.append(WebhookEvent(
                entity_type=entity_type,
                action=action,
                external_id=str(object_id),
                occurred_at=parse_timestamp(item.get("occurredAt")),
            ))
        return events

    @staticmethod
    def _normalize(record: dict[str, Any]) -> ProviderRecord:
        properties = record.get("properties") or {}
        return ProviderRecord(
            id=str(record.get("id", "")),
            properties=properties,
            created_at=parse_timestamp(record.get("createdAt") or properties.get("createdate")),
            updated_at=parse_timestamp(
                record.get("updatedAt") or properties.get("lastmodifieddate")
            ),
        )
