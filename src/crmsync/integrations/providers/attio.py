"""Attio adapter -- v2 objects/records API.

Attio stores every attribute as an array of typed value objects. Records are
flattened on the way in (first value wins) and values are wrapped again on
the way out. Attio webhooks are registered through the API and carry the
full record inline.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlencode

import structlog

from src.crmsync.integrations.errors import (
    OAuthExchangeError,
    ProviderApiError,
    TokenRefreshError,
)
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
    WebhookRegistration,
)

logger = structlog.get_logger(__name__)

ATTIO_API_BASE = "https://api.attio.com/v2"
ATTIO_OAUTH_BASE = "https://app.attio.com/oauth"
ATTIO_SCOPES = "record_permission:read record_permission:read_write user_management:read"
MANUAL_WEBHOOK_ID = "manual-setup-required"

ENTITY_TO_OBJECT: dict[EntityType, str] = {
    EntityType.LEAD: "people",
    EntityType.CONTACT: "people",
    EntityType.COMPANY: "companies",
    EntityType.DEAL: "deals",
}

OBJECT_TO_ENTITY: dict[str, EntityType] = {
    "people": EntityType.CONTACT,
    "companies": EntityType.COMPANY,
    "deals": EntityType.DEAL,
}

# Attribute -> key of the typed value object that holds the scalar.
_VALUE_KEYS = {
    "email_addresses": "email_address",
    "phone_numbers": "phone_number",
    "domains": "domain",
}


def _flatten_value(value: Any) -> Any:
    """Reduce an Attio value array to a scalar (or dict for composite values)."""
    if not isinstance(value, list):
        return value
    if not value:
        return None
    first = value[0]
    if not isinstance(first, dict):
        return first
    for key in ("email_address", "phone_number", "domain"):
        if first.get(key):
            return first[key]
    if "value" in first:
        return first["value"]
    if "option" in first or "status" in first:
        choice = first.get("option") or first.get("status")
        return choice.get("title") if isinstance(choice, dict) else choice
    if "currency_value" in first:
        return first["currency_value"]
    return first


def _wrap_value(attribute: str, value: Any) -> Any:
    key = _VALUE_KEYS.get(attribute)
    if key and isinstance(value, str):
        return [{key: value}]
    if attribute == "name" and isinstance(value, dict):
        return [value]
    return value


def _record_id(record: dict[str, Any]) -> str:
    raw = record.get("id")
    if isinstance(raw, dict):
        return str(raw.get("record_id") or "")
    return str(raw or "")


class AttioAdapter(ProviderAdapter):
    """Attio CRM adapter."""

    provider = CRMProvider.ATTIO
    SIGNATURE_HEADERS = ("x-attio-signature", "attio-signature")
    SYNC_ENTITIES = (EntityType.COMPANY, EntityType.CONTACT, EntityType.DEAL)

    def get_auth_url(self, state: str, redirect_uri: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "state": state,
            "response_type": "code",
            "scope": ATTIO_SCOPES,
        }
        return f"{ATTIO_OAUTH_BASE}/authorize?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> OAuthTokens:
        body = await self._token_request(
            f"{ATTIO_OAUTH_BASE}/token",
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
            },
            error_cls=OAuthExchangeError,
            auth=(self.client_id, self.client_secret),
        )
        return OAuthTokens(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            expires_at=expires_in_to_datetime(body.get("expires_in")),
        )

    async def refresh_token(self, refresh_token: str) -> OAuthTokens:
        body = await self._token_request(
            f"{ATTIO_OAUTH_BASE}/token",
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            error_cls=TokenRefreshError,
            auth=(self.client_id, self.client_secret),
        )
        return OAuthTokens(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token") or refresh_token,
            expires_at=expires_in_to_datetime(body.get("expires_in")),
        )

    async def fetch_records(
        self,
        entity_type: EntityType,
        access_token: str,
        cursor: str | None = None,
        limit: int = 100,
        instance_url: str | None = None,
    ) -> PaginatedRecords:
        offset = int(cursor) if cursor else 0
        response = await self._read(
            "POST",
            f"{ATTIO_API_BASE}/objects/{ENTITY_TO_OBJECT[entity_type]}/records/query",
            json={"limit": limit, "offset": offset},
            headers=self._bearer(access_token),
        )
        rows = response.json().get("data") or []
        has_more = len(rows) == limit
        return PaginatedRecords(
            records=[self._normalize(r) for r in rows],
            next_cursor=str(offset + len(rows)) if has_more else None,
            has_more=has_more,
        )

    async def fetch_records_modified_since(
        self,
        entity_type: EntityType,
        access_token: str,
        since: datetime,
        instance_url: str | None = None,
    ) -> list[ProviderRecord]:
        url = f"{ATTIO_API_BASE}/objects/{ENTITY_TO_OBJECT[entity_type]}/records/query"
        records: list[ProviderRecord] = []
        offset = 0
        page_size = 500
        while True:
            response = await self._read(
                "POST",
                url,
                json={
                    "filter": {
                        "updated_at": {
                            "$gte": since.astimezone(timezone.utc).isoformat(),
                        },
                    },
                    "limit": page_size,
                    "offset": offset,
                },
                headers=self._bearer(access_token),
            )
            rows = response.json().get("data") or []
            records.extend(self._normalize(r) for r in rows)
            if len(rows) < page_size:
                return records
            offset += len(rows)

    async def fetch_record(
        self,
        entity_type: EntityType,
        access_token: str,
        external_id: str,
        instance_url: str | None = None,
    ) -> ProviderRecord | None:
        response = await self._read(
            "GET",
            f"{ATTIO_API_BASE}/objects/{ENTITY_TO_OBJECT[entity_type]}/records/{external_id}",
            headers=self._bearer(access_token),
            allow_status=(404,),
        )
        if response.status_code == 404:
            return None
        return self._normalize(response.json().get("data") or {})

    async def update_record(
        self,
        entity_type: EntityType,
        access_token: str,
        external_id: str,
        properties: dict[str, Any],
        instance_url: str | None = None,
    ) -> None:
        values = {attr: _wrap_value(attr, value) for attr, value in properties.items()}
        await self._send(
            "PATCH",
            f"{ATTIO_API_BASE}/objects/{ENTITY_TO_OBJECT[entity_type]}/records/{external_id}",
            json={"data": {"values": values}},
            headers=self._bearer(access_token),
        )
        logger.info(
            "attio.record_updated",
            entity_type=entity_type.value,
            external_id=external_id,
            fields=sorted(properties),
        )

    async def register_webhook(
        self,
        access_token: str,
        webhook_url: str,
        instance_url: str | None = None,
    ) -> WebhookRegistration | None:
        object_types = sorted(OBJECT_TO_ENTITY)
        try:
            response = await self._send(
                "POST",
                f"{ATTIO_API_BASE}/webhooks",
                json={
                    "data": {
                        "target_url": webhook_url,
                        "subscriptions": [
                            {"event_type": event, "filter": {"object_types": object_types}}
                            for event in ("record.created", "record.updated", "record.deleted")
                        ],
                    },
                },
                headers=self._bearer(access_token),
            )
        except ProviderApiError as exc:
            logger.warning("attio.webhook_registration_failed", error=str(exc))
            return WebhookRegistration(webhook_id=MANUAL_WEBHOOK_ID)

        data = response.json().get("data") or {}
        raw_id = data.get("id")
        webhook_id = raw_id.get("webhook_id") if isinstance(raw_id, dict) else raw_id
        return WebhookRegistration(
            webhook_id=str(webhook_id or MANUAL_WEBHOOK_ID),
            secret=data.get("secret"),
        )

    async def delete_webhook(
        self,
        access_token: str,
        webhook_id: str,
        instance_url: str | None = None,
    ) -> None:
        if webhook_id == MANUAL_WEBHOOK_ID:
            return
        await self._send(
            "DELETE",
            f"{ATTIO_API_BASE}/webhooks/{webhook_id}",
            headers={"Authorization": f"Bearer {access_token}"},
            allow_status=(404,),
        )

    def parse_webhook_payload(self, payload: Any) -> list[WebhookEvent]:
        if not isinstance(payload, dict):
            return []
        # Attio batches deliveries under "events"; single events are also accepted
        items = payload.get("events") if isinstance(payload.get("events"), list) else [payload]
        events: list[WebhookEvent] = []
        for item in items:
            record = item.get("record") if isinstance(item, dict) else None
            if not isinstance(record, dict):
                logger.debug("attio.webhook_event_skipped")
                continue
            external_id = _record_id(record)
            slug = (record.get("object") or {}).get("slug") if isinstance(record.get("object"), dict) else None
            entity_type = OBJECT_TO_ENTITY.get(str(slug or "people"))
            if not external_id or entity_type is None:
                logger.debug("attio.webhook_event_skipped", slug=slug)
                continue

            event_type = str(item.get("event_type") or "")
            if "created" in event_type:
                action = WebhookAction.CREATE
            elif "deleted" in event_type:
                action = WebhookAction.DELETE
            else:
                action = WebhookAction.UPDATE

            data = None
            if action != WebhookAction.DELETE and isinstance(record.get("values"), dict):
                data = self._normalize(record).properties
            events.append(WebhookEvent(
                entity_type=entity_type,
                action=action,
                external_id=external_id,
                data=data,
                occurred_at=parse_timestamp(item.get("occurred_at")),
            ))
        return events

    @staticmethod
    def _normalize(record: dict[str, Any]) -> ProviderRecord:
        values = record.get("values") or {}
        properties = {key: _flatten_value(value) for key, value in values.items()}
        return ProviderRecord(
            id=_record_id(record),
            properties={k: v for k, v in properties.items() if v is not None},
            created_at=parse_timestamp(record.get("created_at")),
            updated_at=parse_timestamp(record.get("updated_at")),
        )
