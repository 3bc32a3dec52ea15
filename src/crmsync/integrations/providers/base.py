"""Provider adapter abstract base class -- the capability interface every CRM implements.

Each CRM (HubSpot, Salesforce, Attio) implements this ABC. Adapters speak the
provider's wire format only: they take and return provider-native property
names. Translation to local recipient fields belongs to the field mappers.

HTTP conventions shared by all adapters:
- A fresh httpx.AsyncClient per call with the configured timeout.
- Idempotent reads (GET, query/search POSTs) retry with tenacity on
  transport errors, 429 and 5xx. Writes and token exchanges never retry.
- Any non-2xx response surfaces as ProviderApiError carrying the status code.
"""

from __future__ import annotations

import hashlib
import hmac
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from src.crmsync.config import ProviderCredentials
from src.crmsync.integrations.errors import (
    OAuthExchangeError,
    ProviderApiError,
    ProviderNotConfiguredError,
)
from src.crmsync.integrations.schemas import (
    CRMProvider,
    EntityType,
    OAuthTokens,
    PaginatedRecords,
    ProviderRecord,
    SYNC_ENTITY_ORDER,
    WebhookEvent,
    WebhookRegistration,
)

logger = structlog.get_logger(__name__)


def _is_transient(exc: BaseException) -> bool:
    """Transport failures, rate limiting and provider 5xx are worth another attempt."""
    if not isinstance(exc, ProviderApiError):
        return False
    return exc.status_code in (0, 429) or exc.status_code >= 500


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(body, list):
        return ", ".join(str(item.get("message", item)) for item in body if isinstance(item, dict))
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)
    return str(body)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO-8601 strings or epoch milliseconds into aware datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value)
    if isinstance(value, (int, float)) or text.isdigit():
        try:
            return datetime.fromtimestamp(float(text) / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    # Salesforce emits +0000 offsets which fromisoformat only accepts with a colon
    if len(text) > 5 and text[-5] in "+-" and text[-4:].isdigit():
        text = f"{text[:-2]}:{text[-2:]}"
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def expires_in_to_datetime(expires_in: Any) -> datetime | None:
    if expires_in in (None, ""):
        return None
    return datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))


class ProviderAdapter(ABC):
    """Abstract interface for a CRM provider.

    Args:
        credentials: OAuth client id/secret for this provider.
        timeout: Per-call HTTP timeout in seconds.
        max_attempts: Attempts for idempotent reads (1 disables retries).
    """

    provider: CRMProvider
    SIGNATURE_HEADERS: tuple[str, ...] = ()
    SYNC_ENTITIES: tuple[EntityType, ...] = SYNC_ENTITY_ORDER

    def __init__(
        self,
        credentials: ProviderCredentials,
        timeout: float = 30.0,
        max_attempts: int = 3,
    ) -> None:
        self._credentials = credentials
        self._timeout = timeout
        self._max_attempts = max(1, max_attempts)
        self._retry_wait = wait_exponential(multiplier=1, min=1, max=10)

    # ── Credentials ─────────────────────────────────────────────────────

    @property
    def configured(self) -> bool:
        return self._credentials.configured

    @property
    def client_id(self) -> str:
        if not self._credentials.client_id:
            raise ProviderNotConfiguredError(self.provider.value)
        return self._credentials.client_id

    @property
    def client_secret(self) -> str:
        if not self._credentials.client_secret:
            raise ProviderNotConfiguredError(self.provider.value)
        return self._credentials.client_secret

    # ── HTTP helpers ────────────────────────────────────────────────────

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client with the configured timeout."""
        return httpx.AsyncClient(timeout=self._timeout)

    @staticmethod
    def _bearer(access_token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }

    async def _send(
        self,
        method: str,
        url: str,
        *,
        allow_status: tuple[int, ...] = (),
        **kwargs: Any,
    ) -> httpx.Response:
        """Issue one HTTP call, raising ProviderApiError on non-2xx.

        Statuses listed in ``allow_status`` are returned to the caller
        instead of raising (e.g. 404 on single-record fetches).
        """
        async with self._client() as client:
            try:
                response = await getattr(client, method.lower())(url, **kwargs)
            except httpx.TransportError as exc:
                raise ProviderApiError(
                    self.provider.value, 0, f"{type(exc).__name__}: {exc}"
                ) from exc
        if response.is_error and response.status_code not in allow_status:
            raise ProviderApiError(
                self.provider.value, response.status_code, _error_detail(response)
            )
        return response

    async def _read(
        self,
        method: str,
        url: str,
        *,
        allow_status: tuple[int, ...] = (),
        **kwargs: Any,
    ) -> httpx.Response:
        """Idempotent read with bounded retries on transient failures."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=self._retry_wait,
            retry=retry_if_exception(_is_transient),
            reraise=True,
            before_sleep=lambda state: logger.warning(
                "provider.read_retry",
                provider=self.provider.value,
                attempt=state.attempt_number,
                error=str(state.outcome.exception()) if state.outcome else None,
            ),
        )
        return await retrying(self._send, method, url, allow_status=allow_status, **kwargs)

    async def _token_request(
        self,
        url: str,
        data: dict[str, str],
        error_cls: type[Exception] = OAuthExchangeError,
        auth: tuple[str, str] | None = None,
    ) -> dict[str, Any]:
        """Form-encoded OAuth token call. Never retried (codes are single-use)."""
        try:
            async with self._client() as client:
                response = await client.post(url, data=data, auth=auth)
        except httpx.TransportError as exc:
            raise error_cls(f"{self.provider.value} token request failed: {exc}") from exc

        if response.is_error:
            raise error_cls(
                f"{self.provider.value} token request failed "
                f"({response.status_code}): {_error_detail(response)}"
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise error_cls(f"{self.provider.value} token response is not JSON") from exc
        if not isinstance(body, dict) or not body.get("access_token"):
            raise error_cls(f"{self.provider.value} token response missing access_token")
        return body

    # ── OAuth ───────────────────────────────────────────────────────────

    @abstractmethod
    def get_auth_url(self, state: str, redirect_uri: str) -> str:
        """Build the provider consent URL embedding state and redirect URI."""
        ...

    @abstractmethod
    async def exchange_code(self, code: str, redirect_uri: str) -> OAuthTokens:
        """Exchange an authorization code for tokens."""
        ...

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> OAuthTokens:
        """Obtain a fresh access token. Raises TokenRefreshError on failure."""
        ...

    # ── Records ─────────────────────────────────────────────────────────

    @abstractmethod
    async def fetch_records(
        self,
        entity_type: EntityType,
        access_token: str,
        cursor: str | None = None,
        limit: int = 100,
        instance_url: str | None = None,
    ) -> PaginatedRecords:
        """Fetch one page of records."""
        ...

    @abstractmethod
    async def fetch_records_modified_since(
        self,
        entity_type: EntityType,
        access_token: str,
        since: datetime,
        instance_url: str | None = None,
    ) -> list[ProviderRecord]:
        """Fetch records modified at or after ``since``."""
        ...

    @abstractmethod
    async def fetch_record(
        self,
        entity_type: EntityType,
        access_token: str,
        external_id: str,
        instance_url: str | None = None,
    ) -> ProviderRecord | None:
        """Fetch one record by id, None on 404."""
        ...

    @abstractmethod
    async def update_record(
        self,
        entity_type: EntityType,
        access_token: str,
        external_id: str,
        properties: dict[str, Any],
        instance_url: str | None = None,
    ) -> None:
        """Write provider-native properties to one record."""
        ...

    # ── Webhooks ────────────────────────────────────────────────────────

    async def register_webhook(
        self,
        access_token: str,
        webhook_url: str,
        instance_url: str | None = None,
    ) -> WebhookRegistration | None:
        """Register a webhook subscription. None when configured out-of-band."""
        return None

    async def delete_webhook(
        self,
        access_token: str,
        webhook_id: str,
        instance_url: str | None = None,
    ) -> None:
        return None

    def signature_header(self, headers: Mapping[str, str]) -> str | None:
        """Return the provider's signature header value, if present."""
        for name in self.SIGNATURE_HEADERS:
            value = headers.get(name)
            if value:
                return value
        return None

    def verify_webhook_signature(self, raw_body: bytes | str, signature: str, secret: str) -> bool:
        """Constant-time HMAC-SHA256 hex comparison. Never raises."""
        try:
            if not signature or not secret:
                return False
            body = raw_body.encode("utf-8") if isinstance(raw_body, str) else raw_body
            expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
            provided = self._normalize_signature(signature)
            return hmac.compare_digest(expected, provided)
        except (TypeError, ValueError, AttributeError):
            return False

    def _normalize_signature(self, signature: str) -> str:
        return signature.strip().lower()

    @abstractmethod
    def parse_webhook_payload(self, payload: Any) -> list[WebhookEvent]:
        """Normalize a webhook body into events. Unknown shapes are skipped."""
        ...
