"""OAuth connection lifecycle -- state tokens, token storage and refresh.

OAuth state is a short-lived HS256 token (python-jose) binding the
authorize request to an organization and provider; nothing is persisted
until the callback verifies it. Provider tokens are Fernet-encrypted before
they reach the repository and decrypted only when a caller needs live
credentials.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone

import structlog
from jose import JWTError, jwt

from src.crmsync.config import CRMSyncConfig
from src.crmsync.integrations.encryption import TokenCipher
from src.crmsync.integrations.errors import (
    IntegrationNotConnectedError,
    InvalidStateError,
    ProviderNotConfiguredError,
    TokenRefreshError,
)
from src.crmsync.integrations.providers import ProviderRegistry
from src.crmsync.integrations.repository import IntegrationRepository
from src.crmsync.integrations.schemas import (
    AccessCredentials,
    CRMProvider,
    IntegrationRead,
    IntegrationStatus,
    IntegrationWrite,
    LastSyncStatus,
    OAuthState,
    OAuthTokens,
)
from src.crmsync.integrations.tasks import KeyedLocks

logger = structlog.get_logger(__name__)

STATE_TOKEN_TYPE = "oauth_state"
STATE_ALGORITHM = "HS256"


class OAuthManager:
    """Owns the connect flow and hands out valid provider credentials.

    Args:
        config: Integration configuration (state secret, TTLs, base URL).
        registry: Provider adapters, used for token refresh.
        repository: Integration persistence.
        cipher: Encrypts tokens at rest.
    """

    def __init__(
        self,
        config: CRMSyncConfig,
        registry: ProviderRegistry,
        repository: IntegrationRepository,
        cipher: TokenCipher,
    ) -> None:
        self._config = config
        self._registry = registry
        self._repository = repository
        self._cipher = cipher
        self._refresh_locks = KeyedLocks()

    # ── State Tokens ────────────────────────────────────────────────────────

    def generate_oauth_state(self, organization_id: str, provider: str | CRMProvider) -> str:
        """Sign a state token for the authorize redirect."""
        now = datetime.now(timezone.utc)
        claims = {
            "org": organization_id,
            "provider": CRMProvider(provider).value,
            "iat": now,
            "exp": now + timedelta(minutes=self._config.oauth_state_ttl_minutes),
            "nonce": secrets.token_urlsafe(16),
            "typ": STATE_TOKEN_TYPE,
        }
        return jwt.encode(claims, self._config.oauth_state_secret, algorithm=STATE_ALGORITHM)

    def verify_oauth_state(self, state: str) -> OAuthState:
        """Verify a state token's signature, type and expiry.

        Raises:
            InvalidStateError: If the token is tampered with, malformed or expired.
        """
        try:
            claims = jwt.decode(
                state, self._config.oauth_state_secret, algorithms=[STATE_ALGORITHM]
            )
        except JWTError as exc:
            raise InvalidStateError(f"Invalid OAuth state: {exc}") from exc

        if claims.get("typ") != STATE_TOKEN_TYPE or not claims.get("org"):
            raise InvalidStateError("Invalid OAuth state: wrong token type")
        try:
            provider = CRMProvider(claims.get("provider"))
        except ValueError as exc:
            raise InvalidStateError("Invalid OAuth state: unknown provider") from exc
        return OAuthState(organization_id=str(claims["org"]), provider=provider)

    def get_redirect_uri(self, provider: str | CRMProvider) -> str:
        return (
            f"{self._config.app_base_url}/api/v1/integrations/"
            f"{CRMProvider(provider).value}/callback"
        )

    # ── Token Storage ───────────────────────────────────────────────────────

    async def store_integration_tokens(
        self,
        organization_id: str,
        provider: str | CRMProvider,
        tokens: OAuthTokens,
        *,
        is_demo: bool = False,
        replace_active: bool = True,
        last_sync_at: datetime | None = None,
        last_sync_status: LastSyncStatus | None = None,
    ) -> IntegrationRead:
        """Encrypt and persist tokens as the organization's CONNECTED integration.

        Reconnecting replaces the existing row in place. A new webhook
        secret is issued on every connect so a previous tenant's secret can
        never verify this integration's webhooks.
        """
        provider = CRMProvider(provider)
        integration = await self._repository.save_integration(
            IntegrationWrite(
                organization_id=organization_id,
                provider=provider,
                access_token=self._cipher.encrypt(tokens.access_token),
                refresh_token=self._cipher.encrypt(tokens.refresh_token),
                token_expires_at=tokens.expires_at,
                instance_url=tokens.instance_url,
                webhook_secret=secrets.token_hex(32),
                is_demo=is_demo,
                last_sync_at=last_sync_at,
                last_sync_status=last_sync_status,
            ),
            replace_active=replace_active,
        )
        logger.info(
            "oauth.tokens_stored",
            organization_id=organization_id,
            provider=provider.value,
            integration_id=integration.id,
            expires_at=tokens.expires_at.isoformat() if tokens.expires_at else None,
        )
        return integration

    # ── Credentials ─────────────────────────────────────────────────────────

    async def get_integration(self, organization_id: str) -> IntegrationRead | None:
        return await self._repository.get_integration(organization_id)

    async def has_active_integration(self, organization_id: str) -> bool:
        integration = await self._repository.get_integration(organization_id)
        return integration is not None and integration.status != IntegrationStatus.DISCONNECTED

    async def get_valid_access_token(self, organization_id: str) -> AccessCredentials:
        """Return live credentials, refreshing the access token when near expiry.

        Raises:
            IntegrationNotConnectedError: No usable integration.
            TokenRefreshError: Refresh failed; the integration is marked ERROR.
        """
        integration = await self._repository.get_integration(organization_id)
        if integration is None:
            raise IntegrationNotConnectedError(
                f"Organization {organization_id} has no CRM integration"
            )
        return await self.credentials_for(integration)

    async def credentials_for(self, integration: IntegrationRead) -> AccessCredentials:
        """Live credentials for an integration row already in hand."""
        if integration.status == IntegrationStatus.DISCONNECTED or not integration.access_token:
            raise IntegrationNotConnectedError(
                f"Integration {integration.id} is not connected"
            )

        if self._needs_refresh(integration):
            async with self._refresh_locks.hold(integration.id):
                # Another caller may have refreshed while we waited
                current = await self._repository.get_integration_by_id(integration.id)
                if current is not None and self._needs_refresh(current):
                    return await self._refresh(current)
                if current is not None:
                    integration = current

        try:
            access_token = self._cipher.decrypt(integration.access_token)
        except ValueError as exc:
            await self._repository.mark_error(
                integration.id, "Stored credentials could not be decrypted"
            )
            raise IntegrationNotConnectedError(
                f"Integration {integration.id} has unreadable credentials"
            ) from exc
        return AccessCredentials(access_token=access_token, instance_url=integration.instance_url)

    def _needs_refresh(self, integration: IntegrationRead) -> bool:
        if integration.is_demo or not integration.refresh_token:
            return False
        if integration.token_expires_at is None:
            return False
        buffer = timedelta(seconds=self._config.token_refresh_buffer_seconds)
        return integration.token_expires_at - buffer <= datetime.now(timezone.utc)

    async def _refresh(self, integration: IntegrationRead) -> AccessCredentials:
        adapter = self._registry.get(integration.provider)
        log = logger.bind(
            organization_id=integration.organization_id,
            integration_id=integration.id,
            provider=integration.provider.value,
        )
        try:
            refresh_token = self._cipher.decrypt(integration.refresh_token)
            tokens = await adapter.refresh_token(refresh_token)
        except (TokenRefreshError, ProviderNotConfiguredError, ValueError) as exc:
            log.warning("oauth.token_refresh_failed", error=str(exc))
            await self._repository.mark_error(integration.id, f"Token refresh failed: {exc}")
            raise TokenRefreshError(f"Token refresh failed: {exc}") from exc

        await self._repository.update_tokens(
            integration.id,
            access_token=self._cipher.encrypt(tokens.access_token),
            refresh_token=self._cipher.encrypt(tokens.refresh_token or refresh_token),
            token_expires_at=tokens.expires_at,
            instance_url=tokens.instance_url,
        )
        log.info("oauth.token_refreshed")
        return AccessCredentials(
            access_token=tokens.access_token,
            instance_url=tokens.instance_url or integration.instance_url,
        )
