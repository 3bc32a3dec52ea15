"""Error taxonomy for the CRM integration layer.

Configuration errors fail fast, auth errors are rejected outright, provider
errors carry the upstream status code, lifecycle errors describe an
integration in the wrong state, and data errors are isolated per record.
"""

from __future__ import annotations


class CRMSyncError(Exception):
    """Base class for all CRM integration errors."""


# ── Configuration ───────────────────────────────────────────────────────────


class UnsupportedProviderError(CRMSyncError):
    """Raised when a provider id is not present in the registry."""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(f"Unsupported CRM provider: {provider!r}")


class ProviderNotConfiguredError(CRMSyncError):
    """Raised when a provider has no OAuth client credentials configured."""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(f"CRM provider {provider!r} is not configured")


# ── Authentication ──────────────────────────────────────────────────────────


class InvalidStateError(CRMSyncError):
    """Raised when an OAuth state token is tampered with, malformed or expired."""


class WebhookSignatureError(CRMSyncError):
    """Raised when no candidate integration verifies a webhook signature."""


# ── Provider ────────────────────────────────────────────────────────────────


class OAuthExchangeError(CRMSyncError):
    """Raised when the authorization-code exchange fails."""


class TokenRefreshError(CRMSyncError):
    """Raised when an access token cannot be refreshed."""


class ProviderApiError(CRMSyncError):
    """Raised on a non-2xx provider API response.

    Attributes:
        status_code: HTTP status returned by the provider (0 for transport errors).
        provider: Provider id the call was made against.
    """

    def __init__(self, provider: str, status_code: int, message: str) -> None:
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"{provider} API error ({status_code}): {message}")


# ── Lifecycle ───────────────────────────────────────────────────────────────


class IntegrationNotConnectedError(CRMSyncError):
    """Raised when an organization has no usable integration."""


class IntegrationExistsError(CRMSyncError):
    """Raised when creating an integration for an organization that has one."""


class SyncInProgressError(CRMSyncError):
    """Raised when another sync holds the integration's SYNCING lock."""


# ── Data ────────────────────────────────────────────────────────────────────


class MappingError(CRMSyncError):
    """Raised when a provider record cannot be mapped to a local recipient."""


class RecipientNotFoundError(CRMSyncError):
    """Raised when a local recipient does not exist for the organization."""
