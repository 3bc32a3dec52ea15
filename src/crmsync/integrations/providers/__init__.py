"""CRM provider adapters and the registry that selects them.

Provides:
- ProviderAdapter: ABC every CRM implements
- HubSpotAdapter, SalesforceAdapter, AttioAdapter: concrete adapters
- ProviderRegistry: provider id -> adapter, built from CRMSyncConfig
- is_valid_provider(): membership check used by every external endpoint
"""

from __future__ import annotations

from src.crmsync.config import CRMSyncConfig
from src.crmsync.integrations.errors import UnsupportedProviderError
from src.crmsync.integrations.providers.attio import AttioAdapter
from src.crmsync.integrations.providers.base import ProviderAdapter
from src.crmsync.integrations.providers.hubspot import HubSpotAdapter
from src.crmsync.integrations.providers.salesforce import SalesforceAdapter
from src.crmsync.integrations.schemas import CRMProvider


class ProviderRegistry:
    """Maps provider ids to adapter instances.

    Built per configuration rather than held as module state, so each test
    (or each app instance) can run with its own credentials and timeouts.

    Args:
        adapters: Adapters keyed by their provider id.
    """

    def __init__(self, adapters: dict[str, ProviderAdapter]) -> None:
        self._adapters = dict(adapters)

    @classmethod
    def from_config(cls, config: CRMSyncConfig) -> ProviderRegistry:
        kwargs = {"timeout": config.http_timeout, "max_attempts": config.http_max_attempts}
        return cls({
            CRMProvider.HUBSPOT.value: HubSpotAdapter(
                config.credentials_for(CRMProvider.HUBSPOT.value), **kwargs
            ),
            CRMProvider.SALESFORCE.value: SalesforceAdapter(
                config.credentials_for(CRMProvider.SALESFORCE.value),
                login_url=config.salesforce_login_url,
                **kwargs,
            ),
            CRMProvider.ATTIO.value: AttioAdapter(
                config.credentials_for(CRMProvider.ATTIO.value), **kwargs
            ),
        })

    def providers(self) -> list[str]:
        return sorted(self._adapters)

    def is_valid_provider(self, provider: str | None) -> bool:
        return isinstance(provider, str) and provider in self._adapters

    def get(self, provider: str | CRMProvider) -> ProviderAdapter:
        """Return the adapter for ``provider`` or raise UnsupportedProviderError."""
        key = provider.value if isinstance(provider, CRMProvider) else provider
        adapter = self._adapters.get(key)
        if adapter is None:
            raise UnsupportedProviderError(str(key))
        return adapter


def is_valid_provider(provider: str | None) -> bool:
    """True if ``provider`` names a supported CRM."""
    return provider in {p.value for p in CRMProvider}


__all__ = [
    "AttioAdapter",
    "HubSpotAdapter",
    "ProviderAdapter",
    "ProviderRegistry",
    "SalesforceAdapter",
    "is_valid_provider",
]
