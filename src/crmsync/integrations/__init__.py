"""CRM integration layer: OAuth connections, bidirectional sync, webhooks.

Provides:
- ProviderRegistry / ProviderAdapter: per-CRM API adapters
- OAuthManager: state tokens, token storage and refresh
- SyncEngine: initial/incremental sync, push, disconnect
- WebhookIngestor: signature-verified webhook reconciliation
- RecipientEditService: local edits with CRM push of syncable fields
- DemoService: seeded demo integrations
"""

from src.crmsync.integrations.demo import DemoService
from src.crmsync.integrations.oauth import OAuthManager
from src.crmsync.integrations.providers import ProviderAdapter, ProviderRegistry
from src.crmsync.integrations.recipients import RecipientEditService
from src.crmsync.integrations.sync import SyncEngine
from src.crmsync.integrations.webhooks import WebhookIngestor

__all__ = [
    "DemoService",
    "OAuthManager",
    "ProviderAdapter",
    "ProviderRegistry",
    "RecipientEditService",
    "SyncEngine",
    "WebhookIngestor",
]
