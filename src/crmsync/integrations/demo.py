"""Demo integrations -- showcase the sync flow without real CRM credentials.

A demo integration is a normal integration row flagged ``is_demo`` with
placeholder tokens. Its records are seeded through the same entity handlers
and upsert path as a real sync, and a demo "sync" replays the seed set
(which is idempotent, so every record comes back skipped).
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from src.crmsync.integrations.errors import SyncInProgressError
from src.crmsync.integrations.handlers import RecipientHandler
from src.crmsync.integrations.oauth import OAuthManager
from src.crmsync.integrations.repository import IntegrationRepository
from src.crmsync.integrations.schemas import (
    CRMProvider,
    EntityType,
    IntegrationRead,
    LastSyncStatus,
    MappedRecord,
    OAuthTokens,
    SYNC_ENTITY_ORDER,
    SyncCounts,
    SyncDirection,
    SyncLogStatus,
    SyncOperation,
)

logger = structlog.get_logger(__name__)

DEMO_ACCESS_TOKEN = "demo-access-token-not-real"
DEMO_REFRESH_TOKEN = "demo-refresh-token-not-real"

DEMO_PROVIDERS: dict[CRMProvider, str] = {
    CRMProvider.HUBSPOT: "HubSpot (Demo)",
    CRMProvider.SALESFORCE: "Salesforce (Demo)",
    CRMProvider.ATTIO: "Attio (Demo)",
}

_DEMO_BASE_URLS = {
    CRMProvider.HUBSPOT: "https://app.hubspot.com",
    CRMProvider.SALESFORCE: "https://na1.salesforce.com",
    CRMProvider.ATTIO: "https://app.attio.com",
}

_DEMO_PATHS: dict[EntityType, dict[CRMProvider, str]] = {
    EntityType.COMPANY: {
        CRMProvider.HUBSPOT: "/contacts/companies",
        CRMProvider.SALESFORCE: "/lightning/r/Account",
        CRMProvider.ATTIO: "/companies",
    },
    EntityType.CONTACT: {
        CRMProvider.HUBSPOT: "/contacts",
        CRMProvider.SALESFORCE: "/lightning/r/Contact",
        CRMProvider.ATTIO: "/people",
    },
    EntityType.LEAD: {
        CRMProvider.HUBSPOT: "/contacts",
        CRMProvider.SALESFORCE: "/lightning/r/Lead",
        CRMProvider.ATTIO: "/people",
    },
    EntityType.DEAL: {
        CRMProvider.HUBSPOT: "/contacts/deals",
        CRMProvider.SALESFORCE: "/lightning/r/Opportunity",
        CRMProvider.ATTIO: "/deals",
    },
}

# ── Seed Data ───────────────────────────────────────────────────────────────

DEMO_COMPANIES = [
    {"name": "Acme Corporation", "domain": "acme.com", "industry": "Technology",
     "size": "500-1000", "website": "https://acme.com", "address": "San Francisco, CA, USA"},
    {"name": "TechStart Inc", "domain": "techstart.io", "industry": "Software",
     "size": "50-200", "website": "https://techstart.io", "address": "Austin, TX, USA"},
    {"name": "Global Dynamics", "domain": "globaldynamics.com", "industry": "Manufacturing",
     "size": "1000-5000", "website": "https://globaldynamics.com", "address": "Chicago, IL, USA"},
    {"name": "Innovate Labs", "domain": "innovatelabs.co", "industry": "Research",
     "size": "10-50", "website": "https://innovatelabs.co", "address": "Boston, MA, USA"},
]

DEMO_CONTACTS = [
    ("Sarah", "Chen", "sarah.chen@acme.com", "VP of Sales", 1),
    ("Michael", "Johnson", "m.johnson@acme.com", "Account Executive", 1),
    ("Emily", "Rodriguez", "emily@techstart.io", "CEO", 2),
    ("David", "Kim", "david.kim@techstart.io", "CTO", 2),
    ("Jennifer", "Smith", "jsmith@globaldynamics.com", "Procurement Manager", 3),
    ("Robert", "Williams", "rwilliams@globaldynamics.com", "Director of Operations", 3),
    ("Lisa", "Anderson", "lisa@innovatelabs.co", "Founder", 4),
]

DEMO_LEADS = [
    ("Alex", "Thompson", "alex.t@prospect.com", "Prospect Corp", "Marketing Director", "NEW", "WEBSITE"),
    ("Maria", "Garcia", "mgarcia@newclient.io", "New Client Inc", "Head of Growth", "CONTACTED", "LINKEDIN"),
    ("James", "Wilson", "jwilson@enterprise.com", "Enterprise Solutions", "VP Engineering", "QUALIFIED", "REFERRAL"),
    ("Amanda", "Brown", "amanda@startup.co", "Startup Co", "Founder", "NEW", "EVENT"),
    ("Chris", "Lee", "chris.lee@bigco.com", "BigCo Industries", "Product Manager", "CONTACTED", "COLD_OUTREACH"),
]

DEMO_DEALS = [
    ("Acme Enterprise License", 50000.0, 1),
    ("TechStart Annual Contract", 25000.0, 2),
    ("Global Dynamics Implementation", 150000.0, 3),
    ("Innovate Labs Pilot", 10000.0, 4),
]


def get_demo_url(provider: CRMProvider, entity_type: EntityType, index: int) -> str:
    return f"{_DEMO_BASE_URLS[provider]}{_DEMO_PATHS[entity_type][provider]}/demo-{index}"


def _record(
    provider: CRMProvider, entity_type: EntityType, index: int, fields: dict[str, Any]
) -> MappedRecord:
    return MappedRecord(
        entity_type=entity_type,
        external_id=f"demo-{entity_type.value}-{index}",
        external_source=provider,
        external_url=get_demo_url(provider, entity_type, index),
        fields=fields,
    )


def build_demo_records(provider: CRMProvider) -> dict[EntityType, list[MappedRecord]]:
    """Seed records per entity type, already in recipient field form."""
    companies = [
        _record(provider, EntityType.COMPANY, i, {
            "company": c["name"],
            "address": c["address"],
            "custom_fields": {"crm": {
                "domain": c["domain"],
                "industry": c["industry"],
                "size": c["size"],
                "website": c["website"],
            }},
        })
        for i, c in enumerate(DEMO_COMPANIES, start=1)
    ]
    contacts = [
        _record(provider, EntityType.CONTACT, i, {
            "first_name": first,
            "last_name": last,
            "email": email,
            "job_title": title,
            "custom_fields": {"crm": {"external_company_id": f"demo-company-{company}"}},
        })
        for i, (first, last, email, title, company) in enumerate(DEMO_CONTACTS, start=1)
    ]
    leads = [
        _record(provider, EntityType.LEAD, i, {
            "first_name": first,
            "last_name": last,
            "email": email,
            "company": company,
            "job_title": title,
            "lead_status": status,
            "lead_source": source,
        })
        for i, (first, last, email, company, title, status, source) in enumerate(DEMO_LEADS, start=1)
    ]
    deals = [
        _record(provider, EntityType.DEAL, i, {
            "custom_fields": {"crm": {
                "name": name,
                "value": value,
                "status": "OPEN",
                "stage": "Prospecting",
                "external_company_id": f"demo-company-{company}",
            }},
        })
        for i, (name, value, company) in enumerate(DEMO_DEALS, start=1)
    ]
    return {
        EntityType.COMPANY: companies,
        EntityType.CONTACT: contacts,
        EntityType.LEAD: leads,
        EntityType.DEAL: deals,
    }


# ── Demo Service ────────────────────────────────────────────────────────────


class DemoService:
    """Creates demo integrations and simulates their syncs.

    Args:
        repository: Integration persistence.
        oauth: Token storage (placeholder tokens go through the same cipher).
        handlers: Entity strategy map.
        stale_after: SYNCING lock takeover age.
    """

    def __init__(
        self,
        repository: IntegrationRepository,
        oauth: OAuthManager,
        handlers: dict[EntityType, RecipientHandler],
        stale_after: timedelta = timedelta(minutes=30),
    ) -> None:
        self._repository = repository
        self._oauth = oauth
        self._handlers = handlers
        self._stale_after = stale_after

    async def _seed(self, organization_id: str, provider: CRMProvider) -> tuple[SyncCounts, dict]:
        totals = SyncCounts()
        per_entity: dict[str, dict[str, int]] = {}
        records = build_demo_records(provider)
        for entity_type in SYNC_ENTITY_ORDER:
            counts = SyncCounts()
            for mapped in records[entity_type]:
                outcome, _ = await self._handlers[entity_type].upsert(organization_id, mapped)
                counts.record(outcome)
            totals.merge(counts)
            per_entity[entity_type.value] = counts.model_dump(exclude={"errors"})
        return totals, per_entity

    async def create_demo_integration(
        self, organization_id: str, provider: str | CRMProvider
    ) -> IntegrationRead:
        """Create a seeded demo integration.

        Raises:
            IntegrationExistsError: If the organization has an active integration.
        """
        provider = CRMProvider(provider)
        now = datetime.now(timezone.utc)
        integration = await self._oauth.store_integration_tokens(
            organization_id,
            provider,
            OAuthTokens(
                access_token=DEMO_ACCESS_TOKEN,
                refresh_token=DEMO_REFRESH_TOKEN,
                expires_at=now + timedelta(days=365),
            ),
            is_demo=True,
            replace_active=False,
            last_sync_at=now,
            last_sync_status=LastSyncStatus.SUCCESS,
        )

        log = await self._repository.create_sync_log(
            integration.id, "all", SyncOperation.FULL_SYNC, SyncDirection.INBOUND,
            metadata={"demo": True},
        )
        counts, per_entity = await self._seed(organization_id, provider)
        await self._repository.finalize_sync_log(
            log.id, SyncLogStatus.COMPLETED, counts,
            metadata={"demo": True, "entities": per_entity},
        )
        logger.info(
            "demo.integration_created",
            organization_id=organization_id,
            provider=provider.value,
            records=counts.processed,
        )
        return integration

    async def simulate_demo_sync(self, integration: IntegrationRead) -> SyncCounts:
        """Replay the demo seed set as an incremental sync.

        Raises:
            SyncInProgressError: If a sync already holds the integration.
        """
        if not await self._repository.try_mark_syncing(integration.id, self._stale_after):
            raise SyncInProgressError(f"Sync already in progress for {integration.id}")

        started_at = datetime.now(timezone.utc)
        log = await self._repository.create_sync_log(
            integration.id, "all", SyncOperation.INCREMENTAL_SYNC, SyncDirection.INBOUND,
            metadata={"demo": True},
        )
        try:
            counts, per_entity = await self._seed(
                integration.organization_id, integration.provider
            )
        except Exception as exc:
            await self._repository.finalize_sync_log(
                log.id, SyncLogStatus.FAILED, error_message=str(exc)
            )
            await self._repository.finish_sync(
                integration.id, LastSyncStatus.FAILED, error=str(exc)
            )
            raise
        await self._repository.finalize_sync_log(
            log.id, SyncLogStatus.COMPLETED, counts,
            metadata={"demo": True, "entities": per_entity},
        )
        await self._repository.finish_sync(
            integration.id, LastSyncStatus.SUCCESS, synced_at=started_at
        )
        logger.info(
            "demo.sync_simulated",
            organization_id=integration.organization_id,
            integration_id=integration.id,
            skipped=counts.skipped,
        )
        return counts
