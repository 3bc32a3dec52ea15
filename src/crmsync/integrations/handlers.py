"""Entity handlers -- one strategy per CRM entity kind.

Every kind funnels into the single Recipient row through
IntegrationRepository.upsert_recipient(); handlers only prepare the mapped
fields for their kind first. Contacts and deals resolve their CRM company
reference to the company name of an already-synced company recipient,
which is why companies are synced first.
"""

from __future__ import annotations

from src.crmsync.integrations.repository import IntegrationRepository
from src.crmsync.integrations.schemas import (
    EntityType,
    MappedRecord,
    RecipientRead,
    UpsertOutcome,
)


class RecipientHandler:
    """Base strategy: upsert the mapped record as-is."""

    entity_type: EntityType

    def __init__(self, repository: IntegrationRepository) -> None:
        self._repository = repository

    async def prepare(self, organization_id: str, mapped: MappedRecord) -> MappedRecord:
        return mapped

    async def upsert(
        self, organization_id: str, mapped: MappedRecord
    ) -> tuple[UpsertOutcome, RecipientRead]:
        prepared = await self.prepare(organization_id, mapped)
        return await self._repository.upsert_recipient(organization_id, prepared)

    async def _linked_company_name(
        self, organization_id: str, mapped: MappedRecord
    ) -> str | None:
        crm = (mapped.fields.get("custom_fields") or {}).get("crm") or {}
        company_id = crm.get("external_company_id")
        if not company_id:
            return None
        company = await self._repository.get_recipient_by_external(
            organization_id, company_id, mapped.external_source.value, EntityType.COMPANY
        )
        return company.company if company else None


class LeadHandler(RecipientHandler):
    entity_type = EntityType.LEAD

    async def prepare(self, organization_id: str, mapped: MappedRecord) -> MappedRecord:
        fields = dict(mapped.fields)
        fields["lead_status"] = fields.get("lead_status") or "NEW"
        fields["lead_source"] = fields.get("lead_source") or "OTHER"
        return mapped.model_copy(update={"fields": fields})


class ContactHandler(RecipientHandler):
    entity_type = EntityType.CONTACT

    async def prepare(self, organization_id: str, mapped: MappedRecord) -> MappedRecord:
        if mapped.fields.get("company"):
            return mapped
        name = await self._linked_company_name(organization_id, mapped)
        if name is None:
            return mapped
        return mapped.model_copy(update={"fields": {**mapped.fields, "company": name}})


class CompanyHandler(RecipientHandler):
    entity_type = EntityType.COMPANY


class DealHandler(RecipientHandler):
    """Deals keep their attributes under custom_fields["crm"] and borrow the
    account's company name so the recipient list stays readable."""

    entity_type = EntityType.DEAL

    async def prepare(self, organization_id: str, mapped: MappedRecord) -> MappedRecord:
        name = await self._linked_company_name(organization_id, mapped)
        if name is None:
            return mapped
        return mapped.model_copy(update={"fields": {**mapped.fields, "company": name}})


def build_handlers(repository: IntegrationRepository) -> dict[EntityType, RecipientHandler]:
    """Strategy map resolved by entity type."""
    return {
        handler.entity_type: handler
        for handler in (
            LeadHandler(repository),
            ContactHandler(repository),
            CompanyHandler(repository),
            DealHandler(repository),
        )
    }
