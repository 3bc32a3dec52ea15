"""Field mapping between provider records and local recipients.

Provides:
- map_external_to_local(): provider record -> MappedRecord (recipient fields)
- map_local_to_external(): syncable recipient fields -> provider-native properties
- CRM_SYNCABLE_FIELDS: the only recipient fields ever pushed to a CRM
- split_changes() / diff_fields(): helpers for the local edit flow

Every CRM entity kind (lead, contact, company, deal) maps onto the single
local Recipient row. Company and deal attributes with no recipient column
are kept under ``custom_fields["crm"]``.
"""

from __future__ import annotations

from typing import Any

from src.crmsync.integrations.errors import MappingError
from src.crmsync.integrations.mappers import attio, hubspot, salesforce
from src.crmsync.integrations.schemas import (
    CRMProvider,
    EntityType,
    MappedRecord,
    ProviderRecord,
)

# Recipient fields a CRM owns. Anything else (notes, tags, do_not_send,
# custom_fields) stays local and is never sent to a provider.
CRM_SYNCABLE_FIELDS: frozenset[str] = frozenset({
    "email",
    "first_name",
    "last_name",
    "phone",
    "company",
    "job_title",
    "lead_status",
})


def _provider(provider: str | CRMProvider) -> CRMProvider:
    try:
        return CRMProvider(provider)
    except ValueError as exc:
        raise MappingError(f"Unknown provider: {provider}") from exc


def map_external_to_local(
    provider: str | CRMProvider,
    entity_type: EntityType,
    record: ProviderRecord,
    instance_url: str | None = None,
) -> MappedRecord:
    """Translate one provider record into recipient fields.

    Unmapped provider properties are dropped. Fields the provider left empty
    come back as None so a later update can clear them locally.

    Args:
        provider: Source CRM.
        entity_type: Entity kind the record was fetched as.
        record: Provider-native record.
        instance_url: Salesforce instance host used for deep links.

    Returns:
        MappedRecord keyed by (external_id, external_source).

    Raises:
        MappingError: If the record has no id or cannot be mapped.
    """
    source = _provider(provider)
    if not record.id:
        raise MappingError(f"{source.value} {entity_type.value} record has no id")

    try:
        if source == CRMProvider.HUBSPOT:
            fields = hubspot.to_local(entity_type, record)
            url = hubspot.external_url(entity_type, record.id)
        elif source == CRMProvider.SALESFORCE:
            fields = salesforce.to_local(entity_type, record)
            url = salesforce.external_url(record.id, instance_url)
        else:
            fields = attio.to_local(entity_type, record)
            url = attio.external_url(entity_type, record.id)
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        raise MappingError(
            f"Failed to map {source.value} {entity_type.value} {record.id}: {exc}"
        ) from exc

    return MappedRecord(
        entity_type=entity_type,
        external_id=record.id,
        external_source=source,
        external_url=url,
        fields=fields,
    )


def map_local_to_external(
    provider: str | CRMProvider,
    entity_type: EntityType,
    fields: dict[str, Any],
) -> dict[str, Any]:
    """Translate recipient fields into the provider's property names.

    Only CRM_SYNCABLE_FIELDS that the entity accepts are emitted.
    """
    source = _provider(provider)
    syncable = {k: v for k, v in fields.items() if k in CRM_SYNCABLE_FIELDS}
    if source == CRMProvider.HUBSPOT:
        return hubspot.to_provider(entity_type, syncable)
    if source == CRMProvider.SALESFORCE:
        return salesforce.to_provider(entity_type, syncable)
    return attio.to_provider(entity_type, syncable)


def split_changes(changes: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Partition changed fields into (crm_syncable, local_only)."""
    syncable = {k: v for k, v in changes.items() if k in CRM_SYNCABLE_FIELDS}
    local_only = {k: v for k, v in changes.items() if k not in CRM_SYNCABLE_FIELDS}
    return syncable, local_only


def diff_fields(current: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    """Return the entries of ``incoming`` whose value differs from ``current``."""
    return {k: v for k, v in incoming.items() if current.get(k) != v}


__all__ = [
    "CRM_SYNCABLE_FIELDS",
    "diff_fields",
    "map_external_to_local",
    "map_local_to_external",
    "split_changes",
]
