"""Attio attribute mapping.

Attio exposes people names as a composite ``name`` value, sometimes as a
plain ``full_name`` string. Attio has no lead status or source vocabulary,
so people always map to NEW / OTHER.
"""

from __future__ import annotations

from typing import Any

from src.crmsync.integrations.mappers.common import as_float, as_str, with_crm_details
from src.crmsync.integrations.schemas import EntityType, ProviderRecord

ATTIO_APP_URL = "https://app.attio.com"

_OBJECT_PATHS = {
    EntityType.LEAD: "people",
    EntityType.CONTACT: "people",
    EntityType.COMPANY: "companies",
    EntityType.DEAL: "deals",
}

WRITABLE_ATTRIBUTES: dict[EntityType, dict[str, str]] = {
    EntityType.LEAD: {
        "email": "email_addresses",
        "phone": "phone_numbers",
        "job_title": "job_title",
    },
    EntityType.CONTACT: {
        "email": "email_addresses",
        "phone": "phone_numbers",
        "job_title": "job_title",
    },
    EntityType.COMPANY: {"company": "name"},
    EntityType.DEAL: {},
}

_NAME_PARTS = ("first_name", "last_name")


def parse_name(value: Any) -> tuple[str | None, str | None]:
    """Split an Attio name value into (first, last)."""
    if isinstance(value, dict):
        first = as_str(value.get("first_name"))
        last = as_str(value.get("last_name"))
        if first or last:
            return first, last
        value = value.get("full_name")
    text = as_str(value)
    if not text:
        return None, None
    first, _, rest = text.partition(" ")
    return first, (rest.strip() or None)


def deal_status(value: Any) -> str:
    stage = (as_str(value) or "").lower()
    if "won" in stage or "closed" in stage:
        return "WON"
    if "lost" in stage:
        return "LOST"
    return "OPEN"


def external_url(entity_type: EntityType, record_id: str) -> str:
    return f"{ATTIO_APP_URL}/{_OBJECT_PATHS[entity_type]}/{record_id}"


def to_local(entity_type: EntityType, record: ProviderRecord) -> dict[str, Any]:
    """Map a flattened Attio record onto recipient fields."""
    props = record.properties

    if entity_type in (EntityType.LEAD, EntityType.CONTACT):
        first, last = parse_name(props.get("name") or props.get("full_name"))
        fields = {
            "email": as_str(props.get("email_addresses")),
            "first_name": first,
            "last_name": last,
            "phone": as_str(props.get("phone_numbers")),
            "job_title": as_str(props.get("job_title")),
            "linkedin_url": as_str(props.get("linkedin")),
        }
        if entity_type == EntityType.LEAD:
            fields["lead_status"] = "NEW"
            fields["lead_source"] = "OTHER"
        return fields

    if entity_type == EntityType.COMPANY:
        return with_crm_details({"company": as_str(props.get("name"))}, {
            "domain": as_str(props.get("domains")),
            "industry": as_str(props.get("categories")),
            "description": as_str(props.get("description")),
        })

    return with_crm_details({}, {
        "name": as_str(props.get("name")),
        "value": as_float(props.get("value")),
        "status": deal_status(props.get("stage")),
        "stage": as_str(props.get("stage")),
    })


def to_provider(entity_type: EntityType, fields: dict[str, Any]) -> dict[str, Any]:
    """Translate syncable recipient fields into Attio attribute values.

    First and last name are combined into the composite ``name`` attribute.
    The adapter wraps scalar values into Attio's typed value arrays.
    """
    table = WRITABLE_ATTRIBUTES[entity_type]
    values: dict[str, Any] = {
        table[local]: value for local, value in fields.items() if local in table
    }
    if entity_type in (EntityType.LEAD, EntityType.CONTACT):
        name = {part: fields[part] for part in _NAME_PARTS if part in fields}
        if name:
            full = " ".join(p for p in (name.get("first_name"), name.get("last_name")) if p)
            if full:
                name["full_name"] = full
            values["name"] = name
    return values
