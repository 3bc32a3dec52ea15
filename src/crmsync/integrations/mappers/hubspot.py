"""HubSpot property tables and record mapping.

HubSpot property names are lowercase (``firstname``, ``jobtitle``). Lead and
contact both come from the contacts object; lead status lives in
``hs_lead_status`` and the original source in ``hs_analytics_source``.
"""

from __future__ import annotations

from typing import Any

from src.crmsync.integrations.mappers.common import (
    as_bool,
    as_float,
    as_int,
    as_str,
    join_address,
    pick,
    with_crm_details,
)
from src.crmsync.integrations.schemas import EntityType, ProviderRecord

HUBSPOT_APP_URL = "https://app.hubspot.com"

# ── Property Maps (local field -> HubSpot property) ────────────────────────

PERSON_PROPERTIES = {
    "email": "email",
    "first_name": "firstname",
    "last_name": "lastname",
    "phone": "phone",
    "company": "company",
    "job_title": "jobtitle",
}

WRITABLE_PROPERTIES: dict[EntityType, dict[str, str]] = {
    EntityType.LEAD: {**PERSON_PROPERTIES, "lead_status": "hs_lead_status"},
    EntityType.CONTACT: {
        "email": "email",
        "first_name": "firstname",
        "last_name": "lastname",
        "phone": "phone",
        "job_title": "jobtitle",
    },
    EntityType.COMPANY: {"company": "name", "phone": "phone"},
    EntityType.DEAL: {},
}

LEAD_STATUS_MAP = {
    "NEW": "NEW",
    "OPEN": "NEW",
    "IN_PROGRESS": "CONTACTED",
    "ATTEMPTED_TO_CONTACT": "CONTACTED",
    "CONNECTED": "CONTACTED",
    "OPEN_DEAL": "QUALIFIED",
    "UNQUALIFIED": "UNQUALIFIED",
    "BAD_TIMING": "UNQUALIFIED",
}

# Local status -> HubSpot hs_lead_status for pushes
LEAD_STATUS_OUTBOUND = {
    "NEW": "NEW",
    "CONTACTED": "IN_PROGRESS",
    "QUALIFIED": "OPEN_DEAL",
    "UNQUALIFIED": "UNQUALIFIED",
    "CONVERTED": "OPEN_DEAL",
}

LEAD_SOURCE_MAP = {
    "ORGANIC_SEARCH": "WEBSITE",
    "DIRECT_TRAFFIC": "WEBSITE",
    "PAID_SEARCH": "ADVERTISING",
    "PAID_SOCIAL": "ADVERTISING",
    "SOCIAL_MEDIA": "LINKEDIN",
    "REFERRALS": "REFERRAL",
    "OFFLINE_SOURCES": "EVENT",
    "EMAIL_MARKETING": "OTHER",
    "OTHER_CAMPAIGNS": "OTHER",
}

_OBJECT_PATHS = {
    EntityType.LEAD: "contacts",
    EntityType.CONTACT: "contacts",
    EntityType.COMPANY: "companies",
    EntityType.DEAL: "deals",
}


def lead_status(value: Any) -> str:
    status = as_str(value)
    return LEAD_STATUS_MAP.get(status.upper(), "NEW") if status else "NEW"


def lead_source(value: Any) -> str:
    source = as_str(value)
    return LEAD_SOURCE_MAP.get(source.upper(), "OTHER") if source else "OTHER"


def deal_status(properties: dict[str, Any]) -> str:
    if as_bool(properties.get("hs_is_closed")):
        return "WON" if as_bool(properties.get("hs_is_closed_won")) else "LOST"
    return "OPEN"


def external_url(entity_type: EntityType, record_id: str) -> str:
    return f"{HUBSPOT_APP_URL}/{_OBJECT_PATHS[entity_type]}/{record_id}"


def to_local(entity_type: EntityType, record: ProviderRecord) -> dict[str, Any]:
    """Map a HubSpot record onto recipient fields."""
    props = record.properties

    if entity_type == EntityType.LEAD:
        fields = pick(props, PERSON_PROPERTIES)
        fields["lead_status"] = lead_status(props.get("hs_lead_status"))
        fields["lead_source"] = lead_source(props.get("hs_analytics_source"))
        return fields

    if entity_type == EntityType.CONTACT:
        fields = pick(props, PERSON_PROPERTIES)
        fields["linkedin_url"] = as_str(props.get("linkedin_url"))
        fields["address"] = join_address(
            props.get("address"), props.get("city"), props.get("state"), props.get("country")
        )
        if props.get("hs_lead_status"):
            fields["lead_status"] = lead_status(props.get("hs_lead_status"))
        return with_crm_details(fields, {
            "department": as_str(props.get("department")),
            "lifecycle_stage": as_str(props.get("lifecyclestage")),
            "external_company_id": as_str(props.get("associatedcompanyid")),
        })

    if entity_type == EntityType.COMPANY:
        fields = {
            "company": as_str(props.get("name")),
            "phone": as_str(props.get("phone")),
            "address": join_address(
                props.get("address"), props.get("city"), props.get("state"), props.get("country")
            ),
        }
        return with_crm_details(fields, {
            "domain": as_str(props.get("domain")),
            "industry": as_str(props.get("industry")),
            "website": as_str(props.get("website")),
            "size": as_str(props.get("numberofemployees")),
            "revenue": as_str(props.get("annualrevenue")),
            "description": as_str(props.get("description")),
        })

    return with_crm_details({}, {
        "name": as_str(props.get("dealname")),
        "value": as_float(props.get("amount")),
        "status": deal_status(props),
        "stage": as_str(props.get("dealstage")),
        "pipeline": as_str(props.get("pipeline")),
        "probability": as_int(as_float(props.get("hs_deal_stage_probability"))),
        "close_date": as_str(props.get("closedate")),
    })


def to_provider(entity_type: EntityType, fields: dict[str, Any]) -> dict[str, Any]:
    """Translate syncable recipient fields into HubSpot properties."""
    table = WRITABLE_PROPERTIES[entity_type]
    properties: dict[str, Any] = {}
    for local, value in fields.items():
        remote = table.get(local)
        if remote is None:
            continue
        if local == "lead_status" and value is not None:
            value = LEAD_STATUS_OUTBOUND.get(str(value).upper(), value)
        properties[remote] = value
    return properties
