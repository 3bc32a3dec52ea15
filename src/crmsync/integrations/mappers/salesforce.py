"""Salesforce field tables and record mapping.

Records arrive with lowercased field names (``firstname``, ``billingcity``);
pushes use the API names Salesforce expects (``FirstName``).
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

PERSON_FIELDS = {
    "email": "email",
    "first_name": "firstname",
    "last_name": "lastname",
    "phone": "phone",
    "job_title": "title",
}

WRITABLE_FIELDS: dict[EntityType, dict[str, str]] = {
    EntityType.LEAD: {
        "email": "Email",
        "first_name": "FirstName",
        "last_name": "LastName",
        "phone": "Phone",
        "company": "Company",
        "job_title": "Title",
        "lead_status": "Status",
    },
    EntityType.CONTACT: {
        "email": "Email",
        "first_name": "FirstName",
        "last_name": "LastName",
        "phone": "Phone",
        "job_title": "Title",
    },
    EntityType.COMPANY: {"company": "Name", "phone": "Phone"},
    EntityType.DEAL: {},
}

LEAD_SOURCE_MAP = {
    "web": "WEBSITE",
    "phone inquiry": "COLD_OUTREACH",
    "partner referral": "REFERRAL",
    "employee referral": "REFERRAL",
    "external referral": "REFERRAL",
    "advertisement": "ADVERTISING",
    "trade show": "EVENT",
    "social media": "LINKEDIN",
}

LEAD_STATUS_MAP = {
    "open - not contacted": "NEW",
    "working - contacted": "CONTACTED",
    "closed - converted": "CONVERTED",
    "closed - not converted": "UNQUALIFIED",
    "new": "NEW",
    "contacted": "CONTACTED",
    "qualified": "QUALIFIED",
    "unqualified": "UNQUALIFIED",
}

LEAD_STATUS_OUTBOUND = {
    "NEW": "Open - Not Contacted",
    "CONTACTED": "Working - Contacted",
    "QUALIFIED": "Working - Contacted",
    "UNQUALIFIED": "Closed - Not Converted",
    "CONVERTED": "Closed - Converted",
}


def lead_status(value: Any) -> str:
    status = as_str(value)
    return LEAD_STATUS_MAP.get(status.lower(), "NEW") if status else "NEW"


def lead_source(value: Any) -> str:
    source = as_str(value)
    return LEAD_SOURCE_MAP.get(source.lower(), "OTHER") if source else "OTHER"


def deal_status(properties: dict[str, Any]) -> str:
    if as_bool(properties.get("isclosed")):
        return "WON" if as_bool(properties.get("iswon")) else "LOST"
    return "OPEN"


def external_url(record_id: str, instance_url: str | None) -> str | None:
    if not instance_url:
        return None
    return f"{instance_url.rstrip('/')}/{record_id}"


def to_local(entity_type: EntityType, record: ProviderRecord) -> dict[str, Any]:
    """Map a Salesforce record onto recipient fields."""
    props = record.properties

    if entity_type == EntityType.LEAD:
        fields = pick(props, PERSON_FIELDS)
        fields["company"] = as_str(props.get("company"))
        fields["lead_status"] = lead_status(props.get("status"))
        fields["lead_source"] = lead_source(props.get("leadsource"))
        return fields

    if entity_type == EntityType.CONTACT:
        fields = pick(props, PERSON_FIELDS)
        fields["address"] = join_address(
            props.get("mailingstreet"),
            props.get("mailingcity"),
            props.get("mailingstate"),
            props.get("mailingcountry"),
        )
        if props.get("leadsource"):
            fields["lead_source"] = lead_source(props.get("leadsource"))
        return with_crm_details(fields, {
            "department": as_str(props.get("department")),
            "external_company_id": as_str(props.get("accountid")),
        })

    if entity_type == EntityType.COMPANY:
        fields = {
            "company": as_str(props.get("name")),
            "phone": as_str(props.get("phone")),
            "address": join_address(
                props.get("billingstreet"),
                props.get("billingcity"),
                props.get("billingstate"),
                props.get("billingcountry"),
            ),
        }
        return with_crm_details(fields, {
            "website": as_str(props.get("website")),
            "industry": as_str(props.get("industry")),
            "size": as_str(props.get("numberofemployees")),
            "revenue": as_str(props.get("annualrevenue")),
            "description": as_str(props.get("description")),
        })

    return with_crm_details({}, {
        "name": as_str(props.get("name")),
        "value": as_float(props.get("amount")),
        "status": deal_status(props),
        "stage": as_str(props.get("stagename")),
        "probability": as_int(props.get("probability")),
        "close_date": as_str(props.get("closedate")),
        "external_company_id": as_str(props.get("accountid")),
    })


def to_provider(entity_type: EntityType, fields: dict[str, Any]) -> dict[str, Any]:
    """Translate syncable recipient fields into Salesforce API field names."""
    table = WRITABLE_FIELDS[entity_type]
    properties: dict[str, Any] = {}
    for local, value in fields.items():
        remote = table.get(local)
        if remote is None:
            continue
        if local == "lead_status" and value is not None:
            value = LEAD_STATUS_OUTBOUND.get(str(value).upper(), value)
        properties[remote] = value
    return properties
