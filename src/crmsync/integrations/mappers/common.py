"""Shared value coercion and vocabularies for the per-provider field mappers."""

from __future__ import annotations

from typing import Any

# Local lead vocabularies (provider values are normalized onto these)
LEAD_STATUSES = ("NEW", "CONTACTED", "QUALIFIED", "UNQUALIFIED", "CONVERTED")
LEAD_SOURCES = ("WEBSITE", "REFERRAL", "LINKEDIN", "EVENT", "ADVERTISING", "COLD_OUTREACH", "OTHER")
DEAL_STATUSES = ("OPEN", "WON", "LOST")


def clean(value: Any) -> Any:
    """Strip strings and turn empty values into None."""
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def as_str(value: Any) -> str | None:
    value = clean(value)
    if value is None:
        return None
    return str(value)


def as_float(value: Any) -> float | None:
    value = clean(value)
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def as_int(value: Any) -> int | None:
    number = as_float(value)
    return int(number) if number is not None else None


def as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


def compact(values: dict[str, Any]) -> dict[str, Any]:
    """Drop keys whose value is None."""
    return {k: v for k, v in values.items() if v is not None}


def join_address(*parts: Any) -> str | None:
    cleaned = [str(p) for p in (clean(part) for part in parts) if p is not None]
    return ", ".join(cleaned) or None


def pick(properties: dict[str, Any], field_map: dict[str, str]) -> dict[str, Any]:
    """Map provider properties to local fields through a local -> provider table."""
    return {local: as_str(properties.get(remote)) for local, remote in field_map.items()}


def with_crm_details(fields: dict[str, Any], details: dict[str, Any]) -> dict[str, Any]:
    """Attach entity attributes that have no recipient column under custom_fields["crm"]."""
    details = compact(details)
    if details:
        fields["custom_fields"] = {"crm": details}
    return fields
