"""Builds the ``call_inbound`` response fed back to the voice platform.

The upstream only accepts string dynamic variables, so every value is
coerced here: booleans become ``"true"``/``"false"``, numbers decimal
strings and containers compact JSON.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Mapping

from voice_gateway.services.conversation_init import InitPayload, greeting_for
from voice_gateway.services.customer_memory import CustomerContext
from voice_gateway.services.phone import last_ten_digits
from voice_gateway.services.time_format import format_current_datetime

GREETING_PREFIX = "Thank you for calling"
DEFAULT_BUSINESS_NAME = "Our Business"
DEFAULT_STAFF = [{"id": "default", "name": "Our Team", "displayName": "Our Team"}]
DEFAULT_STAFF_JSON = json.dumps(DEFAULT_STAFF, separators=(",", ":"))
DEFAULT_STAFF_NAME = "Our Team"
DEFAULT_SERVICES = "Hair Cut, Beard Trim, Hair Wash, Styling"
UNKNOWN_CALLER_TAIL = "who am I speaking with today?"

# Keys whose empty aggregator value should keep the default instead
_DEFAULT_WHEN_EMPTY = {
    "customer_phone",
    "upcoming_bookings_json",
    "booking_history_json",
    "service_variations_json",
    "staff_with_ids_json",
    "available_services",
    "available_staff",
    "current_datetime_store_timezone",
}


def to_variable_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, separators=(",", ":"), default=str)
    return str(value)


def _is_blank(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, (dict, list, tuple)) and not value)


def ensure_business_name_in_message(message: str | None, business_name: str) -> str:
    """Force the greeting to open with ``Thank you for calling <business>, ``."""
    business = (business_name or "").strip() or DEFAULT_BUSINESS_NAME
    prefix = f"{GREETING_PREFIX} {business}, "
    text = (message or "").strip()

    if not text.lower().startswith(GREETING_PREFIX.lower()):
        return prefix + UNKNOWN_CALLER_TAIL
    if text.startswith(prefix):
        return text

    remainder = text[len(GREETING_PREFIX):].lstrip()
    if remainder.lower().startswith(business.lower()):
        remainder = remainder[len(business):]
    remainder = remainder.lstrip(" .,!:;-")
    if not remainder:
        return prefix + UNKNOWN_CALLER_TAIL
    return prefix + remainder[0].lower() + remainder[1:]


def build_default_dynamic_variables(
    business_name: str,
    from_number: str | None,
    tz_name: str | None = None,
    now: datetime | None = None,
) -> dict[str, str]:
    business = (business_name or "").strip() or DEFAULT_BUSINESS_NAME
    return {
        "customer_first_name": "",
        "customer_last_name": "",
        "customer_full_name": "",
        "customer_email": "",
        "customer_phone": from_number or "",
        "customer_id": "",
        "upcoming_bookings_json": "[]",
        "booking_history_json": "[]",
        "is_returning_customer": "false",
        "current_datetime_store_timezone": format_current_datetime(tz_name, now),
        "service_variations_json": "{}",
        "staff_with_ids_json": DEFAULT_STAFF_JSON,
        "available_services": DEFAULT_SERVICES,
        "available_staff": DEFAULT_STAFF_NAME,
        "caller_id": last_ten_digits(from_number),
        "initial_message": f"{GREETING_PREFIX} {business}, {UNKNOWN_CALLER_TAIL}",
    }


def build_dynamic_variables(
    business_name: str,
    from_number: str | None,
    call_id: str,
    init_payload: InitPayload | None = None,
    memory: CustomerContext | None = None,
    tz_name: str | None = None,
    now: datetime | None = None,
) -> dict[str, str]:
    variables: dict[str, Any] = build_default_dynamic_variables(business_name, from_number, tz_name, now)

    aggregated: Mapping[str, Any] = {}
    if init_payload is not None and init_payload.success:
        aggregated = init_payload.dynamic_variables
    for key, value in aggregated.items():
        if key in _DEFAULT_WHEN_EMPTY and _is_blank(value):
            continue
        variables[key] = value

    customer_found = bool(init_payload and init_payload.customer_found)
    names_from_memory = False
    if memory is not None and memory.profile is not None:
        profile = memory.profile
        if not customer_found and (profile.first_name or profile.last_name):
            first = profile.first_name or ""
            last = profile.last_name or ""
            variables["customer_first_name"] = first
            variables["customer_last_name"] = last
            variables["customer_full_name"] = f"{first} {last}".strip()
            if profile.email and not variables.get("customer_email"):
                variables["customer_email"] = profile.email
            names_from_memory = True

        memory_vars = dict(memory.dynamic_variables)
        returning = memory_vars.pop("is_returning_customer", "false") == "true"
        variables.update(memory_vars)
        variables["is_returning_customer"] = customer_found or returning or names_from_memory

    if names_from_memory or not aggregated.get("initial_message"):
        variables["initial_message"] = greeting_for(
            variables["customer_first_name"],
            variables["customer_last_name"],
            variables["customer_full_name"],
        )
    variables["initial_message"] = ensure_business_name_in_message(variables["initial_message"], business_name)
    variables["caller_id"] = last_ten_digits(from_number)
    variables["call_id"] = call_id

    return {key: to_variable_string(value) for key, value in variables.items()}


def build_inbound_response(
    business_name: str,
    from_number: str | None,
    call_id: str,
    correlation_id: str | None,
    init_payload: InitPayload | None = None,
    memory: CustomerContext | None = None,
    tz_name: str | None = None,
    now: datetime | None = None,
) -> dict:
    """The 200 body for ``call_inbound``."""
    dynamic_variables = build_dynamic_variables(
        business_name, from_number, call_id, init_payload, memory, tz_name, now,
    )
    return {
        "call_inbound": {
            "dynamic_variables": dynamic_variables,
            "metadata": {
                "call_id": call_id,
                "correlation_id": correlation_id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "customer_lookup_success": bool(init_payload and init_payload.success),
            },
        }
    }
