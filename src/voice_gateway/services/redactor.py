"""PII and secret redaction for log output.

Sentinel shapes:
- tokens  -> ``EAAAl2...[REDACTED]...9xQz`` or ``[REDACTED_TOKEN]`` when short
- phones  -> ``XXX-XXX-1234``
- emails  -> ``****@example.com``
- ids     -> ``[REDACTED_ID]``
"""

from __future__ import annotations

import logging
import re
from typing import Any

MAX_DEPTH = 10

TOKEN_FIELDS = frozenset({
    "token", "access_token", "accesstoken", "refresh_token", "refreshtoken",
    "bearer_token", "bearertoken", "api_key", "apikey", "secret", "password",
    "authorization", "signature", "squareaccesstoken", "squarerefreshtoken",
    "commerce_access_token", "voice_api_key", "retell_api_key",
    "x-retell-signature", "x-square-hmacsha256-signature",
})

PHONE_FIELDS = frozenset({
    "phone", "phone_number", "phonenumber", "from_number", "to_number",
    "customer_phone", "caller_phone", "caller_id",
})

EMAIL_FIELDS = frozenset({
    "email", "email_address", "emailaddress", "staff_email", "staffemail", "customer_email",
})

ID_FIELDS = frozenset({
    "customer_id", "customerid", "commerce_customer_id", "square_customer_id",
    "merchant_id", "merchantid", "squaremerchantid", "location_id", "locationid",
    "squarelocationid", "default_location_id",
})

_JWT = re.compile(r"\bey[A-Za-z0-9_-]+\.ey[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+")
_COMMERCE_TOKEN = re.compile(r"\b(?:EAAA[A-Za-z0-9_-]{20,}|sq0[a-z]{3}-[A-Za-z0-9_-]{20,})")
_PHONE = re.compile(r"(?<![\w-])(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}(?![\w-])")
_EMAIL = re.compile(r"[A-Za-z0-9._%+-]+@([A-Za-z0-9.-]+\.[A-Za-z]{2,})")


def redact_token(value: str) -> str:
    if len(value) <= 10:
        return "[REDACTED_TOKEN]"
    return f"{value[:6]}...[REDACTED]...{value[-4:]}"


def redact_phone(value: str) -> str:
    digits = re.sub(r"\D", "", value)
    if len(digits) >= 4:
        return f"XXX-XXX-{digits[-4:]}"
    return "[REDACTED_PHONE]"


def redact_email(value: str) -> str:
    parts = value.split("@")
    if len(parts) == 2 and parts[1]:
        return f"****@{parts[1]}"
    return "[REDACTED_EMAIL]"


def _field_kind(name: str) -> str | None:
    key = name.lower()
    if key in TOKEN_FIELDS or key.endswith("_token") or key.endswith("_secret"):
        return "token"
    if key in PHONE_FIELDS:
        return "phone"
    if key in EMAIL_FIELDS:
        return "email"
    if key in ID_FIELDS:
        return "id"
    return None


def _redact_by_kind(value: Any, kind: str) -> Any:
    if value is None or value == "":
        return value
    text = str(value)
    if kind == "token":
        return redact_token(text)
    if kind == "phone":
        return redact_phone(text)
    if kind == "email":
        return redact_email(text)
    return "[REDACTED_ID]"


def redact_text(text: str) -> str:
    """Mask tokens, phone numbers and email addresses inside free text."""
    text = _JWT.sub(lambda m: redact_token(m.group(0)), text)
    text = _COMMERCE_TOKEN.sub(lambda m: redact_token(m.group(0)), text)
    text = _EMAIL.sub(lambda m: f"****@{m.group(1)}", text)
    text = _PHONE.sub(lambda m: redact_phone(m.group(0)), text)
    return text


def redact(value: Any, depth: int = 0) -> Any:
    """Return a redacted deep copy of *value* (dicts, lists, strings)."""
    if depth > MAX_DEPTH:
        return "[MAX_DEPTH]"
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            kind = _field_kind(str(key))
            if kind and not isinstance(item, (dict, list)):
                out[key] = _redact_by_kind(item, kind)
            else:
                out[key] = redact(item, depth + 1)
        return out
    if isinstance(value, (list, tuple)):
        return [redact(item, depth + 1) for item in value]
    if isinstance(value, str):
        return redact_text(value)
    return value


class RedactingFilter(logging.Filter):
    """Logging filter that redacts message arguments and stamps the correlation id."""

    def filter(self, record: logging.LogRecord) -> bool:
        from voice_gateway.app.request_context import get_correlation_id

        record.correlation_id = get_correlation_id() or "-"

        if isinstance(record.msg, str):
            record.msg = redact_text(record.msg)
        if record.args:
            if isinstance(record.args, dict):
                record.args = redact(record.args)
            else:
                record.args = tuple(redact(arg) for arg in record.args)
        return True
