"""Phone number helpers (North American numbering)."""

import re

_NON_DIGIT = re.compile(r"\D")


def digits_only(phone: str | None) -> str:
    return _NON_DIGIT.sub("", phone or "")


def normalize_phone(phone: str | None) -> str | None:
    """Digits only, with the US country code stripped from 11-digit numbers.

    >>> normalize_phone("+1 (267) 721-0098")
    '2677210098'
    """
    digits = digits_only(phone)
    if not digits:
        return None
    if len(digits) == 11 and digits.startswith("1"):
        return digits[1:]
    return digits


def to_e164(phone: str | None) -> str | None:
    normalized = normalize_phone(phone)
    if not normalized:
        return None
    if len(normalized) == 10:
        return f"+1{normalized}"
    return f"+{normalized}"


def last_ten_digits(phone: str | None) -> str:
    return digits_only(phone)[-10:]


def display_phone(phone: str | None) -> str:
    """Format as ``XXX XXX XXXX`` for speech; other lengths pass through."""
    normalized = normalize_phone(phone)
    if normalized and len(normalized) == 10:
        return f"{normalized[:3]} {normalized[3:6]} {normalized[6:]}"
    return phone or ""


def fallback_formats(phone: str | None) -> list[str]:
    """Equivalent spellings of *phone* to try when the exact lookup misses."""
    digits = digits_only(phone)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) != 10:
        return []

    candidates = [
        f"+1{digits}",
        f"1{digits}",
        digits,
        f"({digits[:3]}) {digits[3:6]}-{digits[6:]}",
        f"{digits[:3]}-{digits[3:6]}-{digits[6:]}",
    ]
    seen = {phone}
    ordered = []
    for candidate in candidates:
        if candidate not in seen:
            seen.add(candidate)
            ordered.append(candidate)
    return ordered


def mask_phone(phone: str | None) -> str:
    """Short log-safe form: first five characters then ``***``."""
    if not phone:
        return "unknown"
    return f"{phone[:5]}***"
