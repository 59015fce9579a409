"""Helpers for commerce payloads: large integers, money and durations."""

from typing import Any

# Integers outside this range lose precision in JavaScript clients
MAX_SAFE_INTEGER = 2**53 - 1


def stringify_large_ints(value: Any) -> Any:
    """Return a copy of *value* with unsafe integers converted to strings."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if abs(value) > MAX_SAFE_INTEGER:
            return str(value)
        return value
    if isinstance(value, dict):
        return {k: stringify_large_ints(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [stringify_large_ints(v) for v in value]
    return value


def format_price(amount_minor: Any, currency: str = "USD") -> str:
    """Format an amount in minor units (cents) as ``$x.xx``."""
    try:
        cents = int(amount_minor)
    except (TypeError, ValueError):
        return "$0.00"
    symbol = "$" if currency in ("USD", "CAD", "AUD") else ""
    sign = "-" if cents < 0 else ""
    cents = abs(cents)
    formatted = f"{sign}{symbol}{cents // 100:,}.{cents % 100:02d}"
    return formatted if symbol else f"{formatted} {currency}"


def duration_to_minutes(duration_ms: Any) -> int:
    """Convert a duration in milliseconds to whole minutes."""
    try:
        return int(round(int(duration_ms) / 60000))
    except (TypeError, ValueError):
        return 0
