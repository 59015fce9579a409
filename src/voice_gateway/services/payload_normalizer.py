"""Unwraps voice-platform tool-call bodies into flat argument objects.

The platform nests the real arguments in one of several envelopes
(``{"args": {"input": {...}}}``, ``{"args": "<json>"}``, ``{"payload": ...}``
and so on) next to call metadata the business logic must not see.
"""

import json
from dataclasses import dataclass, field
from typing import Any

META_KEYS = frozenset({
    "call",
    "name",
    "tool",
    "tool_call_id",
    "toolCallId",
    "metadata",
    "execution_message",
    "executionMessage",
    "call_id",
    "callId",
    "rawArguments",
    "args",
    "input",
})
META_PREFIXES = ("retell_", "tool_")

CANDIDATE_PATHS = (
    ("args", "input"),
    ("args", "arguments"),
    ("args", "payload"),
    ("args", "data"),
    ("args",),
    ("input",),
    ("payload",),
    ("parameters",),
    ("data",),
)


@dataclass
class NormalizedPayload:
    args: dict = field(default_factory=dict)
    call: dict = field(default_factory=dict)
    tool_name: str | None = None


def parse_maybe_json(value: Any) -> Any:
    """Parse strings that look like a JSON object or array; anything else is returned as-is."""
    if not isinstance(value, str):
        return value
    text = value.strip()
    if not ((text.startswith("{") and text.endswith("}")) or (text.startswith("[") and text.endswith("]"))):
        return value
    try:
        return json.loads(text)
    except ValueError:
        return value


def _get_path(source: Any, path: tuple[str, ...]) -> dict | None:
    current = source
    for key in path:
        if not isinstance(current, dict):
            return None
        current = parse_maybe_json(current.get(key))
    return current if isinstance(current, dict) else None


def _is_meta(key: str) -> bool:
    return key in META_KEYS or key.startswith(META_PREFIXES)


def strip_meta(value: Any) -> Any:
    """Recursively drop metadata keys from dicts (lists are walked too)."""
    if isinstance(value, list):
        return [strip_meta(v) for v in value]
    if isinstance(value, dict):
        return {k: strip_meta(v) for k, v in value.items() if not _is_meta(k)}
    return value


def extract_payload(body: Any) -> dict:
    """First non-empty inner argument object, before meta stripping."""
    if not isinstance(body, dict):
        return {}

    for path in CANDIDATE_PATHS:
        candidate = _get_path(body, path)
        if candidate:
            return candidate

    return {k: v for k, v in body.items() if not _is_meta(k)}


def normalize_tool_payload(body: Any) -> NormalizedPayload:
    if not isinstance(body, dict):
        return NormalizedPayload()
    call = body.get("call") if isinstance(body.get("call"), dict) else {}
    tool_name = body.get("name") if isinstance(body.get("name"), str) else None
    args = strip_meta(extract_payload(body))
    return NormalizedPayload(args=args, call=call, tool_name=tool_name)
