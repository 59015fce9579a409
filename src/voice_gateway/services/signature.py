"""Webhook signature verification.

Voice platform (timestamp-plus-digest)::

    x-retell-signature: v=<unix-ms>,d=<hex hmac-sha256>
    digest = HMAC_SHA256(api_key, raw_body + str(unix_ms))

Commerce platform (plain HMAC)::

    x-square-hmacsha256-signature: base64(HMAC_SHA256(signing_key, raw_body))

Both run against the raw request bytes, never a re-serialized body.
"""

import base64
import hashlib
import hmac
import logging
import re
import time

from voice_gateway.domain.errors import UnauthorizedError

logger = logging.getLogger(__name__)

VOICE_SIGNATURE_HEADER = "x-retell-signature"
COMMERCE_SIGNATURE_HEADER = "x-square-hmacsha256-signature"

REPLAY_WINDOW_MS = 5 * 60 * 1000

_VOICE_SIGNATURE = re.compile(r"^v=(\d+),d=([0-9a-fA-F]+)$")


def sign_voice_payload(body: bytes, api_key: str, timestamp_ms: int) -> str:
    """Build a header value in the voice platform's format."""
    digest = hmac.new(
        api_key.encode("utf-8"),
        body + str(timestamp_ms).encode("ascii"),
        hashlib.sha256,
    ).hexdigest()
    return f"v={timestamp_ms},d={digest}"


def verify_voice_signature(
    body: bytes,
    header: str | None,
    api_key: str,
    now_ms: int | None = None,
) -> int:
    """Verify a voice-platform signature; returns the signed timestamp.

    Raises UnauthorizedError with one of the SIGNATURE_* codes.
    """
    if not header:
        raise UnauthorizedError("Missing webhook signature", code="SIGNATURE_MISSING")
    if not api_key:
        logger.error("Voice signature key is not configured")
        raise UnauthorizedError("Webhook signature cannot be verified", code="SIGNATURE_INVALID")

    match = _VOICE_SIGNATURE.match(header.strip())
    if not match:
        raise UnauthorizedError("Malformed webhook signature", code="SIGNATURE_MALFORMED")

    timestamp_ms = int(match.group(1))
    provided = match.group(2).lower()

    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    if abs(now_ms - timestamp_ms) > REPLAY_WINDOW_MS:
        logger.warning("Voice signature outside replay window (skew=%dms)", now_ms - timestamp_ms)
        raise UnauthorizedError(
            "Webhook signature timestamp outside the allowed window",
            code="SIGNATURE_EXPIRED",
        )

    expected = hmac.new(
        api_key.encode("utf-8"),
        body + str(timestamp_ms).encode("ascii"),
        hashlib.sha256,
    ).hexdigest()

    if not hmac.compare_digest(expected, provided):
        raise UnauthorizedError("Invalid webhook signature", code="SIGNATURE_INVALID")
    return timestamp_ms


def sign_commerce_payload(body: bytes, signing_key: str) -> str:
    digest = hmac.new(signing_key.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_commerce_signature(body: bytes, header: str | None, signing_key: str) -> None:
    """Verify a commerce webhook's base64 HMAC-SHA256 header."""
    if not header:
        raise UnauthorizedError("Missing webhook signature", code="SIGNATURE_MISSING")
    if not signing_key:
        logger.error("Commerce webhook signing key is not configured")
        raise UnauthorizedError("Webhook signature cannot be verified", code="SIGNATURE_INVALID")

    expected = sign_commerce_payload(body, signing_key)
    if not hmac.compare_digest(expected.encode("ascii"), header.strip().encode("utf-8")):
        raise UnauthorizedError("Invalid webhook signature", code="SIGNATURE_INVALID")
