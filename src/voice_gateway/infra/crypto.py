"""Symmetric encryption helpers.

- AES-256-GCM envelopes for the agent-config blob kept in the secret store
- Fernet token box for commerce / bearer tokens stored in the database
"""

from __future__ import annotations

import base64
import binascii
import json
import os
import re
from datetime import datetime, timezone
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from voice_gateway.domain.errors import ConfigDecryptionError

ENVELOPE_ALGORITHM = "AES-256-GCM"
IV_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32

_HEX_KEY = re.compile(r"^[0-9a-fA-F]{64}$")


def parse_encryption_key(raw: str) -> bytes:
    """Decode a 32-byte key given as 64 hex characters or base64.

    Raises ValueError when the key does not decode to exactly 32 bytes.
    """
    value = (raw or "").strip()
    if not value:
        raise ValueError("Encryption key is empty")

    if _HEX_KEY.match(value):
        return bytes.fromhex(value)

    try:
        decoded = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError("Encryption key must be 64 hex characters or base64") from e

    if len(decoded) != KEY_LENGTH:
        raise ValueError(f"Encryption key must decode to {KEY_LENGTH} bytes, got {len(decoded)}")
    return decoded


def encrypt_envelope(plaintext: str, key: bytes) -> dict[str, str]:
    """Encrypt *plaintext* into the upload envelope format."""
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    # AESGCM appends the 16-byte tag to the ciphertext
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return {
        "algorithm": ENVELOPE_ALGORITHM,
        "iv": base64.b64encode(iv).decode("ascii"),
        "ciphertext": base64.b64encode(ciphertext).decode("ascii"),
        "authTag": base64.b64encode(tag).decode("ascii"),
        "createdAt": datetime.now(timezone.utc).isoformat(),
    }


def decrypt_envelope(envelope: dict[str, Any] | str, key: bytes) -> str:
    """Decrypt an envelope produced by `encrypt_envelope`.

    Raises ConfigDecryptionError on malformed envelopes or a bad auth tag.
    """
    if isinstance(envelope, str):
        try:
            envelope = json.loads(envelope)
        except json.JSONDecodeError as e:
            raise ConfigDecryptionError("Envelope is not valid JSON") from e

    if not isinstance(envelope, dict):
        raise ConfigDecryptionError("Envelope must be a JSON object")

    algorithm = envelope.get("algorithm")
    if algorithm != ENVELOPE_ALGORITHM:
        raise ConfigDecryptionError(f"Unsupported envelope algorithm: {algorithm}")

    try:
        iv = base64.b64decode(envelope["iv"])
        ciphertext = base64.b64decode(envelope["ciphertext"])
        tag = base64.b64decode(envelope["authTag"])
    except (KeyError, TypeError, binascii.Error) as e:
        raise ConfigDecryptionError("Envelope is missing iv, ciphertext or authTag") from e

    if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
        raise ConfigDecryptionError("Envelope iv or authTag has the wrong length")

    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as e:
        raise ConfigDecryptionError("Envelope authentication failed") from e

    return plaintext.decode("utf-8")


def is_envelope(payload: Any) -> bool:
    return isinstance(payload, dict) and payload.get("algorithm") == ENVELOPE_ALGORITHM


class TokenBox:
    """Fernet wrapper for secrets stored in database columns."""

    def __init__(self, key: str):
        if not key:
            raise ValueError("CREDENTIALS_ENCRYPTION_KEY is not configured")
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)

    def encrypt(self, value: str | None) -> str | None:
        if value is None:
            return None
        return self._fernet.encrypt(value.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str | None) -> str | None:
        if not token:
            return None
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise ValueError("Stored credential could not be decrypted") from e


def get_token_box() -> TokenBox:
    """Return a TokenBox keyed from settings."""
    from voice_gateway.app.config import get_settings
    return TokenBox(get_settings().credentials_encryption_key)
