"""Agent-config cache backed by the encrypted blob in the secret store.

The blob is either the AES-256-GCM envelope written by the
``voice-gateway-agent-config`` CLI or, outside production and without a
configured key, a plain JSON array. Entries are validated individually; an
invalid entry is logged and skipped, an undecryptable envelope is fatal.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from voice_gateway.app.config import Settings, get_settings
from voice_gateway.domain.errors import ConfigDecryptionError
from voice_gateway.domain.schemas import AgentConfig
from voice_gateway.infra.crypto import decrypt_envelope, is_envelope, parse_encryption_key
from voice_gateway.infra.secret_store import SecretStore, get_secret_store

logger = logging.getLogger(__name__)


def parse_agent_configs(raw: str, key: bytes | None, allow_plaintext: bool) -> list[dict]:
    """Decode the stored blob into a list of raw agent-config dicts."""
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigDecryptionError("Agent config blob is not valid JSON") from e

    if is_envelope(payload):
        if key is None:
            raise ConfigDecryptionError("Agent config is encrypted but no encryption key is configured")
        try:
            payload = json.loads(decrypt_envelope(payload, key))
        except json.JSONDecodeError as e:
            raise ConfigDecryptionError("Decrypted agent config is not valid JSON") from e
    elif not allow_plaintext:
        raise ConfigDecryptionError("Agent config blob is not an encrypted envelope")

    if not isinstance(payload, list):
        raise ConfigDecryptionError("Agent config must be a JSON array")
    return payload


def validate_agent_configs(entries: list[Any]) -> tuple[list[AgentConfig], list[str]]:
    """Return (valid configs, error messages) for the raw entries."""
    configs: list[AgentConfig] = []
    errors: list[str] = []
    seen: set[str] = set()

    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            errors.append(f"Entry {index}: expected an object")
            continue
        try:
            config = AgentConfig.model_validate(entry)
        except PydanticValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            errors.append(f"Entry {index} ({entry.get('agentId', '?')}): invalid {fields}")
            continue
        if config.agent_id in seen:
            errors.append(f"Entry {index}: duplicate agentId {config.agent_id}")
            continue
        seen.add(config.agent_id)
        configs.append(config)

    return configs, errors


class AgentConfigService:
    """Caches agent configs by agent id with a TTL."""

    def __init__(self, store: SecretStore, settings: Settings):
        self._store = store
        self._settings = settings
        self._configs: dict[str, AgentConfig] = {}
        self._loaded_at: float | None = None
        self._lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._loaded_at is not None

    def count(self) -> int:
        return len(self._configs)

    def _key(self) -> bytes | None:
        raw_key = self._store.get_secret("AGENT_CONFIG_ENCRYPTION_KEY") or self._settings.agent_config_encryption_key
        return parse_encryption_key(raw_key) if raw_key else None

    def load(self) -> int:
        """(Re)load the blob from the secret store; returns the number of configs.

        Raises ConfigDecryptionError when the envelope cannot be decrypted.
        """
        raw = self._store.get_secret(self._settings.agent_config_secret_name)
        if not raw:
            logger.warning("No agent config secret %s found", self._settings.agent_config_secret_name)
            with self._lock:
                self._configs = {}
                self._loaded_at = time.monotonic()
            return 0

        key = self._key()
        entries = parse_agent_configs(
            raw,
            key,
            allow_plaintext=key is None and not self._settings.is_production,
        )
        configs, errors = validate_agent_configs(entries)
        for message in errors:
            logger.warning("Agent config skipped: %s", message)

        with self._lock:
            self._configs = {c.agent_id: c for c in configs}
            self._loaded_at = time.monotonic()

        logger.info("Loaded %d agent configs (%d skipped)", len(configs), len(errors))
        return len(configs)

    def _refresh_if_stale(self) -> None:
        ttl = self._settings.secret_cache_ttl_seconds
        if self._loaded_at is not None and time.monotonic() - self._loaded_at < ttl:
            return
        self._store.invalidate(self._settings.agent_config_secret_name)
        try:
            self.load()
        except ConfigDecryptionError as e:
            # Keep serving the previous configs; startup already proved them valid
            logger.error("Agent config refresh failed: %s", e)
            with self._lock:
                self._loaded_at = time.monotonic()

    def get(self, agent_id: str | None) -> AgentConfig | None:
        if not agent_id:
            return None
        self._refresh_if_stale()
        with self._lock:
            return self._configs.get(agent_id)


_service: AgentConfigService | None = None


def get_agent_config_service() -> AgentConfigService:
    global _service
    if _service is None:
        _service = AgentConfigService(get_secret_store(), get_settings())
    return _service
