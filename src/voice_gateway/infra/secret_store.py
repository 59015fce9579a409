"""Directory-backed secret store with a TTL cache.

``SECRET_STORE_NAME`` points at a directory holding one file per secret (the
layout produced by mounted Kubernetes/Docker secrets). Values are cached for
``secret_cache_ttl_seconds``; a missing secret falls back to the settings
field of the same (lower-cased) name.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
import time
from pathlib import Path

from voice_gateway.app.config import Settings, get_settings

logger = logging.getLogger(__name__)


class SecretStore:
    """Read-through secret cache over a directory of secret files."""

    def __init__(self, root: str | Path | None, ttl_seconds: int = 600, settings: Settings | None = None):
        self._root = Path(root) if root else None
        self._ttl = ttl_seconds
        self._settings = settings
        self._cache: dict[str, tuple[float, str | None]] = {}
        self._lock = threading.Lock()

    @property
    def configured(self) -> bool:
        return self._root is not None

    def _path_for(self, name: str) -> Path | None:
        if self._root is None:
            return None
        # Secret names are flat identifiers; reject path tricks
        safe = Path(name).name
        return self._root / safe

    def _read(self, name: str) -> str | None:
        path = self._path_for(name)
        if path is not None and path.is_file():
            return path.read_text(encoding="utf-8").strip()
        if self._settings is not None:
            value = getattr(self._settings, name.lower(), None)
            if isinstance(value, str) and value:
                return value
        return None

    def get_secret(self, name: str) -> str | None:
        """Return the secret value or None when it is not defined anywhere."""
        now = time.monotonic()
        with self._lock:
            cached = self._cache.get(name)
            if cached and cached[0] > now:
                return cached[1]

        value = self._read(name)

        with self._lock:
            self._cache[name] = (now + self._ttl, value)
        if value is None:
            logger.debug("Secret %s not found in store", name)
        return value

    def put_secret(self, name: str, value: str) -> Path:
        """Atomically write *value* as secret *name*."""
        path = self._path_for(name)
        if path is None:
            raise RuntimeError("SECRET_STORE_NAME is not configured")
        path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(value)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        self.invalidate(name)
        logger.info("Secret %s written to %s", name, path.parent)
        return path

    def invalidate(self, name: str | None = None) -> None:
        with self._lock:
            if name is None:
                self._cache.clear()
            else:
                self._cache.pop(name, None)


_store: SecretStore | None = None


def get_secret_store() -> SecretStore:
    """Return the process-wide secret store."""
    global _store
    if _store is None:
        settings = get_settings()
        _store = SecretStore(
            settings.secret_store_name or None,
            ttl_seconds=settings.secret_cache_ttl_seconds,
            settings=settings,
        )
    return _store
