"""In-memory call session store.

Binds the call id minted on ``call_inbound`` to a snapshot of the tenant's
credentials for the lifetime of the call. Sessions never touch disk and
disappear on destroy, TTL expiry or process restart.

The store is guarded by a single lock that is never held across I/O.
Readers always receive an immutable snapshot, so a session returned by
`get` carries credentials from exactly one `create` call.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Callable, Mapping

from voice_gateway.domain.errors import SessionExistsError

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 600
DEFAULT_ENVIRONMENT = "production"
DEFAULT_TIMEZONE = "America/New_York"


@dataclass(frozen=True)
class SessionCredentials:
    access_token: str | None = None
    location_id: str | None = None
    environment: str = DEFAULT_ENVIRONMENT
    timezone: str = DEFAULT_TIMEZONE
    business_name: str | None = None


@dataclass(frozen=True)
class CallSession:
    call_id: str
    agent_id: str | None
    tenant_id: str | None
    credentials: SessionCredentials
    created_at: float
    expires_at: float
    last_accessed_at: float
    access_count: int = 0
    metadata: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def summary(self, now: float) -> dict:
        """Log/diagnostic view without credentials."""
        return {
            "call_id": self.call_id,
            "agent_id": self.agent_id,
            "tenant_id": self.tenant_id,
            "age_seconds": round(now - self.created_at, 1),
            "expires_in_seconds": round(self.expires_at - now, 1),
            "access_count": self.access_count,
        }


class SessionStore:
    """Thread-safe map of call id -> `CallSession` with TTL eviction."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._sessions: dict[str, CallSession] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def create(
        self,
        call_id: str,
        agent_id: str | None,
        credentials: Mapping[str, Any] | SessionCredentials,
        ttl: int = DEFAULT_TTL_SECONDS,
        metadata: Mapping[str, Any] | None = None,
    ) -> CallSession:
        """Create a session; raises SessionExistsError if *call_id* is live."""
        creds = _coerce_credentials(credentials)
        meta = dict(metadata or {})
        tenant_id = meta.get("tenant_id") or _get(credentials, "tenant_id")

        now = self._clock()
        session = CallSession(
            call_id=call_id,
            agent_id=agent_id,
            tenant_id=tenant_id,
            credentials=creds,
            created_at=now,
            expires_at=now + ttl,
            last_accessed_at=now,
            metadata=MappingProxyType(meta),
        )

        with self._lock:
            existing = self._sessions.get(call_id)
            if existing is not None and not existing.is_expired(now):
                raise SessionExistsError(call_id)
            self._sessions[call_id] = session

        logger.info("Session created: call_id=%s agent_id=%s ttl=%ds", call_id, agent_id, ttl)
        return session

    def get(self, call_id: str | None) -> CallSession | None:
        """Return the live session, bumping access stats; expired hits are removed."""
        if not call_id:
            return None
        now = self._clock()
        with self._lock:
            session = self._sessions.get(call_id)
            if session is None:
                return None
            if session.is_expired(now):
                del self._sessions[call_id]
                expired = True
            else:
                session = replace(
                    session,
                    last_accessed_at=now,
                    access_count=session.access_count + 1,
                )
                self._sessions[call_id] = session
                expired = False

        if expired:
            logger.info("Session expired on read: call_id=%s", call_id)
            return None
        return session

    def update(self, call_id: str, partial_metadata: Mapping[str, Any]) -> CallSession | None:
        """Shallow-merge *partial_metadata*; the TTL is not extended."""
        now = self._clock()
        with self._lock:
            session = self._sessions.get(call_id)
            if session is None or session.is_expired(now):
                return None
            merged = {**session.metadata, **partial_metadata}
            session = replace(
                session,
                metadata=MappingProxyType(merged),
                tenant_id=partial_metadata.get("tenant_id") or session.tenant_id,
                last_accessed_at=now,
            )
            self._sessions[call_id] = session
        return session

    def destroy(self, call_id: str | None) -> bool:
        """Remove the session; idempotent. Returns whether it existed."""
        if not call_id:
            return False
        with self._lock:
            existed = self._sessions.pop(call_id, None) is not None
        if existed:
            logger.info("Session destroyed: call_id=%s", call_id)
        return existed

    def sweep_expired(self) -> int:
        """Evict every expired session; returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [cid for cid, s in self._sessions.items() if s.is_expired(now)]
            for cid in expired:
                del self._sessions[cid]
        if expired:
            logger.info("Session sweep removed %d expired sessions", len(expired))
        return len(expired)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_metadata(self, call_id: str) -> dict | None:
        with self._lock:
            session = self._sessions.get(call_id)
        if session is None or session.is_expired(self._clock()):
            return None
        return dict(session.metadata)

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def summaries(self) -> list[dict]:
        now = self._clock()
        with self._lock:
            sessions = list(self._sessions.values())
        return [s.summary(now) for s in sessions]

    def shutdown(self) -> None:
        """Final sweep and clear, called when the process stops."""
        self.sweep_expired()
        with self._lock:
            remaining = len(self._sessions)
            self._sessions.clear()
        logger.info("Session store shut down (%d live sessions dropped)", remaining)


def _get(source: Any, key: str) -> Any:
    if isinstance(source, Mapping):
        return source.get(key)
    return getattr(source, key, None)


def _coerce_credentials(credentials: Mapping[str, Any] | SessionCredentials) -> SessionCredentials:
    if isinstance(credentials, SessionCredentials):
        return credentials
    creds = credentials or {}
    return SessionCredentials(
        access_token=creds.get("access_token") or creds.get("accessToken"),
        location_id=creds.get("location_id") or creds.get("locationId"),
        environment=creds.get("environment") or DEFAULT_ENVIRONMENT,
        timezone=creds.get("timezone") or DEFAULT_TIMEZONE,
        business_name=creds.get("business_name") or creds.get("businessName"),
    )


# ---------------------------------------------------------------------------
# Process-wide store and sweeper
# ---------------------------------------------------------------------------

session_store = SessionStore()


async def session_sweep_loop(store: SessionStore, interval_seconds: int) -> None:
    """Evict expired sessions every *interval_seconds* until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            store.sweep_expired()
        except Exception as e:
            logger.error("Session sweep error: %s", e)
