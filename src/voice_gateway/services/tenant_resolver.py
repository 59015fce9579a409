"""Tenant / credential resolution chain.

Sources, in strict priority order; the first that yields an access token is
adopted:

1. database lookup by agent id (authoritative)
2. live call session by call id
3. request-supplied tenant hint
4. cached agent config (encrypted blob)
5. process-wide default from settings (skipped when an agent is required)

A database record whose tenant id is a UUID always keeps that tenant id;
other sources only fill fields it is missing.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from voice_gateway.app.config import Settings, get_settings
from voice_gateway.domain.tenant import TenantContext, is_uuid
from voice_gateway.services.agent_config import AgentConfigService, get_agent_config_service
from voice_gateway.services.session_store import SessionStore, session_store

logger = logging.getLogger(__name__)

DatabaseLookup = Callable[[str], Awaitable["TenantContext | None"]]


class TenantResolver:
    def __init__(
        self,
        db_lookup: DatabaseLookup | None,
        sessions: SessionStore,
        agent_configs: AgentConfigService | None,
        settings: Settings,
    ):
        self._db_lookup = db_lookup
        self._sessions = sessions
        self._agent_configs = agent_configs
        self._settings = settings

    async def resolve(
        self,
        agent_id: str | None = None,
        call_id: str | None = None,
        hint: TenantContext | Mapping[str, Any] | None = None,
        require_agent: bool = False,
    ) -> TenantContext | None:
        """Walk the source chain and return a normalized tenant, or None."""
        db_record = await self._from_database(agent_id)
        candidates = [
            db_record,
            self._from_session(call_id),
            self._from_hint(hint),
            self._from_agent_config(agent_id),
        ]
        if not require_agent:
            candidates.append(self._from_environment())

        adopted = next((c for c in candidates if c is not None and c.usable), None)
        if adopted is None:
            logger.warning(
                "Tenant resolution failed: agent_id=%s call_id=%s require_agent=%s",
                agent_id, call_id, require_agent,
            )
            return None

        if db_record is not None and db_record.has_uuid_tenant_id:
            if adopted is not db_record:
                if adopted.tenant_id and adopted.tenant_id != db_record.tenant_id:
                    logger.warning(
                        "Tenant id %s from %s ignored in favour of database tenant %s",
                        adopted.tenant_id, adopted.source, db_record.tenant_id,
                    )
                adopted = db_record.fill_missing(adopted)
            result = adopted
        else:
            result = adopted
            if result.tenant_id and not is_uuid(result.tenant_id):
                logger.warning(
                    "Opaque tenant id %s from %s will not be used as a database key",
                    result.tenant_id, result.source,
                )

        if not result.agent_id and agent_id:
            result = result.fill_missing(TenantContext(agent_id=agent_id))

        logger.info(
            "Tenant resolved: tenant_id=%s agent_id=%s source=%s",
            result.tenant_id, result.agent_id, result.source,
        )
        return result

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    async def _from_database(self, agent_id: str | None) -> TenantContext | None:
        if not agent_id or self._db_lookup is None:
            return None
        try:
            return await self._db_lookup(agent_id)
        except Exception as e:
            logger.error("Database tenant lookup failed for agent %s: %s", agent_id, e)
            return None

    def _from_session(self, call_id: str | None) -> TenantContext | None:
        session = self._sessions.get(call_id) if call_id else None
        if session is None:
            return None
        creds = session.credentials
        return TenantContext(
            tenant_id=session.tenant_id,
            agent_id=session.agent_id,
            business_name=creds.business_name,
            timezone=creds.timezone,
            access_token=creds.access_token,
            location_id=creds.location_id,
            environment=creds.environment,
            source="session",
        )

    @staticmethod
    def _from_hint(hint: TenantContext | Mapping[str, Any] | None) -> TenantContext | None:
        if hint is None:
            return None
        if isinstance(hint, TenantContext):
            return hint
        return TenantContext.from_mapping(hint, source="request")

    def _from_agent_config(self, agent_id: str | None) -> TenantContext | None:
        if not agent_id or self._agent_configs is None:
            return None
        config = self._agent_configs.get(agent_id)
        if config is None:
            return None
        return TenantContext(
            tenant_id=config.tenant_id or config.agent_id,
            agent_id=config.agent_id,
            business_name=config.business_name,
            timezone=config.timezone,
            access_token=config.square_access_token,
            refresh_token=config.square_refresh_token,
            token_expires_at=config.square_token_expires_at,
            location_id=config.square_location_id,
            default_location_id=config.default_location_id or config.square_location_id,
            merchant_id=config.square_merchant_id,
            environment=config.square_environment,
            scopes=tuple(config.square_scopes),
            supports_seller_level_writes=config.supports_seller_level_writes,
            staff_email=config.staff_email,
            bearer_token=config.bearer_token,
            source="agent_config",
        )

    def _from_environment(self) -> TenantContext | None:
        s = self._settings
        if not s.default_commerce_access_token:
            return None
        return TenantContext(
            tenant_id=s.default_tenant_id or "default",
            agent_id="default",
            business_name=s.default_business_name,
            timezone=s.tz,
            access_token=s.default_commerce_access_token,
            location_id=s.default_commerce_location_id,
            default_location_id=s.default_commerce_location_id,
            environment=s.default_commerce_environment,
            staff_email=s.email_to or None,
            source="environment",
        )


def build_tenant_resolver(db: AsyncSession) -> TenantResolver:
    """Resolver wired to the process-wide session store and agent-config cache."""
    from voice_gateway.services.tenant_service import TenantService

    return TenantResolver(
        db_lookup=TenantService(db).get_agent_context,
        sessions=session_store,
        agent_configs=get_agent_config_service(),
        settings=get_settings(),
    )
