"""Database access for tenants, their voice agents and commerce credentials."""

import logging
import re
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from voice_gateway.domain.enums import TenantStatus
from voice_gateway.domain.models import CommerceCredential, Tenant, VoiceAgent
from voice_gateway.domain.tenant import TenantContext
from voice_gateway.infra.crypto import TokenBox, get_token_box

logger = logging.getLogger(__name__)


def _slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "tenant"


class TenantService:
    """Tenant lookups and onboarding/offboarding writes."""

    def __init__(self, db: AsyncSession, token_box: TokenBox | None = None):
        self.db = db
        self._token_box = token_box

    @property
    def token_box(self) -> TokenBox:
        if self._token_box is None:
            self._token_box = get_token_box()
        return self._token_box

    async def get_agent_context(self, agent_id: str | None) -> TenantContext | None:
        """Join agent, tenant and credentials for *agent_id*; None when unknown."""
        if not agent_id:
            return None

        result = await self.db.execute(
            select(VoiceAgent, Tenant, CommerceCredential)
            .join(Tenant, Tenant.id == VoiceAgent.tenant_id)
            .outerjoin(CommerceCredential, CommerceCredential.voice_agent_id == VoiceAgent.id)
            .where(
                VoiceAgent.agent_id == agent_id,
                Tenant.deleted_at.is_(None),
            )
        )
        row = result.first()
        if row is None:
            return None

        agent, tenant, creds = row
        access_token = refresh_token = bearer_token = None
        try:
            bearer_token = self.token_box.decrypt(agent.bearer_token_encrypted)
            if creds is not None:
                access_token = self.token_box.decrypt(creds.access_token_encrypted)
                refresh_token = self.token_box.decrypt(creds.refresh_token_encrypted)
        except ValueError as e:
            logger.error("Credential decryption failed for agent %s: %s", agent_id, e)

        return TenantContext(
            tenant_id=tenant.id,
            agent_id=agent.agent_id,
            business_name=tenant.business_name,
            timezone=tenant.timezone or "America/New_York",
            access_token=access_token,
            refresh_token=refresh_token,
            token_expires_at=creds.token_expires_at if creds else None,
            location_id=(creds.default_location_id if creds else None) or tenant.default_location_id,
            default_location_id=tenant.default_location_id,
            merchant_id=creds.merchant_id if creds else None,
            environment=(creds.environment if creds else None) or "production",
            scopes=tuple(creds.scopes or ()) if creds else (),
            supports_seller_level_writes=bool(creds.supports_seller_level_writes) if creds else False,
            staff_email=tenant.staff_email,
            bearer_token=bearer_token,
            source="database",
        )

    async def create_tenant_with_agent(
        self,
        business_name: str,
        agent_id: str,
        access_token: str,
        location_id: str,
        merchant_id: str,
        timezone_name: str = "America/New_York",
        environment: str = "production",
        bearer_token: str | None = None,
        refresh_token: str | None = None,
        staff_email: str | None = None,
        scopes: list[str] | None = None,
        tenant_id: str | None = None,
    ) -> Tenant:
        """Onboard a tenant with one voice agent and its commerce credentials."""
        tenant_kwargs = {"id": tenant_id} if tenant_id else {}
        tenant = Tenant(
            slug=f"{_slugify(business_name)}-{agent_id[-6:]}",
            business_name=business_name,
            timezone=timezone_name,
            default_location_id=location_id,
            staff_email=staff_email,
            status=TenantStatus.ACTIVE.value,
            **tenant_kwargs,
        )
        self.db.add(tenant)
        await self.db.flush()

        agent = VoiceAgent(
            tenant_id=tenant.id,
            agent_id=agent_id,
            display_name=business_name,
            bearer_token_encrypted=self.token_box.encrypt(bearer_token),
        )
        self.db.add(agent)
        await self.db.flush()

        self.db.add(CommerceCredential(
            tenant_id=tenant.id,
            voice_agent_id=agent.id,
            merchant_id=merchant_id,
            default_location_id=location_id,
            environment=environment,
            access_token_encrypted=self.token_box.encrypt(access_token),
            refresh_token_encrypted=self.token_box.encrypt(refresh_token),
            scopes=scopes or [],
        ))
        await self.db.flush()

        logger.info("Tenant onboarded: tenant_id=%s agent_id=%s", tenant.id, agent_id)
        return tenant

    async def update_commerce_tokens(
        self,
        tenant_id: str,
        access_token: str,
        refresh_token: str | None = None,
        expires_at: datetime | None = None,
    ) -> int:
        """Store refreshed tokens for every credential row of the tenant."""
        result = await self.db.execute(
            select(CommerceCredential).where(CommerceCredential.tenant_id == tenant_id)
        )
        rows = result.scalars().all()
        now = datetime.now(timezone.utc)
        for creds in rows:
            creds.access_token_encrypted = self.token_box.encrypt(access_token)
            if refresh_token:
                creds.refresh_token_encrypted = self.token_box.encrypt(refresh_token)
            creds.token_expires_at = expires_at
            creds.last_refreshed_at = now
        await self.db.flush()
        return len(rows)

    async def offboard_tenant(self, tenant_id: str) -> bool:
        """Soft-delete a tenant; its agents stop resolving immediately."""
        tenant = await self.db.get(Tenant, tenant_id)
        if tenant is None or tenant.deleted_at is not None:
            return False
        tenant.deleted_at = datetime.now(timezone.utc)
        tenant.status = TenantStatus.OFFBOARDED.value
        await self.db.flush()
        logger.info("Tenant offboarded: %s", tenant_id)
        return True
