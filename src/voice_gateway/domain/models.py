"""SQLAlchemy ORM models for tenants and durable customer memory."""

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.sql import func

from voice_gateway.infra.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Tenancy
# ---------------------------------------------------------------------------


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(String(36), primary_key=True, default=_uuid)
    slug = Column(String(100), unique=True, nullable=False)
    business_name = Column(String(255), nullable=False)
    timezone = Column(String(64), nullable=False, default="America/New_York")
    default_location_id = Column(String(100), nullable=True)
    staff_email = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default="active")
    deleted_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())


class VoiceAgent(Base):
    """A voice-platform agent answering calls for a tenant."""

    __tablename__ = "voice_agents"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    agent_id = Column(String(255), unique=True, nullable=False, index=True)
    display_name = Column(String(255), nullable=True)
    phone_number = Column(String(50), nullable=True)
    bearer_token_encrypted = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="active")

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())


class CommerceCredential(Base):
    """Commerce API credentials; tokens are Fernet-encrypted at rest."""

    __tablename__ = "commerce_credentials"
    __table_args__ = (
        UniqueConstraint("tenant_id", "merchant_id", name="uq_commerce_credentials_tenant_merchant"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    voice_agent_id = Column(
        String(36), ForeignKey("voice_agents.id", ondelete="CASCADE"), unique=True, nullable=True,
    )
    merchant_id = Column(String(100), nullable=False)
    default_location_id = Column(String(100), nullable=False)
    environment = Column(String(20), nullable=False, default="production")
    supports_seller_level_writes = Column(Boolean, default=False)
    access_token_encrypted = Column(Text, nullable=False)
    refresh_token_encrypted = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)
    scopes = Column(JSON, default=list)
    last_refreshed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())


# ---------------------------------------------------------------------------
# Customer memory
# ---------------------------------------------------------------------------


class CustomerProfile(Base):
    __tablename__ = "customer_profiles"
    __table_args__ = (
        UniqueConstraint("tenant_id", "phone_number", name="uq_customer_profiles_tenant_phone"),
        UniqueConstraint("tenant_id", "commerce_customer_id", name="uq_customer_profiles_tenant_customer"),
        Index("ix_customer_profiles_last_call", "tenant_id", "last_call_date"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    commerce_customer_id = Column(String(255), nullable=True)
    phone_number = Column(String(20), nullable=True)
    email = Column(String(255), nullable=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    preferred_language = Column(String(10), default="en")
    language_confidence = Column(Float, default=0.5)
    total_calls = Column(Integer, default=0)
    total_bookings = Column(Integer, default=0)
    first_call_date = Column(DateTime, nullable=True)
    last_call_date = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())


class CallHistory(Base):
    """One row per upstream call id; updates are idempotent."""

    __tablename__ = "call_history"
    __table_args__ = (
        Index("ix_call_history_profile_start", "customer_profile_id", "call_start_time"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    call_id = Column(String(255), unique=True, nullable=False)
    customer_profile_id = Column(
        String(36), ForeignKey("customer_profiles.id", ondelete="SET NULL"), nullable=True,
    )
    tenant_id = Column(String(36), nullable=False, index=True)
    call_start_time = Column(DateTime, nullable=False)
    call_end_time = Column(DateTime, nullable=True)
    call_duration_seconds = Column(Integer, nullable=True)
    call_successful = Column(Boolean, nullable=True)
    user_sentiment = Column(String(20), nullable=True)
    detected_language = Column(String(10), nullable=True)
    call_summary = Column(Text, nullable=True)
    call_transcript = Column(Text, nullable=True)
    booking_created = Column(Boolean, default=False)
    booking_id = Column(String(255), nullable=True)
    final_agent_state = Column(String(50), nullable=True)
    spam_detected = Column(Boolean, default=False)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())


class ConversationContext(Base):
    __tablename__ = "conversation_context"
    __table_args__ = (
        UniqueConstraint("customer_profile_id", "context_key", name="uq_conversation_context_profile_key"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    customer_profile_id = Column(
        String(36), ForeignKey("customer_profiles.id", ondelete="CASCADE"), nullable=False,
    )
    context_key = Column(String(100), nullable=False)
    context_value = Column(Text, nullable=False)
    value_type = Column(String(20), default="string")
    confidence = Column(Float, default=0.5)
    source = Column(String(50), nullable=True)
    last_confirmed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())


class OpenIssue(Base):
    __tablename__ = "open_issues"
    __table_args__ = (
        Index("ix_open_issues_profile_status", "customer_profile_id", "status"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    customer_profile_id = Column(
        String(36), ForeignKey("customer_profiles.id", ondelete="SET NULL"), nullable=True,
    )
    call_history_id = Column(String(36), ForeignKey("call_history.id", ondelete="SET NULL"), nullable=True)
    tenant_id = Column(String(36), nullable=False, index=True)
    issue_type = Column(String(50), nullable=False)
    issue_description = Column(Text, nullable=False)
    priority = Column(String(20), default="normal")
    status = Column(String(20), default="open")
    resolved_at = Column(DateTime, nullable=True)
    resolution_notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())


class ContextChangeEvent(Base):
    """Audit trail for manual edits of conversation context."""

    __tablename__ = "context_change_events"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    customer_profile_id = Column(
        String(36), ForeignKey("customer_profiles.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    context_key = Column(String(100), nullable=False)
    change_type = Column(String(20), nullable=False, default="update")
    old_value = Column(JSON, nullable=True)
    new_value = Column(JSON, nullable=True)
    changed_by_email = Column(String(255), nullable=True)
    change_source = Column(String(50), default="manual")

    created_at = Column(DateTime, default=func.now())
