"""Pydantic schemas for agent configs, tool-call bodies and admin payloads."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

MIN_ACCESS_TOKEN_LENGTH = 20

AGENT_CONFIG_REQUIRED_FIELDS = (
    "agentId",
    "bearerToken",
    "squareAccessToken",
    "squareLocationId",
    "squareApplicationId",
    "timezone",
)


# ---------------------------------------------------------------------------
# Agent config file
# ---------------------------------------------------------------------------


class AgentConfig(BaseModel):
    """One entry of the agent-config file, every documented field explicit."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    agent_id: str = Field(alias="agentId", min_length=1)
    bearer_token: str = Field(alias="bearerToken", min_length=1)
    square_access_token: str = Field(alias="squareAccessToken")
    square_location_id: str = Field(alias="squareLocationId", min_length=1)
    square_application_id: str = Field(alias="squareApplicationId", min_length=1)
    timezone: str = Field(min_length=1)

    square_refresh_token: Optional[str] = Field(default=None, alias="squareRefreshToken")
    square_token_expires_at: Optional[str] = Field(default=None, alias="squareTokenExpiresAt")
    square_scopes: list[str] = Field(default_factory=list, alias="squareScopes")
    square_merchant_id: Optional[str] = Field(default=None, alias="squareMerchantId")
    supports_seller_level_writes: bool = Field(default=False, alias="supportsSellerLevelWrites")
    default_location_id: Optional[str] = Field(default=None, alias="defaultLocationId")
    staff_email: Optional[str] = Field(default=None, alias="staffEmail")
    business_name: Optional[str] = Field(default=None, alias="businessName")
    square_environment: str = Field(default="production", alias="squareEnvironment")
    tenant_id: Optional[str] = Field(default=None, alias="tenantId")

    @field_validator("square_access_token")
    @classmethod
    def _token_length(cls, value: str) -> str:
        if len(value or "") < MIN_ACCESS_TOKEN_LENGTH:
            raise ValueError(f"squareAccessToken must be at least {MIN_ACCESS_TOKEN_LENGTH} characters")
        return value

    @field_validator("square_scopes", mode="before")
    @classmethod
    def _split_scopes(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [s.strip() for s in value.replace(",", " ").split() if s.strip()]
        return value or []

    @field_validator("square_environment", mode="before")
    @classmethod
    def _environment(cls, value: Any) -> str:
        env = str(value or "production").lower()
        return env if env in ("sandbox", "production") else "production"


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------


class CustomerInfoArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    phone: Optional[str] = None
    phone_number: Optional[str] = None


class CustomerBookingsArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    customer_id: str = Field(min_length=1)


class AvailabilityArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    service_variation_ids: list[str] = Field(min_length=1)
    staff_member_id: Optional[str] = None
    days_ahead: int = Field(default=14, ge=1, le=90)

    @field_validator("service_variation_ids", mode="before")
    @classmethod
    def _split_ids(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [v.strip() for v in value.split(",") if v.strip()]
        return value

    @field_validator("service_variation_ids")
    @classmethod
    def _id_length(cls, value: list[str]) -> list[str]:
        for item in value:
            if len(item) > 36:
                raise ValueError(f"Service variation ID is too long: {len(item)} characters (max 36)")
        return value


class AppointmentSegmentArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    service_variation_id: str
    team_member_id: Optional[str] = None
    service_variation_version: Optional[int] = None
    duration_minutes: Optional[int] = None


class CreateBookingArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    customer_id: str = Field(min_length=1)
    start_at: datetime
    appointment_segments: list[AppointmentSegmentArgs] = Field(min_length=1)
    location_id: Optional[str] = None
    customer_note: Optional[str] = None


class CancelBookingArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    booking_id: str = Field(min_length=1)


class UpdateCustomerArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    customer_id: str = Field(min_length=1)
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    email_address: Optional[str] = None


# ---------------------------------------------------------------------------
# Customer-memory admin
# ---------------------------------------------------------------------------


class ContextEntryUpsert(BaseModel):
    context_key: str = Field(min_length=1, max_length=100)
    context_value: Any
    value_type: str = "string"
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    changed_by_email: Optional[str] = None


class ContextEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    context_key: str
    context_value: str
    value_type: str
    confidence: float
    source: Optional[str] = None
    last_confirmed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OpenIssueOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    issue_type: str
    issue_description: str
    priority: str
    status: str
    created_at: Optional[datetime] = None


class CallHistoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    call_id: str
    call_start_time: Optional[datetime] = None
    call_duration_seconds: Optional[int] = None
    call_successful: Optional[bool] = None
    user_sentiment: Optional[str] = None
    call_summary: Optional[str] = None
    booking_created: Optional[bool] = None


class CustomerProfileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    commerce_customer_id: Optional[str] = None
    phone_number: Optional[str] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    preferred_language: Optional[str] = None
    language_confidence: Optional[float] = None
    total_calls: int = 0
    total_bookings: int = 0
    first_call_date: Optional[datetime] = None
    last_call_date: Optional[datetime] = None


class ContextChangeEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    context_key: str
    change_type: str
    old_value: Any = None
    new_value: Any = None
    changed_by_email: Optional[str] = None
    change_source: Optional[str] = None
    created_at: Optional[datetime] = None
