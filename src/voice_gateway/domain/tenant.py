"""Normalized tenant record shared by the resolver, handlers and tool calls."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime
from typing import Any, Mapping

DEFAULT_ENVIRONMENT = "production"
DEFAULT_TIMEZONE = "America/New_York"

# Synonyms seen across credential sources -> canonical field
_SYNONYMS: dict[str, tuple[str, ...]] = {
    "tenant_id": ("tenant_id", "tenantId", "id"),
    "agent_id": ("agent_id", "agentId"),
    "business_name": ("business_name", "businessName"),
    "timezone": ("timezone", "tz"),
    "access_token": (
        "access_token", "accessToken", "commerce_access_token", "squareAccessToken", "square_access_token",
    ),
    "refresh_token": ("refresh_token", "refreshToken", "squareRefreshToken", "square_refresh_token"),
    "token_expires_at": ("token_expires_at", "squareTokenExpiresAt", "square_token_expires_at"),
    "location_id": (
        "location_id", "locationId", "location", "commerce_location", "squareLocationId", "square_location_id",
    ),
    "default_location_id": ("default_location_id", "defaultLocationId"),
    "merchant_id": ("merchant_id", "merchantId", "squareMerchantId", "square_merchant_id"),
    "environment": ("environment", "squareEnvironment", "square_environment", "commerce_environment"),
    "scopes": ("scopes", "squareScopes", "square_scopes"),
    "supports_seller_level_writes": ("supports_seller_level_writes", "supportsSellerLevelWrites"),
    "staff_email": ("staff_email", "staffEmail"),
    "bearer_token": ("bearer_token", "bearerToken"),
}


def is_uuid(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


@dataclass(frozen=True)
class TenantContext:
    tenant_id: str | None = None
    agent_id: str | None = None
    business_name: str | None = None
    timezone: str = DEFAULT_TIMEZONE
    access_token: str | None = None
    refresh_token: str | None = None
    token_expires_at: datetime | str | None = None
    location_id: str | None = None
    default_location_id: str | None = None
    merchant_id: str | None = None
    environment: str = DEFAULT_ENVIRONMENT
    scopes: tuple[str, ...] = field(default_factory=tuple)
    supports_seller_level_writes: bool = False
    staff_email: str | None = None
    bearer_token: str | None = None
    source: str = "unknown"

    @property
    def has_uuid_tenant_id(self) -> bool:
        return is_uuid(self.tenant_id)

    @property
    def usable(self) -> bool:
        return bool(self.access_token)

    @property
    def effective_location_id(self) -> str | None:
        return self.location_id or self.default_location_id

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None, source: str = "unknown") -> TenantContext | None:
        """Normalize any credential-shaped mapping into a TenantContext."""
        if not data:
            return None
        values: dict[str, Any] = {}
        for canonical, names in _SYNONYMS.items():
            for name in names:
                value = data.get(name)
                if value not in (None, ""):
                    values[canonical] = value
                    break

        if "scopes" in values:
            scopes = values["scopes"]
            if isinstance(scopes, str):
                scopes = scopes.replace(",", " ").split()
            values["scopes"] = tuple(scopes)
        values["timezone"] = values.get("timezone") or DEFAULT_TIMEZONE
        values["environment"] = (values.get("environment") or DEFAULT_ENVIRONMENT).lower()
        if "supports_seller_level_writes" in values:
            values["supports_seller_level_writes"] = bool(values["supports_seller_level_writes"])
        if not values.get("location_id") and values.get("default_location_id"):
            values["location_id"] = values["default_location_id"]
        return cls(source=source, **values)

    def fill_missing(self, other: TenantContext | None) -> TenantContext:
        """Return a copy whose empty fields are taken from *other*.

        Identity fields (tenant id) of ``self`` are never replaced.
        """
        if other is None:
            return self
        updates = {}
        for f in fields(self):
            if f.name in ("tenant_id", "source"):
                continue
            current = getattr(self, f.name)
            if current in (None, "", ()):
                candidate = getattr(other, f.name)
                if candidate not in (None, "", ()):
                    updates[f.name] = candidate
        return replace(self, **updates) if updates else self

    def session_credentials(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "access_token": self.access_token,
            "location_id": self.effective_location_id,
            "environment": self.environment,
            "timezone": self.timezone,
            "business_name": self.business_name,
        }

    def log_view(self) -> dict:
        """Fields that are safe to log."""
        data = asdict(self)
        for secret in ("access_token", "refresh_token", "bearer_token"):
            data[secret] = "set" if data.get(secret) else None
        return data
