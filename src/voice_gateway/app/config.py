"""Application configuration via Pydantic Settings."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

# Resolve .env from the project root regardless of CWD
_ENV_FILE = Path(__file__).resolve().parents[3] / ".env"


class Settings(BaseSettings):
    """Central configuration loaded from environment variables / .env file."""

    # General
    app_env: str = "development"
    debug: bool = True
    port: int = 8000
    public_url: str = "http://localhost:8000"
    tz: str = "America/New_York"

    # CORS
    allowed_origins: str = "http://localhost:3000"

    # Rate limiting (per agent id, falls back to client IP)
    rate_limit_max: int = 100
    rate_limit_window_minutes: int = 15

    # Database
    database_url: str = "sqlite+aiosqlite:///./voice_gateway.db"
    credentials_encryption_key: str = ""

    # Voice platform
    voice_api_key: str = ""
    allow_unsigned_tool_calls: bool = False

    # Commerce platform
    commerce_webhook_signing_key: str = ""
    commerce_api_version: str = "2025-01-23"
    commerce_timeout_seconds: float = 10.0
    commerce_max_attempts: int = 3

    # Secret store / agent configs
    secret_store_name: str = ""
    agent_config_secret_name: str = "AGENT_CONFIGS"
    agent_config_encryption_key: str = ""
    secret_cache_ttl_seconds: int = 600

    # Call sessions
    session_ttl_seconds: int = 600
    session_sweep_interval_seconds: int = 30

    # Deadlines
    inbound_deadline_seconds: float = 8.0
    webhook_deadline_seconds: float = 10.0

    # Post-call email (SendGrid)
    sendgrid_api_key: str = ""
    email_from: str = ""
    email_to: str = ""
    email_cost_alert_threshold: float = 10.0

    # Optional outbound call-summary hook
    call_summary_webhook_url: str = ""

    # Process-wide default tenant
    default_tenant_id: str = ""
    default_business_name: str = "Our Business"
    default_commerce_access_token: str = ""
    default_commerce_location_id: str = ""
    default_commerce_environment: str = "production"

    # Admin
    admin_api_token: str = ""

    model_config = {"env_file": str(_ENV_FILE), "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated allowed origins into a list.

        In debug mode, returns ["*"] to allow any origin.
        """
        if self.debug:
            return ["*"]
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    """Return cached Settings instance."""
    return Settings()
