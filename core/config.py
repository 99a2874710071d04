"""
Runtime configuration loaded from TABLEMASTER_* environment variables.

The signing secret is mandatory: a process without it refuses to start rather
than issuing unsigned or weakly signed tokens. Channel providers are validated
the same way: enabling a channel without its credentials is a configuration
error, disabling it turns its sends into skipped no-ops.
"""

from typing import Optional

from pydantic import Field, SecretStr, ValidationError as PydanticValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.errors import ConfigurationError


class Settings(BaseSettings):
    """Service settings."""

    model_config = SettingsConfigDict(
        env_prefix="TABLEMASTER_",
        env_file=".env",
        extra="ignore",
    )

    # Tokens
    jwt_secret: SecretStr = Field(default=SecretStr(""))
    jwt_algorithm: str = "HS256"
    password_reset_ttl_hours: int = Field(default=24, ge=1)
    reservation_cancel_ttl_hours: int = Field(default=48, ge=1)

    # Email (Brevo transactional API)
    email_enabled: bool = True
    brevo_api_key: Optional[SecretStr] = None
    brevo_api_url: str = "https://api.brevo.com/v3/smtp/email"
    email_sender: str = "reservation@mastertable.fr"
    email_sender_name: str = "TableMaster"
    email_max_retries: int = Field(default=3, ge=0)
    email_retry_min_timeout: float = Field(default=1.0, gt=0)
    email_retry_max_timeout: float = Field(default=5.0, gt=0)
    email_timeout: float = Field(default=5.0, gt=0)

    # Web push
    push_enabled: bool = True
    vapid_public_key: Optional[str] = None
    vapid_private_key: Optional[SecretStr] = None
    vapid_subject: str = "mailto:notifications@tablemaster.fr"
    push_timeout: float = Field(default=5.0, gt=0)

    # Dashboard stream
    sse_heartbeat_interval: float = Field(default=30.0, gt=0)
    sse_write_timeout: float = Field(default=5.0, gt=0)
    sse_stale_after: float = Field(default=90.0, gt=0)
    sse_max_connection_duration: float = Field(default=3600.0, gt=0)
    sse_max_connections_per_user: int = Field(default=5, ge=1)
    sse_max_connections_per_tenant: int = Field(default=50, ge=1)
    sse_queue_size: int = Field(default=100, ge=1)

    # Recent sends each provider channel keeps in memory
    channel_history_size: int = Field(default=200, ge=0)

    # Quota: monthly allowance of starter tenants without an explicit limit
    starter_quota_limit: int = Field(default=400, ge=1)

    app_base_url: str = "http://localhost:3000"
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _check_required(self) -> "Settings":
        if not self.jwt_secret.get_secret_value():
            raise ValueError("jwt_secret is required (TABLEMASTER_JWT_SECRET)")
        if self.email_enabled and not self.brevo_api_key:
            raise ValueError("brevo_api_key is required when email_enabled is true")
        if self.push_enabled and not (self.vapid_public_key and self.vapid_private_key):
            raise ValueError("VAPID keys are required when push_enabled is true")
        return self


def load_settings(**overrides) -> Settings:
    """
    Build Settings from the environment plus explicit overrides.

    Raises:
        ConfigurationError: If a required value is missing or invalid
    """
    try:
        return Settings(**overrides)
    except PydanticValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc


# Module-level singleton for convenience
_default_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the process settings, loading them on first use."""
    global _default_settings
    if _default_settings is None:
        _default_settings = load_settings()
    return _default_settings


def reset_settings(settings: Optional[Settings] = None) -> None:
    """Replace the cached settings (useful for testing)."""
    global _default_settings
    _default_settings = settings
