"""Application configuration schema and validation."""

from typing import Literal, Optional

from pydantic import Field, PostgresDsn, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    env: Literal["dev", "staging", "prod"] = Field(
        default="dev",
        description="Application environment",
    )
    stripe_secret_key: SecretStr = Field(
        default=SecretStr(""),
        description="Stripe secret API key",
    )
    stripe_webhook_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Signing secret for the Stripe webhook endpoint",
    )
    webhook_tolerance_seconds: int = Field(
        default=300,
        ge=1,
        le=3600,
        description="Maximum age of a signed webhook timestamp",
    )
    webhook_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=60,
        description="Upper bound on reconciling one webhook before answering",
    )
    ack_on_store_failure: bool = Field(
        default=True,
        description="Answer 200 to Stripe even when the projection write failed",
    )
    reconcile_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Compare-and-set attempts per projection write",
    )
    client_url: str = Field(
        default="http://localhost:3000",
        description="Origin allowed to call the API from a browser",
    )
    port: int = Field(
        default=4000,
        ge=1,
        le=65535,
        description="HTTP listening port",
    )
    checkout_success_url: str = Field(
        default="http://localhost:3000/payment",
        description="Redirect target after a completed checkout",
    )
    checkout_cancel_url: str = Field(
        default="http://localhost:3000/cancel",
        description="Redirect target after an abandoned checkout",
    )
    db_dsn: Optional[PostgresDsn] = Field(
        default=None,
        description="PostgreSQL connection string for projections (memory store if unset)",
    )
    db_pool_min: int = Field(
        default=1,
        ge=1,
        description="Minimum database connection pool size",
    )
    db_pool_max: int = Field(
        default=5,
        ge=1,
        description="Maximum database connection pool size",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )

    @field_validator("db_pool_max")
    @classmethod
    def validate_pool_max(cls, v: int, info) -> int:
        """Ensure pool_max >= pool_min."""
        if "db_pool_min" in info.data and v < info.data["db_pool_min"]:
            raise ValueError("db_pool_max must be >= db_pool_min")
        return v


_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Get or create the singleton AppConfig instance."""
    global _config
    if _config is None:
        _config = AppConfig()
    return _config
