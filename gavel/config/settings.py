"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")
    currency: str = Field(default="USD", description="Settlement currency")

    # Database Configuration
    database_url: str = Field(..., description="PostgreSQL connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str = Field(..., description="Redis connection URL")
    charge_replay_ttl: int = Field(
        default=86400, description="How long a charge receipt can be replayed (seconds)"
    )

    # Application Configuration
    app_name: str = Field(default="gavel", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    # Platform fees
    default_platform_fee_percentage: Decimal = Field(
        default=Decimal("2.50"), description="Platform fee percentage for new events"
    )
    default_fixed_platform_fee: Decimal = Field(
        default=Decimal("0.30"), description="Fixed platform fee for new events"
    )
    platform_fee_max_percentage: Decimal = Field(
        default=Decimal("10"), description="Administrative cap on the platform fee percentage"
    )
    platform_fixed_fee_max: Decimal = Field(
        default=Decimal("5.00"), description="Administrative cap on the fixed platform fee"
    )

    # Payment gateway
    gateway_fee_percentage: Decimal = Field(
        default=Decimal("2.6"), description="Gateway processing fee percentage"
    )
    gateway_fixed_fee: Decimal = Field(
        default=Decimal("0.10"), description="Gateway fixed processing fee"
    )
    gateway_timeout_seconds: float = Field(
        default=30.0, description="Upper bound on a single gateway call (seconds)"
    )
    gateway_charge_max_attempts: int = Field(
        default=1, description="Charge attempts per request (1 disables retry)"
    )
    gateway_lookup_max_attempts: int = Field(
        default=3, description="Attempts for read-only gateway lookups"
    )

    # Reconciliation
    reconciliation_stale_after_seconds: int = Field(
        default=300, description="Age after which a processing session needs reconciliation"
    )
    reconciliation_interval_seconds: int = Field(
        default=900, description="Reconciliation sweep interval (seconds)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate that Stripe secret key starts with sk_test_ for test mode."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Only USD is settled."""
        if v.upper() != "USD":
            raise ValueError("Only USD is supported")
        return v.upper()

    @field_validator("gateway_charge_max_attempts", "gateway_lookup_max_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Attempts must be at least 1")
        return v

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
