"""
Application Configuration
=========================

Centralized configuration using Pydantic Settings.
Loads from environment variables with validation.
"""

from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    ENVIRONMENT: str = Field(default="development")
    LOG_LEVEL: str = Field(default="INFO")

    # Server
    PORT: int = Field(default=8000, description="Port to bind to")

    # Database (PostgreSQL)
    DATABASE_URL: str = Field(default="")

    # Redis
    REDIS_URL: str = Field(default="redis://localhost:6379/0")

    # Stripe
    STRIPE_SECRET_KEY: str = Field(default="")
    STRIPE_WEBHOOK_SECRET: str = Field(default="")
    STRIPE_DEFAULT_PLAN: str = Field(default="premium")
    STRIPE_PRICE_ID: str = Field(default="", description="Price used for checkout sessions")
    STRIPE_CHECKOUT_LINK: str = Field(default="")
    CHECKOUT_SUCCESS_URL: str = Field(default="")
    CHECKOUT_CANCEL_URL: str = Field(default="")

    # Plan catalogue (single yearly plan)
    PLAN_ID: str = Field(default="premium_yearly")
    PLAN_NAME: str = Field(default="Premium VPN - Annual")
    PLAN_PRICE: float = Field(default=100.00)
    PLAN_CURRENCY: str = Field(default="usd")
    PLAN_INTERVAL: str = Field(default="year")
    PLAN_FEATURES: str = Field(
        default="Unlimited bandwidth,Global servers,Premium support,No logs policy",
    )

    # Apple In-App Purchase
    APPLE_SHARED_SECRET: str = Field(default="")
    APPLE_DEFAULT_PERIOD_DAYS: int = Field(
        default=365,
        description="Entitlement length when the receipt carries no expiry",
    )

    # Service-to-service calls (status lookup, IAP linking)
    INTERNAL_API_TOKEN: str = Field(default="")

    # Reconciliation
    RECONCILE_MAX_ATTEMPTS: int = Field(
        default=3,
        description="Read-decide-write attempts before giving up on a write conflict",
    )

    # Webhooks
    WEBHOOK_PROCESSING_TIMEOUT_SECONDS: float = Field(default=8.0)
    WEBHOOK_IDEMPOTENCY_TTL_SECONDS: int = Field(default=86400 * 7)  # 7 days

    # App Configuration
    ALLOWED_ORIGINS: str = Field(default="http://localhost:3000,http://localhost:8000")

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse ALLOWED_ORIGINS into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",")]

    @property
    def plan_features_list(self) -> List[str]:
        """Parse PLAN_FEATURES into a list."""
        return [feature.strip() for feature in self.PLAN_FEATURES.split(",") if feature.strip()]

    @property
    def database_url_async(self) -> str:
        """Convert database URL to async format for asyncpg."""
        if self.DATABASE_URL:
            return self.DATABASE_URL.replace(
                "postgresql://", "postgresql+asyncpg://"
            )
        return ""

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.ENVIRONMENT.lower() == "development"

    @field_validator("RECONCILE_MAX_ATTEMPTS")
    @classmethod
    def validate_reconcile_attempts(cls, v: int) -> int:
        """At least one attempt is always made."""
        if v < 1:
            raise ValueError("RECONCILE_MAX_ATTEMPTS must be at least 1")
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()


# Export a default settings instance
settings = get_settings()
