"""
Application Settings for the Billing Sync Service

Centralized configuration using Pydantic Settings with .env support.
All environment variables are validated at startup.
"""

from functools import lru_cache
from typing import Optional
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Stripe keys are optional in development so the service can boot
    without a provider account; production requires them.
    """

    # Application Settings
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # CORS Configuration
    frontend_url: str = "http://localhost:5173"
    allowed_origins: list[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ]

    # Database Configuration (SQLModel/SQLAlchemy)
    database_url: Optional[str] = None
    database_pool_size: int = 5
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_echo: bool = False

    # Stripe Configuration
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_webhook_tolerance_seconds: int = 300
    stripe_request_timeout_seconds: float = 10.0
    # Empty list accepts any api_version on incoming events
    stripe_supported_api_versions: list[str] = []

    # Stripe Price IDs (tier + interval)
    stripe_price_id_premium_monthly: Optional[str] = None
    stripe_price_id_premium_yearly: Optional[str] = None
    stripe_price_id_pro_monthly: Optional[str] = None
    stripe_price_id_pro_yearly: Optional[str] = None
    stripe_price_id_enterprise_monthly: Optional[str] = None
    stripe_price_id_enterprise_yearly: Optional[str] = None

    # Authentication
    admin_api_key: Optional[str] = None
    jwt_secret: Optional[str] = None
    jwt_audience: str = "authenticated"
    jwt_issuer: Optional[str] = None
    jwks_url: Optional[str] = None

    # Retry Configuration
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0
    projection_retry_attempts: int = 5
    quota_max_attempts: int = 3

    # Free Tier Limits (per calendar month)
    free_images_per_month: int = 3
    free_models_per_month: int = 1
    free_storage_gb: int = 1

    # Reconciliation
    reconcile_batch_size: int = 50
    # A webhook event stuck in "processing" longer than this may be re-claimed
    webhook_processing_timeout_seconds: int = 300

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_production_secrets(self) -> "Settings":
        """Require provider and admin secrets when running in production."""
        if self.environment.lower() != "production":
            return self

        missing = [
            name
            for name in ("stripe_secret_key", "stripe_webhook_secret", "admin_api_key")
            if not getattr(self, name)
        ]
        if missing:
            raise ValueError(
                f"{', '.join(key.upper() for key in missing)} required when ENVIRONMENT=production"
            )

        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment.lower() == "development"

    @property
    def price_tiers(self) -> dict[str, str]:
        """Map configured Stripe price IDs to plan tier names."""
        mapping = {
            self.stripe_price_id_premium_monthly: "premium",
            self.stripe_price_id_premium_yearly: "premium",
            self.stripe_price_id_pro_monthly: "pro",
            self.stripe_price_id_pro_yearly: "pro",
            self.stripe_price_id_enterprise_monthly: "enterprise",
            self.stripe_price_id_enterprise_yearly: "enterprise",
        }
        return {price_id: tier for price_id, tier in mapping.items() if price_id}

    def price_id_for(self, tier: str, interval: str) -> Optional[str]:
        """Look up the configured price for a tier/interval pair (interval: month | year)."""
        if interval not in ("month", "year"):
            return None
        return getattr(self, f"stripe_price_id_{tier}_{interval}ly", None)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export for direct import
settings = get_settings()
