"""BMS Billing – Application Configuration.

Pydantic Settings, loaded from .env file or environment variables.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Service ---
    environment: str = "development"
    log_level: str = "info"
    database_url: str = ""

    # --- Stripe ---
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_webhook_tolerance_seconds: int = 300
    stripe_timeout_seconds: int = 20
    stripe_max_network_retries: int = 2

    # --- Billing policy ---
    public_app_url: str = "http://localhost:3000"  # checkout success / cancel redirects
    billing_currency: str = "aud"
    billing_interval_days: int = 28
    grace_period_days: int = 3
    trial_warning_days: int = 2

    # --- Internal callers ---
    internal_api_token: str = ""  # required by /billing/upgrade|downgrade|cancel
    cron_secret: str = ""  # required by /billing/cron/* when set

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_testing(self) -> bool:
        return self.environment == "testing"


@lru_cache
def get_settings() -> Settings:
    """Factory function for settings singleton."""
    return Settings()
