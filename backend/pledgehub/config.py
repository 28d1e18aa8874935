"""
Configuration management for Pledge Hub using Pydantic Settings.

Loads configuration from environment variables with type validation and sane defaults.
"""

from decimal import Decimal
from typing import List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_env: str = Field(default="development", description="Environment: development, staging, production")
    debug: bool = Field(default=False, description="Debug mode")
    allowed_origins: str = Field(default="http://localhost:5000", description="CORS allowed origins (comma-separated)")

    # Database
    database_url: str = Field(default="sqlite:///./pledgehub.db", description="SQLAlchemy database URL")
    db_pool_size: int = Field(default=10, description="Connection pool size (PostgreSQL only)")
    db_max_overflow: int = Field(default=20, description="Maximum overflow connections (PostgreSQL only)")

    # Pledge rules
    default_commission_rate: Decimal = Field(default=Decimal("10"), description="Platform commission on realized profit (percent)")
    settlement_days: int = Field(default=2, description="Business days until settlement (T+N)")
    market_timezone: str = Field(default="Asia/Kolkata", description="Exchange timezone for settlement dates")
    disclosure_version: str = Field(default="1.0", description="Current risk disclosure version")
    filling_up_threshold: float = Field(default=80.0, description="Fill percentage that flags a session as filling up")

    # Payments
    payment_provider: str = Field(default="simulated", description="Payment provider: simulated or stripe")
    payment_currency: str = Field(default="INR", description="Convenience fee currency")
    stripe_api_key: str = Field(default="", description="Stripe API key (test mode)")

    # Stats polling
    poll_baseline_seconds: float = Field(default=30.0, description="Baseline stats polling interval")
    poll_medium_seconds: float = Field(default=20.0, description="Polling interval while activity decays")
    poll_high_activity_seconds: float = Field(default=10.0, description="Polling interval under high activity")
    poll_decay_seconds: float = Field(default=60.0, description="Quiet period before returning to baseline")

    # Logging
    log_level: str = Field(default="INFO", description="Log level: DEBUG, INFO, WARNING, ERROR")
    log_format: str = Field(default="json", description="Log format: json or text")
    log_file: str = Field(default="", description="Log file path (empty disables file logging)")

    # Scheduler
    scheduler_enabled: bool = Field(default=True, description="Enable background scheduler")
    session_expiry_interval_seconds: int = Field(default=60, description="Session expiry sweep interval")

    @field_validator("allowed_origins")
    @classmethod
    def parse_allowed_origins(cls, v: str) -> List[str]:
        """Parse comma-separated allowed origins into a list."""
        return [origin.strip() for origin in v.split(",")]

    @field_validator("payment_provider")
    @classmethod
    def check_payment_provider(cls, v: str) -> str:
        if v not in ("simulated", "stripe"):
            raise ValueError("payment_provider must be 'simulated' or 'stripe'")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.app_env == "development"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


# Global settings instance
settings = Settings()
