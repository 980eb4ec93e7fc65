"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(..., description="Async SQLAlchemy database URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Application Configuration
    app_name: str = Field(default="giftledger", description="Application name")
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

    # Security
    hash_pepper: str = Field(
        default="change-me", description="Server-side key for redemption code and track data hashes"
    )

    # Rate Limiting
    rate_limit_per_minute: int = Field(default=60, description="Default API key limit per minute")
    rate_limit_per_day: int = Field(default=10000, description="Default API key limit per day")
    rate_limit_retention_hours: int = Field(
        default=48, description="Age after which rate limit windows are purged"
    )

    # Merchant defaults
    default_currency: str = Field(default="USD", description="Card currency when unset")
    default_max_card_balance: int = Field(default=100000, description="Max card balance (cents)")
    default_min_load_amount: int = Field(default=100, description="Min load amount (cents)")
    default_max_load_amount: int = Field(default=50000, description="Max load amount (cents)")
    default_card_exp_days: int = Field(default=365, description="Days until a new card expires")

    # Webhooks
    webhook_max_retries: int = Field(default=5, description="Attempts before a delivery fails")
    webhook_auto_disable_threshold: int = Field(
        default=10, description="Endpoint failures before it is disabled"
    )
    webhook_timeout_seconds: float = Field(default=10.0, description="Outbound webhook timeout")
    webhook_batch_size: int = Field(default=50, description="Deliveries taken per drain")

    # Email
    resend_api_key: str = Field(default="", description="Resend API key")
    resend_base_url: str = Field(default="https://api.resend.com", description="Resend API base URL")
    email_from: str = Field(
        default="GiftLedger <noreply@giftledger.io>", description="Default sender address"
    )
    email_max_retries: int = Field(default=3, description="Attempts before an email fails")
    email_batch_size: int = Field(default=20, description="Emails taken per drain")
    email_timeout_seconds: float = Field(default=10.0, description="Outbound email timeout")

    # Scheduler
    email_drain_interval_seconds: float = Field(default=60.0)
    webhook_drain_interval_seconds: float = Field(default=60.0)
    card_expiry_interval_seconds: float = Field(default=3600.0)
    rate_limit_sweep_interval_seconds: float = Field(default=3600.0)
    sweep_batch_size: int = Field(default=500, description="Rows handled per sweep tick")

    # Health
    health_backlog_seconds: float = Field(
        default=900.0, description="Oldest pending email or webhook age before health degrades"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("default_currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        if len(v) != 3:
            raise ValueError("Currency must be a 3-letter code")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
