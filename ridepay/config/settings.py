"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Razorpay (payment gateway)
    razorpay_key_id: str = Field(..., description="Razorpay key id (rzp_test_... / rzp_live_...)")
    razorpay_key_secret: str = Field(..., description="Razorpay key secret")
    razorpay_webhook_secret: str = Field(..., description="Razorpay payment webhook secret")

    # RazorpayX (payout gateway, separate credentials)
    razorpayx_key_id: str = Field(..., description="RazorpayX key id")
    razorpayx_key_secret: str = Field(..., description="RazorpayX key secret")
    razorpayx_account_number: str = Field(..., description="RazorpayX business account number")
    razorpayx_webhook_secret: str = Field(..., description="RazorpayX payout webhook secret")
    razorpayx_base_url: str = Field(
        default="https://api.razorpay.com/v1", description="RazorpayX API base URL"
    )

    gateway_timeout_seconds: float = Field(
        default=15.0, description="Timeout for a single gateway call (seconds)"
    )

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str = Field(..., description="Redis connection URL")
    redis_lock_timeout: int = Field(default=30, description="Distributed lock timeout (seconds)")

    # Application Configuration
    app_name: str = Field(default="ridepay", description="Application name")
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
    api_key_header: str = Field(default="X-API-Key", description="API key header name")
    admin_api_key: str = Field(..., description="API key required by admin payout routes")
    user_id_header: str = Field(
        default="X-User-Id", description="Header carrying the authenticated user id"
    )

    # Fare split
    currency: str = Field(default="INR", description="Settlement currency")
    platform_commission_percent: Decimal = Field(
        default=Decimal("10"), description="Platform commission on the fare (%)"
    )
    gst_percent: Decimal = Field(default=Decimal("18"), description="GST on commission (%)")

    # Payouts
    payout_default_mode: str = Field(default="IMPS", description="Default payout mode")
    payout_max_retries: int = Field(default=3, description="Max automatic payout retries")
    payout_retry_delay_seconds: int = Field(
        default=3600, description="Delay before a failed payout becomes retryable"
    )
    payout_sweep_batch_size: int = Field(
        default=50, description="Transactions handled per payout sweep"
    )
    payout_sweep_interval_seconds: int = Field(
        default=900, description="Seconds between payout sweeps"
    )
    payout_reconcile_after_seconds: int = Field(
        default=7200, description="Age after which processing payouts are reconciled"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("razorpay_key_id", "razorpayx_key_id")
    @classmethod
    def validate_key_id(cls, v: str) -> str:
        """Validate that Razorpay key ids carry the test/live prefix."""
        if not v.startswith("rzp_test_") and not v.startswith("rzp_live_"):
            raise ValueError(
                "Invalid Razorpay key id format. Must start with 'rzp_test_' or 'rzp_live_'"
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

    @field_validator("payout_default_mode")
    @classmethod
    def validate_payout_mode(cls, v: str) -> str:
        """Validate payout mode."""
        if v.upper() not in ("NEFT", "RTGS", "IMPS", "UPI"):
            raise ValueError("Payout mode must be one of NEFT, RTGS, IMPS, UPI")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Razorpay test keys."""
        return self.razorpay_key_id.startswith("rzp_test_")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
