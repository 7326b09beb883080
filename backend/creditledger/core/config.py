"""Application configuration."""

from decimal import Decimal
from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application settings
    environment: str = "development"
    log_level: str = "INFO"

    # Database settings
    database_url: str = "sqlite+aiosqlite:///./creditledger.db"
    auto_migrate: bool = True
    database_echo: bool = False
    sqlite_busy_timeout_seconds: float = 5.0

    # Credit economics
    credit_value_usd: Decimal = Decimal("0.001")  # $0.001 per credit
    max_operation_credits: Decimal = Decimal("1000")  # Single balance move ceiling
    max_reservation_credits: Decimal = Decimal("10000")  # Reservation record ceiling

    # Reservations
    reservation_default_ttl_minutes: float = 15
    reservation_max_ttl_minutes: float = 60
    overrun_warning_ratio: float = 2.0  # Warn when actual usage exceeds reserved by this factor

    # Batch processing
    compensation_batch_size: int = 100
    cleanup_batch_size: int = 100
    cleanup_interval_minutes: float = 5
    cleanup_enabled: bool = True

    # Monthly credit refresh
    refresh_enabled: bool = False
    refresh_check_interval_hours: float = 1
    refresh_interval_days: float = 30
    refresh_minimum_interval_days: float = 29
    refresh_batch_size: int = 100
    refresh_dry_run: bool = False
    refresh_tier_credits: dict[str, Decimal] = {
        "free": Decimal("1000"),
        "pro": Decimal("20000"),
    }
    max_refresh_credits: Decimal = Decimal("20000")  # Single refresh ceiling

    # Live tracker housekeeping
    tracker_stale_minutes: float = 30
    tracker_retention_seconds: float = 30
    max_active_trackers: int = 1000

    # Reservation buffer coefficients (advisory sizing, never charged)
    buffer_exact: float = 1.05
    buffer_enhanced: float = 1.15
    buffer_tiktoken: float = 1.08
    buffer_heuristic: float = 1.25
    buffer_fallback: float = 1.5
    buffer_provider_adjustments: dict[str, float] = {
        "anthropic": 1.1,
        "google": 1.0,
        "openai": 0.95,
    }
    buffer_image_ratio_threshold: float = 0.3
    buffer_image_multiplier: float = 1.1

    # API rate limit for mutating ledger endpoints
    ledger_rate_limit: str = "120/minute"
    rate_limit_enabled: bool = True

    # CORS Configuration
    # Comma-separated list of allowed origins. In production, set to your domain.
    cors_origins: str = "http://localhost:3000"
    cors_allow_credentials: bool = True

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
