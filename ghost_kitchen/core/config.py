"""Application configuration using pydantic-settings.

All environment variables should be accessed through the settings object
rather than using os.getenv() directly. Ghost kitchen defaults (capacity,
thresholds, costs) and forecasting windows live here so services never
hard-code them.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra env vars
    )

    # Database - defaults to relative path, override via env
    database_url: str = "sqlite:///./data/ghost_kitchen.db"

    # Redis - optional, used for live session state and pattern caches
    redis_url: Optional[str] = None

    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    # ==========================================================================
    # Ghost kitchen session defaults
    # ==========================================================================
    ghost_default_max_orders: int = 20
    ghost_default_min_prep_time: int = 15  # minutes
    ghost_default_auto_accept: bool = True
    ghost_default_packaging_cost: float = 1.50
    ghost_capacity_warning_threshold: float = 75.0  # percent
    ghost_auto_disable_threshold: float = 90.0  # percent
    ghost_default_hourly_rate: float = 15.00

    # ==========================================================================
    # Forecasting
    # ==========================================================================
    forecast_lookback_weeks: int = 8
    forecast_pattern_cache_ttl: int = 3600  # seconds
    forecast_accuracy_days: int = 30
    forecast_comparison_days: int = 90
    holiday_expected_attendance: int = 0

    # ==========================================================================
    # External adapters
    # ==========================================================================
    openweather_api_key: Optional[str] = None
    openweather_base_url: str = "https://api.openweathermap.org/data/3.0"
    weather_forecast_cache_ttl: int = 3600
    kitchenhub_api_url: Optional[str] = None
    kitchenhub_api_key: Optional[str] = None
    notification_webhook_url: Optional[str] = None
    http_timeout_seconds: float = 10.0

    @field_validator("ghost_capacity_warning_threshold", "ghost_auto_disable_threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        if v < 0 or v > 100:
            raise ValueError(f"Threshold must be between 0 and 100, got {v}")
        return v

    @field_validator(
        "forecast_pattern_cache_ttl",
        "weather_forecast_cache_ttl",
        "forecast_lookback_weeks",
        "ghost_default_max_orders",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"Value must be positive, got {v}")
        return v


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
