"""
Configuration module with strict validation.

Key principles:
- APP STARTUP requires nothing: every provider used here is a free public API
- Settings are built ONCE at startup and handed to each component explicitly
- All timeouts, retry, circuit-breaker and fan-out limits are configurable
- Safe defaults for all optional settings
"""
from typing import Dict, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


FLOOD_STAGE_NAMES = ("action", "minor", "moderate", "major")


class Settings(BaseSettings):
    """Application settings with validation.

    Loads from environment variables and .env file.
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Database
    database_url: str = Field(
        default="sqlite:///./hazards.db",
        description="SQLAlchemy connection URL for the observation store"
    )

    # Upstream providers
    usgs_earthquake_base_url: str = Field(
        default="https://earthquake.usgs.gov",
        description="USGS FDSN event service host"
    )
    noaa_tides_base_url: str = Field(
        default="https://api.tidesandcurrents.noaa.gov/api/prod",
        description="NOAA CO-OPS Tides & Currents API"
    )
    noaa_tides_application: str = Field(
        default="hazard-data-collector",
        description="Application name NOAA asks callers to send"
    )
    usgs_water_base_url: str = Field(
        default="https://waterservices.usgs.gov/nwis/iv",
        description="USGS NWIS instantaneous values service"
    )
    noaa_kp_index_url: str = Field(
        default="https://services.swpc.noaa.gov/json/planetary_k_index_1m.json",
        description="NOAA SWPC planetary K-index feed"
    )
    nasa_donki_base_url: str = Field(
        default="https://api.nasa.gov/DONKI",
        description="NASA DONKI space weather database"
    )
    nasa_api_key: str = Field(
        default="DEMO_KEY",
        description="NASA API key - DEMO_KEY works with low rate limits"
    )

    # Timeouts (seconds) - finite and provider specific
    usgs_earthquake_timeout: float = Field(default=60.0, gt=0, le=300)
    noaa_tides_timeout: float = Field(default=30.0, gt=0, le=300)
    usgs_water_timeout: float = Field(default=30.0, gt=0, le=300)
    space_weather_timeout: float = Field(default=30.0, gt=0, le=300)
    connect_timeout: float = Field(default=10.0, gt=0, le=60)

    # Retry Configuration
    retry_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per adapter call before the call counts as failed"
    )
    retry_base_delay_seconds: float = Field(default=1.0, ge=0.0, le=60.0)
    retry_backoff_factor: float = Field(
        default=2.0,
        ge=1.0,
        le=10.0,
        description="Exponential backoff factor for retries"
    )
    retry_max_delay_seconds: float = Field(default=30.0, ge=0.0, le=600.0)

    # Circuit Breaker
    breaker_failure_threshold: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Consecutive failed calls (inside the window) that open a breaker"
    )
    breaker_window_seconds: float = Field(default=300.0, gt=0)
    breaker_cooldown_seconds: float = Field(default=60.0, ge=0.0)

    # Fan-out
    fan_out_max_concurrency: int = Field(
        default=4,
        ge=1,
        le=50,
        description="Maximum station fetches in flight per collection run"
    )
    tide_dispatch_delay_seconds: float = Field(default=0.1, ge=0.0, le=10.0)
    river_dispatch_delay_seconds: float = Field(default=0.15, ge=0.0, le=10.0)

    # Earthquake query defaults
    earthquake_lookback_hours: int = Field(default=24, ge=1, le=24 * 30)
    earthquake_min_magnitude: float = Field(default=4.5, ge=0.0, le=10.0)
    significant_lookback_hours: int = Field(default=168, ge=1)
    significant_min_magnitude: float = Field(default=6.0, ge=0.0, le=10.0)
    earthquake_fallback_hours: int = Field(default=24, ge=1)
    location_lookback_days: int = Field(default=30, ge=1)
    cme_lookback_days: int = Field(default=7, ge=1)

    # Outbound channels
    channel_earthquake_data: str = "raw.earthquake.data"
    channel_earthquake_alert: str = "raw.earthquake.alert"
    channel_tsunami_warning: str = "raw.tsunami.warning"
    channel_water_level_data: str = "raw.waterlevel.data"
    channel_flood_alert: str = "raw.flood.alert"
    channel_kp_index: str = "raw.space-weather.kp"
    channel_cme: str = "raw.space-weather.cme"

    webhook_url: Optional[str] = Field(
        default=None,
        description="When set, events are POSTed here instead of the in-process bus"
    )
    webhook_timeout: float = Field(default=10.0, gt=0, le=120)
    webhook_secret: Optional[str] = Field(
        default=None,
        description="Signs webhook bodies with HMAC-SHA256 (X-Webhook-Signature)"
    )

    # Scheduler
    scheduler_enabled: bool = Field(default=True)
    earthquake_interval_seconds: int = Field(default=300, ge=10)
    significant_interval_seconds: int = Field(default=3600, ge=10)
    tide_interval_seconds: int = Field(default=360, ge=10)
    river_interval_seconds: int = Field(default=900, ge=10)
    kp_interval_seconds: int = Field(default=600, ge=10)
    cme_interval_seconds: int = Field(default=3600, ge=10)

    # Flood stage thresholds (feet) keyed by station id
    flood_stages: Dict[str, Dict[str, float]] = Field(
        default_factory=dict,
        description='JSON, e.g. {"01646500": {"action": 8, "minor": 10}}'
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    # Testing
    run_integration_tests: bool = Field(
        default=False,
        description="Enable integration tests (requires network)"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard levels."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v_upper

    @field_validator("flood_stages")
    @classmethod
    def validate_flood_stages(
        cls, v: Dict[str, Dict[str, float]]
    ) -> Dict[str, Dict[str, float]]:
        """Only the four NWS flood categories are accepted per station."""
        for station_id, stages in v.items():
            unknown = set(stages) - set(FLOOD_STAGE_NAMES)
            if unknown:
                raise ValueError(
                    f"flood_stages[{station_id}] has unknown stages {sorted(unknown)}; "
                    f"expected a subset of {FLOOD_STAGE_NAMES}"
                )
        return v


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get or create the global settings instance.

    This pattern allows:
    - Easy testing (can reset settings between tests)
    - Lazy loading (only loads when first accessed)
    - Singleton pattern (same instance used everywhere)
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """
    Reset the global settings instance.

    Useful for testing to ensure clean state between tests.
    """
    global _settings
    _settings = None
