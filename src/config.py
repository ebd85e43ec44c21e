"""
Configuration management for Volume Sentinel.

Uses Pydantic Settings to load configuration from environment variables and .env files.
This approach gives us:
1. Type validation (catches config errors at startup, not at detection time)
2. Default values with easy overrides
3. Automatic .env file loading
4. IDE autocomplete for all settings
"""

from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .config_validator import ensure_valid_baseline_settings, ensure_valid_spike_settings
from .schemas import ALL_ROLLING_WINDOWS, RollingWindow

# Load environment variables from .env file
load_dotenv()


class BaselineSettings(BaseSettings):
    """
    Rolling baseline tracker configuration.

    The sample interval is the cadence at which upstream is expected to
    deliver samples. It only feeds the data-density reliability gate and
    the "sudden" spike classification; it never resamples data.
    """

    windows: list[RollingWindow] = Field(
        default_factory=lambda: list(ALL_ROLLING_WINDOWS),
        description="Windows reported by get_rolling_averages and get_summary"
    )
    sample_interval_seconds: float = Field(
        default=60.0,
        description="Expected seconds between samples for one entity"
    )

    # Reliability gate
    min_sample_count: int = Field(
        default=3,
        description="Baseline is unreliable with fewer samples than this in the window"
    )
    min_data_density: float = Field(
        default=0.5,
        description="Baseline is unreliable below this observed/expected sample ratio"
    )

    # Retention caps
    max_samples_per_entity: int = Field(
        default=10000,
        description="Oldest samples are evicted beyond this count"
    )
    max_sample_age_hours: Optional[float] = Field(
        default=24.0,
        description="Samples older than this (relative to the newest) are evicted; None disables"
    )
    max_tracked_entities: int = Field(
        default=10000,
        description="Least recently updated entities are evicted beyond this count"
    )
    baseline_cache_size: int = Field(
        default=32,
        description="Cached baseline results kept per entity between samples"
    )

    # Threshold breach notifications
    breach_z_score_threshold: float = Field(
        default=2.0,
        description="Publish a breach when a new sample deviates by this many std devs"
    )

    model_config = SettingsConfigDict(
        env_prefix="BASELINE_"
    )

    @model_validator(mode="after")
    def check_consistency(self):
        ensure_valid_baseline_settings(self)
        return self


class SpikeDetectionSettings(BaseSettings):
    """
    Thresholds and state machine parameters for spike detection.

    Every severity family uses four strictly ascending tiers. When several
    methods are enabled the most severe classification wins.
    """

    # Z-score tiers
    low_z_score_threshold: float = 2.0
    medium_z_score_threshold: float = 2.5
    high_z_score_threshold: float = 3.0
    critical_z_score_threshold: float = 4.0

    # Percentage-of-baseline tiers (multiples of the baseline mean)
    low_percentage_threshold: float = 1.5
    medium_percentage_threshold: float = 2.0
    high_percentage_threshold: float = 3.0
    critical_percentage_threshold: float = 5.0

    # Detection methods
    use_z_score_detection: bool = True
    use_percentage_detection: bool = True
    absolute_volume_threshold: Optional[float] = Field(
        default=None,
        description="Volume at or above this is CRITICAL regardless of baseline; None disables"
    )
    detect_drops: bool = Field(
        default=False,
        description="Also classify abnormal drops below baseline (direction DOWN)"
    )

    primary_window: RollingWindow = Field(
        default=RollingWindow.FIVE_MINUTES,
        description="Window used when detect_spike is called without one"
    )

    # Sustained spike state machine
    min_consecutive_points: int = Field(
        default=3,
        description="Points needed before an episode can be SUSTAINED"
    )
    max_gap_minutes: float = Field(
        default=2.0,
        description="A longer silence between qualifying points restarts the episode"
    )
    min_duration_minutes: float = Field(
        default=5.0,
        description="Episode duration needed before it can be SUSTAINED"
    )

    # Alert storm suppression
    cooldown_ms: int = Field(
        default=60_000,
        description="Minimum milliseconds between two emitted events for one entity"
    )

    # History bounds
    max_recent_spikes: int = 100
    max_entity_history: int = 20
    frequency_window_minutes: float = Field(
        default=60.0,
        description="Lookback used for spike frequency and summary counts"
    )
    max_tracked_entities: int = Field(
        default=10000,
        description="Least recently checked entities lose their spike state beyond this count"
    )

    model_config = SettingsConfigDict(
        env_prefix="SPIKE_"
    )

    @model_validator(mode="after")
    def check_consistency(self):
        ensure_valid_spike_settings(self)
        return self


class Settings(BaseSettings):
    """
    Main application settings.

    Loads from environment variables and .env file.
    Environment variables take precedence over .env file.

    Usage:
        from src.config import get_settings
        settings = get_settings()
        print(settings.spike.cooldown_ms)
    """

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR"
    )
    log_json_format: bool = Field(
        default=False,
        description="Output logs as JSON (useful for log aggregation)"
    )

    # Notifications
    notification_channel_size: int = Field(
        default=1000,
        description="Capacity of the in-memory notification channel"
    )

    # Sharded engine
    shard_count: int = Field(
        default=4,
        description="Number of shards (one worker each) for the sharded engine"
    )
    shard_queue_size: int = Field(
        default=10000,
        description="Bounded queue size per shard; producers wait when full"
    )

    # Nested settings
    baseline: BaselineSettings = Field(default_factory=BaselineSettings)
    spike: SpikeDetectionSettings = Field(default_factory=SpikeDetectionSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",  # Allows SPIKE__COOLDOWN_MS=30000
        extra="ignore"  # Ignore unknown env vars
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Using lru_cache ensures we only load settings once,
    and the same instance is reused throughout the app.

    To reload settings (e.g., in tests), call:
        get_settings.cache_clear()
    """
    return Settings()
