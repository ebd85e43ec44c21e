"""
Shared enums and pydantic schemas for Volume Sentinel.

Window and classification enums live here so that configuration, the
baseline tracker and the spike detector can all reference them without
importing each other. External sample records (replay files, upstream
pipelines) are validated through `VolumeSampleRecord` before they reach
the tracker.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .validation import EntityIdValidator, NumericValidator, ValidationError


class RollingWindow(str, Enum):
    """Sliding windows the baseline tracker can compute statistics over."""
    ONE_MINUTE = "1m"
    FIVE_MINUTES = "5m"
    FIFTEEN_MINUTES = "15m"
    ONE_HOUR = "1h"
    FOUR_HOURS = "4h"
    TWENTY_FOUR_HOURS = "24h"

    @property
    def duration(self) -> timedelta:
        return WINDOW_DURATIONS[self]

    @property
    def minutes(self) -> float:
        return self.duration.total_seconds() / 60


WINDOW_DURATIONS: dict[RollingWindow, timedelta] = {
    RollingWindow.ONE_MINUTE: timedelta(minutes=1),
    RollingWindow.FIVE_MINUTES: timedelta(minutes=5),
    RollingWindow.FIFTEEN_MINUTES: timedelta(minutes=15),
    RollingWindow.ONE_HOUR: timedelta(hours=1),
    RollingWindow.FOUR_HOURS: timedelta(hours=4),
    RollingWindow.TWENTY_FOUR_HOURS: timedelta(hours=24),
}

ALL_ROLLING_WINDOWS: list[RollingWindow] = list(RollingWindow)


class SpikeSeverity(str, Enum):
    """Ordinal severity tiers, lowest first."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)


_SEVERITY_ORDER = [
    SpikeSeverity.LOW,
    SpikeSeverity.MEDIUM,
    SpikeSeverity.HIGH,
    SpikeSeverity.CRITICAL,
]


class SpikeType(str, Enum):
    """Temporal shape of a spike episode."""
    MOMENTARY = "MOMENTARY"   # first, isolated qualifying point
    SUDDEN = "SUDDEN"         # second point arriving within one sampling interval
    GRADUAL = "GRADUAL"       # building episode, not yet sustained
    SUSTAINED = "SUSTAINED"   # enough points over enough time


class SpikeDirection(str, Enum):
    """Direction of the deviation from baseline."""
    UP = "UP"
    DOWN = "DOWN"


class VolumeSampleRecord(BaseModel):
    """Schema for one externally supplied volume observation."""

    model_config = ConfigDict(extra="ignore")

    entity_id: str = Field(..., description="Market or wallet identifier")
    volume: float = Field(..., description="Observed volume for the interval")
    timestamp: Optional[datetime] = Field(None, description="Observation time (UTC if naive)")
    trade_count: Optional[int] = Field(None, description="Trades aggregated into this sample")

    @field_validator("entity_id")
    @classmethod
    def validate_entity_id(cls, v):
        return EntityIdValidator.validate(v)

    @field_validator("volume", mode="before")
    @classmethod
    def validate_volume(cls, v):
        return NumericValidator.validate_volume(v)

    @field_validator("trade_count")
    @classmethod
    def validate_trade_count(cls, v):
        if v is not None and v < 0:
            raise ValidationError(f"Trade count cannot be negative: {v}")
        return v

    @field_validator("timestamp")
    @classmethod
    def ensure_timezone(cls, v):
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v
