"""
Data model for the rolling baseline tracker.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from ..schemas import RollingWindow


@dataclass(frozen=True)
class VolumeSample:
    """One recorded volume observation. Never mutated once stored."""
    entity_id: str
    volume: float
    timestamp: datetime
    trade_count: Optional[int] = None


@dataclass(frozen=True)
class BaselineStats:
    """
    Rolling statistics for one entity over one window.

    `average_volume` is the mean volume per sampling interval (the mean of
    the samples in the window), so it is directly comparable with a single
    new reading and shares units with `standard_deviation`.

    Attributes:
        window: Window these statistics cover
        average_volume: Mean sample volume
        standard_deviation: Population standard deviation of sample volumes
        sample_count: Samples inside the window
        data_density: Observed / expected samples, capped at 1.0
        is_reliable: Enough samples and enough density to score against
    """
    window: RollingWindow
    average_volume: float
    standard_deviation: float
    sample_count: int
    data_density: float
    is_reliable: bool
    window_start: datetime
    window_end: datetime
    total_volume: float = 0.0
    min_volume: float = 0.0
    max_volume: float = 0.0
    average_trade_count: Optional[float] = None
    coefficient_of_variation: float = 0.0
    volume_velocity: float = 0.0  # change in volume per minute across the window

    @property
    def has_data(self) -> bool:
        return self.sample_count > 0


@dataclass(frozen=True)
class DataHealth:
    """Overall health of an entity's sample buffer."""
    oldest_sample: Optional[datetime]
    newest_sample: Optional[datetime]
    total_samples: int
    max_data_age_minutes: float


@dataclass
class EntityRollingAverages:
    """Statistics for every requested window of one entity."""
    entity_id: str
    calculated_at: datetime
    window_results: dict[RollingWindow, BaselineStats]
    data_health: DataHealth

    @property
    def reliable_windows(self) -> list[RollingWindow]:
        return [w for w, stats in self.window_results.items() if stats.is_reliable]


@dataclass(frozen=True)
class ThresholdBreach:
    """A single new sample that landed far outside a reliable window baseline."""
    entity_id: str
    window: RollingWindow
    current_volume: float
    threshold: float
    is_high: bool
    z_score: float
    timestamp: datetime


@dataclass
class BatchRollingAveragesResult:
    """Rolling averages for several entities."""
    results: dict[str, EntityRollingAverages] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    processing_time_ms: float = 0.0


@dataclass
class AbnormalVolumeEntity:
    """An entity whose window average stands out from its peers."""
    entity_id: str
    window: RollingWindow
    z_score: float
    is_high: bool


@dataclass
class RollingAveragesSummary:
    """Cross-entity view of the tracker."""
    total_entities: int
    reliable_entities: int
    average_volume_by_window: dict[RollingWindow, float] = field(default_factory=dict)
    top_entities_by_window: dict[RollingWindow, list[tuple[str, float]]] = field(default_factory=dict)
    abnormal_volume_entities: list[AbnormalVolumeEntity] = field(default_factory=list)
