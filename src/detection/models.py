"""
Spike detection results and per-entity spike state.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from ..baseline.models import BaselineStats
from ..schemas import RollingWindow, SpikeDirection, SpikeSeverity, SpikeType


@dataclass(frozen=True)
class SpikeContext:
    """How this spike relates to the entity's recent spike history."""
    is_recurring: bool
    previous_spike_time: Optional[datetime]
    spikes_last_hour: int
    data_reliability: float  # data density of the baseline window


@dataclass(frozen=True)
class SpikeEvent:
    """
    An emitted spike. Append-only; never modified after creation.

    `z_score` and `percentage_of_baseline` are None when the spike was
    raised by the absolute volume floor against an unreliable baseline.
    """
    event_id: str
    entity_id: str
    timestamp: datetime
    current_volume: float
    baseline_average: float
    baseline_std_dev: float
    z_score: Optional[float]
    percentage_of_baseline: Optional[float]
    severity: SpikeSeverity
    direction: SpikeDirection
    spike_type: SpikeType
    window: RollingWindow
    start_time: datetime
    duration_minutes: float
    consecutive_points: int
    peak_volume: float
    context: SpikeContext

    def __str__(self) -> str:
        z = "n/a" if self.z_score is None else f"{self.z_score:.2f}"
        return (
            f"{self.severity.value} {self.spike_type.value} spike on {self.entity_id[:16]} | "
            f"volume {self.current_volume:,.2f} vs {self.baseline_average:,.2f} (z={z})"
        )


@dataclass
class SpikeResult:
    """
    Outcome of one `detect_spike` call.

    `is_spike` reflects the classification; `spike_event` is only set when
    the spike was actually emitted (not suppressed by the cooldown).
    """
    entity_id: str
    is_spike: bool
    window: RollingWindow
    checked_at: datetime
    baseline: BaselineStats
    current_volume: float = 0.0
    spike_event: Optional[SpikeEvent] = None
    severity: Optional[SpikeSeverity] = None
    direction: Optional[SpikeDirection] = None
    spike_type: Optional[SpikeType] = None
    z_score: Optional[float] = None
    percentage_of_baseline: Optional[float] = None
    suppressed_by_cooldown: bool = False
    consecutive_points: int = 0

    @property
    def emitted(self) -> bool:
        return self.spike_event is not None


@dataclass(frozen=True)
class SpikeEpisode:
    """A finished run of consecutive spike readings."""
    entity_id: str
    start_time: datetime
    end_time: datetime
    points: int
    peak_volume: float
    max_severity: Optional[SpikeSeverity]
    reached_sustained: bool

    @property
    def duration_minutes(self) -> float:
        return (self.end_time - self.start_time).total_seconds() / 60


@dataclass
class SpikeState:
    """
    Mutable temporal state for one entity, owned by the detector.

    Invariants: `consecutive_points == 0` whenever `in_spike` is False, and
    `spike_start_time <= last_point_time` whenever both are set.
    """
    in_spike: bool = False
    consecutive_points: int = 0
    peak_volume: float = 0.0
    spike_start_time: Optional[datetime] = None
    last_point_time: Optional[datetime] = None
    max_severity: Optional[SpikeSeverity] = None
    last_emitted_at: Optional[datetime] = None
    sustained_notified: bool = False
    emission_times: deque = field(default_factory=deque)
    last_episode: Optional[SpikeEpisode] = None

    @property
    def duration_minutes(self) -> float:
        if self.spike_start_time is None or self.last_point_time is None:
            return 0.0
        return (self.last_point_time - self.spike_start_time).total_seconds() / 60

    def start_episode(self, volume: float, timestamp: datetime) -> None:
        self.in_spike = True
        self.consecutive_points = 1
        self.peak_volume = volume
        self.spike_start_time = timestamp
        self.last_point_time = timestamp
        self.max_severity = None
        self.sustained_notified = False

    def reset_episode(self) -> None:
        self.in_spike = False
        self.consecutive_points = 0
        self.peak_volume = 0.0
        self.spike_start_time = None
        self.last_point_time = None
        self.max_severity = None
        self.sustained_notified = False


@dataclass
class BatchSpikeResult:
    """Results of `batch_detect_spikes`."""
    results: dict[str, SpikeResult] = field(default_factory=dict)
    spike_entity_ids: list[str] = field(default_factory=list)
    processing_time_ms: float = 0.0

    @property
    def spike_count(self) -> int:
        return len(self.spike_entity_ids)


@dataclass
class SpikeSummary:
    """Detector-wide view over the frequency window."""
    total_entities: int
    entities_in_spike: int
    total_spikes: int
    by_severity: dict[SpikeSeverity, int]
    by_type: dict[SpikeType, int]
    recent_spikes: list[SpikeEvent]
    most_frequent_entities: list[tuple[str, int]]
    sustained_spikes: list[SpikeEvent] = field(default_factory=list)
