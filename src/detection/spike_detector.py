"""
Volume spike detection.

Scores each reading against the entity's rolling baseline, classifies how
severe and what shape the spike is, and emits at most one event per entity
per cooldown window.

Detection Philosophy:
- A thin baseline proves nothing, so unreliable baselines are never scored
  (only the absolute volume floor, which needs no baseline, still applies)
- Z-score catches deviations on stable entities, the percentage test
  catches them on noisy ones; the most severe verdict wins
- One reading is a blip, several in a row is a story: the per-entity state
  machine separates MOMENTARY, SUDDEN, GRADUAL and SUSTAINED spikes
- Cooldown throttles emissions, never state: suppressed readings still move
  the episode forward
"""

import math
import time
import uuid
from collections import OrderedDict, deque
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional, Union

from ..alerts.notifications import NotificationSink, NotificationType, SpikeNotification
from ..baseline.models import BaselineStats
from ..baseline.tracker import RollingBaselineTracker
from ..config import SpikeDetectionSettings, get_settings
from ..config_validator import PERCENTAGE_TIERS, Z_SCORE_TIERS, ensure_valid_spike_settings
from ..exceptions import SpikeStateError, UnknownConfigKeyError
from ..schemas import RollingWindow, SpikeDirection, SpikeSeverity, SpikeType
from ..secure_logging import get_secure_logger
from ..validation import normalize_timestamp, validate_entity_id, validate_volume
from .classification import (
    classify_spike_type,
    higher_severity,
    severity_from_percentage,
    severity_from_z_score,
)
from .models import (
    BatchSpikeResult,
    SpikeContext,
    SpikeEpisode,
    SpikeEvent,
    SpikeResult,
    SpikeState,
    SpikeSummary,
)

logger = get_secure_logger(__name__)

# Entities listed in SpikeSummary.most_frequent_entities
MOST_FREQUENT_LIMIT = 10
# Events listed in SpikeSummary.recent_spikes
SUMMARY_RECENT_LIMIT = 20


def _new_event_id() -> str:
    return f"spike_{uuid.uuid4().hex[:16]}"


class SpikeDetector:
    """
    Per-entity volume spike detector.

    Holds a read-only reference to the baseline tracker; the tracker is
    never modified here. Feeding samples into the tracker is the caller's
    job (see `VolumeSurveillanceEngine`).

    Usage:
        detector = SpikeDetector(tracker, sink=channel)
        result = detector.detect_spike("market-1", 950.0, timestamp=ts)
        if result.spike_event:
            print(result.spike_event)
    """

    def __init__(self, tracker: RollingBaselineTracker,
                 settings: Optional[SpikeDetectionSettings] = None,
                 sink: Optional[NotificationSink] = None):
        self.settings = settings or get_settings().spike
        ensure_valid_spike_settings(self.settings)
        self.tracker = tracker
        self.sink = sink

        self._states: OrderedDict[str, SpikeState] = OrderedDict()
        self._entity_spikes: dict[str, deque] = {}
        self._episodes: dict[str, deque] = {}
        self._recent_spikes: deque = deque(maxlen=self.settings.max_recent_spikes)
        self._latest_timestamp: Optional[datetime] = None

        self._checks = 0
        self._spikes_emitted = 0
        self._spikes_suppressed = 0
        self._invalid_readings = 0

    # =========================================================================
    # Detection
    # =========================================================================

    def detect_spike(self, entity_id: Any, current_volume: Any, timestamp: Any = None,
                     window: Optional[Union[RollingWindow, str]] = None,
                     bypass_cooldown: bool = False) -> SpikeResult:
        """
        Check one reading against the entity's baseline.

        Args:
            entity_id: Market or wallet identifier
            current_volume: Volume observed for the latest interval
            timestamp: Observation time; the current time when None
            window: Baseline window; the configured primary window when None
            bypass_cooldown: Emit even if the entity is cooling down

        Returns:
            SpikeResult; `spike_event` is set only when an event was emitted
        """
        self._checks += 1

        try:
            window = RollingWindow(window) if window is not None else self.settings.primary_window
            entity_id = validate_entity_id(entity_id)
            volume = validate_volume(current_volume)
            checked_at = normalize_timestamp(timestamp)
        except ValueError as e:
            return self._rejected(entity_id, e)

        if self._latest_timestamp is None or checked_at > self._latest_timestamp:
            self._latest_timestamp = checked_at

        baseline = self.tracker.get_baseline(entity_id, window, as_of=checked_at)
        result = self._score(entity_id, volume, baseline, window, checked_at)

        # Nothing was scored, so the episode neither continues nor ends
        if not result.is_spike and not baseline.is_reliable:
            return result

        state = self._touch_state(entity_id)
        if not result.is_spike:
            if state.in_spike:
                self._finish_episode(entity_id, state, checked_at)
            return result

        previous_point_time = self._advance_episode(entity_id, state, volume,
                                                    result.severity, checked_at)
        spike_type = classify_spike_type(state, checked_at, previous_point_time,
                                         self.tracker.sample_interval, self.settings)
        result.spike_type = spike_type
        result.consecutive_points = state.consecutive_points

        if not bypass_cooldown and self._cooling_down(state, checked_at):
            self._spikes_suppressed += 1
            result.suppressed_by_cooldown = True
            logger.debug("spike_suppressed_by_cooldown",
                         entity_id=entity_id,
                         severity=result.severity.value,
                         last_emitted_at=state.last_emitted_at.isoformat())
            return result

        result.spike_event = self._emit(entity_id, state, result, baseline)
        return result

    def _rejected(self, entity_id: Any, error: Exception) -> SpikeResult:
        """Conservative non-spike for a reading that could not be parsed."""
        self._invalid_readings += 1
        logger.debug("reading_rejected", entity_id=str(entity_id)[:64], reason=str(error))
        window = self.settings.primary_window
        now = datetime.now(timezone.utc)
        return SpikeResult(
            entity_id=str(entity_id),
            is_spike=False,
            window=window,
            checked_at=now,
            baseline=self.tracker.get_baseline(None, window, as_of=now),
        )

    def _score(self, entity_id: str, volume: float, baseline: BaselineStats,
               window: RollingWindow, checked_at: datetime) -> SpikeResult:
        """Steps that only depend on the reading and the baseline."""
        result = SpikeResult(
            entity_id=entity_id,
            is_spike=False,
            window=window,
            checked_at=checked_at,
            baseline=baseline,
            current_volume=volume,
        )

        severity = None
        if baseline.is_reliable:
            mean = baseline.average_volume
            std = baseline.standard_deviation
            result.z_score = (volume - mean) / std if std > 0 else 0.0
            if mean > 0:
                result.percentage_of_baseline = volume / mean
            else:
                result.percentage_of_baseline = math.inf if volume > 0 else 1.0
            result.direction = SpikeDirection.UP if volume >= mean else SpikeDirection.DOWN

            if self.settings.use_z_score_detection:
                severity = severity_from_z_score(result.z_score, self.settings)
            if self.settings.use_percentage_detection:
                severity = higher_severity(
                    severity, severity_from_percentage(result.percentage_of_baseline, self.settings)
                )

        floor = self.settings.absolute_volume_threshold
        if floor is not None and volume >= floor:
            severity = SpikeSeverity.CRITICAL
            if result.direction is None:
                result.direction = SpikeDirection.UP

        result.severity = severity
        result.is_spike = severity is not None
        return result

    def _touch_state(self, entity_id: str) -> SpikeState:
        state = self._states.get(entity_id)
        if state is not None:
            self._states.move_to_end(entity_id)
            return state

        state = SpikeState()
        self._states[entity_id] = state
        self._evict_excess_states()
        return state

    def _evict_excess_states(self) -> None:
        while len(self._states) > self.settings.max_tracked_entities:
            evicted, _ = self._states.popitem(last=False)
            self._entity_spikes.pop(evicted, None)
            self._episodes.pop(evicted, None)
            logger.debug("spike_state_evicted", entity_id=evicted)

    def _advance_episode(self, entity_id: str, state: SpikeState, volume: float,
                         severity: SpikeSeverity, timestamp: datetime) -> Optional[datetime]:
        """
        Apply one spike point to the episode.

        Returns:
            Time of the previous point in the same episode, None when this
            point starts a new episode
        """
        max_gap = timedelta(minutes=self.settings.max_gap_minutes)
        previous_point_time = state.last_point_time

        if not state.in_spike:
            state.start_episode(volume, timestamp)
            previous_point_time = None
        elif timestamp - state.last_point_time > max_gap:
            logger.debug("spike_episode_gap_reset",
                         entity_id=entity_id,
                         gap_minutes=round((timestamp - state.last_point_time).total_seconds() / 60, 2))
            self._finish_episode(entity_id, state, state.last_point_time)
            state.start_episode(volume, timestamp)
            previous_point_time = None
        else:
            state.consecutive_points += 1
            state.peak_volume = max(state.peak_volume, volume)
            state.last_point_time = max(state.last_point_time, timestamp)

        state.max_severity = higher_severity(state.max_severity, severity)

        if state.consecutive_points < 1 or state.spike_start_time > state.last_point_time:
            raise SpikeStateError(entity_id, "episode start after its last point")
        return previous_point_time

    def _finish_episode(self, entity_id: str, state: SpikeState, ended_at: datetime) -> None:
        episode = SpikeEpisode(
            entity_id=entity_id,
            start_time=state.spike_start_time,
            end_time=max(ended_at, state.last_point_time),
            points=state.consecutive_points,
            peak_volume=state.peak_volume,
            max_severity=state.max_severity,
            reached_sustained=state.sustained_notified,
        )
        history = self._episodes.setdefault(entity_id, deque(maxlen=self.settings.max_entity_history))
        history.append(episode)
        state.last_episode = episode
        state.reset_episode()

        logger.info("spike_ended",
                    entity_id=entity_id,
                    points=episode.points,
                    duration_minutes=round(episode.duration_minutes, 2),
                    peak_volume=episode.peak_volume)
        self._publish(NotificationType.SPIKE_ENDED, entity_id, ended_at, episode=episode)

    def _cooling_down(self, state: SpikeState, timestamp: datetime) -> bool:
        if state.last_emitted_at is None:
            return False
        cooldown = timedelta(milliseconds=self.settings.cooldown_ms)
        return timestamp - state.last_emitted_at < cooldown

    def _emit(self, entity_id: str, state: SpikeState, result: SpikeResult,
              baseline: BaselineStats) -> SpikeEvent:
        timestamp = result.checked_at
        frequency_window = timedelta(minutes=self.settings.frequency_window_minutes)

        while state.emission_times and timestamp - state.emission_times[0] >= frequency_window:
            state.emission_times.popleft()
        previous_spike_time = state.emission_times[-1] if state.emission_times else None

        event = SpikeEvent(
            event_id=_new_event_id(),
            entity_id=entity_id,
            timestamp=timestamp,
            current_volume=result.current_volume,
            baseline_average=baseline.average_volume,
            baseline_std_dev=baseline.standard_deviation,
            z_score=result.z_score,
            percentage_of_baseline=result.percentage_of_baseline,
            severity=result.severity,
            direction=result.direction,
            spike_type=result.spike_type,
            window=result.window,
            start_time=state.spike_start_time,
            duration_minutes=state.duration_minutes,
            consecutive_points=state.consecutive_points,
            peak_volume=state.peak_volume,
            context=SpikeContext(
                is_recurring=previous_spike_time is not None,
                previous_spike_time=previous_spike_time,
                spikes_last_hour=len(state.emission_times) + 1,
                data_reliability=baseline.data_density,
            ),
        )

        state.last_emitted_at = timestamp
        state.emission_times.append(timestamp)
        self._recent_spikes.append(event)
        self._entity_spikes.setdefault(
            entity_id, deque(maxlen=self.settings.max_entity_history)
        ).append(event)
        self._spikes_emitted += 1

        logger.info("spike_detected",
                    entity_id=entity_id,
                    severity=event.severity.value,
                    spike_type=event.spike_type.value,
                    direction=event.direction.value,
                    volume=event.current_volume,
                    baseline=round(event.baseline_average, 4),
                    z_score=None if event.z_score is None else round(event.z_score, 3),
                    consecutive_points=event.consecutive_points)

        self._publish(NotificationType.SPIKE_DETECTED, entity_id, timestamp, event=event)
        if event.spike_type == SpikeType.SUSTAINED and not state.sustained_notified:
            state.sustained_notified = True
            logger.warning("sustained_spike",
                           entity_id=entity_id,
                           duration_minutes=round(event.duration_minutes, 2),
                           consecutive_points=event.consecutive_points)
            self._publish(NotificationType.SUSTAINED_SPIKE, entity_id, timestamp, event=event)

        return event

    def _publish(self, notification_type: NotificationType, entity_id: str,
                 timestamp: datetime, **payload) -> None:
        if self.sink is None:
            return
        self.sink.publish(SpikeNotification(
            notification_type=notification_type,
            entity_id=entity_id,
            timestamp=timestamp,
            **payload,
        ))

    def batch_detect_spikes(self, entries: Iterable[Any], timestamp: Any = None,
                            window: Optional[Union[RollingWindow, str]] = None,
                            bypass_cooldown: bool = False) -> BatchSpikeResult:
        """
        Run `detect_spike` for several readings.

        Each entry is a mapping with `entity_id`, `volume` and optional
        `timestamp`, or an `(entity_id, volume)` pair. Entries without their
        own timestamp use `timestamp`. Any other entry shape is recorded as a
        rejected reading under its `str()` and the batch carries on.
        """
        start = time.perf_counter()
        batch = BatchSpikeResult()

        for entry in entries:
            if isinstance(entry, dict):
                entity_id = entry.get("entity_id")
                volume = entry.get("volume")
                entry_timestamp = entry.get("timestamp", timestamp)
            else:
                try:
                    entity_id, volume = entry
                except (TypeError, ValueError) as e:
                    self._checks += 1
                    result = self._rejected(entry, e)
                    batch.results[result.entity_id] = result
                    continue
                entry_timestamp = timestamp

            result = self.detect_spike(entity_id, volume, entry_timestamp,
                                       window=window, bypass_cooldown=bypass_cooldown)
            batch.results[result.entity_id] = result
            if result.spike_event is not None:
                batch.spike_entity_ids.append(result.entity_id)

        batch.processing_time_ms = (time.perf_counter() - start) * 1000
        return batch

    # =========================================================================
    # Queries
    # =========================================================================

    @property
    def latest_timestamp(self) -> Optional[datetime]:
        """Newest reading time seen so far."""
        return self._latest_timestamp

    def _reference_time(self, as_of: Any) -> datetime:
        if as_of is not None:
            return normalize_timestamp(as_of)
        return self._latest_timestamp or datetime.now(timezone.utc)

    def get_summary(self, as_of: Any = None) -> SpikeSummary:
        """
        Spike activity over the last `frequency_window_minutes`.

        Counted relative to `as_of`, or to the latest reading seen when None.
        """
        now = self._reference_time(as_of)
        cutoff = now - timedelta(minutes=self.settings.frequency_window_minutes)

        recent = [e for e in reversed(self._recent_spikes) if cutoff < e.timestamp <= now]
        by_severity = {severity: 0 for severity in SpikeSeverity}
        by_type = {spike_type: 0 for spike_type in SpikeType}
        for event in recent:
            by_severity[event.severity] += 1
            by_type[event.spike_type] += 1

        frequency = []
        for entity_id, state in self._states.items():
            count = sum(1 for t in state.emission_times if cutoff < t <= now)
            if count:
                frequency.append((entity_id, count))
        frequency.sort(key=lambda item: item[1], reverse=True)

        return SpikeSummary(
            total_entities=len(self._states),
            entities_in_spike=sum(1 for s in self._states.values() if s.in_spike),
            total_spikes=len(recent),
            by_severity=by_severity,
            by_type=by_type,
            recent_spikes=recent[:SUMMARY_RECENT_LIMIT],
            most_frequent_entities=frequency[:MOST_FREQUENT_LIMIT],
            sustained_spikes=[e for e in recent if e.spike_type == SpikeType.SUSTAINED],
        )

    def get_recent_spikes(self, limit: int = 20) -> list[SpikeEvent]:
        """Most recent emitted events, newest first."""
        if limit <= 0:
            return []
        return list(reversed(self._recent_spikes))[:limit]

    def get_entity_spikes(self, entity_id: str, limit: int = 10) -> list[SpikeEvent]:
        """Most recent emitted events for one entity, newest first."""
        events = self._entity_spikes.get(entity_id)
        if not events or limit <= 0:
            return []
        return list(reversed(events))[:limit]

    def get_episode_history(self, entity_id: str) -> list[SpikeEpisode]:
        """Finished episodes for one entity, oldest first."""
        return list(self._episodes.get(entity_id, ()))

    def is_in_spike_state(self, entity_id: str) -> bool:
        state = self._states.get(entity_id)
        return state.in_spike if state is not None else False

    def get_spike_state(self, entity_id: str, as_of: Any = None) -> Optional[dict[str, Any]]:
        """Snapshot of one entity's spike state, None if never checked."""
        state = self._states.get(entity_id)
        if state is None:
            return None

        now = self._reference_time(as_of)
        frequency_window = timedelta(minutes=self.settings.frequency_window_minutes)
        return {
            "in_spike": state.in_spike,
            "consecutive_points": state.consecutive_points,
            "peak_volume": state.peak_volume,
            "spike_start_time": state.spike_start_time,
            "last_point_time": state.last_point_time,
            "duration_minutes": state.duration_minutes,
            "max_severity": state.max_severity,
            "last_emitted_at": state.last_emitted_at,
            "spikes_last_hour": sum(1 for t in state.emission_times if now - t < frequency_window),
            "last_episode": state.last_episode,
        }

    def get_thresholds(self) -> dict[str, Any]:
        thresholds = {key: getattr(self.settings, key) for key in Z_SCORE_TIERS + PERCENTAGE_TIERS}
        thresholds["absolute_volume_threshold"] = self.settings.absolute_volume_threshold
        return thresholds

    def get_stats(self) -> dict[str, Any]:
        return {
            "tracked_entities": len(self._states),
            "entities_in_spike": sum(1 for s in self._states.values() if s.in_spike),
            "total_recent_spikes": len(self._recent_spikes),
            "checks": self._checks,
            "spikes_emitted": self._spikes_emitted,
            "spikes_suppressed": self._spikes_suppressed,
            "invalid_readings": self._invalid_readings,
            "primary_window": self.settings.primary_window.value,
            "cooldown_ms": self.settings.cooldown_ms,
            "use_z_score_detection": self.settings.use_z_score_detection,
            "use_percentage_detection": self.settings.use_percentage_detection,
            "detect_drops": self.settings.detect_drops,
        }

    # =========================================================================
    # Maintenance
    # =========================================================================

    def update_config(self, **changes: Any) -> SpikeDetectionSettings:
        """
        Replace detection settings at runtime.

        The new settings are validated as a whole before they take effect;
        on failure the current settings stay in place.

        Raises:
            UnknownConfigKeyError: A key is not a spike detection setting
            InvalidConfigError: The resulting settings are inconsistent
        """
        for key in changes:
            if key not in SpikeDetectionSettings.model_fields:
                raise UnknownConfigKeyError(key, "spike")

        merged = {**self.settings.model_dump(), **changes}
        new_settings = SpikeDetectionSettings(**merged)

        if new_settings.max_recent_spikes != self.settings.max_recent_spikes:
            self._recent_spikes = deque(self._recent_spikes, maxlen=new_settings.max_recent_spikes)
        if new_settings.max_entity_history != self.settings.max_entity_history:
            size = new_settings.max_entity_history
            self._entity_spikes = {k: deque(v, maxlen=size) for k, v in self._entity_spikes.items()}
            self._episodes = {k: deque(v, maxlen=size) for k, v in self._episodes.items()}

        self.settings = new_settings
        self._evict_excess_states()
        logger.info("detector_config_updated", changes=sorted(changes))
        return new_settings

    def clear_entity(self, entity_id: str) -> bool:
        """Forget spike state, events and episodes for one entity."""
        removed = self._states.pop(entity_id, None) is not None
        self._entity_spikes.pop(entity_id, None)
        self._episodes.pop(entity_id, None)
        self._recent_spikes = deque(
            (e for e in self._recent_spikes if e.entity_id != entity_id),
            maxlen=self.settings.max_recent_spikes,
        )
        return removed

    def clear_all(self) -> None:
        self._states.clear()
        self._entity_spikes.clear()
        self._episodes.clear()
        self._recent_spikes.clear()
        self._latest_timestamp = None
        logger.info("detector_cleared")
