"""
Rolling baseline tracker.

Keeps a bounded, timestamp-ordered buffer of volume samples per entity and
answers "what does normal look like over the last N minutes" for any of the
configured windows. Everything is derived from the sample timestamps; the
wall clock is only consulted when a caller omits a timestamp.

Usage:
    tracker = RollingBaselineTracker()
    tracker.add_sample("market-1", 120.0, timestamp=ts)
    stats = tracker.get_baseline("market-1", RollingWindow.ONE_HOUR, as_of=ts)
    if stats.is_reliable:
        ...
"""

import bisect
import math
import time
from collections import OrderedDict, deque
from datetime import datetime, timedelta, timezone
from itertools import islice
from typing import Any, Iterable, Optional, Union

import numpy as np

from ..alerts.notifications import NotificationSink, NotificationType, SpikeNotification
from ..config import BaselineSettings, get_settings
from ..config_validator import expected_samples
from ..exceptions import BaselineInvariantError
from ..schemas import RollingWindow
from ..secure_logging import get_secure_logger
from ..validation import (
    NumericValidator,
    ValidationError,
    normalize_timestamp,
    validate_entity_id,
    validate_volume,
)
from .models import (
    AbnormalVolumeEntity,
    BaselineStats,
    BatchRollingAveragesResult,
    DataHealth,
    EntityRollingAverages,
    RollingAveragesSummary,
    ThresholdBreach,
    VolumeSample,
)

logger = get_secure_logger(__name__)

# Entities listed per window in get_summary
TOP_ENTITIES_LIMIT = 10
# Window reported on the empty result for an unrecognized window name
UNKNOWN_WINDOW_FALLBACK = RollingWindow.FIVE_MINUTES


def _sample_time(sample: VolumeSample) -> datetime:
    return sample.timestamp


class _EntityBuffer:
    """Samples and cached statistics for one entity."""

    __slots__ = ("samples", "cache")

    def __init__(self):
        self.samples: deque = deque()
        self.cache: OrderedDict = OrderedDict()

    def insert(self, sample: VolumeSample) -> None:
        if not self.samples or sample.timestamp >= self.samples[-1].timestamp:
            self.samples.append(sample)
            return
        # Late sample: keep the buffer sorted, equal timestamps stay in arrival order
        index = bisect.bisect_right(self.samples, sample.timestamp, key=_sample_time)
        self.samples.insert(index, sample)

    def in_range(self, start: datetime, end: datetime) -> list[VolumeSample]:
        lo = bisect.bisect_left(self.samples, start, key=_sample_time)
        hi = bisect.bisect_right(self.samples, end, key=_sample_time)
        return list(islice(self.samples, lo, hi))


class RollingBaselineTracker:
    """
    Per-entity sliding-window volume statistics.

    The tracker owns every sample buffer and the baseline cache. Other
    components (the spike detector) only read from it.

    Args:
        settings: Baseline settings; loaded from the environment when None
        sink: Optional sink for THRESHOLD_BREACH notifications
    """

    def __init__(self, settings: Optional[BaselineSettings] = None,
                 sink: Optional[NotificationSink] = None):
        self.settings = settings or get_settings().baseline
        self.sink = sink
        self._entities: OrderedDict[str, _EntityBuffer] = OrderedDict()
        self._samples_accepted = 0
        self._samples_rejected = 0
        self._entities_evicted = 0

    @property
    def sample_interval(self) -> timedelta:
        return timedelta(seconds=self.settings.sample_interval_seconds)

    @property
    def windows(self) -> list[RollingWindow]:
        return list(self.settings.windows)

    # =========================================================================
    # Ingestion
    # =========================================================================

    def add_sample(self, entity_id: Any, volume: Any, timestamp: Any = None,
                   trade_count: Any = None) -> bool:
        """
        Record one volume observation.

        Malformed input is dropped rather than raised: the method returns
        False and logs at debug level.

        Returns:
            True when the sample was stored
        """
        try:
            entity_id = validate_entity_id(entity_id)
            volume = validate_volume(volume)
            trade_count = NumericValidator.validate_trade_count(trade_count)
            observed_at = normalize_timestamp(timestamp)
        except ValidationError as e:
            self._samples_rejected += 1
            logger.debug("sample_rejected", entity_id=str(entity_id)[:64], reason=str(e))
            return False

        sample = VolumeSample(entity_id=entity_id, volume=volume,
                              timestamp=observed_at, trade_count=trade_count)

        breaches = self._find_breaches(sample) if self.sink is not None else []

        buffer = self._touch(entity_id)
        buffer.insert(sample)
        buffer.cache.clear()
        self._trim(buffer)
        self._samples_accepted += 1

        for breach in breaches:
            logger.info("volume_threshold_breach",
                        entity_id=entity_id,
                        window=breach.window.value,
                        volume=volume,
                        z_score=round(breach.z_score, 3))
            self.sink.publish(SpikeNotification(
                notification_type=NotificationType.THRESHOLD_BREACH,
                entity_id=entity_id,
                timestamp=observed_at,
                breach=breach,
            ))

        return True

    def add_samples(self, entity_id: Any, entries: Iterable[Any]) -> int:
        """
        Record several observations for one entity.

        Each entry is a mapping with `volume` and optional `timestamp` and
        `trade_count` keys, or a `(volume, timestamp)` pair.

        Returns:
            Number of samples stored
        """
        stored = 0
        for entry in entries:
            if isinstance(entry, dict):
                accepted = self.add_sample(entity_id, entry.get("volume"),
                                           entry.get("timestamp"), entry.get("trade_count"))
            else:
                try:
                    volume, timestamp = entry
                except (TypeError, ValueError):
                    self._samples_rejected += 1
                    logger.debug("sample_rejected", entity_id=str(entity_id)[:64],
                                 reason="entry is neither a mapping nor a (volume, timestamp) pair")
                    continue
                accepted = self.add_sample(entity_id, volume, timestamp)
            stored += int(accepted)
        return stored

    def _touch(self, entity_id: str) -> _EntityBuffer:
        buffer = self._entities.get(entity_id)
        if buffer is not None:
            self._entities.move_to_end(entity_id)
            return buffer

        buffer = _EntityBuffer()
        self._entities[entity_id] = buffer
        while len(self._entities) > self.settings.max_tracked_entities:
            evicted, _ = self._entities.popitem(last=False)
            self._entities_evicted += 1
            logger.debug("entity_evicted", entity_id=evicted)
        return buffer

    def _trim(self, buffer: _EntityBuffer) -> None:
        samples = buffer.samples
        while len(samples) > self.settings.max_samples_per_entity:
            samples.popleft()

        if self.settings.max_sample_age_hours is not None and samples:
            cutoff = samples[-1].timestamp - timedelta(hours=self.settings.max_sample_age_hours)
            while samples and samples[0].timestamp < cutoff:
                samples.popleft()

    def _find_breaches(self, sample: VolumeSample) -> list[ThresholdBreach]:
        """Compare a new sample with every reliable window baseline before it lands."""
        breaches = []
        threshold = self.settings.breach_z_score_threshold
        for window in self.settings.windows:
            stats = self.get_baseline(sample.entity_id, window, as_of=sample.timestamp)
            if not stats.is_reliable or stats.standard_deviation <= 0:
                continue
            z_score = (sample.volume - stats.average_volume) / stats.standard_deviation
            if abs(z_score) < threshold:
                continue
            is_high = z_score > 0
            limit = stats.average_volume + (threshold if is_high else -threshold) * stats.standard_deviation
            breaches.append(ThresholdBreach(
                entity_id=sample.entity_id,
                window=window,
                current_volume=sample.volume,
                threshold=limit,
                is_high=is_high,
                z_score=z_score,
                timestamp=sample.timestamp,
            ))
        return breaches

    # =========================================================================
    # Baseline queries
    # =========================================================================

    def get_baseline(self, entity_id: Any, window: Union[RollingWindow, str],
                     as_of: Any = None) -> BaselineStats:
        """
        Statistics for the samples in `[as_of - window, as_of]`.

        Unknown or malformed entities get an empty, unreliable result. With
        `as_of=None` the window ends at the current time and the result is
        cached until the entity receives a new sample or is cleared.
        """
        try:
            window = RollingWindow(window)
        except ValueError:
            logger.debug("unknown_window", window=str(window)[:16])
            return self._empty_stats(UNKNOWN_WINDOW_FALLBACK, datetime.now(timezone.utc))
        try:
            entity_id = validate_entity_id(entity_id)
            window_end = normalize_timestamp(as_of)
        except ValidationError:
            return self._empty_stats(window, datetime.now(timezone.utc))

        buffer = self._entities.get(entity_id)
        if buffer is None:
            return self._empty_stats(window, window_end)

        cache_key = (window, None if as_of is None else window_end)
        cached = buffer.cache.get(cache_key)
        if cached is not None:
            return cached

        stats = self._compute(entity_id, buffer, window, window_end)
        buffer.cache[cache_key] = stats
        while len(buffer.cache) > self.settings.baseline_cache_size:
            buffer.cache.popitem(last=False)
        return stats

    def _empty_stats(self, window: RollingWindow, window_end: datetime) -> BaselineStats:
        return BaselineStats(
            window=window,
            average_volume=0.0,
            standard_deviation=0.0,
            sample_count=0,
            data_density=0.0,
            is_reliable=False,
            window_start=window_end - window.duration,
            window_end=window_end,
        )

    def _compute(self, entity_id: str, buffer: _EntityBuffer, window: RollingWindow,
                 window_end: datetime) -> BaselineStats:
        window_start = window_end - window.duration
        samples = buffer.in_range(window_start, window_end)
        if not samples:
            return self._empty_stats(window, window_end)

        volumes = np.array([s.volume for s in samples], dtype=float)
        mean = float(np.mean(volumes))
        std = float(np.std(volumes))  # population standard deviation
        count = len(samples)

        expected = expected_samples(window, self.settings.sample_interval_seconds)
        density = min(1.0, count / expected)

        if std < 0 or not math.isfinite(std):
            raise BaselineInvariantError(entity_id, window.value, "standard deviation is not a finite non-negative number", std)
        if not 0.0 <= density <= 1.0:
            raise BaselineInvariantError(entity_id, window.value, "data density outside [0, 1]", density)

        trade_counts = [s.trade_count for s in samples if s.trade_count is not None]
        span_minutes = (samples[-1].timestamp - samples[0].timestamp).total_seconds() / 60
        velocity = (samples[-1].volume - samples[0].volume) / span_minutes if span_minutes > 0 else 0.0

        return BaselineStats(
            window=window,
            average_volume=mean,
            standard_deviation=std,
            sample_count=count,
            data_density=density,
            is_reliable=(count >= self.settings.min_sample_count
                         and density >= self.settings.min_data_density),
            window_start=window_start,
            window_end=window_end,
            total_volume=float(np.sum(volumes)),
            min_volume=float(np.min(volumes)),
            max_volume=float(np.max(volumes)),
            average_trade_count=float(np.mean(trade_counts)) if trade_counts else None,
            coefficient_of_variation=std / mean if mean > 0 else 0.0,
            volume_velocity=velocity,
        )

    def get_rolling_averages(self, entity_id: Any,
                             windows: Optional[Iterable[RollingWindow]] = None,
                             as_of: Any = None) -> Optional[EntityRollingAverages]:
        """Statistics for several windows at once; None for untracked entities."""
        if not isinstance(entity_id, str) or entity_id.strip() not in self._entities:
            return None
        entity_id = entity_id.strip()
        calculated_at = normalize_timestamp(as_of)
        selected = list(windows) if windows is not None else self.settings.windows

        return EntityRollingAverages(
            entity_id=entity_id,
            calculated_at=calculated_at,
            window_results={
                RollingWindow(w): self.get_baseline(entity_id, w, as_of=as_of)
                for w in selected
            },
            data_health=self._data_health(entity_id, calculated_at),
        )

    def _data_health(self, entity_id: str, now: datetime) -> DataHealth:
        samples = self._entities[entity_id].samples
        if not samples:
            return DataHealth(None, None, 0, 0.0)
        oldest, newest = samples[0].timestamp, samples[-1].timestamp
        return DataHealth(
            oldest_sample=oldest,
            newest_sample=newest,
            total_samples=len(samples),
            max_data_age_minutes=max(0.0, (now - oldest).total_seconds() / 60),
        )

    def get_batch_rolling_averages(self, entity_ids: Iterable[Any],
                                   windows: Optional[Iterable[RollingWindow]] = None,
                                   as_of: Any = None) -> BatchRollingAveragesResult:
        start = time.perf_counter()
        result = BatchRollingAveragesResult()
        selected = list(windows) if windows is not None else None

        for entity_id in entity_ids:
            averages = self.get_rolling_averages(entity_id, selected, as_of)
            if averages is None:
                result.errors[str(entity_id)] = "Entity not tracked"
            else:
                result.results[averages.entity_id] = averages

        result.processing_time_ms = (time.perf_counter() - start) * 1000
        return result

    def get_summary(self, as_of: Any = None) -> RollingAveragesSummary:
        """
        Cross-entity view: average volume per window, the busiest reliable
        entities, and entities whose window average is an outlier among
        their peers (|z| >= breach_z_score_threshold).
        """
        if not self._entities:
            return RollingAveragesSummary(total_entities=0, reliable_entities=0)

        all_averages = list(self.get_batch_rolling_averages(list(self._entities), as_of=as_of).results.values())
        summary = RollingAveragesSummary(
            total_entities=len(self._entities),
            reliable_entities=sum(1 for avg in all_averages if avg.reliable_windows),
        )

        for window in self.settings.windows:
            per_entity = [(avg.entity_id, avg.window_results[window]) for avg in all_averages]
            volumes = np.array([stats.average_volume for _, stats in per_entity], dtype=float)
            mean = float(np.mean(volumes)) if len(volumes) else 0.0
            summary.average_volume_by_window[window] = mean

            reliable = sorted(
                ((entity_id, stats.average_volume) for entity_id, stats in per_entity if stats.is_reliable),
                key=lambda item: item[1],
                reverse=True,
            )
            summary.top_entities_by_window[window] = reliable[:TOP_ENTITIES_LIMIT]

            if mean <= 0:
                continue
            std = float(np.std(volumes))
            if std <= 0:
                continue
            for (entity_id, stats), volume in zip(per_entity, volumes):
                z_score = (float(volume) - mean) / std
                if abs(z_score) >= self.settings.breach_z_score_threshold:
                    summary.abnormal_volume_entities.append(AbnormalVolumeEntity(
                        entity_id=entity_id, window=window, z_score=z_score, is_high=z_score > 0,
                    ))

        return summary

    def get_current_average(self, entity_id: Any, window: Union[RollingWindow, str],
                            as_of: Any = None) -> float:
        return self.get_baseline(entity_id, window, as_of).average_volume

    def calculate_z_score(self, entity_id: Any, volume: float,
                          window: Union[RollingWindow, str], as_of: Any = None) -> Optional[float]:
        """Z-score of `volume` against a reliable baseline, None when unreliable."""
        stats = self.get_baseline(entity_id, window, as_of)
        if not stats.is_reliable:
            return None
        if stats.standard_deviation == 0:
            return 0.0
        return (volume - stats.average_volume) / stats.standard_deviation

    def is_volume_above_threshold(self, entity_id: Any, volume: float,
                                  window: Union[RollingWindow, str],
                                  multiplier: float = 2.0, as_of: Any = None) -> bool:
        stats = self.get_baseline(entity_id, window, as_of)
        if not stats.is_reliable:
            return False
        return volume > stats.average_volume + multiplier * stats.standard_deviation

    def is_volume_below_threshold(self, entity_id: Any, volume: float,
                                  window: Union[RollingWindow, str],
                                  multiplier: float = 2.0, as_of: Any = None) -> bool:
        stats = self.get_baseline(entity_id, window, as_of)
        if not stats.is_reliable:
            return False
        return 0 <= volume < stats.average_volume - multiplier * stats.standard_deviation

    # =========================================================================
    # Introspection and maintenance
    # =========================================================================

    def get_tracked_entities(self) -> list[str]:
        return list(self._entities)

    def is_tracking(self, entity_id: str) -> bool:
        return entity_id in self._entities

    def get_sample_count(self, entity_id: str) -> int:
        buffer = self._entities.get(entity_id)
        return len(buffer.samples) if buffer is not None else 0

    def get_trade_count(self, entity_id: str) -> int:
        """Total trades across the entity's retained samples."""
        buffer = self._entities.get(entity_id)
        if buffer is None:
            return 0
        return sum(s.trade_count for s in buffer.samples if s.trade_count is not None)

    def export_entity_data(self, entity_id: str) -> list[dict]:
        """Retained samples as plain dicts, oldest first."""
        buffer = self._entities.get(entity_id)
        if buffer is None:
            return []
        return [
            {
                "volume": s.volume,
                "timestamp": s.timestamp.isoformat(),
                "trade_count": s.trade_count,
            }
            for s in buffer.samples
        ]

    def import_entity_data(self, entity_id: str, entries: Iterable[dict]) -> int:
        """Replace an entity's samples with previously exported data."""
        self.clear_entity(entity_id)
        parsed = []
        for entry in entries:
            timestamp = entry.get("timestamp")
            if isinstance(timestamp, str):
                try:
                    timestamp = datetime.fromisoformat(timestamp)
                except ValueError:
                    logger.debug("import_entry_rejected", entity_id=entity_id, timestamp=timestamp)
                    continue
            parsed.append({**entry, "timestamp": timestamp})

        parsed.sort(key=lambda e: normalize_timestamp(e["timestamp"]).timestamp()
                    if e["timestamp"] is not None else math.inf)
        stored = self.add_samples(entity_id, parsed)
        logger.info("entity_data_imported", entity_id=entity_id, samples=stored)
        return stored

    def get_stats(self) -> dict[str, Any]:
        return {
            "tracked_entities": len(self._entities),
            "total_samples": sum(len(b.samples) for b in self._entities.values()),
            "samples_accepted": self._samples_accepted,
            "samples_rejected": self._samples_rejected,
            "entities_evicted": self._entities_evicted,
            "windows": [w.value for w in self.settings.windows],
            "sample_interval_seconds": self.settings.sample_interval_seconds,
            "min_sample_count": self.settings.min_sample_count,
            "min_data_density": self.settings.min_data_density,
            "max_samples_per_entity": self.settings.max_samples_per_entity,
            "breach_z_score_threshold": self.settings.breach_z_score_threshold,
            "breach_notifications": self.sink is not None,
        }

    def clear_entity(self, entity_id: str) -> bool:
        removed = self._entities.pop(entity_id, None) is not None
        if removed:
            logger.debug("entity_cleared", entity_id=entity_id)
        return removed

    def clear_all(self) -> None:
        count = len(self._entities)
        self._entities.clear()
        logger.info("tracker_cleared", entities=count)
