"""
Tests for the volume spike detector.

Covers:
1. Scoring: z-score, percentage of baseline, severity tiers, direction
2. Monotonic severity and the reliability gate
3. The per-entity state machine (MOMENTARY / SUDDEN / GRADUAL / SUSTAINED)
4. Episode end, gap reset and the cooldown gate
5. Summaries, histories and configuration updates

Run with: pytest test_spike_detector.py
"""

import math
from datetime import datetime, timedelta, timezone

import pytest

from src.alerts.notifications import BoundedNotificationChannel, NotificationType
from src.baseline import RollingBaselineTracker
from src.config import BaselineSettings, SpikeDetectionSettings
from src.detection import SpikeDetector
from src.exceptions import InvalidConfigError, UnknownConfigKeyError
from src.schemas import RollingWindow, SpikeDirection, SpikeSeverity, SpikeType

BASE = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

# With 120 alternating samples (minutes 0..119), any one hour window ending
# strictly inside minute 119..120 holds minutes 60..119: mean 100, std 10.
T0 = BASE + timedelta(minutes=119, seconds=1)


def make_tracker() -> RollingBaselineTracker:
    return RollingBaselineTracker(BaselineSettings(
        sample_interval_seconds=60.0,
        min_sample_count=3,
        min_data_density=0.5,
        max_sample_age_hours=None,
    ))


def add_alternating(tracker, entity_id="market-1", count=120):
    for i in range(count):
        tracker.add_sample(entity_id, 90.0 if i % 2 == 0 else 110.0, BASE + timedelta(minutes=i))


def make_detector(tracker=None, sink=None, **overrides):
    values = {"primary_window": RollingWindow.ONE_HOUR}
    values.update(overrides)
    if tracker is None:
        tracker = make_tracker()
        add_alternating(tracker)
    return SpikeDetector(tracker, SpikeDetectionSettings(**values), sink=sink)


def rank(severity):
    return -1 if severity is None else severity.rank


def detected(channel, notification_type=NotificationType.SPIKE_DETECTED):
    return [n for n in channel.drain() if n.notification_type == notification_type]


# =============================================================================
# Scoring
# =============================================================================

def test_unknown_entity_is_never_a_spike():
    detector = make_detector()

    result = detector.detect_spike("ghost", 1_000_000.0, T0)

    assert not result.is_spike
    assert not result.baseline.is_reliable
    assert result.spike_event is None
    assert result.z_score is None
    assert result.severity is None


def test_reading_at_baseline_mean_is_not_a_spike():
    detector = make_detector()

    result = detector.detect_spike("market-1", 100.0, T0)

    assert result.baseline.is_reliable
    assert result.z_score == pytest.approx(0.0)
    assert result.percentage_of_baseline == pytest.approx(1.0)
    assert result.direction == SpikeDirection.UP
    assert not result.is_spike


def test_moderate_deviation_is_at_least_low():
    detector = make_detector()

    result = detector.detect_spike("market-1", 122.0, T0)  # mean + 2.2 std

    assert result.is_spike
    assert result.z_score == pytest.approx(2.2)
    assert result.severity.rank >= SpikeSeverity.LOW.rank


def test_five_sigma_reading_is_critical():
    detector = make_detector()

    result = detector.detect_spike("market-1", 150.0, T0)

    assert result.severity == SpikeSeverity.CRITICAL
    assert result.spike_event is not None
    assert result.spike_event.severity == SpikeSeverity.CRITICAL


def test_five_times_baseline_is_critical_by_percentage():
    detector = make_detector(use_z_score_detection=False)

    result = detector.detect_spike("market-1", 500.0, T0)

    assert result.percentage_of_baseline == pytest.approx(5.0)
    assert result.severity == SpikeSeverity.CRITICAL


def test_most_severe_method_wins():
    detector = make_detector()

    # z = 3.1 (HIGH) while 131% of baseline is below the lowest percentage tier
    result = detector.detect_spike("market-1", 131.0, T0)

    assert result.severity == SpikeSeverity.HIGH


def test_severity_is_monotone_in_volume():
    detector = make_detector(cooldown_ms=0)
    volumes = [80.0, 100.0, 110.0, 122.0, 126.0, 131.0, 145.0, 300.0, 1000.0]

    severities = [
        detector.detect_spike("market-1", volume, T0 + timedelta(seconds=i)).severity
        for i, volume in enumerate(volumes)
    ]

    ranks = [rank(s) for s in severities]
    assert ranks == sorted(ranks)
    assert severities[-1] == SpikeSeverity.CRITICAL


def test_drops_ignored_by_default():
    detector = make_detector()

    result = detector.detect_spike("market-1", 20.0, T0)

    assert result.direction == SpikeDirection.DOWN
    assert not result.is_spike


def test_drop_detection_when_enabled():
    detector = make_detector(detect_drops=True)

    result = detector.detect_spike("market-1", 20.0, T0)

    assert result.is_spike
    assert result.direction == SpikeDirection.DOWN
    assert result.severity == SpikeSeverity.CRITICAL
    assert result.spike_event.direction == SpikeDirection.DOWN


def test_zero_mean_baseline():
    tracker = make_tracker()
    for i in range(120):
        tracker.add_sample("dead-market", 0.0, BASE + timedelta(minutes=i))
    detector = make_detector(tracker=tracker)

    flat = detector.detect_spike("dead-market", 0.0, T0)
    burst = detector.detect_spike("dead-market", 5.0, T0 + timedelta(seconds=1))

    assert flat.percentage_of_baseline == 1.0
    assert not flat.is_spike
    assert math.isinf(burst.percentage_of_baseline)
    assert burst.z_score == 0.0
    assert burst.severity == SpikeSeverity.CRITICAL


def test_absolute_floor_applies_without_baseline():
    detector = make_detector(absolute_volume_threshold=500.0)

    result = detector.detect_spike("brand-new", 600.0, T0)

    assert result.is_spike
    assert result.severity == SpikeSeverity.CRITICAL
    assert result.direction == SpikeDirection.UP
    assert result.z_score is None
    assert result.spike_event.percentage_of_baseline is None


def test_invalid_readings_are_conservative_non_spikes():
    detector = make_detector()

    for entity_id, volume in [("", 500.0), ("market-1", float("nan")), ("market-1", -5.0), (None, 1.0)]:
        result = detector.detect_spike(entity_id, volume, T0)
        assert not result.is_spike
        assert result.spike_event is None

    assert detector.get_stats()["invalid_readings"] == 4
    assert not detector.is_in_spike_state("market-1")


def test_unknown_window_is_a_conservative_non_spike():
    detector = make_detector()

    result = detector.detect_spike("market-1", 1000.0, T0, window="2h")

    assert not result.is_spike
    assert result.spike_event is None
    assert result.window == RollingWindow.ONE_HOUR
    assert detector.get_stats()["invalid_readings"] == 1
    assert not detector.is_in_spike_state("market-1")


# =============================================================================
# State machine
# =============================================================================

def test_spike_types_build_up_to_sustained():
    channel = BoundedNotificationChannel()
    detector = make_detector(sink=channel, cooldown_ms=0, min_consecutive_points=3,
                             min_duration_minutes=0)

    types = [
        detector.detect_spike("market-1", 1000.0, T0 + timedelta(seconds=i)).spike_type
        for i in range(4)
    ]

    assert types == [SpikeType.MOMENTARY, SpikeType.SUDDEN, SpikeType.SUSTAINED, SpikeType.SUSTAINED]
    notifications = channel.drain()
    sustained = [n for n in notifications if n.notification_type == NotificationType.SUSTAINED_SPIKE]
    assert len(sustained) == 1
    assert sustained[0].event.consecutive_points == 3


def test_sustained_needs_enough_duration():
    detector = make_detector(cooldown_ms=0, min_consecutive_points=3, min_duration_minutes=5)

    results = [
        detector.detect_spike("market-1", 1000.0, T0 + timedelta(seconds=i))
        for i in range(3)
    ]

    assert results[-1].consecutive_points == 3
    assert results[-1].spike_type == SpikeType.GRADUAL


def test_slow_second_point_is_gradual():
    detector = make_detector(cooldown_ms=0)

    detector.detect_spike("market-1", 1000.0, T0)
    second = detector.detect_spike("market-1", 1000.0, T0 + timedelta(seconds=90))

    assert second.consecutive_points == 2
    assert second.spike_type == SpikeType.GRADUAL


def test_gap_longer_than_max_gap_restarts_episode():
    detector = make_detector(cooldown_ms=0, max_gap_minutes=2)

    detector.detect_spike("market-1", 1000.0, T0)
    detector.detect_spike("market-1", 1200.0, T0 + timedelta(seconds=30))
    after_gap = detector.detect_spike("market-1", 900.0, T0 + timedelta(minutes=4))

    state = detector.get_spike_state("market-1")
    assert after_gap.is_spike
    assert after_gap.consecutive_points == 1
    assert after_gap.spike_type == SpikeType.MOMENTARY
    assert state["spike_start_time"] == T0 + timedelta(minutes=4)
    assert state["peak_volume"] == 900.0
    assert len(detector.get_episode_history("market-1")) == 1


def test_single_non_spike_reading_ends_episode():
    channel = BoundedNotificationChannel()
    detector = make_detector(sink=channel, cooldown_ms=0)

    detector.detect_spike("market-1", 1000.0, T0)
    detector.detect_spike("market-1", 1500.0, T0 + timedelta(seconds=1))
    assert detector.is_in_spike_state("market-1")

    detector.detect_spike("market-1", 100.0, T0 + timedelta(seconds=2))

    assert not detector.is_in_spike_state("market-1")
    ended = [n for n in channel.drain() if n.notification_type == NotificationType.SPIKE_ENDED]
    assert len(ended) == 1
    episode = ended[0].episode
    assert episode.points == 2
    assert episode.peak_volume == 1500.0
    assert episode.max_severity == SpikeSeverity.CRITICAL
    assert detector.get_episode_history("market-1") == [episode]
    assert detector.get_spike_state("market-1")["consecutive_points"] == 0


def test_unreliable_window_leaves_live_episode_alone():
    channel = BoundedNotificationChannel()
    detector = make_detector(sink=channel, cooldown_ms=0)

    detector.detect_spike("market-1", 1000.0, T0)
    channel.drain()

    # The one minute window holds a single sample, so nothing is scored
    unscored = detector.detect_spike("market-1", 100.0, T0 + timedelta(seconds=1),
                                     window=RollingWindow.ONE_MINUTE)

    assert not unscored.is_spike
    assert not unscored.baseline.is_reliable
    assert detector.is_in_spike_state("market-1")
    assert detector.get_episode_history("market-1") == []
    assert channel.drain() == []

    detector.detect_spike("market-1", 100.0, T0 + timedelta(seconds=2))

    assert not detector.is_in_spike_state("market-1")
    assert len(detector.get_episode_history("market-1")) == 1


def test_unreliable_reading_creates_no_state():
    detector = make_detector()

    detector.detect_spike("ghost", 50.0, T0)

    assert detector.get_spike_state("ghost") is None
    assert detector.get_stats()["tracked_entities"] == 0


# =============================================================================
# Cooldown
# =============================================================================

def test_cooldown_suppresses_repeat_emissions():
    channel = BoundedNotificationChannel()
    detector = make_detector(sink=channel, cooldown_ms=60_000)

    results = [
        detector.detect_spike("market-1", 1000.0, T0 + timedelta(seconds=i))
        for i in range(3)
    ]

    assert len(detected(channel)) == 1
    assert results[0].spike_event is not None
    assert all(r.is_spike for r in results)
    assert all(r.suppressed_by_cooldown and r.spike_event is None for r in results[1:])
    # Suppressed readings still advance the episode
    assert results[-1].consecutive_points == 3


def test_bypass_cooldown_emits_again():
    channel = BoundedNotificationChannel()
    detector = make_detector(sink=channel, cooldown_ms=60_000)

    first = detector.detect_spike("market-1", 1000.0, T0)
    second = detector.detect_spike("market-1", 1000.0, T0 + timedelta(seconds=1), bypass_cooldown=True)

    assert len(detected(channel)) == 2
    context = second.spike_event.context
    assert context.is_recurring
    assert context.previous_spike_time == first.spike_event.timestamp
    assert context.spikes_last_hour == 2


def test_emission_resumes_after_cooldown():
    detector = make_detector(cooldown_ms=30_000)

    detector.detect_spike("market-1", 1000.0, T0)
    later = detector.detect_spike("market-1", 1000.0, T0 + timedelta(seconds=31))

    assert later.spike_event is not None


# =============================================================================
# Queries and maintenance
# =============================================================================

def test_recent_spikes_newest_first_and_bounded():
    tracker = make_tracker()
    for entity_id in ("a", "b", "c"):
        add_alternating(tracker, entity_id)
    detector = make_detector(tracker=tracker, max_recent_spikes=2)

    for i, entity_id in enumerate(("a", "b", "c")):
        detector.detect_spike(entity_id, 1000.0, T0 + timedelta(seconds=i))

    assert [e.entity_id for e in detector.get_recent_spikes()] == ["c", "b"]
    assert [e.entity_id for e in detector.get_recent_spikes(limit=1)] == ["c"]
    assert [e.entity_id for e in detector.get_entity_spikes("a")] == ["a"]


def test_summary_counts_within_frequency_window():
    tracker = make_tracker()
    add_alternating(tracker, "market-1")
    add_alternating(tracker, "market-2")
    detector = make_detector(tracker=tracker, cooldown_ms=0)

    detector.detect_spike("market-1", 1000.0, T0)
    detector.detect_spike("market-1", 1000.0, T0 + timedelta(seconds=1))
    detector.detect_spike("market-2", 122.0, T0 + timedelta(seconds=2))

    summary = detector.get_summary()
    assert summary.total_entities == 2
    assert summary.entities_in_spike == 2
    assert summary.total_spikes == 3
    assert summary.by_severity[SpikeSeverity.CRITICAL] == 2
    assert summary.by_severity[SpikeSeverity.LOW] == 1
    assert summary.by_type[SpikeType.MOMENTARY] == 2
    assert summary.most_frequent_entities[0] == ("market-1", 2)
    assert summary.recent_spikes[0].entity_id == "market-2"

    later = detector.get_summary(as_of=T0 + timedelta(hours=2))
    assert later.total_spikes == 0
    assert later.most_frequent_entities == []


def test_batch_detect_spikes():
    tracker = make_tracker()
    add_alternating(tracker, "market-1")
    add_alternating(tracker, "market-2")
    detector = make_detector(tracker=tracker)

    batch = detector.batch_detect_spikes(
        [("market-1", 500.0), {"entity_id": "market-2", "volume": 100.0}],
        timestamp=T0,
    )

    assert set(batch.results) == {"market-1", "market-2"}
    assert batch.spike_entity_ids == ["market-1"]
    assert batch.spike_count == 1


def test_batch_survives_malformed_entries():
    detector = make_detector()

    batch = detector.batch_detect_spikes(
        [("market-1",), 5, ("a", 1, 2), ("market-1", 500.0)],
        timestamp=T0,
    )

    assert batch.spike_entity_ids == ["market-1"]
    assert len(batch.results) == 4
    assert not batch.results["5"].is_spike
    assert detector.get_stats()["invalid_readings"] == 3
    assert detector.get_stats()["checks"] == 4


def test_clear_entity_resets_state_and_history():
    detector = make_detector(cooldown_ms=60_000)
    detector.detect_spike("market-1", 1000.0, T0)

    assert detector.clear_entity("market-1")

    assert not detector.is_in_spike_state("market-1")
    assert detector.get_spike_state("market-1") is None
    assert detector.get_entity_spikes("market-1") == []
    assert detector.get_recent_spikes() == []
    assert detector.get_summary().total_spikes == 0

    # Cooldown does not survive a clear
    again = detector.detect_spike("market-1", 1000.0, T0 + timedelta(seconds=1))
    assert again.spike_event is not None
    assert again.spike_type == SpikeType.MOMENTARY


def test_clear_all():
    detector = make_detector()
    detector.detect_spike("market-1", 1000.0, T0)

    detector.clear_all()

    assert detector.get_stats()["tracked_entities"] == 0
    assert detector.get_recent_spikes() == []


def test_detector_never_writes_to_tracker():
    tracker = make_tracker()
    add_alternating(tracker)
    detector = make_detector(tracker=tracker)

    detector.detect_spike("market-1", 1000.0, T0)
    detector.detect_spike("other", 1000.0, T0)

    assert tracker.get_sample_count("market-1") == 120
    assert not tracker.is_tracking("other")


def test_entity_state_is_bounded():
    tracker = make_tracker()
    for entity_id in ("a", "b", "c"):
        add_alternating(tracker, entity_id)
    detector = make_detector(tracker=tracker, max_tracked_entities=2)

    for entity_id in ("a", "b", "c"):
        detector.detect_spike(entity_id, 1000.0, T0)

    assert detector.get_spike_state("a") is None
    assert detector.get_spike_state("c") is not None


def test_lowering_entity_bound_evicts_immediately():
    tracker = make_tracker()
    for entity_id in ("a", "b", "c"):
        add_alternating(tracker, entity_id)
    detector = make_detector(tracker=tracker)
    for entity_id in ("a", "b", "c"):
        detector.detect_spike(entity_id, 1000.0, T0)

    detector.update_config(max_tracked_entities=1)

    assert detector.get_stats()["tracked_entities"] == 1
    assert detector.get_spike_state("b") is None
    assert detector.get_spike_state("c") is not None
    assert detector.get_entity_spikes("a") == []


# =============================================================================
# Configuration
# =============================================================================

@pytest.mark.parametrize("overrides", [
    {"low_z_score_threshold": 3.0, "medium_z_score_threshold": 2.5},
    {"critical_z_score_threshold": 3.0},
    {"low_percentage_threshold": 1.0},
    {"high_percentage_threshold": 6.0},
    {"cooldown_ms": -1},
    {"min_consecutive_points": 0},
    {"max_gap_minutes": 0},
    {"absolute_volume_threshold": 0},
    {"use_z_score_detection": False, "use_percentage_detection": False},
])
def test_misconfiguration_fails_fast(overrides):
    with pytest.raises(InvalidConfigError):
        SpikeDetectionSettings(**overrides)


def test_update_config_validates_and_applies():
    detector = make_detector()

    detector.update_config(cooldown_ms=0, low_z_score_threshold=1.5)
    assert detector.settings.cooldown_ms == 0
    assert detector.get_thresholds()["low_z_score_threshold"] == 1.5

    with pytest.raises(InvalidConfigError):
        detector.update_config(low_z_score_threshold=10.0)
    assert detector.settings.low_z_score_threshold == 1.5

    with pytest.raises(UnknownConfigKeyError):
        detector.update_config(sensitivity=3)


def test_event_fields_describe_the_episode():
    detector = make_detector(cooldown_ms=0)

    detector.detect_spike("market-1", 1000.0, T0)
    result = detector.detect_spike("market-1", 1400.0, T0 + timedelta(seconds=30))
    event = result.spike_event

    assert event.event_id.startswith("spike_")
    assert event.start_time == T0
    assert event.duration_minutes == pytest.approx(0.5)
    assert event.consecutive_points == 2
    assert event.peak_volume == 1400.0
    assert event.window == RollingWindow.ONE_HOUR
    assert event.baseline_average == pytest.approx(100.0)
    assert event.context.data_reliability == pytest.approx(1.0)
