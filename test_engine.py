"""
Tests for the surveillance engines.

Run with: pytest test_engine.py
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from src.alerts.notifications import BoundedNotificationChannel, NotificationType
from src.config import BaselineSettings, Settings, SpikeDetectionSettings
from src.engine import ShardedSurveillanceEngine, VolumeSurveillanceEngine, shard_for
from src.schemas import RollingWindow, SpikeSeverity, VolumeSampleRecord

BASE = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_settings(**spike_overrides) -> Settings:
    spike = {"primary_window": RollingWindow.ONE_HOUR}
    spike.update(spike_overrides)
    return Settings(
        baseline=BaselineSettings(
            sample_interval_seconds=60.0,
            min_sample_count=3,
            min_data_density=0.5,
            max_sample_age_hours=None,
        ),
        spike=SpikeDetectionSettings(**spike),
        shard_count=3,
        shard_queue_size=8,
    )


def baseline_stream(entity_id="market-1", count=120):
    for i in range(count):
        yield entity_id, 90.0 if i % 2 == 0 else 110.0, BASE + timedelta(minutes=i)


def test_ingest_adds_sample_then_detects():
    channel = BoundedNotificationChannel()
    engine = VolumeSurveillanceEngine(make_settings(), sink=channel)

    for entity_id, volume, ts in baseline_stream():
        assert not engine.ingest(entity_id, volume, ts).is_spike

    result = engine.ingest("market-1", 1000.0, BASE + timedelta(minutes=120))

    assert engine.tracker.get_sample_count("market-1") == 121
    assert result.is_spike
    assert result.severity == SpikeSeverity.CRITICAL
    detected = [n for n in channel.drain() if n.notification_type == NotificationType.SPIKE_DETECTED]
    assert len(detected) == 1
    assert detected[0].event is result.spike_event


def test_ingest_counts_rejected_samples():
    engine = VolumeSurveillanceEngine(make_settings())

    result = engine.ingest("market-1", -5.0, BASE)

    assert not result.is_spike
    assert engine.get_stats()["samples_rejected"] == 1
    assert not engine.tracker.is_tracking("market-1")


def test_ingest_batch_accepts_records_and_dicts():
    engine = VolumeSurveillanceEngine(make_settings())
    records = [
        VolumeSampleRecord(entity_id=entity_id, volume=volume, timestamp=ts)
        for entity_id, volume, ts in baseline_stream()
    ]
    records.append({"entity_id": "market-1", "volume": 1000.0,
                    "timestamp": BASE + timedelta(minutes=120)})

    batch = engine.ingest_batch(records)

    assert batch.spike_entity_ids == ["market-1"]
    assert batch.results["market-1"].is_spike


def test_clear_entity_resets_tracker_and_detector():
    engine = VolumeSurveillanceEngine(make_settings())
    for entity_id, volume, ts in baseline_stream():
        engine.ingest(entity_id, volume, ts)
    engine.ingest("market-1", 1000.0, BASE + timedelta(minutes=120))

    assert engine.clear_entity("market-1")

    assert not engine.tracker.is_tracking("market-1")
    assert engine.detector.get_spike_state("market-1") is None
    assert engine.summary().total_spikes == 0


def test_breach_notifications_are_opt_in():
    channel = BoundedNotificationChannel()
    engine = VolumeSurveillanceEngine(make_settings(), sink=channel, publish_breaches=True)
    for entity_id, volume, ts in baseline_stream():
        engine.ingest(entity_id, volume, ts)
    channel.drain()

    engine.ingest("market-1", 1000.0, BASE + timedelta(minutes=120))

    types = {n.notification_type for n in channel.drain()}
    assert NotificationType.THRESHOLD_BREACH in types
    assert NotificationType.SPIKE_DETECTED in types


def test_shard_assignment_is_stable():
    shards = {shard_for(f"market-{i}", 4) for i in range(50)}

    assert shard_for("market-1", 4) == shard_for("market-1", 4)
    assert shard_for(" market-1 ", 4) == shard_for("market-1", 4)
    assert shards <= {0, 1, 2, 3}


def test_sharded_engine_keeps_each_entity_on_one_shard():
    async def scenario():
        settings = make_settings()
        async with ShardedSurveillanceEngine(settings) as engine:
            for n in range(5):
                for entity_id, volume, ts in baseline_stream(f"market-{n}", count=40):
                    await engine.submit(entity_id, volume, ts)
            await engine.join()
            return engine

    engine = asyncio.run(scenario())

    assert not engine.is_running
    for n in range(5):
        entity_id = f"market-{n}"
        counts = [shard.tracker.get_sample_count(entity_id) for shard in engine.shards]
        assert counts[engine.shard_for(entity_id)] == 40
        assert sum(counts) == 40
    assert engine.summary().total_entities == 5
    assert engine.get_stats()["samples_ingested"] == 200


def test_sharded_engine_publishes_spikes():
    async def scenario():
        channel = BoundedNotificationChannel()
        async with ShardedSurveillanceEngine(make_settings(), sink=channel) as engine:
            for entity_id, volume, ts in baseline_stream():
                await engine.submit(entity_id, volume, ts)
            await engine.submit("market-1", 1000.0, BASE + timedelta(minutes=120))
            await engine.join()
        return engine, channel

    engine, channel = asyncio.run(scenario())

    detected = [n for n in channel.drain() if n.notification_type == NotificationType.SPIKE_DETECTED]
    assert len(detected) == 1
    assert detected[0].entity_id == "market-1"
    summary = engine.summary()
    assert summary.total_spikes == 1
    assert summary.by_severity[SpikeSeverity.CRITICAL] == 1


def test_submit_requires_running_engine():
    engine = ShardedSurveillanceEngine(make_settings())

    with pytest.raises(RuntimeError):
        asyncio.run(engine.submit("market-1", 1.0, BASE))
