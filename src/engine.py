"""
Surveillance engines: the composition root for tracker, detector and sink.

`VolumeSurveillanceEngine` wires one tracker, one detector and one sink and
is driven synchronously. `ShardedSurveillanceEngine` partitions entities
across several engines by a stable hash of the entity id, each shard owned
by a single asyncio worker, so per-entity state is never shared and needs
no locks.

Usage:
    engine = VolumeSurveillanceEngine()
    result = engine.ingest("market-1", 120.0, timestamp=ts)

    async with ShardedSurveillanceEngine() as sharded:
        await sharded.submit("market-1", 120.0, timestamp=ts)
        await sharded.join()
        print(sharded.summary())
"""

import asyncio
import hashlib
import time
from typing import Any, Iterable, Optional, Union

from .alerts.notifications import BoundedNotificationChannel, NotificationSink
from .baseline.tracker import RollingBaselineTracker
from .config import Settings, get_settings
from .detection.models import BatchSpikeResult, SpikeResult, SpikeSummary
from .detection.spike_detector import SpikeDetector
from .schemas import RollingWindow, SpikeSeverity, SpikeType, VolumeSampleRecord
from .secure_logging import get_secure_logger
from .validation import ValidationError, normalize_timestamp

logger = get_secure_logger(__name__)


def _resolve_timestamp(timestamp: Any) -> Any:
    """Pin the observation time once so tracker and detector agree on it."""
    try:
        return normalize_timestamp(timestamp)
    except ValidationError:
        # Let the tracker and detector reject it through their own paths
        return timestamp


# =============================================================================
# Single Engine
# =============================================================================

class VolumeSurveillanceEngine:
    """
    Tracker + detector + sink for one stream of samples.

    Flow per sample:
    1. Record the sample in the baseline tracker
    2. Score the same reading with the spike detector
    3. Emitted spikes and state changes go to the sink

    Args:
        settings: Application settings; loaded from the environment when None
        sink: Notification sink; a bounded channel is created when None
        publish_breaches: Also publish tracker THRESHOLD_BREACH notifications
    """

    def __init__(self, settings: Optional[Settings] = None,
                 sink: Optional[NotificationSink] = None,
                 publish_breaches: bool = False):
        self.settings = settings or get_settings()
        self.sink = sink or BoundedNotificationChannel(self.settings.notification_channel_size)
        self.tracker = RollingBaselineTracker(
            self.settings.baseline,
            sink=self.sink if publish_breaches else None,
        )
        self.detector = SpikeDetector(self.tracker, self.settings.spike, sink=self.sink)

        self._samples_ingested = 0
        self._samples_rejected = 0

    def ingest(self, entity_id: Any, volume: Any, timestamp: Any = None,
               trade_count: Any = None, window: Optional[Union[RollingWindow, str]] = None,
               bypass_cooldown: bool = False) -> SpikeResult:
        """Add a sample to the baseline, then check it for a spike."""
        timestamp = _resolve_timestamp(timestamp)
        if self.tracker.add_sample(entity_id, volume, timestamp, trade_count):
            self._samples_ingested += 1
        else:
            self._samples_rejected += 1
        return self.detector.detect_spike(entity_id, volume, timestamp,
                                          window=window, bypass_cooldown=bypass_cooldown)

    def ingest_record(self, record: VolumeSampleRecord, **kwargs: Any) -> SpikeResult:
        return self.ingest(record.entity_id, record.volume, record.timestamp,
                           record.trade_count, **kwargs)

    def ingest_batch(self, records: Iterable[Union[VolumeSampleRecord, dict]],
                     window: Optional[Union[RollingWindow, str]] = None) -> BatchSpikeResult:
        """Ingest records in order; the last result per entity is kept."""
        start = time.perf_counter()
        batch = BatchSpikeResult()

        for record in records:
            if isinstance(record, VolumeSampleRecord):
                result = self.ingest_record(record, window=window)
            else:
                result = self.ingest(record.get("entity_id"), record.get("volume"),
                                     record.get("timestamp"), record.get("trade_count"),
                                     window=window)
            batch.results[result.entity_id] = result
            if result.spike_event is not None:
                batch.spike_entity_ids.append(result.entity_id)

        batch.processing_time_ms = (time.perf_counter() - start) * 1000
        return batch

    def summary(self, as_of: Any = None) -> SpikeSummary:
        return self.detector.get_summary(as_of)

    def clear_entity(self, entity_id: str) -> bool:
        """Forget an entity in both the tracker and the detector."""
        tracked = self.tracker.clear_entity(entity_id)
        checked = self.detector.clear_entity(entity_id)
        return tracked or checked

    def clear_all(self) -> None:
        self.tracker.clear_all()
        self.detector.clear_all()

    def get_stats(self) -> dict[str, Any]:
        return {
            "samples_ingested": self._samples_ingested,
            "samples_rejected": self._samples_rejected,
            "tracker": self.tracker.get_stats(),
            "detector": self.detector.get_stats(),
        }


# =============================================================================
# Sharded Engine
# =============================================================================

def shard_for(entity_id: Any, shard_count: int) -> int:
    """Stable shard index for an entity; identical across processes and runs."""
    key = str(entity_id).strip().encode("utf-8")
    digest = hashlib.blake2b(key, digest_size=8).digest()
    return int.from_bytes(digest, "big") % shard_count


def merge_summaries(summaries: list[SpikeSummary], recent_limit: int = 20,
                    frequent_limit: int = 10) -> SpikeSummary:
    """Combine per-shard summaries; shards never share entities."""
    by_severity = {severity: 0 for severity in SpikeSeverity}
    by_type = {spike_type: 0 for spike_type in SpikeType}
    recent, frequent, sustained = [], [], []

    for summary in summaries:
        for severity, count in summary.by_severity.items():
            by_severity[severity] += count
        for spike_type, count in summary.by_type.items():
            by_type[spike_type] += count
        recent.extend(summary.recent_spikes)
        frequent.extend(summary.most_frequent_entities)
        sustained.extend(summary.sustained_spikes)

    recent.sort(key=lambda e: e.timestamp, reverse=True)
    frequent.sort(key=lambda item: item[1], reverse=True)
    sustained.sort(key=lambda e: e.timestamp, reverse=True)

    return SpikeSummary(
        total_entities=sum(s.total_entities for s in summaries),
        entities_in_spike=sum(s.entities_in_spike for s in summaries),
        total_spikes=sum(s.total_spikes for s in summaries),
        by_severity=by_severity,
        by_type=by_type,
        recent_spikes=recent[:recent_limit],
        most_frequent_entities=frequent[:frequent_limit],
        sustained_spikes=sustained,
    )


class ShardedSurveillanceEngine:
    """
    Entities partitioned over N engines, one asyncio worker per shard.

    Each shard has a bounded queue; `submit` waits when the target shard is
    full, which is the backpressure towards producers. Readings for one
    entity always land on the same shard, so they are processed in
    submission order.
    """

    def __init__(self, settings: Optional[Settings] = None,
                 sink: Optional[NotificationSink] = None,
                 shard_count: Optional[int] = None,
                 queue_size: Optional[int] = None):
        self.settings = settings or get_settings()
        self.sink = sink or BoundedNotificationChannel(self.settings.notification_channel_size)
        self.shard_count = shard_count or self.settings.shard_count
        self.queue_size = queue_size or self.settings.shard_queue_size
        if self.shard_count < 1:
            raise ValueError(f"shard_count must be at least 1, got {self.shard_count}")

        self.shards = [
            VolumeSurveillanceEngine(self.settings, sink=self.sink)
            for _ in range(self.shard_count)
        ]
        self._queues: list[asyncio.Queue] = []
        self._workers: list[asyncio.Task] = []
        self._running = False
        self._errors = 0

    async def __aenter__(self) -> "ShardedSurveillanceEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Create the shard queues and workers on the running loop."""
        if self._running:
            return
        self._queues = [asyncio.Queue(maxsize=self.queue_size) for _ in range(self.shard_count)]
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"volume-shard-{index}")
            for index in range(self.shard_count)
        ]
        self._running = True
        logger.info("sharded_engine_started", shards=self.shard_count, queue_size=self.queue_size)

    async def stop(self) -> None:
        """Drain pending readings, then stop every worker."""
        if not self._running:
            return
        for queue in self._queues:
            await queue.put(None)
        await asyncio.gather(*self._workers)
        self._workers = []
        self._running = False
        logger.info("sharded_engine_stopped", errors=self._errors)

    def shard_for(self, entity_id: Any) -> int:
        return shard_for(entity_id, self.shard_count)

    def engine_for(self, entity_id: Any) -> VolumeSurveillanceEngine:
        return self.shards[self.shard_for(entity_id)]

    async def submit(self, entity_id: Any, volume: Any, timestamp: Any = None,
                     trade_count: Any = None) -> None:
        """Queue one reading for its shard; waits while that shard is full."""
        if not self._running:
            raise RuntimeError("ShardedSurveillanceEngine is not running")
        timestamp = _resolve_timestamp(timestamp)
        await self._queues[self.shard_for(entity_id)].put((entity_id, volume, timestamp, trade_count))

    async def join(self) -> None:
        """Wait until every submitted reading has been processed."""
        await asyncio.gather(*(queue.join() for queue in self._queues))

    async def _worker(self, index: int) -> None:
        queue = self._queues[index]
        engine = self.shards[index]
        while True:
            item = await queue.get()
            try:
                if item is None:
                    return
                engine.ingest(*item)
            except Exception as e:
                self._errors += 1
                logger.error("shard_ingest_failed", shard=index, error=str(e))
            finally:
                queue.task_done()

    def summary(self, as_of: Any = None) -> SpikeSummary:
        if as_of is None:
            # Shards see different readings; count them all against the newest one
            seen = [s.detector.latest_timestamp for s in self.shards if s.detector.latest_timestamp]
            as_of = max(seen) if seen else None
        return merge_summaries([shard.summary(as_of) for shard in self.shards])

    def clear_entity(self, entity_id: str) -> bool:
        return self.engine_for(entity_id).clear_entity(entity_id)

    def get_stats(self) -> dict[str, Any]:
        return {
            "shards": self.shard_count,
            "running": self._running,
            "errors": self._errors,
            "pending": sum(queue.qsize() for queue in self._queues),
            "samples_ingested": sum(s.get_stats()["samples_ingested"] for s in self.shards),
            "spikes_emitted": sum(s.detector.get_stats()["spikes_emitted"] for s in self.shards),
        }
