"""
Notification sinks for Volume Sentinel.

The tracker and detector never hold global listeners; callers hand them a
`NotificationSink` and every notification goes through `publish`. Sinks
can be combined with `FanOutSink`.

Usage:
    channel = BoundedNotificationChannel(maxsize=1000)
    detector = SpikeDetector(tracker, sink=channel)
    ...
    for notification in channel.drain():
        print(notification.notification_type, notification.entity_id)
"""

from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Callable, Iterable, List, Optional

from ..schemas import SpikeSeverity
from ..secure_logging import get_secure_logger

if TYPE_CHECKING:
    from ..baseline.models import ThresholdBreach
    from ..detection.models import SpikeEpisode, SpikeEvent

logger = get_secure_logger(__name__)


class NotificationType(str, Enum):
    """Kinds of notifications published by the detection core."""
    SPIKE_DETECTED = "spike_detected"
    SUSTAINED_SPIKE = "sustained_spike"
    SPIKE_ENDED = "spike_ended"
    THRESHOLD_BREACH = "threshold_breach"


@dataclass(frozen=True)
class SpikeNotification:
    """
    One published notification.

    Exactly one payload is set, depending on the type: `event` for
    SPIKE_DETECTED and SUSTAINED_SPIKE, `episode` for SPIKE_ENDED and
    `breach` for THRESHOLD_BREACH.
    """
    notification_type: NotificationType
    entity_id: str
    timestamp: datetime
    event: Optional["SpikeEvent"] = None
    episode: Optional["SpikeEpisode"] = None
    breach: Optional["ThresholdBreach"] = None

    @property
    def severity(self) -> Optional[SpikeSeverity]:
        return self.event.severity if self.event is not None else None


class NotificationSink(ABC):
    """Receives notifications from the tracker or detector."""

    @abstractmethod
    def publish(self, notification: SpikeNotification) -> None:
        """Deliver one notification. Must not block the caller for long."""


class BoundedNotificationChannel(NotificationSink):
    """
    In-memory channel with a fixed capacity.

    When full, the oldest notification is dropped to make room, so a slow
    consumer loses old alerts rather than stalling detection.
    """

    def __init__(self, maxsize: int = 1000):
        if maxsize < 1:
            raise ValueError(f"maxsize must be at least 1, got {maxsize}")
        self.maxsize = maxsize
        self._queue: deque = deque(maxlen=maxsize)
        self.published_count = 0
        self.dropped_count = 0

    def publish(self, notification: SpikeNotification) -> None:
        if len(self._queue) == self.maxsize:
            self.dropped_count += 1
            logger.debug("notification_dropped",
                         entity_id=self._queue[0].entity_id,
                         dropped_count=self.dropped_count)
        self._queue.append(notification)
        self.published_count += 1

    def poll(self, max_items: Optional[int] = None) -> List[SpikeNotification]:
        """Remove and return up to `max_items` notifications, oldest first."""
        count = len(self._queue) if max_items is None else min(max_items, len(self._queue))
        return [self._queue.popleft() for _ in range(count)]

    def drain(self) -> List[SpikeNotification]:
        """Remove and return every pending notification."""
        return self.poll()

    def __len__(self) -> int:
        return len(self._queue)


class CallbackSink(NotificationSink):
    """Forwards each notification to a plain callable."""

    def __init__(self, callback: Callable[[SpikeNotification], None]):
        self.callback = callback

    def publish(self, notification: SpikeNotification) -> None:
        try:
            self.callback(notification)
        except Exception as e:
            # A broken consumer must not take detection down
            logger.error("notification_callback_failed",
                         entity_id=notification.entity_id,
                         notification_type=notification.notification_type.value,
                         error=str(e))


class FanOutSink(NotificationSink):
    """Publishes every notification to several sinks in order."""

    def __init__(self, sinks: Optional[Iterable[NotificationSink]] = None):
        self.sinks: List[NotificationSink] = list(sinks or [])

    def add(self, sink: NotificationSink) -> None:
        self.sinks.append(sink)

    def publish(self, notification: SpikeNotification) -> None:
        for sink in self.sinks:
            sink.publish(notification)


class LoggingSink(NotificationSink):
    """Writes notifications to the structured log."""

    def __init__(self, min_severity: SpikeSeverity = SpikeSeverity.LOW):
        self.min_severity = min_severity

    def publish(self, notification: SpikeNotification) -> None:
        severity = notification.severity
        if severity is not None and severity.rank < self.min_severity.rank:
            return

        fields = {
            "entity_id": notification.entity_id,
            "timestamp": notification.timestamp.isoformat(),
        }
        if notification.event is not None:
            event = notification.event
            fields.update(
                severity=event.severity.value,
                spike_type=event.spike_type.value,
                direction=event.direction.value,
                volume=event.current_volume,
                baseline=round(event.baseline_average, 4),
                z_score=None if event.z_score is None else round(event.z_score, 2),
            )
        elif notification.episode is not None:
            fields.update(
                points=notification.episode.points,
                duration_minutes=round(notification.episode.duration_minutes, 2),
                peak_volume=notification.episode.peak_volume,
            )
        elif notification.breach is not None:
            fields.update(
                window=notification.breach.window.value,
                volume=notification.breach.current_volume,
                threshold=round(notification.breach.threshold, 4),
                is_high=notification.breach.is_high,
            )

        if notification.notification_type in (NotificationType.SPIKE_DETECTED,
                                              NotificationType.SUSTAINED_SPIKE):
            logger.warning(notification.notification_type.value, **fields)
        else:
            logger.info(notification.notification_type.value, **fields)
