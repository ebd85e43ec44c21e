"""
Spike notifications and alert formatting.
"""

from .formatting import (
    format_notification,
    format_spike_alert,
    format_spike_ended,
    format_summary,
)
from .notifications import (
    BoundedNotificationChannel,
    CallbackSink,
    FanOutSink,
    LoggingSink,
    NotificationSink,
    NotificationType,
    SpikeNotification,
)

__all__ = [
    "BoundedNotificationChannel",
    "CallbackSink",
    "FanOutSink",
    "LoggingSink",
    "NotificationSink",
    "NotificationType",
    "SpikeNotification",
    "format_notification",
    "format_spike_alert",
    "format_spike_ended",
    "format_summary",
]
