"""
Alert message formatting.

Turns spike events and summaries into short human-readable messages with
emoji markers for quick scanning in a terminal or chat client.
"""

from typing import TYPE_CHECKING, Optional

from ..schemas import SpikeDirection, SpikeSeverity
from .notifications import NotificationType, SpikeNotification

if TYPE_CHECKING:
    from ..detection.models import SpikeEpisode, SpikeEvent, SpikeSummary

SEVERITY_EMOJI = {
    SpikeSeverity.CRITICAL: "🔴",
    SpikeSeverity.HIGH: "🟠",
    SpikeSeverity.MEDIUM: "🟡",
    SpikeSeverity.LOW: "🔵",
}


def _short_id(entity_id: str) -> str:
    if entity_id.startswith("0x") and len(entity_id) > 14:
        return f"{entity_id[:6]}...{entity_id[-4:]}"
    if len(entity_id) > 40:
        return entity_id[:37] + "..."
    return entity_id


def _duration_text(minutes: float) -> str:
    if minutes < 1:
        return f"{minutes * 60:.0f} seconds"
    if minutes < 60:
        return f"{minutes:.1f} minutes"
    return f"{minutes / 60:.1f} hours"


def format_spike_alert(event: "SpikeEvent") -> str:
    """
    Format a SpikeEvent into an alert message.

    Readings from the absolute volume floor have no z-score or percentage;
    those lines say so instead of printing zeros.
    """
    emoji = SEVERITY_EMOJI[event.severity]
    arrow = "📈" if event.direction == SpikeDirection.UP else "📉"

    z_text = "n/a (absolute floor)" if event.z_score is None else f"{event.z_score:+.2f}σ"
    if event.percentage_of_baseline is None:
        pct_text = "n/a"
    elif event.percentage_of_baseline == float("inf"):
        pct_text = "∞ (no baseline volume)"
    else:
        pct_text = f"{event.percentage_of_baseline:.0%} of baseline"

    context = event.context
    if context.is_recurring and context.previous_spike_time is not None:
        recurring_line = (
            f"🔁 Recurring: {context.spikes_last_hour} spikes in window, "
            f"previous at {context.previous_spike_time:%H:%M:%S}"
        )
    else:
        recurring_line = "🔁 First spike in window"

    return f"""{emoji} VOLUME SPIKE [{event.severity.value}] {arrow}

📊 Entity: {_short_id(event.entity_id)}
🕒 At: {event.timestamp:%Y-%m-%d %H:%M:%S} UTC ({event.window.value} window)

💰 Volume: {event.current_volume:,.2f}
   • Baseline: {event.baseline_average:,.2f} ± {event.baseline_std_dev:,.2f}
   • Z-score: {z_text}
   • Ratio: {pct_text}

⏱️ Shape: {event.spike_type.value}
   • Points: {event.consecutive_points}
   • Duration: {_duration_text(event.duration_minutes)}
   • Peak: {event.peak_volume:,.2f}

{recurring_line}
📶 Data reliability: {context.data_reliability:.0%}"""


def format_spike_ended(episode: "SpikeEpisode") -> str:
    """Format the end of a spike episode."""
    severity = episode.max_severity.value if episode.max_severity else "n/a"
    sustained = " (sustained)" if episode.reached_sustained else ""
    return (
        f"✅ Spike ended on {_short_id(episode.entity_id)}{sustained}: "
        f"{episode.points} points over {_duration_text(episode.duration_minutes)}, "
        f"peak {episode.peak_volume:,.2f}, max severity {severity}"
    )


def format_notification(notification: SpikeNotification) -> str:
    """Format any notification published by the tracker or detector."""
    if notification.event is not None:
        message = format_spike_alert(notification.event)
        if notification.notification_type == NotificationType.SUSTAINED_SPIKE:
            message = "⚠️ SUSTAINED SPIKE\n\n" + message
        return message

    if notification.episode is not None:
        return format_spike_ended(notification.episode)

    if notification.breach is not None:
        breach = notification.breach
        side = "above" if breach.is_high else "below"
        return (
            f"🚧 Threshold breach on {_short_id(breach.entity_id)} ({breach.window.value}): "
            f"{breach.current_volume:,.2f} is {side} {breach.threshold:,.2f} "
            f"(z={breach.z_score:+.2f})"
        )

    return f"{notification.notification_type.value} for {_short_id(notification.entity_id)}"


def format_summary(summary: "SpikeSummary", window_minutes: Optional[float] = None) -> str:
    """Format a detector summary."""
    window_text = f"last {window_minutes:g} minutes" if window_minutes else "recent window"

    severity_lines = "\n".join(
        f"   {SEVERITY_EMOJI[severity]} {severity.value}: {summary.by_severity.get(severity, 0)}"
        for severity in reversed(list(SpikeSeverity))
    )
    type_lines = "\n".join(
        f"   • {spike_type.value}: {count}"
        for spike_type, count in summary.by_type.items()
    )

    if summary.most_frequent_entities:
        frequent_lines = "\n".join(
            f"   • {_short_id(entity_id)} ({count} spikes)"
            for entity_id, count in summary.most_frequent_entities[:5]
        )
    else:
        frequent_lines = "   No spikes"

    return f"""📊 SPIKE SUMMARY ({window_text})

🔔 Spikes: {summary.total_spikes}
👀 Entities tracked: {summary.total_entities}
🔥 In spike now: {summary.entities_in_spike}

🚨 By severity:
{severity_lines}

⏱️ By type:
{type_lines}

🎯 Most active:
{frequent_lines}"""
