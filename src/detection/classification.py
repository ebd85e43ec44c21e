"""
Severity and spike type classification.

Pure functions over settings and spike state, kept apart from the detector
so they can be tested without any buffers.
"""

import math
from datetime import datetime, timedelta
from typing import Optional

from ..config import SpikeDetectionSettings
from ..config_validator import PERCENTAGE_TIERS, Z_SCORE_TIERS
from ..schemas import SpikeSeverity, SpikeType
from .models import SpikeState

# Tier order matches the settings tuples: low, medium, high, critical
_TIER_SEVERITIES = (
    SpikeSeverity.LOW,
    SpikeSeverity.MEDIUM,
    SpikeSeverity.HIGH,
    SpikeSeverity.CRITICAL,
)


def _tier(value: float, thresholds: list) -> Optional[SpikeSeverity]:
    severity = None
    for threshold, tier in zip(thresholds, _TIER_SEVERITIES):
        if value >= threshold:
            severity = tier
    return severity


def severity_from_z_score(z_score: float, settings: SpikeDetectionSettings) -> Optional[SpikeSeverity]:
    """
    Map a z-score onto the z tiers.

    Only positive deviations count unless `detect_drops` is enabled, in
    which case the magnitude is used.
    """
    value = abs(z_score) if settings.detect_drops else z_score
    return _tier(value, [getattr(settings, key) for key in Z_SCORE_TIERS])


def severity_from_percentage(percentage: float, settings: SpikeDetectionSettings) -> Optional[SpikeSeverity]:
    """
    Map a multiple of the baseline mean onto the percentage tiers.

    With `detect_drops`, readings below baseline are scored on the inverse
    ratio, so 0.2x the mean is treated like 5x.
    """
    thresholds = [getattr(settings, key) for key in PERCENTAGE_TIERS]
    severity = _tier(percentage, thresholds)
    if settings.detect_drops and 0 <= percentage < 1:
        inverse = math.inf if percentage == 0 else 1 / percentage
        severity = higher_severity(severity, _tier(inverse, thresholds))
    return severity


def higher_severity(a: Optional[SpikeSeverity], b: Optional[SpikeSeverity]) -> Optional[SpikeSeverity]:
    """Most severe of two optional severities."""
    if a is None:
        return b
    if b is None:
        return a
    return a if a.rank >= b.rank else b


def classify_spike_type(state: SpikeState, timestamp: datetime,
                        previous_point_time: Optional[datetime],
                        sample_interval: timedelta,
                        settings: SpikeDetectionSettings) -> SpikeType:
    """
    Temporal shape of the episode after the current point was applied.

    SUSTAINED needs both enough points and enough elapsed time. A second
    point that follows the first within one sampling interval is SUDDEN.
    """
    duration_minutes = (timestamp - state.spike_start_time).total_seconds() / 60
    if (state.consecutive_points >= settings.min_consecutive_points
            and duration_minutes >= settings.min_duration_minutes):
        return SpikeType.SUSTAINED

    if state.consecutive_points == 2 and previous_point_time is not None:
        if timestamp - previous_point_time <= sample_interval:
            return SpikeType.SUDDEN

    if state.consecutive_points >= 2:
        return SpikeType.GRADUAL

    return SpikeType.MOMENTARY
