"""
Volume spike detection and classification.
"""

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
from .spike_detector import SpikeDetector

__all__ = [
    "SpikeDetector",
    "SpikeEvent",
    "SpikeContext",
    "SpikeResult",
    "SpikeState",
    "SpikeEpisode",
    "SpikeSummary",
    "BatchSpikeResult",
    "classify_spike_type",
    "higher_severity",
    "severity_from_percentage",
    "severity_from_z_score",
]
