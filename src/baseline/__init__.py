"""
Rolling volume baselines per entity.
"""

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
from .tracker import RollingBaselineTracker

__all__ = [
    "AbnormalVolumeEntity",
    "BaselineStats",
    "BatchRollingAveragesResult",
    "DataHealth",
    "EntityRollingAverages",
    "RollingAveragesSummary",
    "RollingBaselineTracker",
    "ThresholdBreach",
    "VolumeSample",
]
