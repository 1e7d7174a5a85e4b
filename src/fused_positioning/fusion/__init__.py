"""
Fusion layer: Kalman smoothing and platform motion compensation.

The FusionCoordinator lives in fused_positioning.fusion.coordinator; it
depends on the sensor sources, which themselves use the filters defined here.
"""

from .kalman import FilterState, GeoKalmanFilter, MovingAverageFilter, ScalarKalmanFilter
from .platform import (DeckTracker, PlatformMotionCompensator, PlatformMotionDetector,
                       classify_sea_state)

__all__ = [
    "FilterState",
    "ScalarKalmanFilter",
    "GeoKalmanFilter",
    "MovingAverageFilter",
    "PlatformMotionCompensator",
    "PlatformMotionDetector",
    "DeckTracker",
    "classify_sea_state",
]
