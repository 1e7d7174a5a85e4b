"""
Positioning sources for the fusion engine.

This package contains the GNSS source with its accuracy and jump gates, the
inertial dead-reckoning estimator, radio trilateration against fixed anchors,
motion classification and per-source health tracking.
"""

from .gnss import GNSSSource, GnssFix
from .health import SensorHealth
from .inertial import InertialEstimator, InertialPose
from .motion import MotionClassifier, StationaryLock, StepDetector
from .ranging import (Anchor, AnchorCalibration, RangingMeasurement, RangingSource,
                      TrilaterationResult, TrilaterationSolver, classify_proximity,
                      rssi_to_distance)

__all__ = [
    "GNSSSource",
    "GnssFix",
    "SensorHealth",
    "InertialEstimator",
    "InertialPose",
    "MotionClassifier",
    "StepDetector",
    "StationaryLock",
    "Anchor",
    "AnchorCalibration",
    "RangingMeasurement",
    "RangingSource",
    "TrilaterationResult",
    "TrilaterationSolver",
    "classify_proximity",
    "rssi_to_distance",
]
