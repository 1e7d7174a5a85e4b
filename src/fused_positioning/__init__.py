"""
Fused Positioning: multi-source position fusion for people on the move

A Python package that estimates an agent's position with sub-meter precision
by reconciling satellite fixes, inertial dead reckoning and short-range radio
trilateration against fixed anchors.

This package implements:
- Random-walk Kalman smoothing of GNSS and ranging streams
- Inertial dead reckoning with time-decaying confidence
- Weighted-centroid and least-squares trilateration (BLE RSSI and UWB)
- Motion classification with asymmetric hysteresis
- Weighted multi-source fusion with indoor detection
- Ship roll/pitch/heave compensation
- A threaded tracking session with bounded sample intake
"""

from .config import FusionConfiguration, load_configuration
from .fusion.coordinator import FusionCoordinator
from .fusion.kalman import ScalarKalmanFilter
from .fusion.platform import PlatformMotionCompensator
from .sensors.inertial import InertialEstimator
from .sensors.motion import MotionClassifier
from .sensors.ranging import Anchor, TrilaterationSolver
from .session import TrackingSession
from .types import (AccelerometerSample, FusedPosition, GnssSample, GyroscopeSample,
                    MagnetometerSample, MotionActivity, RangingSample, RssiSample,
                    SourceEstimate, SourceType)

__version__ = "1.0.0"
__author__ = "Fused Positioning Team"

__all__ = [
    "FusionConfiguration",
    "load_configuration",
    "FusionCoordinator",
    "ScalarKalmanFilter",
    "PlatformMotionCompensator",
    "InertialEstimator",
    "MotionClassifier",
    "Anchor",
    "TrilaterationSolver",
    "TrackingSession",
    "AccelerometerSample",
    "GyroscopeSample",
    "MagnetometerSample",
    "GnssSample",
    "RangingSample",
    "RssiSample",
    "SourceEstimate",
    "SourceType",
    "FusedPosition",
    "MotionActivity",
]
