"""
Core data model for multi-source position fusion.

Raw sensor samples enter the engine as small immutable records, one type per
sensor kind. Each positioning source turns its samples into a SourceEstimate,
and the fusion coordinator combines the estimates into a FusedPosition.

Frames and Units:
    - Local positions: East-North-Up (ENU) meters, numpy float64 arrays of shape (3,)
    - Geographic positions: WGS-84 degrees, altitude in meters
    - Accelerations: m/s² (specific force, gravity included)
    - Angular rates: rad/s
    - Timestamps: float seconds; components only compare them with each other

Weight Invariant:
    Every SourceEstimate.weight lies in [0, 1]; out of range weights are clamped
    on construction and NaN weights become 0.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import numpy as np


def as_vector(values, name: str = "vector") -> np.ndarray:
    """
    Convert a 3-element sequence into a finite float64 array.

    Raises:
        ValueError: If the input does not hold exactly 3 finite numbers
    """
    vector = np.asarray(values, dtype=float).reshape(-1)
    if vector.shape != (3,):
        raise ValueError(f"{name} must have 3 elements, got {vector.size}")
    if not np.all(np.isfinite(vector)):
        raise ValueError(f"{name} contains non-finite values: {vector}")
    return vector


def clamp_weight(weight: float) -> float:
    """Clamp a fusion weight into [0, 1]; NaN maps to 0."""
    if weight is None or math.isnan(weight):
        return 0.0
    return float(min(1.0, max(0.0, weight)))


class SourceType(Enum):
    """Positioning sources known to the fusion coordinator."""
    GNSS = "gnss"
    INERTIAL = "inertial"
    TRILATERATION = "trilateration"


class MotionActivity(Enum):
    """Discrete motion states of the tracked agent."""
    STATIONARY = "stationary"
    WALKING = "walking"
    RUNNING = "running"
    UNKNOWN = "unknown"


# Sensor samples

@dataclass(frozen=True)
class AccelerometerSample:
    timestamp: float
    vector: np.ndarray

    def __post_init__(self):
        object.__setattr__(self, 'vector', as_vector(self.vector, 'acceleration'))


@dataclass(frozen=True)
class GyroscopeSample:
    timestamp: float
    vector: np.ndarray

    def __post_init__(self):
        object.__setattr__(self, 'vector', as_vector(self.vector, 'angular rate'))


@dataclass(frozen=True)
class MagnetometerSample:
    timestamp: float
    vector: np.ndarray

    def __post_init__(self):
        object.__setattr__(self, 'vector', as_vector(self.vector, 'magnetic field'))

    @property
    def heading_deg(self) -> float:
        """Heading from magnetic north in degrees [0, 360), device held flat."""
        heading = math.degrees(math.atan2(self.vector[0], self.vector[1]))
        return heading % 360.0


@dataclass(frozen=True)
class GnssSample:
    """A single satellite fix as reported by the receiver."""
    timestamp: float
    latitude: float
    longitude: float
    altitude: float = 0.0
    accuracy: float = 10.0
    speed: Optional[float] = None
    heading: Optional[float] = None

    def __post_init__(self):
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"Latitude out of range: {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"Longitude out of range: {self.longitude}")
        if not math.isfinite(self.accuracy) or self.accuracy < 0:
            raise ValueError(f"Accuracy must be a non-negative finite number, got {self.accuracy}")


@dataclass(frozen=True)
class RangingSample:
    """Distance to a known anchor, from UWB time of flight."""
    timestamp: float
    anchor_id: str
    distance: float
    quality: float = 0.1

    def __post_init__(self):
        if not math.isfinite(self.distance) or self.distance < 0:
            raise ValueError(f"Distance must be a non-negative finite number, got {self.distance}")


@dataclass(frozen=True)
class RssiSample:
    """Received signal strength of a BLE beacon in dBm."""
    timestamp: float
    anchor_id: str
    rssi: float


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float
    altitude: float = 0.0


# Estimates

@dataclass(frozen=True)
class SourceEstimate:
    """
    Position reported by one source for a single fusion tick.

    Attributes:
        source: Which estimator produced the position
        position: Local ENU position (m)
        accuracy_m: Expected position error (m), smaller is better
        weight: Fusion weight in [0, 1]
        timestamp: Time of the newest sample behind this estimate
        metadata: Source specific details (anchor count, residual, ...)
    """
    source: SourceType
    position: np.ndarray
    accuracy_m: float
    weight: float
    timestamp: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, 'position', np.array(self.position, dtype=float).reshape(3))
        object.__setattr__(self, 'weight', clamp_weight(self.weight))
        object.__setattr__(self, 'metadata', dict(self.metadata))

    def with_weight(self, weight: float) -> 'SourceEstimate':
        return SourceEstimate(self.source, self.position, self.accuracy_m, weight,
                              self.timestamp, self.metadata)


@dataclass(frozen=True)
class FusedPosition:
    """Output of one fusion tick."""
    position: np.ndarray
    accuracy_m: float
    confidence: float
    sources: Tuple[SourceEstimate, ...]
    indoor: bool
    platform_corrected: bool
    timestamp: float
    geo_position: Optional[GeoPoint] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def source_types(self) -> Tuple[SourceType, ...]:
        return tuple(estimate.source for estimate in self.sources)


@dataclass(frozen=True)
class MotionState:
    activity: MotionActivity
    confidence: float
    timestamp: float
    time_since_last_transition: float = 0.0


@dataclass(frozen=True)
class MotionTransition:
    previous: MotionActivity
    current: MotionActivity
    confidence: float
    timestamp: float


@dataclass(frozen=True)
class PlatformMotionState:
    """
    Attitude and heave of a moving platform (degrees, meters).

    heave_m is the signed vertical displacement at the state's time,
    heave_amplitude_m the amplitude of the heave oscillation.
    """
    roll_deg: float = 0.0
    pitch_deg: float = 0.0
    yaw_deg: float = 0.0
    heave_m: float = 0.0
    heave_amplitude_m: float = 0.0
