"""
Inertial dead reckoning between absolute fixes.

The estimator integrates accelerometer and gyroscope samples into position,
velocity and orientation. Dead reckoning drifts quadratically, so the
estimate is only trusted for short periods after an absolute correction.

Mathematical Model:
    Linear acceleration (local frame):
        a = R(q) · a_body - g_cal

    Position / velocity (constant acceleration over dt):
        p(k+1) = p(k) + v(k)·dt + ½·a·dt²
        v(k+1) = (v(k) + a·dt) · damping^dt       (damping per second)

    Orientation (quaternion, scalar first):
        θ = |ω|·dt
        Δq = [cos(θ/2), (ω/|ω|)·sin(θ/2)]
        q(k+1) = normalize(q(k) ⊗ Δq)

    Confidence after the last absolute correction at t_c:
        c(t) = max(c_min, c_c · exp(-(t - t_c) / τ))

Samples whose dt falls outside (0, max_dt] are skipped: a long gap means the
constant-acceleration assumption no longer holds.
"""

import logging
import math
import threading
from dataclasses import dataclass
from typing import Iterable, Optional

import numpy as np

from ..config import InertialConfiguration
from ..types import SourceEstimate, SourceType, as_vector

logger = logging.getLogger(__name__)

IDENTITY_QUATERNION = np.array([1.0, 0.0, 0.0, 0.0])


def quaternion_multiply(q1: np.ndarray, q2: np.ndarray) -> np.ndarray:
    """Hamilton product q1 ⊗ q2 of two scalar-first quaternions."""
    w1, x1, y1, z1 = q1
    w2, x2, y2, z2 = q2
    return np.array([
        w1 * w2 - x1 * x2 - y1 * y2 - z1 * z2,
        w1 * x2 + x1 * w2 + y1 * z2 - z1 * y2,
        w1 * y2 - x1 * z2 + y1 * w2 + z1 * x2,
        w1 * z2 + x1 * y2 - y1 * x2 + z1 * w2,
    ])


def quaternion_from_rotation_vector(omega: np.ndarray, dt: float) -> np.ndarray:
    rate = float(np.linalg.norm(omega))
    angle = rate * dt
    if angle < 1e-12:
        return IDENTITY_QUATERNION.copy()
    axis = omega / rate
    return np.concatenate([[math.cos(angle / 2.0)], axis * math.sin(angle / 2.0)])


def quaternion_to_rotation_matrix(q: np.ndarray) -> np.ndarray:
    w, x, y, z = q
    return np.array([
        [1 - 2 * (y * y + z * z), 2 * (x * y - w * z), 2 * (x * z + w * y)],
        [2 * (x * y + w * z), 1 - 2 * (x * x + z * z), 2 * (y * z - w * x)],
        [2 * (x * z - w * y), 2 * (y * z + w * x), 1 - 2 * (x * x + y * y)],
    ])


@dataclass(frozen=True)
class InertialPose:
    position: np.ndarray
    velocity: np.ndarray
    orientation: np.ndarray
    confidence: float
    timestamp: Optional[float]


class InertialEstimator:
    """
    Dead-reckoning estimator with time-decaying confidence.

    The estimator only contributes to fusion once it has been anchored, either
    by reset(position) or by its first absolute correction.
    """

    def __init__(self, config: Optional[InertialConfiguration] = None):
        self.config = config or InertialConfiguration()
        self._lock = threading.Lock()
        self._gravity = np.array(self.config.gravity, dtype=float)
        self.reset()

    def reset(self, position: Optional[np.ndarray] = None,
              timestamp: Optional[float] = None) -> None:
        """
        Clear the integrated state.

        Args:
            position: Known starting position; the estimator stays unanchored when None
            timestamp: Time the starting position refers to
        """
        with self._lock:
            self._position = np.zeros(3) if position is None else as_vector(position, 'position')
            self._velocity = np.zeros(3)
            self._orientation = IDENTITY_QUATERNION.copy()
            self._anchored = position is not None
            self._last_sample_ts: Optional[float] = None
            self._correction_ts: Optional[float] = timestamp
            self._correction_confidence = self.config.initial_confidence
            self.rejected_samples = 0
            self.integrated_samples = 0

    def calibrate_gravity(self, samples: Iterable) -> np.ndarray:
        """
        Estimate the at-rest accelerometer reading from stationary samples.

        Args:
            samples: Accelerometer vectors recorded while the device is still

        Returns:
            The calibrated gravity vector
        """
        vectors = np.array([as_vector(s, 'acceleration') for s in samples])
        if len(vectors) == 0:
            raise ValueError("Gravity calibration needs at least one sample")
        with self._lock:
            self._gravity = vectors.mean(axis=0)
            gravity = self._gravity.copy()
        logger.info(f"Gravity calibrated to {gravity} from {len(vectors)} samples")
        return gravity

    @property
    def gravity(self) -> np.ndarray:
        return self._gravity.copy()

    def integrate(self, accel, gyro, dt: float,
                  timestamp: Optional[float] = None) -> InertialPose:
        """
        Integrate one accelerometer/gyroscope pair.

        Args:
            accel: Body frame specific force (m/s²)
            gyro: Body frame angular rate (rad/s); None means no rotation
            dt: Time since the previous sample (s)
            timestamp: Sample time; derived from the previous sample when None

        Returns:
            The pose after integration, or the unchanged pose for a rejected dt
        """
        accel = as_vector(accel, 'acceleration')
        gyro = np.zeros(3) if gyro is None else as_vector(gyro, 'angular rate')

        with self._lock:
            if not math.isfinite(dt) or dt <= 0.0 or dt > self.config.max_dt_s:
                self.rejected_samples += 1
                logger.debug(f"Inertial sample skipped: dt={dt:.4f}s outside "
                             f"(0, {self.config.max_dt_s}]")
                return self._pose_locked(self._last_sample_ts)

            if timestamp is None:
                timestamp = dt if self._last_sample_ts is None else self._last_sample_ts + dt
            if self._correction_ts is None:
                self._correction_ts = timestamp - dt

            rotation = quaternion_to_rotation_matrix(self._orientation)
            linear = rotation @ accel - self._gravity

            self._position = self._position + self._velocity * dt + 0.5 * linear * dt * dt
            self._velocity = (self._velocity + linear * dt) * self.config.velocity_damping ** dt

            delta = quaternion_from_rotation_vector(gyro, dt)
            orientation = quaternion_multiply(self._orientation, delta)
            self._orientation = orientation / np.linalg.norm(orientation)

            self._last_sample_ts = timestamp
            self.integrated_samples += 1
            return self._pose_locked(timestamp)

    def correct(self, absolute_position, trust_weight: float,
                timestamp: Optional[float] = None) -> None:
        """
        Pull the estimate toward an absolute position.

        The first correction anchors the estimator at the given position.
        Later corrections move it by trust_weight of the discrepancy and
        restore confidence in proportion to trust_weight.
        """
        target = as_vector(absolute_position, 'position')
        trust = float(np.clip(trust_weight, 0.0, 1.0))

        with self._lock:
            if timestamp is None:
                timestamp = self._last_sample_ts if self._last_sample_ts is not None else 0.0
            ceiling = self.config.initial_confidence

            if not self._anchored:
                self._position = target
                self._velocity = np.zeros(3)
                self._anchored = True
                self._correction_confidence = ceiling
                logger.info(f"Inertial estimator anchored at {target}")
            else:
                discrepancy = target - self._position
                if self._correction_ts is not None and timestamp > self._correction_ts:
                    # Persistent discrepancy means the velocity estimate is off
                    self._velocity = self._velocity + trust * discrepancy / (timestamp - self._correction_ts)
                self._position = self._position + trust * discrepancy
                current = self._confidence_locked(timestamp)
                self._correction_confidence = min(ceiling, current + trust * (ceiling - current))
            self._correction_ts = timestamp

    def _confidence_locked(self, now: Optional[float]) -> float:
        if now is None or self._correction_ts is None:
            return self._correction_confidence
        elapsed = max(0.0, now - self._correction_ts)
        decayed = self._correction_confidence * math.exp(-elapsed / self.config.confidence_time_constant_s)
        return max(self.config.min_confidence, decayed)

    def confidence(self, now: Optional[float] = None) -> float:
        with self._lock:
            return self._confidence_locked(self._last_sample_ts if now is None else now)

    def accuracy(self, now: Optional[float] = None) -> float:
        """Expected position error (m), growing with time since the last correction."""
        with self._lock:
            now = self._last_sample_ts if now is None else now
            if now is None or self._correction_ts is None:
                return self.config.base_accuracy_m
            elapsed = max(0.0, now - self._correction_ts)
            return min(self.config.max_accuracy_m,
                       self.config.base_accuracy_m + self.config.accuracy_growth_mps * elapsed)

    def _pose_locked(self, timestamp: Optional[float]) -> InertialPose:
        return InertialPose(self._position.copy(), self._velocity.copy(),
                            self._orientation.copy(),
                            self._confidence_locked(timestamp), timestamp)

    def pose(self) -> InertialPose:
        with self._lock:
            return self._pose_locked(self._last_sample_ts)

    @property
    def is_anchored(self) -> bool:
        return self._anchored

    def latest_estimate(self, now: Optional[float] = None) -> Optional[SourceEstimate]:
        """Fusion input from the current pose; None until anchored and fed samples."""
        with self._lock:
            if not self._anchored or self._last_sample_ts is None:
                return None
            position = self._position.copy()
            sample_ts = self._last_sample_ts
        now = sample_ts if now is None else now
        return SourceEstimate(
            source=SourceType.INERTIAL,
            position=position,
            accuracy_m=self.accuracy(now),
            weight=self.confidence(now),
            timestamp=sample_ts,
            metadata={'rejected_samples': self.rejected_samples},
        )
