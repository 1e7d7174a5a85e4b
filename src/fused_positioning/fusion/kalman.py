"""
Lightweight Kalman filtering for noisy position streams.

The fusion engine smooths every positioning stream with a random-walk Kalman
filter. The state is the quantity itself (a scalar, or a short vector such as
latitude/longitude) and a single scalar error covariance shared by all of its
components.

Mathematical Model:
    Process:      x(k) = x(k-1) + w(k),     w ~ N(0, Q)
    Measurement:  z(k) = x(k) + v(k),       v ~ N(0, R)

Recursion:
    Predict:  P⁻ = P + Q
    Gain:     K  = P⁻ / (P⁻ + R)
    Update:   x  = x + K·(z - x)
              P  = (1 - K)·P⁻

Seeding:
    The first measurement after construction or reset() is returned unchanged
    and becomes the estimate; P is seeded with its measurement noise.

Properties:
    - P ≥ 0 at all times, and P strictly decreases for repeated updates
      until it reaches the steady state P* = (-Q + sqrt(Q² + 4QR)) / 2
    - Identical input sequences produce identical outputs

The GNSS source additionally blends the Kalman output with a linearly
weighted moving average (MovingAverageFilter) to suppress residual jitter.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Optional, Union

import numpy as np

logger = logging.getLogger(__name__)

Measurement = Union[float, np.ndarray]

# Roughly meters per degree of latitude, used to express GNSS noise in degrees
_METERS_PER_DEGREE = 1e5


@dataclass(frozen=True)
class FilterState:
    """Snapshot of a filter; estimate is None while uninitialized."""
    estimate: Optional[np.ndarray]
    error_covariance: float
    last_update_ts: Optional[float]

    @property
    def initialized(self) -> bool:
        return self.estimate is not None


class ScalarKalmanFilter:
    """
    Random-walk Kalman filter for 1D and 2D measurements.

    Vector measurements are filtered component-wise with one shared covariance,
    which is the right model when every component carries the same noise (for
    example latitude and longitude from one receiver fix).
    """

    def __init__(self,
                 process_noise: float = 3.0,
                 measurement_noise: float = 10.0,
                 initial_covariance: float = 100.0):
        """
        Args:
            process_noise: Q, covariance added on every predict step
            measurement_noise: Default R when update() receives none
            initial_covariance: P used when seeding without a measurement noise

        Raises:
            ValueError: If any noise parameter is negative
        """
        if process_noise < 0 or measurement_noise < 0 or initial_covariance < 0:
            raise ValueError("Kalman noise parameters must be non-negative")

        self.process_noise = float(process_noise)
        self.measurement_noise = float(measurement_noise)
        self.initial_covariance = float(initial_covariance)

        self._lock = threading.Lock()
        self._estimate: Optional[np.ndarray] = None
        self._covariance = self.initial_covariance
        self._last_update_ts: Optional[float] = None
        self._scalar = True

    def update(self,
               measurement: Measurement,
               measurement_noise: Optional[float] = None,
               timestamp: Optional[float] = None) -> Measurement:
        """
        Fold one measurement into the estimate.

        Args:
            measurement: Scalar or 1-D array of the measured quantity
            measurement_noise: R for this measurement, filter default when None
            timestamp: Time of the measurement, kept for bookkeeping

        Returns:
            The updated estimate, same shape as the measurement
        """
        z = np.atleast_1d(np.asarray(measurement, dtype=float)).copy()
        r = self.measurement_noise if measurement_noise is None else float(measurement_noise)
        if r < 0:
            raise ValueError(f"Measurement noise must be non-negative, got {r}")

        with self._lock:
            if self._estimate is None or self._estimate.shape != z.shape:
                # Seed from the first measurement
                self._estimate = z
                self._covariance = r if measurement_noise is not None else self.initial_covariance
                self._scalar = np.ndim(measurement) == 0
                self._last_update_ts = timestamp
                logger.debug(f"Kalman filter seeded with {z}")
                return self._output(z)

            predicted_covariance = self._covariance + self.process_noise
            denominator = predicted_covariance + r
            gain = predicted_covariance / denominator if denominator > 0 else 1.0

            self._estimate = self._estimate + gain * (z - self._estimate)
            self._covariance = max(0.0, (1.0 - gain) * predicted_covariance)
            self._last_update_ts = timestamp
            return self._output(self._estimate)

    def _output(self, value: np.ndarray) -> Measurement:
        if self._scalar:
            return float(value[0])
        return value.copy()

    def reset(self) -> None:
        """Return to the uninitialized state."""
        with self._lock:
            self._estimate = None
            self._covariance = self.initial_covariance
            self._last_update_ts = None

    @property
    def state(self) -> FilterState:
        with self._lock:
            estimate = None if self._estimate is None else self._estimate.copy()
            return FilterState(estimate, self._covariance, self._last_update_ts)

    @property
    def initialized(self) -> bool:
        with self._lock:
            return self._estimate is not None

    def steady_state_covariance(self, measurement_noise: Optional[float] = None) -> float:
        """Fixed point P* of the covariance recursion for a constant R."""
        q = self.process_noise
        r = self.measurement_noise if measurement_noise is None else measurement_noise
        return float((-q + np.sqrt(q * q + 4.0 * q * r)) / 2.0)

    def __repr__(self) -> str:
        return (f"ScalarKalmanFilter(Q={self.process_noise}, R={self.measurement_noise}, "
                f"P={self._covariance:.4g})")


class GeoKalmanFilter:
    """
    Latitude/longitude smoother with noise scaled by the reported accuracy.

    Noise is expressed in squared degrees: R = (accuracy_m / 1e5)² and
    Q = (process_noise_m / 1e5)².
    """

    def __init__(self, process_noise_m: float = 3.0):
        self.process_noise_m = process_noise_m
        self._filter = ScalarKalmanFilter(
            process_noise=(process_noise_m / _METERS_PER_DEGREE) ** 2,
            measurement_noise=(10.0 / _METERS_PER_DEGREE) ** 2,
            initial_covariance=(100.0 / _METERS_PER_DEGREE) ** 2,
        )

    def update(self, latitude: float, longitude: float, accuracy_m: float,
               timestamp: Optional[float] = None) -> np.ndarray:
        noise = (max(accuracy_m, 0.0) / _METERS_PER_DEGREE) ** 2
        return self._filter.update(np.array([latitude, longitude]), noise, timestamp)

    def reset(self) -> None:
        self._filter.reset()

    @property
    def state(self) -> FilterState:
        return self._filter.state


class MovingAverageFilter:
    """
    Linearly weighted moving average over the last N samples.

    Sample i of n (oldest first) receives weight i + 1, so the newest sample
    counts n times as much as the oldest.
    """

    def __init__(self, window_size: int = 5):
        if window_size <= 0:
            raise ValueError(f"window_size must be positive, got {window_size}")
        self.window_size = window_size
        self._samples = deque(maxlen=window_size)

    def update(self, value: Measurement) -> np.ndarray:
        self._samples.append(np.atleast_1d(np.asarray(value, dtype=float)))
        stacked = np.vstack(self._samples)
        weights = np.arange(1, len(self._samples) + 1, dtype=float)
        return weights @ stacked / weights.sum()

    def reset(self) -> None:
        self._samples.clear()

    def __len__(self) -> int:
        return len(self._samples)
