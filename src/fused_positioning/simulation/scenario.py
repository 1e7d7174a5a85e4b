"""
Synthetic walking scenarios for exercising the fusion engine.

A pedestrian walks a circular loop that passes through a building. Outside,
the receiver delivers good fixes; inside, fixes degrade well past the
accuracy gate and UWB anchors take over.

Trajectory:
    x(t) = R · cos(ωt)
    y(t) = R · sin(ωt)
    z(t) = 0
    ω = 2π / T, walking speed v = R · ω

Sensor Models:
    GNSS:     z = p_true + b + n,  b ~ N(0, σ_b²) per run,  n ~ N(0, σ²)
              indoors σ and the reported accuracy are multiplied by the
              indoor degradation factor
    UWB:      d = ‖p_true - a‖ + N(0, σ_r²), anchors within max_range_m only
    IMU:      a = R_z(-ψ) · a_true + [0, 0, g] + step bounce + N(0, σ_a²)   (body frame)
              ω = [0, 0, ω_heading] + N(0, σ_g²)

Each half cycle of the vertical bounce cos(π·f_step·τ) is one step impact,
so the bounce magnitude peaks once per step. The walker stands still for
standing_time_s at the start of the run, which gives the motion classifier
a stationary segment.
"""

import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np

from ..geodesy import LocalTangentPlane
from ..sensors.motion import STANDARD_GRAVITY
from ..sensors.ranging import Anchor
from ..types import (AccelerometerSample, GeoPoint, GnssSample, GyroscopeSample,
                     MagnetometerSample, RangingSample)


@dataclass
class ScenarioParameters:
    """Physical and sensor parameters of a simulated walk."""

    radius: float = 20.0                 # Loop radius [m]
    period: float = 90.0                 # Time for one loop [s]
    duration_s: float = 120.0
    standing_time_s: float = 10.0
    start_time: float = 0.0
    imu_rate_hz: float = 12.5
    gnss_rate_hz: float = 1.0
    ranging_rate_hz: float = 5.0
    gnss_noise_std: float = 1.5
    gnss_bias_std: float = 0.5
    gnss_dropout_prob: float = 0.05
    indoor_degradation: float = 10.0
    # Building footprint (x_min, x_max, y_min, y_max) in the local frame
    building: Optional[Tuple[float, float, float, float]] = (5.0, 30.0, -30.0, 30.0)
    ranging_noise_std: float = 0.1
    max_range_m: float = 40.0
    accel_noise_std: float = 0.05
    gyro_noise_std: float = 0.01
    step_frequency_hz: float = 1.8
    step_amplitude: float = 7.0          # Peak vertical step impact [m/s²]
    origin: Tuple[float, float, float] = (59.3293, 18.0686, 20.0)
    seed: int = 42

    def __post_init__(self):
        if self.radius <= 0:
            raise ValueError(f"Loop radius must be positive, got {self.radius}")
        if self.period <= 0 or self.duration_s <= 0:
            raise ValueError("Period and duration must be positive")
        if self.standing_time_s < 0 or self.standing_time_s > self.duration_s:
            raise ValueError("standing_time_s must lie within the run duration")
        for name in ('imu_rate_hz', 'gnss_rate_hz', 'ranging_rate_hz'):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")


class WalkingTrajectory:
    """Circular walking loop with an initial standing segment."""

    def __init__(self, params: Optional[ScenarioParameters] = None):
        self.params = params if params is not None else ScenarioParameters()
        self._omega = 2 * np.pi / self.params.period

    def _phase_time(self, t: float) -> float:
        """Walking time elapsed at run time t (zero while standing)."""
        return max(0.0, t - self.params.standing_time_s)

    def is_walking(self, t: float) -> bool:
        return t >= self.params.standing_time_s

    def get_position(self, t: float) -> np.ndarray:
        tau = self._phase_time(t)
        R = self.params.radius
        return np.array([R * np.cos(self._omega * tau), R * np.sin(self._omega * tau), 0.0])

    def get_velocity(self, t: float) -> np.ndarray:
        if not self.is_walking(t):
            return np.zeros(3)
        tau = self._phase_time(t)
        v = self.params.radius * self._omega
        return np.array([-v * np.sin(self._omega * tau), v * np.cos(self._omega * tau), 0.0])

    def get_acceleration(self, t: float) -> np.ndarray:
        """Centripetal acceleration; zero while standing."""
        if not self.is_walking(t):
            return np.zeros(3)
        tau = self._phase_time(t)
        a = self.params.radius * self._omega ** 2
        return np.array([-a * np.cos(self._omega * tau), -a * np.sin(self._omega * tau), 0.0])

    def get_heading_rate(self, t: float) -> float:
        return self._omega if self.is_walking(t) else 0.0

    def get_yaw(self, t: float) -> float:
        """Body yaw relative to the start of the walk (rad)."""
        return self._omega * self._phase_time(t)

    def get_speed(self) -> float:
        return self.params.radius * self._omega

    def sample_trajectory(self, num_points: int = 100) -> Dict[str, np.ndarray]:
        times = np.linspace(0.0, self.params.duration_s, num_points)
        return {
            'time': times,
            'position': np.array([self.get_position(t) for t in times]),
            'velocity': np.array([self.get_velocity(t) for t in times]),
        }

    def __repr__(self) -> str:
        return (f"WalkingTrajectory(radius={self.params.radius}m, "
                f"speed={self.get_speed():.2f}m/s)")


def default_anchors(params: Optional[ScenarioParameters] = None) -> Dict[str, Anchor]:
    """Four UWB anchors at the corners of the building footprint."""
    params = params or ScenarioParameters()
    if params.building is None:
        return {}
    x_min, x_max, y_min, y_max = params.building
    corners = [(x_min, y_min), (x_max, y_min), (x_max, y_max), (x_min, y_max)]
    return {f"uwb-{i + 1}": Anchor(f"uwb-{i + 1}", [x, y, 0.0])
            for i, (x, y) in enumerate(corners)}


class SensorSimulator:
    """Generates a time-ordered stream of noisy samples along a trajectory."""

    def __init__(self, params: Optional[ScenarioParameters] = None,
                 anchors: Optional[Dict[str, Anchor]] = None):
        self.params = params or ScenarioParameters()
        self.trajectory = WalkingTrajectory(self.params)
        self.anchors = default_anchors(self.params) if anchors is None else anchors
        self.plane = LocalTangentPlane(GeoPoint(*self.params.origin))
        self._rng = np.random.default_rng(self.params.seed)
        self._gnss_bias = self._rng.normal(0.0, self.params.gnss_bias_std, 3)
        self._gnss_bias[2] = 0.0

    def is_indoor(self, position: np.ndarray) -> bool:
        if self.params.building is None:
            return False
        x_min, x_max, y_min, y_max = self.params.building
        return x_min <= position[0] <= x_max and y_min <= position[1] <= y_max

    def _times(self, rate_hz: float) -> np.ndarray:
        count = int(self.params.duration_s * rate_hz) + 1
        return np.arange(count) / rate_hz

    def _gnss_samples(self) -> List[GnssSample]:
        samples = []
        for t in self._times(self.params.gnss_rate_hz):
            if self._rng.random() < self.params.gnss_dropout_prob:
                continue
            truth = self.trajectory.get_position(t)
            factor = self.params.indoor_degradation if self.is_indoor(truth) else 1.0
            sigma = self.params.gnss_noise_std * factor
            noise = self._rng.normal(0.0, sigma, 3)
            noise[2] *= 1.5
            measured = self.plane.to_geo(truth + self._gnss_bias + noise)
            samples.append(GnssSample(
                timestamp=self.params.start_time + t,
                latitude=measured.latitude,
                longitude=measured.longitude,
                altitude=measured.altitude,
                accuracy=2.0 * sigma,
                speed=float(np.linalg.norm(self.trajectory.get_velocity(t))),
            ))
        return samples

    def _ranging_samples(self) -> List[RangingSample]:
        samples = []
        sigma = self.params.ranging_noise_std
        for t in self._times(self.params.ranging_rate_hz):
            truth = self.trajectory.get_position(t)
            for anchor in self.anchors.values():
                distance = float(np.linalg.norm(truth - anchor.position))
                if distance > self.params.max_range_m:
                    continue
                measured = max(0.0, distance + self._rng.normal(0.0, sigma))
                samples.append(RangingSample(self.params.start_time + t, anchor.id, measured, sigma))
        return samples

    def _inertial_samples(self) -> list:
        samples = []
        p = self.params
        for t in self._times(p.imu_rate_hz):
            yaw = self.trajectory.get_yaw(t)
            world_to_body = np.array([[math.cos(yaw), math.sin(yaw), 0.0],
                                      [-math.sin(yaw), math.cos(yaw), 0.0],
                                      [0.0, 0.0, 1.0]])
            accel = world_to_body @ self.trajectory.get_acceleration(t)
            accel[2] += STANDARD_GRAVITY
            if self.trajectory.is_walking(t):
                accel[2] += p.step_amplitude * math.cos(
                    math.pi * p.step_frequency_hz * (t - p.standing_time_s))
            accel += self._rng.normal(0.0, p.accel_noise_std, 3)

            gyro = np.array([0.0, 0.0, self.trajectory.get_heading_rate(t)])
            gyro += self._rng.normal(0.0, p.gyro_noise_std, 3)

            timestamp = p.start_time + t
            samples.append(GyroscopeSample(timestamp, gyro))
            samples.append(AccelerometerSample(timestamp, accel))
        return samples

    def _magnetometer_samples(self) -> List[MagnetometerSample]:
        samples = []
        for t in self._times(1.0):
            velocity = self.trajectory.get_velocity(t)
            heading = math.atan2(velocity[0], velocity[1]) if np.any(velocity) else 0.0
            field = [50.0 * math.sin(heading), 50.0 * math.cos(heading), -30.0]
            samples.append(MagnetometerSample(self.params.start_time + t, field))
        return samples

    def generate(self) -> list:
        """All samples of the run, ordered by timestamp."""
        samples = (self._inertial_samples() + self._gnss_samples()
                   + self._ranging_samples() + self._magnetometer_samples())
        samples.sort(key=lambda s: s.timestamp)
        return samples

    def ground_truth(self, timestamps) -> np.ndarray:
        return np.array([self.trajectory.get_position(t - self.params.start_time) for t in timestamps])
