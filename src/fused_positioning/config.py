"""
Configuration objects for the fusion engine.

Every tunable lives in a dataclass that validates itself in __post_init__.
Invalid values raise ValueError at construction; legal but suspicious
combinations only emit a warning. Configurations can be built from plain
dictionaries (e.g. parsed JSON) with FusionConfiguration.from_dict().
"""

import json
import logging
import warnings
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


def _require_positive(owner: str, **values: float) -> None:
    for name, value in values.items():
        if value <= 0:
            raise ValueError(f"{owner}.{name} must be positive, got {value}")


@dataclass
class MotionThresholds:
    """
    Classification bands for the motion classifier.

    Acceleration variances are in g² of the gravity-compensated magnitude,
    gyroscope variances in (rad/s)², step frequencies in steps per second.
    """
    stationary_accel_var_max: float = 0.008
    stationary_gyro_var_max: float = 0.01
    stationary_step_freq_max: float = 0.5
    very_still_var_max: float = 0.005
    walking_step_freq_min: float = 1.5
    walking_step_freq_max: float = 2.1
    walking_accel_var_min: float = 0.03
    walking_accel_var_max: float = 0.08
    running_step_freq_min: float = 2.2
    running_accel_var_min: float = 0.08
    leave_stationary_accel_var_min: float = 0.035
    votes_to_enter: int = 4
    votes_to_leave_stationary: int = 6
    min_state_duration_s: float = 5.0
    window_size: int = 15
    min_samples: int = 8
    classification_interval_s: float = 0.5
    step_threshold_g: float = 0.1
    step_min_interval_s: float = 0.2
    step_window_s: float = 5.0
    step_history_s: float = 10.0

    def __post_init__(self):
        _require_positive('MotionThresholds',
                          votes_to_enter=self.votes_to_enter,
                          votes_to_leave_stationary=self.votes_to_leave_stationary,
                          window_size=self.window_size,
                          min_samples=self.min_samples,
                          step_window_s=self.step_window_s)
        if self.min_state_duration_s < 0:
            raise ValueError("MotionThresholds.min_state_duration_s must be non-negative")
        if self.min_samples > self.window_size:
            raise ValueError("min_samples cannot exceed window_size")
        if self.votes_to_leave_stationary < self.votes_to_enter:
            warnings.warn("Leaving STATIONARY needs fewer votes than entering it; "
                          "the classifier will flicker out of stationary")
        if self.walking_step_freq_max >= self.running_step_freq_min:
            warnings.warn("Walking and running step frequency bands overlap")


@dataclass
class GNSSConfiguration:
    max_speed_mps: float = 50.0
    process_noise_m: float = 3.0
    smoothing_window: int = 5
    kalman_blend: float = 0.7
    good_accuracy_m: float = 5.0
    base_weight: float = 0.5
    good_accuracy_bonus: float = 0.3
    indoor_weight_factor: float = 0.3
    staleness_s: float = 3.0
    failure_threshold: int = 5
    # (latitude, longitude, altitude) of the local frame; first fix when None
    origin: Optional[Tuple[float, float, float]] = None

    def __post_init__(self):
        _require_positive('GNSSConfiguration',
                          max_speed_mps=self.max_speed_mps,
                          process_noise_m=self.process_noise_m,
                          smoothing_window=self.smoothing_window,
                          staleness_s=self.staleness_s)
        if not 0.0 <= self.kalman_blend <= 1.0:
            raise ValueError(f"kalman_blend must be in [0, 1], got {self.kalman_blend}")
        if self.origin is not None:
            self.origin = tuple(float(v) for v in self.origin)
            if len(self.origin) == 2:
                self.origin = self.origin + (0.0,)
            if len(self.origin) != 3:
                raise ValueError("origin must be (latitude, longitude[, altitude])")


@dataclass
class InertialConfiguration:
    max_dt_s: float = 0.1
    velocity_damping: float = 0.95
    initial_confidence: float = 0.95
    min_confidence: float = 0.1
    confidence_time_constant_s: float = 10.0
    gravity: Tuple[float, float, float] = (0.0, 0.0, 9.80665)
    base_accuracy_m: float = 1.0
    accuracy_growth_mps: float = 0.2
    max_accuracy_m: float = 10.0
    staleness_s: float = 1.0
    correction_gain: float = 0.3

    def __post_init__(self):
        _require_positive('InertialConfiguration',
                          max_dt_s=self.max_dt_s,
                          confidence_time_constant_s=self.confidence_time_constant_s,
                          staleness_s=self.staleness_s)
        if not 0.0 < self.velocity_damping <= 1.0:
            raise ValueError(f"velocity_damping must be in (0, 1], got {self.velocity_damping}")
        if not 0.0 <= self.min_confidence <= self.initial_confidence <= 1.0:
            raise ValueError("Require 0 <= min_confidence <= initial_confidence <= 1")
        self.gravity = tuple(float(v) for v in self.gravity)
        if len(self.gravity) != 3:
            raise ValueError("gravity must have 3 components")


@dataclass
class RangingConfiguration:
    max_measurements: int = 4
    min_anchor_separation_m: float = 0.5
    collinearity_tolerance: float = 0.05
    centroid_epsilon: float = 0.1
    refine: bool = True
    rssi_smoothing_alpha: float = 0.3
    distance_process_noise: float = 0.01
    distance_measurement_noise: float = 0.05
    max_reading_age_s: float = 2.0
    staleness_s: float = 2.0
    min_reported_accuracy_m: float = 0.1
    reference_rssi: float = -59.0
    path_loss_exponent: float = 2.5
    rssi_relative_error: float = 0.2

    def __post_init__(self):
        if self.max_measurements < 3:
            raise ValueError("Trilateration needs at least 3 measurements per solve")
        _require_positive('RangingConfiguration',
                          centroid_epsilon=self.centroid_epsilon,
                          max_reading_age_s=self.max_reading_age_s,
                          staleness_s=self.staleness_s,
                          path_loss_exponent=self.path_loss_exponent)
        if not 0.0 < self.rssi_smoothing_alpha <= 1.0:
            raise ValueError(f"rssi_smoothing_alpha must be in (0, 1], got {self.rssi_smoothing_alpha}")


@dataclass
class PlatformConfiguration:
    length_m: float = 300.0
    width_m: float = 35.0
    height_m: float = 60.0
    roll_center_height_m: float = 0.0
    bounds_tolerance_m: float = 2.0
    heading_deg: float = 0.0
    update_interval_s: float = 2.0
    analysis_window_s: float = 30.0
    min_frequency_hz: float = 0.05
    max_frequency_hz: float = 0.5
    min_band_power_ratio: float = 0.5
    min_oscillation_accel: float = 0.05
    persistence_updates: int = 3
    deck_count: int = 12
    deck_height_m: float = 3.5
    sea_level_elevation_m: float = 0.0

    def __post_init__(self):
        _require_positive('PlatformConfiguration',
                          length_m=self.length_m,
                          width_m=self.width_m,
                          height_m=self.height_m,
                          update_interval_s=self.update_interval_s,
                          analysis_window_s=self.analysis_window_s,
                          persistence_updates=self.persistence_updates,
                          deck_count=self.deck_count,
                          deck_height_m=self.deck_height_m)
        if not 0 < self.min_frequency_hz < self.max_frequency_hz:
            raise ValueError("Platform frequency band must satisfy 0 < min < max")


_NESTED = {
    'motion': MotionThresholds,
    'gnss': GNSSConfiguration,
    'inertial': InertialConfiguration,
    'ranging': RangingConfiguration,
    'platform': PlatformConfiguration,
}


@dataclass
class FusionConfiguration:
    """
    Top level configuration of a tracking session.

    Attributes:
        max_accuracy_threshold_m: GNSS fixes reporting worse accuracy are rejected
        max_jump_distance_m: Minimum displacement treated as an implausible jump
        min_update_interval_ms: GNSS fixes closer together than this are ignored
        target_accuracy_m: Accuracy below which improvements are announced
        fusion_tick_interval_ms: Period of the fusion timer
        enable_platform_motion_compensation: Correct for ship roll/pitch/heave
    """
    max_accuracy_threshold_m: float = 15.0
    max_jump_distance_m: float = 100.0
    min_update_interval_ms: float = 100.0
    target_accuracy_m: float = 1.0
    fusion_tick_interval_ms: float = 1000.0
    burst_tick_interval_ms: float = 250.0
    burst_duration_s: float = 6.0
    enable_platform_motion_compensation: bool = False
    enable_stationary_lock: bool = True
    indoor_gnss_accuracy_threshold_m: float = 15.0
    history_size: int = 100
    sample_queue_size: int = 1024
    motion: MotionThresholds = field(default_factory=MotionThresholds)
    gnss: GNSSConfiguration = field(default_factory=GNSSConfiguration)
    inertial: InertialConfiguration = field(default_factory=InertialConfiguration)
    ranging: RangingConfiguration = field(default_factory=RangingConfiguration)
    platform: PlatformConfiguration = field(default_factory=PlatformConfiguration)

    def __post_init__(self):
        _require_positive('FusionConfiguration',
                          max_accuracy_threshold_m=self.max_accuracy_threshold_m,
                          max_jump_distance_m=self.max_jump_distance_m,
                          target_accuracy_m=self.target_accuracy_m,
                          fusion_tick_interval_ms=self.fusion_tick_interval_ms,
                          burst_tick_interval_ms=self.burst_tick_interval_ms,
                          history_size=self.history_size,
                          sample_queue_size=self.sample_queue_size)
        if self.min_update_interval_ms < 0:
            raise ValueError("min_update_interval_ms must be non-negative")
        if self.burst_tick_interval_ms > self.fusion_tick_interval_ms:
            warnings.warn("Burst tick interval is slower than the regular fusion tick")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FusionConfiguration':
        """
        Build a configuration from a (possibly partial) dictionary.

        Raises:
            ValueError: On unknown keys or invalid values
        """
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown configuration options: {sorted(unknown)}")

        kwargs = {}
        for key, value in data.items():
            nested_cls = _NESTED.get(key)
            if nested_cls is not None and isinstance(value, dict):
                nested_known = {f.name for f in fields(nested_cls)}
                nested_unknown = set(value) - nested_known
                if nested_unknown:
                    raise ValueError(f"Unknown {key} options: {sorted(nested_unknown)}")
                value = nested_cls(**value)
            kwargs[key] = value
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_configuration(path: str) -> FusionConfiguration:
    """Load a FusionConfiguration from a JSON file."""
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    logger.info(f"Loaded fusion configuration from {path}")
    return FusionConfiguration.from_dict(data)
