"""
Short-range radio positioning against fixed anchors (BLE beacons, UWB).

Distances to anchors at known positions are turned into a position by
trilateration. UWB radios report time-of-flight distances directly; BLE
beacons report signal strength, converted with the log-distance path loss
model:

    d = 10^((RSSI_ref - RSSI) / (10 · n)),   d ≥ 0.1 m

where RSSI_ref is the calibrated signal strength at 1 m and n the path loss
exponent of the environment (2 in free space, 2.5-4 indoors).

Trilateration:
    1. keep the N measurements with the smallest expected error (quality)
    2. reject geometry with fewer than 3 anchors, anchors closer than the
       minimum separation, or near-collinear anchors
    3. weighted centroid of the anchors, w_i = 1 / (quality_i + ε)
    4. refine by weighted least squares on the range residuals
           min_x Σ w_i (‖x - a_i‖ - d_i)²
    5. residual error r = Σ w_i |‖x - a_i‖ - d_i| / Σ w_i
       confidence = clip(1 / (1 + r), 0.1, 0.9)
"""

import logging
import math
import threading
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np
from scipy.optimize import least_squares
from scipy.spatial.distance import pdist

from ..config import RangingConfiguration
from ..fusion.kalman import ScalarKalmanFilter
from ..types import RangingSample, RssiSample, SourceEstimate, SourceType, as_vector

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnchorCalibration:
    reference_rssi: float = -59.0
    path_loss_exponent: float = 2.5


@dataclass(frozen=True)
class Anchor:
    """A fixed radio transmitter at a surveyed local position."""
    id: str
    position: np.ndarray
    calibration: AnchorCalibration = field(default_factory=AnchorCalibration)
    kind: str = 'uwb'

    def __post_init__(self):
        object.__setattr__(self, 'position', as_vector(self.position, f"anchor {self.id} position"))
        if self.kind not in ('ble', 'uwb'):
            raise ValueError(f"Unknown anchor kind '{self.kind}', expected 'ble' or 'uwb'")


@dataclass(frozen=True)
class RangingMeasurement:
    """Distance to one anchor; quality is the expected ranging error in meters."""
    anchor_id: str
    distance: float
    quality: float = 0.1


@dataclass(frozen=True)
class TrilaterationResult:
    position: np.ndarray
    residual_error: float
    confidence: float
    used_anchors: Tuple[str, ...]
    method: str
    hdop: float
    quality_rating: str
    # Timestamp of the newest measurement, filled in by RangingSource
    timestamp: Optional[float] = None


def rssi_to_distance(rssi: float, reference_rssi: float = -59.0,
                     path_loss_exponent: float = 2.5) -> float:
    """Log-distance path loss model, floored at 0.1 m."""
    distance = 10.0 ** ((reference_rssi - rssi) / (10.0 * path_loss_exponent))
    return max(0.1, distance)


def classify_proximity(distance: float) -> str:
    if distance < 0.5:
        return 'immediate'
    if distance < 3.0:
        return 'near'
    if distance < 10.0:
        return 'far'
    return 'unknown'


def rate_residual(residual_error: float) -> str:
    if residual_error < 0.1:
        return 'excellent'
    if residual_error < 0.3:
        return 'good'
    if residual_error < 0.5:
        return 'fair'
    return 'poor'


def horizontal_dilution_of_precision(position: np.ndarray, anchor_positions: np.ndarray) -> float:
    """
    HDOP of a range-only fix.

    Rows of the geometry matrix are the horizontal components of the unit
    vectors from each anchor to the position; HDOP = sqrt(trace((GᵀG)⁻¹)).
    """
    offsets = position - anchor_positions
    ranges = np.linalg.norm(offsets, axis=1)
    usable = ranges > 1e-9
    if np.count_nonzero(usable) < 2:
        return math.inf
    geometry = (offsets[usable] / ranges[usable, None])[:, :2]
    try:
        covariance = np.linalg.inv(geometry.T @ geometry)
    except np.linalg.LinAlgError:
        return math.inf
    trace = float(np.trace(covariance))
    return math.sqrt(trace) if trace > 0 else math.inf


def trilateration_weight(anchor_count: int, residual_error: float) -> float:
    """Fusion weight: rises with anchor count, falls with residual error."""
    return min(1.0, anchor_count / 4.0) / (1.0 + max(0.0, residual_error))


class TrilaterationSolver:
    """Position from distances to three or more known anchors."""

    def __init__(self, anchors: Mapping[str, Anchor],
                 config: Optional[RangingConfiguration] = None):
        self.anchors = dict(anchors)
        self.config = config or RangingConfiguration()

    def solve(self, measurements: Iterable[RangingMeasurement]) -> Optional[TrilaterationResult]:
        """
        Trilaterate a position.

        Returns:
            The solution, or None for insufficient or degenerate geometry
        """
        best: Dict[str, RangingMeasurement] = {}
        for m in measurements:
            if m.anchor_id not in self.anchors:
                logger.debug(f"Measurement for unknown anchor '{m.anchor_id}' ignored")
                continue
            if not (math.isfinite(m.distance) and m.distance >= 0 and math.isfinite(m.quality)):
                continue
            if m.anchor_id not in best or m.quality < best[m.anchor_id].quality:
                best[m.anchor_id] = m

        selected = sorted(best.values(), key=lambda m: m.quality)[:self.config.max_measurements]
        if len(selected) < 3:
            logger.debug(f"Trilateration needs 3 anchors, have {len(selected)}")
            return None

        anchor_positions = np.array([self.anchors[m.anchor_id].position for m in selected])
        if not self._geometry_ok(anchor_positions):
            return None

        distances = np.array([m.distance for m in selected])
        weights = 1.0 / (np.array([max(0.0, m.quality) for m in selected]) + self.config.centroid_epsilon)

        position = weights @ anchor_positions / weights.sum()
        method = 'weighted_centroid'
        residual = self._residual_error(position, anchor_positions, distances, weights)

        if self.config.refine:
            refined = self._refine(position, anchor_positions, distances, weights)
            if refined is not None:
                refined_residual = self._residual_error(refined, anchor_positions, distances, weights)
                if refined_residual <= residual:
                    position, residual, method = refined, refined_residual, 'least_squares'

        confidence = float(np.clip(1.0 / (1.0 + residual), 0.1, 0.9))
        return TrilaterationResult(
            position=position,
            residual_error=residual,
            confidence=confidence,
            used_anchors=tuple(m.anchor_id for m in selected),
            method=method,
            hdop=horizontal_dilution_of_precision(position, anchor_positions),
            quality_rating=rate_residual(residual),
        )

    def _geometry_ok(self, anchor_positions: np.ndarray) -> bool:
        separations = pdist(anchor_positions)
        if separations.min() < self.config.min_anchor_separation_m:
            logger.debug(f"Degenerate geometry: anchors only {separations.min():.2f}m apart")
            return False

        singular_values = np.linalg.svd(anchor_positions - anchor_positions.mean(axis=0),
                                        compute_uv=False)
        if singular_values[0] <= 0 or singular_values[1] < self.config.collinearity_tolerance * singular_values[0]:
            logger.debug("Degenerate geometry: anchors are collinear")
            return False
        return True

    @staticmethod
    def _residual_error(position: np.ndarray, anchor_positions: np.ndarray,
                        distances: np.ndarray, weights: np.ndarray) -> float:
        errors = np.abs(np.linalg.norm(anchor_positions - position, axis=1) - distances)
        return float(weights @ errors / weights.sum())

    @staticmethod
    def _refine(seed: np.ndarray, anchor_positions: np.ndarray,
                distances: np.ndarray, weights: np.ndarray) -> Optional[np.ndarray]:
        sqrt_weights = np.sqrt(weights)

        def residuals(x):
            return sqrt_weights * (np.linalg.norm(anchor_positions - x, axis=1) - distances)

        def jacobian(x):
            offsets = x - anchor_positions
            ranges = np.maximum(np.linalg.norm(offsets, axis=1), 1e-12)
            return sqrt_weights[:, None] * offsets / ranges[:, None]

        result = least_squares(residuals, seed, jac=jacobian, xtol=1e-12, ftol=1e-12, gtol=1e-12)
        if not result.success or not np.all(np.isfinite(result.x)):
            logger.debug(f"Least squares refinement failed: {result.message}")
            return None
        return result.x


@dataclass
class _AnchorReading:
    distance: float
    quality: float
    timestamp: float
    rssi: Optional[float] = None


class RangingSource:
    """
    Per-anchor ranging state feeding the trilateration solver.

    UWB distances are smoothed by one ScalarKalmanFilter per anchor; BLE
    signal strengths by an exponential moving average before the path loss
    conversion. Readings older than max_reading_age_s are dropped together
    with their smoothing state.
    """

    def __init__(self, anchors: Mapping[str, Anchor],
                 config: Optional[RangingConfiguration] = None):
        self.config = config or RangingConfiguration()
        self.anchors = dict(anchors)
        self.solver = TrilaterationSolver(self.anchors, self.config)

        self._lock = threading.Lock()
        self._readings: Dict[str, _AnchorReading] = {}
        self._distance_filters: Dict[str, ScalarKalmanFilter] = {}
        self._smoothed_rssi: Dict[str, float] = {}
        self._last_result: Optional[TrilaterationResult] = None

    def add_ranging(self, sample: RangingSample) -> Optional[float]:
        """
        Record a UWB distance.

        Returns:
            The smoothed distance, or None for an unknown anchor
        """
        if sample.anchor_id not in self.anchors:
            logger.debug(f"Ranging sample for unknown anchor '{sample.anchor_id}' ignored")
            return None

        with self._lock:
            self._expire_if_stale(sample.anchor_id, sample.timestamp)
            kalman = self._distance_filters.get(sample.anchor_id)
            if kalman is None:
                kalman = ScalarKalmanFilter(process_noise=self.config.distance_process_noise,
                                            measurement_noise=self.config.distance_measurement_noise)
                self._distance_filters[sample.anchor_id] = kalman
            noise = max(sample.quality, 0.01) ** 2
            distance = kalman.update(sample.distance, noise, sample.timestamp)
            self._readings[sample.anchor_id] = _AnchorReading(distance, sample.quality, sample.timestamp)
            return distance

    def add_rssi(self, sample: RssiSample) -> Optional[float]:
        """
        Record a BLE signal strength reading.

        Returns:
            The distance derived from the smoothed RSSI, or None for an unknown anchor
        """
        anchor = self.anchors.get(sample.anchor_id)
        if anchor is None:
            logger.debug(f"RSSI sample for unknown beacon '{sample.anchor_id}' ignored")
            return None

        with self._lock:
            self._expire_if_stale(sample.anchor_id, sample.timestamp)
            previous = self._smoothed_rssi.get(sample.anchor_id)
            alpha = self.config.rssi_smoothing_alpha
            rssi = sample.rssi if previous is None else alpha * sample.rssi + (1.0 - alpha) * previous
            self._smoothed_rssi[sample.anchor_id] = rssi

            distance = rssi_to_distance(rssi, anchor.calibration.reference_rssi,
                                        anchor.calibration.path_loss_exponent)
            quality = distance * self.config.rssi_relative_error
            self._readings[sample.anchor_id] = _AnchorReading(distance, quality, sample.timestamp, rssi)
            return distance

    def _expire_if_stale(self, anchor_id: str, now: float) -> None:
        reading = self._readings.get(anchor_id)
        if reading is not None and now - reading.timestamp > self.config.max_reading_age_s:
            self._drop(anchor_id)

    def _drop(self, anchor_id: str) -> None:
        self._readings.pop(anchor_id, None)
        self._distance_filters.pop(anchor_id, None)
        self._smoothed_rssi.pop(anchor_id, None)

    def measurements(self, now: Optional[float] = None) -> List[RangingMeasurement]:
        """Fresh measurements; stale anchors are dropped as a side effect."""
        with self._lock:
            if now is not None:
                stale = [anchor_id for anchor_id, reading in self._readings.items()
                         if now - reading.timestamp > self.config.max_reading_age_s]
                for anchor_id in stale:
                    logger.debug(f"Dropping stale reading from anchor '{anchor_id}'")
                    self._drop(anchor_id)
            return [RangingMeasurement(anchor_id, r.distance, r.quality)
                    for anchor_id, r in self._readings.items()]

    def proximity(self) -> Dict[str, str]:
        with self._lock:
            return {anchor_id: classify_proximity(r.distance) for anchor_id, r in self._readings.items()}

    def solve(self, now: Optional[float] = None) -> Optional[TrilaterationResult]:
        measurements = self.measurements(now)
        result = self.solver.solve(measurements)
        if result is not None:
            with self._lock:
                newest = max((self._readings[a].timestamp for a in result.used_anchors
                              if a in self._readings), default=now)
            result = replace(result, timestamp=newest)
        with self._lock:
            self._last_result = result
        return result

    def latest_estimate(self, now: Optional[float] = None) -> Optional[SourceEstimate]:
        """Trilaterate from the fresh readings and wrap the result as a fusion input."""
        result = self.solve(now)
        if result is None:
            return None
        anchor_count = len(result.used_anchors)
        return SourceEstimate(
            source=SourceType.TRILATERATION,
            position=result.position,
            accuracy_m=max(result.residual_error, self.config.min_reported_accuracy_m),
            weight=trilateration_weight(anchor_count, result.residual_error),
            timestamp=result.timestamp,
            metadata={
                'anchor_count': anchor_count,
                'residual_error': result.residual_error,
                'hdop': result.hdop,
                'method': result.method,
                'quality_rating': result.quality_rating,
            },
        )

    @property
    def last_result(self) -> Optional[TrilaterationResult]:
        with self._lock:
            return self._last_result

    def coverage(self) -> float:
        """Share of the four anchors a full-quality solve uses that are currently heard."""
        with self._lock:
            return min(1.0, len(self._readings) / 4.0)

    def reset(self) -> None:
        with self._lock:
            self._readings.clear()
            self._distance_filters.clear()
            self._smoothed_rssi.clear()
            self._last_result = None
