"""
GNSS positioning source.

Turns raw receiver fixes into filtered local positions. Every fix goes
through three gates before it reaches the filters:

    1. Rate gate:     fixes closer than min_update_interval_ms to the last
                      accepted fix are ignored
    2. Accuracy gate: accuracy > max_accuracy_threshold_m is rejected
    3. Jump gate:     haversine(last, new) > max(max_jump_distance_m, Δt · v_max)
                      is rejected as physically implausible

Rejected fixes increment the consecutive bad-reading counter kept in
SensorHealth; an accepted fix resets it. When the jump gate has rejected
failure_threshold fixes in a row, the source assumes its reference itself was
wrong and re-seeds from the new fix.

The accuracy the receiver last reported is kept even when the fix is
rejected, so the coordinator sees a degrading receiver before the last good
fix goes stale.

Accepted fixes are smoothed by a GeoKalmanFilter and a weighted moving
average, blended as:

    filtered = kalman_blend · kalman + (1 - kalman_blend) · moving_average

Fusion Weight:
    w = min(1, base + bonus · [accuracy < good_accuracy_m])
    w = w · indoor_weight_factor   while the coordinator is in indoor mode
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional

import numpy as np

from ..config import FusionConfiguration
from ..fusion.kalman import GeoKalmanFilter, MovingAverageFilter
from ..geodesy import LocalTangentPlane, haversine_distance
from ..types import GeoPoint, GnssSample, SourceEstimate, SourceType
from .health import SensorHealth

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GnssFix:
    """An accepted, filtered GNSS fix."""
    sample: GnssSample
    filtered: GeoPoint
    position: np.ndarray
    accuracy_m: float
    confidence: float

    @property
    def timestamp(self) -> float:
        return self.sample.timestamp


def gnss_weight(accuracy_m: float, indoor: bool, config: FusionConfiguration) -> float:
    """Fusion weight of a GNSS estimate."""
    gnss = config.gnss
    weight = gnss.base_weight
    if accuracy_m < gnss.good_accuracy_m:
        weight += gnss.good_accuracy_bonus
    if indoor:
        weight *= gnss.indoor_weight_factor
    return min(1.0, max(0.0, weight))


class GNSSSource:
    """Gated and filtered GNSS fixes expressed in the local frame."""

    def __init__(self, config: Optional[FusionConfiguration] = None):
        self.config = config or FusionConfiguration()
        self.health = SensorHealth(failure_threshold=self.config.gnss.failure_threshold)

        self._lock = threading.Lock()
        self._kalman = GeoKalmanFilter(self.config.gnss.process_noise_m)
        self._moving_average = MovingAverageFilter(self.config.gnss.smoothing_window)
        self._last_fix: Optional[GnssFix] = None
        self._plane: Optional[LocalTangentPlane] = None
        if self.config.gnss.origin is not None:
            self._plane = LocalTangentPlane(GeoPoint(*self.config.gnss.origin))

        self._reported_accuracy: Optional[float] = None
        self.ignored_count = 0

    @property
    def plane(self) -> Optional[LocalTangentPlane]:
        return self._plane

    def set_origin(self, origin: GeoPoint) -> None:
        """Fix the local frame origin; positions of later fixes are relative to it."""
        with self._lock:
            self._plane = LocalTangentPlane(origin)
        logger.info(f"Local frame origin set to {origin}")

    def process(self, sample: GnssSample) -> Optional[GnssFix]:
        """
        Gate, filter and project one receiver fix.

        Returns:
            The accepted fix, or None when the fix was ignored or rejected
        """
        with self._lock:
            last = self._last_fix
            if last is not None:
                elapsed = sample.timestamp - last.timestamp
                if elapsed * 1000.0 < self.config.min_update_interval_ms:
                    self.ignored_count += 1
                    logger.debug(f"GNSS fix ignored, {elapsed * 1000.0:.0f}ms after previous")
                    return None

            self._reported_accuracy = sample.accuracy

            if sample.accuracy > self.config.max_accuracy_threshold_m:
                self.health.record_failure('accuracy')
                logger.warning(f"GNSS fix rejected: accuracy {sample.accuracy:.1f}m exceeds "
                               f"{self.config.max_accuracy_threshold_m:.1f}m "
                               f"({self.health.consecutive_failures} consecutive)")
                return None

            if last is not None and self._is_jump(last, sample):
                if self.health.consecutive_failures + 1 >= self.config.gnss.failure_threshold:
                    logger.warning("Repeated GNSS jumps, re-seeding filters from latest fix")
                    self._kalman.reset()
                    self._moving_average.reset()
                else:
                    self.health.record_failure('jump')
                    return None

            self.health.record_success(sample.timestamp)
            fix = self._filter(sample)
            self._last_fix = fix
            return fix

    def _is_jump(self, last: GnssFix, sample: GnssSample) -> bool:
        distance = haversine_distance(last.sample.latitude, last.sample.longitude,
                                      sample.latitude, sample.longitude)
        elapsed = max(0.0, sample.timestamp - last.timestamp)
        limit = max(self.config.max_jump_distance_m, elapsed * self.config.gnss.max_speed_mps)
        if distance > limit:
            logger.warning(f"GNSS fix rejected: jump of {distance:.1f}m in {elapsed:.1f}s "
                           f"(limit {limit:.1f}m)")
            return True
        return False

    def _filter(self, sample: GnssSample) -> GnssFix:
        kalman = self._kalman.update(sample.latitude, sample.longitude, sample.accuracy,
                                     sample.timestamp)
        average = self._moving_average.update([sample.latitude, sample.longitude])
        blend = self.config.gnss.kalman_blend
        latitude, longitude = blend * kalman + (1.0 - blend) * average

        filtered = GeoPoint(float(latitude), float(longitude), sample.altitude)
        if self._plane is None:
            self._plane = LocalTangentPlane(GeoPoint(sample.latitude, sample.longitude,
                                                     sample.altitude))
            logger.info(f"Local frame origin seeded from first GNSS fix: {self._plane.origin}")

        threshold = self.config.max_accuracy_threshold_m
        confidence = max(0.1, min(1.0, 1.0 - sample.accuracy / threshold))
        return GnssFix(sample, filtered, self._plane.to_local(filtered),
                       sample.accuracy, confidence)

    @property
    def reported_accuracy(self) -> Optional[float]:
        """Accuracy of the newest fix that passed the rate gate, accepted or not."""
        with self._lock:
            return self._reported_accuracy

    @property
    def last_fix(self) -> Optional[GnssFix]:
        with self._lock:
            return self._last_fix

    def latest_estimate(self, indoor: bool = False) -> Optional[SourceEstimate]:
        """Snapshot of the newest accepted fix as a fusion input."""
        with self._lock:
            fix = self._last_fix
            reported = self._reported_accuracy
        if fix is None:
            return None
        return SourceEstimate(
            source=SourceType.GNSS,
            position=fix.position,
            accuracy_m=fix.accuracy_m,
            weight=gnss_weight(fix.accuracy_m, indoor, self.config),
            timestamp=fix.timestamp,
            metadata={'confidence': fix.confidence,
                      'reported_accuracy_m': fix.accuracy_m if reported is None else reported,
                      'consecutive_bad_readings': self.health.consecutive_failures},
        )

    def quality_metrics(self) -> dict:
        fix = self.last_fix
        return {
            'signal_strength': 0.0 if fix is None else fix.confidence,
            'accuracy_m': None if fix is None else fix.accuracy_m,
            'ignored_fixes': self.ignored_count,
            **self.health.get_health_summary(None if fix is None else fix.timestamp),
        }

    def reset(self) -> None:
        """Drop filter state and the last fix; the local frame origin is kept."""
        with self._lock:
            self._kalman.reset()
            self._moving_average.reset()
            self._last_fix = None
            self.ignored_count = 0
            self._reported_accuracy = None
            self.health.reset_health()
        logger.info("GNSS source reset")
