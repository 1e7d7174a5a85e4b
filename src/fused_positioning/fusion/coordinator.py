"""
Fusion coordinator: combines the positioning sources into one estimate.

Once per fusion tick the coordinator snapshots the newest estimate of every
source, drops the stale ones and blends the rest.

Fusion Model:
    Source weights w_i ∈ [0, 1]:
        GNSS:           min(1, 0.5 + 0.3·[accuracy < 5 m]), × 0.3 in indoor mode
        Inertial:       decaying dead-reckoning confidence
        Trilateration:  min(1, n_anchors / 4) / (1 + residual)

    Position:    p = Σ w_i p_i / Σ w_i        (primary source alone when Σw = 0)
    Confidence:  c = min(0.95, Σ w_i / n)
    Accuracy:    σ = Σ w_i σ_i / Σ w_i

    Indoor mode: (no GNSS or reported GNSS accuracy > threshold) and
                 (trilateration or inertial available)

After each tick the fused position is fed back to the inertial estimator as
an absolute correction with trust = correction_gain · confidence, which
bounds dead-reckoning drift between fixes.
"""

import logging
import threading
import time
from collections import deque
from typing import Callable, Dict, List, Mapping, Optional

import numpy as np

from ..config import FusionConfiguration
from ..sensors.gnss import GNSSSource, gnss_weight
from ..sensors.inertial import InertialEstimator
from ..sensors.motion import StationaryLock
from ..sensors.ranging import Anchor, RangingSource
from ..types import (AccelerometerSample, FusedPosition, GnssSample, MotionActivity,
                     PlatformMotionState, RangingSample, RssiSample, SourceEstimate,
                     SourceType)
from .platform import (DeckTracker, PlatformMotionCompensator, PlatformMotionDetector,
                       classify_sea_state)

logger = logging.getLogger(__name__)

# Reported before the first fused position exists
_DEFAULT_ACCURACY_M = 10.0


class FusionCoordinator:
    """
    Owns the per-source estimators of one tracking session and fuses them.

    Callbacks:
        on_position_update(FusedPosition)
        on_indoor_mode_changed(bool)
        on_accuracy_improved(new_accuracy_m, old_accuracy_m)
        on_platform_motion_detected(PlatformMotionState or None)
    """

    def __init__(self,
                 config: Optional[FusionConfiguration] = None,
                 anchors: Optional[Mapping[str, Anchor]] = None,
                 on_position_update: Optional[Callable[[FusedPosition], None]] = None,
                 on_indoor_mode_changed: Optional[Callable[[bool], None]] = None,
                 on_accuracy_improved: Optional[Callable[[float, float], None]] = None,
                 on_platform_motion_detected: Optional[Callable[[Optional[PlatformMotionState]], None]] = None):
        self.config = config or FusionConfiguration()

        self.gnss = GNSSSource(self.config)
        self.inertial = InertialEstimator(self.config.inertial)
        self.ranging = RangingSource(anchors or {}, self.config.ranging)
        self.stationary_lock = StationaryLock()

        self.platform_detector: Optional[PlatformMotionDetector] = None
        self.platform_compensator: Optional[PlatformMotionCompensator] = None
        self.deck_tracker: Optional[DeckTracker] = None
        if self.config.enable_platform_motion_compensation:
            self.platform_detector = PlatformMotionDetector(self.config.platform)
            self.platform_compensator = PlatformMotionCompensator(self.config.platform)
            self.deck_tracker = DeckTracker(self.config.platform)

        self.on_position_update = on_position_update
        self.on_indoor_mode_changed = on_indoor_mode_changed
        self.on_accuracy_improved = on_accuracy_improved
        self.on_platform_motion_detected = on_platform_motion_detected

        self._lock = threading.Lock()
        self._history = deque(maxlen=self.config.history_size)
        self._current: Optional[FusedPosition] = None
        self._indoor = False
        self._platform_detected = False
        self._motion_activity = MotionActivity.UNKNOWN

        self._staleness = {
            SourceType.GNSS: self.config.gnss.staleness_s,
            SourceType.INERTIAL: self.config.inertial.staleness_s,
            SourceType.TRILATERATION: self.config.ranging.staleness_s,
        }

        logger.info(f"Fusion coordinator initialized with {len(self.ranging.anchors)} anchors, "
                    f"platform compensation {'on' if self.platform_detector else 'off'}")

    # Sample ingestion

    def on_gnss(self, sample: GnssSample) -> None:
        self.gnss.process(sample)

    def on_ranging(self, sample: RangingSample) -> None:
        self.ranging.add_ranging(sample)

    def on_rssi(self, sample: RssiSample) -> None:
        self.ranging.add_rssi(sample)

    def on_inertial(self, accel: AccelerometerSample, gyro: Optional[np.ndarray], dt: float) -> None:
        self.inertial.integrate(accel.vector, gyro, dt, accel.timestamp)
        if self.platform_detector is not None:
            self.platform_detector.add_sample(accel.vector, accel.timestamp)

    def set_motion_activity(self, activity: MotionActivity) -> None:
        """Engage the stationary lock while STATIONARY, release it otherwise."""
        with self._lock:
            self._motion_activity = activity
            if activity != MotionActivity.STATIONARY:
                self.stationary_lock.release()

    # Fusion

    def _collect(self, now: float) -> List[SourceEstimate]:
        candidates = [
            self.gnss.latest_estimate(indoor=self._indoor),
            self.inertial.latest_estimate(now),
            self.ranging.latest_estimate(now),
        ]
        estimates = []
        for estimate in candidates:
            if estimate is None:
                continue
            age = now - estimate.timestamp
            if age > self._staleness[estimate.source]:
                logger.debug(f"Excluding stale {estimate.source.value} estimate ({age:.1f}s old)")
                continue
            estimates.append(estimate)
        return estimates

    def _detect_indoor(self, estimates: List[SourceEstimate]) -> bool:
        by_source = {e.source: e for e in estimates}
        gnss = by_source.get(SourceType.GNSS)
        threshold = self.config.indoor_gnss_accuracy_threshold_m
        # A rejected fix still tells us the receiver has degraded
        gnss_poor = gnss is None or max(gnss.accuracy_m,
                                        gnss.metadata.get('reported_accuracy_m', 0.0)) > threshold
        local_available = (SourceType.TRILATERATION in by_source
                           or SourceType.INERTIAL in by_source)
        return gnss_poor and local_available

    @staticmethod
    def _combine(estimates: List[SourceEstimate]) -> np.ndarray:
        primary = estimates[0]
        weights = np.array([e.weight for e in estimates])
        total = weights.sum()
        if len(estimates) == 1 or total <= 0:
            return primary.position.copy()
        positions = np.vstack([e.position for e in estimates])
        return weights @ positions / total

    def tick(self, now: Optional[float] = None) -> Optional[FusedPosition]:
        """
        Run one fusion cycle.

        Args:
            now: Current time; wall clock when None

        Returns:
            The new fused position, or None when no source is active
        """
        now = time.time() if now is None else now

        with self._lock:
            estimates = self._collect(now)
            if not estimates:
                logger.debug("No active positioning sources, keeping last position")
                return None

            indoor = self._detect_indoor(estimates)
            estimates = [e.with_weight(gnss_weight(e.accuracy_m, indoor, self.config))
                         if e.source == SourceType.GNSS else e for e in estimates]
            estimates.sort(key=lambda e: e.weight, reverse=True)

            position = self._combine(estimates)
            weights = np.array([e.weight for e in estimates])
            accuracies = np.array([e.accuracy_m for e in estimates])
            total = float(weights.sum())
            confidence = min(0.95, total / len(estimates))
            if total > 0:
                accuracy = float(weights @ accuracies / total)
            else:
                accuracy = float(accuracies.mean())

            platform_corrected = False
            platform_changed = False
            platform_state = None
            if self.platform_detector is not None:
                platform_state = self.platform_detector.update(now)
                detected = platform_state is not None
                platform_changed = detected != self._platform_detected
                self._platform_detected = detected
                if detected:
                    position, platform_corrected = self.platform_compensator.compensate(
                        position, platform_state)

            if self.config.enable_stationary_lock and self._motion_activity == MotionActivity.STATIONARY:
                position = self.stationary_lock.apply(position)

            geo_position = None
            plane = self.gnss.plane
            if plane is not None:
                geo_position = plane.to_geo(position)

            fused = FusedPosition(
                position=position,
                accuracy_m=accuracy,
                confidence=confidence,
                sources=tuple(estimates),
                indoor=indoor,
                platform_corrected=platform_corrected,
                timestamp=now,
                geo_position=geo_position,
                metadata=self._metadata(estimates, geo_position),
            )

            previous = self._current
            self._current = fused
            self._history.append(fused)
            indoor_changed = indoor != self._indoor
            self._indoor = indoor

        self.inertial.correct(position, self.config.inertial.correction_gain * confidence, now)

        if indoor_changed:
            logger.info(f"Indoor mode {'entered' if indoor else 'left'}")
            self._notify(self.on_indoor_mode_changed, indoor)
        if platform_changed:
            self._notify(self.on_platform_motion_detected, platform_state)
        if (previous is not None and accuracy < previous.accuracy_m
                and accuracy < self.config.target_accuracy_m):
            self._notify(self.on_accuracy_improved, accuracy, previous.accuracy_m)
        self._notify(self.on_position_update, fused)

        logger.debug(f"Fused {len(estimates)} sources: accuracy={accuracy:.2f}m "
                     f"confidence={confidence:.2f} indoor={indoor}")
        return fused

    def _metadata(self, estimates: List[SourceEstimate], geo_position) -> Dict:
        metadata = {
            'primary_source': estimates[0].source.value,
            'motion_activity': self._motion_activity.value,
        }
        for estimate in estimates:
            if estimate.source == SourceType.GNSS:
                metadata['gnss_confidence'] = estimate.metadata.get('confidence')
                if self.platform_detector is not None:
                    metadata['sea_state'] = classify_sea_state(estimate.accuracy_m)
            elif estimate.source == SourceType.TRILATERATION:
                metadata['anchor_count'] = estimate.metadata.get('anchor_count')
        if self.deck_tracker is not None and geo_position is not None:
            metadata['deck'] = self.deck_tracker.current_deck(geo_position.altitude)
        return metadata

    @staticmethod
    def _notify(callback, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception(f"Callback {getattr(callback, '__name__', callback)} failed")

    # Queries

    def current_position(self) -> Optional[FusedPosition]:
        with self._lock:
            return self._current

    def position_history(self) -> List[FusedPosition]:
        with self._lock:
            return list(self._history)

    @property
    def is_indoor(self) -> bool:
        return self._indoor

    def quality_metrics(self) -> dict:
        current = self.current_position()
        return {
            'gnss_signal_strength': self.gnss.quality_metrics()['signal_strength'],
            'inertial_confidence': self.inertial.confidence() if self.inertial.is_anchored else 0.0,
            'beacon_coverage': self.ranging.coverage(),
            'overall_accuracy': _DEFAULT_ACCURACY_M if current is None else current.accuracy_m,
            'indoor': self._indoor,
            'platform_motion_detected': self._platform_detected,
            'history_length': len(self._history),
        }

    def reset(self) -> None:
        """Flush every filter, the history and the current position."""
        with self._lock:
            self.gnss.reset()
            self.inertial.reset()
            self.ranging.reset()
            self.stationary_lock.release()
            if self.platform_detector is not None:
                self.platform_detector.reset()
                self.platform_compensator.reset()
            self._history.clear()
            self._current = None
            self._indoor = False
            self._platform_detected = False
            self._motion_activity = MotionActivity.UNKNOWN
        logger.info("Fusion coordinator reset")
