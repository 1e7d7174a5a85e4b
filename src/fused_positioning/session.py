"""
Tracking session: sample intake, dispatch and the fusion timer.

A TrackingSession owns one FusionCoordinator and one MotionClassifier.
Producers push samples from any thread into a bounded queue; when the queue
is full the oldest sample is dropped and counted. Two worker threads run
while the session is started:

    dispatch loop: drains the queue and routes each sample to its estimator
    fusion loop:   calls FusionCoordinator.tick() every fusion tick, or every
                   burst tick for burst_duration_s after the agent starts moving

For deterministic use (tests, replay) skip start() and call
process_pending() and tick(now) directly. When the worker threads run, the
sample timestamps must come from time.time().

stop() joins the workers and flushes every filter, so a stopped session
restarts from a clean state.
"""

import logging
import threading
import time
from collections import deque
from typing import Callable, List, Mapping, Optional

import numpy as np

from .config import FusionConfiguration
from .fusion.coordinator import FusionCoordinator
from .sensors.motion import MotionClassifier, StepDetector, gravity_compensated_magnitudes
from .sensors.ranging import Anchor
from .types import (AccelerometerSample, FusedPosition, GnssSample, GyroscopeSample,
                    MagnetometerSample, MotionActivity, MotionTransition, RangingSample,
                    RssiSample)

logger = logging.getLogger(__name__)

SAMPLE_TYPES = (AccelerometerSample, GyroscopeSample, MagnetometerSample,
                GnssSample, RangingSample, RssiSample)

_JOIN_TIMEOUT_S = 2.0


class TrackingSession:
    """Runs the fusion pipeline for one tracked agent."""

    def __init__(self,
                 config: Optional[FusionConfiguration] = None,
                 anchors: Optional[Mapping[str, Anchor]] = None,
                 on_position_update: Optional[Callable[[FusedPosition], None]] = None,
                 on_motion_change: Optional[Callable[[MotionTransition], None]] = None,
                 on_indoor_mode_changed: Optional[Callable[[bool], None]] = None,
                 on_accuracy_improved: Optional[Callable[[float, float], None]] = None,
                 on_platform_motion_detected: Optional[Callable] = None,
                 on_burst_started: Optional[Callable[[float], None]] = None):
        self.config = config or FusionConfiguration()
        self.coordinator = FusionCoordinator(
            self.config, anchors,
            on_position_update=on_position_update,
            on_indoor_mode_changed=on_indoor_mode_changed,
            on_accuracy_improved=on_accuracy_improved,
            on_platform_motion_detected=on_platform_motion_detected,
        )
        self.classifier = MotionClassifier(self.config.motion)
        self.classifier.add_listener(self._on_motion_transition)
        self.step_detector = StepDetector(self.config.motion)

        self.on_motion_change = on_motion_change
        self.on_burst_started = on_burst_started

        self._queue = deque()
        self._queue_condition = threading.Condition()
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self.dropped_samples = 0
        self.processed_samples = 0

        self._accel_window = deque(maxlen=self.config.motion.window_size)
        self._gyro_window = deque(maxlen=self.config.motion.window_size)
        self._clear_sample_state()

    def _clear_sample_state(self) -> None:
        self._accel_window.clear()
        self._gyro_window.clear()
        self._last_gyro: Optional[np.ndarray] = None
        self._last_accel_ts: Optional[float] = None
        self._last_classification_ts: Optional[float] = None
        self._burst_until: Optional[float] = None
        self.heading_deg: Optional[float] = None

    # Intake

    def push(self, sample) -> None:
        """
        Queue a sample for dispatch; drops the oldest queued sample when full.

        Raises:
            TypeError: If the sample is not one of the supported sample types
        """
        if not isinstance(sample, SAMPLE_TYPES):
            raise TypeError(f"Unsupported sample type: {type(sample).__name__}")
        with self._queue_condition:
            if len(self._queue) >= self.config.sample_queue_size:
                self._queue.popleft()
                self.dropped_samples += 1
                logger.debug(f"Sample queue full, dropped oldest ({self.dropped_samples} total)")
            self._queue.append(sample)
            self._queue_condition.notify()

    def _drain(self) -> list:
        with self._queue_condition:
            samples = list(self._queue)
            self._queue.clear()
        return samples

    def process_pending(self) -> int:
        """Dispatch every queued sample on the calling thread."""
        samples = self._drain()
        for sample in samples:
            self.dispatch(sample)
        return len(samples)

    @property
    def queue_depth(self) -> int:
        with self._queue_condition:
            return len(self._queue)

    # Dispatch

    def dispatch(self, sample) -> None:
        """Route one sample to the estimator that consumes it."""
        if isinstance(sample, AccelerometerSample):
            self._handle_accel(sample)
        elif isinstance(sample, GyroscopeSample):
            self._last_gyro = sample.vector
            self._gyro_window.append(sample.vector)
        elif isinstance(sample, GnssSample):
            self.coordinator.on_gnss(sample)
        elif isinstance(sample, RangingSample):
            self.coordinator.on_ranging(sample)
        elif isinstance(sample, RssiSample):
            self.coordinator.on_rssi(sample)
        elif isinstance(sample, MagnetometerSample):
            self.heading_deg = sample.heading_deg
        else:
            raise TypeError(f"Unsupported sample type: {type(sample).__name__}")
        self.processed_samples += 1

    def _handle_accel(self, sample: AccelerometerSample) -> None:
        if self._last_accel_ts is not None:
            self.coordinator.on_inertial(sample, self._last_gyro, sample.timestamp - self._last_accel_ts)
        self._last_accel_ts = sample.timestamp

        self._accel_window.append(sample.vector)
        magnitude = float(gravity_compensated_magnitudes(sample.vector)[0])
        self.step_detector.add_sample(magnitude, sample.timestamp)

        interval = self.config.motion.classification_interval_s
        if self._last_classification_ts is None or sample.timestamp - self._last_classification_ts >= interval:
            self._last_classification_ts = sample.timestamp
            self.classifier.classify(list(self._accel_window), list(self._gyro_window),
                                     self.step_detector.cadence(sample.timestamp), sample.timestamp)

    def _on_motion_transition(self, transition: MotionTransition) -> None:
        self.coordinator.set_motion_activity(transition.current)
        if (transition.previous == MotionActivity.STATIONARY
                and transition.current in (MotionActivity.WALKING, MotionActivity.RUNNING)):
            self._burst_until = transition.timestamp + self.config.burst_duration_s
            logger.info(f"Burst mode until {self._burst_until:.1f}")
            if self.on_burst_started is not None:
                self.on_burst_started(self._burst_until)
        if self.on_motion_change is not None:
            self.on_motion_change(transition)

    # Fusion timer

    def is_burst_active(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return self._burst_until is not None and now < self._burst_until

    def tick_interval(self, now: Optional[float] = None) -> float:
        """Seconds until the next fusion tick."""
        if self.is_burst_active(now):
            return self.config.burst_tick_interval_ms / 1000.0
        return self.config.fusion_tick_interval_ms / 1000.0

    def tick(self, now: Optional[float] = None) -> Optional[FusedPosition]:
        return self.coordinator.tick(now)

    # Lifecycle

    @property
    def is_running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        if self.is_running:
            logger.warning("Tracking session already running")
            return
        self._stop_event.clear()
        self._threads = [
            threading.Thread(target=self._dispatch_loop, name='fusion-dispatch', daemon=True),
            threading.Thread(target=self._fusion_loop, name='fusion-timer', daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Tracking session started")

    def _dispatch_loop(self) -> None:
        while not self._stop_event.is_set():
            with self._queue_condition:
                if not self._queue:
                    self._queue_condition.wait(timeout=0.1)
            for sample in self._drain():
                try:
                    self.dispatch(sample)
                except Exception:
                    logger.exception(f"Failed to dispatch {type(sample).__name__}")

    def _fusion_loop(self) -> None:
        while not self._stop_event.wait(self.tick_interval()):
            try:
                self.tick()
            except Exception:
                logger.exception("Fusion tick failed")

    def stop(self) -> None:
        """
        Stop the workers and flush all filter state.

        Filter state is left alone while a worker is still running; calling
        stop() again once it has exited completes the flush.
        """
        self._stop_event.set()
        with self._queue_condition:
            self._queue_condition.notify_all()
        for thread in self._threads:
            thread.join(timeout=_JOIN_TIMEOUT_S)
        self._threads = [thread for thread in self._threads if thread.is_alive()]
        if self._threads:
            names = ', '.join(thread.name for thread in self._threads)
            logger.error(f"Threads {names} did not stop within {_JOIN_TIMEOUT_S}s, "
                         f"state not flushed")
            return

        self._drain()
        self.coordinator.reset()
        self.classifier.reset()
        self.step_detector.reset()
        self._clear_sample_state()
        logger.info(f"Tracking session stopped ({self.processed_samples} samples processed, "
                    f"{self.dropped_samples} dropped)")

    def __enter__(self) -> 'TrackingSession':
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def get_session_summary(self) -> dict:
        current = self.coordinator.current_position()
        state = self.classifier.state(current.timestamp if current else None)
        return {
            'running': self.is_running,
            'processed_samples': self.processed_samples,
            'dropped_samples': self.dropped_samples,
            'queue_depth': self.queue_depth,
            'motion_activity': state.activity.value,
            'heading_deg': self.heading_deg,
            'quality': self.coordinator.quality_metrics(),
        }
