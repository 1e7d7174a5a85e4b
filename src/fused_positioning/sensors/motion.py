"""
Motion state classification from inertial windows.

The classifier labels short accelerometer/gyroscope windows as STATIONARY,
WALKING or RUNNING and only changes its reported state after a run of
consistent votes, which keeps the output from flickering at band edges.

Features:
    m_i        = |‖a_i‖ / g - 1|        gravity-compensated magnitude (g)
    accel_var  = Var(m)
    gyro_var   = Var(‖ω‖)
    cadence    = steps in the last step_window_s / step_window_s (Hz)

Hysteresis:
    - a candidate state needs votes_to_enter consecutive votes, or
      votes_to_leave_stationary when the current state is STATIONARY
    - no transition happens within min_state_duration_s of the last one
    - vote counters reset on every transition

StationaryLock pins the fused position while the agent stands still so that
receiver noise does not wander the reported position.
"""

import logging
import threading
import time
from collections import deque
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from ..config import MotionThresholds
from ..types import MotionActivity, MotionState, MotionTransition

logger = logging.getLogger(__name__)

STANDARD_GRAVITY = 9.80665


def gravity_compensated_magnitudes(accel_window) -> np.ndarray:
    """Per-sample |‖a‖/g - 1| of an (N, 3) window in m/s²."""
    window = np.asarray(accel_window, dtype=float).reshape(-1, 3)
    return np.abs(np.linalg.norm(window, axis=1) / STANDARD_GRAVITY - 1.0)


class StepDetector:
    """Counts upward threshold crossings of the magnitude, with a refractory period."""

    def __init__(self, config: Optional[MotionThresholds] = None):
        self.config = config or MotionThresholds()
        self._steps = deque()
        self._above = False

    def add_sample(self, magnitude_g: float, timestamp: float) -> bool:
        """
        Feed one gravity-compensated magnitude.

        Returns:
            True when the sample registered a new step
        """
        while self._steps and timestamp - self._steps[0] > self.config.step_history_s:
            self._steps.popleft()

        above = magnitude_g > self.config.step_threshold_g
        rising = above and not self._above
        self._above = above
        if not rising:
            return False
        if self._steps and timestamp - self._steps[-1] < self.config.step_min_interval_s:
            return False
        self._steps.append(timestamp)
        return True

    def cadence(self, now: Optional[float] = None) -> float:
        """Steps per second over the trailing step window; 0 below two steps."""
        if not self._steps:
            return 0.0
        now = self._steps[-1] if now is None else now
        window = self.config.step_window_s
        recent = sum(1 for t in self._steps if now - t <= window)
        if recent < 2:
            return 0.0
        return recent / window

    @property
    def step_count(self) -> int:
        return len(self._steps)

    def reset(self) -> None:
        self._steps.clear()
        self._above = False


class MotionClassifier:
    """Voting motion classifier with asymmetric hysteresis."""

    def __init__(self, config: Optional[MotionThresholds] = None):
        self.config = config or MotionThresholds()
        self._lock = threading.Lock()
        self._listeners: List[Callable[[MotionTransition], None]] = []
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._activity = MotionActivity.UNKNOWN
            self._confidence = 0.0
            self._last_transition_ts: Optional[float] = None
            self._last_classification_ts: Optional[float] = None
            self._votes: Dict[MotionActivity, int] = {}
            self.last_transition: Optional[MotionTransition] = None

    def add_listener(self, callback: Callable[[MotionTransition], None]) -> None:
        self._listeners.append(callback)

    def candidate(self, accel_var: float, gyro_var: float,
                  step_frequency: float) -> Tuple[MotionActivity, float]:
        """Raw single-window label and its confidence, without hysteresis."""
        c = self.config
        if (accel_var <= c.stationary_accel_var_max and gyro_var <= c.stationary_gyro_var_max
                and step_frequency <= c.stationary_step_freq_max):
            very_still = accel_var < c.very_still_var_max and gyro_var < c.very_still_var_max
            return MotionActivity.STATIONARY, 0.98 if very_still else 0.95
        if step_frequency >= c.running_step_freq_min and accel_var >= c.running_accel_var_min:
            return MotionActivity.RUNNING, 0.80
        if (c.walking_step_freq_min <= step_frequency <= c.walking_step_freq_max
                and c.walking_accel_var_min <= accel_var < c.walking_accel_var_max):
            return MotionActivity.WALKING, 0.85
        return MotionActivity.UNKNOWN, 0.0

    def classify(self, accel_window, gyro_window=None, step_frequency: float = 0.0,
                 timestamp: Optional[float] = None) -> Tuple[MotionState, float]:
        """
        Classify one window and apply hysteresis.

        Args:
            accel_window: (N, 3) accelerometer vectors in m/s²
            gyro_window: Optional (M, 3) gyroscope vectors in rad/s
            step_frequency: Current cadence in steps per second
            timestamp: Time of the newest sample, wall clock when None

        Returns:
            (current state, confidence of the current state); a window too short
            to classify reports confidence 0
        """
        timestamp = time.time() if timestamp is None else timestamp
        magnitudes = gravity_compensated_magnitudes(accel_window)

        if len(magnitudes) < self.config.min_samples:
            return self.state(timestamp), 0.0

        accel_var = float(np.var(magnitudes))
        gyro_var = 0.0
        if gyro_window is not None and len(gyro_window) > 0:
            gyro_var = float(np.var(np.linalg.norm(np.asarray(gyro_window, dtype=float).reshape(-1, 3), axis=1)))

        activity, confidence = self.candidate(accel_var, gyro_var, step_frequency)
        transition = None

        with self._lock:
            self._last_classification_ts = timestamp
            current = self._activity

            if activity == current:
                self._votes.clear()
                self._confidence = confidence
            elif activity == MotionActivity.UNKNOWN or (
                    current == MotionActivity.STATIONARY and activity == MotionActivity.WALKING
                    and accel_var < self.config.leave_stationary_accel_var_min):
                self._votes.clear()
            else:
                votes = self._votes.get(activity, 0) + 1
                self._votes = {activity: votes}
                transition = self._maybe_transition(activity, confidence, votes, timestamp)

            state = self._state_locked(timestamp)

        if transition is not None:
            logger.info(f"Motion state {transition.previous.value} -> {transition.current.value} "
                        f"(confidence {transition.confidence:.2f})")
            for listener in self._listeners:
                try:
                    listener(transition)
                except Exception:
                    logger.exception("Motion transition listener failed")
        return state, state.confidence

    def _maybe_transition(self, activity: MotionActivity, confidence: float,
                          votes: int, timestamp: float) -> Optional[MotionTransition]:
        current = self._activity
        if current == MotionActivity.STATIONARY:
            required = self.config.votes_to_leave_stationary
        else:
            required = self.config.votes_to_enter
        if votes < required:
            return None

        if (self._last_transition_ts is not None
                and timestamp - self._last_transition_ts < self.config.min_state_duration_s):
            logger.debug(f"Transition to {activity.value} held back by minimum state duration")
            return None

        self._activity = activity
        self._confidence = confidence
        self._last_transition_ts = timestamp
        self._votes.clear()
        self.last_transition = MotionTransition(current, activity, confidence, timestamp)
        return self.last_transition

    def _state_locked(self, timestamp: float) -> MotionState:
        since = 0.0 if self._last_transition_ts is None else timestamp - self._last_transition_ts
        return MotionState(self._activity, self._confidence, timestamp, since)

    def state(self, timestamp: Optional[float] = None) -> MotionState:
        timestamp = time.time() if timestamp is None else timestamp
        with self._lock:
            return self._state_locked(timestamp)

    @property
    def activity(self) -> MotionActivity:
        return self._activity

    def votes(self) -> Dict[MotionActivity, int]:
        with self._lock:
            return dict(self._votes)


class StationaryLock:
    """
    Holds a reference position while the agent is stationary.

    Each new position inside the lock radius is blended into the reference
    with weight w = min(max_weight, base_weight + step · count), so the lock
    hardens the longer the agent stands still. A position outside the radius
    re-locks at that position.
    """

    def __init__(self, radius_m: float = 1.5, base_weight: float = 0.85,
                 weight_step: float = 0.01, max_weight: float = 0.97):
        self.radius_m = radius_m
        self.base_weight = base_weight
        self.weight_step = weight_step
        self.max_weight = max_weight
        self.release()

    def apply(self, position: np.ndarray) -> np.ndarray:
        position = np.asarray(position, dtype=float)
        if self._locked is None or np.linalg.norm(position - self._locked) > self.radius_m:
            self._locked = position.copy()
            self._count = 1
            return position.copy()

        self._count += 1
        weight = min(self.max_weight, self.base_weight + self.weight_step * self._count)
        self._locked = weight * self._locked + (1.0 - weight) * position
        return self._locked.copy()

    def release(self) -> None:
        self._locked: Optional[np.ndarray] = None
        self._count = 0

    @property
    def is_locked(self) -> bool:
        return self._locked is not None
