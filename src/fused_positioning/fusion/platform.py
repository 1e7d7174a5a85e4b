"""
Moving platform support (ships).

On a ship the local frame itself rolls, pitches and heaves. Positions fused
in that frame pick up an apparent displacement that has nothing to do with
the agent's own motion. This module detects platform motion from the
accelerometer stream and removes its contribution from fused positions.

Detection:
    The vertical acceleration over the trailing analysis window is analysed
    with Welch's method. Platform motion is declared when

        f_dom ∈ [f_min, f_max]                    (0.05-0.5 Hz, 2-20 s periods)
        P_band / P_total ≥ min_band_power_ratio
        A = √2 · std(a_z) ≥ min_oscillation_accel

    hold for persistence_updates consecutive updates. Walking produces
    1.5-2.5 Hz energy, so pedestrian motion does not trigger detection.

Platform State:
    roll  = atan2(g_y, g_z)
    pitch = atan2(-g_x, √(g_y² + g_z²))       from the averaged gravity direction
    a_z(t) ≈ a·cos(ωτ) + b·sin(ωτ)            fitted at the dominant frequency
    heave(t) = -a_z(t) / ω²                  signed displacement at time t

Compensation:
    h      = z - roll_center_height            lever arm above the roll axis
    offset = [h · sin(roll), h · sin(pitch), heave(t)]
    p'     = p - offset

The corrected position must lie within the platform's bounding box
(x ∈ ±width/2, y ∈ ±length/2, z ∈ [0, height]). Overshoots up to
bounds_tolerance_m are clamped; larger ones count as a failed correction
and the uncorrected position is kept.
"""

import logging
import math
from collections import deque
from dataclasses import replace
from typing import List, Optional, Tuple

import numpy as np
from scipy.optimize import least_squares
from scipy.signal import welch

from ..config import PlatformConfiguration
from ..types import PlatformMotionState, as_vector

logger = logging.getLogger(__name__)

# Samples averaged for the instantaneous tilt estimate
_TILT_WINDOW_S = 1.0
_MIN_ANALYSIS_SAMPLES = 32


def classify_sea_state(gnss_accuracy_m: float) -> str:
    """Coarse sea state from the GNSS accuracy seen on deck."""
    if gnss_accuracy_m < 5.0:
        return 'calm'
    if gnss_accuracy_m < 15.0:
        return 'moderate'
    return 'rough'


class PlatformMotionDetector:
    """Spectral detector for persistent low-frequency platform oscillation."""

    def __init__(self, config: Optional[PlatformConfiguration] = None):
        self.config = config or PlatformConfiguration()
        self._samples = deque()
        self.reset()

    def reset(self) -> None:
        self._samples.clear()
        self._last_update_ts: Optional[float] = None
        self._consecutive = 0
        self._state = PlatformMotionState(yaw_deg=self.config.heading_deg)
        # (t0, a, b, ω) of the fitted vertical acceleration a·cos(ωτ) + b·sin(ωτ)
        self._heave_fit: Optional[Tuple[float, float, float, float]] = None
        self.detected = False
        self.dominant_frequency_hz: Optional[float] = None

    def add_sample(self, accel, timestamp: float) -> None:
        self._samples.append((timestamp, as_vector(accel, 'acceleration')))
        horizon = timestamp - self.config.analysis_window_s
        while self._samples and self._samples[0][0] < horizon:
            self._samples.popleft()

    def update(self, now: float) -> Optional[PlatformMotionState]:
        """
        Re-run detection if update_interval_s has elapsed.

        Returns:
            The platform state at `now` while motion is detected, None otherwise
        """
        if self._last_update_ts is not None and now - self._last_update_ts < self.config.update_interval_s:
            return self.state_at(now) if self.detected else None
        self._last_update_ts = now

        oscillating = self._analyse()
        self._consecutive = self._consecutive + 1 if oscillating else 0
        was_detected = self.detected
        self.detected = self._consecutive >= self.config.persistence_updates

        if self.detected != was_detected:
            if self.detected:
                logger.info(f"Platform motion detected: {self._state}")
            else:
                logger.info("Platform motion no longer detected")
        return self.state_at(now) if self.detected else None

    def heave_displacement(self, now: float) -> float:
        """Signed heave at `now` from the fitted oscillation, z = -a_z / ω²."""
        if self._heave_fit is None:
            return 0.0
        t0, a, b, omega = self._heave_fit
        phase = omega * (now - t0)
        return -(a * math.cos(phase) + b * math.sin(phase)) / omega ** 2

    def state_at(self, now: float) -> PlatformMotionState:
        return replace(self._state, heave_m=self.heave_displacement(now))

    def _analyse(self) -> bool:
        if len(self._samples) < _MIN_ANALYSIS_SAMPLES:
            return False
        timestamps = np.array([t for t, _ in self._samples])
        vectors = np.array([v for _, v in self._samples])
        span = timestamps[-1] - timestamps[0]
        if span < 1.0 / self.config.max_frequency_hz * 2:
            return False

        fs = (len(timestamps) - 1) / span
        vertical = vectors[:, 2] - vectors[:, 2].mean()
        freqs, psd = welch(vertical, fs=fs, nperseg=len(vertical))
        positive = freqs > 0
        freqs, psd = freqs[positive], psd[positive]
        total_power = psd.sum()
        if total_power <= 0:
            return False

        band = (freqs >= self.config.min_frequency_hz) & (freqs <= self.config.max_frequency_hz)
        band_ratio = psd[band].sum() / total_power
        dominant = float(freqs[np.argmax(psd)])
        amplitude = math.sqrt(2.0) * float(np.std(vertical))
        self.dominant_frequency_hz = dominant

        oscillating = (self.config.min_frequency_hz <= dominant <= self.config.max_frequency_hz
                       and band_ratio >= self.config.min_band_power_ratio
                       and amplitude >= self.config.min_oscillation_accel)
        logger.debug(f"Platform analysis: f_dom={dominant:.3f}Hz band={band_ratio:.2f} "
                     f"A={amplitude:.3f}m/s² oscillating={oscillating}")

        recent = vectors[timestamps >= timestamps[-1] - _TILT_WINDOW_S].mean(axis=0)
        roll = math.degrees(math.atan2(recent[1], recent[2]))
        pitch = math.degrees(math.atan2(-recent[0], math.hypot(recent[1], recent[2])))
        self._heave_fit = self._fit_heave(timestamps, vertical, dominant) if oscillating else None
        heave_amplitude = 0.0
        if self._heave_fit is not None:
            _, a, b, omega = self._heave_fit
            self.dominant_frequency_hz = omega / (2.0 * math.pi)
            heave_amplitude = math.hypot(a, b) / omega ** 2
        self._state = PlatformMotionState(roll, pitch, self.config.heading_deg,
                                          heave_amplitude_m=heave_amplitude)
        return oscillating

    def _fit_heave(self, timestamps: np.ndarray, vertical: np.ndarray,
                   dominant_hz: float) -> Tuple[float, float, float, float]:
        """
        Fit a·cos(ωτ) + b·sin(ωτ) + c to the vertical acceleration.

        The Welch peak only resolves the frequency to 1/span, so ω is refined
        by least squares from the linear fit at the spectral peak.
        """
        t0 = float(timestamps[0])
        tau = timestamps - t0
        omega0 = 2.0 * math.pi * dominant_hz
        basis = np.column_stack([np.cos(omega0 * tau), np.sin(omega0 * tau), np.ones_like(tau)])
        (a, b, c), *_ = np.linalg.lstsq(basis, vertical, rcond=None)

        def residuals(x):
            return x[0] * np.cos(x[3] * tau) + x[1] * np.sin(x[3] * tau) + x[2] - vertical

        lower = 2.0 * math.pi * self.config.min_frequency_hz
        upper = 2.0 * math.pi * self.config.max_frequency_hz
        seed = np.array([a, b, c, min(max(omega0, lower), upper)])
        result = least_squares(residuals, seed,
                               bounds=([-np.inf, -np.inf, -np.inf, lower], [np.inf, np.inf, np.inf, upper]))
        if not result.success:
            logger.debug(f"Heave fit did not converge: {result.message}")
            return t0, float(a), float(b), omega0
        a, b, _, omega = result.x
        return t0, float(a), float(b), float(omega)

    @property
    def state(self) -> PlatformMotionState:
        return self._state


class PlatformMotionCompensator:
    """Removes roll/pitch/heave displacement from positions in the platform frame."""

    def __init__(self, config: Optional[PlatformConfiguration] = None):
        self.config = config or PlatformConfiguration()
        self.failed_corrections = 0
        half_width = self.config.width_m / 2.0
        half_length = self.config.length_m / 2.0
        self._lower = np.array([-half_width, -half_length, 0.0])
        self._upper = np.array([half_width, half_length, self.config.height_m])

    def reset(self) -> None:
        self.failed_corrections = 0

    def compensate(self, position: np.ndarray,
                   state: PlatformMotionState) -> Tuple[np.ndarray, bool]:
        """
        Correct a position for platform motion.

        Returns:
            (position, corrected); corrected is False when the corrected
            position fell outside the platform and the input was kept
        """
        position = np.asarray(position, dtype=float)
        roll = math.radians(state.roll_deg)
        pitch = math.radians(state.pitch_deg)
        lever = position[2] - self.config.roll_center_height_m
        offset = np.array([lever * math.sin(roll), lever * math.sin(pitch), state.heave_m])
        corrected = position - offset

        overshoot = np.maximum(self._lower - corrected, corrected - self._upper).max()
        if overshoot > self.config.bounds_tolerance_m:
            self.failed_corrections += 1
            logger.warning(f"Platform correction rejected: {overshoot:.1f}m outside platform bounds")
            return position.copy(), False
        return np.clip(corrected, self._lower, self._upper), True

    def is_within_bounds(self, position: np.ndarray) -> bool:
        position = np.asarray(position, dtype=float)
        return bool(np.all(position >= self._lower) and np.all(position <= self._upper))


class DeckTracker:
    """Maps altitudes to deck numbers on a multi-deck platform."""

    def __init__(self, config: Optional[PlatformConfiguration] = None):
        self.config = config or PlatformConfiguration()

    def deck_elevations(self) -> List[float]:
        """Elevation of decks 1..deck_count above the reference datum."""
        return [self.config.sea_level_elevation_m + deck * self.config.deck_height_m
                for deck in range(1, self.config.deck_count + 1)]

    def current_deck(self, altitude: float) -> int:
        elevations = np.array(self.deck_elevations())
        return int(np.argmin(np.abs(elevations - altitude))) + 1

    def elevation_above_sea_level(self, altitude: float) -> float:
        return altitude - self.config.sea_level_elevation_m
