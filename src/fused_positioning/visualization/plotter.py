"""
Track visualization and error statistics for fused positioning runs.

Classes:
    TrackPlotter: Top-down track comparison and fusion quality plots

Functions:
    compute_track_statistics: Error statistics of an estimated track against truth
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import matplotlib.pyplot as plt
import numpy as np

from ..types import FusedPosition

logger = logging.getLogger(__name__)


@dataclass
class TrackStatistics:
    """Horizontal error statistics of a track (meters)."""
    rmse: float
    max_error: float
    mean_error: float
    std_error: float
    median_error: float
    percentile_95: float
    track_length: float


def compute_track_statistics(estimated: Union[np.ndarray, List[List[float]]],
                             truth: Union[np.ndarray, List[List[float]]]) -> TrackStatistics:
    """
    Compare an estimated track with ground truth, point by point.

    Errors are horizontal (x, y) distances; altitude is not scored.

    Raises:
        ValueError: If the tracks are empty or differ in length
    """
    estimated = np.asarray(estimated, dtype=np.float64)
    truth = np.asarray(truth, dtype=np.float64)
    if estimated.shape != truth.shape or estimated.ndim != 2 or len(estimated) == 0:
        raise ValueError(f"Tracks must be matching non-empty Nx3 arrays, got "
                         f"{estimated.shape} and {truth.shape}")

    errors = np.linalg.norm(estimated[:, :2] - truth[:, :2], axis=1)
    track_length = float(np.sum(np.linalg.norm(np.diff(estimated, axis=0), axis=1)))
    return TrackStatistics(
        rmse=float(np.sqrt(np.mean(errors ** 2))),
        max_error=float(np.max(errors)),
        mean_error=float(np.mean(errors)),
        std_error=float(np.std(errors)),
        median_error=float(np.median(errors)),
        percentile_95=float(np.percentile(errors, 95)),
        track_length=track_length,
    )


class TrackPlotter:
    """
    Collects tracks and fusion output of a run and renders them.

    Attributes:
        tracks (List[Dict]): Registered tracks with label, color and positions
        figure (matplotlib.figure.Figure): Figure of the last plot call
    """

    def __init__(self, figure_size: Tuple[int, int] = (14, 6)):
        self.tracks: List[Dict[str, Any]] = []
        self.fused: List[FusedPosition] = []
        self.figure = None
        self.figure_size = figure_size

    def add_track(self, positions: Union[np.ndarray, Sequence[Sequence[float]]],
                  label: str = "Track", color: str = 'blue',
                  truth: Optional[np.ndarray] = None) -> Optional[TrackStatistics]:
        """
        Register a track for plotting.

        Args:
            positions: Nx3 local positions
            label: Legend label
            color: Matplotlib color
            truth: Optional Nx3 ground truth; statistics are computed when given

        Returns:
            Error statistics against truth, if truth was given

        Raises:
            ValueError: If positions are not a finite Nx3 array
        """
        positions = np.asarray(positions, dtype=np.float64)
        if positions.ndim != 2 or positions.shape[1] != 3:
            raise ValueError(f"Positions must be Nx3 array, got shape {positions.shape}")
        if not np.all(np.isfinite(positions)):
            raise ValueError("Track contains invalid values (inf/nan)")

        statistics = compute_track_statistics(positions, truth) if truth is not None else None
        self.tracks.append({'positions': positions.copy(), 'label': label,
                            'color': color, 'statistics': statistics})
        logger.info(f"Added track '{label}' with {len(positions)} points")
        return statistics

    def add_fused_positions(self, fused: Sequence[FusedPosition]) -> None:
        self.fused.extend(fused)

    def plot(self, anchors: Optional[Dict[str, Any]] = None,
             save_path: Optional[str] = None, show: bool = False):
        """
        Render the track comparison and, when fused output was added, its quality.

        Returns:
            The matplotlib figure
        """
        columns = 2 if self.fused else 1
        self.figure, axes = plt.subplots(1, columns, figsize=self.figure_size, squeeze=False)
        track_axes = axes[0, 0]

        for track in self.tracks:
            positions = track['positions']
            label = track['label']
            if track['statistics'] is not None:
                label = f"{label} (RMSE {track['statistics'].rmse:.2f}m)"
            track_axes.plot(positions[:, 0], positions[:, 1], color=track['color'],
                            label=label, linewidth=1.5, alpha=0.8)

        for anchor in (anchors or {}).values():
            track_axes.scatter(anchor.position[0], anchor.position[1], marker='^',
                               color='black', s=60)
            track_axes.annotate(anchor.id, anchor.position[:2], textcoords='offset points',
                                xytext=(4, 4), fontsize=8)

        indoor = [f.position for f in self.fused if f.indoor]
        if indoor:
            indoor = np.array(indoor)
            track_axes.scatter(indoor[:, 0], indoor[:, 1], color='orange', s=8,
                               label='Indoor mode', zorder=3)

        track_axes.set_xlabel('East (m)')
        track_axes.set_ylabel('North (m)')
        track_axes.set_title('Track Comparison')
        track_axes.set_aspect('equal', adjustable='datalim')
        track_axes.grid(True, alpha=0.3)
        if track_axes.get_legend_handles_labels()[0]:
            track_axes.legend(loc='best')

        if self.fused:
            self._plot_quality(axes[0, 1])

        self.figure.tight_layout()
        if save_path:
            self.figure.savefig(save_path, dpi=150)
            logger.info(f"Saved track plot to {save_path}")
        if show:
            plt.show()
        return self.figure

    def _plot_quality(self, axes) -> None:
        times = np.array([f.timestamp for f in self.fused])
        times = times - times[0]
        accuracy = [f.accuracy_m for f in self.fused]
        confidence = [f.confidence for f in self.fused]

        axes.plot(times, accuracy, color='tab:red', label='Accuracy (m)')
        axes.set_xlabel('Time (s)')
        axes.set_ylabel('Accuracy (m)', color='tab:red')
        axes.grid(True, alpha=0.3)

        twin = axes.twinx()
        twin.plot(times, confidence, color='tab:blue', label='Confidence')
        twin.set_ylabel('Confidence', color='tab:blue')
        twin.set_ylim(0.0, 1.0)
        axes.set_title('Fusion Quality')

    def close(self) -> None:
        if self.figure is not None:
            plt.close(self.figure)
            self.figure = None
