"""
Visualization module for fused positioning runs.
"""

from .plotter import TrackPlotter, TrackStatistics, compute_track_statistics

__all__ = [
    "TrackPlotter",
    "TrackStatistics",
    "compute_track_statistics",
]
