"""
Simulation harness: synthetic walking scenarios and sensor streams.
"""

from .scenario import ScenarioParameters, SensorSimulator, WalkingTrajectory, default_anchors

__all__ = [
    "ScenarioParameters",
    "SensorSimulator",
    "WalkingTrajectory",
    "default_anchors",
]
