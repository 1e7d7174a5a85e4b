"""
Geodetic helpers for converting between WGS-84 fixes and the local frame.

The engine fuses positions in a local East-North-Up plane anchored at an
origin fix. Over the few kilometers a tracking session covers, an
equirectangular projection is accurate to centimeters:

    x_east  = (lon - lon0) · 111320 · cos(lat0)
    y_north = (lat - lat0) · 111320
    z_up    = alt - alt0

Great-circle distances use the haversine formula with R = 6371 km.
"""

import math

import numpy as np

from .types import GeoPoint

EARTH_RADIUS_M = 6371000.0
METERS_PER_DEGREE = 111320.0


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance between two fixes in meters.

    Args:
        lat1, lon1: First point (degrees)
        lat2, lon2: Second point (degrees)

    Returns:
        Distance along the Earth's surface (m)
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = (math.sin(d_phi / 2) ** 2
         + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2)
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(a), math.sqrt(1 - a))


class LocalTangentPlane:
    """Equirectangular ENU projection around a fixed origin."""

    def __init__(self, origin: GeoPoint):
        self.origin = origin
        self._meters_per_deg_lon = METERS_PER_DEGREE * math.cos(math.radians(origin.latitude))

    def to_local(self, point: GeoPoint) -> np.ndarray:
        x = (point.longitude - self.origin.longitude) * self._meters_per_deg_lon
        y = (point.latitude - self.origin.latitude) * METERS_PER_DEGREE
        z = point.altitude - self.origin.altitude
        return np.array([x, y, z])

    def to_geo(self, position: np.ndarray) -> GeoPoint:
        latitude = self.origin.latitude + position[1] / METERS_PER_DEGREE
        if self._meters_per_deg_lon > 0:
            longitude = self.origin.longitude + position[0] / self._meters_per_deg_lon
        else:
            # Projection collapses at the poles
            longitude = self.origin.longitude
        return GeoPoint(float(latitude), float(longitude), float(self.origin.altitude + position[2]))

    def __repr__(self) -> str:
        return (f"LocalTangentPlane(origin=({self.origin.latitude:.6f}, "
                f"{self.origin.longitude:.6f}, {self.origin.altitude:.1f}))")
