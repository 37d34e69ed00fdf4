from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence, Tuple
import math


R_EARTH = 6371000.0
# Approximate meters per degree of latitude. Slightly under the true value so
# degree windows derived from it err on the large side.
METERS_PER_DEGREE = 111000.0


def to_rad(d: float) -> float:
    return d * math.pi / 180.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters between two lat/lon points."""
    dlat = to_rad(lat2 - lat1)
    dlon = to_rad(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(to_rad(lat1)) * math.cos(to_rad(lat2)) * math.sin(dlon / 2) ** 2
    )
    return 2 * R_EARTH * math.asin(min(1.0, math.sqrt(a)))


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def lerp(a: float, b: float, t: float) -> float:
    return a + (b - a) * t


def lerp_angle(a: float, b: float, t: float) -> float:
    """Interpolate headings in degrees along the shortest arc; result is in [0, 360)."""
    diff = ((b - a + 540.0) % 360.0) - 180.0
    return (a + diff * t + 360.0) % 360.0


def smoothstep(p: float) -> float:
    """Ease-in/ease-out curve 3p^2 - 2p^3 for p in [0, 1]."""
    p = clamp(p, 0.0, 1.0)
    return p * p * (3.0 - 2.0 * p)


def map_range(value: float, in_range: Sequence[float], out_range: Sequence[float]) -> float:
    """Clamp ``value`` to ``in_range`` and re-map it linearly onto ``out_range``."""
    lo, hi = in_range[0], in_range[1]
    if hi == lo:
        return out_range[0]
    clamped = clamp(value, min(lo, hi), max(lo, hi))
    normalized = (clamped - lo) / (hi - lo)
    return out_range[0] + normalized * (out_range[1] - out_range[0])


def meters_to_lat_degrees(meters: float) -> float:
    return meters / METERS_PER_DEGREE


def meters_to_lon_degrees(meters: float, lat: float) -> float:
    # Longitude lines converge towards the poles
    cos_lat = max(math.cos(to_rad(lat)), 1e-6)
    return meters / (METERS_PER_DEGREE * cos_lat)


@dataclass(frozen=True)
class Bounds:
    """Geographic bounding box in degrees."""
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float

    @classmethod
    def from_points(cls, points: Iterable[Tuple[float, float]]) -> "Bounds":
        lats = []
        lons = []
        for lat, lon in points:
            lats.append(lat)
            lons.append(lon)
        if not lats:
            raise ValueError("cannot derive bounds from an empty point set")
        return cls(min(lats), max(lats), min(lons), max(lons))

    @property
    def lat_range(self) -> Tuple[float, float]:
        return (self.min_lat, self.max_lat)

    @property
    def lon_range(self) -> Tuple[float, float]:
        return (self.min_lon, self.max_lon)

    def center(self) -> Tuple[float, float]:
        return ((self.min_lat + self.max_lat) / 2, (self.min_lon + self.max_lon) / 2)

    def to_list(self) -> list:
        return [[self.min_lat, self.max_lat], [self.min_lon, self.max_lon]]
