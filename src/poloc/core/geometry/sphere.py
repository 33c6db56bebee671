"""
Spherical geometry on a mean-radius Earth.

All angles are radians unless a name says otherwise; coordinates are WGS84
degrees. Distances are meters along the great circle (haversine).
"""

import math
from dataclasses import dataclass
from typing import List

from poloc.core.errors import ValidationError, ErrorCode
from poloc.core.protocol.constants import EARTH_RADIUS_M

TWO_PI = 2.0 * math.pi


@dataclass(frozen=True)
class GeoPoint:
    """A WGS84 coordinate in degrees."""
    latitude: float
    longitude: float

    def __post_init__(self):
        lat, lon = self.latitude, self.longitude
        if not (isinstance(lat, (int, float)) and isinstance(lon, (int, float))):
            raise ValidationError(
                f"Coordinates must be numeric, got ({lat!r}, {lon!r})",
                ErrorCode.INVALID_COORDINATES,
            )
        if not (math.isfinite(lat) and math.isfinite(lon)):
            raise ValidationError(f"Coordinates must be finite, got ({lat}, {lon})", ErrorCode.INVALID_COORDINATES)
        if not -90.0 <= lat <= 90.0:
            raise ValidationError(f"Latitude {lat} outside [-90, 90]", ErrorCode.INVALID_COORDINATES)
        if not -180.0 <= lon <= 180.0:
            raise ValidationError(f"Longitude {lon} outside [-180, 180]", ErrorCode.INVALID_COORDINATES)

    def to_dict(self) -> dict:
        return {"latitude": self.latitude, "longitude": self.longitude}

    @classmethod
    def from_dict(cls, data: dict) -> "GeoPoint":
        return cls(float(data["latitude"]), float(data["longitude"]))


def distance(p1: GeoPoint, p2: GeoPoint) -> float:
    """Great-circle distance in meters between two points."""
    phi1 = math.radians(p1.latitude)
    phi2 = math.radians(p2.latitude)
    d_phi = math.radians(p2.latitude - p1.latitude)
    d_lambda = math.radians(p2.longitude - p1.longitude)

    a = (math.sin(d_phi / 2) ** 2
         + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2)
    a = min(1.0, max(0.0, a))
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def bearing(p1: GeoPoint, p2: GeoPoint) -> float:
    """Initial bearing from p1 towards p2, in radians within [0, 2*pi)."""
    phi1 = math.radians(p1.latitude)
    phi2 = math.radians(p2.latitude)
    d_lambda = math.radians(p2.longitude - p1.longitude)

    y = math.sin(d_lambda) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(d_lambda)
    theta = math.atan2(y, x) % TWO_PI
    # atan2 of a tiny negative value can round up to exactly 2*pi
    return 0.0 if theta >= TWO_PI else theta


def destination_point(origin: GeoPoint, bearing_rad: float, distance_m: float) -> GeoPoint:
    """Point reached from origin after travelling distance_m along bearing_rad."""
    delta = distance_m / EARTH_RADIUS_M
    phi1 = math.radians(origin.latitude)
    lambda1 = math.radians(origin.longitude)

    phi2 = math.asin(
        math.sin(phi1) * math.cos(delta)
        + math.cos(phi1) * math.sin(delta) * math.cos(bearing_rad)
    )
    lambda2 = lambda1 + math.atan2(
        math.sin(bearing_rad) * math.sin(delta) * math.cos(phi1),
        math.cos(delta) - math.sin(phi1) * math.sin(phi2),
    )
    lon = (math.degrees(lambda2) + 540.0) % 360.0 - 180.0
    return GeoPoint(math.degrees(phi2), lon)


def generate_test_points(center: GeoPoint, radius_m: float, count: int) -> List[GeoPoint]:
    """
    Evenly spaced ring of points at radius_m around center.

    The first point lies due north; the rest follow clockwise.
    """
    if count <= 0:
        return []
    step = TWO_PI / count
    return [destination_point(center, i * step, radius_m) for i in range(count)]
