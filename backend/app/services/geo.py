from __future__ import annotations

import math
from dataclasses import dataclass

EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE = 111.32
# Absorbs float rounding for points sitting exactly on the radius.
_COVERAGE_EPSILON_DEGREES = 1e-9


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    @property
    def wraps_antimeridian(self) -> bool:
        return self.min_lng < -180.0 or self.max_lng > 180.0

    def contains(self, lat: float, lng: float) -> bool:
        if not self.min_lat <= lat <= self.max_lat:
            return False
        if self.min_lng <= lng <= self.max_lng:
            return True
        if not self.wraps_antimeridian:
            return False
        return any(
            self.min_lng <= shifted <= self.max_lng for shifted in (lng - 360.0, lng + 360.0)
        )


def haversine_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points, in kilometers."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def bounding_box(lat: float, lng: float, radius_km: float) -> BoundingBox:
    """
    Lat/lng window covering every point within `radius_km` of the center.

    The flat 111.32 km/degree approximation is slightly smaller than the
    spherical extent for Earth radius 6371 km, so each delta takes the larger
    of the two. The box may over-cover; callers filter with
    `haversine_distance` afterwards.
    """
    radius = max(0.0, radius_km)
    angular_radius = radius / EARTH_RADIUS_KM

    lat_delta = max(radius / KM_PER_DEGREE, math.degrees(angular_radius))
    lat_delta += _COVERAGE_EPSILON_DEGREES
    min_lat = max(-90.0, lat - lat_delta)
    max_lat = min(90.0, lat + lat_delta)

    cos_lat = math.cos(math.radians(lat))
    sin_angular = math.sin(min(angular_radius, math.pi / 2))
    reaches_pole = min_lat <= -90.0 or max_lat >= 90.0 or sin_angular >= cos_lat
    if reaches_pole or angular_radius >= math.pi / 2:
        return BoundingBox(min_lat=min_lat, max_lat=max_lat, min_lng=-180.0, max_lng=180.0)

    lng_delta = max(
        radius / (KM_PER_DEGREE * cos_lat),
        math.degrees(math.asin(sin_angular / cos_lat)),
    )
    lng_delta += _COVERAGE_EPSILON_DEGREES
    if lng_delta >= 180.0:
        return BoundingBox(min_lat=min_lat, max_lat=max_lat, min_lng=-180.0, max_lng=180.0)

    return BoundingBox(
        min_lat=min_lat,
        max_lat=max_lat,
        min_lng=lng - lng_delta,
        max_lng=lng + lng_delta,
    )
