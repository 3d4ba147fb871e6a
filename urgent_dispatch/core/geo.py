"""
Geometry helpers for urgent dispatch.

Pure functions, no I/O:

- ``haversine_km`` -- exact great-circle distance, used for every radius cutoff
- ``approximate_distance_km`` -- planar approximation, only for ordering
- ``bounding_box`` -- cheap coordinate-range pre-filter, always a superset of
  the exact search circle
- ``validate_coordinates`` -- finite lat in [-90, 90], lng in [-180, 180]
- ``nearest_neighbor_route`` -- greedy visiting order (not globally optimal)
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Sequence

from urgent_dispatch.core.domain import GeoPoint

__all__ = [
    "EARTH_RADIUS_KM", "KM_PER_DEGREE",
    "BoundingBox",
    "haversine_km", "approximate_distance_km",
    "bounding_box", "validate_coordinates",
    "nearest_neighbor_route",
]

EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE = 111.0


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    @property
    def spans_all_longitudes(self) -> bool:
        return self.min_lng <= -180.0 and self.max_lng >= 180.0

    def contains(self, lat: float, lng: float) -> bool:
        return self.min_lat <= lat <= self.max_lat and self.min_lng <= lng <= self.max_lng


# ---------------------------------------------------------------------------
# Distances
# ---------------------------------------------------------------------------

def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(dlng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def approximate_distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Planar distance, 111 km per degree, longitude scaled by cos(lat1).

    Fast but wrong over long distances and near the poles. Never use it for
    a radius cutoff.
    """
    dlat = (lat2 - lat1) * KM_PER_DEGREE
    dlng = (lng2 - lng1) * KM_PER_DEGREE * math.cos(math.radians(lat1))
    return math.sqrt(dlat * dlat + dlng * dlng)


# ---------------------------------------------------------------------------
# Bounding box
# ---------------------------------------------------------------------------

def bounding_box(lat: float, lng: float, radius_km: float) -> BoundingBox:
    """Axis-aligned box around a search circle.

    Uses 1 deg lat ~ 111 km and 1 deg lng ~ 111 km x cos(lat). Close to the
    poles that approximation undershoots the real longitude extent of the
    circle, so the delta is widened to the exact great-circle bound. A box
    that would contain a pole or cross the antimeridian covers every
    longitude instead.
    """
    lat_delta = radius_km / KM_PER_DEGREE
    min_lat = max(-90.0, lat - lat_delta)
    max_lat = min(90.0, lat + lat_delta)

    full_span = BoundingBox(min_lat, max_lat, -180.0, 180.0)

    if lat + lat_delta >= 90.0 or lat - lat_delta <= -90.0:
        return full_span

    cos_lat = math.cos(math.radians(lat))
    angular = radius_km / EARTH_RADIUS_KM
    if angular >= math.pi / 2 or math.sin(angular) >= cos_lat:
        return full_span

    approx_delta = radius_km / (KM_PER_DEGREE * cos_lat)
    exact_delta = math.degrees(math.asin(math.sin(angular) / cos_lat))
    lng_delta = max(approx_delta, exact_delta)

    min_lng = lng - lng_delta
    max_lng = lng + lng_delta
    if min_lng < -180.0 or max_lng > 180.0:
        return full_span

    return BoundingBox(min_lat, max_lat, min_lng, max_lng)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _is_real_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_coordinates(lat: Any, lng: Any) -> bool:
    """True when both are finite numbers inside the valid ranges."""
    if not _is_real_number(lat) or not _is_real_number(lng):
        return False
    if not math.isfinite(lat) or not math.isfinite(lng):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0


# ---------------------------------------------------------------------------
# Route ordering
# ---------------------------------------------------------------------------

def nearest_neighbor_route(start: GeoPoint, points: Sequence[GeoPoint]) -> list[GeoPoint]:
    """Visiting order that starts at ``start`` and always hops to the nearest
    unvisited point (approximate distance). Ties keep input order.
    """
    route = [start]
    remaining = list(points)

    while remaining:
        current = route[-1]
        nearest_index = 0
        nearest_distance = math.inf
        for index, point in enumerate(remaining):
            distance = approximate_distance_km(current.lat, current.lng, point.lat, point.lng)
            if distance < nearest_distance:
                nearest_distance = distance
                nearest_index = index
        route.append(remaining.pop(nearest_index))

    return route
