"""Spherical-earth distance helpers used by proximity search and matching."""

from __future__ import annotations

import math
from dataclasses import dataclass

EARTH_RADIUS_MILES = 3958.8


@dataclass(frozen=True)
class GeoPoint:
    """A WGS84 latitude/longitude pair in decimal degrees."""

    lat: float
    lng: float

    def is_valid(self) -> bool:
        return (
            math.isfinite(self.lat)
            and math.isfinite(self.lng)
            and -90.0 <= self.lat <= 90.0
            and -180.0 <= self.lng <= 180.0
        )


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    def contains(self, point: GeoPoint) -> bool:
        return (
            self.min_lat <= point.lat <= self.max_lat
            and self.min_lng <= point.lng <= self.max_lng
        )


def haversine_miles(a: GeoPoint, b: GeoPoint) -> float:
    return _central_angle(a, b) * EARTH_RADIUS_MILES


def _central_angle(a: GeoPoint, b: GeoPoint) -> float:
    lat1 = math.radians(a.lat)
    lat2 = math.radians(b.lat)
    d_lat = lat2 - lat1
    d_lng = math.radians(b.lng - a.lng)
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    return 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def bounding_box(center: GeoPoint, radius_miles: float) -> BoundingBox:
    """Return a lat/lng rectangle containing every point within ``radius_miles``.

    The longitude half-width is ``asin(sin(d) / cos(lat))``, the exact extent
    of a spherical cap, which shrinks the box with ``cos(lat)`` and never cuts
    off a true match. Boxes that reach a pole or cross the antimeridian fall
    back to the full longitude range because the store only gets two plain
    range predicates.
    """
    radius = max(radius_miles, 0.0)
    angular = radius / EARTH_RADIUS_MILES
    lat_offset = math.degrees(angular)
    min_lat = center.lat - lat_offset
    max_lat = center.lat + lat_offset

    if max_lat >= 90.0 or min_lat <= -90.0:
        return BoundingBox(max(min_lat, -90.0), min(max_lat, 90.0), -180.0, 180.0)

    ratio = math.sin(angular) / math.cos(math.radians(center.lat))
    if ratio >= 1.0:
        return BoundingBox(min_lat, max_lat, -180.0, 180.0)
    lng_offset = math.degrees(math.asin(ratio))
    min_lng = center.lng - lng_offset
    max_lng = center.lng + lng_offset
    if min_lng < -180.0 or max_lng > 180.0:
        return BoundingBox(min_lat, max_lat, -180.0, 180.0)
    return BoundingBox(min_lat, max_lat, min_lng, max_lng)


def is_within_radius(center: GeoPoint, point: GeoPoint, radius_miles: float) -> bool:
    return haversine_miles(center, point) <= radius_miles


def format_distance(distance_miles: float) -> str:
    if distance_miles < 0.1:
        return "Less than 0.1 miles"
    return f"{distance_miles:.1f} miles"


def destination_point(origin: GeoPoint, distance_miles: float, bearing_degrees: float) -> GeoPoint:
    """Point reached by travelling ``distance_miles`` from ``origin`` on a bearing."""
    angular = distance_miles / EARTH_RADIUS_MILES
    bearing = math.radians(bearing_degrees)
    lat1 = math.radians(origin.lat)
    lng1 = math.radians(origin.lng)
    lat2 = math.asin(
        math.sin(lat1) * math.cos(angular) + math.cos(lat1) * math.sin(angular) * math.cos(bearing)
    )
    lng2 = lng1 + math.atan2(
        math.sin(bearing) * math.sin(angular) * math.cos(lat1),
        math.cos(angular) - math.sin(lat1) * math.sin(lat2),
    )
    lng_degrees = (math.degrees(lng2) + 540.0) % 360.0 - 180.0
    return GeoPoint(math.degrees(lat2), lng_degrees)
