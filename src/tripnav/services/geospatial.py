"""Geospatial helper functions."""

from __future__ import annotations

import math
from typing import Sequence

from shapely.geometry import Point

from ..errors import InvalidPolyline
from ..models.domain import Coordinate

EARTH_RADIUS_M = 6_371_000.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Compute distance in meters between two coordinates using the Haversine formula."""

    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def distance_m(a: Coordinate, b: Coordinate) -> float:
    return haversine_m(a.latitude, a.longitude, b.latitude, b.longitude)


def bearing_degrees(origin: Coordinate, target: Coordinate) -> float:
    """Calculate the initial bearing from ``origin`` to ``target`` in [0, 360)."""

    phi1 = math.radians(origin.latitude)
    phi2 = math.radians(target.latitude)
    delta_lambda = math.radians(target.longitude - origin.longitude)
    y = math.sin(delta_lambda) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(delta_lambda)
    bearing = math.degrees(math.atan2(y, x))
    return (bearing + 360) % 360


def closest_point_on_polyline(point: Coordinate, polyline: Sequence[Coordinate]) -> tuple[int, float]:
    """Return ``(index, distance_m)`` of the polyline vertex nearest to ``point``.

    Ties resolve to the lowest index. Polylines with fewer than two vertices
    cannot be tracked against and raise ``InvalidPolyline``.
    """

    if len(polyline) < 2:
        raise InvalidPolyline(f"Polyline needs at least 2 points, got {len(polyline)}.")

    best_index = 0
    best_distance = math.inf
    for index, vertex in enumerate(polyline):
        candidate = distance_m(point, vertex)
        if candidate < best_distance:
            best_index = index
            best_distance = candidate
    return best_index, best_distance


def polyline_length_m(polyline: Sequence[Coordinate]) -> float:
    return sum(distance_m(a, b) for a, b in zip(polyline, polyline[1:]))


def circle_polygon(center: Coordinate, radius_m: float, resolution: int = 16) -> list[tuple[float, float]]:
    """Approximate a metric circle as a closed ring of (lat, lon) pairs.

    The buffer is computed in a local equirectangular plane around ``center``,
    which is accurate for geofence-sized radii.
    """

    meters_per_deg_lat = math.pi * EARTH_RADIUS_M / 180.0
    meters_per_deg_lon = meters_per_deg_lat * math.cos(math.radians(center.latitude))
    ring = Point(0.0, 0.0).buffer(radius_m, quad_segs=resolution).exterior.coords
    return [
        (center.latitude + y / meters_per_deg_lat, center.longitude + x / meters_per_deg_lon)
        for x, y in ring
    ]
