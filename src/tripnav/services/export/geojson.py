"""GeoJSON map overlays for an active navigation session."""

from __future__ import annotations

from typing import Any, Dict, List, Sequence

from ...models.domain import Coordinate, Geofence, RoutePlan
from ..geospatial import circle_polygon

REMAINING_ROUTE_COLOR = "#0000c1"
COMPLETED_PATH_COLOR = "#9e9e9e"
GEOFENCE_COLORS = {"pickup": "#38e000", "destination": "#e0003e"}


def _line_coordinates(points: Sequence[Coordinate]) -> List[List[float]]:
    # GeoJSON positions are [lon, lat]
    return [[point.longitude, point.latitude] for point in points]


def linestring_feature(points: Sequence[Coordinate], properties: Dict[str, Any]) -> Dict[str, Any] | None:
    if len(points) < 2:
        return None
    return {
        "type": "Feature",
        "geometry": {"type": "LineString", "coordinates": _line_coordinates(points)},
        "properties": properties,
    }


def geofence_feature(fence: Geofence, resolution: int = 16) -> Dict[str, Any]:
    """Polygon approximating the fence circle.

    Args:
        fence: Circular zone to draw
        resolution: Segments per quarter circle

    Returns:
        GeoJSON Feature with a closed Polygon ring in [lon, lat] order
    """
    ring = [[lon, lat] for lat, lon in circle_polygon(fence.center, fence.radius_m, resolution)]
    if ring and ring[0] != ring[-1]:
        ring.append(ring[0])
    return {
        "type": "Feature",
        "geometry": {"type": "Polygon", "coordinates": [ring]},
        "properties": {
            "kind": "geofence",
            "name": fence.name,
            "radius_m": fence.radius_m,
            "color": GEOFENCE_COLORS.get(fence.name, "#e0af00"),
        },
    }


def navigation_overlays(
    remaining: RoutePlan | None,
    completed_path: Sequence[Coordinate],
    fences: Sequence[Geofence],
) -> Dict[str, Any]:
    """FeatureCollection with the remaining route, the traveled path and the geofences."""
    features: List[Dict[str, Any]] = []
    if remaining is not None:
        feature = linestring_feature(
            remaining.polyline,
            {
                "kind": "remaining_route",
                "distance_m": round(remaining.total_distance_m, 1),
                "duration_s": round(remaining.expected_duration_s, 1),
                "color": REMAINING_ROUTE_COLOR,
            },
        )
        if feature:
            features.append(feature)
    feature = linestring_feature(completed_path, {"kind": "completed_path", "color": COMPLETED_PATH_COLOR})
    if feature:
        features.append(feature)
    features.extend(geofence_feature(fence) for fence in fences)
    return {"type": "FeatureCollection", "features": features}
