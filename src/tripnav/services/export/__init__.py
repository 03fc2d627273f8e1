"""Export services."""

from .geojson import geofence_feature, linestring_feature, navigation_overlays

__all__ = [
    "navigation_overlays",
    "linestring_feature",
    "geofence_feature",
]
