"""Convert session state and navigation events into API payloads."""

from __future__ import annotations

from typing import Any, Iterable

from ...models.domain import Coordinate, Trip
from ...schemas.trips import (
    CoordinateModel,
    InspectionItemModel,
    RouteProgressModel,
    SessionResponse,
    TripModel,
)
from ..navigation.geofence import GeofenceEntered, GeofenceExited
from ..navigation.route_tracker import RouteCompleted, RouteDeviated, RouteProgress
from ..trips.inspection import CANONICAL_ITEMS
from ..trips.session import SessionSnapshot
from .formatter import format_distance, format_eta


def coordinate_to_model(coordinate: Coordinate) -> CoordinateModel:
    return CoordinateModel(latitude=coordinate.latitude, longitude=coordinate.longitude)


def trip_to_model(trip: Trip) -> TripModel:
    return TripModel(
        id=trip.id,
        name=trip.display_name,
        pickup=trip.pickup,
        destination=trip.destination,
        pickup_coordinate=coordinate_to_model(trip.pickup_coordinate),
        destination_coordinate=coordinate_to_model(trip.destination_coordinate),
        status=trip.status.value,
        has_completed_pre_trip=trip.has_completed_pre_trip,
        has_completed_post_trip=trip.has_completed_post_trip,
        notes=trip.notes,
        start_time=trip.start_time,
        end_time=trip.end_time,
        vehicle_id=trip.vehicle_id,
        estimated_distance_km=trip.estimated_distance_km,
    )


def progress_to_model(progress: RouteProgress) -> RouteProgressModel:
    return RouteProgressModel(
        has_route=progress.has_route,
        route_valid=progress.route_valid,
        is_deviated=progress.is_deviated,
        arrived=progress.arrived,
        distance_from_route_m=progress.distance_from_route_m,
        remaining_distance_m=progress.remaining_distance_m,
        remaining_duration_s=progress.remaining_duration_s,
        average_speed_mps=progress.average_speed_mps,
        remaining_distance_text=format_distance(progress.remaining_distance_m),
        eta_text=format_eta(progress.remaining_duration_s),
    )


def snapshot_to_response(snapshot: SessionSnapshot) -> SessionResponse:
    return SessionResponse(
        driver_id=snapshot.driver_id,
        active_trip=trip_to_model(snapshot.active_trip) if snapshot.active_trip else None,
        queued_trips=[trip_to_model(trip) for trip in snapshot.queued_trips],
        completed_trips=[trip_to_model(trip) for trip in snapshot.completed_trips],
        sync_state=snapshot.sync_state.value,
        navigating=snapshot.navigating,
        navigation_generation=snapshot.navigation_generation,
        progress=progress_to_model(snapshot.progress),
        geofences=dict(snapshot.geofences),
        last_location=coordinate_to_model(snapshot.last_location) if snapshot.last_location else None,
        can_start_trip=snapshot.can_start_trip,
        estimated_arrival=snapshot.estimated_arrival,
        routing_error=snapshot.routing_error,
    )


def event_to_dict(event: Any) -> dict[str, Any]:
    if isinstance(event, RouteDeviated):
        return {
            "type": "route_deviated",
            "distance_from_route_m": round(event.distance_from_route_m, 1),
            "closest_index": event.closest_index,
        }
    if isinstance(event, RouteCompleted):
        return {"type": "route_completed"}
    if isinstance(event, GeofenceEntered):
        return {"type": "geofence_entered", "fence": event.fence.name}
    if isinstance(event, GeofenceExited):
        return {"type": "geofence_exited", "fence": event.fence.name}
    return {"type": event.__class__.__name__}


def events_to_dicts(events: Iterable[Any]) -> list[dict[str, Any]]:
    return [event_to_dict(event) for event in events]


def inspection_template() -> list[InspectionItemModel]:
    return [
        InspectionItemModel(id=item_id, section=section.value, title=title, description=description)
        for item_id, section, title, description in CANONICAL_ITEMS
    ]
