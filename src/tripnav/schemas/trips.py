"""Trip, inspection and navigation request/response schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class CoordinateModel(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class TripModel(BaseModel):
    id: str
    name: str
    pickup: str
    destination: str
    pickup_coordinate: CoordinateModel
    destination_coordinate: CoordinateModel
    status: str
    has_completed_pre_trip: bool
    has_completed_post_trip: bool
    notes: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    vehicle_id: Optional[str] = None
    estimated_distance_km: Optional[float] = None


class RouteProgressModel(BaseModel):
    has_route: bool
    route_valid: bool
    is_deviated: bool
    arrived: bool
    distance_from_route_m: Optional[float] = None
    remaining_distance_m: Optional[float] = None
    remaining_duration_s: Optional[float] = None
    average_speed_mps: Optional[float] = None
    remaining_distance_text: str
    eta_text: str


class SessionResponse(BaseModel):
    driver_id: str
    active_trip: Optional[TripModel] = None
    queued_trips: List[TripModel]
    completed_trips: List[TripModel]
    sync_state: str
    navigating: bool
    navigation_generation: int
    progress: RouteProgressModel
    geofences: Dict[str, bool]
    last_location: Optional[CoordinateModel] = None
    can_start_trip: bool
    estimated_arrival: Optional[datetime] = None
    routing_error: Optional[str] = None


class OpenSessionRequest(BaseModel):
    driver_id: str = Field(..., min_length=1)


class StartTripRequest(BaseModel):
    trip_id: Optional[str] = Field(
        default=None,
        description="Trip to start. If omitted, the oldest queued trip is started.",
    )


class InspectionItemState(BaseModel):
    id: str
    checked: bool = False
    has_issue: bool = False
    notes: str = ""


class InspectionRequest(BaseModel):
    items: List[InspectionItemState] = Field(..., description="Item states; items not listed stay unchecked.")


class InspectionItemModel(BaseModel):
    id: str
    section: str
    title: str
    description: str


class LocationUpdate(CoordinateModel):
    timestamp: Optional[datetime] = Field(default=None, description="Sample time; server time if omitted.")
    speed_mps: Optional[float] = Field(default=None, ge=0)


class LocationResponse(BaseModel):
    events: List[Dict[str, Any]]
    session: SessionResponse


class NavigationStarted(BaseModel):
    generation: int
    session: SessionResponse
