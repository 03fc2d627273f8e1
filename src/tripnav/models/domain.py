"""Domain models for trips, routes and location samples."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional


@dataclass(frozen=True, slots=True)
class Coordinate:
    """WGS84 latitude/longitude pair in degrees."""

    latitude: float
    longitude: float

    def as_tuple(self) -> tuple[float, float]:
        return (self.latitude, self.longitude)


@dataclass(frozen=True, slots=True)
class LocationSample:
    coordinate: Coordinate
    timestamp: datetime
    speed_mps: Optional[float] = None


@dataclass(frozen=True, slots=True)
class RouteStep:
    """One maneuver of a computed route.

    ``start_index`` is the polyline vertex where the step begins.
    """

    instruction: str
    maneuver: str
    distance_m: float
    start_index: int = 0

    @property
    def is_turn(self) -> bool:
        if self.maneuver in {"turn", "fork", "off ramp", "on ramp", "end of road", "roundabout", "rotary"}:
            return True
        text = self.instruction.lower()
        return "turn" in text or "take" in text or "exit" in text


@dataclass(frozen=True, slots=True)
class RoutePlan:
    polyline: tuple[Coordinate, ...]
    total_distance_m: float
    expected_duration_s: float
    steps: tuple[RouteStep, ...] = ()

    @property
    def destination(self) -> Optional[Coordinate]:
        return self.polyline[-1] if self.polyline else None


@dataclass(frozen=True, slots=True)
class Geofence:
    name: str
    center: Coordinate
    radius_m: float


class TripStatus(str, Enum):
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    DELIVERED = "delivered"


# Backend ``trip_status`` column values.
_STATUS_FROM_RECORD = {
    "upcoming": TripStatus.ASSIGNED,
    "assigned": TripStatus.ASSIGNED,
    "current": TripStatus.IN_PROGRESS,
    "delivered": TripStatus.DELIVERED,
}
_STATUS_TO_RECORD = {
    TripStatus.ASSIGNED: "assigned",
    TripStatus.IN_PROGRESS: "current",
    TripStatus.DELIVERED: "delivered",
}


class InspectionKind(str, Enum):
    PRE_TRIP = "pre_trip"
    POST_TRIP = "post_trip"


class MaintenancePriority(str, Enum):
    URGENT = "urgent"
    LOW = "low"


class VehicleStatus(str, Enum):
    AVAILABLE = "Available"
    IN_SERVICE = "In Service"
    UNDER_MAINTENANCE = "Under Maintenance"


class SyncState(str, Enum):
    """Durability of the last local transition."""

    CONFIRMED = "confirmed"
    PENDING = "pending"
    ROLLED_BACK = "rolled_back"


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def _optional_float(value: Any) -> Optional[float]:
    return float(value) if value is not None else None


@dataclass(frozen=True, slots=True)
class Trip:
    """Local projection of a ``trips`` row.

    Instances are immutable; TripLifecycle produces new versions on each transition.
    """

    id: str
    pickup: str
    destination: str
    pickup_coordinate: Coordinate
    destination_coordinate: Coordinate
    status: TripStatus = TripStatus.ASSIGNED
    has_completed_pre_trip: bool = False
    has_completed_post_trip: bool = False
    notes: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    vehicle_id: Optional[str] = None
    driver_id: Optional[str] = None
    created_at: Optional[datetime] = None
    estimated_distance_km: Optional[float] = None
    estimated_time_hours: Optional[float] = None

    @property
    def display_name(self) -> str:
        return self.pickup or f"Trip-{self.id[:8]}"

    @classmethod
    def from_record(cls, row: dict[str, Any]) -> "Trip":
        status_value = str(row.get("trip_status") or "assigned")
        status = _STATUS_FROM_RECORD.get(status_value)
        if status is None:
            raise ValueError(f"Unknown trip_status '{status_value}' for trip {row.get('id')}")
        return cls(
            id=str(row["id"]),
            pickup=row.get("pickup") or "N/A",
            destination=row.get("destination") or "N/A",
            pickup_coordinate=Coordinate(
                float(row.get("start_latitude") or 0.0),
                float(row.get("start_longitude") or 0.0),
            ),
            destination_coordinate=Coordinate(
                float(row.get("end_latitude") or 0.0),
                float(row.get("end_longitude") or 0.0),
            ),
            status=status,
            has_completed_pre_trip=bool(row.get("has_completed_pre_trip", False)),
            has_completed_post_trip=bool(row.get("has_completed_post_trip", False)),
            notes=row.get("notes"),
            start_time=_parse_timestamp(row.get("start_time")),
            end_time=_parse_timestamp(row.get("end_time")),
            vehicle_id=str(row["vehicle_id"]) if row.get("vehicle_id") else None,
            driver_id=str(row["driver_id"]) if row.get("driver_id") else None,
            created_at=_parse_timestamp(row.get("created_at")),
            estimated_distance_km=_optional_float(row.get("estimated_distance")),
            estimated_time_hours=_optional_float(row.get("estimated_time")),
        )

    def to_record(self) -> dict[str, Any]:
        """Columns owned by the trip state machine."""
        return {
            "trip_status": _STATUS_TO_RECORD[self.status],
            "has_completed_pre_trip": self.has_completed_pre_trip,
            "has_completed_post_trip": self.has_completed_post_trip,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
        }


@dataclass(frozen=True, slots=True)
class MaintenanceRequest:
    trip_id: str
    vehicle_id: Optional[str]
    kind: InspectionKind
    priority: MaintenancePriority
    issues: tuple[tuple[str, str], ...]
    created_at: datetime

    @property
    def description(self) -> str:
        return "\n".join(f"{title}: {notes}" for title, notes in self.issues)
