"""Backend persistence for trips and their side records."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol, TypeVar

from ..config import settings
from ..db.supabase import get_supabase_client
from ..errors import PersistenceError
from ..models.domain import MaintenanceRequest, Trip, VehicleStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TripStore(Protocol):
    def fetch_driver_trips(self, driver_id: str) -> list[Trip]:
        ...

    def persist_trip(self, trip: Trip) -> None:
        ...

    def insert_maintenance_request(self, request: MaintenanceRequest) -> None:
        ...

    def update_vehicle_status(self, vehicle_id: str, status: VehicleStatus) -> None:
        ...

    def record_geofence_event(self, trip_id: str, message: str, timestamp: datetime) -> None:
        ...

    def notify_fleet_manager(self, message: str, timestamp: datetime) -> None:
        ...


def maintenance_request_record(request: MaintenanceRequest, due_hours: int | None = None) -> dict[str, Any]:
    """Row for the ``maintenanceservicerequest`` table."""
    hours = due_hours if due_hours is not None else settings.maintenance_due_hours
    return {
        "id": str(uuid.uuid4()),
        "vehicleId": request.vehicle_id,
        "serviceType": "repair",
        "description": request.description,
        "priority": request.priority.value,
        "date": request.created_at.isoformat(),
        "dueDate": (request.created_at + timedelta(hours=hours)).isoformat(),
        "status": "pending",
        "notes": f"{request.kind.value.replace('_', '-')} inspection, trip {request.trip_id}",
        "issueType": request.kind.value,
        "totalCost": 0,
    }


class SupabaseTripStore:
    """TripStore backed by the Supabase tables of the fleet backend.

    Trip writes are retried with exponential backoff and raise
    ``PersistenceError`` once retries are exhausted, so the caller can roll
    back. Side records (tickets, vehicle status, geofence log, notifications)
    go through the same retry loop.
    """

    def __init__(
        self,
        client: Any = None,
        *,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self.max_retries = max_retries if max_retries is not None else settings.persistence_max_retries
        self.backoff_seconds = (
            backoff_seconds if backoff_seconds is not None else settings.persistence_backoff_seconds
        )
        self._sleep = sleep

    @property
    def client(self) -> Any:
        client = self._client or get_supabase_client()
        if client is None:
            raise PersistenceError("Supabase not configured. Set TRIPNAV_SUPABASE_URL and TRIPNAV_SUPABASE_KEY.")
        return client

    def _with_retries(self, description: str, operation: Callable[[], T]) -> T:
        attempt = 0
        while True:
            try:
                return operation()
            except PersistenceError:
                raise
            except Exception as e:
                attempt += 1
                if attempt > self.max_retries:
                    logger.error(f"{description} failed after {self.max_retries} retries: {e}")
                    raise PersistenceError(f"{description} failed: {e}") from e
                wait_time = self.backoff_seconds * (2 ** (attempt - 1))
                logger.debug(
                    f"{description} failed, retrying in {wait_time:.1f}s (attempt {attempt}/{self.max_retries}): {e}"
                )
                self._sleep(wait_time)

    def fetch_driver_trips(self, driver_id: str) -> list[Trip]:
        def _fetch() -> list[dict[str, Any]]:
            response = (
                self.client.table("trips")
                .select("*")
                .eq("driver_id", driver_id)
                .order("created_at")
                .execute()
            )
            return response.data or []

        rows = self._with_retries(f"Fetching trips for driver {driver_id}", _fetch)
        trips = []
        for row in rows:
            try:
                trips.append(Trip.from_record(row))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping malformed trip row {row.get('id')}: {e}")
        return trips

    def persist_trip(self, trip: Trip) -> None:
        record = trip.to_record()
        self._with_retries(
            f"Persisting trip {trip.id}",
            lambda: self.client.table("trips").update(record).eq("id", trip.id).execute(),
        )

    def insert_maintenance_request(self, request: MaintenanceRequest) -> None:
        record = maintenance_request_record(request)
        self._with_retries(
            f"Creating maintenance request for trip {request.trip_id}",
            lambda: self.client.table("maintenanceservicerequest").insert(record).execute(),
        )

    def update_vehicle_status(self, vehicle_id: str, status: VehicleStatus) -> None:
        self._with_retries(
            f"Updating vehicle {vehicle_id}",
            lambda: self.client.table("vehicles").update({"status": status.value}).eq("id", vehicle_id).execute(),
        )

    def record_geofence_event(self, trip_id: str, message: str, timestamp: datetime) -> None:
        record = {
            "id": str(uuid.uuid4()),
            "tripId": trip_id,
            "message": message,
            "timestamp": timestamp.isoformat(),
        }
        self._with_retries(
            f"Recording geofence event for trip {trip_id}",
            lambda: self.client.table("geofence_events").insert(record).execute(),
        )

    def notify_fleet_manager(self, message: str, timestamp: datetime) -> None:
        record = {
            "message": message,
            "type": "trip_alert",
            "created_at": timestamp.isoformat(),
            "is_read": False,
        }
        self._with_retries(
            "Notifying fleet manager",
            lambda: self.client.table("notifications").insert(record).execute(),
        )


class InMemoryTripStore:
    """TripStore kept in process memory, for tests and offline runs.

    ``fail_writes`` makes the next N trip writes fail, which is how tests
    exercise rollback.
    """

    def __init__(self, trips: list[Trip] | None = None) -> None:
        self._lock = threading.Lock()
        self.trips: dict[str, Trip] = {trip.id: trip for trip in trips or []}
        self.maintenance_requests: list[dict[str, Any]] = []
        self.vehicle_status: dict[str, VehicleStatus] = {}
        self.geofence_events: list[dict[str, Any]] = []
        self.notifications: list[dict[str, Any]] = []
        self.fail_writes = 0

    def fetch_driver_trips(self, driver_id: str) -> list[Trip]:
        with self._lock:
            return [trip for trip in self.trips.values() if trip.driver_id == driver_id]

    def persist_trip(self, trip: Trip) -> None:
        with self._lock:
            if self.fail_writes > 0:
                self.fail_writes -= 1
                raise PersistenceError(f"Persisting trip {trip.id} failed: backend unavailable")
            self.trips[trip.id] = trip

    def insert_maintenance_request(self, request: MaintenanceRequest) -> None:
        with self._lock:
            self.maintenance_requests.append(maintenance_request_record(request))

    def update_vehicle_status(self, vehicle_id: str, status: VehicleStatus) -> None:
        with self._lock:
            self.vehicle_status[vehicle_id] = status

    def record_geofence_event(self, trip_id: str, message: str, timestamp: datetime) -> None:
        with self._lock:
            self.geofence_events.append({"tripId": trip_id, "message": message, "timestamp": timestamp})

    def notify_fleet_manager(self, message: str, timestamp: datetime) -> None:
        with self._lock:
            self.notifications.append({"message": message, "type": "trip_alert", "created_at": timestamp})

    def get_trip(self, trip_id: str) -> Optional[Trip]:
        with self._lock:
            return self.trips.get(trip_id)