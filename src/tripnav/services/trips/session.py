"""Per-driver session that wires trips, inspections and live navigation together.

A ``DriverSession`` is created when a driver logs in and closed at logout. It
owns the driver's queue, the active trip's lifecycle and the navigation
components, and serializes every mutating call behind one lock. Readers use
``snapshot``, an immutable view that is replaced wholesale after each change.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Executor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from ...config import Settings, settings
from ...errors import IllegalTransition, NotQueued, PersistenceError, PreconditionNotMet
from ...models.domain import (
    Coordinate,
    Geofence,
    InspectionKind,
    LocationSample,
    MaintenanceRequest,
    SyncState,
    Trip,
    TripStatus,
    VehicleStatus,
)
from ...persistence.trips import TripStore
from ..export.geojson import navigation_overlays
from ..geospatial import distance_m
from ..navigation.geofence import DESTINATION_FENCE, PICKUP_FENCE, GeofenceEntered, GeofenceExited, GeofenceMonitor
from ..navigation.osrm_client import OSRMClient
from ..navigation.recalculation import RouteRecalculator, RoutingClient, Throttle
from ..navigation.route_tracker import RouteCompleted, RouteDeviated, RouteProgress, RouteTracker
from ..navigation.stream import LocationStream
from ..outputs.formatter import format_eta
from .inspection import InspectionChecklist
from .lifecycle import LifecycleEvent, MaintenanceRequested, TripLifecycle
from .queue import TripQueueScheduler

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class SessionSnapshot:
    driver_id: str
    active_trip: Optional[Trip] = None
    queued_trips: tuple[Trip, ...] = ()
    completed_trips: tuple[Trip, ...] = ()
    sync_state: SyncState = SyncState.CONFIRMED
    navigating: bool = False
    navigation_generation: int = 0
    progress: RouteProgress = field(default_factory=RouteProgress)
    geofences: tuple[tuple[str, bool], ...] = ()
    last_location: Optional[Coordinate] = None
    can_start_trip: bool = False
    estimated_arrival: Optional[datetime] = None
    routing_error: Optional[str] = None


def estimated_arrival(trip: Trip, config: Settings | None = None) -> Optional[datetime]:
    """Start time plus the planned distance at the fallback speed (one hour if unknown)."""
    if trip.start_time is None:
        return None
    config = config or settings
    if trip.estimated_distance_km:
        hours = trip.estimated_distance_km / config.fallback_speed_kmh
    else:
        hours = 1.0
    return trip.start_time + timedelta(hours=hours)


class DriverSession:
    def __init__(
        self,
        driver_id: str,
        store: TripStore,
        router: RoutingClient | None = None,
        *,
        config: Settings | None = None,
        clock: Clock | None = None,
        executor: Executor | None = None,
        monotonic: Callable[[], float] | None = None,
    ) -> None:
        self.driver_id = driver_id
        self.store = store
        self.config = config or settings
        self._router = router
        self._clock = clock or _utcnow
        self._executor = executor
        self._lock = threading.RLock()

        self.scheduler = TripQueueScheduler(self._new_lifecycle)
        self.tracker = RouteTracker(config=self.config)
        self.geofences = GeofenceMonitor()
        self._stream: LocationStream | None = None
        self._recalculator: RouteRecalculator | None = None
        self._throttle = Throttle(self.config.recalculation_interval_seconds, monotonic or time.monotonic)

        self._generation = 0
        self._navigating = False
        self._last_location: Coordinate | None = None
        self._estimated_arrival: datetime | None = None
        self._routing_error: str | None = None
        self._held_requests: list[MaintenanceRequest] = []
        self._closed = False
        self._snapshot = SessionSnapshot(driver_id)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._snapshot

    @property
    def navigating(self) -> bool:
        return self._navigating

    @property
    def closed(self) -> bool:
        return self._closed

    def overlays(self) -> dict[str, Any]:
        with self._lock:
            return navigation_overlays(
                self.tracker.trim_to_remaining(),
                self.tracker.completed_path,
                self.geofences.fences,
            )

    def _refresh(self) -> None:
        active = self.scheduler.active
        self._snapshot = SessionSnapshot(
            driver_id=self.driver_id,
            active_trip=active.trip if active else None,
            queued_trips=self.scheduler.queued,
            completed_trips=self.scheduler.completed,
            sync_state=active.sync_state if active else SyncState.CONFIRMED,
            navigating=self._navigating,
            navigation_generation=self._generation,
            progress=self.tracker.progress,
            geofences=tuple(self.geofences.membership().items()),
            last_location=self._last_location,
            can_start_trip=self._can_start_trip(),
            estimated_arrival=self._estimated_arrival,
            routing_error=self._routing_error,
        )

    def _can_start_trip(self) -> bool:
        if self.scheduler.has_trip_in_progress():
            return False
        upcoming = self.scheduler.peek()
        if upcoming is None or self._last_location is None:
            return False
        return distance_m(self._last_location, upcoming.pickup_coordinate) <= self.config.geofence_radius_m

    # ------------------------------------------------------------------
    # Trip workflow
    # ------------------------------------------------------------------

    def load(self) -> SessionSnapshot:
        with self._lock:
            self._ensure_open()
            trips = self.store.fetch_driver_trips(self.driver_id)
            self.scheduler.load(trips)
            active = self.scheduler.active
            self._estimated_arrival = estimated_arrival(active.trip, self.config) if active else None
            self._refresh()
            return self._snapshot

    def start_trip(self, trip_id: str | None = None) -> Trip:
        with self._lock:
            self._ensure_open()
            if trip_id is not None:
                self.scheduler.activate(trip_id)
            elif self.scheduler.activate_next() is None:
                if self.scheduler.has_trip_in_progress():
                    raise IllegalTransition("A trip is already in progress.")
                raise NotQueued("There is no queued trip to start.")
            lifecycle = self._active_lifecycle()
            try:
                self._persist(lifecycle)
            except PersistenceError:
                self.scheduler.requeue_active()
                self._refresh()
                raise
            self._set_vehicle_status(lifecycle.trip, VehicleStatus.IN_SERVICE)
            self._estimated_arrival = estimated_arrival(lifecycle.trip, self.config)
            self._refresh()
            return lifecycle.trip

    def decline_trip(self, trip_id: str) -> Trip:
        with self._lock:
            self._ensure_open()
            trip = self.scheduler.decline(trip_id)
            self._refresh()
            return trip

    def complete_inspection(self, checklist: InspectionChecklist) -> Trip:
        with self._lock:
            self._ensure_open()
            lifecycle = self._active_lifecycle()
            self._held_requests.clear()
            try:
                try:
                    if checklist.kind == InspectionKind.PRE_TRIP:
                        lifecycle.complete_pre_trip(checklist)
                    else:
                        lifecycle.complete_post_trip(checklist)
                except PreconditionNotMet:
                    # A blocked departure changes no trip columns; its ticket still stands.
                    self._file_held_requests()
                    raise
                try:
                    self._persist(lifecycle)
                except PersistenceError:
                    checklist.submitted = False
                    raise
                self._file_held_requests()
            finally:
                self._held_requests.clear()
                self._refresh()
            return lifecycle.trip

    def deliver(self) -> Trip:
        with self._lock:
            self._ensure_open()
            lifecycle = self._active_lifecycle()
            lifecycle.mark_delivered()
            try:
                self._persist(lifecycle)
            except PersistenceError:
                self._refresh()
                raise
            delivered = lifecycle.trip
            self._set_vehicle_status(delivered, VehicleStatus.AVAILABLE)
            self._stop_navigation()
            self._estimated_arrival = None

            promoted = self.scheduler.complete_active()
            if promoted is not None:
                self._after_promotion()
            self._refresh()
            return delivered

    def _after_promotion(self) -> None:
        lifecycle = self._active_lifecycle()
        try:
            self._persist(lifecycle)
        except PersistenceError as exc:
            # The delivery itself is durable; only the follow-up start is undone.
            logger.warning("Could not start next trip %s: %s", lifecycle.trip.id, exc)
            self.scheduler.requeue_active()
            return
        self._set_vehicle_status(lifecycle.trip, VehicleStatus.IN_SERVICE)
        self._estimated_arrival = estimated_arrival(lifecycle.trip, self.config)

    def _active_lifecycle(self) -> TripLifecycle:
        active = self.scheduler.active
        if active is None or active.trip.status != TripStatus.IN_PROGRESS:
            raise IllegalTransition("There is no trip in progress.")
        return active

    def _new_lifecycle(self, trip: Trip) -> TripLifecycle:
        lifecycle = TripLifecycle(trip, issue_policy=self.config.pre_trip_issue_policy, clock=self._clock)
        lifecycle.subscribe(self._on_lifecycle_event)
        return lifecycle

    def _on_lifecycle_event(self, event: LifecycleEvent) -> None:
        # Held until the inspection that raised them is durable.
        if isinstance(event, MaintenanceRequested):
            self._held_requests.append(event.request)

    def _file_held_requests(self) -> None:
        requests, self._held_requests = self._held_requests, []
        for request in requests:
            try:
                self.store.insert_maintenance_request(request)
            except PersistenceError as exc:
                logger.warning("Maintenance request for trip %s not recorded: %s", request.trip_id, exc)
            if request.kind == InspectionKind.PRE_TRIP and request.vehicle_id:
                self._set_vehicle_status_by_id(request.vehicle_id, VehicleStatus.UNDER_MAINTENANCE)

    def _persist(self, lifecycle: TripLifecycle) -> None:
        trip = lifecycle.trip
        try:
            self.store.persist_trip(trip)
        except PersistenceError as exc:
            lifecycle.rollback(exc)
            raise
        lifecycle.confirm(trip)

    def _set_vehicle_status(self, trip: Trip, status: VehicleStatus) -> None:
        if trip.vehicle_id:
            self._set_vehicle_status_by_id(trip.vehicle_id, status)

    def _set_vehicle_status_by_id(self, vehicle_id: str, status: VehicleStatus) -> None:
        try:
            self.store.update_vehicle_status(vehicle_id, status)
        except PersistenceError as exc:
            logger.warning("Vehicle %s status not updated to %s: %s", vehicle_id, status.value, exc)

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def start_navigation(self) -> int:
        """Begin tracking the active trip and request its first route.

        Returns the navigation generation; route results from earlier
        generations are ignored.
        """
        with self._lock:
            self._ensure_open()
            trip = self._active_lifecycle().trip
            if not trip.has_completed_pre_trip:
                raise PreconditionNotMet("Complete the pre-trip inspection before navigating.", missing="pre_trip")
            if self._navigating:
                self._stop_navigation()
            # Fails fast (e.g. no OSRM configured) before any navigation state changes.
            self._get_recalculator()

            self._generation += 1
            self._navigating = True
            self._routing_error = None
            self.tracker.clear()
            self.geofences = GeofenceMonitor(
                [
                    Geofence(PICKUP_FENCE, trip.pickup_coordinate, self.config.geofence_radius_m),
                    Geofence(DESTINATION_FENCE, trip.destination_coordinate, self.config.geofence_radius_m),
                ]
            )
            self._stream = LocationStream()
            self._stream.subscribe(self.tracker.ingest)
            self._stream.subscribe(self.geofences.ingest)
            self._throttle.reset()
            logger.info("Navigation %d started for trip %s", self._generation, trip.id)

            try:
                self._request_route(self._last_location or trip.pickup_coordinate, trip.destination_coordinate)
            except Exception:
                self._stop_navigation()
                self._refresh()
                raise
            self._refresh()
            return self._generation

    def stop_navigation(self) -> None:
        with self._lock:
            self._stop_navigation()
            self._refresh()

    def _stop_navigation(self) -> None:
        if not self._navigating:
            return
        self._generation += 1
        self._navigating = False
        if self._recalculator is not None:
            self._recalculator.cancel()
        if self._stream is not None:
            self._stream.close()
            self._stream = None
        self.tracker.clear()
        self.geofences.clear()
        logger.info("Navigation stopped for driver %s", self.driver_id)

    def ingest_location(self, sample: LocationSample) -> list[Any]:
        """Feed one location sample; returns the route and geofence events it caused.

        Outside navigation the sample only updates the last known position.
        """
        with self._lock:
            self._ensure_open()
            self._last_location = sample.coordinate
            if not self._navigating or self._stream is None:
                self._refresh()
                return []

            events = self._stream.publish(sample)
            for event in events:
                self._handle_navigation_event(event)
            if self.tracker.is_deviated:
                # Keeps retrying while off-route: after a throttled deviation or a failed request.
                self._recalculate_if_due(sample.coordinate)
            self._refresh()
            return events

    def recalculate_route(self) -> int:
        """Request a new route now, regardless of the throttle."""
        with self._lock:
            self._ensure_open()
            if not self._navigating:
                raise IllegalTransition("Navigation is not running.")
            trip = self._active_lifecycle().trip
            token = self._request_route(self._last_location or trip.pickup_coordinate, trip.destination_coordinate)
            # A manual request restarts the automatic recalculation interval.
            self._throttle.reset()
            self._throttle.ready()
            self._refresh()
            return token

    def _recalculate_if_due(self, origin: Coordinate) -> None:
        recalculator = self._get_recalculator()
        if recalculator.in_flight:
            logger.debug("Route request %d still in flight", recalculator.token)
            return
        if not self._throttle.ready():
            logger.debug("Recalculation throttled while off-route")
            return
        trip = self._active_lifecycle().trip
        self._request_route(origin, trip.destination_coordinate)

    def _handle_navigation_event(self, event: Any) -> None:
        trip = self._active_lifecycle().trip
        if isinstance(event, RouteDeviated):
            logger.info("Trip %s off route by %.1f m", trip.id, event.distance_from_route_m)
        elif isinstance(event, RouteCompleted):
            logger.info("Trip %s reached the end of its route", trip.id)
        elif isinstance(event, GeofenceEntered):
            self._record_geofence(trip, f"Vehicle entered {event.fence.name} region", event.sample.timestamp)
            if event.fence.name == DESTINATION_FENCE:
                self._notify_arrival(trip, event.sample.timestamp)
        elif isinstance(event, GeofenceExited):
            self._record_geofence(trip, f"Vehicle exited {event.fence.name} region", event.sample.timestamp)

    def _record_geofence(self, trip: Trip, message: str, timestamp: datetime) -> None:
        try:
            self.store.record_geofence_event(trip.id, message, timestamp)
        except PersistenceError as exc:
            logger.warning("Geofence event for trip %s not recorded: %s", trip.id, exc)

    def _notify_arrival(self, trip: Trip, timestamp: datetime) -> None:
        message = f"Driver arrived at {trip.destination} for trip {trip.display_name}."
        if trip.start_time is not None:
            elapsed = (timestamp - trip.start_time).total_seconds()
            message += f" Trip duration: {format_eta(elapsed)}."
        try:
            self.store.notify_fleet_manager(message, self._clock())
        except PersistenceError as exc:
            logger.warning("Fleet manager not notified about trip %s: %s", trip.id, exc)

    def _request_route(self, origin: Coordinate, destination: Coordinate) -> int:
        recalculator = self._get_recalculator()
        generation = self._generation

        def on_result(token: int, plan: Any) -> None:
            with self._lock:
                if generation != self._generation or not recalculator.is_current(token):
                    logger.debug("Discarding stale route result %d (generation %d)", token, generation)
                    return
                self._routing_error = None
                self.tracker.replace_route(plan)
                self._refresh()

        def on_error(token: int, exc: Exception) -> None:
            with self._lock:
                if generation != self._generation or not recalculator.is_current(token):
                    return
                self._routing_error = str(exc) or exc.__class__.__name__
                self._refresh()

        return recalculator.request(
            origin,
            destination,
            avoid_tolls=self.config.avoid_tolls,
            on_result=on_result,
            on_error=on_error,
        )

    def _get_recalculator(self) -> RouteRecalculator:
        if self._recalculator is None:
            router = self._router or OSRMClient(
                base_url=self.config.osrm_base_url,
                profile=self.config.osrm_profile,
                timeout=self.config.osrm_timeout_seconds,
                max_retries=self.config.osrm_max_retries,
                backoff_seconds=self.config.osrm_backoff_seconds,
            )
            self._recalculator = RouteRecalculator(router, executor=self._executor)
        return self._recalculator

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._stop_navigation()
            if self._recalculator is not None:
                self._recalculator.shutdown()
            self._closed = True
            self._refresh()
            logger.info("Session closed for driver %s", self.driver_id)

    def _ensure_open(self) -> None:
        if self._closed:
            raise IllegalTransition(f"Session for driver {self.driver_id} is closed.")


class SessionRegistry:
    """Explicitly owned set of live driver sessions, keyed by driver id."""

    def __init__(
        self,
        store: TripStore,
        router: RoutingClient | None = None,
        *,
        config: Settings | None = None,
        session_factory: Callable[[str], DriverSession] | None = None,
    ) -> None:
        self.store = store
        self.router = router
        self.config = config or settings
        self._factory = session_factory or self._default_factory
        self._sessions: dict[str, DriverSession] = {}
        self._lock = threading.Lock()

    def _default_factory(self, driver_id: str) -> DriverSession:
        return DriverSession(driver_id, self.store, self.router, config=self.config)

    def open(self, driver_id: str) -> DriverSession:
        """Return the driver's session, creating and loading it on first login."""
        with self._lock:
            session = self._sessions.get(driver_id)
            if session is not None and not session.closed:
                return session
            session = self._factory(driver_id)
            session.load()
            self._sessions[driver_id] = session
            logger.info("Session opened for driver %s", driver_id)
            return session

    def get(self, driver_id: str) -> DriverSession:
        session = self._sessions.get(driver_id)
        if session is None or session.closed:
            raise KeyError(driver_id)
        return session

    def close(self, driver_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(driver_id, None)
        if session is None:
            return False
        session.close()
        return True

    def close_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()

    def __len__(self) -> int:
        return len(self._sessions)
