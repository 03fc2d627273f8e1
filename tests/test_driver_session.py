from concurrent.futures import Future
from datetime import datetime, timedelta, timezone

import pytest

from src.tripnav.config import Settings
from src.tripnav.errors import IllegalTransition, NotQueued, PersistenceError, PreconditionNotMet
from src.tripnav.models.domain import (
    Coordinate,
    InspectionKind,
    LocationSample,
    RoutePlan,
    SyncState,
    Trip,
    TripStatus,
    VehicleStatus,
)
from src.tripnav.persistence.trips import InMemoryTripStore
from src.tripnav.services.geospatial import polyline_length_m
from src.tripnav.services.navigation.geofence import GeofenceEntered
from src.tripnav.services.navigation.route_tracker import RouteCompleted, RouteDeviated
from src.tripnav.services.trips import session as session_module
from src.tripnav.services.trips.inspection import InspectionChecklist
from src.tripnav.services.trips.session import DriverSession, SessionRegistry, estimated_arrival

NOW = datetime(2025, 5, 1, 8, 0, tzinfo=timezone.utc)
METERS_PER_DEGREE = 6_371_000.0 * 3.141592653589793 / 180.0
ROUTE = tuple(Coordinate(0.0, index * 0.0005) for index in range(11))


class ImmediateExecutor:
    """Runs submitted work inline so route results apply synchronously."""

    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future

    def shutdown(self, wait=True, cancel_futures=False):
        pass


class DeferredExecutor:
    """Holds submitted work until the test runs it."""

    def __init__(self) -> None:
        self.pending = []

    def submit(self, fn, *args, **kwargs):
        future = Future()
        self.pending.append((future, fn, args, kwargs))
        return future

    def run_next(self) -> None:
        # Runs even cancelled work, like a worker that already picked it up.
        future, fn, args, kwargs = self.pending.pop(0)
        fn(*args, **kwargs)
        if not future.cancelled():
            future.set_result(None)

    def run_all(self) -> None:
        while self.pending:
            self.run_next()

    def shutdown(self, wait=True, cancel_futures=False):
        pass


class FakeRouter:
    def __init__(self, fail: Exception | None = None) -> None:
        self.calls = []
        self.fail = fail

    def route(self, origin, destination, avoid_tolls=False):
        self.calls.append((origin, destination, avoid_tolls))
        if self.fail is not None:
            raise self.fail
        return RoutePlan(polyline=ROUTE, total_distance_m=polyline_length_m(ROUTE), expected_duration_s=60.0)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _trip(trip_id: str, minutes: int = 0, **overrides) -> Trip:
    values = dict(
        id=trip_id,
        pickup=f"Pickup {trip_id}",
        destination=f"Drop {trip_id}",
        pickup_coordinate=ROUTE[0],
        destination_coordinate=ROUTE[-1],
        driver_id="D1",
        vehicle_id="V1",
        created_at=NOW - timedelta(hours=2) + timedelta(minutes=minutes),
        estimated_distance_km=20.0,
    )
    values.update(overrides)
    return Trip(**values)


def _checklist(kind: InspectionKind, issue: tuple[str, str] | None = None) -> InspectionChecklist:
    checklist = InspectionChecklist(kind)
    for item in checklist.items:
        checklist.toggle_checked(item.id)
    if issue:
        checklist.toggle_issue(issue[0])
        checklist.set_notes(issue[0], issue[1])
    return checklist


def _sample(lat: float, lon: float, seconds: float = 0.0, speed: float | None = None) -> LocationSample:
    return LocationSample(Coordinate(lat, lon), NOW + timedelta(seconds=seconds), speed)


def _session(
    store: InMemoryTripStore | None = None,
    router: FakeRouter | None = None,
    executor=None,
    monotonic=None,
    **config,
) -> tuple[DriverSession, InMemoryTripStore, FakeRouter]:
    store = store or InMemoryTripStore([_trip("T1", 0), _trip("T2", 10)])
    router = router or FakeRouter()
    session = DriverSession(
        "D1",
        store,
        router,
        config=Settings(**config),
        clock=lambda: NOW,
        executor=executor or ImmediateExecutor(),
        monotonic=monotonic,
    )
    session.load()
    return session, store, router


def _navigating_session(**kwargs) -> tuple[DriverSession, InMemoryTripStore, FakeRouter]:
    session, store, router = _session(**kwargs)
    session.start_trip()
    session.complete_inspection(_checklist(InspectionKind.PRE_TRIP))
    session.start_navigation()
    return session, store, router


def test_load_queues_trips_oldest_first() -> None:
    session, _, _ = _session()

    snapshot = session.snapshot

    assert snapshot.active_trip is None
    assert [trip.id for trip in snapshot.queued_trips] == ["T1", "T2"]
    assert snapshot.can_start_trip is False


def test_can_start_trip_when_inside_pickup_zone() -> None:
    session, _, _ = _session()

    session.ingest_location(_sample(ROUTE[0].latitude, ROUTE[0].longitude))

    assert session.snapshot.can_start_trip is True
    session.start_trip()
    assert session.snapshot.can_start_trip is False


def test_start_trip_persists_and_marks_vehicle_in_service() -> None:
    session, store, _ = _session()

    trip = session.start_trip()

    assert trip.id == "T1"
    assert store.get_trip("T1").status == TripStatus.IN_PROGRESS
    assert store.vehicle_status["V1"] == VehicleStatus.IN_SERVICE
    assert session.snapshot.sync_state == SyncState.CONFIRMED
    assert session.snapshot.estimated_arrival == NOW + timedelta(minutes=30)


def test_start_trip_when_one_is_running_is_illegal() -> None:
    session, _, _ = _session()
    session.start_trip()

    with pytest.raises(IllegalTransition):
        session.start_trip()
    with pytest.raises(IllegalTransition):
        session.start_trip("T2")


def test_start_trip_with_empty_queue() -> None:
    session, _, _ = _session(store=InMemoryTripStore())
    with pytest.raises(NotQueued):
        session.start_trip()


def test_failed_start_is_rolled_back_and_requeued() -> None:
    store = InMemoryTripStore([_trip("T1", 0), _trip("T2", 10)])
    session, _, _ = _session(store=store)
    store.fail_writes = 1

    with pytest.raises(PersistenceError):
        session.start_trip()

    snapshot = session.snapshot
    assert snapshot.active_trip is None
    assert [trip.id for trip in snapshot.queued_trips] == ["T1", "T2"]
    assert snapshot.queued_trips[0].status == TripStatus.ASSIGNED
    assert store.get_trip("T1").status == TripStatus.ASSIGNED


def test_failed_inspection_write_reverts_flag() -> None:
    session, store, _ = _session()
    session.start_trip()
    store.fail_writes = 1

    with pytest.raises(PersistenceError):
        session.complete_inspection(_checklist(InspectionKind.PRE_TRIP))

    assert session.snapshot.active_trip.has_completed_pre_trip is False
    assert session.snapshot.sync_state == SyncState.ROLLED_BACK


def test_pre_trip_issue_files_ticket_and_flags_vehicle() -> None:
    session, store, _ = _session()
    session.start_trip()

    trip = session.complete_inspection(_checklist(InspectionKind.PRE_TRIP, ("brakes", "Squealing")))

    assert trip.has_completed_pre_trip is True
    assert len(store.maintenance_requests) == 1
    assert store.maintenance_requests[0]["priority"] == "urgent"
    assert store.maintenance_requests[0]["description"] == "Brakes: Squealing"
    assert store.vehicle_status["V1"] == VehicleStatus.UNDER_MAINTENANCE


def test_failed_inspection_write_files_no_ticket_until_resubmitted() -> None:
    session, store, _ = _session()
    session.start_trip()
    checklist = _checklist(InspectionKind.PRE_TRIP, ("brakes", "Squealing"))
    store.fail_writes = 1

    with pytest.raises(PersistenceError):
        session.complete_inspection(checklist)

    assert store.maintenance_requests == []
    assert store.vehicle_status["V1"] == VehicleStatus.IN_SERVICE
    assert session.snapshot.active_trip.has_completed_pre_trip is False

    session.complete_inspection(checklist)

    assert len(store.maintenance_requests) == 1
    assert store.vehicle_status["V1"] == VehicleStatus.UNDER_MAINTENANCE
    assert session.snapshot.active_trip.has_completed_pre_trip is True


def test_post_trip_issue_files_low_priority_ticket_only() -> None:
    session, store, _ = _session()
    session.start_trip()
    session.complete_inspection(_checklist(InspectionKind.PRE_TRIP))

    session.complete_inspection(_checklist(InspectionKind.POST_TRIP, ("seats_belts", "Belt frayed")))

    assert [request["priority"] for request in store.maintenance_requests] == ["low"]
    assert store.vehicle_status["V1"] == VehicleStatus.IN_SERVICE


def test_block_departure_policy_prevents_navigation() -> None:
    session, store, _ = _session(pre_trip_issue_policy="block_departure")
    session.start_trip()

    with pytest.raises(PreconditionNotMet):
        session.complete_inspection(_checklist(InspectionKind.PRE_TRIP, ("engine", "Oil leak")))
    with pytest.raises(PreconditionNotMet) as excinfo:
        session.start_navigation()

    assert excinfo.value.missing == "pre_trip"
    assert len(store.maintenance_requests) == 1


def test_deliver_requires_post_trip() -> None:
    session, _, _ = _session()
    session.start_trip()
    session.complete_inspection(_checklist(InspectionKind.PRE_TRIP))

    with pytest.raises(PreconditionNotMet) as excinfo:
        session.deliver()

    assert excinfo.value.missing == "post_trip"


def test_deliver_promotes_next_trip() -> None:
    session, store, _ = _session()
    session.start_trip()
    session.complete_inspection(_checklist(InspectionKind.PRE_TRIP))
    session.complete_inspection(_checklist(InspectionKind.POST_TRIP))

    delivered = session.deliver()

    assert delivered.status == TripStatus.DELIVERED
    assert store.get_trip("T1").status == TripStatus.DELIVERED
    assert store.get_trip("T1").end_time == NOW
    snapshot = session.snapshot
    assert snapshot.active_trip.id == "T2"
    assert snapshot.active_trip.status == TripStatus.IN_PROGRESS
    assert [trip.id for trip in snapshot.completed_trips] == ["T1"]
    assert store.get_trip("T2").status == TripStatus.IN_PROGRESS


def test_decline_trip() -> None:
    session, _, _ = _session()

    session.decline_trip("T2")

    assert [trip.id for trip in session.snapshot.queued_trips] == ["T1"]
    with pytest.raises(NotQueued):
        session.decline_trip("T2")


def test_navigation_requires_active_trip() -> None:
    session, _, _ = _session()
    with pytest.raises(IllegalTransition):
        session.start_navigation()


def test_navigation_on_route_then_single_deviation() -> None:
    session, _, router = _navigating_session()
    assert session.tracker.plan is not None
    assert len(router.calls) == 1

    events = []
    for index in range(3):
        vertex = ROUTE[index]
        events += session.ingest_location(_sample(vertex.latitude, vertex.longitude, index * 5))
    assert not any(isinstance(event, RouteDeviated) for event in events)

    off = session.ingest_location(_sample(80.0 / METERS_PER_DEGREE, ROUTE[3].longitude, 20))

    assert [type(event) for event in off if isinstance(event, RouteDeviated)] == [RouteDeviated]
    assert len(router.calls) == 2
    assert router.calls[1][0] == Coordinate(80.0 / METERS_PER_DEGREE, ROUTE[3].longitude)


def test_recalculation_is_throttled_but_manual_request_is_not() -> None:
    clock = FakeClock()
    session, _, router = _navigating_session(monotonic=clock)
    offset = 80.0 / METERS_PER_DEGREE

    session.ingest_location(_sample(offset, ROUTE[2].longitude, 0))
    session.ingest_location(_sample(offset, ROUTE[3].longitude, 5))
    assert len(router.calls) == 2

    session.recalculate_route()
    assert len(router.calls) == 3

    clock.now = 20.0
    session.ingest_location(_sample(offset, ROUTE[4].longitude, 10))
    assert len(router.calls) == 4


def test_routing_failure_keeps_deviation_and_reports_error() -> None:
    router = FakeRouter()
    session, _, _ = _navigating_session(router=router)
    router.fail = RuntimeError("OSRM unavailable")

    session.ingest_location(_sample(80.0 / METERS_PER_DEGREE, ROUTE[3].longitude))

    snapshot = session.snapshot
    assert snapshot.progress.is_deviated is True
    assert snapshot.routing_error == "OSRM unavailable"


def test_failed_recalculation_is_retried_while_off_route() -> None:
    clock = FakeClock()
    router = FakeRouter()
    session, _, _ = _navigating_session(router=router, monotonic=clock)
    offset = 80.0 / METERS_PER_DEGREE
    router.fail = RuntimeError("OSRM unavailable")

    session.ingest_location(_sample(offset, ROUTE[2].longitude, 0))
    assert len(router.calls) == 2
    assert session.snapshot.routing_error == "OSRM unavailable"

    router.fail = None
    clock.now = 5.0
    session.ingest_location(_sample(offset, ROUTE[3].longitude, 5))
    assert len(router.calls) == 2

    clock.now = 20.0
    session.ingest_location(_sample(offset, ROUTE[4].longitude, 20))

    assert len(router.calls) == 3
    assert router.calls[2][0] == Coordinate(offset, ROUTE[4].longitude)
    assert session.snapshot.routing_error is None
    assert session.tracker.is_deviated is False


def test_throttled_deviation_is_recalculated_once_interval_passes() -> None:
    clock = FakeClock()
    session, _, router = _navigating_session(monotonic=clock)
    offset = 80.0 / METERS_PER_DEGREE

    session.ingest_location(_sample(offset, ROUTE[2].longitude, 0))
    clock.now = 5.0
    session.ingest_location(_sample(offset, ROUTE[3].longitude, 5))
    assert len(router.calls) == 2
    assert session.tracker.is_deviated is True

    clock.now = 10.0
    session.ingest_location(_sample(offset, ROUTE[4].longitude, 10))
    assert len(router.calls) == 2

    clock.now = 16.0
    session.ingest_location(_sample(offset, ROUTE[5].longitude, 16))

    assert len(router.calls) == 3
    assert router.calls[2][0] == Coordinate(offset, ROUTE[5].longitude)


def test_no_second_request_while_one_is_in_flight() -> None:
    clock = FakeClock()
    executor = DeferredExecutor()
    session, _, _ = _session(executor=executor, monotonic=clock)
    session.start_trip()
    session.complete_inspection(_checklist(InspectionKind.PRE_TRIP))
    session.start_navigation()
    executor.run_all()
    offset = 80.0 / METERS_PER_DEGREE

    session.ingest_location(_sample(offset, ROUTE[2].longitude, 0))
    assert len(executor.pending) == 1

    clock.now = 30.0
    session.ingest_location(_sample(offset, ROUTE[3].longitude, 30))
    assert len(executor.pending) == 1

    executor.run_all()
    assert session.tracker.is_deviated is False


def test_navigation_without_routing_backend_stays_stopped(monkeypatch) -> None:
    def unconfigured_client(**kwargs):
        raise ValueError("OSRM base URL is not configured.")

    monkeypatch.setattr(session_module, "OSRMClient", unconfigured_client)
    store = InMemoryTripStore([_trip("T1")])
    session = DriverSession(
        "D1",
        store,
        config=Settings(osrm_base_url=None),
        clock=lambda: NOW,
        executor=ImmediateExecutor(),
    )
    session.load()
    session.start_trip()
    session.complete_inspection(_checklist(InspectionKind.PRE_TRIP))

    with pytest.raises(ValueError):
        session.start_navigation()

    assert session.navigating is False
    assert session.snapshot.navigating is False
    assert session.snapshot.navigation_generation == 0
    assert session.ingest_location(_sample(ROUTE[0].latitude, ROUTE[0].longitude)) == []


def test_rejected_route_request_stops_navigation() -> None:
    class ShutDownExecutor(ImmediateExecutor):
        def submit(self, fn, *args, **kwargs):
            raise RuntimeError("cannot schedule new futures after shutdown")

    session, _, _ = _session(executor=ShutDownExecutor())
    session.start_trip()
    session.complete_inspection(_checklist(InspectionKind.PRE_TRIP))

    with pytest.raises(RuntimeError):
        session.start_navigation()

    assert session.navigating is False
    assert session.snapshot.navigating is False
    assert session.tracker.plan is None


def test_stop_navigation_discards_in_flight_route() -> None:
    executor = DeferredExecutor()
    session, _, _ = _session(executor=executor)
    session.start_trip()
    session.complete_inspection(_checklist(InspectionKind.PRE_TRIP))

    first_generation = session.start_navigation()
    session.stop_navigation()
    executor.run_all()

    assert session.tracker.plan is None
    assert session.ingest_location(_sample(ROUTE[0].latitude, ROUTE[0].longitude)) == []

    second_generation = session.start_navigation()
    executor.run_all()

    assert second_generation > first_generation
    assert session.tracker.plan is not None
    assert session.snapshot.navigating is True


def test_newer_request_supersedes_older_result() -> None:
    executor = DeferredExecutor()
    session, _, router = _session(executor=executor)
    session.start_trip()
    session.complete_inspection(_checklist(InspectionKind.PRE_TRIP))
    session.start_navigation()
    session.recalculate_route()

    executor.run_next()
    assert session.tracker.plan is None

    executor.run_all()
    assert session.tracker.plan is not None
    assert len(router.calls) == 2


def test_geofence_events_are_logged_and_arrival_notifies_manager() -> None:
    session, store, _ = _navigating_session()

    at_pickup = session.ingest_location(_sample(ROUTE[0].latitude, ROUTE[0].longitude, 0))
    at_destination = session.ingest_location(_sample(ROUTE[-1].latitude, ROUTE[-1].longitude, 65 * 60))

    assert any(isinstance(event, GeofenceEntered) for event in at_pickup)
    assert any(isinstance(event, RouteCompleted) for event in at_destination)
    messages = [event["message"] for event in store.geofence_events]
    assert messages == [
        "Vehicle entered pickup region",
        "Vehicle exited pickup region",
        "Vehicle entered destination region",
    ]
    assert len(store.notifications) == 1
    assert "Trip duration: 1h 5m" in store.notifications[0]["message"]
    assert session.snapshot.progress.arrived is True


def test_overlays_include_route_and_fences() -> None:
    session, _, _ = _navigating_session()
    session.ingest_location(_sample(ROUTE[3].latitude, ROUTE[3].longitude))

    overlays = session.overlays()

    kinds = [feature["properties"]["kind"] for feature in overlays["features"]]
    assert kinds == ["remaining_route", "completed_path", "geofence", "geofence"]
    assert len(overlays["features"][0]["geometry"]["coordinates"]) == len(ROUTE) - 3


def test_snapshot_is_immutable_and_replaced() -> None:
    session, _, _ = _session()
    before = session.snapshot

    session.start_trip()

    assert before.active_trip is None
    assert session.snapshot is not before
    with pytest.raises(AttributeError):
        session.snapshot.navigating = True


def test_closed_session_rejects_calls() -> None:
    session, _, _ = _navigating_session()

    session.close()

    assert session.snapshot.navigating is False
    with pytest.raises(IllegalTransition):
        session.ingest_location(_sample(0, 0))


def test_estimated_arrival_defaults_to_one_hour() -> None:
    trip = _trip("T9", start_time=NOW, estimated_distance_km=None)
    assert estimated_arrival(trip, Settings()) == NOW + timedelta(hours=1)
    assert estimated_arrival(_trip("T8"), Settings()) is None


def test_registry_opens_one_session_per_driver() -> None:
    store = InMemoryTripStore([_trip("T1")])
    registry = SessionRegistry(
        store,
        FakeRouter(),
        session_factory=lambda driver_id: DriverSession(driver_id, store, FakeRouter(), executor=ImmediateExecutor()),
    )

    first = registry.open("D1")
    again = registry.open("D1")

    assert first is again
    assert [trip.id for trip in first.snapshot.queued_trips] == ["T1"]
    assert registry.close("D1") is True
    assert first.closed
    with pytest.raises(KeyError):
        registry.get("D1")
    assert registry.close("D1") is False
