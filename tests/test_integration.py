from concurrent.futures import Future
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from src.tripnav.main import create_app
from src.tripnav.models.domain import Coordinate, RoutePlan, Trip, TripStatus, VehicleStatus
from src.tripnav.persistence.trips import InMemoryTripStore
from src.tripnav.services.geospatial import polyline_length_m
from src.tripnav.services.trips.inspection import CANONICAL_ITEMS
from src.tripnav.services.trips.session import DriverSession, SessionRegistry

NOW = datetime(2025, 5, 1, 8, 0, tzinfo=timezone.utc)
ROUTE = tuple(Coordinate(21.5, 39.1 + index * 0.0005) for index in range(11))


class InlineExecutor:
    def submit(self, fn, *args, **kwargs):
        future = Future()
        future.set_result(fn(*args, **kwargs))
        return future

    def shutdown(self, wait=True, cancel_futures=False):
        pass


class DummyRouter:
    def __init__(self) -> None:
        self.calls = 0

    def route(self, origin, destination, avoid_tolls=False):
        self.calls += 1
        return RoutePlan(polyline=ROUTE, total_distance_m=polyline_length_m(ROUTE), expected_duration_s=120.0)


def _trip(trip_id: str, minutes: int) -> Trip:
    return Trip(
        id=trip_id,
        pickup=f"Warehouse {trip_id}",
        destination=f"Store {trip_id}",
        pickup_coordinate=ROUTE[0],
        destination_coordinate=ROUTE[-1],
        driver_id="D1",
        vehicle_id="V1",
        created_at=NOW + timedelta(minutes=minutes),
    )


def _all_checked(issue: tuple[str, str] | None = None) -> dict:
    items = []
    for item_id, _, _, _ in CANONICAL_ITEMS:
        state = {"id": item_id, "checked": True}
        if issue and issue[0] == item_id:
            state.update(has_issue=True, notes=issue[1])
        items.append(state)
    return {"items": items}


def _location(coordinate: Coordinate, seconds: float = 0.0) -> dict:
    return {
        "latitude": coordinate.latitude,
        "longitude": coordinate.longitude,
        "timestamp": (NOW + timedelta(seconds=seconds)).isoformat(),
    }


@pytest.fixture
def store() -> InMemoryTripStore:
    return InMemoryTripStore([_trip("T1", 0), _trip("T2", 5)])


@pytest.fixture
def router() -> DummyRouter:
    return DummyRouter()


@pytest.fixture
def api_client(store: InMemoryTripStore, router: DummyRouter) -> TestClient:
    app = create_app(store=store, router=router)
    app.state.registry = SessionRegistry(
        store,
        router,
        session_factory=lambda driver_id: DriverSession(driver_id, store, router, executor=InlineExecutor()),
    )
    return TestClient(app)


def _open(api_client: TestClient) -> dict:
    response = api_client.post("/api/sessions", json={"driver_id": "D1"})
    assert response.status_code == 201
    return response.json()


def test_health_endpoint(api_client: TestClient) -> None:
    response = api_client.get("/api/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_root_endpoint(api_client: TestClient) -> None:
    response = api_client.get("/")

    assert response.status_code == 200
    assert response.json()["health"] == "/api/health"


def test_open_session_lists_queue(api_client: TestClient) -> None:
    body = _open(api_client)

    assert body["driver_id"] == "D1"
    assert body["active_trip"] is None
    assert [trip["id"] for trip in body["queued_trips"]] == ["T1", "T2"]
    assert body["progress"]["eta_text"] == "--"


def test_unknown_session_is_404(api_client: TestClient) -> None:
    assert api_client.get("/api/sessions/nobody").status_code == 404
    assert api_client.post("/api/sessions/nobody/trips/start").status_code == 404


def test_inspection_template(api_client: TestClient) -> None:
    _open(api_client)

    response = api_client.get("/api/sessions/D1/inspections/template")

    assert response.status_code == 200
    items = response.json()
    assert len(items) == 12
    assert {item["section"] for item in items} == {"exterior", "interior", "mechanical", "safety"}


def test_start_specific_trip(api_client: TestClient, store: InMemoryTripStore) -> None:
    _open(api_client)

    response = api_client.post("/api/sessions/D1/trips/start", json={"trip_id": "T2"})

    assert response.status_code == 200
    body = response.json()
    assert body["active_trip"]["id"] == "T2"
    assert body["active_trip"]["status"] == "in_progress"
    assert store.get_trip("T2").status == TripStatus.IN_PROGRESS


def test_navigation_before_pre_trip_is_conflict(api_client: TestClient) -> None:
    _open(api_client)
    api_client.post("/api/sessions/D1/trips/start")

    response = api_client.post("/api/sessions/D1/navigation/start")

    assert response.status_code == 409
    assert response.json()["detail"] == {
        "reason": "pre_trip_required",
        "message": "Complete the pre-trip inspection before navigating.",
        "missing": "pre_trip",
    }


def test_incomplete_inspection_is_conflict(api_client: TestClient) -> None:
    _open(api_client)
    api_client.post("/api/sessions/D1/trips/start")

    response = api_client.post(
        "/api/sessions/D1/inspections/pre_trip",
        json={"items": [{"id": "lights", "checked": True}]},
    )

    assert response.status_code == 409
    assert response.json()["detail"]["reason"] == "checklist_required"


def test_unknown_inspection_item_is_conflict(api_client: TestClient) -> None:
    _open(api_client)
    api_client.post("/api/sessions/D1/trips/start")

    response = api_client.post(
        "/api/sessions/D1/inspections/pre_trip",
        json={"items": [{"id": "wipers", "checked": True}]},
    )

    assert response.status_code == 409
    assert response.json()["detail"]["reason"] == "unknown_inspection_item"


def test_unknown_inspection_kind_is_rejected(api_client: TestClient) -> None:
    _open(api_client)

    response = api_client.post("/api/sessions/D1/inspections/midway", json=_all_checked())

    assert response.status_code == 422


def test_backend_failure_is_503(api_client: TestClient, store: InMemoryTripStore) -> None:
    _open(api_client)
    store.fail_writes = 1

    response = api_client.post("/api/sessions/D1/trips/start")

    assert response.status_code == 503
    body = api_client.get("/api/sessions/D1").json()
    assert body["active_trip"] is None
    assert [trip["id"] for trip in body["queued_trips"]] == ["T1", "T2"]


def test_full_trip_flow(api_client: TestClient, store: InMemoryTripStore, router: DummyRouter) -> None:
    _open(api_client)
    assert api_client.post("/api/sessions/D1/trips/start").status_code == 200

    pre = api_client.post("/api/sessions/D1/inspections/pre_trip", json=_all_checked(("tires", "Low pressure")))
    assert pre.status_code == 200
    assert pre.json()["active_trip"]["has_completed_pre_trip"] is True
    assert store.maintenance_requests[0]["description"] == "Tires: Low pressure"
    assert store.vehicle_status["V1"] == VehicleStatus.UNDER_MAINTENANCE

    started = api_client.post("/api/sessions/D1/navigation/start")
    assert started.status_code == 200
    assert started.json()["generation"] == 1
    assert started.json()["session"]["progress"]["has_route"] is True
    assert router.calls == 1

    at_pickup = api_client.post("/api/sessions/D1/navigation/location", json=_location(ROUTE[0]))
    assert at_pickup.status_code == 200
    assert {"type": "geofence_entered", "fence": "pickup"} in at_pickup.json()["events"]

    off_route = Coordinate(ROUTE[4].latitude + 0.001, ROUTE[4].longitude)
    deviated = api_client.post("/api/sessions/D1/navigation/location", json=_location(off_route, 10))
    types = [event["type"] for event in deviated.json()["events"]]
    assert "route_deviated" in types
    assert router.calls == 2

    overlays = api_client.get("/api/sessions/D1/navigation/overlays").json()
    assert overlays["type"] == "FeatureCollection"

    arrived = api_client.post("/api/sessions/D1/navigation/location", json=_location(ROUTE[-1], 600))
    arrived_types = [event["type"] for event in arrived.json()["events"]]
    assert "route_completed" in arrived_types
    assert arrived.json()["session"]["progress"]["arrived"] is True
    assert len(store.notifications) == 1

    early = api_client.post("/api/sessions/D1/trips/deliver")
    assert early.status_code == 409
    assert early.json()["detail"]["missing"] == "post_trip"

    post = api_client.post("/api/sessions/D1/inspections/post_trip", json=_all_checked())
    assert post.status_code == 200

    delivered = api_client.post("/api/sessions/D1/trips/deliver")
    assert delivered.status_code == 200
    body = delivered.json()
    assert [trip["id"] for trip in body["completed_trips"]] == ["T1"]
    assert body["active_trip"]["id"] == "T2"
    assert body["navigating"] is False
    assert store.get_trip("T1").status == TripStatus.DELIVERED


def test_recalculate_requires_navigation(api_client: TestClient) -> None:
    _open(api_client)

    response = api_client.post("/api/sessions/D1/navigation/recalculate")

    assert response.status_code == 409
    assert response.json()["detail"]["reason"] == "illegal_transition"


def test_decline_and_close_session(api_client: TestClient) -> None:
    _open(api_client)

    declined = api_client.post("/api/sessions/D1/trips/T2/decline")
    assert [trip["id"] for trip in declined.json()["queued_trips"]] == ["T1"]

    missing = api_client.post("/api/sessions/D1/trips/T9/decline")
    assert missing.status_code == 409
    assert missing.json()["detail"]["reason"] == "not_queued"

    closed = api_client.delete("/api/sessions/D1")
    assert closed.json() == {"driver_id": "D1", "closed": True}
    assert api_client.get("/api/sessions/D1").status_code == 404
