"""Live navigation endpoints."""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Request, status

from ...models.domain import Coordinate, LocationSample
from ...schemas.trips import LocationResponse, LocationUpdate, NavigationStarted, SessionResponse
from ...services.outputs.session_formatter import events_to_dicts, snapshot_to_response
from ..deps import get_session, http_error

router = APIRouter(prefix="/sessions/{driver_id}/navigation", tags=["navigation"])


@router.post("/start", response_model=NavigationStarted, status_code=status.HTTP_200_OK)
def start_navigation(driver_id: str, request: Request) -> NavigationStarted:
    """Start tracking the active trip; the first route is computed in the background."""
    session = get_session(request, driver_id)
    try:
        generation = session.start_navigation()
    except Exception as exc:
        raise http_error(exc, "start navigation") from exc
    return NavigationStarted(generation=generation, session=snapshot_to_response(session.snapshot))


@router.post("/stop", response_model=SessionResponse, status_code=status.HTTP_200_OK)
def stop_navigation(driver_id: str, request: Request) -> SessionResponse:
    session = get_session(request, driver_id)
    session.stop_navigation()
    return snapshot_to_response(session.snapshot)


@router.post("/location", response_model=LocationResponse, status_code=status.HTTP_200_OK)
def post_location(driver_id: str, payload: LocationUpdate, request: Request) -> LocationResponse:
    session = get_session(request, driver_id)
    sample = LocationSample(
        coordinate=Coordinate(payload.latitude, payload.longitude),
        timestamp=payload.timestamp or datetime.now(timezone.utc),
        speed_mps=payload.speed_mps,
    )
    try:
        events = session.ingest_location(sample)
    except Exception as exc:
        raise http_error(exc, "process location") from exc
    return LocationResponse(events=events_to_dicts(events), session=snapshot_to_response(session.snapshot))


@router.post("/recalculate", response_model=SessionResponse, status_code=status.HTTP_200_OK)
def recalculate(driver_id: str, request: Request) -> SessionResponse:
    """Manually request a new route, bypassing the automatic throttle."""
    session = get_session(request, driver_id)
    try:
        session.recalculate_route()
    except Exception as exc:
        raise http_error(exc, "recalculate route") from exc
    return snapshot_to_response(session.snapshot)


@router.get("/overlays", status_code=status.HTTP_200_OK)
def get_overlays(driver_id: str, request: Request) -> dict:
    """GeoJSON FeatureCollection with the remaining route, traveled path and geofences."""
    return get_session(request, driver_id).overlays()
