"""Trip workflow endpoints: start, decline, inspections and delivery."""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Request, status

from ...models.domain import InspectionKind
from ...schemas.trips import (
    InspectionItemModel,
    InspectionRequest,
    SessionResponse,
    StartTripRequest,
)
from ...services.outputs.session_formatter import inspection_template, snapshot_to_response
from ...services.trips.inspection import InspectionChecklist
from ..deps import get_session, http_error

router = APIRouter(prefix="/sessions/{driver_id}", tags=["trips"])


@router.post("/trips/start", response_model=SessionResponse, status_code=status.HTTP_200_OK)
def start_trip(driver_id: str, request: Request, payload: StartTripRequest | None = None) -> SessionResponse:
    session = get_session(request, driver_id)
    try:
        session.start_trip(payload.trip_id if payload else None)
    except Exception as exc:
        raise http_error(exc, "start trip") from exc
    return snapshot_to_response(session.snapshot)


@router.post("/trips/{trip_id}/decline", response_model=SessionResponse, status_code=status.HTTP_200_OK)
def decline_trip(driver_id: str, trip_id: str, request: Request) -> SessionResponse:
    session = get_session(request, driver_id)
    try:
        session.decline_trip(trip_id)
    except Exception as exc:
        raise http_error(exc, "decline trip") from exc
    return snapshot_to_response(session.snapshot)


@router.post("/trips/deliver", response_model=SessionResponse, status_code=status.HTTP_200_OK)
def deliver_trip(driver_id: str, request: Request) -> SessionResponse:
    """Mark the active trip delivered; the next queued trip starts automatically."""
    session = get_session(request, driver_id)
    try:
        session.deliver()
    except Exception as exc:
        raise http_error(exc, "mark trip delivered") from exc
    return snapshot_to_response(session.snapshot)


@router.get("/inspections/template", response_model=List[InspectionItemModel], status_code=status.HTTP_200_OK)
def get_inspection_template(driver_id: str, request: Request) -> List[InspectionItemModel]:
    get_session(request, driver_id)
    return inspection_template()


@router.post("/inspections/{kind}", response_model=SessionResponse, status_code=status.HTTP_200_OK)
def submit_inspection(
    driver_id: str,
    kind: InspectionKind,
    payload: InspectionRequest,
    request: Request,
) -> SessionResponse:
    session = get_session(request, driver_id)
    try:
        checklist = InspectionChecklist.from_item_states(kind, (item.model_dump() for item in payload.items))
        session.complete_inspection(checklist)
    except Exception as exc:
        raise http_error(exc, f"complete {kind.value} inspection") from exc
    return snapshot_to_response(session.snapshot)
