"""Driver session endpoints (login/logout and state)."""

from __future__ import annotations

from fastapi import APIRouter, Request, status

from ...schemas.trips import OpenSessionRequest, SessionResponse
from ...services.outputs.session_formatter import snapshot_to_response
from ..deps import get_registry, get_session, http_error

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.post("", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
def open_session(payload: OpenSessionRequest, request: Request) -> SessionResponse:
    """Open (or return) the driver's session and load their trips."""
    try:
        session = get_registry(request).open(payload.driver_id)
        return snapshot_to_response(session.snapshot)
    except Exception as exc:
        raise http_error(exc, "open session") from exc


@router.get("/{driver_id}", response_model=SessionResponse, status_code=status.HTTP_200_OK)
def get_session_state(driver_id: str, request: Request) -> SessionResponse:
    return snapshot_to_response(get_session(request, driver_id).snapshot)


@router.delete("/{driver_id}", status_code=status.HTTP_200_OK)
def close_session(driver_id: str, request: Request) -> dict:
    """Log the driver out: stops navigation and discards the session."""
    closed = get_registry(request).close(driver_id)
    return {"driver_id": driver_id, "closed": closed}
