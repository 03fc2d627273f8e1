"""Shared helpers for route handlers."""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request, status

from ..errors import PersistenceError, TripWorkflowError
from ..services.trips.session import DriverSession, SessionRegistry


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def get_session(request: Request, driver_id: str) -> DriverSession:
    try:
        return get_registry(request).get(driver_id)
    except KeyError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No open session for driver {driver_id}",
        ) from exc


def http_error(exc: Exception, action: str) -> HTTPException:
    """Translate an engine error into the HTTP error the client should see."""
    if isinstance(exc, HTTPException):
        return exc
    if isinstance(exc, TripWorkflowError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.to_dict())
    if isinstance(exc, PersistenceError):
        logging.warning(f"Backend unavailable while trying to {action}: {exc}")
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    logging.exception(f"Error trying to {action}: {exc}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}: {str(exc)}",
    )
