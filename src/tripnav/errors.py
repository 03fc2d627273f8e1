"""Error taxonomy for the trip and navigation engine."""

from __future__ import annotations


class TripEngineError(Exception):
    """Base class for all engine errors."""


class TripWorkflowError(TripEngineError, ValueError):
    """A user or programmer workflow violation with a named, actionable reason."""

    reason: str = "workflow_error"

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if reason is not None:
            self.reason = reason

    def to_dict(self) -> dict[str, str]:
        return {"reason": self.reason, "message": self.message}


class IllegalTransition(TripWorkflowError):
    reason = "illegal_transition"


class PreconditionNotMet(TripWorkflowError):
    """Raised when a transition is legal in principle but a required step is missing.

    ``missing`` names the blocking step (``pre_trip``, ``post_trip`` or
    ``checklist``) so the caller can tell the driver exactly what to do next.
    """

    reason = "precondition_not_met"

    def __init__(self, message: str, *, missing: str) -> None:
        super().__init__(message, reason=f"{missing}_required")
        self.missing = missing

    def to_dict(self) -> dict[str, str]:
        payload = super().to_dict()
        payload["missing"] = self.missing
        return payload


class DuplicateTrip(TripWorkflowError):
    reason = "duplicate_trip"


class NotQueued(TripWorkflowError):
    reason = "not_queued"


class UnknownInspectionItem(TripWorkflowError, KeyError):
    reason = "unknown_inspection_item"

    def __str__(self) -> str:
        return self.message


class InvalidPolyline(TripEngineError, ValueError):
    """Route geometry is too short to track against."""


class NoRouteFound(TripEngineError):
    """The routing collaborator could not produce a route."""


class PersistenceError(TripEngineError):
    """A backend write failed after all retries."""
