"""Trip state machine.

A trip moves ``assigned -> in_progress -> delivered`` while two independent
flags record the pre-trip and post-trip inspections. All changes to a trip's
status or flags go through ``TripLifecycle``; each transition produces a new
immutable ``Trip`` and is optimistic until the persistence layer confirms it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Literal, Optional, Union

from ...config import settings
from ...errors import IllegalTransition, PreconditionNotMet
from ...models.domain import (
    InspectionKind,
    MaintenanceRequest,
    MaintenancePriority,
    SyncState,
    Trip,
    TripStatus,
)
from .inspection import InspectionChecklist

logger = logging.getLogger(__name__)

IssuePolicy = Literal["report_only", "block_departure"]
Clock = Callable[[], datetime]

_PRIORITY_BY_KIND = {
    InspectionKind.PRE_TRIP: MaintenancePriority.URGENT,
    InspectionKind.POST_TRIP: MaintenancePriority.LOW,
}


@dataclass(frozen=True, slots=True)
class TripTransitioned:
    """A local transition that still awaits persistence."""

    action: str
    previous: Trip
    trip: Trip


@dataclass(frozen=True, slots=True)
class MaintenanceRequested:
    request: MaintenanceRequest


@dataclass(frozen=True, slots=True)
class TripRolledBack:
    trip: Trip
    reverted: Trip
    error: Optional[BaseException] = None


LifecycleEvent = Union[TripTransitioned, MaintenanceRequested, TripRolledBack]
LifecycleHandler = Callable[[LifecycleEvent], Any]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TripLifecycle:
    """Single-trip state machine.

    It does not know about other trips; the scheduler guarantees that only one
    trip per driver is in progress before calling ``start``.
    """

    def __init__(
        self,
        trip: Trip,
        *,
        issue_policy: IssuePolicy | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._trip = trip
        self._confirmed = trip
        self.sync_state = SyncState.CONFIRMED
        self.issue_policy: IssuePolicy = issue_policy or settings.pre_trip_issue_policy
        self._clock = clock or _utcnow
        self._handlers: list[LifecycleHandler] = []

    @property
    def trip(self) -> Trip:
        return self._trip

    @property
    def confirmed_trip(self) -> Trip:
        """Last version acknowledged by the backend."""
        return self._confirmed

    @property
    def is_pending(self) -> bool:
        return self.sync_state == SyncState.PENDING

    def subscribe(self, handler: LifecycleHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def _publish(self, event: LifecycleEvent) -> None:
        for handler in list(self._handlers):
            handler(event)

    def _apply(self, action: str, **changes: Any) -> Trip:
        previous = self._trip
        self._trip = replace(previous, **changes)
        self.sync_state = SyncState.PENDING
        logger.info("Trip %s: %s (%s)", self._trip.id, action, self._trip.status.value)
        self._publish(TripTransitioned(action, previous, self._trip))
        return self._trip

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def start(self) -> Trip:
        if self._trip.status != TripStatus.ASSIGNED:
            raise IllegalTransition(
                f"Trip {self._trip.id} is {self._trip.status.value} and cannot be started."
            )
        return self._apply("start", status=TripStatus.IN_PROGRESS, start_time=self._clock())

    def complete_pre_trip(self, checklist: InspectionChecklist) -> Trip:
        trip = self._trip
        if trip.status != TripStatus.IN_PROGRESS:
            raise IllegalTransition(f"Trip {trip.id} must be in progress before the pre-trip inspection.")
        if trip.has_completed_pre_trip:
            raise IllegalTransition(f"Pre-trip inspection for trip {trip.id} is already complete.")
        self._check_checklist(checklist, InspectionKind.PRE_TRIP)

        request = self._report_issues(checklist)
        if request is not None and self.issue_policy == "block_departure":
            raise PreconditionNotMet(
                "Pre-trip inspection found issues; the vehicle must be cleared by maintenance before departure.",
                missing="maintenance_clearance",
            )
        return self._apply("complete_pre_trip", has_completed_pre_trip=True)

    def complete_post_trip(self, checklist: InspectionChecklist) -> Trip:
        trip = self._trip
        if trip.status != TripStatus.IN_PROGRESS:
            raise IllegalTransition(f"Trip {trip.id} must be in progress before the post-trip inspection.")
        if not trip.has_completed_pre_trip:
            raise PreconditionNotMet("Complete the pre-trip inspection first.", missing="pre_trip")
        if trip.has_completed_post_trip:
            raise IllegalTransition(f"Post-trip inspection for trip {trip.id} is already complete.")
        self._check_checklist(checklist, InspectionKind.POST_TRIP)

        self._report_issues(checklist)
        return self._apply("complete_post_trip", has_completed_post_trip=True)

    def mark_delivered(self) -> Trip:
        trip = self._trip
        if trip.status != TripStatus.IN_PROGRESS:
            raise IllegalTransition(f"Trip {trip.id} is {trip.status.value} and cannot be delivered.")
        if not trip.has_completed_pre_trip:
            raise PreconditionNotMet("Complete the pre-trip inspection first.", missing="pre_trip")
        if not trip.has_completed_post_trip:
            raise PreconditionNotMet("Complete the post-trip inspection first.", missing="post_trip")
        return self._apply("mark_delivered", status=TripStatus.DELIVERED, end_time=self._clock())

    # ------------------------------------------------------------------
    # Sync state
    # ------------------------------------------------------------------

    def confirm(self, trip: Trip | None = None) -> None:
        """Mark the current version durable.

        ``trip`` is the version that was written; an acknowledgement for an
        older version (a later transition happened meanwhile) only advances the
        rollback point.
        """
        written = trip or self._trip
        self._confirmed = written
        if written == self._trip:
            self.sync_state = SyncState.CONFIRMED

    def rollback(self, error: BaseException | None = None) -> Trip:
        """Revert to the last confirmed version after a failed write."""
        reverted = self._trip
        self._trip = self._confirmed
        self.sync_state = SyncState.ROLLED_BACK
        logger.warning("Trip %s rolled back to %s: %s", reverted.id, self._trip.status.value, error)
        self._publish(TripRolledBack(self._trip, reverted, error))
        return self._trip

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_checklist(self, checklist: InspectionChecklist, kind: InspectionKind) -> None:
        if checklist.kind != kind:
            raise IllegalTransition(
                f"A {checklist.kind.value} checklist cannot complete the {kind.value} inspection."
            )
        if checklist.submitted:
            raise IllegalTransition("This checklist was already submitted; start a new inspection.")
        if not checklist.is_complete():
            missing = ", ".join(checklist.missing_items())
            raise PreconditionNotMet(f"Finish the inspection checklist first: {missing}.", missing="checklist")
        checklist.submitted = True

    def _report_issues(self, checklist: InspectionChecklist) -> MaintenanceRequest | None:
        if not checklist.has_any_issue():
            return None
        request = MaintenanceRequest(
            trip_id=self._trip.id,
            vehicle_id=self._trip.vehicle_id,
            kind=checklist.kind,
            priority=_PRIORITY_BY_KIND[checklist.kind],
            issues=tuple(checklist.issues_summary()),
            created_at=self._clock(),
        )
        logger.info(
            "Trip %s: %s inspection reported %d issue(s), priority %s",
            self._trip.id,
            checklist.kind.value,
            len(request.issues),
            request.priority.value,
        )
        self._publish(MaintenanceRequested(request))
        return request
