"""Per-driver trip queue with a single active slot."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from ...errors import DuplicateTrip, IllegalTransition, NotQueued
from ...models.domain import Trip, TripStatus
from .lifecycle import TripLifecycle

logger = logging.getLogger(__name__)

LifecycleFactory = Callable[[Trip], TripLifecycle]

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _created_key(trip: Trip) -> datetime:
    created = trip.created_at
    if created is None:
        return _EPOCH
    if created.tzinfo is None:
        return created.replace(tzinfo=timezone.utc)
    return created


class TripQueueScheduler:
    """Orders a driver's pending trips and keeps at most one in progress.

    Every public method takes the scheduler lock, so callers on different
    threads observe the queue operations in arrival order.
    """

    def __init__(self, lifecycle_factory: LifecycleFactory | None = None) -> None:
        self._factory: LifecycleFactory = lifecycle_factory or TripLifecycle
        self._lock = threading.RLock()
        self._queue: list[Trip] = []
        self._active: Optional[TripLifecycle] = None
        self._completed: list[Trip] = []

    @property
    def active(self) -> Optional[TripLifecycle]:
        return self._active

    @property
    def queued(self) -> tuple[Trip, ...]:
        with self._lock:
            return tuple(self._queue)

    @property
    def completed(self) -> tuple[Trip, ...]:
        with self._lock:
            return tuple(self._completed)

    def has_trip_in_progress(self) -> bool:
        active = self._active
        return active is not None and active.trip.status == TripStatus.IN_PROGRESS

    def peek(self) -> Optional[Trip]:
        with self._lock:
            return self._queue[0] if self._queue else None

    def _known_ids(self) -> set[str]:
        ids = {trip.id for trip in self._queue}
        if self._active is not None:
            ids.add(self._active.trip.id)
        return ids

    def enqueue(self, trip: Trip) -> None:
        with self._lock:
            if trip.id in self._known_ids():
                raise DuplicateTrip(f"Trip {trip.id} is already queued or active.")
            if trip.status != TripStatus.ASSIGNED:
                raise IllegalTransition(f"Only assigned trips can be queued; trip {trip.id} is {trip.status.value}.")
            self._queue.append(trip)
            logger.debug("Queued trip %s (%d waiting)", trip.id, len(self._queue))

    def load(self, trips: Iterable[Trip]) -> None:
        """Seed the scheduler from the backend's trip list.

        An in-progress trip becomes the active one, delivered trips go to the
        history and assigned trips are queued oldest first.
        """
        with self._lock:
            self._queue.clear()
            self._completed.clear()
            self._active = None
            pending: list[Trip] = []
            for trip in trips:
                if trip.status == TripStatus.DELIVERED:
                    self._completed.append(trip)
                elif trip.status == TripStatus.IN_PROGRESS:
                    if self._active is not None:
                        raise IllegalTransition(
                            f"Trips {self._active.trip.id} and {trip.id} are both in progress."
                        )
                    self._active = self._factory(trip)
                else:
                    pending.append(trip)
            for trip in sorted(pending, key=_created_key):
                self.enqueue(trip)
            logger.info(
                "Loaded %d queued trip(s), active=%s",
                len(self._queue),
                self._active.trip.id if self._active else None,
            )

    def activate_next(self) -> Optional[Trip]:
        with self._lock:
            if self.has_trip_in_progress() or not self._queue:
                return None
            return self._start(self._queue[0])

    def activate(self, trip_id: str) -> Trip:
        """Start a specific queued trip, e.g. the one the driver accepted."""
        with self._lock:
            trip = self._find_queued(trip_id)
            if self.has_trip_in_progress():
                raise IllegalTransition(
                    f"Trip {self._active.trip.id} is already in progress; finish it before starting {trip_id}."
                )
            return self._start(trip)

    def decline(self, trip_id: str) -> Trip:
        with self._lock:
            trip = self._find_queued(trip_id)
            self._queue.remove(trip)
            logger.info("Declined trip %s", trip_id)
            return trip

    def complete_active(self) -> Optional[Trip]:
        """Archive the delivered active trip and promote the next queued one."""
        with self._lock:
            active = self._active
            if active is None or active.trip.status != TripStatus.DELIVERED:
                raise IllegalTransition("There is no delivered trip to complete.")
            self._completed.append(active.trip)
            self._active = None
            return self.activate_next()

    def requeue_active(self) -> Optional[Trip]:
        """Put an active trip whose start was rolled back at the head of the queue."""
        with self._lock:
            active = self._active
            if active is None or active.trip.status != TripStatus.ASSIGNED:
                return None
            self._active = None
            self._queue.insert(0, active.trip)
            logger.info("Trip %s returned to the queue", active.trip.id)
            return active.trip

    def _find_queued(self, trip_id: str) -> Trip:
        for trip in self._queue:
            if trip.id == trip_id:
                return trip
        if self._active is not None and self._active.trip.id == trip_id:
            raise NotQueued(f"Trip {trip_id} is active, not queued.")
        raise NotQueued(f"Trip {trip_id} is not in the queue.")

    def _start(self, trip: Trip) -> Trip:
        lifecycle = self._factory(trip)
        started = lifecycle.start()
        self._queue.remove(trip)
        previous = self._active
        if previous is not None:
            if previous.trip.status == TripStatus.DELIVERED:
                self._completed.append(previous.trip)
            else:
                self._queue.insert(0, previous.trip)
        self._active = lifecycle
        return started
