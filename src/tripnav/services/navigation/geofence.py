"""Edge-triggered monitoring of circular geofences."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Union

from ...models.domain import Geofence, LocationSample
from ..geospatial import distance_m

logger = logging.getLogger(__name__)

PICKUP_FENCE = "pickup"
DESTINATION_FENCE = "destination"


@dataclass(frozen=True, slots=True)
class GeofenceEntered:
    fence: Geofence
    sample: LocationSample


@dataclass(frozen=True, slots=True)
class GeofenceExited:
    fence: Geofence
    sample: LocationSample


GeofenceEvent = Union[GeofenceEntered, GeofenceExited]


class GeofenceMonitor:
    """Watch the current location against named circular zones.

    Every fence starts outside. Events fire only when membership flips, so a
    driver loitering on a boundary produces one event per real crossing.
    """

    def __init__(self, fences: Iterable[Geofence] = ()) -> None:
        self._fences: dict[str, Geofence] = {}
        self._inside: dict[str, bool] = {}
        for fence in fences:
            self.add(fence)

    @property
    def fences(self) -> tuple[Geofence, ...]:
        return tuple(self._fences.values())

    def add(self, fence: Geofence) -> None:
        if fence.name in self._fences:
            raise ValueError(f"Geofence '{fence.name}' is already monitored.")
        self._fences[fence.name] = fence
        self._inside[fence.name] = False

    def clear(self) -> None:
        self._fences.clear()
        self._inside.clear()

    def is_inside(self, name: str) -> bool:
        return self._inside.get(name, False)

    def membership(self) -> dict[str, bool]:
        return dict(self._inside)

    def ingest(self, sample: LocationSample) -> list[GeofenceEvent]:
        events: list[GeofenceEvent] = []
        for name, fence in self._fences.items():
            inside = distance_m(sample.coordinate, fence.center) <= fence.radius_m
            if inside == self._inside[name]:
                continue
            self._inside[name] = inside
            if inside:
                logger.info("Entered geofence '%s'", name)
                events.append(GeofenceEntered(fence, sample))
            else:
                logger.info("Exited geofence '%s'", name)
                events.append(GeofenceExited(fence, sample))
        return events
