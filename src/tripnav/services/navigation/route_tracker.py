"""Tracks live location samples against the active route plan."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, replace
from typing import Union

from ...config import Settings, settings
from ...errors import InvalidPolyline
from ...models.domain import Coordinate, LocationSample, RoutePlan
from ..geospatial import closest_point_on_polyline, distance_m, polyline_length_m
from .eta import SpeedWindow, estimated_delay_seconds, instantaneous_speed

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RouteDeviated:
    sample: LocationSample
    distance_from_route_m: float
    closest_index: int


@dataclass(frozen=True, slots=True)
class RouteCompleted:
    sample: LocationSample
    destination: Coordinate


RouteEvent = Union[RouteDeviated, RouteCompleted]


@dataclass(frozen=True, slots=True)
class RouteProgress:
    """Read-only view of the tracker after the last ingested sample."""

    has_route: bool = False
    route_valid: bool = False
    is_deviated: bool = False
    arrived: bool = False
    closest_index: int | None = None
    distance_from_route_m: float | None = None
    remaining_distance_m: float | None = None
    remaining_duration_s: float | None = None
    average_speed_mps: float | None = None
    last_location: Coordinate | None = None


def trim_route(plan: RoutePlan, from_index: int) -> RoutePlan:
    """Return the part of ``plan`` that starts at polyline vertex ``from_index``.

    Totals are scaled by the share of polyline length that remains, so the
    road distance reported by the router is preserved proportionally. Trimming
    from index 0 returns the plan itself.
    """
    if not 0 <= from_index < len(plan.polyline):
        raise IndexError(f"Route index {from_index} outside polyline of {len(plan.polyline)} points.")
    if from_index == 0:
        return plan

    remaining = plan.polyline[from_index:]
    full_length = polyline_length_m(plan.polyline)
    share = polyline_length_m(remaining) / full_length if full_length > 0 else 0.0
    steps = tuple(
        replace(step, start_index=step.start_index - from_index)
        for step in plan.steps
        if step.start_index >= from_index
    )
    return RoutePlan(
        polyline=remaining,
        total_distance_m=plan.total_distance_m * share,
        expected_duration_s=plan.expected_duration_s * share,
        steps=steps,
    )


class RouteTracker:
    """Stateful progress tracker for one navigation session.

    ``ingest`` is synchronous pure math: it never waits on the router. A
    deviation only marks the plan invalid and reports ``RouteDeviated``; a new
    plan arrives later through ``replace_route``.
    """

    def __init__(
        self,
        plan: RoutePlan | None = None,
        *,
        deviation_threshold_m: float | None = None,
        min_speed_mps: float | None = None,
        config: Settings | None = None,
    ) -> None:
        self.config = config or settings
        self.deviation_threshold_m = (
            deviation_threshold_m if deviation_threshold_m is not None else self.config.deviation_threshold_m
        )
        self.min_speed_mps = min_speed_mps if min_speed_mps is not None else self.config.min_speed_mps
        self._history: deque[LocationSample] = deque(maxlen=self.config.location_history_size)
        self._speeds = SpeedWindow(self.config.speed_window_seconds)
        self._plan: RoutePlan | None = None
        self._progress = RouteProgress()
        self._deviated = False
        self._completed = False
        if plan is not None:
            self.replace_route(plan)

    # ------------------------------------------------------------------
    # Read-only properties
    # ------------------------------------------------------------------

    @property
    def plan(self) -> RoutePlan | None:
        return self._plan

    @property
    def progress(self) -> RouteProgress:
        return self._progress

    @property
    def history(self) -> tuple[LocationSample, ...]:
        return tuple(self._history)

    @property
    def is_deviated(self) -> bool:
        return self._deviated

    @property
    def completed_path(self) -> tuple[Coordinate, ...]:
        index = self._progress.closest_index
        if self._plan is None or index is None:
            return ()
        return self._plan.polyline[: index + 1]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def replace_route(self, plan: RoutePlan) -> None:
        """Swap the active plan wholesale and clear deviation state."""
        self._plan = plan
        self._deviated = False
        self._completed = False
        self._progress = RouteProgress(
            has_route=True,
            route_valid=len(plan.polyline) >= 2,
            remaining_distance_m=plan.total_distance_m,
            remaining_duration_s=plan.expected_duration_s,
            average_speed_mps=self._speeds.average(),
            last_location=self._history[-1].coordinate if self._history else None,
        )
        logger.info(
            "Route replaced: %d points, %.0f m, %.0f s",
            len(plan.polyline),
            plan.total_distance_m,
            plan.expected_duration_s,
        )

    def clear(self) -> None:
        self._plan = None
        self._deviated = False
        self._completed = False
        self._history.clear()
        self._speeds.clear()
        self._progress = RouteProgress()

    def ingest(self, sample: LocationSample) -> list[RouteEvent]:
        previous = self._history[-1] if self._history else None
        self._history.append(sample)
        speed = instantaneous_speed(previous, sample)
        if speed is not None:
            self._speeds.add(speed, sample.timestamp)

        plan = self._plan
        if plan is None:
            # Navigation may start before the first route computation returns.
            return []

        try:
            closest_index, off_route_m = closest_point_on_polyline(sample.coordinate, plan.polyline)
        except InvalidPolyline as exc:
            logger.warning("Route geometry unusable, falling back to direct distance: %s", exc)
            return self._ingest_without_route(sample, plan)

        events: list[RouteEvent] = []
        if off_route_m > self.deviation_threshold_m:
            if not self._deviated:
                self._deviated = True
                logger.info("Route deviation: %.1f m from closest route point %d", off_route_m, closest_index)
                events.append(RouteDeviated(sample, off_route_m, closest_index))
        elif self._deviated:
            logger.info("Back on route at point %d", closest_index)
            self._deviated = False

        destination = plan.polyline[-1]
        arrived = distance_m(sample.coordinate, destination) <= self.config.arrival_radius_m
        if arrived and not self._completed:
            self._completed = True
            events.append(RouteCompleted(sample, destination))

        if self._deviated:
            remaining_m = distance_m(sample.coordinate, destination)
            remaining_s = self._direct_duration(remaining_m)
        else:
            remaining_m = off_route_m + polyline_length_m(plan.polyline[closest_index:])
            remaining_s = self._estimate_duration(plan, closest_index, remaining_m)

        self._progress = RouteProgress(
            has_route=True,
            route_valid=not self._deviated,
            is_deviated=self._deviated,
            arrived=self._completed,
            closest_index=closest_index,
            distance_from_route_m=off_route_m,
            remaining_distance_m=remaining_m,
            remaining_duration_s=remaining_s,
            average_speed_mps=self._speeds.average(),
            last_location=sample.coordinate,
        )
        return events

    def trim_to_remaining(self, from_index: int | None = None) -> RoutePlan | None:
        """Un-traveled part of the active plan; the stored plan is not modified."""
        if self._plan is None:
            return None
        if from_index is None:
            from_index = self._progress.closest_index or 0
        return trim_route(self._plan, from_index)

    # ------------------------------------------------------------------
    # Estimation
    # ------------------------------------------------------------------

    def _ingest_without_route(self, sample: LocationSample, plan: RoutePlan) -> list[RouteEvent]:
        destination = plan.destination
        remaining_m = distance_m(sample.coordinate, destination) if destination else None
        self._progress = RouteProgress(
            has_route=True,
            route_valid=False,
            remaining_distance_m=remaining_m,
            remaining_duration_s=self._direct_duration(remaining_m) if remaining_m is not None else None,
            average_speed_mps=self._speeds.average(),
            last_location=sample.coordinate,
        )
        return []

    def _direct_duration(self, remaining_m: float) -> float:
        average = self._speeds.average()
        if average is None or average < self.min_speed_mps:
            average = self.config.fallback_speed_kmh * 1000.0 / 3600.0
        return remaining_m / average

    def _estimate_duration(self, plan: RoutePlan, closest_index: int, remaining_m: float) -> float:
        average = self._speeds.average()
        if average is None:
            # No speed yet: scale the router's estimate by the share left.
            full_length = polyline_length_m(plan.polyline)
            if full_length <= 0:
                return plan.expected_duration_s
            return plan.expected_duration_s * min(1.0, remaining_m / full_length)

        if average < self.min_speed_mps:
            return plan.expected_duration_s * self.config.stationary_eta_factor

        upcoming_steps = [step for step in plan.steps if step.start_index >= closest_index]
        delay = estimated_delay_seconds(
            upcoming_steps,
            remaining_m,
            turn_delay_s=self.config.turn_delay_seconds,
            signal_delay_s=self.config.signal_delay_seconds,
            signal_spacing_m=self.config.signal_spacing_m,
        )
        estimate = remaining_m / average + delay
        return max(estimate, remaining_m / self.config.max_reasonable_speed_mps)
