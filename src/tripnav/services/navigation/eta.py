"""Speed smoothing and arrival-time estimation."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

from ...models.domain import LocationSample, RouteStep
from ..geospatial import distance_m


@dataclass(frozen=True, slots=True)
class SpeedReading:
    speed_mps: float
    timestamp: datetime


class SpeedWindow:
    """Instantaneous speeds observed within a sliding time window.

    The window is anchored on sample timestamps rather than the wall clock so
    that replayed or delayed samples age out consistently.
    """

    def __init__(self, window_seconds: float) -> None:
        self.window_seconds = window_seconds
        self._readings: deque[SpeedReading] = deque()

    def add(self, speed_mps: float, timestamp: datetime) -> None:
        self._readings.append(SpeedReading(speed_mps, timestamp))
        self._evict(timestamp)

    def _evict(self, now: datetime) -> None:
        while self._readings and (now - self._readings[0].timestamp).total_seconds() > self.window_seconds:
            self._readings.popleft()

    def average(self) -> float | None:
        if not self._readings:
            return None
        return sum(reading.speed_mps for reading in self._readings) / len(self._readings)

    def clear(self) -> None:
        self._readings.clear()

    def __len__(self) -> int:
        return len(self._readings)


def instantaneous_speed(previous: LocationSample | None, current: LocationSample) -> float | None:
    """Speed reported by the sample, else derived from the previous sample."""
    if current.speed_mps is not None and current.speed_mps >= 0:
        return current.speed_mps
    if previous is None:
        return None
    elapsed = (current.timestamp - previous.timestamp).total_seconds()
    if elapsed <= 0:
        return None
    return distance_m(previous.coordinate, current.coordinate) / elapsed


def estimated_delay_seconds(
    steps: Sequence[RouteStep],
    remaining_distance_m: float,
    *,
    turn_delay_s: float,
    signal_delay_s: float,
    signal_spacing_m: float,
) -> float:
    """Heuristic stop-and-turn allowance added on top of distance / speed.

    Each turn costs a fixed delay and one traffic signal is assumed per
    ``signal_spacing_m`` of step distance. The numbers are rules of thumb for
    urban driving, not a traffic model. Without step data the signal estimate
    runs over the remaining distance and turns are ignored.
    """
    if not steps:
        return int(remaining_distance_m // signal_spacing_m) * signal_delay_s

    total = 0.0
    for step in steps:
        if step.is_turn:
            total += turn_delay_s
        total += int(step.distance_m // signal_spacing_m) * signal_delay_s
    return total
