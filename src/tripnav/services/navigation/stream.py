"""Fan-out channel for location samples."""

from __future__ import annotations

from typing import Any, Callable, Sequence

from ...models.domain import LocationSample

LocationHandler = Callable[[LocationSample], Sequence[Any]]


class LocationStream:
    """Delivers each sample to every subscriber in subscription order.

    Handlers return the events they produced; ``publish`` concatenates them.
    A closed stream drops samples.
    """

    def __init__(self) -> None:
        self._handlers: list[LocationHandler] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, handler: LocationHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def publish(self, sample: LocationSample) -> list[Any]:
        if self._closed:
            return []
        events: list[Any] = []
        for handler in list(self._handlers):
            events.extend(handler(sample))
        return events

    def close(self) -> None:
        self._closed = True
        self._handlers.clear()
