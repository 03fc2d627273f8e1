"""Asynchronous route recalculation with stale-result protection."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Protocol

from ...models.domain import Coordinate, RoutePlan

logger = logging.getLogger(__name__)


class RoutingClient(Protocol):
    def route(self, origin: Coordinate, destination: Coordinate, avoid_tolls: bool = False) -> RoutePlan:
        ...


ResultCallback = Callable[[int, RoutePlan], None]
ErrorCallback = Callable[[int, Exception], None]


class RouteRecalculator:
    """Runs routing requests off the caller's thread.

    Every request gets a fresh token and only the newest token is current.
    ``cancel`` advances the token too, so a result that lands after navigation
    stopped, or after a newer request, is recognisably stale.
    """

    def __init__(self, router: RoutingClient, *, executor: ThreadPoolExecutor | None = None) -> None:
        self.router = router
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="route-recalc")
        self._lock = threading.Lock()
        self._token = 0
        self._future: Future | None = None

    @property
    def token(self) -> int:
        return self._token

    @property
    def in_flight(self) -> bool:
        future = self._future
        return future is not None and not future.done()

    def is_current(self, token: int) -> bool:
        return token == self._token

    def request(
        self,
        origin: Coordinate,
        destination: Coordinate,
        *,
        avoid_tolls: bool = False,
        on_result: ResultCallback,
        on_error: ErrorCallback | None = None,
    ) -> int:
        with self._lock:
            self._token += 1
            token = self._token
            if self._future is not None:
                self._future.cancel()
            self._future = self._executor.submit(
                self._run, token, origin, destination, avoid_tolls, on_result, on_error
            )
        return token

    def cancel(self) -> None:
        with self._lock:
            self._token += 1
            if self._future is not None:
                self._future.cancel()
                self._future = None

    def shutdown(self) -> None:
        self.cancel()
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _run(
        self,
        token: int,
        origin: Coordinate,
        destination: Coordinate,
        avoid_tolls: bool,
        on_result: ResultCallback,
        on_error: ErrorCallback | None,
    ) -> None:
        started = time.monotonic()
        try:
            plan = self.router.route(origin, destination, avoid_tolls=avoid_tolls)
        except Exception as exc:
            # Routing failures are non-fatal: the tracker keeps reporting deviation.
            logger.warning("Route recalculation %d failed after %.1fs: %s", token, time.monotonic() - started, exc)
            if on_error is not None:
                on_error(token, exc)
            return
        logger.debug("Route recalculation %d finished in %.1fs", token, time.monotonic() - started)
        on_result(token, plan)


class Throttle:
    """Allows an action at most once per ``min_interval`` seconds."""

    def __init__(self, min_interval: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.min_interval = min_interval
        self._clock = clock
        self._last: float | None = None

    def ready(self) -> bool:
        now = self._clock()
        if self._last is not None and now - self._last < self.min_interval:
            return False
        self._last = now
        return True

    def reset(self) -> None:
        self._last = None
