"""HTTP client for the OSRM route service."""

from __future__ import annotations

import logging
import time
from typing import Any, Sequence

import httpx

from ...config import settings
from ...errors import NoRouteFound
from ...models.domain import Coordinate, RoutePlan, RouteStep

logger = logging.getLogger(__name__)

# OSRM response codes that mean "the request was fine but no route exists".
NO_ROUTE_CODES = {"NoRoute", "NoSegment", "NoMatch"}


class OSRMClient:
    def __init__(
        self,
        base_url: str | None = None,
        profile: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url or settings.osrm_base_url
        if not self.base_url:
            raise ValueError("OSRM base URL is not configured.")
        self.profile = profile or settings.osrm_profile
        self.timeout = timeout if timeout is not None else settings.osrm_timeout_seconds
        self.max_retries = max_retries if max_retries is not None else settings.osrm_max_retries
        self.backoff_seconds = backoff_seconds if backoff_seconds is not None else settings.osrm_backoff_seconds
        self._transport = transport

    def _get_client(self) -> httpx.Client:
        """Create a short-lived client; routes are requested from worker threads."""
        return httpx.Client(
            timeout=httpx.Timeout(self.timeout, connect=10.0),
            transport=self._transport,
        )

    def route(self, origin: Coordinate, destination: Coordinate, avoid_tolls: bool = False) -> RoutePlan:
        """Compute a street route between two coordinates.

        Raises ``NoRouteFound`` when OSRM answers but cannot connect the points,
        and ``ConnectionError`` when the service stays unreachable after retries.
        """
        data = self._request_route([origin.as_tuple(), destination.as_tuple()], avoid_tolls=avoid_tolls)
        return route_plan_from_response(data)

    def _request_route(self, coordinates: Sequence[tuple[float, float]], *, avoid_tolls: bool) -> dict:
        # OSRM route endpoint expects coordinates as "lon,lat;lon,lat;..."
        coordinate_str = ";".join(f"{lon},{lat}" for lat, lon in coordinates)
        params = {
            "overview": "full",
            "geometries": "polyline",
            "steps": "true",
        }
        if avoid_tolls:
            params["exclude"] = "toll"
        url = f"{self.base_url}/route/v1/{self.profile}/{coordinate_str}"

        client = self._get_client()
        try:
            attempt = 0
            while True:
                try:
                    response = client.get(url, params=params)
                    if response.status_code == 400:
                        # OSRM reports NoRoute and friends with HTTP 400 and a JSON body.
                        data = response.json()
                    else:
                        response.raise_for_status()
                        data = response.json()
                    code = data.get("code")
                    if code in NO_ROUTE_CODES or (code == "Ok" and not data.get("routes")):
                        raise NoRouteFound(data.get("message") or f"OSRM returned {code}")
                    if code != "Ok":
                        raise ValueError(f"OSRM route request failed: {data.get('message', code)}")
                    return data
                except NoRouteFound:
                    raise
                except (httpx.TimeoutException, httpx.ConnectError, httpx.NetworkError) as e:
                    attempt += 1
                    if attempt > self.max_retries:
                        raise ConnectionError(
                            f"Failed to reach OSRM service at {self.base_url}: {e}"
                        ) from e
                    wait_time = self.backoff_seconds * (2 ** (attempt - 1))  # Exponential backoff
                    logger.debug(f"OSRM route network error, retrying in {wait_time:.1f}s (attempt {attempt}/{self.max_retries}): {e}")
                    time.sleep(wait_time)
                except (httpx.HTTPError, ValueError) as error:
                    attempt += 1
                    if attempt > self.max_retries:
                        raise
                    logger.debug(f"OSRM route request failed, retrying (attempt {attempt}/{self.max_retries}): {error}")
                    time.sleep(self.backoff_seconds * attempt)
        finally:
            client.close()


def route_plan_from_response(data: dict[str, Any]) -> RoutePlan:
    """Convert the first route of an OSRM response into a RoutePlan."""
    route = data["routes"][0]
    polyline = tuple(Coordinate(lat, lon) for lat, lon in decode_polyline(route.get("geometry", "")))

    steps: list[RouteStep] = []
    index = 0
    for leg in route.get("legs", []):
        for step in leg.get("steps", []):
            step_points = decode_polyline(step.get("geometry", "")) if step.get("geometry") else []
            maneuver = step.get("maneuver", {})
            steps.append(
                RouteStep(
                    instruction=_instruction_text(maneuver, step.get("name", "")),
                    maneuver=maneuver.get("type", ""),
                    distance_m=float(step.get("distance", 0.0)),
                    start_index=min(index, max(len(polyline) - 1, 0)),
                )
            )
            # Consecutive step geometries share their boundary vertex.
            index += max(len(step_points) - 1, 0)

    return RoutePlan(
        polyline=polyline,
        total_distance_m=float(route.get("distance", 0.0)),
        expected_duration_s=float(route.get("duration", 0.0)),
        steps=tuple(steps),
    )


def _instruction_text(maneuver: dict[str, Any], name: str) -> str:
    parts = [maneuver.get("type", ""), maneuver.get("modifier", "")]
    text = " ".join(part for part in parts if part).capitalize()
    if name:
        text = f"{text} onto {name}" if text else name
    return text


def decode_polyline(polyline: str) -> list[tuple[float, float]]:
    """Decode Google polyline string to list of (lat, lon) coordinates.

    OSRM uses Google's polyline encoding format (precision 5) for route geometry.
    """
    coordinates = []
    index = 0
    lat = 0
    lon = 0

    while index < len(polyline):
        deltas = []
        for _ in range(2):
            shift = 0
            result = 0
            while True:
                b = ord(polyline[index]) - 63
                index += 1
                result |= (b & 0x1f) << shift
                shift += 5
                if b < 0x20:
                    break
            deltas.append(~(result >> 1) if (result & 1) else (result >> 1))
        lat += deltas[0]
        lon += deltas[1]
        coordinates.append((lat / 1e5, lon / 1e5))

    return coordinates


def check_health(base_url: str | None = None, transport: httpx.BaseTransport | None = None) -> bool:
    """Check OSRM service health with a minimal two-point route request."""
    base = base_url or settings.osrm_base_url
    if not base:
        return False
    try:
        test_coords = "13.388860,52.517037;13.385983,52.496891"
        url = f"{base}/route/v1/{settings.osrm_profile}/{test_coords}"
        with httpx.Client(timeout=5.0, transport=transport) as client:
            response = client.get(url, params={"overview": "false"})
        response.raise_for_status()
        return response.json().get("code") == "Ok"
    except (httpx.HTTPError, ValueError):
        return False
