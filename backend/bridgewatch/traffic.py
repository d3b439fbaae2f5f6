"""TomTom flow lookups for each bridge direction and the overall status merge."""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

import httpx

from bridgewatch import config
from bridgewatch.errors import CoordinateValidationError, ExternalSourceError, MissingCredentialError
from bridgewatch.log_redact import httpx_event_hooks
from bridgewatch.models import (
    DirectionalReading,
    OverallStatus,
    TrafficDirections,
    TrafficReport,
    TrafficStatus,
)

logger = logging.getLogger("bridgewatch.traffic")

DEFAULT_FREE_FLOW_SPEED = 70.0
DELAY_THRESHOLD_RATIO = 0.3

CLOSED_DETAILS = "Bridge is currently closed to traffic"
DELAYED_DETAILS = "Bridge is open but experiencing significant delays"
OPEN_DETAILS = "Bridge is open with normal traffic flow"

# Most severe first: the first status seen in either direction decides.
MERGE_PRECEDENCE: tuple[tuple[TrafficStatus, str], ...] = (
    (TrafficStatus.CLOSED, "Bridge is closed in at least one direction"),
    (TrafficStatus.DELAYED, "Bridge is experiencing delays in at least one direction"),
    (TrafficStatus.UNKNOWN, "Unable to determine bridge status"),
)
ALL_OPEN_DETAILS = "Bridge is fully open in both directions"

REQUIRED_DIRECTIONS = ("eastbound", "westbound")


@dataclass(frozen=True)
class MonitoringPoint:
    direction: str
    point: str
    description: str


DEFAULT_POINTS = (
    MonitoringPoint("eastbound", config.EASTBOUND_POINT, "A14 Eastbound (Ipswich to Felixstowe)"),
    MonitoringPoint("westbound", config.WESTBOUND_POINT, "A14 Westbound (Felixstowe to Ipswich)"),
)


def parse_coordinates(point: str) -> Optional[tuple[float, float]]:
    """Parse a ``"lat,lon"`` string, returning None unless both values are in range."""
    parts = point.split(",") if isinstance(point, str) else []
    if len(parts) != 2:
        return None
    try:
        lat, lon = float(parts[0]), float(parts[1])
    except ValueError:
        return None
    # NaN fails both comparisons.
    if not (-90 <= lat <= 90 and -180 <= lon <= 180):
        return None
    return lat, lon


def validate_coordinates(point: str) -> bool:
    return parse_coordinates(point) is not None


def _speed(segment: dict[str, Any], field: str) -> Optional[float]:
    value = segment.get(field)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{field} is not a number: {value!r}")
    if not math.isfinite(value):
        raise ValueError(f"{field} is not finite: {value!r}")
    if value < 0:
        raise ValueError(f"{field} is negative: {value!r}")
    return float(value)


def analyze_flow(payload: Any, description: str = "") -> DirectionalReading:
    """Classify one flow-segment payload.

    Rules, first match wins:

    * ``roadClosure`` or a current speed of zero (absent counts as zero) -> CLOSED
    * current speed below 30% of free-flow speed (70 when absent) -> DELAYED
    * otherwise -> OPEN

    Raises ValueError when the payload is not shaped like a flow response.
    """
    if not isinstance(payload, dict):
        raise ValueError("payload is not a JSON object")
    segment = payload.get("flowSegmentData")
    if not isinstance(segment, dict):
        raise ValueError("payload has no flowSegmentData object")

    current_speed = _speed(segment, "currentSpeed") or 0.0
    free_flow_speed = _speed(segment, "freeFlowSpeed") or DEFAULT_FREE_FLOW_SPEED

    if segment.get("roadClosure") or current_speed == 0:
        status, details = TrafficStatus.CLOSED, CLOSED_DETAILS
    elif current_speed < free_flow_speed * DELAY_THRESHOLD_RATIO:
        status, details = TrafficStatus.DELAYED, DELAYED_DETAILS
    else:
        status, details = TrafficStatus.OPEN, OPEN_DETAILS

    return DirectionalReading(
        status=status,
        details=details,
        average_speed=current_speed,
        description=description,
    )


def unavailable_reading(direction: str, description: str = "") -> DirectionalReading:
    return DirectionalReading(
        status=TrafficStatus.UNKNOWN,
        details=f"Unable to fetch traffic data for {direction} direction",
        average_speed=0,
        description=description,
    )


def merge_readings(eastbound: DirectionalReading, westbound: DirectionalReading) -> OverallStatus:
    statuses = {eastbound.status, westbound.status}
    for status, details in MERGE_PRECEDENCE:
        if status in statuses:
            return OverallStatus(status=status, details=details)
    return OverallStatus(status=TrafficStatus.OPEN, details=ALL_OPEN_DETAILS)


class TrafficAggregator:
    """Reads both bridge directions from the flow API and merges them.

    A failure in one direction (bad coordinates, missing key, timeout,
    transport error, unusable body) turns that direction into an UNKNOWN
    reading; it never affects the other direction or raises to the caller.
    """

    def __init__(
        self,
        api_key: str = "",
        *,
        points: Iterable[MonitoringPoint] = DEFAULT_POINTS,
        flow_url: str = config.TOMTOM_FLOW_URL,
        timeout_seconds: float = config.TRAFFIC_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.points = tuple(points)
        directions = sorted(point.direction for point in self.points)
        if directions != sorted(REQUIRED_DIRECTIONS):
            raise ValueError(f"expected one monitoring point per direction {REQUIRED_DIRECTIONS}, got {directions}")
        self.api_key = api_key
        self.flow_url = flow_url
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(timeout=self.timeout_seconds),
                event_hooks=httpx_event_hooks(),
            )
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def _request_flow(self, point: MonitoringPoint) -> Any:
        if not validate_coordinates(point.point):
            raise CoordinateValidationError(point.direction, point.point)
        if not self.api_key:
            raise MissingCredentialError(point.direction, "TOMTOM_API_KEY")

        params = {"point": point.point, "key": self.api_key}
        try:
            response = await asyncio.wait_for(
                self._get_client().get(self.flow_url, params=params),
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
            return response.json()
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise ExternalSourceError(point.direction, f"timed out after {self.timeout_seconds:.1f}s") from exc
        except httpx.HTTPStatusError as exc:
            raise ExternalSourceError(point.direction, f"HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise ExternalSourceError(point.direction, exc.__class__.__name__) from exc
        except ValueError as exc:
            raise ExternalSourceError(point.direction, "response body is not JSON") from exc

    async def read_direction(self, point: MonitoringPoint) -> DirectionalReading:
        """Return the reading for one direction. Never raises."""
        try:
            payload = await self._request_flow(point)
            return analyze_flow(payload, description=point.description)
        except CoordinateValidationError as exc:
            logger.warning("Skipping %s lookup: %s", point.direction, exc)
        except ExternalSourceError as exc:
            logger.warning("Traffic lookup failed direction=%s reason=%s", point.direction, exc.reason)
        except ValueError as exc:
            logger.warning("Malformed traffic payload direction=%s: %s", point.direction, exc)
        except Exception:
            logger.exception("Unexpected failure reading %s traffic", point.direction)
        return unavailable_reading(point.direction, point.description)

    async def aggregate(self) -> TrafficReport:
        readings = await asyncio.gather(*(self.read_direction(point) for point in self.points))
        by_direction = {point.direction: reading for point, reading in zip(self.points, readings)}
        directions = TrafficDirections(**by_direction)
        overall = merge_readings(directions.eastbound, directions.westbound)
        logger.info(
            "Traffic aggregated eastbound=%s westbound=%s overall=%s",
            directions.eastbound.status.value,
            directions.westbound.status.value,
            overall.status.value,
        )
        return TrafficReport(
            directions=directions,
            overall_status=overall,
            timestamp=datetime.now(timezone.utc),
        )
