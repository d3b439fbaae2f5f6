"""Bridge status fallback chain: live traffic, then cached snapshot, then static defaults.

Every path through :meth:`FallbackChain.get_status` produces a successful
response; the provenance flags (``cached``, ``stale``, ``realTime``,
``fallback``) say which tier answered.
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from bridgewatch import config
from bridgewatch.cache import CacheStore
from bridgewatch.errors import PersistenceError, TotalUnavailabilityError
from bridgewatch.history_store import HistoryStore
from bridgewatch.models import (
    BridgeRecord,
    BridgeStatusResponse,
    Direction,
    Snapshot,
    TrafficData,
    TrafficReport,
    TrafficStatus,
)
from bridgewatch.traffic import TrafficAggregator

logger = logging.getLogger("bridgewatch.fallback")

SNAPSHOT_KEY = "bridge-status"
HISTORY_LIMIT = 19
MAX_SNAPSHOT_RECORDS = HISTORY_LIMIT + 1
UNAVAILABLE_ERROR = "Real-time data unavailable"


def static_default_records(now: Optional[datetime] = None) -> list[BridgeRecord]:
    """The fixed three-record dataset served when nothing better is available."""
    now = now or datetime.now(timezone.utc)
    return [
        BridgeRecord(
            id="675b867d1263d7b19b12ebb2",
            status=TrafficStatus.OPEN,
            timestamp=now,
            description="Bridge is fully open in both directions",
            direction=Direction.BOTH,
            average_speed=34.5,
        ),
        BridgeRecord(
            id="675b867d1263d7b19b12ebb1",
            status=TrafficStatus.DELAYED,
            timestamp=now - timedelta(minutes=30),
            description="Bridge is experiencing delays in at least one direction",
            direction=Direction.BOTH,
            average_speed=28.2,
        ),
        BridgeRecord(
            id="675b867d1263d7b19b12ebb0",
            status=TrafficStatus.OPEN,
            timestamp=now - timedelta(minutes=60),
            description="Bridge reopened after maintenance",
            direction=Direction.BOTH,
            average_speed=32.8,
        ),
    ]


def static_history_records() -> list[BridgeRecord]:
    return static_default_records()[1:]


def build_current_record(report: TrafficReport) -> BridgeRecord:
    eastbound = report.directions.eastbound.average_speed
    westbound = report.directions.westbound.average_speed
    return BridgeRecord(
        id=f"current_{int(report.timestamp.timestamp() * 1000)}",
        status=report.overall_status.status,
        timestamp=report.timestamp,
        description=report.overall_status.details,
        direction=Direction.BOTH,
        # half-up, speeds are never negative
        average_speed=math.floor((eastbound + westbound) / 2 + 0.5),
        version=0,
    )


class FallbackChain:
    def __init__(
        self,
        cache: CacheStore[Any],
        aggregator: TrafficAggregator,
        history: HistoryStore,
        *,
        ttl_seconds: float = config.SNAPSHOT_TTL_SECONDS,
        stale_seconds: float = config.SNAPSHOT_STALE_SECONDS,
        key: str = SNAPSHOT_KEY,
    ) -> None:
        self.cache = cache
        self.aggregator = aggregator
        self.history = history
        self.ttl_seconds = ttl_seconds
        self.stale_seconds = stale_seconds
        self.key = key
        self._refresh_tasks: set[asyncio.Task[None]] = set()

    async def get_status(self) -> BridgeStatusResponse:
        lookup = self.cache.get_with_stale(self.key)
        if lookup.data is not None:
            if lookup.is_stale:
                self._spawn_refresh()
                return self._cached_response(lookup.data, stale=True)
            return self._cached_response(lookup.data)

        try:
            # Concurrent misses share one aggregation.
            snapshot: Snapshot = await self.cache.get_or_fetch(
                self.key,
                self._build_snapshot,
                self.ttl_seconds,
                self.stale_seconds,
            )
        except Exception:
            logger.warning("Failed to fetch real traffic data, using fallback", exc_info=True)
            return self._fallback_response()

        return BridgeStatusResponse(
            data=snapshot.records,
            real_time=True,
            timestamp=snapshot.timestamp,
            traffic_data=snapshot.traffic_data,
        )

    def _cached_response(self, snapshot: Snapshot, stale: bool = False) -> BridgeStatusResponse:
        return BridgeStatusResponse(
            data=snapshot.records,
            cached=True,
            stale=True if stale else None,
            timestamp=snapshot.timestamp,
            traffic_data=snapshot.traffic_data,
        )

    def _cached_snapshot_or_raise(self) -> Snapshot:
        snapshot = self.cache.get(self.key)
        if snapshot is None:
            raise TotalUnavailabilityError("Live traffic failed and no cached snapshot exists")
        return snapshot

    def _fallback_response(self) -> BridgeStatusResponse:
        try:
            snapshot = self._cached_snapshot_or_raise()
        except TotalUnavailabilityError as exc:
            logger.warning("%s; serving static defaults", exc)
            now = datetime.now(timezone.utc)
            return BridgeStatusResponse(
                data=static_default_records(now),
                fallback=True,
                error=UNAVAILABLE_ERROR,
                timestamp=now,
            )

        logger.info("Serving cached snapshot from %s after live failure", snapshot.timestamp.isoformat())
        return BridgeStatusResponse(
            data=snapshot.records,
            fallback=True,
            cached=True,
            timestamp=snapshot.timestamp,
            traffic_data=snapshot.traffic_data,
        )

    async def _build_snapshot(self) -> Snapshot:
        report = await self.aggregator.aggregate()
        current = build_current_record(report)
        history = await self._load_history(current)
        return Snapshot(
            records=[current, *history][:MAX_SNAPSHOT_RECORDS],
            timestamp=report.timestamp,
            traffic_data=TrafficData(directions=report.directions, overall_status=report.overall_status),
        )

    async def _load_history(self, current: BridgeRecord) -> list[BridgeRecord]:
        try:
            await asyncio.to_thread(self.history.append, current)
            logger.info("Saved current status to history: %s", current.status.value)
            return await asyncio.to_thread(self.history.query_recent, limit=HISTORY_LIMIT)
        except PersistenceError as exc:
            logger.warning("History store unavailable, using limited historical data: %s", exc)
        except Exception:
            logger.exception("History store failed, using limited historical data")
        return static_history_records()

    def _spawn_refresh(self) -> None:
        if self._refresh_tasks:
            logger.debug("Background refresh already running")
            return
        task = asyncio.create_task(self._refresh(), name="bridge-status-refresh")
        # The loop only keeps weak references to tasks.
        self._refresh_tasks.add(task)
        task.add_done_callback(self._refresh_tasks.discard)

    async def _refresh(self) -> None:
        # Shares the cache's in-flight fetch, so a concurrent cold miss joins it
        # and a clear() during the refresh is not overwritten.
        try:
            snapshot = await self.cache.refresh(
                self.key,
                self._build_snapshot,
                self.ttl_seconds,
                self.stale_seconds,
            )
        except Exception:
            logger.exception("Background refresh failed")
            return
        logger.info("Background refresh completed records=%d", len(snapshot.records))

    async def drain(self) -> None:
        """Wait for outstanding background refreshes (used at shutdown and in tests)."""
        if self._refresh_tasks:
            await asyncio.gather(*list(self._refresh_tasks), return_exceptions=True)
