"""Recent closure and delay events drawn from the status history."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Union

from bridgewatch import config
from bridgewatch.cache import CacheStore
from bridgewatch.errors import PersistenceError
from bridgewatch.history_store import HistoryStore
from bridgewatch.models import Events, NoEvents, TrafficStatus

logger = logging.getLogger("bridgewatch.events")

EVENTS_KEY = "events-data"
EVENT_STATUSES = (TrafficStatus.CLOSED, TrafficStatus.DELAYED)


class EventsFeed:
    def __init__(
        self,
        cache: CacheStore[Any],
        history: HistoryStore,
        *,
        limit: int = config.EVENTS_LIMIT,
        lookback_hours: int = config.EVENTS_LOOKBACK_HOURS,
        ttl_seconds: float = config.EVENTS_CACHE_TTL_SECONDS,
    ) -> None:
        self.cache = cache
        self.history = history
        self.limit = limit
        self.lookback_hours = lookback_hours
        self.ttl_seconds = ttl_seconds

    @property
    def no_events_message(self) -> str:
        return f"No closures or delays in the last {self.lookback_hours} hours"

    async def recent_events(self) -> Union[Events, NoEvents]:
        """Cached for ``ttl_seconds``, including the no-events answer."""
        return await self.cache.get_or_fetch(EVENTS_KEY, self._query, self.ttl_seconds)

    async def _query(self) -> Union[Events, NoEvents]:
        since = datetime.now(timezone.utc) - timedelta(hours=self.lookback_hours)
        try:
            records = await asyncio.to_thread(
                self.history.query_recent,
                statuses=EVENT_STATUSES,
                since=since,
                limit=self.limit,
            )
        except PersistenceError as exc:
            logger.warning("History store unavailable for events: %s", exc)
            return NoEvents(message=self.no_events_message)
        except Exception:
            logger.exception("Events query failed")
            return NoEvents(message=self.no_events_message)

        if not records:
            return NoEvents(message=self.no_events_message)
        return Events(events=records)
