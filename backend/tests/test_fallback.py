import asyncio
from datetime import datetime, timedelta, timezone

from bridgewatch.cache import CacheStore
from bridgewatch.errors import PersistenceError
from bridgewatch.fallback import (
    SNAPSHOT_KEY,
    UNAVAILABLE_ERROR,
    FallbackChain,
    build_current_record,
    static_default_records,
)
from bridgewatch.models import (
    BridgeRecord,
    DirectionalReading,
    OverallStatus,
    Snapshot,
    TrafficData,
    TrafficDirections,
    TrafficReport,
    TrafficStatus,
)

T0 = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAggregator:
    def __init__(self, reports=None, error: Exception | None = None, on_call=None):
        self._reports = list(reports or [])
        self._error = error
        self._on_call = on_call
        self.calls = 0

    async def aggregate(self) -> TrafficReport:
        self.calls += 1
        await asyncio.sleep(0)
        if self._on_call is not None:
            self._on_call()
        if self._error is not None:
            raise self._error
        return self._reports[min(self.calls, len(self._reports)) - 1]


class FakeHistory:
    def __init__(self, records=None, fail: bool = False):
        self._records = list(records or [])
        self._fail = fail
        self.appended: list[BridgeRecord] = []
        self.query_limits: list[int] = []

    def append(self, record):
        if self._fail:
            raise PersistenceError("history offline")
        self.appended.append(record)
        return record

    def query_recent(self, statuses=None, since=None, limit=19):
        if self._fail:
            raise PersistenceError("history offline")
        self.query_limits.append(limit)
        return self._records[:limit]


def _report(east=TrafficStatus.OPEN, west=TrafficStatus.OPEN, east_speed=50.0, west_speed=52.0, at=T0):
    directions = TrafficDirections(
        eastbound=DirectionalReading(status=east, details="east", average_speed=east_speed, description="E"),
        westbound=DirectionalReading(status=west, details="west", average_speed=west_speed, description="W"),
    )
    overall_status = TrafficStatus.OPEN if east == west == TrafficStatus.OPEN else TrafficStatus.CLOSED
    return TrafficReport(
        directions=directions,
        overall_status=OverallStatus(status=overall_status, details=f"overall {overall_status.value}"),
        timestamp=at,
    )


def _history(count: int) -> list[BridgeRecord]:
    return [
        BridgeRecord(
            id=f"hist-{index}",
            status=TrafficStatus.OPEN,
            timestamp=T0 - timedelta(minutes=10 * (index + 1)),
            description="earlier reading",
            average_speed=45,
        )
        for index in range(count)
    ]


def _snapshot(description: str = "cached reading", at=T0 - timedelta(hours=1)) -> Snapshot:
    report = _report(at=at)
    record = BridgeRecord(id="cached-1", status=TrafficStatus.OPEN, timestamp=at, description=description)
    return Snapshot(
        records=[record],
        timestamp=at,
        traffic_data=TrafficData(directions=report.directions, overall_status=report.overall_status),
    )


def _chain(aggregator, history):
    clock = FakeClock()
    cache = CacheStore(clock=clock)
    return FallbackChain(cache, aggregator, history, ttl_seconds=600, stale_seconds=300), cache, clock


def test_cold_cache_live_success_returns_twenty_records_current_first():
    aggregator = FakeAggregator([_report(east_speed=33, west_speed=34)])
    history = FakeHistory(_history(19))
    chain, cache, clock = _chain(aggregator, history)

    response = asyncio.run(chain.get_status())

    assert response.success is True
    assert response.real_time is True
    assert response.cached is None and response.fallback is None
    assert len(response.data) == 20
    current = response.data[0]
    assert current.id == f"current_{int(T0.timestamp() * 1000)}"
    assert current.status == TrafficStatus.OPEN
    assert current.description == "overall OPEN"
    assert current.average_speed == 34
    assert history.appended == [current]
    assert history.query_limits == [19]
    assert response.traffic_data.overall_status.status == TrafficStatus.OPEN
    assert response.timestamp == T0

    cached = cache.get(SNAPSHOT_KEY)
    assert cached.records == response.data
    clock.advance(300)
    assert cache.get_with_stale(SNAPSHOT_KEY).is_stale is False
    clock.advance(1)
    assert cache.get_with_stale(SNAPSHOT_KEY).is_stale is True
    clock.advance(300)
    assert cache.get(SNAPSHOT_KEY) is None


def test_fresh_cache_hit_skips_live_fetch():
    aggregator = FakeAggregator([_report()])
    chain, cache, _ = _chain(aggregator, FakeHistory())
    cache.set(SNAPSHOT_KEY, _snapshot(), 600, 300)

    response = asyncio.run(chain.get_status())

    assert response.cached is True
    assert response.stale is None
    assert response.data[0].description == "cached reading"
    assert aggregator.calls == 0


def test_stale_hit_answers_immediately_and_refreshes_in_background():
    fresh_at = T0 + timedelta(minutes=6)
    aggregator = FakeAggregator([_report(west=TrafficStatus.CLOSED, at=fresh_at)])
    history = FakeHistory(_history(3))
    chain, cache, clock = _chain(aggregator, history)
    cache.set(SNAPSHOT_KEY, _snapshot(), 600, 300)
    clock.advance(301)

    async def scenario():
        response = await chain.get_status()
        calls_before_refresh = aggregator.calls
        await chain.drain()
        return response, calls_before_refresh

    response, calls_before_refresh = asyncio.run(scenario())

    assert response.cached is True
    assert response.stale is True
    assert response.data[0].description == "cached reading"
    assert calls_before_refresh == 0
    assert aggregator.calls == 1

    lookup = cache.get_with_stale(SNAPSHOT_KEY)
    assert lookup.is_stale is False
    assert lookup.data.timestamp == fresh_at
    assert lookup.data.records[0].status == TrafficStatus.CLOSED
    assert len(lookup.data.records) == 4


def test_repeated_stale_hits_share_one_background_refresh():
    aggregator = FakeAggregator([_report()])
    chain, cache, clock = _chain(aggregator, FakeHistory())
    cache.set(SNAPSHOT_KEY, _snapshot(), 600, 300)
    clock.advance(400)

    async def scenario():
        first = await chain.get_status()
        second = await chain.get_status()
        await chain.drain()
        return first, second

    first, second = asyncio.run(scenario())

    assert first.stale is True and second.stale is True
    assert aggregator.calls == 1


def test_background_refresh_failure_keeps_stale_snapshot():
    aggregator = FakeAggregator(error=RuntimeError("aggregator crashed"))
    chain, cache, clock = _chain(aggregator, FakeHistory())
    cache.set(SNAPSHOT_KEY, _snapshot(), 600, 300)
    clock.advance(400)

    async def scenario():
        response = await chain.get_status()
        await chain.drain()
        return response

    response = asyncio.run(scenario())

    assert response.stale is True
    assert aggregator.calls == 1
    lookup = cache.get_with_stale(SNAPSHOT_KEY)
    assert lookup.data.records[0].description == "cached reading"
    assert lookup.is_stale is True


def test_total_failure_serves_static_defaults():
    aggregator = FakeAggregator(error=RuntimeError("traffic source down"))
    chain, cache, _ = _chain(aggregator, FakeHistory(fail=True))

    response = asyncio.run(chain.get_status())

    assert response.success is True
    assert response.fallback is True
    assert response.cached is None
    assert response.error == UNAVAILABLE_ERROR
    assert [record.id for record in response.data] == [record.id for record in static_default_records()]
    assert [record.status for record in response.data] == [
        TrafficStatus.OPEN,
        TrafficStatus.DELAYED,
        TrafficStatus.OPEN,
    ]
    assert cache.get(SNAPSHOT_KEY) is None


def test_live_failure_serves_snapshot_written_meanwhile():
    chain_holder = {}

    def _concurrent_write():
        chain_holder["cache"].set(SNAPSHOT_KEY, _snapshot("written by another request"), 600, 300)

    aggregator = FakeAggregator(error=RuntimeError("traffic source down"), on_call=_concurrent_write)
    chain, cache, _ = _chain(aggregator, FakeHistory())
    chain_holder["cache"] = cache

    response = asyncio.run(chain.get_status())

    assert response.fallback is True
    assert response.cached is True
    assert response.error is None
    assert response.data[0].description == "written by another request"


def test_history_outage_uses_static_history_slice():
    aggregator = FakeAggregator([_report()])
    chain, _, _ = _chain(aggregator, FakeHistory(fail=True))

    response = asyncio.run(chain.get_status())

    assert response.real_time is True
    assert len(response.data) == 3
    assert response.data[0].id.startswith("current_")
    assert [record.id for record in response.data[1:]] == [record.id for record in static_default_records()[1:]]


def test_snapshot_never_exceeds_twenty_records():
    chain, _, _ = _chain(FakeAggregator([_report()]), FakeHistory(_history(30)))

    response = asyncio.run(chain.get_status())

    assert len(response.data) == 20


def test_concurrent_cold_requests_share_one_aggregation():
    aggregator = FakeAggregator([_report()])
    chain, _, _ = _chain(aggregator, FakeHistory(_history(2)))

    async def scenario():
        return await asyncio.gather(*(chain.get_status() for _ in range(5)))

    responses = asyncio.run(scenario())

    assert aggregator.calls == 1
    assert all(response.real_time for response in responses)
    assert len({response.data[0].id for response in responses}) == 1


def test_current_record_speed_rounds_half_up():
    assert build_current_record(_report(east_speed=33, west_speed=34)).average_speed == 34
    assert build_current_record(_report(east_speed=0, west_speed=0)).average_speed == 0
    assert build_current_record(_report(east_speed=40, west_speed=44.8)).average_speed == 42


def test_clear_during_background_refresh_is_not_overwritten():
    holder = {}
    aggregator = FakeAggregator([_report()], on_call=lambda: holder["cache"].clear())
    chain, cache, clock = _chain(aggregator, FakeHistory())
    holder["cache"] = cache
    cache.set(SNAPSHOT_KEY, _snapshot(), 600, 300)
    clock.advance(400)

    async def scenario():
        response = await chain.get_status()
        await chain.drain()
        return response

    response = asyncio.run(scenario())

    assert response.stale is True
    assert aggregator.calls == 1
    assert cache.get(SNAPSHOT_KEY) is None
    assert cache.in_flight(SNAPSHOT_KEY) is False


def test_cold_miss_during_background_refresh_shares_the_aggregation():
    fresh_at = T0 + timedelta(minutes=8)
    aggregator = FakeAggregator([_report(at=fresh_at)])
    chain, cache, clock = _chain(aggregator, FakeHistory())
    cache.set(SNAPSHOT_KEY, _snapshot(), 600, 300)
    clock.advance(400)

    async def scenario():
        stale = await chain.get_status()
        # The stale entry expires before the refresh has finished.
        clock.advance(201)
        cold = await chain.get_status()
        await chain.drain()
        return stale, cold

    stale, cold = asyncio.run(scenario())

    assert stale.stale is True
    assert cold.real_time is True
    assert cold.timestamp == fresh_at
    assert aggregator.calls == 1
    assert cache.get(SNAPSHOT_KEY).timestamp == fresh_at
