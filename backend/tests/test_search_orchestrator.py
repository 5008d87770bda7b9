import asyncio
import time
from datetime import date, timedelta
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from flightsearch.errors import (
    DuplicateSearch,
    InvalidCriteria,
    SearchNotFound,
    SearchNotReady,
    UnknownSource,
)
from flightsearch.schemas.search import SearchFilters, SearchOptions
from flightsearch.services.adapters.registry import AdapterRegistry
from flightsearch.services.progress_tracker import ProgressTracker, SearchStatus
from flightsearch.services.rate_limiter import RateLimiter
from flightsearch.services.response_cache import ResponseCache
from flightsearch.services.search_orchestrator import SearchOrchestrator

from factories import FakeSource, make_adapter, make_flight, make_request


def http_error(status: int) -> httpx.HTTPStatusError:
    req = httpx.Request("GET", "https://airline.invalid/search")
    return httpx.HTTPStatusError(f"HTTP {status}", request=req, response=httpx.Response(status, request=req))


def build(*sources, cache=None, **kwargs) -> SearchOrchestrator:
    limiter = RateLimiter()
    cache = cache or ResponseCache()
    registry = AdapterRegistry([make_adapter(s, limiter=limiter, cache=cache) for s in sources])
    return SearchOrchestrator(registry, ProgressTracker(), cache, **kwargs)


def priced(source: str, *amounts):
    return [make_flight(p, source=source, flight_number=f"{source[:2].upper()}{p}") for p in amounts]


async def wait_for_progress(orchestrator, search_id, check):
    for _ in range(200):
        progress = orchestrator.get_search_progress(search_id)
        if progress is not None and check(progress):
            return progress
        await asyncio.sleep(0.01)
    raise AssertionError(f"progress for {search_id} never matched")


def test_two_sources_merge_into_price_order():
    alpha = FakeSource("alpha", flights=priced("alpha", 450, 300, 900))
    beta = FakeSource("beta", flights=priced("beta", 600, 400))
    orchestrator = build(alpha, beta)
    request = make_request()

    result = asyncio.run(orchestrator.search_flights(request, ["alpha", "beta"]))

    assert result.status == "completed"
    assert [f.total_price for f in result.results] == [300, 400, 450, 600, 900]
    assert result.total_results == 5
    assert sorted(result.sources) == ["alpha", "beta"]
    assert result.errors == []
    assert all(0 <= f.score <= 100 for f in result.results)

    progress = orchestrator.get_search_progress(request.request_id)
    assert progress.status == SearchStatus.COMPLETED
    assert progress.percent == 100.0
    assert progress.result_count == 5


def test_defaults_to_every_registered_source():
    orchestrator = build(FakeSource("alpha", flights=priced("alpha", 300)), FakeSource("beta", flights=priced("beta", 400)))
    result = asyncio.run(orchestrator.search_flights(make_request()))
    assert sorted(result.sources) == ["alpha", "beta"]


def test_duplicate_itineraries_collapse_to_cheapest():
    alpha = FakeSource("alpha", flights=[make_flight(500, flight_number="UA100", airline="UA", source="alpha")])
    beta = FakeSource("beta", flights=[make_flight(470, flight_number="UA100", airline="UA", source="beta")])
    result = asyncio.run(build(alpha, beta).search_flights(make_request()))
    assert [(f.source, f.total_price) for f in result.results] == [("beta", 470)]


def test_slow_source_times_out_without_failing_search():
    fast = FakeSource("fast", flights=priced("fast", 300, 350))
    slow = FakeSource("slow", flights=priced("slow", 100), delay=2.0)
    orchestrator = build(fast, slow)

    result = asyncio.run(
        orchestrator.search_flights(make_request(), options=SearchOptions(source_timeout_seconds=0.1))
    )

    assert result.status == "completed"
    assert [f.total_price for f in result.results] == [300, 350]
    assert result.sources == ["fast"]
    assert [(e.source, e.code, e.retryable) for e in result.errors] == [("slow", "TIMEOUT", True)]


def test_every_source_failing_marks_search_failed():
    orchestrator = build(
        FakeSource("alpha", errors=[http_error(400)]),
        FakeSource("beta", errors=[http_error(404)]),
    )
    request = make_request()

    result = asyncio.run(orchestrator.search_flights(request))

    assert result.status == "failed"
    assert result.results == []
    assert sorted(e.code for e in result.errors) == ["HTTP_400", "HTTP_404"]
    assert orchestrator.get_search_progress(request.request_id).status == SearchStatus.FAILED


def test_cancel_discards_late_results():
    fast = FakeSource("fast", flights=priced("fast", 300))
    slow = FakeSource("slow", flights=priced("slow", 200), delay=0.5)
    orchestrator = build(fast, slow)
    request = make_request()

    async def scenario():
        task = asyncio.create_task(orchestrator.search_flights(request))
        await wait_for_progress(orchestrator, request.request_id, lambda p: p.completed_sources)
        cancelled = await orchestrator.cancel_search(request.request_id)
        result = await task
        await asyncio.sleep(0.6)
        return cancelled, result

    cancelled, result = asyncio.run(scenario())

    assert cancelled is True
    assert result.status == "cancelled"
    assert [f.total_price for f in result.results] == [300]
    progress = orchestrator.get_search_progress(request.request_id)
    assert progress.status == SearchStatus.CANCELLED
    assert progress.completed_sources == ["fast"]
    assert progress.result_count == 1
    assert progress.percent == 50.0


def test_cancel_unknown_or_finished_search_returns_false():
    orchestrator = build(FakeSource("alpha", flights=priced("alpha", 300)))
    request = make_request()

    async def scenario():
        await orchestrator.search_flights(request)
        return await orchestrator.cancel_search(request.request_id), await orchestrator.cancel_search("nope")

    assert asyncio.run(scenario()) == (False, False)


def test_excess_searches_wait_for_a_slot():
    source = FakeSource("alpha", flights=priced("alpha", 300), delay=0.2)
    orchestrator = build(source, max_concurrent_searches=1)
    first = make_request(origin="SFO")
    second = make_request(origin="SEA")

    async def scenario():
        t1 = asyncio.create_task(orchestrator.search_flights(first))
        t2 = asyncio.create_task(orchestrator.search_flights(second))
        await wait_for_progress(orchestrator, first.request_id, lambda p: p.status == SearchStatus.SEARCHING)
        queued = orchestrator.get_search_progress(second.request_id).status
        active = len(orchestrator.get_active_searches())
        return queued, active, await t1, await t2

    queued, active, r1, r2 = asyncio.run(scenario())
    assert queued == SearchStatus.PENDING
    assert active == 2
    assert r1.status == r2.status == "completed"


def test_cancel_while_queued_never_calls_source():
    source = FakeSource("alpha", flights=priced("alpha", 300), delay=0.2)
    orchestrator = build(source, max_concurrent_searches=1)
    first = make_request(origin="SFO")
    second = make_request(origin="SEA")

    async def scenario():
        t1 = asyncio.create_task(orchestrator.search_flights(first))
        t2 = asyncio.create_task(orchestrator.search_flights(second))
        await wait_for_progress(orchestrator, second.request_id, lambda p: p.status == SearchStatus.PENDING)
        await orchestrator.cancel_search(second.request_id)
        return await t1, await t2

    r1, r2 = asyncio.run(scenario())
    assert r1.status == "completed"
    assert r2.status == "cancelled"
    assert r2.results == []
    assert source.calls == 1


def test_orchestration_errors_raised_before_any_call():
    source = FakeSource("alpha", flights=priced("alpha", 300))
    orchestrator = build(source)

    with pytest.raises(UnknownSource):
        asyncio.run(orchestrator.search_flights(make_request(), ["alpha", "zulu"]))
    with pytest.raises(InvalidCriteria):
        asyncio.run(orchestrator.search_flights(make_request(), []))
    with pytest.raises(InvalidCriteria):
        asyncio.run(orchestrator.search_flights(make_request(), ["alpha", "ALPHA"]))
    with pytest.raises(InvalidCriteria):
        past = make_request(departure_date=date.today() - timedelta(days=1))
        asyncio.run(orchestrator.search_flights(past))

    assert source.calls == 0
    assert orchestrator.get_active_searches() == []


def test_same_search_id_cannot_run_twice():
    orchestrator = build(FakeSource("alpha", flights=priced("alpha", 300), delay=0.2))
    request = make_request()

    async def scenario():
        task = asyncio.create_task(orchestrator.search_flights(request))
        await wait_for_progress(orchestrator, request.request_id, lambda p: True)
        with pytest.raises(DuplicateSearch):
            await orchestrator.search_flights(request)
        return await task

    assert asyncio.run(scenario()).status == "completed"


def test_filter_and_sort_reuse_stored_results():
    alpha = FakeSource(
        "alpha",
        flights=[make_flight(300, duration=500, source="alpha"), make_flight(700, duration=200, source="alpha")],
    )
    beta = FakeSource("beta", flights=[make_flight(450, duration=350, airline="DL", source="beta")])
    orchestrator = build(alpha, beta)
    request = make_request()

    async def scenario():
        await orchestrator.search_flights(request)
        filtered = await orchestrator.filter_search_results(request.request_id, SearchFilters(max_price=500))
        airline = await orchestrator.filter_search_results(request.request_id, SearchFilters(airlines=["DL"]))
        by_duration = await orchestrator.sort_search_results(request.request_id, "duration")
        by_price_desc = await orchestrator.sort_search_results(request.request_id, "price", "desc")
        return filtered, airline, by_duration, by_price_desc

    filtered, airline, by_duration, by_price_desc = asyncio.run(scenario())

    assert [f.total_price for f in filtered.results] == [300, 450]
    assert [f.source for f in airline.results] == ["beta"]
    assert [f.duration_minutes for f in by_duration.results] == [200, 350, 500]
    assert [f.total_price for f in by_price_desc.results] == [700, 450, 300]
    assert alpha.calls == 1
    assert beta.calls == 1


def test_filter_unknown_or_unfinished_search():
    orchestrator = build(FakeSource("alpha", flights=priced("alpha", 300), delay=0.2))
    request = make_request()

    async def scenario():
        task = asyncio.create_task(orchestrator.search_flights(request))
        await wait_for_progress(orchestrator, request.request_id, lambda p: p.status == SearchStatus.SEARCHING)
        with pytest.raises(SearchNotReady):
            await orchestrator.filter_search_results(request.request_id, SearchFilters())
        with pytest.raises(SearchNotFound):
            await orchestrator.sort_search_results("missing")
        await task

    asyncio.run(scenario())


def test_health_check_statuses():
    healthy = build(FakeSource("alpha"), FakeSource("beta"))
    degraded = build(FakeSource("alpha"), FakeSource("beta", errors=[http_error(500)]))
    unhealthy = build(FakeSource("alpha", errors=[http_error(500)]))

    report = asyncio.run(healthy.health_check())
    assert report["status"] == "healthy"
    assert report["cache_health"] is True
    assert report["active_searches"] == 0
    assert report["adapter_health"]["alpha"]["status"] == "healthy"

    report = asyncio.run(degraded.health_check())
    assert report["status"] == "degraded"
    assert report["adapter_health"]["beta"]["status"] == "unhealthy"

    assert asyncio.run(unhealthy.health_check())["status"] == "unhealthy"


def test_unhealthy_cache_degrades_health():
    cache = ResponseCache()
    cache.health_check = AsyncMock(return_value=False)
    report = asyncio.run(build(FakeSource("alpha"), cache=cache).health_check())
    assert report["status"] == "degraded"
    assert report["cache_health"] is False


def test_slow_health_check_times_out():
    orchestrator = build(FakeSource("alpha", delay=1.0), health_check_timeout=0.05)
    assert asyncio.run(orchestrator.health_check())["status"] == "unhealthy"


def test_close_cancels_live_searches_and_closes_clients():
    source = FakeSource("alpha", flights=priced("alpha", 300), delay=0.5)
    orchestrator = build(source)
    request = make_request()

    async def scenario():
        task = asyncio.create_task(orchestrator.search_flights(request))
        await wait_for_progress(orchestrator, request.request_id, lambda p: p.status == SearchStatus.SEARCHING)
        await orchestrator.close()
        return await task

    assert asyncio.run(scenario()).status == "cancelled"
    assert source.closed is True


def test_listener_can_cancel_search_from_progress_update():
    fast = FakeSource("fast", flights=priced("fast", 300))
    slow = FakeSource("slow", flights=priced("slow", 200), delay=0.5)
    orchestrator = build(fast, slow)
    request = make_request()

    async def cancel_on_first_source(progress):
        if progress.status == SearchStatus.SEARCHING and progress.completed_sources:
            await orchestrator.cancel_search(progress.search_id)

    orchestrator.tracker.add_listener(cancel_on_first_source)
    result = asyncio.run(asyncio.wait_for(orchestrator.search_flights(request), 3))

    assert result.status == "cancelled"
    assert [f.total_price for f in result.results] == [300]
    assert orchestrator.get_search_progress(request.request_id).status == SearchStatus.CANCELLED


def test_slow_listener_does_not_stall_other_searches():
    orchestrator = build(FakeSource("alpha", flights=priced("alpha", 300)))
    slow_request = make_request(origin="SFO")
    fast_request = make_request(origin="SEA")

    async def sluggish(progress):
        if progress.search_id == slow_request.request_id and progress.status == SearchStatus.PENDING:
            await asyncio.sleep(1)

    orchestrator.tracker.add_listener(sluggish)

    async def scenario():
        slow_task = asyncio.create_task(orchestrator.search_flights(slow_request))
        await asyncio.sleep(0)
        started = time.monotonic()
        fast = await orchestrator.search_flights(fast_request)
        elapsed = time.monotonic() - started
        return fast, elapsed, await slow_task

    fast, elapsed, slow = asyncio.run(scenario())
    assert fast.status == slow.status == "completed"
    assert elapsed < 0.5


def test_aggregation_error_leaves_search_failed_and_id_reusable():
    orchestrator = build(FakeSource("alpha", flights=priced("alpha", 300)))
    request = make_request()

    with patch.object(orchestrator, "_aggregate", side_effect=RuntimeError("scoring blew up")):
        with pytest.raises(RuntimeError):
            asyncio.run(orchestrator.search_flights(request))

    assert orchestrator.get_search_progress(request.request_id).status == SearchStatus.FAILED
    assert orchestrator.get_active_searches() == []
    assert asyncio.run(orchestrator.search_flights(request)).status == "completed"


def test_fan_out_error_leaves_search_cancelled():
    orchestrator = build(FakeSource("alpha", flights=priced("alpha", 300)))
    request = make_request()

    with patch.object(orchestrator, "_fan_out", side_effect=RuntimeError("task spawn failed")):
        with pytest.raises(RuntimeError):
            asyncio.run(orchestrator.search_flights(request))

    assert orchestrator.get_search_progress(request.request_id).status == SearchStatus.CANCELLED
    assert orchestrator.get_active_searches() == []


def test_slider_reweights_scores():
    # Cheap but slow with a stop versus pricier nonstop
    alpha = FakeSource(
        "alpha",
        flights=[
            make_flight(200, duration=600, layovers=1, source="alpha"),
            make_flight(400, duration=300, source="alpha"),
        ],
    )

    def best_by_score(slider):
        orchestrator = build(alpha)
        options = SearchOptions(sort_by="score", sort_order="desc", slider=slider)
        result = asyncio.run(orchestrator.search_flights(make_request(), options=options))
        return result.results[0].total_price

    assert best_by_score(0) == 200
    assert best_by_score(100) == 400


def test_health_check_reports_cache_stats():
    cache = ResponseCache()
    orchestrator = build(FakeSource("alpha", flights=priced("alpha", 300)), cache=cache)

    async def scenario():
        await orchestrator.search_flights(make_request())
        return await orchestrator.health_check()

    report = asyncio.run(scenario())
    assert report["cache_stats"] == {"backend": "memory", "total_keys": 1, "memory_usage": None}
