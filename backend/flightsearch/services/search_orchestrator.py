"""Search orchestrator: fans one flight search out to many airline sources."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import date

from flightsearch.errors import (
    InvalidCriteria,
    SearchNotFound,
    SearchNotReady,
    SourceError,
    SourceTimeout,
)
from flightsearch.schemas.flight import FlightResult
from flightsearch.schemas.search import (
    SearchFilters,
    SearchOptions,
    SearchRequest,
    SearchResult,
    SortBy,
    SortOrder,
    SourceErrorInfo,
)
from flightsearch.services.adapters.base import SearchAdapter
from flightsearch.services.adapters.registry import AdapterRegistry
from flightsearch.services.aggregation import dedupe_flights, filter_flights, sort_flights
from flightsearch.services.progress_tracker import ProgressTracker, SearchProgress, SearchStatus
from flightsearch.services.response_cache import ResponseCache
from flightsearch.services.scoring_engine import Weights, score_flights, slider_to_weights

logger = logging.getLogger(__name__)


@dataclass
class SourceOutcome:
    """Settled result of one source within one search."""

    source: str
    success: bool
    flights: list[FlightResult] = field(default_factory=list)
    error: str | None = None
    error_code: str | None = None
    retryable: bool = False
    elapsed_ms: int = 0
    cached: bool = False

    @classmethod
    def failure(cls, source: str, error: SourceError, elapsed_ms: int) -> "SourceOutcome":
        return cls(
            source=source,
            success=False,
            error=error.message,
            error_code=error.code,
            retryable=error.retryable,
            elapsed_ms=elapsed_ms,
        )

    def error_info(self) -> SourceErrorInfo:
        return SourceErrorInfo(
            source=self.source,
            message=self.error or "Unknown error",
            code=self.error_code or "SOURCE_ERROR",
            retryable=self.retryable,
        )


class SearchOrchestrator:
    """Coordinates concurrent searches across registered sources.

    A process-wide semaphore bounds how many searches fan out at once; extra
    searches wait for a slot. Inside a search every source runs as its own
    task with its own deadline, so a slow source only fails itself.
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        tracker: ProgressTracker | None = None,
        cache: ResponseCache | None = None,
        max_concurrent_searches: int = 5,
        search_timeout: float = 30.0,
        health_check_timeout: float = 10.0,
        weights: Weights | None = None,
    ):
        self.registry = registry
        self.tracker = tracker or ProgressTracker()
        self.cache = cache
        self.search_timeout = search_timeout
        self.health_check_timeout = health_check_timeout
        self.weights = weights or Weights()
        self._slots = asyncio.Semaphore(max_concurrent_searches)

    async def search_flights(
        self,
        request: SearchRequest,
        source_names: list[str] | None = None,
        options: SearchOptions | None = None,
    ) -> SearchResult:
        """
        Search every requested source and aggregate the outcomes.

        Orchestration errors (bad criteria, unknown or duplicate sources, a
        search id already running) are raised before any network call.
        Source failures never raise; they are returned in ``errors``.
        """
        options = options or SearchOptions()
        names = source_names if source_names is not None else self.registry.names()
        adapters = self._resolve_sources(request, names)
        timeout = options.source_timeout_seconds or self.search_timeout
        search_id = request.request_id
        start_time = time.monotonic()

        await self.tracker.create(search_id, len(adapters))
        c = request.criteria
        logger.info(
            f"Search {search_id} queued: {c.origin}->{c.destination} on {c.departure_date} "
            f"across {', '.join(a.name for a in adapters)}"
        )

        try:
            return await self._run_search(search_id, request, adapters, timeout, options, start_time)
        except (Exception, asyncio.CancelledError):
            await self._abandon(search_id)
            raise

    async def _run_search(
        self,
        search_id: str,
        request: SearchRequest,
        adapters: list[SearchAdapter],
        timeout: float,
        options: SearchOptions,
        start_time: float,
    ) -> SearchResult:
        async with self._slots:
            if not await self.tracker.transition(search_id, SearchStatus.SEARCHING):
                logger.info(f"Search {search_id} cancelled before it started")
                return self._build_result(search_id, SearchStatus.CANCELLED, [], [], start_time, options)
            outcomes, cancelled = await self._fan_out(search_id, request, adapters, timeout)

        if cancelled or not await self.tracker.transition(search_id, SearchStatus.AGGREGATING):
            logger.info(f"Search {search_id} cancelled with {len(outcomes)}/{len(adapters)} sources settled")
            # Only outcomes settled before the cancel are kept
            results = self._aggregate(outcomes, options)
            return self._build_result(search_id, SearchStatus.CANCELLED, results, outcomes, start_time, options)

        successes = [o for o in outcomes if o.success]
        results = self._aggregate(outcomes, options)

        status = SearchStatus.COMPLETED if successes else SearchStatus.FAILED
        await self.tracker.attach_results(search_id, results)
        await self.tracker.transition(search_id, status)

        result = self._build_result(search_id, status, results, outcomes, start_time, options)
        if status == SearchStatus.FAILED:
            logger.warning(f"Flight search failed: {search_id}, all {len(adapters)} sources failed")
        else:
            logger.info(
                f"Flight search completed: {search_id}, {result.total_results} results from "
                f"{len(result.sources)}/{len(adapters)} sources in {result.search_time_ms}ms"
            )
        return result

    async def filter_search_results(self, search_id: str, filters: SearchFilters) -> SearchResult:
        """Apply filters to a finished search's stored results; sources are not re-queried."""
        progress, results, sources = self._stored_results(search_id)
        filtered = filter_flights(results, filters)
        logger.debug(f"Filtered {search_id}: {len(results)} -> {len(filtered)}")
        return SearchResult(
            search_id=search_id,
            status=progress.status.value,
            results=filtered,
            total_results=len(filtered),
            sources=sources,
            cached=True,
            errors=progress.errors,
            filters=filters,
        )

    async def sort_search_results(
        self,
        search_id: str,
        sort_by: SortBy = "price",
        sort_order: SortOrder = "asc",
    ) -> SearchResult:
        progress, results, sources = self._stored_results(search_id)
        ordered = sort_flights(results, sort_by, sort_order)
        return SearchResult(
            search_id=search_id,
            status=progress.status.value,
            results=ordered,
            total_results=len(ordered),
            sources=sources,
            cached=True,
            errors=progress.errors,
            sort_by=sort_by,
            sort_order=sort_order,
        )

    def get_search_progress(self, search_id: str) -> SearchProgress | None:
        return self.tracker.get(search_id)

    def get_active_searches(self) -> list[SearchProgress]:
        return self.tracker.active()

    async def cancel_search(self, search_id: str) -> bool:
        """Cancel a live search. Source tasks stop at their next suspension point."""
        cancelled = await self.tracker.transition(search_id, SearchStatus.CANCELLED)
        if cancelled:
            logger.info(f"Search cancelled: {search_id}")
        return cancelled

    async def health_check(self) -> dict:
        """Aggregate adapter and cache health into healthy / degraded / unhealthy."""
        items = self.registry.items()

        async def check(adapter: SearchAdapter) -> bool:
            try:
                return await asyncio.wait_for(adapter.health_check(), self.health_check_timeout)
            except Exception as e:
                logger.warning(f"Health check for {adapter.name} failed: {e}")
                return False

        checks = await asyncio.gather(*(check(adapter) for _, adapter in items))

        adapter_health = {}
        for (name, adapter), healthy in zip(items, checks):
            stats = adapter.get_stats()
            adapter_health[name] = {
                "status": "healthy" if healthy else "unhealthy",
                "error_rate": round(stats.error_rate, 3),
                "average_latency_ms": round(stats.average_latency_ms, 1),
                "total_requests": stats.total_requests,
                "last_success_at": stats.last_success_at.isoformat() if stats.last_success_at else None,
                "last_error": stats.last_error,
            }

        cache_health = True
        if self.cache is not None:
            try:
                cache_health = await self.cache.health_check()
            except Exception as e:
                logger.error(f"Cache health check failed: {e}")
                cache_health = False
            cache_stats = await self.cache.get_stats()
        else:
            cache_stats = None

        healthy_count = sum(1 for ok in checks if ok)
        if healthy_count == 0:
            status = "unhealthy"
        elif healthy_count < len(items) or not cache_health:
            status = "degraded"
        else:
            status = "healthy"

        return {
            "status": status,
            "active_searches": len(self.tracker.active()),
            "adapter_health": adapter_health,
            "cache_health": cache_health,
            "cache_stats": cache_stats,
        }

    async def close(self):
        """Cancel live searches and release adapter resources."""
        for progress in self.tracker.active():
            await self.cancel_search(progress.search_id)
        await self.registry.close_all()

    # --- Private helpers ---

    async def _abandon(self, search_id: str):
        """Force a search that raised into a terminal state so its id can be reused."""
        # FAILED is only reachable from AGGREGATING; earlier states cancel
        if await self.tracker.transition(search_id, SearchStatus.FAILED):
            logger.error(f"Search {search_id} failed during aggregation")
        elif await self.tracker.transition(search_id, SearchStatus.CANCELLED):
            logger.warning(f"Search {search_id} aborted before aggregation")

    def _resolve_sources(self, request: SearchRequest, names: list[str]) -> list[SearchAdapter]:
        if not names:
            raise InvalidCriteria("At least one source is required")
        lowered = [n.lower() for n in names]
        if len(set(lowered)) != len(lowered):
            raise InvalidCriteria("Duplicate source names in request")
        if request.criteria.departure_date < date.today():
            raise InvalidCriteria("Departure date must not be in the past")
        return [self.registry.get(name) for name in names]

    def _aggregate(self, outcomes: list[SourceOutcome], options: SearchOptions) -> list[FlightResult]:
        merged = dedupe_flights([f for o in outcomes if o.success for f in o.flights])
        weights = slider_to_weights(options.slider) if options.slider is not None else self.weights
        return sort_flights(score_flights(merged, weights), options.sort_by, options.sort_order)

    def _stored_results(self, search_id: str) -> tuple[SearchProgress, list[FlightResult], list[str]]:
        entry = self.tracker.get_results(search_id)
        if entry is None:
            raise SearchNotFound(search_id)
        progress, results, sources = entry
        if results is None or not progress.is_terminal:
            raise SearchNotReady(search_id, progress.status.value)
        return progress, results, sources

    async def _fan_out(
        self,
        search_id: str,
        request: SearchRequest,
        adapters: list[SearchAdapter],
        timeout: float,
    ) -> tuple[list[SourceOutcome], bool]:
        """Run one task per source until all settle or the search is cancelled."""
        cancel_event = self.tracker.cancel_event(search_id)
        pending = {
            asyncio.create_task(
                self._search_source(adapter, request, cancel_event, timeout),
                name=f"search:{search_id}:{adapter.name}",
            )
            for adapter in adapters
        }
        cancel_waiter = asyncio.create_task(cancel_event.wait())
        outcomes: list[SourceOutcome] = []

        try:
            while pending and not cancel_event.is_set():
                done, _ = await asyncio.wait(
                    pending | {cancel_waiter}, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    if task is cancel_waiter:
                        continue
                    pending.discard(task)
                    outcome = task.result()
                    error = None if outcome.success else outcome.error_info()
                    # Rejected once the search is cancelled
                    accepted = await self.tracker.record_outcome(
                        search_id, outcome.source, len(outcome.flights), error
                    )
                    if accepted:
                        outcomes.append(outcome)
        finally:
            cancel_waiter.cancel()
            for task in pending:
                task.cancel()

        return outcomes, cancel_event.is_set()

    async def _search_source(
        self,
        adapter: SearchAdapter,
        request: SearchRequest,
        cancel_event: asyncio.Event,
        timeout: float,
    ) -> SourceOutcome:
        """Search one source. Never raises except on task cancellation."""
        started = time.monotonic()
        try:
            response = await asyncio.wait_for(
                adapter.search(request, cancel_event=cancel_event), timeout
            )
            return SourceOutcome(
                source=adapter.name,
                success=True,
                flights=response.flights,
                elapsed_ms=self._elapsed_ms(started),
                cached=response.cached,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Source {adapter.name} timed out after {timeout}s for {request.request_id}")
            error = SourceTimeout(adapter.name, timeout)
        except SourceError as e:
            error = e
        except Exception as e:
            logger.error(f"Unexpected error from {adapter.name}: {e}", exc_info=True)
            error = SourceError(adapter.name, str(e) or type(e).__name__, code="INTERNAL_ERROR")
        return SourceOutcome.failure(adapter.name, error, self._elapsed_ms(started))

    def _build_result(
        self,
        search_id: str,
        status: SearchStatus,
        results: list[FlightResult],
        outcomes: list[SourceOutcome],
        start_time: float,
        options: SearchOptions,
    ) -> SearchResult:
        successes = [o for o in outcomes if o.success]
        return SearchResult(
            search_id=search_id,
            status=status.value,
            results=results,
            total_results=len(results),
            search_time_ms=self._elapsed_ms(start_time),
            sources=[o.source for o in successes],
            cached=any(o.cached for o in successes),
            errors=[o.error_info() for o in outcomes if not o.success],
            sort_by=options.sort_by,
            sort_order=options.sort_order,
        )

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)
