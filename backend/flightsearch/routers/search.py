"""Search router: run, inspect, refine and cancel multi-source flight searches."""

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from flightsearch.dependencies import get_orchestrator
from flightsearch.errors import (
    DuplicateSearch,
    InvalidCriteria,
    SearchNotFound,
    SearchNotReady,
    UnknownSource,
)
from flightsearch.schemas.search import (
    SearchCriteria,
    SearchFilters,
    SearchOptions,
    SearchRequest,
    SearchResult,
    SortBy,
    SortOrder,
)
from flightsearch.services.progress_tracker import SearchProgress
from flightsearch.services.search_orchestrator import SearchOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


class SearchBody(BaseModel):
    criteria: SearchCriteria
    sources: list[str] | None = None
    user_id: str | None = None
    sort_by: SortBy = "price"
    sort_order: SortOrder = "asc"
    source_timeout_seconds: float | None = Field(None, gt=0)
    slider: float | None = Field(None, ge=0, le=100)


class SortBody(BaseModel):
    sort_by: SortBy = "price"
    sort_order: SortOrder = "asc"


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, SearchNotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (DuplicateSearch, SearchNotReady)):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


@router.post("", response_model=SearchResult)
async def run_search(
    body: SearchBody,
    orchestrator: SearchOrchestrator = Depends(get_orchestrator),
):
    """Search the requested sources (all registered ones by default)."""
    request = SearchRequest(criteria=body.criteria, user_id=body.user_id)
    options = SearchOptions(
        sort_by=body.sort_by,
        sort_order=body.sort_order,
        source_timeout_seconds=body.source_timeout_seconds,
        slider=body.slider,
    )
    try:
        return await orchestrator.search_flights(request, body.sources, options)
    except (InvalidCriteria, UnknownSource, DuplicateSearch) as e:
        raise _http_error(e)


@router.get("/active")
async def active_searches(orchestrator: SearchOrchestrator = Depends(get_orchestrator)):
    return [p.to_dict() for p in orchestrator.get_active_searches()]


@router.get("/sources")
async def list_sources(orchestrator: SearchOrchestrator = Depends(get_orchestrator)):
    sources = []
    for name, adapter in orchestrator.registry.items():
        stats = adapter.get_stats()
        sources.append({
            "name": name,
            "total_requests": stats.total_requests,
            "error_rate": round(stats.error_rate, 3),
            "average_latency_ms": round(stats.average_latency_ms, 1),
            "cache_hits": stats.cache_hits,
        })
    return sources


@router.get("/{search_id}/progress")
async def search_progress(search_id: str, orchestrator: SearchOrchestrator = Depends(get_orchestrator)):
    progress = orchestrator.get_search_progress(search_id)
    if progress is None:
        raise HTTPException(status_code=404, detail="Search not found")
    return progress.to_dict()


@router.post("/{search_id}/filter", response_model=SearchResult)
async def filter_results(
    search_id: str,
    filters: SearchFilters,
    orchestrator: SearchOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.filter_search_results(search_id, filters)
    except (SearchNotFound, SearchNotReady) as e:
        raise _http_error(e)


@router.post("/{search_id}/sort", response_model=SearchResult)
async def sort_results(
    search_id: str,
    body: SortBody,
    orchestrator: SearchOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.sort_search_results(search_id, body.sort_by, body.sort_order)
    except (SearchNotFound, SearchNotReady) as e:
        raise _http_error(e)


@router.delete("/{search_id}")
async def cancel_search(search_id: str, orchestrator: SearchOrchestrator = Depends(get_orchestrator)):
    if orchestrator.get_search_progress(search_id) is None:
        raise HTTPException(status_code=404, detail="Search not found")
    cancelled = await orchestrator.cancel_search(search_id)
    return {"search_id": search_id, "cancelled": cancelled}


@router.websocket("/{search_id}/ws")
async def search_progress_ws(
    websocket: WebSocket,
    search_id: str,
    orchestrator: SearchOrchestrator = Depends(get_orchestrator),
):
    """Relay progress snapshots for one search until it reaches a terminal state."""
    await websocket.accept()
    queue: asyncio.Queue[SearchProgress] = asyncio.Queue()

    def on_progress(progress: SearchProgress):
        if progress.search_id == search_id:
            queue.put_nowait(progress)

    orchestrator.tracker.add_listener(on_progress)
    try:
        current = orchestrator.get_search_progress(search_id)
        if current is None:
            await websocket.send_json({"search_id": search_id, "error": "Search not found"})
            await websocket.close(code=4404)
            return
        await websocket.send_json(current.to_dict())
        progress = current
        while not progress.is_terminal:
            progress = await queue.get()
            await websocket.send_json(progress.to_dict())
        await websocket.close()
    except WebSocketDisconnect:
        logger.debug(f"Progress socket closed by client for {search_id}")
    finally:
        orchestrator.tracker.remove_listener(on_progress)
