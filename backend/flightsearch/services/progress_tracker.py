"""In-memory search progress state machine keyed by search id."""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Union

from flightsearch.errors import DuplicateSearch
from flightsearch.schemas.flight import FlightResult
from flightsearch.schemas.search import SourceErrorInfo

logger = logging.getLogger(__name__)


class SearchStatus(str, Enum):
    PENDING = "pending"
    SEARCHING = "searching"
    AGGREGATING = "aggregating"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({SearchStatus.COMPLETED, SearchStatus.FAILED, SearchStatus.CANCELLED})

ALLOWED_TRANSITIONS = {
    SearchStatus.PENDING: {SearchStatus.SEARCHING, SearchStatus.CANCELLED},
    SearchStatus.SEARCHING: {SearchStatus.AGGREGATING, SearchStatus.CANCELLED},
    SearchStatus.AGGREGATING: {SearchStatus.COMPLETED, SearchStatus.FAILED},
}


@dataclass
class SearchProgress:
    search_id: str
    total_sources: int
    status: SearchStatus = SearchStatus.PENDING
    percent: float = 0.0
    completed_sources: list[str] = field(default_factory=list)
    result_count: int = 0
    errors: list[SourceErrorInfo] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    estimated_completion: datetime | None = None
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def snapshot(self) -> "SearchProgress":
        return replace(
            self,
            completed_sources=list(self.completed_sources),
            errors=list(self.errors),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "search_id": self.search_id,
            "status": self.status.value,
            "percent": round(self.percent, 1),
            "completed_sources": list(self.completed_sources),
            "total_sources": self.total_sources,
            "result_count": self.result_count,
            "errors": [e.model_dump() for e in self.errors],
            "started_at": self.started_at.isoformat(),
            "estimated_completion": (
                self.estimated_completion.isoformat() if self.estimated_completion else None
            ),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class _SearchRecord:
    progress: SearchProgress
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    results: list[FlightResult] | None = None
    sources: list[str] = field(default_factory=list)
    terminal_at: float | None = None


Listener = Callable[[SearchProgress], Union[None, Awaitable[None]]]


class ProgressTracker:
    """Single owner of every SearchProgress record.

    All mutations go through one lock, so percent only moves forward and a
    terminal record never changes again. Terminal records are kept for
    ``retention_seconds`` and then evicted.
    """

    def __init__(
        self,
        retention_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._records: dict[str, _SearchRecord] = {}
        self._lock = asyncio.Lock()
        self._listeners: list[Listener] = []

    # --- Observers ---

    def add_listener(self, listener: Listener):
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _notify(self, snapshot: SearchProgress):
        """Called after the lock is released; listeners may call back into the tracker."""
        for listener in list(self._listeners):
            try:
                result = listener(snapshot.snapshot())
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Progress listener failed for {snapshot.search_id}: {e}", exc_info=True)

    # --- Reads ---

    def get(self, search_id: str) -> SearchProgress | None:
        self.evict_expired()
        record = self._records.get(search_id)
        return record.progress.snapshot() if record else None

    def get_results(self, search_id: str) -> tuple[SearchProgress, list[FlightResult] | None, list[str]] | None:
        self.evict_expired()
        record = self._records.get(search_id)
        if record is None:
            return None
        results = list(record.results) if record.results is not None else None
        return record.progress.snapshot(), results, list(record.sources)

    def cancel_event(self, search_id: str) -> asyncio.Event | None:
        record = self._records.get(search_id)
        return record.cancel_event if record else None

    def active(self) -> list[SearchProgress]:
        return [r.progress.snapshot() for r in self._records.values() if not r.progress.is_terminal]

    # --- Writes ---

    async def create(self, search_id: str, total_sources: int) -> SearchProgress:
        async with self._lock:
            self.evict_expired()
            existing = self._records.get(search_id)
            if existing is not None and not existing.progress.is_terminal:
                raise DuplicateSearch(search_id)
            record = _SearchRecord(progress=SearchProgress(search_id=search_id, total_sources=total_sources))
            self._records[search_id] = record
            snapshot = record.progress.snapshot()
        await self._notify(snapshot)
        return snapshot

    async def transition(self, search_id: str, status: SearchStatus) -> bool:
        """Move to ``status`` if the state machine allows it; False otherwise."""
        async with self._lock:
            record = self._records.get(search_id)
            if record is None:
                return False
            progress = record.progress
            if status not in ALLOWED_TRANSITIONS.get(progress.status, set()):
                logger.debug(f"Ignoring transition {progress.status.value} -> {status.value} for {search_id}")
                return False

            progress.status = status
            if status in TERMINAL_STATUSES:
                progress.finished_at = datetime.now(timezone.utc)
                record.terminal_at = self._clock()
                if status != SearchStatus.CANCELLED:
                    progress.percent = 100.0
            if status == SearchStatus.CANCELLED:
                record.cancel_event.set()
            snapshot = progress.snapshot()
        await self._notify(snapshot)
        return True

    async def record_outcome(
        self,
        search_id: str,
        source: str,
        result_count: int = 0,
        error: SourceErrorInfo | None = None,
    ) -> bool:
        """Count one settled source. Late outcomes for a finished search are dropped."""
        async with self._lock:
            record = self._records.get(search_id)
            if record is None:
                return False
            progress = record.progress
            if progress.status != SearchStatus.SEARCHING or source in progress.completed_sources:
                return False
            if len(progress.completed_sources) >= progress.total_sources:
                return False

            progress.completed_sources.append(source)
            if error is None:
                progress.result_count += result_count
                record.sources.append(source)
            else:
                progress.errors.append(error)

            done = len(progress.completed_sources)
            progress.percent = max(progress.percent, done / progress.total_sources * 100)
            if done < progress.total_sources:
                elapsed = datetime.now(timezone.utc) - progress.started_at
                progress.estimated_completion = progress.started_at + elapsed * progress.total_sources / done
            else:
                progress.estimated_completion = datetime.now(timezone.utc)
            snapshot = progress.snapshot()
        await self._notify(snapshot)
        return True

    async def attach_results(self, search_id: str, results: list[FlightResult]) -> bool:
        async with self._lock:
            record = self._records.get(search_id)
            if record is None or record.progress.status != SearchStatus.AGGREGATING:
                return False
            record.results = list(results)
            return True

    def evict_expired(self) -> int:
        """Drop terminal records older than the retention window."""
        now = self._clock()
        expired = [
            sid for sid, r in self._records.items()
            if r.terminal_at is not None and now - r.terminal_at >= self.retention_seconds
        ]
        for sid in expired:
            del self._records[sid]
        if expired:
            logger.debug(f"Evicted {len(expired)} finished searches")
        return len(expired)

    def __len__(self) -> int:
        return len(self._records)
