"""Adapter contract and the shared wrapper every source runs behind.

Concrete sources implement ``SourceClient`` (raw call, normalization, error
classification). ``ManagedAdapter`` composes a client with the shared rate
limiter, response cache and retry policy, and is what the orchestrator calls.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Protocol

import httpx

from flightsearch.config import AirlineConfig
from flightsearch.errors import MalformedResponse, RateLimitExceeded, SourceError
from flightsearch.schemas.flight import FlightResult, SourceResponse
from flightsearch.schemas.search import PassengerCount, SearchCriteria, SearchRequest
from flightsearch.services.rate_limiter import RateLimiter
from flightsearch.services.response_cache import ResponseCache
from flightsearch.services.retry import RetryPolicy, call_with_retry, is_retryable

logger = logging.getLogger(__name__)


@dataclass
class AdapterStats:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    total_attempts: int = 0
    cache_hits: int = 0
    total_latency_ms: int = 0
    last_success_at: datetime | None = None
    last_error: str | None = None
    last_error_code: str | None = None

    @property
    def error_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.failed_requests / self.total_requests

    @property
    def average_latency_ms(self) -> float:
        if self.successful_requests == 0:
            return 0.0
        return self.total_latency_ms / self.successful_requests


class SearchAdapter(Protocol):
    """What the orchestrator needs from a source."""

    name: str

    async def search(
        self, request: SearchRequest, cancel_event: asyncio.Event | None = None
    ) -> SourceResponse: ...

    async def health_check(self) -> bool: ...

    def get_stats(self) -> AdapterStats: ...

    async def close(self) -> None: ...


class SourceClient(ABC):
    """Source-specific half of an adapter."""

    def __init__(self, config: AirlineConfig):
        self.config = config

    @property
    def name(self) -> str:
        return self.config.name

    @abstractmethod
    async def fetch(self, request: SearchRequest) -> Any:
        """Perform the raw call against the source."""

    @abstractmethod
    def normalize(self, raw: Any, request: SearchRequest) -> list[FlightResult]:
        """Translate a raw payload into normalized flights."""

    def classify_error(self, error: Exception) -> SourceError:
        status = error.response.status_code if isinstance(error, httpx.HTTPStatusError) else None
        code = f"HTTP_{status}" if status else type(error).__name__.upper()
        return SourceError(
            self.name,
            str(error) or type(error).__name__,
            code=code,
            retryable=is_retryable(error),
            status_code=status,
        )

    def validate_config(self) -> bool:
        c = self.config
        return bool(
            c.name
            and c.timeout_seconds > 0
            and c.rate_limit.requests_per_minute > 0
            and c.rate_limit.requests_per_hour > 0
            and c.retry.max_retries >= 0
            and c.retry.backoff_multiplier > 0
            and c.retry.initial_delay_ms > 0
        )

    async def close(self):
        pass


def health_check_request() -> SearchRequest:
    """Known route, one adult, one day out."""
    return SearchRequest(
        request_id=f"health-check-{int(time.time() * 1000)}",
        criteria=SearchCriteria(
            origin="LAX",
            destination="JFK",
            departure_date=date.today() + timedelta(days=1),
            passengers=PassengerCount(adults=1),
            cabin_class="economy",
        ),
    )


class ManagedAdapter:
    """Rate limit → cache → retried raw call → normalize → cache store → stats."""

    def __init__(
        self,
        client: SourceClient,
        rate_limiter: RateLimiter,
        cache: ResponseCache,
        cache_ttl: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not client.validate_config():
            raise ValueError(f"Invalid configuration for airline adapter: {client.name}")
        self.client = client
        self.rate_limiter = rate_limiter
        self.cache = cache
        self.cache_ttl = cache_ttl
        self.retry_policy = RetryPolicy.from_config(client.config.retry)
        self._sleep = sleep
        self._stats = AdapterStats()
        rate_limiter.configure(client.name, client.config.rate_limit)

    @property
    def name(self) -> str:
        return self.client.name

    @property
    def config(self) -> AirlineConfig:
        return self.client.config

    async def search(
        self, request: SearchRequest, cancel_event: asyncio.Event | None = None
    ) -> SourceResponse:
        started = time.monotonic()
        self._stats.total_requests += 1
        try:
            if not await self.rate_limiter.acquire(self.name):
                raise RateLimitExceeded(self.name)

            cache_key = self.cache.generate_key(request.criteria, self.name)
            cached = await self.cache.get(cache_key)
            if cached is not None:
                elapsed = self._elapsed_ms(started)
                self._stats.cache_hits += 1
                self._record_success(elapsed)
                logger.debug(f"{self.name}: cache hit for {request.request_id}")
                return SourceResponse(
                    source=self.name, flights=cached, search_time_ms=elapsed, cached=True
                )

            raw = await call_with_retry(
                lambda: self._fetch(request),
                self.retry_policy,
                source=self.name,
                cancel_event=cancel_event,
                sleep=self._sleep,
                on_attempt=self._count_attempt,
            )
            flights = self._normalize(raw, request)
            await self.cache.set(cache_key, flights, self.cache_ttl)

            elapsed = self._elapsed_ms(started)
            self._record_success(elapsed)
            currency = flights[0].pricing.currency if flights else "USD"
            return SourceResponse(
                source=self.name, flights=flights, search_time_ms=elapsed, currency=currency
            )
        except SourceError as e:
            self._record_failure(e)
            raise
        except Exception as e:
            error = self.client.classify_error(e)
            self._record_failure(error)
            raise error from e

    async def health_check(self) -> bool:
        """Synthetic search straight through the client; no cache, no rate budget."""
        try:
            await asyncio.wait_for(
                self.client.fetch(health_check_request()), self.config.timeout_seconds
            )
            return True
        except Exception as e:
            logger.warning(f"Health check failed for {self.name}: {e}")
            return False

    def get_stats(self) -> AdapterStats:
        return replace(self._stats)

    async def close(self):
        await self.client.close()

    async def _fetch(self, request: SearchRequest) -> Any:
        try:
            return await asyncio.wait_for(
                self.client.fetch(request), self.config.timeout_seconds
            )
        except SourceError:
            raise
        except Exception as e:
            raise self.client.classify_error(e) from e

    def _normalize(self, raw: Any, request: SearchRequest) -> list[FlightResult]:
        try:
            return self.client.normalize(raw, request)
        except (KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
            raise MalformedResponse(self.name, f"{type(e).__name__}: {e}") from e

    def _count_attempt(self, attempt: int):
        self._stats.total_attempts += 1

    def _record_success(self, elapsed_ms: int):
        self._stats.successful_requests += 1
        self._stats.total_latency_ms += elapsed_ms
        self._stats.last_success_at = datetime.now(timezone.utc)

    def _record_failure(self, error: SourceError):
        self._stats.failed_requests += 1
        self._stats.last_error = error.message
        self._stats.last_error_code = error.code
        logger.warning(f"{self.name}: search failed [{error.code}] {error.message}")

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)
