"""Bounded retry with exponential backoff for source calls."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx

from flightsearch.config import RetryConfig
from flightsearch.errors import SearchCancelled, SourceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 2
    initial_delay: float = 1.0  # seconds
    backoff_multiplier: float = 2.0

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            initial_delay=config.initial_delay_ms / 1000,
            backoff_multiplier=config.backoff_multiplier,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay after the given zero-based failed attempt."""
        return self.initial_delay * self.backoff_multiplier ** attempt


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, SourceError):
        return error.retryable
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS_CODES
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return True
    if isinstance(error, (asyncio.TimeoutError, ConnectionResetError, ConnectionAbortedError)):
        return True
    return False


async def call_with_retry(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    source: str,
    cancel_event: asyncio.Event | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_attempt: Callable[[int], None] | None = None,
) -> T:
    """Run ``func`` up to ``max_retries + 1`` times.

    Only errors classified by ``is_retryable`` are retried; anything else is
    raised immediately. The cancel event is checked before every attempt.
    """
    for attempt in range(policy.max_retries + 1):
        if cancel_event is not None and cancel_event.is_set():
            raise SearchCancelled(source)
        if on_attempt:
            on_attempt(attempt)
        try:
            return await func()
        except Exception as e:
            if attempt == policy.max_retries or not is_retryable(e):
                raise
            delay = policy.delay_for(attempt)
            logger.info(
                f"{source}: attempt {attempt + 1}/{policy.max_retries + 1} failed "
                f"({type(e).__name__}: {e}), retrying in {delay:.2f}s"
            )
            await sleep(delay)
    raise RuntimeError("unreachable")
