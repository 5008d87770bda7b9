"""Per-source fixed-window rate limiter (per-minute and per-hour budgets)."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from limits import RateLimitItem, RateLimitItemPerHour, RateLimitItemPerMinute
from limits.aio.storage import MemoryStorage, Storage
from limits.aio.strategies import FixedWindowRateLimiter
from limits.storage import storage_from_string

from flightsearch.config import RateLimitConfig, settings

logger = logging.getLogger(__name__)


@dataclass
class RateBudget:
    source: str
    requests_per_minute: int
    requests_per_hour: int
    minute_remaining: int
    hour_remaining: int
    minute_resets_at: datetime
    hour_resets_at: datetime

    @property
    def remaining(self) -> int:
        return min(self.minute_remaining, self.hour_remaining)


def build_storage(redis_url: str = "") -> Storage:
    """Redis-backed counters when a URL is given, in-process otherwise."""
    if not redis_url:
        return MemoryStorage()
    try:
        return storage_from_string(f"async+{redis_url}", implementation="redispy")
    except Exception as e:
        logger.warning(f"Failed to initialize rate limit storage: {e}, using memory storage")
        return MemoryStorage()


class RateLimiter:
    """Gates outbound requests per source.

    Both budgets must have room for a request to be allowed; a denied
    request consumes neither. When the storage backend is unreachable every
    request is allowed and a warning is logged.
    """

    def __init__(
        self,
        limits: dict[str, RateLimitConfig] | None = None,
        default_limit: RateLimitConfig | None = None,
        storage: Storage | None = None,
        key_prefix: str = "airline_rate_limit",
    ):
        self._limits = dict(limits or {})
        self._default = default_limit or RateLimitConfig(
            requests_per_minute=settings.default_requests_per_minute,
            requests_per_hour=settings.default_requests_per_hour,
        )
        self.key_prefix = key_prefix
        self._strategy = FixedWindowRateLimiter(storage or MemoryStorage())
        # test-then-hit must not interleave within this process
        self._lock = asyncio.Lock()

    def configure(self, source: str, limit: RateLimitConfig):
        self._limits[source.lower()] = limit

    def limits_for(self, source: str) -> RateLimitConfig:
        return self._limits.get(source.lower(), self._default)

    def _items(self, source: str) -> tuple[RateLimitItem, RateLimitItem]:
        limit = self.limits_for(source)
        return (
            RateLimitItemPerMinute(limit.requests_per_minute, namespace=self.key_prefix),
            RateLimitItemPerHour(limit.requests_per_hour, namespace=self.key_prefix),
        )

    async def check_limit(self, source: str) -> bool:
        key = source.lower()
        try:
            for item in self._items(source):
                if not await self._strategy.test(item, key):
                    return False
        except Exception as e:
            logger.warning(f"Rate limiter backend unavailable, allowing {source}: {e}")
        return True

    async def increment_counter(self, source: str):
        key = source.lower()
        try:
            for item in self._items(source):
                await self._strategy.hit(item, key)
        except Exception as e:
            logger.warning(f"Rate limiter increment failed for {source}: {e}")

    async def acquire(self, source: str) -> bool:
        """Check both budgets and count one request when allowed."""
        key = source.lower()
        items = self._items(source)
        try:
            async with self._lock:
                for item in items:
                    if not await self._strategy.test(item, key):
                        logger.info(f"Rate limit reached for {source} ({item})")
                        return False
                for item in items:
                    await self._strategy.hit(item, key)
        except Exception as e:
            logger.warning(f"Rate limiter backend unavailable, allowing {source}: {e}")
        return True

    async def get_remaining(self, source: str) -> int:
        return (await self.get_budget(source)).remaining

    async def get_budget(self, source: str) -> RateBudget:
        limit = self.limits_for(source)
        minute_item, hour_item = self._items(source)
        now = datetime.now(timezone.utc)
        try:
            minute = await self._strategy.get_window_stats(minute_item, source.lower())
            hour = await self._strategy.get_window_stats(hour_item, source.lower())
        except Exception as e:
            logger.warning(f"Rate limiter backend unavailable for {source}: {e}")
            return RateBudget(
                source=source,
                requests_per_minute=limit.requests_per_minute,
                requests_per_hour=limit.requests_per_hour,
                minute_remaining=limit.requests_per_minute,
                hour_remaining=limit.requests_per_hour,
                minute_resets_at=now,
                hour_resets_at=now,
            )
        return RateBudget(
            source=source,
            requests_per_minute=limit.requests_per_minute,
            requests_per_hour=limit.requests_per_hour,
            minute_remaining=minute.remaining,
            hour_remaining=hour.remaining,
            minute_resets_at=datetime.fromtimestamp(minute.reset_time, tz=timezone.utc),
            hour_resets_at=datetime.fromtimestamp(hour.reset_time, tz=timezone.utc),
        )

    async def reset(self, source: str):
        try:
            for item in self._items(source):
                await self._strategy.clear(item, source.lower())
        except Exception as e:
            logger.warning(f"Rate limiter reset failed for {source}: {e}")
