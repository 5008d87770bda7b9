"""Response cache for normalized per-source search results."""

import asyncio
import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Callable

from flightsearch.schemas.flight import FlightResult
from flightsearch.schemas.search import SearchCriteria
from flightsearch.services.redis_client import RedisConnection

logger = logging.getLogger(__name__)

TTL_SOURCE_RESULTS = 5 * 60  # 5 minutes, fares and seats change fast


@dataclass
class CacheEntry:
    flights: list[FlightResult]
    expires_at: float

    def to_json(self) -> str:
        return json.dumps({
            "expires_at": self.expires_at,
            "flights": [f.model_dump(mode="json") for f in self.flights],
        })

    @classmethod
    def from_json(cls, raw: str) -> "CacheEntry":
        data = json.loads(raw)
        return cls(
            flights=[FlightResult.model_validate(f) for f in data["flights"]],
            expires_at=float(data["expires_at"]),
        )


class ResponseCache:
    """Key-addressed TTL cache, Redis-backed when a connection is given.

    Every failure is logged and reported as a miss so a search always falls
    through to the live source.
    """

    def __init__(
        self,
        redis_connection: RedisConnection | None = None,
        key_prefix: str = "airline_cache",
        default_ttl: int = TTL_SOURCE_RESULTS,
        clock: Callable[[], float] = time.time,
    ):
        self._connection = redis_connection
        self.key_prefix = key_prefix
        self.default_ttl = default_ttl
        self._clock = clock
        self._memory: dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()

    def _full_key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    @staticmethod
    def generate_key(criteria: SearchCriteria, source_name: str) -> str:
        """Deterministic key for (criteria, source); field order never matters."""
        key_data = {
            "source": source_name.strip().lower(),
            "origin": criteria.origin,
            "destination": criteria.destination,
            "departure_date": criteria.departure_date.isoformat(),
            "return_date": criteria.return_date.isoformat() if criteria.return_date else None,
            "passengers": {
                "adults": criteria.passengers.adults,
                "children": criteria.passengers.children,
                "infants": criteria.passengers.infants,
            },
            "cabin_class": criteria.cabin_class,
            "flexible": criteria.flexible,
        }
        key_string = json.dumps(key_data, sort_keys=True, separators=(",", ":"))
        digest = hashlib.md5(key_string.encode()).hexdigest()
        return f"search:{criteria.origin}-{criteria.destination}:{digest}"

    async def get(self, key: str) -> list[FlightResult] | None:
        """Return cached flights, or None on miss, expiry or error."""
        try:
            entry = await self._read(key)
        except Exception as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            await self.delete(key)
            return None
        return entry.flights

    async def set(self, key: str, flights: list[FlightResult], ttl_seconds: int | None = None) -> bool:
        ttl = ttl_seconds or self.default_ttl
        entry = CacheEntry(flights=list(flights), expires_at=self._clock() + ttl)
        try:
            if self._connection is None:
                async with self._lock:
                    self._prune_expired()
                    self._memory[key] = entry
                return True
            r = await self._connection.get()
            if r is None:
                return False
            await r.set(self._full_key(key), entry.to_json(), ex=ttl)
            return True
        except Exception as e:
            logger.warning(f"Cache write failed for {key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        try:
            if self._connection is None:
                async with self._lock:
                    self._memory.pop(key, None)
                return True
            r = await self._connection.get()
            if r is None:
                return False
            await r.delete(self._full_key(key))
            return True
        except Exception as e:
            logger.warning(f"Cache delete failed for {key}: {e}")
            return False

    async def clear(self) -> int:
        """Drop every entry under this cache's prefix."""
        try:
            if self._connection is None:
                async with self._lock:
                    count = len(self._memory)
                    self._memory.clear()
                return count
            r = await self._connection.get()
            if r is None:
                return 0
            keys = [k async for k in r.scan_iter(match=f"{self.key_prefix}:*")]
            if keys:
                await r.delete(*keys)
            return len(keys)
        except Exception as e:
            logger.warning(f"Cache clear failed: {e}")
            return 0

    async def invalidate_route(self, origin: str, destination: str) -> int:
        """Drop every cached search for one origin-destination pair."""
        pattern = f"search:{origin.strip().upper()}-{destination.strip().upper()}:"
        try:
            if self._connection is None:
                async with self._lock:
                    keys = [k for k in self._memory if k.startswith(pattern)]
                    for k in keys:
                        del self._memory[k]
            else:
                r = await self._connection.get()
                if r is None:
                    return 0
                keys = [k async for k in r.scan_iter(match=self._full_key(pattern) + "*")]
                if keys:
                    await r.delete(*keys)
        except Exception as e:
            logger.warning(f"Cache invalidation failed for {origin}-{destination}: {e}")
            return 0
        if keys:
            logger.info(f"Invalidated {len(keys)} cached searches for {origin}-{destination}")
        return len(keys)

    async def get_stats(self) -> dict:
        """Entry count and memory usage; Redis reports its own memory figure."""
        try:
            if self._connection is None:
                async with self._lock:
                    self._prune_expired()
                    return {"backend": "memory", "total_keys": len(self._memory), "memory_usage": None}
            r = await self._connection.get()
            if r is None:
                return {"backend": "redis", "total_keys": 0, "memory_usage": None}
            keys = [k async for k in r.scan_iter(match=f"{self.key_prefix}:*")]
            info = await r.info("memory")
            return {
                "backend": "redis",
                "total_keys": len(keys),
                "memory_usage": info.get("used_memory_human"),
            }
        except Exception as e:
            logger.warning(f"Cache stats failed: {e}")
            return {"backend": "redis" if self._connection else "memory", "total_keys": 0, "memory_usage": None}

    async def health_check(self) -> bool:
        if self._connection is None:
            return True
        return await self._connection.ping()

    def _prune_expired(self):
        # caller holds the lock
        now = self._clock()
        expired = [k for k, entry in self._memory.items() if now >= entry.expires_at]
        for k in expired:
            del self._memory[k]

    async def _read(self, key: str) -> CacheEntry | None:
        if self._connection is None:
            async with self._lock:
                return self._memory.get(key)
        r = await self._connection.get()
        if r is None:
            return None
        raw = await r.get(self._full_key(key))
        if raw is None:
            return None
        return CacheEntry.from_json(raw)
