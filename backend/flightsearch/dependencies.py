"""Process-wide service instances wired from settings."""

from flightsearch.config import settings
from flightsearch.services.adapters.registry import build_registry
from flightsearch.services.progress_tracker import ProgressTracker
from flightsearch.services.rate_limiter import RateLimiter, build_storage
from flightsearch.services.redis_client import RedisConnection
from flightsearch.services.response_cache import ResponseCache
from flightsearch.services.search_orchestrator import SearchOrchestrator

redis_connection = RedisConnection(settings.redis_url) if settings.redis_url else None

rate_limiter = RateLimiter(
    storage=build_storage(settings.redis_url),
    key_prefix=settings.rate_limit_key_prefix,
)

response_cache = ResponseCache(
    redis_connection=redis_connection,
    key_prefix=settings.cache_key_prefix,
    default_ttl=settings.cache_ttl_seconds,
)

progress_tracker = ProgressTracker(retention_seconds=settings.search_retention_seconds)

search_orchestrator = SearchOrchestrator(
    registry=build_registry(settings, rate_limiter, response_cache),
    tracker=progress_tracker,
    cache=response_cache,
    max_concurrent_searches=settings.max_concurrent_searches,
    search_timeout=settings.search_timeout_seconds,
    health_check_timeout=settings.health_check_timeout_seconds,
)


def get_orchestrator() -> SearchOrchestrator:
    return search_orchestrator
