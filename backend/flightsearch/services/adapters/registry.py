"""Named registry of search adapters, built from settings."""

import logging

from flightsearch.config import AirlineConfig, RateLimitConfig, Settings
from flightsearch.errors import UnknownSource
from flightsearch.services.adapters.amadeus import AmadeusSource
from flightsearch.services.adapters.base import ManagedAdapter, SearchAdapter
from flightsearch.services.adapters.mock import MockSource
from flightsearch.services.rate_limiter import RateLimiter
from flightsearch.services.response_cache import ResponseCache

logger = logging.getLogger(__name__)


class AdapterRegistry:
    def __init__(self, adapters: list[SearchAdapter] | None = None):
        self._adapters: dict[str, SearchAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: SearchAdapter):
        self._adapters[adapter.name.lower()] = adapter

    def get(self, name: str) -> SearchAdapter:
        adapter = self._adapters.get(name.lower())
        if adapter is None:
            raise UnknownSource(name)
        return adapter

    def names(self) -> list[str]:
        return list(self._adapters)

    def items(self) -> list[tuple[str, SearchAdapter]]:
        return list(self._adapters.items())

    def __contains__(self, name: str) -> bool:
        return name.lower() in self._adapters

    def __len__(self) -> int:
        return len(self._adapters)

    async def close_all(self):
        for name, adapter in self._adapters.items():
            try:
                await adapter.close()
            except Exception as e:
                logger.warning(f"Failed to close adapter {name}: {e}")


def build_registry(
    settings: Settings,
    rate_limiter: RateLimiter,
    cache: ResponseCache,
) -> AdapterRegistry:
    """Mock sources from MOCK_SOURCES, plus Amadeus when credentials are set."""
    registry = AdapterRegistry()

    for name in settings.mock_source_list:
        client = MockSource(
            settings.default_airline_config(name),
            delay_ms=settings.mock_delay_ms,
            error_rate=settings.mock_error_rate,
        )
        registry.register(ManagedAdapter(client, rate_limiter, cache, settings.cache_ttl_seconds))

    if settings.amadeus_client_id and settings.amadeus_client_secret:
        defaults = settings.default_airline_config("amadeus")
        config = AirlineConfig(
            name="amadeus",
            base_url=settings.amadeus_base_url,
            client_id=settings.amadeus_client_id,
            client_secret=settings.amadeus_client_secret,
            timeout_seconds=defaults.timeout_seconds,
            rate_limit=RateLimitConfig(
                requests_per_minute=settings.amadeus_requests_per_minute,
                requests_per_hour=settings.amadeus_requests_per_hour,
            ),
            retry=defaults.retry,
        )
        registry.register(ManagedAdapter(AmadeusSource(config), rate_limiter, cache, settings.cache_ttl_seconds))

    logger.info(f"Registered search sources: {', '.join(registry.names()) or 'none'}")
    return registry
