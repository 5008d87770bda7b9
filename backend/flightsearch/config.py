from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


class RateLimitConfig(BaseModel):
    requests_per_minute: int = 60
    requests_per_hour: int = 1000


class RetryConfig(BaseModel):
    max_retries: int = 2
    initial_delay_ms: int = 1000
    backoff_multiplier: float = 2.0


class AirlineConfig(BaseModel):
    """Per-source settings consumed when an adapter is constructed."""

    name: str
    base_url: str = ""
    api_key: str = ""
    client_id: str = ""
    client_secret: str = ""
    timeout_seconds: float = 15.0
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)


class Settings(BaseSettings):
    # Redis (empty = in-process backends for cache and rate limits)
    redis_url: str = ""
    cache_key_prefix: str = "airline_cache"
    rate_limit_key_prefix: str = "airline_rate_limit"

    # Response cache
    cache_ttl_seconds: int = 300  # 5 minutes, prices are volatile

    # Orchestration
    search_timeout_seconds: float = 30.0
    max_concurrent_searches: int = 5
    search_retention_seconds: int = 300
    health_check_timeout_seconds: float = 10.0

    # Source defaults
    default_requests_per_minute: int = 60
    default_requests_per_hour: int = 1000
    default_max_retries: int = 2
    default_initial_delay_ms: int = 1000
    default_backoff_multiplier: float = 2.0
    default_source_timeout_seconds: float = 15.0

    # Mock sources (demo / development)
    mock_sources: str = "american-airlines,delta-airlines"
    mock_delay_ms: int = 500
    mock_error_rate: float = 0.0

    # Amadeus
    amadeus_client_id: str = ""
    amadeus_client_secret: str = ""
    amadeus_base_url: str = "https://test.api.amadeus.com"
    amadeus_requests_per_minute: int = 100
    amadeus_requests_per_hour: int = 2000

    # Scheduler
    scheduler_enabled: bool = True
    eviction_interval_seconds: int = 60

    # CORS
    cors_origins: str = "http://localhost:5173"

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def mock_source_list(self) -> list[str]:
        return [name.strip() for name in self.mock_sources.split(",") if name.strip()]

    def default_airline_config(self, name: str) -> AirlineConfig:
        return AirlineConfig(
            name=name,
            timeout_seconds=self.default_source_timeout_seconds,
            rate_limit=RateLimitConfig(
                requests_per_minute=self.default_requests_per_minute,
                requests_per_hour=self.default_requests_per_hour,
            ),
            retry=RetryConfig(
                max_retries=self.default_max_retries,
                initial_delay_ms=self.default_initial_delay_ms,
                backoff_multiplier=self.default_backoff_multiplier,
            ),
        )

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
