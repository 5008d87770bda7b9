import asyncio
from datetime import date, datetime, timedelta

from flightsearch.config import AirlineConfig, RateLimitConfig, RetryConfig
from flightsearch.schemas.flight import AvailabilityInfo, FlightResult, FlightSegment, PricingInfo
from flightsearch.schemas.search import SearchCriteria, SearchRequest
from flightsearch.services.adapters.base import ManagedAdapter, SourceClient
from flightsearch.services.rate_limiter import RateLimiter
from flightsearch.services.response_cache import ResponseCache

# 2023-11-14 22:13:00 UTC, on a minute boundary
EPOCH = 1_699_999_980.0


class FakeClock:
    def __init__(self, start: float = EPOCH):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


def travel_date(days: int = 30) -> date:
    return date.today() + timedelta(days=days)


def make_request(origin="LAX", destination="JFK", request_id=None, **criteria) -> SearchRequest:
    c = SearchCriteria(
        origin=origin,
        destination=destination,
        departure_date=criteria.pop("departure_date", travel_date()),
        **criteria,
    )
    if request_id:
        return SearchRequest(criteria=c, request_id=request_id)
    return SearchRequest(criteria=c)


def make_flight(
    price: float,
    duration: int = 300,
    airline: str = "AA",
    flight_number: str | None = None,
    source: str = "test-air",
    departure_hour: int = 9,
    layovers: int = 0,
    cabin_class: str = "economy",
) -> FlightResult:
    number = flight_number or f"{airline}{int(price)}{duration}"
    dep = datetime.combine(travel_date(), datetime.min.time()) + timedelta(hours=departure_hour)
    segment = FlightSegment(
        airline=airline,
        flight_number=number,
        origin="LAX",
        destination="JFK",
        departure_time=dep,
        arrival_time=dep + timedelta(minutes=duration),
        duration_minutes=duration,
    )
    return FlightResult(
        id=f"{source}-{number}",
        source=source,
        airline=airline,
        flight_number=number,
        route=[segment],
        duration_minutes=duration,
        layovers=layovers,
        pricing=PricingInfo(cash_price=price, total_price=price),
        availability=AvailabilityInfo(cabin_class=cabin_class),
    )


def make_config(name: str, **overrides) -> AirlineConfig:
    return AirlineConfig(
        name=name,
        timeout_seconds=overrides.pop("timeout_seconds", 15.0),
        rate_limit=overrides.pop("rate_limit", RateLimitConfig()),
        retry=overrides.pop("retry", RetryConfig()),
        **overrides,
    )


class FakeSource(SourceClient):
    """Returns canned flights after an optional delay; raises queued errors first."""

    def __init__(self, name: str, flights=None, delay: float = 0.0, errors=None, **config):
        super().__init__(make_config(name, **config))
        self.flights = list(flights or [])
        self.delay = delay
        self.errors = list(errors or [])
        self.calls = 0
        self.closed = False

    async def fetch(self, request: SearchRequest) -> dict:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)
        return {"flights": [f.model_dump() for f in self.flights]}

    def normalize(self, raw: dict, request: SearchRequest) -> list[FlightResult]:
        return [FlightResult(**f) for f in raw["flights"]]

    async def close(self):
        self.closed = True


def make_adapter(client: SourceClient, limiter=None, cache=None, sleep=None) -> ManagedAdapter:
    return ManagedAdapter(
        client,
        limiter or RateLimiter(default_limit=RateLimitConfig()),
        cache or ResponseCache(),
        sleep=sleep or RecordingSleep(),
    )
