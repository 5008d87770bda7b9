from datetime import datetime

from pydantic import BaseModel, Field, field_validator


class FlightSegment(BaseModel):
    airline: str
    flight_number: str
    origin: str
    destination: str
    departure_time: datetime
    arrival_time: datetime
    duration_minutes: int
    aircraft: str | None = None
    operating_airline: str | None = None


class PointsOption(BaseModel):
    program: str
    points_required: int
    cash_component: float | None = None
    transfer_ratio: float | None = None
    best_value: bool = False


class PricingInfo(BaseModel):
    cash_price: float
    currency: str = "USD"
    taxes: float = 0.0
    fees: float = 0.0
    total_price: float
    points_options: list[PointsOption] = Field(default_factory=list)


class AvailabilityInfo(BaseModel):
    seats_remaining: int | None = None
    booking_class: str = "Y"
    fare_basis: str = ""
    cabin_class: str = "economy"
    restrictions: list[str] = Field(default_factory=list)


class FlightResult(BaseModel):
    id: str
    source: str
    airline: str
    flight_number: str
    route: list[FlightSegment]
    duration_minutes: int
    layovers: int = 0
    layover_minutes: int | None = None
    pricing: PricingInfo
    availability: AvailabilityInfo = Field(default_factory=AvailabilityInfo)
    score: float = 0.0

    @field_validator("score")
    @classmethod
    def clamp_score(cls, v: float) -> float:
        return max(0.0, min(100.0, v))

    @property
    def departure_time(self) -> datetime | None:
        return self.route[0].departure_time if self.route else None

    @property
    def total_price(self) -> float:
        return self.pricing.total_price

    def dedupe_key(self) -> tuple:
        """Identity of the physical itinerary, independent of which source sold it."""
        return (
            self.airline,
            self.flight_number,
            tuple((s.flight_number, s.departure_time.isoformat()) for s in self.route),
        )


class SourceResponse(BaseModel):
    """Normalized response returned by one adapter search."""

    source: str
    flights: list[FlightResult] = Field(default_factory=list)
    search_time_ms: int = 0
    cached: bool = False
    currency: str = "USD"
