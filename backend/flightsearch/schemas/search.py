import re
import uuid
from datetime import date, datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from flightsearch.schemas.flight import FlightResult

CabinClass = Literal["economy", "premium_economy", "business", "first"]
SortBy = Literal["price", "duration", "score"]
SortOrder = Literal["asc", "desc"]

_IATA = re.compile(r"^[A-Z]{3}$")
_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class PassengerCount(BaseModel):
    adults: int = Field(1, ge=1, le=9)
    children: int = Field(0, ge=0, le=8)
    infants: int = Field(0, ge=0, le=2)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def infants_need_adults(self):
        if self.infants > self.adults:
            raise ValueError("Each infant must travel with an adult")
        return self


class SearchCriteria(BaseModel):
    origin: str
    destination: str
    departure_date: date
    return_date: date | None = None
    passengers: PassengerCount = Field(default_factory=PassengerCount)
    cabin_class: CabinClass = "economy"
    flexible: bool = False

    model_config = {"frozen": True}

    @field_validator("origin", "destination", mode="before")
    @classmethod
    def normalize_airport(cls, v: str) -> str:
        code = str(v).strip().upper()
        if not _IATA.match(code):
            raise ValueError(f"'{v}' is not a valid 3-letter airport code")
        return code

    @model_validator(mode="after")
    def check_route_and_dates(self):
        if self.origin == self.destination:
            raise ValueError("Origin and destination cannot be the same")
        if self.return_date and self.return_date < self.departure_date:
            raise ValueError("Return date must be on or after departure date")
        return self


class SearchRequest(BaseModel):
    criteria: SearchCriteria
    request_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class DepartureWindow(BaseModel):
    earliest: str = "00:00"
    latest: str = "23:59"

    @field_validator("earliest", "latest")
    @classmethod
    def check_hhmm(cls, v: str) -> str:
        if not _HHMM.match(v):
            raise ValueError(f"'{v}' is not a HH:MM time")
        return v


class SearchFilters(BaseModel):
    max_price: float | None = None
    max_stops: int | None = Field(None, ge=0)
    airlines: list[str] | None = None
    cabin_class: CabinClass | None = None
    departure_window: DepartureWindow | None = None
    max_duration: int | None = Field(None, gt=0)


class SearchOptions(BaseModel):
    sort_by: SortBy = "price"
    sort_order: SortOrder = "asc"
    source_timeout_seconds: float | None = Field(None, gt=0)
    # 0 = cheapest, 100 = most convenient; unset keeps the orchestrator weights
    slider: float | None = Field(None, ge=0, le=100)


class SourceErrorInfo(BaseModel):
    source: str
    message: str
    code: str = "SOURCE_ERROR"
    retryable: bool = False


class SearchResult(BaseModel):
    search_id: str
    status: str
    results: list[FlightResult] = Field(default_factory=list)
    total_results: int = 0
    search_time_ms: int = 0
    sources: list[str] = Field(default_factory=list)
    cached: bool = False
    errors: list[SourceErrorInfo] = Field(default_factory=list)
    sort_by: SortBy | None = None
    sort_order: SortOrder | None = None
    filters: SearchFilters | None = None
