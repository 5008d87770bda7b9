"""Amadeus Self-Service source: OAuth2 client credentials + flight-offers search."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from flightsearch.config import AirlineConfig
from flightsearch.schemas.flight import AvailabilityInfo, FlightResult, FlightSegment, PricingInfo
from flightsearch.schemas.search import SearchRequest
from flightsearch.errors import SourceError
from flightsearch.services.adapters.base import SourceClient

logger = logging.getLogger(__name__)

# Map Amadeus cabin to our cabin codes
CABIN_MAP = {
    "ECONOMY": "economy",
    "PREMIUM_ECONOMY": "premium_economy",
    "BUSINESS": "business",
    "FIRST": "first",
}
TRAVEL_CLASS = {v: k for k, v in CABIN_MAP.items()}

OFFERS_PATH = "/v2/shopping/flight-offers"


class AmadeusSource(SourceClient):
    def __init__(self, config: AirlineConfig, http_client: httpx.AsyncClient | None = None):
        super().__init__(config)
        self._client = http_client
        self._token: str | None = None
        self._token_expires: datetime | None = None

    def validate_config(self) -> bool:
        return bool(
            super().validate_config()
            and self.config.base_url
            and self.config.client_id
            and self.config.client_secret
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout_seconds,
            )
        return self._client

    async def _ensure_token(self):
        """Get or refresh the OAuth2 token."""
        if self._token and self._token_expires and datetime.now(timezone.utc) < self._token_expires:
            return

        client = await self._get_client()
        resp = await client.post(
            "/v1/security/oauth2/token",
            data={
                "grant_type": "client_credentials",
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        resp.raise_for_status()
        data = resp.json()
        self._token = data["access_token"]
        self._token_expires = datetime.now(timezone.utc) + timedelta(
            seconds=data.get("expires_in", 1799) - 60
        )
        logger.info("Amadeus token refreshed")

    async def fetch(self, request: SearchRequest) -> dict:
        await self._ensure_token()
        client = await self._get_client()
        c = request.criteria

        params: dict[str, Any] = {
            "originLocationCode": c.origin,
            "destinationLocationCode": c.destination,
            "departureDate": c.departure_date.isoformat(),
            "adults": c.passengers.adults,
            "travelClass": TRAVEL_CLASS.get(c.cabin_class, "ECONOMY"),
            "max": 50,
            "currencyCode": "USD",
        }
        if c.return_date:
            params["returnDate"] = c.return_date.isoformat()
        if c.passengers.children:
            params["children"] = c.passengers.children
        if c.passengers.infants:
            params["infants"] = c.passengers.infants

        resp = await client.get(
            OFFERS_PATH,
            params=params,
            headers={"Authorization": f"Bearer {self._token}"},
        )
        if resp.status_code == 401:
            # Token revoked before its expiry; drop it so the retry fetches a new one
            self._token = None
            self._token_expires = None
        resp.raise_for_status()
        return resp.json()

    def classify_error(self, error: Exception) -> SourceError:
        """A 401 from the offers endpoint is retried with a fresh token."""
        classified = super().classify_error(error)
        if (
            isinstance(error, httpx.HTTPStatusError)
            and error.response.status_code == 401
            and error.request.url.path == OFFERS_PATH
        ):
            classified.retryable = True
        return classified

    def normalize(self, raw: dict, request: SearchRequest) -> list[FlightResult]:
        return [
            flight
            for flight in (self._parse_offer(offer) for offer in raw.get("data", []))
            if flight is not None
        ]

    def _parse_offer(self, offer: dict) -> FlightResult | None:
        """Parse Amadeus offer JSON into a FlightResult (outbound itinerary)."""
        itineraries = offer.get("itineraries") or [{}]
        segments = itineraries[0].get("segments", [])
        if not segments:
            return None

        route = [
            FlightSegment(
                airline=s["carrierCode"],
                flight_number=f"{s['carrierCode']}{s['number']}",
                origin=s["departure"]["iataCode"],
                destination=s["arrival"]["iataCode"],
                departure_time=self._parse_time(s["departure"]["at"]),
                arrival_time=self._parse_time(s["arrival"]["at"]),
                duration_minutes=self._parse_duration(s.get("duration", "")),
                aircraft=s.get("aircraft", {}).get("code"),
                operating_airline=s.get("operating", {}).get("carrierCode"),
            )
            for s in segments
        ]

        price = offer["price"]
        total = float(price.get("grandTotal", price["total"]))
        base = float(price.get("base", total))
        fees = sum(float(f.get("amount", 0)) for f in price.get("fees", []))
        taxes = round(max(0.0, total - base - fees), 2)

        cabin = "economy"
        fare_basis = ""
        booking_class = "Y"
        traveler_pricings = offer.get("travelerPricings", [])
        if traveler_pricings:
            fare_details = traveler_pricings[0].get("fareDetailsBySegment", [])
            if fare_details:
                cabin = CABIN_MAP.get(fare_details[0].get("cabin", "ECONOMY"), "economy")
                fare_basis = fare_details[0].get("fareBasis", "")
                booking_class = fare_details[0].get("class", booking_class)

        duration = self._parse_duration(itineraries[0].get("duration", ""))
        if not duration:
            duration = int((route[-1].arrival_time - route[0].departure_time).total_seconds() // 60)
        in_air = sum(s.duration_minutes for s in route)

        return FlightResult(
            id=f"{self.name}-{offer.get('id', '')}",
            source=self.name,
            airline=route[0].airline,
            flight_number=route[0].flight_number,
            route=route,
            duration_minutes=duration,
            layovers=len(route) - 1,
            layover_minutes=max(0, duration - in_air) if len(route) > 1 else None,
            pricing=PricingInfo(
                cash_price=base,
                currency=price.get("currency", "USD"),
                taxes=taxes,
                fees=fees,
                total_price=total,
            ),
            availability=AvailabilityInfo(
                seats_remaining=offer.get("numberOfBookableSeats"),
                booking_class=booking_class,
                fare_basis=fare_basis,
                cabin_class=cabin,
            ),
        )

    @staticmethod
    def _parse_time(value: str) -> datetime:
        """Airport-local wall-clock time; Amadeus sends no offset, so it stays naive."""
        return datetime.fromisoformat(value)

    @staticmethod
    def _parse_duration(duration_str: str) -> int:
        """Parse ISO 8601 duration (PT2H30M, P1DT2H) to minutes."""
        if not duration_str or not duration_str.startswith("P"):
            return 0
        days = 0
        body = duration_str[1:]
        if "T" in body:
            day_part, body = body.split("T", 1)
        else:
            day_part, body = body, ""
        if day_part.endswith("D"):
            days = int(day_part[:-1] or 0)
        hours = 0
        minutes = 0
        if "H" in body:
            h_part, body = body.split("H")
            hours = int(h_part)
        if "M" in body:
            m_part = body.replace("M", "")
            if m_part:
                minutes = int(m_part)
        return days * 24 * 60 + hours * 60 + minutes

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None
