"""Mock airline source: deterministic demo data with optional simulated failures."""

import asyncio
import hashlib
import random
from datetime import datetime, timedelta
from typing import Any

import httpx

from flightsearch.config import AirlineConfig
from flightsearch.schemas.flight import (
    AvailabilityInfo,
    FlightResult,
    FlightSegment,
    PointsOption,
    PricingInfo,
)
from flightsearch.schemas.search import SearchRequest
from flightsearch.services.adapters.base import SourceClient

AIRLINES = ["AA", "UA", "DL", "WN", "B6", "AS"]
AIRCRAFT = ["Boeing 737", "Airbus A320", "Boeing 777", "Airbus A330", "Boeing 787"]
HUBS = ["DFW", "ATL", "ORD", "DEN", "PHX", "LAX", "JFK", "EWR"]

BOOKING_CLASS = {"economy": "Y", "premium_economy": "W", "business": "J", "first": "F"}
CABIN_MULTIPLIER = {"economy": 1.0, "premium_economy": 1.8, "business": 3.5, "first": 6.0}

# Simulated failures, mirroring what real sources send back
SIMULATED_ERRORS = [500, 429, 503, None]


class MockSource(SourceClient):
    def __init__(
        self,
        config: AirlineConfig,
        delay_ms: int = 500,
        error_rate: float = 0.0,
        fail_with_status: int | None = None,
    ):
        super().__init__(config)
        self.delay_ms = delay_ms
        self.error_rate = error_rate
        self.fail_with_status = fail_with_status
        self._error_rng = random.Random()

    async def fetch(self, request: SearchRequest) -> dict:
        await asyncio.sleep(self.delay_ms / 1000)

        if self.fail_with_status is not None:
            raise self._http_error(self.fail_with_status)
        if self.error_rate and self._error_rng.random() < self.error_rate:
            status = self._error_rng.choice(SIMULATED_ERRORS)
            if status is None:
                raise httpx.ReadTimeout("Simulated request timeout")
            raise self._http_error(status)

        return {"flights": self._generate_flights(request)}

    def normalize(self, raw: dict, request: SearchRequest) -> list[FlightResult]:
        flights = []
        for f in raw["flights"]:
            route = [FlightSegment(**seg) for seg in f["segments"]]
            layover_minutes = sum(
                int((nxt.departure_time - cur.arrival_time).total_seconds() // 60)
                for cur, nxt in zip(route, route[1:])
            )
            flights.append(FlightResult(
                id=f"{self.name}-{f['id']}",
                source=self.name,
                airline=f["airline"],
                flight_number=f["flight_number"],
                route=route,
                duration_minutes=f["duration_minutes"],
                layovers=len(route) - 1,
                layover_minutes=layover_minutes if len(route) > 1 else None,
                pricing=PricingInfo(
                    cash_price=f["base_fare"],
                    currency="USD",
                    taxes=f["taxes"],
                    fees=f["fees"],
                    total_price=round(f["base_fare"] + f["taxes"] + f["fees"], 2),
                    points_options=[PointsOption(**p) for p in f["points"]],
                ),
                availability=AvailabilityInfo(
                    seats_remaining=f["seats"],
                    booking_class=BOOKING_CLASS.get(request.criteria.cabin_class, "Y"),
                    fare_basis=f["fare_basis"],
                    cabin_class=request.criteria.cabin_class,
                    restrictions=f["restrictions"],
                ),
            ))
        return flights

    def _http_error(self, status: int) -> httpx.HTTPStatusError:
        req = httpx.Request("GET", f"https://mock.{self.name}.invalid/search")
        resp = httpx.Response(status, request=req)
        return httpx.HTTPStatusError(f"Simulated HTTP {status}", request=req, response=resp)

    def _generate_flights(self, request: SearchRequest) -> list[dict[str, Any]]:
        c = request.criteria
        # Same route/date/cabin/source always yields the same flights
        seed_str = f"{self.name}{c.origin}{c.destination}{c.departure_date.isoformat()}{c.cabin_class}"
        rng = random.Random(int(hashlib.md5(seed_str.encode()).hexdigest()[:8], 16))

        flights = []
        for i in range(rng.randint(3, 8)):
            airline = rng.choice(AIRLINES)
            dep = datetime(
                c.departure_date.year, c.departure_date.month, c.departure_date.day,
                rng.randint(6, 21), rng.choice([0, 15, 30, 45]),
            )
            stops = rng.choices([0, 1], weights=[70, 30])[0]
            segments = self._build_segments(rng, airline, c.origin, c.destination, dep, stops)
            total_minutes = int(
                (segments[-1]["arrival_time"] - segments[0]["departure_time"]).total_seconds() // 60
            )

            base_fare = round(rng.randint(200, 1000) * CABIN_MULTIPLIER.get(c.cabin_class, 1.0), 2)
            taxes = round(base_fare * 0.15, 2)
            fees = float(rng.randint(10, 60))
            flights.append({
                "id": f"{i + 1}",
                "airline": airline,
                "flight_number": segments[0]["flight_number"],
                "segments": segments,
                "duration_minutes": total_minutes,
                "base_fare": base_fare,
                "taxes": taxes,
                "fees": fees,
                "points": [
                    {
                        "program": "Chase Ultimate Rewards",
                        "points_required": int(base_fare * 80),
                        "cash_component": taxes + fees,
                        "transfer_ratio": 1.0,
                        "best_value": True,
                    },
                    {
                        "program": f"{airline} Miles",
                        "points_required": int(base_fare * 100),
                        "cash_component": taxes + fees,
                        "transfer_ratio": 1.0,
                        "best_value": False,
                    },
                ],
                "seats": rng.randint(1, 9),
                "fare_basis": f"{BOOKING_CLASS.get(c.cabin_class, 'Y')}{rng.randint(0, 9)}",
                "restrictions": ["Non-refundable", "24hr cancellation"] if rng.random() < 0.5 else [],
            })
        return flights

    @staticmethod
    def _build_segments(
        rng: random.Random,
        airline: str,
        origin: str,
        destination: str,
        departure: datetime,
        stops: int,
    ) -> list[dict[str, Any]]:
        if stops == 0:
            duration = rng.randint(120, 480)
            return [{
                "airline": airline,
                "flight_number": f"{airline}{rng.randint(1000, 9999)}",
                "origin": origin,
                "destination": destination,
                "departure_time": departure,
                "arrival_time": departure + timedelta(minutes=duration),
                "duration_minutes": duration,
                "aircraft": rng.choice(AIRCRAFT),
            }]

        hub = rng.choice([h for h in HUBS if h not in (origin, destination)])
        first_leg = rng.randint(90, 240)
        layover = rng.randint(60, 180)
        second_leg = rng.randint(90, 240)
        first_arrival = departure + timedelta(minutes=first_leg)
        second_departure = first_arrival + timedelta(minutes=layover)
        return [
            {
                "airline": airline,
                "flight_number": f"{airline}{rng.randint(1000, 9999)}",
                "origin": origin,
                "destination": hub,
                "departure_time": departure,
                "arrival_time": first_arrival,
                "duration_minutes": first_leg,
                "aircraft": rng.choice(AIRCRAFT),
            },
            {
                "airline": airline,
                "flight_number": f"{airline}{rng.randint(1000, 9999)}",
                "origin": hub,
                "destination": destination,
                "departure_time": second_departure,
                "arrival_time": second_departure + timedelta(minutes=second_leg),
                "duration_minutes": second_leg,
                "aircraft": rng.choice(AIRCRAFT),
            },
        ]
