"""Scoring engine: ranks flight options with configurable cost/convenience weights."""

import math
from dataclasses import dataclass

from flightsearch.schemas.flight import FlightResult


@dataclass
class Weights:
    cost: float = 0.5
    time: float = 0.3
    stops: float = 0.15
    departure: float = 0.05


def slider_to_weights(slider_position: float) -> Weights:
    """
    Map slider position (0=cheapest, 100=most convenient) to weight vector.

    At 0: cost=0.8, time=0.1, stops=0.05, departure=0.05
    At 100: cost=0.1, time=0.5, stops=0.3, departure=0.1
    """
    t = max(0.0, min(100.0, slider_position)) / 100.0

    return Weights(
        cost=0.8 - 0.7 * t,
        time=0.1 + 0.4 * t,
        stops=0.05 + 0.25 * t,
        departure=0.05 + 0.05 * t,
    )


def score_flights(flights: list[FlightResult], weights: Weights | None = None) -> list[FlightResult]:
    """
    Score flight options relative to each other.

    Each flight gets a score 0-100 (higher = better match for given weights).
    Input order is preserved; sorting is the caller's business.
    """
    if not flights:
        return []

    if weights is None:
        weights = Weights()

    total_weight = weights.cost + weights.time + weights.stops + weights.departure
    if total_weight <= 0:
        total_weight = 1.0

    # Extract min/max for normalization
    prices = [f.total_price for f in flights]
    durations = [f.duration_minutes for f in flights]
    stops_list = [f.layovers for f in flights]

    min_price = min(prices)
    max_price = max(prices) if max(prices) > min_price else min_price + 1
    min_duration = min(durations)
    max_duration = max(durations) if max(durations) > min_duration else min_duration + 1
    max_stops = max(stops_list) if max(stops_list) > 0 else 1

    scored = []
    for flight in flights:
        cost_score = 1.0 - (flight.total_price - min_price) / (max_price - min_price)
        time_score = 1.0 - (flight.duration_minutes - min_duration) / (max_duration - min_duration)
        stops_score = 1.0 - flight.layovers / max_stops

        # Departure score: gaussian centered on 9am (peak preference)
        departure_score = math.exp(-0.5 * ((_departure_hour(flight) - 9) / 3) ** 2)

        composite = (
            weights.cost * cost_score
            + weights.time * time_score
            + weights.stops * stops_score
            + weights.departure * departure_score
        ) / total_weight

        final_score = round(max(0.0, min(1.0, composite)) * 100, 1)
        scored.append(flight.model_copy(update={"score": final_score}))

    return scored


def _departure_hour(flight: FlightResult) -> float:
    """Local departure hour, noon when unknown."""
    dep = flight.departure_time
    if dep is None:
        return 12.0
    return dep.hour + dep.minute / 60
