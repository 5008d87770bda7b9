"""Merge, dedupe, filter and sort normalized flight results."""

from typing import Callable

from flightsearch.schemas.flight import FlightResult
from flightsearch.schemas.search import SearchFilters

_SORT_FIELDS: dict[str, Callable[[FlightResult], float]] = {
    "price": lambda f: f.total_price,
    "duration": lambda f: f.duration_minutes,
    "score": lambda f: f.score,
}


def dedupe_flights(flights: list[FlightResult]) -> list[FlightResult]:
    """Collapse the same itinerary sold by several sources, keeping the cheapest."""
    best: dict[tuple, FlightResult] = {}
    for f in flights:
        key = f.dedupe_key()
        current = best.get(key)
        if current is None or f.total_price < current.total_price:
            best[key] = f
    return list(best.values())


def sort_flights(
    flights: list[FlightResult],
    sort_by: str = "price",
    sort_order: str = "asc",
) -> list[FlightResult]:
    """Stable sort; ties always fall back to lowest price, then shortest duration."""
    primary = _SORT_FIELDS.get(sort_by)
    if primary is None:
        raise ValueError(f"Unsupported sort field: {sort_by}")
    sign = -1 if sort_order == "desc" else 1
    return sorted(
        flights,
        key=lambda f: (sign * primary(f), f.total_price, f.duration_minutes),
    )


def filter_flights(flights: list[FlightResult], filters: SearchFilters) -> list[FlightResult]:
    airlines = {a.upper() for a in filters.airlines} if filters.airlines else None
    return [
        f for f in flights
        if (filters.max_price is None or f.total_price <= filters.max_price)
        and (filters.max_stops is None or f.layovers <= filters.max_stops)
        and (filters.max_duration is None or f.duration_minutes <= filters.max_duration)
        and (airlines is None or f.airline.upper() in airlines)
        and (filters.cabin_class is None or f.availability.cabin_class == filters.cabin_class)
        and _in_departure_window(f, filters)
    ]


def _in_departure_window(flight: FlightResult, filters: SearchFilters) -> bool:
    window = filters.departure_window
    if window is None:
        return True
    dep = flight.departure_time
    if dep is None:
        return False
    hhmm = dep.strftime("%H:%M")
    if window.earliest <= window.latest:
        return window.earliest <= hhmm <= window.latest
    # Overnight window, e.g. 22:00-05:00
    return hhmm >= window.earliest or hhmm <= window.latest
