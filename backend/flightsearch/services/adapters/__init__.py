"""Airline source adapters.

Modules:
    base        SourceClient contract, ManagedAdapter wrapper, AdapterStats
    mock        Deterministic mock source for demo and development
    amadeus     Amadeus Self-Service flight-offers source
    registry    Named adapter registry built from settings

Pipeline per source search:
    RateLimiter.acquire → ResponseCache.get → call_with_retry(fetch)
    → normalize → ResponseCache.set → AdapterStats
"""
