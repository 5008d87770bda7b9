"""Error taxonomy for flight search orchestration.

Source-level errors are caught per source and recorded as failed outcomes.
Orchestration-level errors are raised to the caller before any network call.
"""


class FlightSearchError(Exception):
    """Base class for every error raised by this package."""


# --- Source level ---


class SourceError(FlightSearchError):
    def __init__(
        self,
        source: str,
        message: str,
        code: str = "SOURCE_ERROR",
        retryable: bool = False,
        status_code: int | None = None,
    ):
        super().__init__(f"{source}: {message}")
        self.source = source
        self.message = message
        self.code = code
        self.retryable = retryable
        self.status_code = status_code


class RateLimitExceeded(SourceError):
    def __init__(self, source: str):
        super().__init__(source, f"Rate limit exceeded for {source}", code="RATE_LIMITED")


class SourceTimeout(SourceError):
    def __init__(self, source: str, timeout: float):
        super().__init__(
            source,
            f"Search timed out after {timeout:g}s",
            code="TIMEOUT",
            retryable=True,
        )


class MalformedResponse(SourceError):
    def __init__(self, source: str, detail: str):
        super().__init__(source, f"Malformed response: {detail}", code="MALFORMED_RESPONSE")


class SearchCancelled(SourceError):
    def __init__(self, source: str):
        super().__init__(source, "Search cancelled", code="CANCELLED")


# --- Orchestration level ---


class InvalidCriteria(FlightSearchError):
    pass


class UnknownSource(FlightSearchError):
    def __init__(self, name: str):
        super().__init__(f"Unknown source: {name}")
        self.name = name


class DuplicateSearch(FlightSearchError):
    def __init__(self, search_id: str):
        super().__init__(f"Search already running: {search_id}")
        self.search_id = search_id


class SearchNotFound(FlightSearchError):
    def __init__(self, search_id: str):
        super().__init__(f"Search not found: {search_id}")
        self.search_id = search_id


class SearchNotReady(FlightSearchError):
    def __init__(self, search_id: str, status: str):
        super().__init__(f"Search {search_id} has no results yet (status: {status})")
        self.search_id = search_id
        self.status = status
