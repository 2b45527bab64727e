"""Custom exception classes for the application."""

from enum import Enum
from typing import Optional, Sequence


class ListingIngestException(Exception):
    """Base exception for all Listing Ingest errors."""

    def __init__(self, message: str = "An unexpected error occurred"):
        self.message = message
        super().__init__(self.message)


class ConfigurationError(ListingIngestException):
    """Raised when adapters or limits are misconfigured."""


class FetchErrorKind(str, Enum):
    """Network-level failure categories for an adapter fetch."""

    TRANSPORT = "transport"
    TIMEOUT = "timeout"
    HTTP_STATUS = "http_status"


class FetchError(ListingIngestException):
    """Raised by an adapter when the upstream could not be reached.

    Only network-level problems raise this. A response that arrived but has
    the wrong content is returned as a RawPayload and judged downstream.
    """

    def __init__(
        self,
        source: str,
        kind: FetchErrorKind,
        message: str,
        status_code: Optional[int] = None,
    ):
        self.source = source
        self.kind = kind
        self.status_code = status_code
        self.detail = message
        super().__init__(f"Fetch error for {source} ({kind.value}): {message}")


class AllSourcesFailed(ListingIngestException):
    """Raised when every adapter was tried for an identifier and none answered."""

    def __init__(self, identifier: str, attempted_sources: Sequence[str]):
        self.identifier = identifier
        self.attempted_sources = list(attempted_sources)
        attempted = ", ".join(self.attempted_sources) or "none"
        super().__init__(
            f"All metadata sources failed for identifier '{identifier}'. Attempted: {attempted}"
        )
