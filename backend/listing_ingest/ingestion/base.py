"""Base source adapter interface and pipeline data structures.

Every upstream (lookup API, search API, storefront HTML page) is bound to
the pipeline by a BaseSourceAdapter subclass implementing fetch() and
transform(). Adapters know nothing about each other; ordering and fallback
belong to the orchestrator.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple
from urllib.parse import urlparse

import httpx
import structlog

from listing_ingest.config import AdapterSettings
from listing_ingest.core.exceptions import FetchError, FetchErrorKind
from listing_ingest.ingestion.health import AdapterHealth
from listing_ingest.ingestion.results import StageResult, TransformRejection


class PayloadSignature(str, Enum):
    """What a raw response actually contains, independent of its HTTP status."""

    LISTING_PAGE = "LISTING_PAGE"
    REVIEW_FRAGMENT = "REVIEW_FRAGMENT"
    ERROR_PAGE = "ERROR_PAGE"
    BLOCK_PAGE = "BLOCK_PAGE"
    UNKNOWN = "UNKNOWN"


# Canonical fields tracked for completeness and drift. Pipeline-stamped
# fields (identifier, source_name, schema_version, normalized_at) are excluded.
CANONICAL_FIELDS: Tuple[str, ...] = (
    "title",
    "subtitle",
    "description",
    "developer",
    "category",
    "rating",
    "rating_count",
    "icon_url",
    "screenshot_urls",
)

_APP_ID_RE = re.compile(r"(?:^|/|\bid)(\d{5,})(?:$|[/?#])")


def canonical_app_id(identifier: str) -> Optional[str]:
    """Reduce an identifier to the numeric App Store id.

    Accepts "389801252", "id389801252" and storefront URLs such as
    "https://apps.apple.com/us/app/instagram/id389801252".

    Returns:
        Numeric id as a string, or None if the identifier carries none
    """
    if not identifier:
        return None
    value = identifier.strip()
    if value.isdigit():
        return value
    if value.lower().startswith("id") and value[2:].isdigit():
        return value[2:]
    match = _APP_ID_RE.search(value)
    return match.group(1) if match else None


def identifier_mismatch(requested: str, described: str) -> Optional[TransformRejection]:
    """Rejection for a payload that describes a different app than was asked for.

    Both sides are compared in canonical form, so "id389801252" matches
    "389801252". Returns None when they agree.
    """
    wanted = canonical_app_id(requested) or requested
    got = canonical_app_id(described) or described
    if got == wanted:
        return None
    return TransformRejection("identifier_mismatch", f"requested {wanted}, payload describes {got}")


@dataclass(frozen=True)
class FetchOptions:
    """Per-call fetch options."""

    country: str = "us"
    timeout_ms: Optional[int] = None


@dataclass(frozen=True)
class RawPayload:
    """One captured upstream response. Immutable once captured."""

    source_name: str
    identifier: str
    fetched_at: datetime
    http_status: int
    content_type: str
    body: bytes
    url: str = ""

    @property
    def byte_length(self) -> int:
        return len(self.body)

    @property
    def media_type(self) -> str:
        """Content type without parameters, lower-cased (e.g. "text/html")."""
        return self.content_type.split(";", 1)[0].strip().lower()

    @property
    def text(self) -> str:
        """Body decoded with the declared charset, falling back to UTF-8."""
        charset = "utf-8"
        for param in self.content_type.split(";")[1:]:
            key, _, value = param.partition("=")
            if key.strip().lower() == "charset" and value.strip():
                charset = value.strip().strip('"')
        try:
            return self.body.decode(charset, errors="replace")
        except LookupError:
            return self.body.decode("utf-8", errors="replace")

    @classmethod
    def empty(cls, source_name: str, identifier: str, http_status: int = 0, url: str = "") -> "RawPayload":
        """Placeholder payload for attempts that never produced a response."""
        return cls(
            source_name=source_name,
            identifier=identifier,
            fetched_at=datetime.now(timezone.utc),
            http_status=http_status,
            content_type="",
            body=b"",
            url=url,
        )


@dataclass
class NormalizedRecord:
    """Canonical listing record.

    Adapters return a candidate built from the upstream payload; the
    normalizer turns it into the final record. Candidates may still carry
    the legacy singular ``screenshot`` field and the raw upstream field
    names, neither of which is part of the canonical output.
    """

    identifier: str
    title: str = ""
    subtitle: str = ""
    description: str = ""
    developer: str = ""
    category: str = ""
    rating: Any = None
    rating_count: Any = None
    icon_url: str = ""
    screenshot_urls: List[str] = field(default_factory=list)
    source_name: str = ""
    schema_version: str = ""
    normalized_at: Optional[datetime] = None
    screenshot: Any = None
    raw_field_names: FrozenSet[str] = field(default_factory=frozenset)

    def to_dict(self, include_timestamp: bool = True) -> Dict[str, Any]:
        """Canonical fields as a plain dict.

        Args:
            include_timestamp: Include normalized_at (excluded when comparing
                reprocessed records)
        """
        data = asdict(self)
        data.pop("screenshot")
        data.pop("raw_field_names")
        data["screenshot_urls"] = list(self.screenshot_urls)
        if include_timestamp:
            data["normalized_at"] = self.normalized_at.isoformat() if self.normalized_at else None
        else:
            data.pop("normalized_at")
        return data


class BaseSourceAdapter(ABC):
    """Abstract base class for all metadata source adapters.

    Subclasses set ``adapter_name`` and implement fetch() and transform().
    Priority, enabled flag, limits and timeouts come from AdapterSettings.
    """

    adapter_name: str = ""  # Must be overridden in subclass (e.g., "itunes-lookup")
    expected_content_types: Tuple[str, ...] = ()
    # Canonical fields this upstream is expected to provide; drift is only tracked for these.
    expected_fields: Tuple[str, ...] = CANONICAL_FIELDS
    # Raw upstream field names the adapter maps or knowingly ignores.
    known_raw_fields: FrozenSet[str] = frozenset()

    def __init__(
        self,
        config: Optional[AdapterSettings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        health_window: int = 50,
    ):
        """Initialize the adapter.

        Args:
            config: Adapter configuration; defaults to priority 100, enabled
            http_client: Shared httpx.AsyncClient (created per request if None)
            health_window: Number of outcomes in the rolling success rate
        """
        self.config = config or AdapterSettings(name=self.adapter_name, priority=100)
        if self.config.name != self.adapter_name:
            raise ValueError(
                f"Config name '{self.config.name}' does not match adapter '{self.adapter_name}'"
            )
        self.http_client = http_client
        self.health = AdapterHealth(window_size=health_window)
        self.logger = structlog.get_logger().bind(adapter=self.adapter_name)

    @property
    def name(self) -> str:
        return self.adapter_name

    @property
    def priority(self) -> int:
        return self.config.priority

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @enabled.setter
    def enabled(self, value: bool) -> None:
        self.config = self.config.model_copy(update={"enabled": value})

    @property
    def min_response_bytes(self) -> int:
        return self.config.min_response_bytes

    @property
    def timeout_seconds(self) -> float:
        return self.config.timeout_ms / 1000.0

    def accepts(self, identifier: str) -> bool:
        """Whether this adapter can serve the identifier at all."""
        return canonical_app_id(identifier) is not None

    @abstractmethod
    async def fetch(self, identifier: str, options: Optional[FetchOptions] = None) -> RawPayload:
        """Fetch the raw upstream response for an identifier.

        Args:
            identifier: Opaque app identifier
            options: Country and timeout overrides

        Returns:
            RawPayload for any HTTP response below 500

        Raises:
            FetchError: On transport failure, timeout or 5xx status
        """

    def classify(self, raw: RawPayload) -> PayloadSignature:
        """Label what the payload contains. Pure."""
        from listing_ingest.ingestion.utils.classifier import PayloadClassifier

        return PayloadClassifier.classify(raw)

    @abstractmethod
    def transform(self, raw: RawPayload) -> StageResult:
        """Turn a LISTING_PAGE payload into a candidate NormalizedRecord.

        Must be pure and deterministic: no I/O, no clock reads.

        Returns:
            Ok(NormalizedRecord) or Rejected(TransformRejection)
        """

    async def _http_get(
        self,
        identifier: str,
        url: str,
        params: Optional[Dict[str, str]] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> RawPayload:
        """GET a URL and capture the response as a RawPayload.

        Maps httpx failures onto FetchError kinds. Responses with status
        below 500 are returned untouched so block and error pages can be
        validated, classified and persisted.
        """
        timeout = timeout if timeout is not None else self.timeout_seconds
        try:
            if self.http_client is not None:
                response = await self.http_client.get(
                    url, params=params, headers=headers, timeout=timeout
                )
            else:
                async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
                    response = await client.get(url, params=params, headers=headers)
        except httpx.TimeoutException as e:
            raise FetchError(self.name, FetchErrorKind.TIMEOUT, str(e) or "request timed out") from e
        except httpx.HTTPError as e:
            raise FetchError(self.name, FetchErrorKind.TRANSPORT, str(e) or type(e).__name__) from e

        if response.status_code >= 500:
            raise FetchError(
                self.name,
                FetchErrorKind.HTTP_STATUS,
                f"upstream returned {response.status_code}",
                status_code=response.status_code,
            )

        self.logger.debug(
            "upstream_response",
            url=str(response.url),
            status=response.status_code,
            bytes=len(response.content),
        )

        return RawPayload(
            source_name=self.name,
            identifier=identifier,
            fetched_at=datetime.now(timezone.utc),
            http_status=response.status_code,
            content_type=response.headers.get("content-type", ""),
            body=response.content,
            url=str(response.url),
        )


class BaseAPIAdapter(BaseSourceAdapter):
    """Base class for JSON API adapters (iTunes lookup/search)."""

    expected_content_types = ("application/json", "text/javascript")
    API_BASE_URL = "https://itunes.apple.com"


class BaseHTMLAdapter(BaseSourceAdapter):
    """Base class for HTML page adapters."""

    expected_content_types = ("text/html",)


def is_valid_url(url: Any) -> bool:
    """True for absolute http(s) URLs with a host."""
    if not isinstance(url, str):
        return False
    candidate = url.strip()
    if not candidate or any(ch.isspace() for ch in candidate):
        return False
    parsed = urlparse(candidate)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)
