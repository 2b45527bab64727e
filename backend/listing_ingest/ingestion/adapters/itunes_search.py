"""iTunes Search API adapter.

Searches with the identifier as the term and accepts only the result whose
trackId equals the requested id. Search results glue the subtitle onto the
name ("Instagram - Share & Connect"), so the title is split on the first
dash separator. The split is best-effort: a name that legitimately contains
" - " loses its tail to the subtitle.
"""

from typing import Any, Optional, Tuple

from listing_ingest.ingestion.adapters.itunes_lookup import ItunesLookupAdapter
from listing_ingest.ingestion.base import CANONICAL_FIELDS, FetchOptions, RawPayload, canonical_app_id


# Only dash-style separators; "Brand: Tagline" is usually the real name
SEARCH_TITLE_SEPARATORS = (" - ", " – ", " — ")


def split_search_title(value: Any) -> Tuple[str, str]:
    """Split "Title - Subtitle" at the earliest dash separator.

    Returns:
        (title, subtitle); ("Unknown App", "") for empty input
    """
    if not isinstance(value, str) or not value.strip():
        return "Unknown App", ""
    text = " ".join(value.split())

    positions = [(text.find(sep), sep) for sep in SEARCH_TITLE_SEPARATORS if sep in text]
    if not positions:
        return text, ""

    index, separator = min(positions)
    title = text[:index].strip()
    subtitle = text[index + len(separator):].strip()
    if not title:
        return text, ""
    return title, subtitle


class ItunesSearchAdapter(ItunesLookupAdapter):
    """iTunes Search API adapter (GET /search?term=...)."""

    adapter_name = "itunes-search"

    SEARCH_ENDPOINT = "/search"
    SEARCH_LIMIT = 25

    expected_fields = CANONICAL_FIELDS

    async def fetch(self, identifier: str, options: Optional[FetchOptions] = None) -> RawPayload:
        options = options or FetchOptions()
        params = {
            "term": canonical_app_id(identifier) or identifier,
            "country": options.country.lower(),
            "entity": "software",
            "limit": str(self.SEARCH_LIMIT),
        }
        timeout = options.timeout_ms / 1000.0 if options.timeout_ms else None

        self.logger.debug("calling_search_api", identifier=identifier, country=params["country"])
        return await self._http_get(
            identifier,
            f"{self.API_BASE_URL}{self.SEARCH_ENDPOINT}",
            params=params,
            timeout=timeout,
        )

    def split_title(self, track_name: Any):
        return split_search_title(track_name)
