"""iTunes Lookup API adapter.

Documentation: https://performance-partners.apple.com/search-api
The lookup endpoint resolves a numeric track id directly. It has no
subtitle field, so ``trackName`` is used whole as the title.
"""

import json
from typing import Any, Dict, Optional

from listing_ingest.ingestion.base import (
    CANONICAL_FIELDS,
    BaseAPIAdapter,
    FetchOptions,
    NormalizedRecord,
    RawPayload,
    canonical_app_id,
)
from listing_ingest.ingestion.results import Ok, Rejected, StageResult, TransformRejection


# Software result keys the iTunes APIs currently return
ITUNES_SOFTWARE_FIELDS = frozenset({
    "advisories",
    "appletvScreenshotUrls",
    "artistId",
    "artistName",
    "artistViewUrl",
    "artworkUrl100",
    "artworkUrl512",
    "artworkUrl60",
    "averageUserRating",
    "averageUserRatingForCurrentVersion",
    "bundleId",
    "contentAdvisoryRating",
    "currency",
    "currentVersionReleaseDate",
    "description",
    "features",
    "fileSizeBytes",
    "formattedPrice",
    "genreIds",
    "genres",
    "ipadScreenshotUrls",
    "isGameCenterEnabled",
    "isVppDeviceBasedLicensingEnabled",
    "kind",
    "languageCodesISO2A",
    "minimumOsVersion",
    "price",
    "primaryGenreId",
    "primaryGenreName",
    "releaseDate",
    "releaseNotes",
    "screenshotUrls",
    "sellerName",
    "sellerUrl",
    "supportedDevices",
    "trackCensoredName",
    "trackContentRating",
    "trackId",
    "trackName",
    "trackViewUrl",
    "userRatingCount",
    "userRatingCountForCurrentVersion",
    "version",
    "wrapperType",
})


class ItunesLookupAdapter(BaseAPIAdapter):
    """iTunes Lookup API adapter (GET /lookup?id=...)."""

    adapter_name = "itunes-lookup"

    LOOKUP_ENDPOINT = "/lookup"

    expected_fields = tuple(f for f in CANONICAL_FIELDS if f != "subtitle")
    known_raw_fields = ITUNES_SOFTWARE_FIELDS

    def accepts(self, identifier: str) -> bool:
        # Lookup only works with numeric ids
        return canonical_app_id(identifier) is not None

    async def fetch(self, identifier: str, options: Optional[FetchOptions] = None) -> RawPayload:
        options = options or FetchOptions()
        params = {
            "id": canonical_app_id(identifier) or identifier,
            "country": options.country.lower(),
            "entity": "software",
        }
        timeout = options.timeout_ms / 1000.0 if options.timeout_ms else None

        self.logger.debug("calling_lookup_api", identifier=identifier, country=params["country"])
        return await self._http_get(
            identifier,
            f"{self.API_BASE_URL}{self.LOOKUP_ENDPOINT}",
            params=params,
            timeout=timeout,
        )

    def transform(self, raw: RawPayload) -> StageResult:
        result = self._select_result(raw)
        if isinstance(result, Rejected):
            return result

        title, subtitle = self.split_title(result.get("trackName"))
        return Ok(self._to_record(result, title, subtitle))

    def split_title(self, track_name: Any):
        """Lookup trackName is the full app name; there is no subtitle."""
        return (track_name if isinstance(track_name, str) else ""), ""

    def _select_result(self, raw: RawPayload):
        """The software result whose trackId matches the requested id."""
        try:
            document = json.loads(raw.text)
        except ValueError as e:
            return Rejected(TransformRejection("invalid_json", str(e)))

        results = document.get("results") if isinstance(document, dict) else None
        if not isinstance(results, list):
            return Rejected(TransformRejection("missing_results"))

        wanted = canonical_app_id(raw.identifier)
        for item in results:
            if isinstance(item, dict) and str(item.get("trackId", "")) == wanted:
                return item
        return Rejected(
            TransformRejection("no_matching_result", f"no trackId {wanted} among {len(results)} results")
        )

    def _to_record(self, result: Dict[str, Any], title: str, subtitle: str) -> NormalizedRecord:
        return NormalizedRecord(
            identifier=str(result.get("trackId", "")),
            title=title,
            subtitle=subtitle,
            description=result.get("description") or "",
            developer=result.get("artistName") or result.get("sellerName") or "",
            category=result.get("primaryGenreName") or "",
            rating=result.get("averageUserRating"),
            rating_count=result.get("userRatingCount"),
            icon_url=result.get("artworkUrl512") or result.get("artworkUrl100") or "",
            screenshot_urls=list(result.get("screenshotUrls") or []),
            source_name=self.name,
            raw_field_names=frozenset(result.keys()),
        )
