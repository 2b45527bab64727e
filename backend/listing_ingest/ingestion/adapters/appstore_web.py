"""App Store web page adapter.

Fetches the public storefront page (apps.apple.com) and extracts listing
metadata from the DOM and the embedded JSON-LD block. This is the only
source that carries the real subtitle; the iTunes APIs do not expose it.
"""

import json
import re
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup

from listing_ingest.config import AdapterSettings, settings
from listing_ingest.ingestion.base import (
    BaseHTMLAdapter,
    FetchOptions,
    NormalizedRecord,
    RawPayload,
    canonical_app_id,
)
from listing_ingest.ingestion.results import Ok, Rejected, StageResult, TransformRejection


_COUNT_RE = re.compile(r"(\d+(?:[.,]\d+)*)\s*([KkMm])?")


def _first_srcset_url(value: Optional[str]) -> str:
    """First URL out of a srcset ("a.jpg 1x, b.jpg 2x") or a plain src."""
    if not value:
        return ""
    first = value.split(",")[0].strip()
    return first.split(" ")[0] if first else ""


def parse_rating_count(text: str) -> Optional[int]:
    """Parse "1.2K Ratings" / "23,290 Ratings" / "3M Ratings" into an int."""
    match = _COUNT_RE.search(text or "")
    if not match:
        return None
    number_text, suffix = match.groups()
    if suffix:
        number = float(number_text.replace(",", "."))
    else:
        number = float(number_text.replace(",", ""))
    multiplier = {"k": 1_000, "m": 1_000_000}.get((suffix or "").lower(), 1)
    return int(round(number * multiplier))


class AppStoreWebAdapter(BaseHTMLAdapter):
    """Storefront HTML adapter (apps.apple.com/{country}/app/id{id})."""

    adapter_name = "appstore-web"

    BASE_URL = "https://apps.apple.com"

    # JSON-LD SoftwareApplication keys we map or knowingly ignore
    known_raw_fields = frozenset({
        "@context",
        "@type",
        "name",
        "description",
        "applicationCategory",
        "author",
        "aggregateRating",
        "offers",
        "image",
        "screenshot",
        "operatingSystem",
        "url",
        "availableOnDevice",
        "contentRating",
    })

    def __init__(
        self,
        config: Optional[AdapterSettings] = None,
        http_client=None,
        health_window: int = 50,
        user_agent: Optional[str] = None,
    ):
        super().__init__(config=config, http_client=http_client, health_window=health_window)
        self.user_agent = user_agent or settings.USER_AGENT

    def build_url(self, identifier: str, country: str) -> str:
        return f"{self.BASE_URL}/{country.lower()}/app/id{canonical_app_id(identifier)}"

    async def fetch(self, identifier: str, options: Optional[FetchOptions] = None) -> RawPayload:
        options = options or FetchOptions()
        url = self.build_url(identifier, options.country)
        headers = {
            "User-Agent": self.user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
        }
        timeout = options.timeout_ms / 1000.0 if options.timeout_ms else None

        self.logger.debug("fetching_storefront_page", identifier=identifier, url=url)
        return await self._http_get(identifier, url, headers=headers, timeout=timeout)

    def transform(self, raw: RawPayload) -> StageResult:
        soup = BeautifulSoup(raw.text, "html.parser")

        json_ld = self._extract_json_ld(soup)
        dom = self._extract_dom(soup)

        title = dom["title"] or self._as_text(json_ld.get("name"))
        if not title:
            return Rejected(TransformRejection("missing_title", "no product header or JSON-LD name"))

        aggregate = json_ld.get("aggregateRating") if isinstance(json_ld.get("aggregateRating"), dict) else {}
        author = json_ld.get("author")
        author_name = author.get("name") if isinstance(author, dict) else author

        record = NormalizedRecord(
            identifier=self._page_app_id(soup) or canonical_app_id(raw.identifier) or raw.identifier,
            title=title,
            # DOM only; JSON-LD has no subtitle
            subtitle=dom["subtitle"],
            description=self._as_text(json_ld.get("description")) or dom["description"],
            developer=self._as_text(author_name) or dom["developer"],
            category=self._as_text(json_ld.get("applicationCategory")) or dom["category"],
            rating=aggregate.get("ratingValue", dom["rating"]),
            rating_count=aggregate.get("reviewCount", aggregate.get("ratingCount", dom["rating_count"])),
            icon_url=dom["icon_url"] or self._as_text(json_ld.get("image")),
            screenshot_urls=dom["screenshot_urls"],
            # Legacy singular field: a string, or a list on newer pages
            screenshot=json_ld.get("screenshot"),
            source_name=self.name,
            raw_field_names=frozenset(json_ld.keys()),
        )
        return Ok(record)

    @staticmethod
    def _as_text(value: Any) -> str:
        return value.strip() if isinstance(value, str) else ""

    def _extract_json_ld(self, soup: BeautifulSoup) -> Dict[str, Any]:
        """The SoftwareApplication JSON-LD object, or {}."""
        for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
            text = script.string or script.get_text()
            if not text or "SoftwareApplication" not in text:
                continue
            try:
                data = json.loads(text)
            except ValueError as e:
                self.logger.warning("json_ld_parse_failed", error=str(e))
                continue
            candidates = data if isinstance(data, list) else [data]
            for candidate in candidates:
                if isinstance(candidate, dict) and candidate.get("@type") == "SoftwareApplication":
                    return candidate
        return {}

    def _extract_dom(self, soup: BeautifulSoup) -> Dict[str, Any]:
        title = ""
        title_el = soup.select_one("h1.product-header__title") or soup.select_one(".product-header__title")
        if title_el is not None:
            # Age-rating badge ("4+") sits inside the h1
            for badge in title_el.select(".badge"):
                badge.decompose()
            title = title_el.get_text(" ", strip=True)

        subtitle_el = soup.select_one("h2.product-header__subtitle") or soup.select_one(
            ".product-header__subtitle"
        )
        developer_el = soup.select_one(".product-header__identity a")
        genre_el = soup.select_one('.product-header__list a[href*="/genre/"]')
        rating_el = soup.select_one(".we-customer-ratings__averages__display")
        count_el = soup.select_one(".we-customer-ratings__count")
        description_el = soup.select_one(".section__description .we-truncate") or soup.select_one(
            ".section__description p"
        )

        icon_url = ""
        for selector in (".product-header__icon source", ".product-header__icon img"):
            icon_el = soup.select_one(selector)
            if icon_el is not None:
                icon_url = _first_srcset_url(icon_el.get("srcset") or icon_el.get("src"))
                if icon_url:
                    break

        return {
            "title": title,
            "subtitle": subtitle_el.get_text(" ", strip=True) if subtitle_el else "",
            "developer": developer_el.get_text(" ", strip=True) if developer_el else "",
            "category": genre_el.get_text(" ", strip=True) if genre_el else "",
            "rating": rating_el.get_text(strip=True) if rating_el else None,
            "rating_count": parse_rating_count(count_el.get_text(" ", strip=True)) if count_el else None,
            "description": description_el.get_text("\n", strip=True) if description_el else "",
            "icon_url": icon_url,
            "screenshot_urls": self._extract_screenshots(soup),
        }

    @staticmethod
    def _extract_screenshots(soup: BeautifulSoup) -> List[str]:
        selectors = (
            'picture[class*="screenshot"] source',
            ".product-media__item picture source",
            ".product-media__item img",
        )
        for selector in selectors:
            urls = []
            for element in soup.select(selector):
                url = _first_srcset_url(element.get("srcset") or element.get("src"))
                if url and url not in urls:
                    urls.append(url)
            if urls:
                return urls
        return []

    @staticmethod
    def _page_app_id(soup: BeautifulSoup) -> Optional[str]:
        """App id the page says it describes (canonical link or og:url)."""
        link = soup.find("link", attrs={"rel": "canonical"})
        if link is not None and link.get("href"):
            app_id = canonical_app_id(link["href"])
            if app_id:
                return app_id
        og_url = soup.find("meta", attrs={"property": "og:url"})
        if og_url is not None and og_url.get("content"):
            return canonical_app_id(og_url["content"])
        return None
