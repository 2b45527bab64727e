"""Canonical normalization of candidate listing records.

Every adapter hands its candidate to MetadataNormalizer, which fixes the
known upstream quirks (HTML entities, duplicated subtitles, the plural vs
legacy singular screenshot fields, out-of-range numerics) and stamps the
schema version. It never raises and never does I/O.
"""

import html
import math
import re
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, List, Optional, Set

import structlog

from listing_ingest.ingestion.base import CANONICAL_FIELDS, NormalizedRecord, is_valid_url


logger = structlog.get_logger(__name__)

CURRENT_SCHEMA_VERSION = "1.1"
UNKNOWN_TITLE = "Unknown App"

# Separators upstreams use to glue a subtitle onto the title
TITLE_SEPARATORS = (" - ", " – ", " — ", ": ", " | ", " · ", " • ")

_ZERO_WIDTH_RE = re.compile("[\u200b\u200c\u200d\u2060\ufeff]")
_MULTI_BLANK_LINES_RE = re.compile(r"\n{3,}")
_INLINE_SPACE_RE = re.compile(r"[^\S\n]+")


def clean_text(value: Any) -> str:
    """Decode HTML entities and collapse all whitespace to single spaces.

    Args:
        value: Anything; non-strings become ""

    Returns:
        Cleaned single-line string
    """
    if not isinstance(value, str):
        return ""
    decoded = _ZERO_WIDTH_RE.sub("", html.unescape(value))
    return " ".join(decoded.split())


def clean_multiline(value: Any) -> str:
    """Like clean_text, but keeps paragraph breaks (used for descriptions)."""
    if not isinstance(value, str):
        return ""
    decoded = _ZERO_WIDTH_RE.sub("", html.unescape(value))
    decoded = decoded.replace("\r\n", "\n").replace("\r", "\n")
    lines = [_INLINE_SPACE_RE.sub(" ", line).strip() for line in decoded.split("\n")]
    return _MULTI_BLANK_LINES_RE.sub("\n\n", "\n".join(lines)).strip()


def _to_number(value: Any) -> Optional[float]:
    """Parse a numeric-looking value; None for absent or garbage input."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip().replace(",", "")
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number):
        return None
    return number


class MetadataNormalizer:
    """Map candidate records onto the canonical NormalizedRecord schema.

    Args:
        schema_version: Version stamped onto every record
        clock: Returns the normalized_at timestamp (injectable for tests)
    """

    def __init__(
        self,
        schema_version: str = CURRENT_SCHEMA_VERSION,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.schema_version = schema_version
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def normalize(self, record: NormalizedRecord, source_name: str) -> NormalizedRecord:
        """Produce the canonical record for a candidate.

        Args:
            record: Candidate from an adapter's transform()
            source_name: Adapter that produced the candidate

        Returns:
            New NormalizedRecord; the candidate is not modified
        """
        title = clean_text(record.title) or UNKNOWN_TITLE
        subtitle = self.normalize_subtitle(record.subtitle, title)

        normalized = NormalizedRecord(
            identifier=clean_text(record.identifier),
            title=title,
            subtitle=subtitle,
            description=clean_multiline(record.description),
            developer=clean_text(record.developer),
            category=clean_text(record.category),
            rating=self.normalize_rating(record.rating),
            rating_count=self.normalize_count(record.rating_count),
            icon_url=record.icon_url.strip() if is_valid_url(record.icon_url) else "",
            screenshot_urls=self.normalize_screenshots(record.screenshot_urls, record.screenshot),
            source_name=source_name,
            schema_version=self.schema_version,
            normalized_at=self._clock(),
        )

        if subtitle != clean_text(record.subtitle):
            logger.debug(
                "subtitle_collapsed",
                source=source_name,
                identifier=normalized.identifier,
                raw_subtitle=clean_text(record.subtitle),
            )

        return normalized

    @staticmethod
    def normalize_subtitle(subtitle: Any, title: str) -> str:
        """Collapse subtitles that duplicate the title.

        The subtitle becomes "" when it equals the title, contains the
        title (which covers "Title - Subtitle" prefixed variants), or
        repeats the part of the title that follows a separator. All
        comparisons are case-insensitive.
        """
        cleaned = clean_text(subtitle)
        if not cleaned:
            return ""

        folded_subtitle = cleaned.casefold()
        folded_title = clean_text(title).casefold()
        if not folded_title:
            return cleaned

        if folded_subtitle == folded_title or folded_title in folded_subtitle:
            return ""

        for separator in TITLE_SEPARATORS:
            if separator in folded_title:
                tail = folded_title.split(separator, 1)[1].strip()
                if tail and folded_subtitle == tail:
                    return ""

        return cleaned

    @staticmethod
    def normalize_screenshots(plural: Any, legacy: Any) -> List[str]:
        """Coalesce the plural list and the legacy singular field.

        Order is preserved (plural entries first), duplicates and invalid
        URLs are dropped.
        """
        candidates: List[Any] = []
        if isinstance(plural, (list, tuple)):
            candidates.extend(plural)
        elif isinstance(plural, str):
            candidates.append(plural)
        if isinstance(legacy, (list, tuple)):
            candidates.extend(legacy)
        elif isinstance(legacy, str):
            candidates.append(legacy)

        seen: Set[str] = set()
        urls: List[str] = []
        for candidate in candidates:
            if not is_valid_url(candidate):
                continue
            url = candidate.strip()
            if url in seen:
                continue
            seen.add(url)
            urls.append(url)
        return urls

    @staticmethod
    def normalize_rating(value: Any) -> float:
        """Clamp a rating into [0, 5]; absent or garbage becomes 0."""
        number = _to_number(value)
        if number is None:
            return 0.0
        return max(0.0, min(5.0, number))

    @staticmethod
    def normalize_count(value: Any) -> int:
        """Floor a review/rating count to a non-negative int; absent or garbage becomes 0."""
        number = _to_number(value)
        if number is None or math.isinf(number):
            return 0
        return max(0, int(math.floor(number)))

    @staticmethod
    def present_fields(record: NormalizedRecord, fields: Iterable[str] = CANONICAL_FIELDS) -> Set[str]:
        """Canonical fields the candidate actually carried, before defaults fill in.

        Feeds schema drift detection and completeness telemetry.
        """
        present: Set[str] = set()
        for name in fields:
            if name == "screenshot_urls":
                if MetadataNormalizer.normalize_screenshots(record.screenshot_urls, record.screenshot):
                    present.add(name)
            elif name in ("rating", "rating_count"):
                if _to_number(getattr(record, name)) is not None:
                    present.add(name)
            elif name == "icon_url":
                if is_valid_url(record.icon_url):
                    present.add(name)
            elif name == "description":
                if clean_multiline(record.description):
                    present.add(name)
            elif clean_text(getattr(record, name, "")):
                present.add(name)
        return present

    @staticmethod
    def completeness(record: NormalizedRecord) -> float:
        """Fraction of canonical fields present on a candidate."""
        return len(MetadataNormalizer.present_fields(record)) / len(CANONICAL_FIELDS)
