"""Tests for canonical record normalization."""

from datetime import datetime, timezone

import pytest

from listing_ingest.ingestion.base import CANONICAL_FIELDS, NormalizedRecord
from listing_ingest.ingestion.utils.normalizer import (
    CURRENT_SCHEMA_VERSION,
    UNKNOWN_TITLE,
    MetadataNormalizer,
    clean_text,
)


FIXED_NOW = datetime(2026, 10, 18, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def normalizer() -> MetadataNormalizer:
    return MetadataNormalizer(clock=lambda: FIXED_NOW)


def candidate(**fields) -> NormalizedRecord:
    fields.setdefault("identifier", "389801252")
    return NormalizedRecord(**fields)


# ============================================================================
# TEXT CLEANUP
# ============================================================================

class TestTextCleanup:
    def test_decodes_html_entities(self, normalizer):
        record = normalizer.normalize(
            candidate(title="Tom &amp; Jerry", developer="Caf&eacute; &#39;Co&#39;"), "src"
        )

        assert record.title == "Tom & Jerry"
        assert record.developer == "Café 'Co'"

    def test_collapses_whitespace(self):
        assert clean_text("  Photo \n\t &amp;  Video  ") == "Photo & Video"

    def test_strips_zero_width_characters(self):
        assert clean_text("Insta\u200bgram\ufeff") == "Instagram"

    def test_description_keeps_paragraphs(self, normalizer):
        record = normalizer.normalize(
            candidate(title="App", description="First  line.\r\n\r\n\r\n\r\nSecond   line.  "), "src"
        )

        assert record.description == "First line.\n\nSecond line."

    def test_non_string_text_becomes_empty(self, normalizer):
        record = normalizer.normalize(candidate(title="App", developer=42, category=None), "src")

        assert record.developer == ""
        assert record.category == ""


# ============================================================================
# SUBTITLE DE-DUPLICATION
# ============================================================================

class TestSubtitle:
    @pytest.mark.parametrize(
        "title, subtitle",
        [
            ("Instagram", "Instagram"),
            ("Instagram", "INSTAGRAM"),
            ("Instagram", "Instagram - Share & Connect"),
            ("Instagram", "Instagram: Share & Connect"),
            ("Instagram", "Share with Instagram"),
            ("Pimsleur: Learn Languages Fast", "Learn Languages Fast"),
            ("TikTok – Make Your Day", "make your day"),
        ],
    )
    def test_duplicate_subtitles_collapse(self, normalizer, title, subtitle):
        record = normalizer.normalize(candidate(title=title, subtitle=subtitle), "src")

        assert record.subtitle == ""
        assert record.title == title

    def test_real_subtitle_is_kept(self, normalizer):
        record = normalizer.normalize(candidate(title="Instagram", subtitle="Share &amp; Connect"), "src")

        assert record.subtitle == "Share & Connect"

    def test_title_without_separator_has_empty_subtitle(self, normalizer):
        record = normalizer.normalize(candidate(title="Pimsleur: Learn Languages Fast"), "itunes-search")

        assert record.title == "Pimsleur: Learn Languages Fast"
        assert record.subtitle == ""

    def test_empty_title_falls_back(self, normalizer):
        record = normalizer.normalize(candidate(title="   ", subtitle="Unknown App"), "src")

        assert record.title == UNKNOWN_TITLE
        assert record.subtitle == ""

    @pytest.mark.parametrize(
        "title, subtitle",
        [
            ("", ""),
            ("A", "a"),
            ("Go", "Go anywhere"),
            ("Maps - Navigation", "Maps - Navigation - Transit"),
            ("X &amp; Y", "x & y"),
        ],
    )
    def test_subtitle_never_equals_or_contains_title(self, normalizer, title, subtitle):
        record = normalizer.normalize(candidate(title=title, subtitle=subtitle), "src")

        assert record.subtitle != record.title
        assert record.title.casefold() not in record.subtitle.casefold() or record.subtitle == ""


# ============================================================================
# SCREENSHOTS
# ============================================================================

class TestScreenshots:
    def test_coalesces_plural_and_legacy_fields(self, normalizer):
        record = normalizer.normalize(
            candidate(
                title="App",
                screenshot_urls=["https://cdn.test/1.jpg", "https://cdn.test/2.jpg"],
                screenshot="https://cdn.test/3.jpg",
            ),
            "src",
        )

        assert record.screenshot_urls == [
            "https://cdn.test/1.jpg",
            "https://cdn.test/2.jpg",
            "https://cdn.test/3.jpg",
        ]

    def test_deduplicates_in_order(self, normalizer):
        record = normalizer.normalize(
            candidate(
                title="App",
                screenshot_urls=["https://cdn.test/2.jpg", "https://cdn.test/1.jpg", "https://cdn.test/2.jpg"],
                screenshot="https://cdn.test/1.jpg",
            ),
            "src",
        )

        assert record.screenshot_urls == ["https://cdn.test/2.jpg", "https://cdn.test/1.jpg"]

    def test_drops_invalid_urls(self, normalizer):
        record = normalizer.normalize(
            candidate(
                title="App",
                screenshot_urls=["not a url", "", None, "ftp://cdn.test/x.jpg", "https://cdn.test/ok.jpg", 7],
                screenshot="javascript:alert(1)",
            ),
            "src",
        )

        assert record.screenshot_urls == ["https://cdn.test/ok.jpg"]

    def test_legacy_field_alone(self, normalizer):
        record = normalizer.normalize(candidate(title="App", screenshot="https://cdn.test/only.jpg"), "src")

        assert record.screenshot_urls == ["https://cdn.test/only.jpg"]

    def test_garbage_plural_field(self, normalizer):
        record = normalizer.normalize(candidate(title="App", screenshot_urls={"a": 1}), "src")

        assert record.screenshot_urls == []


# ============================================================================
# NUMERICS
# ============================================================================

class TestNumerics:
    @pytest.mark.parametrize(
        "raw, expected",
        [(4.68, 4.68), ("4.5", 4.5), (7, 5.0), (-1, 0.0), (None, 0.0), ("n/a", 0.0), (float("nan"), 0.0), (True, 0.0)],
    )
    def test_rating_clamped(self, raw, expected):
        assert MetadataNormalizer.normalize_rating(raw) == pytest.approx(expected)

    @pytest.mark.parametrize(
        "raw, expected",
        [(25300000, 25300000), ("1,234", 1234), (12.9, 12), (-5, 0), (None, 0), ("lots", 0), (float("inf"), 0)],
    )
    def test_count_non_negative_int(self, raw, expected):
        result = MetadataNormalizer.normalize_count(raw)

        assert result == expected
        assert isinstance(result, int)


# ============================================================================
# STAMPING AND PRESENCE
# ============================================================================

class TestStamping:
    def test_stamps_version_source_and_time(self, normalizer):
        record = normalizer.normalize(candidate(title="App"), "itunes-lookup")

        assert record.schema_version == CURRENT_SCHEMA_VERSION
        assert record.source_name == "itunes-lookup"
        assert record.normalized_at == FIXED_NOW

    def test_custom_schema_version(self):
        record = MetadataNormalizer(schema_version="2.0").normalize(candidate(title="App"), "src")

        assert record.schema_version == "2.0"
        assert record.normalized_at.tzinfo is not None

    def test_does_not_mutate_candidate(self, normalizer):
        original = candidate(title="Tom &amp; Jerry", subtitle="Tom &amp; Jerry")

        normalizer.normalize(original, "src")

        assert original.title == "Tom &amp; Jerry"
        assert original.subtitle == "Tom &amp; Jerry"

    def test_is_deterministic_apart_from_timestamp(self):
        record = candidate(title="App", subtitle="Sub", rating="3.3", screenshot="https://cdn.test/a.jpg")

        first = MetadataNormalizer().normalize(record, "src").to_dict(include_timestamp=False)
        second = MetadataNormalizer().normalize(record, "src").to_dict(include_timestamp=False)

        assert first == second


class TestPresentFields:
    def test_reports_fields_before_defaults(self):
        record = candidate(
            title="App",
            rating=None,
            rating_count="12",
            icon_url="not-a-url",
            screenshot="https://cdn.test/a.jpg",
        )

        present = MetadataNormalizer.present_fields(record)

        assert present == {"title", "rating_count", "screenshot_urls"}

    def test_full_record(self):
        record = candidate(
            title="App",
            subtitle="Sub",
            description="Desc",
            developer="Dev",
            category="Games",
            rating=0,
            rating_count=0,
            icon_url="https://cdn.test/icon.png",
            screenshot_urls=["https://cdn.test/a.jpg"],
        )

        assert MetadataNormalizer.present_fields(record) == set(CANONICAL_FIELDS)
        assert MetadataNormalizer.completeness(record) == 1.0
