"""Payload signature classification.

Apple answers an app-page request with a 200 for a surprising range of
content: the listing itself, a reviews modal, a "could not find" page, or a
WAF challenge. Classification inspects the body, not the status, and labels
it so that only real listings reach transform().
"""

import json
import re
from typing import Any, Pattern, Tuple

from bs4 import BeautifulSoup
from jsonschema import Draft7Validator

from listing_ingest.ingestion.base import PayloadSignature, RawPayload


# Listing page header pair. Both must be present.
LISTING_MARKERS: Tuple[str, ...] = ("product-header__title", "product-header__subtitle")

REVIEW_MARKERS: Tuple[str, ...] = (
    "review-body",
    "modal-content",
    "customer-review",
    "ugc-review",
)

ERROR_MARKERS: Tuple[str, ...] = (
    "not found",
    "could not find",
    "404",
    "does not exist",
    "no longer available",
)

# Anti-bot / WAF block pages (lower-case)
BLOCK_MARKERS: Tuple[str, ...] = (
    "403 forbidden",
    "access denied",
    "captcha",
    "just a moment",
    "attention required",
    "unusual traffic",
    "blocked",
)


def _marker_pattern(markers: Tuple[str, ...]) -> Pattern[str]:
    return re.compile(r"\b(?:" + "|".join(re.escape(m) for m in markers) + r")\b")


# Matched as whole words against visible text only, so asset names such as
# "1404w" in a srcset or a "blocked" string inside a script never count.
ERROR_PATTERN = _marker_pattern(ERROR_MARKERS)
BLOCK_PATTERN = _marker_pattern(BLOCK_MARKERS)

INVISIBLE_TAGS: Tuple[str, ...] = ("script", "style", "noscript", "template")

# One iTunes software result. Extra keys are allowed; drift detection
# handles those separately.
SOFTWARE_RESULT_SCHEMA = {
    "type": "object",
    "required": ["trackId", "trackName"],
    "properties": {
        "trackId": {"type": "integer"},
        "trackName": {"type": "string", "minLength": 1},
        "kind": {"type": "string"},
        "wrapperType": {"enum": ["software"]},
        "averageUserRating": {"type": "number"},
        "userRatingCount": {"type": "integer"},
        "screenshotUrls": {"type": "array", "items": {"type": "string"}},
    },
}

_software_result_validator = Draft7Validator(SOFTWARE_RESULT_SCHEMA)


class PayloadClassifier:
    """Pure classification of raw payloads into PayloadSignature labels."""

    @staticmethod
    def classify(raw: RawPayload) -> PayloadSignature:
        """Label a raw payload.

        Bodies that look like HTML are classified by marker structure even
        when the declared content type is JSON (Apple serves HTML error
        pages on the API hosts).

        Args:
            raw: Captured upstream response

        Returns:
            PayloadSignature
        """
        text = raw.text
        if not text.strip():
            return PayloadSignature.UNKNOWN

        if PayloadClassifier._looks_like_html(text):
            return PayloadClassifier.classify_html(text)

        if raw.media_type in ("application/json", "text/javascript") or text.lstrip()[:1] in ("{", "["):
            return PayloadClassifier.classify_json(text)

        return PayloadClassifier.classify_html(text)

    @staticmethod
    def _looks_like_html(text: str) -> bool:
        head = text.lstrip()[:512].lower()
        return head.startswith("<!doctype html") or head.startswith("<html") or "<head" in head

    @staticmethod
    def classify_html(html: str) -> PayloadSignature:
        """Classify an HTML document by marker presence.

        Listing and review markers are class names and are looked up in the
        markup. Error and block phrases must appear as words in the visible
        text.
        """
        if all(marker in html for marker in LISTING_MARKERS):
            return PayloadSignature.LISTING_PAGE

        if any(marker in html for marker in REVIEW_MARKERS):
            return PayloadSignature.REVIEW_FRAGMENT

        visible = PayloadClassifier._visible_text(html)
        if ERROR_PATTERN.search(visible):
            return PayloadSignature.ERROR_PAGE

        if BLOCK_PATTERN.search(visible):
            return PayloadSignature.BLOCK_PAGE

        return PayloadSignature.UNKNOWN

    @staticmethod
    def _visible_text(html: str) -> str:
        soup = BeautifulSoup(html, "html.parser")
        for tag in soup(list(INVISIBLE_TAGS)):
            tag.decompose()
        return " ".join(soup.get_text(" ").split()).lower()

    @staticmethod
    def classify_json(text: str) -> PayloadSignature:
        """Classify an iTunes lookup/search JSON response."""
        try:
            document: Any = json.loads(text)
        except ValueError:
            return PayloadSignature.UNKNOWN

        if not isinstance(document, dict):
            return PayloadSignature.UNKNOWN

        if document.get("errorMessage"):
            return PayloadSignature.ERROR_PAGE

        results = document.get("results")
        if not isinstance(results, list):
            return PayloadSignature.UNKNOWN
        if not results:
            return PayloadSignature.ERROR_PAGE

        if any(_software_result_validator.is_valid(item) for item in results):
            return PayloadSignature.LISTING_PAGE
        return PayloadSignature.UNKNOWN
