"""Structural validation of raw upstream responses."""

from typing import Iterable

from listing_ingest.ingestion.base import RawPayload
from listing_ingest.ingestion.results import Ok, Rejected, StageResult, ValidationError


class ResponseValidator:
    """Reject responses that cannot be a listing before classification.

    Checks, in order: HTTP status is exactly 200, media type is in the adapter's
    expected family, body is at least ``min_bytes`` long.
    """

    def __init__(self, expected_content_types: Iterable[str], min_bytes: int = 0):
        self.expected_content_types = tuple(ct.lower() for ct in expected_content_types)
        self.min_bytes = min_bytes

    def validate(self, raw: RawPayload) -> StageResult:
        """Validate a raw payload.

        Args:
            raw: Captured upstream response

        Returns:
            Ok(raw) or Rejected(ValidationError)
        """
        if raw.http_status != 200:
            return Rejected(
                ValidationError(ValidationError.BAD_STATUS, f"status {raw.http_status}")
            )

        if self.expected_content_types and raw.media_type not in self.expected_content_types:
            return Rejected(
                ValidationError(
                    ValidationError.BAD_CONTENT_TYPE,
                    f"got {raw.media_type or 'none'}, expected {'/'.join(self.expected_content_types)}",
                )
            )

        if raw.byte_length < self.min_bytes:
            return Rejected(
                ValidationError(
                    ValidationError.TOO_SMALL,
                    f"{raw.byte_length} bytes < {self.min_bytes}",
                )
            )

        return Ok(raw)

    @classmethod
    def for_adapter(cls, adapter) -> "ResponseValidator":
        """Build the validator matching an adapter's content family and size floor."""
        return cls(adapter.expected_content_types, adapter.min_response_bytes)
