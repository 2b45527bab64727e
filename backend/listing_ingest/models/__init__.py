"""ORM models. Importing this package registers every table on Base.metadata."""

from listing_ingest.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from listing_ingest.models.snapshot import NormalizedRecordEntry, RawPayloadEntry

__all__ = [
    "Base",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
    "NormalizedRecordEntry",
    "RawPayloadEntry",
]
