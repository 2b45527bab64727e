"""Snapshot persistence: raw upstream payloads and their normalized records.

Both tables are append-only. A raw payload row is written for every
adapter attempt; a normalized record row exists only for attempts that
produced a listing, plus one per later reprocess with a newer schema
version.
"""

import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from listing_ingest.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class RawPayloadEntry(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One adapter attempt: the captured response plus pipeline provenance."""

    __tablename__ = "raw_payloads"

    identifier: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    source_name: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    adapter_priority: Mapped[int] = mapped_column(Integer, nullable=False)

    # Response
    fetched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    http_status: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="0 when the fetch never produced a response",
    )
    content_type: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    byte_length: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    body: Mapped[bytes] = mapped_column(LargeBinary, nullable=False, default=b"")
    url: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Pipeline outcome
    signature: Mapped[Optional[str]] = mapped_column(
        String(32),
        nullable=True,
        index=True,
        comment="PayloadSignature; NULL when validation rejected before classification",
    )
    rejection_stage: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    rejection_detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    elapsed_ms: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    normalized_records: Mapped[List["NormalizedRecordEntry"]] = relationship(
        back_populates="raw_payload",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="NormalizedRecordEntry.normalized_at",
    )

    __table_args__ = (
        Index("ix_raw_payloads_identifier_fetched", "identifier", "fetched_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<RawPayloadEntry {self.identifier} source={self.source_name} "
            f"status={self.http_status} signature={self.signature}>"
        )


class NormalizedRecordEntry(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A NormalizedRecord derived from a stored raw payload."""

    __tablename__ = "normalized_records"

    raw_payload_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("raw_payloads.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    identifier: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    source_name: Mapped[str] = mapped_column(String(64), nullable=False)
    schema_version: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    normalized_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    title: Mapped[str] = mapped_column(Text, nullable=False)
    subtitle: Mapped[str] = mapped_column(Text, nullable=False, default="")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    developer: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    category: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    rating: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    rating_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    icon_url: Mapped[str] = mapped_column(Text, nullable=False, default="")
    screenshot_urls: Mapped[list] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=False,
        default=list,
    )

    raw_payload: Mapped["RawPayloadEntry"] = relationship(back_populates="normalized_records")

    __table_args__ = (
        UniqueConstraint("raw_payload_id", "schema_version", name="uq_normalized_raw_version"),
    )

    def __repr__(self) -> str:
        return f"<NormalizedRecordEntry {self.identifier} v{self.schema_version} title={self.title!r}>"
