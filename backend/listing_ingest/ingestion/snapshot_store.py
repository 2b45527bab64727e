"""Append-only snapshot store with offline reprocessing.

Every adapter attempt is saved as one raw payload row, plus a normalized
record row when the attempt produced a listing. Stored LISTING_PAGE payloads
can be re-run through the adapter's pure transform() and a newer
MetadataNormalizer, so a normalizer fix can be backfilled without fetching
from rate-limited upstreams again.
"""

import asyncio
import uuid
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, MutableMapping, Optional

import structlog
from sqlalchemy import desc, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from listing_ingest.core.exceptions import ConfigurationError
from listing_ingest.ingestion.base import (
    BaseSourceAdapter,
    NormalizedRecord,
    PayloadSignature,
    RawPayload,
    canonical_app_id,
    identifier_mismatch,
)
from listing_ingest.ingestion.results import (
    ClassificationRejection,
    FetchRejection,
    Rejected,
    Rejection,
    TransformRejection,
    ValidationError,
)
from listing_ingest.ingestion.utils.normalizer import MetadataNormalizer
from listing_ingest.ingestion.utils.retry import db_retry
from listing_ingest.models.snapshot import NormalizedRecordEntry, RawPayloadEntry


logger = structlog.get_logger(__name__)

_REJECTION_TYPES = {
    cls.stage: cls
    for cls in (FetchRejection, ValidationError, ClassificationRejection, TransformRejection)
}


@dataclass(frozen=True)
class MetadataSnapshot:
    """One fetch attempt: raw input, derived record (if any) and provenance."""

    raw: RawPayload
    record: Optional[NormalizedRecord] = None
    adapter_priority: int = 0
    signature: Optional[PayloadSignature] = None
    rejection: Optional[Rejection] = None
    elapsed_ms: float = 0.0
    id: Optional[uuid.UUID] = None

    @property
    def succeeded(self) -> bool:
        return self.record is not None

    @property
    def schema_version(self) -> Optional[str]:
        return self.record.schema_version if self.record else None


@dataclass(frozen=True)
class SnapshotQuery:
    """Filters for SnapshotStore.query(). Unset filters match everything."""

    identifier: Optional[str] = None
    source_name: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    signature: Optional[PayloadSignature] = None
    failures_only: bool = False
    limit: int = 100


@dataclass
class ReprocessReport:
    """Outcome of one reprocess run."""

    source_name: str
    schema_version: str
    scanned: int = 0
    created: int = 0
    skipped_existing: int = 0
    rejected: int = 0
    records: List[NormalizedRecord] = field(default_factory=list)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SnapshotStore:
    """SQLAlchemy-backed snapshot store.

    Args:
        session_factory: async_sessionmaker bound to the snapshot database
        adapters: Adapters available to reprocess(), looked up by name
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        adapters: Iterable[BaseSourceAdapter] = (),
    ):
        self._session_factory = session_factory
        self._adapters: Dict[str, BaseSourceAdapter] = {a.name: a for a in adapters}
        # A lock lives only while a writer holds or waits on it
        self._locks: MutableMapping[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self.logger = logger.bind(service="snapshot_store")

    def register_adapter(self, adapter: BaseSourceAdapter) -> None:
        self._adapters[adapter.name] = adapter

    def _lock_for(self, identifier: str) -> asyncio.Lock:
        lock = self._locks.get(identifier)
        if lock is None:
            lock = self._locks[identifier] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def save(self, snapshot: MetadataSnapshot) -> uuid.UUID:
        """Persist one snapshot in a single transaction.

        Writes for the same identifier are serialized.

        Returns:
            Id of the raw payload row
        """
        async with self._lock_for(snapshot.raw.identifier):
            return await self._write_snapshot(snapshot)

    @db_retry
    async def _write_snapshot(self, snapshot: MetadataSnapshot) -> uuid.UUID:
        raw = snapshot.raw
        rejection = snapshot.rejection
        entry_id = uuid.uuid4()

        entry = RawPayloadEntry(
            id=entry_id,
            identifier=raw.identifier,
            source_name=raw.source_name,
            adapter_priority=snapshot.adapter_priority,
            fetched_at=raw.fetched_at,
            http_status=raw.http_status,
            content_type=raw.content_type,
            byte_length=raw.byte_length,
            body=raw.body,
            url=raw.url,
            signature=snapshot.signature.value if snapshot.signature else None,
            rejection_stage=rejection.stage if rejection else None,
            rejection_reason=rejection.reason if rejection else None,
            rejection_detail=rejection.detail if rejection else None,
            elapsed_ms=snapshot.elapsed_ms,
        )
        if snapshot.record is not None:
            entry.normalized_records.append(self._record_entry(entry_id, snapshot.record))

        async with self._session_factory() as session:
            async with session.begin():
                session.add(entry)

        self.logger.debug(
            "snapshot_saved",
            identifier=raw.identifier,
            source=raw.source_name,
            signature=entry.signature,
            succeeded=snapshot.succeeded,
        )
        return entry_id

    @staticmethod
    def _record_entry(raw_payload_id: uuid.UUID, record: NormalizedRecord) -> NormalizedRecordEntry:
        return NormalizedRecordEntry(
            raw_payload_id=raw_payload_id,
            identifier=record.identifier,
            source_name=record.source_name,
            schema_version=record.schema_version,
            normalized_at=record.normalized_at or datetime.now(timezone.utc),
            title=record.title,
            subtitle=record.subtitle,
            description=record.description,
            developer=record.developer,
            category=record.category,
            rating=record.rating,
            rating_count=record.rating_count,
            icon_url=record.icon_url,
            screenshot_urls=list(record.screenshot_urls),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def query(self, filters: Optional[SnapshotQuery] = None) -> List[MetadataSnapshot]:
        """Snapshots matching the filters, newest first."""
        filters = filters or SnapshotQuery()
        stmt = select(RawPayloadEntry)

        if filters.identifier is not None:
            stmt = stmt.where(RawPayloadEntry.identifier == filters.identifier)
        if filters.source_name is not None:
            stmt = stmt.where(RawPayloadEntry.source_name == filters.source_name)
        if filters.since is not None:
            stmt = stmt.where(RawPayloadEntry.fetched_at >= filters.since)
        if filters.until is not None:
            stmt = stmt.where(RawPayloadEntry.fetched_at < filters.until)
        if filters.signature is not None:
            stmt = stmt.where(RawPayloadEntry.signature == PayloadSignature(filters.signature).value)
        if filters.failures_only:
            stmt = stmt.where(RawPayloadEntry.rejection_reason.is_not(None))

        stmt = stmt.order_by(desc(RawPayloadEntry.fetched_at)).limit(filters.limit)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            entries = result.scalars().all()
            return [self._to_snapshot(entry) for entry in entries]

    async def latest_record(self, identifier: str) -> Optional[NormalizedRecord]:
        """Record derived from the most recently fetched payload, or None.

        Ordered by the raw payload's fetched_at, so reprocessing an old
        payload never shadows a newer fetch. Among records for the same
        payload the latest normalization wins.
        """
        candidates = {identifier}
        app_id = canonical_app_id(identifier)
        if app_id:
            candidates.add(app_id)

        stmt = (
            select(NormalizedRecordEntry)
            .join(NormalizedRecordEntry.raw_payload)
            .where(NormalizedRecordEntry.identifier.in_(candidates))
            .order_by(desc(RawPayloadEntry.fetched_at), desc(NormalizedRecordEntry.normalized_at))
            .limit(1)
        )
        async with self._session_factory() as session:
            entry = (await session.execute(stmt)).scalar_one_or_none()
            return self._to_record(entry) if entry is not None else None

    @staticmethod
    def _to_raw(entry: RawPayloadEntry) -> RawPayload:
        return RawPayload(
            source_name=entry.source_name,
            identifier=entry.identifier,
            fetched_at=_as_utc(entry.fetched_at),
            http_status=entry.http_status,
            content_type=entry.content_type,
            body=bytes(entry.body or b""),
            url=entry.url,
        )

    @staticmethod
    def _to_record(entry: NormalizedRecordEntry) -> NormalizedRecord:
        return NormalizedRecord(
            identifier=entry.identifier,
            title=entry.title,
            subtitle=entry.subtitle,
            description=entry.description,
            developer=entry.developer,
            category=entry.category,
            rating=entry.rating,
            rating_count=entry.rating_count,
            icon_url=entry.icon_url,
            screenshot_urls=list(entry.screenshot_urls or []),
            source_name=entry.source_name,
            schema_version=entry.schema_version,
            normalized_at=_as_utc(entry.normalized_at),
        )

    def _to_snapshot(self, entry: RawPayloadEntry) -> MetadataSnapshot:
        rejection = None
        if entry.rejection_reason is not None:
            rejection_cls = _REJECTION_TYPES.get(entry.rejection_stage, Rejection)
            if rejection_cls is ClassificationRejection:
                rejection = rejection_cls(entry.rejection_reason, entry.rejection_detail or "", entry.signature)
            else:
                rejection = rejection_cls(entry.rejection_reason, entry.rejection_detail or "")

        # Newest normalization wins when a payload was reprocessed
        record_entry = entry.normalized_records[-1] if entry.normalized_records else None

        return MetadataSnapshot(
            raw=self._to_raw(entry),
            record=self._to_record(record_entry) if record_entry is not None else None,
            adapter_priority=entry.adapter_priority,
            signature=PayloadSignature(entry.signature) if entry.signature else None,
            rejection=rejection,
            elapsed_ms=entry.elapsed_ms,
            id=entry.id,
        )

    # ------------------------------------------------------------------
    # Reprocessing
    # ------------------------------------------------------------------

    async def reprocess(
        self,
        source_name: str,
        since: Optional[datetime],
        normalizer_version: str,
    ) -> ReprocessReport:
        """Re-run transform + normalize over stored LISTING_PAGE payloads.

        Never fetches. Writes one new normalized record per raw payload that
        does not yet have one for ``normalizer_version``; running it again
        with the same version writes nothing and recomputes identical records.

        Args:
            source_name: Adapter whose payloads to reprocess
            since: Only payloads fetched at or after this time (None = all)
            normalizer_version: schema_version stamped on the new records

        Raises:
            ConfigurationError: If no adapter is registered under source_name
        """
        adapter = self._adapters.get(source_name)
        if adapter is None:
            raise ConfigurationError(f"No adapter registered for source: {source_name}")

        normalizer = MetadataNormalizer(schema_version=normalizer_version)
        report = ReprocessReport(source_name=source_name, schema_version=normalizer_version)

        stmt = select(RawPayloadEntry).where(
            RawPayloadEntry.source_name == source_name,
            RawPayloadEntry.signature == PayloadSignature.LISTING_PAGE.value,
        )
        if since is not None:
            stmt = stmt.where(RawPayloadEntry.fetched_at >= since)
        stmt = stmt.order_by(RawPayloadEntry.fetched_at)

        async with self._session_factory() as session:
            entries = (await session.execute(stmt)).scalars().all()

        self.logger.info(
            "reprocess_started",
            source=source_name,
            version=normalizer_version,
            payloads=len(entries),
        )

        for entry in entries:
            report.scanned += 1
            raw = self._to_raw(entry)

            result = adapter.transform(raw)
            if isinstance(result, Rejected):
                report.rejected += 1
                self.logger.warning(
                    "reprocess_transform_rejected",
                    raw_payload_id=str(entry.id),
                    rejection=str(result.rejection),
                )
                continue

            mismatch = identifier_mismatch(entry.identifier, result.value.identifier)
            if mismatch is not None:
                report.rejected += 1
                self.logger.warning(
                    "reprocess_identifier_mismatch",
                    raw_payload_id=str(entry.id),
                    rejection=str(mismatch),
                )
                continue

            record = normalizer.normalize(result.value, source_name)
            report.records.append(record)

            if any(nr.schema_version == normalizer_version for nr in entry.normalized_records):
                report.skipped_existing += 1
                continue

            async with self._lock_for(entry.identifier):
                created = await self._insert_record(entry.id, record)
            if created:
                report.created += 1
            else:
                report.skipped_existing += 1

        self.logger.info(
            "reprocess_complete",
            source=source_name,
            version=normalizer_version,
            scanned=report.scanned,
            created=report.created,
            skipped_existing=report.skipped_existing,
            rejected=report.rejected,
        )
        return report

    @db_retry
    async def _insert_record(self, raw_payload_id: uuid.UUID, record: NormalizedRecord) -> bool:
        """Insert one normalized record; False if the (raw, version) row already exists."""
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    session.add(self._record_entry(raw_payload_id, record))
            except IntegrityError:
                return False
        return True
