"""Per-identifier resolution across source adapters.

The orchestrator tries adapters strictly in ascending priority order and
stops at the first attempt that yields a fully valid record:

    PENDING -> TRYING(0) -> TRYING(1) -> ... -> SUCCEEDED | EXHAUSTED

Each attempt runs rate limit -> fetch -> validate -> classify -> transform
-> normalize. Any rejection is recorded against that adapter's health and
the resolution advances to the next adapter. Every attempt is persisted as
a MetadataSnapshot. Sources are never retried within one resolution.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

import structlog

from listing_ingest.core.exceptions import (
    AllSourcesFailed,
    ConfigurationError,
    FetchError,
    FetchErrorKind,
)
from listing_ingest.ingestion.base import (
    BaseSourceAdapter,
    FetchOptions,
    NormalizedRecord,
    PayloadSignature,
    RawPayload,
    identifier_mismatch,
)
from listing_ingest.ingestion.drift import SchemaDriftDetector
from listing_ingest.ingestion.health import HealthSnapshot
from listing_ingest.ingestion.metrics import LoggingMetricsSink, MetricsSink
from listing_ingest.ingestion.results import (
    ClassificationRejection,
    FetchRejection,
    Rejected,
    Rejection,
    TransformRejection,
)
from listing_ingest.ingestion.snapshot_store import MetadataSnapshot
from listing_ingest.ingestion.utils.normalizer import MetadataNormalizer
from listing_ingest.ingestion.utils.rate_limiter import SourceRateLimiter
from listing_ingest.ingestion.utils.validator import ResponseValidator


logger = structlog.get_logger(__name__)


class ResolutionState(str, Enum):
    PENDING = "PENDING"
    TRYING = "TRYING"
    SUCCEEDED = "SUCCEEDED"
    EXHAUSTED = "EXHAUSTED"


@dataclass(frozen=True)
class AttemptOutcome:
    """What happened when one adapter was tried."""

    source_name: str
    priority: int
    signature: Optional[PayloadSignature]
    rejection: Optional[Rejection]
    elapsed_ms: float

    @property
    def succeeded(self) -> bool:
        return self.rejection is None


@dataclass
class ResolutionResult:
    """Result of resolving one identifier."""

    identifier: str
    state: ResolutionState = ResolutionState.PENDING
    record: Optional[NormalizedRecord] = None
    attempts: List[AttemptOutcome] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state is ResolutionState.SUCCEEDED

    @property
    def source_name(self) -> Optional[str]:
        return self.record.source_name if self.record else None

    @property
    def attempted_sources(self) -> List[str]:
        return [attempt.source_name for attempt in self.attempts]


@dataclass
class _Resolution:
    """Mutable state threaded through the step function."""

    identifier: str
    options: FetchOptions
    queue: List[BaseSourceAdapter]
    result: ResolutionResult
    index: int = 0


class MetadataOrchestrator:
    """Resolve identifiers against an explicit, priority-ordered adapter set.

    Args:
        adapters: Adapters to try (ordered by their configured priority)
        rate_limiter: Shared per-source rate limiter
        store: Snapshot store; every attempt is saved
        normalizer: Canonical normalizer (default: current schema version)
        drift_detector: Observes every successful normalization
        metrics: Health/drift sink; failures are logged and ignored
        default_country: Storefront country when the caller passes no options
        clock: Monotonic clock for latency measurement
    """

    def __init__(
        self,
        adapters: Iterable[BaseSourceAdapter],
        rate_limiter: SourceRateLimiter,
        store,
        normalizer: Optional[MetadataNormalizer] = None,
        drift_detector: Optional[SchemaDriftDetector] = None,
        metrics: Optional[MetricsSink] = None,
        default_country: str = "us",
        clock: Callable[[], float] = time.monotonic,
    ):
        self._adapters: List[BaseSourceAdapter] = list(adapters)
        names = [adapter.name for adapter in self._adapters]
        if len(names) != len(set(names)):
            raise ConfigurationError(f"Duplicate adapter names: {names}")

        self.rate_limiter = rate_limiter
        self.store = store
        self.normalizer = normalizer or MetadataNormalizer()
        self.drift_detector = drift_detector or SchemaDriftDetector()
        self.metrics = metrics or LoggingMetricsSink()
        self.default_country = default_country
        self._clock = clock
        self.logger = logger.bind(service="orchestrator")

        self.logger.info(
            "orchestrator_initialized",
            adapters=[(a.name, a.priority, a.enabled) for a in self.ordered_adapters()],
        )

    @property
    def adapters(self) -> List[BaseSourceAdapter]:
        return list(self._adapters)

    def get_adapter(self, name: str) -> Optional[BaseSourceAdapter]:
        for adapter in self._adapters:
            if adapter.name == name:
                return adapter
        return None

    def ordered_adapters(self, preferred_source: Optional[str] = None) -> List[BaseSourceAdapter]:
        """Adapters in ascending priority; ``preferred_source`` (if known) goes first."""
        ordered = sorted(self._adapters, key=lambda adapter: adapter.priority)
        if preferred_source:
            preferred = [a for a in ordered if a.name == preferred_source]
            if preferred:
                ordered = preferred + [a for a in ordered if a.name != preferred_source]
            else:
                self.logger.warning("preferred_source_unknown", source=preferred_source)
        return ordered

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(
        self,
        identifier: str,
        options: Optional[FetchOptions] = None,
        preferred_source: Optional[str] = None,
    ) -> ResolutionResult:
        """Resolve one identifier. Never raises for source failures.

        Args:
            identifier: Opaque app identifier
            options: Country and timeout overrides
            preferred_source: Adapter name to try first

        Returns:
            ResolutionResult in state SUCCEEDED or EXHAUSTED
        """
        resolution = _Resolution(
            identifier=identifier,
            options=options or FetchOptions(country=self.default_country),
            queue=self.ordered_adapters(preferred_source),
            result=ResolutionResult(identifier=identifier),
        )

        resolution.result.state = ResolutionState.TRYING
        while resolution.result.state is ResolutionState.TRYING:
            await self._step(resolution)

        result = resolution.result
        if result.succeeded:
            self.logger.info(
                "identifier_resolved",
                identifier=identifier,
                source=result.source_name,
                attempts=len(result.attempts),
            )
        else:
            result.error = str(AllSourcesFailed(identifier, result.attempted_sources))
            self.logger.warning(
                "all_sources_failed",
                identifier=identifier,
                attempts=[f"{a.source_name}: {a.rejection}" for a in result.attempts],
            )
        return result

    async def fetch_metadata(
        self,
        identifier: str,
        options: Optional[FetchOptions] = None,
        preferred_source: Optional[str] = None,
    ) -> NormalizedRecord:
        """Resolve one identifier and return its record.

        Raises:
            AllSourcesFailed: If every adapter was tried and none answered
        """
        result = await self.resolve(identifier, options, preferred_source)
        if not result.succeeded:
            raise AllSourcesFailed(identifier, result.attempted_sources)
        return result.record

    async def _step(self, resolution: _Resolution) -> None:
        """Advance TRYING(i) to TRYING(i+1), SUCCEEDED or EXHAUSTED."""
        result = resolution.result
        if resolution.index >= len(resolution.queue):
            result.state = ResolutionState.EXHAUSTED
            return

        adapter = resolution.queue[resolution.index]
        resolution.index += 1

        if not adapter.enabled:
            self.logger.debug("adapter_skipped", source=adapter.name, reason="disabled")
            return
        if not adapter.accepts(resolution.identifier):
            self.logger.debug(
                "adapter_skipped",
                source=adapter.name,
                reason="identifier_not_accepted",
                identifier=resolution.identifier,
            )
            return

        outcome, record = await self._attempt(adapter, resolution.identifier, resolution.options)
        result.attempts.append(outcome)
        if record is not None:
            result.record = record
            result.state = ResolutionState.SUCCEEDED

    async def _attempt(self, adapter: BaseSourceAdapter, identifier: str, options: FetchOptions):
        """Run one adapter through the pipeline.

        Returns:
            (AttemptOutcome, NormalizedRecord or None)
        """
        await self.rate_limiter.acquire(adapter.name)

        started = self._clock()
        signature: Optional[PayloadSignature] = None
        candidate: Optional[NormalizedRecord] = None
        record: Optional[NormalizedRecord] = None
        rejection: Optional[Rejection] = None
        raw: Optional[RawPayload] = None

        try:
            raw = await self._fetch(adapter, identifier, options)
        except FetchError as e:
            rejection = FetchRejection(e.kind.value, e.detail)
            raw = RawPayload.empty(adapter.name, identifier, http_status=e.status_code or 0)

        if rejection is None:
            signature, candidate, rejection = self._process(adapter, identifier, raw)
            if candidate is not None:
                record = self.normalizer.normalize(candidate, adapter.name)

        elapsed_ms = (self._clock() - started) * 1000.0

        if candidate is not None:
            await self._observe_drift(adapter, candidate)

        await self.store.save(
            MetadataSnapshot(
                raw=raw,
                record=record,
                adapter_priority=adapter.priority,
                signature=signature,
                rejection=rejection,
                elapsed_ms=elapsed_ms,
            )
        )

        self._record_outcome(adapter, success=record is not None, latency_ms=elapsed_ms)
        await self._emit_health(adapter.name, adapter.health.snapshot())

        if rejection is not None:
            self.logger.info(
                "adapter_attempt_rejected",
                identifier=identifier,
                source=adapter.name,
                stage=rejection.stage,
                reason=rejection.reason,
                detail=rejection.detail,
                elapsed_ms=round(elapsed_ms, 1),
            )

        outcome = AttemptOutcome(
            source_name=adapter.name,
            priority=adapter.priority,
            signature=signature,
            rejection=rejection,
            elapsed_ms=elapsed_ms,
        )
        return outcome, record

    async def _fetch(self, adapter: BaseSourceAdapter, identifier: str, options: FetchOptions) -> RawPayload:
        """adapter.fetch under a hard deadline; expiry is a timeout FetchError."""
        timeout = options.timeout_ms / 1000.0 if options.timeout_ms else adapter.timeout_seconds
        try:
            return await asyncio.wait_for(adapter.fetch(identifier, options), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise FetchError(
                adapter.name, FetchErrorKind.TIMEOUT, f"no response within {timeout:.1f}s"
            ) from e

    def _process(self, adapter: BaseSourceAdapter, identifier: str, raw: RawPayload):
        """Validate, classify and transform a fetched payload.

        Returns:
            (signature, candidate, rejection); exactly one of candidate/rejection is set
        """
        validated = ResponseValidator.for_adapter(adapter).validate(raw)
        if isinstance(validated, Rejected):
            return None, None, validated.rejection

        signature = adapter.classify(raw)
        if signature is not PayloadSignature.LISTING_PAGE:
            return signature, None, ClassificationRejection(
                signature.value.lower(), f"{raw.byte_length} bytes", signature.value
            )

        try:
            transformed = adapter.transform(raw)
        except Exception as e:
            self.logger.error("transform_failed", source=adapter.name, error=str(e), exc_info=True)
            return signature, None, TransformRejection("transform_error", str(e))
        if isinstance(transformed, Rejected):
            return signature, None, transformed.rejection

        candidate: NormalizedRecord = transformed.value
        mismatch = identifier_mismatch(identifier, candidate.identifier)
        if mismatch is not None:
            return signature, None, mismatch

        return signature, candidate, None

    async def _observe_drift(self, adapter: BaseSourceAdapter, candidate: NormalizedRecord) -> None:
        """Feed the drift detector; signals are advisory and never fail the attempt."""
        try:
            signals = self.drift_detector.observe(
                adapter.name,
                present_fields=MetadataNormalizer.present_fields(candidate, adapter.expected_fields),
                raw_field_names=candidate.raw_field_names,
                tracked_fields=adapter.expected_fields,
                known_raw_fields=adapter.known_raw_fields,
            )
        except Exception as e:
            self.logger.error("drift_observation_failed", source=adapter.name, error=str(e), exc_info=True)
            return

        for signal in signals:
            try:
                await self.metrics.emit_drift(signal)
            except Exception as e:
                self.logger.warning("metrics_emit_failed", kind="drift", source=adapter.name, error=str(e))

    def _record_outcome(self, adapter: BaseSourceAdapter, success: bool, latency_ms: float) -> None:
        """Outcome callback: the only writer of AdapterHealth."""
        if success:
            adapter.health.record_success(latency_ms)
        else:
            adapter.health.record_failure(latency_ms)

    async def _emit_health(self, source: str, health: HealthSnapshot) -> None:
        try:
            await self.metrics.emit_health(source, health)
        except Exception as e:
            self.logger.warning("metrics_emit_failed", kind="health", source=source, error=str(e))

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def adapters_health(self) -> Dict[str, HealthSnapshot]:
        """Health snapshot of every adapter, keyed by name."""
        return {adapter.name: adapter.health.snapshot() for adapter in self.ordered_adapters()}

    def set_adapter_enabled(self, name: str, enabled: bool) -> None:
        """Enable or disable an adapter at runtime.

        Raises:
            ConfigurationError: If no adapter has that name
        """
        adapter = self.get_adapter(name)
        if adapter is None:
            raise ConfigurationError(f"Unknown adapter: {name}")
        adapter.enabled = enabled
        self.logger.info("adapter_toggled", source=name, enabled=enabled)
