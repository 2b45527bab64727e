"""Metrics/alerting sinks for adapter health and drift signals."""

from abc import ABC, abstractmethod

import structlog

from listing_ingest.ingestion.drift import DriftSignal
from listing_ingest.ingestion.health import HealthSnapshot


class MetricsSink(ABC):
    """Fire-and-forget destination for pipeline telemetry.

    Implementations may raise; callers log and swallow the error so that a
    metrics outage never fails an ingestion.
    """

    @abstractmethod
    async def emit_health(self, source: str, health: HealthSnapshot) -> None:
        """Publish one adapter's health after an attempt."""

    @abstractmethod
    async def emit_drift(self, signal: DriftSignal) -> None:
        """Publish a schema drift signal."""


class LoggingMetricsSink(MetricsSink):
    """Default sink: writes telemetry to the structured log."""

    def __init__(self):
        self.logger = structlog.get_logger().bind(service="metrics")

    async def emit_health(self, source: str, health: HealthSnapshot) -> None:
        self.logger.debug(
            "adapter_health",
            source=source,
            status=health.status,
            success_rate=round(health.success_rate, 3),
            latency_ema_ms=round(health.latency_ema_ms, 1),
            consecutive_failures=health.consecutive_failures,
        )

    async def emit_drift(self, signal: DriftSignal) -> None:
        self.logger.warning(
            "drift_signal",
            source=signal.source,
            field=signal.field,
            kind=signal.kind,
            frequency=round(signal.frequency, 3),
        )
