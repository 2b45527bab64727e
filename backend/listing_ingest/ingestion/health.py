"""Per-adapter health tracking.

An AdapterHealth belongs to exactly one adapter. The orchestrator's outcome
callback is the only writer; routing and monitoring read snapshots.
"""

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Deque, Optional


# Latency smoothing factor for the exponential moving average
LATENCY_EMA_ALPHA = 0.1


@dataclass(frozen=True)
class HealthSnapshot:
    """Read-only copy of an adapter's health at one point in time."""

    status: str
    success_rate: float
    last_success_at: Optional[datetime]
    last_failure_at: Optional[datetime]
    latency_ema_ms: float
    consecutive_failures: int
    request_count: int
    error_count: int


class AdapterHealth:
    """Rolling success rate, EMA latency and failure streak for one adapter.

    Mutations happen in synchronous code between awaits, so they are atomic
    with respect to other tasks on the same event loop.
    """

    def __init__(self, window_size: int = 50):
        self._outcomes: Deque[bool] = deque(maxlen=window_size)
        self.last_success_at: Optional[datetime] = None
        self.last_failure_at: Optional[datetime] = None
        self.latency_ema_ms: float = 0.0
        self.consecutive_failures: int = 0
        self.request_count: int = 0
        self.error_count: int = 0

    @property
    def success_rate(self) -> float:
        """Fraction of successes over the rolling window (1.0 when unused)."""
        if not self._outcomes:
            return 1.0
        return sum(self._outcomes) / len(self._outcomes)

    @property
    def status(self) -> str:
        rate = self.success_rate
        if rate >= 0.9:
            return "healthy"
        if rate >= 0.5:
            return "degraded"
        return "down"

    def record_success(self, latency_ms: float, at: Optional[datetime] = None) -> None:
        self.request_count += 1
        self._outcomes.append(True)
        self.consecutive_failures = 0
        self.last_success_at = at or datetime.now(timezone.utc)
        self._observe_latency(latency_ms)

    def record_failure(self, latency_ms: Optional[float] = None, at: Optional[datetime] = None) -> None:
        self.request_count += 1
        self.error_count += 1
        self._outcomes.append(False)
        self.consecutive_failures += 1
        self.last_failure_at = at or datetime.now(timezone.utc)
        if latency_ms is not None:
            self._observe_latency(latency_ms)

    def _observe_latency(self, latency_ms: float) -> None:
        if self.latency_ema_ms == 0.0:
            self.latency_ema_ms = latency_ms
        else:
            self.latency_ema_ms = (
                self.latency_ema_ms * (1 - LATENCY_EMA_ALPHA) + latency_ms * LATENCY_EMA_ALPHA
            )

    def snapshot(self) -> HealthSnapshot:
        return HealthSnapshot(
            status=self.status,
            success_rate=self.success_rate,
            last_success_at=self.last_success_at,
            last_failure_at=self.last_failure_at,
            latency_ema_ms=self.latency_ema_ms,
            consecutive_failures=self.consecutive_failures,
            request_count=self.request_count,
            error_count=self.error_count,
        )
