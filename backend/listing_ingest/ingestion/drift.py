"""Schema drift detection over recent normalizations.

A passive observer: the orchestrator reports which canonical fields each
successful normalization actually carried and which raw upstream field
names it saw. Per source, the detector keeps a rolling window and raises
an advisory DriftSignal when a tracked field goes missing, or an unknown
raw field shows up, in more than ``threshold`` of recent observations.
"""

from collections import Counter, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

import structlog

from listing_ingest.ingestion.base import CANONICAL_FIELDS


logger = structlog.get_logger(__name__)

MISSING_FIELD = "missing_field"
UNRECOGNIZED_FIELD = "unrecognized_field"


@dataclass(frozen=True)
class DriftSignal:
    """Advisory: an upstream's shape has measurably changed."""

    source: str
    field: str
    kind: str
    frequency: float
    window: int
    detected_at: datetime


class DriftObservation:
    """Rolling field counters for one source.

    Each observation stores the tracked fields that were absent and the
    unrecognized raw field names that were present; counters are kept in
    step with the window so frequencies are O(1).
    """

    def __init__(self, window_size: int):
        self.window_size = window_size
        self._entries: Deque[Tuple[FrozenSet[str], FrozenSet[str]]] = deque()
        self.absent_counts: Counter = Counter()
        self.unrecognized_counts: Counter = Counter()

    def __len__(self) -> int:
        return len(self._entries)

    def record(self, absent: Iterable[str], unrecognized: Iterable[str]) -> None:
        entry = (frozenset(absent), frozenset(unrecognized))
        if len(self._entries) >= self.window_size:
            old_absent, old_unrecognized = self._entries.popleft()
            self.absent_counts.subtract(old_absent)
            self.unrecognized_counts.subtract(old_unrecognized)
        self._entries.append(entry)
        self.absent_counts.update(entry[0])
        self.unrecognized_counts.update(entry[1])

    def absent_frequency(self, field: str) -> float:
        if not self._entries:
            return 0.0
        return self.absent_counts[field] / len(self._entries)

    def unrecognized_frequency(self, name: str) -> float:
        if not self._entries:
            return 0.0
        return self.unrecognized_counts[name] / len(self._entries)

    def unrecognized_names(self) -> Set[str]:
        return {name for name, count in self.unrecognized_counts.items() if count > 0}


class SchemaDriftDetector:
    """Per-source schema drift detector.

    Signals latch: once (source, field, kind) has fired it stays quiet until
    its frequency falls back to the threshold or below, then re-arms.

    Args:
        window_size: Observations kept per source
        threshold: Frequency that must be exceeded (0.5 = majority)
        min_observations: Observations required before evaluating
        clock: Returns the detection timestamp (injectable for tests)
    """

    def __init__(
        self,
        window_size: int = 100,
        threshold: float = 0.5,
        min_observations: int = 20,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if not 0 < threshold < 1:
            raise ValueError("threshold must be between 0 and 1")
        self.window_size = window_size
        self.threshold = threshold
        self.min_observations = min(min_observations, window_size)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._windows: Dict[str, DriftObservation] = {}
        self._latched: Set[Tuple[str, str, str]] = set()

    def observe(
        self,
        source: str,
        present_fields: Iterable[str],
        raw_field_names: Iterable[str] = (),
        tracked_fields: Iterable[str] = CANONICAL_FIELDS,
        known_raw_fields: Iterable[str] = (),
    ) -> List[DriftSignal]:
        """Record one successful normalization and evaluate the window.

        Args:
            source: Adapter name
            present_fields: Canonical fields the candidate carried
            raw_field_names: Field names seen on the raw payload
            tracked_fields: Canonical fields this source is expected to provide
            known_raw_fields: Raw names the adapter maps or knowingly ignores

        Returns:
            Newly fired signals (usually empty)
        """
        tracked = tuple(tracked_fields)
        present = set(present_fields)
        known = set(known_raw_fields)

        window = self._windows.get(source)
        if window is None:
            window = self._windows[source] = DriftObservation(self.window_size)

        absent = [field for field in tracked if field not in present]
        unrecognized = [name for name in raw_field_names if name not in known]
        window.record(absent, unrecognized)

        if len(window) < self.min_observations:
            return []

        signals: List[DriftSignal] = []
        for field in tracked:
            signal = self._evaluate(source, field, MISSING_FIELD, window.absent_frequency(field), len(window))
            if signal:
                signals.append(signal)
        for name in sorted(window.unrecognized_names()):
            signal = self._evaluate(
                source, name, UNRECOGNIZED_FIELD, window.unrecognized_frequency(name), len(window)
            )
            if signal:
                signals.append(signal)

        # Re-arm latched unrecognized names that have aged out of the window
        for key in [k for k in self._latched if k[0] == source and k[2] == UNRECOGNIZED_FIELD]:
            if window.unrecognized_frequency(key[1]) <= self.threshold:
                self._latched.discard(key)

        for signal in signals:
            logger.warning(
                "schema_drift_detected",
                source=signal.source,
                field=signal.field,
                kind=signal.kind,
                frequency=round(signal.frequency, 3),
                window=signal.window,
            )
        return signals

    def _evaluate(
        self, source: str, field: str, kind: str, frequency: float, window: int
    ) -> Optional[DriftSignal]:
        key = (source, field, kind)
        if frequency > self.threshold:
            if key in self._latched:
                return None
            self._latched.add(key)
            return DriftSignal(
                source=source,
                field=field,
                kind=kind,
                frequency=frequency,
                window=window,
                detected_at=self._clock(),
            )
        if key in self._latched:
            self._latched.discard(key)
            logger.info("schema_drift_cleared", source=source, field=field, kind=kind)
        return None

    def field_presence(self, source: str) -> Dict[str, float]:
        """Absence frequency per tracked field for one source (diagnostics)."""
        window = self._windows.get(source)
        if window is None:
            return {}
        return {
            field: window.absent_frequency(field)
            for field, count in window.absent_counts.items()
            if count > 0
        }

    def reset(self, source: Optional[str] = None) -> None:
        """Forget observations for one source, or for all sources."""
        if source is None:
            self._windows.clear()
            self._latched.clear()
            return
        self._windows.pop(source, None)
        self._latched = {key for key in self._latched if key[0] != source}
