"""Listing metadata ingestion pipeline.

This package provides:
- Source adapters for the storefront page and the iTunes lookup/search APIs
- Rate limiting, validation, payload classification and normalization
- The priority-fallback orchestrator and the batch fetcher
- Schema drift detection and the snapshot store
"""

from .base import (
    BaseSourceAdapter,
    FetchOptions,
    NormalizedRecord,
    PayloadSignature,
    RawPayload,
)
from .batch import BatchFetcher
from .drift import DriftSignal, SchemaDriftDetector
from .factory import AdapterFactory, Pipeline
from .orchestrator import MetadataOrchestrator, ResolutionResult, ResolutionState
from .snapshot_store import MetadataSnapshot, SnapshotQuery, SnapshotStore

__all__ = [
    # Base classes and data structures
    "BaseSourceAdapter",
    "FetchOptions",
    "NormalizedRecord",
    "PayloadSignature",
    "RawPayload",
    # Pipeline
    "AdapterFactory",
    "BatchFetcher",
    "MetadataOrchestrator",
    "Pipeline",
    "ResolutionResult",
    "ResolutionState",
    # Drift and persistence
    "DriftSignal",
    "SchemaDriftDetector",
    "MetadataSnapshot",
    "SnapshotQuery",
    "SnapshotStore",
]
