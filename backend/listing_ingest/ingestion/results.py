"""Explicit stage results for the ingestion pipeline.

Each stage returns Ok(value) or Rejected(rejection) instead of raising, so
the orchestrator loop is a plain state-machine step rather than a try/except
cascade. A rejection of any kind means "this source can't answer right now":
the orchestrator records it and advances to the next adapter.
"""

from dataclasses import dataclass
from typing import Any, ClassVar, Optional, Union


@dataclass(frozen=True)
class Rejection:
    """Why an attempt against one source was abandoned."""

    stage: ClassVar[str] = "pipeline"

    reason: str
    detail: str = ""

    def __str__(self) -> str:
        if self.detail:
            return f"{self.stage}:{self.reason} ({self.detail})"
        return f"{self.stage}:{self.reason}"


@dataclass(frozen=True)
class FetchRejection(Rejection):
    """Network-level failure (transport, timeout, 5xx)."""

    stage: ClassVar[str] = "fetch"


@dataclass(frozen=True)
class ValidationError(Rejection):
    """Structurally wrong response: bad_status, bad_content_type or too_small."""

    stage: ClassVar[str] = "validation"

    BAD_STATUS = "bad_status"
    BAD_CONTENT_TYPE = "bad_content_type"
    TOO_SMALL = "too_small"


@dataclass(frozen=True)
class ClassificationRejection(Rejection):
    """Well-formed response that is not a listing page."""

    stage: ClassVar[str] = "classification"
    signature: Optional[str] = None


@dataclass(frozen=True)
class TransformRejection(Rejection):
    """Listing payload the adapter could not map onto a record."""

    stage: ClassVar[str] = "transform"


@dataclass(frozen=True)
class Ok:
    value: Any


@dataclass(frozen=True)
class Rejected:
    rejection: Rejection


StageResult = Union[Ok, Rejected]
