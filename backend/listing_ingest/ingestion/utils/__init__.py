"""Pipeline stage utilities: rate limiting, validation, classification, normalization."""

from .classifier import PayloadClassifier
from .normalizer import CURRENT_SCHEMA_VERSION, MetadataNormalizer
from .rate_limiter import SourceRateLimiter, TokenBucket
from .validator import ResponseValidator

__all__ = [
    "CURRENT_SCHEMA_VERSION",
    "MetadataNormalizer",
    "PayloadClassifier",
    "ResponseValidator",
    "SourceRateLimiter",
    "TokenBucket",
]
