"""Source system extractors."""

from .base import (
    BaseExtractor,
    ExtractionCancelled,
    ExtractionResult,
    FetchError,
    PaginationLimitExceeded,
)
from .api_extractor import SourceAPIExtractor, RateLimiter

__all__ = [
    "BaseExtractor",
    "ExtractionCancelled",
    "ExtractionResult",
    "FetchError",
    "PaginationLimitExceeded",
    "SourceAPIExtractor",
    "RateLimiter",
]
