"""Base extractor interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional
from datetime import datetime
import logging
import threading

from ..models.record import EntityType, SourceRecord

logger = logging.getLogger(__name__)


class FetchError(Exception):
    """A source API request failed."""

    def __init__(
        self,
        entity_type: EntityType,
        message: str,
        retryable: bool = False,
        status_code: Optional[int] = None
    ):
        super().__init__(message)
        self.entity_type = entity_type
        self.message = message
        self.retryable = retryable
        self.status_code = status_code

    def __str__(self) -> str:
        status = f" (HTTP {self.status_code})" if self.status_code else ""
        return f"{self.entity_type.value}: {self.message}{status}"


class PaginationLimitExceeded(FetchError):
    """The source kept returning cursors past the configured page ceiling."""

    def __init__(self, entity_type: EntityType, pages: int, last_cursor: Optional[str]):
        super().__init__(
            entity_type,
            f"Stopped after {pages} pages; last cursor {last_cursor!r}",
            retryable=False,
        )
        self.pages = pages
        self.last_cursor = last_cursor


class ExtractionCancelled(FetchError):
    """The run stopped the extraction between pages."""

    def __init__(self, entity_type: EntityType, pages: int):
        super().__init__(entity_type, f"Cancelled after {pages} pages", retryable=True)
        self.pages = pages


@dataclass
class ExtractionResult:
    """Result of extracting one entity type."""
    entity_type: EntityType
    records: List[SourceRecord] = field(default_factory=list)
    duplicates_skipped: int = 0
    pages_fetched: int = 0
    error: Optional[FetchError] = None
    warnings: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def total_extracted(self) -> int:
        return len(self.records)

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    @property
    def success(self) -> bool:
        """Check if extraction was successful."""
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "entity_type": self.entity_type.value,
            "total_extracted": self.total_extracted,
            "duplicates_skipped": self.duplicates_skipped,
            "pages_fetched": self.pages_fetched,
            "error": str(self.error) if self.error else None,
            "warnings": self.warnings,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
        }


class BaseExtractor(ABC):
    """
    Base class for source extractors.

    Extractors pull every record of an entity type from the source system
    and convert them to SourceRecord objects.
    """

    @abstractmethod
    def fetch_all(
        self,
        entity_type: EntityType,
        page_size: Optional[int] = None,
        progress: Optional[ExtractionResult] = None,
        stop_event: Optional[threading.Event] = None
    ) -> Iterator[SourceRecord]:
        """
        Lazily yield every record of an entity type, deduplicated by id.

        Args:
            entity_type: Entity type to fetch
            page_size: Records per page (defaults to the configured size)
            progress: Optional result object whose counters are updated
            stop_event: Checked before every page request

        Raises:
            FetchError: a request failed or the page ceiling was reached
            ExtractionCancelled: stop_event was set
        """
        pass

    def extract(
        self,
        entity_type: EntityType,
        page_size: Optional[int] = None,
        stop_event: Optional[threading.Event] = None
    ) -> ExtractionResult:
        """
        Fetch every record of an entity type into an ExtractionResult.

        Fetch failures are captured on the result instead of raised.
        """
        result = ExtractionResult(entity_type=entity_type, started_at=datetime.utcnow())

        try:
            for record in self.fetch_all(entity_type, page_size, progress=result, stop_event=stop_event):
                result.records.append(record)
        except FetchError as e:
            result.error = e
            logger.error(f"Extraction of {entity_type.value} failed: {e}")

        result.completed_at = datetime.utcnow()

        if result.success:
            logger.info(
                f"Extracted {result.total_extracted} {entity_type.value} records "
                f"from {result.pages_fetched} pages"
            )
        return result
