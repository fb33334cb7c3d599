"""Cursor-paginated extractor for the source record API."""

import time
import logging
import threading
from typing import Any, Dict, Iterator, List, Optional, Set

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .base import (
    BaseExtractor,
    ExtractionCancelled,
    ExtractionResult,
    FetchError,
    PaginationLimitExceeded,
)
from ..models.migration import SourceConfig
from ..models.record import EntityType, SourceRecord

logger = logging.getLogger(__name__)


RETRYABLE_STATUS = [429, 500, 502, 503, 504]


class RateLimiter:
    """Enforces a minimum delay between requests across threads."""

    def __init__(self, min_interval: float):
        self.min_interval = min_interval
        self._last_request_time = 0.0
        self._lock = threading.Lock()

    def wait(self):
        """Wait to respect the rate limit."""
        if self.min_interval <= 0:
            return
        with self._lock:
            elapsed = time.time() - self._last_request_time
            wait_time = self.min_interval - elapsed
            if wait_time > 0:
                time.sleep(wait_time)
            self._last_request_time = time.time()


class SourceAPIExtractor(BaseExtractor):
    """
    Extractor for the source record API.

    Pages are requested as ``GET {base_url}/records/{entity}?page_size=n&cursor=c``
    and answer ``{"records": [...], "next_cursor": "..."}``. The cursor alone
    decides whether another page exists.
    """

    def __init__(
        self,
        config: SourceConfig,
        session: Optional[requests.Session] = None,
        rate_limiter: Optional[RateLimiter] = None
    ):
        """
        Initialize the extractor.

        Args:
            config: Source API configuration
            session: Custom requests session
            rate_limiter: Limiter shared with other extractors
        """
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self._session = session or self._create_session()
        self._rate_limiter = rate_limiter or RateLimiter(config.min_request_interval)

    def _create_session(self) -> requests.Session:
        """Create a requests session with retry logic."""
        session = requests.Session()

        retry_config = self.config.retry_config
        retries = Retry(
            total=retry_config.get("max_retries", 3),
            backoff_factor=retry_config.get("backoff_factor", 2.0),
            status_forcelist=RETRYABLE_STATUS,
            respect_retry_after_header=True,
        )

        adapter = HTTPAdapter(max_retries=retries)
        session.mount("https://", adapter)
        session.mount("http://", adapter)

        return session

    def _get_auth_headers(self) -> Dict[str, str]:
        if self.config.api_token:
            return {"Authorization": f"Bearer {self.config.api_token}"}
        return {}

    def _get_endpoint(self, entity_type: EntityType) -> str:
        path = self.config.entity_paths.get(entity_type.value, entity_type.value)
        return f"{self.base_url}/records/{path}"

    def fetch_page(
        self,
        entity_type: EntityType,
        cursor: Optional[str],
        page_size: int
    ) -> Dict[str, Any]:
        """
        Fetch one page.

        Raises:
            FetchError: retryable for timeouts, connection errors, 429 and 5xx
        """
        params: Dict[str, Any] = {"page_size": page_size}
        if cursor:
            params["cursor"] = cursor

        self._rate_limiter.wait()

        try:
            response = self._session.get(
                self._get_endpoint(entity_type),
                headers=self._get_auth_headers(),
                params=params,
                timeout=self.config.request_timeout,
            )
            response.raise_for_status()
            return response.json()

        except requests.exceptions.HTTPError as e:
            status = e.response.status_code
            retryable = status in RETRYABLE_STATUS
            raise FetchError(
                entity_type,
                f"HTTP error: {e.response.text[:200]}",
                retryable=retryable,
                status_code=status,
            ) from e
        except requests.exceptions.RetryError as e:
            raise FetchError(entity_type, f"Retries exhausted: {e}", retryable=True) from e
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            raise FetchError(entity_type, f"Request failed: {e}", retryable=True) from e
        except ValueError as e:
            raise FetchError(entity_type, f"Invalid JSON response: {e}", retryable=False) from e

    def fetch_all(
        self,
        entity_type: EntityType,
        page_size: Optional[int] = None,
        progress: Optional[ExtractionResult] = None,
        stop_event: Optional[threading.Event] = None
    ) -> Iterator[SourceRecord]:
        """Yield every record of an entity type, following cursors until exhausted."""
        page_size = page_size or self.config.page_size
        progress = progress or ExtractionResult(entity_type=entity_type)
        seen: Set[str] = set()
        cursor: Optional[str] = None

        while True:
            if stop_event is not None and stop_event.is_set():
                raise ExtractionCancelled(entity_type, progress.pages_fetched)
            if progress.pages_fetched >= self.config.max_pages:
                raise PaginationLimitExceeded(entity_type, progress.pages_fetched, cursor)

            data = self.fetch_page(entity_type, cursor, page_size)
            progress.pages_fetched += 1

            items: List[Dict[str, Any]] = data.get("records") or []
            logger.debug(
                f"{entity_type.value} page {progress.pages_fetched}: "
                f"{len(items)} records, cursor={cursor!r}"
            )

            for item in items:
                try:
                    record = SourceRecord.from_api_item(entity_type, item)
                except ValueError as e:
                    progress.warnings.append(str(e))
                    logger.warning(f"Skipping source item: {e}")
                    continue

                if record.external_id in seen:
                    progress.duplicates_skipped += 1
                    logger.warning(f"Skipping duplicate {entity_type.value} {record.external_id}")
                    continue

                seen.add(record.external_id)
                yield record

            cursor = data.get("next_cursor")
            if not cursor:
                break
