"""PostgREST (Supabase) target store client."""

import logging
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .base import (
    TargetStore,
    StoreError,
    DuplicateKeyError,
    ConstraintViolationError,
    RowNotFoundError,
)
from ..models.migration import TargetConfig
from ..models.record import EntityType
from ..models.schema import get_schema

logger = logging.getLogger(__name__)


# PostgreSQL error codes surfaced by PostgREST
UNIQUE_VIOLATION = "23505"
FOREIGN_KEY_VIOLATION = "23503"


class PostgRESTStore(TargetStore):
    """
    Target store backed by a PostgREST endpoint (``/rest/v1/{table}``).

    Requests are independent HTTP calls, so ``unit_of_work`` applies writes
    immediately.
    """

    def __init__(
        self,
        config: TargetConfig,
        session: Optional[requests.Session] = None,
        max_retries: int = 3,
        backoff_factor: float = 2.0
    ):
        """
        Initialize the store client.

        Args:
            config: Target store configuration (URL, key, timeout)
            session: Custom requests session
            max_retries: Retries for idempotent requests
            backoff_factor: Exponential backoff factor between retries
        """
        self.config = config
        self.base_url = config.url.rstrip("/")
        self.timeout = config.request_timeout
        self.page_size = config.page_size
        self._session = session or self._create_session(max_retries, backoff_factor)
        self._session.headers.update(self._get_auth_headers())

    def _create_session(self, max_retries: int, backoff_factor: float) -> requests.Session:
        """Create a requests session with retry logic."""
        session = requests.Session()

        retries = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
        )

        adapter = HTTPAdapter(max_retries=retries)
        session.mount("https://", adapter)
        session.mount("http://", adapter)

        return session

    def _get_auth_headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }
        if self.config.api_key:
            headers["apikey"] = self.config.api_key
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def _url(self, entity_type: EntityType) -> str:
        table = self.config.tables.get(entity_type.value) or get_schema(entity_type).table
        return f"{self.base_url}/rest/v1/{table}"

    def _request(
        self,
        method: str,
        entity_type: EntityType,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None
    ) -> requests.Response:
        """Send a request and translate error responses into StoreErrors."""
        url = self._url(entity_type)
        try:
            response = self._session.request(
                method,
                url,
                params=params,
                json=json,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise StoreError(f"{method} {url} failed: {e}") from e

        if response.status_code >= 400:
            raise self._error_from_response(response)

        return response

    def _error_from_response(self, response: requests.Response) -> StoreError:
        code = None
        message = response.text
        try:
            body = response.json()
            code = body.get("code")
            message = body.get("message") or body.get("details") or message
        except ValueError:
            pass

        if code == UNIQUE_VIOLATION:
            return DuplicateKeyError(message, response.status_code, code)
        if code == FOREIGN_KEY_VIOLATION:
            return ConstraintViolationError(message, response.status_code, code)
        if response.status_code == 404:
            return RowNotFoundError(message, response.status_code, code)
        return StoreError(
            f"HTTP {response.status_code}: {message}",
            response.status_code,
            code,
        )

    def _select_one(self, entity_type: EntityType, column: str, value: str) -> Optional[Dict[str, Any]]:
        response = self._request(
            "GET",
            entity_type,
            params={column: f"eq.{value}", "select": "*", "limit": 1},
        )
        rows = response.json()
        return rows[0] if rows else None

    def get(self, entity_type: EntityType, row_id: str) -> Optional[Dict[str, Any]]:
        return self._select_one(entity_type, "id", row_id)

    def find_by_external_id(
        self,
        entity_type: EntityType,
        external_id: str
    ) -> Optional[Dict[str, Any]]:
        return self._select_one(entity_type, "external_id", external_id)

    def find_by_name(self, entity_type: EntityType, name: str) -> List[Dict[str, Any]]:
        # ilike without wildcards is a case-insensitive equality test
        name_field = get_schema(entity_type).name_field
        response = self._request(
            "GET",
            entity_type,
            params={name_field: f"ilike.{name.strip()}", "select": "*"},
        )
        return response.json()

    def list_rows(self, entity_type: EntityType) -> List[Dict[str, Any]]:
        """
        Every row of a table, paged by limit/offset.

        The server may return fewer rows than asked for (PostgREST caps pages
        at ``db-max-rows``), so a short page does not end the listing. Paging
        stops at the exact total from ``Content-Range`` or at an empty page.
        """
        rows: List[Dict[str, Any]] = []
        total: Optional[int] = None
        while total is None or len(rows) < total:
            offset = len(rows)
            response = self._request(
                "GET",
                entity_type,
                params={
                    "select": "*",
                    "order": "id.asc",
                    "limit": self.page_size,
                    "offset": offset,
                },
                headers={"Prefer": "count=exact"},
            )
            page = response.json()
            logger.debug(f"Listed {len(page)} {entity_type.value} rows at offset {offset}")
            if not page:
                break
            rows.extend(page)
            total = self._content_range_total(response)
        return rows

    def insert(self, entity_type: EntityType, values: Dict[str, Any]) -> Dict[str, Any]:
        response = self._request("POST", entity_type, json=values)
        rows = response.json()
        if not rows:
            raise StoreError(f"Insert into {entity_type.value} returned no row")
        return rows[0]

    def update(
        self,
        entity_type: EntityType,
        row_id: str,
        values: Dict[str, Any]
    ) -> Dict[str, Any]:
        response = self._request(
            "PATCH",
            entity_type,
            params={"id": f"eq.{row_id}"},
            json=values,
        )
        rows = response.json()
        if not rows:
            raise RowNotFoundError(f"{entity_type.value} {row_id} not found")
        return rows[0]

    def delete(self, entity_type: EntityType, row_id: str) -> None:
        response = self._request("DELETE", entity_type, params={"id": f"eq.{row_id}"})
        if not response.json():
            raise RowNotFoundError(f"{entity_type.value} {row_id} not found")

    def delete_all(self, entity_type: EntityType) -> int:
        # PostgREST refuses unfiltered deletes; this filter matches every row
        response = self._request(
            "DELETE",
            entity_type,
            params={"id": "not.is.null"},
            headers={"Prefer": "return=minimal,count=exact"},
        )
        return self._parse_count(response)

    def clear_column(self, entity_type: EntityType, column: str, value: Any = None) -> int:
        empty_filter = "not.is.null" if value is None else "neq.{}"
        response = self._request(
            "PATCH",
            entity_type,
            params={column: empty_filter},
            json={column: value},
            headers={"Prefer": "return=minimal,count=exact"},
        )
        return self._parse_count(response)

    def count_by_type(self, entity_type: EntityType, migrated_only: bool = False) -> int:
        params = {"select": "id"}
        if migrated_only:
            params["external_id"] = "not.is.null"
        response = self._request(
            "HEAD",
            entity_type,
            params=params,
            headers={"Prefer": "count=exact"},
        )
        return self._parse_count(response)

    @staticmethod
    def _content_range_total(response: requests.Response) -> Optional[int]:
        """Total from a ``Content-Range`` header like ``0-9/10`` or ``*/0``; None if absent."""
        _, _, total = response.headers.get("Content-Range", "").partition("/")
        try:
            return int(total)
        except ValueError:
            return None

    def _parse_count(self, response: requests.Response) -> int:
        total = self._content_range_total(response)
        if total is None:
            raise StoreError(
                f"Unexpected Content-Range header: {response.headers.get('Content-Range')!r}"
            )
        return total

    def validate_connection(self) -> bool:
        """Check that the PostgREST root answers without a server error."""
        try:
            response = self._session.request(
                "GET",
                f"{self.base_url}/rest/v1/",
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Target store connection validation failed: {e}")
            return False
        if response.status_code >= 500:
            logger.error(f"Target store answered HTTP {response.status_code}")
            return False
        return True
