"""Base interface for target store clients."""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional
import logging

from ..models.record import EntityType

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Error raised by a target store client."""

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class DuplicateKeyError(StoreError):
    """A unique constraint (external_id) was violated."""


class ConstraintViolationError(StoreError):
    """A foreign-key or other integrity constraint was violated."""


class RowNotFoundError(StoreError):
    """The addressed row does not exist."""


class TargetStore(ABC):
    """
    Base class for target store clients.

    Rows are plain dicts keyed by column name. Every row has an ``id``;
    migrated rows also carry a unique ``external_id``.
    """

    @abstractmethod
    def get(self, entity_type: EntityType, row_id: str) -> Optional[Dict[str, Any]]:
        """Get a row by its target id, or None."""
        pass

    @abstractmethod
    def find_by_external_id(
        self,
        entity_type: EntityType,
        external_id: str
    ) -> Optional[Dict[str, Any]]:
        """Get the row carrying the given source id, or None."""
        pass

    @abstractmethod
    def find_by_name(self, entity_type: EntityType, name: str) -> List[Dict[str, Any]]:
        """Rows whose name column equals ``name``, ignoring case."""
        pass

    @abstractmethod
    def list_rows(self, entity_type: EntityType) -> List[Dict[str, Any]]:
        """All rows of an entity type, ordered by id."""
        pass

    @abstractmethod
    def insert(self, entity_type: EntityType, values: Dict[str, Any]) -> Dict[str, Any]:
        """
        Insert a row and return it as stored.

        Raises:
            DuplicateKeyError: external_id already present
            ConstraintViolationError: a foreign key points at a missing row
        """
        pass

    @abstractmethod
    def update(
        self,
        entity_type: EntityType,
        row_id: str,
        values: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Update columns of an existing row and return it as stored.

        Raises:
            RowNotFoundError: no row with that id
        """
        pass

    @abstractmethod
    def delete(self, entity_type: EntityType, row_id: str) -> None:
        """Delete one row. Raises ConstraintViolationError if still referenced."""
        pass

    @abstractmethod
    def count_by_type(self, entity_type: EntityType, migrated_only: bool = False) -> int:
        """Count rows, optionally only those with an external_id."""
        pass

    def delete_all(self, entity_type: EntityType) -> int:
        """Delete every row of an entity type. Returns rows deleted."""
        deleted = 0
        for row in self.list_rows(entity_type):
            self.delete(entity_type, row["id"])
            deleted += 1
        return deleted

    def clear_column(self, entity_type: EntityType, column: str, value: Any = None) -> int:
        """Set ``column`` to ``value`` on every row where it is not already empty."""
        cleared = 0
        for row in self.list_rows(entity_type):
            if row.get(column) not in (None, []):
                self.update(entity_type, row["id"], {column: value})
                cleared += 1
        return cleared

    @contextmanager
    def unit_of_work(self) -> Iterator["TargetStore"]:
        """
        Group writes. Stores without transactions apply writes immediately;
        idempotent upserts make a partially applied unit safe to re-run.
        """
        yield self

    def validate_connection(self) -> bool:
        """Whether the target store answers. Stores without a remote end always do."""
        return True
