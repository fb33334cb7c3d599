"""In-memory target store used for dry runs and tests."""

from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional
import copy
import logging
import threading
import uuid

from .base import (
    TargetStore,
    DuplicateKeyError,
    ConstraintViolationError,
    RowNotFoundError,
)
from ..models.record import EntityType
from ..models.schema import ENTITY_ORDER, get_schema, dependents_of

logger = logging.getLogger(__name__)


class InMemoryTargetStore(TargetStore):
    """
    Target store kept in process memory.

    Enforces the same integrity rules as the relational store: unique
    external_id, foreign keys must exist on write, and deletes are
    restricted while other rows still reference the row.
    """

    def __init__(self):
        self._tables: Dict[EntityType, Dict[str, Dict[str, Any]]] = {
            entity_type: {} for entity_type in ENTITY_ORDER
        }
        self._lock = threading.RLock()
        self._uow_depth = 0
        self.write_log: List[tuple] = []  # (operation, entity_type, id)

    @classmethod
    def from_store(cls, store: TargetStore) -> "InMemoryTargetStore":
        """Snapshot every row of another store."""
        snapshot = cls()
        for entity_type in ENTITY_ORDER:
            for row in store.list_rows(entity_type):
                snapshot._tables[entity_type][row["id"]] = copy.deepcopy(row)
        logger.info(
            f"Snapshotted target store: "
            f"{sum(len(rows) for rows in snapshot._tables.values())} rows"
        )
        return snapshot

    def _check_foreign_keys(self, entity_type: EntityType, values: Dict[str, Any]):
        for fk in get_schema(entity_type).foreign_keys:
            ref_id = values.get(fk.column)
            if ref_id is not None and ref_id not in self._tables[fk.references]:
                raise ConstraintViolationError(
                    f"{entity_type.value}.{fk.column} references missing "
                    f"{fk.references.value} {ref_id}",
                    code="23503",
                )

    def _check_external_id(self, entity_type: EntityType, external_id: Any, row_id: str):
        if not external_id:
            return
        for other_id, row in self._tables[entity_type].items():
            if other_id != row_id and row.get("external_id") == external_id:
                raise DuplicateKeyError(
                    f"{entity_type.value} with external_id {external_id} already exists",
                    code="23505",
                )

    def get(self, entity_type: EntityType, row_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._tables[entity_type].get(row_id)
            return copy.deepcopy(row) if row is not None else None

    def find_by_external_id(
        self,
        entity_type: EntityType,
        external_id: str
    ) -> Optional[Dict[str, Any]]:
        with self._lock:
            for row in self._tables[entity_type].values():
                if row.get("external_id") == external_id:
                    return copy.deepcopy(row)
        return None

    def find_by_name(self, entity_type: EntityType, name: str) -> List[Dict[str, Any]]:
        name_field = get_schema(entity_type).name_field
        wanted = name.strip().lower()
        with self._lock:
            return [
                copy.deepcopy(row)
                for row in self._tables[entity_type].values()
                if str(row.get(name_field) or "").strip().lower() == wanted
            ]

    def list_rows(self, entity_type: EntityType) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(row)
                for _, row in sorted(self._tables[entity_type].items())
            ]

    def insert(self, entity_type: EntityType, values: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            row = copy.deepcopy(values)
            row_id = row.get("id") or str(uuid.uuid4())
            row["id"] = row_id
            if row_id in self._tables[entity_type]:
                raise DuplicateKeyError(f"{entity_type.value} {row_id} already exists", code="23505")
            self._check_external_id(entity_type, row.get("external_id"), row_id)
            self._check_foreign_keys(entity_type, row)
            self._tables[entity_type][row_id] = row
            self.write_log.append(("insert", entity_type, row_id))
            return copy.deepcopy(row)

    def update(
        self,
        entity_type: EntityType,
        row_id: str,
        values: Dict[str, Any]
    ) -> Dict[str, Any]:
        with self._lock:
            if row_id not in self._tables[entity_type]:
                raise RowNotFoundError(f"{entity_type.value} {row_id} not found")
            row = dict(self._tables[entity_type][row_id])
            row.update(copy.deepcopy(values))
            row["id"] = row_id
            self._check_external_id(entity_type, row.get("external_id"), row_id)
            self._check_foreign_keys(entity_type, row)
            self._tables[entity_type][row_id] = row
            self.write_log.append(("update", entity_type, row_id))
            return copy.deepcopy(row)

    def delete(self, entity_type: EntityType, row_id: str) -> None:
        with self._lock:
            if row_id not in self._tables[entity_type]:
                raise RowNotFoundError(f"{entity_type.value} {row_id} not found")
            for dependent_type, fk in dependents_of(entity_type):
                for row in self._tables[dependent_type].values():
                    if row.get(fk.column) == row_id:
                        raise ConstraintViolationError(
                            f"{entity_type.value} {row_id} is still referenced by "
                            f"{dependent_type.value}.{fk.column}",
                            code="23503",
                        )
            del self._tables[entity_type][row_id]
            self.write_log.append(("delete", entity_type, row_id))

    def discard(self, entity_type: EntityType, row_id: str) -> None:
        """Remove a row without integrity checks (simulates an out-of-band delete)."""
        with self._lock:
            self._tables[entity_type].pop(row_id, None)

    def count_by_type(self, entity_type: EntityType, migrated_only: bool = False) -> int:
        with self._lock:
            rows = self._tables[entity_type].values()
            if migrated_only:
                return sum(1 for row in rows if row.get("external_id"))
            return len(rows)

    @contextmanager
    def unit_of_work(self) -> Iterator["InMemoryTargetStore"]:
        """Apply writes atomically; any exception restores the previous state."""
        with self._lock:
            snapshot = copy.deepcopy(self._tables) if self._uow_depth == 0 else None
            self._uow_depth += 1
            try:
                yield self
            except Exception:
                if snapshot is not None:
                    self._tables = snapshot
                    logger.warning("Unit of work rolled back")
                raise
            finally:
                self._uow_depth -= 1
