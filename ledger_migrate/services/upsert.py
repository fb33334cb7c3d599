"""Dependency-ordered, idempotent upserts into the target store."""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from ..loaders.base import (
    TargetStore,
    StoreError,
    DuplicateKeyError,
    ConstraintViolationError,
)
from ..models.migration import ErrorStage, MigrationError
from ..models.record import EntityType, TargetEntity
from ..models.schema import ENTITY_ORDER, get_schema

logger = logging.getLogger(__name__)


INSERTED = "inserted"
UPDATED = "updated"
DEFERRED = "deferred"
FAILED = "failed"


@dataclass
class UpsertResult:
    """Result of an upsert batch."""
    inserted: int = 0
    updated: int = 0
    failed: int = 0
    deferred: int = 0
    stopped: bool = False
    ids: Dict[Tuple[EntityType, str], str] = field(default_factory=dict)  # (type, external_id) -> id
    errors: List[MigrationError] = field(default_factory=list)
    by_type: Dict[EntityType, Dict[str, int]] = field(default_factory=dict)

    def count(self, entity_type: EntityType, outcome: str) -> None:
        setattr(self, outcome, getattr(self, outcome) + 1)
        counts = self.by_type.setdefault(
            entity_type, {INSERTED: 0, UPDATED: 0, FAILED: 0, DEFERRED: 0}
        )
        counts[outcome] += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "failed": self.failed,
            "deferred": self.deferred,
            "stopped": self.stopped,
            "errors": [e.to_dict() for e in self.errors],
        }


class UpsertExecutor:
    """
    Writes target entities in dependency order.

    The source external id is the idempotency key: an existing row is
    updated, an adopted organic row is updated and stamped, anything else is
    inserted. Entities whose foreign keys point at rows that do not exist yet
    are retried once after every other entity has been written.
    """

    def __init__(self, store: TargetStore):
        self.store = store
        self._known_ids: Set[Tuple[EntityType, str]] = set()

    def upsert_batch(
        self,
        entities: List[TargetEntity],
        should_stop: Optional[Callable[[], bool]] = None
    ) -> UpsertResult:
        """
        Upsert a batch of entities of any types.

        Args:
            entities: Entities to write
            should_stop: Checked before every record; True stops the batch

        Returns:
            UpsertResult with per-record outcomes
        """
        result = UpsertResult()

        grouped: Dict[EntityType, List[TargetEntity]] = {}
        for entity in entities:
            grouped.setdefault(entity.entity_type, []).append(entity)

        deferred: List[TargetEntity] = []
        for entity_type in ENTITY_ORDER:
            group = grouped.get(entity_type, [])
            if group:
                logger.info(f"Upserting {len(group)} {entity_type.value} records...")

            for entity in group:
                if should_stop and should_stop():
                    result.stopped = True
                    logger.warning("Upsert batch stopped before completion")
                    return result

                outcome = self._upsert_one(entity, result, final=False)
                if outcome == DEFERRED:
                    deferred.append(entity)
                    result.count(entity_type, DEFERRED)
                    logger.warning(
                        f"Deferring {entity_type.value} {entity.external_id}: "
                        f"dependency not written yet"
                    )

        for entity in deferred:
            if should_stop and should_stop():
                result.stopped = True
                return result
            self._upsert_one(entity, result, final=True)

        logger.info(
            f"Upsert complete: {result.inserted} inserted, {result.updated} updated, "
            f"{result.failed} failed"
        )
        return result

    def _upsert_one(self, entity: TargetEntity, result: UpsertResult, final: bool) -> str:
        entity_type = entity.entity_type
        try:
            values, missing = self._prepare(entity)
            if missing:
                if not final:
                    return DEFERRED
                self._fail(
                    entity,
                    result,
                    f"missing dependency: {', '.join(missing)}",
                    retryable=True,
                )
                return FAILED

            row, outcome = self._write(entity, values)

        except ConstraintViolationError as e:
            self._fail(entity, result, f"constraint violation: {e}", retryable=False)
            return FAILED
        except StoreError as e:
            self._fail(entity, result, str(e), retryable=True)
            return FAILED
        except Exception as e:
            self._fail(entity, result, str(e), retryable=False)
            return FAILED

        entity.id = row["id"]
        self._known_ids.add((entity_type, row["id"]))
        result.ids[(entity_type, entity.external_id)] = row["id"]
        result.count(entity_type, outcome)
        logger.debug(f"{outcome} {entity_type.value} {entity.external_id} -> {row['id']}")
        return outcome

    def _fail(self, entity: TargetEntity, result: UpsertResult, message: str, retryable: bool):
        result.count(entity.entity_type, FAILED)
        result.errors.append(MigrationError(
            entity_type=entity.entity_type,
            stage=ErrorStage.UPSERT,
            message=message,
            external_id=entity.external_id,
            retryable=retryable,
        ))
        logger.error(f"Failed to upsert {entity.entity_type.value} {entity.external_id}: {message}")

    def _prepare(self, entity: TargetEntity) -> Tuple[Dict[str, Any], List[str]]:
        """Column values to write, and the FK columns whose target row is missing."""
        values = dict(entity.attributes)
        values["external_id"] = entity.external_id
        missing = []

        for column, ref in entity.references.items():
            row = self.store.find_by_external_id(ref.entity_type, ref.external_id)
            if row is None:
                missing.append(column)
            else:
                values[column] = row["id"]
                self._known_ids.add((ref.entity_type, row["id"]))

        for fk in get_schema(entity.entity_type).foreign_keys:
            ref_id = values.get(fk.column)
            if ref_id is None or fk.column in missing:
                continue
            if not self._exists(fk.references, ref_id):
                missing.append(fk.column)

        return values, missing

    def _exists(self, entity_type: EntityType, row_id: str) -> bool:
        if (entity_type, row_id) in self._known_ids:
            return True
        if self.store.get(entity_type, row_id) is not None:
            self._known_ids.add((entity_type, row_id))
            return True
        return False

    def _write(self, entity: TargetEntity, values: Dict[str, Any]) -> Tuple[Dict[str, Any], str]:
        entity_type = entity.entity_type

        existing = self.store.find_by_external_id(entity_type, entity.external_id)
        if existing is not None:
            return self.store.update(entity_type, existing["id"], values), UPDATED

        if entity.id:
            # Adopted organic row: stamp it with the external id
            return self.store.update(entity_type, entity.id, values), UPDATED

        try:
            return self.store.insert(entity_type, values), INSERTED
        except DuplicateKeyError:
            existing = self.store.find_by_external_id(entity_type, entity.external_id)
            if existing is None:
                raise
            logger.debug(f"Duplicate key on insert of {entity_type.value} {entity.external_id}; updating")
            return self.store.update(entity_type, existing["id"], values), UPDATED
