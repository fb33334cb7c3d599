"""Cascading delete of migrated data in reverse dependency order."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..loaders.base import TargetStore
from ..models.record import EntityType
from ..models.schema import ENTITY_ORDER, associations_targeting, dependents_of

logger = logging.getLogger(__name__)


class ReversalError(Exception):
    """Rows remained after a cascading delete."""

    def __init__(self, report: "DeletionReport"):
        remaining = {et.value: n for et, n in report.remaining.items() if n}
        super().__init__(f"Rows remain after delete: {remaining}")
        self.report = report


@dataclass
class DeletionReport:
    """Outcome of a cascading delete."""
    entity_types: List[EntityType] = field(default_factory=list)
    deleted: Dict[EntityType, int] = field(default_factory=dict)
    cleared_references: Dict[str, int] = field(default_factory=dict)  # "type.column" -> rows
    remaining: Dict[EntityType, int] = field(default_factory=dict)
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    @property
    def total_deleted(self) -> int:
        return sum(self.deleted.values())

    @property
    def complete(self) -> bool:
        return not any(self.remaining.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_types": [et.value for et in self.entity_types],
            "deleted": {et.value: n for et, n in self.deleted.items()},
            "cleared_references": self.cleared_references,
            "remaining": {et.value: n for et, n in self.remaining.items()},
            "total_deleted": self.total_deleted,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class ReversalExecutor:
    """
    Deletes entity types in strict reverse dependency order.

    References held by types that are not being deleted are cleared first,
    so the delete never trips a foreign-key restriction.
    """

    def __init__(self, store: TargetStore):
        self.store = store

    def delete_all(self, entity_types: Optional[List[EntityType]] = None) -> DeletionReport:
        """
        Delete every row of the given entity types (all types by default).

        Raises:
            ReversalError: a requested type still has rows afterwards
        """
        requested = set(entity_types or ENTITY_ORDER)
        order = [et for et in reversed(ENTITY_ORDER) if et in requested]
        report = DeletionReport(entity_types=order)

        logger.info(f"Deleting {', '.join(et.value for et in order)}")

        for entity_type in order:
            self._clear_inbound(entity_type, requested, report)
            deleted = self.store.delete_all(entity_type)
            report.deleted[entity_type] = deleted
            logger.info(f"Deleted {deleted} {entity_type.value} rows")

        for entity_type in order:
            report.remaining[entity_type] = self.store.count_by_type(entity_type)

        report.completed_at = datetime.utcnow()

        if not report.complete:
            logger.error(f"Delete incomplete: {report.to_dict()['remaining']}")
            raise ReversalError(report)

        logger.info(f"Deleted {report.total_deleted} rows in total")
        return report

    def _clear_inbound(self, entity_type: EntityType, requested: set, report: DeletionReport):
        """Null FKs and empty association arrays in kept types that point at ``entity_type``."""
        for dependent_type, fk in dependents_of(entity_type):
            if dependent_type in requested:
                continue
            cleared = self.store.clear_column(dependent_type, fk.column, None)
            if cleared:
                report.cleared_references[f"{dependent_type.value}.{fk.column}"] = cleared
                logger.info(f"Cleared {cleared} {dependent_type.value}.{fk.column} references")

        for assoc in associations_targeting(entity_type):
            if assoc.owner in requested:
                continue
            cleared = self.store.clear_column(assoc.owner, assoc.column, [])
            if cleared:
                report.cleared_references[f"{assoc.owner.value}.{assoc.column}"] = cleared
                logger.info(f"Emptied {cleared} {assoc.owner.value}.{assoc.column} arrays")
