"""Post-migration verification of the target store."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from ..loaders.base import TargetStore
from ..models.migration import MigrationRun
from ..models.record import EntityType
from ..models.schema import ASSOCIATIONS, ENTITY_ORDER, SCHEMAS

logger = logging.getLogger(__name__)


@dataclass
class Discrepancy:
    """A structured verification finding."""
    kind: str  # orphan, dangling_association, missing_required_association, run_error, unresolved_reference, missing_rows
    entity_type: EntityType
    message: str
    row_id: Optional[str] = None
    column: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "entity_type": self.entity_type.value,
            "message": self.message,
            "row_id": self.row_id,
            "column": self.column,
        }


@dataclass
class VerificationReport:
    """Counts, orphans, coverage and discrepancies for the target store."""
    counts_by_type: Dict[EntityType, Dict[str, int]] = field(default_factory=dict)
    orphan_counts: Dict[EntityType, int] = field(default_factory=dict)
    coverage_percent: Dict[EntityType, float] = field(default_factory=dict)
    overall_coverage: Optional[float] = None
    discrepancies: List[Discrepancy] = field(default_factory=list)
    run_id: Optional[str] = None
    generated_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def has_orphans(self) -> bool:
        return any(count > 0 for count in self.orphan_counts.values())

    @property
    def total_orphans(self) -> int:
        return sum(self.orphan_counts.values())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "run_id": self.run_id,
            "generated_at": self.generated_at.isoformat(),
            "counts_by_type": {et.value: c for et, c in self.counts_by_type.items()},
            "orphan_counts": {et.value: n for et, n in self.orphan_counts.items()},
            "coverage_percent": {et.value: p for et, p in self.coverage_percent.items()},
            "overall_coverage": self.overall_coverage,
            "has_orphans": self.has_orphans,
            "discrepancies": [d.to_dict() for d in self.discrepancies],
        }


class MigrationVerifier:
    """
    Re-reads the target store and reports on it.

    Read-only. Findings are returned as report entries and never raised.
    """

    def __init__(self, store: TargetStore):
        self.store = store

    def verify(self, run: Optional[MigrationRun] = None) -> VerificationReport:
        """
        Verify the target store, optionally against a migration run.

        Args:
            run: Run whose stats, errors and unresolved references are checked
        """
        report = VerificationReport(run_id=run.run_id if run else None)

        rows = {et: self.store.list_rows(et) for et in ENTITY_ORDER}
        ids: Dict[EntityType, Set[str]] = {et: {r["id"] for r in rows[et]} for et in ENTITY_ORDER}

        for entity_type in ENTITY_ORDER:
            self._count(report, entity_type, rows[entity_type])
            self._check_orphans(report, entity_type, rows[entity_type], ids)

        for assoc in ASSOCIATIONS:
            for row in rows[assoc.owner]:
                dangling = [i for i in (row.get(assoc.column) or []) if i not in ids[assoc.target]]
                if dangling:
                    report.discrepancies.append(Discrepancy(
                        kind="dangling_association",
                        entity_type=assoc.owner,
                        message=f"{assoc.column} lists missing {assoc.target.value} ids {dangling}",
                        row_id=row["id"],
                        column=assoc.column,
                    ))

        if run is not None:
            self._check_run(report, run)

        logger.info(
            f"Verification: {sum(c['total'] for c in report.counts_by_type.values())} rows, "
            f"{report.total_orphans} orphans, {len(report.discrepancies)} discrepancies"
        )
        return report

    def _count(self, report: VerificationReport, entity_type: EntityType, rows: List[Dict[str, Any]]):
        required = SCHEMAS[entity_type].required_associations
        migrated = sum(1 for r in rows if r.get("external_id"))
        complete = 0
        for row in rows:
            missing = [column for column in required if not row.get(column)]
            if missing:
                report.discrepancies.append(Discrepancy(
                    kind="missing_required_association",
                    entity_type=entity_type,
                    message=f"{entity_type.value} {row['id']} has empty {', '.join(missing)}",
                    row_id=row["id"],
                    column=missing[0],
                ))
            else:
                complete += 1

        report.counts_by_type[entity_type] = {
            "total": len(rows),
            "migrated": migrated,
            "organic": len(rows) - migrated,
            "with_required_associations": complete,
        }

    def _check_orphans(
        self,
        report: VerificationReport,
        entity_type: EntityType,
        rows: List[Dict[str, Any]],
        ids: Dict[EntityType, Set[str]]
    ):
        orphans = 0
        for row in rows:
            broken = [
                fk for fk in SCHEMAS[entity_type].foreign_keys
                if row.get(fk.column) is not None and row[fk.column] not in ids[fk.references]
            ]
            if not broken:
                continue
            orphans += 1
            for fk in broken:
                report.discrepancies.append(Discrepancy(
                    kind="orphan",
                    entity_type=entity_type,
                    message=(
                        f"{entity_type.value} {row['id']}.{fk.column} references missing "
                        f"{fk.references.value} {row[fk.column]}"
                    ),
                    row_id=row["id"],
                    column=fk.column,
                ))
        if SCHEMAS[entity_type].foreign_keys:
            report.orphan_counts[entity_type] = orphans

    def _check_run(self, report: VerificationReport, run: MigrationRun):
        fetched_total = 0
        upserted_total = 0
        for entity_type, stats in run.entity_stats.items():
            if stats.fetched:
                report.coverage_percent[entity_type] = round(stats.upserted / stats.fetched * 100, 2)
                fetched_total += stats.fetched
                upserted_total += stats.upserted

            migrated = report.counts_by_type.get(entity_type, {}).get("migrated", 0)
            if not run.dry_run and migrated < stats.upserted:
                report.discrepancies.append(Discrepancy(
                    kind="missing_rows",
                    entity_type=entity_type,
                    message=(
                        f"{stats.upserted} {entity_type.value} rows upserted but only "
                        f"{migrated} migrated rows found"
                    ),
                ))

        if fetched_total:
            report.overall_coverage = round(upserted_total / fetched_total * 100, 2)

        for error in run.errors:
            report.discrepancies.append(Discrepancy(
                kind="run_error",
                entity_type=error.entity_type,
                message=f"[{error.stage.value}] {error.message}",
                row_id=error.external_id,
            ))

        for unresolved in run.unresolved:
            report.discrepancies.append(Discrepancy(
                kind="unresolved_reference",
                entity_type=unresolved.entity_type,
                message=f"{unresolved.column} unresolved ({unresolved.reason}): {unresolved.value!r}",
                row_id=unresolved.external_id,
                column=unresolved.column,
            ))
