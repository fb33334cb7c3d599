"""Association (array-of-ids) columns: compute both sides and write them."""

import re
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Pattern, Tuple

from ..loaders.base import TargetStore, StoreError
from ..models.migration import ErrorStage, MigrationError
from ..models.record import EntityType, SourceRecord, UnresolvedReference
from ..models.schema import ASSOCIATIONS, ENTITY_ORDER, INVERSE_COLUMNS, get_schema
from . import fields
from .resolver import EntityIndex, find_reference

logger = logging.getLogger(__name__)


# Forward column -> foreign key that always comes first in it
PRIMARY_COLUMNS: Dict[Tuple[EntityType, str], str] = {
    (EntityType.STORY, "linked_storytellers"): "storyteller_id",
    (EntityType.MEDIA, "linked_storytellers"): "storyteller_id",
}

# Forward column -> (child type, child FK) whose rows are also linked
CHILD_COLUMNS: Dict[Tuple[EntityType, str], Tuple[EntityType, str]] = {
    (EntityType.STORY, "linked_media"): (EntityType.MEDIA, "story_id"),
}

# Derived column -> (child type, child FK) it lists
FK_DERIVED_COLUMNS: Dict[Tuple[EntityType, str], Tuple[EntityType, str]] = {
    (EntityType.PROJECT, "linked_storytellers"): (EntityType.STORYTELLER, "project_id"),
    (EntityType.STORY, "linked_quotes"): (EntityType.QUOTE, "story_id"),
}

LINKED_TYPES = [
    EntityType.PROJECT,
    EntityType.STORYTELLER,
    EntityType.STORY,
    EntityType.THEME,
    EntityType.QUOTE,
    EntityType.MEDIA,
]

# Types listed in the report when they end up with no links at all
REPORT_UNLINKED = [EntityType.STORY, EntityType.THEME, EntityType.QUOTE, EntityType.MEDIA]


def _as_ids(value: Any) -> List[str]:
    if not value:
        return []
    return [str(v) for v in value]


def _dedupe(ids: List[str]) -> List[str]:
    seen = set()
    ordered = []
    for row_id in ids:
        if row_id not in seen:
            seen.add(row_id)
            ordered.append(row_id)
    return ordered


@dataclass
class RelationshipGraph:
    """Desired association values for every linked row, next to the stored ones."""
    current: Dict[EntityType, Dict[str, Dict[str, Any]]] = field(default_factory=dict)
    desired: Dict[EntityType, Dict[str, Dict[str, List[str]]]] = field(default_factory=dict)
    unresolved: List[UnresolvedReference] = field(default_factory=list)

    def set(self, entity_type: EntityType, row_id: str, column: str, ids: List[str]) -> None:
        self.desired.setdefault(entity_type, {}).setdefault(row_id, {})[column] = ids

    def get(self, entity_type: EntityType, row_id: str, column: str) -> List[str]:
        return self.desired.get(entity_type, {}).get(row_id, {}).get(column, [])

    def edges(self) -> List[Tuple[str, str, str, str]]:
        """Forward edges as sorted (owner type, owner id, column, target id) tuples."""
        found = []
        for assoc in ASSOCIATIONS:
            if not assoc.forward:
                continue
            for row_id, columns in self.desired.get(assoc.owner, {}).items():
                for target_id in columns.get(assoc.column, []):
                    found.append((assoc.owner.value, row_id, assoc.column, target_id))
        return sorted(found)

    def changes(self) -> Dict[EntityType, Dict[str, Dict[str, List[str]]]]:
        """Columns whose desired value differs from the stored one."""
        changed: Dict[EntityType, Dict[str, Dict[str, List[str]]]] = {}
        for entity_type, rows in self.desired.items():
            for row_id, columns in rows.items():
                stored = self.current.get(entity_type, {}).get(row_id, {})
                diff = {
                    column: ids for column, ids in columns.items()
                    if _as_ids(stored.get(column)) != ids
                }
                if diff:
                    changed.setdefault(entity_type, {})[row_id] = diff
        return changed


@dataclass
class GraphReport:
    """Result of applying a relationship graph."""
    rows_updated: int = 0
    columns_written: int = 0
    unlinked: Dict[EntityType, List[str]] = field(default_factory=dict)
    errors: List[MigrationError] = field(default_factory=list)
    unresolved: List[UnresolvedReference] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rows_updated": self.rows_updated,
            "columns_written": self.columns_written,
            "unlinked": {et.value: ids for et, ids in self.unlinked.items()},
            "errors": [e.to_dict() for e in self.errors],
            "unresolved": [u.to_dict() for u in self.unresolved],
        }


class RelationshipGraphBuilder:
    """
    Computes association columns for a migrated record set.

    Forward columns of rows migrated in this batch are recomputed from
    source data: the row's own foreign key first, then declared references,
    then theme names found as whole words in the record's text. Other rows
    keep their stored forward columns. Inverse and derived columns are then
    recomputed from the complete forward edge set.
    """

    def __init__(self, store: TargetStore, keyword_min_length: int = 4):
        self.store = store
        self.keyword_min_length = keyword_min_length

    def build(
        self,
        records_by_type: Dict[EntityType, List[SourceRecord]],
        id_maps: Dict[Tuple[EntityType, str], str]
    ) -> RelationshipGraph:
        """
        Build the graph.

        Args:
            records_by_type: Source records migrated in this batch
            id_maps: (entity type, external id) -> target row id
        """
        graph = RelationshipGraph()
        indexes: Dict[EntityType, EntityIndex] = {}
        for entity_type in LINKED_TYPES:
            index = EntityIndex.load(self.store, entity_type)
            indexes[entity_type] = index
            graph.current[entity_type] = index.by_id

        batch: Dict[EntityType, Dict[str, SourceRecord]] = {}
        for entity_type, records in records_by_type.items():
            for record in records:
                row_id = id_maps.get((entity_type, record.external_id))
                if row_id and row_id in indexes.get(entity_type, EntityIndex(entity_type)).by_id:
                    batch.setdefault(entity_type, {})[row_id] = record

        keywords = self._theme_keywords(indexes[EntityType.THEME])

        for assoc in ASSOCIATIONS:
            if assoc.forward:
                self._build_forward(graph, assoc.owner, assoc.column, assoc.target,
                                    indexes, batch, keywords)

        self._build_inverse(graph, indexes)
        self._build_fk_derived(graph, indexes)
        self._build_theme_storytellers(graph, indexes)

        logger.info(
            f"Built relationship graph: {len(graph.edges())} forward edges, "
            f"{len(graph.unresolved)} unresolved links"
        )
        return graph

    def _theme_keywords(self, themes: EntityIndex) -> List[Tuple[str, Pattern]]:
        keywords = []
        for row_id, name in themes.name_candidates():
            name = (name or "").strip()
            if len(name) < self.keyword_min_length:
                continue
            pattern = re.compile(r"\b" + re.escape(name) + r"\b", re.IGNORECASE)
            keywords.append((row_id, pattern))
        return keywords

    def _build_forward(
        self,
        graph: RelationshipGraph,
        owner: EntityType,
        column: str,
        target: EntityType,
        indexes: Dict[EntityType, EntityIndex],
        batch: Dict[EntityType, Dict[str, SourceRecord]],
        keywords: List[Tuple[str, Pattern]]
    ) -> None:
        primary = PRIMARY_COLUMNS.get((owner, column))
        child = CHILD_COLUMNS.get((owner, column))
        target_index = indexes[target]

        for row_id in sorted(indexes[owner].by_id):
            row = indexes[owner].by_id[row_id]
            record = batch.get(owner, {}).get(row_id)

            if record is None:
                ids = _as_ids(row.get(column))
                if not ids and primary and row.get(primary):
                    ids = [row[primary]]
                graph.set(owner, row_id, column, ids)
                continue

            ids = []
            if primary and row.get(primary):
                ids.append(row[primary])
            if child:
                child_type, child_fk = child
                ids.extend(
                    child_id for child_id in sorted(indexes[child_type].by_id)
                    if indexes[child_type].by_id[child_id].get(child_fk) == row_id
                )

            declared = fields.association_values(record, column)
            for value in declared.values:
                name_match = find_reference(target_index, value, declared.by_name)
                if name_match.row_id:
                    ids.append(name_match.row_id)
                    continue
                graph.unresolved.append(UnresolvedReference(
                    entity_type=owner,
                    external_id=record.external_id,
                    column=column,
                    reason="ambiguous" if name_match.ambiguous else "no_match",
                    value=value,
                    candidates=name_match.candidates,
                ))

            if target == EntityType.THEME:
                text = fields.keyword_text(record)
                if text:
                    ids.extend(theme_id for theme_id, pattern in keywords if pattern.search(text))

            graph.set(owner, row_id, column, _dedupe(ids))

    def _build_inverse(self, graph: RelationshipGraph, indexes: Dict[EntityType, EntityIndex]) -> None:
        for (owner, column), (inverse_owner, inverse_column) in INVERSE_COLUMNS.items():
            collected: Dict[str, set] = {row_id: set() for row_id in indexes[inverse_owner].by_id}
            for row_id in indexes[owner].by_id:
                for target_id in graph.get(owner, row_id, column):
                    if target_id in collected:
                        collected[target_id].add(row_id)
            for target_id, owners in collected.items():
                graph.set(inverse_owner, target_id, inverse_column, sorted(owners))

    def _build_fk_derived(self, graph: RelationshipGraph, indexes: Dict[EntityType, EntityIndex]) -> None:
        for (owner, column), (child_type, child_fk) in FK_DERIVED_COLUMNS.items():
            collected: Dict[str, List[str]] = {row_id: [] for row_id in indexes[owner].by_id}
            for child_id in sorted(indexes[child_type].by_id):
                parent_id = indexes[child_type].by_id[child_id].get(child_fk)
                if parent_id in collected:
                    collected[parent_id].append(child_id)
            for row_id, ids in collected.items():
                graph.set(owner, row_id, column, ids)

    def _build_theme_storytellers(self, graph: RelationshipGraph, indexes: Dict[EntityType, EntityIndex]) -> None:
        for theme_id in indexes[EntityType.THEME].by_id:
            storytellers = set()
            for story_id in graph.get(EntityType.THEME, theme_id, "linked_stories"):
                storytellers.update(graph.get(EntityType.STORY, story_id, "linked_storytellers"))
            storytellers &= set(indexes[EntityType.STORYTELLER].by_id)
            graph.set(EntityType.THEME, theme_id, "linked_storytellers", sorted(storytellers))

    def apply(self, graph: RelationshipGraph) -> GraphReport:
        """
        Write changed association columns.

        A failed row write is recorded and the pass continues.
        """
        report = GraphReport(unresolved=list(graph.unresolved))
        changes = graph.changes()

        with self.store.unit_of_work():
            for entity_type in ENTITY_ORDER:
                for row_id in sorted(changes.get(entity_type, {})):
                    values = changes[entity_type][row_id]
                    try:
                        self.store.update(entity_type, row_id, values)
                        report.rows_updated += 1
                        report.columns_written += len(values)
                    except StoreError as e:
                        stored = graph.current.get(entity_type, {}).get(row_id, {})
                        report.errors.append(MigrationError(
                            entity_type=entity_type,
                            stage=ErrorStage.LINK,
                            message=f"Failed to write {', '.join(sorted(values))}: {e}",
                            external_id=stored.get("external_id") or row_id,
                            retryable=True,
                        ))
                        logger.error(f"Failed to link {entity_type.value} {row_id}: {e}")

        report.unlinked = self._unlinked(graph)
        for entity_type, ids in report.unlinked.items():
            if ids:
                logger.info(f"{len(ids)} {entity_type.value} rows have no links")

        logger.info(
            f"Applied relationship graph: {report.rows_updated} rows updated, "
            f"{len(report.errors)} errors"
        )
        return report

    def _unlinked(self, graph: RelationshipGraph) -> Dict[EntityType, List[str]]:
        unlinked: Dict[EntityType, List[str]] = {}
        for entity_type in REPORT_UNLINKED:
            fk_columns = get_schema(entity_type).fk_columns
            for row_id in sorted(graph.current.get(entity_type, {})):
                row = graph.current[entity_type][row_id]
                has_fk = any(row.get(column) for column in fk_columns)
                has_links = any(graph.desired.get(entity_type, {}).get(row_id, {}).values())
                if not has_fk and not has_links:
                    unlinked.setdefault(entity_type, []).append(row_id)
        return unlinked

    def rebuild(
        self,
        records_by_type: Optional[Dict[EntityType, List[SourceRecord]]] = None,
        id_maps: Optional[Dict[Tuple[EntityType, str], str]] = None
    ) -> GraphReport:
        """Build and apply in one step."""
        return self.apply(self.build(records_by_type or {}, id_maps or {}))
