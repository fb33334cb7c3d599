"""Entity resolution: map source records and their references onto target rows."""

import re
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from ..loaders.base import TargetStore
from ..models.record import (
    EntityType,
    EntityRef,
    SourceRecord,
    TargetEntity,
    UnresolvedReference,
)
from ..models.schema import get_schema
from . import fields

logger = logging.getLogger(__name__)


def normalize_name(value: Any) -> str:
    """Lower-case, trim and collapse whitespace."""
    if value is None:
        return ""
    return re.sub(r"\s+", " ", str(value)).strip().lower()


@dataclass
class NameMatch:
    """Outcome of matching one name against candidate rows."""
    row_id: Optional[str] = None
    rule: Optional[str] = None  # exact, contains
    ambiguous: bool = False
    candidates: List[str] = field(default_factory=list)  # tied row ids


def match_name(name: Optional[str], candidates: Iterable[Tuple[str, Optional[str]]]) -> NameMatch:
    """
    Match ``name`` against ``(row_id, row_name)`` candidates.

    A normalized exact match wins. Otherwise a candidate matches when either
    name contains the other, scored by the length of the contained string;
    the single best score wins. Several exact matches, or a tie for the best
    containment score, is ambiguous and matches nothing.
    """
    wanted = normalize_name(name)
    if not wanted:
        return NameMatch()

    normalized = [(row_id, normalize_name(row_name)) for row_id, row_name in candidates]
    normalized = [(row_id, n) for row_id, n in normalized if n]

    exact = sorted(row_id for row_id, n in normalized if n == wanted)
    if len(exact) == 1:
        return NameMatch(row_id=exact[0], rule="exact")
    if len(exact) > 1:
        return NameMatch(ambiguous=True, candidates=exact)

    scored: Dict[str, int] = {}
    for row_id, n in normalized:
        if n in wanted:
            scored[row_id] = len(n)
        elif wanted in n:
            scored[row_id] = len(wanted)

    if not scored:
        return NameMatch()

    best = max(scored.values())
    winners = sorted(row_id for row_id, score in scored.items() if score == best)
    if len(winners) > 1:
        return NameMatch(ambiguous=True, candidates=winners)
    return NameMatch(row_id=winners[0], rule="contains")


class EntityIndex:
    """
    Lookup tables over the target rows of one entity type.

    Tracks rows adopted during the current run so an organic row is never
    claimed by two source records.
    """

    def __init__(self, entity_type: EntityType, rows: Optional[List[Dict[str, Any]]] = None):
        self.entity_type = entity_type
        self.name_field = get_schema(entity_type).name_field
        self.by_id: Dict[str, Dict[str, Any]] = {}
        self.by_external_id: Dict[str, Dict[str, Any]] = {}
        self._claimed: Set[str] = set()
        for row in rows or []:
            self.add(row)

    @classmethod
    def load(cls, store: TargetStore, entity_type: EntityType) -> "EntityIndex":
        index = cls(entity_type, store.list_rows(entity_type))
        logger.debug(f"Indexed {len(index)} {entity_type.value} rows")
        return index

    def __len__(self) -> int:
        return len(self.by_id)

    def add(self, row: Dict[str, Any]) -> None:
        """Add or refresh a row."""
        previous = self.by_id.get(row["id"])
        if previous and previous.get("external_id"):
            self.by_external_id.pop(previous["external_id"], None)
        self.by_id[row["id"]] = row
        if row.get("external_id"):
            self.by_external_id[row["external_id"]] = row

    def get(self, row_id: str) -> Optional[Dict[str, Any]]:
        return self.by_id.get(row_id)

    def find_external(self, external_id: str) -> Optional[Dict[str, Any]]:
        return self.by_external_id.get(external_id)

    def claim(self, row_id: str) -> None:
        self._claimed.add(row_id)

    def is_claimed(self, row_id: str) -> bool:
        return row_id in self._claimed

    def name_candidates(self, organic_only: bool = False) -> List[Tuple[str, Optional[str]]]:
        rows = sorted(self.by_id.values(), key=lambda r: r["id"])
        if organic_only:
            rows = [
                r for r in rows
                if not r.get("external_id") and r["id"] not in self._claimed
            ]
        return [(r["id"], r.get(self.name_field)) for r in rows]

    def find_name(self, name: str, organic_only: bool = False) -> NameMatch:
        return match_name(name, self.name_candidates(organic_only))


def find_reference(index: EntityIndex, value: str, by_name: bool) -> NameMatch:
    """
    Find the row a declared reference points at.

    Source ids only ever match an external id; display names go through
    match_name. An id is never fuzzy-matched against names.
    """
    if by_name:
        return index.find_name(value)
    row = index.find_external(value)
    if row is not None:
        return NameMatch(row_id=row["id"], rule="external_id")
    return NameMatch()


@dataclass
class Resolution:
    """How a source record maps onto an existing target row."""
    row: Optional[Dict[str, Any]] = None
    rule: Optional[str] = None  # external_id, name
    ambiguous: bool = False
    candidates: List[str] = field(default_factory=list)


@dataclass
class ReferenceResolution:
    """Foreign keys resolved for one record."""
    attributes: Dict[str, str] = field(default_factory=dict)
    references: Dict[str, EntityRef] = field(default_factory=dict)
    unresolved: List[UnresolvedReference] = field(default_factory=list)

    @property
    def ambiguous(self) -> List[UnresolvedReference]:
        return [u for u in self.unresolved if u.reason == "ambiguous"]


class EntityResolver:
    """
    Resolves source records against target rows.

    References from source-id fields resolve by external id or to a parent
    fetched in the same run; references from display-name fields resolve by
    normalized name match. A configured fallback row comes last. Nothing is
    ever assigned at random; anything left over is reported as an
    UnresolvedReference.
    """

    def __init__(self, fallbacks: Optional[Dict[str, str]] = None):
        """
        Args:
            fallbacks: ``"<entity>.<column>"`` -> name of the default row
        """
        self.fallbacks = fallbacks or {}

    def match(self, record: SourceRecord, index: EntityIndex) -> Resolution:
        """Find the target row a record corresponds to, if any."""
        row = index.find_external(record.external_id)
        if row is not None:
            return Resolution(row=row, rule="external_id")

        name = fields.record_name(record)
        result = index.find_name(name, organic_only=True) if name else NameMatch()
        if result.ambiguous:
            return Resolution(ambiguous=True, candidates=result.candidates)
        if result.row_id:
            return Resolution(row=index.get(result.row_id), rule="name")
        return Resolution()

    def resolve(self, record: SourceRecord, index: EntityIndex) -> Optional[Dict[str, Any]]:
        """The target row for a record, or None."""
        return self.match(record, index).row

    def adopt(self, entity: TargetEntity, index: EntityIndex) -> Resolution:
        """
        Match a transformed entity against its own table.

        An organic row matched by name is claimed and its id set on the
        entity, so the upsert stamps it with the external id.
        """
        resolution = self.match(entity.source, index)
        if resolution.row is not None:
            if resolution.rule == "name":
                index.claim(resolution.row["id"])
                logger.info(
                    f"Adopting organic {entity.entity_type.value} {resolution.row['id']} "
                    f"for {entity.external_id}"
                )
            entity.id = resolution.row["id"]
        elif resolution.ambiguous:
            logger.warning(
                f"Ambiguous name match for {entity.entity_type.value} {entity.external_id}: "
                f"{resolution.candidates}"
            )
        return resolution

    def resolve_references(
        self,
        record: SourceRecord,
        indexes: Dict[EntityType, EntityIndex],
        pending: Optional[Dict[EntityType, Set[str]]] = None
    ) -> ReferenceResolution:
        """
        Resolve every foreign key a record declares.

        Args:
            record: Source record
            indexes: Target row indexes of the referenced entity types
            pending: Source ids fetched this run but not yet written; references
                to them are handed to the upsert executor as EntityRefs
        """
        pending = pending or {}
        result = ReferenceResolution()

        for fk in get_schema(record.entity_type).foreign_keys:
            index = indexes.get(fk.references) or EntityIndex(fk.references)
            declared = fields.reference_values(record, fk.column)
            failure: Optional[UnresolvedReference] = None

            for value in declared.values:
                name_match = find_reference(index, value, declared.by_name)
                if name_match.row_id:
                    result.attributes[fk.column] = name_match.row_id
                    break

                if not declared.by_name and value in pending.get(fk.references, set()):
                    result.references[fk.column] = EntityRef(fk.references, value)
                    break

                if failure is None or (name_match.ambiguous and failure.reason != "ambiguous"):
                    failure = UnresolvedReference(
                        entity_type=record.entity_type,
                        external_id=record.external_id,
                        column=fk.column,
                        reason="ambiguous" if name_match.ambiguous else "no_match",
                        value=value,
                        candidates=name_match.candidates,
                    )

            if fk.column in result.attributes or fk.column in result.references:
                continue

            fallback = self._fallback(record, fk.column, index)
            if isinstance(fallback, str):
                result.attributes[fk.column] = fallback
                logger.debug(
                    f"{record.entity_type.value} {record.external_id}.{fk.column} "
                    f"set to configured default"
                )
                continue
            failure = failure or fallback

            if failure is not None:
                result.unresolved.append(failure)
                logger.warning(
                    f"Unresolved {record.entity_type.value} {record.external_id}.{fk.column} "
                    f"({failure.reason}): {failure.value!r}"
                )

        return result

    def _fallback(self, record: SourceRecord, column: str, index: EntityIndex):
        """
        Configured default row id for a column.

        Returns the row id, an UnresolvedReference when the configured row is
        missing, or None when no default is configured.
        """
        key = f"{record.entity_type.value}.{column}"
        default_name = self.fallbacks.get(key)
        if not default_name:
            return None

        wanted = normalize_name(default_name)
        matches = sorted(
            row_id for row_id, name in index.name_candidates()
            if normalize_name(name) == wanted
        )
        if len(matches) == 1:
            return matches[0]

        return UnresolvedReference(
            entity_type=record.entity_type,
            external_id=record.external_id,
            column=column,
            reason="fallback_missing" if not matches else "ambiguous",
            value=default_name,
            candidates=matches,
        )
