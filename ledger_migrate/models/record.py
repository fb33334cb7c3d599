"""Record models for source and target data."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
from datetime import datetime


class EntityType(str, Enum):
    """Entity types shared by the source system and the target store."""
    STORYTELLER = "storyteller"
    STORY = "story"
    THEME = "theme"
    QUOTE = "quote"
    MEDIA = "media"
    PROJECT = "project"
    ORGANIZATION = "organization"
    LOCATION = "location"

    @classmethod
    def parse(cls, value: str) -> "EntityType":
        """Parse an entity type name, accepting plurals and any case."""
        name = value.strip().lower()
        for entity_type in cls:
            if name in (entity_type.value, f"{entity_type.value}s", entity_type.name.lower()):
                return entity_type
        if name == "stories":
            return cls.STORY
        raise ValueError(f"Unknown entity type: {value}")


@dataclass(frozen=True)
class SourceRecord:
    """A record fetched from the source system. Never mutated after fetch."""
    external_id: str
    entity_type: EntityType
    fields: Dict[str, Any] = field(default_factory=dict)
    fetched_at: datetime = field(default_factory=datetime.utcnow, compare=False)

    @property
    def key(self):
        return (self.entity_type, self.external_id)

    def get(self, name: str, default: Any = None) -> Any:
        """Get a raw field value; empty strings and empty lists count as missing."""
        value = self.fields.get(name)
        if value is None or value == "" or value == []:
            return default
        return value

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "external_id": self.external_id,
            "entity_type": self.entity_type.value,
            "fields": self.fields,
            "fetched_at": self.fetched_at.isoformat(),
        }

    @classmethod
    def from_api_item(cls, entity_type: EntityType, item: Dict[str, Any]) -> "SourceRecord":
        """
        Build a record from one item of a source API page.

        Accepts Airtable-shaped items ({"id": ..., "fields": {...}}) as well as
        flat items ({"id": ..., "name": ...}).
        """
        external_id = item.get("id") or item.get("external_id")
        if not external_id:
            raise ValueError(f"Source {entity_type.value} item has no id: {item!r}")

        if isinstance(item.get("fields"), dict):
            fields = dict(item["fields"])
        else:
            fields = {k: v for k, v in item.items() if k not in ("id", "external_id")}

        return cls(external_id=str(external_id), entity_type=entity_type, fields=fields)


@dataclass(frozen=True)
class EntityRef:
    """Pointer to a target row by its source identity."""
    entity_type: EntityType
    external_id: str

    def __str__(self) -> str:
        return f"{self.entity_type.value}:{self.external_id}"


@dataclass
class TargetEntity:
    """
    A row to be written to the target store.

    `attributes` holds column values, including foreign-key ids that are
    already known. `references` maps foreign-key columns to source identities
    that are looked up in the store at write time. `id` is set when an
    existing organic row was adopted for this record.
    """
    entity_type: EntityType
    external_id: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    references: Dict[str, EntityRef] = field(default_factory=dict)
    id: Optional[str] = None
    source: Optional[SourceRecord] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "entity_type": self.entity_type.value,
            "external_id": self.external_id,
            "id": self.id,
            "attributes": self.attributes,
            "references": {col: str(ref) for col, ref in self.references.items()},
        }


@dataclass
class UnresolvedReference:
    """A foreign key that could not be resolved and needs manual follow-up."""
    entity_type: EntityType
    external_id: str
    column: str
    reason: str  # no_match, ambiguous, fallback_missing, missing_dependency
    value: Optional[str] = None
    candidates: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type.value,
            "external_id": self.external_id,
            "column": self.column,
            "reason": self.reason,
            "value": self.value,
            "candidates": self.candidates,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UnresolvedReference":
        return cls(
            entity_type=EntityType(data["entity_type"]),
            external_id=data.get("external_id", ""),
            column=data.get("column", ""),
            reason=data.get("reason", "no_match"),
            value=data.get("value"),
            candidates=data.get("candidates", []),
        )
