"""Target store schema: tables, foreign keys and association columns."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .record import EntityType


@dataclass(frozen=True)
class ForeignKey:
    """A scalar foreign-key column on a target table."""
    column: str
    references: EntityType


@dataclass(frozen=True)
class Association:
    """
    An array-of-ids column.

    Forward associations are computed from source data. Derived associations
    (``forward=False``) are recomputed from other columns so both sides of a
    link always agree.
    """
    owner: EntityType
    column: str
    target: EntityType
    forward: bool = True


@dataclass
class EntitySchema:
    """Schema definition for one target table."""
    entity_type: EntityType
    table: str
    name_field: str
    foreign_keys: List[ForeignKey] = field(default_factory=list)
    required_associations: List[str] = field(default_factory=list)

    def get_foreign_key(self, column: str) -> Optional[ForeignKey]:
        for fk in self.foreign_keys:
            if fk.column == column:
                return fk
        return None

    @property
    def fk_columns(self) -> List[str]:
        return [fk.column for fk in self.foreign_keys]

    @property
    def associations(self) -> List[Association]:
        return [a for a in ASSOCIATIONS if a.owner == self.entity_type]


# Topological processing order; every foreign key points at an earlier type.
ENTITY_ORDER: List[EntityType] = [
    EntityType.ORGANIZATION,
    EntityType.LOCATION,
    EntityType.PROJECT,
    EntityType.STORYTELLER,
    EntityType.STORY,
    EntityType.THEME,
    EntityType.QUOTE,
    EntityType.MEDIA,
]


SCHEMAS: Dict[EntityType, EntitySchema] = {
    EntityType.ORGANIZATION: EntitySchema(
        entity_type=EntityType.ORGANIZATION,
        table="organizations",
        name_field="name",
    ),
    EntityType.LOCATION: EntitySchema(
        entity_type=EntityType.LOCATION,
        table="locations",
        name_field="name",
    ),
    EntityType.PROJECT: EntitySchema(
        entity_type=EntityType.PROJECT,
        table="projects",
        name_field="name",
        foreign_keys=[
            ForeignKey("organization_id", EntityType.ORGANIZATION),
            ForeignKey("location_id", EntityType.LOCATION),
        ],
    ),
    EntityType.STORYTELLER: EntitySchema(
        entity_type=EntityType.STORYTELLER,
        table="storytellers",
        name_field="full_name",
        foreign_keys=[
            ForeignKey("organization_id", EntityType.ORGANIZATION),
            ForeignKey("project_id", EntityType.PROJECT),
            ForeignKey("location_id", EntityType.LOCATION),
        ],
    ),
    EntityType.STORY: EntitySchema(
        entity_type=EntityType.STORY,
        table="stories",
        name_field="title",
        foreign_keys=[
            ForeignKey("storyteller_id", EntityType.STORYTELLER),
            ForeignKey("project_id", EntityType.PROJECT),
        ],
        required_associations=["linked_storytellers"],
    ),
    EntityType.THEME: EntitySchema(
        entity_type=EntityType.THEME,
        table="themes",
        name_field="name",
    ),
    EntityType.QUOTE: EntitySchema(
        entity_type=EntityType.QUOTE,
        table="quotes",
        name_field="quote_text",
        foreign_keys=[
            ForeignKey("story_id", EntityType.STORY),
            ForeignKey("storyteller_id", EntityType.STORYTELLER),
        ],
    ),
    EntityType.MEDIA: EntitySchema(
        entity_type=EntityType.MEDIA,
        table="media",
        name_field="title",
        foreign_keys=[
            ForeignKey("storyteller_id", EntityType.STORYTELLER),
            ForeignKey("story_id", EntityType.STORY),
        ],
        required_associations=["linked_storytellers"],
    ),
}


ASSOCIATIONS: List[Association] = [
    # Forward columns, computed from source data
    Association(EntityType.STORY, "linked_storytellers", EntityType.STORYTELLER),
    Association(EntityType.STORY, "linked_themes", EntityType.THEME),
    Association(EntityType.STORY, "linked_media", EntityType.MEDIA),
    Association(EntityType.QUOTE, "linked_themes", EntityType.THEME),
    Association(EntityType.MEDIA, "linked_themes", EntityType.THEME),
    Association(EntityType.MEDIA, "linked_storytellers", EntityType.STORYTELLER),
    # Derived columns
    Association(EntityType.STORYTELLER, "linked_stories", EntityType.STORY, forward=False),
    Association(EntityType.STORYTELLER, "linked_media", EntityType.MEDIA, forward=False),
    Association(EntityType.THEME, "linked_stories", EntityType.STORY, forward=False),
    Association(EntityType.THEME, "linked_quotes", EntityType.QUOTE, forward=False),
    Association(EntityType.THEME, "linked_media", EntityType.MEDIA, forward=False),
    Association(EntityType.THEME, "linked_storytellers", EntityType.STORYTELLER, forward=False),
    Association(EntityType.PROJECT, "linked_storytellers", EntityType.STORYTELLER, forward=False),
    Association(EntityType.STORY, "linked_quotes", EntityType.QUOTE, forward=False),
    Association(EntityType.MEDIA, "linked_stories", EntityType.STORY, forward=False),
]


# forward (owner, column) -> derived (owner, column) holding the other side
INVERSE_COLUMNS: Dict[Tuple[EntityType, str], Tuple[EntityType, str]] = {
    (EntityType.STORY, "linked_storytellers"): (EntityType.STORYTELLER, "linked_stories"),
    (EntityType.STORY, "linked_themes"): (EntityType.THEME, "linked_stories"),
    (EntityType.STORY, "linked_media"): (EntityType.MEDIA, "linked_stories"),
    (EntityType.QUOTE, "linked_themes"): (EntityType.THEME, "linked_quotes"),
    (EntityType.MEDIA, "linked_themes"): (EntityType.THEME, "linked_media"),
    (EntityType.MEDIA, "linked_storytellers"): (EntityType.STORYTELLER, "linked_media"),
}


def get_schema(entity_type: EntityType) -> EntitySchema:
    return SCHEMAS[entity_type]


def table_for(entity_type: EntityType) -> str:
    return SCHEMAS[entity_type].table


def dependents_of(entity_type: EntityType) -> List[Tuple[EntityType, ForeignKey]]:
    """All (entity_type, foreign key) pairs that point at ``entity_type``."""
    return [
        (schema.entity_type, fk)
        for schema in SCHEMAS.values()
        for fk in schema.foreign_keys
        if fk.references == entity_type
    ]


def associations_targeting(entity_type: EntityType) -> List[Association]:
    """All association columns whose ids point at ``entity_type``."""
    return [a for a in ASSOCIATIONS if a.target == entity_type]


def check_entity_order(order: List[EntityType] = ENTITY_ORDER) -> List[str]:
    """Return problems where a foreign key points at a later entity type."""
    problems = []
    position = {et: i for i, et in enumerate(order)}
    for schema in SCHEMAS.values():
        for fk in schema.foreign_keys:
            if position[fk.references] >= position[schema.entity_type]:
                problems.append(
                    f"{schema.entity_type.value}.{fk.column} references "
                    f"{fk.references.value}, which is not processed earlier"
                )
    return problems
