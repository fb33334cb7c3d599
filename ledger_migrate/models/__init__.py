"""Data models for the migration engine."""

from .record import (
    EntityType,
    SourceRecord,
    EntityRef,
    TargetEntity,
    UnresolvedReference,
)
from .schema import (
    ForeignKey,
    Association,
    EntitySchema,
    SCHEMAS,
    ASSOCIATIONS,
    ENTITY_ORDER,
)
from .migration import (
    ConfigError,
    RunStatus,
    ErrorStage,
    MigrationError,
    EntityStats,
    MigrationRun,
    SourceConfig,
    TargetConfig,
    MigrationConfig,
)

__all__ = [
    "EntityType",
    "SourceRecord",
    "EntityRef",
    "TargetEntity",
    "UnresolvedReference",
    "ForeignKey",
    "Association",
    "EntitySchema",
    "SCHEMAS",
    "ASSOCIATIONS",
    "ENTITY_ORDER",
    "ConfigError",
    "RunStatus",
    "ErrorStage",
    "MigrationError",
    "EntityStats",
    "MigrationRun",
    "SourceConfig",
    "TargetConfig",
    "MigrationConfig",
]
