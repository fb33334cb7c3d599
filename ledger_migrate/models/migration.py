"""Migration execution and configuration models."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
from datetime import datetime
import os
import uuid

from .record import EntityType, UnresolvedReference
from .schema import ENTITY_ORDER


class ConfigError(ValueError):
    """Raised when the migration configuration is incomplete or invalid."""


class RunStatus(str, Enum):
    """Status of a migration run."""
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class ErrorStage(str, Enum):
    """Pipeline stage where a migration error happened."""
    FETCH = "fetch"
    RESOLVE = "resolve"
    UPSERT = "upsert"
    LINK = "link"


@dataclass
class MigrationError:
    """A per-record or per-entity-type failure recorded during a run."""
    entity_type: EntityType
    stage: ErrorStage
    message: str
    external_id: Optional[str] = None
    retryable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "entity_type": self.entity_type.value,
            "external_id": self.external_id,
            "stage": self.stage.value,
            "message": self.message,
            "retryable": self.retryable,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationError":
        return cls(
            entity_type=EntityType(data["entity_type"]),
            stage=ErrorStage(data["stage"]),
            message=data.get("message", ""),
            external_id=data.get("external_id"),
            retryable=data.get("retryable", False),
        )

    def __str__(self) -> str:
        target = f"{self.entity_type.value}:{self.external_id}" if self.external_id else self.entity_type.value
        flag = "retryable" if self.retryable else "permanent"
        return f"[{self.stage.value}] {target} ({flag}) {self.message}"


@dataclass
class EntityStats:
    """Per-entity-type counters for a run."""
    fetched: int = 0
    duplicates: int = 0
    resolved: int = 0  # matched an existing target row
    inserted: int = 0
    updated: int = 0
    failed: int = 0
    unresolved: int = 0
    fetch_failed: bool = False

    @property
    def upserted(self) -> int:
        return self.inserted + self.updated

    @property
    def succeeded(self) -> bool:
        return not self.fetch_failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fetched": self.fetched,
            "duplicates": self.duplicates,
            "resolved": self.resolved,
            "inserted": self.inserted,
            "updated": self.updated,
            "failed": self.failed,
            "unresolved": self.unresolved,
            "fetch_failed": self.fetch_failed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntityStats":
        return cls(**{k: data[k] for k in cls.__dataclass_fields__ if k in data})


@dataclass
class MigrationRun:
    """A complete migration run. Written to the audit log once finished."""
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    command: str = "migrate"
    status: RunStatus = RunStatus.IN_PROGRESS
    entity_types: List[EntityType] = field(default_factory=list)
    dry_run: bool = False

    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    entity_stats: Dict[EntityType, EntityStats] = field(default_factory=dict)
    errors: List[MigrationError] = field(default_factory=list)
    unresolved: List[UnresolvedReference] = field(default_factory=list)

    aborted: bool = False
    abort_reason: Optional[str] = None
    verification: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def stats_for(self, entity_type: EntityType) -> EntityStats:
        """Get (creating if needed) the counters for an entity type."""
        if entity_type not in self.entity_stats:
            self.entity_stats[entity_type] = EntityStats()
        return self.entity_stats[entity_type]

    @property
    def entity_counts(self) -> Dict[EntityType, int]:
        """Rows upserted per entity type."""
        return {et: stats.upserted for et, stats in self.entity_stats.items()}

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def add_error(
        self,
        entity_type: EntityType,
        stage: ErrorStage,
        message: str,
        external_id: Optional[str] = None,
        retryable: bool = False
    ) -> MigrationError:
        """Record an error against this run."""
        error = MigrationError(
            entity_type=entity_type,
            stage=stage,
            message=message,
            external_id=external_id,
            retryable=retryable,
        )
        self.errors.append(error)
        return error

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "run_id": self.run_id,
            "command": self.command,
            "status": self.status.value,
            "entity_types": [et.value for et in self.entity_types],
            "dry_run": self.dry_run,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "entity_stats": {et.value: s.to_dict() for et, s in self.entity_stats.items()},
            "entity_counts": {et.value: n for et, n in self.entity_counts.items()},
            "errors": [e.to_dict() for e in self.errors],
            "unresolved": [u.to_dict() for u in self.unresolved],
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
            "verification": self.verification,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationRun":
        """Create from dictionary representation (audit log entries)."""
        completed_at = data.get("completed_at")
        return cls(
            run_id=data["run_id"],
            command=data.get("command", "migrate"),
            status=RunStatus(data.get("status", RunStatus.IN_PROGRESS.value)),
            entity_types=[EntityType(v) for v in data.get("entity_types", [])],
            dry_run=data.get("dry_run", False),
            started_at=datetime.fromisoformat(data["started_at"]),
            completed_at=datetime.fromisoformat(completed_at) if completed_at else None,
            entity_stats={
                EntityType(k): EntityStats.from_dict(v)
                for k, v in data.get("entity_stats", {}).items()
            },
            errors=[MigrationError.from_dict(e) for e in data.get("errors", [])],
            unresolved=[UnresolvedReference.from_dict(u) for u in data.get("unresolved", [])],
            aborted=data.get("aborted", False),
            abort_reason=data.get("abort_reason"),
            verification=data.get("verification"),
            metadata=data.get("metadata", {}),
        )


@dataclass
class SourceConfig:
    """Configuration for the source record API."""
    base_url: str = ""
    api_token: Optional[str] = None
    page_size: int = 100
    max_pages: int = 200
    request_timeout: float = 30.0
    min_request_interval: float = 0.2  # Seconds between requests
    max_workers: int = 3
    retry_config: Dict[str, Any] = field(default_factory=lambda: {
        "max_retries": 3,
        "backoff_factor": 2.0,
    })
    entity_paths: Dict[str, str] = field(default_factory=dict)  # entity -> path override

    def to_dict(self) -> Dict[str, Any]:
        return {
            "base_url": self.base_url,
            "page_size": self.page_size,
            "max_pages": self.max_pages,
            "request_timeout": self.request_timeout,
            "min_request_interval": self.min_request_interval,
            "max_workers": self.max_workers,
            "retry_config": self.retry_config,
            "entity_paths": self.entity_paths,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceConfig":
        defaults = cls()
        return cls(
            base_url=data.get("base_url", ""),
            api_token=data.get("api_token"),
            page_size=data.get("page_size", defaults.page_size),
            max_pages=data.get("max_pages", defaults.max_pages),
            request_timeout=data.get("request_timeout", defaults.request_timeout),
            min_request_interval=data.get("min_request_interval", defaults.min_request_interval),
            max_workers=data.get("max_workers", defaults.max_workers),
            retry_config=data.get("retry_config", defaults.retry_config),
            entity_paths=data.get("entity_paths", {}),
        )


@dataclass
class TargetConfig:
    """Configuration for the target store (PostgREST / Supabase)."""
    url: str = ""
    api_key: Optional[str] = None
    request_timeout: float = 30.0
    page_size: int = 1000
    tables: Dict[str, str] = field(default_factory=dict)  # entity -> table override

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "request_timeout": self.request_timeout,
            "page_size": self.page_size,
            "tables": self.tables,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TargetConfig":
        defaults = cls()
        return cls(
            url=data.get("url", ""),
            api_key=data.get("api_key"),
            request_timeout=data.get("request_timeout", defaults.request_timeout),
            page_size=data.get("page_size", defaults.page_size),
            tables=data.get("tables", {}),
        )


@dataclass
class MigrationConfig:
    """Configuration for a migration."""
    name: str = "source-to-target"
    source: SourceConfig = field(default_factory=SourceConfig)
    target: TargetConfig = field(default_factory=TargetConfig)

    # Execution options
    entity_types: List[EntityType] = field(default_factory=lambda: list(ENTITY_ORDER))
    dry_run: bool = False
    reset_first: bool = False
    run_timeout_seconds: Optional[float] = 3600.0

    # Resolution options
    fallbacks: Dict[str, str] = field(default_factory=dict)  # "storyteller.project_id" -> default row name
    keyword_min_length: int = 4

    # Output
    output_dir: str = "./data"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation (secrets excluded)."""
        return {
            "name": self.name,
            "source": self.source.to_dict(),
            "target": self.target.to_dict(),
            "entity_types": [et.value for et in self.entity_types],
            "dry_run": self.dry_run,
            "reset_first": self.reset_first,
            "run_timeout_seconds": self.run_timeout_seconds,
            "fallbacks": self.fallbacks,
            "keyword_min_length": self.keyword_min_length,
            "output_dir": self.output_dir,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationConfig":
        """Create from dictionary representation."""
        entity_types = data.get("entity_types")
        return cls(
            name=data.get("name", "source-to-target"),
            source=SourceConfig.from_dict(data.get("source", {})),
            target=TargetConfig.from_dict(data.get("target", {})),
            entity_types=(
                [EntityType.parse(v) for v in entity_types]
                if entity_types else list(ENTITY_ORDER)
            ),
            dry_run=data.get("dry_run", False),
            reset_first=data.get("reset_first", False),
            run_timeout_seconds=data.get("run_timeout_seconds", 3600.0),
            fallbacks=data.get("fallbacks", {}),
            keyword_min_length=data.get("keyword_min_length", 4),
            output_dir=data.get("output_dir", "./data"),
        )

    def apply_env(self, environ: Optional[Dict[str, str]] = None) -> "MigrationConfig":
        """Override connection settings from environment variables."""
        env = os.environ if environ is None else environ
        self.source.base_url = env.get("SOURCE_API_URL", self.source.base_url)
        self.source.api_token = env.get("SOURCE_API_TOKEN", self.source.api_token)
        self.target.url = env.get("TARGET_STORE_URL", self.target.url)
        self.target.api_key = env.get("TARGET_STORE_KEY", self.target.api_key)
        self.output_dir = env.get("LEDGER_MIGRATE_OUTPUT_DIR", self.output_dir)
        return self

    def validate(self, need_source: bool = True, need_target: bool = True) -> List[str]:
        """Return a list of configuration problems."""
        errors = []
        if need_source and not self.source.base_url:
            errors.append("Source API URL is required (SOURCE_API_URL)")
        if need_target and not self.target.url:
            errors.append("Target store URL is required (TARGET_STORE_URL)")
        if self.source.page_size <= 0:
            errors.append("source.page_size must be positive")
        if self.source.max_pages <= 0:
            errors.append("source.max_pages must be positive")
        for key in self.fallbacks:
            if "." not in key:
                errors.append(f"Fallback key must look like '<entity>.<column>': {key}")
        return errors
