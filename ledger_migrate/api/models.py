"""Pydantic models for API responses."""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from enum import Enum
from datetime import datetime

from ..models.migration import MigrationRun


class RunStatusEnum(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class ErrorStageEnum(str, Enum):
    FETCH = "fetch"
    RESOLVE = "resolve"
    UPSERT = "upsert"
    LINK = "link"


def _summary_fields(run: MigrationRun) -> Dict[str, Any]:
    return {
        "run_id": run.run_id,
        "command": run.command,
        "status": run.status.value,
        "dry_run": run.dry_run,
        "aborted": run.aborted,
        "started_at": run.started_at,
        "completed_at": run.completed_at,
        "entity_types": [et.value for et in run.entity_types],
        "entity_counts": {et.value: n for et, n in run.entity_counts.items()},
        "error_count": len(run.errors),
        "unresolved_count": len(run.unresolved),
    }


class EntityStatsResponse(BaseModel):
    fetched: int = 0
    duplicates: int = 0
    resolved: int = 0
    inserted: int = 0
    updated: int = 0
    failed: int = 0
    unresolved: int = 0
    fetch_failed: bool = False


class MigrationErrorResponse(BaseModel):
    entity_type: str
    external_id: Optional[str] = None
    stage: ErrorStageEnum
    message: str
    retryable: bool = False


class UnresolvedReferenceResponse(BaseModel):
    entity_type: str
    external_id: str
    column: str
    reason: str
    value: Optional[str] = None
    candidates: List[str] = Field(default_factory=list)


class RunSummaryResponse(BaseModel):
    run_id: str
    command: str
    status: RunStatusEnum
    dry_run: bool = False
    aborted: bool = False
    started_at: datetime
    completed_at: Optional[datetime] = None
    entity_types: List[str] = Field(default_factory=list)
    entity_counts: Dict[str, int] = Field(default_factory=dict)
    error_count: int = 0
    unresolved_count: int = 0

    @classmethod
    def from_run(cls, run: MigrationRun) -> "RunSummaryResponse":
        return cls(**_summary_fields(run))


class RunListResponse(BaseModel):
    runs: List[RunSummaryResponse]
    total: int


class RunDetailResponse(RunSummaryResponse):
    abort_reason: Optional[str] = None
    duration_seconds: Optional[float] = None
    entity_stats: Dict[str, EntityStatsResponse] = Field(default_factory=dict)
    errors: List[MigrationErrorResponse] = Field(default_factory=list)
    unresolved: List[UnresolvedReferenceResponse] = Field(default_factory=list)
    verification: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_run(cls, run: MigrationRun) -> "RunDetailResponse":
        data = run.to_dict()
        return cls(
            **_summary_fields(run),
            abort_reason=run.abort_reason,
            duration_seconds=run.duration_seconds,
            entity_stats=data["entity_stats"],
            errors=data["errors"],
            unresolved=data["unresolved"],
            verification=run.verification,
            metadata=run.metadata,
        )


class ErrorListResponse(BaseModel):
    run_id: str
    errors: List[MigrationErrorResponse]
    total: int
