"""Read-only endpoints over the migration run log."""

from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query

from ..models import (
    ErrorListResponse,
    ErrorStageEnum,
    RunDetailResponse,
    RunListResponse,
    RunSummaryResponse,
)
from ...models.migration import MigrationConfig, MigrationRun
from ...storage import RunLog

router = APIRouter()


def get_run_log() -> RunLog:
    """Run log under the configured output directory."""
    return RunLog(MigrationConfig().apply_env().output_dir)


def _get_run(run_id: str, run_log: RunLog) -> MigrationRun:
    run = run_log.get(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    return run


@router.get("", response_model=RunListResponse)
async def list_runs(
    limit: Optional[int] = Query(None, ge=1),
    run_log: RunLog = Depends(get_run_log)
):
    """List recorded runs, newest first."""
    runs = run_log.list_runs(limit=limit)
    return RunListResponse(
        runs=[RunSummaryResponse.from_run(run) for run in runs],
        total=len(runs),
    )


@router.get("/{run_id}", response_model=RunDetailResponse)
async def get_run(run_id: str, run_log: RunLog = Depends(get_run_log)):
    """Get a specific run with its stats, errors and verification report."""
    return RunDetailResponse.from_run(_get_run(run_id, run_log))


@router.get("/{run_id}/errors", response_model=ErrorListResponse)
async def list_run_errors(
    run_id: str,
    stage: Optional[ErrorStageEnum] = None,
    retryable: Optional[bool] = None,
    run_log: RunLog = Depends(get_run_log)
):
    """Errors recorded by a run, optionally filtered by stage and retryability."""
    run = _get_run(run_id, run_log)

    errors = run.errors
    if stage is not None:
        errors = [e for e in errors if e.stage.value == stage.value]
    if retryable is not None:
        errors = [e for e in errors if e.retryable == retryable]

    return ErrorListResponse(
        run_id=run.run_id,
        errors=[e.to_dict() for e in errors],
        total=len(errors),
    )
