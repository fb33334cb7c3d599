"""Persisted run state: the append-only run log and the run lock."""

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .models.migration import MigrationRun

logger = logging.getLogger(__name__)


class MigrationInProgressError(Exception):
    """Another migrate or reset command holds the run lock."""

    def __init__(self, lock_path: Path, holder: str = ""):
        message = f"Another migration is in progress (lock file {lock_path})"
        if holder:
            message += f": {holder}"
        super().__init__(message)
        self.lock_path = lock_path


class RunLock:
    """
    Advisory lock file, created exclusively.

    Used as a context manager around migrate and reset commands.
    """

    def __init__(self, output_dir: str, name: str = "migration.lock"):
        self.path = Path(output_dir) / name
        self._held = False

    def acquire(self, command: str = "migrate") -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            holder = ""
            try:
                holder = self.path.read_text().strip()
            except OSError:
                pass
            raise MigrationInProgressError(self.path, holder)

        with os.fdopen(fd, "w") as f:
            f.write(f"{command} pid={os.getpid()} since={datetime.utcnow().isoformat()}\n")
        self._held = True
        logger.debug(f"Acquired run lock {self.path}")

    def release(self) -> None:
        if not self._held:
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            logger.warning(f"Run lock {self.path} was already removed")
        self._held = False
        logger.debug(f"Released run lock {self.path}")

    @property
    def locked(self) -> bool:
        return self.path.exists()

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class RunLog:
    """
    Append-only audit log of finished runs.

    ``logs/runs.jsonl`` holds one JSON object per run; each run also gets a
    ``migration_report_<run_id>.json`` file with its full report.
    """

    def __init__(self, output_dir: str):
        self.logs_dir = Path(output_dir) / "logs"
        self.path = self.logs_dir / "runs.jsonl"

    def append(self, run: MigrationRun) -> Path:
        """Record a finished run. Returns the report file path."""
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        data = run.to_dict()

        with open(self.path, "a") as f:
            f.write(json.dumps(data, default=str) + "\n")

        report_path = self.report_path(run.run_id)
        with open(report_path, "w") as f:
            json.dump(data, f, indent=2, default=str)

        logger.info(f"Saved migration report to {report_path}")
        return report_path

    def report_path(self, run_id: str) -> Path:
        return self.logs_dir / f"migration_report_{run_id}.json"

    def list_runs(self, limit: Optional[int] = None) -> List[MigrationRun]:
        """Runs from newest to oldest."""
        if not self.path.exists():
            return []

        runs = []
        with open(self.path) as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    runs.append(MigrationRun.from_dict(json.loads(line)))
                except (ValueError, KeyError) as e:
                    logger.warning(f"Skipping unreadable run log line {line_number}: {e}")

        runs.reverse()
        return runs[:limit] if limit else runs

    def get(self, run_id: str) -> Optional[MigrationRun]:
        for run in self.list_runs():
            if run.run_id == run_id:
                return run
        return None

    def latest(self) -> Optional[MigrationRun]:
        runs = self.list_runs(limit=1)
        return runs[0] if runs else None
