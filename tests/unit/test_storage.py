"""
Tests for the run lock and the append-only run log.
"""
import pytest

from ledger_migrate.models.migration import ErrorStage, MigrationRun, RunStatus
from ledger_migrate.models.record import EntityType
from ledger_migrate.storage import MigrationInProgressError, RunLock, RunLog


class TestRunLock:
    """Test the exclusive lock file."""

    def test_second_acquire_fails(self, tmp_path):
        first = RunLock(str(tmp_path))
        first.acquire("migrate")

        with pytest.raises(MigrationInProgressError) as exc_info:
            RunLock(str(tmp_path)).acquire("reset")

        assert "migrate pid=" in str(exc_info.value)
        first.release()

    def test_release_allows_reacquire(self, tmp_path):
        lock = RunLock(str(tmp_path))
        lock.acquire()
        lock.release()
        assert not lock.locked

        again = RunLock(str(tmp_path))
        again.acquire()
        assert again.locked
        again.release()

    def test_release_without_acquire_keeps_foreign_lock(self, tmp_path):
        """Test that only the holder removes the lock file."""
        holder = RunLock(str(tmp_path))
        holder.acquire()

        RunLock(str(tmp_path)).release()

        assert holder.locked
        holder.release()

    def test_context_manager(self, tmp_path):
        with RunLock(str(tmp_path)) as lock:
            assert lock.locked
        assert not lock.locked


class TestRunLog:
    """Test the audit log."""

    def make_run(self, status=RunStatus.COMPLETED):
        run = MigrationRun(entity_types=[EntityType.STORY], status=status)
        run.stats_for(EntityType.STORY).fetched = 3
        run.stats_for(EntityType.STORY).inserted = 2
        run.add_error(EntityType.STORY, ErrorStage.UPSERT, "boom", "story3", retryable=True)
        return run

    def test_empty_log(self, tmp_path):
        log = RunLog(str(tmp_path))
        assert log.list_runs() == []
        assert log.latest() is None

    def test_append_and_read_back(self, tmp_path):
        log = RunLog(str(tmp_path))
        run = self.make_run()

        report_path = log.append(run)

        assert report_path.exists()
        loaded = log.get(run.run_id)
        assert loaded.status == RunStatus.COMPLETED
        assert loaded.stats_for(EntityType.STORY).inserted == 2
        assert loaded.errors[0].external_id == "story3"
        assert loaded.errors[0].retryable is True

    def test_newest_first(self, tmp_path):
        log = RunLog(str(tmp_path))
        older, newer = self.make_run(), self.make_run(RunStatus.PARTIAL)
        log.append(older)
        log.append(newer)

        assert [r.run_id for r in log.list_runs()] == [newer.run_id, older.run_id]
        assert log.latest().run_id == newer.run_id
        assert len(log.list_runs(limit=1)) == 1

    def test_unreadable_lines_skipped(self, tmp_path):
        log = RunLog(str(tmp_path))
        run = self.make_run()
        log.append(run)
        with open(log.path, "a") as f:
            f.write("{not json\n")

        assert [r.run_id for r in log.list_runs()] == [run.run_id]

    def test_get_unknown(self, tmp_path):
        assert RunLog(str(tmp_path)).get("missing") is None
