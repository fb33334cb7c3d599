"""
Integration tests for the migration orchestrator.

Runs the full pipeline (extract, resolve, upsert, link, verify) from a
fake source API into the in-memory target store.
"""
import threading

import pytest

from ledger_migrate.extractors.api_extractor import SourceAPIExtractor
from ledger_migrate.extractors.base import ExtractionCancelled
from ledger_migrate.models.migration import ErrorStage, MigrationRun, RunStatus
from ledger_migrate.models.record import EntityType
from ledger_migrate.orchestrator import MigrationOrchestrator
from ledger_migrate.storage import MigrationInProgressError, RunLock, RunLog


def only_row(store, entity_type):
    rows = store.list_rows(entity_type)
    assert len(rows) == 1
    return rows[0]


class GatedSession:
    """Source session whose requests wait until the gate opens."""

    def __init__(self, inner):
        self.inner = inner
        self.gate = threading.Event()

    def get(self, *args, **kwargs):
        self.gate.wait(5)
        return self.inner.get(*args, **kwargs)


class TrackingExtractor(SourceAPIExtractor):
    """Records extraction results and signals when every extraction returned."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.results = []
        self.finished = threading.Event()

    def extract(self, *args, **kwargs):
        result = super().extract(*args, **kwargs)
        self.results.append(result)
        self.finished.set()
        return result


class TestScenario:
    """Test the Organization -> Storyteller -> Story scenario."""

    def test_end_to_end(self, migration_config, memory_store, scenario_session):
        """Test that every row is written with resolved keys and links."""
        run = MigrationOrchestrator(
            migration_config, memory_store, source_session=scenario_session
        ).run_migration()

        assert run.status == RunStatus.COMPLETED
        assert run.errors == []

        org = only_row(memory_store, EntityType.ORGANIZATION)
        teller = only_row(memory_store, EntityType.STORYTELLER)
        story = only_row(memory_store, EntityType.STORY)

        assert org["external_id"] == "org1"
        assert teller["organization_id"] == org["id"]
        assert story["storyteller_id"] == teller["id"]
        assert story["linked_storytellers"] == [teller["id"]]
        assert teller["linked_stories"] == [story["id"]]

        assert run.entity_counts[EntityType.STORY] == 1
        assert run.verification["has_orphans"] is False

    def test_second_run_inserts_nothing(self, migration_config, memory_store, scenario_session):
        """Test idempotence: a re-run only updates."""
        orchestrator = MigrationOrchestrator(migration_config, memory_store, source_session=scenario_session)
        orchestrator.run_migration()

        second = orchestrator.run_migration()

        assert second.status == RunStatus.COMPLETED
        assert sum(s.inserted for s in second.entity_stats.values()) == 0
        assert second.stats_for(EntityType.STORY).updated == 1
        assert second.metadata["links"]["rows_updated"] == 0
        assert memory_store.count_by_type(EntityType.STORY) == 1

    def test_runs_logged(self, migration_config, memory_store, scenario_session):
        run = MigrationOrchestrator(
            migration_config, memory_store, source_session=scenario_session
        ).run_migration()

        log = RunLog(migration_config.output_dir)
        assert log.latest().run_id == run.run_id
        assert log.report_path(run.run_id).exists()
        assert not RunLock(migration_config.output_dir).locked

    def test_organic_row_adopted(self, migration_config, memory_store, scenario_session):
        """Test that an existing organization with the same name is reused."""
        organic = memory_store.insert(EntityType.ORGANIZATION, {"name": "Orange Sky"})

        run = MigrationOrchestrator(
            migration_config, memory_store, source_session=scenario_session
        ).run_migration()

        org = only_row(memory_store, EntityType.ORGANIZATION)
        assert org["id"] == organic["id"]
        assert org["external_id"] == "org1"
        assert run.stats_for(EntityType.ORGANIZATION).resolved == 1


class TestDryRun:
    """Test dry runs."""

    def test_store_untouched(self, migration_config, memory_store, scenario_session):
        migration_config.dry_run = True

        run = MigrationOrchestrator(
            migration_config, memory_store, source_session=scenario_session
        ).run_migration()

        assert run.dry_run
        assert run.status == RunStatus.COMPLETED
        assert run.entity_counts[EntityType.STORY] == 1
        assert memory_store.write_log == []


class TestFailures:
    """Test partial and failed runs."""

    def test_fetch_failure_is_partial(self, migration_config, memory_store, source_session_factory,
                                      scenario_records, fake_response):
        """Test that one type failing to fetch leaves the others migrated."""
        session = source_session_factory(
            scenario_records,
            failures={("story", None): fake_response(400, {"error": "bad request"})},
        )

        run = MigrationOrchestrator(migration_config, memory_store, source_session=session).run_migration()

        assert run.status == RunStatus.PARTIAL
        assert run.stats_for(EntityType.STORY).fetch_failed
        fetch_errors = [e for e in run.errors if e.stage == ErrorStage.FETCH]
        assert len(fetch_errors) == 1
        assert fetch_errors[0].retryable is False
        assert memory_store.count_by_type(EntityType.STORYTELLER) == 1
        assert memory_store.count_by_type(EntityType.STORY) == 0

    def test_every_fetch_failing_is_failed(self, migration_config, memory_store, source_session_factory,
                                           fake_response):
        migration_config.entity_types = [EntityType.THEME]
        session = source_session_factory(failures={("theme", None): fake_response(503, {"error": "down"})})

        run = MigrationOrchestrator(migration_config, memory_store, source_session=session).run_migration()

        assert run.status == RunStatus.FAILED

    def test_unresolved_reference_is_partial(self, migration_config, memory_store, source_session_factory):
        """Test that a story pointing at an unknown storyteller is reported, not guessed."""
        session = source_session_factory({
            "storyteller": [{"id": "st1", "name": "Jared"}],
            "story": [{"id": "story1", "title": "My Story", "storyteller_ref": "Nobody Known"}],
        })

        run = MigrationOrchestrator(migration_config, memory_store, source_session=session).run_migration()

        assert run.status == RunStatus.PARTIAL
        assert ("storyteller_id", "no_match") in [(u.column, u.reason) for u in run.unresolved]
        assert all(u.value == "Nobody Known" for u in run.unresolved)
        assert only_row(memory_store, EntityType.STORY).get("storyteller_id") is None

    def test_retry_failed_records(self, migration_config, memory_store, source_session_factory,
                                  scenario_records, fake_response):
        """Test that retrying a partial run picks up the failed type."""
        failing = source_session_factory(
            scenario_records,
            failures={("story", None): fake_response(503, {"error": "down"})},
        )
        first = MigrationOrchestrator(migration_config, memory_store, source_session=failing).run_migration()
        only = MigrationOrchestrator.failed_records(first)
        assert only == {EntityType.STORY: None}

        healthy = source_session_factory(scenario_records)
        retry = MigrationOrchestrator(
            migration_config, memory_store, source_session=healthy
        ).run_migration(only=only)

        assert retry.status == RunStatus.COMPLETED
        assert retry.entity_types == [EntityType.STORY]
        assert retry.metadata["retry_of"] == {"story": None}
        teller = only_row(memory_store, EntityType.STORYTELLER)
        assert only_row(memory_store, EntityType.STORY)["storyteller_id"] == teller["id"]

    def test_failed_records_grouping(self):
        """Test that record errors group by type and fetch errors select the whole type."""
        run = MigrationRun()
        run.add_error(EntityType.STORY, ErrorStage.UPSERT, "insert failed", "s1")
        run.add_error(EntityType.STORY, ErrorStage.RESOLVE, "ambiguous", "s1")
        run.add_error(EntityType.STORY, ErrorStage.LINK, "write failed", "s2")
        run.add_error(EntityType.THEME, ErrorStage.FETCH, "HTTP 503", retryable=True)

        assert MigrationOrchestrator.failed_records(run) == {
            EntityType.STORY: {"s1", "s2"},
            EntityType.THEME: None,
        }

    def test_timeout_aborts(self, migration_config, memory_store, scenario_session):
        migration_config.run_timeout_seconds = 1e-9

        run = MigrationOrchestrator(
            migration_config, memory_store, source_session=scenario_session
        ).run_migration()

        assert run.aborted
        assert run.status == RunStatus.PARTIAL
        assert not RunLock(migration_config.output_dir).locked

    def test_timeout_stops_running_fetches(self, migration_config, memory_store, session_class, paginator):
        """Test that a fetch still in flight at the timeout requests no further pages."""
        themes = [{"id": f"th{i}", "name": f"Theme {i}"} for i in range(3)]
        gated = GatedSession(session_class({"theme": paginator(themes, 1)}))
        extractor = TrackingExtractor(migration_config.source, session=gated)
        migration_config.entity_types = [EntityType.THEME]
        migration_config.run_timeout_seconds = 0.2

        run = MigrationOrchestrator(migration_config, memory_store, extractor=extractor).run_migration()
        gated.gate.set()

        assert run.aborted
        assert extractor.finished.wait(5)
        assert len(gated.inner.requests) == 1
        assert isinstance(extractor.results[0].error, ExtractionCancelled)
        assert memory_store.count_by_type(EntityType.THEME) == 0


class TestLocking:
    """Test the single-run lock."""

    def test_concurrent_run_refused(self, migration_config, memory_store, scenario_session):
        lock = RunLock(migration_config.output_dir)
        lock.acquire("migrate")
        try:
            with pytest.raises(MigrationInProgressError):
                MigrationOrchestrator(
                    migration_config, memory_store, source_session=scenario_session
                ).run_migration()
        finally:
            lock.release()

        assert memory_store.write_log == []


class TestReset:
    """Test reset through the orchestrator."""

    def test_reset_after_migration(self, migration_config, memory_store, scenario_session):
        orchestrator = MigrationOrchestrator(migration_config, memory_store, source_session=scenario_session)
        orchestrator.run_migration()

        report = orchestrator.reset()

        assert report.total_deleted == 3
        assert memory_store.count_by_type(EntityType.ORGANIZATION) == 0
        latest = RunLog(migration_config.output_dir).latest()
        assert latest.command == "reset"
        assert latest.status == RunStatus.COMPLETED

    def test_reset_first(self, migration_config, memory_store, scenario_session):
        orchestrator = MigrationOrchestrator(migration_config, memory_store, source_session=scenario_session)
        orchestrator.run_migration()
        migration_config.reset_first = True

        run = orchestrator.run_migration()

        assert run.status == RunStatus.COMPLETED
        assert run.metadata["reset"]["total_deleted"] == 3
        assert memory_store.count_by_type(EntityType.STORY) == 1
