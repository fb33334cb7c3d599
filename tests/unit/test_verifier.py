"""
Tests for post-migration verification.

The verifier is read-only and reports orphans, dangling association ids,
missing required associations and per-run coverage.
"""
import pytest

from ledger_migrate.models.migration import ErrorStage, MigrationRun
from ledger_migrate.models.record import EntityType, UnresolvedReference
from ledger_migrate.services.verifier import MigrationVerifier


@pytest.fixture
def populated_store(memory_store):
    memory_store.insert(EntityType.STORYTELLER, {"id": "st-a", "full_name": "Jared", "external_id": "st1"})
    memory_store.insert(EntityType.STORY, {
        "id": "story-a",
        "title": "My Story",
        "external_id": "story1",
        "storyteller_id": "st-a",
        "linked_storytellers": ["st-a"],
    })
    return memory_store


def kinds(report):
    return [d.kind for d in report.discrepancies]


class TestStoreChecks:
    """Test checks that need no run."""

    def test_clean_store(self, populated_store):
        report = MigrationVerifier(populated_store).verify()
        assert not report.has_orphans
        assert report.discrepancies == []
        assert report.counts_by_type[EntityType.STORY] == {
            "total": 1, "migrated": 1, "organic": 0, "with_required_associations": 1,
        }

    def test_orphan_detected(self, populated_store):
        """Test that a story whose storyteller vanished is an orphan."""
        populated_store.discard(EntityType.STORYTELLER, "st-a")

        report = MigrationVerifier(populated_store).verify()

        assert report.orphan_counts[EntityType.STORY] == 1
        assert report.has_orphans
        assert "orphan" in kinds(report)

    def test_dangling_association(self, populated_store):
        """Test that association ids pointing at missing rows are reported."""
        populated_store.update(EntityType.STORY, "story-a", {"linked_themes": ["ghost"]})

        report = MigrationVerifier(populated_store).verify()

        dangling = [d for d in report.discrepancies if d.kind == "dangling_association"]
        assert len(dangling) == 1
        assert dangling[0].column == "linked_themes"
        assert not report.has_orphans

    def test_missing_required_association(self, populated_store):
        """Test that a story without linked storytellers is flagged."""
        populated_store.update(EntityType.STORY, "story-a", {"linked_storytellers": []})

        report = MigrationVerifier(populated_store).verify()

        assert "missing_required_association" in kinds(report)
        assert report.counts_by_type[EntityType.STORY]["with_required_associations"] == 0

    def test_types_without_foreign_keys_have_no_orphan_count(self, populated_store):
        report = MigrationVerifier(populated_store).verify()
        assert EntityType.THEME not in report.orphan_counts


class TestRunChecks:
    """Test checks against a migration run."""

    def test_coverage(self, populated_store):
        run = MigrationRun(entity_types=[EntityType.STORY])
        stats = run.stats_for(EntityType.STORY)
        stats.fetched = 4
        stats.inserted = 1
        stats.failed = 3

        report = MigrationVerifier(populated_store).verify(run)

        assert report.coverage_percent[EntityType.STORY] == 25.0
        assert report.overall_coverage == 25.0
        assert report.run_id == run.run_id

    def test_missing_rows(self, populated_store):
        """Test that more upserts than migrated rows is flagged."""
        run = MigrationRun(entity_types=[EntityType.STORY])
        run.stats_for(EntityType.STORY).fetched = 2
        run.stats_for(EntityType.STORY).inserted = 2

        report = MigrationVerifier(populated_store).verify(run)

        assert "missing_rows" in kinds(report)

    def test_run_errors_and_unresolved_listed(self, populated_store):
        run = MigrationRun(entity_types=[EntityType.STORY])
        run.add_error(EntityType.STORY, ErrorStage.UPSERT, "boom", "story2")
        run.unresolved.append(UnresolvedReference(
            entity_type=EntityType.STORY, external_id="story3", column="storyteller_id",
            reason="no_match", value="Nobody",
        ))

        report = MigrationVerifier(populated_store).verify(run)

        assert kinds(report).count("run_error") == 1
        assert kinds(report).count("unresolved_reference") == 1

    def test_report_serializes(self, populated_store):
        data = MigrationVerifier(populated_store).verify().to_dict()
        assert data["has_orphans"] is False
        assert data["counts_by_type"]["story"]["total"] == 1
