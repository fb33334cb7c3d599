"""
Tests for the in-memory target store.

The in-memory store backs dry runs, so it must enforce the same integrity
rules as the relational store.
"""
import pytest

from ledger_migrate.loaders.base import (
    ConstraintViolationError,
    DuplicateKeyError,
    RowNotFoundError,
)
from ledger_migrate.loaders.memory_store import InMemoryTargetStore
from ledger_migrate.models.record import EntityType


class TestIntegrity:
    """Test uniqueness and foreign-key rules."""

    def test_external_id_unique(self, memory_store):
        memory_store.insert(EntityType.THEME, {"name": "Hope", "external_id": "t1"})
        with pytest.raises(DuplicateKeyError) as exc_info:
            memory_store.insert(EntityType.THEME, {"name": "Hope again", "external_id": "t1"})
        assert exc_info.value.code == "23505"

    def test_foreign_key_must_exist(self, memory_store):
        with pytest.raises(ConstraintViolationError):
            memory_store.insert(EntityType.STORY, {"title": "x", "storyteller_id": "missing"})

    def test_delete_restricted_while_referenced(self, memory_store):
        teller = memory_store.insert(EntityType.STORYTELLER, {"full_name": "Jared"})
        memory_store.insert(EntityType.STORY, {"title": "x", "storyteller_id": teller["id"]})
        with pytest.raises(ConstraintViolationError):
            memory_store.delete(EntityType.STORYTELLER, teller["id"])

    def test_update_missing_row(self, memory_store):
        with pytest.raises(RowNotFoundError):
            memory_store.update(EntityType.THEME, "nope", {"name": "x"})

    def test_rows_are_copies(self, memory_store):
        """Test that callers cannot mutate stored rows."""
        row = memory_store.insert(EntityType.THEME, {"name": "Hope", "linked_stories": []})
        row["linked_stories"].append("x")
        assert memory_store.get(EntityType.THEME, row["id"])["linked_stories"] == []


class TestQueries:
    """Test lookups and counts."""

    def test_find_by_name_ignores_case(self, memory_store):
        memory_store.insert(EntityType.ORGANIZATION, {"name": "Orange Sky"})
        assert len(memory_store.find_by_name(EntityType.ORGANIZATION, " orange sky")) == 1

    def test_count_migrated_only(self, memory_store):
        memory_store.insert(EntityType.THEME, {"name": "Hope", "external_id": "t1"})
        memory_store.insert(EntityType.THEME, {"name": "Organic"})
        assert memory_store.count_by_type(EntityType.THEME) == 2
        assert memory_store.count_by_type(EntityType.THEME, migrated_only=True) == 1

    def test_clear_column(self, memory_store):
        memory_store.insert(EntityType.THEME, {"name": "a", "linked_stories": ["s1"]})
        memory_store.insert(EntityType.THEME, {"name": "b", "linked_stories": []})
        assert memory_store.clear_column(EntityType.THEME, "linked_stories", []) == 1


class TestSnapshots:
    """Test snapshots and units of work."""

    def test_from_store_is_independent(self, memory_store):
        memory_store.insert(EntityType.THEME, {"name": "Hope"})
        snapshot = InMemoryTargetStore.from_store(memory_store)
        snapshot.insert(EntityType.THEME, {"name": "Care"})
        assert memory_store.count_by_type(EntityType.THEME) == 1
        assert snapshot.count_by_type(EntityType.THEME) == 2

    def test_unit_of_work_rolls_back(self, memory_store):
        memory_store.insert(EntityType.THEME, {"name": "Hope"})
        with pytest.raises(RuntimeError):
            with memory_store.unit_of_work():
                memory_store.insert(EntityType.THEME, {"name": "Care"})
                raise RuntimeError("boom")
        assert memory_store.count_by_type(EntityType.THEME) == 1

    def test_nested_unit_of_work_rolls_back_to_outer_start(self, memory_store):
        with pytest.raises(RuntimeError):
            with memory_store.unit_of_work():
                memory_store.insert(EntityType.THEME, {"name": "Hope"})
                with memory_store.unit_of_work():
                    memory_store.insert(EntityType.THEME, {"name": "Care"})
                raise RuntimeError("boom")
        assert memory_store.count_by_type(EntityType.THEME) == 0
