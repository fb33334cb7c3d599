"""
Tests for record, run, config and schema models.
"""
import pytest

from ledger_migrate.models.migration import (
    EntityStats,
    ErrorStage,
    MigrationConfig,
    MigrationRun,
    RunStatus,
)
from ledger_migrate.models.record import EntityRef, EntityType, SourceRecord
from ledger_migrate.models.schema import (
    ENTITY_ORDER,
    check_entity_order,
    dependents_of,
    get_schema,
)


class TestEntityType:
    """Test entity type parsing."""

    @pytest.mark.parametrize("value,expected", [
        ("story", EntityType.STORY),
        ("Stories", EntityType.STORY),
        ("storytellers", EntityType.STORYTELLER),
        (" MEDIA ", EntityType.MEDIA),
    ])
    def test_parse(self, value, expected):
        assert EntityType.parse(value) == expected

    def test_parse_unknown(self):
        with pytest.raises(ValueError):
            EntityType.parse("volunteers")


class TestSourceRecord:
    """Test source record construction."""

    def test_get_treats_empty_as_missing(self):
        record = SourceRecord("r1", EntityType.THEME, {"Name": "", "Tags": [], "Category": "Health"})
        assert record.get("Name") is None
        assert record.get("Tags", "none") == "none"
        assert record.get("Category") == "Health"

    def test_from_api_item_requires_id(self):
        with pytest.raises(ValueError):
            SourceRecord.from_api_item(EntityType.THEME, {"name": "Hope"})

    def test_entity_ref_str(self):
        assert str(EntityRef(EntityType.STORY, "story1")) == "story:story1"


class TestSchema:
    """Test the dependency order."""

    def test_order_respects_foreign_keys(self):
        assert check_entity_order() == []

    def test_parents_come_first(self):
        position = {et: i for i, et in enumerate(ENTITY_ORDER)}
        for entity_type in ENTITY_ORDER:
            for fk in get_schema(entity_type).foreign_keys:
                assert position[fk.references] < position[entity_type]

    def test_dependents_of_story(self):
        dependents = {(et, fk.column) for et, fk in dependents_of(EntityType.STORY)}
        assert dependents == {(EntityType.QUOTE, "story_id"), (EntityType.MEDIA, "story_id")}

    def test_out_of_order_detected(self):
        order = list(reversed(ENTITY_ORDER))
        assert check_entity_order(order)


class TestMigrationRun:
    """Test run bookkeeping."""

    def test_stats(self):
        stats = EntityStats(fetched=5, inserted=2, updated=1, failed=2)
        assert stats.upserted == 3
        assert stats.succeeded

    def test_entity_counts(self):
        run = MigrationRun(entity_types=[EntityType.THEME])
        run.stats_for(EntityType.THEME).inserted = 4
        assert run.entity_counts == {EntityType.THEME: 4}

    def test_serialization_keeps_errors(self):
        run = MigrationRun(entity_types=[EntityType.STORY], status=RunStatus.PARTIAL)
        run.add_error(EntityType.STORY, ErrorStage.FETCH, "HTTP 503", retryable=True)

        restored = MigrationRun.from_dict(run.to_dict())

        assert restored.run_id == run.run_id
        assert restored.status == RunStatus.PARTIAL
        assert restored.errors[0].stage == ErrorStage.FETCH
        assert restored.errors[0].external_id is None


class TestMigrationConfig:
    """Test configuration loading."""

    def test_defaults(self):
        config = MigrationConfig()
        assert config.entity_types == ENTITY_ORDER
        assert config.fallbacks == {}
        assert config.source.page_size == 100

    def test_from_dict(self):
        config = MigrationConfig.from_dict({
            "source": {"base_url": "https://src.test", "page_size": 50},
            "entity_types": ["stories", "themes"],
            "fallbacks": {"storyteller.organization_id": "Unaffiliated"},
        })
        assert config.source.page_size == 50
        assert config.entity_types == [EntityType.STORY, EntityType.THEME]
        assert config.fallbacks["storyteller.organization_id"] == "Unaffiliated"

    def test_environment_overrides(self):
        config = MigrationConfig().apply_env({
            "SOURCE_API_URL": "https://src.test",
            "SOURCE_API_TOKEN": "tok",
            "TARGET_STORE_URL": "https://db.test",
            "TARGET_STORE_KEY": "key",
        })
        assert config.source.base_url == "https://src.test"
        assert config.target.api_key == "key"

    def test_secrets_not_serialized(self):
        config = MigrationConfig().apply_env({
            "SOURCE_API_TOKEN": "source-secret",
            "TARGET_STORE_KEY": "target-secret",
        })
        text = str(config.to_dict())
        assert "source-secret" not in text
        assert "target-secret" not in text

    def test_validate(self):
        errors = MigrationConfig(fallbacks={"bad": "x"}).validate()
        assert any("SOURCE_API_URL" in e for e in errors)
        assert any("TARGET_STORE_URL" in e for e in errors)
        assert any("bad" in e for e in errors)
        assert MigrationConfig().validate(need_source=False, need_target=False) == []
