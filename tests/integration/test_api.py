"""
Integration tests for the read-only run inspection API.
"""
import pytest
from fastapi.testclient import TestClient

from ledger_migrate.api.main import app
from ledger_migrate.api.routes import runs
from ledger_migrate.models.migration import ErrorStage, MigrationRun, RunStatus
from ledger_migrate.models.record import EntityType
from ledger_migrate.storage import RunLog


@pytest.fixture
def run_log(tmp_path):
    return RunLog(str(tmp_path))


@pytest.fixture
def client(run_log):
    app.dependency_overrides[runs.get_run_log] = lambda: run_log
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def partial_run(run_log):
    run = MigrationRun(entity_types=[EntityType.STORYTELLER, EntityType.STORY], status=RunStatus.PARTIAL)
    run.stats_for(EntityType.STORYTELLER).fetched = 1
    run.stats_for(EntityType.STORYTELLER).inserted = 1
    run.stats_for(EntityType.STORY).fetch_failed = True
    run.add_error(EntityType.STORY, ErrorStage.FETCH, "HTTP 503", retryable=True)
    run.add_error(EntityType.STORYTELLER, ErrorStage.RESOLVE, "Ambiguous name", "st2")
    run_log.append(run)
    return run


class TestHealth:
    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestRuns:
    """Test run listing and detail."""

    def test_empty_list(self, client):
        response = client.get("/api/runs")
        assert response.status_code == 200
        assert response.json() == {"runs": [], "total": 0}

    def test_list(self, client, partial_run):
        data = client.get("/api/runs").json()
        assert data["total"] == 1
        summary = data["runs"][0]
        assert summary["run_id"] == partial_run.run_id
        assert summary["status"] == "partial"
        assert summary["error_count"] == 2
        assert summary["entity_counts"]["storyteller"] == 1

    def test_detail(self, client, partial_run):
        response = client.get(f"/api/runs/{partial_run.run_id}")
        assert response.status_code == 200
        data = response.json()
        assert data["entity_stats"]["story"]["fetch_failed"] is True
        assert len(data["errors"]) == 2

    def test_unknown_run(self, client):
        response = client.get("/api/runs/missing")
        assert response.status_code == 404
        assert response.json()["detail"] == "Run not found"


class TestRunErrors:
    """Test error filtering."""

    def test_filter_by_stage(self, client, partial_run):
        data = client.get(f"/api/runs/{partial_run.run_id}/errors", params={"stage": "fetch"}).json()
        assert data["total"] == 1
        assert data["errors"][0]["entity_type"] == "story"

    def test_filter_by_retryable(self, client, partial_run):
        data = client.get(f"/api/runs/{partial_run.run_id}/errors", params={"retryable": "false"}).json()
        assert data["total"] == 1
        assert data["errors"][0]["external_id"] == "st2"

    def test_invalid_stage(self, client, partial_run):
        response = client.get(f"/api/runs/{partial_run.run_id}/errors", params={"stage": "bogus"})
        assert response.status_code == 422
