"""
conftest.py
-----------
Shared pytest fixtures for ledger-migrate tests.

Provides fixtures for:
- Fake HTTP responses and a fake source API session serving cursor pages
- In-memory target store
- Migration configuration pointing at a temporary output directory
- The Organization -> Storyteller -> Story scenario data
"""
import pytest
import requests

from ledger_migrate.loaders.memory_store import InMemoryTargetStore
from ledger_migrate.models.migration import MigrationConfig, SourceConfig, TargetConfig


class FakeResponse:
    """Minimal stand-in for requests.Response."""

    def __init__(self, status_code=200, payload=None, headers=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.text = text if text is not None else ("" if payload is None else str(payload))

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"HTTP {self.status_code}", response=self)


class FakeSourceSession:
    """
    Serves source API pages keyed by entity and cursor.

    ``pages`` maps an entity path (``"story"``) to ``{cursor: payload}``,
    where the first page is stored under ``None``.
    """

    def __init__(self, pages=None, failures=None):
        self.pages = pages or {}
        self.failures = failures or {}  # (entity, cursor) -> FakeResponse or exception
        self.requests = []

    def get(self, url, headers=None, params=None, timeout=None):
        entity = url.rstrip("/").rsplit("/", 1)[-1]
        cursor = (params or {}).get("cursor")
        self.requests.append({"entity": entity, "cursor": cursor, "params": params, "headers": headers})

        failure = self.failures.get((entity, cursor))
        if isinstance(failure, Exception):
            raise failure
        if failure is not None:
            return failure

        entity_pages = self.pages.get(entity, {})
        payload = entity_pages.get(cursor, {"records": [], "next_cursor": None})
        return FakeResponse(200, payload)


def paginate(records, page_size, cursor_after_last=False):
    """
    Split records into cursor pages.

    With ``cursor_after_last`` the final full page still carries a cursor
    that leads to an empty page.
    """
    pages = {}
    chunks = [records[i:i + page_size] for i in range(0, len(records), page_size)] or [[]]
    cursor = None
    for number, chunk in enumerate(chunks, start=1):
        is_last = number == len(chunks)
        next_cursor = None if is_last else f"cur-{number}"
        if is_last and cursor_after_last:
            next_cursor = f"cur-{number}"
            pages[next_cursor] = {"records": [], "next_cursor": None}
        pages[cursor] = {"records": chunk, "next_cursor": next_cursor}
        cursor = next_cursor
    return pages


# ----- HTTP Fixtures -----

@pytest.fixture
def fake_response():
    """FakeResponse class."""
    return FakeResponse


@pytest.fixture
def session_class():
    """FakeSourceSession class, for tests that lay out pages by hand."""
    return FakeSourceSession


@pytest.fixture
def source_session_factory():
    """Build a FakeSourceSession from ``{entity: [items]}`` (one page each)."""
    def factory(records_by_entity=None, failures=None, page_size=100):
        pages = {
            entity: paginate(items, page_size)
            for entity, items in (records_by_entity or {}).items()
        }
        return FakeSourceSession(pages, failures)
    return factory


@pytest.fixture
def paginator():
    """The paginate helper."""
    return paginate


# ----- Store and Config Fixtures -----

@pytest.fixture
def memory_store():
    """Empty in-memory target store."""
    return InMemoryTargetStore()


@pytest.fixture
def source_config():
    """Source config with rate limiting disabled."""
    return SourceConfig(
        base_url="https://source.test/v1",
        api_token="test-token",
        page_size=2,
        max_pages=20,
        min_request_interval=0,
        max_workers=3,
    )


@pytest.fixture
def migration_config(tmp_path, source_config):
    """Migration config writing logs and the lock under tmp_path."""
    return MigrationConfig(
        source=source_config,
        target=TargetConfig(url="https://target.test", api_key="service-key"),
        run_timeout_seconds=60,
        output_dir=str(tmp_path),
    )


# ----- Scenario Data -----

@pytest.fixture
def scenario_records():
    """One organization, one storyteller in it, one story by them."""
    return {
        "organization": [{"id": "org1", "name": "Orange Sky"}],
        "storyteller": [{"id": "st1", "name": "Jared", "org_ref": "org1"}],
        "story": [{"id": "story1", "storyteller_ref": "st1", "title": "My Story"}],
    }


@pytest.fixture
def scenario_session(source_session_factory, scenario_records):
    """Source session serving the scenario."""
    return source_session_factory(scenario_records)
