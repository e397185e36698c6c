"""Common test fixtures for the NotePad store."""

import datetime
import random

import pytest

from notepad_store.config import config
from notepad_store.models.schema import utc_now
from notepad_store.observability import metrics
from notepad_store.services.notepad_service import NotePadService
from notepad_store.services.task_coordinator import TaskCoordinator
from notepad_store.storage.store import Store


@pytest.fixture
def test_config(tmp_path, monkeypatch):
    """Point the global config at a per-test database (auto-restored)."""
    database_path = tmp_path / "db" / "test_notepad.db"
    monkeypatch.setattr(config, "base_dir", tmp_path)
    monkeypatch.setattr(config, "database_path", database_path)
    yield config


@pytest.fixture
def store(test_config):
    """An open store on a temporary database file."""
    s = Store()
    yield s
    s.close()


@pytest.fixture
def service(store):
    """NotePadService over the primary handle."""
    return NotePadService(store)


@pytest.fixture
def coordinator(store):
    """TaskCoordinator owned by the test thread, with a seeded random source."""
    c = TaskCoordinator(store, max_workers=4, rng=random.Random(42))
    yield c
    c.shutdown()


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield


@pytest.fixture
def days_ago():
    """Build a UTC timestamp N days in the past."""
    now = utc_now()

    def _days_ago(days: float) -> datetime.datetime:
        return now - datetime.timedelta(days=days)

    return _days_ago
