"""
Shared fixtures: a throwaway sqlite contact store with a deterministic clock,
and an API client wired to it.
"""

import itertools
import os
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("LOG_FORMAT", "text")

from db_setup import ContactStore  # noqa: E402


BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


class TickingClock:
    """Each call returns one second later than the previous one."""

    def __init__(self, start=BASE_TIME):
        self._ticks = itertools.count()
        self._start = start

    def __call__(self):
        return self._start + timedelta(seconds=next(self._ticks))


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "contacts.db")


@pytest.fixture
def store(db_path):
    contact_store = ContactStore(db_path, timeout=5.0, clock=TickingClock())
    contact_store.init_schema()
    return contact_store


@pytest.fixture
def all_rows(db_path):
    """Read every row of the Contact table, deleted ones included."""

    def _read():
        conn = sqlite3.connect(db_path)
        conn.row_factory = sqlite3.Row
        try:
            return [dict(row) for row in conn.execute("SELECT * FROM Contact ORDER BY id")]
        finally:
            conn.close()

    return _read


@pytest.fixture
def app(store):
    from main import app as fastapi_app, get_store

    fastapi_app.dependency_overrides[get_store] = lambda: store
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)
