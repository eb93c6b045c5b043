"""Shared fixtures: a mocked data layer and a TestClient bound to the app."""

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from main import app


@pytest.fixture
def fake_db() -> MagicMock:
    """Stand-in for db_store with empty results by default."""
    db = MagicMock()
    db.query_one.return_value = None
    db.query_all.return_value = []
    db.execute.return_value = None
    db.query_page.return_value = {
        "data": [],
        "pagination": {"total": 0, "page": 1, "limit": 10, "total_pages": 0, "has_next": False, "has_prev": False},
    }
    return db


@pytest.fixture
def cursor(fake_db: MagicMock) -> MagicMock:
    """Cursor yielded by `with fake_db.transaction() as cur`."""
    cur = MagicMock()
    cur.fetchone.return_value = {"id": 1}
    fake_db.transaction.return_value.__enter__.return_value = cur
    fake_db.transaction.return_value.__exit__.return_value = False
    return cur


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
