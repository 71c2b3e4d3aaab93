"""Shared fixtures for the AssetLink test suite.

Provides a Flask test client wired to a temporary SQLite database with
reconciliation running inline, so sign-in flows finish before the
response is returned.
"""

import atexit
import os
import tempfile

import pytest

# Point the DB at a temp file BEFORE importing app/models (they read DB_PATH at import time)
_test_db_fd, _test_db_path = tempfile.mkstemp(suffix=".db")
os.close(_test_db_fd)  # close the fd immediately; sqlite3 opens its own handle
os.environ["ASSETLINK_DB_PATH"] = _test_db_path
atexit.register(lambda: os.unlink(_test_db_path) if os.path.exists(_test_db_path) else None)

# Suppress the SECRET_KEY startup guard
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ["ASSETLINK_BACKEND"] = "sqlite"
os.environ["RECONCILE_INLINE"] = "true"
os.environ["RATE_LIMIT_WRITE"] = "1000/minute"

import app as app_module  # noqa: E402
from models import init_db, _get_db, SELECTIONS_TABLE, ANALYSES_TABLE  # noqa: E402
from session_identity import SessionIdentity, MemoryStorage  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_db():
    """Reset the database and per-process caches before every test."""
    init_db()
    conn = _get_db()
    for table in (SELECTIONS_TABLE, ANALYSES_TABLE, "events"):
        conn.execute(f"DELETE FROM {table}")
    conn.commit()
    conn.close()
    app_module.selection_cache.clear()
    app_module.reconcile_worker._attempted.clear()
    app_module.reconcile_worker._known_analysis.clear()
    app_module.reconcile_worker._last_summary.clear()
    yield


@pytest.fixture()
def client():
    """Flask test client with CSRF and rate limits disabled (we're testing logic)."""
    app_module.app.config["TESTING"] = True
    app_module.app.config["WTF_CSRF_ENABLED"] = False
    app_module.limiter.enabled = False
    with app_module.app.test_client() as c:
        yield c


@pytest.fixture()
def identity():
    """A fresh in-memory browsing context."""
    return SessionIdentity(MemoryStorage())
