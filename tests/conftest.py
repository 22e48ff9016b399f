"""Shared pytest configuration for the Nyaya test suite.

Puts the project root on sys.path so tests import source modules (api,
ledger, proposals, etc.) directly, and points every engine at a throwaway
SQLite file per test.
"""

import itertools
import os
import sys
import tempfile
from pathlib import Path

import pytest

# Add project root to sys.path so `import ledger`, `from api import app`, etc. work
PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

# Keep logs and the fallback database out of the repo
_tmp_ctx = tempfile.TemporaryDirectory(prefix="nyaya_test_")
os.environ["NYAYA_ENV"] = "test"
os.environ["NYAYA_DB_BACKEND"] = "sqlite"
os.environ["NYAYA_LOG_FILE"] = os.path.join(_tmp_ctx.name, "nyaya.log")
os.environ["NYAYA_DB_PATH"] = os.path.join(_tmp_ctx.name, "nyaya.db")

from db import Database  # noqa: E402
from pools import PoolDirectory  # noqa: E402


@pytest.fixture
def db(tmp_path, monkeypatch):
    """Fresh database; singletons resolve to the same file via NYAYA_DB_PATH."""
    path = str(tmp_path / "nyaya.db")
    monkeypatch.setenv("NYAYA_DB_PATH", path)
    return Database(db_path=path)


@pytest.fixture
def directory(db):
    return PoolDirectory(db)


@pytest.fixture
def admin(directory):
    return directory.register_user("admin@example.org", "Pool Admin", role="admin")


@pytest.fixture
def pool(directory, admin):
    return directory.create_pool("Tenants Union", "Housing defense fund", admin_id=admin["id"])


@pytest.fixture
def make_member(directory, pool):
    """Register a user, join them to `pool`, return the fresh row."""
    counter = itertools.count(1)

    def _make(**metrics):
        user = directory.register_user(f"member{next(counter)}@example.org", **metrics)
        return directory.join_pool(pool["id"], user["id"])

    return _make
