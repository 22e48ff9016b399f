"""Database migration tests.

Applies the Alembic revision to a scratch SQLite engine and checks it
describes the same tables as the schema db.py creates on first connect,
without requiring a live PostgreSQL server.
"""

import importlib.util
from pathlib import Path

import pytest
import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations

from db import Database

MIGRATION = Path(__file__).resolve().parent.parent / "migrations" / "versions" / "001_initial_schema.py"

TABLES = ("users", "pools", "proposals", "votes", "audit_logs", "subscriptions", "cases")


def _load_revision():
    spec = importlib.util.spec_from_file_location("rev_001", MIGRATION)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def migrated(tmp_path):
    engine = sa.create_engine(f"sqlite:///{tmp_path / 'alembic.db'}")
    revision = _load_revision()
    with engine.begin() as conn:
        ctx = MigrationContext.configure(conn)
        with Operations.context(ctx):
            revision.upgrade()
    yield sa.inspect(engine)
    engine.dispose()


def _runtime_columns(db, table):
    with db.connection() as conn:
        return {r["name"] for r in db.fetch_all(conn, f"PRAGMA table_info({table})")}


class TestInitialRevision:

    def test_revision_metadata(self):
        revision = _load_revision()
        assert revision.revision == "001"
        assert revision.down_revision is None

    def test_creates_every_table(self, migrated):
        assert set(TABLES) <= set(migrated.get_table_names())

    @pytest.mark.parametrize("table", TABLES)
    def test_columns_match_runtime_schema(self, db, migrated, table):
        migrated_cols = {c["name"] for c in migrated.get_columns(table)}
        assert migrated_cols == _runtime_columns(db, table)

    def test_vote_uniqueness(self, migrated):
        uniques = migrated.get_unique_constraints("votes")
        assert any(set(u["column_names"]) == {"proposal_id", "user_id"} for u in uniques)

    def test_sweep_index(self, migrated):
        indexes = {i["name"]: i["column_names"] for i in migrated.get_indexes("proposals")}
        assert indexes["idx_proposals_expiry"] == ["status", "expires_at"]


class TestRuntimeSchema:

    def test_tables_exist_on_first_connect(self, tmp_path):
        db = Database(db_path=str(tmp_path / "fresh.db"))
        with db.connection() as conn:
            tables = {r["name"] for r in db.fetch_all(
                conn, "SELECT name FROM sqlite_master WHERE type = 'table'"
            )}
        assert set(TABLES) <= tables
