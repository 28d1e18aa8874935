"""
Tests for the initial schema migration.
"""

import importlib.util
import os
import sys

import pytest
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import IntegrityError

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

VERSIONS_DIR = os.path.join(os.path.dirname(__file__), "..", "pledgehub", "db", "migrations", "versions")

TABLES = {
    "users",
    "pledge_access_requests",
    "pledge_sessions",
    "pledges",
    "pledge_payments",
    "pledge_execution_records",
    "pledge_audit_logs",
}


def _load_revision():
    path = os.path.join(VERSIONS_DIR, "c4d5e6f7a8b9_create_pledge_tables.py")
    spec = importlib.util.spec_from_file_location("create_pledge_tables", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _run(engine, step):
    with engine.begin() as conn:
        context = MigrationContext.configure(conn)
        with Operations.context(context):
            step()


@pytest.fixture
def migrated_engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'migration.db'}")
    revision = _load_revision()
    _run(engine, revision.upgrade)
    yield engine, revision
    engine.dispose()


class TestInitialMigration:
    def test_revision_is_the_root(self):
        revision = _load_revision()
        assert revision.revision == "c4d5e6f7a8b9"
        assert revision.down_revision is None

    def test_upgrade_creates_tables(self, migrated_engine):
        engine, _ = migrated_engine
        assert TABLES <= set(inspect(engine).get_table_names())

    def test_partial_unique_indexes(self, migrated_engine):
        engine, _ = migrated_engine
        index_names = {ix["name"] for ix in inspect(engine).get_indexes("pledges")}
        assert "uq_pledges_live_per_user_session" in index_names

    def test_one_pending_request_per_user(self, migrated_engine):
        engine, _ = migrated_engine
        insert = text(
            "INSERT INTO pledge_access_requests "
            "(id, user_id, brokerage_account_id, broker, risk_score, consent_given, status, submitted_at) "
            "VALUES (:id, 'u1', 'ABCD1234EFGH5678', 'zerodha', 50, 1, :status, '2026-10-01 00:00:00')"
        )
        with engine.begin() as conn:
            conn.execute(text("INSERT INTO users (id, email, role, has_pledge_access) "
                              "VALUES ('u1', 'u1@example.com', 'user', 0)"))
            conn.execute(insert, {"id": "r1", "status": "rejected"})
            conn.execute(insert, {"id": "r2", "status": "pending"})

        with pytest.raises(IntegrityError):
            with engine.begin() as conn:
                conn.execute(insert, {"id": "r3", "status": "pending"})

    def test_downgrade_drops_tables(self, migrated_engine):
        engine, revision = migrated_engine
        _run(engine, revision.downgrade)
        assert not TABLES & set(inspect(engine).get_table_names())
