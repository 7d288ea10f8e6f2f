"""Tests for the ORM layer: engine, sessions and table constraints."""

from __future__ import annotations

import pytest
from sqlalchemy import inspect, text
from sqlalchemy.exc import IntegrityError

from shiftwork.core.errors import ConfigError, DatabaseError
from shiftwork.core.orm.session import create_shiftwork_engine, session_scope
from shiftwork.core.orm.tables import JobDefinitionTable, WorkerTable

EXPECTED_TABLES = {
    "job_definitions",
    "script_revisions",
    "memory_expectancies",
    "job_instances",
    "tokens",
    "executions",
    "workers",
    "process_signals",
    "memory_consumption_logs",
    "logs",
    "execution_histories",
}


class TestEngine:
    def test_init_db_creates_every_table(self, engine):
        assert EXPECTED_TABLES <= set(inspect(engine).get_table_names())

    def test_sqlite_pragmas(self, engine):
        with engine.connect() as conn:
            assert conn.execute(text("PRAGMA journal_mode")).scalar() == "wal"
            assert conn.execute(text("PRAGMA foreign_keys")).scalar() == 1

    def test_unparsable_url_is_a_config_error(self):
        with pytest.raises(ConfigError, match="invalid database_url"):
            create_shiftwork_engine("not a url")


class TestSessionScope:
    def test_commits_on_success(self, factory):
        with session_scope(factory) as session:
            session.add(JobDefinitionTable(name="kept", script="echo"))

        with session_scope(factory) as session:
            assert session.query(JobDefinitionTable).count() == 1

    def test_rolls_back_on_error(self, factory):
        with pytest.raises(RuntimeError):
            with session_scope(factory) as session:
                session.add(JobDefinitionTable(name="lost", script="echo"))
                session.flush()
                raise RuntimeError("abort")

        with session_scope(factory) as session:
            assert session.query(JobDefinitionTable).count() == 0

    def test_rows_survive_commit(self, factory):
        with session_scope(factory) as session:
            definition = JobDefinitionTable(name="detached", script="echo")
            session.add(definition)

        assert definition.name == "detached"
        assert definition.id is not None

    def test_operational_failure_becomes_database_error(self, factory):
        with pytest.raises(DatabaseError, match="no such table") as info:
            with session_scope(factory) as session:
                session.execute(text("SELECT * FROM no_such_table"))

        assert info.value.retryable


class TestTables:
    def test_timestamps_are_set(self, session):
        definition = JobDefinitionTable(name="ts", script="echo")
        session.add(definition)
        session.flush()

        assert definition.created_at is not None
        assert definition.updated_at is not None

    def test_worker_identity_is_unique(self, session):
        session.add(WorkerTable(hostname="h", worker_id=1))
        session.flush()
        session.add(WorkerTable(hostname="h", worker_id=1))

        with pytest.raises(IntegrityError):
            session.flush()
