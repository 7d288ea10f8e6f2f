"""Tests for job definitions: creation, versioning, revisions and deletion."""

from __future__ import annotations

import pytest
from sqlalchemy import select

from shiftwork.core.errors import NotFoundError, ScriptError, ShiftworkError, StateError
from shiftwork.core.orm.session import session_scope
from shiftwork.core.orm.tables import JobInstanceTable, ScriptRevisionTable
from shiftwork.definitions import DefinitionService


@pytest.fixture()
def service() -> DefinitionService:
    return DefinitionService()


class TestCreate:
    def test_defaults(self, session, service):
        definition = service.create(session, name="nightly", script="echo hi")

        assert definition.version == 0
        assert definition.prevent_multi == 1
        assert definition.suspended is False
        assert definition.api_allowed is False
        assert [r.version for r in definition.revisions] == [0]

    def test_invalid_script_is_rejected(self, session, service):
        with pytest.raises(ScriptError):
            service.create(session, name="broken", script="loop: {do: echo}")

    def test_unknown_field_is_rejected(self, session, service):
        with pytest.raises(ShiftworkError, match="unknown job_definition fields"):
            service.create(session, name="x", script="echo", owner="me")

    def test_negative_prevent_multi(self, session, service):
        with pytest.raises(ShiftworkError, match="prevent_multi must be >= 0"):
            service.create(session, name="x", script="echo", prevent_multi=-1)

    def test_list_filters_by_name(self, session, service):
        service.create(session, name="daily-report", script="echo a")
        service.create(session, name="cleanup", script="echo b")

        assert [d.name for d in service.list(session, name="report")] == ["daily-report"]
        assert len(service.list(session)) == 2


class TestUpdate:
    def test_script_change_bumps_version_and_records_revision(self, session, service):
        definition = service.create(session, name="etl", script="echo v0")

        service.update(session, definition.id, {"script": "echo v1"}, user_id=7)
        service.update(session, definition.id, {"script": "echo v1"})

        assert definition.version == 1
        revisions = session.scalars(
            select(ScriptRevisionTable)
            .where(ScriptRevisionTable.job_definition_id == definition.id)
            .order_by(ScriptRevisionTable.version)
        ).all()
        assert [(r.version, r.script, r.user_id) for r in revisions] == [
            (0, "echo v0", None),
            (1, "echo v1", 7),
        ]
        assert service.script_for_version(session, definition, 0) == (0, "echo v0")
        assert service.script_for_version(session, definition) == (1, "echo v1")

    def test_other_fields_keep_the_version(self, session, service):
        definition = service.create(session, name="etl", script="echo v0")

        service.update(session, definition.id, {"suspended": True, "description": "paused"})

        assert definition.version == 0
        assert definition.suspended is True
        assert definition.description == "paused"

    def test_invalid_script_keeps_the_old_one(self, session, service):
        definition = service.create(session, name="etl", script="echo v0")

        with pytest.raises(ScriptError):
            service.update(session, definition.id, {"script": "parallel: []"})

        assert definition.script == "echo v0"
        assert definition.version == 0

    @pytest.mark.parametrize("field", ["name", "prevent_multi", "script"])
    def test_null_is_rejected_for_required_fields(self, session, service, field):
        definition = service.create(session, name="etl", script="echo v0")

        with pytest.raises(ShiftworkError, match=rf"may not be null: \['{field}'\]"):
            service.update(session, definition.id, {field: None})

        assert definition.name == "etl"
        assert definition.prevent_multi == 1

    def test_webhook_url_may_be_cleared(self, session, service):
        definition = service.create(
            session, name="etl", script="echo v0", webhook_url="https://hooks.example.com/x"
        )

        service.update(session, definition.id, {"webhook_url": None})

        assert definition.webhook_url is None

    def test_missing_definition(self, session, service):
        with pytest.raises(NotFoundError, match="job_definition not found: 42"):
            service.update(session, 42, {"suspended": True})


class TestMemoryExpectancy:
    def test_set_and_replace(self, session, service):
        definition = service.create(session, name="etl", script="echo")

        service.set_memory_expectancy(session, definition.id, 2048)
        expectancy = service.set_memory_expectancy(session, definition.id, 4096)

        assert expectancy.expected_value == 4096
        assert definition.memory_expectancy is expectancy

    def test_negative_value(self, session, service):
        definition = service.create(session, name="etl", script="echo")

        with pytest.raises(ShiftworkError, match="expected_value"):
            service.set_memory_expectancy(session, definition.id, -1)


class TestDelete:
    def test_delete_keeps_history(self, scheduler):
        definition_id = scheduler.define("echo bye")
        instance_id = scheduler.trigger(definition_id)
        scheduler.drive(instance_id)

        with session_scope(scheduler.factory) as session:
            scheduler.definitions.delete(session, definition_id)

        with session_scope(scheduler.factory) as session:
            with pytest.raises(NotFoundError):
                scheduler.definitions.get(session, definition_id)
            assert session.get(JobInstanceTable, instance_id) is None
        assert len(scheduler.history(instance_id)) == 1

    def test_active_instance_blocks_delete(self, scheduler):
        definition_id = scheduler.define("echo busy")
        instance_id = scheduler.trigger(definition_id)

        with session_scope(scheduler.factory) as session:
            with pytest.raises(StateError, match="active instance") as excinfo:
                scheduler.definitions.delete(session, definition_id)

        assert excinfo.value.context.to_dict()["job_instance_id"] == instance_id
