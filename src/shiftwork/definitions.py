"""Job definitions: create, edit, version and delete.

Every script change bumps ``version`` and records a ``script_revisions`` row,
so an instance can be triggered against any earlier version.

Example::

    service = DefinitionService()
    with session_scope(factory) as session:
        definition = service.create(session, name="nightly", script="- ./run.sh")
        service.update(session, definition.id, {"script": "- ./run.sh --full"})
        assert definition.version == 1
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from shiftwork.core.errors import ErrorCategory, NotFoundError, ShiftworkError, StateError
from shiftwork.core.logging import get_logger
from shiftwork.core.orm.tables import (
    ExecutionTable,
    InstanceLogTable,
    JobDefinitionTable,
    JobInstanceTable,
    MemoryConsumptionLogTable,
    MemoryExpectancyTable,
    ScriptRevisionTable,
    TokenTable,
)
from shiftwork.core.timestamps import utc_now
from shiftwork.engine.status import TokenStatus
from shiftwork.script.spec import compile_script

logger = get_logger(__name__)

EDITABLE_FIELDS = frozenset({
    "name",
    "description",
    "script",
    "suspended",
    "prevent_multi",
    "prevent_multi_on_error",
    "notify_cancellation",
    "slack_channel",
    "webhook_url",
    "api_allowed",
})
NULLABLE_FIELDS = frozenset({"webhook_url"})


class DefinitionService:
    def get(self, session: Session, definition_id: int) -> JobDefinitionTable:
        definition = session.get(JobDefinitionTable, definition_id)
        if definition is None:
            raise NotFoundError("job_definition", definition_id)
        return definition

    def list(self, session: Session, *, name: str | None = None) -> list[JobDefinitionTable]:
        statement = select(JobDefinitionTable).order_by(JobDefinitionTable.id)
        if name:
            statement = statement.where(JobDefinitionTable.name.contains(name))
        return list(session.scalars(statement))

    def create(
        self,
        session: Session,
        *,
        name: str,
        script: str,
        user_id: int | None = None,
        **fields: Any,
    ) -> JobDefinitionTable:
        """Validate *script* and insert a definition at version 0.

        Raises:
            ScriptError: If the script does not compile.
        """
        self._check_fields(fields)
        compile_script(script)
        definition = JobDefinitionTable(name=name, script=script, version=0, **fields)
        session.add(definition)
        session.flush()
        self._record_revision(session, definition, user_id)
        logger.info("definition_created", job_definition_id=definition.id, name=name)
        return definition

    def update(
        self,
        session: Session,
        definition_id: int,
        changes: Mapping[str, Any],
        *,
        user_id: int | None = None,
    ) -> JobDefinitionTable:
        """Apply *changes*; a changed script bumps the version.

        Running instances keep the script copy they were triggered with.
        """
        self._check_fields(changes)
        definition = self.get(session, definition_id)
        script = changes.get("script")
        if script is not None and script != definition.script:
            compile_script(script)
            definition.script = script
            definition.version += 1
            self._record_revision(session, definition, user_id)
        for key, value in changes.items():
            if key != "script":
                setattr(definition, key, value)
        session.flush()
        logger.info(
            "definition_updated",
            job_definition_id=definition.id,
            version=definition.version,
            fields=sorted(changes),
        )
        return definition

    def delete(self, session: Session, definition_id: int) -> None:
        """Delete a definition and the runtime rows of its instances.

        Execution history is retained.

        Raises:
            StateError: If an instance of the definition is still active.
        """
        definition = self.get(session, definition_id)
        active = session.scalar(
            select(JobInstanceTable.id)
            .where(
                JobInstanceTable.job_definition_id == definition_id,
                JobInstanceTable.finished_at.is_(None),
                JobInstanceTable.canceled_at.is_(None),
                JobInstanceTable.error_at.is_(None),
            )
            .limit(1)
        ) or session.scalar(
            select(TokenTable.job_instance_id)
            .where(
                TokenTable.job_definition_id == definition_id,
                TokenTable.status.in_(TokenStatus.active_values()),
            )
            .limit(1)
        )
        if active is not None:
            raise StateError(
                f"job_definition {definition_id} has an active instance ({active})"
            ).with_context(job_definition_id=definition_id, job_instance_id=active)

        instance_ids = select(JobInstanceTable.id).where(
            JobInstanceTable.job_definition_id == definition_id
        )
        for statement in (
            delete(ExecutionTable).where(ExecutionTable.job_definition_id == definition_id),
            delete(TokenTable).where(TokenTable.job_definition_id == definition_id),
            delete(MemoryConsumptionLogTable).where(
                MemoryConsumptionLogTable.job_instance_id.in_(instance_ids)
            ),
            delete(InstanceLogTable).where(InstanceLogTable.job_instance_id.in_(instance_ids)),
            delete(JobInstanceTable).where(JobInstanceTable.job_definition_id == definition_id),
        ):
            session.execute(statement.execution_options(synchronize_session=False))
        session.delete(definition)
        session.flush()
        logger.info("definition_deleted", job_definition_id=definition_id)

    def script_for_version(
        self, session: Session, definition: JobDefinitionTable, version: int | None = None
    ) -> tuple[int, str]:
        """``(version, script)`` for *version* (default: current)."""
        if version is None or version == definition.version:
            return definition.version, definition.script
        revision = session.scalar(
            select(ScriptRevisionTable).where(
                ScriptRevisionTable.job_definition_id == definition.id,
                ScriptRevisionTable.version == version,
            )
        )
        if revision is None:
            raise NotFoundError("script_revision", f"{definition.id}@{version}")
        return revision.version, revision.script

    def set_memory_expectancy(
        self, session: Session, definition_id: int, expected_value: int
    ) -> MemoryExpectancyTable:
        """Set the KiB threshold of the memory guard (0 = use the default)."""
        if expected_value < 0:
            raise ShiftworkError(
                "expected_value must be >= 0", category=ErrorCategory.VALIDATION
            )
        definition = self.get(session, definition_id)
        expectancy = definition.memory_expectancy
        if expectancy is None:
            expectancy = MemoryExpectancyTable(expected_value=expected_value)
            definition.memory_expectancy = expectancy
        else:
            expectancy.expected_value = expected_value
        session.flush()
        return expectancy

    def _record_revision(
        self, session: Session, definition: JobDefinitionTable, user_id: int | None
    ) -> None:
        session.add(
            ScriptRevisionTable(
                job_definition_id=definition.id,
                version=definition.version,
                script=definition.script,
                user_id=user_id,
                changed_at=utc_now(),
            )
        )

    @staticmethod
    def _check_fields(fields: Mapping[str, Any]) -> None:
        unknown = set(fields) - EDITABLE_FIELDS
        if unknown:
            raise ShiftworkError(
                f"unknown job_definition fields: {sorted(unknown)}",
                category=ErrorCategory.VALIDATION,
            )
        nulls = sorted(
            key for key, value in fields.items() if value is None and key not in NULLABLE_FIELDS
        )
        if nulls:
            raise ShiftworkError(
                f"job_definition fields may not be null: {nulls}",
                category=ErrorCategory.VALIDATION,
            )
        if fields.get("prevent_multi", 0) < 0:
            raise ShiftworkError(
                "prevent_multi must be >= 0", category=ErrorCategory.VALIDATION
            )


__all__ = ["DefinitionService", "EDITABLE_FIELDS", "NULLABLE_FIELDS"]
