"""History archiver: moves finished executions to ``execution_histories``
and purges the runtime rows of old terminal instances.

Archiving an execution frees its ``(job_definition_id, token_id)`` key, so a
retried token can be dispatched again.
"""

from __future__ import annotations

from datetime import timedelta

from sqlalchemy import delete, func, or_, select
from sqlalchemy.orm import Session

from shiftwork.core.errors import StateError
from shiftwork.core.logging import get_logger
from shiftwork.core.orm.tables import (
    ExecutionHistoryTable,
    ExecutionTable,
    InstanceLogTable,
    JobInstanceTable,
    MemoryConsumptionLogTable,
    TokenTable,
)
from shiftwork.core.timestamps import utc_now
from shiftwork.engine.status import TokenStatus

logger = get_logger(__name__)


class HistoryArchiver:
    def archive_execution(
        self, session: Session, execution: ExecutionTable
    ) -> ExecutionHistoryTable:
        """Copy *execution* into history and delete it."""
        history = ExecutionHistoryTable(
            uuid=execution.uuid,
            hostname=execution.hostname,
            worker_id=execution.worker_id,
            queue=execution.queue,
            job_definition_id=execution.job_definition_id,
            job_instance_id=execution.job_instance_id,
            token_path=execution.token.path,
            shell=execution.shell,
            exit_status=execution.exit_status,
            term_signal=execution.term_signal,
            output=execution.output or "",
            mailed_at=execution.mailed_at,
            started_at=execution.started_at,
            finished_at=execution.finished_at,
            archived_at=utc_now(),
        )
        session.add(history)
        session.delete(execution)
        session.flush()
        logger.debug("execution_archived", execution_id=execution.id, history_id=history.id)
        return history

    def purge_instance(self, session: Session, instance: JobInstanceTable) -> int:
        """Delete tokens, memory samples and logs of a terminal instance.

        The instance row itself is kept.  Returns the number of rows deleted.

        Raises:
            StateError: If the instance is still active.
        """
        if not instance.terminal:
            raise StateError(f"job instance {instance.id} is still active")

        for execution in session.scalars(
            select(ExecutionTable).where(ExecutionTable.job_instance_id == instance.id)
        ):
            self.archive_execution(session, execution)

        deleted = 0
        for table in (TokenTable, MemoryConsumptionLogTable, InstanceLogTable):
            result = session.execute(
                delete(table)
                .where(table.job_instance_id == instance.id)
                .execution_options(synchronize_session=False)
            )
            deleted += result.rowcount
        session.expire(instance, ["tokens"])
        logger.info("instance_purged", job_instance_id=instance.id, rows=deleted)
        return deleted

    def purge_terminal(self, session: Session, older_than: float | timedelta) -> int:
        """Purge every instance that became terminal more than *older_than* ago.

        Returns the number of instances purged.
        """
        if not isinstance(older_than, timedelta):
            older_than = timedelta(seconds=older_than)
        cutoff = utc_now() - older_than
        ended = func.coalesce(JobInstanceTable.finished_at, JobInstanceTable.canceled_at)
        has_tokens = (
            select(TokenTable.id).where(TokenTable.job_instance_id == JobInstanceTable.id).exists()
        )
        instances = session.scalars(
            select(JobInstanceTable).where(
                # errored instances stay retryable until an operator acts
                or_(
                    JobInstanceTable.finished_at.is_not(None),
                    JobInstanceTable.canceled_at.is_not(None),
                ),
                ended < cutoff,
                has_tokens,
                # canceled instances keep tokens until every token is terminal
                ~select(TokenTable.id)
                .where(
                    TokenTable.job_instance_id == JobInstanceTable.id,
                    TokenTable.status.in_(TokenStatus.active_values()),
                )
                .exists(),
            )
        ).all()
        for instance in instances:
            self.purge_instance(session, instance)
        return len(instances)


__all__ = ["HistoryArchiver"]
