"""Dispatch queue: executions waiting in named queues and the claim protocol.

Workers never talk to each other; the ``executions`` table is the queue and
the only atomic primitive is a conditional UPDATE:

::

    UPDATE executions
       SET worker_id = :worker, hostname = :host, started_at = :now
     WHERE id = :id AND worker_id IS NULL

A claim wins iff exactly one row was updated.  Admission of a job instance
(``prevent_multi``) is a second conditional UPDATE on ``job_instances``
performed in the same transaction, serialized per definition by a
``FOR UPDATE`` lock on the definition row.  SQLite drops the lock clause;
its writers are already serialized by the database lock.

Usage::

    queue = DispatchQueue(max_output_bytes=1 << 20)
    with session_scope(factory) as session:
        execution = queue.claim(session, worker)
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.orm import Session

from shiftwork.core.logging import get_logger
from shiftwork.core.orm.tables import (
    ExecutionTable,
    JobDefinitionTable,
    JobInstanceTable,
    TokenTable,
    WorkerTable,
)
from shiftwork.core.timestamps import new_uuid, utc_now
from shiftwork.script.steps import Command

logger = get_logger(__name__)

TRUNCATION_MARKER = "[... output truncated ...]\n"
LOST_WORKER_MESSAGE = "\n[shiftwork] worker stopped reporting; execution marked as failed\n"


class DispatchQueue:
    """Enqueue, claim, report and reap executions.

    Args:
        max_output_bytes: Cap on the stored output of one execution.  The
            oldest bytes are dropped first; a cap smaller than the
            truncation marker stores the marker alone.
        batch_size: Candidates examined per claim attempt.
    """

    def __init__(self, *, max_output_bytes: int = 1_048_576, batch_size: int = 20):
        self.max_output_bytes = max_output_bytes
        self.batch_size = batch_size

    # ------------------------------------------------------------------ #
    # Producer side
    # ------------------------------------------------------------------ #

    def enqueue(
        self, session: Session, token: TokenTable, step: Command, context: dict[str, Any]
    ) -> ExecutionTable:
        """Create the queued execution for a command token and flush it."""
        execution = ExecutionTable(
            uuid=new_uuid(),
            job_definition_id=token.job_definition_id,
            job_definition_version=token.job_definition_version,
            job_instance_id=token.job_instance_id,
            token_id=token.id,
            queue=step.queue,
            shell=step.shell,
            context=dict(context),
            output="",
        )
        session.add(execution)
        session.flush()
        logger.debug(
            "execution_enqueued",
            execution_id=execution.id,
            job_instance_id=token.job_instance_id,
            token_path=token.path,
            queue=step.queue,
        )
        return execution

    def withdraw(self, session: Session, execution: ExecutionTable) -> bool:
        """Delete *execution* if no worker has claimed it yet.

        Returns ``False`` when a worker won the race; the caller must then
        treat the execution as running.
        """
        result = session.execute(
            delete(ExecutionTable)
            .where(ExecutionTable.id == execution.id, ExecutionTable.worker_id.is_(None))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.refresh(execution)
            return False
        session.expunge(execution)
        logger.info("execution_withdrawn", execution_id=execution.id)
        return True

    # ------------------------------------------------------------------ #
    # Consumer side
    # ------------------------------------------------------------------ #

    def candidates(self, session: Session, queue: str) -> list[tuple[int, int, int, bool]]:
        """Claimable ``(execution_id, instance_id, definition_id, admitted)`` rows, oldest first."""
        rows = session.execute(
            select(
                ExecutionTable.id,
                ExecutionTable.job_instance_id,
                ExecutionTable.job_definition_id,
                JobInstanceTable.started_at.is_not(None),
            )
            .join(JobInstanceTable, JobInstanceTable.id == ExecutionTable.job_instance_id)
            .join(JobDefinitionTable, JobDefinitionTable.id == ExecutionTable.job_definition_id)
            .where(
                ExecutionTable.queue == queue,
                ExecutionTable.worker_id.is_(None),
                ExecutionTable.finished_at.is_(None),
                JobDefinitionTable.suspended.is_(False),
                JobInstanceTable.canceled_at.is_(None),
                JobInstanceTable.finished_at.is_(None),
                JobInstanceTable.error_at.is_(None),
            )
            .order_by(ExecutionTable.id)
            .limit(self.batch_size)
        ).all()
        return [(row[0], row[1], row[2], bool(row[3])) for row in rows]

    def claim(self, session: Session, worker: WorkerTable) -> ExecutionTable | None:
        """Atomically claim the oldest admissible execution of *worker*'s queue.

        The worker row is bound (``working``/``execution_id``) in the same
        transaction.  Returns ``None`` when nothing could be claimed.
        """
        for execution_id, instance_id, definition_id, admitted in self.candidates(
            session, worker.queue
        ):
            if not admitted and not self.admit(session, instance_id, definition_id):
                continue

            now = utc_now()
            result = session.execute(
                update(ExecutionTable)
                .where(ExecutionTable.id == execution_id, ExecutionTable.worker_id.is_(None))
                .values(worker_id=worker.id, hostname=worker.hostname, started_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                continue  # somebody else claimed it

            session.execute(
                update(WorkerTable)
                .where(WorkerTable.id == worker.id)
                .values(working=True, execution_id=execution_id, heartbeat_at=now)
                .execution_options(synchronize_session=False)
            )
            session.refresh(worker)
            execution = session.get(ExecutionTable, execution_id, populate_existing=True)
            logger.info(
                "execution_claimed",
                execution_id=execution_id,
                job_instance_id=instance_id,
                worker=f"{worker.hostname}:{worker.worker_id}",
                queue=worker.queue,
            )
            return execution
        return None

    def admit(self, session: Session, instance_id: int, definition_id: int) -> bool:
        """Mark the instance admitted unless its definition's limit is reached.

        ``prevent_multi`` is the number of admitted, unfinished instances a
        definition may have at once (0 = unlimited).  With
        ``prevent_multi_on_error`` errored instances keep their slot until
        they are retried, skipped or canceled.
        """
        definition = session.execute(
            select(
                JobDefinitionTable.prevent_multi, JobDefinitionTable.prevent_multi_on_error
            )
            .where(JobDefinitionTable.id == definition_id)
            .with_for_update()
        ).one_or_none()
        if definition is None:
            return False
        limit, count_errors = definition

        statement = update(JobInstanceTable).where(
            JobInstanceTable.id == instance_id,
            JobInstanceTable.started_at.is_(None),
        )
        if limit > 0:
            running = and_(
                JobInstanceTable.job_definition_id == definition_id,
                JobInstanceTable.started_at.is_not(None),
                JobInstanceTable.finished_at.is_(None),
                JobInstanceTable.canceled_at.is_(None),
            )
            if not count_errors:
                running = and_(running, JobInstanceTable.error_at.is_(None))
            occupied = (
                select(func.count())
                .select_from(JobInstanceTable)
                .where(running)
                .scalar_subquery()
            )
            statement = statement.where(occupied < limit)

        result = session.execute(
            statement.values(started_at=utc_now()).execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.info("instance_admitted", job_instance_id=instance_id)
            return True
        # Someone else may have admitted it concurrently.
        return bool(
            session.scalar(
                select(JobInstanceTable.started_at.is_not(None)).where(
                    JobInstanceTable.id == instance_id
                )
            )
        )

    def record_pid(self, session: Session, execution_id: int, pid: int) -> None:
        session.execute(
            update(ExecutionTable)
            .where(ExecutionTable.id == execution_id)
            .values(pid=pid)
            .execution_options(synchronize_session=False)
        )

    def append_output(self, session: Session, execution_id: int, chunk: str) -> None:
        """Append *chunk* to the stored output, keeping at most ``max_output_bytes``."""
        if not chunk:
            return
        current = session.scalar(
            select(ExecutionTable.output).where(ExecutionTable.id == execution_id)
        )
        if current is None:
            return
        text = current + chunk
        data = text.encode("utf-8")
        if len(data) > self.max_output_bytes:
            keep = max(self.max_output_bytes - len(TRUNCATION_MARKER.encode("utf-8")), 0)
            tail = data[len(data) - keep :].decode("utf-8", errors="ignore")
            text = TRUNCATION_MARKER + tail
        session.execute(
            update(ExecutionTable)
            .where(ExecutionTable.id == execution_id)
            .values(output=text)
            .execution_options(synchronize_session=False)
        )

    def complete(
        self,
        session: Session,
        execution: ExecutionTable,
        exit_status: int | None,
        term_signal: int | None = None,
        output: str | None = None,
    ) -> bool:
        """Record termination of *execution* and release its worker.

        Returns ``False`` if the execution had already been finished (e.g.
        by the reaper); its recorded outcome is then left untouched.
        """
        if output:
            self.append_output(session, execution.id, output)
            session.refresh(execution)
        self.release_workers(session, execution.id)
        if execution.finished_at is not None:
            return False
        execution.exit_status = exit_status
        execution.term_signal = term_signal
        execution.finished_at = utc_now()
        session.flush()
        logger.info(
            "execution_finished",
            execution_id=execution.id,
            job_instance_id=execution.job_instance_id,
            exit_status=exit_status,
            term_signal=term_signal,
        )
        return True

    def release_workers(self, session: Session, execution_id: int) -> None:
        session.execute(
            update(WorkerTable)
            .where(WorkerTable.execution_id == execution_id)
            .values(working=False, execution_id=None)
            .execution_options(synchronize_session=False)
        )

    # ------------------------------------------------------------------ #
    # Failure detection
    # ------------------------------------------------------------------ #

    def fail_lost(self, session: Session, worker: WorkerTable) -> bool:
        """Finish the execution bound to *worker* as a failure and release it."""
        lost = False
        if worker.execution_id is not None:
            execution = session.get(ExecutionTable, worker.execution_id)
            if execution is not None and execution.finished_at is None:
                execution.output = (execution.output or "") + LOST_WORKER_MESSAGE
                execution.exit_status = None
                execution.finished_at = utc_now()
                lost = True
                logger.warning(
                    "execution_lost",
                    execution_id=execution.id,
                    job_instance_id=execution.job_instance_id,
                    worker=f"{worker.hostname}:{worker.worker_id}",
                )
        worker.working = False
        worker.execution_id = None
        session.flush()
        return lost

    def reap_stale(self, session: Session, timeout: float, now=None) -> int:
        """Fail executions held by workers silent for more than *timeout* seconds."""
        cutoff = (now or utc_now()) - timedelta(seconds=timeout)
        stale = session.scalars(
            select(WorkerTable).where(
                WorkerTable.working.is_(True),
                or_(WorkerTable.heartbeat_at.is_(None), WorkerTable.heartbeat_at < cutoff),
            )
        ).all()
        return sum(1 for worker in stale if self.fail_lost(session, worker))


__all__ = ["DispatchQueue", "TRUNCATION_MARKER"]
