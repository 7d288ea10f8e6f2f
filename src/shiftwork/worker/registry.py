"""Worker registry: the ``workers`` table.

A worker is identified by ``(hostname, worker_id)``.  Re-registering an
identity whose row is still bound to an execution is refused while the row
heartbeats; once the heartbeat is stale the previous process is considered
dead and its execution is failed first.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from shiftwork.core.errors import NotFoundError, WorkerRegistrationError
from shiftwork.core.logging import get_logger
from shiftwork.core.orm.tables import WorkerTable
from shiftwork.core.settings import DEFAULT_QUEUE
from shiftwork.core.timestamps import seconds_since, utc_now
from shiftwork.engine.dispatch import DispatchQueue

logger = get_logger(__name__)


class WorkerRegistry:
    def __init__(
        self, *, heartbeat_timeout: float = 120.0, dispatch: DispatchQueue | None = None
    ):
        self.heartbeat_timeout = heartbeat_timeout
        self._dispatch = dispatch or DispatchQueue()

    def find(self, session: Session, hostname: str, worker_id: int) -> WorkerTable | None:
        return session.scalar(
            select(WorkerTable).where(
                WorkerTable.hostname == hostname, WorkerTable.worker_id == worker_id
            )
        )

    def get(self, session: Session, pk: int) -> WorkerTable:
        worker = session.get(WorkerTable, pk)
        if worker is None:
            raise NotFoundError("worker", pk)
        return worker

    def list(
        self, session: Session, *, hostname: str | None = None, queue: str | None = None
    ) -> list[WorkerTable]:
        statement = select(WorkerTable).order_by(WorkerTable.hostname, WorkerTable.worker_id)
        if hostname:
            statement = statement.where(WorkerTable.hostname == hostname)
        if queue:
            statement = statement.where(WorkerTable.queue == queue)
        return list(session.scalars(statement))

    def register(
        self,
        session: Session,
        hostname: str,
        worker_id: int,
        queue: str = DEFAULT_QUEUE,
        *,
        suspendable: bool = False,
    ) -> WorkerTable:
        """Create or take over the row of ``(hostname, worker_id)``.

        Raises:
            WorkerRegistrationError: If a live process already holds the
                identity.
        """
        worker = self.find(session, hostname, worker_id)
        now = utc_now()
        if worker is None:
            worker = WorkerTable(
                hostname=hostname,
                worker_id=worker_id,
                queue=queue,
                working=False,
                suspendable=suspendable,
                suspended=False,
                heartbeat_at=now,
            )
            session.add(worker)
            try:
                session.flush()
            except IntegrityError as exc:
                raise WorkerRegistrationError(
                    f"worker {hostname}:{worker_id} registered concurrently", cause=exc
                ) from exc
        else:
            if worker.working:
                silence = seconds_since(worker.heartbeat_at, now)
                if silence is not None and silence < self.heartbeat_timeout:
                    raise WorkerRegistrationError(
                        f"worker {hostname}:{worker_id} is running execution "
                        f"{worker.execution_id}"
                    ).with_context(execution_id=worker.execution_id)
                self._dispatch.fail_lost(session, worker)
            worker.queue = queue
            worker.suspendable = suspendable
            worker.heartbeat_at = now
            session.flush()

        logger.info(
            "worker_registered",
            worker=f"{hostname}:{worker_id}",
            queue=queue,
            suspendable=suspendable,
        )
        return worker

    def deregister(self, session: Session, worker: WorkerTable) -> None:
        """Remove an idle worker row.

        Raises:
            WorkerRegistrationError: If the worker is still bound to an execution.
        """
        if worker.working:
            raise WorkerRegistrationError(
                f"worker {worker.hostname}:{worker.worker_id} is still working"
            ).with_context(execution_id=worker.execution_id)
        session.delete(worker)
        session.flush()
        logger.info("worker_deregistered", worker=f"{worker.hostname}:{worker.worker_id}")

    def heartbeat(self, session: Session, worker: WorkerTable) -> None:
        worker.heartbeat_at = utc_now()
        session.flush()

    def suspend(self, session: Session, worker: WorkerTable) -> WorkerTable:
        """Stop *worker* from claiming; only ``suspendable`` workers allow it."""
        if not worker.suspendable:
            raise WorkerRegistrationError(
                f"worker {worker.hostname}:{worker.worker_id} is not suspendable"
            )
        worker.suspended = True
        session.flush()
        logger.info("worker_suspended", worker=f"{worker.hostname}:{worker.worker_id}")
        return worker

    def resume(self, session: Session, worker: WorkerTable) -> WorkerTable:
        worker.suspended = False
        session.flush()
        logger.info("worker_resumed", worker=f"{worker.hostname}:{worker.worker_id}")
        return worker

    def release(self, session: Session, worker: WorkerTable) -> None:
        worker.working = False
        worker.execution_id = None
        session.flush()


__all__ = ["WorkerRegistry"]
