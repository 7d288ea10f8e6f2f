"""Signal relay: OS signals addressed by ``(hostname, pid)`` through the store.

The processor (cancellation) and the memory guard never touch processes
directly.  They insert a ``process_signals`` row; the worker agent on the
owning host consumes pending rows and signals the process group of the
command it started.

Rules:
    * At most one signal per ``(execution, number)``; repeated requests are
      no-ops.
    * A signal for a pid the delivering agent does not own is left for the
      owner, unless the execution has already finished (or is gone), in
      which case it is marked delivered without signalling anything.
    * ``ProcessLookupError`` (process exited in between) is not an error.
"""

from __future__ import annotations

import os
import socket
from collections.abc import Collection

from sqlalchemy import select
from sqlalchemy.orm import Session

from shiftwork.core.logging import get_logger
from shiftwork.core.orm.tables import SIGTERM, ExecutionTable, ProcessSignalTable
from shiftwork.core.timestamps import utc_now

logger = get_logger(__name__)


class SignalRelay:
    """Request and deliver process signals for one host."""

    def __init__(self, hostname: str | None = None):
        self.hostname = hostname or socket.gethostname()

    def request(
        self,
        session: Session,
        execution: ExecutionTable,
        number: int = SIGTERM,
        message: str = "",
    ) -> ProcessSignalTable | None:
        """Queue *number* for the process of *execution*.

        Returns ``None`` without writing when the pid is not known yet or
        the same signal was already requested for this execution.
        """
        if execution.pid is None or execution.hostname is None:
            return None
        existing = session.scalar(
            select(ProcessSignalTable.id)
            .where(
                ProcessSignalTable.execution_id == execution.id,
                ProcessSignalTable.number == number,
            )
            .limit(1)
        )
        if existing is not None:
            return None

        process_signal = ProcessSignalTable(
            hostname=execution.hostname,
            pid=execution.pid,
            number=number,
            message=message,
            execution_id=execution.id,
        )
        session.add(process_signal)
        session.flush()
        logger.info(
            "signal_requested",
            execution_id=execution.id,
            hostname=execution.hostname,
            pid=execution.pid,
            number=number,
            reason=message,
        )
        return process_signal

    def pending(self, session: Session) -> list[ProcessSignalTable]:
        return list(
            session.scalars(
                select(ProcessSignalTable)
                .where(
                    ProcessSignalTable.hostname == self.hostname,
                    ProcessSignalTable.started_at.is_(None),
                )
                .order_by(ProcessSignalTable.id)
            )
        )

    def deliver_pending(self, session: Session, live_pids: Collection[int]) -> int:
        """Deliver this host's pending signals; returns how many were sent.

        *live_pids* are the process group leaders started by the calling
        agent that have not been reaped yet.
        """
        sent = 0
        for process_signal in self.pending(session):
            if process_signal.pid in live_pids:
                try:
                    os.killpg(process_signal.pid, process_signal.number)
                except ProcessLookupError:
                    note = "process already exited"
                else:
                    note = None
                    sent += 1
            elif self._orphaned(session, process_signal):
                note = "process no longer running"
            else:
                continue  # owned by another agent on this host

            process_signal.started_at = utc_now()
            if note is not None:
                process_signal.message = f"{process_signal.message or ''} ({note})".strip()
            logger.info(
                "signal_delivered" if note is None else "signal_skipped",
                pid=process_signal.pid,
                number=process_signal.number,
                execution_id=process_signal.execution_id,
            )
        session.flush()
        return sent

    @staticmethod
    def _orphaned(session: Session, process_signal: ProcessSignalTable) -> bool:
        if process_signal.execution_id is None:
            return True
        finished = session.execute(
            select(ExecutionTable.finished_at).where(
                ExecutionTable.id == process_signal.execution_id
            )
        ).one_or_none()
        return finished is None or finished[0] is not None


__all__ = ["SignalRelay"]
