"""Memory guard: samples resident memory of running commands.

Each sample is appended to ``memory_consumption_logs``.  When a sample
exceeds the threshold a single SIGTERM is requested through the signal
relay; the command then fails like any other command.

Threshold resolution, first non-zero wins:

1. the command's ``expected_memory`` hint
2. the definition's ``memory_expectancies.expected_value``
3. ``default_memory_expectancy`` from settings (0 disables the guard)

All values are KiB.
"""

from __future__ import annotations

import subprocess
from collections.abc import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from shiftwork.core.errors import ScriptError
from shiftwork.core.logging import get_logger
from shiftwork.core.orm.tables import (
    SIGTERM,
    ExecutionTable,
    MemoryConsumptionLogTable,
    MemoryExpectancyTable,
)
from shiftwork.engine.journal import write_instance_log
from shiftwork.engine.signals import SignalRelay
from shiftwork.script.steps import Command, step_from_dict

logger = get_logger(__name__)

Sampler = Callable[[int], "int | None"]


def ps_rss_sampler(pid: int) -> int | None:
    """Resident set size in KiB of the process group led by *pid*.

    Commands run in their own session, so the group holds the shell and
    everything it forked (``cmd; echo done`` runs ``cmd`` in a child).  Returns
    ``None`` once the group has exited.
    """
    try:
        completed = subprocess.run(
            ["ps", "-A", "-o", "pgid=,rss="],
            capture_output=True,
            text=True,
            check=False,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    total = None
    for line in completed.stdout.splitlines():
        fields = line.split()
        if len(fields) != 2 or not all(f.isdigit() for f in fields):
            continue
        if int(fields[0]) == pid:
            total = (total or 0) + int(fields[1])
    return total


class MemoryGuard:
    def __init__(
        self,
        relay: SignalRelay,
        *,
        sampler: Sampler = ps_rss_sampler,
        default_expectancy: int = 0,
    ):
        self._relay = relay
        self._sampler = sampler
        self.default_expectancy = default_expectancy

    def threshold(self, session: Session, execution: ExecutionTable) -> int:
        """KiB limit for *execution* (0 = unlimited)."""
        try:
            step = step_from_dict(execution.token.script)
        except ScriptError:
            step = None
        if isinstance(step, Command) and step.expected_memory:
            return step.expected_memory

        expected = session.scalar(
            select(MemoryExpectancyTable.expected_value).where(
                MemoryExpectancyTable.job_definition_id == execution.job_definition_id
            )
        )
        if expected:
            return expected
        return self.default_expectancy

    def sample(self, session: Session, execution: ExecutionTable) -> int | None:
        """Record one RSS sample and request termination on overrun."""
        if execution.pid is None or execution.finished_at is not None:
            return None
        value = self._sampler(execution.pid)
        if value is None:
            return None

        session.add(
            MemoryConsumptionLogTable(job_instance_id=execution.job_instance_id, value=value)
        )
        limit = self.threshold(session, execution)
        if limit and value > limit:
            message = f"memory {value} KiB exceeded expectancy {limit} KiB"
            if self._relay.request(session, execution, SIGTERM, message) is not None:
                write_instance_log(session, execution.job_instance_id, message, level="WARNING")
                logger.warning(
                    "memory_overrun",
                    execution_id=execution.id,
                    job_instance_id=execution.job_instance_id,
                    rss_kib=value,
                    limit_kib=limit,
                )
        session.flush()
        return value


__all__ = ["MemoryGuard", "ps_rss_sampler"]
