"""Instance-visible log lines (the ``logs`` table).

Operators read these next to a job instance; they complement, not replace,
the structured process log.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from shiftwork.core.orm.tables import InstanceLogTable


def write_instance_log(
    session: Session, job_instance_id: int, message: str, level: str = "INFO"
) -> InstanceLogTable:
    entry = InstanceLogTable(job_instance_id=job_instance_id, level=level, message=message)
    session.add(entry)
    return entry


def instance_logs(session: Session, job_instance_id: int) -> list[InstanceLogTable]:
    return list(
        session.scalars(
            select(InstanceLogTable)
            .where(InstanceLogTable.job_instance_id == job_instance_id)
            .order_by(InstanceLogTable.id)
        )
    )


__all__ = ["write_instance_log", "instance_logs"]
