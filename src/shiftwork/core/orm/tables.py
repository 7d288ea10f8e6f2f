"""Scheduler table definitions: definitions, instances, tokens, executions, workers.

The token tree is stored as an arena: every ``TokenTable`` row points at its
parent by id and carries a materialized ``path`` (``/``, ``/0``, ``/0/2``)
that is unique within its job instance.

Tags:
    orm, sqlalchemy, tables, data-model
"""

from __future__ import annotations

import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from shiftwork.core.orm.base import ShiftworkBase, TimestampMixin
from shiftwork.core.settings import DEFAULT_QUEUE
from shiftwork.core.timestamps import utc_now

SIGTERM = 15


# =========================================================================
# Definitions
# =========================================================================


class JobDefinitionTable(TimestampMixin, ShiftworkBase):
    __tablename__ = "job_definitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    script: Mapped[str] = mapped_column(Text, nullable=False)
    suspended: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    prevent_multi: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    prevent_multi_on_error: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    notify_cancellation: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    slack_channel: Mapped[str] = mapped_column(Text, default="", nullable=False)
    webhook_url: Mapped[str | None] = mapped_column(Text)
    api_allowed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # --- relationships ---
    revisions: Mapped[list[ScriptRevisionTable]] = relationship(
        "ScriptRevisionTable",
        back_populates="job_definition",
        cascade="all, delete-orphan",
        order_by="ScriptRevisionTable.id",
    )
    memory_expectancy: Mapped[MemoryExpectancyTable | None] = relationship(
        "MemoryExpectancyTable",
        back_populates="job_definition",
        cascade="all, delete-orphan",
        uselist=False,
    )


class ScriptRevisionTable(TimestampMixin, ShiftworkBase):
    __tablename__ = "script_revisions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_definition_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("job_definitions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    script: Mapped[str] = mapped_column(Text, nullable=False)
    user_id: Mapped[int | None] = mapped_column(Integer, index=True)
    changed_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, nullable=False, default=utc_now
    )

    job_definition: Mapped[JobDefinitionTable] = relationship(
        "JobDefinitionTable", back_populates="revisions"
    )


class MemoryExpectancyTable(TimestampMixin, ShiftworkBase):
    __tablename__ = "memory_expectancies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    expected_value: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    job_definition_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("job_definitions.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    job_definition: Mapped[JobDefinitionTable] = relationship(
        "JobDefinitionTable", back_populates="memory_expectancy"
    )


# =========================================================================
# Runtime
# =========================================================================


class JobInstanceTable(TimestampMixin, ShiftworkBase):
    __tablename__ = "job_instances"
    __table_args__ = (
        Index("job_instance_idx", "finished_at", "canceled_at", "job_definition_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_definition_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("job_definitions.id"), nullable=False, index=True
    )
    job_definition_version: Mapped[int] = mapped_column(Integer, nullable=False)
    script: Mapped[str] = mapped_column(Text, nullable=False)
    context: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    started_at: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    finished_at: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    canceled_at: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    error_at: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    retrying: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # --- relationships ---
    job_definition: Mapped[JobDefinitionTable] = relationship("JobDefinitionTable")
    tokens: Mapped[list[TokenTable]] = relationship(
        "TokenTable",
        back_populates="job_instance",
        cascade="all, delete-orphan",
        order_by="TokenTable.id",
    )

    @property
    def terminal(self) -> bool:
        return any((self.finished_at, self.canceled_at, self.error_at))


class TokenTable(TimestampMixin, ShiftworkBase):
    __tablename__ = "tokens"
    __table_args__ = (
        UniqueConstraint("job_instance_id", "path", name="tokens_instance_path_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uuid: Mapped[str] = mapped_column(Text, nullable=False)
    job_definition_id: Mapped[int] = mapped_column(Integer, nullable=False)
    job_definition_version: Mapped[int] = mapped_column(Integer, nullable=False)
    job_instance_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("job_instances.id", ondelete="CASCADE"), nullable=False
    )
    parent_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("tokens.id", ondelete="CASCADE"), index=True
    )
    script: Mapped[dict] = mapped_column(JSON, nullable=False)
    path: Mapped[str] = mapped_column(Text, default="/", nullable=False)
    status: Mapped[str] = mapped_column(Text, default="pending", nullable=False, index=True)
    message: Mapped[str] = mapped_column(Text, default="", nullable=False)
    context: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    # variables written by this subtree, merged into the parent on success
    exports: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # --- relationships ---
    job_instance: Mapped[JobInstanceTable] = relationship(
        "JobInstanceTable", back_populates="tokens"
    )


class ExecutionTable(TimestampMixin, ShiftworkBase):
    __tablename__ = "executions"
    __table_args__ = (
        UniqueConstraint(
            "job_definition_id", "token_id", name="executions_definition_token_key"
        ),
        Index("executions_queue_claim_idx", "queue", "worker_id", "id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uuid: Mapped[str] = mapped_column(Text, nullable=False)
    job_definition_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("job_definitions.id"), nullable=False
    )
    job_definition_version: Mapped[int] = mapped_column(Integer, nullable=False)
    job_instance_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("job_instances.id"), nullable=False
    )
    token_id: Mapped[int] = mapped_column(Integer, ForeignKey("tokens.id"), nullable=False)
    queue: Mapped[str] = mapped_column(Text, default=DEFAULT_QUEUE, nullable=False)
    shell: Mapped[str] = mapped_column(Text, nullable=False)
    context: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    pid: Mapped[int | None] = mapped_column(Integer)
    output: Mapped[str] = mapped_column(Text, default="", nullable=False)
    exit_status: Mapped[int | None] = mapped_column(Integer)
    term_signal: Mapped[int | None] = mapped_column(Integer)
    started_at: Mapped[datetime.datetime | None] = mapped_column(DateTime, index=True)
    finished_at: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    mailed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    hostname: Mapped[str | None] = mapped_column(Text)
    worker_id: Mapped[int | None] = mapped_column(Integer)

    # --- relationships ---
    token: Mapped[TokenTable] = relationship("TokenTable")
    job_instance: Mapped[JobInstanceTable] = relationship("JobInstanceTable")

    @property
    def claimed(self) -> bool:
        return self.worker_id is not None

    @property
    def succeeded(self) -> bool:
        return (
            self.finished_at is not None
            and self.exit_status == 0
            and self.term_signal is None
        )


class WorkerTable(TimestampMixin, ShiftworkBase):
    __tablename__ = "workers"
    __table_args__ = (UniqueConstraint("hostname", "worker_id", name="workers_identity_key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    hostname: Mapped[str] = mapped_column(Text, nullable=False)
    worker_id: Mapped[int] = mapped_column(Integer, nullable=False)
    queue: Mapped[str] = mapped_column(Text, default=DEFAULT_QUEUE, nullable=False)
    working: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    execution_id: Mapped[int | None] = mapped_column(Integer)
    suspendable: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    suspended: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    heartbeat_at: Mapped[datetime.datetime | None] = mapped_column(DateTime)


class ProcessSignalTable(TimestampMixin, ShiftworkBase):
    __tablename__ = "process_signals"
    __table_args__ = (Index("hostname_started_at", "hostname", "started_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    hostname: Mapped[str] = mapped_column(Text, default="", nullable=False)
    pid: Mapped[int] = mapped_column(Integer, nullable=False)
    number: Mapped[int] = mapped_column(Integer, default=SIGTERM, nullable=False)
    started_at: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    message: Mapped[str | None] = mapped_column(Text)
    execution_id: Mapped[int | None] = mapped_column(Integer, index=True)


class MemoryConsumptionLogTable(TimestampMixin, ShiftworkBase):
    __tablename__ = "memory_consumption_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_instance_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    value: Mapped[int] = mapped_column(Integer, nullable=False)


class InstanceLogTable(TimestampMixin, ShiftworkBase):
    __tablename__ = "logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_instance_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    level: Mapped[str] = mapped_column(Text, default="INFO", nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)


# =========================================================================
# History
# =========================================================================


class ExecutionHistoryTable(ShiftworkBase):
    __tablename__ = "execution_histories"
    __table_args__ = (Index("execution_histories_worker_started", "worker_id", "started_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uuid: Mapped[str] = mapped_column(Text, nullable=False)
    hostname: Mapped[str | None] = mapped_column(Text)
    worker_id: Mapped[int | None] = mapped_column(Integer)
    queue: Mapped[str] = mapped_column(Text, default=DEFAULT_QUEUE, nullable=False)
    job_definition_id: Mapped[int] = mapped_column(Integer, nullable=False)
    job_instance_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    token_path: Mapped[str] = mapped_column(Text, nullable=False)
    shell: Mapped[str] = mapped_column(Text, nullable=False)
    exit_status: Mapped[int | None] = mapped_column(Integer)
    term_signal: Mapped[int | None] = mapped_column(Integer)
    output: Mapped[str] = mapped_column(Text, default="", nullable=False)
    mailed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    started_at: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    finished_at: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    archived_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, nullable=False, default=utc_now
    )


__all__ = [
    "DEFAULT_QUEUE",
    "SIGTERM",
    "JobDefinitionTable",
    "ScriptRevisionTable",
    "MemoryExpectancyTable",
    "JobInstanceTable",
    "TokenTable",
    "ExecutionTable",
    "WorkerTable",
    "ProcessSignalTable",
    "MemoryConsumptionLogTable",
    "InstanceLogTable",
    "ExecutionHistoryTable",
]
