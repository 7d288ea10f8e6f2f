"""
Shared pytest fixtures for shiftwork tests.

This module provides:
- A file-backed SQLite store per test (WAL, like a real deployment)
- ``Scheduler``: a harness that triggers instances, ticks the processor and
  plays the role of workers without spawning processes

Usage::

    def test_something(scheduler):
        definition_id = scheduler.define("- echo a\\n- echo b")
        instance_id = scheduler.trigger(definition_id)
        scheduler.drive(instance_id)
        assert scheduler.state(instance_id) == "finished"
"""

from __future__ import annotations

from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from shiftwork.core.orm.session import (
    ShiftworkSession,
    create_shiftwork_engine,
    init_db,
    session_scope,
    shiftwork_session_factory,
)
from shiftwork.core.orm.tables import (
    ExecutionHistoryTable,
    ExecutionTable,
    JobInstanceTable,
    ProcessSignalTable,
    TokenTable,
)
from shiftwork.core.settings import ShiftworkSettings
from shiftwork.definitions import DefinitionService
from shiftwork.engine.archive import HistoryArchiver
from shiftwork.engine.dispatch import DispatchQueue
from shiftwork.engine.lifecycle import LifecycleController
from shiftwork.engine.processor import Processor
from shiftwork.engine.signals import SignalRelay
from shiftwork.engine.tokens import TokenTreeExecutor
from shiftwork.worker.registry import WorkerRegistry

TEST_HOST = "test-host"

# (exit_status, output) or (exit_status, output, term_signal) per shell text
Outcome = Callable[[str], tuple]


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(__file__).parent)
        if "integration" in str(test_path):
            item.add_marker(pytest.mark.integration)
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Store fixtures
# =============================================================================


@pytest.fixture()
def settings(tmp_path: Path) -> ShiftworkSettings:
    return ShiftworkSettings(
        database_url=f"sqlite:///{tmp_path / 'shiftwork.db'}",
        poll_interval=0.05,
        heartbeat_timeout=60.0,
        cancel_timeout=300.0,
        output_flush_interval=0.05,
        memory_sample_interval=3600.0,
        archive_after=0,
    )


@pytest.fixture()
def engine(settings: ShiftworkSettings):
    engine = create_shiftwork_engine(settings.database_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def factory(engine) -> sessionmaker[ShiftworkSession]:
    return shiftwork_session_factory(engine)


@pytest.fixture()
def session(factory) -> Generator[ShiftworkSession, None, None]:
    """A session for direct table assertions; rolled back after the test."""
    session = factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture()
def scheduler(factory, settings) -> Scheduler:
    return Scheduler(factory, settings)


# =============================================================================
# Harness
# =============================================================================


def succeed(shell: str) -> tuple:
    return 0, ""


class Scheduler:
    """Drives definitions, instances and fake workers against one store.

    Every method runs in its own unit of work, the way separate processes
    would; returned rows are detached snapshots.
    """

    def __init__(self, factory: sessionmaker[ShiftworkSession], settings: ShiftworkSettings):
        self.factory = factory
        self.settings = settings
        self.dispatch = DispatchQueue(max_output_bytes=settings.max_output_bytes)
        self.relay = SignalRelay(TEST_HOST)
        self.executor = TokenTreeExecutor(
            self.dispatch,
            self.relay,
            HistoryArchiver(),
            cancel_timeout=settings.cancel_timeout,
        )
        self.notified: list[tuple[str, int, str]] = []
        self.lifecycle = LifecycleController(self.executor, notifiers=[self])
        self.definitions = DefinitionService()
        self.registry = WorkerRegistry(
            heartbeat_timeout=settings.heartbeat_timeout, dispatch=self.dispatch
        )
        self.processor = Processor(factory, settings=settings, lifecycle=self.lifecycle)
        self._workers: dict[tuple[str, int], int] = {}

    # ── Notifier protocol ────────────────────────────────────────────

    def notify(self, event, instance, definition, message) -> None:
        self.notified.append((event.value, instance.id, message))

    # ── Definitions and instances ────────────────────────────────────

    def define(self, script: str, *, name: str = "job", **fields: Any) -> int:
        with session_scope(self.factory) as session:
            return self.definitions.create(session, name=name, script=script, **fields).id

    def trigger(self, definition_id: int, context: dict[str, Any] | None = None) -> int:
        with session_scope(self.factory) as session:
            return self.lifecycle.trigger(session, definition_id, context=context).id

    def instance(self, instance_id: int) -> JobInstanceTable:
        with session_scope(self.factory) as session:
            return session.get(JobInstanceTable, instance_id)

    def state(self, instance_id: int) -> str:
        return LifecycleController.state(self.instance(instance_id)).value

    def operate(self, operation: str, instance_id: int) -> None:
        """Run ``cancel`` / ``retry`` / ``skip`` on an instance."""
        with session_scope(self.factory) as session:
            getattr(self.lifecycle, operation)(session, self.lifecycle.get(session, instance_id))

    def tick(self, instance_id: int) -> bool:
        return self.processor.process_instance(instance_id)

    # ── Rows ─────────────────────────────────────────────────────────

    def tokens(self, instance_id: int) -> dict[str, TokenTable]:
        with session_scope(self.factory) as session:
            rows = session.scalars(
                select(TokenTable)
                .where(TokenTable.job_instance_id == instance_id)
                .order_by(TokenTable.id)
            )
            return {token.path: token for token in rows}

    def statuses(self, instance_id: int) -> dict[str, str]:
        return {path: token.status for path, token in self.tokens(instance_id).items()}

    def executions(self, instance_id: int | None = None) -> list[ExecutionTable]:
        with session_scope(self.factory) as session:
            statement = select(ExecutionTable).order_by(ExecutionTable.id)
            if instance_id is not None:
                statement = statement.where(ExecutionTable.job_instance_id == instance_id)
            return list(session.scalars(statement))

    def history(self, instance_id: int) -> list[ExecutionHistoryTable]:
        with session_scope(self.factory) as session:
            return list(
                session.scalars(
                    select(ExecutionHistoryTable)
                    .where(ExecutionHistoryTable.job_instance_id == instance_id)
                    .order_by(ExecutionHistoryTable.id)
                )
            )

    def signals(self) -> list[ProcessSignalTable]:
        with session_scope(self.factory) as session:
            return list(session.scalars(select(ProcessSignalTable).order_by(ProcessSignalTable.id)))

    # ── Fake workers ─────────────────────────────────────────────────

    def worker(self, worker_id: int = 1, queue: str = "@default", **kwargs: Any) -> int:
        """Register ``TEST_HOST:worker_id`` once and return its row id."""
        key = (queue, worker_id)
        if key not in self._workers:
            with session_scope(self.factory) as session:
                row = self.registry.register(session, TEST_HOST, worker_id, queue, **kwargs)
                self._workers[key] = row.id
        return self._workers[key]

    def claim(self, worker_pk: int, *, pid: int | None = None) -> ExecutionTable | None:
        with session_scope(self.factory) as session:
            worker = self.registry.get(session, worker_pk)
            execution = self.dispatch.claim(session, worker)
            if execution is not None and pid is not None:
                self.dispatch.record_pid(session, execution.id, pid)
                session.refresh(execution)
            return execution

    def finish(
        self,
        execution_id: int,
        exit_status: int | None = 0,
        output: str = "",
        term_signal: int | None = None,
    ) -> bool:
        with session_scope(self.factory) as session:
            execution = session.get(ExecutionTable, execution_id)
            return self.dispatch.complete(session, execution, exit_status, term_signal, output)

    def drive(
        self,
        instance_id: int,
        outcome: Outcome = succeed,
        *,
        queue: str = "@default",
        max_rounds: int = 200,
    ) -> list[str]:
        """Tick and play one worker until the instance is terminal.

        Returns the shell texts executed, in order.
        """
        worker_pk = self.worker(queue=queue)
        ran: list[str] = []
        for _ in range(max_rounds):
            self.tick(instance_id)
            if self.instance(instance_id).terminal:
                return ran
            execution = self.claim(worker_pk, pid=4242)
            if execution is None:
                continue
            ran.append(execution.shell)
            result = outcome(execution.shell)
            self.finish(execution.id, *result)
        raise AssertionError(f"instance {instance_id} did not settle: {self.statuses(instance_id)}")
