"""Processor loop: advances job instances, reaps lost workers, archives history.

Usage (programmatic)::

    from shiftwork.engine.processor import Processor

    processor = Processor(session_factory, settings=get_settings())
    processor.start()  # blocking; runs until SIGINT/SIGTERM

Usage (CLI)::

    shiftwork processor start --poll-interval 1

Each tick:
    1. ``reap_stale`` fails executions held by silent workers.
    2. Every active instance is locked (``FOR UPDATE SKIP LOCKED``),
       advanced to a fixed point and observed, one transaction per instance.
    3. Terminal instances older than ``archive_after`` are purged.

Several processors may run against one store; the row lock keeps them off
each other's instances.
"""

from __future__ import annotations

import signal
import threading
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.orm import sessionmaker

from shiftwork.core.errors import is_retryable
from shiftwork.core.logging import LogContext, get_logger
from shiftwork.core.orm.session import ShiftworkSession, session_scope
from shiftwork.core.orm.tables import JobInstanceTable, TokenTable
from shiftwork.core.settings import ShiftworkSettings, get_settings
from shiftwork.core.timestamps import utc_now
from shiftwork.engine.archive import HistoryArchiver
from shiftwork.engine.dispatch import DispatchQueue
from shiftwork.engine.lifecycle import LifecycleController
from shiftwork.engine.signals import SignalRelay
from shiftwork.engine.status import TokenStatus
from shiftwork.engine.tokens import TokenTreeExecutor

logger = get_logger(__name__)


@dataclass
class ProcessorStats:
    ticks: int = 0
    instances_advanced: int = 0
    instances_completed: int = 0
    executions_reaped: int = 0
    instances_purged: int = 0
    errors: int = 0
    last_tick_at: datetime | None = None
    started_at: datetime = field(default_factory=utc_now)


def build_lifecycle(settings: ShiftworkSettings) -> LifecycleController:
    """Wire executor, dispatch queue, relay and archiver from *settings*."""
    executor = TokenTreeExecutor(
        DispatchQueue(max_output_bytes=settings.max_output_bytes),
        SignalRelay(),
        HistoryArchiver(),
        cancel_timeout=settings.cancel_timeout,
    )
    return LifecycleController(executor)


class Processor:
    """Single-threaded control loop over the shared store."""

    def __init__(
        self,
        session_factory: sessionmaker[ShiftworkSession],
        *,
        settings: ShiftworkSettings | None = None,
        lifecycle: LifecycleController | None = None,
        poll_interval: float | None = None,
        batch_size: int = 100,
    ):
        self._factory = session_factory
        self._settings = settings or get_settings()
        self.lifecycle = lifecycle or build_lifecycle(self._settings)
        self._poll_interval = poll_interval or self._settings.poll_interval
        self._batch_size = batch_size
        self._shutdown = threading.Event()
        self.stats = ProcessorStats()

    @property
    def executor(self) -> TokenTreeExecutor:
        return self.lifecycle.executor

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        """Run ticks until ``stop()`` or SIGINT/SIGTERM (blocking)."""
        logger.info("processor_starting", poll_interval=self._poll_interval)
        try:
            signal.signal(signal.SIGINT, self._handle_signal)
            signal.signal(signal.SIGTERM, self._handle_signal)
        except (ValueError, OSError):
            pass  # not in main thread

        try:
            while not self._shutdown.is_set():
                try:
                    self.run_once()
                except Exception as exc:
                    self.stats.errors += 1
                    if is_retryable(exc):
                        logger.warning("processor_tick_retrying", error=str(exc))
                    else:
                        logger.exception("processor_tick_failed")
                self._shutdown.wait(self._poll_interval)
        finally:
            logger.info(
                "processor_stopped",
                ticks=self.stats.ticks,
                completed=self.stats.instances_completed,
                errors=self.stats.errors,
            )

    def start_background(self) -> threading.Thread:
        thread = threading.Thread(target=self.start, name="shiftwork-processor", daemon=True)
        thread.start()
        return thread

    def stop(self) -> None:
        self._shutdown.set()

    def _handle_signal(self, signum, frame):
        logger.info("processor_signal", signum=signum)
        self.stop()

    # ------------------------------------------------------------------ #
    # Tick
    # ------------------------------------------------------------------ #

    def run_once(self) -> int:
        """One full tick; returns the number of instances that changed."""
        with session_scope(self._factory) as session:
            reaped = self.executor.dispatch.reap_stale(session, self._settings.heartbeat_timeout)
        self.stats.executions_reaped += reaped

        changed = 0
        for instance_id in self.active_instance_ids():
            try:
                if self.process_instance(instance_id):
                    changed += 1
            except Exception:
                self.stats.errors += 1
                logger.exception("instance_processing_failed", job_instance_id=instance_id)

        if self._settings.archive_after > 0:
            with session_scope(self._factory) as session:
                purged = self.executor.archiver.purge_terminal(
                    session, self._settings.archive_after
                )
            self.stats.instances_purged += purged

        self.stats.ticks += 1
        self.stats.instances_advanced += changed
        self.stats.last_tick_at = utc_now()
        return changed

    def active_instance_ids(self) -> list[int]:
        """Instances that are running, or canceled with tokens still settling.

        Pages through all of them by id so that instances held back by policy
        (a suspended definition, ``prevent_multi``) never starve newer ones.
        """
        settling = (
            select(TokenTable.id)
            .where(
                TokenTable.job_instance_id == JobInstanceTable.id,
                TokenTable.status.in_(TokenStatus.active_values()),
            )
            .exists()
        )
        ids: list[int] = []
        last_id = 0
        while True:
            with session_scope(self._factory) as session:
                page = list(
                    session.scalars(
                        select(JobInstanceTable.id)
                        .where(
                            JobInstanceTable.id > last_id,
                            JobInstanceTable.finished_at.is_(None),
                            JobInstanceTable.error_at.is_(None),
                            or_(JobInstanceTable.canceled_at.is_(None), settling),
                        )
                        .order_by(JobInstanceTable.id)
                        .limit(self._batch_size)
                    )
                )
            ids.extend(page)
            if len(page) < self._batch_size:
                return ids
            last_id = page[-1]

    def process_instance(self, instance_id: int) -> bool:
        """Advance and observe one instance under a row lock."""
        with LogContext(job_instance_id=instance_id), session_scope(self._factory) as session:
            instance = session.scalar(
                select(JobInstanceTable)
                .where(JobInstanceTable.id == instance_id)
                .with_for_update(skip_locked=True)
            )
            if instance is None:
                return False  # another processor holds it
            changed = self.executor.advance(session, instance)
            state = self.lifecycle.observe(session, instance)
            if state is not None:
                self.stats.instances_completed += 1
            return changed or state is not None


__all__ = ["Processor", "ProcessorStats", "build_lifecycle"]
