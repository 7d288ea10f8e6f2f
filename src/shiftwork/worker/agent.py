"""Worker agent: claims executions from one queue and runs them as shell commands.

Usage (programmatic)::

    from shiftwork.worker.agent import WorkerAgent

    agent = WorkerAgent(session_factory, worker_id=1, queue="@default")
    agent.start()  # blocking; runs until SIGINT/SIGTERM

Usage (CLI)::

    shiftwork worker start --worker-id 1 --queue @default

One agent runs one command at a time:

1. heartbeat + deliver pending signals for this host
2. claim (skipped while the worker is suspended)
3. ``/bin/sh -c <shell>`` in a new session (process group = pid), context
   variables exported as environment variables
4. while waiting: flush output every ``output_flush_interval``, heartbeat,
   deliver signals, sample memory every ``memory_sample_interval``
5. report exit status or terminating signal
"""

from __future__ import annotations

import json
import os
import signal
import socket
import subprocess
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import IO, Any

from sqlalchemy.orm import sessionmaker

from shiftwork.core.errors import WorkerRegistrationError, is_retryable
from shiftwork.core.logging import LogContext, bind_context, get_logger, unbind_context
from shiftwork.core.orm.session import ShiftworkSession, session_scope
from shiftwork.core.orm.tables import ExecutionTable, WorkerTable
from shiftwork.core.settings import ShiftworkSettings, get_settings
from shiftwork.core.timestamps import utc_now
from shiftwork.engine.dispatch import DispatchQueue
from shiftwork.engine.memory import MemoryGuard, Sampler, ps_rss_sampler
from shiftwork.engine.signals import SignalRelay
from shiftwork.worker.registry import WorkerRegistry

logger = get_logger(__name__)

EXECUTION_UUID_ENV = "SHIFTWORK_EXECUTION_UUID"
JOB_INSTANCE_ID_ENV = "SHIFTWORK_JOB_INSTANCE_ID"


@dataclass(frozen=True)
class ClaimedJob:
    """Detached copy of a claimed execution row."""

    id: int
    uuid: str
    job_instance_id: int
    shell: str
    context: dict[str, Any]


@dataclass
class AgentStats:
    executions_run: int = 0
    executions_failed: int = 0
    last_claim_at: datetime | None = None
    started_at: datetime = field(default_factory=utc_now)


class _OutputBuffer:
    """Collects combined stdout/stderr from a reader thread."""

    def __init__(self) -> None:
        self._chunks: list[str] = []
        self._lock = threading.Lock()

    def pump(self, stream: IO[str]) -> None:
        with stream:
            for line in stream:
                with self._lock:
                    self._chunks.append(line)

    def drain(self) -> str:
        with self._lock:
            text = "".join(self._chunks)
            self._chunks.clear()
        return text


def _env_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool) or value is None or isinstance(value, (list, dict)):
        return json.dumps(value)
    return str(value)


def build_environment(job: ClaimedJob, base: dict[str, str] | None = None) -> dict[str, str]:
    env = dict(os.environ if base is None else base)
    env.update({str(key): _env_value(value) for key, value in job.context.items()})
    env[EXECUTION_UUID_ENV] = job.uuid
    env[JOB_INSTANCE_ID_ENV] = str(job.job_instance_id)
    return env


class WorkerAgent:
    """Polls one queue of the shared store and runs claimed commands.

    Args:
        session_factory: Factory for sessions on the shared store.
        worker_id: Number distinguishing agents on one host.
        queue: Queue to claim from (default: ``settings.default_queue``).
        hostname: Host identity used for registration and signal routing.
        suspendable: Whether operators may suspend this worker.
        sampler: RSS sampler used by the memory guard.
    """

    def __init__(
        self,
        session_factory: sessionmaker[ShiftworkSession],
        *,
        worker_id: int = 0,
        queue: str | None = None,
        hostname: str | None = None,
        settings: ShiftworkSettings | None = None,
        suspendable: bool = False,
        sampler: Sampler | None = None,
        poll_interval: float | None = None,
    ):
        self._factory = session_factory
        self._settings = settings or get_settings()
        self.hostname = hostname or socket.gethostname()
        self.worker_id = worker_id
        self.queue = queue or self._settings.default_queue
        self.suspendable = suspendable
        self._poll_interval = poll_interval or self._settings.poll_interval

        self._dispatch = DispatchQueue(max_output_bytes=self._settings.max_output_bytes)
        self._relay = SignalRelay(self.hostname)
        self._memory = MemoryGuard(
            self._relay,
            sampler=sampler or ps_rss_sampler,
            default_expectancy=self._settings.default_memory_expectancy,
        )
        self._registry = WorkerRegistry(
            heartbeat_timeout=self._settings.heartbeat_timeout, dispatch=self._dispatch
        )

        self._shutdown = threading.Event()
        self._pk: int | None = None
        self._live_pids: set[int] = set()
        self.stats = AgentStats()

    @property
    def name(self) -> str:
        return f"{self.hostname}:{self.worker_id}"

    @property
    def pk(self) -> int | None:
        """Primary key of this agent's ``workers`` row once registered."""
        return self._pk

    # ------------------------------------------------------------------ #
    # Registration
    # ------------------------------------------------------------------ #

    def register(self) -> int:
        with session_scope(self._factory) as session:
            worker = self._registry.register(
                session,
                self.hostname,
                self.worker_id,
                self.queue,
                suspendable=self.suspendable,
            )
            self._pk = worker.id
        return self._pk

    def deregister(self) -> None:
        if self._pk is None:
            return
        with session_scope(self._factory) as session:
            worker = session.get(WorkerTable, self._pk)
            if worker is not None:
                self._registry.deregister(session, worker)
        self._pk = None

    def heartbeat(self) -> int:
        """Refresh the heartbeat and deliver pending signals; returns signals sent."""
        with session_scope(self._factory) as session:
            worker = self._registry.get(session, self._require_pk())
            self._registry.heartbeat(session, worker)
            return self._relay.deliver_pending(session, self._live_pids)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        """Register and poll until ``stop()`` or SIGINT/SIGTERM (blocking)."""
        self.register()
        bind_context(worker=self.name, queue=self.queue)
        logger.info("worker_starting", poll_interval=self._poll_interval)
        try:
            signal.signal(signal.SIGINT, self._handle_signal)
            signal.signal(signal.SIGTERM, self._handle_signal)
        except (ValueError, OSError):
            pass  # not in main thread

        try:
            while not self._shutdown.is_set():
                try:
                    worked = self.run_once()
                except Exception as exc:
                    if is_retryable(exc):
                        logger.warning("worker_poll_retrying", error=str(exc))
                    else:
                        logger.exception("worker_poll_failed")
                    worked = False
                if not worked:
                    self._shutdown.wait(self._poll_interval)
        finally:
            self._cleanup()
            unbind_context("worker", "queue")

    def start_background(self) -> threading.Thread:
        thread = threading.Thread(target=self.start, name=f"worker-{self.name}", daemon=True)
        thread.start()
        return thread

    def stop(self) -> None:
        """Request graceful shutdown after the current command."""
        logger.info("worker_stopping", worker=self.name)
        self._shutdown.set()

    def _handle_signal(self, signum, frame):
        logger.info("worker_signal", worker=self.name, signum=signum)
        self.stop()

    def _cleanup(self) -> None:
        try:
            self.deregister()
        except WorkerRegistrationError:
            logger.warning("worker_deregister_refused", worker=self.name)
        logger.info(
            "worker_stopped",
            worker=self.name,
            run=self.stats.executions_run,
            failed=self.stats.executions_failed,
        )

    # ------------------------------------------------------------------ #
    # Poll
    # ------------------------------------------------------------------ #

    def run_once(self) -> bool:
        """Claim and run at most one execution; returns whether one ran."""
        if self._pk is None:
            self.register()
        self.heartbeat()

        with session_scope(self._factory) as session:
            worker = self._registry.get(session, self._require_pk())
            if worker.suspended:
                return False
            execution = self._dispatch.claim(session, worker)
            if execution is None:
                return False
            job = ClaimedJob(
                id=execution.id,
                uuid=execution.uuid,
                job_instance_id=execution.job_instance_id,
                shell=execution.shell,
                context=dict(execution.context or {}),
            )

        self.stats.last_claim_at = utc_now()
        with LogContext(execution_id=job.id, job_instance_id=job.job_instance_id):
            self.execute(job)
        return True

    def execute(self, job: ClaimedJob) -> tuple[int | None, int | None]:
        """Run *job* to completion and report it; returns ``(exit_status, term_signal)``."""
        self.stats.executions_run += 1
        try:
            process = subprocess.Popen(
                [self._settings.shell, "-c", job.shell],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                env=build_environment(job),
                start_new_session=True,
                text=True,
                errors="replace",
            )
        except OSError as exc:
            logger.error("execution_spawn_failed", error=str(exc))
            self.stats.executions_failed += 1
            self._report(job, 127, None, f"failed to start {self._settings.shell}: {exc}\n")
            return 127, None

        self._live_pids.add(process.pid)
        with session_scope(self._factory) as session:
            self._dispatch.record_pid(session, job.id, process.pid)
        logger.info("execution_started", pid=process.pid, worker=self.name)

        buffer = _OutputBuffer()
        reader = threading.Thread(
            target=buffer.pump, args=(process.stdout,), name=f"output-{job.id}", daemon=True
        )
        reader.start()

        next_sample = time.monotonic() + self._settings.memory_sample_interval
        try:
            while True:
                try:
                    process.wait(timeout=self._settings.output_flush_interval)
                    break
                except subprocess.TimeoutExpired:
                    pass
                sample = time.monotonic() >= next_sample
                if sample:
                    next_sample = time.monotonic() + self._settings.memory_sample_interval
                self._tick(job, buffer, sample)
        finally:
            reader.join(timeout=5)
            self._live_pids.discard(process.pid)

        returncode = process.returncode
        if returncode < 0:
            exit_status, term_signal = None, -returncode
        else:
            exit_status, term_signal = returncode, None
        if exit_status != 0:
            self.stats.executions_failed += 1
        self._report(job, exit_status, term_signal, buffer.drain())
        return exit_status, term_signal

    def _tick(self, job: ClaimedJob, buffer: _OutputBuffer, sample: bool) -> None:
        try:
            with session_scope(self._factory) as session:
                self._dispatch.append_output(session, job.id, buffer.drain())
                worker = self._registry.get(session, self._require_pk())
                self._registry.heartbeat(session, worker)
                if sample:
                    execution = session.get(ExecutionTable, job.id)
                    if execution is not None:
                        self._memory.sample(session, execution)
                self._relay.deliver_pending(session, self._live_pids)
        except Exception:
            logger.exception("worker_tick_failed", worker=self.name)

    def _report(
        self, job: ClaimedJob, exit_status: int | None, term_signal: int | None, output: str
    ) -> None:
        with session_scope(self._factory) as session:
            execution = session.get(ExecutionTable, job.id)
            if execution is None:
                # archived after a cancel timeout
                self._registry.release(session, self._registry.get(session, self._require_pk()))
                return
            self._dispatch.complete(session, execution, exit_status, term_signal, output)

    def _require_pk(self) -> int:
        if self._pk is None:
            raise WorkerRegistrationError(f"worker {self.name} is not registered")
        return self._pk


__all__ = ["WorkerAgent", "ClaimedJob", "build_environment"]
