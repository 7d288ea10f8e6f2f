"""Job instance lifecycle controller.

Owns the instance-level columns (``finished_at``, ``canceled_at``,
``error_at``, ``retrying``); the token tree executor owns the tokens.

::

    trigger ──► pending ──(admitted at first claim)──► working
                                                   │
        finished ◄── root SUCCESS | WARNING ───────┤
        error    ◄── root FAILURE ─────────────────┤──► retry / skip ──► working
        canceled ◄── cancel (any non-finished) ────┘

An instance has at most one of ``finished_at`` / ``canceled_at`` /
``error_at`` set.
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from shiftwork.core.errors import NotFoundError, StateError
from shiftwork.core.logging import get_logger
from shiftwork.core.orm.tables import (
    ExecutionHistoryTable,
    JobDefinitionTable,
    JobInstanceTable,
)
from shiftwork.core.timestamps import utc_now
from shiftwork.definitions import DefinitionService
from shiftwork.engine.journal import write_instance_log
from shiftwork.engine.notifications import InstanceEvent, LogNotifier, Notifier
from shiftwork.engine.status import TokenStatus
from shiftwork.engine.tokens import TokenTreeExecutor

logger = get_logger(__name__)


class InstanceState(str, Enum):
    PENDING = "pending"
    WORKING = "working"
    FINISHED = "finished"
    CANCELED = "canceled"
    ERROR = "error"


class LifecycleController:
    """Trigger, observe, cancel, retry and skip job instances."""

    def __init__(
        self,
        executor: TokenTreeExecutor | None = None,
        *,
        definitions: DefinitionService | None = None,
        notifiers: Iterable[Notifier] | None = None,
    ):
        self.executor = executor or TokenTreeExecutor()
        self.definitions = definitions or DefinitionService()
        self.notifiers: list[Notifier] = (
            list(notifiers) if notifiers is not None else [LogNotifier()]
        )

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def get(self, session: Session, instance_id: int) -> JobInstanceTable:
        instance = session.get(JobInstanceTable, instance_id)
        if instance is None:
            raise NotFoundError("job_instance", instance_id)
        return instance

    @staticmethod
    def state(instance: JobInstanceTable) -> InstanceState:
        if instance.canceled_at is not None:
            return InstanceState.CANCELED
        if instance.finished_at is not None:
            return InstanceState.FINISHED
        if instance.error_at is not None:
            return InstanceState.ERROR
        if instance.started_at is None:
            return InstanceState.PENDING
        return InstanceState.WORKING

    # ------------------------------------------------------------------ #
    # Commands
    # ------------------------------------------------------------------ #

    def trigger(
        self,
        session: Session,
        definition_id: int,
        *,
        version: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> JobInstanceTable:
        """Create an instance of *definition_id* and its root token.

        The instance copies the script of *version* (default: current), so
        later edits of the definition do not affect it.
        """
        definition = self.definitions.get(session, definition_id)
        script_version, script = self.definitions.script_for_version(
            session, definition, version
        )
        instance = JobInstanceTable(
            job_definition_id=definition.id,
            job_definition_version=script_version,
            script=script,
            context=dict(context or {}),
            retrying=False,
        )
        session.add(instance)
        session.flush()
        self.executor.start(session, instance)
        write_instance_log(
            session, instance.id, f"triggered {definition.name} (version {script_version})"
        )
        logger.info(
            "instance_triggered",
            job_definition_id=definition.id,
            job_instance_id=instance.id,
            version=script_version,
        )
        return instance

    def observe(self, session: Session, instance: JobInstanceTable) -> InstanceState | None:
        """Reflect a terminal root token onto the instance.

        Returns the new state when one was recorded, else ``None``.
        """
        if instance.terminal:
            return None
        root = self.executor.root(session, instance)
        if root is None:
            return None
        status = TokenStatus(root.status)
        now = utc_now()

        if status in (TokenStatus.SUCCESS, TokenStatus.WARNING):
            instance.finished_at = now
            instance.retrying = False
            event, state = InstanceEvent.FINISHED, InstanceState.FINISHED
        elif status is TokenStatus.FAILURE:
            instance.error_at = now
            instance.retrying = False
            event, state = InstanceEvent.FAILED, InstanceState.ERROR
        elif status is TokenStatus.CANCELED:
            instance.canceled_at = now
            event, state = InstanceEvent.CANCELED, InstanceState.CANCELED
        else:
            return None

        write_instance_log(
            session,
            instance.id,
            f"instance {state.value}: {root.message}".rstrip(": "),
            "ERROR" if state is InstanceState.ERROR else "INFO",
        )
        logger.info("instance_observed", job_instance_id=instance.id, state=state.value)
        self._notify(session, instance, event, root.message)
        session.flush()
        return state

    def cancel(self, session: Session, instance: JobInstanceTable) -> JobInstanceTable:
        """Cancel *instance*; running commands receive SIGTERM.

        Raises:
            StateError: If the instance already finished or was canceled.
        """
        if instance.finished_at is not None or instance.canceled_at is not None:
            raise StateError(
                f"job instance {instance.id} is already {self.state(instance).value}"
            ).with_context(job_instance_id=instance.id)

        instance.canceled_at = utc_now()
        instance.error_at = None
        instance.retrying = False
        changed = self.executor.cancel(session, instance)
        write_instance_log(session, instance.id, "canceled by operator", "WARNING")
        logger.info("instance_canceled", job_instance_id=instance.id, tokens=changed)

        definition = session.get(JobDefinitionTable, instance.job_definition_id)
        if definition is not None and definition.notify_cancellation:
            self._notify(session, instance, InstanceEvent.CANCELED, "canceled by operator")
        session.flush()
        return instance

    def retry(self, session: Session, instance: JobInstanceTable) -> JobInstanceTable:
        """Operator retry of an errored instance from its failed tokens.

        Raises:
            StateError: If the instance is not in the error state.
        """
        self._require_error(instance, "retry")
        self.executor.reset_failed(session, instance)
        instance.error_at = None
        instance.retrying = True
        write_instance_log(session, instance.id, "retried by operator")
        logger.info("instance_retried", job_instance_id=instance.id)
        session.flush()
        return instance

    def skip(self, session: Session, instance: JobInstanceTable) -> JobInstanceTable:
        """Mark the failed tokens of an errored instance as skipped and continue."""
        self._require_error(instance, "skip")
        self.executor.reset_failed(session, instance, skip=True)
        instance.error_at = None
        instance.retrying = False
        write_instance_log(session, instance.id, "failed steps skipped by operator")
        logger.info("instance_skipped", job_instance_id=instance.id)
        session.flush()
        return instance

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _require_error(self, instance: JobInstanceTable, operation: str) -> None:
        if self.state(instance) is not InstanceState.ERROR:
            raise StateError(
                f"cannot {operation} job instance {instance.id} in state "
                f"{self.state(instance).value}"
            ).with_context(job_instance_id=instance.id)

    def _notify(
        self,
        session: Session,
        instance: JobInstanceTable,
        event: InstanceEvent,
        message: str,
    ) -> None:
        definition = session.get(JobDefinitionTable, instance.job_definition_id)
        if definition is None:
            return
        delivered = False
        for notifier in self.notifiers:
            try:
                notifier.notify(event, instance, definition, message)
                delivered = True
            except Exception:
                logger.exception(
                    "notification_failed",
                    job_instance_id=instance.id,
                    notifier=type(notifier).__name__,
                )
        if delivered and event is InstanceEvent.FAILED:
            failing = session.scalar(
                select(ExecutionHistoryTable)
                .where(
                    ExecutionHistoryTable.job_instance_id == instance.id,
                    ExecutionHistoryTable.mailed_at.is_(None),
                    or_(
                        ExecutionHistoryTable.exit_status.is_(None),
                        ExecutionHistoryTable.exit_status != 0,
                        ExecutionHistoryTable.term_signal.is_not(None),
                    ),
                )
                .order_by(ExecutionHistoryTable.id.desc())
                .limit(1)
            )
            if failing is not None:
                failing.mailed_at = utc_now()


__all__ = ["InstanceState", "LifecycleController"]
