"""Token tree executor: drives one job instance through its step tree.

Every step that has been reached is mirrored by a ``tokens`` row.  Rows form
an arena: each points at its parent by id and carries a materialized path
(``/``, ``/0``, ``/0/2``).  ``advance()`` loads the arena of one instance and
applies every enabled transition until nothing changes.

ARCHITECTURE
────────────
::

    PENDING ──► RUNNING ──► SUCCESS | WARNING | FAILURE
       │           │
       │           └──► CANCELING ──► CANCELED
       └──────────────────────────► CANCELED

    leaf (Command)   PENDING: enqueue Execution → RUNNING
                     RUNNING: wait for the execution to finish, archive it,
                              resolve (bounded retry on failure)
    leaf (Assign)    PENDING: write variables → SUCCESS
    compound         PENDING → RUNNING, then expand children and fan in

Context contract:
    A child's context is a snapshot of its parent's at expansion time.
    Variables a subtree writes (``Assign``, ``Command.capture``) are kept in
    ``exports`` and merged into the parent when the child resolves SUCCESS or
    WARNING, so later siblings see them.

Invariants:
    * A compound token never becomes terminal while a child is non-terminal.
    * A finished execution is archived before its token resolves.
    * A step with ``continue_on_error`` that fails resolves WARNING.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from shiftwork.core.logging import get_logger
from shiftwork.core.orm.tables import (
    ExecutionTable,
    JobDefinitionTable,
    JobInstanceTable,
    TokenTable,
)
from shiftwork.core.timestamps import new_uuid, seconds_since
from shiftwork.engine.archive import HistoryArchiver
from shiftwork.engine.dispatch import DispatchQueue
from shiftwork.engine.journal import write_instance_log
from shiftwork.engine.signals import SignalRelay
from shiftwork.engine.status import TokenStatus, validate_token_transition
from shiftwork.script.spec import compile_script
from shiftwork.script.steps import (
    Assign,
    Branch,
    Command,
    JoinPolicy,
    Loop,
    Parallel,
    Sequence,
    Step,
    step_from_dict,
    step_to_dict,
)

logger = get_logger(__name__)

ROOT_PATH = "/"


def child_path(parent_path: str, index: int) -> str:
    """Path of the child at *index* below *parent_path*.

    >>> child_path("/", 0)
    '/0'
    >>> child_path("/0/2", 1)
    '/0/2/1'
    """
    return f"{parent_path.rstrip('/')}/{index}"


def path_index(path: str) -> int:
    """Child position encoded in the last path segment."""
    return int(path.rsplit("/", 1)[1])


def last_output_line(output: str) -> str:
    for line in reversed(output.splitlines()):
        if line.strip():
            return line.strip()
    return ""


def describe_failure(execution: ExecutionTable) -> str:
    if execution.term_signal is not None:
        return f"terminated by signal {execution.term_signal}"
    if execution.exit_status is None:
        return "worker lost"
    return f"exit status {execution.exit_status}"


class _Arena:
    """In-memory view of one instance's tokens, kept current while advancing."""

    def __init__(self, tokens: Iterable[TokenTable]):
        self.root: TokenTable | None = None
        self._children: dict[int, list[TokenTable]] = defaultdict(list)
        self._steps: dict[int, Step] = {}
        for token in tokens:
            self.add(token)

    def add(self, token: TokenTable) -> None:
        if token.parent_id is None:
            self.root = token
        else:
            siblings = self._children[token.parent_id]
            siblings.append(token)
            siblings.sort(key=lambda t: path_index(t.path))

    def children(self, token: TokenTable) -> list[TokenTable]:
        return self._children.get(token.id, [])

    def step(self, token: TokenTable) -> Step:
        step = self._steps.get(token.id)
        if step is None:
            step = self._steps[token.id] = step_from_dict(token.script)
        return step


class TokenTreeExecutor:
    """Create, expand, resolve and cancel the tokens of job instances.

    Args:
        dispatch: Queue that receives the executions of command tokens.
        relay: Used to request SIGTERM for claimed executions on cancel.
        archiver: Moves finished executions into history.
        cancel_timeout: Seconds a CANCELING leaf waits for its process to
            report before it is forced to CANCELED.
    """

    def __init__(
        self,
        dispatch: DispatchQueue | None = None,
        relay: SignalRelay | None = None,
        archiver: HistoryArchiver | None = None,
        *,
        cancel_timeout: float = 300.0,
    ):
        self.dispatch = dispatch or DispatchQueue()
        self.relay = relay or SignalRelay()
        self.archiver = archiver or HistoryArchiver()
        self.cancel_timeout = cancel_timeout

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def start(self, session: Session, instance: JobInstanceTable) -> TokenTable:
        """Create the root token of *instance* from its script."""
        root_step = compile_script(instance.script)
        root = TokenTable(
            uuid=new_uuid(),
            job_definition_id=instance.job_definition_id,
            job_definition_version=instance.job_definition_version,
            job_instance_id=instance.id,
            parent_id=None,
            script=step_to_dict(root_step),
            path=ROOT_PATH,
            status=TokenStatus.PENDING.value,
            message="",
            context=dict(instance.context or {}),
            exports={},
            attempts=0,
        )
        session.add(root)
        session.flush()
        logger.info("instance_started", job_instance_id=instance.id)
        return root

    def load(self, session: Session, instance: JobInstanceTable) -> list[TokenTable]:
        return list(
            session.scalars(
                select(TokenTable)
                .where(TokenTable.job_instance_id == instance.id)
                .order_by(TokenTable.id)
            )
        )

    def root(self, session: Session, instance: JobInstanceTable) -> TokenTable | None:
        return session.scalar(
            select(TokenTable).where(
                TokenTable.job_instance_id == instance.id, TokenTable.path == ROOT_PATH
            )
        )

    def advance(self, session: Session, instance: JobInstanceTable) -> bool:
        """Apply every enabled transition of *instance* until a fixed point.

        Returns whether any token changed.
        """
        arena = _Arena(self.load(session, instance))
        if arena.root is None:
            return False
        definition = session.get(JobDefinitionTable, instance.job_definition_id)
        suspended = bool(definition and definition.suspended)

        changed = False
        while self._visit(session, arena, arena.root, suspended):
            changed = True
        if changed:
            session.flush()
        return changed

    def cancel(self, session: Session, instance: JobInstanceTable) -> int:
        """Cancel every non-terminal token of *instance*; returns how many changed."""
        arena = _Arena(self.load(session, instance))
        if arena.root is None:
            return 0
        changed = self._cancel_subtree(session, arena, arena.root, "canceled by operator")
        session.flush()
        return changed

    def reset_failed(
        self, session: Session, instance: JobInstanceTable, *, skip: bool = False
    ) -> int:
        """Re-open the failed path of an errored instance.

        Walks from the failed root through failed children.  Tokens where a
        failure originated are reset (leaves to PENDING with ``attempts``
        cleared, compounds to RUNNING) or, with *skip*, marked SUCCESS.
        Failed ancestors go back to RUNNING so they fan in again.
        Returns the number of tokens changed.
        """
        arena = _Arena(self.load(session, instance))
        if arena.root is None or arena.root.status != TokenStatus.FAILURE.value:
            return 0
        changed = self._reset(arena, arena.root, skip)
        session.flush()
        return changed

    def _reset(self, arena: _Arena, token: TokenTable, skip: bool) -> int:
        failed = [c for c in arena.children(token) if c.status == TokenStatus.FAILURE.value]
        changed = sum(self._reset(arena, child, skip) for child in failed)

        if failed:
            self._transition(token, TokenStatus.RUNNING, "")
        elif skip:
            self._transition(token, TokenStatus.SUCCESS, "skipped by operator")
        elif arena.step(token).is_leaf:
            token.attempts = 0
            self._transition(token, TokenStatus.PENDING, "retried by operator")
        else:
            self._transition(token, TokenStatus.RUNNING, "retried by operator")
        return changed + 1

    # ------------------------------------------------------------------ #
    # Transitions
    # ------------------------------------------------------------------ #

    def _transition(
        self, token: TokenTable, target: TokenStatus, message: str | None = None
    ) -> None:
        validate_token_transition(token.status, target)
        token.status = target.value
        if message is not None:
            token.message = message

    def _resolve(
        self,
        session: Session,
        token: TokenTable,
        step: Step,
        status: TokenStatus,
        message: str = "",
    ) -> None:
        if status is TokenStatus.FAILURE and step.continue_on_error:
            status = TokenStatus.WARNING
            message = f"{message} (ignored)".strip()
        self._transition(token, status, message)
        logger.info(
            "token_resolved",
            job_instance_id=token.job_instance_id,
            path=token.path,
            status=status.value,
            reason=message,
        )
        if status is TokenStatus.FAILURE:
            write_instance_log(
                session, token.job_instance_id, f"{token.path} failed: {message}", "ERROR"
            )

    def _write(self, token: TokenTable, values: dict[str, Any]) -> None:
        # JSON columns do not track in-place mutation
        token.context = {**token.context, **values}
        token.exports = {**token.exports, **values}

    def _merge(self, parent: TokenTable, child: TokenTable) -> None:
        if child.exports:
            self._write(parent, dict(child.exports))

    def _expand(
        self, session: Session, arena: _Arena, parent: TokenTable, step: Step, index: int
    ) -> TokenTable:
        child = TokenTable(
            uuid=new_uuid(),
            job_definition_id=parent.job_definition_id,
            job_definition_version=parent.job_definition_version,
            job_instance_id=parent.job_instance_id,
            parent_id=parent.id,
            script=step_to_dict(step),
            path=child_path(parent.path, index),
            status=TokenStatus.PENDING.value,
            message="",
            context=dict(parent.context),
            exports={},
            attempts=0,
        )
        session.add(child)
        session.flush()
        arena.add(child)
        return child

    # ------------------------------------------------------------------ #
    # Tree walk
    # ------------------------------------------------------------------ #

    def _visit(
        self, session: Session, arena: _Arena, token: TokenTable, suspended: bool
    ) -> bool:
        status = TokenStatus(token.status)
        if status.terminal:
            return False

        step = arena.step(token)
        changed = False
        for child in list(arena.children(token)):
            changed |= self._visit(session, arena, child, suspended)

        if status is TokenStatus.CANCELING:
            return self._settle_cancel(session, arena, token, step) or changed

        if step.is_leaf:
            return self._visit_leaf(session, token, step, suspended) or changed

        if status is TokenStatus.PENDING:
            self._transition(token, TokenStatus.RUNNING)
            return True
        return self._fan_in(session, arena, token, step) or changed

    def _visit_leaf(
        self, session: Session, token: TokenTable, step: Step, suspended: bool
    ) -> bool:
        status = TokenStatus(token.status)

        if isinstance(step, Assign):
            if status is TokenStatus.PENDING:
                self._transition(token, TokenStatus.RUNNING)
            self._write(token, dict(step.values))
            self._resolve(session, token, step, TokenStatus.SUCCESS)
            return True

        if not isinstance(step, Command):
            raise TypeError(f"unexpected leaf step {type(step).__name__}")
        if status is TokenStatus.PENDING:
            if suspended:
                return False
            self.dispatch.enqueue(session, token, step, token.context)
            self._transition(token, TokenStatus.RUNNING)
            return True

        execution = self._execution_of(session, token)
        if execution is None:
            # withdrawn or purged underneath us; dispatch again
            self.dispatch.enqueue(session, token, step, token.context)
            return True
        if execution.finished_at is None:
            return False

        succeeded = execution.succeeded
        output = execution.output or ""
        reason = describe_failure(execution)
        self.archiver.archive_execution(session, execution)

        if succeeded:
            if step.capture:
                self._write(token, {step.capture: last_output_line(output)})
            self._resolve(session, token, step, TokenStatus.SUCCESS, "exit status 0")
        elif token.attempts < step.retries:
            token.attempts += 1
            self._transition(token, TokenStatus.FAILURE)
            self._transition(
                token,
                TokenStatus.PENDING,
                f"retry {token.attempts}/{step.retries} after {reason}",
            )
            write_instance_log(
                session,
                token.job_instance_id,
                f"{token.path} {reason}; retry {token.attempts}/{step.retries}",
                "WARNING",
            )
        else:
            self._resolve(session, token, step, TokenStatus.FAILURE, reason)
        return True

    def _execution_of(self, session: Session, token: TokenTable) -> ExecutionTable | None:
        return session.scalar(
            select(ExecutionTable).where(
                ExecutionTable.job_definition_id == token.job_definition_id,
                ExecutionTable.token_id == token.id,
            )
        )

    # ------------------------------------------------------------------ #
    # Fan-in
    # ------------------------------------------------------------------ #

    def _fan_in(self, session: Session, arena: _Arena, token: TokenTable, step: Step) -> bool:
        children = arena.children(token)
        match step:
            case Sequence():
                return self._fan_in_sequence(session, arena, token, step, children)
            case Parallel():
                return self._fan_in_parallel(session, arena, token, step, children)
            case Branch():
                return self._fan_in_branch(session, arena, token, step, children)
            case Loop():
                return self._fan_in_loop(session, arena, token, step, children)
        raise TypeError(f"unexpected compound step {type(step).__name__}")

    def _settled(
        self, session: Session, token: TokenTable, step: Step, child: TokenTable
    ) -> bool:
        """Propagate a failed or canceled *child*; returns True if *token* resolved."""
        status = TokenStatus(child.status)
        if status is TokenStatus.FAILURE:
            self._resolve(session, token, step, TokenStatus.FAILURE, f"{child.path} failed")
            return True
        if status is TokenStatus.CANCELED:
            self._resolve(session, token, step, TokenStatus.FAILURE, f"{child.path} was canceled")
            return True
        return False

    @staticmethod
    def _success_status(children: Iterable[TokenTable]) -> TokenStatus:
        if any(child.status == TokenStatus.WARNING.value for child in children):
            return TokenStatus.WARNING
        return TokenStatus.SUCCESS

    def _fan_in_sequence(self, session, arena, token, step: Sequence, children) -> bool:
        if not children:
            if not step.children:
                self._resolve(session, token, step, TokenStatus.SUCCESS)
            else:
                self._expand(session, arena, token, step.children[0], 0)
            return True

        last = children[-1]
        if not TokenStatus(last.status).terminal:
            return False
        if self._settled(session, token, step, last):
            return True

        self._merge(token, last)
        following = step.child(path_index(last.path) + 1)
        if following is None:
            self._resolve(session, token, step, self._success_status(children))
        else:
            self._expand(session, arena, token, following, path_index(last.path) + 1)
        return True

    def _fan_in_parallel(self, session, arena, token, step: Parallel, children) -> bool:
        if not children:
            if not step.children:
                self._resolve(session, token, step, TokenStatus.SUCCESS)
            for index, child_step in enumerate(step.children):
                self._expand(session, arena, token, child_step, index)
            return True

        terminal = all(TokenStatus(child.status).terminal for child in children)

        if step.join is JoinPolicy.ANY:
            winners = [c for c in children if TokenStatus(c.status).succeeded]
            if winners:
                if not terminal:
                    losers = [c for c in children if not TokenStatus(c.status).terminal]
                    canceled = sum(
                        self._cancel_subtree(session, arena, loser, f"{winners[0].path} won")
                        for loser in losers
                        if loser.status != TokenStatus.CANCELING.value
                    )
                    return canceled > 0
                self._merge(token, winners[0])
                self._resolve(
                    session,
                    token,
                    step,
                    TokenStatus(winners[0].status),
                    f"{winners[0].path} succeeded first",
                )
                return True
            if not terminal:
                return False
            self._resolve(session, token, step, TokenStatus.FAILURE, "no branch succeeded")
            return True

        if not terminal:
            return False
        for child in children:
            if self._settled(session, token, step, child):
                return True
        for child in children:
            self._merge(token, child)
        self._resolve(session, token, step, self._success_status(children))
        return True

    def _fan_in_branch(self, session, arena, token, step: Branch, children) -> bool:
        if not children:
            index = step.select(token.context)
            if index is None:
                self._resolve(session, token, step, TokenStatus.SUCCESS, "no case matched")
            else:
                self._expand(session, arena, token, step.child(index), index)
            return True

        chosen = children[0]
        if not TokenStatus(chosen.status).terminal:
            return False
        if self._settled(session, token, step, chosen):
            return True
        self._merge(token, chosen)
        self._resolve(session, token, step, TokenStatus(chosen.status))
        return True

    def _fan_in_loop(self, session, arena, token, step: Loop, children) -> bool:
        iteration = 0
        if children:
            last = children[-1]
            if not TokenStatus(last.status).terminal:
                return False
            if self._settled(session, token, step, last):
                return True
            self._merge(token, last)
            iteration = path_index(last.path) + 1

        token.context = {**token.context, step.counter: iteration}
        if not step.condition.evaluate(token.context):
            self._resolve(session, token, step, self._success_status(children))
        elif iteration >= step.max_iterations:
            self._resolve(
                session,
                token,
                step,
                TokenStatus.FAILURE,
                f"loop still running after {step.max_iterations} iterations",
            )
        else:
            self._expand(session, arena, token, step.body, iteration)
        return True

    # ------------------------------------------------------------------ #
    # Cancellation
    # ------------------------------------------------------------------ #

    def _cancel_subtree(
        self, session: Session, arena: _Arena, token: TokenTable, reason: str
    ) -> int:
        status = TokenStatus(token.status)
        if status.terminal or status is TokenStatus.CANCELING:
            return 0

        changed = 0
        for child in arena.children(token):
            changed += self._cancel_subtree(session, arena, child, reason)

        step = arena.step(token)
        if status is TokenStatus.PENDING:
            self._transition(token, TokenStatus.CANCELED, reason)
            return changed + 1

        if isinstance(step, Command):
            execution = self._execution_of(session, token)
            if execution is None:
                self._transition(token, TokenStatus.CANCELED, reason)
                return changed + 1
            if not execution.claimed and self.dispatch.withdraw(session, execution):
                self._transition(token, TokenStatus.CANCELED, reason)
                return changed + 1
            self._transition(token, TokenStatus.CANCELING, reason)
            if execution.finished_at is None:
                self.relay.request(session, execution, message=reason)
            return changed + 1

        if all(TokenStatus(child.status).terminal for child in arena.children(token)):
            self._transition(token, TokenStatus.CANCELED, reason)
        else:
            self._transition(token, TokenStatus.CANCELING, reason)
        return changed + 1

    def _settle_cancel(
        self, session: Session, arena: _Arena, token: TokenTable, step: Step
    ) -> bool:
        if not isinstance(step, Command):
            if all(TokenStatus(child.status).terminal for child in arena.children(token)):
                self._transition(token, TokenStatus.CANCELED)
                return True
            return False

        execution = self._execution_of(session, token)
        if execution is not None and execution.finished_at is None:
            waited = seconds_since(token.updated_at) or 0.0
            if waited < self.cancel_timeout:
                # the pid may only now be known
                self.relay.request(session, execution, message=token.message)
                return False
            self.dispatch.complete(session, execution, exit_status=None)
            write_instance_log(
                session,
                token.job_instance_id,
                f"{token.path} did not stop within {self.cancel_timeout:.0f}s",
                "WARNING",
            )
        if execution is not None:
            self.archiver.archive_execution(session, execution)
        self._transition(token, TokenStatus.CANCELED)
        logger.info(
            "token_canceled", job_instance_id=token.job_instance_id, path=token.path
        )
        return True


__all__ = [
    "ROOT_PATH",
    "TokenTreeExecutor",
    "child_path",
    "path_index",
]
