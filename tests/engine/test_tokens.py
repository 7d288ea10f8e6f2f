"""
Tests for the token tree executor.

Instances are driven through the processor with fake workers (see
``Scheduler`` in conftest); outcomes are decided per shell text.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar

import pytest
from sqlalchemy import select

from shiftwork.core.orm.session import session_scope
from shiftwork.core.orm.tables import TokenTable
from shiftwork.engine.tokens import child_path, last_output_line, path_index
from shiftwork.script.steps import Step, StepKind


def fail_on(*shells: str, status: int = 1):
    def outcome(shell: str) -> tuple:
        return (status, f"{shell} failed\n") if shell in shells else (0, f"{shell}\n")

    return outcome


# ── Paths ────────────────────────────────────────────────────────────────


class TestPaths:
    def test_child_path(self):
        assert child_path("/", 0) == "/0"
        assert child_path("/0/2", 1) == "/0/2/1"
        assert path_index("/0/2/11") == 11

    def test_last_output_line_skips_blank_lines(self):
        assert last_output_line("header\n42\n\n") == "42"
        assert last_output_line("") == ""

    def test_tree_paths_mirror_script_positions(self, scheduler):
        definition_id = scheduler.define("- echo a\n- parallel: [echo b, echo c]\n")
        instance_id = scheduler.trigger(definition_id)

        ran = scheduler.drive(instance_id)

        assert ran == ["echo a", "echo b", "echo c"]
        assert scheduler.statuses(instance_id) == {
            "/": "success",
            "/0": "success",
            "/1": "success",
            "/1/0": "success",
            "/1/1": "success",
        }
        tokens = scheduler.tokens(instance_id)
        assert tokens["/1/0"].parent_id == tokens["/1"].id
        assert scheduler.state(instance_id) == "finished"


# ── Sequence ─────────────────────────────────────────────────────────────


class TestSequence:
    def test_first_failure_stops_the_sequence(self, scheduler):
        definition_id = scheduler.define("- echo a\n- exit 1\n- echo c\n")
        instance_id = scheduler.trigger(definition_id)

        ran = scheduler.drive(instance_id, fail_on("exit 1"))

        assert ran == ["echo a", "exit 1"]
        statuses = scheduler.statuses(instance_id)
        assert "/2" not in statuses
        assert statuses["/1"] == "failure"
        assert statuses["/"] == "failure"
        assert scheduler.state(instance_id) == "error"
        assert scheduler.tokens(instance_id)["/1"].message == "exit status 1"

    def test_continue_on_error_resolves_warning(self, scheduler):
        definition_id = scheduler.define(
            "- command: exit 1\n  continue_on_error: true\n- echo after\n"
        )
        instance_id = scheduler.trigger(definition_id)

        ran = scheduler.drive(instance_id, fail_on("exit 1"))

        assert ran == ["exit 1", "echo after"]
        tokens = scheduler.tokens(instance_id)
        assert tokens["/0"].status == "warning"
        assert tokens["/0"].message == "exit status 1 (ignored)"
        assert tokens["/"].status == "warning"
        assert scheduler.state(instance_id) == "finished"

    def test_signal_is_reported_as_failure_reason(self, scheduler):
        definition_id = scheduler.define("sleep 100")
        instance_id = scheduler.trigger(definition_id)

        scheduler.drive(instance_id, lambda shell: (None, "", 9))

        assert scheduler.tokens(instance_id)["/"].message == "terminated by signal 9"
        assert scheduler.history(instance_id)[0].term_signal == 9


# ── Retries ──────────────────────────────────────────────────────────────


class TestRetries:
    def test_retry_bound_gives_retries_plus_one_executions(self, scheduler):
        definition_id = scheduler.define("command: {shell: flaky, retries: 2}")
        instance_id = scheduler.trigger(definition_id)

        ran = scheduler.drive(instance_id, fail_on("flaky"))

        assert ran == ["flaky", "flaky", "flaky"]
        assert len(scheduler.history(instance_id)) == 3
        root = scheduler.tokens(instance_id)["/"]
        assert root.status == "failure"
        assert root.attempts == 2
        assert scheduler.state(instance_id) == "error"

    def test_retry_succeeds_on_second_attempt(self, scheduler):
        attempts = []

        def flaky(shell):
            attempts.append(shell)
            return (1, "boom\n") if len(attempts) == 1 else (0, "ok\n")

        definition_id = scheduler.define("command: {shell: flaky, retries: 3}")
        instance_id = scheduler.trigger(definition_id)

        scheduler.drive(instance_id, flaky)

        assert len(attempts) == 2
        assert [h.exit_status for h in scheduler.history(instance_id)] == [1, 0]
        assert scheduler.statuses(instance_id) == {"/": "success"}


# ── Parallel ─────────────────────────────────────────────────────────────


class TestParallel:
    def test_all_waits_for_every_child_then_fails(self, scheduler):
        definition_id = scheduler.define("parallel: [echo a, exit 2, echo c]")
        instance_id = scheduler.trigger(definition_id)

        ran = scheduler.drive(instance_id, fail_on("exit 2", status=2))

        assert sorted(ran) == ["echo a", "echo c", "exit 2"]
        statuses = scheduler.statuses(instance_id)
        assert statuses["/0"] == "success"
        assert statuses["/2"] == "success"
        assert statuses["/1"] == "failure"
        assert statuses["/"] == "failure"

    def test_any_withdraws_unclaimed_losers(self, scheduler):
        definition_id = scheduler.define("parallel: {join: any, steps: [fast, slow]}")
        instance_id = scheduler.trigger(definition_id)
        worker = scheduler.worker()

        scheduler.tick(instance_id)
        fast = scheduler.claim(worker, pid=100)
        assert fast.shell == "fast"
        scheduler.finish(fast.id, 0)
        scheduler.tick(instance_id)

        assert scheduler.statuses(instance_id) == {
            "/": "success",
            "/0": "success",
            "/1": "canceled",
        }
        assert scheduler.executions(instance_id) == []
        assert scheduler.signals() == []
        assert scheduler.tokens(instance_id)["/"].message == "/0 succeeded first"

    def test_any_signals_a_claimed_loser_once(self, scheduler):
        definition_id = scheduler.define("parallel: {join: any, steps: [fast, slow]}")
        instance_id = scheduler.trigger(definition_id)
        first, second = scheduler.worker(1), scheduler.worker(2)

        scheduler.tick(instance_id)
        fast = scheduler.claim(first, pid=100)
        slow = scheduler.claim(second, pid=200)
        scheduler.finish(fast.id, 0)
        scheduler.tick(instance_id)
        scheduler.tick(instance_id)

        assert scheduler.statuses(instance_id)["/1"] == "canceling"
        signals = scheduler.signals()
        assert [(s.pid, s.number, s.execution_id) for s in signals] == [(200, 15, slow.id)]

        scheduler.finish(slow.id, None, term_signal=15)
        scheduler.tick(instance_id)

        assert scheduler.statuses(instance_id) == {
            "/": "success",
            "/0": "success",
            "/1": "canceled",
        }
        assert scheduler.state(instance_id) == "finished"

    def test_any_fails_when_every_child_fails(self, scheduler):
        definition_id = scheduler.define("parallel: {join: any, steps: [a, b]}")
        instance_id = scheduler.trigger(definition_id)

        scheduler.drive(instance_id, lambda shell: (1, ""))

        root = scheduler.tokens(instance_id)["/"]
        assert root.status == "failure"
        assert root.message == "no branch succeeded"


# ── Branch ───────────────────────────────────────────────────────────────

BRANCH_SCRIPT = """
branch:
  cases:
    - when: {var: MODE, op: eq, value: full}
      do: echo full
  default: echo delta
"""


class TestBranch:
    @pytest.mark.parametrize(
        ("context", "shell", "path"),
        [({"MODE": "full"}, "echo full", "/0"), ({}, "echo delta", "/1")],
    )
    def test_selects_case_or_default(self, scheduler, context, shell, path):
        instance_id = scheduler.trigger(scheduler.define(BRANCH_SCRIPT), context)

        ran = scheduler.drive(instance_id)

        assert ran == [shell]
        assert set(scheduler.statuses(instance_id)) == {"/", path}

    def test_no_match_without_default_succeeds(self, scheduler):
        definition_id = scheduler.define("branch: {cases: [{when: {var: X}, do: echo x}]}")
        instance_id = scheduler.trigger(definition_id)

        assert scheduler.drive(instance_id) == []
        root = scheduler.tokens(instance_id)["/"]
        assert root.status == "success"
        assert root.message == "no case matched"


# ── Loop ─────────────────────────────────────────────────────────────────


class TestLoop:
    def test_counter_drives_iterations(self, scheduler):
        definition_id = scheduler.define(
            "loop: {while: {var: LOOP_INDEX, op: lt, value: 3}, do: echo tick}"
        )
        instance_id = scheduler.trigger(definition_id)

        ran = scheduler.drive(instance_id)

        assert ran == ["echo tick"] * 3
        tokens = scheduler.tokens(instance_id)
        assert set(tokens) == {"/", "/0", "/1", "/2"}
        assert tokens["/2"].context["LOOP_INDEX"] == 2
        assert tokens["/"].context["LOOP_INDEX"] == 3
        assert tokens["/"].status == "success"

    def test_max_iterations_fails_the_loop(self, scheduler):
        definition_id = scheduler.define(
            "loop: {while: {var: GO}, max_iterations: 2, do: echo again}"
        )
        instance_id = scheduler.trigger(definition_id, {"GO": "yes"})

        ran = scheduler.drive(instance_id)

        assert len(ran) == 2
        root = scheduler.tokens(instance_id)["/"]
        assert root.status == "failure"
        assert root.message == "loop still running after 2 iterations"


# ── Context ──────────────────────────────────────────────────────────────


class TestContext:
    def test_instance_context_reaches_the_execution(self, scheduler):
        definition_id = scheduler.define("echo $DATE")
        instance_id = scheduler.trigger(definition_id, {"DATE": "2026-10-19"})

        scheduler.tick(instance_id)

        [execution] = scheduler.executions(instance_id)
        assert execution.context == {"DATE": "2026-10-19"}
        assert execution.queue == "@default"

    def test_assign_and_capture_flow_to_later_steps(self, scheduler):
        definition_id = scheduler.define(
            """
- assign: {TARGET: prod}
- command: {shell: count-rows, capture: ROWS}
- branch:
    cases:
      - when: {var: ROWS, op: gt, value: 10}
        do: echo big
    default: echo small
"""
        )
        instance_id = scheduler.trigger(definition_id)

        ran = scheduler.drive(
            instance_id,
            lambda shell: (0, "header\n42\n") if shell == "count-rows" else (0, ""),
        )

        assert ran == ["count-rows", "echo big"]
        tokens = scheduler.tokens(instance_id)
        assert tokens["/2/0"].context == {"TARGET": "prod", "ROWS": "42"}
        assert tokens["/"].context == {"TARGET": "prod", "ROWS": "42"}

    def test_parallel_siblings_do_not_overwrite_each_other(self, scheduler):
        definition_id = scheduler.define(
            "- parallel:\n    - assign: {A: 1}\n    - assign: {B: 2}\n- echo done\n"
        )
        instance_id = scheduler.trigger(definition_id, {"A": 0})

        scheduler.drive(instance_id)

        tokens = scheduler.tokens(instance_id)
        assert tokens["/1"].context == {"A": 1, "B": 2}
        assert tokens["/"].status == "success"

    def test_failed_step_exports_nothing(self, scheduler):
        definition_id = scheduler.define(
            "- command: {shell: count, capture: N}\n  continue_on_error: true\n- echo next\n"
        )
        instance_id = scheduler.trigger(definition_id)

        scheduler.drive(instance_id, fail_on("count"))

        assert "N" not in scheduler.tokens(instance_id)["/1"].context


# ── Suspension ───────────────────────────────────────────────────────────


class TestSuspendedDefinition:
    def test_commands_wait_until_resumed(self, scheduler):
        definition_id = scheduler.define("echo held", suspended=True)
        instance_id = scheduler.trigger(definition_id)

        scheduler.tick(instance_id)
        assert scheduler.statuses(instance_id) == {"/": "pending"}
        assert scheduler.executions(instance_id) == []

        with session_scope(scheduler.factory) as session:
            scheduler.definitions.update(session, definition_id, {"suspended": False})
        scheduler.tick(instance_id)

        assert scheduler.statuses(instance_id) == {"/": "running"}
        assert len(scheduler.executions(instance_id)) == 1


class TestLeafDispatch:
    def test_unknown_leaf_step_is_a_type_error(self, scheduler):
        @dataclass(frozen=True, kw_only=True)
        class Webhook(Step):
            kind: ClassVar[StepKind] = StepKind.COMMAND

        instance_id = scheduler.trigger(scheduler.define("echo hi"))

        with session_scope(scheduler.factory) as session:
            token = session.scalar(
                select(TokenTable).where(TokenTable.job_instance_id == instance_id)
            )
            with pytest.raises(TypeError, match="unexpected leaf step Webhook"):
                scheduler.executor._visit_leaf(session, token, Webhook(), False)
