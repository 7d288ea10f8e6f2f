"""Tests for the signal relay."""

from __future__ import annotations

import pytest

from shiftwork.core.orm.session import session_scope
from shiftwork.core.orm.tables import ExecutionTable
from shiftwork.engine.signals import SignalRelay


@pytest.fixture()
def killed(monkeypatch):
    calls: list[tuple[int, int]] = []
    monkeypatch.setattr(
        "shiftwork.engine.signals.os.killpg", lambda pid, sig: calls.append((pid, sig))
    )
    return calls


@pytest.fixture()
def execution_id(scheduler) -> int:
    instance_id = scheduler.trigger(scheduler.define("sleep 30"))
    scheduler.tick(instance_id)
    return scheduler.claim(scheduler.worker(), pid=4242).id


def request(scheduler, execution_id: int, number: int = 15):
    with session_scope(scheduler.factory) as session:
        execution = session.get(ExecutionTable, execution_id)
        return scheduler.relay.request(session, execution, number, "test")


def deliver(scheduler, live_pids, relay: SignalRelay | None = None) -> int:
    with session_scope(scheduler.factory) as session:
        return (relay or scheduler.relay).deliver_pending(session, live_pids)


class TestRequest:
    def test_request_is_idempotent_per_signal_number(self, scheduler, execution_id):
        assert request(scheduler, execution_id) is not None
        assert request(scheduler, execution_id) is None
        assert request(scheduler, execution_id, number=9) is not None

        assert [s.number for s in scheduler.signals()] == [15, 9]

    def test_no_request_without_pid(self, scheduler):
        instance_id = scheduler.trigger(scheduler.define("sleep 30"))
        scheduler.tick(instance_id)
        execution = scheduler.claim(scheduler.worker())

        assert request(scheduler, execution.id) is None
        assert scheduler.signals() == []


class TestDeliver:
    def test_signals_the_process_group_once(self, scheduler, execution_id, killed):
        request(scheduler, execution_id)

        assert deliver(scheduler, {4242}) == 1
        assert deliver(scheduler, {4242}) == 0

        assert killed == [(4242, 15)]
        [process_signal] = scheduler.signals()
        assert process_signal.started_at is not None

    def test_exited_process_is_not_an_error(self, scheduler, execution_id, monkeypatch):
        def gone(pid, sig):
            raise ProcessLookupError(pid)

        monkeypatch.setattr("shiftwork.engine.signals.os.killpg", gone)
        request(scheduler, execution_id)

        assert deliver(scheduler, {4242}) == 0

        [process_signal] = scheduler.signals()
        assert process_signal.started_at is not None
        assert process_signal.message == "test (process already exited)"

    def test_foreign_pid_is_left_for_its_owner(self, scheduler, execution_id, killed):
        request(scheduler, execution_id)

        assert deliver(scheduler, {1}) == 0

        assert killed == []
        assert scheduler.signals()[0].started_at is None

    def test_signal_for_finished_execution_is_dropped(self, scheduler, execution_id, killed):
        request(scheduler, execution_id)
        scheduler.finish(execution_id, 0)

        deliver(scheduler, set())

        assert killed == []
        [process_signal] = scheduler.signals()
        assert process_signal.started_at is not None
        assert process_signal.message.endswith("(process no longer running)")

    def test_other_hosts_are_ignored(self, scheduler, execution_id, killed):
        request(scheduler, execution_id)

        assert deliver(scheduler, {4242}, relay=SignalRelay("elsewhere")) == 0

        assert killed == []
        assert scheduler.signals()[0].started_at is None
