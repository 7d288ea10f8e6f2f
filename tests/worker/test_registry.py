"""Tests for the worker registry."""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import update

from shiftwork.core.errors import NotFoundError, WorkerRegistrationError
from shiftwork.core.orm.session import session_scope
from shiftwork.core.orm.tables import WorkerTable
from shiftwork.core.timestamps import utc_now


def busy_worker(scheduler) -> tuple[int, int]:
    """Register worker 1 and bind it to a claimed execution."""
    instance_id = scheduler.trigger(scheduler.define("sleep 30"))
    scheduler.tick(instance_id)
    worker_pk = scheduler.worker()
    return worker_pk, scheduler.claim(worker_pk).id


class TestRegister:
    def test_new_identity(self, scheduler, session):
        worker = scheduler.registry.register(session, "host-a", 3, "batch", suspendable=True)

        assert worker.queue == "batch"
        assert worker.suspendable
        assert not worker.working
        assert worker.heartbeat_at is not None
        assert scheduler.registry.find(session, "host-a", 3) is worker

    def test_reregister_idle_identity_updates_the_row(self, scheduler, session):
        first = scheduler.registry.register(session, "host-a", 1)
        second = scheduler.registry.register(session, "host-a", 1, "other")

        assert second.id == first.id
        assert second.queue == "other"

    def test_live_identity_is_refused(self, scheduler):
        busy_worker(scheduler)

        with session_scope(scheduler.factory) as session:
            with pytest.raises(WorkerRegistrationError, match="is running execution"):
                scheduler.registry.register(session, "test-host", 1)

    def test_stale_identity_is_taken_over(self, scheduler):
        worker_pk, execution_id = busy_worker(scheduler)
        with session_scope(scheduler.factory) as session:
            session.execute(
                update(WorkerTable)
                .where(WorkerTable.id == worker_pk)
                .values(heartbeat_at=utc_now() - timedelta(hours=1))
            )

        with session_scope(scheduler.factory) as session:
            worker = scheduler.registry.register(session, "test-host", 1)
            assert worker.id == worker_pk
            assert not worker.working

        [execution] = scheduler.executions()
        assert execution.id == execution_id
        assert execution.finished_at is not None
        assert execution.exit_status is None


class TestQueries:
    def test_list_filters(self, scheduler, session):
        scheduler.registry.register(session, "host-a", 1, "@default")
        scheduler.registry.register(session, "host-a", 2, "batch")
        scheduler.registry.register(session, "host-b", 1, "batch")

        assert len(scheduler.registry.list(session)) == 3
        assert [w.worker_id for w in scheduler.registry.list(session, hostname="host-a")] == [1, 2]
        assert [w.hostname for w in scheduler.registry.list(session, queue="batch")] == [
            "host-a",
            "host-b",
        ]

    def test_get_missing(self, scheduler, session):
        with pytest.raises(NotFoundError, match="worker not found: 5"):
            scheduler.registry.get(session, 5)


class TestSuspend:
    def test_suspend_and_resume(self, scheduler, session):
        worker = scheduler.registry.register(session, "host-a", 1, suspendable=True)

        assert scheduler.registry.suspend(session, worker).suspended
        assert not scheduler.registry.resume(session, worker).suspended

    def test_not_suspendable(self, scheduler, session):
        worker = scheduler.registry.register(session, "host-a", 1)

        with pytest.raises(WorkerRegistrationError, match="not suspendable"):
            scheduler.registry.suspend(session, worker)


class TestDeregister:
    def test_idle_worker_is_removed(self, scheduler, session):
        worker = scheduler.registry.register(session, "host-a", 1)

        scheduler.registry.deregister(session, worker)

        assert scheduler.registry.find(session, "host-a", 1) is None

    def test_working_worker_is_kept(self, scheduler):
        worker_pk, _ = busy_worker(scheduler)

        with session_scope(scheduler.factory) as session:
            worker = scheduler.registry.get(session, worker_pk)
            with pytest.raises(WorkerRegistrationError, match="still working"):
                scheduler.registry.deregister(session, worker)
