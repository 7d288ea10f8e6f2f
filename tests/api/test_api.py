"""
Tests for the REST API: definitions, triggers, instance operations, workers.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from shiftwork.api.app import create_app
from shiftwork.core.orm.session import session_scope

PREFIX = "/api/v1"


@pytest.fixture()
def client(settings, factory):
    app = create_app(settings=settings, session_factory=factory)
    with TestClient(app) as client:
        yield client


def create(client, script: str = "echo hi", **fields) -> dict:
    response = client.post(
        f"{PREFIX}/definitions", json={"name": "nightly", "script": script, **fields}
    )
    assert response.status_code == 202, response.text
    return response.json()["data"]


def trigger(client, definition_id: int, **body) -> dict:
    response = client.post(f"{PREFIX}/definitions/{definition_id}/instances", json=body)
    assert response.status_code == 201, response.text
    return response.json()["data"]


class TestApp:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_openapi_under_prefix(self, client):
        assert client.get(f"{PREFIX}/openapi.json").status_code == 200


class TestDefinitions:
    def test_create_and_get(self, client):
        created = create(client, "- echo a\n- echo b\n", prevent_multi=0)

        response = client.get(f"{PREFIX}/definitions/{created['id']}")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["name"] == "nightly"
        assert data["version"] == 0
        assert data["prevent_multi"] == 0
        assert data["api_allowed"] is False

    def test_invalid_script_is_a_problem(self, client):
        response = client.post(
            f"{PREFIX}/definitions", json={"name": "bad", "script": "parallel: []"}
        )

        assert response.status_code == 422
        problem = response.json()
        assert problem["title"] == "Validation"
        assert problem["status"] == 422
        assert problem["detail"].startswith("script.parallel")

    def test_unknown_body_field(self, client):
        response = client.post(
            f"{PREFIX}/definitions", json={"name": "x", "script": "echo", "owner": "me"}
        )
        assert response.status_code == 422

    def test_list_filters_by_name(self, client):
        create(client)
        client.post(f"{PREFIX}/definitions", json={"name": "cleanup", "script": "echo"})

        response = client.get(f"{PREFIX}/definitions", params={"name": "clean"})

        assert [d["name"] for d in response.json()["data"]] == ["cleanup"]

    def test_unknown_definition(self, client):
        response = client.get(f"{PREFIX}/definitions/99")

        assert response.status_code == 404
        problem = response.json()
        assert problem["title"] == "Not Found"
        assert problem["detail"] == "job_definition not found: 99"

    def test_update_script_bumps_version(self, client):
        created = create(client)

        response = client.put(
            f"{PREFIX}/definitions/{created['id']}", json={"script": "echo v1"}
        )

        assert response.status_code == 204
        data = client.get(f"{PREFIX}/definitions/{created['id']}").json()["data"]
        assert data["version"] == 1
        assert data["script"] == "echo v1"

    @pytest.mark.parametrize(
        "body", [{"name": None}, {"prevent_multi": None}, {"suspended": None}]
    )
    def test_update_rejects_null_for_required_fields(self, client, body):
        created = create(client)

        response = client.put(f"{PREFIX}/definitions/{created['id']}", json=body)

        assert response.status_code == 422
        data = client.get(f"{PREFIX}/definitions/{created['id']}").json()["data"]
        assert data["name"] == "nightly"
        assert data["prevent_multi"] == 1

    def test_update_may_clear_the_webhook(self, client):
        created = create(client, webhook_url="https://hooks.example.com/x")

        response = client.put(
            f"{PREFIX}/definitions/{created['id']}", json={"webhook_url": None}
        )

        assert response.status_code == 204
        data = client.get(f"{PREFIX}/definitions/{created['id']}").json()["data"]
        assert data["webhook_url"] is None

    def test_delete(self, client):
        created = create(client)

        assert client.delete(f"{PREFIX}/definitions/{created['id']}").status_code == 204
        assert client.get(f"{PREFIX}/definitions/{created['id']}").status_code == 404

    def test_delete_with_active_instance_conflicts(self, client):
        created = create(client, api_allowed=True)
        instance = trigger(client, created["id"])

        response = client.delete(f"{PREFIX}/definitions/{created['id']}")

        assert response.status_code == 409
        assert response.json()["context"]["job_instance_id"] == instance["id"]

    def test_memory_expectancy(self, client):
        created = create(client)
        url = f"{PREFIX}/definitions/{created['id']}/memory_expectancy"

        assert client.put(url, json={"expected_value": 2048}).status_code == 204
        assert client.put(url, json={"expected_value": -1}).status_code == 422


class TestTrigger:
    def test_api_trigger_must_be_allowed(self, client):
        created = create(client)

        response = client.post(f"{PREFIX}/definitions/{created['id']}/instances", json={})

        assert response.status_code == 403

    def test_trigger_creates_pending_instance(self, client):
        created = create(client, api_allowed=True)

        instance = trigger(client, created["id"], context={"DATE": "2026-10-19"})

        assert instance["state"] == "pending"
        assert instance["context"] == {"DATE": "2026-10-19"}
        assert [(t["path"], t["status"]) for t in instance["tokens"]] == [("/", "pending")]

    def test_trigger_without_body(self, client):
        created = create(client, api_allowed=True)

        response = client.post(f"{PREFIX}/definitions/{created['id']}/instances")

        assert response.status_code == 201
        assert response.json()["data"]["job_definition_version"] == 0

    def test_unknown_version(self, client):
        created = create(client, api_allowed=True)

        response = client.post(
            f"{PREFIX}/definitions/{created['id']}/instances", json={"version": 5}
        )

        assert response.status_code == 404


class TestInstances:
    def test_get_and_logs(self, client):
        created = create(client, api_allowed=True)
        instance = trigger(client, created["id"])

        response = client.get(f"{PREFIX}/instances/{instance['id']}")
        assert response.json()["data"]["id"] == instance["id"]

        logs = client.get(f"{PREFIX}/instances/{instance['id']}/logs").json()["data"]
        assert logs[0]["message"] == "triggered nightly (version 0)"

    def test_unknown_instance(self, client):
        assert client.get(f"{PREFIX}/instances/5").status_code == 404

    def test_cancel(self, client):
        created = create(client, api_allowed=True)
        instance = trigger(client, created["id"])
        url = f"{PREFIX}/instances/{instance['id']}/cancel"

        response = client.post(url)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["state"] == "canceled"
        assert data["tokens"][0]["status"] == "canceled"

        assert client.post(url).status_code == 409

    def test_retry_requires_error(self, client):
        created = create(client, api_allowed=True)
        instance = trigger(client, created["id"])

        response = client.post(f"{PREFIX}/instances/{instance['id']}/retry")

        assert response.status_code == 409
        assert response.json()["title"] == "Orchestration"

    def test_retry_and_history_of_a_failed_instance(self, client, scheduler):
        created = create(client, "exit 1")
        instance_id = scheduler.trigger(created["id"])
        scheduler.drive(instance_id, lambda shell: (1, "boom\n"))

        executions = client.get(f"{PREFIX}/instances/{instance_id}/executions").json()["data"]
        assert [(e["token_path"], e["exit_status"], e["output"]) for e in executions] == [
            ("/", 1, "boom\n")
        ]

        response = client.post(f"{PREFIX}/instances/{instance_id}/retry")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["state"] == "working"
        assert data["retrying"] is True

    def test_skip(self, client, scheduler):
        created = create(client, "- exit 1\n- echo after\n")
        instance_id = scheduler.trigger(created["id"])
        scheduler.drive(instance_id, lambda shell: (1, ""))

        response = client.post(f"{PREFIX}/instances/{instance_id}/skip")

        assert response.status_code == 200
        tokens = {t["path"]: t for t in response.json()["data"]["tokens"]}
        assert tokens["/0"]["status"] == "success"


class TestWorkers:
    @pytest.fixture()
    def workers(self, scheduler):
        with session_scope(scheduler.factory) as session:
            fixed = scheduler.registry.register(session, "host-a", 1, "@default")
            flexible = scheduler.registry.register(
                session, "host-a", 2, "batch", suspendable=True
            )
            return fixed.id, flexible.id

    def test_list_and_filter(self, client, workers):
        everything = client.get(f"{PREFIX}/workers").json()["data"]
        batch = client.get(f"{PREFIX}/workers", params={"queue": "batch"}).json()["data"]

        assert len(everything) == 2
        assert [w["worker_id"] for w in batch] == [2]

    def test_suspend_and_resume(self, client, workers):
        _, flexible = workers

        response = client.post(f"{PREFIX}/workers/{flexible}/suspend")
        assert response.status_code == 200
        assert response.json()["data"]["suspended"] is True

        response = client.post(f"{PREFIX}/workers/{flexible}/resume")
        assert response.json()["data"]["suspended"] is False

    def test_fixed_worker_cannot_be_suspended(self, client, workers):
        fixed, _ = workers

        assert client.post(f"{PREFIX}/workers/{fixed}/suspend").status_code == 409

    def test_unknown_worker(self, client):
        assert client.post(f"{PREFIX}/workers/77/resume").status_code == 404
