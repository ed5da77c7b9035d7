from __future__ import annotations

import base64
import time

import pytest
from fastapi.testclient import TestClient

from recorder_tasks.api.services import CronService, TaskService
from recorder_tasks.api.v1.routes import get_cron_service, get_task_service
from recorder_tasks.app import app
from recorder_tasks.config import Settings
from recorder_tasks.models import SubscriberTask, TaskStatus
from recorder_tasks.scheduler import CronRegistry, LeaseManager, TaskStore, TaskTransition


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


@pytest.fixture(name="client")
def fixture_client(db):
    app.dependency_overrides[get_task_service] = lambda: TaskService(TaskStore(db), Settings())
    app.dependency_overrides[get_cron_service] = lambda: CronService(CronRegistry(db))
    # 不进入 lifespan，调度器不会启动
    yield TestClient(app)
    app.dependency_overrides.clear()


def _submit(client, **overrides) -> str:
    payload = {"job": _b64(b"hello"), "task_type": "echo"}
    payload.update(overrides)
    response = client.post("/api/v1/tasks", json=payload)
    assert response.status_code == 201, response.text
    return response.json()["id"]


def test_root_and_status(client):
    assert client.get("/").json() == {"message": "Hello Recorder"}

    status = client.get("/status").json()
    assert status["scheduler_running"] is False
    assert "dispatcher" not in status


def test_create_and_get_task(client):
    task_id = _submit(client, priority=3)

    body = client.get(f"/api/v1/tasks/{task_id}").json()
    assert body["job"] == _b64(b"hello")
    assert body["status"] == "pending"
    assert body["priority"] == 3
    assert body["attempts"] == 0
    # 缺省值来自配置
    assert body["max_attempts"] == 3
    assert body["timeout_ms"] == 60000
    assert body["is_locked"] is False


def test_create_rejects_invalid_payload(client):
    response = client.post("/api/v1/tasks", json={"job": "not base64!", "task_type": "echo"})
    assert response.status_code == 422

    response = client.post("/api/v1/tasks", json={"job": _b64(b""), "task_type": ""})
    assert response.status_code == 422


def test_missing_task_is_404(client):
    assert client.get("/api/v1/tasks/nope").status_code == 404
    assert client.delete("/api/v1/tasks/nope").status_code == 404


def test_list_tasks_with_subscription_join(client, subscription_id):
    for priority in (1, 5, 3):
        _submit(client, priority=priority, subscription_id=subscription_id)
    _submit(client, task_type="download")

    response = client.get(
        "/api/v1/tasks",
        params={
            "subscription_id": subscription_id,
            "order_by": "priority",
            "order": "desc",
            "limit": 2,
        },
    )
    assert response.status_code == 200
    body = response.json()
    assert [task["priority"] for task in body["data"]] == [5, 3]
    assert body["data"][0]["subscription"]["display_name"] == "Example Feed"
    assert body["pagination"]["total_items"] == 3
    assert body["pagination"]["total_pages"] == 2
    assert body["pagination"]["has_next"] is True

    response = client.get("/api/v1/tasks", params={"task_type": "download"})
    assert response.json()["pagination"]["total_items"] == 1


def test_list_rejects_unknown_order_field(client):
    response = client.get("/api/v1/tasks", params={"order_by": "job"})
    assert response.status_code == 422


def test_delete_leased_task_conflicts(client, store):
    task_id = _submit(client)
    (task,) = store.claim_batch(1, time.time(), "worker-a")
    assert task.id == task_id

    response = client.delete(f"/api/v1/tasks/{task_id}")
    assert response.status_code == 409
    assert response.json()["detail"]["ids"] == [task_id]

    LeaseManager(store.db_manager).release(SubscriberTask, task_id, "worker-a", time.time())

    response = client.delete(f"/api/v1/tasks/{task_id}")
    assert response.status_code == 200
    assert response.json() == {"deleted": 1}


def test_batch_delete_requires_criteria(client):
    _submit(client)

    assert client.post("/api/v1/tasks/delete", json={}).status_code == 422
    response = client.post("/api/v1/tasks/delete", json={"task_type": "echo"})
    assert response.json() == {"deleted": 1}


def test_retry_resets_failed_tasks(client, store):
    task_id = _submit(client, max_attempts=1)
    (task,) = store.claim_batch(1, time.time(), "worker-a")
    store.apply_transition(
        task,
        "worker-a",
        TaskTransition(TaskStatus.Failed, 1, task.run_at, "boom", None),
        time.time(),
    )

    assert client.post("/api/v1/tasks/retry", json={}).status_code == 422
    response = client.post("/api/v1/tasks/retry", json={"status": "failed"})
    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 1
    assert body["data"][0]["id"] == task_id
    assert body["data"][0]["status"] == "pending"
    assert body["data"][0]["attempts"] == 0
    assert body["data"][0]["last_error"] is None


def test_cron_crud(client):
    response = client.post(
        "/api/v1/crons",
        json={"cron_expr": "*/5 * * * *", "job": _b64(b"tick"), "task_type": "echo"},
    )
    assert response.status_code == 201, response.text
    cron = response.json()
    assert cron["status"] == "active"
    assert cron["next_run"] > time.time()
    assert cron["next_run"] % 300 == 0

    listed = client.get("/api/v1/crons").json()
    assert listed["count"] == 1

    response = client.patch(
        f"/api/v1/crons/{cron['id']}", json={"status": "disabled", "priority": 4}
    )
    assert response.status_code == 200
    assert response.json()["status"] == "disabled"
    assert response.json()["priority"] == 4
    assert client.get("/api/v1/crons", params={"status": "active"}).json()["count"] == 0

    response = client.patch(f"/api/v1/crons/{cron['id']}", json={"status": "errored"})
    assert response.status_code == 422

    assert client.delete(f"/api/v1/crons/{cron['id']}").json() == {"deleted": 1}
    assert client.get(f"/api/v1/crons/{cron['id']}").status_code == 404
    assert client.delete(f"/api/v1/crons/{cron['id']}").status_code == 404


def test_cron_rejects_malformed_expression(client):
    response = client.post(
        "/api/v1/crons",
        json={"cron_expr": "61 * * * *", "job": _b64(b""), "task_type": "echo"},
    )
    assert response.status_code == 422
    assert client.get("/api/v1/crons").json()["count"] == 0


def test_patch_missing_cron_is_404(client):
    response = client.patch("/api/v1/crons/999", json={"priority": 1})
    assert response.status_code == 404
