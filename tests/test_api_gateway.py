import logging

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from taskbridge.config import get_settings
from taskbridge.db import get_db
from taskbridge.records import task_from_record
from taskbridge.routers import api_admin, api_gateway


@pytest.fixture
def client(session_factory):
    app = FastAPI()
    app.include_router(api_gateway.router, prefix="/api")
    app.include_router(api_admin.router, prefix="/api/admin")

    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    with TestClient(app) as c:
        yield c


def _task_item(**overrides):
    item = {
        "id": "t1",
        "title": "Invoice",
        "status": "todo",
        "priority": "high",
        "assigneeIds": ["u1", "u2"],
        "clientId": "c1",
        "startDate": "2026-01-01",
        "dueDate": "2026-01-31",
        "tags": ["billing", "q1"],
        "isRecurring": False,
    }
    item.update(overrides)
    return item


def test_create_then_read_task_in_flat_layout(client):
    r = client.post("/api/mutate", json={"operation": "create", "type": "task", "item": _task_item()})
    assert r.status_code == 200
    assert r.json() == {"success": True, "error": None}

    rows = client.get("/api/tasks").json()
    assert len(rows) == 1
    row = rows[0]
    assert row["id"] == "t1"
    assert row["assigneeIds"] == "u1,u2"
    assert row["assigneeId"] == "u1"
    assert row["tags"] == "billing,q1"
    assert row["recurrence"] == ""
    assert row["parentTaskId"] == ""

    one = client.get("/api/tasks/t1").json()
    assert one["title"] == "Invoice"
    assert client.get("/api/tasks/missing").status_code == 404


def test_mutations_are_idempotent(client):
    item = _task_item()
    for _ in range(2):
        r = client.post("/api/mutate", json={"operation": "create", "type": "task", "item": item})
        assert r.json()["success"] is True
    assert len(client.get("/api/tasks").json()) == 1

    r = client.post("/api/mutate", json={"operation": "update", "type": "task", "item": {**item, "title": "Paid"}})
    assert r.json()["success"] is True
    assert client.get("/api/tasks").json()[0]["title"] == "Paid"

    for _ in range(2):
        r = client.post("/api/mutate", json={"operation": "delete", "type": "task", "item": {"id": "t1"}})
        assert r.json()["success"] is True
    assert client.get("/api/tasks").json() == []


def test_recurrence_is_stored_as_json_cell(client):
    item = _task_item(id="m1", isRecurring=True, recurrence={"frequency": "weekly", "days": [1, 3]})
    r = client.post("/api/mutate", json={"operation": "create", "type": "task", "item": item})
    assert r.json()["success"] is True

    cell = client.get("/api/tasks").json()[0]["recurrence"]
    assert '"daysOfWeek":["monday","wednesday"]' in cell


def test_invalid_items_report_failure(client):
    r = client.post("/api/mutate", json={"operation": "create", "type": "task", "item": _task_item(dueDate="2026-02-30")})
    body = r.json()
    assert r.status_code == 200
    assert body["success"] is False
    assert body["error"]

    r = client.post("/api/mutate", json={"operation": "create", "type": "user", "item": {"name": "no id"}})
    assert r.json()["success"] is False

    r = client.post("/api/mutate", json={"operation": "create", "type": "user", "item": {"id": "u1", "role": "Boss"}})
    assert r.json()["success"] is False


def test_users_and_clients_round_trip(client):
    user = {"id": "u1", "name": "Ana", "email": "ana@example.com", "password": "pw", "role": "Supervisor", "avatar": ""}
    assert client.post("/api/mutate", json={"operation": "create", "type": "user", "item": user}).json()["success"]
    assert client.post(
        "/api/mutate", json={"operation": "create", "type": "client", "item": {"id": "c1", "name": "Acme"}}
    ).json()["success"]

    assert client.get("/api/users").json() == [user]
    assert client.get("/api/clients").json() == [{"id": "c1", "name": "Acme"}]


def test_admin_sweep_endpoint(client):
    item = _task_item(id="m1", isRecurring=True, recurrence={"frequency": "daily", "endDate": "2026-01-31"})
    client.post("/api/mutate", json={"operation": "create", "type": "task", "item": item})

    assert client.get("/api/admin/sweep").json() is None

    r = client.post("/api/admin/sweep", json={"day": "2026-01-10"})
    assert r.status_code == 200
    body = r.json()
    assert body["day"] == "2026-01-10"
    assert body["examined"] == 1
    assert len(body["created"]) == 1

    assert client.get("/api/admin/sweep").json()["created"] == body["created"]
    assert client.post("/api/admin/sweep", json={"day": "nope"}).status_code == 400


def test_api_token_is_enforced_when_configured(client, monkeypatch):
    monkeypatch.setenv("TASKBRIDGE_API_TOKEN", "s3cret")
    get_settings.cache_clear()

    assert client.get("/api/tasks").status_code == 401
    assert client.get("/api/tasks", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert client.get("/api/tasks", headers={"Authorization": "Bearer s3cret"}).status_code == 200
    assert client.get("/api/admin/logs/files", headers={"Authorization": "Bearer s3cret"}).status_code == 200


def test_admin_logging_endpoints(client, tmp_path, monkeypatch):
    log_dir = tmp_path / "logs"
    log_dir.mkdir()
    (log_dir / "taskbridge-2026-01-10.log").write_text("hello\n")
    (log_dir / "other.txt").write_text("ignored\n")
    monkeypatch.setattr(get_settings().logging, "dir", str(log_dir))

    files = client.get("/api/admin/logs/files").json()
    assert [f["filename"] for f in files] == ["taskbridge-2026-01-10.log"]
    assert files[0]["size_bytes"] == 6

    root = logging.getLogger()
    before = root.level
    try:
        r = client.put("/api/admin/logging", json={"level": "debug"})
        assert r.status_code == 200
        assert r.json() == {"level": "DEBUG"}
        assert root.level == logging.DEBUG
        assert client.put("/api/admin/logging", json={"level": "LOUD"}).status_code == 422
    finally:
        root.setLevel(before)
        logging.getLogger("taskbridge").setLevel(logging.NOTSET)


def test_omitted_enum_fields_are_stored_as_plain_values(client):
    item = {"id": "m1", "title": "Backup", "startDate": "2026-01-01", "dueDate": "2026-01-31",
            "isRecurring": True, "recurrence": {"frequency": "daily"}}
    assert client.post("/api/mutate", json={"operation": "create", "type": "task", "item": item}).json()["success"]
    assert client.post(
        "/api/mutate", json={"operation": "create", "type": "user", "item": {"id": "u1", "name": "Ana"}}
    ).json()["success"]

    row = client.get("/api/tasks").json()[0]
    assert (row["status"], row["priority"]) == ("todo", "medium")
    assert client.get("/api/users").json()[0]["role"] == "Analyst"

    r = client.post("/api/admin/sweep", json={"day": "2026-01-05"})
    assert r.status_code == 200
    assert len(r.json()["created"]) == 1


def test_unreadable_rule_survives_an_edit_and_is_reported_by_the_sweep(client):
    item = _task_item(id="m9", recurrenceRaw='{"frequency":"yearly"}')
    assert client.post("/api/mutate", json={"operation": "create", "type": "task", "item": item}).json()["success"]

    task = task_from_record(client.get("/api/tasks/m9").json())
    assert task.recurrence is None
    edited = task.model_copy(update={"title": "Renamed"})
    r = client.post("/api/mutate", json={"operation": "update", "type": "task", "item": edited.to_wire()})
    assert r.json()["success"] is True

    row = client.get("/api/tasks").json()[0]
    assert row["title"] == "Renamed"
    assert row["recurrence"] == '{"frequency":"yearly"}'

    report = client.post("/api/admin/sweep", json={"day": "2026-01-10"}).json()
    assert report["skipped"] == ["m9"]
    assert report["created"] == []
