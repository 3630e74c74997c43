import io
import json
import socket
from urllib.error import HTTPError, URLError

import pytest

from taskbridge.gateway import GatewayClient, GatewayError, SyncTimeoutError
from taskbridge.sync_queue import SyncOperation


class _Resp:
    def __init__(self, payload, status=200):
        self._body = json.dumps(payload).encode("utf-8")
        self.status = status

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


@pytest.fixture
def captured(monkeypatch):
    calls = []
    responses = []

    def fake_urlopen(req, timeout=None):
        calls.append(req)
        out = responses.pop(0)
        if isinstance(out, Exception):
            raise out
        return out

    monkeypatch.setattr("taskbridge.gateway.request.urlopen", fake_urlopen)
    return calls, responses


def test_mutate_posts_operation_with_bearer_token(captured):
    calls, responses = captured
    responses.append(_Resp({"success": True}))

    client = GatewayClient("http://store.local:8888/", api_token="tok")
    client.mutate("create", "client", {"id": "c1", "name": "Acme"})

    req = calls[0]
    assert req.full_url == "http://store.local:8888/api/mutate"
    assert req.get_method() == "POST"
    assert req.get_header("Authorization") == "Bearer tok"
    assert json.loads(req.data) == {"operation": "create", "type": "client", "item": {"id": "c1", "name": "Acme"}}


@pytest.mark.parametrize("entity_type", ["task", "user", "client"])
def test_application_failure_raises_for_every_entity_type(captured, entity_type):
    _, responses = captured
    responses.append(_Resp({"success": False, "error": "bad row"}))

    with pytest.raises(GatewayError, match="bad row"):
        GatewayClient("http://store.local").mutate("update", entity_type, {"id": "x"})


def test_http_and_network_errors_raise(captured):
    _, responses = captured
    responses.append(HTTPError("http://store.local/api/mutate", 500, "boom", {}, io.BytesIO(b"oops")))
    responses.append(URLError("connection refused"))
    responses.append(URLError(socket.timeout("timed out")))

    client = GatewayClient("http://store.local")
    with pytest.raises(GatewayError, match="HTTP 500"):
        client.mutate("create", "task", {"id": "t1"})
    with pytest.raises(GatewayError, match="connection refused"):
        client.mutate("create", "task", {"id": "t1"})
    with pytest.raises(SyncTimeoutError):
        client.mutate("create", "task", {"id": "t1"})


def test_send_operation_maps_collection_to_entity_type(captured):
    calls, responses = captured
    responses.append(_Resp({"success": True}))

    op = SyncOperation(entity_id="u1", kind="delete", payload={"id": "u1"}, collection="users")
    GatewayClient("https://store.local").send_operation(op)
    assert json.loads(calls[0].data)["type"] == "user"


def test_fetch_tasks_maps_rows_and_skips_unreadable(captured):
    _, responses = captured
    responses.append(
        _Resp(
            [
                {
                    "id": "t1",
                    "title": "Invoice",
                    "status": "todo",
                    "priority": "high",
                    "assigneeId": "",
                    "startDate": "2026-01-01",
                    "dueDate": "2026-01-31",
                    "tags": "a,b",
                    "assigneeIds": "u1,u2",
                    "clientId": "c1",
                    "completedDate": "",
                    "recurrence": '{"frequency":"daily","endDate":"2026-01-31"}',
                    "parentTaskId": "",
                },
                {"id": "", "title": "blank row"},
                {"id": "t2", "status": "archived"},
            ]
        )
    )

    tasks = GatewayClient("http://store.local").fetch_tasks()
    assert [t.id for t in tasks] == ["t1"]
    assert tasks[0].tags == ["a", "b"]
    assert tasks[0].assignee_id == "u1"
    assert tasks[0].is_mother


def test_only_http_urls_are_accepted():
    with pytest.raises(ValueError):
        GatewayClient("file:///etc/passwd")
