"""
Tests for the HTTP gateway, with the requests session mocked out.
"""
import asyncio
from unittest.mock import MagicMock, patch

import pytest
import requests

from taskboard.http_gateway import HttpSyncGateway
from taskboard.schema import MalformedResponseError, PersistenceError, TaskPriority

from conftest import build_task

BASE = "http://board.local:3000"


def _response(body=None, status=200, bad_json=False):
    r = MagicMock()
    r.ok = status < 400
    r.status_code = status
    if bad_json:
        r.json.side_effect = ValueError("Expecting value")
    else:
        r.json.return_value = body
    return r


def _gateway(**kwargs):
    return HttpSyncGateway(BASE + "/", session=requests.Session(), client_id="client-1", **kwargs)


def test_session_headers():
    gateway = _gateway(api_key="s3cret")
    assert gateway.base_url == BASE
    assert gateway.session.headers["X-API-Key"] == "s3cret"
    assert gateway.session.headers["X-Client-Id"] == "client-1"
    assert "X-API-Key" not in _gateway().session.headers


def test_fetch_partition():
    gateway = _gateway(timeout=2.5)
    body = {"status": "todo", "tasks": [build_task("a", "todo", 0).to_dict(), build_task("b", "todo", 1).to_dict()]}
    with patch.object(gateway.session, "request", return_value=_response(body)) as mock_request:
        tasks = asyncio.run(gateway.fetch_partition("todo"))

    assert [t.task_id for t in tasks] == ["a", "b"]
    mock_request.assert_called_once_with("GET", f"{BASE}/api/columns/todo", timeout=2.5)


def test_persist_sends_serialized_fields():
    gateway = _gateway()
    echo = build_task("a", "completed", 0, priority=TaskPriority.HIGH).to_dict()
    with patch.object(gateway.session, "request", return_value=_response({"task": echo})) as mock_request:
        task = asyncio.run(gateway.persist("a", {"status": "completed", "position": 0, "priority": TaskPriority.HIGH}))

    assert task.status == "completed"
    _, kwargs = mock_request.call_args
    assert kwargs["json"] == {"fields": {"status": "completed", "position": 0, "priority": "high"}}
    assert mock_request.call_args[0] == ("PATCH", f"{BASE}/api/tasks/a")


def test_insert_and_remove():
    gateway = _gateway()
    task = build_task("a")
    with patch.object(gateway.session, "request", return_value=_response({"task": task.to_dict(), "id": "a"})) as mock_request:
        echo = asyncio.run(gateway.insert(task))
        asyncio.run(gateway.remove("a"))

    assert echo.task_id == "a"
    methods = [c[0][0] for c in mock_request.call_args_list]
    assert methods == ["POST", "DELETE"]


@pytest.mark.parametrize("response, error", [
    (requests.ConnectionError("refused"), PersistenceError),
    (requests.Timeout("slow"), PersistenceError),
    (_response({"error": "boom"}, status=500), PersistenceError),
    (_response(bad_json=True), MalformedResponseError),
    (_response(["not", "an", "object"]), MalformedResponseError),
    (_response({"status": "todo"}), MalformedResponseError),
    (_response({"tasks": [{"title": "no id"}]}), MalformedResponseError),
])
def test_fetch_errors_are_classified(response, error):
    gateway = _gateway()
    kwargs = {"side_effect": response} if isinstance(response, Exception) else {"return_value": response}
    with patch.object(gateway.session, "request", **kwargs):
        with pytest.raises(error):
            asyncio.run(gateway.fetch_partition("todo"))


def test_poll_changes_notifies_and_advances():
    gateway = _gateway()
    notified = []
    gateway.on_remote_change("todo", notified.append)
    body = {"changes": [{"id": 4, "status": "todo"}, {"id": 5, "status": "completed"}], "latest": 5}

    with patch.object(gateway.session, "request", return_value=_response(body)) as mock_request:
        statuses = asyncio.run(gateway.poll_changes())

    assert statuses == ["completed", "todo"]
    assert notified == ["todo"]
    _, kwargs = mock_request.call_args
    assert kwargs["params"] == {"since": 0, "origin": "client-1"}

    with patch.object(gateway.session, "request", return_value=_response({"changes": [], "latest": 5})) as mock_request:
        assert asyncio.run(gateway.poll_changes()) == []
    assert mock_request.call_args[1]["params"]["since"] == 5


def test_poll_changes_rejects_bad_shape():
    gateway = _gateway()
    with patch.object(gateway.session, "request", return_value=_response({"latest": 1})):
        with pytest.raises(MalformedResponseError):
            asyncio.run(gateway.poll_changes())
