"""
Tests for the board server JSON API (Flask test client).
"""
import asyncio
import threading
from unittest.mock import MagicMock, patch

import pytest

from board_server import create_app
from taskboard.config import BoardConfig
from taskboard.executor import ReorderExecutor
from taskboard.http_gateway import HttpSyncGateway
from taskboard.store import TaskStore

from conftest import build_task, build_column

BASE = "http://board.test"

# Gateway calls arrive from worker threads; the test client is used one at a time
_client_lock = threading.Lock()


@pytest.fixture
def app(db_path):
    app = create_app(db_path, api_secret="")
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def _seed(app, tasks):
    for task in tasks:
        app.config["TABLE"].upsert(task)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Reads
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.get_json()["columns"] == ["todo", "in-progress", "completed"]


def test_column_is_ordered(app, client):
    _seed(app, [build_task("b", "todo", 1), build_task("a", "todo", 0)])
    r = client.get("/api/columns/todo")
    data = r.get_json()
    assert data["title"] == "To Do"
    assert [t["task_id"] for t in data["tasks"]] == ["a", "b"]
    assert client.get("/api/columns/archived").status_code == 404


def test_board_and_stats(app, client):
    _seed(app, build_column("todo", "a", "b") + build_column("completed", "c"))
    data = client.get("/api/board").get_json()
    assert list(data["columns"]) == ["todo", "in-progress", "completed"]
    assert data["columns"]["in-progress"] == {"title": "In Progress", "tasks": []}
    assert data["stats"]["by_status"] == {"todo": 2, "in-progress": 0, "completed": 1}

    stats = client.get("/api/stats").get_json()
    assert stats["total"] == 3


def test_task_filters(app, client):
    _seed(app, [
        build_task("a", "todo", 0, assignee="sam"),
        build_task("b", "completed", 0, assignee="kim", tags=["ui"]),
    ])
    assert client.get("/api/tasks?assignee=sam").get_json()["count"] == 1
    assert [t["task_id"] for t in client.get("/api/tasks?tag=ui").get_json()["tasks"]] == ["b"]
    assert client.get("/api/tasks?status=archived").status_code == 400
    assert client.get("/api/tasks?priority=someday").status_code == 400


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Writes
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_create_task_from_title(app, client):
    _seed(app, build_column("todo", "a"))
    r = client.post("/api/tasks", json={"title": "Ship it", "priority": "high"})
    assert r.status_code == 201
    task = r.get_json()["task"]
    assert task["status"] == "todo"
    assert task["position"] == 1
    assert task["priority"] == "high"


def test_create_full_task_is_idempotent(client):
    payload = build_task("t1", "in-progress", 0).to_dict()
    assert client.post("/api/tasks", json=payload).status_code == 201
    assert client.post("/api/tasks", json=payload).status_code == 201
    assert len(client.get("/api/columns/in-progress").get_json()["tasks"]) == 1


@pytest.mark.parametrize("payload", [
    {"title": ""},
    {"title": "x", "status": "archived"},
    {"title": "x", "priority": "someday"},
])
def test_create_rejects_bad_payload(client, payload):
    assert client.post("/api/tasks", json=payload).status_code == 400


def test_patch_task(app, client):
    _seed(app, build_column("todo", "a"))
    r = client.patch("/api/tasks/a", json={"fields": {"status": "completed", "position": 0, "due_date": "2024-06-01"}})
    assert r.status_code == 200
    task = r.get_json()["task"]
    assert task["status"] == "completed"
    assert task["due_date"] == "2024-06-01"

    assert client.patch("/api/tasks/missing", json={"fields": {"position": 0}}).status_code == 404
    assert client.patch("/api/tasks/a", json={"fields": {"colour": "red"}}).status_code == 400
    assert client.patch("/api/tasks/a", json={"fields": {"status": "archived"}}).status_code == 400
    assert client.patch("/api/tasks/a", json={"fields": {"position": -1}}).status_code == 400
    assert client.patch("/api/tasks/a", json={"fields": {"priority": "someday"}}).status_code == 400
    assert client.patch("/api/tasks/a", json={"fields": {}}).status_code == 400


def test_delete_task(app, client):
    _seed(app, build_column("todo", "a"))
    assert client.delete("/api/tasks/a").get_json() == {"deleted": True}
    assert client.delete("/api/tasks/a").get_json() == {"deleted": False}


def test_changes_feed(app, client):
    client.post("/api/tasks", json={"title": "one"}, headers={"X-Client-Id": "alice"})
    client.post("/api/tasks", json={"title": "two"}, headers={"X-Client-Id": "bob"})

    everything = client.get("/api/changes?since=0").get_json()
    assert len(everything["changes"]) == 2

    for_alice = client.get("/api/changes?since=0&origin=alice").get_json()
    assert [c["origin"] for c in for_alice["changes"]] == ["bob"]
    assert for_alice["latest"] == everything["latest"]

    assert client.get("/api/changes?since=abc").status_code == 400


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Auth
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_writes_require_key_when_secret_set(db_path):
    client = create_app(db_path, api_secret="s3cret").test_client()

    assert client.post("/api/tasks", json={"title": "x"}).status_code == 401
    assert client.post("/api/tasks", json={"title": "x"}, headers={"X-API-Key": "wrong"}).status_code == 403
    assert client.post("/api/tasks", json={"title": "x"}, headers={"X-API-Key": "s3cret"}).status_code == 201
    # Reads stay open
    assert client.get("/api/board").status_code == 200


def test_four_column_board(db_path):
    board = BoardConfig.from_dict({"board": {"preset": "four-column"}})
    client = create_app(db_path, board, api_secret="").test_client()
    data = client.get("/api/board").get_json()
    assert list(data["columns"]) == ["todo", "in_progress", "review", "done"]
    assert data["columns"]["review"]["title"] == "Review"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# HTTP gateway against the real app
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _route_to(client, gateway):
    """Send the gateway's requests through the Flask test client."""
    def request(method, url, timeout=None, json=None, params=None):
        with _client_lock:
            r = client.open(
                url[len(BASE):],
                method=method,
                json=json,
                query_string=params,
                headers={k: v for k, v in gateway.session.headers.items() if k.startswith("X-")},
            )
        response = MagicMock()
        response.ok = r.status_code < 400
        response.status_code = r.status_code
        response.json.return_value = r.get_json()
        return response
    return request


def test_executor_over_http(app, client):
    """Moves made by one client reach another through the change feed"""
    _seed(app, build_column("todo", "A", "B", "C"))

    async def scenario():
        gw_one = HttpSyncGateway(BASE, client_id="one")
        gw_two = HttpSyncGateway(BASE, client_id="two")
        with patch.object(gw_one.session, "request", side_effect=_route_to(client, gw_one)), \
                patch.object(gw_two.session, "request", side_effect=_route_to(client, gw_two)):
            one = ReorderExecutor(TaskStore(), gw_one, ("todo", "in-progress", "completed"))
            two = ReorderExecutor(TaskStore(), gw_two, ("todo", "in-progress", "completed"))
            await one.load()
            await two.load()
            await gw_one.poll_changes()  # skip the seed history
            one.attach()

            await two.move("C", "in-progress")
            await two.move("A", "todo", 1)
            new_id = two.create("From client two")
            await two.drain()

            await gw_one.poll_changes()
            await one.drain()

        assert [t.task_id for t in one.list_column("todo")] == ["B", "A", new_id]
        assert [t.task_id for t in one.list_column("in-progress")] == ["C"]
        assert one.columns.density_violations() == []

    asyncio.run(scenario())
