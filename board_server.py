#!/usr/bin/env python3
"""
Task Board Server
-----------------
Authoritative board store behind a JSON API. Board clients talk to it
through taskboard.http_gateway.HttpSyncGateway; every write is recorded in
the change log so other clients can poll for what changed.

Usage:
    python board_server.py --db ~/.local/share/taskboard/board.db
    python board_server.py --config taskboard.yaml --host 0.0.0.0

API:
    GET    /api/columns/<status>     → { status, title, tasks }  (ordered)
    GET    /api/board                → { columns, stats }
    GET    /api/tasks?status=&assignee=&priority=&tag=&q=
                                     → { tasks, count }
    GET    /api/stats                → board statistics
    POST   /api/tasks                → create (full task or just a title)
    PATCH  /api/tasks/<id>           → JSON body: { fields: {...} }
    DELETE /api/tasks/<id>           → { deleted }
    GET    /api/changes?since=<id>&origin=<client>
                                     → { changes, latest }
    GET    /health

Writes require X-API-Key when TASKBOARD_API_SECRET is set.
"""

import hmac
import logging
import os
from functools import wraps
from pathlib import Path
from typing import Optional

from flask import Flask, current_app, jsonify, request

from taskboard.columns import ColumnPartitioner
from taskboard.config import BoardConfig, configure_logging
from taskboard.gateway import check_fields
from taskboard.schema import (
    Task,
    TaskPriority,
    MalformedTaskError,
    PreconditionError,
    _parse_date,
    make_task_id,
    normalize_tags,
    utc_now,
)
from taskboard.sqlite_store import DEFAULT_DB_PATH, SQLiteTaskTable
from taskboard.store import TaskStore

logger = logging.getLogger(__name__)

SECRET_ENV = "TASKBOARD_API_SECRET"
CLIENT_HEADER = "X-Client-Id"


# ── Auth ─────────────────────────────────────────────────────────────────────

def require_api_key(f):
    """Decorator: when a secret is configured, reject writes without a valid X-API-Key."""
    @wraps(f)
    def decorated(*args, **kwargs):
        secret = current_app.config.get("API_SECRET", "")
        if not secret:
            return f(*args, **kwargs)
        provided = request.headers.get("X-API-Key", "").strip()
        if not hmac.compare_digest(provided, secret):
            code = 401 if not provided else 403
            return jsonify({"error": "Unauthorized"}), code
        return f(*args, **kwargs)
    return decorated


# ── Helpers ──────────────────────────────────────────────────────────────────

def _table() -> SQLiteTaskTable:
    return current_app.config["TABLE"]


def _board() -> BoardConfig:
    return current_app.config["BOARD"]


def _origin() -> str:
    return request.headers.get(CLIENT_HEADER, "").strip()


def _partitioner() -> ColumnPartitioner:
    board = _board()
    tasks = [t for t in _table().list_all() if t.status in board.columns]
    return ColumnPartitioner(TaskStore(tasks), board.columns)


def _error(message: str, code: int):
    return jsonify({"error": message}), code


def _new_task(data: dict) -> Task:
    """Build a task from a POST body; a bare {title} gets an id and an end slot."""
    board = _board()
    title = str(data.get("title") or "").strip()
    if not title:
        raise MalformedTaskError("title is required")
    if data.get("task_id"):
        task = Task.from_dict({**data, "title": title, "status": data.get("status") or board.default_status or board.columns[0]})
    else:
        status = data.get("status") or board.default_status or board.columns[0]
        now = utc_now().isoformat()
        task = Task.from_dict({
            **data,
            "task_id": make_task_id(),
            "title": title,
            "status": status,
            "position": len(_table().list_partition(status)),
            "created_at": now,
            "updated_at": now,
        })
    if task.status not in board.columns:
        raise MalformedTaskError(f"Unknown status: '{task.status}'. Allowed: {', '.join(board.columns)}")
    return task


# ── App ──────────────────────────────────────────────────────────────────────

def create_app(db_path: Optional[str] = None, board: Optional[BoardConfig] = None,
               api_secret: Optional[str] = None) -> Flask:
    app = Flask(__name__)
    app.json.sort_keys = False  # keep column order
    app.config["TABLE"] = SQLiteTaskTable(db_path or os.environ.get("TASKBOARD_DB") or str(DEFAULT_DB_PATH))
    app.config["BOARD"] = board or BoardConfig().validate()
    app.config["API_SECRET"] = api_secret if api_secret is not None else os.environ.get(SECRET_ENV, "")

    @app.route("/api/columns/<status>")
    def api_column(status):
        if status not in _board().columns:
            return _error(f"Unknown status: {status}", 404)
        tasks = _table().list_partition(status)
        return jsonify({
            "status": status,
            "title": _board().title_for(status),
            "tasks": [t.to_dict() for t in tasks],
        })

    @app.route("/api/board")
    def api_board():
        board = _board()
        partitioner = _partitioner()
        columns = {
            status: {
                "title": board.title_for(status),
                "tasks": [t.to_dict() for t in tasks],
            }
            for status, tasks in partitioner.snapshot().items()
        }
        return jsonify({"columns": columns, "stats": partitioner.board_stats()})

    @app.route("/api/tasks", methods=["GET"])
    def api_tasks():
        try:
            tasks = _partitioner().filter_tasks(
                status=request.args.get("status"),
                assignee=request.args.get("assignee"),
                priority=request.args.get("priority"),
                tag=request.args.get("tag"),
                search=request.args.get("q"),
            )
        except PreconditionError as e:
            return _error(str(e), 400)
        return jsonify({"tasks": [t.to_dict() for t in tasks], "count": len(tasks)})

    @app.route("/api/stats")
    def api_stats():
        return jsonify(_partitioner().board_stats())

    @app.route("/api/tasks", methods=["POST"])
    @require_api_key
    def api_create_task():
        data = request.get_json(force=True, silent=True)
        if not isinstance(data, dict):
            return _error("JSON object body required", 400)
        try:
            task = _new_task(data)
        except MalformedTaskError as e:
            return _error(str(e), 400)
        _table().upsert(task, origin=_origin())
        logger.info(f"Created {task.task_id} in {task.status}")
        return jsonify({"task": task.to_dict(), "id": task.task_id}), 201

    @app.route("/api/tasks/<task_id>", methods=["PATCH"])
    @require_api_key
    def api_update_task(task_id):
        data = request.get_json(force=True, silent=True)
        if not isinstance(data, dict):
            return _error("JSON object body required", 400)
        fields = data.get("fields", data)
        if not isinstance(fields, dict) or not fields:
            return _error("fields must be a non-empty object", 400)
        try:
            check_fields(fields)
        except ValueError as e:
            return _error(str(e), 400)
        if "status" in fields and fields["status"] not in _board().columns:
            return _error(f"Unknown status: {fields['status']}", 400)
        if "position" in fields and (not isinstance(fields["position"], int) or fields["position"] < 0):
            return _error("position must be a non-negative integer", 400)
        if "title" in fields and not str(fields["title"] or "").strip():
            return _error("title is required", 400)
        try:
            if "priority" in fields:
                fields["priority"] = TaskPriority.from_str(fields["priority"]).value
            if "due_date" in fields:
                fields["due_date"] = _parse_date(fields["due_date"])
        except (ValueError, TypeError) as e:
            return _error(str(e), 400)
        if "tags" in fields:
            fields["tags"] = normalize_tags(fields["tags"])

        task = _table().update_fields(task_id, fields, origin=_origin())
        if task is None:
            return _error("Task not found", 404)
        return jsonify({"task": task.to_dict()})

    @app.route("/api/tasks/<task_id>", methods=["DELETE"])
    @require_api_key
    def api_delete_task(task_id):
        deleted = _table().delete(task_id, origin=_origin())
        return jsonify({"deleted": deleted})

    @app.route("/api/changes")
    def api_changes():
        try:
            since = int(request.args.get("since", 0))
        except ValueError:
            return _error("since must be an integer", 400)
        table = _table()
        latest = table.latest_change_id()
        changes = table.changes_since(since, exclude_origin=request.args.get("origin") or None)
        if changes:
            latest = changes[-1]["id"]
        return jsonify({"changes": changes, "latest": max(latest, since)})

    @app.route("/health")
    def health():
        return jsonify({"status": "ok", "db": _table().db_path, "columns": _board().columns})

    return app


# ── Main ─────────────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Task Board Server")
    parser.add_argument("--host", default="127.0.0.1",
                        help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int, default=3000)
    parser.add_argument("--db", help="Path to board.db (overrides TASKBOARD_DB env var)")
    parser.add_argument("--config", help="Path to taskboard.yaml (overrides TASKBOARD_CONFIG)")
    args = parser.parse_args()

    board = BoardConfig.load(args.config)
    configure_logging(board.log_level, "board-server")
    db_path = args.db or os.environ.get("TASKBOARD_DB") or str(Path(board.db_path).expanduser())
    app = create_app(db_path, board)

    print(f"""
╔═══════════════════════════════════════╗
║  Task Board Server                    ║
╠═══════════════════════════════════════╣
║  URL:  http://{args.host}:{args.port:<20}║
║  DB:   {db_path:<31}║
║  Cols: {', '.join(board.columns):<31}║
╚═══════════════════════════════════════╝
""")
    if not app.config["API_SECRET"]:
        logger.warning(f"{SECRET_ENV} not set; write endpoints are open")

    app.run(host=args.host, port=args.port, debug=False, threaded=True)
