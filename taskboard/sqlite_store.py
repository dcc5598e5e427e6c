"""
SQLite storage for the authoritative board.

SQLiteTaskTable is the synchronous table used by board_server.py and by
SQLiteSyncGateway. Every write appends a row to board_changes, tagged with
the writer's origin, so other clients can discover what changed since they
last looked.
"""
import asyncio
import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional

from .gateway import SyncGateway, serialize_fields
from .schema import Task, PersistenceError, utc_now

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path.home() / ".local" / "share" / "taskboard" / "board.db"

_COLUMNS = (
    "task_id", "title", "description", "priority", "status", "position",
    "assignee", "due_date", "tags", "created_by", "created_at", "updated_at",
)


@contextmanager
def _connect(db_path: str) -> Iterator[sqlite3.Connection]:
    """Open a WAL-mode connection; commit on success, always close."""
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA journal_mode = WAL")
        with conn:
            yield conn
    finally:
        conn.close()


class SQLiteTaskTable:
    """SQLite-backed task table with an append-only change log."""

    def __init__(self, db_path: Optional[str] = None):
        """Initialize table and create schema if needed."""
        if db_path is None:
            db_path = str(DEFAULT_DB_PATH)
        self.db_path = str(db_path)
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self):
        with _connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS board_tasks (
                    task_id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    description TEXT DEFAULT '',
                    priority TEXT DEFAULT 'medium',
                    status TEXT NOT NULL,
                    position INTEGER NOT NULL DEFAULT 0,
                    assignee TEXT,
                    due_date TEXT,
                    tags TEXT,  -- JSON list
                    created_by TEXT DEFAULT '',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS board_changes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id TEXT,
                    status TEXT NOT NULL,
                    origin TEXT DEFAULT '',
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status ON board_tasks(status, position)")

    # ── Reads ──

    def list_partition(self, status: str) -> List[Task]:
        """All tasks of one status, ordered by position."""
        with _connect(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM board_tasks WHERE status = ? ORDER BY position ASC, task_id ASC",
                (status,)
            ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def list_all(self) -> List[Task]:
        with _connect(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM board_tasks ORDER BY status ASC, position ASC, task_id ASC"
            ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def get(self, task_id: str) -> Optional[Task]:
        with _connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM board_tasks WHERE task_id = ?", (task_id,)
            ).fetchone()
        return self._row_to_task(row) if row else None

    def changes_since(self, since_id: int = 0, exclude_origin: Optional[str] = None, limit: int = 500) -> List[Dict[str, Any]]:
        """Change log entries after `since_id`, oldest first."""
        with _connect(self.db_path) as conn:
            if exclude_origin:
                rows = conn.execute(
                    "SELECT * FROM board_changes WHERE id > ? AND origin != ? ORDER BY id ASC LIMIT ?",
                    (since_id, exclude_origin, limit)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM board_changes WHERE id > ? ORDER BY id ASC LIMIT ?",
                    (since_id, limit)
                ).fetchall()
        return [dict(r) for r in rows]

    def latest_change_id(self) -> int:
        with _connect(self.db_path) as conn:
            row = conn.execute("SELECT MAX(id) FROM board_changes").fetchone()
        return row[0] or 0

    # ── Writes ──

    def upsert(self, task: Task, origin: str = "") -> Task:
        """Insert or replace a full task row."""
        data = task.to_dict()
        with _connect(self.db_path) as conn:
            previous = conn.execute(
                "SELECT status FROM board_tasks WHERE task_id = ?", (task.task_id,)
            ).fetchone()
            conn.execute(
                f"INSERT OR REPLACE INTO board_tasks ({', '.join(_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in _COLUMNS)})",
                tuple(json.dumps(data["tags"]) if c == "tags" else data[c] for c in _COLUMNS),
            )
            statuses = {task.status}
            if previous is not None:
                statuses.add(previous["status"])
            self._log_changes(conn, task.task_id, statuses, origin)
        return task

    def update_fields(self, task_id: str, fields: Mapping[str, Any], origin: str = "") -> Optional[Task]:
        """Partial update. Returns the new row, or None when the task is gone."""
        changes = serialize_fields(fields)
        changes["updated_at"] = utc_now().isoformat()
        if "tags" in changes:
            changes["tags"] = json.dumps(changes["tags"])
        with _connect(self.db_path) as conn:
            previous = conn.execute(
                "SELECT status FROM board_tasks WHERE task_id = ?", (task_id,)
            ).fetchone()
            if previous is None:
                return None
            assignments = ", ".join(f"{key} = ?" for key in changes)
            conn.execute(
                f"UPDATE board_tasks SET {assignments} WHERE task_id = ?",
                (*changes.values(), task_id),
            )
            statuses = {previous["status"], changes.get("status", previous["status"])}
            self._log_changes(conn, task_id, statuses, origin)
        return self.get(task_id)

    def delete(self, task_id: str, origin: str = "") -> bool:
        """Delete a task. Returns False when it did not exist."""
        with _connect(self.db_path) as conn:
            previous = conn.execute(
                "SELECT status FROM board_tasks WHERE task_id = ?", (task_id,)
            ).fetchone()
            if previous is None:
                return False
            conn.execute("DELETE FROM board_tasks WHERE task_id = ?", (task_id,))
            self._log_changes(conn, task_id, {previous["status"]}, origin)
        return True

    def _log_changes(self, conn: sqlite3.Connection, task_id: str, statuses, origin: str) -> None:
        now = utc_now().isoformat()
        for status in sorted(statuses):
            conn.execute(
                "INSERT INTO board_changes (task_id, status, origin, created_at) VALUES (?, ?, ?, ?)",
                (task_id, status, origin or "", now),
            )

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        """Convert a database row to a Task. Raises MalformedTaskError."""
        data = dict(row)
        if data.get("tags"):
            try:
                data["tags"] = json.loads(data["tags"])
            except (json.JSONDecodeError, TypeError):
                data["tags"] = []
        return Task.from_dict(data)


class SQLiteSyncGateway(SyncGateway):
    """
    Gateway over a shared SQLite file.

    Blocking sqlite calls run in a worker thread. Changes made by other
    origins are discovered by poll_changes() (or the watch() loop) and
    dispatched to on_remote_change handlers.
    """

    def __init__(self, db_path: Optional[str] = None, client_id: Optional[str] = None, poll_interval: float = 2.0):
        super().__init__()
        self.table = SQLiteTaskTable(db_path)
        self.client_id = client_id or f"client-{uuid.uuid4().hex[:8]}"
        self.poll_interval = poll_interval
        self._last_change_id = self.table.latest_change_id()
        self._watcher: Optional[asyncio.Task] = None

    async def _call(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as e:
            raise PersistenceError(f"SQLite error: {e}") from e

    async def fetch_partition(self, status: str) -> List[Task]:
        return await self._call(self.table.list_partition, status)

    async def persist(self, task_id: str, fields: Mapping[str, Any]) -> Optional[Task]:
        task = await self._call(self.table.update_fields, task_id, dict(fields), self.client_id)
        if task is None:
            raise PersistenceError(f"Task {task_id} does not exist remotely")
        return task

    async def insert(self, task: Task) -> Optional[Task]:
        return await self._call(self.table.upsert, task, self.client_id)

    async def remove(self, task_id: str) -> None:
        await self._call(self.table.delete, task_id, self.client_id)

    async def poll_changes(self) -> List[str]:
        """Dispatch changes other origins made since the last poll."""
        changes = await self._call(self.table.changes_since, self._last_change_id, self.client_id)
        if not changes:
            return []
        self._last_change_id = max(c["id"] for c in changes)
        statuses = sorted({c["status"] for c in changes})
        self.notify_remote_change(statuses)
        return statuses

    async def watch(self) -> None:
        """Poll forever; cancel the task to stop."""
        while True:
            try:
                await self.poll_changes()
            except PersistenceError as e:
                logger.warning(f"Change poll failed: {e}")
            await asyncio.sleep(self.poll_interval)

    def start_watching(self) -> asyncio.Task:
        if self._watcher is None or self._watcher.done():
            self._watcher = asyncio.get_running_loop().create_task(self.watch())
        return self._watcher

    async def close(self) -> None:
        if self._watcher is not None:
            self._watcher.cancel()
            try:
                await self._watcher
            except asyncio.CancelledError:
                pass
            self._watcher = None
