"""
Sync gateway port: the remote persistence and notification channel.

The executor only talks to the abstract SyncGateway. Concrete gateways:
    InMemorySyncGateway  - process-local, used by tests and demos
    SQLiteSyncGateway    - sqlite_store.py
    HttpSyncGateway      - http_gateway.py (talks to board_server.py)
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .schema import Task, TaskPriority, PersistenceError, EDITABLE_FIELDS, normalize_tags, utc_now

logger = logging.getLogger(__name__)

# Fields persist() accepts; anything else is a programming error.
PERSISTABLE_FIELDS = frozenset(EDITABLE_FIELDS) | {"status", "position"}

RemoteChangeHandler = Callable[[str], Any]


class SyncGateway(ABC):
    """Abstract remote store. All I/O methods are coroutines."""

    def __init__(self):
        self._change_handlers: Dict[str, List[RemoteChangeHandler]] = {}

    @abstractmethod
    async def fetch_partition(self, status: str) -> List[Task]:
        """Authoritative ordered list of one status column."""

    @abstractmethod
    async def persist(self, task_id: str, fields: Mapping[str, Any]) -> Optional[Task]:
        """Idempotent partial update. May return the authoritative row."""

    @abstractmethod
    async def insert(self, task: Task) -> Optional[Task]:
        """Create a task (idempotent on task_id)."""

    @abstractmethod
    async def remove(self, task_id: str) -> None:
        """Delete a task. Deleting a missing task is not an error."""

    async def close(self) -> None:
        pass

    def on_remote_change(self, status: str, handler: RemoteChangeHandler) -> Callable[[], None]:
        """Call `handler(status)` when another actor alters that column."""
        self._change_handlers.setdefault(status, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._change_handlers.get(status, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def notify_remote_change(self, statuses: Iterable[str]) -> None:
        """Dispatch change notices to registered handlers."""
        for status in sorted(set(statuses)):
            for handler in list(self._change_handlers.get(status, [])):
                try:
                    handler(status)
                except Exception as e:
                    logger.error(f"Remote change handler failed for {status}: {e}")


def check_fields(fields: Mapping[str, Any]) -> Dict[str, Any]:
    unknown = set(fields) - PERSISTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown fields: {', '.join(sorted(unknown))}")
    return dict(fields)


def serialize_fields(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """JSON-friendly copy of a persist() payload."""
    result: Dict[str, Any] = {}
    for key, value in check_fields(fields).items():
        if isinstance(value, TaskPriority):
            value = value.value
        elif isinstance(value, date):
            value = value.isoformat()
        elif key == "tags":
            value = normalize_tags(value)
        result[key] = value
    return result


class InMemorySyncGateway(SyncGateway):
    """
    Process-local gateway. Rows are kept as dicts so every fetch hands out
    fresh Task objects, the same way a real remote would.
    """

    def __init__(self, tasks: Optional[Iterable[Task]] = None, latency: float = 0.0):
        super().__init__()
        self.latency = latency
        self.rows: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        for task in tasks or []:
            self.rows[task.task_id] = task.to_dict()

    async def _io(self, *call) -> None:
        self.calls.append(call)
        if self.latency:
            await asyncio.sleep(self.latency)
        else:
            await asyncio.sleep(0)

    async def fetch_partition(self, status: str) -> List[Task]:
        await self._io("fetch_partition", status)
        tasks = [Task.from_dict(row) for row in self.rows.values() if row["status"] == status]
        return sorted(tasks, key=lambda t: (t.position, t.task_id))

    async def persist(self, task_id: str, fields: Mapping[str, Any]) -> Optional[Task]:
        changes = serialize_fields(fields)
        await self._io("persist", task_id, changes)
        row = self.rows.get(task_id)
        if row is None:
            raise PersistenceError(f"Task {task_id} does not exist remotely")
        updated = {**row, **changes, "updated_at": utc_now().isoformat()}
        self.rows[task_id] = Task.from_dict(updated).to_dict()
        return Task.from_dict(self.rows[task_id])

    async def insert(self, task: Task) -> Optional[Task]:
        await self._io("insert", task.task_id)
        self.rows[task.task_id] = task.to_dict()
        return Task.from_dict(self.rows[task.task_id])

    async def remove(self, task_id: str) -> None:
        await self._io("remove", task_id)
        self.rows.pop(task_id, None)

    # ── Simulating other clients ──

    def remote_write(self, task: Task) -> None:
        """Another actor writes a row; subscribers of its columns are told."""
        previous = self.rows.get(task.task_id)
        self.rows[task.task_id] = task.to_dict()
        statuses = {task.status}
        if previous is not None:
            statuses.add(previous["status"])
        self.notify_remote_change(statuses)

    def remote_delete(self, task_id: str) -> None:
        previous = self.rows.pop(task_id, None)
        if previous is not None:
            self.notify_remote_change([previous["status"]])
