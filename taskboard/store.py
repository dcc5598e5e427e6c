"""
In-memory task store.

Holds the canonical local copy of every task keyed by id. It knows nothing
about ordering; callers (the executor) are responsible for keeping positions
dense. Every stored task is a private copy so outside code cannot mutate
store state behind its back.
"""
from typing import Dict, Iterable, Iterator, List, Optional

from .events import BoardEventBus, TASK_CHANGED, TASK_REMOVED, PARTITION_REPLACED
from .schema import Task, TaskNotFoundError


class TaskStore:
    """Canonical in-memory list of tasks with change notifications."""

    def __init__(self, tasks: Optional[Iterable[Task]] = None, bus: Optional[BoardEventBus] = None):
        self.bus = bus or BoardEventBus()
        self._tasks: Dict[str, Task] = {}
        for task in tasks or []:
            self._tasks[task.task_id] = task.clone()

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __iter__(self) -> Iterator[Task]:
        return iter(self.all())

    def all(self) -> List[Task]:
        """Copies of all tasks, in insertion order."""
        return [t.clone() for t in self._tasks.values()]

    def get(self, task_id: str) -> Task:
        """Return a copy of the task. Raises TaskNotFoundError."""
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task.clone()

    def find(self, task_id: str) -> Optional[Task]:
        task = self._tasks.get(task_id)
        return task.clone() if task else None

    def upsert(self, task: Task) -> None:
        """Insert or replace a task by id."""
        self._tasks[task.task_id] = task.clone()
        self.bus.emit(TASK_CHANGED, task_id=task.task_id, status=task.status)

    def remove(self, task_id: str) -> Task:
        """Remove and return a task. Raises TaskNotFoundError."""
        task = self._tasks.pop(task_id, None)
        if task is None:
            raise TaskNotFoundError(task_id)
        self.bus.emit(TASK_REMOVED, task_id=task_id, status=task.status)
        return task

    def replace_partition(self, status: str, tasks: Iterable[Task]) -> None:
        """
        Swap every task of one status for an authoritative list.

        Tasks currently in `status` that are absent from `tasks` are dropped;
        fetched tasks overwrite any local copy with the same id, whatever
        column that copy was in.
        """
        fetched = [t.clone() for t in tasks]
        fetched_ids = {t.task_id for t in fetched}
        for task_id in [tid for tid, t in self._tasks.items() if t.status == status]:
            if task_id not in fetched_ids:
                del self._tasks[task_id]
        for task in fetched:
            self._tasks[task.task_id] = task
        self.bus.emit(PARTITION_REPLACED, status=status, task_ids=sorted(fetched_ids))
