"""
Column partitioner: ordered per-status views derived from the task store.

Nothing here mutates the store. Views are recomputed on every call, which is
fine for boards of a few hundred tasks.
"""
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence

from .schema import Task, TaskPriority, UnknownStatusError
from .store import TaskStore


def order_key(task: Task):
    """Sort key for a column: position first, id breaks ties deterministically."""
    return (task.position, task.task_id)


def order_column(tasks: Iterable[Task], status: str) -> List[Task]:
    return sorted((t for t in tasks if t.status == status), key=order_key)


def is_dense(tasks: Sequence[Task]) -> bool:
    """True when positions are exactly 0..len-1 with no gaps or duplicates."""
    return sorted(t.position for t in tasks) == list(range(len(tasks)))


class ColumnPartitioner:
    """Derives ordered column views and board statistics from a TaskStore."""

    def __init__(self, store: TaskStore, statuses: Sequence[str]):
        if not statuses:
            raise ValueError("At least one status column is required")
        self.store = store
        self.statuses = tuple(statuses)

    def check_status(self, status: str) -> str:
        if status not in self.statuses:
            raise UnknownStatusError(
                f"Unknown status: '{status}'. Allowed: {', '.join(self.statuses)}"
            )
        return status

    def by_status(self, status: str) -> List[Task]:
        """Tasks with that status, ascending by position."""
        self.check_status(status)
        return order_column(self.store.all(), status)

    def snapshot(self, statuses: Optional[Iterable[str]] = None) -> Dict[str, List[Task]]:
        """Ordered columns for the given statuses (all configured ones by default)."""
        wanted = list(statuses) if statuses is not None else list(self.statuses)
        for status in wanted:
            self.check_status(status)
        tasks = self.store.all()
        return {status: order_column(tasks, status) for status in wanted}

    def counts(self) -> Dict[str, int]:
        counts = {status: 0 for status in self.statuses}
        for task in self.store.all():
            if task.status in counts:
                counts[task.status] += 1
        return counts

    def check_density(self, status: str) -> bool:
        return is_dense(self.by_status(status))

    def density_violations(self) -> List[str]:
        """Statuses whose positions are not 0..count-1."""
        return [s for s, tasks in self.snapshot().items() if not is_dense(tasks)]

    def filter_tasks(
        self,
        status: Optional[str] = None,
        assignee: Optional[str] = None,
        priority: Optional[str] = None,
        tag: Optional[str] = None,
        search: Optional[str] = None,
    ) -> List[Task]:
        """Board-wide filter, ordered by column then position."""
        if status is not None:
            self.check_status(status)
        wanted_priority = TaskPriority.from_str(priority) if priority else None
        needle = search.lower().strip() if search else ""
        column_index = {s: i for i, s in enumerate(self.statuses)}

        result = []
        for task in self.store.all():
            if status is not None and task.status != status:
                continue
            if assignee is not None and task.assignee != assignee:
                continue
            if wanted_priority is not None and task.priority != wanted_priority:
                continue
            if tag is not None and tag not in task.tags:
                continue
            if needle and needle not in task.title.lower() and needle not in (task.description or "").lower():
                continue
            result.append(task)
        result.sort(key=lambda t: (column_index.get(t.status, len(column_index)), t.position, t.task_id))
        return result

    def board_stats(self, today: Optional[date] = None) -> Dict[str, object]:
        """Totals grouped by column, priority and assignee."""
        by_priority = {p.value: 0 for p in TaskPriority}
        by_assignee: Dict[str, int] = {}
        overdue = 0
        tasks = self.store.all()
        for task in tasks:
            by_priority[task.priority.value] += 1
            if task.assignee:
                by_assignee[task.assignee] = by_assignee.get(task.assignee, 0) + 1
            if task.is_overdue(today) and task.status != self.statuses[-1]:
                overdue += 1
        return {
            "total": len(tasks),
            "by_status": self.counts(),
            "by_priority": by_priority,
            "by_assignee": by_assignee,
            "overdue": overdue,
        }
