"""
Move planner: computes the position/status reassignments for one drop.

Pure functions only. Given the current ordered columns, plan_move returns the
assignments that put a task at a target index of a target column while
keeping every touched column dense (positions 0..n-1). Nothing is written;
the executor decides when and how to apply and persist the plan.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .schema import Task, TaskNotFoundError, UnknownStatusError


@dataclass(frozen=True)
class Assignment:
    """Set `status` and `position` for one task. Naturally idempotent."""
    task_id: str
    status: str
    position: int

    def fields(self) -> Dict[str, Any]:
        return {"status": self.status, "position": self.position}

    def to_dict(self) -> Dict[str, Any]:
        return {"task_id": self.task_id, "status": self.status, "position": self.position}


@dataclass
class MovePlan:
    task_id: str
    source_status: str
    target_status: str
    target_index: int
    assignments: List[Assignment] = field(default_factory=list)
    appended: bool = False          # target index could not be resolved

    @property
    def same_column(self) -> bool:
        return self.source_status == self.target_status

    @property
    def touched_statuses(self) -> Tuple[str, ...]:
        if self.same_column:
            return (self.source_status,)
        return (self.source_status, self.target_status)

    @property
    def task_ids(self) -> Tuple[str, ...]:
        return tuple(a.task_id for a in self.assignments)

    def is_empty(self) -> bool:
        return not self.assignments

    def summary(self) -> Dict[str, int]:
        source = sum(1 for a in self.assignments if a.status == self.source_status)
        return {
            "total": len(self.assignments),
            "source": source if not self.same_column else 0,
            "target": len(self.assignments) - (source if not self.same_column else 0),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "source_status": self.source_status,
            "target_status": self.target_status,
            "target_index": self.target_index,
            "appended": self.appended,
            "summary": self.summary(),
            "assignments": [a.to_dict() for a in self.assignments],
        }


def renumber(tasks: Sequence[Task], status: str) -> List[Assignment]:
    """Assign positions 0..len-1 (and `status`) over an ordered list."""
    return [Assignment(t.task_id, status, i) for i, t in enumerate(tasks)]


def _changed(assignments: Iterable[Assignment], current: Mapping[str, Task]) -> List[Assignment]:
    result = []
    for a in assignments:
        task = current.get(a.task_id)
        if task is None or task.status != a.status or task.position != a.position:
            result.append(a)
    return result


def resolve_drop_index(column: Sequence[Task], over_task_id: Optional[str], moving_task_id: str) -> Optional[int]:
    """
    Translate "dropped onto task X" into an index of the destination column.

    The moving task is ignored when counting. Returns None when the reference
    task is gone (for example deleted by another viewer mid-drag); the planner
    then appends.
    """
    if over_task_id is None:
        return None
    remaining = [t for t in column if t.task_id != moving_task_id]
    for index, task in enumerate(remaining):
        if task.task_id == over_task_id:
            return index
    return None


def plan_move(
    columns: Mapping[str, Sequence[Task]],
    task_id: str,
    target_status: str,
    target_index: Optional[int] = None,
) -> MovePlan:
    """
    Plan moving `task_id` to `target_index` of `target_status`.

    `columns` maps each status to its current ordering (as produced by
    ColumnPartitioner.snapshot). target_index is clamped to
    [0, destination count]; None appends to the end.
    """
    if target_status not in columns:
        raise UnknownStatusError(f"Unknown status: '{target_status}'")

    task = None
    for status, column in columns.items():
        for candidate in column:
            if candidate.task_id == task_id:
                task = candidate
                break
        if task is not None:
            break
    if task is None:
        raise TaskNotFoundError(task_id)

    source_status = task.status
    source_list = [t for t in columns.get(source_status, []) if t.task_id != task_id]
    same_column = source_status == target_status

    dest_base = list(source_list) if same_column else [t for t in columns[target_status] if t.task_id != task_id]
    dest_count = len(dest_base)

    appended = not isinstance(target_index, int) or isinstance(target_index, bool)
    index = dest_count if appended else max(0, min(target_index, dest_count))
    dest_list = dest_base[:index] + [task] + dest_base[index:]

    assignments: List[Assignment] = []
    if not same_column:
        assignments.extend(renumber(source_list, source_status))
    assignments.extend(renumber(dest_list, target_status))

    current = {t.task_id: t for column in columns.values() for t in column}
    return MovePlan(
        task_id=task_id,
        source_status=source_status,
        target_status=target_status,
        target_index=index,
        assignments=_changed(assignments, current),
        appended=appended,
    )


def plan_removal(column: Sequence[Task], task_id: str) -> List[Assignment]:
    """Assignments that close the gap left in `column` by removing `task_id`."""
    if not any(t.task_id == task_id for t in column):
        raise TaskNotFoundError(task_id)
    remaining = [t for t in column if t.task_id != task_id]
    if not remaining:
        return []
    status = remaining[0].status
    return _changed(renumber(remaining, status), {t.task_id: t for t in remaining})


def apply_plan(tasks: Iterable[Task], assignments: Iterable[Assignment]) -> List[Task]:
    """Return copies of `tasks` with the assignments applied."""
    by_id = {a.task_id: a for a in assignments}
    result = []
    for task in tasks:
        a = by_id.get(task.task_id)
        if a is not None:
            task = task.clone(status=a.status, position=a.position)
        result.append(task)
    return result
