"""
Tests for the board model: schema, event bus, task store, column views, workflow.
"""
from datetime import date

import pytest

from taskboard.columns import ColumnPartitioner, is_dense
from taskboard.events import BoardEventBus, TASK_CHANGED, TASK_REMOVED, PARTITION_REPLACED
from taskboard.schema import (
    Task,
    TaskPriority,
    InvalidTaskError,
    MalformedTaskError,
    PreconditionError,
    TaskNotFoundError,
    TransitionNotAllowed,
    UnknownStatusError,
    ConfigError,
    make_task_id,
    normalize_tags,
)
from taskboard.store import TaskStore
from taskboard.workflow import TransitionPolicy

from conftest import build_task, build_column

STATUSES = ("todo", "in-progress", "completed")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Schema Tests
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_task_defaults():
    """New tasks start in todo at position 0 with medium priority"""
    task = Task(task_id="t1", title="Write docs")
    assert task.status == "todo"
    assert task.position == 0
    assert task.priority == TaskPriority.MEDIUM
    assert task.tags == []


def test_task_serialization():
    """to_dict produces JSON-friendly values and from_dict restores them"""
    task = build_task(
        "t1", "in-progress", 2,
        priority=TaskPriority.HIGH,
        due_date=date(2024, 2, 1),
        tags=["ui", "backend", "ui"],
        assignee="sam",
    )
    data = task.to_dict()
    assert data["priority"] == "high"
    assert data["due_date"] == "2024-02-01"
    assert data["tags"] == ["backend", "ui"]

    restored = Task.from_dict(data)
    assert restored.task_id == "t1"
    assert restored.status == "in-progress"
    assert restored.position == 2
    assert restored.priority == TaskPriority.HIGH
    assert restored.due_date == date(2024, 2, 1)
    assert restored.created_at == task.created_at


@pytest.mark.parametrize("payload", [
    "not a dict",
    {"title": "no id", "status": "todo"},
    {"task_id": "t1", "title": "x", "status": "todo", "priority": "critical"},
    {"task_id": "t1", "title": "x", "status": "todo", "position": "first"},
    {"task_id": "t1", "title": "x", "status": ""},
])
def test_malformed_payloads_rejected(payload):
    """Bad remote payloads raise MalformedTaskError"""
    with pytest.raises(MalformedTaskError):
        Task.from_dict(payload)


def test_priority_from_str():
    assert TaskPriority.from_str("URGENT") == TaskPriority.URGENT
    with pytest.raises(InvalidTaskError):
        TaskPriority.from_str("whenever")


def test_clone_does_not_share_tags():
    task = build_task("t1", tags=["a"])
    copy = task.clone(position=3)
    copy.tags.append("b")
    assert task.tags == ["a"]
    assert copy.position == 3


def test_overdue():
    task = build_task("t1", due_date=date(2024, 1, 10))
    assert task.is_overdue(date(2024, 1, 11))
    assert not task.is_overdue(date(2024, 1, 10))
    assert not build_task("t2").is_overdue(date(2024, 1, 11))


def test_helpers():
    assert make_task_id().startswith("task-")
    assert make_task_id() != make_task_id()
    assert normalize_tags([" b", "a", "b", ""]) == ["a", "b"]
    assert normalize_tags("solo") == ["solo"]


def test_error_taxonomy():
    """Precondition errors are ValueErrors so callers can catch either"""
    assert issubclass(TaskNotFoundError, PreconditionError)
    assert issubclass(UnknownStatusError, ValueError)
    assert str(TaskNotFoundError("t9")) == "Task t9 not found"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Event Bus Tests
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_event_subscribe_and_unsubscribe():
    bus = BoardEventBus()
    seen = []
    unsubscribe = bus.subscribe(TASK_CHANGED, lambda **kw: seen.append(kw))

    bus.emit(TASK_CHANGED, task_id="t1", status="todo")
    unsubscribe()
    bus.emit(TASK_CHANGED, task_id="t2", status="todo")

    assert seen == [{"task_id": "t1", "status": "todo"}]


def test_event_invalid_type():
    bus = BoardEventBus()
    with pytest.raises(ValueError):
        bus.subscribe("card_moved", lambda **kw: None)


def test_event_callback_errors_are_contained():
    """A failing subscriber does not stop the others"""
    bus = BoardEventBus()
    seen = []

    def broken(**kw):
        raise RuntimeError("boom")

    bus.subscribe(TASK_REMOVED, broken)
    bus.subscribe(TASK_REMOVED, lambda **kw: seen.append(kw["task_id"]))
    bus.emit(TASK_REMOVED, task_id="t1", status="todo")
    assert seen == ["t1"]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Store Tests
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_store_get_returns_copies():
    """Mutating a returned task does not touch the store"""
    store = TaskStore([build_task("t1")])
    task = store.get("t1")
    task.title = "changed"
    assert store.get("t1").title == "Task t1"


def test_store_upsert_and_remove():
    store = TaskStore()
    events = []
    store.bus.subscribe(TASK_CHANGED, lambda **kw: events.append(("changed", kw["task_id"])))
    store.bus.subscribe(TASK_REMOVED, lambda **kw: events.append(("removed", kw["task_id"])))

    store.upsert(build_task("t1"))
    assert "t1" in store
    assert len(store) == 1

    removed = store.remove("t1")
    assert removed.task_id == "t1"
    assert "t1" not in store
    assert events == [("changed", "t1"), ("removed", "t1")]


def test_store_missing_task():
    store = TaskStore()
    with pytest.raises(TaskNotFoundError):
        store.get("nope")
    with pytest.raises(TaskNotFoundError):
        store.remove("nope")
    assert store.find("nope") is None


def test_replace_partition():
    """Replacing a column drops vanished tasks and leaves other columns alone"""
    store = TaskStore(build_column("todo", "a", "b", "c") + build_column("completed", "d"))
    replaced = []
    store.bus.subscribe(PARTITION_REPLACED, lambda **kw: replaced.append(kw))

    store.replace_partition("todo", [build_task("c", "todo", 0), build_task("a", "todo", 1)])

    assert "b" not in store
    assert store.get("c").position == 0
    assert store.get("a").position == 1
    assert store.get("d").status == "completed"
    assert replaced == [{"status": "todo", "task_ids": ["a", "c"]}]


def test_replace_partition_moves_task_between_columns():
    """A fetched task that was locally in another column is overwritten by id"""
    store = TaskStore(build_column("todo", "a") + build_column("completed", "d"))
    store.replace_partition("completed", [build_task("a", "completed", 0), build_task("d", "completed", 1)])
    assert store.get("a").status == "completed"
    assert len(store) == 2


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Column Partitioner Tests
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_by_status_orders_by_position():
    store = TaskStore([
        build_task("b", "todo", 1),
        build_task("c", "todo", 2),
        build_task("a", "todo", 0),
        build_task("x", "completed", 0),
    ])
    columns = ColumnPartitioner(store, STATUSES)
    assert [t.task_id for t in columns.by_status("todo")] == ["a", "b", "c"]
    assert columns.by_status("in-progress") == []
    assert columns.counts() == {"todo": 3, "in-progress": 0, "completed": 1}


def test_unknown_status_rejected():
    columns = ColumnPartitioner(TaskStore(), STATUSES)
    with pytest.raises(UnknownStatusError):
        columns.by_status("archived")


def test_density():
    assert is_dense(build_column("todo", "a", "b", "c"))
    assert is_dense([])
    assert not is_dense([build_task("a", "todo", 0), build_task("b", "todo", 2)])

    store = TaskStore([build_task("a", "todo", 1)])
    columns = ColumnPartitioner(store, STATUSES)
    assert columns.density_violations() == ["todo"]
    assert not columns.check_density("todo")


def test_filter_tasks():
    store = TaskStore([
        build_task("a", "todo", 0, assignee="sam", tags=["ui"], priority=TaskPriority.HIGH),
        build_task("b", "todo", 1, assignee="kim", description="Fix login bug"),
        build_task("c", "completed", 0, assignee="sam", tags=["ui"]),
    ])
    columns = ColumnPartitioner(store, STATUSES)

    assert [t.task_id for t in columns.filter_tasks(assignee="sam")] == ["a", "c"]
    assert [t.task_id for t in columns.filter_tasks(tag="ui", status="completed")] == ["c"]
    assert [t.task_id for t in columns.filter_tasks(priority="high")] == ["a"]
    assert [t.task_id for t in columns.filter_tasks(search="LOGIN")] == ["b"]


def test_board_stats():
    store = TaskStore([
        build_task("a", "todo", 0, assignee="sam", due_date=date(2024, 1, 1)),
        build_task("b", "in-progress", 0, priority=TaskPriority.URGENT),
        build_task("c", "completed", 0, assignee="sam", due_date=date(2024, 1, 1)),
    ])
    stats = ColumnPartitioner(store, STATUSES).board_stats(today=date(2024, 1, 15))

    assert stats["total"] == 3
    assert stats["by_status"] == {"todo": 1, "in-progress": 1, "completed": 1}
    assert stats["by_priority"]["urgent"] == 1
    assert stats["by_priority"]["medium"] == 2
    assert stats["by_assignee"] == {"sam": 2}
    # Finished work is never overdue
    assert stats["overdue"] == 1


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Workflow Tests
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_permissive_policy_allows_everything():
    policy = TransitionPolicy.permissive()
    assert policy.permits("completed", "todo")
    policy.check("todo", "completed")


def test_restricted_policy():
    policy = TransitionPolicy({"todo": ["in-progress"], "in-progress": ["completed", "todo"]})
    assert policy.permits("todo", "in-progress")
    assert policy.permits("todo", "todo")
    assert not policy.permits("todo", "completed")
    with pytest.raises(TransitionNotAllowed):
        policy.check("completed", "todo")


def test_policy_validation():
    with pytest.raises(ConfigError):
        TransitionPolicy({"todo": ["archived"]}).validate(STATUSES)
