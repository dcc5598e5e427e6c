"""Shared test fixtures for task board tests."""

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Ensure the repo root (taskboard/, board_server.py) is importable
sys.path.insert(0, str(Path(__file__).parent.parent))

from taskboard.schema import Task  # noqa: E402

FIXED_TIME = datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc)


def build_task(task_id: str, status: str = "todo", position: int = 0, **fields) -> Task:
    fields.setdefault("title", f"Task {task_id}")
    fields.setdefault("created_at", FIXED_TIME)
    fields.setdefault("updated_at", FIXED_TIME)
    return Task(task_id=task_id, status=status, position=position, **fields)


def build_column(status: str, *task_ids: str) -> list:
    """Dense column: positions follow argument order."""
    return [build_task(tid, status, i) for i, tid in enumerate(task_ids)]


@pytest.fixture
def make_task():
    return build_task


@pytest.fixture
def make_column():
    return build_column


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "board.db")
