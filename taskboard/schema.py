"""
Task schema and error taxonomy for the board.

A task lives in exactly one status column and holds a dense position inside
it. Identity (task_id) is fixed at creation; moves only change status and
position, field edits never do.
"""
from enum import Enum
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Optional, List, Dict, Any, Iterable
import time
import uuid


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Exceptions
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TaskBoardError(Exception):
    """Base class for every error raised by the board engine."""
    pass


class PreconditionError(TaskBoardError, ValueError):
    """Rejected before any mutation: the caller asked for something invalid."""
    pass


class TaskNotFoundError(PreconditionError):
    """Raised when a task id is not present in the store."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found")

    def __str__(self) -> str:
        return f"Task {self.task_id} not found"


class UnknownStatusError(PreconditionError):
    """Raised when a status is not one of the configured columns."""
    pass


class InvalidTaskError(PreconditionError):
    """Raised when task fields fail validation (empty title, bad priority...)."""
    pass


class TransitionNotAllowed(PreconditionError):
    """Raised when a workflow policy forbids a column change."""
    pass


class GatewayError(TaskBoardError):
    """Raised by sync gateways."""
    pass


class PersistenceError(GatewayError):
    """Transient remote failure; recovered by refetching the partition."""
    pass


class MalformedResponseError(GatewayError):
    """The remote answered with something we cannot interpret."""
    pass


class MalformedTaskError(MalformedResponseError):
    """A task payload could not be deserialized."""
    pass


class ConfigError(TaskBoardError):
    """Raised when configuration is invalid or incomplete."""
    pass


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Enums & helpers
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TaskPriority(Enum):
    """Priority levels shown on task cards."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @classmethod
    def from_str(cls, value: str) -> "TaskPriority":
        try:
            return cls(str(value).lower())
        except ValueError:
            raise InvalidTaskError(
                f"Invalid priority: '{value}'. "
                f"Allowed: {', '.join(p.value for p in cls)}"
            )


# Fields a caller may change with an edit; status/position belong to moves.
EDITABLE_FIELDS = ("title", "description", "priority", "assignee", "due_date", "tags")


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def make_task_id() -> str:
    """Generate a sortable unique task ID (ms-precision timestamp + random hex)."""
    ts = int(time.time() * 1000)
    rand = uuid.uuid4().hex[:8]
    return f"task-{ts}-{rand}"


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _parse_date(value: Any) -> Optional[date]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def normalize_tags(tags: Optional[Iterable[str]]) -> List[str]:
    """Tags are a set; keep them sorted and de-duplicated for stable output."""
    if not tags:
        return []
    if isinstance(tags, str):
        tags = [tags]
    return sorted({str(t).strip() for t in tags if str(t).strip()})


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Task
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@dataclass
class Task:
    """A single work item on the board."""

    # Identifiers
    task_id: str                    # Opaque, immutable after creation

    # Content
    title: str
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM

    # Board placement
    status: str = "todo"
    position: int = 0

    # Metadata
    assignee: Optional[str] = None
    due_date: Optional[date] = None
    tags: List[str] = field(default_factory=list)
    created_by: str = ""
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def clone(self, **changes: Any) -> "Task":
        """Copy with optional field overrides; the tag list is never shared."""
        changes.setdefault("tags", list(self.tags))
        return replace(self, **changes)

    def is_overdue(self, today: Optional[date] = None) -> bool:
        if self.due_date is None:
            return False
        return self.due_date < (today or utc_now().date())

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-friendly dict."""
        return {
            "task_id": self.task_id,
            "title": self.title,
            "description": self.description,
            "priority": self.priority.value,
            "status": self.status,
            "position": self.position,
            "assignee": self.assignee,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "tags": normalize_tags(self.tags),
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if isinstance(self.created_at, datetime) else self.created_at,
            "updated_at": self.updated_at.isoformat() if isinstance(self.updated_at, datetime) else self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """Deserialize from dict. Raises MalformedTaskError on bad payloads."""
        if not isinstance(data, dict):
            raise MalformedTaskError(f"Task payload must be an object, got {type(data).__name__}")
        try:
            task_id = data["task_id"]
            title = data["title"]
            status = data["status"]
            position = int(data.get("position", 0))
            priority = TaskPriority(data.get("priority") or "medium")
            created_at = _parse_datetime(data["created_at"]) if data.get("created_at") else utc_now()
            updated_at = _parse_datetime(data["updated_at"]) if data.get("updated_at") else created_at
            due_date = _parse_date(data.get("due_date"))
        except (KeyError, ValueError, TypeError) as e:
            raise MalformedTaskError(f"Invalid task payload: {e}") from e

        if not task_id or not isinstance(task_id, str):
            raise MalformedTaskError("Task payload has no task_id")
        if not isinstance(status, str) or not status:
            raise MalformedTaskError(f"Task {task_id} has no status")

        return cls(
            task_id=task_id,
            title=str(title),
            description=data.get("description") or "",
            priority=priority,
            status=status,
            position=position,
            assignee=data.get("assignee") or None,
            due_date=due_date,
            tags=normalize_tags(data.get("tags")),
            created_by=data.get("created_by") or "",
            created_at=created_at,
            updated_at=updated_at,
        )
