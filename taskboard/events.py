"""
Event bus: publishes store mutations and settlement notices to subscribers.

The store emits task_changed / task_removed / partition_replaced after every
mutation. The executor emits settled once an operation's remote outcome is
known, carrying a snapshot of the touched columns and an optional error.
"""
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Callable, List, Tuple

from .schema import Task

logger = logging.getLogger(__name__)

TASK_CHANGED = "task_changed"
TASK_REMOVED = "task_removed"
PARTITION_REPLACED = "partition_replaced"
SETTLED = "settled"

EVENT_TYPES = (TASK_CHANGED, TASK_REMOVED, PARTITION_REPLACED, SETTLED)

TRANSIENT = "transient"
FATAL = "fatal"


@dataclass(frozen=True)
class SettleError:
    """Non-fatal error annotation attached to a settlement."""
    kind: str                       # TRANSIENT | FATAL
    message: str
    statuses: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "statuses": list(self.statuses)}


@dataclass
class Settlement:
    """Outcome of one executor operation, after its persistence resolved."""
    operation: str                  # move | create | delete | edit | refresh | remote
    task_ids: Tuple[str, ...]
    snapshot: Dict[str, List[Task]] = field(default_factory=dict)
    error: Optional[SettleError] = None
    superseded: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "task_ids": list(self.task_ids),
            "columns": {
                status: [t.to_dict() for t in tasks]
                for status, tasks in self.snapshot.items()
            },
            "error": self.error.to_dict() if self.error else None,
            "superseded": self.superseded,
        }


class BoardEventBus:
    """Routes board events to registered callbacks."""

    def __init__(self):
        self.subscribers: Dict[str, List[Callable]] = {}  # event_type -> callbacks

    def subscribe(self, event_type: str, callback: Callable) -> Callable[[], None]:
        """Register a callback for an event type. Returns an unsubscribe function."""
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Invalid event_type: {event_type}")
        self.subscribers.setdefault(event_type, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self.subscribers.get(event_type, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def emit(self, event_type: str, **kwargs) -> None:
        """Emit an event to all subscribers. Callback errors are logged, not raised."""
        for callback in list(self.subscribers.get(event_type, [])):
            try:
                callback(**kwargs)
            except Exception as e:
                logger.error(f"Error in {event_type} callback {callback!r}: {e}")
