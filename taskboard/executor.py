"""
Reorder executor: optimistic apply, remote persistence, reconciliation.

Every public operation validates synchronously (precondition errors raise
before anything changes), applies its effect to the TaskStore at once, and
returns an asyncio.Task for the persistence tail. Callers may ignore the
handle; the outcome is published as a `settled` event on the store's bus.

Ordering rules:
    - Tails are serialized per task: an operation's persistence waits for
      the pending tails of every task it touches.
    - Every optimistic apply stamps the touched tasks with a fresh sequence
      number. Echoes and refetched rows are only applied to tasks whose
      stamp has not moved since the operation (or fetch) began.
    - Refetch-and-replace runs only when no other operation is in flight;
      otherwise the last operation to settle performs it.
    - A manual refresh leaves columns with pending operations to the
      reconciliation those operations run when they settle.

Requires a running asyncio event loop.
"""
import asyncio
import itertools
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .columns import ColumnPartitioner
from .events import SETTLED, TRANSIENT, FATAL, SettleError, Settlement
from .gateway import SyncGateway
from .planner import Assignment, plan_move, plan_removal, resolve_drop_index
from .schema import (
    EDITABLE_FIELDS,
    GatewayError,
    InvalidTaskError,
    MalformedResponseError,
    PersistenceError,
    Task,
    TaskPriority,
    _parse_date,
    make_task_id,
    normalize_tags,
    utc_now,
)
from .store import TaskStore
from .workflow import TransitionPolicy

logger = logging.getLogger(__name__)

# Backoff between refetch attempts: 0.5 → 0.75 → 1.125
DEFAULT_RETRY_DELAYS = (0.5, 0.75, 1.125)

Request = Callable[[], Awaitable[Any]]


class ReorderExecutor:
    """Single entry point for every local mutation of the board."""

    def __init__(
        self,
        store: TaskStore,
        gateway: SyncGateway,
        statuses: Sequence[str],
        default_status: Optional[str] = None,
        policy: Optional[TransitionPolicy] = None,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
    ):
        self.store = store
        self.bus = store.bus
        self.gateway = gateway
        self.columns = ColumnPartitioner(store, statuses)
        self.default_status = self.columns.check_status(default_status or self.columns.statuses[0])
        self.policy = policy or TransitionPolicy.permissive()
        self.policy.validate(self.columns.statuses)
        self.retry_delays = tuple(retry_delays)

        self._counter = itertools.count(1)
        self._seq: Dict[str, int] = {}               # task_id -> stamp of last local op
        self._tails: Dict[str, asyncio.Task] = {}    # task_id -> last pending tail
        self._in_flight: Set[asyncio.Task] = set()
        self._needs_refetch: Set[str] = set()
        self.stale: Set[str] = set()                 # fatal: wait for manual refresh
        self._unsubscribers: List[Callable[[], None]] = []

    # ──────────────────────────────────────────
    # Queries
    # ──────────────────────────────────────────

    def list_column(self, status: str) -> List[Task]:
        return self.columns.by_status(status)

    def sequence(self, task_id: str) -> int:
        return self._seq.get(task_id, 0)

    def pending(self, task_id: str) -> Optional[asyncio.Task]:
        """The persistence tail currently queued for a task, if any."""
        tail = self._tails.get(task_id)
        return tail if tail is not None and not tail.done() else None

    @property
    def in_flight(self) -> int:
        return sum(1 for t in self._in_flight if not t.done())

    # ──────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────

    def attach(self) -> None:
        """Subscribe to remote change notices for every configured column."""
        if self._unsubscribers:
            return
        for status in self.columns.statuses:
            self._unsubscribers.append(self.gateway.on_remote_change(status, self._on_remote_change))

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    async def load(self) -> None:
        """Initial fetch of every column. Raises GatewayError on failure."""
        settlement = await self.refresh()
        if settlement.error is None:
            return
        if settlement.error.kind == FATAL:
            raise MalformedResponseError(settlement.error.message)
        raise PersistenceError(settlement.error.message)

    async def refresh(self, statuses: Optional[Iterable[str]] = None) -> Settlement:
        """Manual refresh: refetch columns and replace them, clearing stale marks.

        A column holding a task with a pending or newer local operation is
        left for that operation to reconcile when it settles.
        """
        wanted = tuple(self.columns.check_status(s) for s in (statuses or self.columns.statuses))
        error = None
        busy = self._busy_ids()
        marker = next(self._counter)
        try:
            fetched = await self._fetch_partitions(wanted)
        except GatewayError as e:
            error = self._classify(e, wanted)
        else:
            busy |= self._busy_ids()
            dropped: Set[str] = set()
            for status, tasks in fetched.items():
                self.stale.discard(status)
                replaced = self._replace_if_current(status, tasks, marker, busy)
                if replaced is None:
                    logger.info(f"Deferred refresh of {status}: local operations pending")
                    continue
                self._needs_refetch.discard(status)
                dropped |= replaced
            self._forget_missing(dropped)
            logger.info(f"Refreshed columns: {', '.join(wanted)}")
            error = await self._reconcile_if_idle()
        settlement = Settlement(
            operation="refresh",
            task_ids=(),
            snapshot=self.columns.snapshot(wanted),
            error=error,
        )
        self.bus.emit(SETTLED, settlement=settlement)
        return settlement

    async def drain(self) -> None:
        """Wait until every in-flight operation (and reconciliation) has settled."""
        while True:
            pending = [t for t in self._in_flight if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        self.detach()
        await self.drain()

    # ──────────────────────────────────────────
    # Operations
    # ──────────────────────────────────────────

    def move(
        self,
        task_id: str,
        target_status: str,
        target_index: Optional[int] = None,
        *,
        before_task_id: Optional[str] = None,
    ) -> asyncio.Task:
        """
        Move a task to `target_index` of `target_status`.

        `before_task_id` names the task the drop landed on; when it no longer
        exists the task is appended to the end of the column.
        """
        loop = asyncio.get_running_loop()
        self.columns.check_status(target_status)
        task = self.store.get(task_id)
        self.policy.check(task.status, target_status)

        snapshot = self.columns.snapshot({task.status, target_status})
        if before_task_id is not None:
            target_index = resolve_drop_index(snapshot[target_status], before_task_id, task_id)
        plan = plan_move(snapshot, task_id, target_status, target_index)
        logger.debug(
            f"Move {task_id}: {plan.source_status} → {plan.target_status}[{plan.target_index}] "
            f"({len(plan.assignments)} assignments)"
        )

        self._apply_assignments(plan.assignments)
        ids = plan.task_ids or (task_id,)
        op_seq = self._stamp(ids)
        requests = [self._persist_request(a.task_id, a.fields()) for a in plan.assignments]
        return self._spawn(loop, "move", ids, plan.touched_statuses, op_seq, requests)

    def create(
        self,
        title: str,
        description: str = "",
        priority: Any = TaskPriority.MEDIUM,
        assignee: Optional[str] = None,
        due_date: Any = None,
        tags: Optional[Iterable[str]] = None,
        created_by: str = "",
        status: Optional[str] = None,
    ) -> str:
        """Append a new task to the end of its column. Returns the new task id."""
        loop = asyncio.get_running_loop()
        fields = self._normalize_fields({
            "title": title,
            "description": description,
            "priority": priority,
            "assignee": assignee,
            "due_date": due_date,
            "tags": tags,
        })
        status = self.columns.check_status(status or self.default_status)
        now = utc_now()
        task = Task(
            task_id=make_task_id(),
            status=status,
            position=len(self.columns.by_status(status)),
            created_by=created_by,
            created_at=now,
            updated_at=now,
            **fields,
        )
        self.store.upsert(task)
        op_seq = self._stamp([task.task_id])

        def rollback() -> None:
            if self._seq.get(task.task_id) == op_seq and task.task_id in self.store:
                self.store.remove(task.task_id)

        insert = lambda: self.gateway.insert(task.clone())  # noqa: E731
        self._spawn(loop, "create", (task.task_id,), (status,), op_seq, [insert], rollback=rollback)
        logger.debug(f"Created {task.task_id} in {status} at {task.position}")
        return task.task_id

    def delete(self, task_id: str) -> asyncio.Task:
        """Remove a task and close the gap it leaves in its column."""
        loop = asyncio.get_running_loop()
        task = self.store.get(task_id)
        renumbering = plan_removal(self.columns.by_status(task.status), task_id)

        self.store.remove(task_id)
        self._apply_assignments(renumbering)
        ids = (task_id,) + tuple(a.task_id for a in renumbering)
        op_seq = self._stamp(ids)

        remove = lambda: self.gateway.remove(task_id)  # noqa: E731
        requests = [remove] + [self._persist_request(a.task_id, a.fields()) for a in renumbering]
        return self._spawn(loop, "delete", ids, (task.status,), op_seq, requests)

    def edit_fields(self, task_id: str, /, **fields: Any) -> asyncio.Task:
        """Edit content fields. Status and position can only change through move()."""
        loop = asyncio.get_running_loop()
        if not fields:
            raise InvalidTaskError("No fields to edit")
        protected = set(fields) & {"task_id", "status", "position"}
        if protected:
            raise InvalidTaskError(
                f"Cannot edit {', '.join(sorted(protected))}; use move() to change placement"
            )
        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise InvalidTaskError(f"Unknown fields: {', '.join(sorted(unknown))}")
        task = self.store.get(task_id)
        changes = self._normalize_fields(fields)

        self.store.upsert(task.clone(**changes, updated_at=utc_now()))
        op_seq = self._stamp([task_id])
        requests = [self._persist_request(task_id, changes)]
        return self._spawn(loop, "edit", (task_id,), (task.status,), op_seq, requests)

    # ──────────────────────────────────────────
    # Optimistic apply helpers
    # ──────────────────────────────────────────

    def _apply_assignments(self, assignments: Iterable[Assignment]) -> None:
        now = utc_now()
        for a in assignments:
            current = self.store.get(a.task_id)
            self.store.upsert(current.clone(status=a.status, position=a.position, updated_at=now))

    def _stamp(self, task_ids: Iterable[str]) -> int:
        op_seq = next(self._counter)
        for task_id in task_ids:
            self._seq[task_id] = op_seq
        return op_seq

    def _persist_request(self, task_id: str, fields: Dict[str, Any]) -> Request:
        return lambda: self.gateway.persist(task_id, dict(fields))

    @staticmethod
    def _normalize_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if "title" in fields:
            title = (fields["title"] or "").strip() if isinstance(fields["title"], str) else ""
            if not title:
                raise InvalidTaskError("Task title is required")
            result["title"] = title
        if "description" in fields:
            result["description"] = fields["description"] or ""
        if "priority" in fields:
            priority = fields["priority"]
            result["priority"] = priority if isinstance(priority, TaskPriority) else TaskPriority.from_str(priority)
        if "assignee" in fields:
            result["assignee"] = fields["assignee"] or None
        if "due_date" in fields:
            try:
                result["due_date"] = _parse_date(fields["due_date"])
            except (ValueError, TypeError) as e:
                raise InvalidTaskError(f"Invalid due_date: {fields['due_date']!r}") from e
        if "tags" in fields:
            result["tags"] = normalize_tags(fields["tags"])
        return result

    # ──────────────────────────────────────────
    # Persistence tail
    # ──────────────────────────────────────────

    def _spawn(
        self,
        loop: asyncio.AbstractEventLoop,
        operation: str,
        task_ids: Sequence[str],
        statuses: Sequence[str],
        op_seq: int,
        requests: List[Request],
        rollback: Optional[Callable[[], None]] = None,
    ) -> asyncio.Task:
        prior = {self._tails[i] for i in task_ids if i in self._tails and not self._tails[i].done()}
        tail = loop.create_task(
            self._settle(operation, tuple(task_ids), tuple(statuses), op_seq, requests, list(prior), rollback)
        )
        for task_id in task_ids:
            self._tails[task_id] = tail
        self._track(tail)
        return tail

    def _track(self, tail: asyncio.Task) -> None:
        self._in_flight.add(tail)

        def forget(done: asyncio.Task) -> None:
            self._in_flight.discard(done)
            for task_id in [k for k, v in self._tails.items() if v is done]:
                del self._tails[task_id]

        tail.add_done_callback(forget)

    async def _settle(
        self,
        operation: str,
        task_ids: Tuple[str, ...],
        statuses: Tuple[str, ...],
        op_seq: int,
        requests: List[Request],
        prior: List[asyncio.Task],
        rollback: Optional[Callable[[], None]],
    ) -> Settlement:
        if prior:
            await asyncio.gather(*prior, return_exceptions=True)

        results = await asyncio.gather(*(request() for request in requests), return_exceptions=True)
        failures = [r for r in results if isinstance(r, BaseException)]
        superseded = any(self._seq.get(i) != op_seq for i in task_ids if i in self.store)

        error = None
        if failures:
            affected = set(statuses) | {t.status for t in map(self.store.find, task_ids) if t is not None}
            first = failures[0]
            if not isinstance(first, Exception):
                raise first
            logger.warning(
                f"{operation} of {', '.join(task_ids)} failed ({len(failures)}/{len(requests)} requests): {first}"
            )
            error = self._classify(first, tuple(sorted(affected)))
            if error.kind == TRANSIENT and rollback is not None:
                rollback()
        else:
            for echo in results:
                if isinstance(echo, Task) and self._seq.get(echo.task_id) == op_seq and echo.task_id in self.store:
                    self.store.upsert(echo)

        for task_id in task_ids:
            # deleted (or rolled back) and not touched since
            if task_id not in self.store and self._seq.get(task_id) == op_seq:
                del self._seq[task_id]

        reconcile_error = await self._reconcile_if_idle()
        settlement = Settlement(
            operation=operation,
            task_ids=task_ids,
            snapshot=self.columns.snapshot(self._known(statuses)),
            error=error or reconcile_error,
            superseded=superseded,
        )
        self.bus.emit(SETTLED, settlement=settlement)
        return settlement

    def _classify(self, exc: BaseException, statuses: Tuple[str, ...]) -> SettleError:
        """Transient failures queue a refetch; anything else marks the columns stale."""
        if isinstance(exc, PersistenceError):
            self._needs_refetch.update(s for s in statuses if s not in self.stale)
            return SettleError(TRANSIENT, str(exc), statuses)
        if isinstance(exc, MalformedResponseError):
            logger.error(f"Malformed response for {', '.join(statuses)}: {exc}")
        else:
            logger.exception(f"Unexpected gateway failure for {', '.join(statuses)}", exc_info=exc)
        self.stale.update(statuses)
        self._needs_refetch.difference_update(statuses)
        return SettleError(FATAL, str(exc) or type(exc).__name__, statuses)

    def _known(self, statuses: Iterable[str]) -> List[str]:
        return [s for s in self.columns.statuses if s in set(statuses)]

    # ──────────────────────────────────────────
    # Reconciliation
    # ──────────────────────────────────────────

    def _is_idle(self) -> bool:
        current = asyncio.current_task()
        return not any(t is not current and not t.done() for t in self._in_flight)

    def _on_remote_change(self, status: str) -> None:
        """Another client changed a column: treat like a failed write."""
        if status in self.stale:
            return
        logger.info(f"Remote change in {status}")
        self._needs_refetch.add(status)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # picked up by the next settle or refresh
        if self._is_idle():
            tail = loop.create_task(self._settle_remote())
            self._track(tail)

    async def _settle_remote(self) -> Settlement:
        statuses = tuple(sorted(self._needs_refetch))
        error = await self._reconcile_if_idle()
        settlement = Settlement(
            operation="remote",
            task_ids=(),
            snapshot=self.columns.snapshot(self._known(statuses)),
            error=error,
        )
        self.bus.emit(SETTLED, settlement=settlement)
        return settlement

    async def _reconcile_if_idle(self) -> Optional[SettleError]:
        error = None
        while self._needs_refetch and self._is_idle():
            wanted = tuple(sorted(self._needs_refetch))
            self._needs_refetch.difference_update(wanted)
            marker = next(self._counter)
            try:
                fetched = await self._fetch_partitions(wanted)
            except GatewayError as e:
                error = self._classify(e, wanted)
                break

            dropped: Set[str] = set()
            for status, tasks in fetched.items():
                replaced = self._replace_if_current(status, tasks, marker)
                if replaced is None:
                    # A newer local operation touched this column mid-fetch;
                    # it will reconcile when it settles.
                    continue
                dropped |= replaced
                logger.info(f"Reconciled {status} with {len(tasks)} remote tasks")
            self._forget_missing(dropped)
        return error

    def _replace_if_current(
        self,
        status: str,
        tasks: List[Task],
        marker: int,
        busy: Iterable[str] = (),
    ) -> Optional[Set[str]]:
        """Replace a column with fetched rows unless a local op is newer than the fetch.

        Returns the ids the column held before, or None when the column was
        queued for another refetch instead.
        """
        local_ids = {t.task_id for t in self.columns.by_status(status)}
        ids = local_ids | {t.task_id for t in tasks}
        busy = set(busy)
        if any(self._seq.get(i, 0) > marker or i in busy for i in ids):
            self._needs_refetch.add(status)
            return None
        self.store.replace_partition(status, tasks)
        return local_ids

    def _busy_ids(self) -> Set[str]:
        return {task_id for task_id, tail in self._tails.items() if not tail.done()}

    def _forget_missing(self, task_ids: Iterable[str]) -> None:
        """Drop sequence stamps of tasks that left the board with nothing pending."""
        for task_id in task_ids:
            if task_id not in self.store and self.pending(task_id) is None:
                self._seq.pop(task_id, None)

    async def _fetch_partitions(self, statuses: Sequence[str]) -> Dict[str, List[Task]]:
        delays = list(self.retry_delays)
        while True:
            try:
                results = await asyncio.gather(*(self.gateway.fetch_partition(s) for s in statuses))
                break
            except PersistenceError as e:
                if not delays:
                    raise
                delay = delays.pop(0)
                logger.warning(f"Refetch of {', '.join(statuses)} failed ({e}); retrying in {delay}s")
                await asyncio.sleep(delay)

        fetched: Dict[str, List[Task]] = {}
        for status, tasks in zip(statuses, results):
            if not isinstance(tasks, list) or any(not isinstance(t, Task) or t.status != status for t in tasks):
                raise MalformedResponseError(f"Partition {status} returned tasks from another column")
            fetched[status] = tasks
        return fetched
