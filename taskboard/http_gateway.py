"""
HTTP sync gateway: talks to board_server.py over its JSON API.

requests is blocking, so each call runs in a worker thread. Network errors
and non-2xx answers are PersistenceError (refetch recovers); a body that is
not the JSON shape we expect is MalformedResponseError.
"""
import asyncio
import logging
import uuid
from typing import Any, Dict, List, Mapping, Optional

import requests

from .gateway import SyncGateway, serialize_fields
from .schema import Task, MalformedResponseError, PersistenceError

logger = logging.getLogger(__name__)

CLIENT_HEADER = "X-Client-Id"


class HttpSyncGateway(SyncGateway):

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 5.0,
        client_id: Optional[str] = None,
        poll_interval: float = 2.0,
        session: Optional[requests.Session] = None,
    ):
        super().__init__()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.client_id = client_id or f"client-{uuid.uuid4().hex[:8]}"
        self.poll_interval = poll_interval
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json", CLIENT_HEADER: self.client_id})
        if api_key:
            self.session.headers["X-API-Key"] = api_key
        self._last_change_id = 0
        self._watcher: Optional[asyncio.Task] = None

    # ── Transport ──

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            r = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise PersistenceError(f"{method} {path} failed: {e}") from e
        if not r.ok:
            raise PersistenceError(f"{method} {path} returned HTTP {r.status_code}")
        try:
            body = r.json()
        except ValueError as e:
            raise MalformedResponseError(f"{method} {path} returned non-JSON body") from e
        if not isinstance(body, dict):
            raise MalformedResponseError(f"{method} {path} returned {type(body).__name__}, expected object")
        return body

    async def _call(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        return await asyncio.to_thread(self._request, method, path, **kwargs)

    @staticmethod
    def _task_from(body: Dict[str, Any]) -> Optional[Task]:
        payload = body.get("task")
        return Task.from_dict(payload) if payload is not None else None

    # ── SyncGateway ──

    async def fetch_partition(self, status: str) -> List[Task]:
        body = await self._call("GET", f"/api/columns/{status}")
        tasks = body.get("tasks")
        if not isinstance(tasks, list):
            raise MalformedResponseError(f"Column {status}: 'tasks' is missing or not a list")
        return [Task.from_dict(t) for t in tasks]

    async def persist(self, task_id: str, fields: Mapping[str, Any]) -> Optional[Task]:
        body = await self._call("PATCH", f"/api/tasks/{task_id}", json={"fields": serialize_fields(fields)})
        return self._task_from(body)

    async def insert(self, task: Task) -> Optional[Task]:
        body = await self._call("POST", "/api/tasks", json=task.to_dict())
        return self._task_from(body)

    async def remove(self, task_id: str) -> None:
        await self._call("DELETE", f"/api/tasks/{task_id}")

    # ── Change polling ──

    async def poll_changes(self) -> List[str]:
        """Ask the server what other clients changed since the last poll."""
        body = await self._call(
            "GET", "/api/changes",
            params={"since": self._last_change_id, "origin": self.client_id},
        )
        changes = body.get("changes")
        if not isinstance(changes, list):
            raise MalformedResponseError("'changes' is missing or not a list")
        latest = body.get("latest", self._last_change_id)
        if isinstance(latest, int):
            self._last_change_id = max(self._last_change_id, latest)
        statuses = sorted({c["status"] for c in changes if isinstance(c, dict) and c.get("status")})
        if statuses:
            self.notify_remote_change(statuses)
        return statuses

    async def watch(self) -> None:
        while True:
            try:
                await self.poll_changes()
            except PersistenceError as e:
                logger.warning(f"Change poll failed: {e}")
            except MalformedResponseError as e:
                logger.error(f"Change poll returned garbage: {e}")
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
        self.session.close()
