# src/taskboard/backend/http_client.py

from __future__ import annotations

"""
HTTP side of the scheduler backend (httpx).

Endpoints:
- GET  /api/tasks
- GET  /api/workers
- POST /api/tasks                      {type, priority, data}
- POST /api/tasks/{id}/migrate         {worker_id}
- POST /api/workers/{id}/fail
- POST /api/workers/{id}/recover

Every failure (transport error, timeout, non-2xx, non-JSON body) surfaces as
ConnectivityError; callers never see httpx exceptions.
"""

import logging
from typing import Any
from urllib.parse import quote

import httpx

from ..core.errors import ConnectivityError
from ..core.ports import WirePayload

logger = logging.getLogger(__name__)


class HttpBackendClient:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> HttpBackendClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ---- BackendClient ----

    async def list_tasks(self) -> list[WirePayload]:
        return self._as_list(await self._request("GET", "/api/tasks"), "tasks")

    async def list_workers(self) -> list[WirePayload]:
        return self._as_list(await self._request("GET", "/api/workers"), "workers")

    async def create_task(self, *, type: str, priority: int, data: dict[str, Any]) -> WirePayload:
        body = {"type": type, "priority": priority, "data": data}
        return self._as_object(await self._request("POST", "/api/tasks", json=body))

    async def migrate_task(self, task_id: str, target_worker_id: str) -> WirePayload:
        path = f"/api/tasks/{quote(task_id, safe='')}/migrate"
        return self._as_object(await self._request("POST", path, json={"worker_id": target_worker_id}))

    async def fail_worker(self, worker_id: str) -> WirePayload:
        path = f"/api/workers/{quote(worker_id, safe='')}/fail"
        return self._as_object(await self._request("POST", path))

    async def recover_worker(self, worker_id: str) -> WirePayload:
        path = f"/api/workers/{quote(worker_id, safe='')}/recover"
        return self._as_object(await self._request("POST", path))

    # ---- internals ----

    async def _request(self, method: str, path: str, *, json: Any = None) -> Any:
        try:
            resp = await self._client.request(method, path, json=json)
        except httpx.HTTPError as exc:
            raise ConnectivityError(f"{method} {path} failed: {exc.__class__.__name__}: {exc}") from exc

        if resp.status_code // 100 != 2:
            text = resp.text.strip()[:200]
            raise ConnectivityError(f"{method} {path} -> HTTP {resp.status_code}" + (f": {text}" if text else ""))

        if not resp.content:
            return {}
        try:
            payload = resp.json()
        except ValueError as exc:
            raise ConnectivityError(f"{method} {path}: response is not JSON") from exc

        logger.debug("%s %s -> %s", method, path, resp.status_code)
        return payload

    @staticmethod
    def _as_list(payload: Any, key: str) -> list[WirePayload]:
        # Accept both a bare list and an envelope {"tasks": [...]}.
        if isinstance(payload, dict):
            payload = payload.get(key, [])
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise ConnectivityError(f"expected a list of {key}, got {type(payload).__name__}")
        return payload

    @staticmethod
    def _as_object(payload: Any) -> WirePayload:
        if not isinstance(payload, dict):
            raise ConnectivityError(f"expected a JSON object, got {type(payload).__name__}")
        return payload
