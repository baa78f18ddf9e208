# src/taskboard/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the core.

The core depends on Protocols instead of concrete implementations.
This keeps the HTTP/websocket transports swappable and makes testing easier.
"""

from typing import Any, Protocol

WirePayload = dict[str, Any]
# Decoded JSON object as sent by the scheduler backend.


class BackendClient(Protocol):
    """
    Request/response side of the scheduler backend.

    Every method raises ConnectivityError when the backend is unreachable,
    answers with an error status, or returns a body that is not JSON.
    """

    async def list_tasks(self) -> list[WirePayload]: ...
    async def list_workers(self) -> list[WirePayload]: ...

    async def create_task(self, *, type: str, priority: int, data: dict[str, Any]) -> WirePayload: ...
    async def migrate_task(self, task_id: str, target_worker_id: str) -> WirePayload: ...

    # Operator demo actions (fault injection).
    async def fail_worker(self, worker_id: str) -> WirePayload: ...
    async def recover_worker(self, worker_id: str) -> WirePayload: ...

    async def aclose(self) -> None: ...


class PushChannel(Protocol):
    """
    Persistent server-initiated subscription.

    - open(): connect; raises ConnectivityError on failure
    - receive(): next raw text frame; raises ConnectivityError once the channel
      is closed or broken
    - close(): idempotent, never raises
    """

    async def open(self) -> None: ...
    async def receive(self) -> str: ...
    async def close(self) -> None: ...
