# src/taskboard/core/models.py

from __future__ import annotations

"""
Task / Worker entities and the state machines every other module consumes.

Pure definitions: no I/O, no clocks. Entities are frozen; mutations produce
new instances via dataclasses.replace().
"""

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from .errors import InvalidTransition, ReconciliationError


class TaskStatus(StrEnum):
    CREATED = "CREATED"
    ASSIGNED = "ASSIGNED"
    RUNNING = "RUNNING"
    MIGRATING = "MIGRATING"
    RECOVERING = "RECOVERING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @classmethod
    def parse(cls, raw: Any) -> TaskStatus:
        try:
            return cls(str(raw).strip().upper())
        except ValueError:
            raise ReconciliationError(f"unknown task status: {raw!r}") from None

    @property
    def variant(self) -> str:
        return _TASK_VARIANTS[self]


class WorkerStatus(StrEnum):
    IDLE = "IDLE"
    BUSY = "BUSY"
    OVERLOADED = "OVERLOADED"
    FAILING = "FAILING"
    SHUTDOWN = "SHUTDOWN"

    @classmethod
    def parse(cls, raw: Any) -> WorkerStatus:
        try:
            return cls(str(raw).strip().upper())
        except ValueError:
            raise ReconciliationError(f"unknown worker status: {raw!r}") from None

    @property
    def variant(self) -> str:
        return _WORKER_VARIANTS[self]


# One display-variant table for every renderer (bootstrap-style names).
_TASK_VARIANTS: dict[TaskStatus, str] = {
    TaskStatus.CREATED: "secondary",
    TaskStatus.ASSIGNED: "info",
    TaskStatus.RUNNING: "primary",
    TaskStatus.MIGRATING: "warning",
    TaskStatus.RECOVERING: "warning",
    TaskStatus.COMPLETED: "success",
    TaskStatus.FAILED: "danger",
}

_WORKER_VARIANTS: dict[WorkerStatus, str] = {
    WorkerStatus.IDLE: "success",
    WorkerStatus.BUSY: "warning",
    WorkerStatus.OVERLOADED: "danger",
    WorkerStatus.FAILING: "danger",
    WorkerStatus.SHUTDOWN: "secondary",
}


TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.CREATED: frozenset({TaskStatus.ASSIGNED, TaskStatus.FAILED}),
    TaskStatus.ASSIGNED: frozenset({TaskStatus.RUNNING, TaskStatus.RECOVERING, TaskStatus.FAILED}),
    TaskStatus.RUNNING: frozenset(
        {TaskStatus.MIGRATING, TaskStatus.RECOVERING, TaskStatus.COMPLETED, TaskStatus.FAILED}
    ),
    TaskStatus.MIGRATING: frozenset({TaskStatus.RUNNING, TaskStatus.FAILED}),
    TaskStatus.RECOVERING: frozenset({TaskStatus.RUNNING, TaskStatus.FAILED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}

# Only reachable through an explicit user action (retry).
MANUAL_TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.COMPLETED: frozenset({TaskStatus.CREATED}),
    TaskStatus.FAILED: frozenset({TaskStatus.CREATED}),
}

WORKER_TRANSITIONS: dict[WorkerStatus, frozenset[WorkerStatus]] = {
    WorkerStatus.IDLE: frozenset({WorkerStatus.BUSY, WorkerStatus.FAILING, WorkerStatus.SHUTDOWN}),
    WorkerStatus.BUSY: frozenset(
        {WorkerStatus.IDLE, WorkerStatus.OVERLOADED, WorkerStatus.FAILING, WorkerStatus.SHUTDOWN}
    ),
    WorkerStatus.OVERLOADED: frozenset({WorkerStatus.FAILING, WorkerStatus.SHUTDOWN}),
    WorkerStatus.FAILING: frozenset({WorkerStatus.IDLE, WorkerStatus.SHUTDOWN}),
    WorkerStatus.SHUTDOWN: frozenset(),
}

WORKER_BOUND_STATUSES = frozenset(
    {TaskStatus.ASSIGNED, TaskStatus.RUNNING, TaskStatus.MIGRATING, TaskStatus.RECOVERING}
)
TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})
HEALTHY_WORKER_STATUSES = frozenset({WorkerStatus.IDLE, WorkerStatus.BUSY, WorkerStatus.OVERLOADED})


@dataclass(frozen=True, slots=True)
class Task:
    id: str
    type: str
    status: TaskStatus
    priority: int
    created_at: float
    updated_at: float

    progress: int = 0
    worker_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    checkpoint_data: dict[str, Any] | None = None

    # True while the fields come from a local speculative mutation.
    optimistic: bool = False


@dataclass(frozen=True, slots=True)
class Worker:
    id: str
    status: WorkerStatus
    last_seen: float
    current_task_id: str | None = None
    optimistic: bool = False


TASK_FIELDS = ("type", "status", "priority", "progress", "worker_id", "data", "checkpoint_data", "created_at", "updated_at")
WORKER_FIELDS = ("status", "current_task_id", "last_seen")

# Fields set once at creation.
IMMUTABLE_TASK_FIELDS = frozenset({"type", "priority", "created_at"})


def is_terminal(status: TaskStatus) -> bool:
    return status in TERMINAL_STATUSES


def requires_worker(status: TaskStatus) -> bool:
    return status in WORKER_BOUND_STATUSES


def check_task_transition(task_id: str, old: TaskStatus, new: TaskStatus, *, manual: bool = False) -> None:
    if old == new:
        return
    if new in TASK_TRANSITIONS[old]:
        return
    if manual and new in MANUAL_TASK_TRANSITIONS.get(old, frozenset()):
        return
    detail = "manual retry only" if new in MANUAL_TASK_TRANSITIONS.get(old, frozenset()) else ""
    raise InvalidTransition("task", task_id, old, new, detail)


def check_worker_transition(worker_id: str, old: WorkerStatus, new: WorkerStatus) -> None:
    if old == new:
        return
    if new not in WORKER_TRANSITIONS[old]:
        raise InvalidTransition("worker", worker_id, old, new)


def check_task_invariants(task: Task) -> None:
    """workerId is set iff the status is one that runs on a worker."""
    if requires_worker(task.status) and not task.worker_id:
        raise InvalidTransition("task", task.id, task.status, task.status, "missing worker reference")
    if not requires_worker(task.status) and task.worker_id:
        raise InvalidTransition("task", task.id, task.status, task.status, "unexpected worker reference")
    if not 0 <= task.progress <= 100:
        raise InvalidTransition("task", task.id, task.status, task.status, f"progress {task.progress} out of range")


def reachable_statuses(start: TaskStatus = TaskStatus.CREATED) -> frozenset[TaskStatus]:
    """All statuses reachable from `start` through the automatic transition table."""
    seen = {start}
    stack = [start]
    while stack:
        cur = stack.pop()
        for nxt in TASK_TRANSITIONS[cur]:
            if nxt not in seen:
                seen.add(nxt)
                stack.append(nxt)
    return frozenset(seen)


def short_id(identifier: str) -> str:
    return identifier if len(identifier) <= 8 else f"{identifier[:8]}..."


def clamp_progress(value: int) -> int:
    return max(0, min(100, int(value)))


# --------------------------------------------------------------------------------------
# Wire format (snake_case JSON, RFC 3339 timestamps; camelCase aliases accepted)
# --------------------------------------------------------------------------------------

_TASK_ALIASES: dict[str, tuple[str, ...]] = {
    "type": ("type",),
    "status": ("status",),
    "priority": ("priority",),
    "progress": ("progress",),
    "worker_id": ("worker_id", "workerId"),
    "data": ("data",),
    "checkpoint_data": ("checkpoint_data", "checkpointData"),
    "created_at": ("created_at", "createdAt"),
    "updated_at": ("updated_at", "updatedAt"),
}

_WORKER_ALIASES: dict[str, tuple[str, ...]] = {
    "status": ("status", "Status"),
    "current_task_id": ("current_task_id", "currentTaskId", "CurrentTaskID", "task"),
    "last_seen": ("last_seen", "lastSeen", "LastSeen"),
}


def parse_timestamp(value: Any) -> float:
    if isinstance(value, bool):
        raise ReconciliationError(f"invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise ReconciliationError(f"invalid timestamp: {value!r}")
        return float(value)
    if isinstance(value, str) and value.strip():
        try:
            dt = datetime.fromisoformat(value.strip())
        except ValueError:
            raise ReconciliationError(f"invalid timestamp: {value!r}") from None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=UTC)
        return dt.timestamp()
    raise ReconciliationError(f"invalid timestamp: {value!r}")


def format_timestamp(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=UTC).isoformat().replace("+00:00", "Z")


def _pick(payload: Mapping[str, Any], names: tuple[str, ...]) -> tuple[bool, Any]:
    for n in names:
        if n in payload:
            return True, payload[n]
    return False, None


def _as_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ReconciliationError(f"{name} must be an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise ReconciliationError(f"{name} must be an integer, got {value!r}")


def _as_ref(value: Any) -> str | None:
    # The backend may send an unset reference as "" instead of omitting it.
    if value is None or value == "":
        return None
    return str(value)


def _as_mapping(name: str, value: Any) -> dict[str, Any] | None:
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise ReconciliationError(f"{name} must be an object, got {type(value).__name__}")
    return dict(value)


def entity_id_from_wire(payload: Mapping[str, Any]) -> str:
    found, raw = _pick(payload, ("id", "ID"))
    if not found or raw is None or str(raw).strip() == "":
        raise ReconciliationError("entity without id")
    return str(raw)


def task_fields_from_wire(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Partial Task field dict from a wire mapping; only keys present in the payload."""
    if not isinstance(payload, Mapping):
        raise ReconciliationError(f"task payload must be an object, got {type(payload).__name__}")

    out: dict[str, Any] = {}
    for name, aliases in _TASK_ALIASES.items():
        found, raw = _pick(payload, aliases)
        if not found:
            continue
        if name == "status":
            out[name] = TaskStatus.parse(raw)
        elif name in ("priority", "progress"):
            out[name] = _as_int(name, raw)
        elif name == "worker_id":
            out[name] = _as_ref(raw)
        elif name == "data":
            out[name] = _as_mapping(name, raw) or {}
        elif name == "checkpoint_data":
            out[name] = _as_mapping(name, raw)
        elif name in ("created_at", "updated_at"):
            if raw is not None:
                out[name] = parse_timestamp(raw)
        else:
            out[name] = str(raw)
    return out


def worker_fields_from_wire(payload: Mapping[str, Any]) -> dict[str, Any]:
    if not isinstance(payload, Mapping):
        raise ReconciliationError(f"worker payload must be an object, got {type(payload).__name__}")

    out: dict[str, Any] = {}
    for name, aliases in _WORKER_ALIASES.items():
        found, raw = _pick(payload, aliases)
        if not found:
            continue
        if name == "status":
            out[name] = WorkerStatus.parse(raw)
        elif name == "current_task_id":
            out[name] = _as_ref(raw)
        elif raw is not None:
            out[name] = parse_timestamp(raw)
    return out


def task_to_wire(task: Task) -> dict[str, Any]:
    out: dict[str, Any] = {
        "id": task.id,
        "type": task.type,
        "status": task.status.value,
        "priority": task.priority,
        "progress": task.progress,
        "data": dict(task.data),
        "created_at": format_timestamp(task.created_at),
        "updated_at": format_timestamp(task.updated_at),
    }
    if task.worker_id:
        out["worker_id"] = task.worker_id
    if task.checkpoint_data is not None:
        out["checkpoint_data"] = dict(task.checkpoint_data)
    return out


def worker_to_wire(worker: Worker) -> dict[str, Any]:
    out: dict[str, Any] = {
        "id": worker.id,
        "status": worker.status.value,
        "last_seen": format_timestamp(worker.last_seen),
    }
    if worker.current_task_id:
        out["current_task_id"] = worker.current_task_id
    return out
