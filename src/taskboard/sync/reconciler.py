# src/taskboard/sync/reconciler.py

from __future__ import annotations

"""
Reconciler: the single authority that mutates the canonical task/worker collections.

Three entry points feed it:
- apply_push(message)      -> tagged notice from the live channel
- apply_poll(snapshot)     -> full (but possibly partial) list fetched by the poller
- apply_optimistic(mut)    -> speculative local change (user command, simulator)

Merge rule (field level, per entity):
- incoming fields win when the incoming timestamp is not older than the local one
  (ties go to the incoming update)
- an optimistic local entity is replaced by any authoritative update that is not
  older, without a transition check: server truth wins once observed
- polls never delete: entities missing from a snapshot are left alone;
  discard_optimistic() is the only removal path and touches local-only entries

Events: every applied push or local mutation appends one event, also when it
repeats an earlier update. A poll entry that matches local state is UNCHANGED
and appends nothing, so a quiet backend does not flood the bounded log.

Errors never escape: invalid transitions and malformed payloads are dropped and
logged as diagnostic events.
"""

import json
import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

from ..core.errors import InvalidTransition, ReconciliationError, UserInputError
from ..core.events import Event, EventLevel, EventLog
from ..core.models import (
    IMMUTABLE_TASK_FIELDS,
    TASK_FIELDS,
    WORKER_FIELDS,
    Task,
    TaskStatus,
    Worker,
    WorkerStatus,
    check_task_invariants,
    check_task_transition,
    check_worker_transition,
    clamp_progress,
    entity_id_from_wire,
    parse_timestamp,
    requires_worker,
    short_id,
    task_fields_from_wire,
    worker_fields_from_wire,
)

logger = logging.getLogger(__name__)


class Source(StrEnum):
    PUSH = "push"
    POLL = "poll"
    LOCAL = "local"


class Outcome(StrEnum):
    ACCEPTED = "accepted"
    INSERTED = "inserted"
    UNCHANGED = "unchanged"  # poll entry that matched local state
    STALE = "stale"
    REJECTED = "rejected"
    MALFORMED = "malformed"
    IGNORED = "ignored"  # e.g. "welcome"

    @property
    def applied(self) -> bool:
        return self in (Outcome.ACCEPTED, Outcome.INSERTED, Outcome.UNCHANGED)


PUSH_TAGS = frozenset(
    {"task_update", "worker_update", "task_checkpoint", "task_migration", "task_recovery", "welcome"}
)

# Statuses in which a worker holds no task reference.
_WORKER_FREE = frozenset({WorkerStatus.IDLE, WorkerStatus.SHUTDOWN})

_TASK_DIFF_FIELDS = tuple(f for f in TASK_FIELDS if f != "updated_at")


@dataclass(frozen=True, slots=True)
class TaskMutation:
    """Speculative local change: `fields` uses Task attribute names."""

    task_id: str
    fields: Mapping[str, Any]
    manual: bool = False
    reason: str = ""


@dataclass(frozen=True, slots=True)
class WorkerMutation:
    worker_id: str
    fields: Mapping[str, Any]
    reason: str = ""


@dataclass(slots=True)
class PollReport:
    counts: dict[Outcome, int] = field(default_factory=dict)

    def add(self, outcome: Outcome) -> None:
        self.counts[outcome] = self.counts.get(outcome, 0) + 1

    def count(self, outcome: Outcome) -> int:
        return self.counts.get(outcome, 0)

    @property
    def changed(self) -> int:
        return self.count(Outcome.ACCEPTED) + self.count(Outcome.INSERTED)


@dataclass(frozen=True, slots=True)
class StateView:
    tasks: tuple[Task, ...]
    workers: tuple[Worker, ...]
    events: tuple[Event, ...]
    selected_task: Task | None


StateObserver = Callable[[StateView], None]


def _task_sort_key(task: Task) -> tuple[int, float, str]:
    return (-task.priority, task.created_at, task.id)


def _field_diff(old: object, new: object, names: tuple[str, ...]) -> list[str]:
    return [n for n in names if getattr(old, n) != getattr(new, n)]


def _decode(message: Any) -> Mapping[str, Any]:
    if isinstance(message, (bytes, bytearray)):
        try:
            message = message.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ReconciliationError(f"undecodable frame: {exc}") from None
    if isinstance(message, str):
        try:
            message = json.loads(message)
        except json.JSONDecodeError as exc:
            raise ReconciliationError(f"unparseable payload: {exc.msg}") from None
    if not isinstance(message, Mapping):
        raise ReconciliationError(f"push message must be an object, got {type(message).__name__}")
    return message


def _first(mapping: Mapping[str, Any], *names: str) -> Any:
    for n in names:
        v = mapping.get(n)
        if v is not None and v != "":
            return v
    return None


class Reconciler:
    def __init__(self, events: EventLog | None = None, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._events = events if events is not None else EventLog(clock=clock)
        self._tasks: dict[str, Task] = {}
        self._workers: dict[str, Worker] = {}
        self._selected_id: str | None = None
        self._observers: list[StateObserver] = []
        # One serialisation point: apply + log + notify is atomic.
        self._lock = threading.RLock()

    # ---- read API ----

    @property
    def events(self) -> EventLog:
        return self._events

    def get_task(self, task_id: str) -> Task | None:
        with self._lock:
            return self._tasks.get(task_id)

    def get_worker(self, worker_id: str) -> Worker | None:
        with self._lock:
            return self._workers.get(worker_id)

    def tasks(self) -> tuple[Task, ...]:
        with self._lock:
            return tuple(sorted(self._tasks.values(), key=_task_sort_key))

    def workers(self) -> tuple[Worker, ...]:
        with self._lock:
            return tuple(sorted(self._workers.values(), key=lambda w: w.id))

    @property
    def selected_task_id(self) -> str | None:
        return self._selected_id

    def snapshot(self) -> StateView:
        with self._lock:
            selected = self._tasks.get(self._selected_id) if self._selected_id else None
            return StateView(
                tasks=self.tasks(),
                workers=self.workers(),
                events=self._events.entries(),
                selected_task=selected,
            )

    def subscribe(self, observer: StateObserver) -> Callable[[], None]:
        with self._lock:
            self._observers.append(observer)

        def _unsubscribe() -> None:
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return _unsubscribe

    def select_task(self, task_id: str | None) -> Task | None:
        with self._lock:
            if task_id is None:
                self._selected_id = None
                self._notify()
                return None
            task = self._tasks.get(task_id)
            if task is None:
                raise UserInputError(f"unknown task: {task_id}")
            self._selected_id = task_id
            self._notify()
            return task

    # ---- entry points ----

    def apply_push(self, message: Any) -> Outcome:
        with self._lock:
            try:
                outcome = self._apply_push_locked(_decode(message))
            except ReconciliationError as exc:
                logger.warning("Dropped malformed push update: %s", exc)
                self._events.append(f"Dropped malformed update: {exc}", level=EventLevel.WARNING)
                outcome = Outcome.MALFORMED
            if outcome != Outcome.IGNORED:
                self._notify()
            return outcome

    def apply_poll(self, snapshot: Mapping[str, Any]) -> PollReport:
        report = PollReport()
        with self._lock:
            try:
                task_items, worker_items = self._split_snapshot(snapshot)
            except ReconciliationError as exc:
                logger.warning("Dropped malformed poll snapshot: %s", exc)
                self._events.append(f"Dropped malformed poll snapshot: {exc}", level=EventLevel.WARNING)
                report.add(Outcome.MALFORMED)
                self._notify()
                return report

            for item in task_items:
                report.add(self._guarded(Source.POLL, lambda item=item: self._task_from_poll(item)))
            for item in worker_items:
                report.add(self._guarded(Source.POLL, lambda item=item: self._worker_from_poll(item)))

            logger.debug("Poll applied: %s", {k.value: v for k, v in report.counts.items()})
            self._notify()
        return report

    def apply_optimistic(self, mutation: TaskMutation | WorkerMutation) -> Outcome:
        with self._lock:
            if isinstance(mutation, TaskMutation):
                outcome = self._guarded(Source.LOCAL, lambda: self._task_from_mutation(mutation))
            elif isinstance(mutation, WorkerMutation):
                outcome = self._guarded(Source.LOCAL, lambda: self._worker_from_mutation(mutation))
            else:
                self._events.append(
                    f"Dropped malformed local mutation: {type(mutation).__name__}", level=EventLevel.WARNING
                )
                outcome = Outcome.MALFORMED
            self._notify()
            return outcome

    def discard_optimistic(self, task_ids: Iterable[str] = (), worker_ids: Iterable[str] = ()) -> int:
        """
        Drop local-only entities (demo data) once the backend is reachable again.

        Entries the backend has confirmed meanwhile are no longer optimistic and
        stay. One event per removed entity. Returns the number removed.
        """
        removed = 0
        with self._lock:
            for task_id in task_ids:
                task = self._tasks.get(task_id)
                if task is None or not task.optimistic:
                    continue
                del self._tasks[task_id]
                if self._selected_id == task_id:
                    self._selected_id = None
                self._events.append(f"Removed demo task {short_id(task_id)}")
                removed += 1
            for worker_id in worker_ids:
                worker = self._workers.get(worker_id)
                if worker is None or not worker.optimistic:
                    continue
                del self._workers[worker_id]
                self._events.append(f"Removed demo worker {worker_id}")
                removed += 1
            if removed:
                self._notify()
        return removed

    def log(self, message: str, *, level: EventLevel | str = EventLevel.INFO) -> Event:
        """Append a free-form notice (command feedback) and notify observers."""
        with self._lock:
            event = self._events.append(message, level=level)
            self._notify()
            return event

    # ---- push ----

    def _apply_push_locked(self, msg: Mapping[str, Any]) -> Outcome:
        tag = msg.get("type")
        if tag not in PUSH_TAGS:
            raise ReconciliationError(f"unknown push tag: {tag!r}")
        if tag == "welcome":
            logger.debug("Push welcome: %s", msg.get("content"))
            return Outcome.IGNORED

        content = msg.get("content")
        if not isinstance(content, Mapping):
            raise ReconciliationError(f"{tag}: content must be an object")

        if tag == "worker_update":
            worker_id = _first(content, "id", "ID") or _first(msg, "workerId", "worker_id")
            if worker_id is None:
                raise ReconciliationError("worker_update without id")
            wfields = worker_fields_from_wire(content)
            return self._guarded(Source.PUSH, lambda: self._merge_worker(str(worker_id), wfields, Source.PUSH))

        task_id = _first(content, "id") if tag == "task_update" else None
        task_id = task_id or _first(msg, "taskId", "task_id") or _first(content, "task_id", "taskId")
        if task_id is None:
            raise ReconciliationError(f"{tag} without task id")
        task_id = str(task_id)

        if tag == "task_update":
            tfields = task_fields_from_wire(content)
            return self._guarded(Source.PUSH, lambda: self._merge_task(task_id, tfields, Source.PUSH))

        if task_id not in self._tasks:
            raise ReconciliationError(f"{tag} for unknown task {task_id}")

        tfields, label = self._notice_fields(tag, task_id, content)
        return self._guarded(Source.PUSH, lambda: self._merge_task(task_id, tfields, Source.PUSH, label=label))

    def _notice_fields(self, tag: str, task_id: str, content: Mapping[str, Any]) -> tuple[dict[str, Any], str]:
        out: dict[str, Any] = {}
        ts = _first(content, "updated_at", "updatedAt", "timestamp")
        if ts is not None:
            out["updated_at"] = parse_timestamp(ts)
        sid = short_id(task_id)

        if tag == "task_checkpoint":
            out["checkpoint_data"] = dict(content)
            progress = content.get("progress")
            label = f"Checkpoint for task {sid}" + (f": progress {progress}%" if progress is not None else "")
            return out, label

        status = content.get("status")
        if tag == "task_migration":
            to_worker = _first(content, "toWorker", "to_worker", "target_worker_id", "worker_id")
            if to_worker is None:
                raise ReconciliationError("task_migration without target worker")
            out["worker_id"] = str(to_worker)
            out["status"] = TaskStatus.parse(status) if status else TaskStatus.MIGRATING
            from_worker = _first(content, "fromWorker", "from_worker") or "?"
            return out, f"Task {sid} migrating from worker {from_worker} to {to_worker}"

        # task_recovery
        out["status"] = TaskStatus.parse(status) if status else TaskStatus.RECOVERING
        worker = _first(content, "workerId", "worker_id", "toWorker")
        if worker is not None:
            out["worker_id"] = str(worker)
        note = content.get("message") or out["status"].value
        return out, f"Task {sid} recovering: {note}"

    # ---- poll ----

    @staticmethod
    def _split_snapshot(snapshot: Mapping[str, Any]) -> tuple[list[Any], list[Any]]:
        if not isinstance(snapshot, Mapping):
            raise ReconciliationError(f"poll snapshot must be an object, got {type(snapshot).__name__}")
        tasks = snapshot.get("tasks") or []
        workers = snapshot.get("workers") or []
        if not isinstance(tasks, list) or not isinstance(workers, list):
            raise ReconciliationError("poll snapshot lists are malformed")
        return tasks, workers

    def _task_from_poll(self, item: Any) -> Outcome:
        if not isinstance(item, Mapping):
            raise ReconciliationError(f"task entry must be an object, got {type(item).__name__}")
        return self._merge_task(entity_id_from_wire(item), task_fields_from_wire(item), Source.POLL)

    def _worker_from_poll(self, item: Any) -> Outcome:
        if not isinstance(item, Mapping):
            raise ReconciliationError(f"worker entry must be an object, got {type(item).__name__}")
        return self._merge_worker(entity_id_from_wire(item), worker_fields_from_wire(item), Source.POLL)

    # ---- optimistic ----

    def _task_from_mutation(self, mutation: TaskMutation) -> Outcome:
        bad = (set(mutation.fields) - set(TASK_FIELDS)) | ({"updated_at"} & set(mutation.fields))
        if bad:
            raise ReconciliationError(f"unsupported task fields: {sorted(bad)}")
        tfields = dict(mutation.fields)
        if "status" in tfields:
            tfields["status"] = TaskStatus.parse(tfields["status"])
        return self._merge_task(
            mutation.task_id, tfields, Source.LOCAL, manual=mutation.manual, label=mutation.reason
        )

    def _worker_from_mutation(self, mutation: WorkerMutation) -> Outcome:
        bad = (set(mutation.fields) - set(WORKER_FIELDS)) | ({"last_seen"} & set(mutation.fields))
        if bad:
            raise ReconciliationError(f"unsupported worker fields: {sorted(bad)}")
        wfields = dict(mutation.fields)
        if "status" in wfields:
            wfields["status"] = WorkerStatus.parse(wfields["status"])
        return self._merge_worker(mutation.worker_id, wfields, Source.LOCAL, label=mutation.reason)

    # ---- merge core ----

    def _guarded(self, source: Source, apply: Callable[[], Outcome]) -> Outcome:
        try:
            return apply()
        except InvalidTransition as exc:
            logger.info("Rejected %s update: %s", source.value, exc)
            self._events.append(f"Rejected {source.value} update: {exc}", level=EventLevel.WARNING)
            return Outcome.REJECTED
        except ReconciliationError as exc:
            logger.warning("Dropped malformed %s update: %s", source.value, exc)
            self._events.append(f"Dropped malformed {source.value} update: {exc}", level=EventLevel.WARNING)
            return Outcome.MALFORMED

    def _stamp(self, incoming_ts: float | None, local_ts: float, source: Source) -> float:
        if source is Source.LOCAL or incoming_ts is None:
            return max(self._clock(), local_ts)
        return incoming_ts

    def _merge_task(
        self,
        task_id: str,
        incoming: dict[str, Any],
        source: Source,
        *,
        manual: bool = False,
        label: str = "",
    ) -> Outcome:
        incoming = dict(incoming)
        incoming_ts = incoming.pop("updated_at", None)
        current = self._tasks.get(task_id)
        if current is None:
            return self._insert_task(task_id, incoming, incoming_ts, source, label)

        ts = self._stamp(incoming_ts, current.updated_at, source)
        if ts < current.updated_at:
            return self._stale("task", task_id, source)

        # Only a notice that states a status can stand in for the full server view.
        supersede = source is not Source.LOCAL and current.optimistic and "status" in incoming
        new_status = incoming.get("status", current.status)

        if supersede:
            merged = {k: v for k, v in incoming.items()}
        else:
            check_task_transition(task_id, current.status, new_status, manual=manual)
            merged = {k: v for k, v in incoming.items() if k not in IMMUTABLE_TASK_FIELDS}

            if "progress" in merged and current.status == new_status == TaskStatus.RUNNING:
                merged["progress"] = max(current.progress, int(merged["progress"]))

            if current.status == TaskStatus.RECOVERING and new_status == TaskStatus.RUNNING and "progress" not in merged:
                checkpoint = merged.get("checkpoint_data") or current.checkpoint_data or {}
                resumed = checkpoint.get("progress")
                if isinstance(resumed, (int, float)) and not isinstance(resumed, bool):
                    merged["progress"] = int(resumed)

            if manual and new_status == TaskStatus.CREATED and current.status != TaskStatus.CREATED:
                merged["progress"] = 0
                merged["worker_id"] = None

        if "progress" in merged:
            merged["progress"] = clamp_progress(merged["progress"])
        if not requires_worker(new_status):
            merged["worker_id"] = None

        optimistic = source is Source.LOCAL or (current.optimistic and not supersede)
        candidate = replace(current, **merged, updated_at=ts, optimistic=optimistic)
        check_task_invariants(candidate)
        self._tasks[task_id] = candidate

        changed = _field_diff(current, candidate, _TASK_DIFF_FIELDS)
        if source is Source.POLL and not changed:
            return Outcome.UNCHANGED

        self._events.append(label or self._describe_task(current, candidate, changed, source, supersede))
        return Outcome.ACCEPTED

    def _insert_task(
        self, task_id: str, incoming: dict[str, Any], ts: float | None, source: Source, label: str
    ) -> Outcome:
        now = self._clock()
        ts = now if ts is None or source is Source.LOCAL else ts
        status = incoming.get("status", TaskStatus.CREATED)
        task = Task(
            id=task_id,
            type=str(incoming.get("type") or "unknown"),
            status=status,
            priority=int(incoming.get("priority", 0)),
            created_at=incoming.get("created_at", ts),
            updated_at=ts,
            progress=clamp_progress(incoming.get("progress", 0)),
            worker_id=incoming.get("worker_id") if requires_worker(status) else None,
            data=dict(incoming.get("data") or {}),
            checkpoint_data=incoming.get("checkpoint_data"),
            optimistic=source is Source.LOCAL,
        )
        check_task_invariants(task)
        self._tasks[task_id] = task

        where = f" on worker {task.worker_id}" if task.worker_id else ""
        self._events.append(label or f"New task {short_id(task_id)} ({task.type}, {status.value}){where}")
        return Outcome.INSERTED

    def _merge_worker(self, worker_id: str, incoming: dict[str, Any], source: Source, *, label: str = "") -> Outcome:
        incoming = dict(incoming)
        incoming_ts = incoming.pop("last_seen", None)
        current = self._workers.get(worker_id)

        if current is None:
            ts = self._clock() if incoming_ts is None or source is Source.LOCAL else incoming_ts
            status = incoming.get("status", WorkerStatus.IDLE)
            worker = Worker(
                id=worker_id,
                status=status,
                last_seen=ts,
                current_task_id=None if status in _WORKER_FREE else incoming.get("current_task_id"),
                optimistic=source is Source.LOCAL,
            )
            self._workers[worker_id] = worker
            self._events.append(label or f"New worker {worker_id} ({status.value})")
            return Outcome.INSERTED

        ts = self._stamp(incoming_ts, current.last_seen, source)
        if ts < current.last_seen:
            return self._stale("worker", worker_id, source)

        new_status = incoming.get("status", current.status)
        supersede = source is not Source.LOCAL and current.optimistic and "status" in incoming
        if not supersede:
            check_worker_transition(worker_id, current.status, new_status)
        if new_status in _WORKER_FREE:
            incoming["current_task_id"] = None

        optimistic = source is Source.LOCAL or (current.optimistic and not supersede)
        candidate = replace(current, **incoming, last_seen=ts, optimistic=optimistic)
        self._workers[worker_id] = candidate

        changed = _field_diff(current, candidate, ("status", "current_task_id"))
        if source is Source.POLL and not changed:
            return Outcome.UNCHANGED

        if "status" in changed:
            msg = f"Worker {worker_id} {current.status.value} -> {candidate.status.value}"
        elif changed:
            msg = f"Worker {worker_id} now on task {candidate.current_task_id or '-'}"
        else:
            msg = f"Worker {worker_id} updated ({candidate.status.value})"
        self._events.append(label or msg)
        return Outcome.ACCEPTED

    def _stale(self, entity: str, entity_id: str, source: Source) -> Outcome:
        if source is Source.POLL:
            logger.debug("Stale poll entry for %s %s ignored", entity, entity_id)
        else:
            self._events.append(
                f"Ignored stale {source.value} update for {entity} {short_id(entity_id)}", level=EventLevel.WARNING
            )
        return Outcome.STALE

    @staticmethod
    def _describe_task(current: Task, candidate: Task, changed: list[str], source: Source, supersede: bool) -> str:
        sid = short_id(candidate.id)
        if "status" in changed:
            msg = f"Task {sid} {current.status.value} -> {candidate.status.value}"
            if candidate.worker_id and candidate.worker_id != current.worker_id:
                msg += f" on worker {candidate.worker_id}"
        elif "progress" in changed:
            msg = f"Task {sid} progress {candidate.progress}%"
        elif changed:
            msg = f"Task {sid} updated: {', '.join(changed)}"
        else:
            msg = f"Task {sid} confirmed: {candidate.status.value}"
        if supersede:
            msg += " (confirmed by backend)"
        elif source is Source.LOCAL:
            msg += " (local)"
        return msg

    # ---- notification ----

    def _notify(self) -> None:
        if not self._observers:
            return
        view = self.snapshot()
        for observer in list(self._observers):
            try:
                observer(view)
            except Exception:
                logger.exception("State observer failed")
