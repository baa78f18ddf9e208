# src/taskboard/dashboard.py

from __future__ import annotations

"""
Dashboard facade: the one object a UI (console, web view, tests) talks to.

It owns the moving parts and wires them together:
- EventLog + Reconciler (canonical state)
- ConnectivityMonitor (LIVE / DEGRADED)
- Poller + PushListener (authoritative feeds)
- DegradedModeSimulator (runs only while DEGRADED)

Commands validate synchronously (UserInputError) and then go backend-first
with an optimistic local fallback, so the dashboard stays usable offline.
"""

import asyncio
import itertools
import json
import logging
import random
import time
from collections.abc import Callable, Coroutine, Mapping
from dataclasses import dataclass
from typing import Any

from .core.errors import ConnectivityError, TaskboardError, UserInputError
from .core.events import DEFAULT_CAPACITY, Event, EventLevel, EventLog
from .core.models import (
    HEALTHY_WORKER_STATUSES,
    Task,
    TaskStatus,
    Worker,
    WorkerStatus,
    is_terminal,
    short_id,
)
from .core.ports import BackendClient, PushChannel, WirePayload
from .sync.connectivity import ConnectivityMonitor, Mode
from .sync.poller import Poller
from .sync.push import PushListener
from .sync.reconciler import Outcome, Reconciler, StateView, TaskMutation, WorkerMutation
from .sync.simulator import DEFAULT_DEMO_WORKERS, DegradedModeSimulator, RandomSource, release_worker

logger = logging.getLogger(__name__)

# Tasks that still hold a worker and must be moved off a failing one.
_ACTIVE_ON_WORKER = frozenset({TaskStatus.ASSIGNED, TaskStatus.RUNNING})
_UNAVAILABLE_WORKERS = frozenset({WorkerStatus.FAILING, WorkerStatus.SHUTDOWN})


@dataclass(frozen=True, slots=True)
class DashboardSnapshot:
    tasks: tuple[Task, ...]
    workers: tuple[Worker, ...]
    events: tuple[Event, ...]
    mode: Mode
    selected_task: Task | None
    refreshed_at: float


SnapshotCallback = Callable[[DashboardSnapshot], None]


def parse_task_data(raw: Any) -> dict[str, Any]:
    """Accept a mapping, a JSON-object string, or nothing."""
    if raw is None or raw == "":
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, str):
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise UserInputError(f"task data is not valid JSON: {exc.msg}") from None
        if not isinstance(value, dict):
            raise UserInputError("task data must be a JSON object")
        return value
    raise UserInputError(f"task data must be an object, got {type(raw).__name__}")


def parse_priority(raw: Any) -> int:
    if isinstance(raw, bool):
        raise UserInputError(f"priority must be an integer, got {raw!r}")
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str):
        try:
            return int(raw.strip())
        except ValueError:
            pass
    raise UserInputError(f"priority must be an integer, got {raw!r}")


class Dashboard:
    def __init__(
        self,
        backend: BackendClient,
        channel: PushChannel,
        *,
        clock: Callable[[], float] = time.time,
        rng: RandomSource | None = None,
        event_capacity: int = DEFAULT_CAPACITY,
        poll_interval_seconds: float = 3.0,
        simulator_interval_seconds: float = 3.0,
        push_reconnect_seconds: float = 3.0,
        migration_delay_seconds: float = 1.0,
        recovery_delay_seconds: float = 2.0,
        completion_threshold: int = 95,
        promotion_probability: float = 0.3,
        demo_workers: tuple[str, ...] | list[str] = DEFAULT_DEMO_WORKERS,
        initial_mode: Mode = Mode.LIVE,
    ) -> None:
        self._backend = backend
        self._channel = channel
        self._clock = clock
        self._rng: RandomSource = rng if rng is not None else random.Random()
        self._migration_delay = max(0.0, float(migration_delay_seconds))
        self._recovery_delay = max(0.0, float(recovery_delay_seconds))

        self.events = EventLog(capacity=event_capacity, clock=clock)
        self.reconciler = Reconciler(self.events, clock=clock)
        self.monitor = ConnectivityMonitor(self.events, initial=initial_mode)
        self.simulator = DegradedModeSimulator(
            self.reconciler,
            self.monitor,
            interval_seconds=simulator_interval_seconds,
            rng=self._rng,
            completion_threshold=completion_threshold,
            promotion_probability=promotion_probability,
            demo_workers=demo_workers,
        )
        self.poller = Poller(backend, self.reconciler, self.monitor, interval_seconds=poll_interval_seconds)
        self.push = PushListener(channel, self.reconciler, self.monitor, reconnect_seconds=push_reconnect_seconds)

        self._subscribers: list[SnapshotCallback] = []
        self._pending: set[asyncio.Task[None]] = set()
        self._local_ids = itertools.count(1)
        self._started = False

        self.reconciler.subscribe(self._on_state_change)
        self.monitor.add_listener(self._on_mode_change)

    # ---- read API ----

    @property
    def mode(self) -> Mode:
        return self.monitor.mode

    @property
    def started(self) -> bool:
        return self._started

    def snapshot(self) -> DashboardSnapshot:
        return self._build_snapshot(self.reconciler.snapshot())

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    # ---- lifecycle ----

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        logger.info("Dashboard starting (mode=%s)", self.mode.value)
        self.poller.start()
        self.push.start()
        if self.monitor.degraded:
            self._enter_degraded()

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False

        self.simulator.stop()
        self.poller.stop()
        self.push.stop()
        pending = list(self._pending)
        self._cancel_pending()

        await self.simulator.join()
        await self.poller.join()
        await self.push.join()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._pending.clear()
        logger.info("Dashboard stopped")

    async def aclose(self) -> None:
        await self.stop()
        await self._channel.close()
        await self._backend.aclose()

    async def __aenter__(self) -> Dashboard:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ---- commands ----

    async def create_task(self, type: str, priority: Any = 0, data: Any = None) -> Task:
        task_type = str(type or "").strip()
        if not task_type:
            raise UserInputError("task type must not be empty")
        prio = parse_priority(priority)
        payload = parse_task_data(data)

        if not self.monitor.degraded:
            try:
                created = await self._backend.create_task(type=task_type, priority=prio, data=payload)
            except ConnectivityError as exc:
                self.reconciler.log(f"Backend rejected task creation ({exc}); creating locally", level=EventLevel.WARNING)
            else:
                task = self._apply_backend_task(created)
                if task is not None:
                    return task
                self.reconciler.log("Backend reply carried no task; creating locally", level=EventLevel.WARNING)

        task_id = self._next_local_id()
        self.reconciler.apply_optimistic(
            TaskMutation(
                task_id,
                {"type": task_type, "priority": prio, "data": payload, "status": TaskStatus.CREATED},
                reason=f"Created task {task_id} locally ({task_type}, priority {prio})",
            )
        )
        task = self.reconciler.get_task(task_id)
        if task is None:
            raise TaskboardError(f"local task {task_id} was not stored")
        return task

    async def migrate_task(self, task_id: str, target_worker_id: str) -> Task:
        task = self._require_task(task_id)
        if task.status != TaskStatus.RUNNING:
            raise UserInputError(f"task {task_id} is {task.status.value}; only RUNNING tasks can be migrated")
        target = self._require_worker(target_worker_id)
        if target.id == task.worker_id:
            raise UserInputError(f"task {task_id} already runs on {target.id}")
        if target.status in _UNAVAILABLE_WORKERS:
            raise UserInputError(f"worker {target.id} is {target.status.value} and cannot take tasks")

        source = task.worker_id
        outcome = self.reconciler.apply_optimistic(
            TaskMutation(
                task_id,
                {"status": TaskStatus.MIGRATING, "worker_id": target.id},
                reason=f"Migrating task {short_id(task_id)} from {source} to {target.id}",
            )
        )
        if not outcome.applied:
            return self.reconciler.get_task(task_id) or task

        if not self.monitor.degraded:
            try:
                reply = await self._backend.migrate_task(task_id, target.id)
            except ConnectivityError as exc:
                self.reconciler.log(f"Migration request failed ({exc}); simulating", level=EventLevel.WARNING)
            else:
                if reply.get("id") == task_id and "status" in reply:
                    self._apply_backend_task(reply)
                return self.reconciler.get_task(task_id) or task

        self._schedule(self._migration_delay, lambda: self._finish_migration(task_id, source, target.id))
        return self.reconciler.get_task(task_id) or task

    def select_task(self, task_id: str | None) -> Task | None:
        return self.reconciler.select_task(task_id)

    async def retry_task(self, task_id: str) -> Task:
        task = self._require_task(task_id)
        if not is_terminal(task.status):
            raise UserInputError(f"task {task_id} is {task.status.value}; only finished tasks can be retried")
        self.reconciler.apply_optimistic(
            TaskMutation(
                task_id,
                {"status": TaskStatus.CREATED},
                manual=True,
                reason=f"Task {short_id(task_id)} queued for retry (was {task.status.value})",
            )
        )
        return self.reconciler.get_task(task_id) or task

    async def fail_worker(self, worker_id: str) -> Worker:
        worker = self._require_worker(worker_id)
        if worker.status in _UNAVAILABLE_WORKERS:
            raise UserInputError(f"worker {worker_id} is already {worker.status.value}")

        self.reconciler.log(f"Simulating failure of {worker_id}")
        if not self.monitor.degraded and await self._backend_action(self._backend.fail_worker, worker_id, "failure"):
            return self.reconciler.get_worker(worker_id) or worker

        self.reconciler.apply_optimistic(WorkerMutation(worker_id, {"status": WorkerStatus.FAILING}))
        affected = [t.id for t in self.reconciler.tasks() if t.worker_id == worker_id and t.status in _ACTIVE_ON_WORKER]
        for task_id in affected:
            self.reconciler.apply_optimistic(
                TaskMutation(
                    task_id,
                    {"status": TaskStatus.RECOVERING},
                    reason=f"Task {short_id(task_id)} recovering: worker {worker_id} failed",
                )
            )
        if affected:
            self._schedule(self._recovery_delay, lambda: self._finish_recovery(worker_id, affected))
        return self.reconciler.get_worker(worker_id) or worker

    async def recover_worker(self, worker_id: str) -> Worker:
        worker = self._require_worker(worker_id)
        if worker.status != WorkerStatus.FAILING:
            raise UserInputError(f"worker {worker_id} is {worker.status.value}; only FAILING workers can recover")

        self.reconciler.log(f"Recovering worker {worker_id}")
        if not self.monitor.degraded and await self._backend_action(self._backend.recover_worker, worker_id, "recovery"):
            return self.reconciler.get_worker(worker_id) or worker

        self.reconciler.apply_optimistic(WorkerMutation(worker_id, {"status": WorkerStatus.IDLE}))
        return self.reconciler.get_worker(worker_id) or worker

    def overload_worker(self, worker_id: str) -> Worker:
        """Local-only fault injection: a BUSY worker becomes OVERLOADED."""
        worker = self._require_worker(worker_id)
        if worker.status != WorkerStatus.BUSY:
            raise UserInputError(f"worker {worker_id} is {worker.status.value}; only BUSY workers can be overloaded")
        self.reconciler.apply_optimistic(WorkerMutation(worker_id, {"status": WorkerStatus.OVERLOADED}))
        return self.reconciler.get_worker(worker_id) or worker

    def log(self, message: str, *, level: EventLevel | str = EventLevel.INFO) -> Event:
        return self.reconciler.log(message, level=level)

    # ---- delayed completions ----

    async def _finish_migration(self, task_id: str, source: str | None, target_id: str) -> None:
        task = self.reconciler.get_task(task_id)
        if task is None or task.status != TaskStatus.MIGRATING or task.worker_id != target_id:
            logger.debug("Migration of %s superseded; nothing to simulate", task_id)
            return

        outcome = self.reconciler.apply_optimistic(
            TaskMutation(
                task_id,
                {"status": TaskStatus.RUNNING, "worker_id": target_id},
                reason=f"Task {short_id(task_id)} now running on {target_id} (simulated migration)",
            )
        )
        if outcome.applied:
            self._release_worker(source, task_id)
            self._occupy_worker(target_id, task_id)

    async def _finish_recovery(self, failed_worker_id: str, task_ids: list[str]) -> None:
        for task_id in task_ids:
            task = self.reconciler.get_task(task_id)
            if task is None or task.status != TaskStatus.RECOVERING or task.worker_id != failed_worker_id:
                continue

            healthy = [
                w for w in self.reconciler.workers() if w.id != failed_worker_id and w.status in HEALTHY_WORKER_STATUSES
            ]
            candidates = [w for w in healthy if w.status == WorkerStatus.IDLE] or healthy
            if not candidates:
                self.reconciler.log(
                    f"No healthy worker left for task {short_id(task_id)}; it stays RECOVERING",
                    level=EventLevel.WARNING,
                )
                continue

            target = self._rng.choice(candidates)
            outcome = self.reconciler.apply_optimistic(
                TaskMutation(
                    task_id,
                    {"status": TaskStatus.RUNNING, "worker_id": target.id},
                    reason=f"Task {short_id(task_id)} resumed on {target.id} after failure of {failed_worker_id}",
                )
            )
            if outcome.applied:
                self._occupy_worker(target.id, task_id)

    def _cancel_pending(self) -> int:
        pending = list(self._pending)
        for task in pending:
            task.cancel()
        return len(pending)

    def _schedule(self, delay: float, factory: Callable[[], Coroutine[Any, Any, None]]) -> None:
        async def _delayed() -> None:
            await asyncio.sleep(delay)
            await factory()

        task = asyncio.get_running_loop().create_task(_delayed(), name="taskboard-delayed")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    # ---- internals ----

    def _require_task(self, task_id: str) -> Task:
        task = self.reconciler.get_task(task_id)
        if task is None:
            raise UserInputError(f"unknown task: {task_id}")
        return task

    def _require_worker(self, worker_id: str) -> Worker:
        worker = self.reconciler.get_worker(worker_id)
        if worker is None:
            raise UserInputError(f"unknown worker: {worker_id}")
        return worker

    def _next_local_id(self) -> str:
        while True:
            candidate = f"demo-{next(self._local_ids)}"
            if self.reconciler.get_task(candidate) is None:
                return candidate

    def _apply_backend_task(self, payload: WirePayload) -> Task | None:
        task_id = payload.get("id")
        if not task_id:
            return None
        outcome = self.reconciler.apply_push({"type": "task_update", "content": payload})
        if outcome == Outcome.MALFORMED:
            return None
        return self.reconciler.get_task(str(task_id))

    async def _backend_action(self, call: Callable[[str], Any], worker_id: str, what: str) -> bool:
        try:
            await call(worker_id)
        except ConnectivityError as exc:
            self.reconciler.log(f"Backend {what} request for {worker_id} failed ({exc}); simulating locally",
                                level=EventLevel.WARNING)
            return False
        logger.info("Backend accepted %s request for %s", what, worker_id)
        return True

    def _occupy_worker(self, worker_id: str, task_id: str) -> None:
        worker = self.reconciler.get_worker(worker_id)
        if worker is not None and worker.status == WorkerStatus.IDLE:
            self.reconciler.apply_optimistic(
                WorkerMutation(worker_id, {"status": WorkerStatus.BUSY, "current_task_id": task_id})
            )

    def _release_worker(self, worker_id: str | None, task_id: str) -> None:
        release_worker(self.reconciler, worker_id, task_id)

    # ---- notifications ----

    def _build_snapshot(self, view: StateView) -> DashboardSnapshot:
        return DashboardSnapshot(
            tasks=view.tasks,
            workers=view.workers,
            events=view.events,
            mode=self.monitor.mode,
            selected_task=view.selected_task,
            refreshed_at=self._clock(),
        )

    def _publish(self, snapshot: DashboardSnapshot) -> None:
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Dashboard subscriber failed")

    def _on_state_change(self, view: StateView) -> None:
        if self._subscribers:
            self._publish(self._build_snapshot(view))

    def _on_mode_change(self, old: Mode, new: Mode) -> None:
        logger.info("Mode %s -> %s", old.value, new.value)
        if new == Mode.DEGRADED:
            if self._started:
                self._enter_degraded()
        else:
            self._leave_degraded()
        if self._subscribers:
            self._publish(self.snapshot())

    def _enter_degraded(self) -> None:
        self.simulator.seed_demo_state()
        self.simulator.start()

    def _leave_degraded(self) -> None:
        # Backend truth from here on: no more fabricated state.
        self.simulator.stop()
        cancelled = self._cancel_pending()
        if cancelled:
            logger.info("Cancelled %d simulated completion(s)", cancelled)
        self.simulator.discard_demo_state()
