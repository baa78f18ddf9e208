# src/taskboard/sync/simulator.py

from __future__ import annotations

"""
Degraded-mode simulator.

While the backend is unreachable the dashboard keeps moving on fabricated data:
- RUNNING tasks gain 5..10 points per tick; reaching the completion threshold
  completes them (progress clamped to 100) in one reconciliation call
- CREATED tasks get picked up by a random IDLE worker now and then
- nothing else: migrations and failures stay explicit operator actions

Every change goes through Reconciler.apply_optimistic(), so the state machine
and event logging apply exactly as for live updates.
"""

import asyncio
import logging
import random
from typing import Protocol

from ..core.models import HEALTHY_WORKER_STATUSES, Task, TaskStatus, Worker, WorkerStatus, short_id
from .connectivity import ConnectivityMonitor
from .loop import BackgroundLoop
from .reconciler import Outcome, Reconciler, TaskMutation, WorkerMutation

logger = logging.getLogger(__name__)

DEFAULT_DEMO_WORKERS = ("worker-1", "worker-2", "worker-3")

# Tasks that keep their worker busy.
_HOLDS_WORKER = frozenset({TaskStatus.ASSIGNED, TaskStatus.RUNNING})


class RandomSource(Protocol):
    def random(self) -> float: ...
    def randint(self, a: int, b: int) -> int: ...
    def choice(self, seq): ...


def release_worker(reconciler: Reconciler, worker_id: str | None, task_id: str) -> int:
    """
    Free a BUSY worker once `task_id` no longer runs on it.

    When another active task still names the worker, the worker stays BUSY and
    points at that task instead. Returns the number of applied mutations.
    """
    if not worker_id:
        return 0
    worker = reconciler.get_worker(worker_id)
    if worker is None or worker.status != WorkerStatus.BUSY or worker.current_task_id != task_id:
        return 0

    remaining = [
        t for t in reconciler.tasks() if t.id != task_id and t.worker_id == worker_id and t.status in _HOLDS_WORKER
    ]
    fields = {"current_task_id": remaining[0].id} if remaining else {"status": WorkerStatus.IDLE}
    outcome = reconciler.apply_optimistic(WorkerMutation(worker_id, fields))
    return 1 if outcome.applied else 0


class DegradedModeSimulator:
    def __init__(
        self,
        reconciler: Reconciler,
        monitor: ConnectivityMonitor,
        *,
        interval_seconds: float = 3.0,
        rng: RandomSource | None = None,
        completion_threshold: int = 95,
        increment_range: tuple[int, int] = (5, 10),
        promotion_probability: float = 0.3,
        initial_progress_range: tuple[int, int] = (10, 29),
        demo_workers: tuple[str, ...] | list[str] = DEFAULT_DEMO_WORKERS,
    ) -> None:
        self._reconciler = reconciler
        self._monitor = monitor
        self._interval = max(0.01, float(interval_seconds))
        self._rng: RandomSource = rng if rng is not None else random.Random()
        self._threshold = int(completion_threshold)
        self._increment = increment_range
        self._promotion_probability = float(promotion_probability)
        self._initial_progress = initial_progress_range
        self._demo_workers = tuple(demo_workers)
        self._loop = BackgroundLoop("taskboard-simulator", self._run)
        self._seeded_tasks: set[str] = set()
        self._seeded_workers: set[str] = set()
        self.ticks = 0

    # ---- lifecycle ----

    @property
    def running(self) -> bool:
        return self._loop.running

    def start(self) -> bool:
        started = self._loop.start()
        if started:
            logger.info("Simulator started (interval=%.1fs)", self._interval)
        return started

    def stop(self) -> bool:
        stopped = self._loop.stop()
        if stopped:
            logger.info("Simulator stopped after %d ticks", self.ticks)
        return stopped

    async def join(self) -> None:
        await self._loop.join()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                self.tick()
            except Exception:
                logger.exception("Simulator tick failed")

    # ---- one step ----

    def tick(self) -> int:
        """Apply one round of synthetic progress. Returns the number of accepted mutations."""
        if not self._monitor.degraded:
            return 0

        self.ticks += 1
        applied = 0
        for task in self._reconciler.tasks():
            if task.status == TaskStatus.RUNNING:
                applied += self._advance(task)
            elif task.status == TaskStatus.CREATED:
                applied += self._promote(task)
        logger.debug("Simulator tick %d applied %d mutations", self.ticks, applied)
        return applied

    def _advance(self, task: Task) -> int:
        lo, hi = self._increment
        progress = task.progress + self._rng.randint(lo, hi)
        sid = short_id(task.id)

        if progress >= self._threshold:
            outcome = self._reconciler.apply_optimistic(
                TaskMutation(
                    task.id,
                    {"status": TaskStatus.COMPLETED, "progress": 100},
                    reason=f"Task {sid} completed (simulated)",
                )
            )
            if not outcome.applied:
                return 0
            return 1 + self._release_worker(task)

        outcome = self._reconciler.apply_optimistic(
            TaskMutation(task.id, {"progress": progress}, reason=f"Task {sid} progress {progress}% (simulated)")
        )
        return 1 if outcome.applied else 0

    def _promote(self, task: Task) -> int:
        if self._rng.random() >= self._promotion_probability:
            return 0
        # One task per worker: only IDLE workers take new work.
        candidates = [w for w in self._reconciler.workers() if w.status == WorkerStatus.IDLE]
        if not candidates:
            return 0

        worker = self._rng.choice(candidates)
        lo, hi = self._initial_progress
        sid = short_id(task.id)

        # CREATED -> ASSIGNED -> RUNNING: two steps, the table has no shortcut.
        assigned = self._reconciler.apply_optimistic(
            TaskMutation(
                task.id,
                {"status": TaskStatus.ASSIGNED, "worker_id": worker.id},
                reason=f"Task {sid} assigned to {worker.id} (simulated)",
            )
        )
        if not assigned.applied:
            return 0

        progress = self._rng.randint(lo, hi)
        running = self._reconciler.apply_optimistic(
            TaskMutation(
                task.id,
                {"status": TaskStatus.RUNNING, "progress": progress},
                reason=f"Task {sid} started on {worker.id} at {progress}% (simulated)",
            )
        )
        applied = 1 + (1 if running.applied else 0)
        return applied + self._occupy_worker(worker, task.id)

    def _occupy_worker(self, worker: Worker, task_id: str) -> int:
        if worker.status != WorkerStatus.IDLE:
            return 0
        outcome = self._reconciler.apply_optimistic(
            WorkerMutation(worker.id, {"status": WorkerStatus.BUSY, "current_task_id": task_id})
        )
        return 1 if outcome.applied else 0

    def _release_worker(self, task: Task) -> int:
        return release_worker(self._reconciler, task.worker_id, task.id)

    # ---- demo data ----

    def seed_demo_state(self) -> int:
        """
        Populate empty collections with the demo fleet so an offline dashboard
        has something to show. Returns the number of inserted entities.
        """
        inserted = 0

        if not self._reconciler.workers():
            for worker_id in self._demo_workers:
                outcome = self._reconciler.apply_optimistic(
                    WorkerMutation(worker_id, {"status": WorkerStatus.IDLE}, reason=f"Demo worker {worker_id} (IDLE)")
                )
                if outcome == Outcome.INSERTED:
                    self._seeded_workers.add(worker_id)
                    inserted += 1

        if self._reconciler.tasks():
            return self._seeded(inserted)

        demo: list[tuple[str, dict]] = [
            (
                "demo-task-1",
                {
                    "type": "computation",
                    "status": TaskStatus.CREATED,
                    "priority": 5,
                    "data": {"operation": "complex-calculation", "input": [1, 2, 3, 4, 5], "iterations": 100},
                },
            ),
            (
                "demo-task-3",
                {
                    "type": "io",
                    "status": TaskStatus.COMPLETED,
                    "priority": 2,
                    "progress": 100,
                    "data": {"operation": "file-processing", "path": "/data/file.txt"},
                },
            ),
        ]

        healthy = [w for w in self._reconciler.workers() if w.status in HEALTHY_WORKER_STATUSES]
        host = next((w for w in healthy if w.id == "worker-2"), healthy[0] if healthy else None)
        if host is not None:
            demo.insert(
                1,
                (
                    "demo-task-2",
                    {
                        "type": "computation",
                        "status": TaskStatus.RUNNING,
                        "priority": 3,
                        "worker_id": host.id,
                        "progress": 45,
                        "data": {"operation": "matrix-multiplication", "input": [10, 20], "iterations": 50},
                    },
                ),
            )

        for task_id, fields in demo:
            outcome = self._reconciler.apply_optimistic(
                TaskMutation(task_id, fields, reason=f"Demo task {task_id} ({fields['status'].value})")
            )
            if outcome == Outcome.INSERTED:
                self._seeded_tasks.add(task_id)
                inserted += 1

        if host is not None:
            self._occupy_worker(host, "demo-task-2")
        return self._seeded(inserted)

    def discard_demo_state(self) -> int:
        """Remove seeded demo entities the backend never confirmed. Returns the number removed."""
        tasks, workers = sorted(self._seeded_tasks), sorted(self._seeded_workers)
        self._seeded_tasks.clear()
        self._seeded_workers.clear()
        removed = self._reconciler.discard_optimistic(tasks, workers)
        if removed:
            logger.info("Discarded %d demo entities", removed)
        return removed

    @staticmethod
    def _seeded(inserted: int) -> int:
        if inserted:
            logger.info("Seeded %d demo entities", inserted)
        return inserted
