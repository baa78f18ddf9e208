# src/taskboard/demo/experiments.py

from __future__ import annotations

"""
Scripted demo experiments.

An experiment is a named list of steps driven through the Dashboard commands,
so it behaves the same against a live backend and in degraded (demo) mode.
A step that fails validation (e.g. the worker is not BUSY) is logged as a
warning event and the run continues with the next step.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from ..core.errors import UserInputError
from ..core.events import EventLevel
from ..core.models import HEALTHY_WORKER_STATUSES, TaskStatus, WorkerStatus
from ..sync.simulator import RandomSource

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class CreateTasks:
    count: int
    priority: int | None = None
    priority_range: tuple[int, int] | None = None
    long_running: bool = False
    pause_seconds: float = 1.0


@dataclass(frozen=True, slots=True)
class Wait:
    seconds: float


@dataclass(frozen=True, slots=True)
class FailWorker:
    worker_id: str


@dataclass(frozen=True, slots=True)
class RecoverWorker:
    worker_id: str


@dataclass(frozen=True, slots=True)
class OverloadWorker:
    worker_id: str


@dataclass(frozen=True, slots=True)
class MigrateTask:
    """task_id/target_worker_id of None mean "pick one automatically"."""

    task_id: str | None = None
    target_worker_id: str | None = None


@dataclass(frozen=True, slots=True)
class Message:
    text: str


Step = CreateTasks | Wait | FailWorker | RecoverWorker | OverloadWorker | MigrateTask | Message


@dataclass(frozen=True, slots=True)
class Experiment:
    id: str
    title: str
    description: str
    steps: tuple[Step, ...] = field(default_factory=tuple)


CATALOGUE: tuple[Experiment, ...] = (
    Experiment(
        "basic-scenario",
        "Basic scenario",
        "Creates several tasks and shows the regular processing flow.",
        (
            CreateTasks(5, priority_range=(1, 10)),
            Wait(5),
            Message("Tasks were created and distributed."),
        ),
    ),
    Experiment(
        "worker-failure",
        "Worker failure",
        "Fails a worker and shows how its tasks are recovered.",
        (
            CreateTasks(3, priority_range=(3, 8)),
            Wait(5),
            FailWorker("worker-1"),
            Wait(10),
            Message("The worker was restored and all tasks were moved."),
            RecoverWorker("worker-1"),
        ),
    ),
    Experiment(
        "task-migration",
        "Task migration",
        "Moves a long-running task from one worker to another.",
        (
            CreateTasks(1, priority=7, long_running=True),
            Wait(5),
            MigrateTask(),
            Wait(5),
            Message("The task was migrated and keeps running."),
        ),
    ),
    Experiment(
        "load-balancing",
        "Load balancing",
        "Overloads a worker; its low-priority tasks are moved elsewhere.",
        (
            CreateTasks(10, priority_range=(1, 10)),
            Wait(8),
            OverloadWorker("worker-2"),
            Wait(10),
            Message("Low-priority tasks were migrated to other workers."),
        ),
    ),
    Experiment(
        "cascading-failure",
        "Cascading failure",
        "Fails several workers in a row, then brings them back.",
        (
            CreateTasks(8, priority_range=(3, 9)),
            Wait(10),
            FailWorker("worker-1"),
            Wait(8),
            FailWorker("worker-2"),
            Wait(10),
            Message("The system keeps going with reduced capacity."),
            RecoverWorker("worker-1"),
            Wait(5),
            RecoverWorker("worker-2"),
        ),
    ),
    Experiment(
        "priority-scheduling",
        "Priority scheduling",
        "Creates tasks with different priorities; higher priority runs first.",
        (
            CreateTasks(1, priority=1),
            CreateTasks(1, priority=5),
            CreateTasks(1, priority=10),
            Wait(15),
            Message("Higher-priority tasks were processed first."),
        ),
    ),
)


def find_experiment(experiment_id: str) -> Experiment:
    for exp in CATALOGUE:
        if exp.id == experiment_id:
            return exp
    known = ", ".join(e.id for e in CATALOGUE)
    raise UserInputError(f"unknown experiment: {experiment_id} (known: {known})")


async def run_experiment(
    dashboard,
    experiment: Experiment,
    *,
    rng: RandomSource | None = None,
    sleep: Sleep = asyncio.sleep,
) -> int:
    """
    Run all steps in order. Returns the number of steps that completed.

    `dashboard` is a taskboard.dashboard.Dashboard (or anything with the same
    command methods).
    """
    rng = rng if rng is not None else random.Random()
    dashboard.log(f"Experiment started: {experiment.title}")
    logger.info("Running experiment %s (%d steps)", experiment.id, len(experiment.steps))

    done = 0
    for index, step in enumerate(experiment.steps, start=1):
        try:
            await _run_step(dashboard, step, rng, sleep)
        except UserInputError as exc:
            dashboard.log(f"Step {index} skipped: {exc}", level=EventLevel.WARNING)
            continue
        done += 1

    dashboard.log(f"Experiment finished: {experiment.title} ({done}/{len(experiment.steps)} steps)")
    return done


async def _run_step(dashboard, step: Step, rng: RandomSource, sleep: Sleep) -> None:
    if isinstance(step, CreateTasks):
        for i in range(step.count):
            if step.priority_range is not None:
                lo, hi = step.priority_range
                priority = rng.randint(lo, hi)
            else:
                priority = step.priority if step.priority is not None else 5
            data = {
                "operation": "complex-calculation",
                "input": [1, 2, 3, 4, 5],
                "iterations": 500 if step.long_running else 100,
            }
            await dashboard.create_task("computation", priority, data)
            if i + 1 < step.count:
                await sleep(step.pause_seconds)

    elif isinstance(step, Wait):
        await sleep(step.seconds)

    elif isinstance(step, FailWorker):
        await dashboard.fail_worker(step.worker_id)

    elif isinstance(step, RecoverWorker):
        await dashboard.recover_worker(step.worker_id)

    elif isinstance(step, OverloadWorker):
        dashboard.overload_worker(step.worker_id)
        await _shed_load(dashboard, step.worker_id, rng)

    elif isinstance(step, MigrateTask):
        await _migrate(dashboard, step, rng)

    elif isinstance(step, Message):
        dashboard.log(step.text)


async def _migrate(dashboard, step: MigrateTask, rng: RandomSource) -> None:
    snapshot = dashboard.snapshot()
    if step.task_id is not None:
        task = next((t for t in snapshot.tasks if t.id == step.task_id), None)
    else:
        running = [t for t in snapshot.tasks if t.status == TaskStatus.RUNNING]
        task = rng.choice(running) if running else None
    if task is None:
        raise UserInputError("no running task to migrate")

    target = step.target_worker_id
    if target is None:
        candidates = [w.id for w in snapshot.workers if w.id != task.worker_id and w.status in HEALTHY_WORKER_STATUSES]
        if not candidates:
            raise UserInputError(f"no other healthy worker for task {task.id}")
        target = rng.choice(candidates)

    await dashboard.migrate_task(task.id, target)


async def _shed_load(dashboard, worker_id: str, rng: RandomSource) -> None:
    """Move all but the highest-priority running task off an overloaded worker."""
    snapshot = dashboard.snapshot()
    on_worker = sorted(
        (t for t in snapshot.tasks if t.worker_id == worker_id and t.status == TaskStatus.RUNNING),
        key=lambda t: t.priority,
    )
    targets = [w.id for w in snapshot.workers if w.id != worker_id and w.status in (WorkerStatus.IDLE, WorkerStatus.BUSY)]
    if not targets:
        return
    for task in on_worker[:-1]:
        await dashboard.migrate_task(task.id, rng.choice(targets))
