# tests/test_experiments.py

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from taskboard.core.errors import UserInputError
from taskboard.core.events import EventLevel
from taskboard.core.models import TaskStatus, WorkerStatus
from taskboard.dashboard import Dashboard
from taskboard.demo.experiments import (
    CATALOGUE,
    Experiment,
    Message,
    MigrateTask,
    OverloadWorker,
    find_experiment,
    run_experiment,
)
from taskboard.sync.connectivity import Mode

from .fakes import ScriptedRng, task_update, worker_update

MakeDashboard = Callable[..., Dashboard]


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _demo_dashboard(make_dashboard: MakeDashboard) -> Dashboard:
    dashboard = make_dashboard(initial_mode=Mode.DEGRADED)
    dashboard.simulator.seed_demo_state()
    return dashboard


def test_catalogue_ids() -> None:
    assert [e.id for e in CATALOGUE] == [
        "basic-scenario",
        "worker-failure",
        "task-migration",
        "load-balancing",
        "cascading-failure",
        "priority-scheduling",
    ]
    assert find_experiment("task-migration").title == "Task migration"
    with pytest.raises(UserInputError, match="unknown experiment"):
        find_experiment("nope")


@pytest.mark.asyncio
async def test_worker_failure_runs_every_step(make_dashboard: MakeDashboard) -> None:
    dashboard = _demo_dashboard(make_dashboard)
    sleep = RecordingSleep()

    done = await run_experiment(dashboard, find_experiment("worker-failure"), rng=ScriptedRng(), sleep=sleep)

    assert done == 6
    assert sleep.calls == [1.0, 1.0, 5, 10]
    assert dashboard.reconciler.get_worker("worker-1").status == WorkerStatus.IDLE
    created = [dashboard.reconciler.get_task(f"demo-{n}") for n in (1, 2, 3)]
    assert len(created) == 3
    assert all(t.priority == 3 for t in created)

    messages = [e.message for e in dashboard.events.entries()]
    assert "Experiment started: Worker failure" in messages
    assert messages[-1] == "Experiment finished: Worker failure (6/6 steps)"


@pytest.mark.asyncio
async def test_invalid_step_is_skipped_with_warning(make_dashboard: MakeDashboard) -> None:
    dashboard = _demo_dashboard(make_dashboard)
    experiment = Experiment("x", "Skip check", "", (OverloadWorker("worker-1"), Message("still here")))

    done = await run_experiment(dashboard, experiment, rng=ScriptedRng(), sleep=RecordingSleep())

    assert done == 1
    skipped = [e for e in dashboard.events.entries() if e.message.startswith("Step 1 skipped")]
    assert len(skipped) == 1
    assert skipped[0].level == EventLevel.WARNING
    assert any(e.message == "still here" for e in dashboard.events.entries())


@pytest.mark.asyncio
async def test_automatic_migration_picks_running_task(make_dashboard: MakeDashboard) -> None:
    dashboard = _demo_dashboard(make_dashboard)
    experiment = Experiment("m", "Migrate", "", (MigrateTask(),))

    assert await run_experiment(dashboard, experiment, rng=ScriptedRng(), sleep=RecordingSleep()) == 1
    task = dashboard.reconciler.get_task("demo-task-2")
    assert task.status == TaskStatus.MIGRATING
    assert task.worker_id == "worker-1"

    await asyncio.sleep(0.01)
    assert dashboard.reconciler.get_task("demo-task-2").status == TaskStatus.RUNNING


@pytest.mark.asyncio
async def test_overload_sheds_low_priority_tasks(make_dashboard: MakeDashboard) -> None:
    dashboard = make_dashboard(initial_mode=Mode.DEGRADED)
    rec = dashboard.reconciler
    rec.apply_push(task_update("low", "RUNNING", worker_id="w1", priority=1))
    rec.apply_push(task_update("high", "RUNNING", worker_id="w1", priority=9))
    rec.apply_push(worker_update("w1", "BUSY", task="high"))
    rec.apply_push(worker_update("w2", "IDLE"))

    experiment = Experiment("o", "Overload", "", (OverloadWorker("w1"),))
    assert await run_experiment(dashboard, experiment, rng=ScriptedRng(), sleep=RecordingSleep()) == 1

    assert rec.get_worker("w1").status == WorkerStatus.OVERLOADED
    assert rec.get_task("low").status == TaskStatus.MIGRATING
    assert rec.get_task("low").worker_id == "w2"
    assert rec.get_task("high").status == TaskStatus.RUNNING
