# tests/test_reconciler.py

from __future__ import annotations

import json

import pytest

from taskboard.core.errors import UserInputError
from taskboard.core.events import EventLevel
from taskboard.core.models import TASK_TRANSITIONS, TaskStatus, WorkerStatus
from taskboard.sync.reconciler import Outcome, Reconciler, TaskMutation, WorkerMutation

from .fakes import ManualClock, task_update, wire_task, wire_worker, worker_update


def _warnings(reconciler: Reconciler) -> list[str]:
    return [e.message for e in reconciler.events.entries() if e.level == EventLevel.WARNING]


# ---- push ----


def test_push_for_unknown_task_inserts_it(reconciler: Reconciler) -> None:
    outcome = reconciler.apply_push(task_update("t9", "CREATED", type="io", priority=2))

    assert outcome == Outcome.INSERTED
    task = reconciler.get_task("t9")
    assert task is not None
    assert task.status == TaskStatus.CREATED
    assert task.type == "io"
    assert not task.optimistic
    assert "t9" in reconciler.events.entries()[-1].message


def test_push_completed_to_running_is_rejected(reconciler: Reconciler) -> None:
    reconciler.apply_push(task_update("t1", "COMPLETED", progress=100, ts=1000.0))
    before = len(reconciler.events)

    outcome = reconciler.apply_push(task_update("t1", "RUNNING", worker_id="w1", progress=10, ts=1001.0))

    assert outcome == Outcome.REJECTED
    assert reconciler.get_task("t1").status == TaskStatus.COMPLETED
    assert len(reconciler.events) == before + 1
    assert "COMPLETED -> RUNNING is not allowed" in _warnings(reconciler)[-1]


def test_push_accepts_raw_json_text(reconciler: Reconciler) -> None:
    raw = json.dumps(task_update("t1", "RUNNING", worker_id="w1", progress=5))
    assert reconciler.apply_push(raw) == Outcome.INSERTED
    assert reconciler.apply_push(raw.encode("utf-8")) == Outcome.ACCEPTED


def test_last_writer_wins_and_stale_push_is_dropped(reconciler: Reconciler) -> None:
    reconciler.apply_push(task_update("t1", "RUNNING", worker_id="w1", progress=10, ts=1000.0))
    reconciler.apply_push(task_update("t1", "RUNNING", worker_id="w1", progress=30, ts=1002.0))

    outcome = reconciler.apply_push(task_update("t1", "RUNNING", worker_id="w1", progress=20, ts=1001.0))

    assert outcome == Outcome.STALE
    assert reconciler.get_task("t1").progress == 30
    assert "stale" in _warnings(reconciler)[-1]


def test_timestamp_tie_goes_to_incoming_update(reconciler: Reconciler) -> None:
    reconciler.apply_push(task_update("t1", "RUNNING", worker_id="w1", ts=1000.0))
    outcome = reconciler.apply_push(task_update("t1", "MIGRATING", worker_id="w2", ts=1000.0))

    assert outcome == Outcome.ACCEPTED
    task = reconciler.get_task("t1")
    assert task.status == TaskStatus.MIGRATING
    assert task.worker_id == "w2"


def test_running_progress_never_goes_backwards(reconciler: Reconciler) -> None:
    reconciler.apply_push(task_update("t1", "RUNNING", worker_id="w1", progress=60, ts=1000.0))
    reconciler.apply_push(task_update("t1", "RUNNING", worker_id="w1", progress=40, ts=1001.0))
    assert reconciler.get_task("t1").progress == 60


def test_same_push_twice_is_idempotent_with_one_event_each(reconciler: Reconciler) -> None:
    msg = task_update("t1", "RUNNING", worker_id="w1", progress=25, ts=1000.0)
    reconciler.apply_push(msg)
    state = reconciler.get_task("t1")
    count = len(reconciler.events)

    assert reconciler.apply_push(msg) == Outcome.ACCEPTED
    assert reconciler.get_task("t1") == state
    assert len(reconciler.events) == count + 1


def test_terminal_status_clears_worker_reference(reconciler: Reconciler) -> None:
    reconciler.apply_push(task_update("t1", "RUNNING", worker_id="w1", ts=1000.0))
    reconciler.apply_push(task_update("t1", "COMPLETED", worker_id="w1", progress=100, ts=1001.0))
    task = reconciler.get_task("t1")
    assert task.status == TaskStatus.COMPLETED
    assert task.worker_id is None


def test_worker_bound_status_without_worker_is_rejected(reconciler: Reconciler) -> None:
    reconciler.apply_push(task_update("t1", "CREATED", ts=1000.0))
    outcome = reconciler.apply_push(task_update("t1", "ASSIGNED", ts=1001.0))
    assert outcome == Outcome.REJECTED
    assert reconciler.get_task("t1").status == TaskStatus.CREATED


def test_malformed_push_messages_are_dropped(reconciler: Reconciler) -> None:
    assert reconciler.apply_push("{not json") == Outcome.MALFORMED
    assert reconciler.apply_push({"type": "bogus", "content": {}}) == Outcome.MALFORMED
    assert reconciler.apply_push({"type": "task_update", "content": "nope"}) == Outcome.MALFORMED
    assert reconciler.apply_push(task_update("t1", "EXPLODED")) == Outcome.MALFORMED
    assert reconciler.apply_push([1, 2, 3]) == Outcome.MALFORMED

    assert reconciler.tasks() == ()
    assert len(_warnings(reconciler)) == 5


def test_welcome_is_ignored_silently(reconciler: Reconciler) -> None:
    assert reconciler.apply_push({"type": "welcome", "content": "hello"}) == Outcome.IGNORED
    assert len(reconciler.events) == 0


def test_checkpoint_then_recovery_resumes_from_checkpoint(reconciler: Reconciler, clock: ManualClock) -> None:
    reconciler.apply_push(task_update("t1", "RUNNING", worker_id="w1", progress=40, ts=1000.0))

    clock.advance(1)
    outcome = reconciler.apply_push(
        {"type": "task_checkpoint", "taskId": "t1", "content": {"progress": 55, "state": "step-11"}}
    )
    assert outcome == Outcome.ACCEPTED
    assert reconciler.get_task("t1").checkpoint_data == {"progress": 55, "state": "step-11"}
    assert "Checkpoint for task t1: progress 55%" in reconciler.events.entries()[-1].message

    clock.advance(1)
    reconciler.apply_push({"type": "task_recovery", "taskId": "t1", "content": {"message": "worker lost"}})
    task = reconciler.get_task("t1")
    assert task.status == TaskStatus.RECOVERING
    assert task.worker_id == "w1"
    assert "worker lost" in reconciler.events.entries()[-1].message

    clock.advance(1)
    reconciler.apply_push(
        {"type": "task_update", "taskId": "t1", "content": {"id": "t1", "status": "RUNNING", "worker_id": "w2"}}
    )
    task = reconciler.get_task("t1")
    assert task.status == TaskStatus.RUNNING
    assert task.worker_id == "w2"
    assert task.progress == 55


def test_migration_notice_moves_task(reconciler: Reconciler) -> None:
    reconciler.apply_push(task_update("t1", "RUNNING", worker_id="w1", ts=900.0))

    outcome = reconciler.apply_push(
        {"type": "task_migration", "taskId": "t1", "content": {"fromWorker": "w1", "toWorker": "w3"}}
    )

    assert outcome == Outcome.ACCEPTED
    task = reconciler.get_task("t1")
    assert task.status == TaskStatus.MIGRATING
    assert task.worker_id == "w3"
    assert reconciler.events.entries()[-1].message == "Task t1 migrating from worker w1 to w3"


def test_notice_for_unknown_task_is_malformed(reconciler: Reconciler) -> None:
    outcome = reconciler.apply_push({"type": "task_checkpoint", "taskId": "ghost", "content": {"progress": 1}})
    assert outcome == Outcome.MALFORMED
    assert reconciler.get_task("ghost") is None


def test_worker_updates_follow_worker_state_machine(reconciler: Reconciler) -> None:
    assert reconciler.apply_push(worker_update("w1", "BUSY", task="t1", ts=1000.0)) == Outcome.INSERTED
    assert reconciler.get_worker("w1").current_task_id == "t1"

    assert reconciler.apply_push(worker_update("w1", "IDLE", task="t1", ts=1001.0)) == Outcome.ACCEPTED
    # IDLE workers never hold a task reference.
    assert reconciler.get_worker("w1").current_task_id is None

    assert reconciler.apply_push(worker_update("w1", "OVERLOADED", ts=1002.0)) == Outcome.REJECTED
    assert reconciler.get_worker("w1").status == WorkerStatus.IDLE


@pytest.mark.parametrize("old", list(TaskStatus))
@pytest.mark.parametrize("new", list(TaskStatus))
def test_push_transition_table(old: TaskStatus, new: TaskStatus) -> None:
    rec = Reconciler(clock=ManualClock(1000.0))
    rec.apply_push(task_update("t1", old.value, worker_id="w1", ts=1000.0))

    outcome = rec.apply_push(task_update("t1", new.value, worker_id="w1", ts=1001.0))

    allowed = new == old or new in TASK_TRANSITIONS[old]
    assert outcome == (Outcome.ACCEPTED if allowed else Outcome.REJECTED)
    assert rec.get_task("t1").status == (new if allowed else old)


# ---- poll ----


def test_poll_inserts_then_reports_unchanged_without_events(reconciler: Reconciler) -> None:
    snapshot = {
        "tasks": [wire_task("t1", "RUNNING", worker_id="w1", progress=20)],
        "workers": [wire_worker("w1", "BUSY", task="t1")],
    }
    first = reconciler.apply_poll(snapshot)
    assert first.count(Outcome.INSERTED) == 2
    count = len(reconciler.events)

    second = reconciler.apply_poll(snapshot)
    assert second.count(Outcome.UNCHANGED) == 2
    assert second.changed == 0
    assert len(reconciler.events) == count


def test_poll_never_deletes(reconciler: Reconciler) -> None:
    reconciler.apply_poll({"tasks": [wire_task("t1", "CREATED")], "workers": [wire_worker("w1", "IDLE")]})
    reconciler.apply_poll({"tasks": [], "workers": []})
    reconciler.apply_poll({})

    assert reconciler.get_task("t1") is not None
    assert reconciler.get_worker("w1") is not None


def test_discard_optimistic_removes_only_unconfirmed_entries(reconciler: Reconciler) -> None:
    reconciler.apply_optimistic(TaskMutation("d1", {"type": "io", "status": TaskStatus.CREATED}))
    reconciler.apply_optimistic(TaskMutation("d2", {"type": "io", "status": TaskStatus.CREATED}))
    reconciler.apply_optimistic(WorkerMutation("dw", {"status": WorkerStatus.IDLE}))
    reconciler.apply_push(task_update("d2", "CREATED", ts=1000.0))
    reconciler.apply_push(task_update("t1", "CREATED"))
    reconciler.select_task("d1")
    seen: list[int] = []
    reconciler.subscribe(lambda view: seen.append(len(view.tasks)))
    count = len(reconciler.events)

    removed = reconciler.discard_optimistic(["d1", "d2", "t1", "ghost"], ["dw"])

    assert removed == 2
    assert [t.id for t in reconciler.tasks()] == ["d2", "t1"]
    assert reconciler.workers() == ()
    assert reconciler.selected_task_id is None
    assert [e.message for e in reconciler.events.entries()[count:]] == [
        "Removed demo task d1",
        "Removed demo worker dw",
    ]
    assert seen == [2]

    assert reconciler.discard_optimistic(["d2"]) == 0


def test_stale_poll_entry_is_skipped_quietly(reconciler: Reconciler) -> None:
    reconciler.apply_push(task_update("t1", "RUNNING", worker_id="w1", progress=50, ts=1005.0))
    count = len(reconciler.events)

    report = reconciler.apply_poll({"tasks": [wire_task("t1", "RUNNING", worker_id="w1", progress=30, ts=1000.0)]})

    assert report.count(Outcome.STALE) == 1
    assert reconciler.get_task("t1").progress == 50
    assert len(reconciler.events) == count


def test_poll_with_one_bad_entry_applies_the_rest(reconciler: Reconciler) -> None:
    report = reconciler.apply_poll(
        {"tasks": [wire_task("t1", "CREATED"), {"status": "CREATED"}, "garbage", wire_task("t2", "FAILED")]}
    )
    assert report.count(Outcome.INSERTED) == 2
    assert report.count(Outcome.MALFORMED) == 2


def test_malformed_snapshot(reconciler: Reconciler) -> None:
    report = reconciler.apply_poll({"tasks": "not-a-list"})
    assert report.count(Outcome.MALFORMED) == 1


def test_selected_task_follows_refreshed_entity(reconciler: Reconciler) -> None:
    reconciler.apply_poll({"tasks": [wire_task("t1", "RUNNING", worker_id="w1", progress=10, ts=1000.0)]})
    reconciler.select_task("t1")

    reconciler.apply_poll({"tasks": [wire_task("t1", "RUNNING", worker_id="w1", progress=70, ts=1003.0)]})

    assert reconciler.snapshot().selected_task.progress == 70

    reconciler.select_task(None)
    assert reconciler.snapshot().selected_task is None
    with pytest.raises(UserInputError):
        reconciler.select_task("missing")


# ---- optimistic ----


def test_optimistic_entity_superseded_by_authoritative_update(reconciler: Reconciler, clock: ManualClock) -> None:
    reconciler.apply_push(task_update("t1", "RUNNING", worker_id="w1", progress=90, ts=999.0))
    reconciler.apply_optimistic(TaskMutation("t1", {"status": TaskStatus.COMPLETED, "progress": 100}))
    local = reconciler.get_task("t1")
    assert local.optimistic
    assert local.updated_at == clock()

    # COMPLETED -> RUNNING is normally invalid; server truth still wins.
    outcome = reconciler.apply_push(task_update("t1", "RUNNING", worker_id="w1", progress=60, ts=clock()))

    assert outcome == Outcome.ACCEPTED
    task = reconciler.get_task("t1")
    assert task.status == TaskStatus.RUNNING
    assert task.progress == 60
    assert not task.optimistic
    assert "(confirmed by backend)" in reconciler.events.entries()[-1].message


def test_older_authoritative_update_does_not_supersede(reconciler: Reconciler, clock: ManualClock) -> None:
    reconciler.apply_optimistic(TaskMutation("t1", {"type": "io", "priority": 1}))

    outcome = reconciler.apply_push(task_update("t1", "FAILED", ts=clock() - 5))

    assert outcome == Outcome.STALE
    assert reconciler.get_task("t1").status == TaskStatus.CREATED
    assert reconciler.get_task("t1").optimistic


def test_optimistic_mutation_is_validated(reconciler: Reconciler) -> None:
    reconciler.apply_push(task_update("t1", "COMPLETED", progress=100))

    assert reconciler.apply_optimistic(TaskMutation("t1", {"status": TaskStatus.RUNNING})) == Outcome.REJECTED
    assert reconciler.apply_optimistic(TaskMutation("t1", {"bogus": 1})) == Outcome.MALFORMED
    assert reconciler.get_task("t1").status == TaskStatus.COMPLETED


def test_manual_retry_resets_task(reconciler: Reconciler) -> None:
    reconciler.apply_push(task_update("t1", "FAILED", progress=35))

    assert reconciler.apply_optimistic(TaskMutation("t1", {"status": "CREATED"})) == Outcome.REJECTED
    assert "manual retry only" in _warnings(reconciler)[-1]

    assert reconciler.apply_optimistic(TaskMutation("t1", {"status": "CREATED"}, manual=True)) == Outcome.ACCEPTED
    task = reconciler.get_task("t1")
    assert task.status == TaskStatus.CREATED
    assert task.progress == 0
    assert task.worker_id is None
    assert task.optimistic


def test_optimistic_worker_insert_and_reason_text(reconciler: Reconciler) -> None:
    outcome = reconciler.apply_optimistic(WorkerMutation("w9", {"status": WorkerStatus.IDLE}, reason="Demo worker w9"))
    assert outcome == Outcome.INSERTED
    assert reconciler.get_worker("w9").optimistic
    assert reconciler.events.entries()[-1].message == "Demo worker w9"


def test_every_accepted_mutation_logs_exactly_one_event(reconciler: Reconciler) -> None:
    steps = [
        lambda: reconciler.apply_push(task_update("t1", "CREATED", ts=1000.0)),
        lambda: reconciler.apply_push(task_update("t1", "ASSIGNED", worker_id="w1", ts=1001.0)),
        lambda: reconciler.apply_optimistic(TaskMutation("t1", {"status": TaskStatus.RUNNING, "progress": 10})),
        lambda: reconciler.apply_push(worker_update("w1", "BUSY", task="t1", ts=1002.0)),
    ]
    for step in steps:
        before = len(reconciler.events)
        assert step().applied
        assert len(reconciler.events) == before + 1


# ---- observers ----


def test_subscribe_and_unsubscribe(reconciler: Reconciler) -> None:
    views = []
    unsubscribe = reconciler.subscribe(views.append)

    reconciler.apply_push(task_update("t1", "CREATED"))
    assert len(views) == 1
    assert views[0].tasks[0].id == "t1"

    unsubscribe()
    reconciler.apply_push(task_update("t2", "CREATED"))
    assert len(views) == 1


def test_failing_observer_does_not_break_updates(reconciler: Reconciler) -> None:
    def boom(_view) -> None:
        raise RuntimeError("observer bug")

    reconciler.subscribe(boom)
    assert reconciler.apply_push(task_update("t1", "CREATED")) == Outcome.INSERTED


def test_tasks_sorted_by_priority_then_age(reconciler: Reconciler) -> None:
    reconciler.apply_push(task_update("low", "CREATED", priority=1, ts=1000.0))
    reconciler.apply_push(task_update("high-late", "CREATED", priority=9, ts=1002.0))
    reconciler.apply_push(task_update("high-early", "CREATED", priority=9, ts=1001.0))

    assert [t.id for t in reconciler.tasks()] == ["high-early", "high-late", "low"]
