# tests/test_models.py

from __future__ import annotations

import pytest

from taskboard.core.errors import InvalidTransition, ReconciliationError
from taskboard.core.models import (
    TASK_TRANSITIONS,
    WORKER_TRANSITIONS,
    Task,
    TaskStatus,
    WorkerStatus,
    check_task_invariants,
    check_task_transition,
    check_worker_transition,
    entity_id_from_wire,
    format_timestamp,
    parse_timestamp,
    reachable_statuses,
    short_id,
    task_fields_from_wire,
    task_to_wire,
    worker_fields_from_wire,
)


def test_every_status_has_a_transition_row() -> None:
    assert set(TASK_TRANSITIONS) == set(TaskStatus)
    assert set(WORKER_TRANSITIONS) == set(WorkerStatus)


def test_all_task_statuses_reachable_from_created() -> None:
    assert reachable_statuses(TaskStatus.CREATED) == frozenset(TaskStatus)
    assert reachable_statuses(TaskStatus.COMPLETED) == {TaskStatus.COMPLETED}


def test_terminal_task_statuses_reject_everything_but_self() -> None:
    for terminal in (TaskStatus.COMPLETED, TaskStatus.FAILED):
        check_task_transition("t1", terminal, terminal)
        for other in set(TaskStatus) - {terminal}:
            with pytest.raises(InvalidTransition):
                check_task_transition("t1", terminal, other)


def test_manual_retry_needs_explicit_flag() -> None:
    with pytest.raises(InvalidTransition) as exc_info:
        check_task_transition("t1", TaskStatus.FAILED, TaskStatus.CREATED)
    assert "manual retry only" in str(exc_info.value)

    check_task_transition("t1", TaskStatus.FAILED, TaskStatus.CREATED, manual=True)
    check_task_transition("t1", TaskStatus.COMPLETED, TaskStatus.CREATED, manual=True)

    # The flag does not open any other edge.
    with pytest.raises(InvalidTransition):
        check_task_transition("t1", TaskStatus.COMPLETED, TaskStatus.RUNNING, manual=True)


def test_worker_transitions() -> None:
    check_worker_transition("w1", WorkerStatus.IDLE, WorkerStatus.BUSY)
    check_worker_transition("w1", WorkerStatus.FAILING, WorkerStatus.IDLE)
    check_worker_transition("w1", WorkerStatus.BUSY, WorkerStatus.BUSY)

    with pytest.raises(InvalidTransition):
        check_worker_transition("w1", WorkerStatus.OVERLOADED, WorkerStatus.IDLE)
    with pytest.raises(InvalidTransition):
        check_worker_transition("w1", WorkerStatus.SHUTDOWN, WorkerStatus.IDLE)


def test_invalid_transition_message() -> None:
    exc = InvalidTransition("task", "t1", TaskStatus.COMPLETED, TaskStatus.RUNNING)
    assert str(exc) == "task t1: COMPLETED -> RUNNING is not allowed"


def test_task_invariants_on_worker_reference() -> None:
    running = Task(id="t1", type="io", status=TaskStatus.RUNNING, priority=1, created_at=0, updated_at=0)
    with pytest.raises(InvalidTransition):
        check_task_invariants(running)

    created = Task(
        id="t1", type="io", status=TaskStatus.CREATED, priority=1, created_at=0, updated_at=0, worker_id="w1"
    )
    with pytest.raises(InvalidTransition):
        check_task_invariants(created)


def test_parse_timestamp_formats() -> None:
    assert parse_timestamp(1700000000) == 1700000000.0
    assert parse_timestamp("2024-01-01T00:00:00Z") == 1704067200.0
    # Naive timestamps are read as UTC.
    assert parse_timestamp("2024-01-01T00:00:00") == 1704067200.0
    assert parse_timestamp("2024-01-01T02:00:00+02:00") == 1704067200.0

    for bad in ("yesterday", "", None, True, float("nan")):
        with pytest.raises(ReconciliationError):
            parse_timestamp(bad)


def test_format_timestamp_is_utc_with_z() -> None:
    assert format_timestamp(1704067200.0) == "2024-01-01T00:00:00Z"


def test_task_fields_from_wire_accepts_aliases_and_empty_refs() -> None:
    fields = task_fields_from_wire(
        {"status": "running", "workerId": "", "progress": "40", "checkpointData": {"progress": 35}}
    )
    assert fields == {
        "status": TaskStatus.RUNNING,
        "worker_id": None,
        "progress": 40,
        "checkpoint_data": {"progress": 35},
    }


def test_task_fields_from_wire_rejects_bad_values() -> None:
    with pytest.raises(ReconciliationError):
        task_fields_from_wire({"status": "EXPLODED"})
    with pytest.raises(ReconciliationError):
        task_fields_from_wire({"progress": "lots"})
    with pytest.raises(ReconciliationError):
        task_fields_from_wire({"data": [1, 2]})


def test_worker_fields_from_go_style_payload() -> None:
    payload = {"ID": "w1", "Status": "BUSY", "CurrentTaskID": "t1", "LastSeen": "2024-01-01T00:00:00Z"}
    assert entity_id_from_wire(payload) == "w1"
    assert worker_fields_from_wire(payload) == {
        "status": WorkerStatus.BUSY,
        "current_task_id": "t1",
        "last_seen": 1704067200.0,
    }


def test_entity_without_id_is_malformed() -> None:
    with pytest.raises(ReconciliationError):
        entity_id_from_wire({"status": "IDLE"})


def test_task_to_wire_omits_unset_refs() -> None:
    task = Task(id="t1", type="io", status=TaskStatus.CREATED, priority=3, created_at=0.0, updated_at=60.0)
    wire = task_to_wire(task)
    assert wire["status"] == "CREATED"
    assert wire["updated_at"] == "1970-01-01T00:01:00Z"
    assert "worker_id" not in wire
    assert "checkpoint_data" not in wire


def test_short_id() -> None:
    assert short_id("t1") == "t1"
    assert short_id("0123456789abcdef") == "01234567..."


def test_status_variants_cover_every_status() -> None:
    assert TaskStatus.COMPLETED.variant == "success"
    assert WorkerStatus.FAILING.variant == "danger"
    assert all(s.variant for s in TaskStatus)
    assert all(s.variant for s in WorkerStatus)
