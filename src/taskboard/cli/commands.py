# src/taskboard/cli/commands.py

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from ..core.errors import UserInputError
from ..core.events import Event, EventLevel
from ..core.models import Task, Worker, short_id
from ..dashboard import Dashboard
from ..demo.experiments import CATALOGUE, find_experiment, run_experiment
from ..sync.connectivity import Mode

CommandEmitter = Callable[[str], None]
CommandResult = str | Awaitable[str]
CommandHandler2 = Callable[[Dashboard, list[str]], CommandResult]
CommandHandler3 = Callable[[Dashboard, list[str], CommandEmitter | None], CommandResult]
CommandHandler = CommandHandler2 | CommandHandler3

logger = logging.getLogger(__name__)


class CommandRegistry:
    """Simple slash-command registry used by the console (/help, /tasks, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    async def handle(
        self,
        dashboard: Dashboard,
        line: str,
        emit: CommandEmitter | None = None,
    ) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        try:
            nparams = len(inspect.signature(handler).parameters)
        except (TypeError, ValueError):
            nparams = 3

        try:
            result: Any = handler(dashboard, args, emit) if nparams >= 3 else handler(dashboard, args)
            if inspect.isawaitable(result):
                result = await result
        except UserInputError as exc:
            return f"Error: {exc}"
        return str(result)

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()

# Experiments run in the background; keep references so they are not collected.
_experiment_runs: set[asyncio.Task[int]] = set()


def _ts(ts: float) -> str:
    return datetime.fromtimestamp(ts).astimezone().strftime("%H:%M:%S")


def format_task(task: Task) -> str:
    mark = "*" if task.optimistic else " "
    worker = task.worker_id or "-"
    return (
        f"{mark}{short_id(task.id):<11} {task.status.value:<10} {task.progress:>3}%  "
        f"prio {task.priority:<3} worker {worker:<10} {task.type}"
    )


def format_worker(worker: Worker) -> str:
    mark = "*" if worker.optimistic else " "
    task = short_id(worker.current_task_id) if worker.current_task_id else "-"
    return f"{mark}{worker.id:<12} {worker.status.value:<10} task {task:<11} seen {_ts(worker.last_seen)}"


def format_event(event: Event) -> str:
    level = "!" if event.level == EventLevel.WARNING else " "
    return f"[{_ts(event.timestamp)}]{level} {event.message}"


def _usage(text: str) -> UserInputError:
    return UserInputError(f"usage: {text}")


def cmd_help(dashboard: Dashboard, args: list[str]) -> str:
    return registry.build_help()


def cmd_status(dashboard: Dashboard, args: list[str]) -> str:
    snap = dashboard.snapshot()
    monitor = dashboard.monitor

    def _health(flag: bool | None) -> str:
        return "unknown" if flag is None else ("ok" if flag else "down")

    lines = [
        "Status:",
        f"  Mode: {snap.mode.value}" + (" (demo data)" if snap.mode == Mode.DEGRADED else ""),
        f"  Push channel: {_health(monitor.push_healthy)}",
        f"  Polling: {_health(monitor.poll_healthy)}",
        f"  Tasks: {len(snap.tasks)}  Workers: {len(snap.workers)}  Events: {len(snap.events)}",
    ]
    if monitor.last_error:
        lines.append(f"  Last error: {monitor.last_error}")
    if snap.selected_task is not None:
        lines.append(f"  Selected: {snap.selected_task.id}")
    return "\n".join(lines)


def cmd_tasks(dashboard: Dashboard, args: list[str]) -> str:
    tasks = dashboard.snapshot().tasks
    if not tasks:
        return "No tasks."
    return "\n".join([f"Tasks ({len(tasks)}, * = local/unconfirmed):"] + [format_task(t) for t in tasks])


def cmd_workers(dashboard: Dashboard, args: list[str]) -> str:
    workers = dashboard.snapshot().workers
    if not workers:
        return "No workers."
    return "\n".join([f"Workers ({len(workers)}):"] + [format_worker(w) for w in workers])


def cmd_events(dashboard: Dashboard, args: list[str]) -> str:
    """
    /events      -> last 10 events
    /events 50   -> last 50 events
    """
    limit = 10
    if args:
        try:
            limit = max(1, int(args[0]))
        except ValueError:
            raise _usage("/events [count]") from None
    events = list(reversed(dashboard.events.latest(limit)))
    if not events:
        return "No events yet."
    return "\n".join(format_event(e) for e in events)


async def cmd_create(dashboard: Dashboard, args: list[str]) -> str:
    """
    /create <type> [priority] [json-data]
    e.g. /create computation 7 {"iterations": 100}
    """
    if not args:
        raise _usage("/create <type> [priority] [json-data]")
    priority: Any = args[1] if len(args) > 1 else 5
    data = " ".join(args[2:]) if len(args) > 2 else None
    task = await dashboard.create_task(args[0], priority, data)
    return f"Created task {task.id} ({task.status.value}, priority {task.priority})."


async def cmd_migrate(dashboard: Dashboard, args: list[str]) -> str:
    if len(args) != 2:
        raise _usage("/migrate <task-id> <worker-id>")
    task = await dashboard.migrate_task(args[0], args[1])
    return f"Task {task.id} is {task.status.value} on {task.worker_id or '-'}."


def cmd_select(dashboard: Dashboard, args: list[str]) -> str:
    if not args:
        raise _usage("/select <task-id> | /select none")
    if args[0].lower() in ("none", "-"):
        dashboard.select_task(None)
        return "Selection cleared."

    task = dashboard.select_task(args[0])
    lines = [
        f"Task {task.id}",
        f"  Type: {task.type}",
        f"  Status: {task.status.value}" + (" (local)" if task.optimistic else ""),
        f"  Priority: {task.priority}",
        f"  Progress: {task.progress}%",
        f"  Worker: {task.worker_id or '-'}",
        f"  Created: {_ts(task.created_at)}  Updated: {_ts(task.updated_at)}",
        f"  Data: {task.data}",
    ]
    if task.checkpoint_data is not None:
        lines.append(f"  Checkpoint: {task.checkpoint_data}")
    return "\n".join(lines)


async def cmd_retry(dashboard: Dashboard, args: list[str]) -> str:
    if len(args) != 1:
        raise _usage("/retry <task-id>")
    task = await dashboard.retry_task(args[0])
    return f"Task {task.id} is {task.status.value} again."


async def cmd_fail(dashboard: Dashboard, args: list[str]) -> str:
    if len(args) != 1:
        raise _usage("/fail <worker-id>")
    worker = await dashboard.fail_worker(args[0])
    return f"Worker {worker.id} is {worker.status.value}."


async def cmd_recover(dashboard: Dashboard, args: list[str]) -> str:
    if len(args) != 1:
        raise _usage("/recover <worker-id>")
    worker = await dashboard.recover_worker(args[0])
    return f"Worker {worker.id} is {worker.status.value}."


def cmd_experiment(dashboard: Dashboard, args: list[str], emit: CommandEmitter | None = None) -> str:
    """
    /experiment        -> list experiments
    /experiment <id>   -> run one in the background
    """
    if not args:
        lines = ["Experiments:"]
        for exp in CATALOGUE:
            lines.append(f"  {exp.id:<20} {exp.title}: {exp.description}")
        return "\n".join(lines)

    experiment = find_experiment(args[0])

    def _done(task: asyncio.Task[int]) -> None:
        _experiment_runs.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Experiment %s crashed", experiment.id, exc_info=exc)
        elif emit is not None:
            emit(f"[EXPERIMENT] {experiment.title} finished ({task.result()}/{len(experiment.steps)} steps).")

    run = asyncio.get_running_loop().create_task(run_experiment(dashboard, experiment), name=f"experiment-{experiment.id}")
    _experiment_runs.add(run)
    run.add_done_callback(_done)
    return f"Experiment {experiment.id} started ({len(experiment.steps)} steps)."


def cancel_experiments() -> int:
    runs = list(_experiment_runs)
    for run in runs:
        run.cancel()
    return len(runs)


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("status", cmd_status, help_text="Show mode, connectivity and counts.")
registry.register("tasks", cmd_tasks, help_text="List tasks (priority first).")
registry.register("workers", cmd_workers, help_text="List workers.")
registry.register("events", cmd_events, help_text="Show recent events: /events [count].")
registry.register("create", cmd_create, help_text="Create a task: /create <type> [priority] [json-data].")
registry.register("migrate", cmd_migrate, help_text="Migrate a running task: /migrate <task-id> <worker-id>.")
registry.register("select", cmd_select, help_text="Show task details: /select <task-id> | none.")
registry.register("retry", cmd_retry, help_text="Re-queue a finished task: /retry <task-id>.")
registry.register("fail", cmd_fail, help_text="Simulate a worker failure: /fail <worker-id>.")
registry.register("recover", cmd_recover, help_text="Recover a failed worker: /recover <worker-id>.")
registry.register(
    "experiment", cmd_experiment, help_text="List or run a demo experiment: /experiment [id].", aliases=["exp"]
)
