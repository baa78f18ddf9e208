# src/taskboard/connectors/console_connector.py

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from collections.abc import Callable
from datetime import datetime

from ..cli.commands import CommandRegistry, format_event
from ..cli.commands import registry as command_registry
from ..dashboard import Dashboard, DashboardSnapshot

logger = logging.getLogger(__name__)


def _ts_local() -> str:
    return datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S")


class ConsoleConnector:
    """
    Interactive console on top of a running Dashboard.

    - stdin is read in a daemon thread and handed to the event loop, so the
      background drivers keep running while the user types
    - new dashboard events are printed as they arrive
    - /exit, /quit, EOF or request_stop() end the loop
    """

    def __init__(
        self,
        dashboard: Dashboard,
        *,
        registry: CommandRegistry = command_registry,
        out: Callable[[str], None] = print,
    ) -> None:
        self._dashboard = dashboard
        self._registry = registry
        self._out = out
        self._lines: asyncio.Queue[str | None] = asyncio.Queue()
        self._last_event_id = max((e.id for e in dashboard.events.entries()), default=0)

    def feed(self, line: str) -> None:
        self._lines.put_nowait(line)

    def request_stop(self) -> None:
        self._lines.put_nowait(None)

    def _emit(self, text: str) -> None:
        self._out(f"[{_ts_local()}] {text}")

    def _on_snapshot(self, snapshot: DashboardSnapshot) -> None:
        for event in snapshot.events:
            if event.id > self._last_event_id:
                self._out(format_event(event))
                self._last_event_id = event.id

    def _start_stdin_reader(self) -> None:
        loop = asyncio.get_running_loop()

        def _push(item: str | None) -> None:
            # The loop may already be closed when the user hits Enter during shutdown.
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(self._lines.put_nowait, item)

        def _reader() -> None:
            while True:
                try:
                    line = input()
                except (EOFError, KeyboardInterrupt):
                    _push(None)
                    return
                _push(line)

        threading.Thread(target=_reader, name="taskboard-console", daemon=True).start()

    async def run(self, *, read_stdin: bool = True) -> None:
        logger.info("Console connector started (mode=%s).", self._dashboard.mode.value)
        self._emit("[CONSOLE] Use /help for commands. Use /exit to quit.")

        unsubscribe = self._dashboard.subscribe(self._on_snapshot)
        if read_stdin:
            self._start_stdin_reader()

        try:
            while True:
                line = await self._lines.get()
                if line is None:
                    logger.info("Console input closed, exiting.")
                    break

                text = line.strip()
                if not text:
                    continue
                if text.lower() in ("/exit", "/quit"):
                    logger.info("Console exit command received.")
                    break

                try:
                    reply = await self._registry.handle(self._dashboard, text, emit=self._emit)
                except Exception:
                    logger.exception("Command handler crashed.")
                    reply = "Internal error while handling a command."

                if reply is None:
                    reply = "Not a command. Use /help to list available commands."
                self._emit(reply)
        finally:
            unsubscribe()
            logger.info("Console connector finished.")
