# src/taskboard/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds the Dashboard, starts its background drivers,
then runs the console REPL (optional) until /exit, EOF or a signal.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal

from ..cli.bootstrap import create_dashboard
from ..cli.commands import cancel_experiments
from ..config import Settings, get_settings
from ..connectors.console_connector import ConsoleConnector
from ..logging_setup import setup_logging

logger = logging.getLogger(__name__)


async def run_app(settings: Settings) -> None:
    dashboard = create_dashboard(settings=settings)
    stop_main = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not every platform supports loop signal handlers.
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop_main.set)

    async with dashboard:
        if not settings.console_enabled:
            logger.info("Console disabled. Running background sync only. Press Ctrl+C to stop.")
            await stop_main.wait()
        else:
            console = ConsoleConnector(dashboard)
            console_task = asyncio.create_task(console.run(), name="taskboard-console")
            stop_task = asyncio.create_task(stop_main.wait(), name="taskboard-stop")
            try:
                await asyncio.wait({console_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for task in (console_task, stop_task):
                    task.cancel()
                await asyncio.gather(console_task, stop_task, return_exceptions=True)

        cancelled = cancel_experiments()
        if cancelled:
            logger.info("Cancelled %d running experiment(s).", cancelled)


def main() -> None:
    settings = get_settings()

    level_name = str(settings.log_level).upper()
    console_level = getattr(logging, level_name, logging.INFO)
    setup_logging(log_dir=settings.data_dir, console_level=console_level)

    logger.info("Starting %s...", settings.app_name)
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(run_app(settings))
    logger.info("Bye.")


if __name__ == "__main__":
    main()
