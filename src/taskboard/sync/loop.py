# src/taskboard/sync/loop.py

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class BackgroundLoop:
    """
    Owns one cancellable asyncio task.

    stop() is synchronous so it can be called from mode listeners; once it
    returns, the coroutine is cancelled at its next await and never resumes.
    A stopped loop can be started again right away; join() waits for every
    cancelled run to finish.
    """

    def __init__(self, name: str, factory: Callable[[], Awaitable[None]]) -> None:
        self._name = name
        self._factory = factory
        self._task: asyncio.Task[None] | None = None
        self._stopping: set[asyncio.Task[None]] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        if self.running:
            return False
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._factory(), name=self._name)
        logger.debug("%s started", self._name)
        return True

    def stop(self) -> bool:
        task, self._task = self._task, None
        if task is None or task.done():
            return False
        task.cancel()
        self._stopping.add(task)
        task.add_done_callback(self._stopping.discard)
        logger.debug("%s stopping", self._name)
        return True

    async def join(self) -> None:
        self.stop()
        for task in list(self._stopping):
            with contextlib.suppress(asyncio.CancelledError):
                await task
