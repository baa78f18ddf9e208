# src/taskboard/sync/poller.py

from __future__ import annotations

import asyncio
import logging

from ..core.errors import ConnectivityError
from ..core.ports import BackendClient
from .connectivity import ConnectivityMonitor
from .loop import BackgroundLoop
from .reconciler import PollReport, Reconciler

logger = logging.getLogger(__name__)


class Poller:
    """
    Periodic pull of the full task/worker lists.

    Every interval_seconds:
    - GET tasks and workers
    - success -> Reconciler.apply_poll() + monitor.report_poll_ok()
    - failure -> monitor.report_poll_failed(); nothing is retried before the next tick

    To stop the poller, call stop() (or cancel the task running run()).
    """

    def __init__(
        self,
        backend: BackendClient,
        reconciler: Reconciler,
        monitor: ConnectivityMonitor,
        *,
        interval_seconds: float = 3.0,
    ) -> None:
        self._backend = backend
        self._reconciler = reconciler
        self._monitor = monitor
        self._interval = max(0.01, float(interval_seconds))
        self._loop = BackgroundLoop("taskboard-poller", self.run)
        self.last_report: PollReport | None = None

    @property
    def running(self) -> bool:
        return self._loop.running

    def start(self) -> bool:
        return self._loop.start()

    def stop(self) -> bool:
        return self._loop.stop()

    async def join(self) -> None:
        await self._loop.join()

    async def poll_once(self) -> PollReport | None:
        try:
            tasks = await self._backend.list_tasks()
            workers = await self._backend.list_workers()
        except ConnectivityError as exc:
            logger.info("Poll failed: %s", exc)
            self._monitor.report_poll_failed(exc)
            return None

        self._monitor.report_poll_ok()
        report = self._reconciler.apply_poll({"tasks": tasks, "workers": workers})
        self.last_report = report
        logger.debug("Poll ok: %d tasks, %d workers, %d changed", len(tasks), len(workers), report.changed)
        return report

    async def run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Poll tick crashed")
            await asyncio.sleep(self._interval)
