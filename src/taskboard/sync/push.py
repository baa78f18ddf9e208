# src/taskboard/sync/push.py

from __future__ import annotations

import asyncio
import logging

from ..core.errors import ConnectivityError
from ..core.ports import PushChannel
from .connectivity import ConnectivityMonitor
from .loop import BackgroundLoop
from .reconciler import Reconciler

logger = logging.getLogger(__name__)


class PushListener:
    """
    Feeds the push channel into the Reconciler.

    - open fails          -> report_push_error(), wait reconnect_seconds
    - open succeeds       -> report_push_open(), then every frame -> apply_push()
    - channel breaks      -> report_push_closed(), wait reconnect_seconds

    No tight reconnect loop: one attempt per reconnect interval.
    """

    def __init__(
        self,
        channel: PushChannel,
        reconciler: Reconciler,
        monitor: ConnectivityMonitor,
        *,
        reconnect_seconds: float = 3.0,
    ) -> None:
        self._channel = channel
        self._reconciler = reconciler
        self._monitor = monitor
        self._reconnect = max(0.01, float(reconnect_seconds))
        self._loop = BackgroundLoop("taskboard-push", self.run)
        self.frames = 0

    @property
    def running(self) -> bool:
        return self._loop.running

    def start(self) -> bool:
        return self._loop.start()

    def stop(self) -> bool:
        return self._loop.stop()

    async def join(self) -> None:
        await self._loop.join()

    async def listen_once(self) -> None:
        """One connection lifetime: open, consume until the channel breaks, close."""
        try:
            await self._channel.open()
        except ConnectivityError as exc:
            logger.info("Push open failed: %s", exc)
            self._monitor.report_push_error(exc)
            return

        self._monitor.report_push_open()
        try:
            while True:
                raw = await self._channel.receive()
                self.frames += 1
                self._reconciler.apply_push(raw)
        except ConnectivityError as exc:
            logger.info("Push channel closed: %s", exc)
            self._monitor.report_push_closed(exc)
        finally:
            await self._channel.close()

    async def run(self) -> None:
        while True:
            try:
                await self.listen_once()
            except Exception:
                logger.exception("Push listener crashed")
            await asyncio.sleep(self._reconnect)
