# src/taskboard/sync/connectivity.py

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from enum import StrEnum

from ..core.events import EventLevel, EventLog

logger = logging.getLogger(__name__)


class Mode(StrEnum):
    LIVE = "LIVE"
    DEGRADED = "DEGRADED"


ModeListener = Callable[[Mode, Mode], None]
# listener(old_mode, new_mode)


class ConnectivityMonitor:
    """
    Owns the LIVE / DEGRADED mode.

    - any push error/close or failed poll      -> DEGRADED
    - a successful push open or poll response  -> LIVE

    Only real transitions append an event and notify listeners; repeated
    reports in the same mode are logged at DEBUG level only.
    """

    def __init__(self, events: EventLog, *, initial: Mode = Mode.LIVE) -> None:
        self._events = events
        self._mode = Mode(initial)
        self._listeners: list[ModeListener] = []
        self._lock = threading.RLock()

        self.push_healthy: bool | None = None
        self.poll_healthy: bool | None = None
        self.last_error: str | None = None

    @property
    def mode(self) -> Mode:
        return self._mode

    @property
    def degraded(self) -> bool:
        return self._mode == Mode.DEGRADED

    def add_listener(self, listener: ModeListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _remove

    # ---- reports ----

    def report_push_open(self) -> None:
        with self._lock:
            self.push_healthy = True
            self._switch(Mode.LIVE, "Push channel connected")

    def report_push_error(self, exc: BaseException | None = None) -> None:
        with self._lock:
            self.push_healthy = False
            self._remember(exc)
            self._switch(Mode.DEGRADED, "Push channel error", exc)

    def report_push_closed(self, exc: BaseException | None = None) -> None:
        with self._lock:
            self.push_healthy = False
            self._remember(exc)
            self._switch(Mode.DEGRADED, "Push channel closed", exc)

    def report_poll_ok(self) -> None:
        with self._lock:
            self.poll_healthy = True
            self._switch(Mode.LIVE, "Backend reachable again")

    def report_poll_failed(self, exc: BaseException | None = None) -> None:
        with self._lock:
            self.poll_healthy = False
            self._remember(exc)
            self._switch(Mode.DEGRADED, "Poll failed", exc)

    # ---- internals ----

    def _remember(self, exc: BaseException | None) -> None:
        if exc is not None:
            self.last_error = str(exc) or exc.__class__.__name__

    def _switch(self, target: Mode, reason: str, exc: BaseException | None = None) -> None:
        old = self._mode
        if old == target:
            logger.debug("%s (mode stays %s)", reason, old.value)
            return

        self._mode = target
        detail = f": {exc}" if exc is not None and str(exc) else ""
        if target == Mode.DEGRADED:
            self._events.append(f"{reason}{detail}; switching to demo mode", level=EventLevel.WARNING)
        else:
            self._events.append(f"{reason}; live mode")

        for listener in list(self._listeners):
            try:
                listener(old, target)
            except Exception:
                logger.exception("Mode listener failed (%s -> %s)", old.value, target.value)
