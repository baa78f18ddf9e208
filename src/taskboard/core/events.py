# src/taskboard/core/events.py

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 100


class EventLevel(StrEnum):
    INFO = "info"
    WARNING = "warning"


@dataclass(frozen=True, slots=True)
class Event:
    id: int
    timestamp: float
    message: str
    level: EventLevel = EventLevel.INFO


class EventLog:
    """
    Bounded, append-only activity log.

    - ids are strictly increasing for the lifetime of the log
    - once `capacity` is reached the oldest entry is dropped first
    - entries are never mutated; readers get tuples of frozen events
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY, clock: Callable[[], float] = time.time) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = int(capacity)
        self._clock = clock
        self._entries: deque[Event] = deque(maxlen=self._capacity)
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def append(self, message: str, *, level: EventLevel | str = EventLevel.INFO) -> Event:
        level = EventLevel(level)
        with self._lock:
            event = Event(id=next(self._ids), timestamp=self._clock(), message=message, level=level)
            self._entries.append(event)

        if level == EventLevel.WARNING:
            logger.warning("event #%d: %s", event.id, message)
        else:
            logger.info("event #%d: %s", event.id, message)
        return event

    def entries(self) -> tuple[Event, ...]:
        """Oldest first."""
        with self._lock:
            return tuple(self._entries)

    def latest(self, n: int = 10) -> tuple[Event, ...]:
        """Newest first, at most n."""
        if n <= 0:
            return ()
        with self._lock:
            return tuple(itertools.islice(reversed(self._entries), n))

    def since(self, event_id: int) -> tuple[Event, ...]:
        """Entries with id greater than event_id, oldest first."""
        with self._lock:
            return tuple(e for e in self._entries if e.id > event_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
