# tests/conftest.py

from __future__ import annotations

from collections.abc import Callable

import pytest

from taskboard.core.events import EventLog
from taskboard.dashboard import Dashboard
from taskboard.sync.connectivity import ConnectivityMonitor, Mode
from taskboard.sync.reconciler import Reconciler

from .fakes import FakeBackend, FakePushChannel, ManualClock, ScriptedRng


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock(1000.0)


@pytest.fixture()
def events(clock: ManualClock) -> EventLog:
    return EventLog(capacity=100, clock=clock)


@pytest.fixture()
def reconciler(events: EventLog, clock: ManualClock) -> Reconciler:
    return Reconciler(events, clock=clock)


@pytest.fixture()
def monitor(events: EventLog) -> ConnectivityMonitor:
    return ConnectivityMonitor(events)


@pytest.fixture()
def degraded_monitor(events: EventLog) -> ConnectivityMonitor:
    return ConnectivityMonitor(events, initial=Mode.DEGRADED)


@pytest.fixture()
def rng() -> ScriptedRng:
    return ScriptedRng()


@pytest.fixture()
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def channel() -> FakePushChannel:
    return FakePushChannel()


@pytest.fixture()
def make_dashboard(
    backend: FakeBackend, channel: FakePushChannel, clock: ManualClock, rng: ScriptedRng
) -> Callable[..., Dashboard]:
    """
    Dashboard wired with fakes and tiny intervals.

    Delays for simulated migration/recovery are zero, so one short
    asyncio.sleep() in a test is enough to let them complete.
    """

    def _make(**overrides) -> Dashboard:
        kwargs = dict(
            clock=clock,
            rng=rng,
            poll_interval_seconds=0.01,
            simulator_interval_seconds=0.01,
            push_reconnect_seconds=0.01,
            migration_delay_seconds=0.0,
            recovery_delay_seconds=0.0,
        )
        kwargs.update(overrides)
        return Dashboard(backend, channel, **kwargs)

    return _make
