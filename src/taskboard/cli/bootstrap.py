# src/taskboard/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires concrete implementations (httpx backend, websocket channel, rng)
  into a Dashboard.
"""

from __future__ import annotations

import logging
import random

from ..backend.http_client import HttpBackendClient
from ..backend.ws_channel import WebSocketPushChannel
from ..config import Settings, get_settings
from ..dashboard import Dashboard
from ..sync.connectivity import Mode

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings: Settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)


def create_dashboard(*, settings: Settings | None = None) -> Dashboard:
    """
    Build a Dashboard from the provided settings.

    Keeping settings injectable makes the app easier to test and avoids hidden global config reads.
    If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    backend = HttpBackendClient(settings.api_base_url, timeout=settings.request_timeout_seconds)
    channel = WebSocketPushChannel(settings.push_url, open_timeout=settings.request_timeout_seconds)

    if settings.sim_seed is not None:
        logger.info("Demo simulator seeded with %d", settings.sim_seed)

    return Dashboard(
        backend,
        channel,
        rng=random.Random(settings.sim_seed),
        event_capacity=settings.event_log_capacity,
        poll_interval_seconds=settings.poll_interval_seconds,
        simulator_interval_seconds=settings.simulator_interval_seconds,
        push_reconnect_seconds=settings.push_reconnect_seconds,
        migration_delay_seconds=settings.migration_delay_seconds,
        recovery_delay_seconds=settings.recovery_delay_seconds,
        completion_threshold=settings.sim_completion_threshold,
        promotion_probability=settings.sim_promotion_probability,
        demo_workers=settings.demo_workers,
        initial_mode=Mode.DEGRADED if settings.start_degraded else Mode.LIVE,
    )
