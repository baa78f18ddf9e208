# src/taskboard/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app (normal "settings layer").
- Nothing is required at import time: every key has a working local default.
- Tests build their own Settings via Settings.from_env() or dataclasses.replace().
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "TASKBOARD"


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


load_dotenv(override=False)


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_optional_int(name: str) -> int | None:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return list(default)
    parts = [p.strip() for p in raw.replace(",", " ").split() if p.strip()]
    return parts


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str
    data_dir: Path

    # ---- Backend endpoints ----
    api_base_url: str
    push_url: str
    request_timeout_seconds: float

    # ---- Timing ----
    poll_interval_seconds: float
    simulator_interval_seconds: float
    push_reconnect_seconds: float
    migration_delay_seconds: float
    recovery_delay_seconds: float

    # ---- Event log ----
    event_log_capacity: int

    # ---- Demo mode ----
    sim_completion_threshold: int
    sim_promotion_probability: float
    sim_seed: int | None
    demo_workers: list[str]
    start_degraded: bool

    # ---- Connector flags ----
    console_enabled: bool

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "taskboard") or "taskboard"
        log_level = _env(_k("LOG_LEVEL"), "INFO")
        data_dir = _env_path(_k("DATA_DIR"), Path(".local/taskboard"))

        api_base_url = _env(_k("API_BASE_URL"), "http://localhost:8080").rstrip("/")
        push_url = _env(_k("PUSH_URL"), "ws://localhost:8080/ws")
        request_timeout_seconds = _env_float(_k("REQUEST_TIMEOUT_SECONDS"), 5.0)

        poll_interval_seconds = _env_float(_k("POLL_INTERVAL_SECONDS"), 3.0)
        simulator_interval_seconds = _env_float(_k("SIMULATOR_INTERVAL_SECONDS"), 3.0)
        push_reconnect_seconds = _env_float(_k("PUSH_RECONNECT_SECONDS"), 3.0)
        migration_delay_seconds = _env_float(_k("MIGRATION_DELAY_SECONDS"), 1.0)
        recovery_delay_seconds = _env_float(_k("RECOVERY_DELAY_SECONDS"), 2.0)

        event_log_capacity = max(1, _env_int(_k("EVENT_LOG_CAPACITY"), 100))

        sim_completion_threshold = _env_int(_k("SIM_COMPLETION_THRESHOLD"), 95)
        sim_promotion_probability = min(1.0, max(0.0, _env_float(_k("SIM_PROMOTION_PROBABILITY"), 0.3)))
        sim_seed = _env_optional_int(_k("SIM_SEED"))
        demo_workers = _env_list(_k("DEMO_WORKERS"), ["worker-1", "worker-2", "worker-3"])
        start_degraded = _env_bool(_k("START_DEGRADED"), False)

        console_enabled = _env_bool(_k("CONSOLE_ENABLED"), True)

        return Settings(
            app_name=app_name,
            log_level=log_level,
            data_dir=data_dir,
            api_base_url=api_base_url,
            push_url=push_url,
            request_timeout_seconds=request_timeout_seconds,
            poll_interval_seconds=poll_interval_seconds,
            simulator_interval_seconds=simulator_interval_seconds,
            push_reconnect_seconds=push_reconnect_seconds,
            migration_delay_seconds=migration_delay_seconds,
            recovery_delay_seconds=recovery_delay_seconds,
            event_log_capacity=event_log_capacity,
            sim_completion_threshold=sim_completion_threshold,
            sim_promotion_probability=sim_promotion_probability,
            sim_seed=sim_seed,
            demo_workers=demo_workers,
            start_degraded=start_degraded,
            console_enabled=console_enabled,
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS
