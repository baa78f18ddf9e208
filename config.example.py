# config.example.py

"""
Documentation-only module (safe to commit).

The real configuration is loaded from environment variables (optionally via a local .env file).
Every key has a local default, so an empty environment talks to a backend on localhost:8080.

This file exists to make the repo self-documenting even without opening .env.example.
"""

ENV_VARS = {
    # App / logging
    "TASKBOARD_APP_NAME": "App display name (default: taskboard).",
    "TASKBOARD_LOG_LEVEL": "Console logging level (default: INFO). The log file always gets DEBUG.",
    "TASKBOARD_DATA_DIR": "Local data directory for taskboard.log (default: .local/taskboard).",
    # Backend
    "TASKBOARD_API_BASE_URL": "Scheduler REST base URL (default: http://localhost:8080).",
    "TASKBOARD_PUSH_URL": "Websocket push URL (default: ws://localhost:8080/ws).",
    "TASKBOARD_REQUEST_TIMEOUT_SECONDS": "HTTP and websocket open timeout (default: 5).",
    # Timing
    "TASKBOARD_POLL_INTERVAL_SECONDS": "Full task/worker poll interval (default: 3).",
    "TASKBOARD_PUSH_RECONNECT_SECONDS": "Wait before reopening a broken push channel (default: 3).",
    "TASKBOARD_SIMULATOR_INTERVAL_SECONDS": "Demo-mode tick interval (default: 3).",
    "TASKBOARD_MIGRATION_DELAY_SECONDS": "Delay of a simulated migration completion (default: 1).",
    "TASKBOARD_RECOVERY_DELAY_SECONDS": "Delay before tasks of a failed worker resume elsewhere (default: 2).",
    # Event log
    "TASKBOARD_EVENT_LOG_CAPACITY": "Max events kept in the activity log (default: 100).",
    # Demo mode
    "TASKBOARD_SIM_COMPLETION_THRESHOLD": "Progress at which a simulated task completes (default: 95).",
    "TASKBOARD_SIM_PROMOTION_PROBABILITY": "Per-tick chance a CREATED task starts (default: 0.3).",
    "TASKBOARD_SIM_SEED": "Optional integer seed for reproducible demo runs.",
    "TASKBOARD_DEMO_WORKERS": "Comma/space separated demo worker ids (default: worker-1 worker-2 worker-3).",
    "TASKBOARD_START_DEGRADED": "Start in demo mode before the first connectivity report (true/false).",
    # Connectors
    "TASKBOARD_CONSOLE_ENABLED": "Enable the interactive console (true/false, default: true).",
}
