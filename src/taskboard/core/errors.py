# src/taskboard/core/errors.py

from __future__ import annotations

"""
Error taxonomy.

- InvalidTransition / ReconciliationError never escape the Reconciler:
  the update is dropped and a diagnostic event is logged.
- ConnectivityError never escapes the drivers: it flips the mode to DEGRADED.
- UserInputError is raised synchronously to whoever issued the command.
"""


class TaskboardError(Exception):
    """Base class for all taskboard errors."""


class InvalidTransition(TaskboardError):
    def __init__(self, entity: str, entity_id: str, old: object, new: object, detail: str = "") -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.old = old
        self.new = new
        self.detail = detail
        msg = f"{entity} {entity_id}: {old} -> {new} is not allowed"
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)


class ReconciliationError(TaskboardError):
    """Malformed or unparseable update (bad JSON, unknown tag, wrong field types)."""


class ConnectivityError(TaskboardError):
    """Push channel or poll endpoint failure."""


class UserInputError(TaskboardError):
    """Malformed command input; surfaced to the caller, never reconciled."""
