from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NOT_MANAGED = "not_managed"
    MALFORMED_PLAN = "malformed_plan"
    TRANSIENT_WAITING = "transient_waiting"
    MISSING_REPLICAS = "missing_replicas"
    PERSISTENCE = "persistence"


class ReconcileError(Exception):
    """A failed reconcile pass, tagged with its kind."""

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class MalformedPlanError(ReconcileError):
    def __init__(self, message: str):
        super().__init__(ErrorKind.MALFORMED_PLAN, message)
