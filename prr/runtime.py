from __future__ import annotations

import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Protocol

from .db import utc_now


class Clock(Protocol):
    def now(self) -> float: ...


class SystemClock:
    """Wall clock in Unix epoch seconds."""

    def now(self) -> float:
        return time.time()


@dataclass
class PassStatus:
    workload: str
    outcome: str  # noop|mutated|retry|failed
    state: str | None = None
    step_index: int | None = None
    requeue_after: float | None = None
    error: str | None = None
    updated_at: str = field(default_factory=utc_now)


class RuntimeState:
    """In-memory record of the last reconcile pass per workload."""

    def __init__(self) -> None:
        self.lock = Lock()
        self.passes: dict[str, PassStatus] = {}

    def record(self, st: PassStatus) -> None:
        with self.lock:
            st.updated_at = utc_now()
            self.passes[st.workload] = st

    def get(self, workload: str) -> PassStatus | None:
        with self.lock:
            return self.passes.get(workload)

    def forget(self, workload: str) -> None:
        with self.lock:
            self.passes.pop(workload, None)

    def list(self) -> list[PassStatus]:
        with self.lock:
            return list(self.passes.values())
