import os as _os
import sys
from dataclasses import replace

import pytest

# Ensure project root is importable (so `import main` works without installing the project)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from prr import db  # noqa: E402
from prr.annotations import encode  # noqa: E402
from prr.model import Step, new_plan  # noqa: E402
from prr.workloads import InMemoryWorkloadStore, WorkloadKey, WorkloadSnapshot, WorkloadStatus  # noqa: E402

T0 = 1_700_000_000.0

STEPS = [Step(1), Step(2), Step(5), Step(8, pause=True), Step(10)]


class FakeClock:
    def __init__(self, now: float = T0):
        self.t = now

    def now(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


@pytest.fixture(autouse=True)
def journal(tmp_path, monkeypatch):
    """Point the event journal at an isolated sqlite file."""
    monkeypatch.setattr(db, "settings", replace(db.settings, db_path=str(tmp_path / "prr.db")))
    db.init_db()
    return db


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def key():
    return WorkloadKey("default", "nginx-deployment")


@pytest.fixture
def store():
    return InMemoryWorkloadStore()


@pytest.fixture
def managed(store, key, clock):
    """A workload at 1 replica carrying a fresh five-step plan."""
    plan = new_plan(STEPS, now=clock.now())
    store.put(
        WorkloadSnapshot(
            key=key,
            annotations=encode(plan, {"team": "web"}),
            replicas=1,
            status=WorkloadStatus(replicas=1, updated_replicas=1, ready_replicas=1, available_replicas=1),
            labels={"app.kubernetes.io/managed-by": "annotationscale"},
        )
    )
    return store
