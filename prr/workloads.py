from __future__ import annotations

from dataclasses import dataclass, field, replace
from threading import Lock
from typing import Protocol


class WorkloadStoreError(Exception):
    pass


class WorkloadNotFound(WorkloadStoreError):
    pass


class WorkloadConflict(WorkloadStoreError):
    """The workload changed since it was read; re-read and decide again."""


@dataclass(frozen=True, order=True)
class WorkloadKey:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, raw: str) -> WorkloadKey:
        ns, sep, name = raw.partition("/")
        if not sep or not ns or not name:
            raise ValueError(f"workload key must look like 'namespace/name': {raw!r}")
        return cls(ns, name)


@dataclass(frozen=True)
class WorkloadStatus:
    replicas: int = 0
    updated_replicas: int = 0
    ready_replicas: int = 0
    available_replicas: int = 0
    unavailable_replicas: int = 0


@dataclass(frozen=True)
class WorkloadSnapshot:
    key: WorkloadKey
    annotations: dict[str, str] = field(default_factory=dict)
    # None when the workload leaves its replica count unset.
    replicas: int | None = None
    paused: bool = False
    status: WorkloadStatus = field(default_factory=WorkloadStatus)
    labels: dict[str, str] = field(default_factory=dict)
    resource_version: str | None = None


@dataclass(frozen=True)
class WorkloadPatch:
    """The only fields a reconcile pass or an initiator ever writes."""

    annotations: dict[str, str]
    replicas: int | None
    paused: bool
    resource_version: str | None = None


class WorkloadStore(Protocol):
    def get(self, key: WorkloadKey) -> WorkloadSnapshot: ...

    def patch(self, key: WorkloadKey, patch: WorkloadPatch) -> WorkloadSnapshot: ...

    def list_keys(self) -> list[WorkloadKey]: ...


def parse_selector(selector: str) -> dict[str, str]:
    """Parse an equality label selector (``k=v,k2=v2``) into a dict."""
    result: dict[str, str] = {}
    for part in selector.split(","):
        part = part.strip()
        if "=" in part:
            key, value = part.split("=", 1)
            result[key.strip()] = value.strip()
    return result


class InMemoryWorkloadStore:
    """Workloads held in process memory.

    Behaves like the API server for the operations PRR uses: every write bumps
    the resource version, and a patch carrying a stale version is rejected.
    """

    def __init__(self, namespace: str = "", label_selector: str = "") -> None:
        self.lock = Lock()
        self.namespace = namespace
        self.selector = parse_selector(label_selector)
        self._items: dict[WorkloadKey, WorkloadSnapshot] = {}
        self._version = 0
        self.patches: list[tuple[WorkloadKey, WorkloadPatch]] = []

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def put(self, snapshot: WorkloadSnapshot) -> WorkloadSnapshot:
        with self.lock:
            snapshot = replace(
                snapshot,
                annotations=dict(snapshot.annotations),
                labels=dict(snapshot.labels),
                resource_version=self._next_version(),
            )
            self._items[snapshot.key] = snapshot
            return snapshot

    def delete(self, key: WorkloadKey) -> None:
        with self.lock:
            self._items.pop(key, None)

    def get(self, key: WorkloadKey) -> WorkloadSnapshot:
        with self.lock:
            snap = self._items.get(key)
            if snap is None:
                raise WorkloadNotFound(f"workload {key} not found")
            return replace(snap, annotations=dict(snap.annotations))

    def patch(self, key: WorkloadKey, patch: WorkloadPatch) -> WorkloadSnapshot:
        with self.lock:
            snap = self._items.get(key)
            if snap is None:
                raise WorkloadNotFound(f"workload {key} not found")
            if patch.resource_version is not None and patch.resource_version != snap.resource_version:
                raise WorkloadConflict(
                    f"workload {key} changed: resource version {patch.resource_version} != {snap.resource_version}"
                )
            annotations = dict(snap.annotations)
            annotations.update(patch.annotations)
            snap = replace(
                snap,
                annotations=annotations,
                replicas=patch.replicas,
                paused=patch.paused,
                resource_version=self._next_version(),
            )
            self._items[key] = snap
            self.patches.append((key, patch))
            return replace(snap, annotations=dict(snap.annotations))

    def set_status(self, key: WorkloadKey, **counts: int) -> WorkloadSnapshot:
        """Overwrite observed status counts, as the cluster would."""
        with self.lock:
            snap = self._items[key]
            snap = replace(snap, status=replace(snap.status, **counts), resource_version=self._next_version())
            self._items[key] = snap
            return snap

    def settle(self, key: WorkloadKey, unavailable: int = 0) -> WorkloadSnapshot:
        """Report the desired replica count as rolled out, ``unavailable`` of them not yet available."""
        with self.lock:
            replicas = self._items[key].replicas or 0
        available = max(0, replicas - unavailable)
        return self.set_status(
            key,
            replicas=replicas,
            updated_replicas=replicas,
            ready_replicas=available,
            available_replicas=available,
            unavailable_replicas=replicas - available,
        )

    def list_keys(self) -> list[WorkloadKey]:
        with self.lock:
            keys = []
            for key, snap in self._items.items():
                if self.namespace and key.namespace != self.namespace:
                    continue
                if any(snap.labels.get(k) != v for k, v in self.selector.items()):
                    continue
                keys.append(key)
            return sorted(keys)
