from __future__ import annotations

from threading import Event, Lock
from typing import Any, Callable

from kubernetes import client, config, watch
from kubernetes.client import ApiException, AppsV1Api

from . import db
from .settings import settings
from .workloads import (
    WorkloadConflict,
    WorkloadKey,
    WorkloadNotFound,
    WorkloadPatch,
    WorkloadSnapshot,
    WorkloadStatus,
    WorkloadStoreError,
)


def load_apps_api(kubeconfig: str | None = None) -> AppsV1Api:
    """In-cluster service account first, kubeconfig otherwise."""
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config(config_file=kubeconfig or None)
    return client.AppsV1Api()


def snapshot_from_deployment(deployment: Any) -> WorkloadSnapshot:
    meta = deployment.metadata
    spec = deployment.spec
    status = deployment.status
    return WorkloadSnapshot(
        key=WorkloadKey(meta.namespace, meta.name),
        annotations=dict(meta.annotations or {}),
        replicas=spec.replicas if spec is not None else None,
        paused=bool(spec.paused) if spec is not None else False,
        status=WorkloadStatus(
            replicas=(status.replicas or 0) if status else 0,
            updated_replicas=(status.updated_replicas or 0) if status else 0,
            ready_replicas=(status.ready_replicas or 0) if status else 0,
            available_replicas=(status.available_replicas or 0) if status else 0,
            unavailable_replicas=(status.unavailable_replicas or 0) if status else 0,
        ),
        labels=dict(meta.labels or {}),
        resource_version=meta.resource_version,
    )


def patch_body(patch: WorkloadPatch) -> dict[str, Any]:
    metadata: dict[str, Any] = {"annotations": dict(patch.annotations)}
    if patch.resource_version is not None:
        # The API server rejects the patch with 409 if the object moved on.
        metadata["resourceVersion"] = patch.resource_version
    spec: dict[str, Any] = {"paused": patch.paused}
    if patch.replicas is not None:
        spec["replicas"] = patch.replicas
    return {"metadata": metadata, "spec": spec}


def _store_error(key: WorkloadKey, action: str, exc: ApiException) -> WorkloadStoreError:
    if exc.status == 404:
        return WorkloadNotFound(f"deployment {key} not found")
    if exc.status == 409:
        return WorkloadConflict(f"deployment {key} changed during {action}")
    return WorkloadStoreError(f"{action} deployment {key} failed: HTTP {exc.status} {exc.reason}")


class KubernetesWorkloadStore:
    """Deployments as PRR workloads, via the apps/v1 API."""

    def __init__(self, apps_api: AppsV1Api, namespace: str = "", label_selector: str = ""):
        self.apps_api = apps_api
        self.namespace = namespace
        self.label_selector = label_selector
        self._watcher: watch.Watch | None = None
        self._watcher_lock = Lock()

    @classmethod
    def from_settings(cls) -> KubernetesWorkloadStore:
        return cls(
            load_apps_api(settings.kubeconfig),
            namespace=settings.namespace,
            label_selector=settings.label_selector,
        )

    def get(self, key: WorkloadKey) -> WorkloadSnapshot:
        try:
            deployment = self.apps_api.read_namespaced_deployment(name=key.name, namespace=key.namespace)
        except ApiException as exc:
            raise _store_error(key, "read", exc) from exc
        return snapshot_from_deployment(deployment)

    def patch(self, key: WorkloadKey, patch: WorkloadPatch) -> WorkloadSnapshot:
        try:
            deployment = self.apps_api.patch_namespaced_deployment(
                name=key.name,
                namespace=key.namespace,
                body=patch_body(patch),
            )
        except ApiException as exc:
            raise _store_error(key, "patch", exc) from exc
        return snapshot_from_deployment(deployment)

    def list_keys(self) -> list[WorkloadKey]:
        fn, kwargs = self._list_call()
        try:
            resp = fn(**kwargs)
        except ApiException as exc:
            raise WorkloadStoreError(f"list deployments failed: HTTP {exc.status} {exc.reason}") from exc
        return sorted(WorkloadKey(d.metadata.namespace, d.metadata.name) for d in resp.items)

    def _list_call(self) -> tuple[Callable[..., Any], dict[str, Any]]:
        if self.namespace:
            return self.apps_api.list_namespaced_deployment, {
                "namespace": self.namespace,
                "label_selector": self.label_selector,
            }
        return self.apps_api.list_deployment_for_all_namespaces, {"label_selector": self.label_selector}

    def watch(self, on_change: Callable[[WorkloadKey], None], stop: Event) -> None:
        """Stream Deployment events, calling ``on_change`` for each, until ``stop`` is set.

        Pod and ReplicaSet progress reaches the Deployment's status, so
        watching Deployments alone sees every change a pass depends on.
        A 410 Gone restarts the stream from the current state; other errors
        reopen it after a capped backoff.
        """
        fn, kwargs = self._list_call()
        resource_version: str | None = None
        backoff_s = 1.0
        while not stop.is_set():
            watcher = watch.Watch()
            with self._watcher_lock:
                self._watcher = watcher
            try:
                stream = watcher.stream(
                    fn,
                    resource_version=resource_version,
                    timeout_seconds=settings.watch_timeout_s,
                    **kwargs,
                )
                for event in stream:
                    if stop.is_set():
                        break
                    obj = event.get("object")
                    meta = getattr(obj, "metadata", None)
                    if meta is None:
                        continue
                    if meta.resource_version:
                        resource_version = meta.resource_version
                    on_change(WorkloadKey(meta.namespace, meta.name))
                backoff_s = 1.0
            except ApiException as exc:
                if exc.status == 410:
                    resource_version = None
                    continue
                db.log_event("WARN", f"Deployment watch failed: HTTP {exc.status} {exc.reason}")
                stop.wait(backoff_s)
                backoff_s = min(backoff_s * 2, 30.0)
            except Exception as e:
                db.log_event("WARN", f"Deployment watch failed: {type(e).__name__}: {e}")
                stop.wait(backoff_s)
                backoff_s = min(backoff_s * 2, 30.0)
            finally:
                with self._watcher_lock:
                    self._watcher = None

    def stop_watch(self) -> None:
        """Interrupt an open watch stream."""
        with self._watcher_lock:
            watcher = self._watcher
        if watcher is not None:
            watcher.stop()
