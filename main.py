from __future__ import annotations

import secrets
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from prr import db
from prr.annotations import decode
from prr.api_models import PlanView, StartRolloutRequest, StepModel, WorkloadView
from prr.controller import Controller
from prr.errors import MalformedPlanError
from prr.model import RolloutPlan
from prr.reconciler import Reconciler
from prr.rollouts import NotManagedError, RolloutManager
from prr.runtime import Clock, RuntimeState, SystemClock
from prr.settings import settings
from prr.workloads import (
    InMemoryWorkloadStore,
    WorkloadConflict,
    WorkloadKey,
    WorkloadNotFound,
    WorkloadSnapshot,
    WorkloadStore,
    WorkloadStoreError,
)

security = HTTPBasic(auto_error=False)


def build_store() -> WorkloadStore:
    if settings.backend == "memory":
        return InMemoryWorkloadStore(namespace=settings.namespace, label_selector=settings.label_selector)
    if settings.backend == "kubernetes":
        from prr.kube import KubernetesWorkloadStore

        return KubernetesWorkloadStore.from_settings()
    raise ValueError(f"unknown PRR_BACKEND {settings.backend!r} (expected kubernetes|memory)")


def require_admin(credentials: HTTPBasicCredentials | None = Depends(security)) -> str:
    if settings.admin_password is None:
        return "anonymous"
    if credentials is None or not (
        secrets.compare_digest(credentials.username, settings.admin_user)
        and secrets.compare_digest(credentials.password, settings.admin_password)
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


def _plan_view(plan: RolloutPlan) -> PlanView:
    return PlanView(
        steps=[StepModel(replicas=s.replicas, pause=s.pause) for s in plan.steps],
        current_step_index=plan.current_step_index,
        current_step_state=plan.current_step_state.value,
        message=plan.message,
        max_wait_available_seconds=plan.max_wait_available_seconds,
        max_unavailable_replicas=plan.max_unavailable_replicas,
        last_update_time=int(plan.last_update_time),
        step_deadline=int(plan.step_deadline),
    )


def _workload_view(snap: WorkloadSnapshot, runtime: RuntimeState) -> WorkloadView:
    view = WorkloadView(
        namespace=snap.key.namespace,
        name=snap.key.name,
        replicas=snap.replicas,
        paused=snap.paused,
        status=asdict(snap.status),
    )
    try:
        plan = decode(snap.annotations)
        if plan is not None:
            view.plan = _plan_view(plan)
    except MalformedPlanError as e:
        view.plan_error = e.message
    last = runtime.get(str(snap.key))
    if last is not None:
        view.last_pass = asdict(last)
    return view


def _store_call(fn, *args, **kwargs) -> Any:
    """Run a store-backed operation, mapping failures to HTTP errors."""
    try:
        return fn(*args, **kwargs)
    except WorkloadNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except WorkloadConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    except NotManagedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except MalformedPlanError as e:
        raise HTTPException(status_code=422, detail=e.message)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except WorkloadStoreError as e:
        raise HTTPException(status_code=502, detail=str(e))


def create_app(
    store: WorkloadStore | None = None,
    clock: Clock | None = None,
    run_controller: bool | None = None,
) -> FastAPI:
    run_controller = settings.run_controller if run_controller is None else run_controller

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db.init_db()
        st = store or build_store()
        ck = clock or SystemClock()
        runtime = RuntimeState()
        reconciler = Reconciler(st, clock=ck, runtime=runtime)
        app.state.store = st
        app.state.runtime = runtime
        app.state.reconciler = reconciler
        app.state.rollouts = RolloutManager(st, clock=ck)
        app.state.controller = Controller(st, reconciler)
        if run_controller:
            app.state.controller.start()
        try:
            yield
        finally:
            app.state.controller.stop()
            app.state.controller.join(timeout=5)

    app = FastAPI(title="Progressive Replica Reconciler", lifespan=lifespan)

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"status": "healthy", "controller": app.state.controller.running}

    @app.get("/workloads")
    def list_workloads(request: Request) -> list[WorkloadView]:
        st: WorkloadStore = request.app.state.store
        out = []
        for key in _store_call(st.list_keys):
            try:
                snap = st.get(key)
            except WorkloadNotFound:
                continue
            except WorkloadStoreError as e:
                raise HTTPException(status_code=502, detail=str(e))
            out.append(_workload_view(snap, request.app.state.runtime))
        return out

    @app.get("/workloads/{namespace}/{name}")
    def get_workload(namespace: str, name: str, request: Request) -> WorkloadView:
        snap = _store_call(request.app.state.store.get, WorkloadKey(namespace, name))
        return _workload_view(snap, request.app.state.runtime)

    @app.get("/workloads/{namespace}/{name}/transitions")
    def get_transitions(namespace: str, name: str, limit: int = 100) -> list[dict[str, Any]]:
        rows = db.list_transitions(str(WorkloadKey(namespace, name)), limit=max(1, min(1000, limit)))
        return [asdict(r) for r in rows]

    @app.post("/workloads/{namespace}/{name}/rollout")
    def start_rollout(
        namespace: str,
        name: str,
        req: StartRolloutRequest,
        request: Request,
        user: str = Depends(require_admin),
    ) -> PlanView:
        key = WorkloadKey(namespace, name)
        plan = _store_call(
            request.app.state.rollouts.start_rollout,
            key,
            [s.to_step() for s in req.steps],
            max_wait_available_seconds=req.max_wait_available_seconds,
            max_unavailable_replicas=req.max_unavailable_replicas,
        )
        request.app.state.controller.enqueue(key)
        return _plan_view(plan)

    @app.post("/workloads/{namespace}/{name}/release")
    def release(namespace: str, name: str, request: Request, user: str = Depends(require_admin)) -> PlanView:
        key = WorkloadKey(namespace, name)
        plan = _store_call(request.app.state.rollouts.release, key)
        request.app.state.controller.enqueue(key)
        return _plan_view(plan)

    @app.post("/workloads/{namespace}/{name}/stop")
    def stop(namespace: str, name: str, request: Request, user: str = Depends(require_admin)) -> PlanView:
        key = WorkloadKey(namespace, name)
        plan = _store_call(request.app.state.rollouts.stop, key)
        request.app.state.controller.enqueue(key)
        return _plan_view(plan)

    @app.post("/workloads/{namespace}/{name}/reconcile")
    def reconcile_now(
        namespace: str, name: str, request: Request, user: str = Depends(require_admin)
    ) -> dict[str, Any]:
        res = request.app.state.controller.process(WorkloadKey(namespace, name))
        if res is None:
            raise HTTPException(status_code=500, detail="reconcile pass crashed; see /events")
        return {
            "managed": res.managed,
            "mutated": res.mutated,
            "requeue_after": res.requeue_after,
            "error": None if res.error is None else {"kind": res.error.kind.value, "message": res.error.message},
        }

    @app.get("/events")
    def events(limit: int = 100) -> list[dict[str, Any]]:
        return db.latest_events(limit=max(1, min(1000, limit)))

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
