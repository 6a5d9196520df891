from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Union

from . import db
from .annotations import OWNED_KEYS, decode, encode
from .errors import ErrorKind, MalformedPlanError, ReconcileError
from .model import RolloutPlan, StepState
from .runtime import Clock, PassStatus, RuntimeState, SystemClock
from .settings import settings
from .workloads import (
    WorkloadConflict,
    WorkloadKey,
    WorkloadNotFound,
    WorkloadPatch,
    WorkloadSnapshot,
    WorkloadStore,
    WorkloadStoreError,
)


@dataclass(frozen=True)
class NoAction:
    reason: str = ""


@dataclass(frozen=True)
class Mutate:
    """Persist ``plan`` together with the workload's replica count and pause flag."""

    plan: RolloutPlan
    replicas: int
    paused: bool
    requeue_after: float | None = None
    reason: str = ""


@dataclass(frozen=True)
class Retry:
    after: float
    reason: str = ""


@dataclass(frozen=True)
class Fail:
    error: ReconcileError
    retry_after: float | None = None


Decision = Union[NoAction, Mutate, Retry, Fail]


@dataclass(frozen=True)
class ReconcileResult:
    requeue_after: float | None = None
    error: ReconcileError | None = None
    mutated: bool = False
    managed: bool = True


def decide(workload: WorkloadSnapshot, plan: RolloutPlan, now: float, retry_delay: float = 5.0) -> Decision:
    """Derive the single next action for one workload snapshot.

    Pure: reads nothing but its arguments and returns a new plan instead of
    editing ``plan``. The drift gate runs before any state-specific logic, in
    every state including the terminal ones.
    """
    if workload.replicas is None:
        return Fail(
            ReconcileError(ErrorKind.MISSING_REPLICAS, f"workload {workload.key} has no desired replica count")
        )

    if workload.replicas != plan.current_step.replicas:
        return _fix_drift(workload, plan, now, retry_delay)

    state = plan.current_step_state
    if state is StepState.UPGRADE:
        return _upgrade(workload, plan, now, retry_delay)
    if state is StepState.PAUSED:
        return _paused(workload, plan, now, retry_delay)
    if state is StepState.READY:
        return _ready(workload, plan, now, retry_delay)
    if state is StepState.COMPLETED:
        return NoAction("rollout completed")
    if state is StepState.TIMEOUT:
        if workload.paused:
            return NoAction("rollout timed out; waiting for a new plan")
        return Mutate(plan, workload.replicas, True, reason="freeze timed out rollout")
    raise AssertionError(f"unhandled step state {state!r}")


def _fix_drift(workload: WorkloadSnapshot, plan: RolloutPlan, now: float, retry_delay: float) -> Mutate:
    step = plan.current_step
    message = (
        f"replicas drifted to {workload.replicas}; "
        f"restored step {plan.current_step_index} target {step.replicas}"
    )
    return Mutate(
        plan.with_state(plan.entry_state(), now, message),
        step.replicas,
        workload.paused,
        requeue_after=retry_delay,
        reason=message,
    )


def _waiting_for_rollout(workload: WorkloadSnapshot, retry_delay: float) -> Fail | None:
    total = workload.status.replicas
    if total == workload.replicas:
        return None
    return Fail(
        ReconcileError(
            ErrorKind.TRANSIENT_WAITING,
            f"waiting for rollout to finish: {total} out of {workload.replicas} new replicas have been updated",
        ),
        retry_after=retry_delay,
    )


def _advance(workload: WorkloadSnapshot, plan: RolloutPlan, now: float, why: str) -> Mutate:
    if plan.is_last_step:
        state = StepState.COMPLETED
        message = f"rollout completed at {workload.replicas} replicas ({why})"
    else:
        state = StepState.READY
        message = f"step {plan.current_step_index}/{len(plan.steps)} reached {workload.replicas} replicas ({why})"
    assert workload.replicas is not None
    return Mutate(plan.with_state(state, now, message), workload.replicas, workload.paused, reason=message)


def _timeout(workload: WorkloadSnapshot, plan: RolloutPlan, now: float) -> Mutate:
    message = (
        f"step {plan.current_step_index} timed out after {plan.max_wait_available_seconds}s: "
        f"{workload.status.unavailable_replicas} unavailable replicas exceed tolerance "
        f"{plan.max_unavailable_replicas}"
    )
    assert workload.replicas is not None
    return Mutate(plan.with_state(StepState.TIMEOUT, now, message), workload.replicas, workload.paused, reason=message)


def _converging(workload: WorkloadSnapshot, plan: RolloutPlan, retry_delay: float) -> Retry | Mutate:
    st = workload.status
    reason = f"{st.available_replicas}/{st.replicas} replicas available, deadline at {int(plan.step_deadline)}"
    if not plan.anchored:
        # Start time was filled in on decode; store it so the deadline stays fixed.
        assert workload.replicas is not None
        return Mutate(
            replace(plan, anchored=True),
            workload.replicas,
            workload.paused,
            requeue_after=retry_delay,
            reason=f"record step start time; {reason}",
        )
    return Retry(retry_delay, reason=reason)


def _upgrade(workload: WorkloadSnapshot, plan: RolloutPlan, now: float, retry_delay: float) -> Decision:
    assert workload.replicas is not None
    if workload.paused:
        return Mutate(plan, workload.replicas, False, requeue_after=retry_delay, reason="unpause to continue upgrade")

    waiting = _waiting_for_rollout(workload, retry_delay)
    if waiting is not None:
        return waiting

    st = workload.status
    if st.available_replicas == st.replicas:
        return _advance(workload, plan, now, "all replicas available")

    if not plan.deadline_passed(now):
        return _converging(workload, plan, retry_delay)

    if st.unavailable_replicas > plan.max_unavailable_replicas:
        return _timeout(workload, plan, now)
    return _advance(
        workload,
        plan,
        now,
        f"deadline reached with {st.unavailable_replicas} unavailable, tolerance {plan.max_unavailable_replicas}",
    )


def _paused(workload: WorkloadSnapshot, plan: RolloutPlan, now: float, retry_delay: float) -> Decision:
    assert workload.replicas is not None
    waiting = _waiting_for_rollout(workload, retry_delay)
    if waiting is not None:
        return waiting

    st = workload.status
    if st.available_replicas != st.replicas:
        if not plan.deadline_passed(now):
            return _converging(workload, plan, retry_delay)
        if st.unavailable_replicas > plan.max_unavailable_replicas:
            return _timeout(workload, plan, now)

    if workload.paused:
        return NoAction(f"held at pause point, step {plan.current_step_index}")
    message = f"paused at step {plan.current_step_index}/{len(plan.steps)} with {workload.replicas} replicas"
    return Mutate(plan.with_state(StepState.PAUSED, now, message), workload.replicas, True, reason=message)


def _ready(workload: WorkloadSnapshot, plan: RolloutPlan, now: float, retry_delay: float) -> Decision:
    assert workload.replicas is not None
    if workload.paused:
        return Mutate(plan, workload.replicas, False, requeue_after=retry_delay, reason="unpause before next step")

    if plan.is_last_step:
        message = f"rollout completed at {workload.replicas} replicas"
        return Mutate(plan.with_state(StepState.COMPLETED, now, message), workload.replicas, False, reason=message)

    next_index = plan.current_step_index + 1
    next_step = plan.steps[next_index - 1]
    state = StepState.PAUSED if next_step.pause else StepState.UPGRADE
    message = f"step {next_index}/{len(plan.steps)}: scaling {workload.replicas} --> {next_step.replicas} replicas"
    new_plan = replace(
        plan,
        current_step_index=next_index,
        current_step_state=state,
        last_update_time=now,
        anchored=True,
        message=message,
    )
    return Mutate(new_plan, next_step.replicas, False, reason=message)


def _owned(annotations: dict[str, str]) -> dict[str, str | None]:
    return {k: annotations.get(k) for k in OWNED_KEYS}


class Reconciler:
    """Runs single reconcile passes against a workload store.

    Holds no per-workload state between passes apart from the status kept for
    reporting; everything needed to decide comes from the workload itself.
    """

    def __init__(
        self,
        store: WorkloadStore,
        clock: Clock | None = None,
        runtime: RuntimeState | None = None,
        retry_delay_s: float | None = None,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.runtime = runtime or RuntimeState()
        self.retry_delay_s = float(settings.retry_delay_s if retry_delay_s is None else retry_delay_s)

    def reconcile(self, key: WorkloadKey) -> ReconcileResult:
        name = str(key)
        try:
            workload = self.store.get(key)
        except WorkloadNotFound:
            # Deleted since it was queued.
            self.runtime.forget(name)
            return ReconcileResult(managed=False)
        except WorkloadStoreError as e:
            return self._failed(name, None, ReconcileError(ErrorKind.PERSISTENCE, f"get failed: {e}"))

        now = self.clock.now()
        try:
            plan = decode(workload.annotations, now=now)
        except MalformedPlanError as e:
            db.log_event("ERROR", f"Malformed rollout plan: {e.message}", workload=name)
            return self._failed(name, None, e)

        if plan is None:
            return ReconcileResult(managed=False)

        decision = decide(workload, plan, now, self.retry_delay_s)

        if isinstance(decision, NoAction):
            self._record(name, plan, "noop")
            return ReconcileResult()
        if isinstance(decision, Retry):
            self._record(name, plan, "retry", requeue_after=decision.after)
            return ReconcileResult(requeue_after=decision.after)
        if isinstance(decision, Fail):
            if decision.error.kind is not ErrorKind.TRANSIENT_WAITING:
                db.log_event("ERROR", str(decision.error), workload=name)
            return self._failed(name, plan, decision.error, decision.retry_after)
        if isinstance(decision, Mutate):
            return self._apply(workload, plan, decision)
        raise AssertionError(f"unhandled decision {decision!r}")

    def _apply(self, workload: WorkloadSnapshot, plan: RolloutPlan, decision: Mutate) -> ReconcileResult:
        name = str(workload.key)
        try:
            self._persist(workload, decision)
        except WorkloadStoreError as e:
            err = ReconcileError(ErrorKind.PERSISTENCE, f"patch failed: {e}")
            db.log_event("WARN", f"Failed to persist rollout change ({decision.reason}): {e}", workload=name)
            return self._failed(name, plan, err)

        self._journal(workload, plan, decision)
        self._record(name, decision.plan, "mutated", requeue_after=decision.requeue_after)
        return ReconcileResult(requeue_after=decision.requeue_after, mutated=True)

    def _persist(self, observed: WorkloadSnapshot, decision: Mutate) -> None:
        """Re-read the workload and patch annotations, replicas and pause flag onto the latest copy."""
        latest = self.store.get(observed.key)
        if _owned(latest.annotations) != _owned(observed.annotations):
            raise WorkloadConflict(f"rollout plan of {observed.key} changed since it was read")
        patch = WorkloadPatch(
            annotations=encode(decision.plan, latest.annotations),
            replicas=decision.replicas,
            paused=decision.paused,
            resource_version=latest.resource_version,
        )
        self.store.patch(observed.key, patch)

    def _journal(self, workload: WorkloadSnapshot, old: RolloutPlan, decision: Mutate) -> None:
        name = str(workload.key)
        new = decision.plan
        if (
            old.current_step_state != new.current_step_state
            or old.current_step_index != new.current_step_index
            or workload.replicas != decision.replicas
            or old.last_update_time != new.last_update_time
        ):
            db.log_event(
                "ERROR" if new.current_step_state is StepState.TIMEOUT else "INFO",
                f"change step state: {old.current_step_state.value} --> {new.current_step_state.value}, "
                f"step {old.current_step_index} --> {new.current_step_index}, "
                f"replicas {workload.replicas} --> {decision.replicas}: {decision.reason}",
                workload=name,
            )
            db.record_transition(
                workload=name,
                from_state=old.current_step_state.value,
                to_state=new.current_step_state.value,
                from_index=old.current_step_index,
                to_index=new.current_step_index,
                from_replicas=workload.replicas,
                to_replicas=decision.replicas,
                paused=decision.paused,
                message=new.message,
            )
        if workload.paused != decision.paused:
            db.log_event("INFO", f"set spec.paused {str(decision.paused).lower()}: {decision.reason}", workload=name)

    def _record(self, name: str, plan: RolloutPlan, outcome: str, requeue_after: float | None = None) -> None:
        self.runtime.record(
            PassStatus(
                workload=name,
                outcome=outcome,
                state=plan.current_step_state.value,
                step_index=plan.current_step_index,
                requeue_after=requeue_after,
            )
        )

    def _failed(
        self,
        name: str,
        plan: RolloutPlan | None,
        error: ReconcileError,
        retry_after: float | None = None,
    ) -> ReconcileResult:
        self.runtime.record(
            PassStatus(
                workload=name,
                outcome="failed",
                state=plan.current_step_state.value if plan else None,
                step_index=plan.current_step_index if plan else None,
                requeue_after=retry_after,
                error=str(error),
            )
        )
        return ReconcileResult(requeue_after=retry_after, error=error)
