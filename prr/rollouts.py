from __future__ import annotations

from dataclasses import replace

from . import db
from .annotations import decode, encode
from .model import (
    DEFAULT_MAX_UNAVAILABLE_REPLICAS,
    DEFAULT_MAX_WAIT_AVAILABLE_SECONDS,
    RolloutPlan,
    Step,
    StepState,
    new_plan,
)
from .runtime import Clock, SystemClock
from .workloads import WorkloadKey, WorkloadPatch, WorkloadSnapshot, WorkloadStore

SCALE_UP_STEPS: tuple[Step, ...] = (
    Step(1),
    Step(2),
    Step(5),
    Step(8, pause=True),
    Step(10),
    Step(12),
    Step(15),
    Step(20),
)

SCALE_DOWN_STEPS: tuple[Step, ...] = (
    Step(12),
    Step(15),
    Step(10),
    Step(5),
    Step(1),
    Step(0),
)


class NotManagedError(LookupError):
    pass


def parse_steps(raw: str) -> list[Step]:
    """Parse ``"1,2,5,8:pause,10"`` into steps. ``:pause`` marks a pause point."""
    steps: list[Step] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        count, _, flag = part.partition(":")
        flag = flag.strip().lower()
        if flag not in {"", "pause", "p"}:
            raise ValueError(f"unknown step flag {flag!r} in {part!r}")
        try:
            replicas = int(count)
        except ValueError:
            raise ValueError(f"step {part!r} is not a replica count") from None
        if replicas < 0:
            raise ValueError(f"step {part!r} has negative replicas")
        steps.append(Step(replicas=replicas, pause=bool(flag)))
    if not steps:
        raise ValueError("no steps given")
    return steps


class RolloutManager:
    """Starts, resumes and holds rollouts by rewriting a workload's plan.

    Only the annotations are written here; replicas and pause flag are left to
    the reconciler, which picks the change up on its next pass.
    """

    def __init__(self, store: WorkloadStore, clock: Clock | None = None):
        self.store = store
        self.clock = clock or SystemClock()

    def start_rollout(
        self,
        key: WorkloadKey,
        steps: list[Step] | tuple[Step, ...],
        max_wait_available_seconds: int = DEFAULT_MAX_WAIT_AVAILABLE_SECONDS,
        max_unavailable_replicas: int = DEFAULT_MAX_UNAVAILABLE_REPLICAS,
    ) -> RolloutPlan:
        """Replace any existing plan with a fresh one at step 1."""
        workload = self.store.get(key)
        plan = new_plan(
            steps,
            now=self.clock.now(),
            max_wait_available_seconds=max_wait_available_seconds,
            max_unavailable_replicas=max_unavailable_replicas,
            message=f"rollout started with {len(steps)} steps",
        )
        self._write(workload, plan)
        db.log_event(
            "INFO",
            "Rollout started: " + ", ".join(f"{s.replicas}{' (pause)' if s.pause else ''}" for s in plan.steps),
            workload=str(key),
        )
        return plan

    def release(self, key: WorkloadKey) -> RolloutPlan:
        """Let a held rollout continue from its current step."""
        workload = self.store.get(key)
        plan = self._read(workload)
        plan = replace(
            plan,
            current_step_state=StepState.READY,
            last_update_time=self.clock.now(),
            message=f"released at step {plan.current_step_index}",
        )
        self._write(workload, plan)
        db.log_event("INFO", f"Rollout released at step {plan.current_step_index}", workload=str(key))
        return plan

    def stop(self, key: WorkloadKey) -> RolloutPlan:
        """Hold the rollout at the first remaining step that covers the available replicas."""
        workload = self.store.get(key)
        plan = self._read(workload)
        available = workload.status.available_replicas

        pause_index = plan.current_step_index
        for index in range(plan.current_step_index, len(plan.steps) + 1):
            if plan.steps[index - 1].replicas >= available:
                pause_index = index
                break

        steps = list(plan.steps)
        steps[pause_index - 1] = replace(steps[pause_index - 1], pause=True)
        plan = replace(
            plan,
            steps=tuple(steps),
            current_step_index=pause_index,
            current_step_state=StepState.PAUSED,
            last_update_time=self.clock.now(),
            message=f"stopped at step {pause_index}",
        )
        self._write(workload, plan)
        db.log_event("INFO", f"Rollout stopped at step {pause_index}", workload=str(key))
        return plan

    def _read(self, workload: WorkloadSnapshot) -> RolloutPlan:
        plan = decode(workload.annotations, now=self.clock.now())
        if plan is None:
            raise NotManagedError(f"workload {workload.key} has no rollout plan")
        return plan

    def _write(self, workload: WorkloadSnapshot, plan: RolloutPlan) -> None:
        self.store.patch(
            workload.key,
            WorkloadPatch(
                annotations=encode(plan, workload.annotations),
                replicas=workload.replicas,
                paused=workload.paused,
                resource_version=workload.resource_version,
            ),
        )

