from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum

DEFAULT_MAX_WAIT_AVAILABLE_SECONDS = 600
DEFAULT_MAX_UNAVAILABLE_REPLICAS = 1


class StepState(str, Enum):
    """Progress of the current step. Values are the persisted names."""

    UPGRADE = "StepUpgrade"
    PAUSED = "StepPaused"
    READY = "StepReady"
    COMPLETED = "Completed"
    TIMEOUT = "Timeout"

    @property
    def terminal(self) -> bool:
        return self in {StepState.COMPLETED, StepState.TIMEOUT}


@dataclass(frozen=True)
class Step:
    replicas: int
    pause: bool = False

    def __str__(self) -> str:
        return f"replicas: {self.replicas}, pause: {self.pause}"


@dataclass(frozen=True)
class RolloutPlan:
    """A rollout plan as persisted in the workload annotations.

    ``current_step_index`` is 1-based. ``last_update_time`` is Unix epoch
    seconds and is restamped on every state or target change; it anchors the
    per-step deadline.
    """

    steps: tuple[Step, ...]
    current_step_index: int
    current_step_state: StepState
    message: str = ""
    max_wait_available_seconds: int = DEFAULT_MAX_WAIT_AVAILABLE_SECONDS
    max_unavailable_replicas: int = DEFAULT_MAX_UNAVAILABLE_REPLICAS
    last_update_time: float = field(default=0.0)
    # False when last_update_time was not stored and had to be filled in.
    anchored: bool = field(default=True, compare=False)

    @property
    def current_step(self) -> Step:
        return self.steps[self.current_step_index - 1]

    @property
    def is_last_step(self) -> bool:
        return self.current_step_index == len(self.steps)

    @property
    def step_deadline(self) -> float:
        return self.last_update_time + self.max_wait_available_seconds

    def deadline_passed(self, now: float) -> bool:
        return now >= self.step_deadline

    def entry_state(self) -> StepState:
        """State for a workload that was just pointed at the current step's target."""
        return StepState.PAUSED if self.current_step.pause else StepState.UPGRADE

    def with_state(self, state: StepState, now: float, message: str | None = None) -> RolloutPlan:
        return replace(
            self,
            current_step_state=state,
            last_update_time=now,
            anchored=True,
            message=self.message if message is None else message,
        )

    def validate(self) -> None:
        """Raise ValueError if the plan breaks a structural invariant."""
        if not self.steps:
            raise ValueError("plan has no steps")
        if not 1 <= self.current_step_index <= len(self.steps):
            raise ValueError(
                f"current_step_index {self.current_step_index} out of range 1..{len(self.steps)}"
            )
        for i, s in enumerate(self.steps, start=1):
            if s.replicas < 0:
                raise ValueError(f"step {i} has negative replicas {s.replicas}")
        if self.max_wait_available_seconds < 0:
            raise ValueError("max_wait_available_seconds must be >= 0")
        if self.max_unavailable_replicas < 0:
            raise ValueError("max_unavailable_replicas must be >= 0")


def new_plan(
    steps: list[Step] | tuple[Step, ...],
    now: float,
    max_wait_available_seconds: int = DEFAULT_MAX_WAIT_AVAILABLE_SECONDS,
    max_unavailable_replicas: int = DEFAULT_MAX_UNAVAILABLE_REPLICAS,
    message: str = "",
) -> RolloutPlan:
    """Fresh plan as written by a rollout initiator: index 1, state Ready."""
    plan = RolloutPlan(
        steps=tuple(steps),
        current_step_index=1,
        current_step_state=StepState.READY,
        message=message,
        max_wait_available_seconds=max_wait_available_seconds,
        max_unavailable_replicas=max_unavailable_replicas,
        last_update_time=now,
    )
    plan.validate()
    return plan
