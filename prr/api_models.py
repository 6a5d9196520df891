from __future__ import annotations

from pydantic import BaseModel, Field

from .model import DEFAULT_MAX_UNAVAILABLE_REPLICAS, DEFAULT_MAX_WAIT_AVAILABLE_SECONDS, Step


class StepModel(BaseModel):
    replicas: int = Field(..., ge=0, description="Target desired replica count for this step")
    pause: bool = Field(False, description="Hold the workload paused once the target is reached")

    def to_step(self) -> Step:
        return Step(replicas=self.replicas, pause=self.pause)


class StartRolloutRequest(BaseModel):
    steps: list[StepModel] = Field(..., min_length=1)
    max_wait_available_seconds: int = Field(
        DEFAULT_MAX_WAIT_AVAILABLE_SECONDS, ge=0, description="Per-step budget to reach full availability"
    )
    max_unavailable_replicas: int = Field(
        DEFAULT_MAX_UNAVAILABLE_REPLICAS, ge=0, description="Unavailable replicas tolerated at the deadline"
    )


class PlanView(BaseModel):
    steps: list[StepModel]
    current_step_index: int
    current_step_state: str
    message: str
    max_wait_available_seconds: int
    max_unavailable_replicas: int
    last_update_time: int
    step_deadline: int


class WorkloadView(BaseModel):
    namespace: str
    name: str
    replicas: int | None
    paused: bool
    status: dict[str, int]
    plan: PlanView | None = None
    plan_error: str | None = None
    last_pass: dict | None = None
