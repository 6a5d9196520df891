from __future__ import annotations

import json
import re
import time
from typing import Any, Mapping

from .errors import MalformedPlanError
from .model import (
    DEFAULT_MAX_UNAVAILABLE_REPLICAS,
    DEFAULT_MAX_WAIT_AVAILABLE_SECONDS,
    RolloutPlan,
    Step,
    StepState,
)

STEPS_KEY = "steps"
CURRENT_STEP_INDEX_KEY = "current_step_index"
CURRENT_STEP_STATE_KEY = "current_step_state"
MESSAGE_KEY = "message"
MAX_WAIT_AVAILABLE_KEY = "max_wait_available_time"
MAX_UNAVAILABLE_KEY = "max_unavailable_replicas"
LAST_UPDATE_TIME_KEY = "last_update_time"

SCAFFOLD_KEYS = (STEPS_KEY, CURRENT_STEP_INDEX_KEY, CURRENT_STEP_STATE_KEY)
OWNED_KEYS = SCAFFOLD_KEYS + (
    MESSAGE_KEY,
    MAX_WAIT_AVAILABLE_KEY,
    MAX_UNAVAILABLE_KEY,
    LAST_UPDATE_TIME_KEY,
)

# Plain decimal: no underscores, no surrounding whitespace.
INT_RE = re.compile(r"^[+-]?[0-9]+\Z")

INT64_MIN, INT64_MAX = -(2**63), 2**63 - 1
INT32_MIN, INT32_MAX = -(2**31), 2**31 - 1


def is_managed(annotations: Mapping[str, str] | None) -> bool:
    """True when all three scaffold keys are present."""
    if not annotations:
        return False
    return all(k in annotations for k in SCAFFOLD_KEYS)


def _parse_int(key: str, raw: str) -> int:
    if not isinstance(raw, str) or not INT_RE.match(raw):
        raise MalformedPlanError(f"annotation {key!r} is not a base-10 integer: {raw!r}")
    value = int(raw, 10)
    if not INT64_MIN <= value <= INT64_MAX:
        raise MalformedPlanError(f"annotation {key!r} is out of the 64-bit range: {raw!r}")
    return value


def _parse_step(i: int, obj: Any) -> Step:
    if not isinstance(obj, dict):
        raise MalformedPlanError(f"step {i} is not a JSON object: {obj!r}")
    replicas = obj.get("replicas", 0)
    pause = obj.get("pause", False)
    # bool is an int subclass; "replicas": true is not a count.
    if isinstance(replicas, bool) or not isinstance(replicas, int):
        raise MalformedPlanError(f"step {i} replicas must be an integer: {replicas!r}")
    if not INT32_MIN <= replicas <= INT32_MAX:
        raise MalformedPlanError(f"step {i} replicas out of the 32-bit range: {replicas!r}")
    if not isinstance(pause, bool):
        raise MalformedPlanError(f"step {i} pause must be a boolean: {pause!r}")
    return Step(replicas=replicas, pause=pause)


def _parse_steps(raw: str) -> tuple[Step, ...]:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedPlanError(f"annotation {STEPS_KEY!r} is not valid JSON: {e}") from None
    if not isinstance(data, list):
        raise MalformedPlanError(f"annotation {STEPS_KEY!r} must be a JSON array")
    return tuple(_parse_step(i, obj) for i, obj in enumerate(data, start=1))


def _parse_state(raw: str) -> StepState:
    try:
        return StepState(raw)
    except ValueError:
        raise MalformedPlanError(f"unknown {CURRENT_STEP_STATE_KEY!r}: {raw!r}") from None


def decode(annotations: Mapping[str, str] | None, now: float | None = None) -> RolloutPlan | None:
    """Read the rollout plan from an annotation bag.

    Returns None when the workload carries no plan (a scaffold key is
    missing). Raises MalformedPlanError when a present key does not parse or
    the plan breaks a structural invariant.

    ``now`` is used as ``last_update_time`` when that key is absent; the plan
    is then marked unanchored so the reconciler persists it.
    """
    if not is_managed(annotations):
        return None
    assert annotations is not None

    steps = _parse_steps(annotations[STEPS_KEY])
    index = _parse_int(CURRENT_STEP_INDEX_KEY, annotations[CURRENT_STEP_INDEX_KEY])
    state = _parse_state(annotations[CURRENT_STEP_STATE_KEY])

    max_wait = DEFAULT_MAX_WAIT_AVAILABLE_SECONDS
    if MAX_WAIT_AVAILABLE_KEY in annotations:
        max_wait = _parse_int(MAX_WAIT_AVAILABLE_KEY, annotations[MAX_WAIT_AVAILABLE_KEY])

    max_unavailable = DEFAULT_MAX_UNAVAILABLE_REPLICAS
    if MAX_UNAVAILABLE_KEY in annotations:
        max_unavailable = _parse_int(MAX_UNAVAILABLE_KEY, annotations[MAX_UNAVAILABLE_KEY])

    if LAST_UPDATE_TIME_KEY in annotations:
        last_update = float(_parse_int(LAST_UPDATE_TIME_KEY, annotations[LAST_UPDATE_TIME_KEY]))
        anchored = True
    else:
        last_update = time.time() if now is None else now
        anchored = False

    plan = RolloutPlan(
        steps=steps,
        current_step_index=index,
        current_step_state=state,
        message=annotations.get(MESSAGE_KEY, ""),
        max_wait_available_seconds=max_wait,
        max_unavailable_replicas=max_unavailable,
        last_update_time=last_update,
        anchored=anchored,
    )
    try:
        plan.validate()
    except ValueError as e:
        raise MalformedPlanError(str(e)) from None
    return plan


def encode_steps(steps: tuple[Step, ...] | list[Step]) -> str:
    out: list[dict[str, Any]] = []
    for s in steps:
        item: dict[str, Any] = {"replicas": int(s.replicas)}
        if s.pause:
            item["pause"] = True
        out.append(item)
    return json.dumps(out, separators=(",", ":"))


def encode(plan: RolloutPlan, annotations: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a copy of ``annotations`` with the plan's keys overwritten.

    Keys the plan does not own pass through unchanged.
    """
    out = dict(annotations or {})
    out[STEPS_KEY] = encode_steps(plan.steps)
    out[CURRENT_STEP_INDEX_KEY] = str(int(plan.current_step_index))
    out[CURRENT_STEP_STATE_KEY] = plan.current_step_state.value
    out[MESSAGE_KEY] = plan.message
    out[MAX_WAIT_AVAILABLE_KEY] = str(int(plan.max_wait_available_seconds))
    out[MAX_UNAVAILABLE_KEY] = str(int(plan.max_unavailable_replicas))
    out[LAST_UPDATE_TIME_KEY] = str(int(plan.last_update_time))
    return out
