import pytest

from prr.annotations import decode
from prr.model import Step, StepState
from prr.rollouts import SCALE_UP_STEPS, NotManagedError, RolloutManager, parse_steps
from prr.workloads import WorkloadNotFound, WorkloadSnapshot, WorkloadStatus

from conftest import T0


def test_parse_steps():
    assert parse_steps("1, 2,5,8:pause,10,") == [Step(1), Step(2), Step(5), Step(8, pause=True), Step(10)]
    assert parse_steps("3:p") == [Step(3, pause=True)]


@pytest.mark.parametrize("raw", ["", "1,x", "1,-2", "4:hold"])
def test_parse_steps_rejects_garbage(raw):
    with pytest.raises(ValueError):
        parse_steps(raw)


def test_start_rollout_writes_fresh_plan_and_keeps_spec(store, key, clock):
    store.put(
        WorkloadSnapshot(
            key=key,
            annotations={"owner": "web"},
            replicas=4,
            paused=True,
            status=WorkloadStatus(replicas=4, available_replicas=4),
        )
    )
    clock.advance(5)
    plan = RolloutManager(store, clock=clock).start_rollout(key, SCALE_UP_STEPS, max_wait_available_seconds=60)

    snap = store.get(key)
    assert decode(snap.annotations) == plan
    assert plan.current_step_index == 1
    assert plan.current_step_state is StepState.READY
    assert plan.last_update_time == T0 + 5
    assert plan.max_wait_available_seconds == 60
    assert snap.annotations["owner"] == "web"
    assert snap.replicas == 4
    assert snap.paused is True


def test_start_rollout_replaces_existing_plan(managed, key, clock):
    rm = RolloutManager(managed, clock=clock)
    rm.stop(key)
    plan = rm.start_rollout(key, [Step(3), Step(1)])
    assert decode(managed.get(key).annotations).steps == (Step(3), Step(1))
    assert plan.current_step_index == 1


def test_start_rollout_rejects_empty_steps(managed, key, clock):
    with pytest.raises(ValueError):
        RolloutManager(managed, clock=clock).start_rollout(key, [])


def test_start_rollout_on_missing_workload(store, key, clock):
    with pytest.raises(WorkloadNotFound):
        RolloutManager(store, clock=clock).start_rollout(key, [Step(1)])


def test_release_sets_ready(managed, key, clock):
    rm = RolloutManager(managed, clock=clock)
    rm.stop(key)
    clock.advance(10)
    plan = rm.release(key)
    assert plan.current_step_state is StepState.READY
    assert plan.last_update_time == T0 + 10
    assert decode(managed.get(key).annotations).current_step_state is StepState.READY


def test_stop_pauses_at_first_step_covering_available(managed, key, clock):
    managed.set_status(key, replicas=4, available_replicas=4)
    plan = RolloutManager(managed, clock=clock).stop(key)
    assert plan.current_step_index == 3
    assert plan.current_step_state is StepState.PAUSED
    assert plan.steps[2] == Step(5, pause=True)


def test_stop_falls_back_to_current_step(managed, key, clock):
    managed.set_status(key, replicas=50, available_replicas=50)
    plan = RolloutManager(managed, clock=clock).stop(key)
    assert plan.current_step_index == 1
    assert plan.steps[0].pause is True


def test_release_requires_a_plan(store, key, clock):
    store.put(WorkloadSnapshot(key=key, replicas=1))
    with pytest.raises(NotManagedError):
        RolloutManager(store, clock=clock).release(key)
