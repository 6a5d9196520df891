import json

import pytest

from prr.annotations import OWNED_KEYS, decode, encode, encode_steps, is_managed
from prr.errors import ErrorKind, MalformedPlanError
from prr.model import RolloutPlan, Step, StepState

from conftest import STEPS, T0


def _bag(**overrides):
    bag = {
        "steps": '[{"replicas":1},{"replicas":2},{"replicas":8,"pause":true}]',
        "current_step_index": "2",
        "current_step_state": "StepUpgrade",
        "message": "hello",
        "max_wait_available_time": "120",
        "max_unavailable_replicas": "2",
        "last_update_time": "1700000000",
        "deployment.kubernetes.io/revision": "3",
    }
    bag.update(overrides)
    return {k: v for k, v in bag.items() if v is not None}


def test_decode_full_bag():
    plan = decode(_bag())
    assert plan == RolloutPlan(
        steps=(Step(1), Step(2), Step(8, pause=True)),
        current_step_index=2,
        current_step_state=StepState.UPGRADE,
        message="hello",
        max_wait_available_seconds=120,
        max_unavailable_replicas=2,
        last_update_time=1_700_000_000.0,
    )
    assert plan.step_deadline == 1_700_000_120.0


@pytest.mark.parametrize("missing", ["steps", "current_step_index", "current_step_state"])
def test_missing_scaffold_key_is_not_managed(missing):
    bag = _bag(**{missing: None})
    assert not is_managed(bag)
    assert decode(bag) is None


def test_no_annotations_is_not_managed():
    assert decode(None) is None
    assert decode({}) is None


def test_optional_keys_fall_back_to_defaults():
    bag = {
        "steps": '[{"replicas":3}]',
        "current_step_index": "1",
        "current_step_state": "StepReady",
    }
    plan = decode(bag, now=T0)
    assert plan.max_wait_available_seconds == 600
    assert plan.max_unavailable_replicas == 1
    assert plan.message == ""
    assert plan.last_update_time == T0
    assert not plan.anchored


@pytest.mark.parametrize(
    "overrides",
    [
        {"steps": "not json"},
        {"steps": '{"replicas":1}'},
        {"steps": '[{"replicas":"1"}]'},
        {"steps": '[{"replicas":true}]'},
        {"steps": '[{"replicas":1,"pause":"yes"}]'},
        {"steps": "[1,2]"},
        {"steps": "[]"},
        {"steps": '[{"replicas":-1}]', "current_step_index": "1"},
        {"current_step_index": "two"},
        {"current_step_index": "1_0"},
        {"current_step_index": " 2"},
        {"current_step_index": "0"},
        {"current_step_index": "4"},
        {"current_step_state": "Error"},
        {"max_wait_available_time": "10m"},
        {"max_wait_available_time": "-5"},
        {"max_unavailable_replicas": ""},
        {"last_update_time": "2024-01-01T00:00:00Z"},
        {"max_wait_available_time": "9" * 400},
        {"max_wait_available_time": str(2**63)},
        {"last_update_time": "-" + "9" * 30},
        {"steps": '[{"replicas":2147483648}]', "current_step_index": "1"},
    ],
)
def test_malformed_fields_raise(overrides):
    with pytest.raises(MalformedPlanError) as exc:
        decode(_bag(**overrides))
    assert exc.value.kind is ErrorKind.MALFORMED_PLAN


def test_step_without_replicas_decodes_as_zero():
    plan = decode(_bag(steps='[{"replicas":4},{},{"pause":true}]', current_step_index="1"))
    assert plan.steps == (Step(4), Step(0), Step(0, pause=True))


def test_encode_steps_is_compact_and_omits_false_pause():
    assert encode_steps(STEPS) == (
        '[{"replicas":1},{"replicas":2},{"replicas":5},{"replicas":8,"pause":true},{"replicas":10}]'
    )
    assert encode_steps([Step(0)]) == '[{"replicas":0}]'


def test_encode_writes_owned_keys_only():
    plan = RolloutPlan(
        steps=(Step(1), Step(3, pause=True)),
        current_step_index=2,
        current_step_state=StepState.TIMEOUT,
        message="step 2 timed out",
        max_wait_available_seconds=90,
        max_unavailable_replicas=0,
        last_update_time=1_700_000_123.9,
    )
    original = {"owner": "team-a", "message": "stale"}
    out = encode(plan, original)

    assert original == {"owner": "team-a", "message": "stale"}
    assert out == {
        "owner": "team-a",
        "steps": '[{"replicas":1},{"replicas":3,"pause":true}]',
        "current_step_index": "2",
        "current_step_state": "Timeout",
        "message": "step 2 timed out",
        "max_wait_available_time": "90",
        "max_unavailable_replicas": "0",
        "last_update_time": "1700000123",
    }


def test_encode_creates_bag_when_absent():
    plan = decode(_bag())
    out = encode(plan, None)
    assert set(out) == set(OWNED_KEYS)


def test_reencoding_a_decoded_bag_only_touches_owned_keys():
    bag = _bag(steps=json.dumps([{"replicas": 1}, {"replicas": 2}, {"replicas": 8, "pause": True}]))
    out = encode(decode(bag), bag)

    assert {k: v for k, v in out.items() if k not in OWNED_KEYS} == {
        k: v for k, v in bag.items() if k not in OWNED_KEYS
    }
    # Compact re-serialization of the same plan decodes identically.
    assert decode(out) == decode(bag)
    assert out["current_step_index"] == bag["current_step_index"]
    assert out["last_update_time"] == bag["last_update_time"]
