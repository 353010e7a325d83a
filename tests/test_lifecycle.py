from __future__ import annotations

import pytest

from patchpilot.errors import ErrorCode, FATAL_CODES, PipelineError
from patchpilot.lifecycle import (
    ALLOWED_TRANSITIONS,
    LifecycleState,
    assert_can_abort,
    assert_valid_transition,
    validate_lifecycle_definition,
)


def test_declared_lifecycle_matches_transition_table() -> None:
    validate_lifecycle_definition()


def test_drifted_table_is_rejected() -> None:
    drifted = dict(ALLOWED_TRANSITIONS)
    drifted[LifecycleState.PLAN_DONE] = frozenset({LifecycleState.IMPLEMENTED, LifecycleState.PASS})

    with pytest.raises(PipelineError) as excinfo:
        validate_lifecycle_definition(drifted)

    assert excinfo.value.code is ErrorCode.INVALID_LIFECYCLE_DEFINITION
    assert excinfo.value.details["unexpected"] == [("PLAN_DONE", "PASS")]


def test_happy_path_transitions_are_allowed() -> None:
    path = [
        LifecycleState.INIT,
        LifecycleState.RESEARCH_DONE,
        LifecycleState.DESIGN_DONE,
        LifecycleState.PLAN_DONE,
        LifecycleState.IMPLEMENTED,
        LifecycleState.VALIDATING,
        LifecycleState.RETRYING,
        LifecycleState.IMPLEMENTED,
        LifecycleState.VALIDATING,
        LifecycleState.PASS,
    ]
    for current, target in zip(path, path[1:]):
        assert_valid_transition(current, target)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (LifecycleState.INIT, LifecycleState.PLAN_DONE),
        (LifecycleState.PASS, LifecycleState.RETRYING),
        (LifecycleState.FAILED, LifecycleState.INIT),
        (LifecycleState.RETRYING, LifecycleState.VALIDATING),
    ],
)
def test_invalid_transitions_raise(current: LifecycleState, target: LifecycleState) -> None:
    with pytest.raises(PipelineError) as excinfo:
        assert_valid_transition(current, target)

    assert excinfo.value.code is ErrorCode.INVALID_LIFECYCLE_TRANSITION
    assert excinfo.value.fatal


def test_abort_is_allowed_from_live_states_only() -> None:
    assert_can_abort(LifecycleState.DESIGN_DONE)
    with pytest.raises(PipelineError):
        assert_can_abort(LifecycleState.PASS)


def test_error_fatality_follows_code_unless_overridden() -> None:
    assert ErrorCode.CONTRACT_INTEGRITY_FAILED in FATAL_CODES
    assert not PipelineError(ErrorCode.VALIDATION_FAILED).fatal
    assert PipelineError(ErrorCode.VALIDATION_FAILED, fatal=True).fatal

    payload = PipelineError(ErrorCode.SCOPE_VIOLATION, "outside", details={"paths": ["x"]}).to_dict()

    assert payload == {"code": "SCOPE_VIOLATION", "message": "outside", "fatal": False, "details": {"paths": ["x"]}}
