"""Run lifecycle states, the transition table and its guard."""

from __future__ import annotations

from enum import Enum
from typing import Mapping

from .errors import ErrorCode, PipelineError


class LifecycleState(str, Enum):
    """Lifecycle states for a single run."""

    INIT = "INIT"
    RESEARCH_DONE = "RESEARCH_DONE"
    DESIGN_DONE = "DESIGN_DONE"
    PLAN_DONE = "PLAN_DONE"
    IMPLEMENTED = "IMPLEMENTED"
    VALIDATING = "VALIDATING"
    RETRYING = "RETRYING"
    PASS = "PASS"
    FAILED = "FAILED"


TERMINAL_STATES = frozenset({LifecycleState.PASS, LifecycleState.FAILED})

ALLOWED_TRANSITIONS: Mapping[LifecycleState, frozenset[LifecycleState]] = {
    LifecycleState.INIT: frozenset({LifecycleState.RESEARCH_DONE}),
    LifecycleState.RESEARCH_DONE: frozenset({LifecycleState.DESIGN_DONE}),
    LifecycleState.DESIGN_DONE: frozenset({LifecycleState.PLAN_DONE}),
    LifecycleState.PLAN_DONE: frozenset({LifecycleState.IMPLEMENTED}),
    LifecycleState.IMPLEMENTED: frozenset({LifecycleState.VALIDATING}),
    LifecycleState.VALIDATING: frozenset(
        {LifecycleState.RETRYING, LifecycleState.PASS, LifecycleState.FAILED}
    ),
    LifecycleState.RETRYING: frozenset({LifecycleState.IMPLEMENTED}),
    LifecycleState.PASS: frozenset(),
    LifecycleState.FAILED: frozenset(),
}

# Declared independently from ALLOWED_TRANSITIONS and compared at startup.
_DECLARED_STATES = (
    "INIT",
    "RESEARCH_DONE",
    "DESIGN_DONE",
    "PLAN_DONE",
    "IMPLEMENTED",
    "VALIDATING",
    "RETRYING",
    "PASS",
    "FAILED",
)
_DECLARED_EDGES = (
    ("INIT", "RESEARCH_DONE"),
    ("RESEARCH_DONE", "DESIGN_DONE"),
    ("DESIGN_DONE", "PLAN_DONE"),
    ("PLAN_DONE", "IMPLEMENTED"),
    ("IMPLEMENTED", "VALIDATING"),
    ("VALIDATING", "RETRYING"),
    ("VALIDATING", "PASS"),
    ("VALIDATING", "FAILED"),
    ("RETRYING", "IMPLEMENTED"),
)


def _edges(table: Mapping[LifecycleState, frozenset[LifecycleState]]) -> set[tuple[str, str]]:
    return {(source.value, target.value) for source, targets in table.items() for target in targets}


def validate_lifecycle_definition(
    table: Mapping[LifecycleState, frozenset[LifecycleState]] = ALLOWED_TRANSITIONS,
) -> None:
    """Compare ``table`` with the declared copy; raise on any drift."""
    states = {state.value for state in table}
    if states != set(_DECLARED_STATES) or states != {state.value for state in LifecycleState}:
        raise PipelineError(
            ErrorCode.INVALID_LIFECYCLE_DEFINITION,
            "Lifecycle state set does not match its declaration.",
            details={"states": sorted(states)},
        )
    edges = _edges(table)
    if edges != set(_DECLARED_EDGES):
        raise PipelineError(
            ErrorCode.INVALID_LIFECYCLE_DEFINITION,
            "Lifecycle transitions do not match their declaration.",
            details={
                "unexpected": sorted(edges - set(_DECLARED_EDGES)),
                "missing": sorted(set(_DECLARED_EDGES) - edges),
            },
        )
    for terminal in TERMINAL_STATES:
        if table.get(terminal):
            raise PipelineError(
                ErrorCode.INVALID_LIFECYCLE_DEFINITION,
                f"Terminal state {terminal.value} must not have outgoing transitions.",
            )


def assert_valid_transition(current: LifecycleState, target: LifecycleState) -> None:
    """Raise ``INVALID_LIFECYCLE_TRANSITION`` unless ``current -> target`` is allowed."""
    current_state = LifecycleState(current)
    target_state = LifecycleState(target)
    if target_state not in ALLOWED_TRANSITIONS.get(current_state, frozenset()):
        raise PipelineError(
            ErrorCode.INVALID_LIFECYCLE_TRANSITION,
            f"Invalid lifecycle transition {current_state.value} -> {target_state.value}",
            details={"current": current_state.value, "target": target_state.value},
        )


def assert_can_abort(current: LifecycleState) -> None:
    """Allow an unrecoverable error to force ``FAILED`` from any live state."""
    current_state = LifecycleState(current)
    if current_state in TERMINAL_STATES:
        raise PipelineError(
            ErrorCode.INVALID_LIFECYCLE_TRANSITION,
            f"Cannot abort a run that is already {current_state.value}",
            details={"current": current_state.value, "target": LifecycleState.FAILED.value},
        )


__all__ = [
    "ALLOWED_TRANSITIONS",
    "LifecycleState",
    "TERMINAL_STATES",
    "assert_can_abort",
    "assert_valid_transition",
    "validate_lifecycle_definition",
]
