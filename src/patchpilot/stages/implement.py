"""Implement stage: ask for a diff, vet it, and apply it under a snapshot."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, List, Mapping

from ..artifacts import RunArtifactStore
from ..errors import ErrorCode, PipelineError
from ..lifecycle import LifecycleState
from ..models.change_generator import ChangeGenerator
from ..telemetry import emit_event
from ..tools.diff_engine import Patch, PatchError, WorkspaceFiles, apply_patch, dry_run, normalise_diff_text, parse_diff
from ..tools.preflight import validate_impacted_files, validate_no_forbidden_targets, validate_patch_targets
from ..tools.snapshots import SnapshotManager

LOGGER = logging.getLogger(__name__)

DIFF_MARKER = "diff --git"

# Implementation may only start from these states.
IMPLEMENTABLE_STATES = frozenset({LifecycleState.PLAN_DONE, LifecycleState.RETRYING})

HARD_CONSTRAINTS = (
    "Minimal diff",
    "Preserve API contracts",
    "No refactor",
    "No formatting changes",
    "No unrelated edits",
    "No debug prints",
    "Edit only impacted files when possible",
)


@dataclass(slots=True)
class ImplementRequest:
    """Everything the implement stage needs for one attempt."""

    task: str
    attempt: int
    impacted_files: List[str]
    research_text: str
    design_text: str
    plan_text: str
    feedback: Mapping[str, Any] | None = None


@dataclass(slots=True)
class ImplementResult:
    attempt: int
    snapshot_label: str
    diff_text: str
    changed_files: List[str] = field(default_factory=list)


def snapshot_label(attempt: int) -> str:
    return f"attempt-{attempt}"


def _format_feedback(feedback: Mapping[str, Any] | None) -> str:
    if not feedback:
        return "(none)"
    return json.dumps(feedback, indent=2, sort_keys=True, default=str)


def build_prompt(request: ImplementRequest) -> str:
    impacted = [f"- {path}" for path in request.impacted_files] or ["- (none)"]
    return "\n".join(
        [
            "You are implementing a minimal, safe patch for an existing repository.",
            "Return only a unified git diff. No prose, no explanations, no markdown fences.",
            "",
            "Hard constraints:",
            *(f"- {item}" for item in HARD_CONSTRAINTS),
            "",
            "TASK:",
            request.task or "(empty task)",
            "",
            "Impacted files:",
            *impacted,
            "",
            "Feedback from validation loop:",
            _format_feedback(request.feedback),
            "",
            "Research report:",
            request.research_text,
            "",
            "Design report:",
            request.design_text,
            "",
            "Plan report:",
            request.plan_text,
            "",
            "Output format requirement:",
            f"- Must start with: {DIFF_MARKER}",
            "- Must be a valid unified diff applicable to the current repository",
        ]
    )


def _section_paths(patch: Patch) -> Iterator[str | None]:
    """Every path a section names, from its header and its ---/+++ markers."""
    for item in patch.files:
        yield from (item.git_old_path, item.git_new_path, item.old_path, item.new_path)


def _check_deletes(patch_paths: Iterable[tuple[str, bool]], impacted: Iterable[str]) -> None:
    impacted_set = set(impacted)
    for path, is_delete in patch_paths:
        if is_delete and path not in impacted_set:
            raise PatchError(
                f"Deleting {path} is only allowed for impacted files.",
                code=ErrorCode.SCOPE_VIOLATION,
                details={"path": path},
            )


def _vet_diff(raw_text: str, *, max_diff_bytes: int) -> str:
    diff_text = normalise_diff_text(raw_text)
    if len(diff_text.encode("utf-8")) > max_diff_bytes:
        raise PipelineError(
            ErrorCode.DIFF_TOO_LARGE,
            f"Generated diff exceeds {max_diff_bytes} bytes.",
            details={"bytes": len(diff_text.encode("utf-8"))},
        )
    if not diff_text.startswith(DIFF_MARKER):
        raise PipelineError(ErrorCode.INVALID_DIFF, f"Generated change does not start with '{DIFF_MARKER}'.")
    validate_no_forbidden_targets(diff_text)
    return diff_text


def run_implement(
    request: ImplementRequest,
    *,
    generator: ChangeGenerator,
    snapshots: SnapshotManager,
    workspace: WorkspaceFiles,
    artifacts: RunArtifactStore,
    lifecycle_state: LifecycleState,
    always_allowed: Iterable[str] = (),
    max_diff_bytes: int = 200_000,
) -> ImplementResult:
    """Generate, vet and apply one attempt's diff.

    The snapshot for the attempt is taken before generation.  Any failure after
    that point restores it, so the working tree is left exactly as it was when
    the attempt began.
    """

    impacted = validate_impacted_files(request.impacted_files)
    allowed = list(always_allowed)
    label = snapshot_label(request.attempt)
    if not snapshots.has_active(label):
        snapshots.create(label)

    try:
        raw_text = generator.generate(build_prompt(request))
        diff_text = _vet_diff(raw_text, max_diff_bytes=max_diff_bytes)
        artifacts.write_text(f"diff_attempt-{request.attempt}.patch", diff_text)

        try:
            patch = parse_diff(diff_text)
            validate_patch_targets(_section_paths(patch))
            _check_deletes(((item.target_path(), item.is_delete) for item in patch.files), impacted)
            dry_run(patch, workspace.read, impacted_files=impacted, always_allowed=allowed)
        except PatchError as error:
            artifacts.write_text(f"rejected_diff_attempt-{request.attempt}.txt", raw_text or "")
            if error.code is ErrorCode.SCOPE_VIOLATION:
                raise
            raise PipelineError(
                ErrorCode.DRY_RUN_FAILED,
                f"Dry run rejected attempt {request.attempt}: {error}",
                details=error.details,
            ) from error

        if LifecycleState(lifecycle_state) not in IMPLEMENTABLE_STATES:
            raise PipelineError(
                ErrorCode.LIFECYCLE_VIOLATION,
                f"Cannot apply a diff while the run is {LifecycleState(lifecycle_state).value}",
            )
        changed = apply_patch(
            patch,
            workspace.read,
            workspace.write,
            impacted_files=impacted,
            always_allowed=allowed,
        )
    except Exception:
        LOGGER.warning("Attempt %s failed; restoring snapshot %s", request.attempt, label)
        snapshots.restore(label)
        raise

    emit_event("implement.applied", attempt=request.attempt, files=sorted(changed))
    return ImplementResult(
        attempt=request.attempt,
        snapshot_label=label,
        diff_text=diff_text,
        changed_files=sorted(changed),
    )


__all__ = [
    "DIFF_MARKER",
    "IMPLEMENTABLE_STATES",
    "ImplementRequest",
    "ImplementResult",
    "build_prompt",
    "run_implement",
    "snapshot_label",
]
