"""Persisted meta-run state: plan, step results, remediation history.

Everything read back from disk goes through the ``normalise_*`` adapters in
this module.  They accept the field-name variants older writers produced and
return canonical models, so the meta controller only ever sees one shape.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .artifacts import read_json_or_none, write_json_file
from .errors import ErrorCode, PipelineError

LOGGER = logging.getLogger(__name__)

PLAN_FILE = "meta_plan.json"
STEP_RESULTS_FILE = "meta_step_results.json"
MANIFEST_FILE = "meta_run_manifest.json"
CONTEXT_HEALTH_FILE = "context_health.json"
CONTINUATION_BUNDLE_FILE = "continuation_bundle.json"
CONTINUATION_PROMPT_FILE = "continuation_prompt.txt"
INTEGRITY_FILE = "meta_integrity.json"

# Step artifacts counted towards the context-size estimate.
HEAVY_STEP_ARTIFACTS = ("full_contract_snapshot.json", "contract_diff.json", "frontend_contract.json")

StepStatus = Literal["PASS", "FAILED"]
RemediationStatus = Literal["PASS", "FAILED", "STALLED", "MAX_ATTEMPTS_REACHED"]
MetaStatus = Literal["PASS", "FAILED", "IN_PROGRESS"]


class StateModel(BaseModel):
    """camelCase on disk, snake_case in Python."""

    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class MetaStep(StateModel):
    id: int
    type: str
    description: str


class MetaStepResult(StateModel):
    step_id: int
    type: str
    description: str
    run_id: str = ""
    lifecycle_state: str = ""
    contract_integrity_status: str = ""
    validate_exit_code: int = 1
    status: StepStatus = "FAILED"


class RemediationAttempt(StateModel):
    id: str
    type: str = "regression_fix"
    attempt: int
    source_step_id: int
    source_step_type: str = "validation"
    source_run_id: str = ""
    fix_run_id: str = ""
    status: RemediationStatus = "FAILED"
    reason: Optional[str] = None
    validate_exit_code: int = 1
    failing_tests: List[str] = []
    failure_signature: str = ""
    first_failure: str = ""
    timestamp: str = ""
    fix_task: str = ""


class SelfHealSettings(StateModel):
    enabled: bool = True
    max_self_heal_attempts: int = 5
    stall_threshold: int = 3


# ---------------------------------------------------------------- adapters
def _positive_int(value: Any, fallback: int) -> int:
    if isinstance(value, bool):
        return fallback
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        return fallback
    return number if number > 0 else fallback


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _pass_or_failed(value: Any) -> StepStatus:
    return "PASS" if _text(value).upper() == "PASS" else "FAILED"


def _first_present(item: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if item.get(key) is not None:
            return item[key]
    return None


def normalise_plan(raw_steps: Iterable[Any]) -> List[MetaStep]:
    """Canonical, deduplicated, deterministically ordered plan steps.

    Precedence per field:

    * ``id``: a positive integer ``id``, else the 1-based position.
    * ``type``: lowercased ``type``.
    * ``description``: trimmed ``description``, else ``"Step <id>"``.

    Steps sort by id, then type, then description; the first step per id wins.
    """

    candidates: List[tuple[int, str, str, int]] = []
    for index, item in enumerate(raw_steps):
        entry = item if isinstance(item, Mapping) else {}
        step_id = _positive_int(entry.get("id"), index + 1)
        step_type = _text(entry.get("type")).lower()
        description = _text(entry.get("description")) or f"Step {step_id}"
        candidates.append((step_id, step_type, description, index))
    candidates.sort()

    steps: List[MetaStep] = []
    seen: set[int] = set()
    for step_id, step_type, description, _ in candidates:
        if step_id in seen:
            continue
        seen.add(step_id)
        steps.append(MetaStep(id=step_id, type=step_type, description=description))
    return steps


def normalise_step_results(raw_results: Iterable[Any], plan: Sequence[MetaStep]) -> Dict[int, MetaStepResult]:
    """Map step id to its latest result, dropping ids the plan does not know.

    Precedence per field:

    * ``stepId``: ``stepId``, else legacy ``id``.
    * ``type`` / ``description``: the result's own value, else the plan step's.
    * ``validateExitCode``: an integer ``validateExitCode``, else 0 for a PASS
      status and 1 otherwise.
    * ``status``: ``PASS`` only for a case-insensitive ``pass``.
    """

    by_id = {step.id: step for step in plan}
    results: Dict[int, MetaStepResult] = {}
    for item in raw_results:
        if not isinstance(item, Mapping):
            continue
        step_id = _positive_int(_first_present(item, "stepId", "step_id", "id"), -1)
        step = by_id.get(step_id)
        if step is None:
            continue
        status = _pass_or_failed(item.get("status"))
        exit_code = _first_present(item, "validateExitCode", "validate_exit_code")
        if not isinstance(exit_code, int) or isinstance(exit_code, bool):
            exit_code = 0 if status == "PASS" else 1
        results[step_id] = MetaStepResult(
            step_id=step_id,
            type=_text(item.get("type")).lower() or step.type,
            description=_text(item.get("description")) or step.description,
            run_id=_text(_first_present(item, "runId", "run_id")),
            lifecycle_state=_text(_first_present(item, "lifecycleState", "lifecycle_state")).upper(),
            contract_integrity_status=_text(
                _first_present(item, "contractIntegrityStatus", "contract_integrity_status")
            ).upper(),
            validate_exit_code=exit_code,
            status=status,
        )
    return results


_REMEDIATION_STATUS_ALIASES = {
    "SELF_HEAL_STALLED": "STALLED",
    "MAX_SELF_HEAL_ATTEMPTS_REACHED": "MAX_ATTEMPTS_REACHED",
}


def normalise_remediation_history(raw_history: Any) -> List[RemediationAttempt]:
    """Canonical remediation entries in their original order."""
    if not isinstance(raw_history, list):
        return []
    history: List[RemediationAttempt] = []
    for index, item in enumerate(raw_history):
        entry = item if isinstance(item, Mapping) else {}
        status = _text(entry.get("status")).upper() or "FAILED"
        status = _REMEDIATION_STATUS_ALIASES.get(status, status)
        if status not in {"PASS", "FAILED", "STALLED", "MAX_ATTEMPTS_REACHED"}:
            status = "FAILED"
        tests = entry.get("failingTests") or []
        attempt = entry.get("attempt")
        exit_code = entry.get("validateExitCode")
        history.append(
            RemediationAttempt(
                id=_text(entry.get("id")) or f"regression_fix_{index + 1}",
                type=_text(entry.get("type")).lower() or "regression_fix",
                attempt=attempt if isinstance(attempt, int) and not isinstance(attempt, bool) else index + 1,
                source_step_id=_positive_int(entry.get("sourceStepId"), -1),
                source_step_type=_text(entry.get("sourceStepType")).lower() or "validation",
                source_run_id=_text(entry.get("sourceRunId")),
                fix_run_id=_text(entry.get("fixRunId")),
                status=status,
                reason=_text(entry.get("reason")) or None,
                validate_exit_code=exit_code if isinstance(exit_code, int) and not isinstance(exit_code, bool) else 1,
                failing_tests=[_text(name) for name in tests if _text(name)] if isinstance(tests, list) else [],
                failure_signature=_text(entry.get("failureSignature")),
                first_failure=_text(entry.get("firstFailure")),
                timestamp=_text(entry.get("timestamp")) or datetime.now(timezone.utc).isoformat(),
                fix_task=_text(entry.get("fixTask")),
            )
        )
    return history


def integrity_status_of(payload: Any) -> str:
    """Read a status from ``{status}`` or ``{integrity: {status}}``."""
    if not isinstance(payload, Mapping):
        return ""
    direct = _text(payload.get("status")).upper()
    if direct:
        return direct
    nested = payload.get("integrity")
    if isinstance(nested, Mapping):
        return _text(nested.get("status")).upper()
    return ""


# ------------------------------------------------------------------ state
@dataclass(slots=True)
class MetaRunState:
    meta_run_id: str
    steps: List[MetaStep]
    results: Dict[int, MetaStepResult] = field(default_factory=dict)
    remediation_history: List[RemediationAttempt] = field(default_factory=list)
    self_heal: SelfHealSettings = field(default_factory=SelfHealSettings)

    def ordered_results(self) -> List[MetaStepResult]:
        return [self.results[step.id] for step in self.steps if step.id in self.results]

    def record(self, result: MetaStepResult) -> None:
        """Replace the result for ``result.step_id``."""
        if result.step_id not in {step.id for step in self.steps}:
            raise PipelineError(ErrorCode.META_RESUME_INCONSISTENT, f"Unknown step id {result.step_id}")
        self.results[result.step_id] = result

    def first_unfinished_index(self) -> int:
        for index, step in enumerate(self.steps):
            result = self.results.get(step.id)
            if result is None or result.status != "PASS":
                return index
        return len(self.steps)

    @property
    def steps_passed(self) -> int:
        return sum(1 for result in self.ordered_results() if result.status == "PASS")

    def latest_run_id(self) -> str:
        """Run id of the last result in plan order."""
        run_ids = [result.run_id for result in self.ordered_results() if result.run_id]
        return run_ids[-1] if run_ids else ""

    def remediation_summary(self) -> Dict[str, Any]:
        return {
            "attemptsUsed": len(self.remediation_history),
            "successfulFixes": sum(1 for item in self.remediation_history if item.status == "PASS"),
            "stalled": any(item.status == "STALLED" for item in self.remediation_history),
        }


def build_manifest(state: MetaRunState, status: MetaStatus, reason: Optional[str]) -> Dict[str, Any]:
    return {
        "metaRunId": state.meta_run_id,
        "stepsTotal": len(state.steps),
        "stepsPassed": state.steps_passed,
        "status": status,
        "reason": reason,
        "selfHeal": {**state.self_heal.to_json(), **state.remediation_summary()},
    }


def build_continuation_bundle(state: MetaRunState, integrity_status: str, resume_command: str) -> Dict[str, Any]:
    completed: List[Dict[str, Any]] = []
    remaining: List[Dict[str, Any]] = []
    for step in state.steps:
        result = state.results.get(step.id)
        if result is not None and result.status == "PASS":
            completed.append({"id": step.id, "type": step.type, "status": "PASS"})
        else:
            remaining.append({"id": step.id, "type": step.type})
    return {
        "metaRunId": state.meta_run_id,
        "currentStepIndex": state.first_unfinished_index(),
        "stepsTotal": len(state.steps),
        "completedSteps": completed,
        "remainingSteps": remaining,
        "lastRunId": state.latest_run_id(),
        "integrityStatus": _pass_or_failed(integrity_status),
        "resumeCommand": resume_command,
    }


def build_continuation_prompt(bundle: Mapping[str, Any]) -> str:
    remaining = bundle.get("remainingSteps") or []
    next_step = f"{remaining[0]['id']}:{remaining[0]['type']}" if remaining else "none"
    return "\n".join(
        [
            "META CONTINUATION TRANSFER",
            f"metaRunId: {bundle.get('metaRunId')}",
            f"Completed: {len(bundle.get('completedSteps') or [])}/{bundle.get('stepsTotal')}",
            f"Next step: {next_step}",
            "Resume:",
            str(bundle.get("resumeCommand")),
            "",
        ]
    )


def resume_command_for(meta_run_id: str) -> str:
    return f"patchpilot run --resume {meta_run_id}"


# ------------------------------------------------------------------ store
def _size(path: Path) -> int:
    try:
        return path.stat().st_size
    except FileNotFoundError:
        return 0


class MetaRunStore:
    """Reads and writes the files of one meta run directory.

    Only the parent process touches these files; step runs write into their
    own run directories under the same runs root.
    """

    def __init__(self, runs_root: Path, meta_run_id: str, *, context_threshold: int = 50_000) -> None:
        self.runs_root = Path(runs_root)
        self.meta_run_id = meta_run_id
        self.meta_dir = self.runs_root / meta_run_id
        self.context_threshold = context_threshold

    def path(self, name: str) -> Path:
        return self.meta_dir / name

    def write_plan(self, state: MetaRunState) -> None:
        write_json_file(
            self.path(PLAN_FILE),
            {"metaRunId": state.meta_run_id, "steps": [step.to_json() for step in state.steps]},
        )

    def persist(self, state: MetaRunState, status: MetaStatus, reason: Optional[str] = None) -> Dict[str, Any]:
        """Write step results, manifest and context health; sync continuation files."""
        write_json_file(
            self.path(STEP_RESULTS_FILE),
            {
                "metaRunId": state.meta_run_id,
                "steps": [result.to_json() for result in state.ordered_results()],
                "remediationHistory": [item.to_json() for item in state.remediation_history],
                "selfHeal": state.self_heal.to_json(),
            },
        )
        manifest = build_manifest(state, status, reason)
        write_json_file(self.path(MANIFEST_FILE), manifest)
        health = self.context_health(state)
        write_json_file(self.path(CONTEXT_HEALTH_FILE), health)
        self._sync_continuation(state, health)
        return manifest

    def context_health(self, state: MetaRunState) -> Dict[str, Any]:
        estimated = _size(self.path(PLAN_FILE)) + _size(self.path(STEP_RESULTS_FILE))
        latest = state.latest_run_id()
        if latest:
            estimated += sum(_size(self.runs_root / latest / name) for name in HEAVY_STEP_ARTIFACTS)
        return {
            "context": {
                "estimatedSize": estimated,
                "threshold": self.context_threshold,
                "recommendNextChat": estimated > self.context_threshold,
            }
        }

    def _sync_continuation(self, state: MetaRunState, health: Mapping[str, Any]) -> None:
        bundle_path = self.path(CONTINUATION_BUNDLE_FILE)
        prompt_path = self.path(CONTINUATION_PROMPT_FILE)
        if not health["context"]["recommendNextChat"]:
            bundle_path.unlink(missing_ok=True)
            prompt_path.unlink(missing_ok=True)
            return
        bundle = build_continuation_bundle(
            state,
            self.run_integrity_status(state.latest_run_id()),
            resume_command_for(state.meta_run_id),
        )
        write_json_file(bundle_path, bundle)
        prompt_path.write_text(build_continuation_prompt(bundle), encoding="utf-8")
        LOGGER.info("Context estimate over threshold; wrote continuation bundle for %s", state.meta_run_id)

    def run_integrity_status(self, run_id: str) -> str:
        if not run_id:
            return ""
        return integrity_status_of(read_json_or_none(self.runs_root / run_id / "contract_integrity.json"))

    def run_lifecycle_state(self, run_id: str) -> str:
        if not run_id:
            return ""
        manifest = read_json_or_none(self.runs_root / run_id / "run_manifest.json")
        if isinstance(manifest, Mapping) and manifest.get("lifecycleState"):
            return _text(manifest["lifecycleState"]).upper()
        state_file = self.runs_root / run_id / "lifecycle_state.txt"
        return state_file.read_text(encoding="utf-8").strip().upper() if state_file.exists() else ""

    def manifest_reason(self) -> Optional[str]:
        manifest = read_json_or_none(self.path(MANIFEST_FILE))
        if isinstance(manifest, Mapping):
            return _text(manifest.get("reason")) or None
        return None

    def write_integrity(self, status: str, reason: Optional[str]) -> None:
        write_json_file(
            self.path(INTEGRITY_FILE),
            {"metaIntegrity": {"status": _pass_or_failed(status), "reason": reason or None}},
        )

    # -------------------------------------------------------------- resume
    def load_for_resume(self, self_heal: SelfHealSettings) -> MetaRunState:
        """Load persisted state, raising ``META_RESUME_INCONSISTENT`` on any mismatch."""

        def require(condition: bool, message: str) -> None:
            if not condition:
                raise PipelineError(
                    ErrorCode.META_RESUME_INCONSISTENT,
                    f"Cannot resume {self.meta_run_id}: {message}",
                    details={"metaRunId": self.meta_run_id},
                )

        for name in (PLAN_FILE, STEP_RESULTS_FILE, CONTEXT_HEALTH_FILE, MANIFEST_FILE):
            require(self.path(name).is_file(), f"{name} is missing")
        plan = read_json_or_none(self.path(PLAN_FILE))
        results = read_json_or_none(self.path(STEP_RESULTS_FILE))
        health = read_json_or_none(self.path(CONTEXT_HEALTH_FILE))
        manifest = read_json_or_none(self.path(MANIFEST_FILE))
        bundle = None
        if self.path(CONTINUATION_BUNDLE_FILE).exists():
            bundle = read_json_or_none(self.path(CONTINUATION_BUNDLE_FILE))
            require(isinstance(bundle, Mapping), "continuation bundle is unreadable")

        require(isinstance(plan, Mapping) and isinstance(plan.get("steps"), list), "plan is unreadable")
        require(isinstance(results, Mapping) and isinstance(results.get("steps"), list), "step results are unreadable")
        require(isinstance(health, Mapping), "context health is unreadable")
        require(isinstance(manifest, Mapping), "manifest is unreadable")

        steps = normalise_plan(plan["steps"])
        total = len(steps)
        require(total > 0, "plan has no steps")
        require(_text(manifest.get("metaRunId")) == self.meta_run_id, "manifest belongs to another meta run")
        require(_text(plan.get("metaRunId")) in {"", self.meta_run_id}, "plan belongs to another meta run")
        require(_text(results.get("metaRunId")) in {"", self.meta_run_id}, "step results belong to another meta run")
        require(_positive_int(manifest.get("stepsTotal"), -1) == total, "manifest step count differs from plan")

        state = MetaRunState(
            meta_run_id=self.meta_run_id,
            steps=steps,
            results=normalise_step_results(results["steps"], steps),
            remediation_history=normalise_remediation_history(results.get("remediationHistory")),
            self_heal=self_heal,
        )
        completed = state.steps_passed
        remaining = sum(1 for step in steps if step.id not in state.results or state.results[step.id].status != "PASS")
        require(completed + remaining == total, "completed and remaining steps do not add up")

        if bundle is not None:
            completed_steps = bundle.get("completedSteps")
            remaining_steps = bundle.get("remainingSteps")
            require(_text(bundle.get("metaRunId")) == self.meta_run_id, "bundle belongs to another meta run")
            require(_positive_int(bundle.get("stepsTotal"), -1) == total, "bundle step count differs from plan")
            require(
                isinstance(completed_steps, list) and isinstance(remaining_steps, list),
                "bundle step lists are unreadable",
            )
            require(len(completed_steps) + len(remaining_steps) == total, "bundle step lists do not add up")
            require(len(completed_steps) == completed, "bundle completed count differs from step results")
        return state


__all__ = [
    "CONTEXT_HEALTH_FILE",
    "CONTINUATION_BUNDLE_FILE",
    "CONTINUATION_PROMPT_FILE",
    "INTEGRITY_FILE",
    "MANIFEST_FILE",
    "MetaRunState",
    "MetaRunStore",
    "MetaStep",
    "MetaStepResult",
    "PLAN_FILE",
    "RemediationAttempt",
    "STEP_RESULTS_FILE",
    "SelfHealSettings",
    "build_continuation_bundle",
    "build_continuation_prompt",
    "build_manifest",
    "integrity_status_of",
    "normalise_plan",
    "normalise_remediation_history",
    "normalise_step_results",
    "resume_command_for",
]
