"""Multi-step orchestration with self-healing and resumable state."""

from __future__ import annotations

import logging
import os
import re
import subprocess
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Protocol, Sequence

from .artifacts import RUNS_DIRNAME, list_run_ids, timestamp_run_id
from .config import PatchPilotConfig
from .diagnostics import extract_failing_tests, extract_first_failure, failure_signature
from .errors import ErrorCode, PipelineError
from .meta_state import (
    MetaRunState,
    MetaRunStore,
    MetaStatus,
    MetaStep,
    MetaStepResult,
    RemediationAttempt,
    SelfHealSettings,
    normalise_plan,
)
from .telemetry import emit_event
from .tools.validation import CommandResult, run_validation_command

LOGGER = logging.getLogger(__name__)

META_PREFIX = "meta-"
MAX_FIX_TESTS = 8
MAX_FIX_EXCERPT = 500

_BACKEND_TOKENS = frozenset({"backend", "api"})
_FRONTEND_TOKENS = frozenset({"frontend", "ui", "view"})
_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")


class StepLauncher(Protocol):
    def __call__(self, task: str) -> int:
        ...


DiagnosticsRunner = Callable[[], CommandResult]


# ---------------------------------------------------------------- planning
def tokenize_task(task: str) -> List[str]:
    return [token for token in _TOKEN_SPLIT.split((task or "").lower()) if token]


def build_meta_plan(task: str) -> List[MetaStep]:
    """Derive the ordered step list for ``task``."""
    tokens = set(tokenize_task(task))
    subject = (task or "").strip()
    raw: List[dict] = []
    if tokens & _BACKEND_TOKENS:
        raw.append({"type": "backend", "description": f"Implement backend changes: {subject}"})
    if tokens & _FRONTEND_TOKENS:
        raw.append({"type": "frontend", "description": f"Implement frontend integration: {subject}"})
    raw.append({"type": "validation", "description": "Run integrity + tests"})
    raw.append({"type": "finalize", "description": "Full contract verification"})
    for index, step in enumerate(raw, start=1):
        step["id"] = index
    return normalise_plan(raw)


def build_regression_fix_task(
    step: MetaStep,
    attempt: int,
    max_attempts: int,
    failing_tests: Sequence[str],
    first_failure: str,
) -> str:
    tests = "; ".join(f"- {name}" for name in list(failing_tests)[:MAX_FIX_TESTS])
    excerpt = (first_failure or "").strip()[:MAX_FIX_EXCERPT] or "No stack captured"
    return " | ".join(
        [
            f"regression_fix attempt {attempt}/{max_attempts}",
            f"for meta step {step.id} ({step.type})",
            "Fix validation failures and keep API contracts unchanged.",
            f"Failing tests: {tests or '- failing test not resolved from output'}",
            f"First failure: {excerpt}",
        ]
    )


# --------------------------------------------------------------- launching
class SubprocessStepLauncher:
    """Run one step as ``python -m patchpilot.cli step`` in a child process.

    The child owns its own run directory; it never touches meta state.
    """

    def __init__(
        self,
        repo_root: Path,
        *,
        config_path: Optional[Path] = None,
        max_retries: Optional[int] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.repo_root = Path(repo_root)
        self.config_path = config_path
        self.max_retries = max_retries
        self.env = dict(os.environ if env is None else env)

    def command(self, task: str) -> List[str]:
        command = [sys.executable, "-m", "patchpilot.cli", "step", "--task", task]
        if self.config_path is not None:
            command.extend(["--config", str(self.config_path)])
        if self.max_retries is not None:
            command.extend(["--max-retries", str(self.max_retries)])
        return command

    def __call__(self, task: str) -> int:
        try:
            completed = subprocess.run(
                self.command(task),
                cwd=self.repo_root,
                env={**self.env, "META_MODE": "true"},
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                check=False,
            )
        except OSError as error:
            LOGGER.error("Failed to launch step run: %s", error)
            return 1
        return completed.returncode


@dataclass(slots=True)
class StepExecution:
    exit_code: int
    run_id: str
    lifecycle_state: str
    contract_integrity_status: str

    @property
    def passed(self) -> bool:
        return self.exit_code == 0 and self.lifecycle_state == "PASS" and self.contract_integrity_status == "PASS"


@dataclass(slots=True)
class Diagnosis:
    exit_code: int = 0
    failing_tests: List[str] = field(default_factory=list)
    first_failure: str = ""
    signature: str = ""


# -------------------------------------------------------------- controller
class MetaController:
    """Plan a task into steps and drive each through an isolated run."""

    def __init__(
        self,
        config: PatchPilotConfig,
        repo_root: Path,
        *,
        launcher: Optional[StepLauncher] = None,
        diagnostics: Optional[DiagnosticsRunner] = None,
        config_path: Optional[Path] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.config = config
        self.repo_root = Path(repo_root).resolve()
        self.runs_root = self.repo_root / config.pipeline.directory / RUNS_DIRNAME
        self._launcher = launcher or SubprocessStepLauncher(
            self.repo_root,
            config_path=config_path,
            max_retries=config.pipeline.max_retries,
        )
        self._diagnostics = diagnostics or self._run_validation
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def self_heal(self) -> SelfHealSettings:
        meta = self.config.meta
        return SelfHealSettings(
            enabled=meta.self_heal,
            max_self_heal_attempts=meta.max_self_heal_attempts,
            stall_threshold=meta.stall_threshold,
        )

    def _store(self, meta_run_id: str) -> MetaRunStore:
        return MetaRunStore(self.runs_root, meta_run_id, context_threshold=self.config.meta.context_threshold)

    # -------------------------------------------------------------- entry
    def run_task(self, task: str) -> int:
        meta_run_id = timestamp_run_id(self._clock(), prefix=META_PREFIX)
        store = self._store(meta_run_id)
        store.meta_dir.mkdir(parents=True, exist_ok=True)
        exit_code = 1
        reason: Optional[str] = None
        try:
            state = MetaRunState(meta_run_id, build_meta_plan(task), self_heal=self.self_heal)
            store.write_plan(state)
            emit_event("meta.started", meta_run_id=meta_run_id, steps=[step.type for step in state.steps])
            exit_code = self._execute(store, state)
            reason = store.manifest_reason()
            return exit_code
        finally:
            store.write_integrity("PASS" if exit_code == 0 else "FAILED", reason)

    def resume_task(self, meta_run_id: str) -> int:
        """Continue ``meta_run_id`` from its first step that has not passed."""
        clean_id = (meta_run_id or "").strip()
        if not clean_id or "/" in clean_id or "\\" in clean_id or ".." in clean_id:
            raise PipelineError(ErrorCode.META_RESUME_INCONSISTENT, f"Invalid meta run id: {meta_run_id!r}")
        store = self._store(clean_id)
        exit_code = 1
        reason: Optional[str] = None
        try:
            state = store.load_for_resume(self.self_heal)
            emit_event("meta.resumed", meta_run_id=clean_id, start_index=state.first_unfinished_index())
            exit_code = self._execute(store, state)
            reason = store.manifest_reason()
        except PipelineError as error:
            reason = error.code.value
            raise
        finally:
            store.write_integrity("PASS" if exit_code == 0 else "FAILED", reason)
        return exit_code

    # ---------------------------------------------------------- execution
    def _execute(self, store: MetaRunStore, state: MetaRunState) -> int:
        start = state.first_unfinished_index()
        if start >= len(state.steps):
            return self._finalise(store, state)

        store.persist(state, "IN_PROGRESS")
        for step in state.steps[start:]:
            execution = self.run_step(step.description, state.meta_run_id)
            diagnosis = Diagnosis() if execution.passed else self.diagnose(execution)
            state.record(_step_result(step, execution, diagnosis))

            if not execution.passed:
                if not state.self_heal.enabled:
                    return self._fail(store, state, "VALIDATE_FAILED")
                failure = self._self_heal(store, state, step, execution, diagnosis)
                if failure is not None:
                    return self._fail(store, state, failure)

            if state.steps_passed == len(state.steps):
                return self._finalise(store, state)
            store.persist(state, "IN_PROGRESS")
        return self._finalise(store, state)

    def run_step(self, task: str, meta_run_id: str) -> StepExecution:
        """Launch one isolated run and read its verdict from its artifacts."""
        before = set(list_run_ids(self.runs_root))
        exit_code = self._launcher(task)
        created = sorted(
            run_id
            for run_id in set(list_run_ids(self.runs_root)) - before
            if run_id != meta_run_id and not run_id.startswith(META_PREFIX)
        )
        run_id = created[-1] if created else ""
        store = self._store(meta_run_id)
        execution = StepExecution(
            exit_code=exit_code,
            run_id=run_id,
            lifecycle_state=store.run_lifecycle_state(run_id),
            contract_integrity_status=store.run_integrity_status(run_id),
        )
        emit_event(
            "meta.step_run",
            meta_run_id=meta_run_id,
            run_id=run_id,
            exit_code=exit_code,
            lifecycle_state=execution.lifecycle_state,
            passed=execution.passed,
        )
        return execution

    def _run_validation(self) -> CommandResult:
        return run_validation_command(
            self.config.validation.command,
            cwd=self.repo_root,
            timeout=self.config.validation.timeout,
        )

    def diagnose(self, execution: StepExecution) -> Diagnosis:
        """Run the validation command and hash its normalised failure."""
        result = self._diagnostics()
        failing_tests = extract_failing_tests(result.output)
        first_failure = extract_first_failure(result.output)
        return Diagnosis(
            exit_code=result.exit_code,
            failing_tests=failing_tests,
            first_failure=first_failure,
            signature=failure_signature(
                failing_tests=failing_tests,
                first_failure=first_failure,
                exit_code=result.exit_code,
                lifecycle_state=execution.lifecycle_state,
                contract_integrity_status=execution.contract_integrity_status,
            ),
        )

    def _self_heal(
        self,
        store: MetaRunStore,
        state: MetaRunState,
        step: MetaStep,
        source: StepExecution,
        diagnosis: Diagnosis,
    ) -> Optional[str]:
        """Retry ``step`` with synthesized fix tasks; return a failure reason or ``None``.

        A streak of ``stall_threshold`` consecutive attempts ending with the same
        failure signature stops the loop as stalled.
        """

        settings = state.self_heal
        current = diagnosis
        streak_signature: Optional[str] = None
        streak = 0
        for attempt in range(1, settings.max_self_heal_attempts + 1):
            fix_task = build_regression_fix_task(
                step,
                attempt,
                settings.max_self_heal_attempts,
                current.failing_tests,
                current.first_failure,
            )
            execution = self.run_step(fix_task, state.meta_run_id)
            outcome = Diagnosis() if execution.passed else self.diagnose(execution)
            state.record(_step_result(step, execution, outcome))

            status = "PASS" if execution.passed else "FAILED"
            reason: Optional[str] = None
            if not execution.passed:
                streak = streak + 1 if outcome.signature == streak_signature else 1
                streak_signature = outcome.signature
                if streak >= settings.stall_threshold:
                    status, reason = "STALLED", ErrorCode.SELF_HEAL_STALLED.value
                elif attempt >= settings.max_self_heal_attempts:
                    status, reason = "MAX_ATTEMPTS_REACHED", ErrorCode.MAX_SELF_HEAL_ATTEMPTS_REACHED.value

            moment = self._clock()
            state.remediation_history.append(
                RemediationAttempt(
                    id=f"regression_fix_{moment:%Y%m%d%H%M%S%f}_{attempt}",
                    attempt=attempt,
                    source_step_id=step.id,
                    source_step_type=step.type,
                    source_run_id=source.run_id,
                    fix_run_id=execution.run_id,
                    status=status,
                    reason=reason,
                    validate_exit_code=outcome.exit_code,
                    failing_tests=outcome.failing_tests,
                    failure_signature=outcome.signature,
                    first_failure=outcome.first_failure,
                    timestamp=moment.isoformat(),
                    fix_task=fix_task,
                )
            )
            emit_event("meta.self_heal", step_id=step.id, attempt=attempt, status=status, run_id=execution.run_id)

            if execution.passed:
                store.persist(state, "IN_PROGRESS")
                return None
            if reason is not None:
                return reason
            current = outcome
            store.persist(state, "IN_PROGRESS")
        return ErrorCode.MAX_SELF_HEAL_ATTEMPTS_REACHED.value

    # ---------------------------------------------------------- finishing
    def _fail(self, store: MetaRunStore, state: MetaRunState, reason: str) -> int:
        LOGGER.error("Meta run %s failed: %s", state.meta_run_id, reason)
        store.persist(state, "FAILED", reason)
        emit_event("meta.finished", meta_run_id=state.meta_run_id, status="FAILED", reason=reason)
        return 1

    def _finalise(self, store: MetaRunStore, state: MetaRunState) -> int:
        if not self.validate_final_pass(store, state):
            return self._fail(store, state, ErrorCode.FINAL_VALIDATION_FAILED.value)
        status: MetaStatus = "PASS"
        store.persist(state, status)
        self._log_self_heal_report(state)
        emit_event("meta.finished", meta_run_id=state.meta_run_id, status=status)
        return 0

    def validate_final_pass(self, store: MetaRunStore, state: MetaRunState) -> bool:
        """Every step passed, and the last step's run re-reads as PASS on disk."""
        if not state.steps:
            return False
        for step in state.steps:
            result = state.results.get(step.id)
            if result is None or result.status != "PASS" or result.lifecycle_state != "PASS":
                return False
        last = state.results[state.steps[-1].id]
        if not last.run_id or last.validate_exit_code != 0:
            return False
        return (
            store.run_lifecycle_state(last.run_id) == "PASS"
            and store.run_integrity_status(last.run_id) == "PASS"
        )

    @staticmethod
    def _log_self_heal_report(state: MetaRunState) -> None:
        for item in state.remediation_history:
            first_test = item.failing_tests[0] if item.failing_tests else "(no failing test captured)"
            LOGGER.info(
                "Self-heal #%s step=%s status=%s run=%s firstFailingTest=%s",
                item.attempt,
                item.source_step_id,
                item.status,
                item.fix_run_id or "(missing runId)",
                first_test,
            )


def _step_result(step: MetaStep, execution: StepExecution, diagnosis: Diagnosis) -> MetaStepResult:
    return MetaStepResult(
        step_id=step.id,
        type=step.type,
        description=step.description,
        run_id=execution.run_id,
        lifecycle_state=execution.lifecycle_state,
        contract_integrity_status=execution.contract_integrity_status,
        validate_exit_code=diagnosis.exit_code,
        status="PASS" if execution.passed else "FAILED",
    )


__all__ = [
    "Diagnosis",
    "MetaController",
    "StepExecution",
    "StepLauncher",
    "SubprocessStepLauncher",
    "build_meta_plan",
    "build_regression_fix_task",
    "tokenize_task",
]
