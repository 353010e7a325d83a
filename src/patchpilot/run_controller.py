"""Single-run orchestration: one task through the lifecycle with rollback."""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from .artifacts import RUNS_DIRNAME, RunArtifactStore
from .config import PatchPilotConfig
from .diagnostics import extract_failing_tests, extract_first_failure
from .errors import ErrorCode, PipelineError
from .lifecycle import (
    TERMINAL_STATES,
    LifecycleState,
    assert_can_abort,
    assert_valid_transition,
    validate_lifecycle_definition,
)
from .models.change_generator import ChangeGenerator, build_change_generator
from .stages.concurrency import run_concurrency
from .stages.contract import (
    ContractSnapshot,
    build_impact_report,
    check_integrity,
    compute_contract_snapshot,
    diff_contracts,
    full_contract_snapshot,
    write_placeholder_tests,
)
from .stages.design import run_design
from .stages.financial import run_financial
from .stages.implement import ImplementRequest, run_implement, snapshot_label
from .stages.plan import parse_impacted_files, run_plan
from .stages.regression import MEMORY_FILENAME, run_regression
from .stages.research import ResearchReport, run_research
from .stages.scans import ScanReport
from .stages.security import run_security
from .telemetry import emit_event
from .tools.diff_engine import WorkspaceFiles
from .tools.snapshots import SnapshotManager
from .tools.validation import CommandResult, run_validation_command
from .tools.vcs import GitError, GitRepository, task_branch_name

LOGGER = logging.getLogger(__name__)

ValidationRunner = Callable[..., CommandResult]

_ENABLED = "true"


@dataclass(slots=True)
class RunContext:
    """Mutable state of exactly one run; never shared between runs."""

    task: str
    run_id: str
    max_retries: int
    lifecycle_state: LifecycleState = LifecycleState.INIT
    base_branch: Optional[str] = None
    base_commit: Optional[str] = None
    task_branch: Optional[str] = None
    branch_created: bool = False
    attempt: int = 1
    validation_attempts: int = 0
    rollback_completed: bool = False
    reason: Optional[str] = None
    baseline_hash: Optional[str] = None
    next_hash: Optional[str] = None
    contract_integrity_status: Optional[str] = None
    validate_exit_code: Optional[int] = None
    feedback: Dict[str, Any] = field(default_factory=dict)
    changed_files: List[str] = field(default_factory=list)


@dataclass(slots=True)
class RunOutcome:
    run_id: str
    lifecycle_state: LifecycleState
    reason: Optional[str] = None
    contract_integrity_status: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.lifecycle_state is LifecycleState.PASS

    @property
    def exit_code(self) -> int:
        return 0 if self.passed else 1


def direct_run_allowed(env: Mapping[str, str]) -> bool:
    """Single runs start only under the meta controller or with an explicit opt-in."""
    return env.get("META_MODE", "").strip().lower() == _ENABLED or (
        env.get("ALLOW_DIRECT", "").strip().lower() == _ENABLED
    )


class RunController:
    """Drive one task through research, design, plan, implement and validation."""

    def __init__(
        self,
        config: PatchPilotConfig,
        repo_root: Path,
        *,
        generator: ChangeGenerator | None = None,
        validation_runner: ValidationRunner = run_validation_command,
        env: Mapping[str, str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config
        self.repo_root = Path(repo_root).resolve()
        self._generator = generator
        self._validation_runner = validation_runner
        self._env = dict(os.environ if env is None else env)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------ paths
    @property
    def pipeline_dir(self) -> Path:
        return self.repo_root / self.config.pipeline.directory

    @property
    def runs_root(self) -> Path:
        return self.pipeline_dir / RUNS_DIRNAME

    def _exclude_pipeline_dir(self) -> None:
        """Keep run artifacts out of status, stashes and commits."""
        if (self.repo_root / ".git").exists():
            GitRepository(self.repo_root).exclude_path(f"/{self.config.pipeline.directory.strip('/')}/")

    # --------------------------------------------------------------- protocol
    def run(self, task: str) -> RunOutcome:
        """Execute ``task`` and return its terminal outcome.

        Pipeline errors end the run as ``FAILED`` with the error code as the
        manifest reason.  Any other exception is re-raised after rollback.
        """

        validate_lifecycle_definition()
        self._exclude_pipeline_dir()
        store = RunArtifactStore.create(self.runs_root, now=self._clock())
        ctx = RunContext(task=task.strip(), run_id=store.run_id, max_retries=self.config.pipeline.max_retries)
        emit_event("run.started", run_id=ctx.run_id, task=ctx.task, max_retries=ctx.max_retries)

        if not direct_run_allowed(self._env):
            ctx.reason = ErrorCode.DIRECT_RUN_BLOCKED.value
            store.write_json("execution_mode.json", {"mode": "blocked", "reason": ctx.reason})
            self._write_final_artifacts(ctx, store)
            LOGGER.error("Direct runs are blocked; set META_MODE=true or ALLOW_DIRECT=true")
            return RunOutcome(ctx.run_id, ctx.lifecycle_state, ctx.reason)

        mode = "meta" if self._env.get("META_MODE", "").strip().lower() == _ENABLED else "direct"
        store.write_json("execution_mode.json", {"mode": mode})

        repo: GitRepository | None = None
        snapshots: SnapshotManager | None = None
        try:
            repo = GitRepository(self.repo_root)
            snapshots = SnapshotManager(repo, ctx.run_id)
            self._execute(ctx, store, repo, snapshots)
        except PipelineError as error:
            LOGGER.error("Run %s failed: %s", ctx.run_id, error)
            ctx.reason = error.code.value
            self._abort(ctx, repo, snapshots)
        except Exception:
            ctx.reason = "UNEXPECTED_ERROR"
            self._abort(ctx, repo, snapshots)
            raise
        finally:
            self._write_final_artifacts(ctx, store)

        emit_event("run.finished", run_id=ctx.run_id, state=ctx.lifecycle_state, reason=ctx.reason)
        return RunOutcome(ctx.run_id, ctx.lifecycle_state, ctx.reason, ctx.contract_integrity_status)

    def _execute(
        self,
        ctx: RunContext,
        store: RunArtifactStore,
        repo: GitRepository,
        snapshots: SnapshotManager,
    ) -> None:
        repo.ensure_clean()
        ctx.base_branch = repo.current_branch()
        ctx.base_commit = repo.head_commit()
        ctx.task_branch = task_branch_name(ctx.task, now=self._clock())
        repo.create_branch(ctx.task_branch)
        ctx.branch_created = True
        store.write_text("base_branch.txt", f"{ctx.base_branch or ctx.base_commit or ''}\n")
        store.write_text("task_branch.txt", f"{ctx.task_branch}\n")

        research = self._research(ctx.task)
        store.write_text("research.md", research.render())
        self.advance(ctx, LifecycleState.RESEARCH_DONE)

        design = run_design(research)
        store.write_text("design.md", design.render())
        self.advance(ctx, LifecycleState.DESIGN_DONE)

        plan = run_plan(research, design, validation_command=self.config.validation.command)
        plan_text = plan.render()
        store.write_text("plan.md", plan_text)
        self.advance(ctx, LifecycleState.PLAN_DONE)

        baseline = compute_contract_snapshot(self.repo_root, research.backend_files, research.frontend_files)
        ctx.baseline_hash = baseline.digest()
        store.write_text("system_map_baseline.hash", f"{ctx.baseline_hash}\n")

        generator = self._generator or build_change_generator(self.config, self.repo_root)
        workspace = WorkspaceFiles(self.repo_root)
        impacted = parse_impacted_files(plan_text)
        design_text = design.render()
        research_text = research.render()

        while True:
            store.write_json(
                "task_bundle.json",
                {"task": ctx.task, "attempt": ctx.attempt, "feedback": ctx.feedback},
                overwrite=True,
            )
            result = run_implement(
                ImplementRequest(
                    task=ctx.task,
                    attempt=ctx.attempt,
                    impacted_files=impacted,
                    research_text=research_text,
                    design_text=design_text,
                    plan_text=plan_text,
                    feedback=ctx.feedback,
                ),
                generator=generator,
                snapshots=snapshots,
                workspace=workspace,
                artifacts=store,
                lifecycle_state=ctx.lifecycle_state,
                always_allowed=self.config.pipeline.always_allowed,
                max_diff_bytes=self.config.pipeline.max_diff_bytes,
            )
            ctx.changed_files = sorted(set(ctx.changed_files) | set(result.changed_files))
            self.advance(ctx, LifecycleState.IMPLEMENTED)
            self.advance(ctx, LifecycleState.VALIDATING)

            try:
                self._validate(ctx, store, baseline)
            except PipelineError as error:
                if error.fatal:
                    raise
                LOGGER.warning("Validation attempt %s failed: %s", ctx.attempt, error)
                ctx.reason = error.code.value
                if ctx.attempt >= ctx.max_retries:
                    ctx.reason = ErrorCode.MAX_RETRIES_REACHED.value
                    self.advance(ctx, LifecycleState.FAILED)
                    self.rollback(ctx, repo, snapshots)
                    return
                self.advance(ctx, LifecycleState.RETRYING)
                ctx.feedback = dict(error.details)
                ctx.attempt += 1
                continue

            repo.commit_all(f"patchpilot: {ctx.task}")
            snapshots.drop_all()
            ctx.reason = None
            self.advance(ctx, LifecycleState.PASS)
            return

    # ---------------------------------------------------------------- stages
    def _research(self, task: str) -> ResearchReport:
        pipeline = self.config.pipeline
        return run_research(
            task,
            self.repo_root,
            pipeline_dir=pipeline.directory,
            frontend_extensions=pipeline.frontend_extensions,
            test_dirs=pipeline.test_dirs,
            configured_command=self.config.validation.command,
            now=self._clock(),
        )

    def _scan(self, task: str, backend_files: List[str]) -> List[ScanReport]:
        """Run the three independent scans concurrently; the first error propagates."""
        scanners = (run_security, run_financial, run_concurrency)
        with ThreadPoolExecutor(max_workers=len(scanners)) as pool:
            futures = [pool.submit(scanner, task, self.repo_root, backend_files) for scanner in scanners]
            return [future.result() for future in futures]

    def _validate(self, ctx: RunContext, store: RunArtifactStore, baseline: ContractSnapshot) -> None:
        ctx.validation_attempts += 1
        current = self._research(ctx.task)
        scans = self._scan(ctx.task, current.backend_files)
        for scan in scans:
            store.write_text(f"{scan.stage}.md", scan.render(), overwrite=True)

        regression = run_regression(ctx.task, scans, self.pipeline_dir / MEMORY_FILENAME, now=self._clock())
        store.write_text("regression.md", regression.render(), overwrite=True)

        snapshot = compute_contract_snapshot(self.repo_root, current.backend_files, current.frontend_files)
        ctx.next_hash = snapshot.digest()
        contract_diff = diff_contracts(baseline.signatures, snapshot.signatures)
        integrity = check_integrity(snapshot)
        ctx.contract_integrity_status = integrity["integrity"]["status"]
        store.write_json("contract_diff.json", contract_diff.to_dict(), overwrite=True)
        store.write_json("impact_report.json", build_impact_report(ctx.changed_files), overwrite=True)
        store.write_json(
            "frontend_contract.json",
            {"views": [view.to_dict() for view in snapshot.views]},
            overwrite=True,
        )
        store.write_json("full_contract_snapshot.json", full_contract_snapshot(snapshot, contract_diff), overwrite=True)
        store.write_json("contract_integrity.json", integrity, overwrite=True)
        write_placeholder_tests(self.pipeline_dir / "generated_tests" / ctx.run_id, contract_diff)

        tests = self._validation_runner(
            self.config.validation.command,
            cwd=self.repo_root,
            timeout=self.config.validation.timeout,
        )
        ctx.validate_exit_code = tests.exit_code
        store.write_text("test_output.txt", tests.output, overwrite=True)

        high_severity = any(scan.status == "fail" for scan in scans)
        if high_severity or not tests.ok:
            raise PipelineError(
                ErrorCode.VALIDATION_FAILED,
                f"Validation round {ctx.validation_attempts} failed",
                details=_feedback(scans, regression.repeated, tests),
            )
        if ctx.next_hash == ctx.baseline_hash:
            raise PipelineError(
                ErrorCode.SYSTEM_MAP_GUARD_FAILED,
                "Contract map is unchanged after implementation",
                details={"systemMap": {"baselineHash": ctx.baseline_hash, "nextHash": ctx.next_hash}},
            )
        if ctx.contract_integrity_status != "PASS":
            raise PipelineError(
                ErrorCode.CONTRACT_INTEGRITY_FAILED,
                "Views call endpoints the backend does not serve",
                details=integrity,
            )

    # ------------------------------------------------------------- lifecycle
    def advance(self, ctx: RunContext, target: LifecycleState) -> None:
        """Guard and apply one lifecycle transition."""
        assert_valid_transition(ctx.lifecycle_state, target)
        previous, ctx.lifecycle_state = ctx.lifecycle_state, target
        emit_event("lifecycle.transition", run_id=ctx.run_id, source=previous, target=target, attempt=ctx.attempt)

    def _abort(self, ctx: RunContext, repo: GitRepository | None, snapshots: SnapshotManager | None) -> None:
        if ctx.lifecycle_state in TERMINAL_STATES:
            return
        assert_can_abort(ctx.lifecycle_state)
        previous, ctx.lifecycle_state = ctx.lifecycle_state, LifecycleState.FAILED
        emit_event("lifecycle.abort", run_id=ctx.run_id, source=previous, reason=ctx.reason)
        if repo is not None and snapshots is not None:
            self.rollback(ctx, repo, snapshots)
        else:
            ctx.rollback_completed = True

    def rollback(self, ctx: RunContext, repo: GitRepository, snapshots: SnapshotManager) -> bool:
        """Return the workspace to the base branch and commit.

        Only valid from ``FAILED``.  Returns ``False`` when the rollback already
        ran for this run.
        """

        if ctx.lifecycle_state is not LifecycleState.FAILED:
            raise PipelineError(
                ErrorCode.LIFECYCLE_VIOLATION,
                f"Rollback requires FAILED, run is {ctx.lifecycle_state.value}",
            )
        if ctx.rollback_completed:
            return False
        if not ctx.branch_created:
            ctx.rollback_completed = True
            return True

        label = snapshot_label(ctx.attempt)
        if snapshots.has_active(label):
            try:
                snapshots.restore(label)
            except GitError as error:
                LOGGER.warning("Restoring snapshot %s during rollback failed: %s", label, error)

        base_ref = ctx.base_branch or ctx.base_commit
        if base_ref:
            try:
                repo.checkout(base_ref)
            except GitError:
                repo.reset_hard(ctx.base_commit)
                repo.clean_untracked()
                repo.checkout(base_ref)
        repo.reset_hard(ctx.base_commit)
        repo.clean_untracked()
        repo.ensure_clean()

        keep = self.config.pipeline.keep_failed_branch
        if (
            not keep
            and ctx.task_branch
            and ctx.task_branch != ctx.base_branch
            and repo.branch_exists(ctx.task_branch)
        ):
            repo.delete_branch(ctx.task_branch)
        snapshots.drop_all()
        ctx.rollback_completed = True
        emit_event("run.rolled_back", run_id=ctx.run_id, base=base_ref, kept_branch=keep)
        return True

    # -------------------------------------------------------------- artifacts
    def _write_final_artifacts(self, ctx: RunContext, store: RunArtifactStore) -> None:
        store.write_text("lifecycle_state.txt", f"{ctx.lifecycle_state.value}\n", overwrite=True)
        store.write_json("run_manifest.json", build_manifest(ctx), overwrite=True)


def _feedback(scans: List[ScanReport], repeated: List[Any], tests: CommandResult) -> Dict[str, Any]:
    feedback: Dict[str, Any] = {scan.stage: scan.to_dict() for scan in scans}
    feedback["regression"] = {"repeated": [pattern.key for pattern in repeated]}
    feedback["tests"] = {
        "exitCode": tests.exit_code,
        "failingTests": extract_failing_tests(tests.output),
        "firstFailure": extract_first_failure(tests.output),
    }
    return feedback


def build_manifest(ctx: RunContext) -> Dict[str, Any]:
    return {
        "runId": ctx.run_id,
        "task": ctx.task,
        "baseBranch": ctx.base_branch,
        "taskBranch": ctx.task_branch,
        "lifecycleState": ctx.lifecycle_state.value,
        "maxRetries": ctx.max_retries,
        "validationAttempts": ctx.validation_attempts,
        "reason": ctx.reason,
        "contractIntegrityStatus": ctx.contract_integrity_status,
        "validateExitCode": ctx.validate_exit_code,
        "systemMap": {"baselineHash": ctx.baseline_hash, "nextHash": ctx.next_hash},
    }


__all__ = [
    "RunContext",
    "RunController",
    "RunOutcome",
    "build_manifest",
    "direct_run_allowed",
]
