"""Workspace tooling: diffs, preflight checks, git, snapshots and validation commands."""

from .diff_engine import FilePatch, Patch, PatchError, WorkspaceFiles, apply_patch, dry_run, parse_diff
from .preflight import validate_impacted_files, validate_no_forbidden_targets
from .snapshots import Snapshot, SnapshotManager
from .validation import CommandResult, run_validation_command
from .vcs import GitError, GitRepository, task_branch_name

__all__ = [
    "CommandResult",
    "FilePatch",
    "GitError",
    "GitRepository",
    "Patch",
    "PatchError",
    "Snapshot",
    "SnapshotManager",
    "WorkspaceFiles",
    "apply_patch",
    "dry_run",
    "parse_diff",
    "run_validation_command",
    "task_branch_name",
    "validate_impacted_files",
    "validate_no_forbidden_targets",
]
