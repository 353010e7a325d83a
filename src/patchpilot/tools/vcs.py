"""Minimal git helpers
The helpers below provide the branch, reset, clean and stash primitives the
run controller needs to isolate a task and roll it back.
"""

from __future__ import annotations

import subprocess
from datetime import datetime
from pathlib import Path
from typing import List, Sequence

from ..errors import ErrorCode, PipelineError
from ..utils.slug import slugify


class GitError(PipelineError):
    """Raised when a git command fails or the repository cannot be used."""

    def __init__(self, message: str, *, code: ErrorCode = ErrorCode.VCS_ERROR) -> None:
        super().__init__(code, message)


def task_branch_name(task: str, *, now: datetime | None = None, max_length: int = 40) -> str:
    """Return ``task/<slug>-YYYYMMDD-HHMMSS`` for ``task``."""
    slug = slugify(task, fallback="task", max_length=max_length, digest=False)
    stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    return f"task/{slug}-{stamp}"


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def discover(cls, start: Path | str | None = None) -> "GitRepository":
        """Locate the nearest git repository starting from ``start``."""

        path = Path(start or Path.cwd()).resolve()
        for candidate in (path, *path.parents):
            if (candidate / ".git").exists():
                return cls(candidate)
        raise GitError(f"Unable to locate a git repository from {path}")

    @classmethod
    def initialise(cls, root: Path | str, *, initial_branch: str = "main") -> "GitRepository":
        """Initialise a git repository at ``root`` and commit its current contents."""

        path = Path(root).resolve()
        path.mkdir(parents=True, exist_ok=True)
        _run_git_in(path, ["init"])
        _run_git_in(path, ["checkout", "-B", initial_branch])
        for key, value in (("user.email", "agent@example.com"), ("user.name", "Patch Pilot")):
            probe = _run_git_in(path, ["config", "--get", key], check=False)
            if probe.returncode != 0 or not probe.stdout.strip():
                _run_git_in(path, ["config", key, value])
        _run_git_in(path, ["add", "--all"])
        _run_git_in(path, ["commit", "--allow-empty", "-m", "Initial commit"])
        return cls(path)

    # ------------------------------------------------------------------ git IO
    def _run_git(self, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        return _run_git_in(self.root, args, check=check)

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return self._run_git(list(args), check=check)

    # -------------------------------------------------------------- branches
    def current_branch(self) -> str | None:
        """Return the current branch name or ``None`` when detached."""

        result = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        branch = result.stdout.strip()
        if not branch or branch == "HEAD":
            return None
        return branch

    def head_commit(self) -> str | None:
        """Return the SHA of ``HEAD`` or ``None`` for an unborn branch."""

        result = self._run_git(["rev-parse", "--verify", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def create_branch(self, name: str) -> None:
        """Create ``name`` from ``HEAD`` and switch to it."""

        self._run_git(["checkout", "-b", name])

    def checkout(self, name: str) -> None:
        self._run_git(["checkout", name])

    def branch_exists(self, name: str) -> bool:
        result = self._run_git(["show-ref", "--verify", "--quiet", f"refs/heads/{name}"], check=False)
        return result.returncode == 0

    def delete_branch(self, name: str) -> None:
        self._run_git(["branch", "-D", name])

    # ------------------------------------------------------------ mutation
    def reset_hard(self, commit: str | None = None) -> None:
        args: List[str] = ["reset", "--hard"]
        if commit:
            args.append(commit)
        self._run_git(args)

    def clean_untracked(self) -> None:
        """Remove untracked files and directories (ignored files are kept)."""

        self._run_git(["clean", "-fd"])

    def exclude_path(self, pattern: str) -> None:
        """Add ``pattern`` to ``.git/info/exclude`` when not already listed."""

        exclude_file = self.root / ".git" / "info" / "exclude"
        exclude_file.parent.mkdir(parents=True, exist_ok=True)
        existing = exclude_file.read_text(encoding="utf-8") if exclude_file.exists() else ""
        entries = {line.strip() for line in existing.splitlines()}
        if pattern in entries:
            return
        prefix = "" if not existing or existing.endswith("\n") else "\n"
        with exclude_file.open("a", encoding="utf-8") as handle:
            handle.write(f"{prefix}{pattern}\n")

    def commit_all(self, message: str, *, allow_empty: bool = False) -> str | None:
        """Add all changes to the index and create a commit.

        Returns the new commit SHA when a commit was created.  Returns ``None`` when
        there were no changes to commit (and ``allow_empty`` is ``False``).
        """

        self._run_git(["add", "--all"], check=True)

        commit_args: List[str] = ["commit", "-m", message]
        if allow_empty:
            commit_args.append("--allow-empty")

        commit = self._run_git(commit_args, check=False)
        if commit.returncode != 0:
            output = commit.stderr.strip() or commit.stdout.strip() or ""
            if "nothing to commit" in output.lower():
                return None
            raise GitError(f"git commit failed: {output}")

        return self.head_commit()

    # ------------------------------------------------------------------- stash
    def stash_push(self, *, message: str, include_untracked: bool = True) -> bool:
        """Stash pending changes; return ``False`` when there was nothing to save."""

        args: List[str] = ["stash", "push"]
        if include_untracked:
            args.append("-u")
        args.extend(["-m", message])
        result = self._run_git(args, check=False)
        combined = f"{result.stdout}\n{result.stderr}".strip()
        if "No local changes to save" in combined:
            return False
        if result.returncode != 0:
            raise GitError(f"git {' '.join(args)} failed: {combined or 'unknown git error'}")
        return True

    def stash_apply(self, ref: str, *, index: bool = True) -> None:
        """Apply the specified stash without dropping it."""

        args: List[str] = ["stash", "apply"]
        if index:
            args.append("--index")
        args.append(ref)
        self._run_git(args)

    def stash_drop(self, ref: str) -> None:
        """Drop the specified stash entry."""

        self._run_git(["stash", "drop", ref])

    def stash_list(self) -> List[tuple[str, str]]:
        """Return ``(ref, subject)`` pairs, newest first."""

        result = self._run_git(["stash", "list", "--format=%gd%x09%s"])
        entries: List[tuple[str, str]] = []
        for line in result.stdout.splitlines():
            if not line.strip():
                continue
            ref, _, subject = line.partition("\t")
            entries.append((ref.strip(), subject.strip()))
        return entries

    # ------------------------------------------------------------- repo status
    def _status_entries(self) -> List[tuple[str, Path]]:
        result = self._run_git(["status", "--porcelain"], check=True)
        entries: List[tuple[str, Path]] = []
        for line in result.stdout.splitlines():
            if not line:
                continue
            status = line[:2]
            raw_path = line[3:]
            if status[0] in {"R", "C"} and " -> " in raw_path:
                raw_path = raw_path.split(" -> ", 1)[1]
            status_clean = status.strip() or status
            entries.append((status_clean, Path(raw_path.strip().strip('"'))))
        return entries

    def working_tree_changes(self) -> List[Path]:
        """Return the set of paths with pending modifications, untracked included."""

        return sorted({path for _, path in self._status_entries()}, key=lambda item: item.as_posix())

    def is_clean(self) -> bool:
        """Return ``True`` when the working tree has no pending changes."""

        return not self._status_entries()

    def ensure_clean(self) -> None:
        """Raise ``DIRTY_REPO`` if the working tree is not clean."""

        changes = self.working_tree_changes()
        if changes:
            preview = ", ".join(path.as_posix() for path in changes[:10])
            raise GitError(f"Working tree has pending changes: {preview}", code=ErrorCode.DIRTY_REPO)


def _run_git_in(cwd: Path, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
    command = ["git", *args]
    process = subprocess.run(
        command,
        cwd=cwd,
        capture_output=True,
        text=False,
        check=False,
    )
    stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
    stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
    result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
    if check and result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
        raise GitError(f"git {' '.join(args)} failed: {message}")
    return result


__all__ = ["GitError", "GitRepository", "task_branch_name"]
