"""Pre-apply guard rails for generated diffs and impacted-file lists."""

from __future__ import annotations

import re
from typing import Iterable

from ..errors import ErrorCode, PipelineError

# Dependency manifests and lock files may only change through a human.
_FORBIDDEN_BASENAMES: frozenset[str] = frozenset(
    {
        "requirements.txt",
        "requirements-dev.txt",
        "requirements-test.txt",
        "requirements.in",
        "pyproject.toml",
        "setup.cfg",
        "setup.py",
        "pipfile",
        "pipfile.lock",
        "poetry.lock",
        "uv.lock",
        "package.json",
        "package-lock.json",
        "pnpm-lock.yaml",
        "yarn.lock",
        "npm-shrinkwrap.json",
    }
)
_FORBIDDEN_SEGMENTS: frozenset[str] = frozenset({".git", "node_modules", ".venv", "venv", "__pycache__"})
_DIFF_PATHS = re.compile(r"^diff --git a/(.+) b/(.+)$", re.MULTILINE)
_DRIVE_ROOT = re.compile(r"^[A-Za-z]:/")


def _fail(message: str, path: str | None = None) -> PipelineError:
    details = {"path": path} if path is not None else None
    return PipelineError(ErrorCode.PREFLIGHT_VIOLATION, message, details=details)


def _normalise(path: str) -> str:
    return (path or "").replace("\\", "/").strip()


def assert_safe_relative_path(path: str) -> None:
    normalised = _normalise(path)
    if not normalised or normalised in {".", ".."}:
        raise _fail("Empty or dot path is not a valid target.", path)
    if normalised.startswith("/") or _DRIVE_ROOT.match(normalised):
        raise _fail(f"Absolute path is not allowed: {path}", path)
    if ".." in normalised.split("/"):
        raise _fail(f"Parent traversal is not allowed: {path}", path)


def is_forbidden_target(path: str) -> bool:
    """Return ``True`` for lock files, VCS internals and secret files."""
    normalised = _normalise(path)
    segments = [segment for segment in normalised.split("/") if segment]
    if not segments:
        return False
    if segments[-1].lower() in _FORBIDDEN_BASENAMES:
        return True
    if any(segment in _FORBIDDEN_SEGMENTS for segment in segments):
        return True
    return any(segment == ".env" or segment.startswith(".env.") for segment in segments)


def validate_impacted_files(impacted_files: Iterable[str]) -> list[str]:
    """Validate and normalise the plan's impacted-file list."""
    cleaned: list[str] = []
    for entry in impacted_files:
        value = _normalise(entry)
        if not value:
            raise _fail("Impacted file entries must not be empty.")
        if "*" in value:
            raise _fail(f"Impacted files may not contain wildcards: {value}", value)
        assert_safe_relative_path(value)
        if is_forbidden_target(value):
            raise _fail(f"Impacted file is a forbidden target: {value}", value)
        cleaned.append(value)
    return cleaned


def validate_no_forbidden_targets(diff_text: str) -> list[str]:
    """Reject diffs that touch forbidden targets; return the header paths."""
    if not diff_text or not diff_text.strip():
        raise _fail("Diff is empty.")
    paths: list[str] = []
    for match in _DIFF_PATHS.finditer(diff_text.replace("\r\n", "\n")):
        paths.extend([match.group(1), match.group(2)])
    if not paths:
        raise _fail("Diff does not contain any file headers.")
    for path in paths:
        assert_safe_relative_path(path)
        if is_forbidden_target(path):
            raise _fail(f"Diff touches a forbidden target: {path}", path)
    return paths


def validate_patch_targets(paths: Iterable[str | None]) -> list[str]:
    """Reject parsed header and marker paths that name a forbidden target."""
    checked: list[str] = []
    for path in paths:
        if path is None:
            continue
        assert_safe_relative_path(path)
        if is_forbidden_target(path):
            raise _fail(f"Diff touches a forbidden target: {path}", path)
        checked.append(path)
    return checked


__all__ = [
    "assert_safe_relative_path",
    "is_forbidden_target",
    "validate_impacted_files",
    "validate_no_forbidden_targets",
    "validate_patch_targets",
]
