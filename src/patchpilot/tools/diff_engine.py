"""Unified diff parser and applier that never shells out to ``git apply``.

Parsing turns diff text into :class:`Patch` objects.  Applying validates every
hunk against the current file contents in memory first and only then hands the
buffered results to a writer, so a failed apply never leaves a half-patched
file behind.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Literal, Mapping, Sequence

from ..errors import ErrorCode, PipelineError
from ..telemetry import emit_event

LOGGER = logging.getLogger(__name__)

HunkLineKind = Literal["context", "add", "remove"]

FileReader = Callable[[str], "str | None"]
FileWriter = Callable[[str, "str | None"], None]

_DIFF_HEADER = re.compile(r"^diff --git a/(.+) b/(.+)$")
_HUNK_HEADER = re.compile(
    r"^@@ -(?P<old_start>\d+)(?:,(?P<old_count>\d+))? \+(?P<new_start>\d+)(?:,(?P<new_count>\d+))? @@"
)
_DRIVE_ROOT = re.compile(r"^[A-Za-z]:[\\/]")
_FENCE_OPEN = re.compile(r"^```[A-Za-z0-9_-]*\s*$")
_UNSUPPORTED_HEADER_PREFIXES = (
    "rename from",
    "rename to",
    "copy from",
    "copy to",
    "similarity index",
    "dissimilarity index",
)
_IGNORED_HEADER_PREFIXES = ("index ", "old mode", "new mode")
_LINE_KINDS: Mapping[str, HunkLineKind] = {" ": "context", "+": "add", "-": "remove"}


class PatchError(PipelineError):
    """Raised when a diff cannot be parsed, scoped or applied."""

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode = ErrorCode.INVALID_DIFF,
        details: Mapping[str, object] | None = None,
    ) -> None:
        super().__init__(code, message, details=details)


@dataclass(slots=True)
class HunkLine:
    kind: HunkLineKind
    text: str


@dataclass(slots=True)
class Hunk:
    """One ``@@`` block with 1-based source coordinates."""

    old_start: int
    old_count: int
    new_start: int
    new_count: int
    lines: list[HunkLine] = field(default_factory=list)

    def counted(self) -> tuple[int, int]:
        """Return the ``(old, new)`` line counts implied by the hunk body."""
        old = sum(1 for line in self.lines if line.kind != "add")
        new = sum(1 for line in self.lines if line.kind != "remove")
        return old, new


@dataclass(slots=True)
class FilePatch:
    """All hunks for a single file section of a diff."""

    git_old_path: str | None
    git_new_path: str | None
    old_path: str | None = None
    new_path: str | None = None
    old_marker_seen: bool = False
    new_marker_seen: bool = False
    is_new_file: bool = False
    is_deleted_file: bool = False
    hunks: list[Hunk] = field(default_factory=list)

    @property
    def is_delete(self) -> bool:
        if self.is_deleted_file:
            return True
        if self.new_marker_seen and self.new_path is None:
            return True
        return self.resolved_new_path() is None

    def resolved_new_path(self) -> str | None:
        if self.new_marker_seen:
            return self.new_path
        return self.git_new_path

    def resolved_old_path(self) -> str | None:
        if self.old_marker_seen and self.old_path is not None:
            return self.old_path
        return self.git_old_path

    def target_path(self) -> str:
        """Return the validated repository-relative path this section touches."""
        candidate = self.resolved_old_path() if self.is_delete else self.resolved_new_path()
        if candidate is None:
            raise PatchError("Diff section does not name a target file.")
        validate_repo_path(candidate)
        return candidate


@dataclass(slots=True)
class Patch:
    files: list[FilePatch] = field(default_factory=list)

    def target_paths(self) -> list[str]:
        return [file_patch.target_path() for file_patch in self.files]


# ---------------------------------------------------------------- paths
def _normalise_marker_path(entry: str) -> str | None:
    """Translate ``---``/``+++``/``diff --git`` operands into repo-relative paths."""
    value = entry.split("\t", 1)[0].strip()
    if value == "/dev/null" or not value:
        return None
    if value.startswith("a/") or value.startswith("b/"):
        value = value[2:]
    return value or None


def validate_repo_path(path: str) -> None:
    """Reject absolute, drive-rooted or escaping paths."""
    if not path or not path.strip():
        raise PatchError("Empty path in diff.", code=ErrorCode.SCOPE_VIOLATION)
    if path.startswith("/") or path.startswith("\\") or _DRIVE_ROOT.match(path):
        raise PatchError(f"Absolute paths are not permitted in patches: {path}", code=ErrorCode.SCOPE_VIOLATION)
    parts = path.replace("\\", "/").split("/")
    if any(part == ".." for part in parts):
        raise PatchError(f"Path escaping detected in patch: {path}", code=ErrorCode.SCOPE_VIOLATION)
    if parts and parts[0] == ".git":
        raise PatchError("Patches may not target the .git directory.", code=ErrorCode.SCOPE_VIOLATION)


# ---------------------------------------------------------------- parsing
def strip_code_fences(text: str) -> str:
    """Drop a surrounding Markdown code fence when the model added one."""
    lines = text.strip().split("\n")
    if len(lines) >= 2 and _FENCE_OPEN.match(lines[0]) and lines[-1].strip() == "```":
        return "\n".join(lines[1:-1])
    return text


def normalise_diff_text(text: str | None) -> str:
    """Return diff text with fences removed, LF line endings and a final newline."""
    cleaned = strip_code_fences((text or "").replace("\r\n", "\n").replace("\r", "\n")).strip("\n")
    if not cleaned.strip():
        return ""
    return f"{cleaned}\n"


def parse_diff(diff_text: str) -> Patch:
    """Parse unified diff text into a :class:`Patch`."""
    if not diff_text or not diff_text.strip():
        raise PatchError("Diff is empty.")

    lines = diff_text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()

    patch = Patch()
    current: FilePatch | None = None
    hunk: Hunk | None = None

    def _close_hunk() -> None:
        if current is None or hunk is None:
            return
        old, new = hunk.counted()
        if old != hunk.old_count or new != hunk.new_count:
            LOGGER.debug(
                "Hunk header for %s declares %s,%s lines; body has %s,%s",
                current.git_new_path or current.git_old_path,
                hunk.old_count,
                hunk.new_count,
                old,
                new,
            )

    for number, line in enumerate(lines, start=1):
        if line.startswith("diff --git "):
            _close_hunk()
            hunk = None
            match = _DIFF_HEADER.match(line)
            if not match:
                raise PatchError(f"Invalid diff header near line {number}")
            current = FilePatch(git_old_path=match.group(1) or None, git_new_path=match.group(2) or None)
            patch.files.append(current)
            continue

        if current is None:
            if not line.strip():
                continue
            raise PatchError(f"Invalid diff format near line {number}")

        if line.startswith("@@"):
            _close_hunk()
            match = _HUNK_HEADER.match(line)
            if not match:
                raise PatchError(f"Invalid hunk header near line {number}")
            hunk = Hunk(
                old_start=int(match.group("old_start")),
                old_count=_default_count(match.group("old_count")),
                new_start=int(match.group("new_start")),
                new_count=_default_count(match.group("new_count")),
            )
            current.hunks.append(hunk)
            continue

        if hunk is not None:
            if line.startswith("\\"):
                continue
            kind = _LINE_KINDS.get(line[:1])
            if kind is None:
                raise PatchError(f"Invalid diff format near line {number}")
            hunk.lines.append(HunkLine(kind=kind, text=line[1:]))
            continue

        _parse_section_header(current, line, number)

    _close_hunk()

    if not patch.files:
        raise PatchError("Diff does not describe any file changes.")
    return patch


def _parse_section_header(current: FilePatch, line: str, number: int) -> None:
    if line.startswith("new file mode"):
        current.is_new_file = True
    elif line.startswith("deleted file mode"):
        current.is_deleted_file = True
    elif line.startswith("--- "):
        current.old_marker_seen = True
        current.old_path = _normalise_marker_path(line[4:])
    elif line.startswith("+++ "):
        current.new_marker_seen = True
        current.new_path = _normalise_marker_path(line[4:])
    elif line.startswith(_UNSUPPORTED_HEADER_PREFIXES):
        raise PatchError(f"Renames and copies are not supported (line {number})")
    elif line.startswith("Binary files") or line.startswith("GIT binary patch"):
        raise PatchError(f"Binary patches are not supported (line {number})")
    elif line.startswith(_IGNORED_HEADER_PREFIXES):
        return
    else:
        raise PatchError(f"Invalid diff format near line {number}")


def _default_count(value: str | None) -> int:
    """Return the number of lines represented in a hunk header."""
    return int(value) if value is not None else 1


# ---------------------------------------------------------------- apply
def apply_hunks(content: str, hunks: Sequence[Hunk], *, path: str = "<memory>") -> str:
    """Apply ``hunks`` in order against ``content`` and return the new text."""
    lines = content.split("\n")
    offset = 0
    for number, hunk in enumerate(hunks, start=1):
        # A zero-length old range inserts after line old_start.
        base = hunk.old_start if hunk.old_count == 0 else hunk.old_start - 1
        start = base + offset
        if start < 0 or start > len(lines):
            raise PatchError(
                f"Hunk {number} for {path} starts outside the file",
                code=ErrorCode.APPLY_FAILED,
                details={"path": path, "hunk": number, "start": start},
            )
        cursor = start
        replacement: list[str] = []
        for line in hunk.lines:
            if line.kind == "add":
                replacement.append(line.text)
                continue
            if cursor >= len(lines) or lines[cursor] != line.text:
                raise PatchError(
                    f"Hunk {number} for {path} does not match line {cursor + 1}",
                    code=ErrorCode.APPLY_FAILED,
                    details={
                        "path": path,
                        "hunk": number,
                        "line": cursor + 1,
                        "expected": line.text,
                        "actual": lines[cursor] if cursor < len(lines) else None,
                    },
                )
            if line.kind == "context":
                replacement.append(line.text)
            cursor += 1
        lines[start:cursor] = replacement
        offset += len(replacement) - (cursor - start)
    return "\n".join(lines)


def compute_changes(patch: Patch, reader: FileReader) -> dict[str, str | None]:
    """Validate ``patch`` against ``reader`` and return buffered results.

    The mapping holds the new content per path, or ``None`` for a deletion.  A
    deletion of a file that does not exist is dropped from the result.
    """
    results: dict[str, str | None] = {}
    for file_patch in patch.files:
        path = file_patch.target_path()
        current = results[path] if path in results else reader(path)
        if file_patch.is_delete:
            if current is None:
                LOGGER.debug("Skipping delete of missing file %s", path)
                continue
            apply_hunks(current, file_patch.hunks, path=path)
            results[path] = None
            continue
        results[path] = apply_hunks(current or "", file_patch.hunks, path=path)
    return results


def _is_always_allowed(path: str, prefixes: Iterable[str]) -> bool:
    for prefix in prefixes:
        cleaned = prefix.strip().replace("\\", "/")
        if not cleaned:
            continue
        if not cleaned.endswith("/"):
            cleaned = f"{cleaned}/"
        if path.startswith(cleaned):
            return True
    return False


def check_scope(
    paths: Iterable[str],
    impacted_files: Iterable[str],
    always_allowed: Iterable[str] = (),
) -> None:
    """Raise ``SCOPE_VIOLATION`` for any path neither impacted nor always allowed."""
    allowed_prefixes = tuple(always_allowed)
    impacted = {entry.strip().replace("\\", "/") for entry in impacted_files if entry.strip()}
    violations = sorted(
        path for path in set(paths) if path not in impacted and not _is_always_allowed(path, allowed_prefixes)
    )
    if violations:
        raise PatchError(
            f"Diff touches files outside the declared scope: {', '.join(violations)}",
            code=ErrorCode.SCOPE_VIOLATION,
            details={"paths": violations, "impacted": sorted(impacted)},
        )


def dry_run(
    patch: Patch,
    reader: FileReader,
    *,
    impacted_files: Iterable[str],
    always_allowed: Iterable[str] = (),
) -> dict[str, str | None]:
    """Validate hunks and scope without writing anything."""
    changes = compute_changes(patch, reader)
    check_scope(changes.keys(), impacted_files, always_allowed)
    return changes


def apply_patch(
    patch: Patch,
    reader: FileReader,
    writer: FileWriter,
    *,
    impacted_files: Iterable[str],
    always_allowed: Iterable[str] = (),
) -> set[str]:
    """Apply ``patch`` all-or-nothing and return the set of changed paths."""
    changes = dry_run(patch, reader, impacted_files=impacted_files, always_allowed=always_allowed)
    for path, content in sorted(changes.items()):
        writer(path, content)
    emit_event("patch.applied", paths=sorted(changes), files=len(patch.files))
    return set(changes)


class WorkspaceFiles:
    """Reader/writer pair rooted at a working tree."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()

    def _resolve(self, path: str) -> Path:
        validate_repo_path(path)
        target = (self.root / path).resolve()
        try:
            target.relative_to(self.root)
        except ValueError as error:
            raise PatchError(f"Path resolves outside the workspace: {path}", code=ErrorCode.SCOPE_VIOLATION) from error
        return target

    def read(self, path: str) -> str | None:
        target = self._resolve(path)
        if not target.is_file():
            return None
        return target.read_text(encoding="utf-8")

    def write(self, path: str, content: str | None) -> None:
        target = self._resolve(path)
        if content is None:
            target.unlink(missing_ok=True)
            return
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8", newline="\n")


__all__ = [
    "FilePatch",
    "FileReader",
    "FileWriter",
    "Hunk",
    "HunkLine",
    "Patch",
    "PatchError",
    "WorkspaceFiles",
    "apply_hunks",
    "apply_patch",
    "check_scope",
    "compute_changes",
    "dry_run",
    "normalise_diff_text",
    "parse_diff",
    "strip_code_fences",
    "validate_repo_path",
]
