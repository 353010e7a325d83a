"""Research stage: map the repository and detect how it is tested."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Sequence

_EXCLUDED_DIRS = frozenset(
    {
        ".git",
        ".hg",
        ".venv",
        "venv",
        "node_modules",
        "__pycache__",
        ".pytest_cache",
        ".mypy_cache",
        ".ruff_cache",
        "build",
        "dist",
    }
)
_PYTEST_MARKERS = ("pytest.ini", "conftest.py", "tox.ini")


@dataclass(slots=True)
class ResearchReport:
    """File map and test command discovered for a task."""

    task: str
    files: List[str]
    backend_files: List[str] = field(default_factory=list)
    frontend_files: List[str] = field(default_factory=list)
    test_files: List[str] = field(default_factory=list)
    test_command: str = "Not detected"
    timestamp: str = ""

    @property
    def total_files(self) -> int:
        return len(self.files)

    def render(self) -> str:
        lines = [
            "# Research Report",
            "",
            "## TASK",
            self.task or "(empty task)",
            "",
            "## File Map",
            "",
            "### Backend (Python sources)",
            _bullets(self.backend_files),
            "",
            "### Frontend (web assets)",
            _bullets(self.frontend_files),
            "",
            "### Tests",
            _bullets(self.test_files),
            "",
            "## Detected Test Command",
            f"- {self.test_command}",
            "",
            "## Total File Count",
            f"- {self.total_files}",
            "",
            "## Timestamp (UTC)",
            f"- {self.timestamp}",
            "",
        ]
        return "\n".join(lines)


def _bullets(items: Sequence[str]) -> str:
    if not items:
        return "- (none)"
    return "\n".join(f"- {item}" for item in items)


def collect_files(root: Path, *, excluded: Iterable[str] = ()) -> List[str]:
    """Return repo-relative POSIX paths of every file under ``root``, sorted."""
    skip = set(_EXCLUDED_DIRS) | {entry.strip("/") for entry in excluded if entry.strip("/")}
    files: List[str] = []
    for path in root.rglob("*"):
        relative = path.relative_to(root)
        parts = relative.parts
        if any(part in skip or part.endswith(".egg-info") for part in parts[:-1]):
            continue
        if path.is_file():
            files.append(relative.as_posix())
    return sorted(files)


def is_test_file(path: str, test_dirs: Iterable[str]) -> bool:
    parts = path.split("/")
    name = parts[-1]
    if parts[0] in set(test_dirs):
        return True
    return name.endswith(".py") and (name.startswith("test_") or name.endswith("_test.py"))


def detect_test_command(root: Path, files: Sequence[str], configured: str | None = None) -> str:
    """Prefer the configured command; otherwise infer pytest from repo markers."""
    if configured and configured.strip():
        return configured.strip()
    names = {path.split("/")[-1] for path in files}
    if any(marker in names for marker in _PYTEST_MARKERS):
        return "pytest -q"
    pyproject = root / "pyproject.toml"
    if pyproject.is_file() and "[tool.pytest" in pyproject.read_text(encoding="utf-8", errors="replace"):
        return "pytest -q"
    if any(path.split("/")[-1].startswith("test_") for path in files):
        return "pytest -q"
    return "Not detected"


def run_research(
    task: str,
    repo_root: Path,
    *,
    pipeline_dir: str = "dev_pipeline",
    frontend_extensions: Sequence[str] = (".js", ".ts", ".tsx", ".jsx", ".vue", ".html"),
    test_dirs: Sequence[str] = ("tests", "test"),
    configured_command: str | None = None,
    now: datetime | None = None,
) -> ResearchReport:
    """Build the research report for ``task`` from the working tree."""

    files = collect_files(repo_root, excluded=[pipeline_dir])
    extensions = {suffix.lower() for suffix in frontend_extensions}
    test_files = [path for path in files if is_test_file(path, test_dirs)]
    tests = set(test_files)
    backend_files = [path for path in files if path.endswith(".py") and path not in tests]
    frontend_files = [
        path for path in files if Path(path).suffix.lower() in extensions and path not in tests
    ]
    moment = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return ResearchReport(
        task=(task or "").strip(),
        files=files,
        backend_files=backend_files,
        frontend_files=frontend_files,
        test_files=test_files,
        test_command=detect_test_command(repo_root, files, configured_command),
        timestamp=moment.isoformat(),
    )


__all__ = ["ResearchReport", "collect_files", "detect_test_command", "is_test_file", "run_research"]
