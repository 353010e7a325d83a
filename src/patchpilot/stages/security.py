"""Security scan over backend Python sources."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Iterable, List, Pattern, Tuple

from .scans import MUTATING_ROUTE_RE, Finding, ScanReport, Severity, iter_sources, line_of

_SQL_INTERPOLATION = re.compile(
    r"\.(?:execute|executemany|executescript)\s*\(\s*"
    r"(?:[rbu]?f[\"']|[\"'][^\"'\n]*[\"']\s*(?:%|\.format\s*\())",
    re.IGNORECASE,
)
_SWALLOWED_EXCEPT = re.compile(r"^[ \t]*except\b[^\n]*:[ \t]*\n[ \t]*pass[ \t]*$", re.MULTILINE)
_NAIVE_DATETIME = re.compile(r"\bdatetime\.(?:now\s*\(\s*\)|utcnow\s*\()")
_CLIENT_DATE = re.compile(
    r"\brequest\.(?:args|json|form|values|query_params)"
    r"(?:\.get\s*\(\s*|\[\s*)[\"'][^\"']*date[^\"']*[\"']",
    re.IGNORECASE,
)
_ROLE_MARKERS = re.compile(
    r"login_required|requires?_roles?|roles_required|permission_required|admin_required"
    r"|auth\w*|Depends\s*\(|Security\s*\(",
    re.IGNORECASE,
)

_PATTERN_CHECKS: Tuple[Tuple[Pattern[str], str, Severity, str], ...] = (
    (_SQL_INTERPOLATION, "sql_interpolation", "high", "Interpolated SQL passed to execute()"),
    (_SWALLOWED_EXCEPT, "except_without_reraise", "medium", "Exception handler swallows the error"),
    (_NAIVE_DATETIME, "naive_datetime", "medium", "Timezone-naive datetime usage"),
    (_CLIENT_DATE, "client_date_usage", "high", "Client-provided date usage detected"),
)


def _decorator_stack(lines: List[str], index: int) -> str:
    """Return the decorator block around ``lines[index]`` up to the ``def`` line."""
    start = index
    while start > 0 and lines[start - 1].lstrip().startswith("@"):
        start -= 1
    end = index
    while end < len(lines) - 1 and not re.match(r"\s*(?:async\s+)?def\s", lines[end]):
        end += 1
    return "\n".join(lines[start : end + 1])


def _check_role_guards(content: str, path: str, report: ScanReport) -> None:
    lines = content.split("\n")
    for match in MUTATING_ROUTE_RE.finditer(content):
        line = line_of(content, match.start())
        if _ROLE_MARKERS.search(_decorator_stack(lines, line - 1)):
            continue
        message = "Mutating route without an explicit role or auth guard"
        report.add(Finding("missing_role_check", "high", path, line, message))


def run_security(task: str, repo_root: Path, files: Iterable[str]) -> ScanReport:
    report = ScanReport(stage="security", title="Security Report", task=task)
    for path, content in iter_sources(repo_root, files):
        for pattern, kind, severity, message in _PATTERN_CHECKS:
            for match in pattern.finditer(content):
                report.add(Finding(kind, severity, path, line_of(content, match.start()), message))
        _check_role_guards(content, path, report)
    return report


__all__ = ["run_security"]
