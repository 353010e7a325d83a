"""Shared finding types for the security, financial and concurrency scans."""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Literal, Tuple

LOGGER = logging.getLogger(__name__)

Severity = Literal["low", "medium", "high"]

MAX_FINDINGS = 200
_SEVERITY_RANK = {"low": 1, "medium": 2, "high": 3}

# Route decorators that register a state-changing HTTP handler.
MUTATING_ROUTE_RE = re.compile(
    r"^[ \t]*@\w+(?:\.\w+)*\.(?:post|put|patch|delete)\s*\("
    r"|^[ \t]*@\w+(?:\.\w+)*\.route\s*\([^\n]*methods\s*=\s*\[[^\]]*[\"'](?:POST|PUT|PATCH|DELETE)[\"']",
    re.MULTILINE | re.IGNORECASE,
)
SQL_MUTATION_RE = re.compile(r"\b(?:insert\s+into|update\s+\w+\s+set|delete\s+from)\b", re.IGNORECASE)
TRANSACTION_RE = re.compile(
    r"\.transaction\s*\(|\batomic\b|\bBEGIN(?:\s+IMMEDIATE|\s+TRANSACTION)?\b|with\s+\w*conn\w*\s*:|\.begin\s*\(",
)


@dataclass(slots=True)
class Finding:
    """One heuristic issue located at ``file:line``."""

    type: str
    severity: Severity
    file: str
    line: int
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class ScanReport:
    """Findings of one scan stage plus its rolled-up verdict."""

    stage: str
    title: str
    task: str
    findings: List[Finding] = field(default_factory=list)

    def add(self, finding: Finding) -> None:
        if len(self.findings) < MAX_FINDINGS:
            self.findings.append(finding)

    @property
    def severity(self) -> Severity:
        return max_severity(self.findings)

    @property
    def status(self) -> str:
        return "fail" if self.severity == "high" else "ok"

    def high_findings(self) -> List[Finding]:
        return [finding for finding in self.findings if finding.severity == "high"]

    def render(self) -> str:
        items = [
            f"{index}. [{item.severity}] {item.type} - {item.file}:{item.line} - {item.message}"
            for index, item in enumerate(self.findings, start=1)
        ]
        lines = [
            f"# {self.title}",
            "",
            "## TASK",
            self.task or "(empty task)",
            "",
            f"## Findings ({len(self.findings)})",
            *(items or ["- none"]),
            "",
            "## Overall Severity",
            f"- {self.severity}",
            "",
            "## Status",
            f"- {self.status}",
            "",
        ]
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "status": self.status,
            "severity": self.severity,
            "findings": [finding.to_dict() for finding in self.findings],
        }


def max_severity(findings: Iterable[Finding]) -> Severity:
    current: Severity = "low"
    for finding in findings:
        if _SEVERITY_RANK[finding.severity] > _SEVERITY_RANK[current]:
            current = finding.severity
    return current


def line_of(content: str, index: int) -> int:
    """Return the 1-based line number of character ``index``."""
    return content.count("\n", 0, max(index, 0)) + 1


def iter_sources(repo_root: Path, files: Iterable[str]) -> Iterator[Tuple[str, str]]:
    """Yield ``(relative_path, text)`` for readable files, skipping the rest."""
    for relative in files:
        path = repo_root / relative
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as error:
            LOGGER.debug("Skipping unreadable source %s: %s", relative, error)
            continue
        yield relative, content


__all__ = [
    "Finding",
    "MAX_FINDINGS",
    "MUTATING_ROUTE_RE",
    "SQL_MUTATION_RE",
    "ScanReport",
    "Severity",
    "TRANSACTION_RE",
    "iter_sources",
    "line_of",
    "max_severity",
]
