"""Regression memory: detect high-severity findings that keep coming back."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List

from ..artifacts import read_json_or_none, write_json_file
from .scans import Finding, ScanReport

MEMORY_FILENAME = "regression_memory.json"


@dataclass(slots=True)
class RegressionPattern:
    key: str
    stage: str
    type: str
    file: str
    line: int
    message: str

    @classmethod
    def from_finding(cls, stage: str, finding: Finding) -> "RegressionPattern":
        key = "|".join([stage, finding.type, finding.file, str(finding.line or "")])
        return cls(key, stage, finding.type, finding.file, finding.line, finding.message)

    def describe(self) -> str:
        return f"{self.stage}/{self.type} - {self.file}:{self.line}"


@dataclass(slots=True)
class RegressionReport:
    task: str
    memory_path: Path
    current: List[RegressionPattern] = field(default_factory=list)
    repeated: List[RegressionPattern] = field(default_factory=list)
    added: List[RegressionPattern] = field(default_factory=list)

    @property
    def status(self) -> str:
        return "fail" if self.repeated else "ok"

    def render(self) -> str:
        def section(title: str, items: List[RegressionPattern]) -> List[str]:
            body = [f"{index}. {item.describe()}" for index, item in enumerate(items, start=1)]
            return [f"## {title} ({len(items)})", *(body or ["- none"]), ""]

        lines = [
            "# Regression Report",
            "",
            "## TASK",
            self.task or "(empty task)",
            "",
            *section("Current High Severity Patterns", self.current),
            *section("Repeated Issues", self.repeated),
            *section("Newly Memorized Patterns", self.added),
            "## Memory File",
            f"- {self.memory_path.as_posix()}",
            "",
            "## Status",
            f"- {self.status}",
            "",
        ]
        return "\n".join(lines)


def load_memory(memory_path: Path) -> Dict[str, Any]:
    """Return the persisted memory, or an empty one when missing or malformed."""
    data = read_json_or_none(memory_path)
    if isinstance(data, dict) and isinstance(data.get("patterns"), list):
        return data
    return {"patterns": []}


def run_regression(
    task: str,
    scans: Iterable[ScanReport],
    memory_path: Path,
    *,
    now: datetime | None = None,
) -> RegressionReport:
    """Compare this round's high findings with memory and persist the union.

    The memory file is rewritten wholesale on every call.
    """

    timestamp = (now or datetime.now(timezone.utc)).isoformat()
    memory = load_memory(memory_path)
    by_key: Dict[str, Dict[str, Any]] = {
        str(entry.get("key")): entry for entry in memory["patterns"] if isinstance(entry, dict)
    }
    report = RegressionReport(task=task, memory_path=memory_path)

    for scan in scans:
        for finding in scan.high_findings():
            pattern = RegressionPattern.from_finding(scan.stage, finding)
            report.current.append(pattern)
            existing = by_key.get(pattern.key)
            if existing is not None:
                report.repeated.append(pattern)
                existing["lastSeen"] = timestamp
                existing["count"] = int(existing.get("count") or 0) + 1
                existing.setdefault("firstSeen", timestamp)
                continue
            entry = {
                "key": pattern.key,
                "stage": pattern.stage,
                "type": pattern.type,
                "file": pattern.file,
                "line": pattern.line,
                "message": pattern.message,
                "firstSeen": timestamp,
                "lastSeen": timestamp,
                "count": 1,
            }
            memory["patterns"].append(entry)
            by_key[pattern.key] = entry
            report.added.append(pattern)

    write_json_file(memory_path, memory)
    return report


__all__ = ["MEMORY_FILENAME", "RegressionPattern", "RegressionReport", "load_memory", "run_regression"]
