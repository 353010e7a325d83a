"""Plan stage: bound the set of files the implementation may touch."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Iterable, List, Sequence, Set

from .design import RISK_ZONE_PATTERNS, DesignReport
from .research import ResearchReport

IMPACTED_SECTION_START = "- Files potentially affected"
IMPACTED_SECTION_END = "- Definition of Done"

_TOKEN_RE = re.compile(r"[a-z0-9_]+")


def task_tokens(task: str) -> Set[str]:
    return {token for token in _TOKEN_RE.findall((task or "").lower()) if len(token) >= 2}


def collect_impacted_files(
    backend_files: Iterable[str],
    risk_zones: Iterable[str],
    tokens: Iterable[str] = (),
) -> List[str]:
    """Backend files inside a detected risk zone or named after a task token."""
    patterns = [RISK_ZONE_PATTERNS[zone] for zone in risk_zones if zone in RISK_ZONE_PATTERNS]
    token_set = {token.lower() for token in tokens}
    impacted: Set[str] = set()
    for path in backend_files:
        posix = PurePosixPath(path)
        if any(pattern.search(path) for pattern in patterns):
            impacted.add(path)
        elif posix.stem.lower() in token_set or posix.parent.name.lower() in token_set:
            impacted.add(path)
    return sorted(impacted)


def parse_impacted_files(plan_text: str) -> List[str]:
    """Read the impacted-file bullets back out of a rendered plan."""
    files: List[str] = []
    in_section = False
    for raw_line in (plan_text or "").splitlines():
        line = raw_line.strip()
        if not in_section:
            if line.lower().startswith(IMPACTED_SECTION_START.lower()):
                in_section = True
            continue
        if line.startswith(IMPACTED_SECTION_END):
            break
        if line.startswith("- ") and line != "- (none)":
            files.append(line[2:].strip())
    return files


@dataclass(slots=True)
class PlanReport:
    task: str
    impacted_files: List[str] = field(default_factory=list)
    validation_command: str = "pytest -q"
    risk_zones: Sequence[str] = ()

    def render(self) -> str:
        impacted = [f"- {path}" for path in self.impacted_files] or ["- (none)"]
        lines = [
            "# Plan Report",
            "",
            "## TASK",
            self.task or "(empty task)",
            "",
            "## Phases",
            "",
            "### Phase 1: Impact Analysis",
            f"{IMPACTED_SECTION_START} (risk zones and task terms):",
            *impacted,
            f"{IMPACTED_SECTION_END}:",
            "- Identified impacted files are explicit and bounded.",
            "- Risks are documented per detected risk zone.",
            "- Tests to run:",
            f"- {self.validation_command}",
            "- Risks:",
            *([f"- Hidden coupling in {zone}." for zone in self.risk_zones] or ["- None detected."]),
            "",
            "### Phase 2: Controlled Implementation",
            "- Change type: minimal diff",
            "- Guard enforcement",
            "- Role safety check",
            "",
            "### Phase 3: Validation",
            "- Run tests",
            "- Invariant check",
            "- No regression verification",
            "",
            "## Definition of Global PASS",
            "- All tests PASS",
            "- No API contract break",
            "- No silent fallback",
            "- No client time usage",
            "- Roles preserved",
            "",
        ]
        return "\n".join(lines)


def run_plan(research: ResearchReport, design: DesignReport, *, validation_command: str) -> PlanReport:
    impacted = collect_impacted_files(research.backend_files, design.risk_zones, task_tokens(research.task))
    return PlanReport(
        task=research.task,
        impacted_files=impacted,
        validation_command=validation_command.strip() or "pytest -q",
        risk_zones=list(design.risk_zones),
    )


__all__ = [
    "IMPACTED_SECTION_END",
    "IMPACTED_SECTION_START",
    "PlanReport",
    "collect_impacted_files",
    "parse_impacted_files",
    "run_plan",
    "task_tokens",
]
