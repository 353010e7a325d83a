"""Design stage: system context and risk zones derived from file names."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Mapping, Pattern

from .research import ResearchReport

# Zone name -> file pattern. Zones gate which backend files the plan marks as impacted.
RISK_ZONE_PATTERNS: Mapping[str, Pattern[str]] = {
    "finance-ledger": re.compile(r"finance|ledger|accounting", re.IGNORECASE),
    "shift-modules": re.compile(r"shift", re.IGNORECASE),
    "payment-modules": re.compile(r"payment|billing|invoice|refund", re.IGNORECASE),
    "auth-modules": re.compile(r"auth|login|permission|roles?\b", re.IGNORECASE),
    "settings-modules": re.compile(r"settings", re.IGNORECASE),
}

GUARD_REQUIREMENTS = (
    "No silent fallback",
    "No client-supplied time",
    "Uniform error structure",
    "Preserve API contracts",
    "Preserve roles",
)

STRATEGY = ("Minimal diff", "Phase-based change", "Test-before-exit rule")


def detect_risk_zones(files: Iterable[str]) -> List[str]:
    """Return the risk zones whose pattern matches at least one file."""
    paths = list(files)
    return [zone for zone, pattern in RISK_ZONE_PATTERNS.items() if any(pattern.search(path) for path in paths)]


@dataclass(slots=True)
class DesignReport:
    task: str
    total_files: int
    backend_present: bool
    frontend_present: bool
    tests_present: bool
    test_command: str
    risk_zones: List[str] = field(default_factory=list)

    def render(self) -> str:
        def flag(value: bool) -> str:
            return "yes" if value else "no"

        lines = [
            "# Design Report",
            "",
            "## TASK",
            self.task or "(empty task)",
            "",
            "## System Context",
            f"- Total files: {self.total_files}",
            f"- Backend presence (yes/no): {flag(self.backend_present)}",
            f"- Frontend presence (yes/no): {flag(self.frontend_present)}",
            f"- Tests detected (yes/no): {flag(self.tests_present)}",
            f"- Test command: {self.test_command}",
            "",
            "## Risk Zones",
            *([f"- {zone}" for zone in self.risk_zones] or ["- none-detected"]),
            "",
            "## Guard Requirements",
            *[f"- {item}" for item in GUARD_REQUIREMENTS],
            "",
            "## Implementation Strategy",
            *[f"- {item}" for item in STRATEGY],
            "",
        ]
        return "\n".join(lines)


def run_design(research: ResearchReport) -> DesignReport:
    return DesignReport(
        task=research.task,
        total_files=research.total_files,
        backend_present=bool(research.backend_files),
        frontend_present=bool(research.frontend_files),
        tests_present=bool(research.test_files),
        test_command=research.test_command,
        risk_zones=detect_risk_zones([*research.backend_files, *research.frontend_files]),
    )


__all__ = ["DesignReport", "RISK_ZONE_PATTERNS", "detect_risk_zones", "run_design"]
