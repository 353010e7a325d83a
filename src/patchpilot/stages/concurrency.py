"""Race-pattern scan for data-mutating backend modules."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Iterable

from .scans import MUTATING_ROUTE_RE, SQL_MUTATION_RE, TRANSACTION_RE, Finding, ScanReport, iter_sources, line_of

_EXECUTE_CALL = re.compile(r"\.execute(?:many)?\s*\(")
_IDEMPOTENCY = re.compile(r"idempot|on\s+conflict|upsert|if-match|etag", re.IGNORECASE)
_SHIFT_LOCK = re.compile(
    r"assert_shift_open|SHIFT_CLOSED|lock_shift|is_shift_closed|select[^\n]*for\s+update", re.IGNORECASE
)
_RACE_SENSITIVE_PATH = re.compile(r"ledger|shift|payment|balance|inventory", re.IGNORECASE)


def run_concurrency(task: str, repo_root: Path, files: Iterable[str]) -> ScanReport:
    report = ScanReport(stage="concurrency", title="Concurrency Report", task=task)
    for path, content in iter_sources(repo_root, files):
        mutates = bool(SQL_MUTATION_RE.search(content))
        has_transaction = bool(TRANSACTION_RE.search(content))
        route = MUTATING_ROUTE_RE.search(content)

        if len(_EXECUTE_CALL.findall(content)) >= 2 and mutates and not has_transaction:
            report.add(
                Finding(
                    "missing_transaction_wrapper",
                    "medium",
                    path,
                    1,
                    "Multiple mutating statements without a transaction boundary",
                )
            )

        if route is not None and not _IDEMPOTENCY.search(content):
            report.add(
                Finding(
                    "idempotency_pattern_missing",
                    "low",
                    path,
                    line_of(content, route.start()),
                    "Mutating route without an obvious idempotency pattern",
                )
            )

        shift_index = content.lower().find("shift")
        if ("shift" in path.lower() or shift_index >= 0) and (route is not None or mutates):
            if not _SHIFT_LOCK.search(content):
                report.add(
                    Finding(
                        "shift_locking_enforcement_missing",
                        "high",
                        path,
                        line_of(content, max(shift_index, 0)),
                        "Shift-sensitive write flow without visible shift lock enforcement",
                    )
                )

        if _RACE_SENSITIVE_PATH.search(path) and mutates and not has_transaction:
            report.add(
                Finding(
                    "race_sensitive_file",
                    "medium",
                    path,
                    1,
                    "Race-sensitive module mutates data without a transaction or lock",
                )
            )
    return report


__all__ = ["run_concurrency"]
