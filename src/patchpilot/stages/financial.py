"""Financial invariant scan.

These are text heuristics around money-like identifiers; they flag code worth a
second look and do not prove arithmetic correct.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Iterable

from .scans import Finding, ScanReport, iter_sources, line_of

_SCOPE_PATH = re.compile(r"ledger|finance|salary|shift|payment|billing|balance", re.IGNORECASE)
_SCOPE_CONTENT = re.compile(r"ledger|salary_due|refund|collected|balance", re.IGNORECASE)
_MONEY_WORDS = re.compile(r"ledger|salary_due|balance|amount|refund|collected", re.IGNORECASE)
_ROUNDING = re.compile(r"\bround\s*\(|\.quantize\s*\(|round_money|money_rounding", re.IGNORECASE)
_MONEY_ARITHMETIC = re.compile(
    r"\b(?:collected|refund|amount|salary_due|balance|net)\b[^\n]{0,80}[-+*/][^\n]{0,80}", re.IGNORECASE
)
_COLLECTED = re.compile(r"\bcollected\b", re.IGNORECASE)
_REFUND = re.compile(r"\brefunds?\b", re.IGNORECASE)
_NET_INVARIANT = re.compile(r"\bnet\b[^\n=]*=[^\n]*\bcollected\b[^\n]*-\s*\w*refund", re.IGNORECASE)
_BALANCE_DECREMENT = re.compile(
    r"\b(?:balance|salary_due)\b[^\n]{0,50}(?:-=|=[^\n]{0,80}-)[^\n]{0,80}", re.IGNORECASE
)
_CLAMP = re.compile(r"max\s*\(\s*0")
_SHIFT_CLOSE = re.compile(r"shift[\s_]*close|close[\s_]*shift", re.IGNORECASE)
_SHIFT_GUARD = re.compile(r"assert_shift_open|SHIFT_CLOSED|is_shift_closed|ShiftClosed", re.IGNORECASE)


def _check_rounding(content: str, path: str, report: ScanReport) -> None:
    if not _MONEY_WORDS.search(content) or _ROUNDING.search(content):
        return
    match = _MONEY_ARITHMETIC.search(content)
    if match is None:
        return
    line = line_of(content, match.start())
    report.add(Finding("rounding_missing", "medium", path, line, "Money arithmetic without explicit rounding"))


def _check_net_invariant(content: str, path: str, report: ScanReport) -> None:
    collected = _COLLECTED.search(content)
    refund = _REFUND.search(content)
    if collected is None or refund is None or _NET_INVARIANT.search(content):
        return
    report.add(
        Finding(
            "net_invariant_missing",
            "high",
            path,
            line_of(content, min(collected.start(), refund.start())),
            "Collected/refund usage without explicit net = collected - refund",
        )
    )


def _check_negative_balance(content: str, path: str, report: ScanReport) -> None:
    for match in _BALANCE_DECREMENT.finditer(content):
        window = content[max(0, match.start() - 120) : match.end() + 160]
        if _CLAMP.search(window):
            continue
        report.add(
            Finding(
                "negative_balance_risk",
                "high",
                path,
                line_of(content, match.start()),
                "Balance decrement without a lower-bound clamp",
            )
        )


def _check_shift_close(content: str, path: str, report: ScanReport) -> None:
    if "shift" not in path.lower() and not _SHIFT_CLOSE.search(content):
        return
    if _SHIFT_GUARD.search(content):
        return
    index = content.lower().find("shift")
    report.add(
        Finding(
            "shift_locking_reference_missing",
            "medium",
            path,
            line_of(content, max(index, 0)),
            "Shift-related money flow without a visible closed-shift guard",
        )
    )


def run_financial(task: str, repo_root: Path, files: Iterable[str]) -> ScanReport:
    report = ScanReport(stage="financial", title="Financial Report", task=task)
    for path, content in iter_sources(repo_root, files):
        if not (_SCOPE_PATH.search(path) or _SCOPE_CONTENT.search(content)):
            continue
        _check_rounding(content, path, report)
        _check_net_invariant(content, path, report)
        _check_negative_balance(content, path, report)
        _check_shift_close(content, path, report)
    return report


__all__ = ["run_financial"]
