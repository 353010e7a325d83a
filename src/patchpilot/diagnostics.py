"""Failure diagnostics: failing-test extraction, normalisation and signatures."""

from __future__ import annotations

import hashlib
import json
import re
from typing import Iterable, List

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")
_MS_RE = re.compile(r"\b\d+(?:\.\d+)?ms\b", re.IGNORECASE)
_SECONDS_RE = re.compile(r"\bin \d+(?:\.\d+)?s\b")
_ISO_TS_RE = re.compile(r"\b\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(?:[.,]\d+)?(?:Z|[+-]\d{2}:?\d{2})?")
_LINE_COL_RE = re.compile(r":\d+:\d+\b")
_LINE_RE = re.compile(r":\d+\b")
_MAX_FAILURE_CHARS = 4000

# pytest summary lines, then JS-style runner patterns for mixed repositories.
_FAILING_TEST_PATTERNS = (
    re.compile(r"^\s*(?:FAILED|ERROR)\s+(\S+?)(?:\s+-\s.*)?$", re.MULTILINE),
    re.compile(r"\n\s*(?:x|X|\*)\s+([^\n\r]*\.(?:test|spec)\.[^\s:\n\r]*)"),
    re.compile(r"\n\s*FAIL(?:\s+|:\s*)([^\n\r]*\.(?:test|spec)\.[^\s:\n\r]*)"),
)
_FIRST_FAILURE_MARKERS = (
    "=================================== FAILURES",
    "Failed Tests",
    "FAIL ",
    "Traceback (most recent call last)",
    "AssertionError",
    "Error:",
    "TypeError:",
)


def strip_ansi(value: str | None) -> str:
    return _ANSI_RE.sub("", value or "")


def normalise_failure_text(value: str | None) -> str:
    """Mask timings, timestamps and line/column numbers so reruns compare equal."""
    text = strip_ansi(value).replace("\r", "")
    text = _ISO_TS_RE.sub("<ts>", text)
    text = _MS_RE.sub("<ms>", text)
    text = _SECONDS_RE.sub("in <s>", text)
    text = _LINE_COL_RE.sub(":L:C", text)
    text = _LINE_RE.sub(":L", text)
    return text.strip()[:_MAX_FAILURE_CHARS]


def extract_failing_tests(output: str | None) -> List[str]:
    """Return sorted, de-duplicated failing test identifiers from runner output."""
    text = f"\n{strip_ansi(output)}"
    tests: set[str] = set()
    for pattern in _FAILING_TEST_PATTERNS:
        for match in pattern.finditer(text):
            name = match.group(1).strip().replace("\\", "/")
            if name:
                tests.add(name)
    return sorted(tests)


def extract_first_failure(output: str | None) -> str:
    """Return the normalised text starting at the earliest failure marker."""
    text = strip_ansi(output)
    if not text:
        return ""
    positions = [text.find(marker) for marker in _FIRST_FAILURE_MARKERS]
    found = [position for position in positions if position >= 0]
    start = min(found) if found else 0
    return normalise_failure_text(text[start:])


def failure_signature(
    *,
    failing_tests: Iterable[str],
    first_failure: str,
    exit_code: int | None,
    lifecycle_state: str | None,
    contract_integrity_status: str | None,
) -> str:
    """Hash the normalised failure fingerprint into a hex digest."""
    tests = sorted(
        {str(item).replace("\\", "/").strip().lower() for item in failing_tests if str(item).strip()}
    )
    payload = {
        "failingTests": tests,
        "firstFailure": normalise_failure_text(first_failure),
        "validateExitCode": exit_code if isinstance(exit_code, int) else -1,
        "lifecycleState": (lifecycle_state or "").strip().upper(),
        "contractIntegrityStatus": (contract_integrity_status or "").strip().upper(),
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


__all__ = [
    "extract_failing_tests",
    "extract_first_failure",
    "failure_signature",
    "normalise_failure_text",
    "strip_ansi",
]
