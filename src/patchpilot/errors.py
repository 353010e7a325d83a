"""Error taxonomy shared by the run and meta controllers."""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping


class ErrorCode(str, Enum):
    """Closed set of failure classes raised by the pipeline."""

    DIRTY_REPO = "DIRTY_REPO"
    VCS_ERROR = "VCS_ERROR"
    INVALID_DIFF = "INVALID_DIFF"
    DIFF_TOO_LARGE = "DIFF_TOO_LARGE"
    PREFLIGHT_VIOLATION = "PREFLIGHT_VIOLATION"
    SCOPE_VIOLATION = "SCOPE_VIOLATION"
    APPLY_FAILED = "APPLY_FAILED"
    DRY_RUN_FAILED = "DRY_RUN_FAILED"
    GENERATION_FAILED = "GENERATION_FAILED"
    INVALID_LIFECYCLE_DEFINITION = "INVALID_LIFECYCLE_DEFINITION"
    INVALID_LIFECYCLE_TRANSITION = "INVALID_LIFECYCLE_TRANSITION"
    LIFECYCLE_VIOLATION = "LIFECYCLE_VIOLATION"
    SYSTEM_MAP_GUARD_FAILED = "SYSTEM_MAP_GUARD_FAILED"
    CONTRACT_INTEGRITY_FAILED = "CONTRACT_INTEGRITY_FAILED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    MAX_RETRIES_REACHED = "MAX_RETRIES_REACHED"
    INVALID_MAX_RETRIES = "INVALID_MAX_RETRIES"
    DIRECT_RUN_BLOCKED = "DIRECT_RUN_BLOCKED"
    ARTIFACT_CONFLICT = "ARTIFACT_CONFLICT"
    META_RESUME_INCONSISTENT = "META_RESUME_INCONSISTENT"
    SELF_HEAL_STALLED = "SELF_HEAL_STALLED"
    MAX_SELF_HEAL_ATTEMPTS_REACHED = "MAX_SELF_HEAL_ATTEMPTS_REACHED"
    FINAL_VALIDATION_FAILED = "FINAL_VALIDATION_FAILED"


# Codes that must never be retried by the run controller.
FATAL_CODES = frozenset(
    {
        ErrorCode.DIRTY_REPO,
        ErrorCode.VCS_ERROR,
        ErrorCode.INVALID_LIFECYCLE_DEFINITION,
        ErrorCode.INVALID_LIFECYCLE_TRANSITION,
        ErrorCode.LIFECYCLE_VIOLATION,
        ErrorCode.CONTRACT_INTEGRITY_FAILED,
        ErrorCode.MAX_RETRIES_REACHED,
        ErrorCode.INVALID_MAX_RETRIES,
        ErrorCode.DIRECT_RUN_BLOCKED,
        ErrorCode.ARTIFACT_CONFLICT,
        ErrorCode.META_RESUME_INCONSISTENT,
        ErrorCode.SELF_HEAL_STALLED,
        ErrorCode.MAX_SELF_HEAL_ATTEMPTS_REACHED,
        ErrorCode.FINAL_VALIDATION_FAILED,
    }
)


class PipelineError(RuntimeError):
    """Raised for every structural failure inside the pipeline.

    ``fatal`` tells the caller whether the failure may be retried.  It defaults
    to membership of ``code`` in :data:`FATAL_CODES`.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str | None = None,
        *,
        fatal: bool | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        self.code = ErrorCode(code)
        super().__init__(message or self.code.value)
        self.fatal = self.code in FATAL_CODES if fatal is None else bool(fatal)
        self.details: dict[str, Any] = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": str(self),
            "fatal": self.fatal,
            "details": dict(self.details),
        }


__all__ = ["ErrorCode", "FATAL_CODES", "PipelineError"]
