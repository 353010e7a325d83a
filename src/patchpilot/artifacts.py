"""Append-only per-run artifact directories."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List

from .errors import ErrorCode, PipelineError

RUNS_DIRNAME = "runs"


def timestamp_run_id(now: datetime | None = None, *, prefix: str = "") -> str:
    """Return an ISO timestamp run id with ``:`` replaced by ``-``."""
    moment = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    stamp = moment.isoformat(timespec="milliseconds").replace("+00:00", "Z").replace(":", "-")
    return f"{prefix}{stamp}"


def validate_artifact_name(name: str) -> str:
    cleaned = (name or "").strip()
    if not cleaned or "/" in cleaned or "\\" in cleaned or ".." in cleaned:
        raise PipelineError(
            ErrorCode.ARTIFACT_CONFLICT,
            f"Invalid artifact name: {name!r}",
            details={"name": name},
        )
    return cleaned


def list_run_ids(runs_root: Path) -> List[str]:
    """Return run directory names sorted lexicographically."""
    if not runs_root.is_dir():
        return []
    return sorted(entry.name for entry in runs_root.iterdir() if entry.is_dir())


def write_json_file(path: Path, payload: Any) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"{json.dumps(payload, indent=2, ensure_ascii=False)}\n", encoding="utf-8")
    return path


def read_json_or_none(path: Path) -> Any:
    """Return parsed JSON or ``None`` when the file is missing or malformed."""
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None


class RunArtifactStore:
    """Directory of write-once artifacts for one run id."""

    def __init__(self, runs_root: Path, run_id: str) -> None:
        self.runs_root = Path(runs_root)
        self.run_id = validate_artifact_name(run_id)
        self.run_dir = self.runs_root / self.run_id

    @classmethod
    def create(cls, runs_root: Path, *, now: datetime | None = None, prefix: str = "") -> "RunArtifactStore":
        """Create a fresh run directory; suffix the id if the timestamp collides."""
        runs_root = Path(runs_root)
        runs_root.mkdir(parents=True, exist_ok=True)
        base_id = timestamp_run_id(now, prefix=prefix)
        run_id = base_id
        counter = 1
        while True:
            try:
                (runs_root / run_id).mkdir()
                break
            except FileExistsError:
                counter += 1
                run_id = f"{base_id}-{counter}"
        return cls(runs_root, run_id)

    def path(self, name: str) -> Path:
        return self.run_dir / validate_artifact_name(name)

    def exists(self, name: str) -> bool:
        return self.path(name).exists()

    def write_text(self, name: str, content: str, *, overwrite: bool = False) -> Path:
        target = self.path(name)
        if target.exists() and not overwrite:
            raise PipelineError(
                ErrorCode.ARTIFACT_CONFLICT,
                f"Artifact {name} already written for run {self.run_id}",
                details={"name": name, "run_id": self.run_id},
            )
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        return target

    def write_json(self, name: str, payload: Any, *, overwrite: bool = False) -> Path:
        return self.write_text(name, f"{json.dumps(payload, indent=2, ensure_ascii=False)}\n", overwrite=overwrite)

    def read_text(self, name: str) -> str:
        return self.path(name).read_text(encoding="utf-8")

    def read_json(self, name: str) -> Any:
        return read_json_or_none(self.path(name))


__all__ = [
    "RUNS_DIRNAME",
    "RunArtifactStore",
    "list_run_ids",
    "read_json_or_none",
    "timestamp_run_id",
    "validate_artifact_name",
    "write_json_file",
]
