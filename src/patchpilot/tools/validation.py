"""Execution helpers for the configurable validation command."""

from __future__ import annotations

import os
import shlex
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Mapping, Sequence


@dataclass(slots=True)
class CommandResult:
    """Structured summary of one validation command invocation."""

    command: tuple[str, ...]
    cwd: Path
    exit_code: int
    stdout: str
    stderr: str
    started_at: str
    finished_at: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


def _merge_env(extra: Mapping[str, str] | None) -> Dict[str, str]:
    """Merge provided environment overrides with the current process state."""
    env: Dict[str, str] = os.environ.copy()
    if extra:
        env.update({str(key): str(value) for key, value in extra.items()})
    return env


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def run_validation_command(
    command: str | Sequence[str],
    *,
    cwd: Path | str | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
) -> CommandResult:
    """Run ``command`` and capture its exit code and combined output.

    A command that cannot be started or times out is reported as a failed
    result (exit code 127 or 124) so callers always get diagnostics text.
    """

    workdir = Path(cwd or Path.cwd()).resolve()
    invocation = tuple(shlex.split(command) if isinstance(command, str) else command)
    env_vars = _merge_env(env)
    src_dir = workdir / "src"
    if src_dir.is_dir():
        current = env_vars.get("PYTHONPATH")
        parts = current.split(os.pathsep) if current else []
        if str(src_dir) not in parts:
            env_vars["PYTHONPATH"] = os.pathsep.join([str(src_dir), *parts])

    started_at = _now()
    try:
        process = subprocess.run(
            invocation,
            cwd=workdir,
            env=env_vars,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except FileNotFoundError as error:
        return CommandResult(invocation, workdir, 127, "", f"Command not found: {error}", started_at, _now())
    except subprocess.TimeoutExpired as error:
        stdout = error.stdout.decode("utf-8", "replace") if isinstance(error.stdout, bytes) else (error.stdout or "")
        return CommandResult(
            invocation,
            workdir,
            124,
            stdout,
            f"Command timed out after {timeout} seconds",
            started_at,
            _now(),
        )

    return CommandResult(
        command=invocation,
        cwd=workdir,
        exit_code=process.returncode,
        stdout=process.stdout,
        stderr=process.stderr,
        started_at=started_at,
        finished_at=_now(),
    )


__all__ = ["CommandResult", "run_validation_command"]
