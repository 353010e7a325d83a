from __future__ import annotations

import sys
import textwrap
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterator

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from patchpilot.tools.vcs import GitRepository  # noqa: E402

API_SOURCE = textwrap.dedent(
    """
    from flask import Flask

    app = Flask(__name__)


    @app.get("/items")
    def list_items():
        return []
    """
).lstrip()

HEALTH_DIFF = textwrap.dedent(
    """
    diff --git a/app/api.py b/app/api.py
    --- a/app/api.py
    +++ b/app/api.py
    @@ -7,2 +7,7 @@
     def list_items():
         return []
    +
    +
    +@app.get("/health")
    +def health():
    +    return {"status": "ok"}
    """
).lstrip()


@dataclass(slots=True)
class SampleRepo:
    """A committed git repository with a tiny backend module."""

    root: Path
    repo: GitRepository

    def read(self, path: str) -> str:
        return (self.root / path).read_text(encoding="utf-8")


@pytest.fixture()
def sample_repo(tmp_path: Path) -> SampleRepo:
    root = tmp_path / "sample"
    (root / "app").mkdir(parents=True)
    (root / "app" / "api.py").write_text(API_SOURCE, encoding="utf-8")
    (root / "README.md").write_text("# sample\n", encoding="utf-8")
    repo = GitRepository.initialise(root)
    return SampleRepo(root=repo.root, repo=repo)


@pytest.fixture()
def clock() -> Callable[[], datetime]:
    """Deterministic clock advancing one second per call."""

    moments: Iterator[datetime] = (
        datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc) + timedelta(seconds=index) for index in range(10_000)
    )
    return lambda: next(moments)
