from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

import pytest

from patchpilot.artifacts import RunArtifactStore, list_run_ids, read_json_or_none, timestamp_run_id
from patchpilot.errors import ErrorCode, PipelineError
from patchpilot.telemetry import emit_event

NOW = datetime(2024, 5, 1, 12, 30, 45, 123000, tzinfo=timezone.utc)


def test_timestamp_run_id_is_path_safe() -> None:
    assert timestamp_run_id(NOW) == "2024-05-01T12-30-45.123Z"
    assert timestamp_run_id(NOW, prefix="meta-") == "meta-2024-05-01T12-30-45.123Z"


def test_create_suffixes_colliding_ids(tmp_path: Path) -> None:
    first = RunArtifactStore.create(tmp_path, now=NOW)
    second = RunArtifactStore.create(tmp_path, now=NOW)

    assert first.run_id != second.run_id
    assert second.run_id.endswith("-2")
    assert list_run_ids(tmp_path) == sorted([first.run_id, second.run_id])


def test_artifacts_are_write_once_unless_overwritten(tmp_path: Path) -> None:
    store = RunArtifactStore.create(tmp_path, now=NOW)
    store.write_text("plan.md", "first")

    with pytest.raises(PipelineError) as excinfo:
        store.write_text("plan.md", "second")

    assert excinfo.value.code is ErrorCode.ARTIFACT_CONFLICT
    store.write_text("plan.md", "second", overwrite=True)
    assert store.read_text("plan.md") == "second"


@pytest.mark.parametrize("name", ["", "../escape.txt", "nested/file.txt"])
def test_artifact_names_must_be_plain(tmp_path: Path, name: str) -> None:
    store = RunArtifactStore.create(tmp_path, now=NOW)

    with pytest.raises(PipelineError):
        store.write_text(name, "x")


def test_read_json_tolerates_missing_and_malformed_files(tmp_path: Path) -> None:
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")

    assert read_json_or_none(tmp_path / "missing.json") is None
    assert read_json_or_none(broken) is None


def test_list_run_ids_handles_missing_root(tmp_path: Path) -> None:
    assert list_run_ids(tmp_path / "absent") == []


def test_emit_event_logs_single_line_json(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.INFO, logger="patchpilot.telemetry"):
        emit_event("run.started", run_id="r1", path=Path("a/b"), tags={"x", "x"})

    payload = json.loads(caplog.records[-1].getMessage())
    assert payload["event"] == "run.started"
    assert payload["path"] == "a/b"
    assert payload["tags"] == ["x"]
    assert "timestamp" in payload
