from __future__ import annotations

from pathlib import Path

import yaml
from typer.testing import CliRunner

from patchpilot.cli import app

runner = CliRunner()

BLOCKED_ENV = {"META_MODE": "", "ALLOW_DIRECT": ""}


def test_init_writes_default_config(tmp_path: Path) -> None:
    config_path = tmp_path / "patchpilot.yaml"

    result = runner.invoke(app, ["init", "--config", str(config_path)])

    assert result.exit_code == 0, result.output
    data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    assert data["pipeline"]["max_retries"] == 3
    assert data["validation"]["command"] == "pytest -q"


def test_init_refuses_to_overwrite_without_force(tmp_path: Path) -> None:
    config_path = tmp_path / "patchpilot.yaml"
    config_path.write_text("project:\n  name: mine\n", encoding="utf-8")

    refused = runner.invoke(app, ["init", "--config", str(config_path)])
    forced = runner.invoke(app, ["init", "--config", str(config_path), "--force"])

    assert refused.exit_code == 1
    assert "already exists" in refused.output
    assert forced.exit_code == 0
    assert yaml.safe_load(config_path.read_text(encoding="utf-8"))["project"]["name"] == ""


def test_malformed_config_is_reported(tmp_path: Path) -> None:
    config_path = tmp_path / "patchpilot.yaml"
    config_path.write_text("pipeline: [unclosed\n", encoding="utf-8")

    result = runner.invoke(app, ["step", "--task", "x", "--config", str(config_path)], env=BLOCKED_ENV)

    assert result.exit_code == 1
    assert "Failed to parse config" in result.output


def test_non_mapping_config_is_invalid(tmp_path: Path) -> None:
    config_path = tmp_path / "patchpilot.yaml"
    config_path.write_text("- just\n- a list\n", encoding="utf-8")

    result = runner.invoke(app, ["step", "--task", "x", "--config", str(config_path)], env=BLOCKED_ENV)

    assert result.exit_code == 1
    assert "Invalid configuration" in result.output


def test_step_rejects_bad_max_retries(tmp_path: Path) -> None:
    result = runner.invoke(
        app,
        ["step", "--task", "x", "--max-retries", "zero", "--config", str(tmp_path / "patchpilot.yaml")],
        env=BLOCKED_ENV,
    )

    assert result.exit_code == 1
    assert "Invalid max retries" in result.output


def test_step_without_opt_in_is_blocked(tmp_path: Path) -> None:
    config_path = tmp_path / "patchpilot.yaml"

    result = runner.invoke(app, ["step", "--task", "add endpoint", "--config", str(config_path)], env=BLOCKED_ENV)

    assert result.exit_code == 1
    assert "Reason: DIRECT_RUN_BLOCKED" in result.output
    assert list((tmp_path / "dev_pipeline" / "runs").iterdir())


def test_run_requires_task_or_resume(tmp_path: Path) -> None:
    result = runner.invoke(app, ["run", "--config", str(tmp_path / "patchpilot.yaml")])

    assert result.exit_code == 2


def test_resume_of_unknown_meta_run_fails(tmp_path: Path) -> None:
    result = runner.invoke(
        app,
        ["run", "--resume", "meta-missing", "--config", str(tmp_path / "patchpilot.yaml")],
    )

    assert result.exit_code == 1
    assert "Meta run failed" in result.output
    assert "META_RESUME_INCONSISTENT" in result.output


def test_unknown_log_level_is_rejected(tmp_path: Path) -> None:
    result = runner.invoke(app, ["--log-level", "chatty", "init", "--config", str(tmp_path / "c.yaml")])

    assert result.exit_code == 2
    assert not (tmp_path / "c.yaml").exists()
