from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from patchpilot.stages.design import detect_risk_zones, run_design
from patchpilot.stages.plan import collect_impacted_files, parse_impacted_files, run_plan, task_tokens
from patchpilot.stages.research import detect_test_command, is_test_file, run_research

NOW = datetime(2024, 5, 1, tzinfo=timezone.utc)


def _write(root: Path, relative: str, content: str = "") -> None:
    target = root / relative
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")


def _layout(root: Path) -> None:
    _write(root, "app/api.py", "x = 1\n")
    _write(root, "app/ledger.py", "balance = 0\n")
    _write(root, "web/views/login.tsx", "export {}\n")
    _write(root, "tests/test_api.py", "def test_x():\n    pass\n")
    _write(root, "dev_pipeline/runs/r1/plan.md", "old")
    _write(root, "node_modules/pkg/index.js", "")
    _write(root, ".git/HEAD", "ref: refs/heads/main\n")


def test_research_maps_backend_frontend_and_tests(tmp_path: Path) -> None:
    _layout(tmp_path)

    report = run_research("Add api health", tmp_path, now=NOW)

    assert report.backend_files == ["app/api.py", "app/ledger.py"]
    assert report.frontend_files == ["web/views/login.tsx"]
    assert report.test_files == ["tests/test_api.py"]
    assert report.total_files == 4
    assert report.test_command == "pytest -q"
    rendered = report.render()
    assert "## Detected Test Command" in rendered
    assert "- app/api.py" in rendered


def test_detect_test_command_prefers_configured_command(tmp_path: Path) -> None:
    assert detect_test_command(tmp_path, ["tests/test_x.py"], "make test") == "make test"
    assert detect_test_command(tmp_path, ["README.md"]) == "Not detected"


def test_is_test_file_matches_dirs_and_names() -> None:
    assert is_test_file("tests/helpers.py", ["tests"])
    assert is_test_file("pkg/module_test.py", ["tests"])
    assert not is_test_file("pkg/testing.py", ["tests"])


def test_design_detects_risk_zones(tmp_path: Path) -> None:
    _layout(tmp_path)
    design = run_design(run_research("task", tmp_path, now=NOW))

    assert design.risk_zones == ["finance-ledger", "auth-modules"]
    assert design.backend_present and design.frontend_present and design.tests_present
    assert "- finance-ledger" in design.render()


def test_detect_risk_zones_is_empty_for_plain_files() -> None:
    assert detect_risk_zones(["app/api.py", "app/views.py"]) == []


def test_plan_bounds_impacted_files_by_zone_and_task_terms(tmp_path: Path) -> None:
    _layout(tmp_path)
    research = run_research("Add health endpoint to api", tmp_path, now=NOW)
    plan = run_plan(research, run_design(research), validation_command="pytest -q tests")

    assert plan.impacted_files == ["app/api.py", "app/ledger.py"]
    assert parse_impacted_files(plan.render()) == ["app/api.py", "app/ledger.py"]


def test_plan_without_matches_renders_none(tmp_path: Path) -> None:
    _write(tmp_path, "app/models.py", "")
    research = run_research("Refresh docs", tmp_path, now=NOW)
    plan = run_plan(research, run_design(research), validation_command="")

    assert plan.impacted_files == []
    assert plan.validation_command == "pytest -q"
    assert parse_impacted_files(plan.render()) == []


def test_collect_impacted_files_matches_parent_directory_token() -> None:
    impacted = collect_impacted_files(["billing/core.py", "app/util.py"], [], task_tokens("fix billing totals"))

    assert impacted == ["billing/core.py"]
    assert task_tokens("A to-do list") == {"to", "do", "list"}
