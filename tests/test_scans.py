from __future__ import annotations

import json
import textwrap
from datetime import datetime, timezone
from pathlib import Path

from patchpilot.stages.concurrency import run_concurrency
from patchpilot.stages.financial import run_financial
from patchpilot.stages.regression import load_memory, run_regression
from patchpilot.stages.scans import Finding, ScanReport
from patchpilot.stages.security import run_security


def _source(root: Path, relative: str, text: str) -> str:
    target = root / relative
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(textwrap.dedent(text).lstrip(), encoding="utf-8")
    return relative


def test_security_flags_unguarded_mutating_route_and_sql(tmp_path: Path) -> None:
    path = _source(
        tmp_path,
        "app/routes.py",
        """
        @app.post("/orders")
        def create_order():
            cursor.execute(f"INSERT INTO orders VALUES ({request.json['id']})")


        @app.delete("/orders/<id>")
        @login_required
        def delete_order(id):
            return None
        """,
    )

    report = run_security("task", tmp_path, [path])

    kinds = {(finding.type, finding.line) for finding in report.findings}
    assert ("missing_role_check", 1) in kinds
    assert ("sql_interpolation", 3) in kinds
    assert not any(finding.line == 6 for finding in report.findings)
    assert report.status == "fail"


def test_security_reports_medium_findings_without_failing(tmp_path: Path) -> None:
    path = _source(
        tmp_path,
        "app/jobs.py",
        """
        try:
            run()
        except Exception:
            pass
        stamp = datetime.now()
        """,
    )

    report = run_security("task", tmp_path, [path])

    assert sorted(finding.type for finding in report.findings) == ["except_without_reraise", "naive_datetime"]
    assert report.severity == "medium"
    assert report.status == "ok"


def test_security_flags_client_supplied_dates(tmp_path: Path) -> None:
    path = _source(tmp_path, "app/report.py", "start = request.args.get('start_date')\n")

    report = run_security("task", tmp_path, [path])

    assert [finding.type for finding in report.high_findings()] == ["client_date_usage"]


def test_financial_flags_missing_net_invariant_and_clamp(tmp_path: Path) -> None:
    path = _source(
        tmp_path,
        "app/ledger.py",
        """
        def settle(collected, refund, account):
            account.balance -= refund
            return round(collected)
        """,
    )

    report = run_financial("task", tmp_path, [path])

    assert {finding.type for finding in report.high_findings()} == {"net_invariant_missing", "negative_balance_risk"}


def test_financial_accepts_explicit_invariants(tmp_path: Path) -> None:
    path = _source(
        tmp_path,
        "app/ledger.py",
        """
        def settle(collected, refund, account):
            net = collected - refund
            account.balance = max(0, account.balance - net)
            return round(net, 2)
        """,
    )

    assert run_financial("task", tmp_path, [path]).findings == []


def test_financial_skips_unrelated_modules(tmp_path: Path) -> None:
    path = _source(tmp_path, "app/api.py", "total = price * 2\n")

    assert run_financial("task", tmp_path, [path]).findings == []


def test_concurrency_flags_shift_writes_without_lock(tmp_path: Path) -> None:
    path = _source(
        tmp_path,
        "app/shifts.py",
        """
        @app.post("/shifts/close")
        def close_shift():
            db.execute("UPDATE shifts SET closed = 1")
            db.execute("DELETE FROM drafts")
        """,
    )

    report = run_concurrency("task", tmp_path, [path])

    assert sorted(finding.type for finding in report.findings) == [
        "idempotency_pattern_missing",
        "missing_transaction_wrapper",
        "race_sensitive_file",
        "shift_locking_enforcement_missing",
    ]
    assert report.status == "fail"


def test_scan_report_render_and_dict() -> None:
    report = ScanReport(stage="security", title="Security Report", task="t")
    report.add(Finding("naive_datetime", "medium", "a.py", 3, "msg"))

    assert "1. [medium] naive_datetime - a.py:3 - msg" in report.render()
    assert report.to_dict()["findings"][0]["file"] == "a.py"


def _high_scan(line: int) -> ScanReport:
    report = ScanReport(stage="security", title="Security Report", task="t")
    report.add(Finding("sql_interpolation", "high", "app/db.py", line, "Interpolated SQL"))
    return report


def test_regression_memory_detects_repeats(tmp_path: Path) -> None:
    memory_path = tmp_path / "regression_memory.json"
    first_seen = datetime(2024, 5, 1, tzinfo=timezone.utc)

    first = run_regression("t", [_high_scan(4)], memory_path, now=first_seen)
    second = run_regression("t", [_high_scan(4), _high_scan(9)], memory_path)

    assert first.status == "ok" and [item.key for item in first.added] == ["security|sql_interpolation|app/db.py|4"]
    assert [item.key for item in second.repeated] == ["security|sql_interpolation|app/db.py|4"]
    assert second.status == "fail"
    stored = {entry["key"]: entry for entry in json.loads(memory_path.read_text(encoding="utf-8"))["patterns"]}
    assert stored["security|sql_interpolation|app/db.py|4"]["count"] == 2
    assert stored["security|sql_interpolation|app/db.py|4"]["firstSeen"] == first_seen.isoformat()
    assert "## Repeated Issues (1)" in second.render()


def test_load_memory_recovers_from_malformed_file(tmp_path: Path) -> None:
    memory_path = tmp_path / "regression_memory.json"
    memory_path.write_text('{"patterns": "oops"}', encoding="utf-8")

    assert load_memory(memory_path) == {"patterns": []}
