from __future__ import annotations

import textwrap
from pathlib import Path

from patchpilot.stages.contract import (
    ContractDiff,
    build_impact_report,
    check_integrity,
    compute_contract_snapshot,
    diff_contracts,
    extract_api_calls,
    extract_endpoints,
    normalise_api_path,
    placeholder_test_name,
    write_placeholder_tests,
)

BACKEND = textwrap.dedent(
    """
    from fastapi import APIRouter, Depends

    router = APIRouter(prefix="/api/items")


    @router.get("/")
    def list_items():
        return []


    @router.delete("/{item_id}")
    @requires_role("admin", "owner")
    def delete_item(item_id: int):
        return None


    @bp.route("/legacy/<int:legacy_id>", methods=["GET", "POST"])
    @login_required
    def legacy(legacy_id):
        return None
    """
).lstrip()

VIEW = textwrap.dedent(
    """
    export async function load(id) {
      await apiClient.get(`/api/items/${id}?expand=1`);
      await fetch("/api/items/", { method: "GET" });
      await fetch('/api/orders', { method: 'post' });
    }
    """
).lstrip()


def test_normalise_api_path_rewrites_parameters() -> None:
    assert normalise_api_path("/api/items/<int:item_id>/") == "/api/items/:item_id"
    assert normalise_api_path("/api//items/{item_id:int}?q=1") == "/api/items/:item_id"
    assert normalise_api_path("/api/items/${item.id}") == "/api/items/:id"
    assert normalise_api_path("") == "/"


def test_extract_endpoints_reads_prefixes_guards_and_roles() -> None:
    endpoints = {endpoint.key: endpoint for endpoint in extract_endpoints(BACKEND)}

    assert sorted(endpoints) == [
        "DELETE /api/items/:item_id",
        "GET /api/items",
        "GET /legacy/:legacy_id",
        "POST /legacy/:legacy_id",
    ]
    assert endpoints["GET /api/items"].signature == "public|"
    assert endpoints["DELETE /api/items/:item_id"].signature == "admin|owner|requires_role"
    assert endpoints["POST /legacy/:legacy_id"].role == "authenticated"


def test_extract_api_calls_defaults_fetch_to_get() -> None:
    assert extract_api_calls(VIEW) == ["GET /api/items", "GET /api/items/:id", "POST /api/orders"]


def test_snapshot_digest_tracks_contract_changes(tmp_path: Path) -> None:
    (tmp_path / "api.py").write_text(BACKEND, encoding="utf-8")
    (tmp_path / "view.js").write_text(VIEW, encoding="utf-8")

    baseline = compute_contract_snapshot(tmp_path, ["api.py"], ["view.js"])
    again = compute_contract_snapshot(tmp_path, ["api.py"], ["view.js"])
    (tmp_path / "api.py").write_text(BACKEND.replace('"/{item_id}"', '"/{item_id}/archive"'), encoding="utf-8")
    changed = compute_contract_snapshot(tmp_path, ["api.py"], ["view.js"])

    assert baseline.digest() == again.digest()
    assert baseline.digest() != changed.digest()
    diff = diff_contracts(baseline.signatures, changed.signatures)
    assert diff.added == ["DELETE /api/items/:item_id/archive"]
    assert diff.removed == ["DELETE /api/items/:item_id"]


def test_integrity_reports_calls_without_backend(tmp_path: Path) -> None:
    (tmp_path / "api.py").write_text(BACKEND, encoding="utf-8")
    (tmp_path / "view.js").write_text(VIEW, encoding="utf-8")

    integrity = check_integrity(compute_contract_snapshot(tmp_path, ["api.py"], ["view.js"]))

    assert integrity == {
        "integrity": {"status": "FAILED", "missing": ["GET /api/items/:id", "POST /api/orders"]}
    }


def test_diff_contracts_detects_modified_signatures() -> None:
    diff = diff_contracts({"GET /a": "public|"}, {"GET /a": "admin|requires_role"})

    assert diff.modified == ["GET /a"]
    assert diff.changed_endpoints == ["GET /a"]


def test_placeholder_tests_are_written_once(tmp_path: Path) -> None:
    diff = ContractDiff(added=["GET /api/items/:item_id"], modified=["POST /login"])

    written = write_placeholder_tests(tmp_path / "generated", diff)
    again = write_placeholder_tests(tmp_path / "generated", diff)

    assert [path.name for path in written] == ["test_get_api_items_item_id.py", "test_post_login.py"]
    assert again == []
    source = written[0].read_text(encoding="utf-8")
    assert "@pytest.mark.skip" in source
    assert "def test_get_api_items_item_id() -> None:" in source


def test_placeholder_name_for_root_path() -> None:
    assert placeholder_test_name("GET /") == "test_get_root.py"


def test_impact_report_maps_python_modules() -> None:
    report = build_impact_report(["app/api.py", "web/app.js", "app/api.py"])

    assert report == {"impact": {"changedFiles": ["app/api.py"], "modules": ["app.api"]}}
