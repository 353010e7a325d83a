from __future__ import annotations

from datetime import datetime

import pytest

from patchpilot.errors import ErrorCode
from patchpilot.tools.snapshots import SnapshotManager
from patchpilot.tools.vcs import GitError, GitRepository, task_branch_name

from conftest import SampleRepo


def test_task_branch_name_is_slugged_and_stamped() -> None:
    name = task_branch_name("Add Health-Check endpoint (API)!", now=datetime(2024, 5, 1, 8, 9, 10))

    assert name == "task/add-health-check-endpoint-api-20240501-080910"


def test_task_branch_name_falls_back_for_empty_slug() -> None:
    assert task_branch_name("!!!", now=datetime(2024, 1, 1)).startswith("task/task-")


def test_task_branch_name_cuts_long_slugs_without_digest() -> None:
    name = task_branch_name("a" * 30 + " " + "b" * 30, now=datetime(2024, 5, 1, 8, 9, 10))

    assert name == "task/" + "a" * 30 + "-" + "b" * 9 + "-20240501-080910"


def test_non_repository_is_rejected(tmp_path) -> None:
    with pytest.raises(GitError):
        GitRepository(tmp_path)


def test_ensure_clean_reports_dirty_tree(sample_repo: SampleRepo) -> None:
    (sample_repo.root / "scratch.txt").write_text("x", encoding="utf-8")

    with pytest.raises(GitError) as excinfo:
        sample_repo.repo.ensure_clean()

    assert excinfo.value.code is ErrorCode.DIRTY_REPO


def test_excluded_paths_do_not_dirty_the_tree(sample_repo: SampleRepo) -> None:
    repo = sample_repo.repo
    repo.exclude_path("/dev_pipeline/")
    repo.exclude_path("/dev_pipeline/")
    (sample_repo.root / "dev_pipeline" / "runs").mkdir(parents=True)
    (sample_repo.root / "dev_pipeline" / "runs" / "note.txt").write_text("x", encoding="utf-8")

    assert repo.is_clean()
    exclude = (sample_repo.root / ".git" / "info" / "exclude").read_text(encoding="utf-8")
    assert exclude.count("/dev_pipeline/") == 1


def test_branch_lifecycle(sample_repo: SampleRepo) -> None:
    repo = sample_repo.repo
    base = repo.current_branch()

    repo.create_branch("task/demo")
    assert repo.current_branch() == "task/demo"
    repo.checkout(base)
    repo.delete_branch("task/demo")

    assert not repo.branch_exists("task/demo")


def test_commit_all_returns_none_without_changes(sample_repo: SampleRepo) -> None:
    repo = sample_repo.repo
    assert repo.commit_all("noop") is None

    (sample_repo.root / "README.md").write_text("# changed\n", encoding="utf-8")
    sha = repo.commit_all("change readme")

    assert sha == repo.head_commit()


def test_snapshot_create_keeps_workspace_and_restore_rewinds(sample_repo: SampleRepo) -> None:
    root = sample_repo.root
    (root / "README.md").write_text("# attempt one\n", encoding="utf-8")
    (root / "draft.txt").write_text("untracked\n", encoding="utf-8")
    snapshots = SnapshotManager(sample_repo.repo, "run-1")

    snapshot = snapshots.create("attempt-1")

    assert snapshot.stashed
    assert sample_repo.read("README.md") == "# attempt one\n"
    assert snapshots.has_active("attempt-1")

    (root / "README.md").write_text("# broken\n", encoding="utf-8")
    (root / "junk.txt").write_text("junk\n", encoding="utf-8")
    snapshots.restore("attempt-1")

    assert sample_repo.read("README.md") == "# attempt one\n"
    assert sample_repo.read("draft.txt") == "untracked\n"
    assert not (root / "junk.txt").exists()
    assert not snapshots.has_active("attempt-1")
    assert sample_repo.repo.stash_list() == []


def test_clean_snapshot_restores_to_head(sample_repo: SampleRepo) -> None:
    snapshots = SnapshotManager(sample_repo.repo, "run-2")
    snapshot = snapshots.create("attempt-1")
    (sample_repo.root / "app" / "api.py").write_text("broken\n", encoding="utf-8")

    snapshots.restore("attempt-1")

    assert not snapshot.stashed
    assert sample_repo.repo.is_clean()


def test_snapshots_are_located_by_message(sample_repo: SampleRepo) -> None:
    root = sample_repo.root
    first = SnapshotManager(sample_repo.repo, "run-a")
    (root / "one.txt").write_text("1\n", encoding="utf-8")
    first.create("attempt-1")
    (root / "two.txt").write_text("2\n", encoding="utf-8")
    first.create("attempt-2")

    assert first.locate("attempt-1") == "stash@{1}"
    assert first.drop("attempt-1")
    assert first.locate("attempt-2") == "stash@{0}"

    first.drop_all()
    assert sample_repo.repo.stash_list() == []
    assert not first.drop("attempt-2")


def test_restore_without_snapshot_raises(sample_repo: SampleRepo) -> None:
    with pytest.raises(GitError):
        SnapshotManager(sample_repo.repo, "run-x").restore("attempt-9")
