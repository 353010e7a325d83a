from __future__ import annotations

import textwrap
from pathlib import Path
from typing import Dict

import pytest

from patchpilot.errors import ErrorCode
from patchpilot.tools.diff_engine import (
    PatchError,
    WorkspaceFiles,
    apply_hunks,
    apply_patch,
    check_scope,
    dry_run,
    normalise_diff_text,
    parse_diff,
    validate_repo_path,
)
from patchpilot.tools.vcs import GitRepository


def _diff(text: str) -> str:
    return textwrap.dedent(text).lstrip()


class MemoryFiles:
    def __init__(self, files: Dict[str, str]) -> None:
        self.files = dict(files)
        self.writes: list[str] = []

    def read(self, path: str) -> str | None:
        return self.files.get(path)

    def write(self, path: str, content: str | None) -> None:
        self.writes.append(path)
        if content is None:
            self.files.pop(path, None)
        else:
            self.files[path] = content


MODIFY = _diff(
    """
    diff --git a/pkg/core.py b/pkg/core.py
    index 1111111..2222222 100644
    --- a/pkg/core.py
    +++ b/pkg/core.py
    @@ -1,3 +1,3 @@
     alpha
    -beta
    +BETA
     gamma
    """
)


def test_parse_diff_reads_sections_and_hunks() -> None:
    patch = parse_diff(MODIFY)

    assert [item.target_path() for item in patch.files] == ["pkg/core.py"]
    hunk = patch.files[0].hunks[0]
    assert (hunk.old_start, hunk.old_count, hunk.new_start, hunk.new_count) == (1, 3, 1, 3)
    assert [line.kind for line in hunk.lines] == ["context", "remove", "add", "context"]


def test_parse_diff_defaults_missing_counts_to_one() -> None:
    patch = parse_diff(
        _diff(
            """
            diff --git a/one.txt b/one.txt
            --- a/one.txt
            +++ b/one.txt
            @@ -1 +1 @@
            -old
            +new
            """
        )
    )

    hunk = patch.files[0].hunks[0]
    assert (hunk.old_count, hunk.new_count) == (1, 1)


def test_parse_diff_applies_body_when_header_counts_are_off() -> None:
    miscounted = MODIFY.replace("@@ -1,3 +1,3 @@", "@@ -1,4 +1,3 @@")

    hunk = parse_diff(miscounted).files[0].hunks[0]

    assert hunk.old_count == 4
    assert apply_hunks("alpha\nbeta\ngamma\n", [hunk]) == "alpha\nBETA\ngamma\n"


def test_parse_diff_accepts_paths_with_spaces() -> None:
    patch = parse_diff(
        "diff --git a/my file.txt b/my file.txt\n"
        "--- a/my file.txt\t\n"
        "+++ b/my file.txt\t\n"
        "@@ -1,2 +1,2 @@\n"
        " a\n"
        "-b\n"
        "+c\n"
    )

    assert patch.target_paths() == ["my file.txt"]
    assert patch.files[0].git_old_path == "my file.txt"


@pytest.mark.parametrize(
    "header",
    ["rename from a.txt", "similarity index 90%", "Binary files a/x and b/x differ"],
)
def test_parse_diff_rejects_renames_and_binaries(header: str) -> None:
    text = f"diff --git a/a.txt b/b.txt\n{header}\n"

    with pytest.raises(PatchError):
        parse_diff(text)


def test_parse_diff_rejects_text_before_first_header() -> None:
    with pytest.raises(PatchError):
        parse_diff("Here is your patch:\n" + MODIFY)


def test_parse_diff_ignores_no_newline_marker() -> None:
    patch = parse_diff(
        _diff(
            """
            diff --git a/note.txt b/note.txt
            --- a/note.txt
            +++ b/note.txt
            @@ -1 +1 @@
            -draft
            \\ No newline at end of file
            +final
            \\ No newline at end of file
            """
        )
    )

    assert len(patch.files[0].hunks[0].lines) == 2


@pytest.mark.parametrize("path", ["/etc/passwd", "C:\\windows\\x", "../outside.py", "pkg/../../x", ".git/config"])
def test_validate_repo_path_rejects_unsafe_paths(path: str) -> None:
    with pytest.raises(PatchError) as excinfo:
        validate_repo_path(path)

    assert excinfo.value.code is ErrorCode.SCOPE_VIOLATION


def test_apply_hunks_tracks_offsets_between_hunks() -> None:
    content = "\n".join(f"line{number}" for number in range(1, 11)) + "\n"
    patch = parse_diff(
        _diff(
            """
            diff --git a/f.txt b/f.txt
            --- a/f.txt
            +++ b/f.txt
            @@ -2,1 +2,3 @@
             line2
            +extra-a
            +extra-b
            @@ -8,2 +10,1 @@
             line8
            -line9
            """
        )
    )

    result = apply_hunks(content, patch.files[0].hunks)

    lines = result.split("\n")
    assert lines[:4] == ["line1", "line2", "extra-a", "extra-b"]
    assert "line9" not in lines
    assert lines[-2:] == ["line10", ""]


def test_zero_context_insertion_lands_after_named_line() -> None:
    patch = parse_diff(
        _diff(
            """
            diff --git a/f.txt b/f.txt
            --- a/f.txt
            +++ b/f.txt
            @@ -2,0 +3 @@
            +X
            """
        )
    )

    assert apply_hunks("a\nb\nc\n", patch.files[0].hunks) == "a\nb\nX\nc\n"


def test_apply_hunks_reports_mismatch() -> None:
    patch = parse_diff(MODIFY)

    with pytest.raises(PatchError) as excinfo:
        apply_hunks("alpha\nzeta\ngamma\n", patch.files[0].hunks, path="pkg/core.py")

    assert excinfo.value.code is ErrorCode.APPLY_FAILED
    assert excinfo.value.details["line"] == 2


def test_apply_patch_creates_and_deletes_files() -> None:
    files = MemoryFiles({"old.txt": "bye\n"})
    patch = parse_diff(
        _diff(
            """
            diff --git a/new.txt b/new.txt
            new file mode 100644
            --- /dev/null
            +++ b/new.txt
            @@ -0,0 +1,2 @@
            +hello
            +world
            diff --git a/old.txt b/old.txt
            deleted file mode 100644
            --- a/old.txt
            +++ /dev/null
            @@ -1 +0,0 @@
            -bye
            """
        )
    )

    changed = apply_patch(patch, files.read, files.write, impacted_files=["new.txt", "old.txt"])

    assert changed == {"new.txt", "old.txt"}
    assert files.files == {"new.txt": "hello\nworld\n"}


def test_apply_patch_is_all_or_nothing() -> None:
    files = MemoryFiles({"a.txt": "one\n", "b.txt": "two\n"})
    patch = parse_diff(
        _diff(
            """
            diff --git a/a.txt b/a.txt
            --- a/a.txt
            +++ b/a.txt
            @@ -1 +1 @@
            -one
            +ONE
            diff --git a/b.txt b/b.txt
            --- a/b.txt
            +++ b/b.txt
            @@ -1 +1 @@
            -not-two
            +TWO
            """
        )
    )

    with pytest.raises(PatchError):
        apply_patch(patch, files.read, files.write, impacted_files=["a.txt", "b.txt"])

    assert files.writes == []
    assert files.files["a.txt"] == "one\n"


def test_apply_patch_skips_delete_of_missing_file() -> None:
    files = MemoryFiles({})
    patch = parse_diff(
        _diff(
            """
            diff --git a/gone.txt b/gone.txt
            deleted file mode 100644
            --- a/gone.txt
            +++ /dev/null
            @@ -1 +0,0 @@
            -bye
            """
        )
    )

    assert apply_patch(patch, files.read, files.write, impacted_files=["gone.txt"]) == set()


def test_dry_run_flags_out_of_scope_paths() -> None:
    files = MemoryFiles({"pkg/core.py": "alpha\nbeta\ngamma\n"})

    with pytest.raises(PatchError) as excinfo:
        dry_run(parse_diff(MODIFY), files.read, impacted_files=["pkg/other.py"])

    assert excinfo.value.code is ErrorCode.SCOPE_VIOLATION
    assert excinfo.value.details["paths"] == ["pkg/core.py"]


def test_check_scope_honours_always_allowed_prefixes() -> None:
    check_scope(["dev_pipeline/notes.md", "pkg/core.py"], ["pkg/core.py"], ["dev_pipeline"])


def test_normalise_diff_text_strips_fences_and_crlf() -> None:
    fenced = "```diff\r\n" + MODIFY.replace("\n", "\r\n") + "```"

    assert normalise_diff_text(fenced) == MODIFY
    assert normalise_diff_text("   \n") == ""


def test_workspace_files_round_trip(tmp_path: Path) -> None:
    workspace = WorkspaceFiles(tmp_path)

    workspace.write("nested/dir/file.txt", "data\n")
    assert workspace.read("nested/dir/file.txt") == "data\n"
    workspace.write("nested/dir/file.txt", None)
    assert workspace.read("nested/dir/file.txt") is None


NUMBERED = "".join(f"line{number}\n" for number in range(1, 21))


@pytest.mark.parametrize("context", [0, 1, 3])
@pytest.mark.parametrize(
    ("before", "after"),
    [
        ("a\nb\nc\n", "a\nb\nX\nc\n"),
        ("a\nb\nc\n", "X\na\nb\nc\n"),
        ("a\nb\nc\n", "a\nb\nc\nX\n"),
        ("a\nb\nc\n", "a\nc\n"),
        ("", "fresh\nfile\n"),
        (
            NUMBERED,
            NUMBERED.replace("line3\n", "LINE3\n").replace("line10\n", "").replace("line15\n", "line15\nnew-a\nnew-b\n"),
        ),
    ],
)
def test_git_generated_diffs_round_trip(tmp_path: Path, before: str, after: str, context: int) -> None:
    target = tmp_path / "repo" / "my file.txt"
    target.parent.mkdir()
    target.write_text(before, encoding="utf-8")
    repo = GitRepository.initialise(target.parent)
    target.write_text(after, encoding="utf-8")

    diff_text = repo.git("diff", "--no-color", "--no-ext-diff", f"-U{context}").stdout
    patch = parse_diff(diff_text)

    assert patch.target_paths() == ["my file.txt"]
    assert apply_hunks(before, patch.files[0].hunks) == after
