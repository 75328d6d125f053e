from __future__ import annotations

import textwrap

import pytest

from selfheal.errors import DiffParseError, PatchApplyError
from selfheal.tools.diffs import (
    apply_file_patch,
    extract_diff,
    make_diff,
    parse_unified_diff,
    reverse_diff,
)

ORIGINAL = "".join(f"line {number}\n" for number in range(1, 21))


def _single_file(diff: str):
    files, _ = parse_unified_diff(diff)
    assert len(files) == 1
    return files[0]


def test_make_diff_applies_back_to_the_updated_text() -> None:
    updated = ORIGINAL.replace("line 7\n", "line seven\n").replace("line 15\n", "")

    diff = make_diff(ORIGINAL, updated, "notes.txt")

    assert diff.startswith("diff --git a/notes.txt b/notes.txt\n--- a/notes.txt\n+++ b/notes.txt\n")
    assert apply_file_patch(ORIGINAL, _single_file(diff)) == updated


def test_make_diff_is_empty_for_identical_text() -> None:
    assert make_diff(ORIGINAL, ORIGINAL, "notes.txt") == ""


def test_apply_locates_hunk_when_line_numbers_drift() -> None:
    diff = textwrap.dedent(
        """
        --- a/notes.txt
        +++ b/notes.txt
        @@ -3,3 +3,3 @@
         line 10
        -line 11
        +line eleven
         line 12
        """
    ).lstrip()

    patched = apply_file_patch(ORIGINAL, _single_file(diff))

    assert "line eleven\n" in patched
    assert "line 11\n" not in patched
    assert patched.count("\n") == ORIGINAL.count("\n")


def test_apply_rejects_hunk_whose_context_is_missing() -> None:
    diff = textwrap.dedent(
        """
        --- a/notes.txt
        +++ b/notes.txt
        @@ -1,2 +1,2 @@
         nothing like this
        -exists here
        +anywhere
        """
    ).lstrip()

    with pytest.raises(PatchApplyError):
        apply_file_patch(ORIGINAL, _single_file(diff))


def test_reverse_diff_restores_the_original() -> None:
    updated = ORIGINAL.replace("line 3\n", "line three\nline three and a half\n")
    diff = make_diff(ORIGINAL, updated, "notes.txt")

    restored = apply_file_patch(updated, _single_file(reverse_diff(diff)))

    assert restored == ORIGINAL


def test_apply_preserves_missing_trailing_newline() -> None:
    original = "alpha\nbeta"
    updated = "alpha\ngamma"
    diff = make_diff(original, updated, "tail.txt")

    assert "\\ No newline at end of file" in diff
    assert apply_file_patch(original, _single_file(diff)) == updated


def test_extract_prefers_fenced_diff_block() -> None:
    completion = textwrap.dedent(
        """
        Here is some shell you should not run:

        ```sh
        --- not a diff
        ```

        ```diff
        --- a/src/lib.rs
        +++ b/src/lib.rs
        @@ -1 +1 @@
        -fn old() {}
        +fn new() {}
        ```
        """
    )

    extraction = extract_diff(completion)

    assert extraction.source == "fenced"
    assert extraction.files[0].path == "src/lib.rs"
    assert extraction.added_lines == ["fn new() {}"]
    assert extraction.removed_lines == ["fn old() {}"]
    assert extraction.adjustments == ()


def test_extract_accepts_bare_headers_and_recounts_hunks() -> None:
    completion = textwrap.dedent(
        """
        The fix:
        diff --git a/app.py b/app.py
        --- a/app.py
        +++ b/app.py
        @@ -1,5 +1,5 @@
         import os
        -value = eval(text)
        +value = int(text)
        """
    )

    extraction = extract_diff(completion)

    assert extraction.source == "headers"
    hunk = extraction.files[0].hunks[0]
    assert (hunk.old_count, hunk.new_count) == (2, 2)
    assert extraction.adjustments


def test_extract_parses_new_file_sections() -> None:
    completion = textwrap.dedent(
        """
        ```diff
        --- /dev/null
        +++ b/docs/NOTES.md
        @@ -0,0 +1,2 @@
        +# Notes
        +Added by a patch.
        ```
        """
    )

    target = extract_diff(completion).files[0]

    assert target.is_new_file
    assert apply_file_patch("", target) == "# Notes\nAdded by a patch.\n"


@pytest.mark.parametrize(
    "completion",
    [
        "",
        "I could not find a fix for this issue.",
        "```diff\n@@ -1 +1 @@\n-a\n+b\n```",
        "--- a/x.py\n+++ b/x.py\nno hunks here\n",
        "--- a/x.py\n+++ b/x.py\n@@ -one +1 @@\n-a\n+b\n",
    ],
)
def test_extract_rejects_text_without_a_valid_diff(completion: str) -> None:
    with pytest.raises(DiffParseError):
        extract_diff(completion)


@pytest.mark.parametrize("header", ["/etc/passwd", "a/../outside.py", "b/.git/config"])
def test_parse_rejects_paths_outside_the_repository(header: str) -> None:
    diff = f"--- {header}\n+++ {header}\n@@ -1 +1 @@\n-a\n+b\n"

    with pytest.raises(DiffParseError):
        parse_unified_diff(diff)


def _context_only_diff(original: str, path: str = "notes.txt") -> str:
    lines = original.splitlines()
    head = "".join(f" {line}\n" for line in lines[:2])
    tail = "".join(f" {line}\n" for line in lines[-3:])
    tail_start = len(lines) - 2
    marker = "\\ No newline at end of file\n" if not original.endswith(("\n", "\r")) else ""
    return (
        f"--- a/{path}\n+++ b/{path}\n"
        f"@@ -1,2 +1,2 @@\n{head}"
        f"@@ -{tail_start},3 +{tail_start},3 @@\n{tail}{marker}"
    )


@pytest.mark.parametrize(
    "original",
    [
        ORIGINAL,
        ORIGINAL.replace("\n", "\r\n"),
        ORIGINAL.rstrip("\n"),
        ORIGINAL.replace("\n", "\r\n").rstrip("\r\n"),
    ],
    ids=["lf", "crlf", "lf-no-final-newline", "crlf-no-final-newline"],
)
def test_context_only_diff_leaves_text_byte_identical(original: str) -> None:
    file_patch = _single_file(_context_only_diff(original))

    assert apply_file_patch(original, file_patch) == original
