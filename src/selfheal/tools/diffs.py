"""Unified diff parsing, extraction and application.

The grammar accepted by :func:`extract_diff` is deliberately small:

* a fenced code block labelled ``diff`` / ``patch`` / ``udiff`` whose body is a
  unified diff, or
* a literal ``---`` line immediately followed by a ``+++`` line, optionally
  preceded by ``diff --git`` extended headers, followed by ``@@`` hunks.

Anything else is a :class:`DiffParseError`. Hunk line counts that disagree
with the body are recomputed and reported as adjustments rather than failing,
so callers can weigh well-formedness separately from "did we find a diff".
"""

from __future__ import annotations

import difflib
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Iterable, List, Literal, Sequence, Tuple

from ..errors import DiffParseError, PatchApplyError

_HUNK_HEADER = re.compile(
    r"^@@ -(?P<old_start>\d+)(?:,(?P<old_count>\d+))? "
    r"\+(?P<new_start>\d+)(?:,(?P<new_count>\d+))? @@(?P<section>.*)$"
)
_FENCE = re.compile(r"```[ \t]*(?P<label>[\w+-]*)[^\n]*\n(?P<body>.*?)```", re.DOTALL)
_FENCE_LABELS = {"diff", "patch", "udiff"}
_EXTENDED_HEADERS = (
    "diff --git ",
    "index ",
    "new file mode",
    "deleted file mode",
    "old mode",
    "new mode",
    "similarity index",
)
_NO_NEWLINE = "\\ No newline at end of file"


@dataclass(slots=True)
class Hunk:
    """A single ``@@`` block; ``lines`` keep their one-character prefix."""

    old_start: int
    old_count: int
    new_start: int
    new_count: int
    lines: List[str] = field(default_factory=list)
    section: str = ""

    def old_lines(self) -> List[str]:
        return [entry[1:].rstrip("\r") for entry in self.lines if entry[:1] in (" ", "-")]

    def new_lines(self) -> List[str]:
        return [entry[1:].rstrip("\r") for entry in self.lines if entry[:1] in (" ", "+")]

    @property
    def added(self) -> List[str]:
        return [entry[1:] for entry in self.lines if entry.startswith("+")]

    @property
    def removed(self) -> List[str]:
        return [entry[1:] for entry in self.lines if entry.startswith("-")]

    def header(self) -> str:
        return f"@@ -{self.old_start},{self.old_count} +{self.new_start},{self.new_count} @@{self.section}"

    def reversed(self) -> "Hunk":
        swapped = []
        for entry in self.lines:
            if entry.startswith("+"):
                swapped.append("-" + entry[1:])
            elif entry.startswith("-"):
                swapped.append("+" + entry[1:])
            else:
                swapped.append(entry)
        return Hunk(
            old_start=self.new_start,
            old_count=self.new_count,
            new_start=self.old_start,
            new_count=self.old_count,
            lines=swapped,
            section=self.section,
        )


@dataclass(slots=True)
class FilePatch:
    """All hunks touching one file. ``None`` paths stand for ``/dev/null``."""

    old_path: str | None
    new_path: str | None
    hunks: List[Hunk] = field(default_factory=list)

    @property
    def path(self) -> str:
        return self.new_path or self.old_path or ""

    @property
    def is_new_file(self) -> bool:
        return self.old_path is None

    @property
    def is_deleted(self) -> bool:
        return self.new_path is None

    def reversed(self) -> "FilePatch":
        return FilePatch(
            old_path=self.new_path,
            new_path=self.old_path,
            hunks=[hunk.reversed() for hunk in self.hunks],
        )


@dataclass(slots=True)
class DiffExtraction:
    """Successfully parsed diff pulled out of free-form text."""

    files: List[FilePatch]
    source: Literal["fenced", "headers"]
    adjustments: Tuple[str, ...] = ()

    @property
    def text(self) -> str:
        return render_diff(self.files)

    @property
    def hunk_count(self) -> int:
        return sum(len(file_patch.hunks) for file_patch in self.files)

    @property
    def added_lines(self) -> List[str]:
        return [line for file_patch in self.files for hunk in file_patch.hunks for line in hunk.added]

    @property
    def removed_lines(self) -> List[str]:
        return [line for file_patch in self.files for hunk in file_patch.hunks for line in hunk.removed]

    @property
    def changed_line_count(self) -> int:
        return len(self.added_lines) + len(self.removed_lines)

    def file_for(self, path: str) -> FilePatch | None:
        """Return the file section targeting ``path``, or the only section."""
        wanted = PurePosixPath(path).as_posix()
        for file_patch in self.files:
            if file_patch.path == wanted or file_patch.old_path == wanted:
                return file_patch
        if len(self.files) == 1:
            return self.files[0]
        return None


# ---------------------------------------------------------------- parsing
def _normalise_diff_path(entry: str) -> str | None:
    """Translate ``---``/``+++`` operands into repository-relative paths."""
    entry = entry.split("\t", 1)[0].strip()
    if entry == "/dev/null" or not entry:
        return None
    if entry.startswith("a/") or entry.startswith("b/"):
        entry = entry[2:]
    return entry or None


def _validate_paths(paths: Iterable[str | None]) -> None:
    for raw in paths:
        if raw is None:
            continue
        path = PurePosixPath(raw)
        if path.is_absolute():
            raise DiffParseError(f"Absolute paths are not permitted in patches: {raw}")
        if ".." in path.parts:
            raise DiffParseError(f"Path escaping detected in patch: {raw}")
        if path.parts and path.parts[0] == ".git":
            raise DiffParseError("Patches may not target the .git directory.")


def _is_file_header(lines: Sequence[str], index: int) -> bool:
    return (
        lines[index].startswith("--- ")
        and index + 1 < len(lines)
        and lines[index + 1].startswith("+++ ")
    )


def _parse_hunk(lines: Sequence[str], index: int, adjustments: List[str]) -> Tuple[Hunk, int]:
    match = _HUNK_HEADER.match(lines[index])
    if not match:
        raise DiffParseError(f"Malformed hunk header: {lines[index]!r}")
    old_start = int(match.group("old_start"))
    old_count = int(match.group("old_count")) if match.group("old_count") is not None else 1
    new_start = int(match.group("new_start"))
    new_count = int(match.group("new_count")) if match.group("new_count") is not None else 1

    body: List[str] = []
    index += 1
    while index < len(lines):
        line = lines[index]
        if line.startswith("@@") or line.startswith("diff --git ") or _is_file_header(lines, index):
            break
        if line == "":
            body.append(" ")
        elif line[0] in " +-\\":
            body.append(line)
        else:
            break
        index += 1

    def _count(prefixes: str) -> int:
        return sum(1 for entry in body if entry[:1] in prefixes)

    while body and body[-1] == " " and _count(" -") > old_count:
        body.pop()

    if not any(entry[:1] in " +-" for entry in body):
        raise DiffParseError(f"Empty hunk at {lines[index - 1]!r}")

    actual_old, actual_new = _count(" -"), _count(" +")
    if (actual_old, actual_new) != (old_count, new_count):
        adjustments.append(
            f"hunk -{old_start},{old_count} +{new_start},{new_count} recounted as "
            f"-{old_start},{actual_old} +{new_start},{actual_new}"
        )
    hunk = Hunk(
        old_start=old_start,
        old_count=actual_old,
        new_start=new_start,
        new_count=actual_new,
        lines=body,
        section=match.group("section") or "",
    )
    return hunk, index


def parse_unified_diff(text: str) -> Tuple[List[FilePatch], Tuple[str, ...]]:
    """Parse ``text`` into file sections, returning them with count adjustments."""

    lines = text.splitlines()
    files: List[FilePatch] = []
    adjustments: List[str] = []
    index = 0
    while index < len(lines):
        if _is_file_header(lines, index):
            old_path = _normalise_diff_path(lines[index][4:])
            new_path = _normalise_diff_path(lines[index + 1][4:])
            if old_path is None and new_path is None:
                raise DiffParseError("File header references /dev/null on both sides.")
            _validate_paths((old_path, new_path))
            index += 2
            hunks: List[Hunk] = []
            while index < len(lines) and lines[index].startswith("@@"):
                hunk, index = _parse_hunk(lines, index, adjustments)
                hunks.append(hunk)
            if not hunks:
                raise DiffParseError(f"File section for {new_path or old_path} has no hunks.")
            files.append(FilePatch(old_path=old_path, new_path=new_path, hunks=hunks))
            continue
        if lines[index].startswith("@@"):
            raise DiffParseError("Hunk found before any ---/+++ file header.")
        index += 1
    if not files:
        raise DiffParseError("No ---/+++ file header pair found.")
    return files, tuple(adjustments)


def extract_diff(completion: str) -> DiffExtraction:
    """Pull the first valid unified diff out of a model completion."""

    if not completion or not completion.strip():
        raise DiffParseError("Completion is empty.")

    problems: List[str] = []
    for match in _FENCE.finditer(completion):
        if match.group("label").lower() not in _FENCE_LABELS:
            continue
        try:
            files, adjustments = parse_unified_diff(match.group("body"))
        except DiffParseError as error:
            problems.append(str(error))
            continue
        return DiffExtraction(files=files, source="fenced", adjustments=adjustments)

    lines = completion.splitlines()
    for index in range(len(lines)):
        if not _is_file_header(lines, index):
            continue
        start = index
        while start > 0 and lines[start - 1].startswith(_EXTENDED_HEADERS):
            start -= 1
        try:
            files, adjustments = parse_unified_diff("\n".join(lines[start:]))
        except DiffParseError as error:
            problems.append(str(error))
            break
        return DiffExtraction(files=files, source="headers", adjustments=adjustments)

    message = problems[0] if problems else "No fenced diff block or ---/+++ header pair found."
    raise DiffParseError(message, details={"problems": problems})


# -------------------------------------------------------------- rendering
def render_diff(files: Sequence[FilePatch]) -> str:
    """Render file sections as a git-style diff with ``a/`` and ``b/`` prefixes."""

    out: List[str] = []
    for file_patch in files:
        left = file_patch.old_path or file_patch.new_path
        right = file_patch.new_path or file_patch.old_path
        out.append(f"diff --git a/{left} b/{right}")
        if file_patch.is_new_file:
            out.append("new file mode 100644")
        if file_patch.is_deleted:
            out.append("deleted file mode 100644")
        out.append(f"--- a/{file_patch.old_path}" if file_patch.old_path else "--- /dev/null")
        out.append(f"+++ b/{file_patch.new_path}" if file_patch.new_path else "+++ /dev/null")
        for hunk in file_patch.hunks:
            out.append(hunk.header())
            out.extend(hunk.lines)
    return "\n".join(out) + "\n" if out else ""


def reverse_diff(diff: str) -> str:
    """Return the inverse of ``diff``."""

    files, _ = parse_unified_diff(diff)
    return render_diff([file_patch.reversed() for file_patch in files])


def make_diff(original: str, updated: str, path: str) -> str:
    """Build a unified diff for a single file using :mod:`difflib`."""

    lines = difflib.unified_diff(
        original.splitlines(keepends=True),
        updated.splitlines(keepends=True),
        fromfile=f"a/{path}",
        tofile=f"b/{path}",
    )
    out: List[str] = []
    for line in lines:
        if line.endswith("\n"):
            out.append(line)
        else:
            out.append(line + "\n")
            out.append(_NO_NEWLINE + "\n")
    if not out:
        return ""
    return f"diff --git a/{path} b/{path}\n" + "".join(out)


# ---------------------------------------------------------------- applying
def _matches(lines: Sequence[str], block: Sequence[str], position: int, *, loose: bool) -> bool:
    for offset, expected in enumerate(block):
        actual = lines[position + offset].rstrip("\r\n")
        if loose:
            if actual.rstrip() != expected.rstrip():
                return False
        elif actual != expected:
            return False
    return True


def _locate(lines: Sequence[str], block: Sequence[str], expected: int, floor: int) -> int | None:
    """Find ``block`` in ``lines`` at or after ``floor``, nearest to ``expected``."""
    limit = len(lines) - len(block)
    if limit < floor:
        return None
    expected = min(max(expected, floor), limit)
    if not block:
        return expected
    reach = max(expected - floor, limit - expected)
    for loose in (False, True):
        for delta in range(reach + 1):
            for candidate in (expected - delta, expected + delta):
                if floor <= candidate <= limit and _matches(lines, block, candidate, loose=loose):
                    return candidate
                if delta == 0:
                    break
    return None


def apply_file_patch(original: str, file_patch: FilePatch) -> str:
    """Apply ``file_patch`` to ``original`` by matching context lines.

    Each hunk is located at its stated line when possible, otherwise at the
    nearest offset where its context and removed lines match. Unchanged lines
    are copied from ``original`` verbatim, so a context-only diff reproduces
    the input exactly.
    """

    if file_patch.is_new_file:
        original = ""
    lines = original.splitlines(keepends=True)
    newline = "\r\n" if lines and lines[0].endswith("\r\n") else "\n"
    output: List[str] = []
    cursor = 0
    for number, hunk in enumerate(file_patch.hunks, start=1):
        declared = hunk.old_start - 1 if hunk.old_count else hunk.old_start
        position = _locate(lines, hunk.old_lines(), declared, cursor)
        if position is None:
            raise PatchApplyError(
                f"Hunk #{number} does not apply to {file_patch.path}",
                details={"path": file_patch.path, "hunk": number, "line": hunk.old_start},
            )
        output.extend(lines[cursor:position])
        index = position
        for entry_index, entry in enumerate(hunk.lines):
            tag = entry[:1]
            if tag == " ":
                output.append(lines[index])
                index += 1
            elif tag == "-":
                index += 1
            elif tag == "+":
                follows_marker = (
                    entry_index + 1 < len(hunk.lines) and hunk.lines[entry_index + 1].startswith("\\")
                )
                text = entry[1:].rstrip("\r")
                output.append(text if follows_marker else text + newline)
        cursor = index
    output.extend(lines[cursor:])
    for index in range(len(output) - 1):
        if not output[index].endswith(("\n", "\r")):
            output[index] += newline
    if file_patch.is_deleted:
        return ""
    return "".join(output)


__all__ = [
    "DiffExtraction",
    "FilePatch",
    "Hunk",
    "apply_file_patch",
    "extract_diff",
    "make_diff",
    "parse_unified_diff",
    "render_diff",
    "reverse_diff",
]
