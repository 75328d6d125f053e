"""Single-pass parsing of source files into a shared representation."""

from __future__ import annotations

import ast
import io
import tokenize
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Dict, List, Literal, Optional, Tuple

from ..config import AnalysisSettings
from ..storage.schema import Issue, IssueKind, Severity

Language = Literal["python", "rust", "text"]

_LANGUAGES: Dict[str, Language] = {".py": "python", ".rs": "rust"}
_CLOSERS = {")": "(", "]": "[", "}": "{"}


class SourceParseError(ValueError):
    """Raised internally when a file cannot be parsed."""

    def __init__(self, message: str, line: int = 1, column: int = 1) -> None:
        super().__init__(message)
        self.line = max(1, line)
        self.column = max(1, column)


@dataclass(slots=True)
class ParsedSource:
    """Parsed view of one file shared by every detector pass.

    ``code_lines`` mirrors ``lines`` with comments and string literals blanked
    out, so pattern-based passes never match inside prose.
    """

    path: str
    language: Language
    text: str
    lines: List[str]
    code_lines: List[str]
    tree: Optional[ast.Module] = None
    settings: AnalysisSettings = field(default_factory=AnalysisSettings)

    def context(self, line: int) -> Dict[str, str]:
        span = self.settings.context_lines
        index = line - 1
        before = self.lines[max(0, index - span):max(0, index)]
        after = self.lines[index + 1:index + 1 + span]
        current = self.lines[index] if 0 <= index < len(self.lines) else ""
        return {"before": "\n".join(before), "line": current, "after": "\n".join(after)}

    def issue(
        self,
        *,
        line: int,
        kind: IssueKind,
        severity: Severity,
        message: str,
        rule: str,
        column: int = 1,
        suggestion: str | None = None,
    ) -> Issue:
        return Issue(
            file_path=self.path,
            line=line,
            column=column,
            kind=kind,
            severity=severity,
            message=message,
            rule=rule,
            suggestion=suggestion,
            context=self.context(line),
        )


def language_for(path: str) -> Language:
    return _LANGUAGES.get(PurePosixPath(path).suffix, "text")


# ------------------------------------------------------------------ masking
def _mask_python(text: str) -> List[str]:
    lines = text.splitlines()
    masked = [list(line) for line in lines]
    reader = io.StringIO(text).readline
    try:
        for token in tokenize.generate_tokens(reader):
            if token.type not in (tokenize.COMMENT, tokenize.STRING):
                continue
            (start_row, start_col), (end_row, end_col) = token.start, token.end
            for row in range(start_row, end_row + 1):
                if row - 1 >= len(masked):
                    break
                chars = masked[row - 1]
                first = start_col if row == start_row else 0
                last = end_col if row == end_row else len(chars)
                for col in range(first, min(last, len(chars))):
                    chars[col] = " "
    except (tokenize.TokenError, IndentationError) as error:
        raise SourceParseError(f"Tokenizer failed: {error}") from error
    return ["".join(chars) for chars in masked]


def _mask_rust(text: str) -> Tuple[List[str], List[Tuple[str, int, int]]]:
    """Blank comments and string literals; return masked lines plus delimiter events."""

    out: List[str] = []
    delimiters: List[Tuple[str, int, int]] = []
    block_depth = 0
    in_string = False
    string_start = (1, 1)
    line_no = 1
    col = 1
    index = 0
    length = len(text)
    while index < length:
        char = text[index]
        nxt = text[index + 1] if index + 1 < length else ""
        if char == "\n":
            out.append("\n")
            line_no += 1
            col = 1
            index += 1
            continue
        if block_depth:
            if char == "/" and nxt == "*":
                block_depth += 1
                out.append("  ")
                index += 2
                col += 2
                continue
            if char == "*" and nxt == "/":
                block_depth -= 1
                out.append("  ")
                index += 2
                col += 2
                continue
            out.append(" ")
        elif in_string:
            if char == "\\" and nxt and nxt != "\n":
                out.append("  ")
                index += 2
                col += 2
                continue
            if char == '"':
                in_string = False
                out.append('"')
            else:
                out.append(" ")
        elif char == "/" and nxt == "/":
            end = text.find("\n", index)
            end = length if end == -1 else end
            out.append(" " * (end - index))
            col += end - index
            index = end
            continue
        elif char == "/" and nxt == "*":
            block_depth = 1
            out.append("  ")
            index += 2
            col += 2
            continue
        elif char == '"':
            in_string = True
            string_start = (line_no, col)
            out.append('"')
        elif char == "'":
            # Char literals ('x', '\n', '\u{1F600}'); a bare quote is a lifetime.
            end = -1
            if nxt == "\\":
                end = text.find("'", index + 2, index + 12)
            elif nxt and nxt != "\n" and index + 2 < length and text[index + 2] == "'":
                end = index + 2
            if end == -1:
                out.append(char)
            else:
                width = end - index + 1
                out.append(" " * width)
                index += width
                col += width
                continue
        else:
            if char in "([{" or char in _CLOSERS:
                delimiters.append((char, line_no, col))
            out.append(char)
        index += 1
        col += 1
    if block_depth:
        raise SourceParseError("Unterminated block comment", line_no, col)
    if in_string:
        raise SourceParseError("Unterminated string literal", *string_start)
    masked = "".join(out).split("\n")
    return masked[: len(text.splitlines())], delimiters


def _check_balance(delimiters: List[Tuple[str, int, int]]) -> None:
    stack: List[Tuple[str, int, int]] = []
    for char, line, col in delimiters:
        if char in "([{":
            stack.append((char, line, col))
            continue
        if not stack or stack[-1][0] != _CLOSERS[char]:
            raise SourceParseError(f"Unexpected closing delimiter '{char}'", line, col)
        stack.pop()
    if stack:
        char, line, col = stack[-1]
        raise SourceParseError(f"Unclosed delimiter '{char}'", line, col)


# ------------------------------------------------------------------ parsing
def parse_source(path: str, text: str, settings: AnalysisSettings | None = None) -> ParsedSource:
    """Parse ``text`` once; raise :class:`SourceParseError` when it is malformed."""

    settings = settings or AnalysisSettings()
    language = language_for(path)
    lines = text.splitlines()
    tree: Optional[ast.Module] = None
    if language == "python":
        try:
            tree = ast.parse(text, filename=path)
        except SyntaxError as error:
            raise SourceParseError(error.msg, error.lineno or 1, error.offset or 1) from error
        code_lines = _mask_python(text)
    elif language == "rust":
        code_lines, delimiters = _mask_rust(text)
        _check_balance(delimiters)
    else:
        code_lines = list(lines)
    return ParsedSource(
        path=path,
        language=language,
        text=text,
        lines=lines,
        code_lines=code_lines,
        tree=tree,
        settings=settings,
    )


def parse_error_issue(path: str, text: str, error: SourceParseError, settings: AnalysisSettings) -> Issue:
    """File-level issue reported instead of running passes on an unparseable file."""

    placeholder = ParsedSource(
        path=path,
        language=language_for(path),
        text=text,
        lines=text.splitlines(),
        code_lines=[],
        settings=settings,
    )
    return placeholder.issue(
        line=error.line,
        column=error.column,
        kind=IssueKind.PARSE_ERROR,
        severity=Severity.HIGH,
        message=f"Failed to parse {path}: {error}",
        rule="PARSE001",
    )


__all__ = [
    "Language",
    "ParsedSource",
    "SourceParseError",
    "language_for",
    "parse_error_issue",
    "parse_source",
]
