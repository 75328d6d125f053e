"""Detector passes.

Each pass is a pure function from a :class:`ParsedSource` to a list of
issues. Passes never share state and can be run, enabled, or tested on their
own. The module exposes two registries:

``DETECTOR_PASSES``
    Metadata describing each pass and the rule codes it may emit.

``PASS_DISPATCH``
    Mapping from pass name to the callable implementing it.
"""

from __future__ import annotations

import ast
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Dict, List, Tuple

from ..storage.schema import Issue, IssueKind, Severity
from .parsing import ParsedSource

DetectorPass = Callable[[ParsedSource], List[Issue]]


@dataclass(slots=True)
class PassDefinition:
    """Metadata describing a detector pass."""

    name: str
    description: str
    rules: Tuple[str, ...]


@dataclass(frozen=True, slots=True)
class _PatternRule:
    rule: str
    pattern: re.Pattern[str]
    kind: IssueKind
    severity: Severity
    message: str
    suggestion: str | None = None


def _scan(source: ParsedSource, rules: Iterable[_PatternRule]) -> List[Issue]:
    issues: List[Issue] = []
    for number, line in enumerate(source.code_lines, start=1):
        for rule in rules:
            match = rule.pattern.search(line)
            if match is None:
                continue
            issues.append(
                source.issue(
                    line=number,
                    column=match.start() + 1,
                    kind=rule.kind,
                    severity=rule.severity,
                    message=rule.message,
                    rule=rule.rule,
                    suggestion=rule.suggestion,
                )
            )
    return issues


def _call_name(node: ast.Call) -> str:
    """Dotted name of the called object, e.g. ``os.system``; empty when dynamic."""
    parts: List[str] = []
    target: ast.AST = node.func
    while isinstance(target, ast.Attribute):
        parts.append(target.attr)
        target = target.value
    if isinstance(target, ast.Name):
        parts.append(target.id)
        return ".".join(reversed(parts))
    return ""


def _keyword_true(node: ast.Call, name: str) -> bool:
    for keyword in node.keywords:
        if keyword.arg == name and isinstance(keyword.value, ast.Constant) and keyword.value.value is True:
            return True
    return False


# ---------------------------------------------------------------- security
_RUST_SECURITY = (
    _PatternRule(
        "SEC001",
        re.compile(r"\b(?:std::process::)?Command::new\s*\("),
        IssueKind.SECURITY,
        Severity.HIGH,
        "External process spawned; validate every argument that reaches it.",
        "Avoid spawning processes or pass a fixed, validated argument list.",
    ),
    _PatternRule(
        "SEC002",
        re.compile(r"\bfs::remove_(?:file|dir|dir_all)\s*\("),
        IssueKind.SECURITY,
        Severity.MEDIUM,
        "Filesystem deletion without path validation.",
        "Check the target path is inside the expected directory before deleting.",
    ),
    _PatternRule(
        "SEC003",
        re.compile(r"\bfs::write\s*\("),
        IssueKind.SECURITY,
        Severity.LOW,
        "Direct filesystem write.",
    ),
)


def security_pass(source: ParsedSource) -> List[Issue]:
    if source.language == "rust":
        return _scan(source, _RUST_SECURITY)
    if source.tree is None:
        return []
    issues: List[Issue] = []
    for node in ast.walk(source.tree):
        if not isinstance(node, ast.Call):
            continue
        name = _call_name(node)
        finding: Tuple[str, Severity, str] | None = None
        if name in {"eval", "exec"}:
            finding = ("SEC101", Severity.HIGH, f"Use of {name}() on dynamic input.")
        elif name in {"os.system", "os.popen"}:
            finding = ("SEC102", Severity.HIGH, f"{name}() runs a shell command.")
        elif name.startswith("subprocess.") and _keyword_true(node, "shell"):
            finding = ("SEC103", Severity.HIGH, f"{name}() called with shell=True.")
        elif name in {"pickle.loads", "pickle.load", "marshal.loads"}:
            finding = ("SEC104", Severity.MEDIUM, f"{name}() deserialises untrusted data.")
        elif name == "yaml.load" and not any(keyword.arg == "Loader" for keyword in node.keywords):
            finding = ("SEC105", Severity.MEDIUM, "yaml.load() without an explicit Loader.")
        if finding is None:
            continue
        rule, severity, message = finding
        issues.append(
            source.issue(
                line=node.lineno,
                column=node.col_offset + 1,
                kind=IssueKind.SECURITY,
                severity=severity,
                message=message,
                rule=rule,
            )
        )
    return issues


# ------------------------------------------------------------------ unsafe
_RUST_UNSAFE = (
    _PatternRule(
        "UNS001",
        re.compile(r"\bunsafe\s*\{"),
        IssueKind.UNSAFE_CODE,
        Severity.HIGH,
        "Unsafe block bypasses borrow and memory checks.",
        "Replace with a safe abstraction or document the invariants it relies on.",
    ),
    _PatternRule(
        "UNS002",
        re.compile(r"\bunsafe\s+fn\b"),
        IssueKind.UNSAFE_CODE,
        Severity.MEDIUM,
        "Unsafe function declaration.",
    ),
    _PatternRule(
        "UNS003",
        re.compile(r"\b(?:mem::)?transmute\s*(?:::<[^>]*>)?\s*\("),
        IssueKind.UNSAFE_CODE,
        Severity.CRITICAL,
        "transmute reinterprets memory without any type checking.",
    ),
    _PatternRule(
        "UNS004",
        re.compile(r"\bptr::(?:read|write)\s*\("),
        IssueKind.UNSAFE_CODE,
        Severity.HIGH,
        "Raw pointer read/write.",
    ),
)


def unsafe_pass(source: ParsedSource) -> List[Issue]:
    if source.language == "rust":
        return _scan(source, _RUST_UNSAFE)
    if source.tree is None:
        return []
    issues: List[Issue] = []
    for node in ast.walk(source.tree):
        modules: List[str] = []
        if isinstance(node, ast.Import):
            modules = [alias.name for alias in node.names]
        elif isinstance(node, ast.ImportFrom) and node.module:
            modules = [node.module]
        for module in modules:
            if module.split(".")[0] == "ctypes":
                issues.append(
                    source.issue(
                        line=node.lineno,
                        column=node.col_offset + 1,
                        kind=IssueKind.UNSAFE_CODE,
                        severity=Severity.MEDIUM,
                        message="ctypes gives unchecked access to native memory.",
                        rule="UNS101",
                    )
                )
    return issues


# -------------------------------------------------------------- performance
_RUST_PERFORMANCE = (
    _PatternRule(
        "PERF001",
        re.compile(r"\.collect::<Vec<_>>\(\)\s*\.(?:len|iter|into_iter|is_empty)\(\)"),
        IssueKind.PERFORMANCE,
        Severity.LOW,
        "Intermediate Vec is collected only to be measured or iterated again.",
        "Use the iterator directly (count(), any(), or chain the adaptor).",
    ),
    _PatternRule(
        "PERF002",
        re.compile(r"\.clone\(\)\.clone\(\)"),
        IssueKind.PERFORMANCE,
        Severity.LOW,
        "Redundant clone.",
    ),
)


def performance_pass(source: ParsedSource) -> List[Issue]:
    if source.language == "rust":
        return _scan(source, _RUST_PERFORMANCE)
    if source.tree is None:
        return []
    issues: List[Issue] = []
    for node in ast.walk(source.tree):
        if not isinstance(node, ast.Compare):
            continue
        for operator, comparator in zip(node.ops, node.comparators):
            if not isinstance(operator, (ast.In, ast.NotIn)) or not isinstance(comparator, ast.Call):
                continue
            name = _call_name(comparator)
            if name == "list" or name.endswith(".keys"):
                issues.append(
                    source.issue(
                        line=node.lineno,
                        column=node.col_offset + 1,
                        kind=IssueKind.PERFORMANCE,
                        severity=Severity.LOW,
                        message=f"Membership test against {name}() builds a throwaway view or list.",
                        rule="PERF101",
                        suggestion="Test membership on the container itself.",
                    )
                )
    return issues


# -------------------------------------------------------------------- style
def style_pass(source: ParsedSource) -> List[Issue]:
    limit = source.settings.max_line_length
    issues: List[Issue] = []
    for number, line in enumerate(source.lines, start=1):
        stripped = line.rstrip("\r")
        if len(stripped) > limit:
            issues.append(
                source.issue(
                    line=number,
                    column=limit + 1,
                    kind=IssueKind.STYLE,
                    severity=Severity.INFO,
                    message=f"Line is {len(stripped)} characters long (limit {limit}).",
                    rule="STY001",
                )
            )
        if stripped != stripped.rstrip():
            issues.append(
                source.issue(
                    line=number,
                    column=len(stripped.rstrip()) + 1,
                    kind=IssueKind.STYLE,
                    severity=Severity.INFO,
                    message="Trailing whitespace.",
                    rule="STY002",
                )
            )
    if source.tree is not None:
        for node in ast.walk(source.tree):
            if isinstance(node, ast.ExceptHandler) and node.type is None:
                issues.append(
                    source.issue(
                        line=node.lineno,
                        column=node.col_offset + 1,
                        kind=IssueKind.STYLE,
                        severity=Severity.MEDIUM,
                        message="Bare except clause also catches SystemExit and KeyboardInterrupt.",
                        rule="STY101",
                        suggestion="Catch Exception or a narrower error type.",
                    )
                )
    elif source.language == "rust":
        issues.extend(
            _scan(
                source,
                (
                    _PatternRule(
                        "STY003",
                        re.compile(r"\b(?:todo|unimplemented)!\s*\("),
                        IssueKind.STYLE,
                        Severity.LOW,
                        "Placeholder macro panics at runtime.",
                    ),
                ),
            )
        )
    return issues


# --------------------------------------------------------------- complexity
_PY_BRANCHES = (
    ast.If,
    ast.For,
    ast.AsyncFor,
    ast.While,
    ast.Try,
    ast.With,
    ast.AsyncWith,
    ast.IfExp,
    ast.BoolOp,
    ast.comprehension,
    ast.ExceptHandler,
)
_RUST_FN = re.compile(r"\bfn\s+(?P<name>[A-Za-z_]\w*)")
_RUST_BRANCH = re.compile(r"\b(?:if|match|for|while|loop)\b|&&|\|\|")


def _rust_function_branches(source: ParsedSource) -> List[Tuple[str, int, int]]:
    """Return ``(name, line, branches)`` for each Rust function with a body."""

    results: List[Tuple[str, int, int]] = []
    lines = source.code_lines
    for start, line in enumerate(lines):
        match = _RUST_FN.search(line)
        if match is None:
            continue
        depth = 0
        opened = False
        branches = 0
        for current in range(start, len(lines)):
            text = lines[current][match.end():] if current == start else lines[current]
            for char in text:
                if char == ";" and not opened:
                    break
                if char == "{":
                    depth += 1
                    opened = True
                elif char == "}":
                    depth -= 1
            else:
                if opened:
                    branches += len(_RUST_BRANCH.findall(text))
                if opened and depth <= 0:
                    break
                continue
            break
        if opened:
            results.append((match.group("name"), start + 1, branches))
    return results


def complexity_pass(source: ParsedSource) -> List[Issue]:
    threshold = source.settings.max_function_branches
    findings: List[Tuple[str, int, int]] = []
    if source.tree is not None:
        for node in ast.walk(source.tree):
            if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                branches = sum(1 for child in ast.walk(node) if isinstance(child, _PY_BRANCHES))
                findings.append((node.name, node.lineno, branches))
    elif source.language == "rust":
        findings = _rust_function_branches(source)
    return [
        source.issue(
            line=line,
            kind=IssueKind.COMPLEXITY,
            severity=Severity.MEDIUM if branches < threshold * 2 else Severity.HIGH,
            message=f"Function {name} has {branches} branches (limit {threshold}).",
            rule="CPX001",
            suggestion="Split the function into smaller helpers.",
        )
        for name, line, branches in findings
        if branches > threshold
    ]


# ------------------------------------------------------------ compatibility
_RUST_COMPATIBILITY = (
    _PatternRule(
        "CMP001",
        re.compile(r"\btry!\s*\("),
        IssueKind.TYPE_COMPAT,
        Severity.MEDIUM,
        "try! is reserved since the 2018 edition.",
        "Use the ? operator.",
    ),
    _PatternRule(
        "CMP002",
        re.compile(r"\bmem::uninitialized\s*(?:::<[^>]*>)?\s*\("),
        IssueKind.DEPRECATED,
        Severity.HIGH,
        "mem::uninitialized is deprecated and undefined behaviour for most types.",
        "Use MaybeUninit.",
    ),
    _PatternRule(
        "CMP003",
        re.compile(r"^\s*extern\s+crate\b"),
        IssueKind.DEPRECATED,
        Severity.INFO,
        "extern crate is unnecessary since the 2018 edition.",
    ),
    _PatternRule(
        "CMP004",
        re.compile(r"\bBox<\s*(?!dyn\b)(?:Error|Fn|FnMut|FnOnce|Any)\b"),
        IssueKind.TYPE_COMPAT,
        Severity.LOW,
        "Trait object without dyn.",
        "Write Box<dyn Trait>.",
    ),
)
_PY_DEPRECATED_MODULES = {"imp", "distutils", "asyncore", "asynchat", "smtpd", "cgi", "cgitb", "telnetlib"}
_PY_DEPRECATED_CALLS = {
    "datetime.utcnow": "datetime.utcnow() is deprecated; use datetime.now(timezone.utc).",
    "datetime.datetime.utcnow": "datetime.utcnow() is deprecated; use datetime.now(timezone.utc).",
    "asyncio.get_event_loop": "asyncio.get_event_loop() is deprecated outside a running loop.",
}


def compatibility_pass(source: ParsedSource) -> List[Issue]:
    if source.language == "rust":
        return _scan(source, _RUST_COMPATIBILITY)
    if source.tree is None:
        return []
    issues: List[Issue] = []
    for node in ast.walk(source.tree):
        if isinstance(node, (ast.Import, ast.ImportFrom)):
            names = [alias.name for alias in node.names] if isinstance(node, ast.Import) else [node.module or ""]
            for name in names:
                if name.split(".")[0] in _PY_DEPRECATED_MODULES:
                    issues.append(
                        source.issue(
                            line=node.lineno,
                            column=node.col_offset + 1,
                            kind=IssueKind.DEPRECATED,
                            severity=Severity.MEDIUM,
                            message=f"Module {name} is deprecated or removed in current Python releases.",
                            rule="CMP101",
                        )
                    )
        elif isinstance(node, ast.Call):
            name = _call_name(node)
            message = _PY_DEPRECATED_CALLS.get(name)
            if message:
                issues.append(
                    source.issue(
                        line=node.lineno,
                        column=node.col_offset + 1,
                        kind=IssueKind.DEPRECATED,
                        severity=Severity.LOW,
                        message=message,
                        rule="CMP102",
                    )
                )
    return issues


DETECTOR_PASSES: Dict[str, PassDefinition] = {
    "security": PassDefinition(
        name="security",
        description="Process execution, unchecked deletion, and unsafe deserialisation.",
        rules=("SEC001", "SEC002", "SEC003", "SEC101", "SEC102", "SEC103", "SEC104", "SEC105"),
    ),
    "unsafe": PassDefinition(
        name="unsafe",
        description="Unsafe blocks, raw pointer operations, and native memory access.",
        rules=("UNS001", "UNS002", "UNS003", "UNS004", "UNS101"),
    ),
    "performance": PassDefinition(
        name="performance",
        description="Needless intermediate collections and copies.",
        rules=("PERF001", "PERF002", "PERF101"),
    ),
    "style": PassDefinition(
        name="style",
        description="Line length, trailing whitespace, bare excepts, and placeholder macros.",
        rules=("STY001", "STY002", "STY003", "STY101"),
    ),
    "complexity": PassDefinition(
        name="complexity",
        description="Functions with too many branches.",
        rules=("CPX001",),
    ),
    "compatibility": PassDefinition(
        name="compatibility",
        description="Edition and interpreter compatibility, deprecated APIs.",
        rules=("CMP001", "CMP002", "CMP003", "CMP004", "CMP101", "CMP102"),
    ),
}


PASS_DISPATCH: Dict[str, DetectorPass] = {
    "security": security_pass,
    "unsafe": unsafe_pass,
    "performance": performance_pass,
    "style": style_pass,
    "complexity": complexity_pass,
    "compatibility": compatibility_pass,
}


__all__ = [
    "DETECTOR_PASSES",
    "DetectorPass",
    "PASS_DISPATCH",
    "PassDefinition",
    "compatibility_pass",
    "complexity_pass",
    "performance_pass",
    "security_pass",
    "style_pass",
    "unsafe_pass",
]
