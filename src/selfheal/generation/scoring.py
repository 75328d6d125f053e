"""Deterministic heuristics attached to generated patches.

Confidence and safety are independent scalars in ``[0, 1]``. Confidence
reflects how well-formed and assertive a completion is; safety only reflects
dangerous constructs in the code the patch adds.
"""

from __future__ import annotations

import ast
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

from ..config import DenylistEntry
from ..tools.diffs import DiffExtraction

_CERTAINTY = re.compile(r"\b(?:confident|certain|definitely|this fixes|resolves the issue)\b", re.IGNORECASE)
_VERIFICATION = re.compile(r"\b(?:tested|verified|compiles|passes the tests)\b", re.IGNORECASE)
_HEDGING = re.compile(r"\b(?:might|maybe|perhaps|possibly|not sure|i think|untested)\b", re.IGNORECASE)
_EXPLANATION = re.compile(r"(?:explanation|description|summary):\s*(.*?)(?:\n\s*\n|$)", re.IGNORECASE | re.DOTALL)
_FENCED_BLOCK = re.compile(r"```.*?```", re.DOTALL)

_MIN_COMPLETION_CHARS = 40
_MAX_COMPLETION_CHARS = 8000
_MAX_FOCUSED_CHANGES = 60


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


# -------------------------------------------------------------- confidence
@dataclass(slots=True)
class ConfidenceBreakdown:
    """Named contributions summed (and clamped) into the confidence score."""

    components: Dict[str, float] = field(default_factory=dict)

    @property
    def score(self) -> float:
        return round(_clamp(sum(self.components.values())), 4)

    def explain(self) -> str:
        parts = [f"{name} {value:+.2f}" for name, value in self.components.items() if value]
        return ", ".join(parts) + f" => {self.score:.2f}"


def score_confidence(completion: str, extraction: Optional[DiffExtraction]) -> ConfidenceBreakdown:
    """Score a completion from its length, diff shape, and stated certainty."""

    text = completion or ""
    prose = _FENCED_BLOCK.sub(" ", text)
    components: Dict[str, float] = {"base": 0.3}
    components["length"] = 0.1 if _MIN_COMPLETION_CHARS <= len(text) <= _MAX_COMPLETION_CHARS else 0.0
    components["headers"] = 0.15 if extraction is not None else 0.0
    components["well_formed"] = 0.1 if extraction is not None and not extraction.adjustments else 0.0
    if extraction is not None:
        changed = extraction.changed_line_count
        components["line_count"] = 0.1 if 0 < changed <= _MAX_FOCUSED_CHANGES else 0.0
    else:
        components["line_count"] = 0.0
    components["explanation"] = 0.05 if extract_explanation(text) else 0.0
    components["certainty"] = 0.15 if _CERTAINTY.search(prose) else 0.0
    components["verification"] = 0.1 if _VERIFICATION.search(prose) else 0.0
    components["hedging"] = -0.15 if _HEDGING.search(prose) else 0.0
    return ConfidenceBreakdown(components)


def extract_explanation(completion: str) -> str:
    """Return the ``Explanation:`` paragraph, else the first prose paragraph."""

    text = completion or ""
    prose = _FENCED_BLOCK.sub("\n\n", text)
    match = _EXPLANATION.search(prose)
    if match and match.group(1).strip():
        return " ".join(match.group(1).split())
    for paragraph in re.split(r"\n\s*\n", prose):
        cleaned = " ".join(paragraph.split())
        if cleaned and not cleaned.startswith(("---", "+++", "@@", "diff ")):
            return cleaned
    return ""


# ------------------------------------------------------------------ safety
@dataclass(slots=True)
class SafetyReport:
    score: float
    matches: List[str] = field(default_factory=list)


CompiledDenylist = Sequence[Tuple[str, re.Pattern[str], float]]


def compile_denylist(entries: Sequence[DenylistEntry]) -> List[Tuple[str, re.Pattern[str], float]]:
    return [(entry.name, re.compile(entry.pattern), entry.penalty) for entry in entries]


def safety_score(code: str, denylist: CompiledDenylist) -> SafetyReport:
    """Start at 1.0 and subtract each denylist entry's penalty per match.

    Matching is done line by line, so adding lines to ``code`` can only add
    matches; the score never increases as dangerous constructs are added.
    """

    total_penalty = 0.0
    matches: List[str] = []
    for name, pattern, penalty in denylist:
        count = sum(len(pattern.findall(line)) for line in (code or "").splitlines())
        if count:
            total_penalty += penalty * count
            matches.append(f"{name} x{count}")
    return SafetyReport(score=round(_clamp(1.0 - total_penalty), 4), matches=matches)


# ------------------------------------------------------------- public API
_RUST_PUBLIC = re.compile(
    r"^\s*pub(?:\([^)]*\))?\s+(?:async\s+)?(?:unsafe\s+)?(?:const\s+)?"
    r"(?:fn|struct|enum|trait|type|const|static|mod)\s+(?P<name>[A-Za-z_]\w*)",
    re.MULTILINE,
)
_PY_PUBLIC = re.compile(r"^(?:async\s+def|def|class)\s+(?P<name>[A-Za-z]\w*)", re.MULTILINE)


def public_symbols(code: str, language: str) -> Set[str]:
    """Externally visible names declared in ``code``."""

    if language == "rust":
        return {match.group("name") for match in _RUST_PUBLIC.finditer(code)}
    if language == "python":
        try:
            tree = ast.parse(code)
        except SyntaxError:
            return {match.group("name") for match in _PY_PUBLIC.finditer(code)}
        names: Set[str] = set()
        for node in tree.body:
            if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)) and not node.name.startswith("_"):
                names.add(node.name)
        return names
    return set()


def breaking_changes(before: str, after: str, language: str) -> List[str]:
    removed = public_symbols(before, language) - public_symbols(after, language)
    return [f"Public symbol '{name}' was removed or renamed" for name in sorted(removed)]


# ------------------------------------------------------------ dependencies
_RUST_USE = re.compile(r"^\s*(?:pub\s+)?use\s+(?P<path>[\w:]+)", re.MULTILINE)
_RUST_EXTERN = re.compile(r"^\s*extern\s+crate\s+(?P<name>\w+)", re.MULTILINE)
_RUST_PATH_ROOT = re.compile(r"\b(?P<root>[a-z_][a-z0-9_]*)::")
_RUST_LOCAL_ROOTS = {"self", "super", "crate"}
_PY_IMPORT = re.compile(r"^\s*(?:from\s+(?P<from>[\w.]+)\s+import|import\s+(?P<import>[\w.]+))", re.MULTILINE)


def extract_dependencies(code: str, language: str) -> List[str]:
    """Import and module-reference tokens found in ``code``."""

    found: Set[str] = set()
    if language == "rust":
        found.update(match.group("path").rstrip(":") for match in _RUST_USE.finditer(code))
        found.update(match.group("name") for match in _RUST_EXTERN.finditer(code))
        found.update(
            match.group("root")
            for match in _RUST_PATH_ROOT.finditer(code)
            if match.group("root") not in _RUST_LOCAL_ROOTS
        )
    elif language == "python":
        try:
            tree = ast.parse(code)
        except SyntaxError:
            for match in _PY_IMPORT.finditer(code):
                found.add(match.group("from") or match.group("import"))
        else:
            for node in ast.walk(tree):
                if isinstance(node, ast.Import):
                    found.update(alias.name for alias in node.names)
                elif isinstance(node, ast.ImportFrom) and node.module and not node.level:
                    found.add(node.module)
    return sorted(found)


__all__ = [
    "ConfidenceBreakdown",
    "SafetyReport",
    "breaking_changes",
    "compile_denylist",
    "extract_dependencies",
    "extract_explanation",
    "public_symbols",
    "safety_score",
    "score_confidence",
]
