"""Issue detection over a project tree."""

from __future__ import annotations

import fnmatch
import logging
from collections import Counter
from pathlib import Path
from typing import Dict, Iterator, List, Mapping, Sequence

from ..config import AnalysisSettings
from ..storage.schema import Issue
from ..telemetry import emit_event
from .parsing import SourceParseError, parse_error_issue, parse_source
from .passes import PASS_DISPATCH, DetectorPass

LOGGER = logging.getLogger(__name__)


class IssueDetector:
    """Walk source files, parse each once, and run the enabled detector passes.

    The detector keeps no state between runs: calling :meth:`detect` twice on
    an unchanged tree yields equivalent issues.
    """

    def __init__(
        self,
        settings: AnalysisSettings | None = None,
        passes: Mapping[str, DetectorPass] | None = None,
    ) -> None:
        self.settings = settings or AnalysisSettings()
        registry = dict(passes) if passes is not None else dict(PASS_DISPATCH)
        if passes is None:
            registry = {name: registry[name] for name in self.settings.enabled_passes}
        self.passes: Dict[str, DetectorPass] = registry

    def enabled_passes(self) -> List[str]:
        return list(self.passes)

    # ------------------------------------------------------------------ files
    def _ignored(self, relative: str) -> bool:
        parts = relative.split("/")
        for pattern in self.settings.ignore_patterns:
            if pattern.endswith("/"):
                if pattern.rstrip("/") in parts[:-1]:
                    return True
            elif fnmatch.fnmatch(relative, pattern) or fnmatch.fnmatch(parts[-1], pattern):
                return True
        return False

    def iter_source_files(self, root: Path | str) -> Iterator[Path]:
        """Yield files under ``root`` that match the configured extensions."""

        root_path = Path(root).resolve()
        extensions = {ext.lower() for ext in self.settings.extensions}
        for path in sorted(root_path.rglob("*")):
            if not path.is_file() or path.suffix.lower() not in extensions:
                continue
            relative = path.relative_to(root_path).as_posix()
            if self._ignored(relative):
                continue
            size = path.stat().st_size
            if size > self.settings.max_file_size:
                LOGGER.info("Skipping %s (%s bytes exceeds max_file_size)", relative, size)
                continue
            yield path

    # --------------------------------------------------------------- analysis
    def analyze_text(self, relative_path: str, text: str) -> List[Issue]:
        """Run every enabled pass over one file's contents."""

        try:
            parsed = parse_source(relative_path, text, self.settings)
        except SourceParseError as error:
            return [parse_error_issue(relative_path, text, error, self.settings)]
        issues: List[Issue] = []
        for name, detector_pass in self.passes.items():
            found = detector_pass(parsed)
            LOGGER.debug("Pass %s found %s issue(s) in %s", name, len(found), relative_path)
            issues.extend(found)
        issues.sort(key=lambda issue: (issue.line, issue.column))
        return issues

    def analyze_file(self, root: Path | str, path: Path) -> List[Issue]:
        root_path = Path(root).resolve()
        relative = path.resolve().relative_to(root_path).as_posix()
        raw = path.read_bytes()
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as error:
            LOGGER.warning("%s is not valid UTF-8: %s", relative, error.reason)
            prefix = raw[: error.start]
            line = prefix.count(b"\n") + 1
            column = error.start - (prefix.rfind(b"\n") + 1) + 1
            failure = SourceParseError(f"not valid UTF-8 ({error.reason} at byte {error.start})", line, column)
            return [parse_error_issue(relative, raw.decode("utf-8", errors="replace"), failure, self.settings)]
        return self.analyze_text(relative, text)

    def iter_issues(self, root: Path | str) -> Iterator[Issue]:
        for path in self.iter_source_files(root):
            yield from self.analyze_file(root, path)

    def detect(self, root: Path | str) -> List[Issue]:
        issues = list(self.iter_issues(root))
        emit_event("issues_detected", root=Path(root).resolve(), **summarise(issues))
        return issues


def summarise(issues: Sequence[Issue]) -> Dict[str, object]:
    """Count issues by kind and severity."""

    return {
        "total": len(issues),
        "by_kind": dict(Counter(issue.kind.value for issue in issues)),
        "by_severity": dict(Counter(issue.severity.value for issue in issues)),
        "files": len({issue.file_path for issue in issues}),
    }


__all__ = ["IssueDetector", "summarise"]
