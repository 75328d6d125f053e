"""Extraction of error and warning lines from build, test and scan output."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping

_TEXT_DIAGNOSTIC = re.compile(
    r"^(?:(?P<location>[^\s:][^:]*:\d+(?::\d+)?):\s*)?(?P<level>error|warning)(?:\[(?P<code>[\w-]+)\])?:\s*(?P<message>.+)$",
    re.IGNORECASE,
)
_MAX_ENTRIES = 50


@dataclass(slots=True)
class Diagnostics:
    """Errors and warnings extracted from tool output."""

    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def extend(self, other: "Diagnostics") -> None:
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)


def _from_json(payload: Mapping[str, Any]) -> tuple[str, str] | None:
    # cargo --message-format=json wraps the diagnostic in a "message" object.
    if payload.get("reason") == "compiler-message" and isinstance(payload.get("message"), Mapping):
        payload = payload["message"]
    level = payload.get("level") or payload.get("severity")
    message = payload.get("message")
    if isinstance(message, Mapping):
        message = message.get("text") or message.get("message")
    if not isinstance(level, str) or not isinstance(message, str):
        return None
    level = level.lower()
    if level.startswith("error"):
        return "error", message.strip()
    if level.startswith("warn"):
        return "warning", message.strip()
    return None


def extract_diagnostics(outputs: Iterable[str]) -> Diagnostics:
    """Collect structured diagnostics from ``outputs``.

    JSON lines with ``level``/``message`` fields (including cargo
    ``compiler-message`` records) take precedence; otherwise ``error:`` and
    ``warning:`` prefixed lines are used. Free text is never interpreted.
    """

    result = Diagnostics()
    seen: set[tuple[str, str]] = set()

    def _record(level: str, message: str) -> None:
        key = (level, message)
        if not message or key in seen:
            return
        seen.add(key)
        bucket = result.errors if level == "error" else result.warnings
        if len(bucket) < _MAX_ENTRIES:
            bucket.append(message)

    for output in outputs:
        for raw_line in (output or "").splitlines():
            line = raw_line.strip()
            if not line:
                continue
            if line.startswith("{"):
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    payload = None
                if isinstance(payload, Mapping):
                    parsed = _from_json(payload)
                    if parsed is not None:
                        _record(*parsed)
                    continue
            match = _TEXT_DIAGNOSTIC.match(line)
            if match:
                message = match.group("message").strip()
                if match.group("location"):
                    message = f"{match.group('location')}: {message}"
                _record(match.group("level").lower(), message)
    return result


__all__ = ["Diagnostics", "extract_diagnostics"]
