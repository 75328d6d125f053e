"""Tool integrations used by the repair pipeline."""

from .commands import CommandResult, run_command
from .diagnostics import Diagnostics, extract_diagnostics
from .diffs import (
    DiffExtraction,
    FilePatch,
    Hunk,
    apply_file_patch,
    extract_diff,
    make_diff,
    parse_unified_diff,
    render_diff,
    reverse_diff,
)
from .sandbox import Sandbox, isolated_workspace
from .vcs import GitOperations, repository_lock

__all__ = [
    "CommandResult",
    "Diagnostics",
    "DiffExtraction",
    "FilePatch",
    "GitOperations",
    "Hunk",
    "Sandbox",
    "apply_file_patch",
    "extract_diagnostics",
    "extract_diff",
    "isolated_workspace",
    "make_diff",
    "parse_unified_diff",
    "render_diff",
    "repository_lock",
    "reverse_diff",
    "run_command",
]
