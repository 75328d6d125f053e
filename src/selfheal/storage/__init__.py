"""Persistence layer for issues, patches and validation results."""

from .schema import (
    BranchInfo,
    GitCommit,
    Issue,
    IssueKind,
    IssueStatus,
    Patch,
    PerformanceImpact,
    Severity,
    StageResult,
    ValidationOutcome,
    ValidationResult,
    ValidationStatus,
)
from .store import PersistenceStore

__all__ = [
    "BranchInfo",
    "GitCommit",
    "Issue",
    "IssueKind",
    "IssueStatus",
    "Patch",
    "PerformanceImpact",
    "PersistenceStore",
    "Severity",
    "StageResult",
    "ValidationOutcome",
    "ValidationResult",
    "ValidationStatus",
]
