"""Typed records tracked by the persistence store."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..errors import ErrorKind


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Return a short random identifier suitable for branch names."""
    return uuid.uuid4().hex[:12]


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class Severity(str, Enum):
    """Severity classification for detected issues."""

    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"
    INFO = "Info"


class IssueKind(str, Enum):
    """Category of a detected issue."""

    TYPE_COMPAT = "TypeCompat"
    TYPE_ERROR = "TypeError"
    UNSAFE_CODE = "UnsafeCode"
    PERFORMANCE = "Performance"
    SECURITY = "Security"
    STYLE = "Style"
    COMPLEXITY = "Complexity"
    DEPRECATED = "Deprecated"
    PARSE_ERROR = "ParseError"


class IssueStatus(str, Enum):
    """Lifecycle states for an issue."""

    OPEN = "Open"
    IN_PROGRESS = "InProgress"
    RESOLVED = "Resolved"
    REJECTED = "Rejected"
    DUPLICATE = "Duplicate"


class ValidationStatus(str, Enum):
    """Validation state stored on a patch."""

    PENDING = "Pending"
    VALIDATING = "Validating"
    VALID = "Valid"
    INVALID = "Invalid"
    REJECTED = "Rejected"


class ValidationOutcome(str, Enum):
    """Overall classification of a validation attempt."""

    SUCCESS = "Success"
    WARNING = "Warning"
    FAILED = "Failed"


class Issue(RecordModel):
    """A located, classified code defect."""

    id: str = Field(default_factory=new_id)
    file_path: str
    line: int = 1
    column: int = 1
    severity: Severity = Severity.MEDIUM
    kind: IssueKind
    message: str
    suggestion: Optional[str] = None
    rule: Optional[str] = None
    context: Dict[str, str] = Field(default_factory=dict)
    status: IssueStatus = IssueStatus.OPEN
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    resolved_at: Optional[datetime] = None

    def location(self) -> str:
        return f"{self.file_path}:{self.line}:{self.column}"


class Patch(RecordModel):
    """Candidate diff addressing exactly one issue."""

    id: str = Field(default_factory=new_id)
    issue_id: str
    original_code: str = ""
    patched_code: str = ""
    diff: str = ""
    explanation: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    safety_score: float = Field(default=1.0, ge=0.0, le=1.0)
    safety_matches: List[str] = Field(default_factory=list)
    breaking_changes: List[str] = Field(default_factory=list)
    dependencies: List[str] = Field(default_factory=list)
    validation_status: ValidationStatus = ValidationStatus.PENDING
    error_kind: Optional[ErrorKind] = None
    needs_review: bool = False
    applied: bool = False
    applied_at: Optional[datetime] = None
    rolled_back: bool = False
    rollback_patch: Optional[str] = None
    backup_branch: Optional[str] = None
    commit_id: Optional[str] = None
    generation_index: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _applied_requires_validation(self) -> "Patch":
        if self.applied:
            if self.validation_status is not ValidationStatus.VALID:
                raise ValueError("an applied patch must have validation_status Valid")
            if self.rollback_patch is None:
                raise ValueError("an applied patch must carry a rollback patch")
        return self

    @property
    def ranking_score(self) -> float:
        return self.confidence * self.safety_score


class PerformanceImpact(RecordModel):
    """Measured deltas between the patched sandbox and an unpatched baseline."""

    compile_time_change_pct: Optional[float] = None
    binary_size_change_bytes: Optional[int] = None
    runtime_change_pct: Optional[float] = None


class StageResult(RecordModel):
    """Outcome of a single validation stage."""

    name: Literal["apply", "build", "test", "security", "performance"]
    passed: bool
    skipped: bool = False
    exit_code: Optional[int] = None
    duration_ms: int = 0
    timed_out: bool = False
    error_kind: Optional[ErrorKind] = None
    command: Optional[str] = None
    stdout_tail: str = ""
    stderr_tail: str = ""
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class ValidationResult(RecordModel):
    """One validation attempt for a patch."""

    id: str = Field(default_factory=new_id)
    patch_id: str
    outcome: ValidationOutcome = ValidationOutcome.FAILED
    build_success: bool = False
    test_success: bool = False
    security_scan_passed: bool = False
    performance: PerformanceImpact = Field(default_factory=PerformanceImpact)
    stages: List[StageResult] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    error_kind: Optional[ErrorKind] = None
    duration_ms: int = 0
    isolation: Literal["filesystem", "container"] = "filesystem"
    timestamp: datetime = Field(default_factory=utc_now)

    def stage(self, name: str) -> Optional[StageResult]:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None


class GitCommit(RecordModel):
    """Read-only projection of a commit."""

    hash: str
    message: str
    author: str
    email: str
    timestamp: datetime
    files_changed: List[str] = Field(default_factory=list)


class BranchInfo(RecordModel):
    """Read-only projection of a local branch."""

    name: str
    is_current: bool
    head: str
    upstream: Optional[str] = None
    ahead: int = 0
    behind: int = 0


__all__ = [
    "BranchInfo",
    "GitCommit",
    "Issue",
    "IssueKind",
    "IssueStatus",
    "Patch",
    "PerformanceImpact",
    "RecordModel",
    "Severity",
    "StageResult",
    "ValidationOutcome",
    "ValidationResult",
    "ValidationStatus",
    "new_id",
    "utc_now",
]
