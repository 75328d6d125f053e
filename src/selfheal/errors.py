"""Error taxonomy shared by every stage of the repair pipeline."""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping


class ErrorKind(str, Enum):
    """Classification attached to failed patches and validation attempts."""

    PARSE_ERROR = "ParseError"
    SAFETY_REJECTION = "SafetyRejection"
    BUILD_FAILURE = "BuildFailure"
    TEST_FAILURE = "TestFailure"
    SECURITY_FAILURE = "SecurityFailure"
    TIMEOUT = "Timeout"
    GIT_CONFLICT = "GitConflict"
    MERGE_CONFLICT = "MergeConflict"
    PERSISTENCE_ERROR = "PersistenceError"
    RATE_LIMIT = "RateLimit"
    CONFIGURATION = "Configuration"
    BACKEND = "Backend"
    INVALID_TRANSITION = "InvalidTransition"
    GIT = "Git"
    VALIDATION_ERROR = "ValidationError"


class SelfHealError(RuntimeError):
    """Base error carrying an :class:`ErrorKind` and structured details."""

    kind: ErrorKind = ErrorKind.BACKEND

    def __init__(
        self,
        message: str,
        *,
        details: Mapping[str, Any] | None = None,
        kind: ErrorKind | None = None,
    ) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})
        if kind is not None:
            self.kind = kind

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": str(self), "details": dict(self.details)}


class ConfigurationError(SelfHealError):
    """Raised when configuration is malformed or the environment is unusable."""

    kind = ErrorKind.CONFIGURATION


class DiffParseError(SelfHealError):
    """Raised when a completion or diff does not follow the unified diff grammar."""

    kind = ErrorKind.PARSE_ERROR


class PatchApplyError(SelfHealError):
    """Raised when a hunk cannot be located in the target text."""

    kind = ErrorKind.PARSE_ERROR


class GitError(SelfHealError):
    """Raised when a git command fails or the repository cannot be used."""

    kind = ErrorKind.GIT


class GitConflictError(GitError):
    """Raised when a three-way apply leaves conflicts behind."""

    kind = ErrorKind.GIT_CONFLICT


class MergeConflictError(GitError):
    """Raised when a cherry-pick cannot be completed without manual resolution."""

    kind = ErrorKind.MERGE_CONFLICT


class PersistenceError(SelfHealError):
    """Raised when the persistence store rejects an operation."""

    kind = ErrorKind.PERSISTENCE_ERROR


class RateLimitError(SelfHealError):
    """Raised immediately when the generation rate limiter has no tokens left."""

    kind = ErrorKind.RATE_LIMIT

    def __init__(self, message: str, *, retry_after: float = 0.0, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message, details=details)
        self.retry_after = retry_after


class BackendError(SelfHealError):
    """Raised when a code-generation backend fails to return a completion."""

    kind = ErrorKind.BACKEND


class InvalidTransitionError(SelfHealError):
    """Raised when a patch lifecycle transition is not permitted."""

    kind = ErrorKind.INVALID_TRANSITION


__all__ = [
    "BackendError",
    "ConfigurationError",
    "DiffParseError",
    "ErrorKind",
    "GitConflictError",
    "GitError",
    "InvalidTransitionError",
    "MergeConflictError",
    "PatchApplyError",
    "PersistenceError",
    "RateLimitError",
    "SelfHealError",
]
