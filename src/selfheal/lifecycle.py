"""Patch lifecycle state machine.

States::

    Pending -> Validating -> {Valid, Invalid}
    Valid -> Applied -> RolledBack
    {Pending, Validating, Valid, Invalid} -> Rejected

``Pending -> Invalid`` is permitted for candidates that never reach the
sandbox (unparseable completions, safety rejections). There is no path from
``Pending`` to ``Applied``; validation is mandatory.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Optional

from .errors import ErrorKind, InvalidTransitionError
from .storage.schema import Patch, ValidationOutcome, ValidationResult, ValidationStatus, utc_now


class PatchState(str, Enum):
    PENDING = "Pending"
    VALIDATING = "Validating"
    VALID = "Valid"
    INVALID = "Invalid"
    REJECTED = "Rejected"
    APPLIED = "Applied"
    ROLLED_BACK = "RolledBack"


TRANSITIONS: Dict[PatchState, FrozenSet[PatchState]] = {
    PatchState.PENDING: frozenset({PatchState.VALIDATING, PatchState.INVALID, PatchState.REJECTED}),
    PatchState.VALIDATING: frozenset({PatchState.VALID, PatchState.INVALID, PatchState.REJECTED}),
    PatchState.VALID: frozenset({PatchState.APPLIED, PatchState.REJECTED}),
    PatchState.INVALID: frozenset({PatchState.REJECTED}),
    PatchState.APPLIED: frozenset({PatchState.ROLLED_BACK}),
    PatchState.REJECTED: frozenset(),
    PatchState.ROLLED_BACK: frozenset(),
}


def state_of(patch: Patch) -> PatchState:
    """Derive the lifecycle state from the persisted patch fields."""
    if patch.rolled_back:
        return PatchState.ROLLED_BACK
    if patch.applied:
        return PatchState.APPLIED
    return PatchState(patch.validation_status.value)


def can_transition(patch: Patch, target: PatchState) -> bool:
    return target in TRANSITIONS[state_of(patch)]


def _require(patch: Patch, target: PatchState) -> None:
    current = state_of(patch)
    if target not in TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Patch {patch.id} cannot move from {current.value} to {target.value}",
            details={"patch_id": patch.id, "from": current.value, "to": target.value},
        )


def _touch(patch: Patch) -> None:
    patch.updated_at = utc_now()


def begin_validation(patch: Patch) -> Patch:
    _require(patch, PatchState.VALIDATING)
    patch.validation_status = ValidationStatus.VALIDATING
    patch.error_kind = None
    _touch(patch)
    return patch


def mark_invalid(patch: Patch, kind: ErrorKind, *, needs_review: bool = False) -> Patch:
    _require(patch, PatchState.INVALID)
    patch.validation_status = ValidationStatus.INVALID
    patch.error_kind = kind
    patch.needs_review = needs_review
    _touch(patch)
    return patch


def record_validation(
    patch: Patch,
    result: ValidationResult,
    *,
    allow_warnings: bool = False,
) -> Patch:
    """Move a validating patch to ``Valid`` or ``Invalid`` based on ``result``.

    ``Warning`` outcomes (security scan failed) only count as valid when
    ``allow_warnings`` is set.
    """

    if result.patch_id != patch.id:
        raise InvalidTransitionError(
            f"Validation result belongs to patch {result.patch_id}, not {patch.id}",
            details={"patch_id": patch.id, "result_patch_id": result.patch_id},
        )
    passed = result.outcome is ValidationOutcome.SUCCESS or (
        allow_warnings and result.outcome is ValidationOutcome.WARNING
    )
    target = PatchState.VALID if passed else PatchState.INVALID
    _require(patch, target)
    patch.validation_status = ValidationStatus(target.value)
    if passed:
        patch.error_kind = None
    else:
        patch.error_kind = result.error_kind or ErrorKind.SECURITY_FAILURE
    _touch(patch)
    return patch


def reject(patch: Patch, kind: Optional[ErrorKind] = None) -> Patch:
    _require(patch, PatchState.REJECTED)
    patch.validation_status = ValidationStatus.REJECTED
    if kind is not None:
        patch.error_kind = kind
    _touch(patch)
    return patch


def mark_applied(
    patch: Patch,
    *,
    rollback_patch: str,
    commit_id: str | None = None,
    backup_branch: str | None = None,
) -> Patch:
    _require(patch, PatchState.APPLIED)
    if not rollback_patch:
        raise InvalidTransitionError(
            f"Patch {patch.id} cannot be applied without a rollback patch",
            details={"patch_id": patch.id},
        )
    patch.rollback_patch = rollback_patch
    patch.commit_id = commit_id
    patch.backup_branch = backup_branch
    patch.applied = True
    patch.applied_at = utc_now()
    _touch(patch)
    return patch


def mark_rolled_back(patch: Patch) -> Patch:
    _require(patch, PatchState.ROLLED_BACK)
    patch.rolled_back = True
    _touch(patch)
    return patch


__all__ = [
    "PatchState",
    "TRANSITIONS",
    "begin_validation",
    "can_transition",
    "mark_applied",
    "mark_invalid",
    "mark_rolled_back",
    "record_validation",
    "reject",
    "state_of",
]
