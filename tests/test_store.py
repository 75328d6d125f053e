from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from selfheal.errors import ErrorKind, PersistenceError
from selfheal.storage.schema import (
    Issue,
    IssueKind,
    IssueStatus,
    Patch,
    Severity,
    ValidationOutcome,
    ValidationResult,
    ValidationStatus,
    utc_now,
)
from selfheal.storage.store import PersistenceStore


def _issue(**overrides) -> Issue:
    values = dict(
        file_path="src/main.rs",
        line=10,
        kind=IssueKind.SECURITY,
        severity=Severity.HIGH,
        message="External process spawned",
        rule="SEC001",
        context={"line": 'Command::new("ls")'},
    )
    values.update(overrides)
    return Issue(**values)


@pytest.fixture()
def store() -> PersistenceStore:
    with PersistenceStore(":memory:") as opened:
        yield opened


def test_issue_round_trip_and_status_updates(store: PersistenceStore) -> None:
    issue = store.create_issue(_issue(metadata={"pass": "security"}))

    loaded = store.get_issue(issue.id)
    assert loaded == issue

    store.update_issue_status(issue.id, IssueStatus.RESOLVED)
    resolved = store.get_issue(issue.id)
    assert resolved.status is IssueStatus.RESOLVED
    assert resolved.resolved_at is not None
    assert [item.id for item in store.get_issues_by_status(IssueStatus.RESOLVED)] == [issue.id]
    assert store.get_issues_by_status(IssueStatus.OPEN) == []


def test_unknown_issue_status_update_raises(store: PersistenceStore) -> None:
    with pytest.raises(PersistenceError):
        store.update_issue_status("missing", IssueStatus.OPEN)


def test_search_matches_path_message_and_kind(store: PersistenceStore) -> None:
    store.create_issue(_issue())
    store.create_issue(_issue(file_path="app/calc.py", kind=IssueKind.STYLE, message="Trailing whitespace."))

    assert len(store.search_issues("calc")) == 1
    assert len(store.search_issues("process")) == 1
    assert len(store.search_issues("Style")) == 1
    assert store.search_issues("nothing-matches") == []


def test_find_open_duplicate_ignores_closed_issues(store: PersistenceStore) -> None:
    first = store.create_issue(_issue())
    again = _issue()

    assert store.find_open_duplicate(again).id == first.id

    store.update_issue_status(first.id, IssueStatus.RESOLVED)
    assert store.find_open_duplicate(again) is None


def test_patch_upsert_preserves_fields(store: PersistenceStore) -> None:
    issue = store.create_issue(_issue())
    patch = Patch(
        issue_id=issue.id,
        diff="--- a/x\n+++ b/x\n",
        confidence=0.8,
        safety_score=0.4,
        safety_matches=["process-execution x1"],
        dependencies=["std"],
    )
    store.create_patch(patch)

    patch.validation_status = ValidationStatus.INVALID
    patch.error_kind = ErrorKind.SAFETY_REJECTION
    store.create_patch(patch)

    loaded = store.get_patch(patch.id)
    assert loaded.validation_status is ValidationStatus.INVALID
    assert loaded.error_kind is ErrorKind.SAFETY_REJECTION
    assert loaded.safety_matches == ["process-execution x1"]
    assert [item.id for item in store.get_patches_for_issue(issue.id)] == [patch.id]


def test_patch_requires_existing_issue(store: PersistenceStore) -> None:
    with pytest.raises(PersistenceError):
        store.create_patch(Patch(issue_id="missing"))


def test_only_valid_patches_can_be_marked_applied(store: PersistenceStore) -> None:
    issue = store.create_issue(_issue())
    patch = store.create_patch(Patch(issue_id=issue.id))

    with pytest.raises(PersistenceError):
        store.mark_patch_applied(patch.id, rollback_patch="diff")

    store.update_patch_validation(patch.id, ValidationStatus.VALID)
    store.mark_patch_applied(patch.id, rollback_patch="diff", commit_id="abc123", backup_branch="backup/main/1")
    applied = store.get_patch(patch.id)
    assert applied.applied and applied.validation_status is ValidationStatus.VALID
    assert applied.rollback_patch == "diff"

    with pytest.raises(PersistenceError):
        store.update_patch_validation(patch.id, ValidationStatus.INVALID)

    store.mark_patch_rolled_back(patch.id)
    assert store.get_patch(patch.id).rolled_back


def test_rolling_back_unapplied_patch_fails(store: PersistenceStore) -> None:
    issue = store.create_issue(_issue())
    patch = store.create_patch(Patch(issue_id=issue.id))

    with pytest.raises(PersistenceError):
        store.mark_patch_rolled_back(patch.id)


def test_validation_history_and_statistics(store: PersistenceStore) -> None:
    issue = store.create_issue(_issue())
    patch = store.create_patch(Patch(issue_id=issue.id, confidence=0.5, safety_score=1.0))
    failed = ValidationResult(patch_id=patch.id, outcome=ValidationOutcome.FAILED, error_kind=ErrorKind.BUILD_FAILURE)
    passed = ValidationResult(
        patch_id=patch.id,
        outcome=ValidationOutcome.SUCCESS,
        build_success=True,
        test_success=True,
        security_scan_passed=True,
        timestamp=failed.timestamp + timedelta(seconds=1),
    )
    store.record_validation_result(failed)
    store.record_validation_result(passed)

    assert [result.id for result in store.get_validation_results(patch.id)] == [failed.id, passed.id]
    assert store.latest_validation_result(patch.id).outcome is ValidationOutcome.SUCCESS

    stats = store.get_statistics()
    assert stats["total_issues"] == 1
    assert stats["issues_by_kind"] == {"Security": 1}
    assert stats["total_patches"] == 1
    assert stats["validation_attempts"] == 2
    assert stats["validation_success_rate"] == 0.5
    assert stats["average_confidence"] == 0.5


def test_cleanup_removes_old_resolved_issues_and_their_patches(store: PersistenceStore) -> None:
    old = store.create_issue(_issue())
    recent = store.create_issue(_issue(line=20))
    store.create_patch(Patch(issue_id=old.id))
    store.update_issue_status(old.id, IssueStatus.RESOLVED)
    store.update_issue_status(recent.id, IssueStatus.RESOLVED)
    stale = (utc_now() - timedelta(days=45)).isoformat()
    store._conn.execute("UPDATE issues SET resolved_at = ? WHERE id = ?", (stale, old.id))
    store._conn.commit()

    assert store.cleanup_old_data(30) == 1
    assert store.get_issue(old.id) is None
    assert store.get_patches_for_issue(old.id) == []
    assert store.get_issue(recent.id) is not None


def test_file_store_persists_between_connections(tmp_path: Path) -> None:
    db_path = tmp_path / "data" / "selfheal.sqlite"
    with PersistenceStore(db_path) as first:
        issue = first.create_issue(_issue())

    with PersistenceStore(db_path) as second:
        assert second.get_issue(issue.id).message == issue.message
