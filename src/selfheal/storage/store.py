"""Durable storage for issues, patches, and validation results."""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from ..errors import ErrorKind, PersistenceError
from .schema import (
    Issue,
    IssueStatus,
    Patch,
    ValidationResult,
    ValidationStatus,
    utc_now,
)

DEFAULT_DB_PATH = Path("data/selfheal.sqlite")
LOGGER = logging.getLogger(__name__)


def _as_iso(timestamp: datetime) -> str:
    """Serialise a timestamp to a timezone-aware ISO 8601 string."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat()


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _dump_json(data: Any, *, default: Any) -> str:
    return json.dumps(default if data is None else data)


def _load_json(value: Optional[str], *, default: Any) -> Any:
    if not value:
        return default
    data = json.loads(value)
    return default if data is None else data


class PersistenceStore:
    """SQLite-backed persistence for the repair pipeline."""

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH) -> None:
        requested = str(db_path)
        if requested == ":memory:":
            self.db_path: Path | None = None
        else:
            self.db_path = Path(db_path).resolve()
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(requested if self.db_path is None else str(self.db_path))
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._bootstrap()
        except sqlite3.Error as error:
            raise PersistenceError(f"Unable to open store at {requested}: {error}") from error

    def close(self) -> None:
        if getattr(self, "_conn", None) is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def __enter__(self) -> "PersistenceStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _bootstrap(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS issues (
                id TEXT PRIMARY KEY,
                file_path TEXT NOT NULL,
                line INTEGER NOT NULL,
                column_number INTEGER NOT NULL,
                severity TEXT NOT NULL,
                kind TEXT NOT NULL,
                message TEXT NOT NULL,
                suggestion TEXT,
                rule TEXT,
                context TEXT NOT NULL,
                status TEXT NOT NULL,
                metadata TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                resolved_at TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_issues_status ON issues(status);
            CREATE INDEX IF NOT EXISTS idx_issues_file ON issues(file_path);

            CREATE TABLE IF NOT EXISTS patches (
                id TEXT PRIMARY KEY,
                issue_id TEXT NOT NULL,
                original_code TEXT NOT NULL,
                patched_code TEXT NOT NULL,
                diff TEXT NOT NULL,
                explanation TEXT NOT NULL,
                confidence REAL NOT NULL,
                safety_score REAL NOT NULL,
                safety_matches TEXT NOT NULL,
                breaking_changes TEXT NOT NULL,
                dependencies TEXT NOT NULL,
                validation_status TEXT NOT NULL,
                error_kind TEXT,
                needs_review INTEGER NOT NULL DEFAULT 0,
                applied INTEGER NOT NULL DEFAULT 0,
                applied_at TEXT,
                rolled_back INTEGER NOT NULL DEFAULT 0,
                rollback_patch TEXT,
                backup_branch TEXT,
                commit_id TEXT,
                generation_index INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(issue_id) REFERENCES issues(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_patches_issue ON patches(issue_id);

            CREATE TABLE IF NOT EXISTS validation_results (
                id TEXT PRIMARY KEY,
                patch_id TEXT NOT NULL,
                payload TEXT NOT NULL,
                outcome TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY(patch_id) REFERENCES patches(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_validation_patch
                ON validation_results(patch_id, created_at);
            """
        )
        self._conn.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            yield self._conn
            self._conn.commit()
        except sqlite3.Error as error:
            self._conn.rollback()
            raise PersistenceError(f"Store operation failed: {error}") from error
        except Exception:
            self._conn.rollback()
            raise

    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        try:
            return self._conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as error:
            raise PersistenceError(f"Store query failed: {error}") from error

    # Issue operations ---------------------------------------------------------------
    def create_issue(self, issue: Issue) -> Issue:
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO issues (
                    id, file_path, line, column_number, severity, kind, message, suggestion,
                    rule, context, status, metadata, created_at, updated_at, resolved_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    issue.id,
                    issue.file_path,
                    issue.line,
                    issue.column,
                    issue.severity.value,
                    issue.kind.value,
                    issue.message,
                    issue.suggestion,
                    issue.rule,
                    _dump_json(issue.context, default={}),
                    issue.status.value,
                    _dump_json(issue.metadata, default={}),
                    _as_iso(issue.created_at),
                    _as_iso(issue.updated_at),
                    _as_iso(issue.resolved_at) if issue.resolved_at else None,
                ),
            )
        return issue

    def get_issue(self, issue_id: str) -> Optional[Issue]:
        rows = self._query("SELECT * FROM issues WHERE id = ?", (issue_id,))
        return self._row_to_issue(rows[0]) if rows else None

    def get_issues_by_status(self, status: IssueStatus) -> List[Issue]:
        rows = self._query(
            "SELECT * FROM issues WHERE status = ? ORDER BY created_at ASC",
            (IssueStatus(status).value,),
        )
        return [self._row_to_issue(row) for row in rows]

    def update_issue_status(self, issue_id: str, status: IssueStatus) -> None:
        status = IssueStatus(status)
        now = utc_now()
        resolved_at = _as_iso(now) if status is IssueStatus.RESOLVED else None
        with self._transaction():
            cursor = self._conn.execute(
                "UPDATE issues SET status = ?, updated_at = ?, resolved_at = ? WHERE id = ?",
                (status.value, _as_iso(now), resolved_at, issue_id),
            )
            if cursor.rowcount == 0:
                raise PersistenceError(f"Unknown issue: {issue_id}", details={"issue_id": issue_id})

    def search_issues(self, query: str, *, limit: int = 50) -> List[Issue]:
        pattern = f"%{query}%"
        rows = self._query(
            """
            SELECT * FROM issues
            WHERE file_path LIKE ? OR message LIKE ? OR kind LIKE ?
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (pattern, pattern, pattern, limit),
        )
        return [self._row_to_issue(row) for row in rows]

    def find_open_duplicate(self, issue: Issue) -> Optional[Issue]:
        """Return an earlier Open/InProgress issue describing the same defect, if any."""

        rows = self._query(
            """
            SELECT * FROM issues
            WHERE file_path = ? AND line = ? AND kind = ? AND message = ? AND id != ?
              AND status IN (?, ?)
            ORDER BY created_at ASC
            LIMIT 1
            """,
            (
                issue.file_path,
                issue.line,
                issue.kind.value,
                issue.message,
                issue.id,
                IssueStatus.OPEN.value,
                IssueStatus.IN_PROGRESS.value,
            ),
        )
        return self._row_to_issue(rows[0]) if rows else None

    # Patch operations ---------------------------------------------------------------
    def create_patch(self, patch: Patch) -> Patch:
        """Insert ``patch`` or overwrite the stored copy with the same id."""

        record = patch.model_copy(update={"updated_at": utc_now()})
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO patches (
                    id, issue_id, original_code, patched_code, diff, explanation, confidence,
                    safety_score, safety_matches, breaking_changes, dependencies,
                    validation_status, error_kind, needs_review, applied, applied_at,
                    rolled_back, rollback_patch, backup_branch, commit_id, generation_index,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    original_code = excluded.original_code,
                    patched_code = excluded.patched_code,
                    diff = excluded.diff,
                    explanation = excluded.explanation,
                    confidence = excluded.confidence,
                    safety_score = excluded.safety_score,
                    safety_matches = excluded.safety_matches,
                    breaking_changes = excluded.breaking_changes,
                    dependencies = excluded.dependencies,
                    validation_status = excluded.validation_status,
                    error_kind = excluded.error_kind,
                    needs_review = excluded.needs_review,
                    applied = excluded.applied,
                    applied_at = excluded.applied_at,
                    rolled_back = excluded.rolled_back,
                    rollback_patch = excluded.rollback_patch,
                    backup_branch = excluded.backup_branch,
                    commit_id = excluded.commit_id,
                    updated_at = excluded.updated_at
                """,
                (
                    record.id,
                    record.issue_id,
                    record.original_code,
                    record.patched_code,
                    record.diff,
                    record.explanation,
                    record.confidence,
                    record.safety_score,
                    _dump_json(record.safety_matches, default=[]),
                    _dump_json(record.breaking_changes, default=[]),
                    _dump_json(record.dependencies, default=[]),
                    record.validation_status.value,
                    record.error_kind.value if record.error_kind else None,
                    int(record.needs_review),
                    int(record.applied),
                    _as_iso(record.applied_at) if record.applied_at else None,
                    int(record.rolled_back),
                    record.rollback_patch,
                    record.backup_branch,
                    record.commit_id,
                    record.generation_index,
                    _as_iso(record.created_at),
                    _as_iso(record.updated_at),
                ),
            )
        return record

    def get_patch(self, patch_id: str) -> Optional[Patch]:
        rows = self._query("SELECT * FROM patches WHERE id = ?", (patch_id,))
        return self._row_to_patch(rows[0]) if rows else None

    def get_patches_for_issue(self, issue_id: str) -> List[Patch]:
        rows = self._query(
            "SELECT * FROM patches WHERE issue_id = ? ORDER BY generation_index ASC, created_at ASC",
            (issue_id,),
        )
        return [self._row_to_patch(row) for row in rows]

    def update_patch_validation(
        self,
        patch_id: str,
        status: ValidationStatus,
        *,
        error_kind: ErrorKind | None = None,
    ) -> None:
        status = ValidationStatus(status)
        with self._transaction():
            cursor = self._conn.execute(
                """
                UPDATE patches SET validation_status = ?, error_kind = ?, updated_at = ?
                WHERE id = ? AND applied = 0
                """,
                (status.value, error_kind.value if error_kind else None, _as_iso(utc_now()), patch_id),
            )
            if cursor.rowcount == 0:
                raise PersistenceError(
                    f"Cannot update validation for patch {patch_id}",
                    details={"patch_id": patch_id, "status": status.value},
                )

    def mark_patch_applied(
        self,
        patch_id: str,
        *,
        rollback_patch: str,
        commit_id: str | None = None,
        backup_branch: str | None = None,
    ) -> None:
        """Flag ``patch_id`` as applied; only a ``Valid`` patch can be marked."""

        if rollback_patch is None:
            raise PersistenceError("An applied patch requires a rollback patch.", details={"patch_id": patch_id})
        now = _as_iso(utc_now())
        with self._transaction():
            cursor = self._conn.execute(
                """
                UPDATE patches
                SET applied = 1, applied_at = ?, rollback_patch = ?, commit_id = ?,
                    backup_branch = ?, updated_at = ?
                WHERE id = ? AND validation_status = ?
                """,
                (now, rollback_patch, commit_id, backup_branch, now, patch_id, ValidationStatus.VALID.value),
            )
            if cursor.rowcount == 0:
                raise PersistenceError(
                    f"Patch {patch_id} is not Valid and cannot be marked applied.",
                    details={"patch_id": patch_id},
                )

    def mark_patch_rolled_back(self, patch_id: str) -> None:
        with self._transaction():
            cursor = self._conn.execute(
                "UPDATE patches SET rolled_back = 1, updated_at = ? WHERE id = ? AND applied = 1",
                (_as_iso(utc_now()), patch_id),
            )
            if cursor.rowcount == 0:
                raise PersistenceError(f"Patch {patch_id} was never applied.", details={"patch_id": patch_id})

    # Validation results -------------------------------------------------------------
    def record_validation_result(self, result: ValidationResult) -> None:
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO validation_results (id, patch_id, payload, outcome, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    result.id,
                    result.patch_id,
                    result.model_dump_json(),
                    result.outcome.value,
                    _as_iso(result.timestamp),
                ),
            )

    def get_validation_results(self, patch_id: str) -> List[ValidationResult]:
        rows = self._query(
            "SELECT payload FROM validation_results WHERE patch_id = ? ORDER BY created_at ASC",
            (patch_id,),
        )
        return [ValidationResult.model_validate_json(row["payload"]) for row in rows]

    def latest_validation_result(self, patch_id: str) -> Optional[ValidationResult]:
        results = self.get_validation_results(patch_id)
        return results[-1] if results else None

    # Maintenance --------------------------------------------------------------------
    def get_statistics(self) -> Dict[str, Any]:
        def _counts(column: str, table: str) -> Dict[str, int]:
            rows = self._query(f"SELECT {column} AS key, COUNT(*) AS total FROM {table} GROUP BY {column}")
            return {row["key"]: row["total"] for row in rows}

        patch_row = self._query(
            """
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(applied), 0) AS applied,
                   COALESCE(SUM(rolled_back), 0) AS rolled_back,
                   AVG(confidence) AS avg_confidence,
                   AVG(safety_score) AS avg_safety
            FROM patches
            """
        )[0]
        validation_row = self._query(
            """
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(CASE WHEN outcome = 'Success' THEN 1 ELSE 0 END), 0) AS succeeded
            FROM validation_results
            """
        )[0]
        issues_by_status = _counts("status", "issues")
        validations = validation_row["total"]
        return {
            "total_issues": sum(issues_by_status.values()),
            "issues_by_status": issues_by_status,
            "issues_by_kind": _counts("kind", "issues"),
            "issues_by_severity": _counts("severity", "issues"),
            "total_patches": patch_row["total"],
            "patches_by_status": _counts("validation_status", "patches"),
            "applied_patches": patch_row["applied"],
            "rolled_back_patches": patch_row["rolled_back"],
            "average_confidence": round(patch_row["avg_confidence"] or 0.0, 4),
            "average_safety_score": round(patch_row["avg_safety"] or 0.0, 4),
            "validation_attempts": validations,
            "validation_success_rate": round(validation_row["succeeded"] / validations, 4) if validations else 0.0,
        }

    def cleanup_old_data(self, days: int) -> int:
        """Delete resolved issues (and their patches) resolved more than ``days`` ago."""

        cutoff = _as_iso(utc_now() - timedelta(days=days))
        with self._transaction():
            cursor = self._conn.execute(
                "DELETE FROM issues WHERE status = ? AND resolved_at IS NOT NULL AND resolved_at < ?",
                (IssueStatus.RESOLVED.value, cutoff),
            )
            removed = cursor.rowcount
        if removed:
            LOGGER.info("Removed %s resolved issue(s) older than %s days", removed, days)
        return removed

    # Row helpers --------------------------------------------------------------------
    def _row_to_issue(self, row: sqlite3.Row) -> Issue:
        return Issue(
            id=row["id"],
            file_path=row["file_path"],
            line=row["line"],
            column=row["column_number"],
            severity=row["severity"],
            kind=row["kind"],
            message=row["message"],
            suggestion=row["suggestion"],
            rule=row["rule"],
            context=_load_json(row["context"], default={}),
            status=row["status"],
            metadata=_load_json(row["metadata"], default={}),
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
            resolved_at=_from_iso(row["resolved_at"]),
        )

    def _row_to_patch(self, row: sqlite3.Row) -> Patch:
        return Patch(
            id=row["id"],
            issue_id=row["issue_id"],
            original_code=row["original_code"],
            patched_code=row["patched_code"],
            diff=row["diff"],
            explanation=row["explanation"],
            confidence=row["confidence"],
            safety_score=row["safety_score"],
            safety_matches=_load_json(row["safety_matches"], default=[]),
            breaking_changes=_load_json(row["breaking_changes"], default=[]),
            dependencies=_load_json(row["dependencies"], default=[]),
            validation_status=row["validation_status"],
            error_kind=row["error_kind"],
            needs_review=bool(row["needs_review"]),
            applied=bool(row["applied"]),
            applied_at=_from_iso(row["applied_at"]),
            rolled_back=bool(row["rolled_back"]),
            rollback_patch=row["rollback_patch"],
            backup_branch=row["backup_branch"],
            commit_id=row["commit_id"],
            generation_index=row["generation_index"],
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )


__all__ = ["DEFAULT_DB_PATH", "PersistenceStore"]
