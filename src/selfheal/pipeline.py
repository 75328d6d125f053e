"""End-to-end repair loop: detect, generate, validate, apply, roll back."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .analysis.detector import IssueDetector
from .config import SelfHealConfig
from .errors import (
    BackendError,
    ConfigurationError,
    ErrorKind,
    GitError,
    InvalidTransitionError,
    PersistenceError,
    RateLimitError,
    SelfHealError,
)
from .generation.generator import PatchGenerator
from .lifecycle import (
    PatchState,
    begin_validation,
    can_transition,
    mark_applied,
    mark_invalid,
    mark_rolled_back,
    record_validation,
    reject,
    state_of,
)
from .models.backend import CodeGenBackend
from .models.providers import build_backend
from .storage.schema import Issue, IssueStatus, Patch, ValidationResult, ValidationStatus
from .storage.store import PersistenceStore
from .telemetry import emit_event
from .tools.sandbox import Sandbox
from .tools.vcs import GitOperations
from .validation.report import generate_validation_report
from .validation.stages import configured_stages, run_stage
from .validation.validator import PatchValidator

LOGGER = logging.getLogger(__name__)

ROLLBACK_MESSAGE = "revert: roll back self-heal patch {patch_id}"


@dataclass(slots=True)
class AppliedChange:
    """Where an applied patch landed and how to undo it."""

    commit_id: str
    rollback_patch: str
    backup_branch: str | None
    isolation_branch: str


@dataclass(slots=True)
class IssueReport:
    """Per-issue outcome: ranked candidates, their validation, the applied patch."""

    issue: Issue
    candidates: List[Patch] = field(default_factory=list)
    validations: Dict[str, ValidationResult] = field(default_factory=dict)
    applied_patch_id: Optional[str] = None
    rolled_back: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def resolved(self) -> bool:
        return self.applied_patch_id is not None and not self.rolled_back

    def validation_report(self) -> str:
        ordered = [self.validations[patch.id] for patch in self.candidates if patch.id in self.validations]
        return generate_validation_report(ordered)


class PipelineOrchestrator:
    """Drive issues through generation, sandboxed validation and application.

    The repository must be reachable when the orchestrator is built; anything
    else is a :class:`ConfigurationError`. The code-generation backend is
    constructed on first use so analysis-only callers need no credentials.
    """

    def __init__(
        self,
        config: SelfHealConfig,
        *,
        store: PersistenceStore | None = None,
        git: GitOperations | None = None,
        detector: IssueDetector | None = None,
        backend: CodeGenBackend | None = None,
        generator: PatchGenerator | None = None,
        validator: PatchValidator | None = None,
    ) -> None:
        self.config = config
        self.repo_root = Path(config.project.repo_root).resolve()
        self.git = git or self._open_repository()
        if self.git.head_hash() is None:
            raise ConfigurationError(
                f"Repository {self.git.root} has no commits; nothing to branch from.",
                details={"repo_root": str(self.git.root)},
            )
        db_path = config.storage.db_path
        self.store = store or PersistenceStore(db_path if str(db_path) == ":memory:" else config.resolve_path(db_path))
        self.detector = detector or IssueDetector(config.analysis)
        self._backend = backend
        self._generator = generator
        self.validator = validator or PatchValidator(
            self.git.root,
            config.validation,
            git_settings=config.git,
        )

    @classmethod
    def from_config(cls, config: SelfHealConfig, **overrides) -> "PipelineOrchestrator":
        """Convenience constructor used by the CLI."""
        return cls(config, **overrides)

    def _open_repository(self) -> GitOperations:
        try:
            return GitOperations(self.repo_root, self.config.git)
        except GitError as error:
            raise ConfigurationError(
                f"Version control is unavailable at {self.repo_root}: {error}",
                details={"repo_root": str(self.repo_root)},
            ) from error

    @property
    def generator(self) -> PatchGenerator:
        if self._generator is None:
            backend = self._backend or build_backend(self.config.llm)
            self._generator = PatchGenerator(
                backend,
                project_root=self.git.root,
                llm=self.config.llm,
                safety=self.config.safety,
            )
        return self._generator

    # ----------------------------------------------------------------- detect
    def detect_and_record(self, project_root: Path | str | None = None) -> List[Issue]:
        """Detect issues and persist them, reusing open duplicates from earlier runs."""

        root = Path(project_root).resolve() if project_root is not None else self.git.root
        recorded: List[Issue] = []
        for issue in self.detector.detect(root):
            existing = self.store.find_open_duplicate(issue)
            if existing is not None:
                recorded.append(existing)
                continue
            recorded.append(self.store.create_issue(issue))
        return recorded

    async def run(self, project_root: Path | str | None = None, *, max_issues: int | None = None) -> List[IssueReport]:
        """Detect issues under ``project_root`` and process them one at a time."""

        issues = self.detect_and_record(project_root)
        if max_issues is not None:
            issues = issues[:max_issues]
        reports: List[IssueReport] = []
        for issue in issues:
            reports.append(await self.process_issue(issue))
        resolved = sum(1 for report in reports if report.resolved)
        emit_event("pipeline_completed", issues=len(reports), resolved=resolved)
        return reports

    # ---------------------------------------------------------------- process
    async def process_issue(self, issue: Issue) -> IssueReport:
        """Generate, validate and apply the best candidate for ``issue``."""

        report = IssueReport(issue=issue)
        if self.store.get_issue(issue.id) is None:
            self.store.create_issue(issue)
        self._set_issue_status(issue, IssueStatus.IN_PROGRESS)
        try:
            candidates = await self._generate_candidates(issue)
        except (RateLimitError, BackendError, ConfigurationError) as error:
            LOGGER.error("Generation for issue %s failed: %s", issue.id, error)
            report.errors.append(f"{error.kind.value}: {error}")
            self._set_issue_status(issue, IssueStatus.OPEN)
            return report

        report.candidates = candidates
        for patch in candidates:
            self.store.create_patch(patch)

        to_validate = [
            patch
            for patch in candidates
            if state_of(patch) is PatchState.PENDING and not patch.needs_review
        ]
        for patch in to_validate:
            begin_validation(patch)
            self.store.create_patch(patch)
        try:
            results = await self.validator.validate_many(to_validate)
            for patch, result in zip(to_validate, results):
                self.store.record_validation_result(result)
                record_validation(patch, result, allow_warnings=self.config.validation.allow_security_warnings)
                self.store.create_patch(patch)
                report.validations[patch.id] = result
        except Exception as error:
            LOGGER.exception("Validation for issue %s aborted", issue.id)
            report.errors.append(f"{ErrorKind.VALIDATION_ERROR.value}: {error}")
            for patch in to_validate:
                if state_of(patch) is PatchState.VALIDATING:
                    mark_invalid(patch, ErrorKind.VALIDATION_ERROR)
                    self.store.create_patch(patch)
            self._set_issue_status(issue, IssueStatus.OPEN)
            return report

        winner = self._choose_winner(candidates)
        if winner is None:
            report.errors.append("No candidate patch passed validation.")
            self._set_issue_status(issue, IssueStatus.OPEN)
            return report

        try:
            await self._apply(issue, winner)
        except SelfHealError as error:
            LOGGER.error("Applying patch %s failed: %s", winner.id, error)
            report.errors.append(f"{error.kind.value}: {error}")
            self._set_issue_status(issue, IssueStatus.OPEN)
            return report
        report.applied_patch_id = winner.id

        for patch in candidates:
            if patch.id != winner.id and patch.validation_status is ValidationStatus.VALID:
                reject(patch)
                self.store.create_patch(patch)

        if self.config.validation.verify_after_apply and not await self._verify_canonical(report):
            self.rollback(winner.id)
            report.rolled_back = True
            return report

        self._set_issue_status(issue, IssueStatus.RESOLVED)
        return report

    async def _generate_candidates(self, issue: Issue) -> List[Patch]:
        settings = self.config.llm
        patches: List[Patch] = []
        for index in range(max(1, settings.candidates)):
            patches.append(await self._generate_with_backoff(issue, index))
        return self.generator.rank_patches(patches)

    async def _generate_with_backoff(self, issue: Issue, index: int) -> Patch:
        settings = self.config.llm
        attempt = 0
        while True:
            try:
                return await asyncio.to_thread(self.generator.generate_patch, issue, generation_index=index)
            except RateLimitError as error:
                if attempt >= settings.rate_limit_retries:
                    raise
                delay = max(error.retry_after or 0.0, settings.rate_limit_backoff * (2**attempt))
                LOGGER.info("Rate limited generating for issue %s; retrying in %.2fs", issue.id, delay)
                attempt += 1
                await asyncio.sleep(delay)

    @staticmethod
    def _choose_winner(candidates: Sequence[Patch]) -> Optional[Patch]:
        valid = [patch for patch in candidates if patch.validation_status is ValidationStatus.VALID]
        if not valid:
            return None
        return PatchGenerator.rank_patches(valid)[0]

    def _set_issue_status(self, issue: Issue, status: IssueStatus) -> None:
        self.store.update_issue_status(issue.id, status)
        issue.status = status

    # ------------------------------------------------------------------ apply
    async def _apply(self, issue: Issue, patch: Patch) -> None:
        latest = self.store.latest_validation_result(patch.id)
        stored = self.store.get_patch(patch.id)
        if latest is None or stored is None or stored.validation_status is not ValidationStatus.VALID:
            raise PersistenceError(f"Patch {patch.id} has no passing validation on record.")
        change = await asyncio.to_thread(self._apply_to_repository, issue, patch)
        mark_applied(
            patch,
            rollback_patch=change.rollback_patch,
            commit_id=change.commit_id,
            backup_branch=change.backup_branch,
        )
        self.store.mark_patch_applied(
            patch.id,
            rollback_patch=change.rollback_patch,
            commit_id=change.commit_id,
            backup_branch=change.backup_branch,
        )
        emit_event(
            "patch_applied",
            issue_id=issue.id,
            patch_id=patch.id,
            commit=change.commit_id,
            backup_branch=change.backup_branch,
        )

    def _commit_message(self, issue: Issue, patch: Patch) -> str:
        description = f"{issue.kind.value} in {issue.file_path}:{issue.line} ({issue.message})"
        subject = self.config.git.commit_message_template.format(
            description=description,
            issue_id=issue.id,
            patch_id=patch.id,
            kind=issue.kind.value,
            file=issue.file_path,
        )
        body = patch.explanation.strip()
        return f"{subject}\n\n{body}" if body else subject

    def _apply_to_repository(self, issue: Issue, patch: Patch) -> AppliedChange:
        git = self.git
        with git.lock:
            base = git.current_branch()
            if base is None:
                raise GitError("Cannot apply a patch onto a detached HEAD.")
            if not git.is_working_directory_clean():
                raise GitError(
                    "Working tree has uncommitted changes; refusing to apply.",
                    details={"status": git.get_status(include_untracked=False)},
                )
            branch = git.create_isolated_branch(issue.id, patch.id)
            try:
                git.checkout(branch)
                try:
                    git.apply_patch(patch.diff)
                    commit = git.commit(self._commit_message(issue, patch))
                finally:
                    git.git("reset", "--hard", "--quiet", check=False)
                    git.checkout(base)
                git.cherry_pick(commit)
                backup = git.last_backup_branch
                head = git.head_hash()
                rollback_patch = git.diff("HEAD", "HEAD~1")
            finally:
                if git.current_branch() != branch and git.branch_exists(branch):
                    git.delete_branch(branch)
        if head is None or not rollback_patch:
            raise GitError(f"Patch {patch.id} produced no change on {base}.")
        LOGGER.info("Applied patch %s to %s as %s", patch.id, base, head[:12])
        return AppliedChange(commit_id=head, rollback_patch=rollback_patch, backup_branch=backup, isolation_branch=branch)

    async def _verify_canonical(self, report: IssueReport) -> bool:
        sandbox = Sandbox(root=self.git.root, source=self.git.root)
        build, test, _ = configured_stages(self.config.validation)
        for spec in (build, test):
            stage, _ = await run_stage(sandbox, spec, patch_id=report.applied_patch_id)
            if not stage.passed:
                report.errors.append(
                    f"{(stage.error_kind or ErrorKind.BUILD_FAILURE).value}: {spec.name} failed after apply"
                )
                return False
        return True

    # --------------------------------------------------------------- rollback
    def rollback(self, patch_id: str) -> Patch:
        """Undo an applied patch and reopen its issue.

        The stored rollback diff is applied and committed; when it no longer
        applies the branch is hard-reset to the backup taken before the patch,
        but only while the patch commit is the sole commit on top of it.
        """

        patch = self.store.get_patch(patch_id)
        if patch is None:
            raise PersistenceError(f"Unknown patch: {patch_id}", details={"patch_id": patch_id})
        if not can_transition(patch, PatchState.ROLLED_BACK):
            raise InvalidTransitionError(
                f"Patch {patch_id} is not applied and cannot be rolled back",
                details={"patch_id": patch_id},
            )
        git = self.git
        method = "rollback-patch"
        with git.lock:
            try:
                git.apply_patch(patch.rollback_patch or "")
                git.commit(ROLLBACK_MESSAGE.format(patch_id=patch.id))
            except SelfHealError as error:
                if not patch.backup_branch:
                    raise
                ahead = git.git("log", "--oneline", f"{patch.backup_branch}..HEAD").stdout.strip().splitlines()
                if len(ahead) > 1:
                    raise GitError(
                        f"Rollback diff for patch {patch.id} did not apply and HEAD is {len(ahead)} commits "
                        f"ahead of {patch.backup_branch}; refusing to reset over: {'; '.join(ahead)}",
                        details={"patch_id": patch.id, "backup_branch": patch.backup_branch, "commits": ahead},
                    ) from error
                LOGGER.warning(
                    "Rollback diff for %s did not apply (%s); resetting to %s",
                    patch.id,
                    error,
                    patch.backup_branch,
                )
                git.reset_to_commit(patch.backup_branch, hard=True)
                method = "backup-reset"
        mark_rolled_back(patch)
        self.store.mark_patch_rolled_back(patch.id)
        self.store.update_issue_status(patch.issue_id, IssueStatus.OPEN)
        emit_event("patch_rolled_back", patch_id=patch.id, issue_id=patch.issue_id, method=method)
        return patch

    # ---------------------------------------------------------------- reports
    def statistics(self) -> Dict[str, object]:
        return self.store.get_statistics()

    def close(self) -> None:
        self.store.close()


def format_report(reports: Sequence[IssueReport] | IssueReport) -> str:
    """Render one or more issue reports as markdown."""

    if isinstance(reports, IssueReport):
        reports = [reports]
    lines: List[str] = ["# Self-heal run", ""]
    lines.append(f"- Issues processed: {len(reports)}")
    lines.append(f"- Resolved: {sum(1 for report in reports if report.resolved)}")
    for report in reports:
        issue = report.issue
        lines.extend(["", f"## {issue.kind.value} at {issue.location()}", "", issue.message])
        if report.applied_patch_id:
            suffix = " (rolled back)" if report.rolled_back else ""
            lines.append(f"\n**Applied patch:** {report.applied_patch_id}{suffix}")
        if report.candidates:
            lines.extend(["", "| Rank | Patch | Confidence | Safety | Score | Status |", "| --- | --- | --- | --- | --- | --- |"])
            for rank, patch in enumerate(report.candidates, start=1):
                status = patch.validation_status.value
                if patch.error_kind:
                    status = f"{status} ({patch.error_kind.value})"
                if patch.needs_review:
                    status = f"{status}, needs review"
                lines.append(
                    f"| {rank} | {patch.id} | {patch.confidence:.2f} | {patch.safety_score:.2f} "
                    f"| {patch.ranking_score:.3f} | {status} |"
                )
        if report.validations:
            lines.extend(["", report.validation_report().rstrip("\n")])
        if report.errors:
            lines.extend(["", "### Errors"])
            lines.extend(f"- {error}" for error in report.errors)
    return "\n".join(lines) + "\n"


__all__ = ["AppliedChange", "IssueReport", "PipelineOrchestrator", "format_report"]
