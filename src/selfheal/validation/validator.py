"""Sandboxed build/test/security gate for candidate patches.

Each attempt copies the workspace into its own temporary directory, applies
the patch there with ``git apply --3way`` and runs the configured stages in
order. The canonical workspace is only ever read.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from ..config import GitSettings, ValidationSettings
from ..errors import DiffParseError, ErrorKind, GitConflictError, GitError
from ..storage.schema import (
    Patch,
    PerformanceImpact,
    StageResult,
    ValidationOutcome,
    ValidationResult,
)
from ..telemetry import emit_event
from ..tools.sandbox import Sandbox, isolated_workspace
from ..tools.vcs import GitOperations
from .stages import benchmark_stage, configured_stages, run_stage

LOGGER = logging.getLogger(__name__)

BASELINE_MESSAGE = "selfheal: validation baseline"


@dataclass(slots=True)
class PerformanceSample:
    """Timings and artifact size measured in one sandbox."""

    build_ms: Optional[int] = None
    benchmark_ms: Optional[int] = None
    artifact_bytes: int = 0


def _percent_change(baseline: Optional[int], current: Optional[int]) -> Optional[float]:
    if baseline is None or current is None or baseline <= 0:
        return None
    return round((current - baseline) / baseline * 100.0, 2)


def artifact_size(root: Path, patterns: Sequence[str]) -> int:
    """Total size in bytes of the files under ``root`` matching ``patterns``."""

    seen: set[Path] = set()
    total = 0
    for pattern in patterns:
        for path in root.glob(pattern):
            if path.is_file() and path not in seen:
                seen.add(path)
                total += path.stat().st_size
    return total


def classify(build: StageResult, test: StageResult, security: StageResult) -> tuple[ValidationOutcome, Optional[ErrorKind]]:
    """Map stage outcomes onto Success / Warning / Failed."""

    if build.passed and test.passed:
        if security.passed:
            return ValidationOutcome.SUCCESS, None
        return ValidationOutcome.WARNING, security.error_kind or ErrorKind.SECURITY_FAILURE
    failing = build if not build.passed else test
    return ValidationOutcome.FAILED, failing.error_kind


class PatchValidator:
    """Validate patches against isolated copies of ``workspace``."""

    def __init__(
        self,
        workspace: Path | str,
        settings: ValidationSettings | None = None,
        *,
        git_settings: GitSettings | None = None,
    ) -> None:
        self.workspace = Path(workspace).resolve()
        self.settings = settings or ValidationSettings()
        self.git_settings = git_settings or GitSettings()
        self._baseline: Optional[PerformanceSample] = None

    # ---------------------------------------------------------------- public
    async def validate(self, patch: Patch) -> ValidationResult:
        """Validate ``patch``, retrying attempts that ended in a timeout."""

        await self._ensure_baseline()
        attempts = self.settings.max_attempts
        attempt = 1
        result = await self._attempt(patch)
        while result.error_kind is ErrorKind.TIMEOUT and attempt < attempts:
            LOGGER.warning("Validation of patch %s timed out (attempt %s/%s); retrying", patch.id, attempt, attempts)
            attempt += 1
            result = await self._attempt(patch)
        emit_event(
            "validation_completed",
            patch_id=patch.id,
            outcome=result.outcome,
            error_kind=result.error_kind,
            duration_ms=result.duration_ms,
            isolation=result.isolation,
        )
        return result

    async def validate_many(self, patches: Sequence[Patch]) -> List[ValidationResult]:
        """Validate ``patches`` concurrently, at most ``max_concurrent_validations`` at a time.

        Results are returned in the order of ``patches``.
        """

        if patches:
            await self._ensure_baseline()
        semaphore = asyncio.Semaphore(self.settings.max_concurrent_validations)

        async def _bounded(patch: Patch) -> ValidationResult:
            async with semaphore:
                return await self.validate(patch)

        return list(await asyncio.gather(*(_bounded(patch) for patch in patches)))

    async def measure_baseline(self) -> PerformanceSample:
        """Build (and benchmark) an unpatched copy of the workspace."""

        async with isolated_workspace(
            self.workspace,
            ignore=self.settings.sandbox_ignore,
            container=self.settings.container,
        ) as sandbox:
            build, _, _ = configured_stages(self.settings)
            build_stage, _ = await run_stage(sandbox, build)
            sample = PerformanceSample(
                build_ms=build_stage.duration_ms if build_stage.passed and not build_stage.skipped else None,
                artifact_bytes=artifact_size(sandbox.root, self.settings.artifact_globs),
            )
            bench = benchmark_stage(self.settings)
            if bench.command:
                bench_stage, _ = await run_stage(sandbox, bench)
                if bench_stage.passed and not bench_stage.skipped:
                    sample.benchmark_ms = bench_stage.duration_ms
        LOGGER.info("Performance baseline: %s", sample)
        return sample

    async def _ensure_baseline(self) -> None:
        if not self.settings.measure_performance or self._baseline is not None:
            return
        try:
            self._baseline = await self.measure_baseline()
        except Exception:
            LOGGER.exception("Performance baseline could not be measured; impacts will be left empty")
            self._baseline = PerformanceSample()

    # --------------------------------------------------------------- attempt
    async def _attempt(self, patch: Patch) -> ValidationResult:
        started = time.perf_counter()
        try:
            result = await self._run_attempt(patch)
        except Exception as error:
            LOGGER.exception("Validation of patch %s aborted", patch.id)
            result = ValidationResult(
                patch_id=patch.id,
                outcome=ValidationOutcome.FAILED,
                error_kind=ErrorKind.VALIDATION_ERROR,
                errors=[f"{type(error).__name__}: {error}"],
            )
        result.duration_ms = int((time.perf_counter() - started) * 1000)
        LOGGER.info(
            "Validated patch %s: %s%s",
            patch.id,
            result.outcome.value,
            f" ({result.error_kind.value})" if result.error_kind else "",
        )
        return result

    async def _run_attempt(self, patch: Patch) -> ValidationResult:
        async with isolated_workspace(
            self.workspace,
            ignore=self.settings.sandbox_ignore,
            container=self.settings.container,
        ) as sandbox:
            result = ValidationResult(patch_id=patch.id, isolation=sandbox.isolation)
            apply_stage = await self._apply_in_sandbox(sandbox, patch)
            result.stages.append(apply_stage)
            if not apply_stage.passed:
                result.outcome = ValidationOutcome.FAILED
                result.error_kind = apply_stage.error_kind
                result.errors.extend(apply_stage.errors)
            else:
                await self._run_pipeline(sandbox, patch, result)
        return result

    async def _apply_in_sandbox(self, sandbox: Sandbox, patch: Patch) -> StageResult:
        started = time.perf_counter()
        try:
            await asyncio.to_thread(self._prepare_and_apply, sandbox.root, patch.diff)
        except (GitConflictError, DiffParseError, GitError) as error:
            LOGGER.info("Patch %s does not apply in sandbox: %s", patch.id, error)
            return StageResult(
                name="apply",
                passed=False,
                duration_ms=int((time.perf_counter() - started) * 1000),
                error_kind=error.kind,
                errors=[str(error)],
            )
        return StageResult(name="apply", passed=True, duration_ms=int((time.perf_counter() - started) * 1000))

    def _prepare_and_apply(self, root: Path, diff: str) -> None:
        git_marker = root / ".git"
        if git_marker.is_file():
            # A worktree pointer would route writes into the canonical repository.
            git_marker.unlink()
        git = GitOperations(root, self.git_settings) if git_marker.exists() else GitOperations.init(root, self.git_settings)
        git.commit_baseline(BASELINE_MESSAGE)
        git.apply_patch(diff, backup=False)

    async def _run_pipeline(self, sandbox: Sandbox, patch: Patch, result: ValidationResult) -> None:
        build_spec, test_spec, security_spec = configured_stages(self.settings)
        build, _ = await run_stage(sandbox, build_spec, patch_id=patch.id)
        test, _ = await run_stage(sandbox, test_spec, patch_id=patch.id)
        security, _ = await run_stage(sandbox, security_spec, patch_id=patch.id)
        result.stages.extend([build, test, security])
        result.build_success = build.passed
        result.test_success = test.passed
        result.security_scan_passed = security.passed
        for stage in (build, test, security):
            result.errors.extend(stage.errors)
            result.warnings.extend(stage.warnings)
        result.outcome, result.error_kind = classify(build, test, security)

        if self.settings.measure_performance:
            performance = await self._measure(sandbox, patch, build)
            result.stages.append(performance)
            result.warnings.extend(performance.warnings)
            if performance.errors:
                result.warnings.extend(performance.errors)
            result.performance = self._impact(build, performance, sandbox.root)
        else:
            result.stages.append(StageResult(name="performance", passed=True, skipped=True))

    async def _measure(self, sandbox: Sandbox, patch: Patch, build: StageResult) -> StageResult:
        bench = benchmark_stage(self.settings)
        if not build.passed:
            return bench.skipped("build failed; performance not measured")
        if not bench.command:
            return StageResult(name="performance", passed=True, duration_ms=0)
        stage, _ = await run_stage(sandbox, bench, patch_id=patch.id)
        return stage

    def _impact(self, build: StageResult, performance: StageResult, root: Path) -> PerformanceImpact:
        baseline = self._baseline or PerformanceSample()
        impact = PerformanceImpact()
        if not build.passed or build.skipped:
            return impact
        impact.compile_time_change_pct = _percent_change(baseline.build_ms, build.duration_ms)
        impact.binary_size_change_bytes = artifact_size(root, self.settings.artifact_globs) - baseline.artifact_bytes
        if performance.passed and not performance.skipped and performance.command:
            impact.runtime_change_pct = _percent_change(baseline.benchmark_ms, performance.duration_ms)
        return impact


__all__ = ["PatchValidator", "PerformanceSample", "artifact_size", "classify"]
