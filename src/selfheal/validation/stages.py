"""Validation stage definitions and their execution inside a sandbox."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal, Optional, Tuple

from ..config import ValidationSettings
from ..errors import ErrorKind
from ..storage.schema import StageResult
from ..telemetry import emit_event
from ..tools.commands import CommandResult
from ..tools.diagnostics import extract_diagnostics
from ..tools.sandbox import Sandbox

LOGGER = logging.getLogger(__name__)

StageName = Literal["build", "test", "security", "performance"]


@dataclass(slots=True)
class StageSpec:
    """A configured external command gating a patch."""

    name: StageName
    command: Optional[str]
    timeout: float
    failure_kind: ErrorKind
    optional: bool = False

    def skipped(self, reason: str) -> StageResult:
        return StageResult(name=self.name, passed=True, skipped=True, warnings=[reason] if reason else [])


def configured_stages(settings: ValidationSettings) -> Tuple[StageSpec, StageSpec, StageSpec]:
    """Return the build, test and security stages in execution order."""

    return (
        StageSpec("build", settings.build_command, settings.build_timeout, ErrorKind.BUILD_FAILURE),
        StageSpec("test", settings.test_command, settings.test_timeout, ErrorKind.TEST_FAILURE),
        StageSpec(
            "security",
            settings.security_command,
            settings.security_timeout,
            ErrorKind.SECURITY_FAILURE,
            optional=True,
        ),
    )


def benchmark_stage(settings: ValidationSettings) -> StageSpec:
    return StageSpec(
        "performance",
        settings.benchmark_command,
        settings.benchmark_timeout,
        ErrorKind.TIMEOUT,
        optional=True,
    )


async def run_stage(
    sandbox: Sandbox,
    spec: StageSpec,
    *,
    patch_id: str | None = None,
) -> Tuple[StageResult, CommandResult | None]:
    """Execute ``spec`` in ``sandbox`` and classify the outcome.

    An unset command is skipped. A missing executable fails required stages
    and skips optional ones. Expiry of the timeout fails the stage with
    :attr:`ErrorKind.TIMEOUT` whatever the stage is.
    """

    if not spec.command:
        return spec.skipped(f"{spec.name} command not configured"), None

    result = await sandbox.run(spec.command, timeout=spec.timeout)
    diagnostics = extract_diagnostics([result.stdout, result.stderr])
    stage = StageResult(
        name=spec.name,
        passed=result.succeeded,
        exit_code=result.exit_code,
        duration_ms=result.duration_ms,
        timed_out=result.timed_out,
        command=result.display(),
        stdout_tail=result.tail("stdout"),
        stderr_tail=result.tail("stderr"),
        errors=diagnostics.errors,
        warnings=diagnostics.warnings,
    )
    if result.missing:
        if spec.optional:
            stage = spec.skipped(result.stderr)
        else:
            stage.passed = False
            stage.error_kind = spec.failure_kind
            stage.errors.append(result.stderr)
    elif result.timed_out:
        stage.error_kind = ErrorKind.TIMEOUT
        stage.errors.append(f"{spec.name} timed out after {spec.timeout:.1f}s")
    elif not result.succeeded:
        stage.error_kind = spec.failure_kind
        if not stage.errors:
            fallback = result.combined_output.strip().splitlines()
            stage.errors.append(fallback[-1] if fallback else f"{spec.name} exited with {result.exit_code}")

    LOGGER.debug("Stage %s for patch %s: passed=%s skipped=%s", spec.name, patch_id, stage.passed, stage.skipped)
    emit_event(
        "validation_stage",
        patch_id=patch_id,
        stage=spec.name,
        passed=stage.passed,
        skipped=stage.skipped,
        exit_code=stage.exit_code,
        duration_ms=stage.duration_ms,
        timed_out=stage.timed_out,
        error_kind=stage.error_kind,
        isolation=sandbox.isolation,
    )
    return stage, result


__all__ = ["StageSpec", "benchmark_stage", "configured_stages", "run_stage"]
