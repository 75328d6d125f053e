"""Markdown rendering of validation results."""

from __future__ import annotations

from typing import List, Sequence

from ..storage.schema import ValidationOutcome, ValidationResult


def _mark(flag: bool) -> str:
    return "pass" if flag else "FAIL"


def render_stage_table(result: ValidationResult) -> List[str]:
    lines = ["| Stage | Result | Exit | Duration (ms) | Kind |", "| --- | --- | --- | --- | --- |"]
    for stage in result.stages:
        status = "skipped" if stage.skipped else _mark(stage.passed)
        if stage.timed_out:
            status = "timeout"
        exit_code = "" if stage.exit_code is None else str(stage.exit_code)
        kind = stage.error_kind.value if stage.error_kind else ""
        lines.append(f"| {stage.name} | {status} | {exit_code} | {stage.duration_ms} | {kind} |")
    return lines


def generate_validation_report(results: Sequence[ValidationResult]) -> str:
    """Summarise ``results`` with a per-patch, stage-by-stage breakdown."""

    total = len(results)
    successful = sum(1 for item in results if item.outcome is ValidationOutcome.SUCCESS)
    warnings = sum(1 for item in results if item.outcome is ValidationOutcome.WARNING)
    failed = sum(1 for item in results if item.outcome is ValidationOutcome.FAILED)
    rate = (successful / total * 100.0) if total else 0.0

    lines = [
        "# Patch Validation Report",
        "",
        "## Summary",
        f"- Total patches: {total}",
        f"- Successful: {successful}",
        f"- Warnings: {warnings}",
        f"- Failed: {failed}",
        f"- Success rate: {rate:.1f}%",
    ]
    for result in results:
        lines.extend(["", f"## Patch {result.patch_id}"])
        lines.append(f"- Status: {result.outcome.value}")
        if result.error_kind:
            lines.append(f"- Error kind: {result.error_kind.value}")
        lines.append(f"- Build: {_mark(result.build_success)}")
        lines.append(f"- Tests: {_mark(result.test_success)}")
        lines.append(f"- Security: {_mark(result.security_scan_passed)}")
        lines.append(f"- Isolation: {result.isolation}")
        perf = result.performance
        if perf.compile_time_change_pct is not None:
            lines.append(f"- Compile time change: {perf.compile_time_change_pct:+.1f}%")
        if perf.binary_size_change_bytes is not None:
            lines.append(f"- Binary size change: {perf.binary_size_change_bytes:+d} bytes")
        if perf.runtime_change_pct is not None:
            lines.append(f"- Runtime change: {perf.runtime_change_pct:+.1f}%")
        if result.stages:
            lines.append("")
            lines.extend(render_stage_table(result))
        if result.errors:
            lines.extend(["", "### Errors"])
            lines.extend(f"- {error}" for error in result.errors)
        if result.warnings:
            lines.extend(["", "### Warnings"])
            lines.extend(f"- {warning}" for warning in result.warnings)
    return "\n".join(lines) + "\n"


__all__ = ["generate_validation_report", "render_stage_table"]
