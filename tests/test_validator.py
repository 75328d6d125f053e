from __future__ import annotations

import asyncio
import tempfile
from pathlib import Path
from typing import Dict

import pytest

from conftest import CALC_SOURCE, PYTHON, CalcRepo, make_config
from selfheal.config import ContainerSettings
from selfheal.errors import ErrorKind
from selfheal.storage.schema import Patch, StageResult, ValidationOutcome
from selfheal.tools.diffs import make_diff
from selfheal.tools.sandbox import Sandbox, container_available
from selfheal.validation import PatchValidator, classify, generate_validation_report

FIXED_SOURCE = CALC_SOURCE.replace('eval("+".join(str(v) for v in values))', "sum(values)")
BROKEN_SOURCE = CALC_SOURCE.replace('eval("+".join(str(v) for v in values))', "0")


def _patch(updated: str = FIXED_SOURCE) -> Patch:
    return Patch(issue_id="issue-1", diff=make_diff(CALC_SOURCE, updated, "app/calc.py"))


def _validator(root: Path, **validation) -> PatchValidator:
    config = make_config(root, validation=validation)
    return PatchValidator(root, config.validation, git_settings=config.git)


def _snapshot(root: Path) -> Dict[str, bytes]:
    return {path.relative_to(root).as_posix(): path.read_bytes() for path in sorted(root.rglob("*")) if path.is_file()}


def test_valid_patch_passes_every_stage(calc_repo: CalcRepo) -> None:
    before = _snapshot(calc_repo.root)

    result = asyncio.run(_validator(calc_repo.root).validate(_patch()))

    assert result.outcome is ValidationOutcome.SUCCESS
    assert (result.build_success, result.test_success, result.security_scan_passed) == (True, True, True)
    assert [stage.name for stage in result.stages] == ["apply", "build", "test", "security", "performance"]
    assert result.stage("security").skipped
    assert result.error_kind is None
    assert result.isolation == "filesystem"
    assert _snapshot(calc_repo.root) == before


def test_failing_build_marks_result_failed(calc_repo: CalcRepo) -> None:
    patch = _patch()
    validator = _validator(calc_repo.root, build_command=f'{PYTHON} -c "import sys; sys.exit(1)"')

    result = asyncio.run(validator.validate(patch))

    assert result.build_success is False
    assert result.outcome is ValidationOutcome.FAILED
    assert result.error_kind is ErrorKind.BUILD_FAILURE
    assert result.stage("build").exit_code == 1
    assert result.stage("test") is not None
    assert patch.applied is False


def test_failing_tests_are_classified(calc_repo: CalcRepo) -> None:
    result = asyncio.run(_validator(calc_repo.root).validate(_patch(BROKEN_SOURCE)))

    assert result.build_success is True
    assert result.test_success is False
    assert result.outcome is ValidationOutcome.FAILED
    assert result.error_kind is ErrorKind.TEST_FAILURE
    assert result.errors


def test_security_failure_is_a_warning(calc_repo: CalcRepo) -> None:
    validator = _validator(calc_repo.root, security_command=f'{PYTHON} -c "raise SystemExit(3)"')

    result = asyncio.run(validator.validate(_patch()))

    assert result.outcome is ValidationOutcome.WARNING
    assert result.error_kind is ErrorKind.SECURITY_FAILURE
    assert result.security_scan_passed is False


def test_missing_tools_skip_optional_stages_and_fail_required_ones(calc_repo: CalcRepo) -> None:
    optional = _validator(calc_repo.root, security_command="selfheal-no-such-scanner --all")
    required = _validator(calc_repo.root, build_command="selfheal-no-such-compiler build")

    skipped = asyncio.run(optional.validate(_patch()))
    failed = asyncio.run(required.validate(_patch()))

    assert skipped.outcome is ValidationOutcome.SUCCESS
    assert skipped.stage("security").skipped
    assert failed.outcome is ValidationOutcome.FAILED
    assert failed.error_kind is ErrorKind.BUILD_FAILURE


def test_timeouts_are_reported_after_retries(calc_repo: CalcRepo) -> None:
    validator = _validator(
        calc_repo.root,
        test_command=f'{PYTHON} -c "import time; time.sleep(10)"',
        test_timeout=0.5,
        max_attempts=2,
    )

    result = asyncio.run(validator.validate(_patch()))

    assert result.outcome is ValidationOutcome.FAILED
    assert result.error_kind is ErrorKind.TIMEOUT
    assert result.stage("test").timed_out


def test_conflicting_patch_fails_at_apply(calc_repo: CalcRepo) -> None:
    stale = Patch(issue_id="issue-1", diff=make_diff("def other():\n    pass\n", "def other():\n    return 1\n", "app/calc.py"))

    result = asyncio.run(_validator(calc_repo.root).validate(stale))

    assert result.outcome is ValidationOutcome.FAILED
    assert result.error_kind is ErrorKind.GIT_CONFLICT
    assert [stage.name for stage in result.stages] == ["apply"]
    assert calc_repo.status() == ""


def test_concurrent_validations_keep_order_and_leave_workspace_untouched(calc_repo: CalcRepo) -> None:
    before = _snapshot(calc_repo.root)
    patches = [_patch(), _patch(BROKEN_SOURCE), _patch(FIXED_SOURCE.replace("value * 2", "value + value"))]
    validator = _validator(calc_repo.root, max_concurrent_validations=2)

    results = asyncio.run(validator.validate_many(patches))

    assert [result.patch_id for result in results] == [patch.id for patch in patches]
    assert [result.outcome for result in results] == [
        ValidationOutcome.SUCCESS,
        ValidationOutcome.FAILED,
        ValidationOutcome.SUCCESS,
    ]
    assert _snapshot(calc_repo.root) == before


def test_plain_directory_is_initialised_inside_the_sandbox(tmp_path: Path) -> None:
    (tmp_path / "app").mkdir()
    (tmp_path / "app" / "calc.py").write_text(CALC_SOURCE, encoding="utf-8")

    result = asyncio.run(_validator(tmp_path).validate(_patch()))

    assert result.outcome is ValidationOutcome.SUCCESS
    assert not (tmp_path / ".git").exists()


def test_performance_is_measured_against_a_baseline(calc_repo: CalcRepo) -> None:
    validator = _validator(
        calc_repo.root,
        measure_performance=True,
        benchmark_command=f'{PYTHON} -c "import app.calc as c; c.total(range(1000))"',
        artifact_globs=["app/*.py"],
    )

    result = asyncio.run(validator.validate(_patch()))

    performance = result.stage("performance")
    assert performance is not None and not performance.skipped
    assert result.performance.binary_size_change_bytes == len(FIXED_SOURCE) - len(CALC_SOURCE)


def test_classify_maps_stage_outcomes() -> None:
    ok = StageResult(name="build", passed=True)
    failed_test = StageResult(name="test", passed=False, error_kind=ErrorKind.TEST_FAILURE)
    failed_scan = StageResult(name="security", passed=False, error_kind=ErrorKind.SECURITY_FAILURE)

    assert classify(ok, ok, ok) == (ValidationOutcome.SUCCESS, None)
    assert classify(ok, ok, failed_scan) == (ValidationOutcome.WARNING, ErrorKind.SECURITY_FAILURE)
    assert classify(ok, failed_test, failed_scan) == (ValidationOutcome.FAILED, ErrorKind.TEST_FAILURE)


def test_report_summarises_results(calc_repo: CalcRepo) -> None:
    validator = _validator(calc_repo.root)
    results = asyncio.run(validator.validate_many([_patch(), _patch(BROKEN_SOURCE)]))

    report = generate_validation_report(results)

    assert report.startswith("# Patch Validation Report")
    assert "Success rate: 50.0%" in report
    assert "TestFailure" in report


def _outcome(result) -> tuple:
    return (
        result.outcome,
        result.error_kind,
        (result.build_success, result.test_success, result.security_scan_passed),
        result.errors,
        [(stage.name, stage.passed, stage.skipped, stage.exit_code, stage.command) for stage in result.stages],
    )


def _fake_runtime(tmp_path: Path) -> Path:
    """A docker stand-in: ``info`` succeeds and ``run`` executes the wrapped command locally."""

    script = tmp_path / "fake-docker"
    script.write_text(
        '#!/bin/sh\n'
        'if [ "$1" = "info" ]; then exit 0; fi\n'
        'if [ "$1" = "run" ]; then shift 9; exec "$@"; fi\n'
        'exit 0\n',
        encoding="utf-8",
    )
    script.chmod(0o755)
    return script


def test_unavailable_container_runtime_falls_back_to_filesystem(calc_repo: CalcRepo) -> None:
    patch = _patch()
    plain = asyncio.run(_validator(calc_repo.root).validate(patch))
    fallback = asyncio.run(
        _validator(
            calc_repo.root,
            container={"enabled": True, "executable": "selfheal-no-such-runtime"},
        ).validate(patch)
    )

    assert fallback.isolation == plain.isolation == "filesystem"
    assert _outcome(fallback) == _outcome(plain)


def test_container_runtime_runs_stages_and_reports_the_stage_command(calc_repo: CalcRepo, tmp_path: Path) -> None:
    runtime = _fake_runtime(tmp_path)
    settings = ContainerSettings(enabled=True, executable=str(runtime))
    patch = _patch()

    plain = asyncio.run(_validator(calc_repo.root).validate(patch))
    contained = asyncio.run(
        _validator(calc_repo.root, container=settings.model_dump()).validate(patch)
    )

    assert asyncio.run(container_available(settings)) is True
    assert contained.isolation == "container"
    assert _outcome(contained) == _outcome(plain)
    assert contained.stage("build").command == plain.stage("build").command


def test_sandbox_runs_container_command_through_the_runtime(tmp_path: Path) -> None:
    runtime = _fake_runtime(tmp_path)
    root = tmp_path / "workspace"
    root.mkdir()
    sandbox = Sandbox(
        root=root,
        source=root,
        isolation="container",
        container=ContainerSettings(enabled=True, executable=str(runtime)),
    )

    result = asyncio.run(sandbox.run("echo contained && echo done", timeout=10))

    assert result.succeeded
    assert result.stdout.splitlines() == ["contained", "done"]
    assert result.command == ("echo", "contained", "&&", "echo", "done")


def test_missing_runtime_is_not_available() -> None:
    settings = ContainerSettings(enabled=True, executable="selfheal-no-such-runtime")

    assert asyncio.run(container_available(settings)) is False


def test_sandboxes_are_removed_after_timeouts_and_errors(
    calc_repo: CalcRepo, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    scratch = tmp_path / "scratch"
    scratch.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(scratch))
    slow = _validator(
        calc_repo.root,
        test_command=f'{PYTHON} -c "import time; time.sleep(10)"',
        test_timeout=0.5,
    )
    broken = _validator(calc_repo.root)

    def _explode(root: Path, diff: str) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(broken, "_prepare_and_apply", _explode)

    timed_out = asyncio.run(slow.validate(_patch()))
    aborted = asyncio.run(broken.validate(_patch()))

    assert timed_out.error_kind is ErrorKind.TIMEOUT
    assert aborted.error_kind is ErrorKind.VALIDATION_ERROR
    assert list(scratch.glob("selfheal-sandbox-*")) == []


def test_unexpected_errors_become_failed_results(calc_repo: CalcRepo, monkeypatch: pytest.MonkeyPatch) -> None:
    validator = _validator(calc_repo.root)
    doomed, healthy = _patch(BROKEN_SOURCE), _patch()
    prepare = validator._prepare_and_apply

    def _explode(root: Path, diff: str) -> None:
        if diff == doomed.diff:
            raise OSError("disk full")
        prepare(root, diff)

    monkeypatch.setattr(validator, "_prepare_and_apply", _explode)

    first, second = asyncio.run(validator.validate_many([doomed, healthy]))

    assert first.patch_id == doomed.id
    assert first.outcome is ValidationOutcome.FAILED
    assert first.error_kind is ErrorKind.VALIDATION_ERROR
    assert first.errors == ["OSError: disk full"]
    assert first.stages == []
    assert second.patch_id == healthy.id
    assert second.outcome is ValidationOutcome.SUCCESS


def test_failed_stage_without_diagnostics_reports_last_output_line(calc_repo: CalcRepo) -> None:
    validator = _validator(
        calc_repo.root,
        build_command=f"{PYTHON} -c \"print('compiling'); print('linker gave up'); raise SystemExit(2)\"",
    )

    result = asyncio.run(validator.validate(_patch()))

    assert result.error_kind is ErrorKind.BUILD_FAILURE
    assert result.stage("build").errors == ["linker gave up"]
