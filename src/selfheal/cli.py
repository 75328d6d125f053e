"""CLI commands for the self-healing repair pipeline."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import List, Optional

import typer

from .analysis.detector import IssueDetector, summarise
from .analysis.passes import DETECTOR_PASSES
from .config import DEFAULT_CONFIG_NAME, SelfHealConfig
from .errors import ConfigurationError, SelfHealError
from .generation.generator import format_patch_for_review
from .lifecycle import PatchState, begin_validation, record_validation, state_of
from .pipeline import PipelineOrchestrator, format_report
from .storage.schema import IssueStatus
from .telemetry import configure_logging
from .validation.report import generate_validation_report

APP_HELP = "Detect code issues, generate patches, validate them in a sandbox and apply them."

app = typer.Typer(help=APP_HELP)

CONFIG_OPTION = typer.Option(
    DEFAULT_CONFIG_NAME,
    "--config",
    "-c",
    help="Path to the self-heal configuration file.",
)


def load_config(config_path: Path) -> SelfHealConfig:
    """Load configuration, anchoring a relative ``repo_root`` at the config file."""

    try:
        config = SelfHealConfig.load(config_path)
    except ConfigurationError as error:
        typer.echo(f"Failed to load config: {error}")
        raise typer.Exit(code=1) from error
    repo_root = config.project.repo_root
    if not repo_root.is_absolute():
        config.project.repo_root = (config_path.resolve().parent / repo_root).resolve()
    return config


def _orchestrator(config_path: Path) -> PipelineOrchestrator:
    config = load_config(config_path)
    try:
        return PipelineOrchestrator.from_config(config)
    except ConfigurationError as error:
        typer.echo(f"Configuration error: {error}")
        raise typer.Exit(code=1) from error


def _fail(error: SelfHealError) -> typer.Exit:
    typer.echo(f"{error.kind.value}: {error}")
    return typer.Exit(code=1)


@app.callback()
def main_callback(
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level for console output."),
    telemetry: bool = typer.Option(
        False,
        "--telemetry/--no-telemetry",
        help="Include JSON telemetry events in the console output.",
    ),
) -> None:
    configure_logging(log_level, telemetry=telemetry)


@app.command()
def analyze(
    path: Optional[Path] = typer.Argument(None, help="Directory to scan (defaults to the repository root)."),
    config: str = CONFIG_OPTION,
    record: bool = typer.Option(False, "--record/--no-record", help="Persist detected issues in the store."),
    as_json: bool = typer.Option(False, "--json", help="Print issues as JSON lines."),
) -> None:
    """Run the detector passes and list the issues found."""
    config_path = Path(config)
    if record:
        orchestrator = _orchestrator(config_path)
        try:
            issues = orchestrator.detect_and_record(path)
        finally:
            orchestrator.close()
    else:
        settings = load_config(config_path)
        issues = IssueDetector(settings.analysis).detect(path or settings.project.repo_root)

    if as_json:
        for issue in issues:
            typer.echo(issue.model_dump_json())
        return
    summary = summarise(issues)
    typer.echo(f"Issues: {summary['total']}")
    for issue in issues:
        typer.echo(f"- [{issue.severity.value}] {issue.kind.value} {issue.location()} :: {issue.message} ({issue.id})")


@app.command()
def generate(
    issue_id: str = typer.Argument(..., help="Identifier of a stored issue."),
    config: str = CONFIG_OPTION,
    count: Optional[int] = typer.Option(None, "--count", "-n", help="Number of candidates to request."),
    explain: bool = typer.Option(False, "--explain", help="Also ask the backend to explain the issue."),
    review: bool = typer.Option(False, "--review", help="Ask the backend to review each usable candidate."),
) -> None:
    """Generate ranked candidate patches for one issue without applying them."""
    orchestrator = _orchestrator(Path(config))
    try:
        issue = orchestrator.store.get_issue(issue_id)
        if issue is None:
            typer.echo(f"Unknown issue: {issue_id}")
            raise typer.Exit(code=1)
        try:
            if explain:
                typer.echo(orchestrator.generator.explain_issue(issue))
                typer.echo("")
            patches = orchestrator.generator.generate_candidates(issue, count)
            for patch in patches:
                orchestrator.store.create_patch(patch)
            reviews = {
                patch.id: orchestrator.generator.review_patch(issue, patch)
                for patch in patches
                if review and state_of(patch) is PatchState.PENDING
            }
        except SelfHealError as error:
            raise _fail(error) from error
        for patch in patches:
            typer.echo(format_patch_for_review(patch, issue, reviews.get(patch.id)))
            typer.echo("")
    finally:
        orchestrator.close()


@app.command()
def validate(
    patch_ids: List[str] = typer.Argument(..., help="Identifiers of stored patches."),
    config: str = CONFIG_OPTION,
) -> None:
    """Validate stored patches in isolated sandboxes and print the report."""
    orchestrator = _orchestrator(Path(config))
    try:
        patches = []
        for patch_id in patch_ids:
            patch = orchestrator.store.get_patch(patch_id)
            if patch is None:
                typer.echo(f"Unknown patch: {patch_id}")
                raise typer.Exit(code=1)
            if state_of(patch) is not PatchState.PENDING:
                typer.echo(f"Patch {patch_id} is {state_of(patch).value}; only Pending patches can be validated.")
                raise typer.Exit(code=1)
            patches.append(patch)
        for patch in patches:
            begin_validation(patch)
            orchestrator.store.create_patch(patch)
        results = asyncio.run(orchestrator.validator.validate_many(patches))
        allow = orchestrator.config.validation.allow_security_warnings
        for patch, result in zip(patches, results):
            orchestrator.store.record_validation_result(result)
            record_validation(patch, result, allow_warnings=allow)
            orchestrator.store.create_patch(patch)
        typer.echo(generate_validation_report(results))
    finally:
        orchestrator.close()


@app.command()
def run(
    path: Optional[Path] = typer.Argument(None, help="Directory to scan (defaults to the repository root)."),
    config: str = CONFIG_OPTION,
    max_issues: Optional[int] = typer.Option(None, "--max-issues", help="Stop after this many issues."),
) -> None:
    """Detect, generate, validate and apply fixes end to end."""
    orchestrator = _orchestrator(Path(config))
    try:
        reports = asyncio.run(orchestrator.run(path, max_issues=max_issues))
    except SelfHealError as error:
        raise _fail(error) from error
    finally:
        orchestrator.close()
    typer.echo(format_report(reports))


@app.command()
def issues(
    config: str = CONFIG_OPTION,
    status: Optional[IssueStatus] = typer.Option(None, "--status", help="Only list issues in this state."),
    search: Optional[str] = typer.Option(None, "--search", help="Substring to match in path, message or kind."),
    limit: int = typer.Option(50, "--limit", help="Maximum number of search results."),
) -> None:
    """List stored issues."""
    orchestrator = _orchestrator(Path(config))
    try:
        if search:
            found = orchestrator.store.search_issues(search, limit=limit)
        else:
            found = orchestrator.store.get_issues_by_status(status or IssueStatus.OPEN)
        if status and search:
            found = [issue for issue in found if issue.status is status]
    finally:
        orchestrator.close()
    if not found:
        typer.echo("No matching issues.")
        return
    for issue in found:
        typer.echo(f"- {issue.id} [{issue.status.value}] {issue.kind.value} {issue.location()} :: {issue.message}")


@app.command()
def rollback(
    patch_id: str = typer.Argument(..., help="Identifier of an applied patch."),
    config: str = CONFIG_OPTION,
) -> None:
    """Revert an applied patch and reopen its issue."""
    orchestrator = _orchestrator(Path(config))
    try:
        patch = orchestrator.rollback(patch_id)
    except SelfHealError as error:
        raise _fail(error) from error
    finally:
        orchestrator.close()
    typer.echo(f"Rolled back patch {patch.id}; issue {patch.issue_id} reopened.")


@app.command()
def passes(config: str = CONFIG_OPTION) -> None:
    """List detector passes, their rule codes and whether they are enabled."""
    enabled = set(load_config(Path(config)).analysis.enabled_passes)
    for name, definition in DETECTOR_PASSES.items():
        marker = "x" if name in enabled else " "
        typer.echo(f"[{marker}] {name}: {definition.description}")
        typer.echo(f"    rules: {', '.join(definition.rules)}")


@app.command()
def stats(config: str = CONFIG_OPTION) -> None:
    """Print store statistics as JSON."""
    orchestrator = _orchestrator(Path(config))
    try:
        payload = orchestrator.statistics()
    finally:
        orchestrator.close()
    typer.echo(json.dumps(payload, indent=2, sort_keys=True))


@app.command()
def cleanup(
    config: str = CONFIG_OPTION,
    days: Optional[int] = typer.Option(None, "--days", help="Retention in days (defaults to storage.retention_days)."),
) -> None:
    """Delete resolved issues older than the retention window."""
    orchestrator = _orchestrator(Path(config))
    try:
        retention = days if days is not None else orchestrator.config.storage.retention_days
        removed = orchestrator.store.cleanup_old_data(retention)
    finally:
        orchestrator.close()
    typer.echo(f"Removed {removed} resolved issue(s) older than {retention} day(s).")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
