from __future__ import annotations

import json
import textwrap
from pathlib import Path

from typer.testing import CliRunner

from conftest import CalcRepo
from selfheal.cli import app
from selfheal.storage.schema import IssueStatus
from selfheal.storage.store import PersistenceStore


def _write_config(tmp_path: Path, repo_root: Path) -> tuple[Path, Path]:
    db_path = tmp_path / "state" / "selfheal.sqlite"
    config_path = tmp_path / "selfheal.yaml"
    config_path.write_text(
        textwrap.dedent(
            f"""
            project:
              repo_root: "{repo_root.as_posix()}"
            analysis:
              extensions: [".py"]
              enabled_passes: [security]
            llm:
              backend: local
              model: fixture
            storage:
              db_path: "{db_path.as_posix()}"
            """
        ).strip()
        + "\n",
        encoding="utf-8",
    )
    return config_path, db_path


def _invoke(*args: str):
    runner = CliRunner()
    return runner.invoke(app, ["--log-level", "WARNING", *args], catch_exceptions=False)


def test_analyze_lists_detected_issues(tmp_path: Path, calc_repo: CalcRepo) -> None:
    config_path, db_path = _write_config(tmp_path, calc_repo.root)

    result = _invoke("analyze", "--config", str(config_path))

    assert result.exit_code == 0, result.output
    assert "Issues: 1" in result.output
    assert "app/calc.py:5" in result.output
    assert not db_path.exists()


def test_analyze_record_then_issues_and_stats(tmp_path: Path, calc_repo: CalcRepo) -> None:
    config_path, db_path = _write_config(tmp_path, calc_repo.root)

    recorded = _invoke("analyze", "--config", str(config_path), "--record", "--json")
    assert recorded.exit_code == 0, recorded.output
    lines = [line for line in recorded.output.splitlines() if line.startswith("{")]
    assert len(lines) == 1
    issue_id = json.loads(lines[0])["id"]

    listed = _invoke("issues", "--config", str(config_path))
    assert listed.exit_code == 0, listed.output
    assert issue_id in listed.output

    stats = _invoke("stats", "--config", str(config_path))
    assert stats.exit_code == 0, stats.output
    assert json.loads(stats.output[stats.output.index("{"):])["total_issues"] == 1

    with PersistenceStore(db_path) as store:
        assert store.get_issue(issue_id).status is IssueStatus.OPEN


def test_rollback_of_unknown_patch_exits_nonzero(tmp_path: Path, calc_repo: CalcRepo) -> None:
    config_path, _ = _write_config(tmp_path, calc_repo.root)

    result = _invoke("rollback", "missing-patch", "--config", str(config_path))

    assert result.exit_code == 1
    assert "Unknown patch" in result.output


def test_invalid_configuration_exits_nonzero(tmp_path: Path) -> None:
    config_path = tmp_path / "selfheal.yaml"
    config_path.write_text("analysis:\n  enabled_passes: [telepathy]\n", encoding="utf-8")

    result = _invoke("analyze", "--config", str(config_path))

    assert result.exit_code == 1
    assert "Failed to load config" in result.output


def test_passes_lists_rules_and_enabled_state(tmp_path: Path, calc_repo: CalcRepo) -> None:
    config_path, _ = _write_config(tmp_path, calc_repo.root)

    result = _invoke("passes", "--config", str(config_path))

    assert result.exit_code == 0, result.output
    lines = result.output.splitlines()
    assert any(line.startswith("[x] security:") for line in lines)
    assert any(line.startswith("[ ] unsafe:") for line in lines)
    assert "SEC101" in result.output
