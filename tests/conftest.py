from __future__ import annotations

import json
import shlex
import subprocess
import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from selfheal.config import SelfHealConfig  # noqa: E402
from selfheal.models.providers import LocalBackend  # noqa: E402

PYTHON = shlex.quote(sys.executable)

CALC_SOURCE = textwrap.dedent(
    """
    import os


    def total(values):
        return eval("+".join(str(v) for v in values))


    def double(value):
        return value * 2
    """
).lstrip()

FIX_COMPLETION = textwrap.dedent(
    """
    Explanation: Replace the eval call with the builtin sum; this resolves the issue.

    ```diff
    --- a/app/calc.py
    +++ b/app/calc.py
    @@ -4,2 +4,2 @@
     def total(values):
    -    return eval("+".join(str(v) for v in values))
    +    return sum(values)
    ```
    """
).lstrip()


def run_git(root: Path, *cmd: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["git", *cmd],
        cwd=root,
        check=True,
        capture_output=True,
        text=True,
    )


@dataclass(slots=True)
class CalcRepo:
    """Fixture payload describing the synthetic repository under repair."""

    root: Path

    @property
    def calc_path(self) -> Path:
        return self.root / "app" / "calc.py"

    def git(self, *cmd: str) -> str:
        return run_git(self.root, *cmd).stdout

    def head(self) -> str:
        return self.git("rev-parse", "HEAD").strip()

    def status(self) -> str:
        return self.git("status", "--porcelain")


@pytest.fixture()
def calc_repo(tmp_path: Path) -> CalcRepo:
    """Create a git repository holding a small Python module with an ``eval`` call."""

    repo_root = tmp_path / "calc-repo"
    (repo_root / "app").mkdir(parents=True)
    run_git(repo_root, "init", "--quiet")
    run_git(repo_root, "config", "user.email", "bot@example.com")
    run_git(repo_root, "config", "user.name", "Repair Bot")
    run_git(repo_root, "symbolic-ref", "HEAD", "refs/heads/main")

    (repo_root / "app" / "calc.py").write_text(CALC_SOURCE, encoding="utf-8")
    (repo_root / ".gitignore").write_text("__pycache__/\ndata/\n", encoding="utf-8")
    run_git(repo_root, "add", ".")
    run_git(repo_root, "commit", "--quiet", "-m", "Initial calc module")
    return CalcRepo(root=repo_root)


def make_config(root: Path, **sections: dict) -> SelfHealConfig:
    """Config whose validation stages run the current interpreter against ``app/calc.py``."""

    payload: dict = {
        "project": {"repo_root": str(root)},
        "analysis": {"extensions": [".py"], "enabled_passes": ["security"]},
        "llm": {"backend": "local", "model": "fixture"},
        "validation": {
            "build_command": f"{PYTHON} -m py_compile app/calc.py",
            "test_command": f'{PYTHON} -c "import app.calc as c; assert c.total([1, 2]) == 3"',
            "security_command": None,
            "build_timeout": 60,
            "test_timeout": 60,
        },
        "storage": {"db_path": ":memory:"},
    }
    for name, values in sections.items():
        payload.setdefault(name, {}).update(values)
    return SelfHealConfig.model_validate(payload)


def scripted_backend(completions: Iterable[str]) -> LocalBackend:
    """Local backend whose transport replays ``completions`` in order (the last one repeats)."""

    queue: List[str] = list(completions)

    def _transport(payload: dict) -> str:
        text = queue.pop(0) if len(queue) > 1 else queue[0]
        return json.dumps({"response": text, "model": "fixture", "prompt_eval_count": 10, "eval_count": 5})

    return LocalBackend(model="fixture", transport=_transport, max_attempts=1, retry_delay=0.0)


@pytest.fixture()
def backend_factory() -> Callable[..., LocalBackend]:
    return lambda *completions: scripted_backend(completions or (FIX_COMPLETION,))
