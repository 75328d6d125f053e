"""Async subprocess execution with hard timeouts."""

from __future__ import annotations

import asyncio
import logging
import shlex
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Sequence

LOGGER = logging.getLogger(__name__)
_TAIL_CHARS = 4000


@dataclass(slots=True)
class CommandResult:
    """Exit status plus captured output of an external tool."""

    command: tuple[str, ...]
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    timed_out: bool = False
    missing: bool = False
    cwd: Path | None = field(default=None, repr=False)

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def combined_output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)

    def tail(self, stream: str) -> str:
        text = self.stdout if stream == "stdout" else self.stderr
        return text[-_TAIL_CHARS:]

    def display(self) -> str:
        return shlex.join(self.command)


def split_command(command: str | Sequence[str]) -> tuple[str, ...]:
    if isinstance(command, str):
        return tuple(shlex.split(command))
    return tuple(command)


async def run_command(
    command: str | Sequence[str],
    *,
    cwd: Path | str,
    timeout: float,
    env: Mapping[str, str] | None = None,
) -> CommandResult:
    """Run ``command`` in ``cwd`` and wait at most ``timeout`` seconds.

    On expiry the process is killed and the result is flagged ``timed_out``.
    A command whose executable cannot be found yields ``missing=True`` and
    ``exit_code=None`` instead of raising.
    """

    argv = split_command(command)
    if not argv:
        raise ValueError("Empty command.")
    started = time.perf_counter()

    def _elapsed() -> int:
        return int((time.perf_counter() - started) * 1000)

    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd),
            env=dict(env) if env is not None else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, PermissionError) as error:
        LOGGER.warning("Command %s could not be started: %s", argv[0], error)
        return CommandResult(
            command=argv,
            exit_code=None,
            stderr=f"Executable not available: {argv[0]} ({error})",
            duration_ms=_elapsed(),
            missing=True,
            cwd=Path(cwd),
        )

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        LOGGER.warning("Command %s exceeded %.1fs; killing pid %s", shlex.join(argv), timeout, process.pid)
        process.kill()
        await process.wait()
        return CommandResult(
            command=argv,
            exit_code=process.returncode,
            stderr=f"Timed out after {timeout:.1f}s",
            duration_ms=_elapsed(),
            timed_out=True,
            cwd=Path(cwd),
        )
    finally:
        if process.returncode is None:
            process.kill()
            await process.wait()

    return CommandResult(
        command=argv,
        exit_code=process.returncode,
        stdout=stdout.decode("utf-8", errors="replace") if stdout else "",
        stderr=stderr.decode("utf-8", errors="replace") if stderr else "",
        duration_ms=_elapsed(),
        cwd=Path(cwd),
    )


__all__ = ["CommandResult", "run_command", "split_command"]
