"""Disposable workspace copies for validating patches.

A sandbox is a plain filesystem copy of the workspace (including ``.git``)
inside a temporary directory. When container isolation is configured and the
container runtime answers, stage commands run inside ``docker run`` with the
copy mounted; otherwise they run directly in the copy. Either way the copy is
removed when the context exits, whatever the outcome.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Literal, Sequence

from ..config import ContainerSettings
from .commands import CommandResult, run_command, split_command

LOGGER = logging.getLogger(__name__)
_RUNTIME_TIMEOUT = 10.0


@dataclass(slots=True)
class Sandbox:
    """Isolated copy of a workspace owned by exactly one validation task."""

    root: Path
    source: Path
    isolation: Literal["filesystem", "container"] = "filesystem"
    container: ContainerSettings | None = None

    async def run(self, command: str, *, timeout: float) -> CommandResult:
        if self.isolation == "container" and self.container is not None:
            return await self._run_in_container(command, self.container, timeout=timeout)
        return await run_command(command, cwd=self.root, timeout=timeout)

    async def _run_in_container(self, command: str, container: ContainerSettings, *, timeout: float) -> CommandResult:
        name = f"selfheal-{uuid.uuid4().hex[:10]}"
        argv = (
            container.executable,
            "run",
            "--rm",
            "--name",
            name,
            "-v",
            f"{self.root}:/workspace",
            "-w",
            "/workspace",
            container.image,
            "sh",
            "-c",
            command,
        )
        result = await run_command(argv, cwd=self.root, timeout=timeout)
        if result.timed_out:
            await run_command(
                (container.executable, "rm", "-f", name),
                cwd=self.root,
                timeout=_RUNTIME_TIMEOUT,
            )
        # Report the stage command rather than the docker wrapper.
        result.command = split_command(command)
        return result


async def container_available(settings: ContainerSettings) -> bool:
    """Return ``True`` when the container runtime is installed and responsive."""

    if shutil.which(settings.executable) is None:
        return False
    info = await run_command((settings.executable, "info"), cwd=Path.cwd(), timeout=_RUNTIME_TIMEOUT)
    return info.succeeded


@asynccontextmanager
async def isolated_workspace(
    source: Path | str,
    *,
    ignore: Sequence[str] = (),
    container: ContainerSettings | None = None,
) -> AsyncIterator[Sandbox]:
    """Copy ``source`` into a temporary directory and yield a :class:`Sandbox`."""

    source_path = Path(source).resolve()
    holder = tempfile.TemporaryDirectory(prefix="selfheal-sandbox-", ignore_cleanup_errors=True)
    try:
        root = Path(holder.name) / "workspace"
        await asyncio.to_thread(
            shutil.copytree,
            source_path,
            root,
            symlinks=True,
            ignore=shutil.ignore_patterns(*ignore) if ignore else None,
        )
        isolation: Literal["filesystem", "container"] = "filesystem"
        if container is not None and container.enabled:
            if await container_available(container):
                isolation = "container"
            else:
                LOGGER.warning(
                    "Container runtime %s unavailable; validating in a filesystem sandbox",
                    container.executable,
                )
        yield Sandbox(root=root, source=source_path, isolation=isolation, container=container)
    finally:
        await asyncio.to_thread(holder.cleanup)


__all__ = ["Sandbox", "container_available", "isolated_workspace"]
