"""Async subprocess helpers used by every external collaborator (git, build, gh, QA).

Collaborators take a ``CommandRunner`` so tests can substitute scripted results.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import structlog

from convoy.infra.errors import CommandError

logger = structlog.get_logger()


@dataclass(frozen=True)
class CommandResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stdout/stderr, for build logs and error messages."""
        parts = [part.strip() for part in (self.stdout, self.stderr) if part.strip()]
        return "\n".join(parts)


class CommandRunner(Protocol):
    async def __call__(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult: ...


async def run_command(
    args: Sequence[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> CommandResult:
    """Run a command to completion and capture its output.

    A missing binary is reported as CommandError; a non-zero exit is returned,
    not raised, so callers decide what failure means.
    """
    merged_env = None
    if env:
        merged_env = {**os.environ, **env}
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            cwd=cwd,
            env=merged_env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, PermissionError) as exc:
        raise CommandError(f"cannot run {' '.join(args)}: {exc}") from exc
    stdout, stderr = await process.communicate()
    result = CommandResult(
        args=tuple(args),
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )
    logger.debug("command_finished", args=list(args), returncode=result.returncode)
    return result


async def stop_process(process: asyncio.subprocess.Process, *, timeout_s: float) -> None:
    """Terminate a long-running process, escalating to kill after ``timeout_s``."""
    if process.returncode is not None:
        return
    process.terminate()
    try:
        await asyncio.wait_for(process.wait(), timeout=timeout_s)
    except TimeoutError:
        logger.warning("process_kill_after_timeout", pid=process.pid, timeout_s=timeout_s)
        process.kill()
        await process.wait()
