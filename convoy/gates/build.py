"""Build verification: install, compile, and optionally smoke-start the service."""

from __future__ import annotations

import asyncio
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import structlog

from convoy.config.settings import BuildSettings
from convoy.infra.errors import CommandError
from convoy.infra.proc import CommandRunner, run_command, stop_process

logger = structlog.get_logger()


@dataclass(frozen=True)
class BuildResult:
    ok: bool
    log: str = ""


class BuildGate(Protocol):
    async def check(self, smoke_start: bool) -> BuildResult: ...


class CommandBuildGate:
    """BuildGate backed by shell commands from BuildSettings. Empty commands are skipped."""

    def __init__(
        self,
        settings: BuildSettings,
        workdir: Path,
        *,
        runner: CommandRunner = run_command,
    ) -> None:
        self._settings = settings
        self._workdir = workdir
        self._runner = runner

    async def check(self, smoke_start: bool) -> BuildResult:
        log: list[str] = []
        for step, command in (
            ("install", self._settings.install_cmd),
            ("build", self._settings.build_cmd),
        ):
            if not command.strip():
                continue
            try:
                result = await self._runner(shlex.split(command), cwd=self._workdir)
            except CommandError as exc:
                log.append(f"[{step}] {exc}")
                logger.warning("build_step_failed", step=step, error=str(exc))
                return BuildResult(ok=False, log="\n".join(log))
            log.append(f"[{step}] exit={result.returncode}\n{result.output}".rstrip())
            if not result.ok:
                logger.warning("build_step_failed", step=step, returncode=result.returncode)
                return BuildResult(ok=False, log="\n".join(log))
        if smoke_start and self._settings.start_cmd.strip():
            ok, detail = await self._smoke_start(self._settings.start_cmd)
            log.append(f"[start] {detail}")
            if not ok:
                logger.warning("smoke_start_failed", detail=detail)
                return BuildResult(ok=False, log="\n".join(log))
        logger.info("build_verified", smoke_start=smoke_start)
        return BuildResult(ok=True, log="\n".join(log))

    async def _smoke_start(self, command: str) -> tuple[bool, str]:
        """Start the service, require it to survive the grace period, then stop it."""
        args = shlex.split(command)
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=self._workdir,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as exc:
            return False, f"cannot start {command}: {exc}"
        try:
            await asyncio.wait_for(process.wait(), timeout=self._settings.grace_period_s)
        except TimeoutError:
            return True, f"running after {self._settings.grace_period_s}s"
        finally:
            await stop_process(process, timeout_s=self._settings.stop_timeout_s)
        stderr = b""
        if process.stderr is not None:
            stderr = await process.stderr.read()
        return False, (
            f"exited with {process.returncode} during grace period\n"
            f"{stderr.decode('utf-8', errors='replace').strip()}"
        ).rstrip()
