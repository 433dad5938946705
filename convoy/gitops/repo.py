"""Git operations the coordinator needs: merge into trunk plus provisioning and cleanup helpers.

Everything goes through a CommandRunner, so tests substitute a scripted runner.
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Protocol
from urllib.parse import urlparse

import structlog

from convoy.infra.errors import CommandError, MergeConflictError
from convoy.infra.proc import CommandResult, CommandRunner, run_command

logger = structlog.get_logger()


class Trunk(Protocol):
    """The integration branch the supervisor merges features into."""

    async def merge(self, feature: str, branch: str) -> None: ...


class GitRepository:
    """Thin async wrapper over the git CLI for one working tree."""

    def __init__(
        self,
        workdir: Path,
        *,
        trunk: str = "main",
        runner: CommandRunner = run_command,
    ) -> None:
        self._workdir = workdir
        self._trunk = trunk
        self._runner = runner

    @property
    def trunk(self) -> str:
        return self._trunk

    async def _git(self, *args: str, cwd: Path | None = None) -> CommandResult:
        return await self._runner(["git", *args], cwd=cwd or self._workdir)

    async def _git_checked(self, *args: str, cwd: Path | None = None) -> CommandResult:
        result = await self._git(*args, cwd=cwd)
        if not result.ok:
            raise CommandError(
                f"git {' '.join(args)} failed: {result.output or 'no output'}",
                returncode=result.returncode,
            )
        return result

    async def merge(self, feature: str, branch: str) -> None:
        """Merge ``branch`` into the trunk with a merge commit.

        On conflict the merge is aborted, leaving the trunk clean, and
        MergeConflictError carries the conflicting paths.
        """
        await self._git_checked("checkout", self._trunk)
        result = await self._git("merge", "--no-ff", "--no-edit", branch)
        if result.ok:
            logger.info("feature_merged", feature=feature, branch=branch, trunk=self._trunk)
            return
        conflicted = await self._git("diff", "--name-only", "--diff-filter=U")
        files = tuple(line.strip() for line in conflicted.stdout.splitlines() if line.strip())
        abort = await self._git("merge", "--abort")
        if not abort.ok:
            logger.warning("merge_abort_failed", feature=feature, output=abort.output)
        raise MergeConflictError(
            f"merging {branch} into {self._trunk} failed: {result.output or 'conflict'}",
            feature=feature,
            files=files,
        )

    async def branch_exists(self, branch: str) -> bool:
        result = await self._git("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}")
        return result.ok

    async def ensure_branch(self, branch: str, *, start_point: str | None = None) -> None:
        if await self.branch_exists(branch):
            return
        await self._git_checked("branch", branch, start_point or self._trunk)
        logger.info("branch_created", branch=branch, start_point=start_point or self._trunk)

    async def add_worktree(self, directory: Path, branch: str) -> None:
        if directory.exists():
            logger.info("worktree_exists", directory=str(directory), branch=branch)
            return
        await self._git_checked("worktree", "add", str(directory), branch)
        logger.info("worktree_added", directory=str(directory), branch=branch)

    async def remove_worktree(self, directory: Path) -> bool:
        """Remove a linked worktree; a directory git no longer tracks is deleted outright."""
        if not directory.exists():
            return False
        result = await self._git("worktree", "remove", "--force", str(directory))
        if not result.ok:
            logger.warning("worktree_remove_failed", directory=str(directory), output=result.output)
            shutil.rmtree(directory)
            await self._git("worktree", "prune")
        logger.info("worktree_removed", directory=str(directory))
        return True

    async def delete_branch(self, branch: str) -> bool:
        if not await self.branch_exists(branch):
            return False
        await self._git_checked("branch", "-D", branch)
        logger.info("branch_deleted", branch=branch)
        return True

    async def remote_url(self, remote: str) -> str | None:
        result = await self._git("remote", "get-url", remote)
        if not result.ok:
            return None
        return result.stdout.strip() or None

    async def push(self, remote: str, branch: str) -> None:
        await self._git_checked("push", "--set-upstream", remote, branch)


def remote_host(url: str) -> str | None:
    """Host part of an https, ssh or scp-style git remote URL."""
    url = url.strip()
    if not url:
        return None
    if "://" in url:
        host = urlparse(url).hostname
        return host.lower() if host else None
    # scp-like: git@github.com:org/repo.git
    head, sep, _ = url.partition(":")
    if not sep:
        return None
    host = head.rsplit("@", 1)[-1]
    return host.lower() or None
