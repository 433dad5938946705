"""Session trunk: the branch every feature of one coordination run merges into.

The first command that needs git picks the trunk and records it in
``TRUNK_BRANCH``; later commands and restarts reuse the recorded name.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import structlog

from convoy.config.settings import TrunkSettings
from convoy.gitops.repo import GitRepository
from convoy.infra.layout import ProjectLayout
from convoy.infra.locking import atomic_write
from convoy.infra.proc import CommandRunner, run_command

logger = structlog.get_logger()

_UNSAFE = re.compile(r"[^a-z0-9-]+")


def session_branch_name(project_dir: Path, prefix: str, now: datetime) -> str:
    project = _UNSAFE.sub("-", project_dir.resolve().name.lower()).strip("-") or "project"
    return f"{prefix}/{project}-{now:%Y%m%d-%H%M%S}"


async def open_session(
    layout: ProjectLayout,
    settings: TrunkSettings,
    *,
    runner: CommandRunner = run_command,
    now_fn: Callable[[], datetime] | None = None,
) -> GitRepository:
    """Repository bound to the recorded trunk, creating the session branch on first use."""
    trunk = layout.trunk_branch()
    if trunk is None:
        if settings.session_branch:
            now = (now_fn or (lambda: datetime.now(UTC)))()
            trunk = session_branch_name(layout.project_dir, settings.session_prefix, now)
            base = GitRepository(layout.project_dir, trunk=settings.base_branch, runner=runner)
            await base.ensure_branch(trunk)
        else:
            trunk = settings.base_branch
        atomic_write(layout.trunk_file, trunk + "\n")
        logger.info("session_trunk_selected", trunk=trunk, base=settings.base_branch)
    return GitRepository(layout.project_dir, trunk=trunk, runner=runner)
