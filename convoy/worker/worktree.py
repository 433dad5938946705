"""Feature worktree lifecycle.

Provisioning branches a feature off the trunk, adds its worktree and seeds its
status log. Cleanup undoes that for every registered feature once the project
is complete, keeping the trunk branch for the pull request.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import structlog

from convoy.gitops.repo import GitRepository
from convoy.infra.layout import ProjectLayout
from convoy.status.store import AgentState, StatusStore
from convoy.worker.registry import Feature, FeatureRegistry

logger = structlog.get_logger()


@dataclass
class CleanupResult:
    worktrees: list[str] = field(default_factory=list)
    branches: list[str] = field(default_factory=list)
    archive: Path | None = None


async def provision_feature(
    registry: FeatureRegistry,
    repo: GitRepository,
    statuses: StatusStore,
    raw_name: str,
) -> Feature:
    feature = registry.add(raw_name)
    await repo.ensure_branch(feature.branch)
    feature.directory.parent.mkdir(parents=True, exist_ok=True)
    await repo.add_worktree(feature.directory, feature.branch)
    if statuses.latest(feature.name) is None:
        statuses.append(feature.name, AgentState.PENDING, "worktree provisioned")
    logger.info(
        "feature_provisioned",
        feature=feature.name,
        branch=feature.branch,
        directory=str(feature.directory),
    )
    return feature


async def cleanup_project(
    layout: ProjectLayout,
    registry: FeatureRegistry,
    repo: GitRepository,
    *,
    archive_at: datetime | None = None,
) -> CleanupResult:
    """Remove feature worktrees and branches; with ``archive_at``, move the root aside.

    The archive lands in ``<project>/.convoy-complete-<timestamp>/`` so a later
    ``convoy supervise`` starts from an empty coordination root.
    """
    result = CleanupResult()
    for feature in registry.features():
        if await repo.remove_worktree(feature.directory):
            result.worktrees.append(feature.name)
        if await repo.delete_branch(feature.branch):
            result.branches.append(feature.branch)
    if layout.worktrees_dir.exists() and not any(layout.worktrees_dir.iterdir()):
        layout.worktrees_dir.rmdir()

    if archive_at is not None and layout.root.exists():
        archive = layout.project_dir / f".convoy-complete-{archive_at:%Y%m%d-%H%M%S}"
        archive.mkdir(parents=True, exist_ok=True)
        result.archive = Path(shutil.move(str(layout.root), str(archive / layout.root.name)))
    logger.info(
        "project_cleaned_up",
        worktrees=len(result.worktrees),
        branches=len(result.branches),
        archive=str(result.archive) if result.archive else None,
        trunk=repo.trunk,
    )
    return result
