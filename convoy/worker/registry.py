from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

import structlog

from convoy.constants import (
    BROADCAST,
    FEATURE_BRANCH_PREFIX,
    QA_AGENT,
    SUPERVISOR,
    UNKNOWN_OWNER,
    WORKTREE_PREFIX,
)
from convoy.infra.errors import ConfigurationError
from convoy.infra.layout import ProjectLayout
from convoy.infra.locking import durable_append, locked

logger = structlog.get_logger()

_RESERVED = frozenset({SUPERVISOR, QA_AGENT, UNKNOWN_OWNER, BROADCAST})


@dataclass(frozen=True)
class Feature:
    """A unit of parallel work owned by exactly one worker."""

    name: str
    branch: str
    directory: Path
    status_log: Path


def normalize_feature_name(raw: str) -> str:
    """Lowercase, spaces to dashes, only ``[a-z0-9-]`` kept."""
    name = raw.strip().lower().replace(" ", "-")
    name = re.sub(r"[^a-z0-9-]", "", name)
    return re.sub(r"-{2,}", "-", name).strip("-")


class FeatureRegistry:
    """The ``.features`` file: one feature per line, in registration (merge) order."""

    def __init__(self, layout: ProjectLayout) -> None:
        self._layout = layout

    def names(self) -> list[str]:
        path = self._layout.features_file
        if not path.exists():
            return []
        seen: list[str] = []
        for line in path.read_text("utf-8").splitlines():
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            name = normalize_feature_name(stripped)
            if name and name not in seen:
                seen.append(name)
        return seen

    def features(self) -> list[Feature]:
        return [self.feature(name) for name in self.names()]

    def feature(self, name: str) -> Feature:
        return Feature(
            name=name,
            branch=f"{FEATURE_BRANCH_PREFIX}{name}",
            directory=self._layout.worktrees_dir / f"{WORKTREE_PREFIX}{name}",
            status_log=self._layout.status_dir / f"{name}.log",
        )

    def contains(self, name: str) -> bool:
        return normalize_feature_name(name) in self.names()

    def add(self, raw_name: str) -> Feature:
        """Register a feature. Registering an existing name returns it unchanged."""
        name = normalize_feature_name(raw_name)
        if not name:
            raise ConfigurationError(f"invalid feature name: {raw_name!r}")
        if name in _RESERVED:
            raise ConfigurationError(f"feature name is reserved: {name}")
        path = self._layout.features_file
        with locked(path):
            if name in self.names():
                return self.feature(name)
            durable_append(path, f"{name}\n")
        logger.info("feature_registered", feature=name)
        return self.feature(name)
