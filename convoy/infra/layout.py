from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from convoy.config.settings import Settings

MARKER_NAMES = (
    "BUILD_VERIFIED",
    "ALL_MERGED",
    "QA_COMPLETE",
    "QA_NEEDS_FIXES",
    "PROJECT_COMPLETE",
    "NEEDS_HUMAN",
)


@dataclass(frozen=True)
class ProjectLayout:
    """Filesystem locations of the coordination state for one project."""

    project_dir: Path
    root: Path

    @classmethod
    def from_settings(cls, settings: Settings) -> ProjectLayout:
        return cls(project_dir=settings.project_dir, root=settings.coordination_root)

    @property
    def mailbox(self) -> Path:
        return self.root / "mailbox"

    @property
    def cursors_dir(self) -> Path:
        return self.root / "cursors"

    @property
    def status_dir(self) -> Path:
        return self.root / "status"

    @property
    def qa_reports_dir(self) -> Path:
        return self.root / "qa-reports"

    @property
    def fix_tasks_dir(self) -> Path:
        return self.root / "fix-tasks"

    @property
    def events_file(self) -> Path:
        return self.root / "events.jsonl"

    @property
    def features_file(self) -> Path:
        return self.root / ".features"

    @property
    def ownership_file(self) -> Path:
        return self.root / "ownership.json"

    @property
    def standards_file(self) -> Path:
        return self.root / "STANDARDS.md"

    @property
    def trunk_file(self) -> Path:
        return self.root / "TRUNK_BRANCH"

    @property
    def worktrees_dir(self) -> Path:
        return self.root / "worktrees"

    @property
    def pr_log(self) -> Path:
        return self.root / "pr.log"

    @property
    def state_file(self) -> Path:
        return self.root / "STATE.md"

    def marker(self, name: str) -> Path:
        if name not in MARKER_NAMES:
            raise ValueError(f"unknown marker: {name}")
        return self.root / name

    def trunk_branch(self) -> str | None:
        if not self.trunk_file.exists():
            return None
        value = self.trunk_file.read_text("utf-8").strip()
        return value or None
