"""Shared pytest fixtures for convoy tests.

Every test works on a throwaway coordination root under ``tmp_path``; external
collaborators (git, build toolchain, QA runner, gh) are replaced by fakes.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from convoy.bus.mailbox import MessageBus
from convoy.config.settings import Settings, SupervisorSettings
from convoy.infra.init_workspace import init_workspace
from convoy.infra.layout import ProjectLayout
from convoy.qa.report import ReportStore
from convoy.status.store import StatusStore
from convoy.worker.registry import FeatureRegistry
from fakes import FakeClock


@pytest.fixture(autouse=True)
def _no_global_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep structlog on its defaults: entry points would pin output to a captured stream."""
    monkeypatch.setattr("convoy.cli.setup_logging", lambda **_: None)
    monkeypatch.setattr("convoy.gateway.app.setup_logging", lambda **_: None)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(project_dir=tmp_path / "project", root_dir=Path(".convoy"))


@pytest.fixture
def layout(settings: Settings) -> ProjectLayout:
    layout = ProjectLayout.from_settings(settings)
    layout.project_dir.mkdir(parents=True, exist_ok=True)
    init_workspace(layout)
    return layout


@pytest.fixture
def bus(layout: ProjectLayout, clock: FakeClock) -> MessageBus:
    return MessageBus(layout.mailbox, layout.cursors_dir, poll_interval_s=0.01, now_fn=clock)


@pytest.fixture
def statuses(layout: ProjectLayout, clock: FakeClock) -> StatusStore:
    return StatusStore(layout.status_dir, now_fn=clock)


@pytest.fixture
def registry(layout: ProjectLayout) -> FeatureRegistry:
    return FeatureRegistry(layout)


@pytest.fixture
def reports(layout: ProjectLayout) -> ReportStore:
    return ReportStore(layout.qa_reports_dir)


@pytest.fixture
def supervisor_settings() -> SupervisorSettings:
    return SupervisorSettings(poll_interval_s=0.01, max_cycles=3)
