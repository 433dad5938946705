"""Optional pull request creation after a project completes.

Every precondition that does not hold is a clean skip. Failures after the
preconditions are reported, never raised: completion does not depend on a PR.
"""

from __future__ import annotations

import shutil
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal

import structlog

from convoy.config.settings import PRSettings
from convoy.gitops.repo import GitRepository, remote_host
from convoy.infra.errors import CommandError, PRCreationError
from convoy.infra.proc import CommandRunner, run_command
from convoy.qa.report import QAReport

logger = structlog.get_logger()


@dataclass(frozen=True)
class PROutcome:
    status: Literal["created", "skipped", "failed"]
    detail: str = ""
    url: str | None = None


def render_pr(features: list[str], report: QAReport | None) -> tuple[str, str]:
    title = f"Integrate features: {', '.join(features)}" if features else "Integrate features"
    lines = ["## Features", ""]
    lines.extend(f"- {name}" for name in features)
    if report is not None:
        summary = report.summary
        lines.extend(
            [
                "",
                "## QA Summary",
                "",
                f"{summary.passed}/{summary.total} standards passed "
                f"({summary.failed} failed), report at {report.timestamp.isoformat()}",
            ]
        )
    return title, "\n".join(lines) + "\n"


class PullRequestPublisher:
    def __init__(
        self,
        settings: PRSettings,
        repo: GitRepository,
        *,
        workdir: Path,
        log_path: Path | None = None,
        runner: CommandRunner = run_command,
        which: Callable[[str], str | None] = shutil.which,
    ) -> None:
        self._settings = settings
        self._repo = repo
        self._workdir = workdir
        self._log_path = log_path
        self._runner = runner
        self._which = which

    async def publish(self, features: list[str], report: QAReport | None) -> PROutcome:
        try:
            outcome = await self._publish(features, report)
        except (CommandError, PRCreationError) as exc:
            outcome = PROutcome(status="failed", detail=str(exc))
        log = logger.info if outcome.status != "failed" else logger.warning
        log("pr_outcome", status=outcome.status, detail=outcome.detail, url=outcome.url)
        self._record(outcome)
        return outcome

    async def _publish(self, features: list[str], report: QAReport | None) -> PROutcome:
        cli = self._settings.cli
        if self._repo.trunk == self._settings.base_branch:
            return PROutcome(
                status="skipped", detail=f"trunk {self._repo.trunk} is already the base branch"
            )
        if self._which(cli) is None:
            return PROutcome(status="skipped", detail=f"{cli} is not installed")
        auth = await self._runner([cli, "auth", "status"], cwd=self._workdir)
        if not auth.ok:
            return PROutcome(status="skipped", detail=f"{cli} is not authenticated")
        url = await self._repo.remote_url(self._settings.remote)
        if url is None:
            return PROutcome(status="skipped", detail=f"remote {self._settings.remote} is not configured")
        host = remote_host(url)
        if host not in self._settings.host_list():
            return PROutcome(status="skipped", detail=f"remote host {host or url} is not supported")

        await self._repo.push(self._settings.remote, self._repo.trunk)
        title, body = render_pr(features, report)
        created = await self._runner(
            [
                cli,
                "pr",
                "create",
                "--base",
                self._settings.base_branch,
                "--head",
                self._repo.trunk,
                "--title",
                title,
                "--body",
                body,
            ],
            cwd=self._workdir,
        )
        if not created.ok:
            raise PRCreationError(f"{cli} pr create failed: {created.output or created.returncode}")
        return PROutcome(status="created", detail=title, url=created.stdout.strip() or None)

    def _record(self, outcome: PROutcome) -> None:
        if self._log_path is None:
            return
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        with self._log_path.open("a", encoding="utf-8") as handle:
            handle.write(
                f"{datetime.now(UTC).isoformat()} {outcome.status} {outcome.detail}"
                f"{' ' + outcome.url if outcome.url else ''}\n"
            )
