from __future__ import annotations

import sys
from datetime import UTC, datetime
from pathlib import Path

import pytest

from convoy.config.settings import BuildSettings, TrunkSettings
from convoy.gates.build import CommandBuildGate
from convoy.gitops.repo import GitRepository, remote_host
from convoy.gitops.session import open_session, session_branch_name
from convoy.infra.errors import CommandError, MergeConflictError
from convoy.infra.layout import ProjectLayout
from fakes import FakeClock, ScriptedRunner, failed, ok


class TestGitRepository:
    @pytest.mark.asyncio
    async def test_merge_uses_merge_commit(self, tmp_path: Path) -> None:
        runner = ScriptedRunner()
        repo = GitRepository(tmp_path, trunk="integration", runner=runner)
        await repo.merge("auth", "feature/auth")
        assert runner.calls == [
            ("git", "checkout", "integration"),
            ("git", "merge", "--no-ff", "--no-edit", "feature/auth"),
        ]

    @pytest.mark.asyncio
    async def test_conflict_aborts_and_reports_files(self, tmp_path: Path) -> None:
        runner = ScriptedRunner(
            {
                ("git", "merge", "--no-ff"): failed("CONFLICT (content): Merge conflict in app.py"),
                ("git", "diff", "--name-only"): ok("app.py\nconfig.py\n"),
            }
        )
        repo = GitRepository(tmp_path, runner=runner)
        with pytest.raises(MergeConflictError) as excinfo:
            await repo.merge("auth", "feature/auth")
        assert excinfo.value.feature == "auth"
        assert excinfo.value.files == ("app.py", "config.py")
        assert ("git", "merge", "--abort") in runner.calls

    @pytest.mark.asyncio
    async def test_checkout_failure_raises_command_error(self, tmp_path: Path) -> None:
        runner = ScriptedRunner({("git", "checkout"): failed("pathspec 'main' did not match")})
        repo = GitRepository(tmp_path, runner=runner)
        with pytest.raises(CommandError, match="did not match"):
            await repo.merge("auth", "feature/auth")

    @pytest.mark.asyncio
    async def test_remote_url_missing(self, tmp_path: Path) -> None:
        runner = ScriptedRunner({("git", "remote", "get-url"): failed("No such remote")})
        repo = GitRepository(tmp_path, runner=runner)
        assert await repo.remote_url("origin") is None

    @pytest.mark.asyncio
    async def test_remove_worktree_falls_back_to_deleting_directory(self, tmp_path: Path) -> None:
        worktree = tmp_path / "feature-auth"
        (worktree / "src").mkdir(parents=True)
        runner = ScriptedRunner({("git", "worktree", "remove"): failed("is not a working tree")})
        repo = GitRepository(tmp_path, runner=runner)
        assert await repo.remove_worktree(worktree)
        assert not worktree.exists()
        assert ("git", "worktree", "prune") in runner.calls

    @pytest.mark.asyncio
    async def test_missing_worktree_and_branch_are_noops(self, tmp_path: Path) -> None:
        runner = ScriptedRunner({("git", "rev-parse"): failed()})
        repo = GitRepository(tmp_path, runner=runner)
        assert not await repo.remove_worktree(tmp_path / "gone")
        assert not await repo.delete_branch("feature/gone")
        assert not any(call[:2] == ("git", "branch") for call in runner.calls)

    @pytest.mark.parametrize(
        ("url", "host"),
        [
            ("https://github.com/org/repo.git", "github.com"),
            ("git@github.com:org/repo.git", "github.com"),
            ("ssh://git@GitLab.example.com:2222/org/repo", "gitlab.example.com"),
            ("/srv/git/repo.git", None),
            ("", None),
        ],
    )
    def test_remote_host(self, url: str, host: str | None) -> None:
        assert remote_host(url) == host


class TestSession:
    def test_branch_name(self, tmp_path: Path) -> None:
        now = datetime(2026, 3, 1, 9, 5, 7, tzinfo=UTC)
        name = session_branch_name(tmp_path / "My Shop", "convoy", now)
        assert name == "convoy/my-shop-20260301-090507"

    @pytest.mark.asyncio
    async def test_open_creates_branch_once(self, layout: ProjectLayout) -> None:
        runner = ScriptedRunner({("git", "rev-parse"): failed()})
        clock = FakeClock(datetime(2026, 3, 1, 9, 5, 6, tzinfo=UTC))
        repo = await open_session(layout, TrunkSettings(base_branch="develop"), runner=runner, now_fn=clock)
        assert repo.trunk == "convoy/project-20260301-090507"
        assert runner.calls[-1] == ("git", "branch", repo.trunk, "develop")
        assert layout.trunk_branch() == repo.trunk

        calls = len(runner.calls)
        again = await open_session(layout, TrunkSettings(), runner=runner)
        assert again.trunk == repo.trunk
        assert len(runner.calls) == calls


class TestCommandBuildGate:
    @pytest.mark.asyncio
    async def test_runs_install_then_build(self, tmp_path: Path) -> None:
        runner = ScriptedRunner()
        gate = CommandBuildGate(
            BuildSettings(install_cmd="npm ci", build_cmd="npm run build"), tmp_path, runner=runner
        )
        result = await gate.check(smoke_start=False)
        assert result.ok
        assert runner.calls == [("npm", "ci"), ("npm", "run", "build")]

    @pytest.mark.asyncio
    async def test_build_failure_stops_early_with_log(self, tmp_path: Path) -> None:
        runner = ScriptedRunner({("npm", "ci"): failed("ERESOLVE unable to resolve")})
        gate = CommandBuildGate(
            BuildSettings(install_cmd="npm ci", build_cmd="npm run build"), tmp_path, runner=runner
        )
        result = await gate.check(smoke_start=True)
        assert not result.ok
        assert "ERESOLVE" in result.log
        assert runner.calls == [("npm", "ci")]

    @pytest.mark.asyncio
    async def test_missing_binary_is_a_failed_build(self, tmp_path: Path) -> None:
        async def missing(args, *, cwd=None, env=None):
            raise CommandError("cannot run nonexistent-tool")

        gate = CommandBuildGate(BuildSettings(build_cmd="nonexistent-tool"), tmp_path, runner=missing)
        result = await gate.check(smoke_start=False)
        assert not result.ok
        assert "nonexistent-tool" in result.log

    @pytest.mark.asyncio
    async def test_smoke_start_survives_grace_period(self, tmp_path: Path) -> None:
        settings = BuildSettings(
            start_cmd=f"{sys.executable} -c 'import time; time.sleep(30)'",
            grace_period_s=0.2,
            stop_timeout_s=2,
        )
        result = await CommandBuildGate(settings, tmp_path).check(smoke_start=True)
        assert result.ok
        assert "running after" in result.log

    @pytest.mark.asyncio
    async def test_smoke_start_crash_fails(self, tmp_path: Path) -> None:
        settings = BuildSettings(
            start_cmd=f"{sys.executable} -c 'import sys; sys.exit(3)'",
            grace_period_s=5,
        )
        result = await CommandBuildGate(settings, tmp_path).check(smoke_start=True)
        assert not result.ok
        assert "exited with 3" in result.log

    @pytest.mark.asyncio
    async def test_smoke_start_skipped_without_flag(self, tmp_path: Path) -> None:
        settings = BuildSettings(start_cmd="definitely-not-installed-binary")
        result = await CommandBuildGate(settings, tmp_path).check(smoke_start=False)
        assert result.ok
