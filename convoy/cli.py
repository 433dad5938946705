"""Command line entry point: ``convoy <command>``."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from convoy.bus.mailbox import MessageBus
from convoy.config.settings import Settings, get_settings
from convoy.constants import QA_AGENT, SUPERVISOR
from convoy.gates.build import BuildGate, CommandBuildGate
from convoy.gitops.repo import GitRepository
from convoy.gitops.session import open_session
from convoy.infra.errors import ConvoyError
from convoy.infra.init_workspace import init_workspace
from convoy.infra.layout import ProjectLayout
from convoy.infra.logging import bind_role, setup_logging
from convoy.infra.proc import CommandRunner, run_command
from convoy.qa.agent import CommandQARunner, QAAgent, QARunner
from convoy.qa.report import ReportStore
from convoy.qa.standards import StandardsCatalog
from convoy.status.store import AgentState, StatusStore
from convoy.supervisor.events import EventKind, EventLog, project, render
from convoy.supervisor.machine import Phase, Supervisor
from convoy.supervisor.pr import PullRequestPublisher
from convoy.worker.registry import FeatureRegistry
from convoy.worker.worktree import cleanup_project, provision_feature


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="convoy", description="Coordinate parallel feature workers, builds and QA"
    )
    parser.add_argument("--project-dir", help="Project checkout (default: CONVOY_PROJECT_DIR or .)")
    parser.add_argument("--root", help="Coordination root (default: <project>/.convoy)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init", help="Create the coordination root and template files")

    add_parser = subparsers.add_parser("add-feature", help="Register a feature and its worktree")
    add_parser.add_argument("name")
    add_parser.add_argument(
        "--no-worktree",
        action="store_true",
        help="Only register the feature; do not create a branch or worktree",
    )

    send_parser = subparsers.add_parser("send", help="Append a message to the mailbox")
    send_parser.add_argument("--from", dest="sender", required=True)
    send_parser.add_argument("--to", dest="recipient", required=True)
    send_parser.add_argument("body", nargs="+")

    inbox_parser = subparsers.add_parser("inbox", help="Show unacknowledged messages for an agent")
    inbox_parser.add_argument("agent")
    inbox_parser.add_argument("--ack", action="store_true", help="Acknowledge what was shown")
    inbox_parser.add_argument("--wait", type=float, default=0.0, help="Block up to N seconds")
    inbox_parser.add_argument("--history", action="store_true", help="Show every message")

    status_parser = subparsers.add_parser("status", help="Append a status entry for an agent")
    status_parser.add_argument("agent")
    status_parser.add_argument("state", choices=[state.value for state in AgentState])
    status_parser.add_argument("note", nargs="*")

    subparsers.add_parser("show", help="Print feature statuses and coordination state")
    subparsers.add_parser("render", help="Re-render marker files and STATE.md from the event log")

    supervise_parser = subparsers.add_parser("supervise", help="Run the supervisor loop")
    supervise_parser.add_argument(
        "--resume",
        action="store_true",
        help="Clear an ESCALATED or HALTED state after human intervention",
    )

    qa_parser = subparsers.add_parser("qa", help="Run the QA agent loop")
    qa_parser.add_argument("--idle-timeout", type=float, default=None)

    cleanup_parser = subparsers.add_parser(
        "cleanup", help="Remove feature worktrees and branches after completion"
    )
    cleanup_parser.add_argument(
        "--no-archive",
        action="store_true",
        help="Keep the coordination root in place instead of archiving it",
    )
    cleanup_parser.add_argument(
        "--force", action="store_true", help="Clean up even if the project is not complete"
    )

    subparsers.add_parser("serve", help="Run the HTTP gateway")
    return parser


def run_cli(
    argv: Sequence[str] | None = None,
    *,
    settings: Settings | None = None,
    runner: CommandRunner | None = None,
    build_gate: BuildGate | None = None,
    qa_runner: QARunner | None = None,
    now_fn: Callable[[], datetime] | None = None,
) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        resolved = _resolve_settings(settings, args)
        setup_logging(json_output=resolved.log_json, log_level=resolved.log_level)
        layout = ProjectLayout.from_settings(resolved)
        command_runner = runner or run_command

        if args.command == "init":
            init_workspace(layout)
            print(f"initialized {layout.root}")
        elif args.command == "add-feature":
            _add_feature(resolved, layout, args, command_runner, now_fn)
        elif args.command == "send":
            message = asyncio.run(
                _bus(resolved, layout).send(args.sender, args.recipient, " ".join(args.body))
            )
            print(f"sent #{message.seq} {message.sender} -> {message.recipient}")
        elif args.command == "inbox":
            _inbox(resolved, layout, args)
        elif args.command == "status":
            entry = StatusStore(layout.status_dir, now_fn=now_fn).append(
                args.agent, args.state, " ".join(args.note)
            )
            print(entry.to_line(), end="")
        elif args.command == "show":
            _print_json(_show(layout))
        elif args.command == "render":
            state = render(layout, EventLog(layout.events_file).read())
            print(f"rendered markers: {', '.join(sorted(state.markers)) or 'none'}")
        elif args.command == "supervise":
            return _supervise(resolved, layout, args, command_runner, build_gate, now_fn)
        elif args.command == "qa":
            _qa(resolved, layout, args, command_runner, qa_runner)
        elif args.command == "serve":
            _serve(resolved)
        elif args.command == "cleanup":
            _cleanup(resolved, layout, args, command_runner, now_fn)
        else:
            parser.error(f"unknown command: {args.command}")
    except ConvoyError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0


def main() -> int:
    return run_cli()


def _resolve_settings(settings: Settings | None, args: argparse.Namespace) -> Settings:
    resolved = settings or get_settings()
    updates: dict[str, Any] = {}
    if args.project_dir:
        updates["project_dir"] = Path(args.project_dir)
    if args.root:
        updates["root_dir"] = Path(args.root)
    return resolved.model_copy(update=updates) if updates else resolved


def _bus(settings: Settings, layout: ProjectLayout) -> MessageBus:
    return MessageBus(
        layout.mailbox,
        layout.cursors_dir,
        delivery_mode=settings.bus.delivery_mode,
        poll_interval_s=settings.bus.poll_interval_s,
    )


def _session_repo(
    settings: Settings,
    layout: ProjectLayout,
    runner: CommandRunner,
    now_fn: Callable[[], datetime] | None,
) -> GitRepository:
    return asyncio.run(open_session(layout, settings.trunk, runner=runner, now_fn=now_fn))


def _add_feature(
    settings: Settings,
    layout: ProjectLayout,
    args: argparse.Namespace,
    runner: CommandRunner,
    now_fn: Callable[[], datetime] | None,
) -> None:
    registry = FeatureRegistry(layout)
    statuses = StatusStore(layout.status_dir)
    if args.no_worktree:
        feature = registry.add(args.name)
        if statuses.latest(feature.name) is None:
            statuses.append(feature.name, AgentState.PENDING, "registered")
    else:
        repo = _session_repo(settings, layout, runner, now_fn)
        feature = asyncio.run(provision_feature(registry, repo, statuses, args.name))
    print(f"{feature.name} {feature.branch} {feature.directory}")


def _inbox(settings: Settings, layout: ProjectLayout, args: argparse.Namespace) -> None:
    bus = _bus(settings, layout)
    if args.history:
        messages = bus.history(args.agent)
    elif args.wait > 0:
        messages = asyncio.run(bus.wait(args.agent, timeout=args.wait))
    else:
        messages = bus.receive(args.agent)
    for message in messages:
        print(f"#{message.seq} {message.timestamp.isoformat()} {message.sender} -> {message.recipient}")
        print(message.body)
        print()
    if args.ack and messages and not args.history:
        bus.ack(args.agent, messages[-1])


def _show(layout: ProjectLayout) -> dict[str, Any]:
    registry = FeatureRegistry(layout)
    statuses = StatusStore(layout.status_dir)
    state = project(EventLog(layout.events_file).read())
    features = {}
    for name, status in statuses.snapshot(registry.names()).items():
        features[name] = None if status is None else {
            "state": str(status.state),
            "timestamp": status.timestamp.isoformat(),
            "note": status.note,
        }
    return {
        "features": features,
        "cycles": state.cycles,
        "terminal": state.terminal,
        "reason": state.reason,
        "markers": sorted(state.markers),
        "pr": state.pr_outcome,
    }


def _supervise(
    settings: Settings,
    layout: ProjectLayout,
    args: argparse.Namespace,
    runner: CommandRunner,
    build_gate: BuildGate | None,
    now_fn: Callable[[], datetime] | None,
) -> int:
    init_workspace(layout)
    bind_role(SUPERVISOR)
    events = EventLog(layout.events_file)
    if args.resume:
        events.append(EventKind.RESUMED)
    repo = _session_repo(settings, layout, runner, now_fn)
    publisher = None
    if settings.pr.enabled:
        publisher = PullRequestPublisher(
            settings.pr, repo, workdir=layout.project_dir, log_path=layout.pr_log, runner=runner
        )
    supervisor = Supervisor(
        layout=layout,
        bus=_bus(settings, layout),
        statuses=StatusStore(layout.status_dir),
        registry=FeatureRegistry(layout),
        trunk=repo,
        build_gate=build_gate or CommandBuildGate(settings.build, layout.project_dir, runner=runner),
        reports=ReportStore(layout.qa_reports_dir),
        settings=settings.supervisor,
        events=events,
        publisher=publisher,
        now_fn=now_fn,
        name=SUPERVISOR,
    )
    outcome = asyncio.run(supervisor.run())
    print(f"{outcome.phase} after {outcome.cycles} cycle(s){': ' + outcome.reason if outcome.reason else ''}")
    return 0 if outcome.phase == Phase.DONE else 1


def _qa(
    settings: Settings,
    layout: ProjectLayout,
    args: argparse.Namespace,
    runner: CommandRunner,
    qa_runner: QARunner | None,
) -> None:
    bind_role(QA_AGENT)
    standards_file = settings.qa.standards_file or layout.standards_file
    store = ReportStore(layout.qa_reports_dir)
    agent = QAAgent(
        _bus(settings, layout),
        store,
        qa_runner
        or CommandQARunner(
            settings.qa.command,
            store,
            workdir=layout.project_dir,
            standards_file=standards_file,
            runner=runner,
        ),
        lambda: StandardsCatalog.load(standards_file),
    )
    asyncio.run(agent.serve(idle_timeout=args.idle_timeout))


def _cleanup(
    settings: Settings,
    layout: ProjectLayout,
    args: argparse.Namespace,
    runner: CommandRunner,
    now_fn: Callable[[], datetime] | None,
) -> None:
    state = project(EventLog(layout.events_file).read())
    if state.terminal != "DONE" and not args.force:
        raise ConvoyError(
            "project is not complete; pass --force to clean up anyway", code="NOT_COMPLETE"
        )
    repo = GitRepository(
        layout.project_dir,
        trunk=layout.trunk_branch() or settings.trunk.base_branch,
        runner=runner,
    )
    archive_at = None if args.no_archive else (now_fn or (lambda: datetime.now(UTC)))()
    result = asyncio.run(
        cleanup_project(layout, FeatureRegistry(layout), repo, archive_at=archive_at)
    )
    print(f"removed worktrees: {', '.join(result.worktrees) or 'none'}")
    print(f"deleted branches: {', '.join(result.branches) or 'none'}")
    print(f"kept trunk: {repo.trunk}")
    if result.archive is not None:
        print(f"archived to {result.archive}")


def _serve(settings: Settings) -> None:
    import uvicorn

    from convoy.gateway.app import create_app

    bind_role("gateway")
    uvicorn.run(create_app(settings), host=settings.gateway.host, port=settings.gateway.port)


def _print_json(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, sort_keys=True))


if __name__ == "__main__":
    raise SystemExit(main())
