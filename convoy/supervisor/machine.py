"""Supervisor state machine.

Drives the merge -> build -> QA -> fix loop over the shared message bus:

    SCAFFOLD_CHECK -> MONITOR_WORKERS -> MERGE -> BUILD_VERIFY -> SIGNAL_QA -> WAIT_QA
        WAIT_QA -> DONE                               (latest report passes)
        WAIT_QA -> ASSIGN_FIXES -> MONITOR_WORKERS    (report fails, budget left)
        BUILD_VERIFY -> ASSIGN_FIXES                  (merged trunk does not build)
        any failing cycle past the budget -> ESCALATED
        scaffold failure / merge conflict -> HALTED

Every step is appended to the event log first; markers are rendered from it and
a restarted supervisor recovers its cycle count, its terminal state and any
fix assignment it had not finished from it.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

import structlog

from convoy.bus.commands import (
    ExitSignal,
    NewFeature,
    QAResultSignal,
    RunQA,
    WorkerComplete,
    parse_command,
    render_command,
)
from convoy.bus.mailbox import MessageBus
from convoy.config.settings import SupervisorSettings
from convoy.constants import (
    MISSING_REPORT_STANDARD_ID,
    QA_AGENT,
    SUPERVISOR,
    UNKNOWN_OWNER,
)
from convoy.gates.build import BuildGate
from convoy.gitops.repo import Trunk
from convoy.infra.errors import (
    BuildVerificationFailure,
    ConfigurationError,
    MergeConflictError,
    QAReportError,
    ScaffoldFailure,
)
from convoy.infra.layout import ProjectLayout
from convoy.qa.report import QAReport, ReportStore, load_report
from convoy.qa.standards import OwnershipTable, StandardsCatalog
from convoy.status.store import AgentState, AgentStatus, StatusStore
from convoy.supervisor import fixes
from convoy.supervisor.events import CoordEvent, EventKind, EventLog, project, render
from convoy.supervisor.pr import PullRequestPublisher
from convoy.worker.registry import FeatureRegistry

logger = structlog.get_logger()

_LOG_TAIL = 4000


class Phase(StrEnum):
    SCAFFOLD_CHECK = "SCAFFOLD_CHECK"
    MONITOR_WORKERS = "MONITOR_WORKERS"
    MERGE = "MERGE"
    BUILD_VERIFY = "BUILD_VERIFY"
    SIGNAL_QA = "SIGNAL_QA"
    WAIT_QA = "WAIT_QA"
    ASSIGN_FIXES = "ASSIGN_FIXES"
    DONE = "DONE"
    ESCALATED = "ESCALATED"
    HALTED = "HALTED"


TERMINAL_PHASES = frozenset({Phase.DONE, Phase.ESCALATED, Phase.HALTED})


@dataclass(frozen=True)
class SupervisorOutcome:
    phase: Phase
    cycles: int
    reason: str = ""


class _ExitRequested(Exception):
    pass


class Supervisor:
    def __init__(
        self,
        *,
        layout: ProjectLayout,
        bus: MessageBus,
        statuses: StatusStore,
        registry: FeatureRegistry,
        trunk: Trunk,
        build_gate: BuildGate,
        reports: ReportStore,
        settings: SupervisorSettings,
        events: EventLog | None = None,
        publisher: PullRequestPublisher | None = None,
        now_fn: Callable[[], datetime] | None = None,
        name: str = SUPERVISOR,
    ) -> None:
        self._layout = layout
        self._bus = bus
        self._statuses = statuses
        self._registry = registry
        self._trunk = trunk
        self._build_gate = build_gate
        self._reports = reports
        self._settings = settings
        self._events = events or EventLog(layout.events_file)
        self._publisher = publisher
        self._now = now_fn or (lambda: datetime.now(UTC))
        self._name = name

        self.phase = Phase.SCAFFOLD_CHECK
        self._cycle = 0
        self._budget_base = 0
        self._reason = ""
        self._qa_in_flight = False
        self._signal_index = 0
        self._last_merged: str | None = None
        self._fix_baselines: dict[str, int] = {}
        self._attention: set[tuple[str, str]] = set()
        self._pending_fixes: list[fixes.FixTask] = []
        self._handlers: dict[Phase, Callable[[], Awaitable[Phase]]] = {
            Phase.SCAFFOLD_CHECK: self._scaffold_check,
            Phase.MONITOR_WORKERS: self._monitor_workers,
            Phase.MERGE: self._merge,
            Phase.BUILD_VERIFY: self._build_verify,
            Phase.SIGNAL_QA: self._signal_qa,
            Phase.WAIT_QA: self._wait_qa,
            Phase.ASSIGN_FIXES: self._assign_fixes,
        }

    @property
    def cycles(self) -> int:
        """Cycles spent against the current retry budget."""
        return self._cycle - self._budget_base

    async def run(self) -> SupervisorOutcome:
        """Drive the loop until a terminal phase and report how it ended."""
        self.phase = await self._recover()
        self._record(EventKind.SUPERVISOR_STARTED, phase=str(self.phase))
        self._render()
        while self.phase not in TERMINAL_PHASES:
            logger.info("supervisor_phase", phase=str(self.phase), cycle=self._cycle)
            try:
                self.phase = await self._handlers[self.phase]()
            except ScaffoldFailure as exc:
                self.phase = await self._halt(EventKind.SCAFFOLD_FAILED, str(exc))
            except MergeConflictError as exc:
                self.phase = await self._on_merge_conflict(exc)
            except BuildVerificationFailure as exc:
                self.phase = await self._on_build_failure(exc)
            except _ExitRequested:
                self._reason = "exit requested"
                self.phase = Phase.HALTED
            self._render()
        logger.info(
            "supervisor_finished",
            phase=str(self.phase),
            cycles=self.cycles,
            reason=self._reason,
        )
        return SupervisorOutcome(phase=self.phase, cycles=self.cycles, reason=self._reason)

    async def _recover(self) -> Phase:
        events = self._events.read()
        state = project(events)
        self._cycle = state.cycles
        self._budget_base = state.budget_base
        self._reason = state.reason
        self._last_merged = state.last_merged
        self._fix_baselines = dict(state.fix_baselines)
        self._attention = set(state.attention)
        if events:
            logger.info(
                "supervisor_recovered",
                cycles=state.cycles,
                terminal=state.terminal,
                qa_in_flight=state.qa_in_flight,
            )
        if state.terminal == "DONE":
            if not state.exit_sent:
                await self._send_exit()
            return Phase.DONE
        if state.terminal == "ESCALATED":
            return Phase.ESCALATED
        if state.terminal == "HALTED":
            return Phase.HALTED
        if state.unassigned_failure is not None:
            return await self._resume_fixes(state.unassigned_failure, state.fixes_sent)
        if state.qa_in_flight:
            signalled = [event for event in events if event.kind == EventKind.QA_SIGNALLED]
            self._signal_index = int(signalled[-1].data.get("report_index", 0))
            self._qa_in_flight = True
            return Phase.WAIT_QA
        scaffold_done = any(event.kind == EventKind.SCAFFOLD_VERIFIED for event in events)
        return Phase.MONITOR_WORKERS if scaffold_done else Phase.SCAFFOLD_CHECK

    async def _scaffold_check(self) -> Phase:
        result = await self._build_gate.check(smoke_start=False)
        if not result.ok:
            raise ScaffoldFailure(f"trunk does not build before any merge: {_tail(result.log)}")
        self._record(EventKind.SCAFFOLD_VERIFIED)
        return Phase.MONITOR_WORKERS

    async def _monitor_workers(self) -> Phase:
        while True:
            await self._drain_inbox()
            features = self._registry.names()
            if not features:
                logger.info("no_features_registered")
            elif self._ready(features):
                return Phase.MERGE
            await self._bus.wait(self._name, timeout=self._settings.poll_interval_s)

    def _ready(self, features: list[str]) -> bool:
        """All features COMPLETE in one snapshot, and fix targets updated since assignment."""
        snapshot = self._statuses.snapshot(features)
        self._surface_attention(snapshot)
        for name, status in snapshot.items():
            if status is None or status.state != AgentState.COMPLETE:
                return False
        for name, baseline in self._fix_baselines.items():
            if name in snapshot and self._statuses.count(name) <= baseline:
                logger.debug("fix_update_pending", feature=name)
                return False
        return True

    def _surface_attention(self, snapshot: dict[str, AgentStatus | None]) -> None:
        for name, status in snapshot.items():
            if status is None or status.state not in (AgentState.BLOCKED, AgentState.FAILED):
                continue
            key = (name, status.timestamp.isoformat())
            if key in self._attention:
                continue
            self._attention.add(key)
            logger.warning(
                "worker_needs_attention", feature=name, state=str(status.state), note=status.note
            )
            self._record(
                EventKind.WORKER_ATTENTION,
                feature=name,
                entry=key[1],
                state=str(status.state),
                note=status.note,
            )

    async def _merge(self) -> Phase:
        self._cycle += 1
        self._fix_baselines = {}
        self._record(EventKind.CYCLE_STARTED)
        for feature in self._registry.features():
            await self._trunk.merge(feature.name, feature.branch)
            self._last_merged = feature.name
            self._record(EventKind.FEATURE_MERGED, feature=feature.name, branch=feature.branch)
        self._record(EventKind.ALL_MERGED)
        return Phase.BUILD_VERIFY

    async def _build_verify(self) -> Phase:
        result = await self._build_gate.check(smoke_start=True)
        if not result.ok:
            raise BuildVerificationFailure(_tail(result.log) or "build verification failed")
        self._record(EventKind.BUILD_VERIFIED)
        return Phase.SIGNAL_QA

    async def _signal_qa(self) -> Phase:
        if self._qa_in_flight:
            logger.warning("qa_already_in_flight", cycle=self._cycle)
            return Phase.WAIT_QA
        self._signal_index = self._reports.latest_index()
        await self._bus.send(self._name, QA_AGENT, RunQA(cycle=self._cycle))
        self._qa_in_flight = True
        self._record(EventKind.QA_SIGNALLED, report_index=self._signal_index)
        return Phase.WAIT_QA

    async def _wait_qa(self) -> Phase:
        while True:
            signal = await self._drain_inbox(accept_result=True)
            if signal is not None or self._reports.latest_index() > self._signal_index:
                return await self._on_qa_result(signal)
            await self._bus.wait(self._name, timeout=self._settings.poll_interval_s)

    async def _on_qa_result(self, signal: QAResultSignal | None) -> Phase:
        self._qa_in_flight = False
        report = self._fresh_report()
        if report is None:
            self._record(EventKind.QA_RESULT, passed=False, report=None)
            if self._budget_exhausted():
                return await self._escalate()
            self._pending_fixes = self._plan_qa_fixes(None)
            return Phase.ASSIGN_FIXES

        if signal is not None and signal.passed != report.passed:
            logger.warning(
                "qa_signal_disagrees_with_report", signal=signal.passed, report=report.passed
            )
        path = self._reports.latest_path()
        self._record(
            EventKind.QA_RESULT,
            passed=report.passed,
            report=path.name if path else None,
            failed=report.summary.failed,
        )
        if report.passed:
            await self._complete(report)
            return Phase.DONE
        if self._budget_exhausted():
            return await self._escalate()
        self._pending_fixes = self._plan_qa_fixes(report)
        return Phase.ASSIGN_FIXES

    def _plan_qa_fixes(self, report: QAReport | None) -> list[fixes.FixTask]:
        if report is None:
            return [
                fixes.FixTask(
                    target=UNKNOWN_OWNER,
                    standard_id=MISSING_REPORT_STANDARD_ID,
                    description="QA run produced no readable report",
                    created_at=self._now(),
                    cycle=self._cycle,
                    details="QA answered without writing a new readable report",
                    required_actions=("Check the QA runner configuration and output",),
                )
            ]
        return fixes.plan_qa_fixes(
            report,
            cycle=self._cycle,
            features=self._registry.names(),
            ownership=OwnershipTable.load(self._layout.ownership_file),
            catalog=self._catalog(),
            now=self._now(),
        )

    def _plan_build_fixes(self, log: str) -> list[fixes.FixTask]:
        if self._settings.build_failure_routing == "all" or self._last_merged is None:
            targets = self._registry.names()
        else:
            targets = [self._last_merged]
        return fixes.plan_build_fixes(log, cycle=self._cycle, targets=targets, now=self._now())

    async def _resume_fixes(self, failure: CoordEvent, sent: set[tuple[str, str]]) -> Phase:
        """Re-plan the fixes of a failure recorded before they were all assigned."""
        if self._budget_exhausted():
            return await self._escalate()
        if failure.kind == EventKind.BUILD_FAILED:
            planned = self._plan_build_fixes(str(failure.data.get("log", "")))
        else:
            planned = self._plan_qa_fixes(self._recorded_report(failure.data.get("report")))
        self._pending_fixes = [task for task in planned if (task.target, task.standard_id) not in sent]
        logger.info(
            "fix_assignment_resumed",
            source=str(failure.kind),
            planned=len(planned),
            remaining=len(self._pending_fixes),
        )
        return Phase.ASSIGN_FIXES

    def _recorded_report(self, name: object) -> QAReport | None:
        if not isinstance(name, str) or not name:
            return None
        try:
            return load_report(self._reports.directory / name)
        except QAReportError as exc:
            logger.warning("qa_report_unreadable", error=str(exc))
            return None

    def _fresh_report(self) -> QAReport | None:
        if self._reports.latest_index() <= self._signal_index:
            return None
        try:
            return self._reports.load_latest()
        except QAReportError as exc:
            logger.warning("qa_report_unreadable", error=str(exc))
            return None

    def _catalog(self) -> StandardsCatalog | None:
        try:
            return StandardsCatalog.load(self._layout.standards_file)
        except ConfigurationError:
            return None

    async def _assign_fixes(self) -> Phase:
        features = self._registry.names()
        self._layout.fix_tasks_dir.mkdir(parents=True, exist_ok=True)
        for task in self._pending_fixes:
            document = fixes.write_document(self._layout.fix_tasks_dir, task)
            baseline = self._statuses.count(task.target) if task.target in features else None
            await self._bus.send(self._name, task.target, fixes.message_body(task, document))
            if baseline is not None:
                self._fix_baselines[task.target] = baseline
            self._record(
                EventKind.FIX_TASK,
                target=task.target,
                standard_id=task.standard_id,
                document=document.name,
                status_entries=baseline,
            )
        self._record(EventKind.FIXES_ASSIGNED, count=len(self._pending_fixes))
        self._pending_fixes = []
        return Phase.MONITOR_WORKERS

    async def _on_build_failure(self, exc: BuildVerificationFailure) -> Phase:
        self._record(EventKind.BUILD_FAILED, log=str(exc))
        if self._budget_exhausted():
            return await self._escalate()
        self._pending_fixes = self._plan_build_fixes(str(exc))
        return Phase.ASSIGN_FIXES

    async def _on_merge_conflict(self, exc: MergeConflictError) -> Phase:
        files = ", ".join(exc.files) or "unknown files"
        body = f"MERGE_CONFLICT: {exc.feature} conflicts with trunk in {files}"
        for recipient in dict.fromkeys([exc.feature, UNKNOWN_OWNER]):
            await self._bus.send(self._name, recipient, body)
        return await self._halt(
            EventKind.MERGE_CONFLICT, str(exc), feature=exc.feature, files=list(exc.files)
        )

    async def _halt(self, kind: EventKind, reason: str, **data) -> Phase:
        logger.error("supervisor_halted", kind=str(kind), reason=reason)
        if kind == EventKind.SCAFFOLD_FAILED:
            await self._bus.send(self._name, UNKNOWN_OWNER, f"SCAFFOLD_FAILED: {reason}")
        self._reason = reason
        self._record(kind, reason=reason, **data)
        return Phase.HALTED

    def _budget_exhausted(self) -> bool:
        return self.cycles >= self._settings.max_cycles

    async def _escalate(self) -> Phase:
        reason = f"retry budget of {self._settings.max_cycles} cycles exhausted"
        self._reason = reason
        self._record(EventKind.ESCALATED, reason=reason)
        await self._bus.send(
            self._name,
            UNKNOWN_OWNER,
            f"NEEDS_HUMAN: {reason}; see {self._layout.state_file}",
        )
        logger.error("supervisor_escalated", cycles=self.cycles, reason=reason)
        return Phase.ESCALATED

    async def _complete(self, report: QAReport) -> None:
        self._reason = "all standards passed"
        self._record(EventKind.PROJECT_COMPLETE, passed=report.summary.passed)
        if self._publisher is not None:
            outcome = await self._publisher.publish(self._registry.names(), report)
            kind = {
                "created": EventKind.PR_CREATED,
                "skipped": EventKind.PR_SKIPPED,
                "failed": EventKind.PR_FAILED,
            }[outcome.status]
            self._record(kind, detail=outcome.detail, url=outcome.url)
        await self._send_exit()

    async def _send_exit(self) -> None:
        agents = [QA_AGENT, *self._registry.names()]
        for agent in agents:
            await self._bus.send(self._name, agent, render_command(ExitSignal()))
        self._record(EventKind.EXIT_SENT, agents=agents)

    async def _drain_inbox(self, *, accept_result: bool = False) -> QAResultSignal | None:
        """Acknowledge pending supervisor messages; return a QA result when one is accepted."""
        for message in self._bus.receive(self._name):
            command = parse_command(message.body)
            self._bus.ack(self._name, message)
            match command:
                case QAResultSignal() if accept_result:
                    return command
                case WorkerComplete(feature=feature):
                    logger.info("worker_complete_received", feature=feature or message.sender)
                case NewFeature(name=name):
                    self._register_feature(name, message.sender)
                case ExitSignal():
                    raise _ExitRequested()
                case _:
                    logger.info(
                        "supervisor_message_ignored",
                        seq=message.seq,
                        sender=message.sender,
                        phase=str(self.phase),
                    )
        return None

    def _register_feature(self, name: str, sender: str) -> None:
        if self._registry.contains(name):
            return
        try:
            feature = self._registry.add(name)
        except ConfigurationError as exc:
            logger.warning("new_feature_rejected", name=name, sender=sender, error=str(exc))
            return
        self._record(EventKind.FEATURE_ADDED, feature=feature.name, sender=sender)

    def _record(self, kind: EventKind, **data) -> None:
        self._events.append(kind, cycle=self._cycle, **data)

    def _render(self) -> None:
        render(self._layout, self._events.read())


def _tail(log: str) -> str:
    return log[-_LOG_TAIL:].strip()
