"""QA verifier loop: answer every RUN_QA with exactly one report and one QA_RESULT."""

from __future__ import annotations

import shlex
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

import structlog

from convoy.bus.commands import ExitSignal, QAResultSignal, RunQA, parse_command
from convoy.bus.mailbox import MessageBus
from convoy.bus.models import Message
from convoy.constants import QA_AGENT, SUPERVISOR
from convoy.infra.errors import CommandError, ConfigurationError, QAReportError
from convoy.infra.proc import CommandRunner, run_command
from convoy.qa.report import QAReport, ReportStore, StandardResult, load_report
from convoy.qa.standards import StandardsCatalog

logger = structlog.get_logger()

QA_REPORT_ENV = "CONVOY_QA_REPORT"
QA_STANDARDS_ENV = "CONVOY_QA_STANDARDS"


class QARunner(Protocol):
    async def run(self, catalog: StandardsCatalog) -> QAReport: ...


class CommandQARunner:
    """Runs an external QA command that writes its JSON report to ``$CONVOY_QA_REPORT``.

    A non-zero exit is not itself a failure: QA tools commonly exit non-zero when
    a standard fails. Only a missing or invalid report is.
    """

    def __init__(
        self,
        command: str,
        store: ReportStore,
        *,
        workdir: Path,
        standards_file: Path,
        runner: CommandRunner = run_command,
    ) -> None:
        self._command = command
        self._store = store
        self._workdir = workdir
        self._standards_file = standards_file
        self._runner = runner

    async def run(self, catalog: StandardsCatalog) -> QAReport:
        if not self._command.strip():
            raise QAReportError("no QA command configured", code="QA_NOT_CONFIGURED")
        scratch = self._store.scratch_path()
        scratch.parent.mkdir(parents=True, exist_ok=True)
        scratch.unlink(missing_ok=True)
        result = await self._runner(
            shlex.split(self._command),
            cwd=self._workdir,
            env={
                QA_REPORT_ENV: str(scratch),
                QA_STANDARDS_ENV: str(self._standards_file),
            },
        )
        logger.info("qa_command_finished", returncode=result.returncode, standards=len(catalog))
        try:
            return load_report(scratch)
        except QAReportError as exc:
            if not result.ok:
                raise QAReportError(
                    f"QA command exited {result.returncode} without a usable report: "
                    f"{result.output or exc}"
                ) from exc
            raise
        finally:
            scratch.unlink(missing_ok=True)


def reconcile(catalog: StandardsCatalog, raw: QAReport) -> QAReport:
    """Match result ids 1:1 with the catalog.

    A standard the run did not report becomes a failed result; results for ids
    not in the catalog are dropped.
    """
    by_id: dict[str, StandardResult] = {}
    for result in raw.results:
        if result.id not in catalog:
            logger.warning("qa_result_unknown_standard", standard_id=result.id)
            continue
        by_id.setdefault(result.id, result)
    results = []
    for standard in catalog:
        result = by_id.get(standard.id)
        if result is None:
            result = StandardResult(
                id=standard.id,
                name=standard.name,
                passed=False,
                error="standard was not verified by the QA run",
            )
        elif not result.name:
            result = result.model_copy(update={"name": standard.name})
        results.append(result)
    return QAReport(
        timestamp=raw.timestamp,
        overall_pass=raw.overall_pass,
        results=results,
        error=raw.error,
    )


class QAAgent:
    """Singleton QA worker bound to the ``qa`` mailbox."""

    def __init__(
        self,
        bus: MessageBus,
        store: ReportStore,
        runner: QARunner,
        catalog_loader: Callable[[], StandardsCatalog],
        *,
        name: str = QA_AGENT,
    ) -> None:
        self._bus = bus
        self._store = store
        self._runner = runner
        self._catalog_loader = catalog_loader
        self._name = name
        self._in_flight = False
        self._last_result_seq = 0
        self.runs = 0

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def serve(self, *, idle_timeout: float | None = None) -> None:
        """Process the inbox until ``/exit``, or until idle for ``idle_timeout`` seconds."""
        logger.info("qa_agent_started", agent=self._name)
        while True:
            pending = await self._bus.wait(self._name, timeout=idle_timeout)
            if not pending:
                logger.info("qa_agent_idle_exit", agent=self._name)
                return
            for message in pending:
                if message.seq <= self._bus.cursor(self._name):
                    continue
                if not await self.handle(message):
                    logger.info("qa_agent_stopped", agent=self._name)
                    return

    async def handle(self, message: Message) -> bool:
        """Handle one inbox message. Returns False when the agent must stop."""
        command = parse_command(message.body)
        match command:
            case ExitSignal():
                self._bus.ack(self._name, message)
                return False
            case RunQA(cycle=cycle):
                # The supervisor signals again only after a QA_RESULT, so an older
                # RUN_QA is a duplicate of a run that already answered.
                if self._in_flight or message.seq < self._last_result_seq:
                    logger.info("run_qa_ignored", seq=message.seq, in_flight=self._in_flight)
                    self._bus.ack(self._name, message)
                    return True
                await self.run_once(cycle)
                self._bus.ack(self._name, message)
                return True
            case _:
                logger.info("qa_message_ignored", seq=message.seq, sender=message.sender)
                self._bus.ack(self._name, message)
                return True

    async def run_once(self, cycle: int | None = None) -> QAReport:
        """Run QA, persist the reconciled report and answer the supervisor."""
        self._in_flight = True
        try:
            try:
                catalog = self._catalog_loader()
                raw = await self._runner.run(catalog)
            except (ConfigurationError, QAReportError, CommandError) as exc:
                logger.warning("qa_run_failed", cycle=cycle, code=exc.code, error=str(exc))
                report = QAReport(overall_pass=False, error=str(exc))
            else:
                report = reconcile(catalog, raw) if raw.error is None else raw
            self._store.write(report)
            sent = await self._bus.send(
                self._name, SUPERVISOR, QAResultSignal(passed=report.passed)
            )
            self._last_result_seq = sent.seq
            self.runs += 1
            logger.info(
                "qa_run_completed",
                cycle=cycle,
                passed=report.passed,
                failed=report.summary.failed,
            )
            return report
        finally:
            self._in_flight = False

