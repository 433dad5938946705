from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest

from convoy.bus.commands import FixTaskSignal, parse_command
from convoy.infra.layout import ProjectLayout
from convoy.qa.report import QAReport, StandardResult
from convoy.qa.standards import OwnershipTable, StandardsCatalog
from convoy.supervisor import fixes
from convoy.supervisor.events import EventKind, EventLog, project, render

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def log(layout: ProjectLayout, clock) -> EventLog:
    return EventLog(layout.events_file, now_fn=clock)


class TestEventLog:
    def test_sequence_and_roundtrip(self, log: EventLog) -> None:
        first = log.append(EventKind.SCAFFOLD_VERIFIED)
        second = log.append(EventKind.CYCLE_STARTED, cycle=1)
        assert (first.seq, second.seq) == (1, 2)
        assert [e.kind for e in log.read()] == [EventKind.SCAFFOLD_VERIFIED, EventKind.CYCLE_STARTED]

    def test_unreadable_lines_are_skipped(self, log: EventLog) -> None:
        log.append(EventKind.SCAFFOLD_VERIFIED)
        with log.path.open("a", encoding="utf-8") as handle:
            handle.write("not json\n")
        log.append(EventKind.CYCLE_STARTED, cycle=1)
        assert [e.seq for e in log.read()] == [1, 2]


class TestProjection:
    def test_cycle_markers(self, log: EventLog) -> None:
        log.append(EventKind.CYCLE_STARTED, cycle=1)
        log.append(EventKind.ALL_MERGED, cycle=1)
        log.append(EventKind.BUILD_VERIFIED, cycle=1)
        log.append(EventKind.QA_SIGNALLED, cycle=1, report_index=0)
        state = project(log.read())
        assert set(state.markers) == {"ALL_MERGED", "BUILD_VERIFIED"}
        assert state.qa_in_flight

        log.append(EventKind.QA_RESULT, cycle=1, passed=False)
        log.append(EventKind.FIX_TASK, cycle=1, target="auth", standard_id="STD-003", status_entries=4)
        log.append(EventKind.FIXES_ASSIGNED, cycle=1, count=1)
        state = project(log.read())
        assert set(state.markers) == {"BUILD_VERIFIED", "QA_NEEDS_FIXES"}
        assert state.fix_baselines == {"auth": 4}
        assert not state.qa_in_flight

        log.append(EventKind.CYCLE_STARTED, cycle=2)
        state = project(log.read())
        assert state.markers == {}
        assert state.fix_baselines == {}
        assert state.cycles == 2

    def test_build_failure_clears_merge_markers(self, log: EventLog) -> None:
        log.append(EventKind.CYCLE_STARTED, cycle=1)
        log.append(EventKind.ALL_MERGED, cycle=1)
        log.append(EventKind.BUILD_FAILED, cycle=1, log="boom")
        assert project(log.read()).markers == {}

    def test_failure_stays_open_until_fixes_assigned(self, log: EventLog) -> None:
        log.append(EventKind.CYCLE_STARTED, cycle=1)
        failure = log.append(EventKind.QA_RESULT, cycle=1, passed=False, report="qa-0001.json")
        log.append(EventKind.FIX_TASK, cycle=1, target="auth", standard_id="STD-003", status_entries=2)
        state = project(log.read())
        assert state.unassigned_failure is not None
        assert state.unassigned_failure.seq == failure.seq
        assert state.fixes_sent == {("auth", "STD-003")}

        log.append(EventKind.FIXES_ASSIGNED, cycle=1, count=2)
        assert project(log.read()).unassigned_failure is None

    def test_passing_result_opens_nothing(self, log: EventLog) -> None:
        log.append(EventKind.QA_RESULT, cycle=1, passed=True)
        assert project(log.read()).unassigned_failure is None

    def test_completion(self, log: EventLog) -> None:
        log.append(EventKind.QA_RESULT, cycle=1, passed=True)
        log.append(EventKind.PROJECT_COMPLETE, cycle=1)
        log.append(EventKind.PR_SKIPPED, cycle=1, detail="gh is not installed")
        log.append(EventKind.EXIT_SENT, cycle=1, agents=["qa"])
        state = project(log.read())
        assert state.terminal == "DONE"
        assert state.exit_sent
        assert state.pr_outcome == "PR_SKIPPED"
        assert set(state.markers) == {"QA_COMPLETE", "PROJECT_COMPLETE"}

    def test_resume_clears_halt_and_resets_budget(self, log: EventLog) -> None:
        log.append(EventKind.CYCLE_STARTED, cycle=2)
        log.append(EventKind.MERGE_CONFLICT, cycle=2, reason="conflict", feature="auth")
        halted = project(log.read())
        assert halted.terminal == "HALTED"
        assert "NEEDS_HUMAN" in halted.markers

        log.append(EventKind.RESUMED, cycle=2)
        resumed = project(log.read())
        assert resumed.terminal is None
        assert resumed.budget_used == 0
        assert "NEEDS_HUMAN" not in resumed.markers

    def test_resume_does_not_reopen_done(self, log: EventLog) -> None:
        log.append(EventKind.PROJECT_COMPLETE, cycle=1)
        log.append(EventKind.RESUMED, cycle=1)
        assert project(log.read()).terminal == "DONE"


class TestRender:
    def test_marker_files_follow_projection(self, log: EventLog, layout: ProjectLayout) -> None:
        log.append(EventKind.CYCLE_STARTED, cycle=1)
        event = log.append(EventKind.ALL_MERGED, cycle=1)
        render(layout, log.read())
        assert layout.marker("ALL_MERGED").read_text("utf-8").strip() == event.ts.isoformat()

        log.append(EventKind.BUILD_FAILED, cycle=1, log="boom")
        render(layout, log.read())
        assert not layout.marker("ALL_MERGED").exists()
        state_text = layout.state_file.read_text("utf-8")
        assert "- cycles: 1" in state_text
        assert "BUILD_FAILED" in state_text


def _report(*results: StandardResult, overall: bool = False, error: str | None = None) -> QAReport:
    return QAReport(overall_pass=overall, results=list(results), error=error)


class TestFixPlanning:
    catalog = StandardsCatalog.parse("### STD-003: Login Works\nUsers can log in.\n")

    def test_affected_feature_wins(self) -> None:
        report = _report(StandardResult(id="STD-003", passed=False, affected_feature="auth"))
        (task,) = fixes.plan_qa_fixes(
            report,
            cycle=1,
            features=["auth", "billing"],
            ownership=OwnershipTable({"STD-003": "billing"}),
            catalog=self.catalog,
            now=NOW,
        )
        assert task.target == "auth"
        assert task.description == "Login Works"
        assert task.document_name == "cycle-1-auth-STD-003.md"

    def test_ownership_fallback_then_unknown(self) -> None:
        report = _report(
            StandardResult(id="STD-003", passed=False, affected_feature="payments"),
            StandardResult(id="STD-004", passed=False),
        )
        tasks = fixes.plan_qa_fixes(
            report,
            cycle=2,
            features=["auth", "billing"],
            ownership=OwnershipTable({"STD-003": "billing", "STD-004": "ghost"}),
            catalog=self.catalog,
            now=NOW,
        )
        assert [(t.target, t.standard_id) for t in tasks] == [("billing", "STD-003"), ("unknown", "STD-004")]

    def test_duplicate_results_give_one_task(self) -> None:
        failing = StandardResult(id="STD-003", passed=False, affected_feature="auth")
        tasks = fixes.plan_qa_fixes(
            _report(failing, failing),
            cycle=1,
            features=["auth"],
            ownership=OwnershipTable(),
            catalog=None,
            now=NOW,
        )
        assert len(tasks) == 1

    def test_failure_without_failing_standard(self) -> None:
        report = _report(StandardResult(id="STD-003", passed=True), error="QA command exited 2")
        (task,) = fixes.plan_qa_fixes(
            report, cycle=1, features=["auth"], ownership=OwnershipTable(), catalog=None, now=NOW
        )
        assert (task.target, task.standard_id) == ("unknown", "QA_UNSPECIFIED")
        assert task.details == "QA command exited 2"

    def test_passing_report_plans_nothing(self) -> None:
        report = _report(StandardResult(id="STD-003", passed=True), overall=True)
        assert fixes.plan_qa_fixes(
            report, cycle=1, features=["auth"], ownership=OwnershipTable(), catalog=None, now=NOW
        ) == []

    def test_build_fixes(self) -> None:
        tasks = fixes.plan_build_fixes("tsc failed", cycle=1, targets=["billing", "billing"], now=NOW)
        assert [(t.target, t.standard_id) for t in tasks] == [("billing", "BUILD")]
        (orphan,) = fixes.plan_build_fixes("tsc failed", cycle=1, targets=[], now=NOW)
        assert orphan.target == "unknown"

    def test_document_and_message(self, tmp_path: Path) -> None:
        task = fixes.FixTask(
            target="auth",
            standard_id="STD-003",
            description="Login Works",
            created_at=NOW,
            cycle=1,
            details="401 for valid credentials",
        )
        document = fixes.write_document(tmp_path, task)
        text = document.read_text("utf-8")
        assert "STD-003: Login Works" in text
        assert "401 for valid credentials" in text
        assert "When done, set your status to COMPLETE." in text
        body = fixes.message_body(task, document)
        assert body.splitlines()[:2] == ["FIX_TASK: STD-003 failed", "standard: Login Works"]

    def test_message_keeps_report_text_off_command_lines(self) -> None:
        task = fixes.FixTask(
            target="auth",
            standard_id="STD-003",
            description="Login\n/exit\n",
            created_at=NOW,
            cycle=1,
        )
        body = fixes.message_body(task)
        assert body.splitlines()[1] == "standard: Login /exit"
        assert parse_command(body) == FixTaskSignal("STD-003")
