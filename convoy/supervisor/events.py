"""Supervisor event log and the projections derived from it.

``events.jsonl`` is the only source of truth for coordination progress. Marker
files and ``STATE.md`` are rendered from it and never read back.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, Field, ValidationError

from convoy.infra.layout import MARKER_NAMES, ProjectLayout
from convoy.infra.locking import atomic_write, durable_append, locked

logger = structlog.get_logger()


class EventKind(StrEnum):
    SUPERVISOR_STARTED = "SUPERVISOR_STARTED"
    RESUMED = "RESUMED"
    SCAFFOLD_VERIFIED = "SCAFFOLD_VERIFIED"
    SCAFFOLD_FAILED = "SCAFFOLD_FAILED"
    WORKER_ATTENTION = "WORKER_ATTENTION"
    FEATURE_ADDED = "FEATURE_ADDED"
    CYCLE_STARTED = "CYCLE_STARTED"
    FEATURE_MERGED = "FEATURE_MERGED"
    ALL_MERGED = "ALL_MERGED"
    MERGE_CONFLICT = "MERGE_CONFLICT"
    BUILD_VERIFIED = "BUILD_VERIFIED"
    BUILD_FAILED = "BUILD_FAILED"
    QA_SIGNALLED = "QA_SIGNALLED"
    QA_RESULT = "QA_RESULT"
    FIX_TASK = "FIX_TASK"
    FIXES_ASSIGNED = "FIXES_ASSIGNED"
    PROJECT_COMPLETE = "PROJECT_COMPLETE"
    PR_CREATED = "PR_CREATED"
    PR_SKIPPED = "PR_SKIPPED"
    PR_FAILED = "PR_FAILED"
    EXIT_SENT = "EXIT_SENT"
    ESCALATED = "ESCALATED"


class CoordEvent(BaseModel):
    seq: int
    ts: datetime
    kind: EventKind
    cycle: int = 0
    data: dict[str, Any] = Field(default_factory=dict)


class EventLog:
    def __init__(self, path: Path, *, now_fn: Callable[[], datetime] | None = None) -> None:
        self._path = path
        self._now = now_fn or (lambda: datetime.now(UTC))

    @property
    def path(self) -> Path:
        return self._path

    def append(self, kind: EventKind, *, cycle: int = 0, **data: Any) -> CoordEvent:
        with locked(self._path):
            events = self.read()
            event = CoordEvent(
                seq=(events[-1].seq if events else 0) + 1,
                ts=self._now(),
                kind=kind,
                cycle=cycle,
                data=data,
            )
            durable_append(self._path, event.model_dump_json() + "\n")
        logger.info("coord_event", kind=str(kind), seq=event.seq, cycle=cycle, data=data)
        return event

    def read(self) -> list[CoordEvent]:
        if not self._path.exists():
            return []
        events: list[CoordEvent] = []
        for lineno, line in enumerate(self._path.read_text("utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                events.append(CoordEvent.model_validate_json(line))
            except ValidationError:
                logger.warning("coord_event_unreadable", path=str(self._path), line=lineno)
        return events


@dataclass
class Projection:
    """Coordination state folded from the event log."""

    cycles: int = 0
    budget_base: int = 0  # cycles already spent before the last RESUMED
    terminal: str | None = None  # DONE | ESCALATED | HALTED
    reason: str = ""
    markers: dict[str, datetime] = field(default_factory=dict)
    # feature -> status entry count when its latest fix task was assigned
    fix_baselines: dict[str, int] = field(default_factory=dict)
    qa_in_flight: bool = False
    last_merged: str | None = None
    last_qa_passed: bool | None = None
    exit_sent: bool = False
    pr_outcome: str | None = None
    attention: set[tuple[str, str]] = field(default_factory=set)
    # failing QA_RESULT or BUILD_FAILED whose fix tasks were not all assigned
    unassigned_failure: CoordEvent | None = None
    fixes_sent: set[tuple[str, str]] = field(default_factory=set)

    @property
    def budget_used(self) -> int:
        return self.cycles - self.budget_base


_MARKER_SET = {
    EventKind.BUILD_VERIFIED: ("BUILD_VERIFIED",),
    EventKind.ALL_MERGED: ("ALL_MERGED",),
    EventKind.PROJECT_COMPLETE: ("PROJECT_COMPLETE",),
    EventKind.ESCALATED: ("NEEDS_HUMAN",),
    EventKind.MERGE_CONFLICT: ("NEEDS_HUMAN",),
    EventKind.SCAFFOLD_FAILED: ("NEEDS_HUMAN",),
}

_MARKER_CLEAR = {
    EventKind.CYCLE_STARTED: ("BUILD_VERIFIED", "ALL_MERGED", "QA_COMPLETE", "QA_NEEDS_FIXES"),
    EventKind.BUILD_FAILED: ("BUILD_VERIFIED", "ALL_MERGED"),
    EventKind.FIXES_ASSIGNED: ("ALL_MERGED",),
    EventKind.MERGE_CONFLICT: ("ALL_MERGED",),
    EventKind.RESUMED: ("NEEDS_HUMAN",),
}


def project(events: list[CoordEvent]) -> Projection:
    state = Projection()
    for event in events:
        for name in _MARKER_CLEAR.get(event.kind, ()):
            state.markers.pop(name, None)
        for name in _MARKER_SET.get(event.kind, ()):
            state.markers[name] = event.ts
        match event.kind:
            case EventKind.RESUMED:
                if state.terminal != "DONE":
                    state.terminal = None
                    state.reason = ""
                    state.budget_base = state.cycles
                    state.qa_in_flight = False
                    state.unassigned_failure = None
            case EventKind.CYCLE_STARTED:
                state.cycles = max(state.cycles, event.cycle)
                state.fix_baselines = {}
                state.unassigned_failure = None
            case EventKind.FEATURE_MERGED:
                state.last_merged = event.data.get("feature")
            case EventKind.QA_SIGNALLED:
                state.qa_in_flight = True
            case EventKind.QA_RESULT:
                state.qa_in_flight = False
                state.last_qa_passed = bool(event.data.get("passed"))
                state.markers.pop("QA_COMPLETE", None)
                state.markers.pop("QA_NEEDS_FIXES", None)
                state.markers["QA_COMPLETE" if state.last_qa_passed else "QA_NEEDS_FIXES"] = event.ts
                if not state.last_qa_passed:
                    _open_failure(state, event)
            case EventKind.BUILD_FAILED:
                _open_failure(state, event)
            case EventKind.FIX_TASK:
                target = event.data.get("target")
                baseline = event.data.get("status_entries")
                if isinstance(target, str) and isinstance(baseline, int):
                    state.fix_baselines[target] = baseline
                state.fixes_sent.add((str(target), str(event.data.get("standard_id"))))
            case EventKind.FIXES_ASSIGNED:
                state.unassigned_failure = None
            case EventKind.WORKER_ATTENTION:
                state.attention.add((str(event.data.get("feature")), str(event.data.get("entry"))))
            case EventKind.PROJECT_COMPLETE:
                state.terminal = "DONE"
                state.reason = "all standards passed"
            case EventKind.PR_CREATED | EventKind.PR_SKIPPED | EventKind.PR_FAILED:
                state.pr_outcome = str(event.kind)
            case EventKind.EXIT_SENT:
                state.exit_sent = True
            case EventKind.ESCALATED:
                state.terminal = "ESCALATED"
                state.reason = str(event.data.get("reason", "retry budget exhausted"))
            case EventKind.SCAFFOLD_FAILED | EventKind.MERGE_CONFLICT:
                state.terminal = "HALTED"
                state.reason = str(event.data.get("reason", event.kind))
    return state


def _open_failure(state: Projection, event: CoordEvent) -> None:
    state.unassigned_failure = event
    state.fixes_sent = set()


def render(layout: ProjectLayout, events: list[CoordEvent]) -> Projection:
    """Write marker files and STATE.md from the event log."""
    state = project(events)
    for name in MARKER_NAMES:
        path = layout.marker(name)
        stamp = state.markers.get(name)
        if stamp is None:
            path.unlink(missing_ok=True)
        else:
            atomic_write(path, stamp.isoformat() + "\n")
    atomic_write(layout.state_file, _render_state(state, events))
    return state


def _render_state(state: Projection, events: list[CoordEvent]) -> str:
    lines = [
        "# Coordination State",
        "",
        f"- cycles: {state.cycles}",
        f"- terminal: {state.terminal or 'running'}",
    ]
    if state.reason:
        lines.append(f"- reason: {state.reason}")
    if state.pr_outcome:
        lines.append(f"- pull request: {state.pr_outcome}")
    lines.append(f"- markers: {', '.join(sorted(state.markers)) or 'none'}")
    lines.extend(["", "## Recent Events", ""])
    for event in events[-20:]:
        detail = json.dumps(event.data, ensure_ascii=False, sort_keys=True) if event.data else ""
        lines.append(f"- #{event.seq} {event.ts.isoformat()} cycle={event.cycle} {event.kind} {detail}".rstrip())
    return "\n".join(lines) + "\n"
