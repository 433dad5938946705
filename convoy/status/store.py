"""Per-agent append-only lifecycle logs.

Each agent owns ``status/<agent>.log``; one line per entry::

    2026-03-01T10:00:00+00:00 [IN_PROGRESS] wiring the login form

The current status is the last parseable entry. Writes validate the lifecycle
transition; reads never do, so logs written by other tools are read as-is.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path

import structlog

from convoy.infra.errors import InvalidTransitionError, StatusError
from convoy.infra.locking import durable_append, locked

logger = structlog.get_logger()


class AgentState(StrEnum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    BLOCKED = "BLOCKED"
    TESTING = "TESTING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


ALLOWED_TRANSITIONS: dict[AgentState, frozenset[AgentState]] = {
    AgentState.PENDING: frozenset(
        {AgentState.IN_PROGRESS, AgentState.BLOCKED, AgentState.FAILED}
    ),
    AgentState.IN_PROGRESS: frozenset(
        {
            AgentState.IN_PROGRESS,
            AgentState.TESTING,
            AgentState.COMPLETE,
            AgentState.BLOCKED,
            AgentState.FAILED,
        }
    ),
    AgentState.TESTING: frozenset(
        {
            AgentState.TESTING,
            AgentState.IN_PROGRESS,
            AgentState.COMPLETE,
            AgentState.BLOCKED,
            AgentState.FAILED,
        }
    ),
    AgentState.BLOCKED: frozenset(
        {AgentState.IN_PROGRESS, AgentState.BLOCKED, AgentState.FAILED}
    ),
    AgentState.FAILED: frozenset({AgentState.IN_PROGRESS}),
    # Only a fix task re-opens a finished feature.
    AgentState.COMPLETE: frozenset({AgentState.IN_PROGRESS}),
}

_LINE = re.compile(r"^(?P<ts>\S+)\s+\[(?P<state>[A-Z_]+)\]\s?(?P<note>.*)$")
_AGENT_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


@dataclass(frozen=True)
class AgentStatus:
    agent: str
    timestamp: datetime
    state: AgentState
    note: str = ""

    def to_line(self) -> str:
        note = " ".join(self.note.split())
        return f"{self.timestamp.isoformat()} [{self.state}] {note}".rstrip() + "\n"


def parse_status_line(agent: str, line: str) -> AgentStatus | None:
    """Parse one log line; None for comments, blanks and unparseable lines."""
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return None
    match = _LINE.match(stripped)
    if match is None:
        return None
    try:
        state = AgentState(match.group("state"))
        timestamp = datetime.fromisoformat(match.group("ts"))
    except ValueError:
        return None
    return AgentStatus(agent=agent, timestamp=timestamp, state=state, note=match.group("note"))


class StatusStore:
    """Reads and appends per-agent status logs under one directory."""

    def __init__(self, directory: Path, *, now_fn: Callable[[], datetime] | None = None) -> None:
        self._dir = directory
        self._now = now_fn or (lambda: datetime.now(UTC))

    def log_path(self, agent: str) -> Path:
        if not _AGENT_NAME.match(agent):
            raise StatusError(f"invalid agent name: {agent!r}")
        return self._dir / f"{agent}.log"

    def append(self, agent: str, state: AgentState | str, note: str = "") -> AgentStatus:
        """Append a status entry after checking the lifecycle transition."""
        try:
            target = AgentState(state)
        except ValueError as exc:
            raise StatusError(f"unknown state: {state!r}") from exc
        path = self.log_path(agent)
        with locked(path):
            current = self._last_entry(agent, path)
            if current is not None and target not in ALLOWED_TRANSITIONS[current.state]:
                raise InvalidTransitionError(
                    f"{agent}: {current.state} -> {target} is not allowed"
                )
            entry = AgentStatus(agent=agent, timestamp=self._now(), state=target, note=note)
            durable_append(path, entry.to_line())
        logger.info("status_appended", agent=agent, state=str(target), note=note[:80])
        return entry

    def latest(self, agent: str) -> AgentStatus | None:
        return self._last_entry(agent, self.log_path(agent))

    def history(self, agent: str) -> list[AgentStatus]:
        path = self.log_path(agent)
        if not path.exists():
            return []
        entries = []
        for line in path.read_text("utf-8").splitlines():
            entry = parse_status_line(agent, line)
            if entry is not None:
                entries.append(entry)
        return entries

    def snapshot(self, agents: list[str]) -> dict[str, AgentStatus | None]:
        """Latest status of every agent, read in one pass."""
        return {agent: self.latest(agent) for agent in agents}

    def count(self, agent: str) -> int:
        """Number of parseable entries; used to detect fresh updates."""
        return len(self.history(agent))

    def _last_entry(self, agent: str, path: Path) -> AgentStatus | None:
        if not path.exists():
            return None
        last = None
        for line in path.read_text("utf-8").splitlines():
            entry = parse_status_line(agent, line)
            if entry is not None:
                last = entry
        return last
