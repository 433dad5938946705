"""Helper used by worker processes to follow the coordination contract.

A worker reports lifecycle status for its feature, announces completion to the
supervisor, picks up fix tasks addressed to it, and stops on ``/exit``.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from convoy.bus.commands import ExitSignal, FixTaskSignal, WorkerComplete, parse_command
from convoy.bus.mailbox import MessageBus
from convoy.bus.models import Message
from convoy.constants import SUPERVISOR
from convoy.status.store import AgentState, AgentStatus, StatusStore

logger = structlog.get_logger()


@dataclass(frozen=True)
class PendingFix:
    message: Message
    standard_id: str


class WorkerClient:
    def __init__(self, feature: str, bus: MessageBus, statuses: StatusStore) -> None:
        self.feature = feature
        self._bus = bus
        self._statuses = statuses

    def start(self, note: str = "") -> AgentStatus:
        return self._statuses.append(self.feature, AgentState.IN_PROGRESS, note)

    def testing(self, note: str = "") -> AgentStatus:
        return self._statuses.append(self.feature, AgentState.TESTING, note)

    def blocked(self, note: str) -> AgentStatus:
        return self._statuses.append(self.feature, AgentState.BLOCKED, note)

    def fail(self, note: str) -> AgentStatus:
        return self._statuses.append(self.feature, AgentState.FAILED, note)

    async def complete(self, note: str = "") -> AgentStatus:
        """Mark the feature COMPLETE and wake the supervisor."""
        entry = self._statuses.append(self.feature, AgentState.COMPLETE, note)
        await self._bus.send(self.feature, SUPERVISOR, WorkerComplete(feature=self.feature))
        return entry

    def fix_tasks(self) -> list[PendingFix]:
        pending = []
        for message in self._bus.receive(self.feature):
            command = parse_command(message.body)
            if isinstance(command, FixTaskSignal):
                pending.append(PendingFix(message=message, standard_id=command.standard_id))
        return pending

    def accept(self, fix: PendingFix) -> AgentStatus:
        """Re-open the feature for a fix task and consume its message."""
        entry = self._statuses.append(
            self.feature, AgentState.IN_PROGRESS, f"fixing {fix.standard_id}"
        )
        self._bus.ack(self.feature, fix.message)
        logger.info("fix_task_accepted", feature=self.feature, standard_id=fix.standard_id)
        return entry

    def should_exit(self) -> bool:
        return any(
            isinstance(parse_command(message.body), ExitSignal)
            for message in self._bus.receive(self.feature)
        )
