"""Append-only, totally ordered message log shared by every agent.

Responsibilities:
- Atomic, durable append of framed records (exclusive flock + fsync)
- Per-recipient FIFO view of the log, including broadcast records
- Per-recipient acknowledgement cursors, persisted beside the log
- Blocking receive: asyncio.Condition per recipient (push) or log polling (pull)
- File I/O from coroutines runs in worker threads so the event loop stays free

The log is the audit trail: nothing is ever removed from it.
"""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal

import structlog

from convoy.bus import codec
from convoy.bus.commands import Command, render_command
from convoy.bus.models import Message
from convoy.constants import BROADCAST
from convoy.infra.errors import BusError, MalformedMessageError
from convoy.infra.locking import atomic_write, durable_append, locked

logger = structlog.get_logger()

_AGENT_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class MessageBus:
    """File-backed message bus with per-recipient cursors."""

    def __init__(
        self,
        path: Path,
        cursors_dir: Path,
        *,
        delivery_mode: Literal["push", "pull"] = "push",
        poll_interval_s: float = 2.0,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = path
        self._cursors_dir = cursors_dir
        self._delivery_mode = delivery_mode
        self._poll_interval_s = poll_interval_s
        self._now = now_fn or (lambda: datetime.now(UTC))
        self._conditions: dict[str, asyncio.Condition] = {}
        self._reported_malformed: set[int] = set()

    @property
    def path(self) -> Path:
        return self._path

    async def send(self, sender: str, recipient: str, body: str | Command) -> Message:
        """Append one message and return it once it is durably persisted."""
        text = body if isinstance(body, str) else render_command(body)
        sender, recipient = sender.strip(), recipient.strip()
        for agent in (sender, recipient):
            if not _AGENT_NAME.match(agent):
                raise BusError(f"invalid agent name: {agent!r}")
        message = await asyncio.to_thread(self._append, sender, recipient, text)
        logger.info(
            "message_sent",
            seq=message.seq,
            sender=message.sender,
            recipient=message.recipient,
            preview=message.body.splitlines()[0][:60] if message.body else "",
        )
        await self._notify(message.recipient)
        return message

    def receive(self, agent: str) -> list[Message]:
        """Unacknowledged messages for ``agent`` in append order. Does not consume."""
        cursor = self.cursor(agent)
        return [msg for msg in self._read_all() if msg.seq > cursor and msg.is_for(agent)]

    def ack(self, agent: str, message: Message) -> None:
        """Mark ``message`` (and everything before it) consumed by ``agent``."""
        current = self.cursor(agent)
        if message.seq <= current:
            return
        atomic_write(
            self._cursor_path(agent),
            json.dumps({"agent": agent, "seq": message.seq}, sort_keys=True) + "\n",
        )

    def cursor(self, agent: str) -> int:
        path = self._cursor_path(agent)
        if not path.exists():
            return 0
        try:
            payload = json.loads(path.read_text("utf-8"))
        except json.JSONDecodeError:
            logger.warning("cursor_unreadable", agent=agent, path=str(path))
            return 0
        seq = payload.get("seq", 0) if isinstance(payload, dict) else 0
        return seq if isinstance(seq, int) else 0

    async def wait(self, agent: str, timeout: float | None = None) -> list[Message]:
        """Block until ``agent`` has unacknowledged messages, or ``timeout`` elapses.

        Returns an empty list on timeout. Writers in other processes are noticed
        within one poll interval in either delivery mode.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            pending = await asyncio.to_thread(self.receive, agent)
            if pending:
                return pending
            step = self._poll_interval_s
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return []
                step = min(step, remaining)
            if self._delivery_mode == "push":
                condition = self._condition(agent)
                async with condition:
                    try:
                        await asyncio.wait_for(condition.wait(), timeout=step)
                    except TimeoutError:
                        pass
            else:
                await asyncio.sleep(step)

    def history(self, agent: str | None = None) -> list[Message]:
        """Every well-formed message, optionally restricted to one recipient's view."""
        messages = self._read_all()
        if agent is None:
            return messages
        return [msg for msg in messages if msg.is_for(agent)]

    def _append(self, sender: str, recipient: str, body: str) -> Message:
        timestamp = self._now()
        with locked(self._path):
            seq = self._last_seq() + 1
            durable_append(self._path, codec.encode(timestamp, sender, recipient, body))
        return Message(
            seq=seq,
            timestamp=timestamp,
            sender=sender,
            recipient=recipient,
            body=codec.normalize_newlines(body).strip("\n"),
        )

    def _last_seq(self) -> int:
        last = 0
        for record in codec.split_records(self._read_text()):
            last = record.seq
        return last

    def _read_all(self) -> list[Message]:
        messages: list[Message] = []
        for record in codec.split_records(self._read_text()):
            try:
                messages.append(codec.decode(record))
            except MalformedMessageError as exc:
                if record.seq not in self._reported_malformed:
                    self._reported_malformed.add(record.seq)
                    logger.warning("malformed_message_skipped", seq=record.seq, reason=str(exc))
        return messages

    def _read_text(self) -> str:
        if not self._path.exists():
            return ""
        with self._path.open("r", encoding="utf-8", newline="") as handle:
            return handle.read()

    def _cursor_path(self, agent: str) -> Path:
        if not _AGENT_NAME.match(agent):
            raise BusError(f"invalid agent name: {agent!r}")
        return self._cursors_dir / f"{agent}.json"

    def _condition(self, agent: str) -> asyncio.Condition:
        if agent not in self._conditions:
            self._conditions[agent] = asyncio.Condition()
        return self._conditions[agent]

    async def _notify(self, recipient: str) -> None:
        targets = list(self._conditions) if recipient == BROADCAST else [recipient]
        for agent in targets:
            condition = self._conditions.get(agent)
            if condition is None:
                continue
            async with condition:
                condition.notify_all()
