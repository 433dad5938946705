from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from convoy.constants import BROADCAST


@dataclass(frozen=True)
class Message:
    """One immutable mailbox record. ``seq`` is its position in the global log."""

    seq: int
    timestamp: datetime
    sender: str
    recipient: str
    body: str

    def is_for(self, agent: str) -> bool:
        return self.recipient == agent or self.recipient == BROADCAST
