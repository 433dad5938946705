from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from convoy.bus.models import Message
from convoy.status.store import AgentState, AgentStatus


class SendMessageParams(BaseModel):
    sender: str
    recipient: str
    body: str

    @field_validator("sender", "recipient")
    @classmethod
    def _strip_agent(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("agent name must not be empty")
        return v


class AckParams(BaseModel):
    seq: int = Field(ge=1)


class StatusParams(BaseModel):
    state: AgentState
    note: str = ""


class MessageData(BaseModel):
    seq: int
    timestamp: datetime
    sender: str
    recipient: str
    body: str

    @classmethod
    def from_message(cls, message: Message) -> MessageData:
        return cls(
            seq=message.seq,
            timestamp=message.timestamp,
            sender=message.sender,
            recipient=message.recipient,
            body=message.body,
        )


class StatusData(BaseModel):
    agent: str
    timestamp: datetime
    state: AgentState
    note: str = ""

    @classmethod
    def from_status(cls, status: AgentStatus) -> StatusData:
        return cls(
            agent=status.agent,
            timestamp=status.timestamp,
            state=status.state,
            note=status.note,
        )


class InboxResponse(BaseModel):
    agent: str
    cursor: int
    messages: list[MessageData]


class ProjectStatusResponse(BaseModel):
    features: dict[str, StatusData | None]
    cycles: int
    terminal: str | None = None
    reason: str = ""
    markers: list[str] = Field(default_factory=list)
    pr_outcome: str | None = None


class ErrorData(BaseModel):
    code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    error: ErrorData
