"""Mailbox record framing.

A record is a delimiter line, three header lines (``timestamp``, ``from``,
``to``) and a free-text body running until the next delimiter::

    --- MESSAGE ---
    timestamp: 2026-03-01T10:00:00+00:00
    from: supervisor
    to: qa
    RUN_QA

Bodies are stored with LF line endings only; a CR in the body becomes a line
break before escaping. Body lines that equal the delimiter are written
with a leading backslash so they cannot split the record.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime

from convoy.bus.models import Message
from convoy.constants import MESSAGE_DELIMITER, MESSAGE_HEADERS
from convoy.infra.errors import MalformedMessageError

_ESCAPED_DELIMITER = "\\" + MESSAGE_DELIMITER


@dataclass(frozen=True)
class RawRecord:
    seq: int
    lines: tuple[str, ...]


def normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def encode(timestamp: datetime, sender: str, recipient: str, body: str) -> str:
    lines = [
        MESSAGE_DELIMITER,
        f"timestamp: {timestamp.isoformat()}",
        f"from: {sender}",
        f"to: {recipient}",
    ]
    for line in normalize_newlines(body).rstrip("\n").split("\n"):
        if line == MESSAGE_DELIMITER or line.startswith(_ESCAPED_DELIMITER):
            line = "\\" + line
        lines.append(line)
    return "\n".join(lines) + "\n"


def split_records(text: str) -> Iterator[RawRecord]:
    """Yield every delimited record in append order, numbering from 1.

    Text before the first delimiter (file headers written by other tools) is
    ignored and does not consume a sequence number.
    Lines split on LF only. A trailing CR left by a foreign writer is dropped.
    """
    seq = 0
    current: list[str] | None = None
    for line in text.split("\n"):
        line = line.removesuffix("\r")
        if line == MESSAGE_DELIMITER:
            if current is not None:
                yield RawRecord(seq=seq, lines=tuple(current))
            seq += 1
            current = []
            continue
        if current is not None:
            current.append(line)
    if current is not None:
        yield RawRecord(seq=seq, lines=tuple(current))


def decode(record: RawRecord) -> Message:
    """Parse one record. Raises MalformedMessageError when headers are missing or invalid."""
    headers: dict[str, str] = {}
    for line in record.lines[: len(MESSAGE_HEADERS)]:
        key, sep, value = line.partition(":")
        if not sep or key not in MESSAGE_HEADERS or key in headers:
            break
        headers[key] = value.strip()
    missing = [key for key in MESSAGE_HEADERS if not headers.get(key)]
    if missing:
        raise MalformedMessageError(
            f"record {record.seq} missing headers: {', '.join(missing)}"
        )
    try:
        timestamp = datetime.fromisoformat(headers["timestamp"])
    except ValueError as exc:
        raise MalformedMessageError(
            f"record {record.seq} has invalid timestamp {headers['timestamp']!r}"
        ) from exc
    body_lines = [
        line[1:] if line.startswith(_ESCAPED_DELIMITER) else line
        for line in record.lines[len(MESSAGE_HEADERS):]
    ]
    return Message(
        seq=record.seq,
        timestamp=timestamp,
        sender=headers["from"],
        recipient=headers["to"],
        body="\n".join(body_lines).strip("\n"),
    )
