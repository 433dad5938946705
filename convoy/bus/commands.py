"""Typed message intents carried in free-text mailbox bodies.

Agents write prose around their commands, so parsing looks for the keyword
token anywhere in the body, except ``/exit`` which must stand on a line of its
own. The first match in ``parse_command`` order wins.
"""

from __future__ import annotations

import re
from dataclasses import dataclass


@dataclass(frozen=True)
class RunQA:
    cycle: int | None = None


@dataclass(frozen=True)
class QAResultSignal:
    passed: bool


@dataclass(frozen=True)
class FixTaskSignal:
    standard_id: str


@dataclass(frozen=True)
class WorkerComplete:
    feature: str | None = None


@dataclass(frozen=True)
class NewFeature:
    name: str


@dataclass(frozen=True)
class ExitSignal:
    pass


@dataclass(frozen=True)
class Note:
    """Body without a recognised command keyword."""

    text: str


Command = RunQA | QAResultSignal | FixTaskSignal | WorkerComplete | NewFeature | ExitSignal | Note

_EXIT = re.compile(r"^[ \t]*/exit[ \t]*$", re.MULTILINE)
_QA_RESULT = re.compile(r"\bQA_RESULT\s*:\s*(PASS|FAIL)\b", re.IGNORECASE)
_RUN_QA = re.compile(r"\bRUN_QA\b(?:[^\n]*?\bcycle[ =:]+(\d+))?")
_FIX_TASK = re.compile(r"\bFIX_TASK\s*:\s*(\S+)")
_WORKER_COMPLETE = re.compile(r"\bWORKER_COMPLETE\b(?:\s*:\s*([\w.-]+))?")
_NEW_FEATURE = re.compile(r"\bNEW_FEATURE\s*:\s*([\w.-]+)")


def parse_command(body: str) -> Command:
    if _EXIT.search(body):
        return ExitSignal()
    match = _QA_RESULT.search(body)
    if match:
        return QAResultSignal(passed=match.group(1).upper() == "PASS")
    match = _RUN_QA.search(body)
    if match:
        return RunQA(cycle=int(match.group(1)) if match.group(1) else None)
    match = _FIX_TASK.search(body)
    if match:
        return FixTaskSignal(standard_id=match.group(1))
    match = _WORKER_COMPLETE.search(body)
    if match:
        return WorkerComplete(feature=match.group(1))
    match = _NEW_FEATURE.search(body)
    if match:
        return NewFeature(name=match.group(1))
    return Note(text=body)


def render_command(command: Command) -> str:
    """Canonical body text for a command; parse_command(render_command(c)) == c."""
    match command:
        case ExitSignal():
            return "/exit"
        case QAResultSignal(passed=passed):
            return f"QA_RESULT: {'PASS' if passed else 'FAIL'}"
        case RunQA(cycle=cycle):
            return "RUN_QA" if cycle is None else f"RUN_QA cycle={cycle}"
        case FixTaskSignal(standard_id=standard_id):
            return f"FIX_TASK: {standard_id} failed"
        case WorkerComplete(feature=feature):
            return "WORKER_COMPLETE" if feature is None else f"WORKER_COMPLETE: {feature}"
        case NewFeature(name=name):
            return f"NEW_FEATURE: {name}"
        case Note(text=text):
            return text
    raise TypeError(f"unsupported command: {command!r}")
