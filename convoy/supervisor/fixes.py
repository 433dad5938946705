"""Fix task construction, routing and documents."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from convoy.bus.commands import FixTaskSignal, render_command
from convoy.constants import BUILD_STANDARD_ID, UNKNOWN_OWNER, UNSPECIFIED_STANDARD_ID
from convoy.infra.locking import atomic_write
from convoy.qa.report import QAReport, StandardResult
from convoy.qa.standards import OwnershipTable, StandardsCatalog

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]+")


@dataclass(frozen=True)
class FixTask:
    target: str
    standard_id: str
    description: str
    created_at: datetime
    cycle: int
    details: str = ""
    required_actions: tuple[str, ...] = field(default_factory=tuple)

    @property
    def key(self) -> tuple[str, str, int]:
        return (self.target, self.standard_id, self.cycle)

    @property
    def document_name(self) -> str:
        target = _UNSAFE.sub("-", self.target)
        standard = _UNSAFE.sub("-", self.standard_id)
        return f"cycle-{self.cycle}-{target}-{standard}.md"


def route(result: StandardResult, features: list[str], ownership: OwnershipTable) -> str:
    """Owner of a failed result: affected feature, then ownership table, then ``unknown``."""
    if result.affected_feature and result.affected_feature in features:
        return result.affected_feature
    owner = ownership.owner_of(result.id)
    if owner and owner in features:
        return owner
    return UNKNOWN_OWNER


def plan_qa_fixes(
    report: QAReport,
    *,
    cycle: int,
    features: list[str],
    ownership: OwnershipTable,
    catalog: StandardsCatalog | None,
    now: datetime,
) -> list[FixTask]:
    tasks: dict[tuple[str, str, int], FixTask] = {}
    for result in report.failures():
        target = route(result, features, ownership)
        standard = catalog.get(result.id) if catalog is not None else None
        description = result.name or (standard.name if standard else result.id)
        task = FixTask(
            target=target,
            standard_id=result.id,
            description=description,
            created_at=now,
            cycle=cycle,
            details=result.reason,
            required_actions=_qa_actions(standard.narrative if standard else ""),
        )
        tasks.setdefault(task.key, task)
    if not tasks and not report.passed:
        task = FixTask(
            target=UNKNOWN_OWNER,
            standard_id=UNSPECIFIED_STANDARD_ID,
            description="QA reported failure without a failing standard",
            created_at=now,
            cycle=cycle,
            details=report.error or "overall_pass is false but every result passed",
            required_actions=(
                "Inspect the QA report and the QA runner output",
                "Identify the failing standard and hand it to its owner",
            ),
        )
        tasks[task.key] = task
    return list(tasks.values())


def plan_build_fixes(
    log: str,
    *,
    cycle: int,
    targets: list[str],
    now: datetime,
) -> list[FixTask]:
    return [
        FixTask(
            target=target,
            standard_id=BUILD_STANDARD_ID,
            description="Merged trunk failed build verification",
            created_at=now,
            cycle=cycle,
            details=log,
            required_actions=(
                "Reproduce the build on the merged trunk",
                "Fix compilation or startup errors on your feature branch",
                "Set your status to COMPLETE when the build passes",
            ),
        )
        for target in dict.fromkeys(targets or [UNKNOWN_OWNER])
    ]


def write_document(directory: Path, task: FixTask) -> Path:
    path = directory / task.document_name
    actions = task.required_actions or ("Fix the failing standard and re-run its checks",)
    lines = [
        f"# Fix Task: {task.standard_id}",
        "",
        f"- target: {task.target}",
        f"- assigned: {task.created_at.isoformat()}",
        f"- cycle: {task.cycle}",
        "",
        "## Failed Standard",
        "",
        f"{task.standard_id}: {task.description}",
        "",
        "## Error Details",
        "",
        "```",
        task.details.strip() or "(no details reported)",
        "```",
        "",
        "## Required Actions",
        "",
        *[f"{index}. {action}" for index, action in enumerate(actions, start=1)],
        "",
        "When done, set your status to COMPLETE.",
    ]
    atomic_write(path, "\n".join(lines) + "\n")
    return path


def message_body(task: FixTask, document: Path | None = None) -> str:
    # report text stays on one labelled line
    lines = [
        render_command(FixTaskSignal(standard_id="".join(task.standard_id.split()))),
        f"standard: {' '.join(task.description.split())}",
    ]
    if document is not None:
        lines.append(f"details: {document}")
    return "\n".join(lines)


def _qa_actions(narrative: str) -> tuple[str, ...]:
    actions = ["Review the failed standard and the error details"]
    if narrative.strip():
        actions.append(f"Satisfy: {narrative.strip().splitlines()[0]}")
    actions.append("Set your status to COMPLETE when the standard is met")
    return tuple(actions)
