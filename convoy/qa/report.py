"""QA report schema and storage.

Reports are stored as ``qa-reports/qa-NNNN.json``; ``qa-reports/LATEST`` holds
the file name of the most recent one and is replaced atomically.
"""

from __future__ import annotations

import json
import re
from datetime import UTC, datetime
from pathlib import Path

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from convoy.infra.errors import QAReportError
from convoy.infra.locking import atomic_write, locked

logger = structlog.get_logger()

_REPORT_NAME = re.compile(r"^qa-(\d{4,})\.json$")
LATEST_POINTER = "LATEST"


class StandardResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str = ""
    passed: bool = Field(alias="pass")
    details: str | None = None
    error: str | None = None
    affected_feature: str | None = None

    @property
    def reason(self) -> str:
        return self.error or self.details or ""


class ReportSummary(BaseModel):
    total: int = 0
    passed: int = 0
    failed: int = 0


class QAReport(BaseModel):
    """One QA run. ``summary`` is always derived from ``results``."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    overall_pass: bool
    results: list[StandardResult] = Field(default_factory=list)
    summary: ReportSummary = Field(default_factory=ReportSummary)
    error: str | None = None  # set when the QA run itself failed

    @model_validator(mode="after")
    def _recompute_summary(self) -> QAReport:
        passed = sum(1 for result in self.results if result.passed)
        self.summary = ReportSummary(
            total=len(self.results), passed=passed, failed=len(self.results) - passed
        )
        return self

    @property
    def passed(self) -> bool:
        """Passing needs both the overall flag and no failed result."""
        return self.overall_pass and self.summary.failed == 0

    def failures(self) -> list[StandardResult]:
        return [result for result in self.results if not result.passed]

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json", by_alias=True), indent=2) + "\n"


def load_report(path: Path) -> QAReport:
    try:
        return QAReport.model_validate_json(path.read_text("utf-8"))
    except FileNotFoundError as exc:
        raise QAReportError(f"QA report not found: {path}", code="QA_REPORT_MISSING") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise QAReportError(f"unreadable QA report {path}: {exc}") from exc
    except ValidationError as exc:
        raise QAReportError(f"invalid QA report {path}: {exc}") from exc


class ReportStore:
    def __init__(self, directory: Path) -> None:
        self._dir = directory

    @property
    def directory(self) -> Path:
        return self._dir

    @property
    def pointer(self) -> Path:
        return self._dir / LATEST_POINTER

    def write(self, report: QAReport) -> Path:
        """Persist ``report`` as the next numbered file and move the pointer to it."""
        self._dir.mkdir(parents=True, exist_ok=True)
        with locked(self.pointer):
            path = self._dir / f"qa-{self._max_index() + 1:04d}.json"
            atomic_write(path, report.to_json())
            atomic_write(self.pointer, path.name + "\n")
        logger.info(
            "qa_report_written",
            path=str(path),
            passed=report.passed,
            failed=report.summary.failed,
        )
        return path

    def latest_index(self) -> int:
        """Number of the report LATEST points at; 0 when there is none."""
        name = self._latest_name()
        if name is None:
            return 0
        match = _REPORT_NAME.match(name)
        return int(match.group(1)) if match else 0

    def latest_path(self) -> Path | None:
        name = self._latest_name()
        return self._dir / name if name else None

    def load_latest(self) -> QAReport | None:
        path = self.latest_path()
        if path is None:
            return None
        return load_report(path)

    def scratch_path(self) -> Path:
        """Where an external QA runner writes its raw report before reconciliation."""
        return self._dir / ".pending.json"

    def _latest_name(self) -> str | None:
        if not self.pointer.exists():
            return None
        name = self.pointer.read_text("utf-8").strip()
        return name or None

    def _max_index(self) -> int:
        indices = [
            int(match.group(1))
            for entry in self._dir.iterdir()
            if (match := _REPORT_NAME.match(entry.name))
        ]
        return max(indices, default=0)
