"""Idempotent initialization of the coordination root with template files.

Run directly: python -m convoy.infra.init_workspace
Or via the CLI: convoy init
"""

from __future__ import annotations

import structlog

from convoy.config.settings import get_settings
from convoy.infra.layout import ProjectLayout
from convoy.infra.logging import setup_logging

logger = structlog.get_logger()

TEMPLATES: dict[str, str] = {
    ".features": """\
# Feature registry, one name per line, in merge order.
""",
    "STANDARDS.md": """\
# Project Quality Standards

This document defines quality standards the QA agent will verify.
Each standard is a `### <ID>: <Name>` heading followed by its narrative.

### STD-T001: Tests Pass

As a developer, all project tests should pass before merging.

### STD-S001: No Hardcoded Secrets

As a developer, no API keys or passwords should be in source code.
""",
    "ownership.json": "{}\n",
}


def init_workspace(layout: ProjectLayout) -> None:
    """Create coordination directories and template files. Existing files are not overwritten."""
    for directory in (
        layout.root,
        layout.cursors_dir,
        layout.status_dir,
        layout.qa_reports_dir,
        layout.fix_tasks_dir,
    ):
        directory.mkdir(parents=True, exist_ok=True)
    layout.mailbox.touch(exist_ok=True)
    layout.events_file.touch(exist_ok=True)
    logger.info("coordination_dirs_ensured", root=str(layout.root))

    for filename, content in TEMPLATES.items():
        filepath = layout.root / filename
        if filepath.exists():
            logger.info("coordination_file_skipped", file=str(filepath))
        else:
            filepath.write_text(content, encoding="utf-8")
            logger.info("coordination_template_created", file=str(filepath))


if __name__ == "__main__":
    setup_logging(json_output=False)
    init_workspace(ProjectLayout.from_settings(get_settings()))
