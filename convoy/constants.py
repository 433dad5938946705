from __future__ import annotations

SUPERVISOR = "supervisor"
QA_AGENT = "qa"
UNKNOWN_OWNER = "unknown"  # human triage inbox for unrouteable failures
BROADCAST = "all"

MESSAGE_DELIMITER = "--- MESSAGE ---"
MESSAGE_HEADERS = ("timestamp", "from", "to")

FEATURE_BRANCH_PREFIX = "feature/"
WORKTREE_PREFIX = "feature-"

BUILD_STANDARD_ID = "BUILD"
UNSPECIFIED_STANDARD_ID = "QA_UNSPECIFIED"
MISSING_REPORT_STANDARD_ID = "QA_REPORT_MISSING"

DEFAULT_MAX_CYCLES = 3
