"""Custom exception hierarchy for convoy.

All application-specific exceptions inherit from ConvoyError,
which carries an error code for CLI and gateway error mapping.
"""

from __future__ import annotations


class ConvoyError(Exception):
    """Base exception for all convoy errors."""

    def __init__(self, message: str, *, code: str = "INTERNAL_ERROR") -> None:
        super().__init__(message)
        self.code = code


class ConfigurationError(ConvoyError):
    """Invalid or incomplete project configuration (no features, bad paths)."""

    def __init__(self, message: str, *, code: str = "CONFIG_ERROR") -> None:
        super().__init__(message, code=code)


class BusError(ConvoyError):
    """Errors in the shared message log."""

    def __init__(self, message: str, *, code: str = "BUS_ERROR") -> None:
        super().__init__(message, code=code)


class MalformedMessageError(BusError):
    """A mailbox record is missing required headers. Readers skip these."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="MALFORMED_MESSAGE")


class StatusError(ConvoyError):
    """Errors in the per-agent status logs."""

    def __init__(self, message: str, *, code: str = "STATUS_ERROR") -> None:
        super().__init__(message, code=code)


class InvalidTransitionError(StatusError):
    """A status entry would break the lifecycle ordering of an agent."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="INVALID_TRANSITION")


class ScaffoldFailure(ConvoyError):
    """The unmodified trunk does not build. Fatal, never retried."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="SCAFFOLD_FAILED")


class MergeConflictError(ConvoyError):
    """Merging a feature branch into the trunk conflicted."""

    def __init__(self, message: str, *, feature: str, files: tuple[str, ...] = ()) -> None:
        super().__init__(message, code="MERGE_CONFLICT")
        self.feature = feature
        self.files = files


class BuildVerificationFailure(ConvoyError):
    """The merged trunk failed to build or crashed during smoke start."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="BUILD_FAILED")


class QAReportError(ConvoyError):
    """A QA report could not be read, validated or written."""

    def __init__(self, message: str, *, code: str = "QA_REPORT_ERROR") -> None:
        super().__init__(message, code=code)


class PRCreationError(ConvoyError):
    """Pull request creation failed after its preconditions held."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="PR_FAILED")


class CommandError(ConvoyError):
    """An external command could not be started or returned a failure."""

    def __init__(self, message: str, *, returncode: int | None = None) -> None:
        super().__init__(message, code="COMMAND_FAILED")
        self.returncode = returncode


class GatewayError(ConvoyError):
    """Errors raised by the HTTP gateway (unknown message, bad request)."""

    def __init__(self, message: str, *, code: str = "GATEWAY_ERROR") -> None:
        super().__init__(message, code=code)
