"""Error taxonomy for the QA workflow.

Every error carries the originating component and an optional cause so a
log record can be rebuilt into a postmortem without re-running the cycle.
"""

from __future__ import annotations

from typing import Any


class QAWorkflowError(Exception):
    """Base class for all workflow errors."""

    exit_code = 1

    def __init__(self, message: str, component: str = "", cause: BaseException | None = None):
        self.message = message
        self.component = component
        self.cause = cause
        super().__init__(message)

    def to_record(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "component": self.component,
            "cause": repr(self.cause) if self.cause is not None else None,
        }


class ConfigurationError(QAWorkflowError):
    """A provider credential or setting is missing."""

    exit_code = 2


class PreconditionError(QAWorkflowError):
    """An operation was requested before its inputs exist."""

    exit_code = 2


class ProviderError(QAWorkflowError):
    """Network or service failure talking to an external provider."""

    exit_code = 4


class ResponseParseError(ProviderError):
    """A provider response did not deserialize into the expected shape."""

    exit_code = 3


class ArchiveNotFoundError(QAWorkflowError):
    """A cycle's payload can no longer be retrieved."""


class WorkflowAborted(QAWorkflowError):
    """The user asked the running workflow to stop."""
