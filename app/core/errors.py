"""Typed errors raised by the job pipeline.

Every error carries a short *classification* (one of the ``CLASS_*``
constants) and a free-form *details* string.  The job queue turns any of
these into a failed job whose ``error`` field is ``str(exc)``; HTTP handlers
render them as ``{"error": classification, "details": details}``.
"""

from __future__ import annotations

CLASS_CONFIGURATION = "configuration"
CLASS_GIT_STATE = "git_state"
CLASS_EXTERNAL_PROCESS = "external_process"
CLASS_POST_EXECUTION = "post_execution"
CLASS_INTERNAL = "internal"


class CodedeskError(Exception):
    """Base class for pipeline failures."""

    classification = CLASS_INTERNAL

    def __init__(self, message: str, details: str = "", classification: str | None = None) -> None:
        super().__init__(message)
        self.details = details or message
        if classification is not None:
            self.classification = classification

    def to_dict(self) -> dict[str, str]:
        return {"error": self.classification, "details": self.details}


class WorkflowError(CodedeskError):
    """Branch preparation or restore failed."""

    classification = CLASS_GIT_STATE


class ExecutorError(CodedeskError):
    """The Claude Code process could not be run or exited non-zero."""

    classification = CLASS_EXTERNAL_PROCESS

    def __init__(
        self,
        message: str,
        details: str = "",
        classification: str | None = None,
        exit_code: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message, details, classification)
        self.exit_code = exit_code
        self.stderr = stderr


class ExecutorTimeoutError(ExecutorError):
    """The Claude Code process went quiet for longer than the inactivity ceiling."""

    def __init__(self, idle_seconds: float, ceiling: float) -> None:
        super().__init__(
            f"Claude Code process timed out due to inactivity ({idle_seconds:.0f}s)",
            details=f"no output for {idle_seconds:.1f}s (limit {ceiling:.0f}s)",
        )
        self.idle_seconds = idle_seconds
        self.ceiling = ceiling


class PostExecutionError(CodedeskError):
    """Commit or push after a Claude Code run failed."""

    classification = CLASS_POST_EXECUTION


class JobError(CodedeskError):
    """A job payload is invalid or refers to something that does not exist."""

    classification = CLASS_CONFIGURATION


def classify(exc: BaseException) -> str:
    """Return the classification for any exception."""
    if isinstance(exc, CodedeskError):
        return exc.classification
    return CLASS_INTERNAL
