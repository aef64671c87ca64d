"""Error taxonomy for task handling."""

from __future__ import annotations

from ipa_check.matching.models import FailureClass


class MatchError(RuntimeError):
    """Fatal task-handling error that finalizes the task as failed."""

    failure_class = FailureClass.UNEXPECTED_ERROR


class TransientUnavailable(MatchError):
    """Artifact not present yet; retried inside the gate wait loop."""

    failure_class = FailureClass.TRANSIENT_UNAVAILABLE


class IntegrityFailure(MatchError):
    """Artifact content does not match its expected hash."""

    failure_class = FailureClass.INTEGRITY_FAILURE


class ProcessFailure(MatchError):
    """External tool failed to start, exited non-zero, or was terminated."""

    failure_class = FailureClass.PROCESS_FAILURE

    def __init__(self, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class ProcessTerminated(ProcessFailure):
    """External tool was killed because its worker is shutting down."""

    failure_class = FailureClass.WORKER_SHUTDOWN


class TimeoutFailure(MatchError):
    """A wall-clock budget was exceeded."""

    failure_class = FailureClass.TIMEOUT_FAILURE


class MalformedResult(MatchError):
    """Result artifact is unreadable or has the wrong shape."""

    failure_class = FailureClass.MALFORMED_RESULT


class ResultNotFound(MalformedResult):
    """Result artifact was not written."""


class TaskNotFoundError(LookupError):
    """Task id is unknown to the repository."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id
