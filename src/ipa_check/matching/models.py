"""Domain models for the match task queue and worker."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {TaskStatus.COMPLETED, TaskStatus.FAILED}


class FailureClass(str, Enum):
    """Normalized failure classes recorded on failed tasks."""

    TRANSIENT_UNAVAILABLE = "transient_unavailable"
    INTEGRITY_FAILURE = "integrity_failure"
    PROCESS_FAILURE = "process_failure"
    TIMEOUT_FAILURE = "timeout_failure"
    MALFORMED_RESULT = "malformed_result"
    WORKER_SHUTDOWN = "worker_shutdown"
    UNEXPECTED_ERROR = "unexpected_error"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for enqueuing a match task."""

    artifact_a_name: str
    artifact_b_name: str
    artifact_a_hash: str | None = None
    artifact_b_hash: str | None = None
    task_id: str | None = None


@dataclass(frozen=True, slots=True)
class Lease:
    """Exclusive, time-bounded claim of one worker on one task."""

    worker_id: str
    worker_address: str
    lease_expiry: datetime


@dataclass(slots=True)
class MatchTaskView:
    """Readable task view for CLI and worker logic."""

    task_id: str
    artifact_a_name: str
    artifact_a_hash: str | None
    artifact_b_name: str
    artifact_b_hash: str | None
    status: TaskStatus
    similarity_score: float | None
    error_message: str | None
    failure_class: FailureClass | None
    worker_id: str | None
    worker_address: str | None
    lease_expiry: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def lease(self) -> Lease | None:
        if self.worker_id is None or self.worker_address is None or self.lease_expiry is None:
            return None
        return Lease(
            worker_id=self.worker_id,
            worker_address=self.worker_address,
            lease_expiry=self.lease_expiry,
        )


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: MatchTaskView
    events: list[TaskEventView]


@dataclass(frozen=True, slots=True)
class TaskOutcome:
    """Terminal outcome reported by a task handler."""

    status: TaskStatus
    similarity_score: float | None = None
    error_message: str | None = None
    failure_class: FailureClass | None = None

    @classmethod
    def completed(cls, similarity_score: float) -> TaskOutcome:
        return cls(status=TaskStatus.COMPLETED, similarity_score=similarity_score)

    @classmethod
    def failed(cls, error_message: str, failure_class: FailureClass) -> TaskOutcome:
        return cls(
            status=TaskStatus.FAILED,
            error_message=error_message,
            failure_class=failure_class,
        )

    def __post_init__(self) -> None:
        if self.status == TaskStatus.COMPLETED and self.similarity_score is None:
            raise ValueError("Completed outcome requires similarity_score.")
        if self.status == TaskStatus.FAILED and not self.error_message:
            raise ValueError("Failed outcome requires error_message.")
        if not self.status.is_terminal:
            raise ValueError(f"Outcome status must be terminal, got {self.status.value}.")


@dataclass(slots=True)
class TaskStats:
    """Queue counters taken from one snapshot."""

    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0


@dataclass(slots=True)
class TaskPage:
    """One page of tasks, newest first."""

    tasks: list[MatchTaskView]
    total: int
    limit: int
    offset: int


@dataclass(frozen=True, slots=True)
class ArtifactSpec:
    """Local artifact path with optional expected SHA-256 digest."""

    path: Path
    expected_hash: str | None = None


@dataclass(slots=True)
class MatchResult:
    """Typed similarity result read from the tool output."""

    similarity_score: float
    details: dict[str, Any] | None = None
