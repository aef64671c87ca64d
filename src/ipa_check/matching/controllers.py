"""Controllers for match queue CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from ipa_check.config import Settings
from ipa_check.matching.artifact_request import ArtifactRequester
from ipa_check.matching.file_gate import FileGate, sha256_file
from ipa_check.matching.models import TaskCreate, TaskStatus
from ipa_check.matching.repository import TaskRepository
from ipa_check.matching.result_reader import ResultReader
from ipa_check.matching.supervisor import ProcessSupervisor
from ipa_check.matching.worker import MatchWorker


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int | None = None


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for task creation from two local files."""

    db_path: Path | None
    artifact_a: Path
    artifact_b: Path
    task_id: str | None = None
    with_hash: bool = True


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    limit: int
    offset: int = 0


@dataclass(slots=True)
class TaskInspectCommand:
    """CLI input for task inspection."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskMutateCommand:
    """CLI input for operator retry."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class StatsCommand:
    """CLI input for queue counters and reclaim sweeps."""

    db_path: Path | None


@dataclass(slots=True)
class CommandResult:
    """Lines to print plus whether the command did what was asked."""

    lines: list[str]
    success: bool = True


class MatchCliController:
    """Coordinates queue, worker, and inspection CLI operations."""

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_worker()
        requester = (
            ArtifactRequester(
                base_url=settings.artifacts.request_url,
                worker_address=settings.worker.worker_address,
                timeout_seconds=settings.artifacts.request_timeout_seconds,
            )
            if settings.artifacts.request_url
            else None
        )
        try:
            with _repository(settings) as repository:
                worker = build_worker(
                    settings=settings,
                    repository=repository,
                    requester=requester,
                )
                summary = worker.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=1 if command.once else command.max_idle_polls,
                )
        finally:
            if requester is not None:
                requester.close()

        return [
            "Worker summary: "
            f"dispatched={summary.dispatched} completed={summary.completed} "
            f"failed={summary.failed} reclaimed={summary.reclaimed} "
            f"idle_polls={summary.idle_polls} poll_errors={summary.poll_errors} "
            f"peak_active={summary.peak_active}",
        ]

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        """Register a task for two local files, as the upload side would."""

        settings = Settings.from_env(db_path=command.db_path)
        payload = TaskCreate(
            artifact_a_name=command.artifact_a.name,
            artifact_b_name=command.artifact_b.name,
            artifact_a_hash=sha256_file(command.artifact_a) if command.with_hash else None,
            artifact_b_hash=sha256_file(command.artifact_b) if command.with_hash else None,
            task_id=command.task_id,
        )
        with _repository(settings) as repository:
            task = repository.create_task(payload)
        return [
            f"Task created: task_id={task.task_id} status={task.status.value}",
            f"  A: {task.artifact_a_name} sha256={task.artifact_a_hash or '-'}",
            f"  B: {task.artifact_b_name} sha256={task.artifact_b_hash or '-'}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            page = repository.list_tasks(
                limit=command.limit,
                offset=command.offset,
                status=status_filter,
            )

        lines = [f"Tasks: {len(page.tasks)} of {page.total} (offset={page.offset})"]
        for task in page.tasks:
            score = f"{task.similarity_score:.4f}" if task.similarity_score is not None else "-"
            lines.append(
                f"  {task.task_id} status={task.status.value} score={score} "
                f"worker={task.worker_id or '-'} created_at={task.created_at.isoformat()}",
            )
        return lines

    def inspect_task(self, command: TaskInspectCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(task_id=command.task_id)
        if details is None:
            return CommandResult(lines=[f"Task not found: {command.task_id}"], success=False)

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Status: {task.status.value}",
            f"Artifact A: {task.artifact_a_name} sha256={task.artifact_a_hash or '-'}",
            f"Artifact B: {task.artifact_b_name} sha256={task.artifact_b_hash or '-'}",
            "Similarity score: "
            + (f"{task.similarity_score}" if task.similarity_score is not None else "-"),
            f"Failure class: {task.failure_class.value if task.failure_class else '-'}",
            f"Error: {task.error_message or '-'}",
            f"Worker: {task.worker_id or '-'} ({task.worker_address or '-'})",
            "Lease expiry: "
            + (task.lease_expiry.isoformat() if task.lease_expiry is not None else "-"),
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return CommandResult(lines=lines)

    def stats(self, command: StatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            stats = repository.stats()
        return [
            f"Tasks: total={stats.total}",
            f"  pending={stats.pending} processing={stats.processing}",
            f"  completed={stats.completed} failed={stats.failed}",
        ]

    def retry_task(self, command: TaskMutateCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            applied = repository.retry(command.task_id)
        if applied:
            return CommandResult(lines=[f"Task re-queued: {command.task_id}"])
        return CommandResult(
            lines=[f"Retry not applied: {command.task_id} is unknown or not failed"],
            success=False,
        )

    def reclaim(self, command: StatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            reclaimed = repository.reclaim_expired()
        return [f"Reclaimed expired leases: {reclaimed}"]


def build_worker(
    *,
    settings: Settings,
    repository: TaskRepository,
    requester: ArtifactRequester | None = None,
) -> MatchWorker:
    """Wire a worker and its collaborators from settings."""

    worker_settings = settings.worker
    return MatchWorker(
        repository=repository,
        file_gate=FileGate(requester=requester),
        supervisor=ProcessSupervisor(),
        result_reader=ResultReader(settings.tool.result_base.resolve()),
        worker_id=worker_settings.worker_id,
        worker_address=worker_settings.worker_address,
        local_storage=settings.artifacts.local_storage.resolve(),
        tool_argv=settings.tool.argv_prefix(),
        max_concurrent=worker_settings.max_concurrent,
        poll_interval_seconds=worker_settings.poll_interval_seconds,
        error_backoff_seconds=worker_settings.error_backoff_seconds,
        lease_duration_seconds=worker_settings.lease_duration_seconds,
        reclaim_interval_seconds=worker_settings.reclaim_interval_seconds,
        graceful_shutdown_seconds=worker_settings.graceful_shutdown_seconds,
        artifact_max_wait_seconds=settings.artifacts.max_wait_seconds,
        artifact_poll_seconds=settings.artifacts.poll_interval_seconds,
        tool_timeout_seconds=settings.tool.timeout_seconds,
    )


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = TaskRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
