"""Queue worker that leases match tasks and runs them on a bounded pool."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import timedelta
from enum import Enum
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError

from ipa_check.matching.errors import IntegrityFailure, MatchError, TaskNotFoundError
from ipa_check.matching.file_gate import FileGate
from ipa_check.matching.models import (
    ArtifactSpec,
    FailureClass,
    Lease,
    MatchTaskView,
    TaskOutcome,
    TaskStatus,
)
from ipa_check.matching.repository import TaskRepository
from ipa_check.matching.result_reader import ResultReader
from ipa_check.matching.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

_STORE_ERRORS = (SQLAlchemyError, OSError)


class HandlerStage(str, Enum):
    """Progress of one leased task inside its handler."""

    LEASED = "leased"
    GATING = "gating"
    EXECUTING = "executing"
    READING = "reading"
    FINALIZED = "finalized"


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    dispatched: int = 0
    completed: int = 0
    failed: int = 0
    reclaimed: int = 0
    idle_polls: int = 0
    poll_errors: int = 0
    peak_active: int = 0


@dataclass(slots=True)
class _ActiveTask:
    lease: Lease | None
    stage: HandlerStage = HandlerStage.LEASED


class MatchWorker:
    """Leases pending tasks and runs gate -> tool -> result for each.

    The caller's thread runs the poll loop; handlers run on a private thread
    pool of ``max_concurrent`` threads. The active-task registry and the
    process registry (inside ``supervisor``) belong to this instance only.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        file_gate: FileGate,
        supervisor: ProcessSupervisor,
        result_reader: ResultReader,
        worker_id: str,
        worker_address: str,
        local_storage: Path,
        tool_argv: Sequence[str],
        max_concurrent: int = 2,
        poll_interval_seconds: float = 5.0,
        error_backoff_seconds: float = 10.0,
        lease_duration_seconds: float = 1_800,
        reclaim_interval_seconds: float = 60.0,
        graceful_shutdown_seconds: float = 30.0,
        artifact_max_wait_seconds: float = 300.0,
        artifact_poll_seconds: float = 2.0,
        tool_timeout_seconds: float = 600.0,
    ) -> None:
        if max_concurrent <= 0:
            raise ValueError("max_concurrent must be > 0")
        self.repository = repository
        self.file_gate = file_gate
        self.supervisor = supervisor
        self.result_reader = result_reader
        self.worker_id = worker_id
        self.worker_address = worker_address
        self.local_storage = local_storage
        self.tool_argv = tuple(tool_argv)
        self.max_concurrent = max_concurrent
        self.poll_interval_seconds = poll_interval_seconds
        self.error_backoff_seconds = error_backoff_seconds
        self.lease_duration = timedelta(seconds=lease_duration_seconds)
        self.reclaim_interval_seconds = reclaim_interval_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.artifact_max_wait_seconds = artifact_max_wait_seconds
        self.artifact_poll_seconds = artifact_poll_seconds
        self.tool_timeout_seconds = tool_timeout_seconds

        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent,
            thread_name_prefix=f"match-{worker_id}",
        )
        self._condition = threading.Condition()
        self._active: dict[str, _ActiveTask] = {}
        self._summary = WorkerRunSummary()
        self._stop = threading.Event()
        self._stop_signal_name: str | None = None
        self._shutdown_started = False
        self._last_reclaim_at: float | None = None

    @property
    def active_count(self) -> int:
        with self._condition:
            return len(self._active)

    def active_stages(self) -> dict[str, HandlerStage]:
        with self._condition:
            return {task_id: active.stage for task_id, active in self._active.items()}

    def summary(self) -> WorkerRunSummary:
        with self._condition:
            return replace(self._summary)

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def request_stop(self, *, signal_name: str | None = None) -> None:
        """Stop leasing new tasks; safe to call from signal handlers."""

        self._stop_signal_name = signal_name
        self._stop.set()

    def run_once(self, *, limit: int | None = None) -> int:
        """One poll cycle: reclaim when due, then lease while slots are free."""

        if self._stop.is_set():
            return 0
        self._reclaim_if_due()

        dispatched = 0
        while not self._stop.is_set() and self.active_count < self.max_concurrent:
            if limit is not None and dispatched >= limit:
                break
            task = self.repository.lease_next(
                worker_id=self.worker_id,
                worker_address=self.worker_address,
                lease_duration=self.lease_duration,
            )
            if task is None:
                break
            self._dispatch(task)
            dispatched += 1
        return dispatched

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Run until stopped, ``max_tasks`` dispatched, or the queue stays idle.

        Args:
            max_tasks: Stop leasing after this many tasks (None = unlimited).
            max_idle_polls: Exit after this many consecutive cycles with an
                empty queue and no running handlers (None = never).
        """

        consecutive_idle = 0
        logger.info(
            "Worker %s started on %s (max_concurrent=%d)",
            self.worker_id,
            self.worker_address,
            self.max_concurrent,
        )
        with self._signal_handlers():
            try:
                while not self._stop.is_set():
                    remaining = None
                    if max_tasks is not None:
                        remaining = max_tasks - self.summary().dispatched
                        if remaining <= 0:
                            break
                    try:
                        dispatched = self.run_once(limit=remaining)
                    except _STORE_ERRORS:
                        logger.exception(
                            "Poll cycle failed; retrying in %.1fs",
                            self.error_backoff_seconds,
                        )
                        with self._condition:
                            self._summary.poll_errors += 1
                        self._stop.wait(self.error_backoff_seconds)
                        continue

                    if dispatched == 0 and self.active_count == 0:
                        consecutive_idle += 1
                        with self._condition:
                            self._summary.idle_polls += 1
                        if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                            break
                    else:
                        consecutive_idle = 0
                    self._stop.wait(self.poll_interval_seconds)
            finally:
                if not self._stop.is_set():
                    self._wait_for_handlers()
                self.shutdown()
        return self.summary()

    def shutdown(self) -> None:
        """Stop leasing, kill running tools, wait for handlers, release the pool."""

        with self._condition:
            if self._shutdown_started:
                return
            self._shutdown_started = True
        self._stop.set()
        logger.info(
            "Worker %s shutting down (signal=%s, active=%d)",
            self.worker_id,
            self._stop_signal_name or "-",
            self.active_count,
        )
        self.supervisor.close(reason="worker shutdown")

        with self._condition:
            self._condition.wait_for(
                lambda: not self._active,
                timeout=self.graceful_shutdown_seconds,
            )
            stragglers = [(task_id, active.lease) for task_id, active in self._active.items()]
        for task_id, lease in stragglers:
            logger.warning("Force-failing task %s still running at shutdown", task_id)
            self._report(
                task_id,
                TaskOutcome.failed(
                    "Worker shut down before the task finished.",
                    FailureClass.WORKER_SHUTDOWN,
                ),
                lease=lease,
            )
        self._executor.shutdown(wait=False, cancel_futures=True)
        logger.info("Worker %s stopped", self.worker_id)

    def _dispatch(self, task: MatchTaskView) -> None:
        with self._condition:
            self._active[task.task_id] = _ActiveTask(lease=task.lease)
            self._summary.dispatched += 1
            self._summary.peak_active = max(self._summary.peak_active, len(self._active))
        logger.info("Leased task %s (lease until %s)", task.task_id, task.lease_expiry)
        try:
            self._executor.submit(self._handle, task)
        except RuntimeError:
            logger.warning("Pool closed before task %s could start", task.task_id)
            try:
                self._report(
                    task.task_id,
                    TaskOutcome.failed(
                        "Worker shut down before the task started.",
                        FailureClass.WORKER_SHUTDOWN,
                    ),
                    lease=task.lease,
                )
            finally:
                self._release(task.task_id)

    def _handle(self, task: MatchTaskView) -> None:
        try:
            try:
                outcome = self._process(task)
            except MatchError as error:
                logger.warning(
                    "Task %s failed (%s): %s",
                    task.task_id,
                    error.failure_class.value,
                    error,
                )
                outcome = TaskOutcome.failed(str(error), error.failure_class)
            except Exception as error:  # noqa: BLE001
                logger.exception("Unexpected error while handling task %s", task.task_id)
                outcome = TaskOutcome.failed(
                    f"Unexpected error: {type(error).__name__}: {error}",
                    FailureClass.UNEXPECTED_ERROR,
                )
            self._set_stage(task.task_id, HandlerStage.FINALIZED)
            self._report(task.task_id, outcome, lease=task.lease)
        finally:
            self._release(task.task_id)

    def _process(self, task: MatchTaskView) -> TaskOutcome:
        task_dir = (self.local_storage / task.task_id).resolve()
        task_dir.mkdir(parents=True, exist_ok=True)
        artifact_a = task_dir / _safe_artifact_name(task.artifact_a_name)
        artifact_b = task_dir / _safe_artifact_name(task.artifact_b_name)

        self._set_stage(task.task_id, HandlerStage.GATING)
        self.file_gate.wait_until_ready(
            [
                ArtifactSpec(path=artifact_a, expected_hash=task.artifact_a_hash),
                ArtifactSpec(path=artifact_b, expected_hash=task.artifact_b_hash),
            ],
            max_wait=self.artifact_max_wait_seconds,
            poll_interval=self.artifact_poll_seconds,
            task_id=task.task_id,
        )

        self._set_stage(task.task_id, HandlerStage.EXECUTING)
        # A retried or reclaimed task must not pick up an earlier attempt's score.
        self.result_reader.result_path(task.task_id).unlink(missing_ok=True)
        self.supervisor.run(
            task.task_id,
            [*self.tool_argv, task.task_id, str(artifact_a), str(artifact_b)],
            task_dir,
            self.tool_timeout_seconds,
        )

        self._set_stage(task.task_id, HandlerStage.READING)
        result = self.result_reader.read(task.task_id)
        logger.info(
            "Task %s completed with similarity score %.4f",
            task.task_id,
            result.similarity_score,
        )
        return TaskOutcome.completed(result.similarity_score)

    def _report(self, task_id: str, outcome: TaskOutcome, *, lease: Lease | None) -> None:
        try:
            applied = self.repository.finalize(task_id, outcome, lease=lease)
        except (*_STORE_ERRORS, TaskNotFoundError):
            logger.exception(
                "Could not record %s for task %s; lease expiry will requeue it",
                outcome.status.value,
                task_id,
            )
            return
        if not applied:
            logger.warning("Outcome for task %s dropped: lease no longer held", task_id)
            return
        with self._condition:
            if outcome.status == TaskStatus.COMPLETED:
                self._summary.completed += 1
            else:
                self._summary.failed += 1

    def _release(self, task_id: str) -> None:
        with self._condition:
            self._active.pop(task_id, None)
            self._condition.notify_all()

    def _set_stage(self, task_id: str, stage: HandlerStage) -> None:
        with self._condition:
            active = self._active.get(task_id)
            if active is not None:
                active.stage = stage
        logger.debug("Task %s -> %s", task_id, stage.value)

    def _reclaim_if_due(self) -> None:
        now = time.monotonic()
        if (
            self._last_reclaim_at is not None
            and now - self._last_reclaim_at < self.reclaim_interval_seconds
        ):
            return
        self._last_reclaim_at = now
        reclaimed = self.repository.reclaim_expired()
        if reclaimed:
            with self._condition:
                self._summary.reclaimed += reclaimed

    def _wait_for_handlers(self) -> None:
        while True:
            with self._condition:
                if self._condition.wait_for(
                    lambda: not self._active or self._stop.is_set(),
                    timeout=0.2,
                ):
                    return

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _safe_artifact_name(name: str) -> str:
    if not name or name in {".", ".."} or Path(name).name != name or "\\" in name:
        raise IntegrityFailure(f"Unsafe artifact name: {name!r}")
    return name
