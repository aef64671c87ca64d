from __future__ import annotations

import hashlib
import sys
import threading
import time
from datetime import timedelta
from pathlib import Path

import allure
import pytest
from sqlalchemy.exc import OperationalError

from ipa_check.matching.file_gate import FileGate
from ipa_check.matching.models import FailureClass, TaskCreate, TaskStatus
from ipa_check.matching.repository import TaskRepository
from ipa_check.matching.result_reader import ResultReader
from ipa_check.matching.supervisor import ProcessSupervisor
from ipa_check.matching.worker import MatchWorker

pytestmark = [
    allure.epic("Match Worker"),
    allure.feature("Task Lifecycle"),
]

STUB_TOOL_MODULE = "ipa_check.matching.stub_tool"


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _stage(
    repository: TaskRepository,
    storage: Path,
    task_id: str,
    *,
    write_files: bool = True,
    hash_a: str | None = None,
    artifact_a_name: str = "a.ipa",
) -> None:
    if write_files:
        task_dir = storage / task_id
        task_dir.mkdir(parents=True, exist_ok=True)
        (task_dir / "a.ipa").write_bytes(b"binary-a")
        (task_dir / "b.ipa").write_bytes(b"binary-b")
    repository.create_task(
        TaskCreate(
            task_id=task_id,
            artifact_a_name=artifact_a_name,
            artifact_b_name="b.ipa",
            artifact_a_hash=hash_a or _sha256(b"binary-a"),
            artifact_b_hash=_sha256(b"binary-b"),
        ),
    )


def _worker(  # noqa: PLR0913
    tmp_path: Path,
    repository: TaskRepository,
    *tool_args: str,
    max_concurrent: int = 2,
    tool_timeout: float = 30.0,
    artifact_max_wait: float = 2.0,
    graceful_shutdown: float = 10.0,
    result_reader: ResultReader | None = None,
) -> MatchWorker:
    result_base = tmp_path / "results"
    return MatchWorker(
        repository=repository,
        file_gate=FileGate(),
        supervisor=ProcessSupervisor(),
        result_reader=result_reader or ResultReader(result_base),
        worker_id="worker-test",
        worker_address="127.0.0.1",
        local_storage=tmp_path / "storage",
        tool_argv=[
            sys.executable,
            "-m",
            STUB_TOOL_MODULE,
            "--result-base",
            str(result_base),
            *tool_args,
        ],
        max_concurrent=max_concurrent,
        poll_interval_seconds=0.05,
        error_backoff_seconds=0.05,
        lease_duration_seconds=300,
        reclaim_interval_seconds=0.0,
        graceful_shutdown_seconds=graceful_shutdown,
        artifact_max_wait_seconds=artifact_max_wait,
        artifact_poll_seconds=0.05,
        tool_timeout_seconds=tool_timeout,
    )


def _task(repository: TaskRepository, task_id: str):
    task = repository.get_task(task_id)
    assert task is not None
    return task


def _wait_until(predicate, timeout: float = 15.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.02)


class _FlakyLeaseRepository(TaskRepository):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.failures_left = 1

    def lease_next(self, **kwargs):
        if self.failures_left:
            self.failures_left -= 1
            raise OperationalError("SELECT", {}, Exception("database is locked"))
        return super().lease_next(**kwargs)


class _BrokenFinalizeRepository(TaskRepository):
    def finalize(self, task_id, outcome, *, lease=None):
        raise OperationalError("UPDATE", {}, Exception("disk I/O error"))


class _ExplodingReader(ResultReader):
    def read(self, task_id: str):
        raise ZeroDivisionError("reader bug")


def test_worker_completes_task_end_to_end(tmp_path: Path, repository: TaskRepository) -> None:
    _stage(repository, tmp_path / "storage", "t-1")
    worker = _worker(tmp_path, repository)

    summary = worker.run_loop(max_idle_polls=1)

    task = _task(repository, "t-1")
    assert task.status == TaskStatus.COMPLETED
    assert task.similarity_score == pytest.approx(0.5)
    assert task.lease is None
    assert (summary.dispatched, summary.completed, summary.failed) == (1, 1, 0)
    assert worker.active_count == 0

    details = repository.get_task_details("t-1")
    assert details is not None
    assert [event.event_type for event in details.events] == ["created", "leased", "completed"]


def test_worker_never_exceeds_max_concurrent(tmp_path: Path, repository: TaskRepository) -> None:
    for index in range(5):
        _stage(repository, tmp_path / "storage", f"t-{index}")
    worker = _worker(tmp_path, repository, "--delay", "0.3", max_concurrent=2)

    observed: list[int] = []
    stop = threading.Event()
    observer = TaskRepository(repository.db_path)

    def _sample() -> None:
        while not stop.is_set():
            observed.append(observer.stats().processing)
            time.sleep(0.02)

    sampler = threading.Thread(target=_sample)
    sampler.start()
    try:
        summary = worker.run_loop(max_idle_polls=1)
    finally:
        stop.set()
        sampler.join(timeout=10)
        observer.close()

    assert summary.completed == 5
    assert summary.peak_active == 2
    assert max(observed) <= 2
    assert repository.stats().completed == 5


@pytest.mark.parametrize(
    ("tool_args", "failure_class", "message"),
    [
        (("--mode", "fail"), FailureClass.PROCESS_FAILURE, "exited with code 3"),
        (("--mode", "hang"), FailureClass.TIMEOUT_FAILURE, "exceeded"),
        (("--mode", "raw", "--sim", "x"), FailureClass.MALFORMED_RESULT, "not valid JSON"),
        (("--mode", "raw", "--sim", '{"sim": 7}'), FailureClass.MALFORMED_RESULT, "within"),
        (("--mode", "no-result"), FailureClass.MALFORMED_RESULT, "not found"),
    ],
)
def test_tool_failures_are_classified(
    tmp_path: Path,
    repository: TaskRepository,
    tool_args: tuple[str, ...],
    failure_class: FailureClass,
    message: str,
) -> None:
    _stage(repository, tmp_path / "storage", "t-1")
    tool_timeout = 1.0 if "hang" in tool_args else 30.0
    worker = _worker(tmp_path, repository, *tool_args, tool_timeout=tool_timeout)

    summary = worker.run_loop(max_idle_polls=1)

    task = _task(repository, "t-1")
    assert task.status == TaskStatus.FAILED
    assert task.failure_class == failure_class
    assert message in (task.error_message or "")
    assert task.similarity_score is None
    assert summary.failed == 1


def test_missing_artifacts_fail_with_timeout(tmp_path: Path, repository: TaskRepository) -> None:
    _stage(repository, tmp_path / "storage", "t-1", write_files=False)
    worker = _worker(tmp_path, repository, artifact_max_wait=0.2)

    worker.run_loop(max_idle_polls=1)

    task = _task(repository, "t-1")
    assert task.failure_class == FailureClass.TIMEOUT_FAILURE
    assert (tmp_path / "storage" / "t-1").is_dir()


def test_hash_mismatch_fails_with_integrity_failure(
    tmp_path: Path,
    repository: TaskRepository,
) -> None:
    _stage(repository, tmp_path / "storage", "t-1", hash_a=_sha256(b"something else"))
    worker = _worker(tmp_path, repository, artifact_max_wait=0.2)

    worker.run_loop(max_idle_polls=1)

    task = _task(repository, "t-1")
    assert task.failure_class == FailureClass.INTEGRITY_FAILURE
    assert "Hash mismatch" in (task.error_message or "")


def test_result_from_earlier_attempt_is_not_reused(
    tmp_path: Path,
    repository: TaskRepository,
) -> None:
    stale = tmp_path / "results" / "result" / "t-1" / "result.json"
    stale.parent.mkdir(parents=True)
    stale.write_text('{"sim": 0.99}', "utf-8")
    _stage(repository, tmp_path / "storage", "t-1")
    worker = _worker(tmp_path, repository, "--mode", "no-result")

    worker.run_loop(max_idle_polls=1)

    task = _task(repository, "t-1")
    assert task.status == TaskStatus.FAILED
    assert task.failure_class == FailureClass.MALFORMED_RESULT
    assert task.similarity_score is None
    assert not stale.exists()


def test_unsafe_artifact_name_is_rejected(tmp_path: Path, repository: TaskRepository) -> None:
    _stage(repository, tmp_path / "storage", "t-1", artifact_a_name="../escape.ipa")
    worker = _worker(tmp_path, repository)

    worker.run_loop(max_idle_polls=1)

    task = _task(repository, "t-1")
    assert task.failure_class == FailureClass.INTEGRITY_FAILURE
    assert "Unsafe artifact name" in (task.error_message or "")


def test_unexpected_handler_error_is_recorded(tmp_path: Path, repository: TaskRepository) -> None:
    _stage(repository, tmp_path / "storage", "t-1")
    worker = _worker(tmp_path, repository, result_reader=_ExplodingReader(tmp_path))

    summary = worker.run_loop(max_idle_polls=1)

    task = _task(repository, "t-1")
    assert task.failure_class == FailureClass.UNEXPECTED_ERROR
    assert "ZeroDivisionError" in (task.error_message or "")
    assert summary.failed == 1
    assert worker.active_count == 0


def test_poll_errors_are_backed_off_and_loop_continues(tmp_path: Path) -> None:
    repository = _FlakyLeaseRepository(tmp_path / "queue.db")
    repository.init_schema()
    _stage(repository, tmp_path / "storage", "t-1")
    worker = _worker(tmp_path, repository)

    summary = worker.run_loop(max_idle_polls=1)

    assert summary.poll_errors == 1
    assert summary.completed == 1
    assert _task(repository, "t-1").status == TaskStatus.COMPLETED
    repository.close()


def test_finalize_errors_leave_task_for_reclaim(tmp_path: Path) -> None:
    repository = _BrokenFinalizeRepository(tmp_path / "queue.db")
    repository.init_schema()
    _stage(repository, tmp_path / "storage", "t-1")
    worker = _worker(tmp_path, repository)

    summary = worker.run_loop(max_idle_polls=1)

    assert summary.dispatched == 1
    assert summary.completed == 0
    assert worker.active_count == 0
    assert _task(repository, "t-1").status == TaskStatus.PROCESSING
    repository.close()


def test_worker_reclaims_expired_lease_before_leasing(
    tmp_path: Path,
    repository: TaskRepository,
) -> None:
    _stage(repository, tmp_path / "storage", "t-1")
    abandoned = repository.lease_next(
        worker_id="worker-dead",
        worker_address="10.0.0.9",
        lease_duration=timedelta(seconds=-1),
    )
    assert abandoned is not None
    worker = _worker(tmp_path, repository)

    summary = worker.run_loop(max_idle_polls=1)

    assert summary.reclaimed == 1
    assert summary.completed == 1
    details = repository.get_task_details("t-1")
    assert details is not None
    assert [event.event_type for event in details.events] == [
        "created",
        "leased",
        "reclaimed",
        "leased",
        "completed",
    ]


def test_max_tasks_stops_leasing(tmp_path: Path, repository: TaskRepository) -> None:
    for index in range(3):
        _stage(repository, tmp_path / "storage", f"t-{index}")
    worker = _worker(tmp_path, repository, max_concurrent=3)

    summary = worker.run_loop(max_tasks=2)

    assert summary.dispatched == 2
    assert summary.completed == 2
    stats = repository.stats()
    assert (stats.pending, stats.completed) == (1, 2)


def test_shutdown_kills_running_tool_and_records_worker_shutdown(
    tmp_path: Path,
    repository: TaskRepository,
) -> None:
    _stage(repository, tmp_path / "storage", "t-1")
    worker = _worker(tmp_path, repository, "--mode", "hang", tool_timeout=60.0)
    summaries = []

    runner = threading.Thread(target=lambda: summaries.append(worker.run_loop()))
    runner.start()
    _wait_until(lambda: worker.supervisor.active_task_ids() == ["t-1"])

    worker.request_stop()
    runner.join(timeout=20)

    assert not runner.is_alive()
    task = _task(repository, "t-1")
    assert task.status == TaskStatus.FAILED
    assert task.failure_class == FailureClass.WORKER_SHUTDOWN
    assert summaries[0].failed == 1
    assert worker.active_count == 0


def test_shutdown_force_fails_handlers_past_grace_period(
    tmp_path: Path,
    repository: TaskRepository,
) -> None:
    _stage(repository, tmp_path / "storage", "t-1", write_files=False)
    worker = _worker(tmp_path, repository, artifact_max_wait=2.0, graceful_shutdown=0.1)

    assert worker.run_once() == 1
    _wait_until(lambda: worker.active_stages().get("t-1") is not None)
    worker.shutdown()
    worker.shutdown()

    task = _task(repository, "t-1")
    assert task.status == TaskStatus.FAILED
    assert task.failure_class == FailureClass.WORKER_SHUTDOWN
    assert worker.summary().failed == 1

    _wait_until(lambda: worker.active_count == 0, timeout=10)
    assert _task(repository, "t-1").failure_class == FailureClass.WORKER_SHUTDOWN
