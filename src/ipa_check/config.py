"""Runtime configuration for the match worker."""

from __future__ import annotations

import os
import shlex
import socket
from dataclasses import dataclass, field
from pathlib import Path

from ipa_check.matching.supervisor import KILL_GRACE_SECONDS, READER_JOIN_SECONDS

# Final hash pass, result read and finalize after the tool exits.
LEASE_SLACK_SECONDS = 30.0
# SIGTERM then SIGKILL waits, and two rounds of stream reader joins.
_TERMINATION_SECONDS = KILL_GRACE_SECONDS * 2 + READER_JOIN_SECONDS * 2


def _default_tool_command() -> str:
    return "tool.exe" if os.name == "nt" else "tool"


@dataclass(slots=True)
class WorkerSettings:
    """Identity, concurrency and lease policy of one worker process."""

    worker_id: str = "worker-local"
    worker_address: str = "127.0.0.1"
    max_concurrent: int = 2
    poll_interval_seconds: float = 5.0
    error_backoff_seconds: float = 10.0
    lease_duration_seconds: int = 1_800
    reclaim_interval_seconds: float = 60.0
    graceful_shutdown_seconds: float = 30.0


@dataclass(slots=True)
class ArtifactSettings:
    """Where artifacts land locally and how long to wait for them."""

    local_storage: Path = Path("./worker_storage")
    max_wait_seconds: float = 300.0
    poll_interval_seconds: float = 2.0
    request_url: str | None = None
    request_timeout_seconds: float = 10.0


@dataclass(slots=True)
class ToolSettings:
    """External analysis tool invocation."""

    command: str = field(default_factory=_default_tool_command)
    timeout_seconds: float = 600.0
    result_base: Path = Path(".")

    def argv_prefix(self) -> list[str]:
        return shlex.split(self.command, posix=os.name != "nt")


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".ipa_check.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    artifacts: ArtifactSettings = field(default_factory=ArtifactSettings)
    tool: ToolSettings = field(default_factory=ToolSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("IPA_CHECK_DB_PATH", ".ipa_check.db")),
            sqlite_busy_timeout_ms=int(os.getenv("IPA_CHECK_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("IPA_CHECK_LOG_LEVEL", "INFO").strip().upper(),
            worker=WorkerSettings(
                worker_id=os.getenv("IPA_CHECK_WORKER_ID", "").strip()
                or f"worker-{socket.gethostname()}",
                worker_address=os.getenv("IPA_CHECK_WORKER_ADDRESS", "").strip()
                or _detect_local_address(),
                max_concurrent=int(os.getenv("IPA_CHECK_MAX_CONCURRENT_TASKS", "2")),
                poll_interval_seconds=float(os.getenv("IPA_CHECK_POLL_INTERVAL_SECONDS", "5.0")),
                error_backoff_seconds=float(os.getenv("IPA_CHECK_ERROR_BACKOFF_SECONDS", "10.0")),
                lease_duration_seconds=int(os.getenv("IPA_CHECK_LEASE_DURATION_SECONDS", "1800")),
                reclaim_interval_seconds=float(
                    os.getenv("IPA_CHECK_RECLAIM_INTERVAL_SECONDS", "60"),
                ),
                graceful_shutdown_seconds=float(
                    os.getenv("IPA_CHECK_GRACEFUL_SHUTDOWN_SECONDS", "30"),
                ),
            ),
            artifacts=ArtifactSettings(
                local_storage=Path(os.getenv("IPA_CHECK_LOCAL_STORAGE", "./worker_storage")),
                max_wait_seconds=float(os.getenv("IPA_CHECK_ARTIFACT_MAX_WAIT_SECONDS", "300")),
                poll_interval_seconds=float(os.getenv("IPA_CHECK_ARTIFACT_POLL_SECONDS", "2.0")),
                request_url=os.getenv("IPA_CHECK_ARTIFACT_REQUEST_URL", "").strip() or None,
                request_timeout_seconds=float(
                    os.getenv("IPA_CHECK_ARTIFACT_REQUEST_TIMEOUT_SECONDS", "10.0"),
                ),
            ),
            tool=ToolSettings(
                command=os.getenv("IPA_CHECK_TOOL_COMMAND", "").strip() or _default_tool_command(),
                timeout_seconds=float(os.getenv("IPA_CHECK_TOOL_TIMEOUT_SECONDS", "600")),
                result_base=Path(os.getenv("IPA_CHECK_RESULT_BASE", ".")),
            ),
        )

    def handler_budget_seconds(self) -> float:
        """Longest a single handler can hold its lease."""

        return (
            self.artifacts.max_wait_seconds
            + self.tool.timeout_seconds
            + _TERMINATION_SECONDS
            + LEASE_SLACK_SECONDS
        )

    def validate_for_worker(self) -> None:
        """Raise configuration error if the worker cannot run safely."""

        worker = self.worker
        if not worker.worker_id.strip():
            raise ValueError("IPA_CHECK_WORKER_ID must not be empty.")
        if worker.max_concurrent <= 0:
            raise ValueError("IPA_CHECK_MAX_CONCURRENT_TASKS must be > 0.")
        if worker.poll_interval_seconds < 0:
            raise ValueError("IPA_CHECK_POLL_INTERVAL_SECONDS must be >= 0.")
        if worker.error_backoff_seconds < 0:
            raise ValueError("IPA_CHECK_ERROR_BACKOFF_SECONDS must be >= 0.")
        if worker.reclaim_interval_seconds < 0:
            raise ValueError("IPA_CHECK_RECLAIM_INTERVAL_SECONDS must be >= 0.")
        if worker.graceful_shutdown_seconds < 0:
            raise ValueError("IPA_CHECK_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.tool.timeout_seconds <= 0:
            raise ValueError("IPA_CHECK_TOOL_TIMEOUT_SECONDS must be > 0.")
        if self.artifacts.max_wait_seconds < 0:
            raise ValueError("IPA_CHECK_ARTIFACT_MAX_WAIT_SECONDS must be >= 0.")
        if self.artifacts.poll_interval_seconds <= 0:
            raise ValueError("IPA_CHECK_ARTIFACT_POLL_SECONDS must be > 0.")
        if not self.tool.argv_prefix():
            raise ValueError("IPA_CHECK_TOOL_COMMAND must not be empty.")

        handler_budget = self.handler_budget_seconds()
        if worker.lease_duration_seconds <= handler_budget:
            raise ValueError(
                "IPA_CHECK_LEASE_DURATION_SECONDS must exceed "
                "IPA_CHECK_ARTIFACT_MAX_WAIT_SECONDS + IPA_CHECK_TOOL_TIMEOUT_SECONDS "
                f"plus {LEASE_SLACK_SECONDS + _TERMINATION_SECONDS:g}s of termination and slack "
                f"({worker.lease_duration_seconds} <= {handler_budget:g}).",
            )


def _detect_local_address() -> str:
    """First non-loopback IPv4 address of this host, or loopback."""

    try:
        infos = socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET)
    except OSError:
        return "127.0.0.1"
    for info in infos:
        address = str(info[4][0])
        if not address.startswith("127."):
            return address
    return "127.0.0.1"
