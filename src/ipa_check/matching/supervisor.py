"""Supervised execution of the external analysis tool."""

from __future__ import annotations

import locale
import logging
import os
import signal
import subprocess
import threading
import time
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

from ipa_check.matching.errors import ProcessFailure, ProcessTerminated, TimeoutFailure

logger = logging.getLogger(__name__)

TAIL_LINES = 20
KILL_GRACE_SECONDS = 2.0
READER_JOIN_SECONDS = 2.0

_EXITED = "exited"
_TIMED_OUT = "timed_out"
_TERMINATED = "terminated"


class ProcessHandle:
    """Running tool process with a platform-specific ``terminate()``."""

    def __init__(self, process: subprocess.Popen[str]) -> None:
        self.process = process

    @property
    def pid(self) -> int:
        return self.process.pid

    def terminate(self) -> None:
        """Force-terminate the process together with everything it spawned."""

        raise NotImplementedError


class PosixProcessHandle(ProcessHandle):
    """Tool runs as a session leader, so its pid is also its process-group id."""

    def terminate(self) -> None:
        if not _signal_group(self.pid, signal.SIGTERM):
            return
        try:
            self.process.wait(timeout=KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            pass
        _signal_group(self.pid, signal.SIGKILL)
        try:
            self.process.wait(timeout=KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            logger.error("Process %d survived SIGKILL", self.pid)


class WindowsProcessHandle(ProcessHandle):
    def terminate(self) -> None:
        if self.process.poll() is not None:
            return
        subprocess.run(  # noqa: S603
            ["taskkill", "/T", "/F", "/PID", str(self.pid)],  # noqa: S607
            capture_output=True,
            check=False,
        )
        try:
            self.process.wait(timeout=KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            self.process.kill()
            self.process.wait(timeout=KILL_GRACE_SECONDS)


def _signal_group(pgid: int, signum: int) -> bool:
    try:
        os.killpg(pgid, signum)
    except ProcessLookupError:
        return False
    except PermissionError:
        logger.warning("Not permitted to signal process group %d", pgid)
        return False
    return True


def start_process(
    argv: Sequence[str],
    *,
    cwd: Path,
    encoding: str,
    os_name: str | None = None,
) -> ProcessHandle:
    """Spawn ``argv`` in its own process group with piped, decoded output."""

    current_os_name = os_name or os.name
    options: dict[str, object] = {}
    if current_os_name == "nt":
        options["creationflags"] = getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)
    else:
        options["start_new_session"] = True
    process = subprocess.Popen(  # noqa: S603
        list(argv),
        cwd=cwd,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding=encoding,
        errors="replace",
        **options,
    )
    if current_os_name == "nt":
        return WindowsProcessHandle(process)
    return PosixProcessHandle(process)


@dataclass(slots=True)
class ProcessRunResult:
    """Outcome of a successful tool invocation."""

    exit_code: int
    duration_seconds: float
    stdout_tail: list[str]
    stderr_tail: list[str]


@dataclass(slots=True)
class _Invocation:
    task_id: str
    handle: ProcessHandle
    outcome: str | None = None
    reason: str | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def claim(self, outcome: str, reason: str | None = None) -> bool:
        """First caller decides how this invocation resolves."""

        with self._lock:
            if self.outcome is not None:
                return False
            self.outcome = outcome
            self.reason = reason
            return True


class _StreamReader(threading.Thread):
    def __init__(self, *, task_id: str, name: str, stream: IO[str]) -> None:
        super().__init__(name=f"tool-{name}-{task_id[:8]}", daemon=True)
        self.task_id = task_id
        self.stream_name = name
        self.stream = stream
        self.tail: deque[str] = deque(maxlen=TAIL_LINES)

    def run(self) -> None:
        try:
            for line in iter(self.stream.readline, ""):
                text = line.rstrip("\r\n")
                self.tail.append(text)
                logger.debug("[%s %s] %s", self.task_id, self.stream_name, text)
        except (OSError, ValueError):
            logger.debug("Stream %s closed early for task %s", self.stream_name, self.task_id)
        finally:
            self.stream.close()


class ProcessSupervisor:
    """Runs the analysis tool under a hard timeout and tracks in-flight processes.

    The registry belongs to this instance; the worker that owns the supervisor
    uses ``close()`` to kill everything still running on shutdown.
    """

    def __init__(self, *, encoding: str | None = None, os_name: str | None = None) -> None:
        self.encoding = encoding or locale.getpreferredencoding(False)
        self.os_name = os_name
        self._in_flight: dict[str, _Invocation] = {}
        self._lock = threading.Lock()
        self._closed_reason: str | None = None

    def run(
        self,
        task_id: str,
        argv: Sequence[str],
        working_dir: Path,
        timeout: float,
    ) -> ProcessRunResult:
        """Run the tool to completion; raise on failure, timeout or termination."""

        if not argv:
            raise ProcessFailure("Analysis tool command is empty.")
        with self._lock:
            closed_reason = self._closed_reason
        if closed_reason is not None:
            raise ProcessTerminated(f"Analysis tool not started: {closed_reason}")

        logger.info("Running analysis tool for task %s: %s", task_id, " ".join(argv))
        started = time.monotonic()
        try:
            handle = start_process(
                argv,
                cwd=working_dir,
                encoding=self.encoding,
                os_name=self.os_name,
            )
        except OSError as error:
            raise ProcessFailure(f"Analysis tool failed to start ({argv[0]}): {error}") from error

        invocation = _Invocation(task_id=task_id, handle=handle)
        with self._lock:
            self._in_flight[task_id] = invocation
            closed_reason = self._closed_reason
        if closed_reason is not None and invocation.claim(_TERMINATED, closed_reason):
            handle.terminate()

        readers = [
            _StreamReader(task_id=task_id, name="stdout", stream=handle.process.stdout),
            _StreamReader(task_id=task_id, name="stderr", stream=handle.process.stderr),
        ]
        for reader in readers:
            reader.start()

        timer = threading.Timer(timeout, self._on_timeout, args=(invocation, timeout))
        timer.daemon = True
        timer.start()
        try:
            exit_code = handle.process.wait()
            invocation.claim(_EXITED)
        finally:
            timer.cancel()
            with self._lock:
                self._in_flight.pop(task_id, None)

        self._drain(handle=handle, readers=readers)
        duration = time.monotonic() - started
        stdout_reader, stderr_reader = readers

        if invocation.outcome == _TIMED_OUT:
            raise TimeoutFailure(
                f"Analysis tool exceeded {timeout:g}s for task {task_id} and was terminated.",
            )
        if invocation.outcome == _TERMINATED:
            raise ProcessTerminated(
                f"Analysis tool terminated: {invocation.reason}",
                exit_code=exit_code,
            )
        if exit_code != 0:
            stderr_text = " | ".join(stderr_reader.tail) or "<no stderr>"
            raise ProcessFailure(
                f"Analysis tool exited with code {exit_code}: {stderr_text}",
                exit_code=exit_code,
            )

        logger.info("Analysis tool finished for task %s in %.1fs", task_id, duration)
        return ProcessRunResult(
            exit_code=exit_code,
            duration_seconds=duration,
            stdout_tail=list(stdout_reader.tail),
            stderr_tail=list(stderr_reader.tail),
        )

    def terminate_all(self, reason: str) -> int:
        """Force-terminate every in-flight tool process; return how many were hit."""

        with self._lock:
            invocations = list(self._in_flight.values())
        terminated = 0
        for invocation in invocations:
            if not invocation.claim(_TERMINATED, reason):
                continue
            logger.warning(
                "Terminating analysis tool for task %s (pid %d): %s",
                invocation.task_id,
                invocation.handle.pid,
                reason,
            )
            invocation.handle.terminate()
            terminated += 1
        return terminated

    def close(self, reason: str = "worker shutdown") -> int:
        """Refuse new runs and terminate the ones in flight."""

        with self._lock:
            self._closed_reason = reason
        return self.terminate_all(reason)

    def active_task_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._in_flight)

    def _on_timeout(self, invocation: _Invocation, timeout: float) -> None:
        if not invocation.claim(_TIMED_OUT):
            return
        logger.warning(
            "Analysis tool for task %s exceeded %gs; terminating pid %d",
            invocation.task_id,
            timeout,
            invocation.handle.pid,
        )
        invocation.handle.terminate()

    def _drain(self, *, handle: ProcessHandle, readers: list[_StreamReader]) -> None:
        for reader in readers:
            reader.join(timeout=READER_JOIN_SECONDS)
        if any(reader.is_alive() for reader in readers):
            # Leftover children still hold the pipes open.
            logger.warning("Cleaning up lingering children of pid %d", handle.pid)
            handle.terminate()
            for reader in readers:
                reader.join(timeout=READER_JOIN_SECONDS)
