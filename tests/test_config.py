from __future__ import annotations

from pathlib import Path

import allure
import pytest

from ipa_check.config import ArtifactSettings, Settings, ToolSettings, WorkerSettings

pytestmark = [
    allure.epic("Match Worker"),
    allure.feature("Configuration"),
]

_ENV_VARS = (
    "IPA_CHECK_DB_PATH",
    "IPA_CHECK_SQLITE_BUSY_TIMEOUT_MS",
    "IPA_CHECK_LOG_LEVEL",
    "IPA_CHECK_WORKER_ID",
    "IPA_CHECK_WORKER_ADDRESS",
    "IPA_CHECK_MAX_CONCURRENT_TASKS",
    "IPA_CHECK_POLL_INTERVAL_SECONDS",
    "IPA_CHECK_ERROR_BACKOFF_SECONDS",
    "IPA_CHECK_LEASE_DURATION_SECONDS",
    "IPA_CHECK_RECLAIM_INTERVAL_SECONDS",
    "IPA_CHECK_GRACEFUL_SHUTDOWN_SECONDS",
    "IPA_CHECK_LOCAL_STORAGE",
    "IPA_CHECK_ARTIFACT_MAX_WAIT_SECONDS",
    "IPA_CHECK_ARTIFACT_POLL_SECONDS",
    "IPA_CHECK_ARTIFACT_REQUEST_URL",
    "IPA_CHECK_ARTIFACT_REQUEST_TIMEOUT_SECONDS",
    "IPA_CHECK_TOOL_COMMAND",
    "IPA_CHECK_TOOL_TIMEOUT_SECONDS",
    "IPA_CHECK_RESULT_BASE",
)


@pytest.fixture()
def clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_from_env_uses_local_development_defaults(clean_env) -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".ipa_check.db")
    assert settings.worker.worker_id.startswith("worker-")
    assert settings.worker.worker_address
    assert settings.worker.max_concurrent == 2
    assert settings.worker.lease_duration_seconds == 1800
    assert settings.artifacts.local_storage == Path("./worker_storage")
    assert settings.artifacts.request_url is None
    assert settings.tool.timeout_seconds == 600.0
    settings.validate_for_worker()


def test_from_env_reads_overrides(clean_env, tmp_path: Path) -> None:
    clean_env.setenv("IPA_CHECK_WORKER_ID", "worker-7")
    clean_env.setenv("IPA_CHECK_WORKER_ADDRESS", "10.0.0.7")
    clean_env.setenv("IPA_CHECK_MAX_CONCURRENT_TASKS", "4")
    clean_env.setenv("IPA_CHECK_LOCAL_STORAGE", str(tmp_path / "storage"))
    clean_env.setenv("IPA_CHECK_ARTIFACT_REQUEST_URL", "http://files.local:8080")
    clean_env.setenv("IPA_CHECK_TOOL_COMMAND", "matcher --fast")
    clean_env.setenv("IPA_CHECK_LOG_LEVEL", "debug")

    settings = Settings.from_env(db_path=tmp_path / "explicit.db")

    assert settings.db_path == tmp_path / "explicit.db"
    assert settings.worker.worker_id == "worker-7"
    assert settings.worker.worker_address == "10.0.0.7"
    assert settings.worker.max_concurrent == 4
    assert settings.artifacts.local_storage == tmp_path / "storage"
    assert settings.artifacts.request_url == "http://files.local:8080"
    assert settings.tool.argv_prefix() == ["matcher", "--fast"]
    assert settings.log_level == "DEBUG"


def test_validate_for_worker_rejects_non_positive_concurrency() -> None:
    settings = Settings(worker=WorkerSettings(max_concurrent=0))

    with pytest.raises(ValueError, match="IPA_CHECK_MAX_CONCURRENT_TASKS"):
        settings.validate_for_worker()


def test_validate_for_worker_rejects_empty_tool_command() -> None:
    settings = Settings(tool=ToolSettings(command="   "))

    with pytest.raises(ValueError, match="IPA_CHECK_TOOL_COMMAND"):
        settings.validate_for_worker()


def test_validate_for_worker_requires_lease_longer_than_handler_budget() -> None:
    settings = Settings(
        worker=WorkerSettings(lease_duration_seconds=900),
        artifacts=ArtifactSettings(max_wait_seconds=300),
        tool=ToolSettings(timeout_seconds=600),
    )

    with pytest.raises(ValueError, match="IPA_CHECK_LEASE_DURATION_SECONDS"):
        settings.validate_for_worker()

    settings.worker.lease_duration_seconds = 939
    settings.validate_for_worker()


def test_lease_budget_covers_termination_and_slack() -> None:
    settings = Settings(
        worker=WorkerSettings(lease_duration_seconds=910),
        artifacts=ArtifactSettings(max_wait_seconds=300),
        tool=ToolSettings(timeout_seconds=600),
    )

    assert settings.handler_budget_seconds() == pytest.approx(938.0)
    with pytest.raises(ValueError, match="termination and slack"):
        settings.validate_for_worker()

    settings.worker.lease_duration_seconds = 938
    with pytest.raises(ValueError, match="938 <= 938"):
        settings.validate_for_worker()
