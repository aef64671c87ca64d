"""Shared test fixtures."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from ipa_check.matching.repository import TaskRepository

SRC_DIR = Path(__file__).resolve().parents[1] / "src"


@pytest.fixture(autouse=True)
def _subprocess_pythonpath(monkeypatch):
    """Let stub tool subprocesses import the package from the source tree."""

    existing = os.environ.get("PYTHONPATH")
    value = str(SRC_DIR) if not existing else os.pathsep.join([str(SRC_DIR), existing])
    monkeypatch.setenv("PYTHONPATH", value)


@pytest.fixture()
def repository(tmp_path: Path):
    repo = TaskRepository(tmp_path / "queue.db")
    repo.init_schema()
    yield repo
    repo.close()
