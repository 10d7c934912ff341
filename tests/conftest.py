"""
Pytest configuration and shared fixtures for taskrunner tests.
"""

import json
from pathlib import Path

import pytest

from taskrunner.runner.db import OutcomeLog
from taskrunner.runner.executor import JobExecutor
from tests.helpers import FakeClock


@pytest.fixture
def db_path(tmp_path) -> Path:
    return tmp_path / "runs.db"


@pytest.fixture
def outcome_log(db_path) -> OutcomeLog:
    return OutcomeLog(db_path)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps():
    """Backoff delays requested by the executor, instead of sleeping."""
    return []


@pytest.fixture
def executor(outcome_log, sleeps) -> JobExecutor:
    executor = JobExecutor(outcome_log, sleep=sleeps.append)
    yield executor
    executor.shutdown()


@pytest.fixture
def write_config(tmp_path):
    """Write a config document and return its path."""
    def _write(data, name="taskrunner.json") -> Path:
        path = tmp_path / name
        path.write_text(json.dumps(data))
        return path
    return _write
