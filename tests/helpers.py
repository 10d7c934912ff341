"""
Test doubles shared across the unit tests.
"""

from datetime import datetime, timedelta

from taskrunner.jobs.actions import PythonAction
from taskrunner.jobs.base import Job


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 10, 14, 8, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """Notifier that remembers what it was sent."""

    name = 'recording'

    def __init__(self, error: Exception = None):
        self.records = []
        self.error = error

    def notify(self, record):
        self.records.append(record)
        if self.error:
            raise self.error


def make_job(name, func, timeout=5.0, max_retries=None):
    """A job running a plain Python callable."""
    action = PythonAction(target=f"tests.{name}", func=func)
    return Job(name=name, action=action, timeout=timeout, max_retries=max_retries)
