"""
Schedules and run records.
"""

from dataclasses import dataclass, field
from datetime import datetime, time as dtime
from enum import Enum
from typing import Any, Dict, Optional

from taskrunner.utils import WEEKDAY_NAMES, format_duration


class Cadence(Enum):
    INTERVAL = 'interval'
    DAILY_AT = 'daily_at'
    WEEKLY_AT = 'weekly_at'


class RunStatus(Enum):
    SUCCESS = 'success'
    FAILED = 'failed'
    TIMED_OUT = 'timed_out'
    SKIPPED_OVERLAP = 'skipped_overlap'


@dataclass(frozen=True)
class Schedule:
    """
    A time-based rule that makes a job due.

    Exactly one group of params is meaningful per cadence:
        interval:  every (seconds)
        daily_at:  at
        weekly_at: weekday (0=Monday) and at

    `order` is the registration position and only orders due jobs. Trigger
    state is keyed by `key`, built from the job name and the rule itself,
    so editing other parts of the config leaves it attached.
    """
    job_name: str
    cadence: Cadence
    order: int = 0
    every: Optional[float] = None
    at: Optional[dtime] = None
    weekday: Optional[int] = None

    @property
    def key(self) -> str:
        every = f"{self.every:g}" if self.every is not None else ''
        at = self.at.strftime('%H:%M') if self.at is not None else ''
        weekday = str(self.weekday) if self.weekday is not None else ''
        return '|'.join([self.job_name, self.cadence.value, every, at, weekday])

    def describe(self) -> str:
        """Human-readable form, e.g. 'Daily at 09:00'."""
        if self.cadence is Cadence.INTERVAL:
            return f"Every {format_duration(self.every)}"
        at = self.at.strftime('%H:%M')
        if self.cadence is Cadence.DAILY_AT:
            return f"Daily at {at}"
        return f"Weekly on {WEEKDAY_NAMES[self.weekday]} at {at}"


@dataclass(frozen=True)
class RunRecord:
    """Outcome of one job invocation, including all of its attempts."""
    job_name: str
    started_at: datetime
    finished_at: datetime
    attempt_count: int
    status: RunStatus
    error_message: Optional[str] = None
    trigger_type: str = 'manual'
    id: Optional[int] = field(default=None, compare=False)

    @property
    def duration_ms(self) -> int:
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'job_name': self.job_name,
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat(),
            'duration_ms': self.duration_ms,
            'attempt_count': self.attempt_count,
            'status': self.status.value,
            'error_message': self.error_message,
            'trigger_type': self.trigger_type,
        }
