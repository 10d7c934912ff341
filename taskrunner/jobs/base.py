"""
Job definitions and the base class for Python jobs.

A `Job` is what the runner schedules: a name, an action and a timeout.
`BaseJob` is the base class for jobs written in Python and referenced from
the config file through a `python` action.
"""

import time
import traceback
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from taskrunner.jobs.actions import Action


@dataclass(frozen=True)
class Job:
    """A registered unit of work. Immutable once registered."""
    name: str
    action: 'Action'
    timeout: float
    max_retries: Optional[int] = None
    description: str = ''


@dataclass
class JobResult:
    """What a BaseJob reports back from one execution."""
    success: bool
    error_message: Optional[str] = None
    result_data: Dict[str, Any] = field(default_factory=dict)
    duration_seconds: float = 0.0


class BaseJob(ABC):
    """
    Base for jobs implemented in Python.

    Implement run(). validate_config(), on_success() and on_failure() are
    optional hooks. The runner only ever calls execute().

        class PurgeCache(BaseJob):
            name = "purge_cache"

            def run(self) -> JobResult:
                self.logger.info("Purging %s", self.config['path'])
                ...
                return JobResult(success=True)
    """

    name: str = "base_job"
    description: str = ""

    def __init__(self, config: Dict[str, Any] = None):
        self.config = config or {}
        self.logger = logging.getLogger(f"taskrunner.job.{self.name}")

    def execute(self) -> JobResult:
        """
        Validate, run and time the job.

        Exceptions from run() become a failed JobResult rather than
        propagating, so the caller only has to look at `success`.
        """
        started = time.monotonic()

        if not self.validate_config():
            result = JobResult(success=False, error_message="Configuration validation failed")
        else:
            try:
                result = self.run()
            except Exception as e:
                self.logger.debug(traceback.format_exc())
                result = JobResult(success=False, error_message=str(e) or e.__class__.__name__)

        result.duration_seconds = time.monotonic() - started
        if result.success:
            self.on_success(result)
        else:
            self.on_failure(result)
        return result

    @abstractmethod
    def run(self) -> JobResult:
        pass

    def validate_config(self) -> bool:
        """Return False to fail the run before run() is called."""
        return True

    def on_success(self, result: JobResult) -> None:
        self.logger.info(f"{self.name} finished in {result.duration_seconds:.2f}s")

    def on_failure(self, result: JobResult) -> None:
        self.logger.error(f"{self.name} failed: {result.error_message}")

    def require_config(self, *keys: str) -> bool:
        """Log and return False if any of `keys` is missing from the config."""
        missing = [k for k in keys if k not in self.config]
        if missing:
            self.logger.error(f"Missing required config keys: {', '.join(missing)}")
            return False
        return True
