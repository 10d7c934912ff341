"""
Exception types raised by the task runner.
"""


class TaskRunnerError(Exception):
    """Base class for all task runner errors."""


class ConfigError(TaskRunnerError):
    """A job, schedule or setting is invalid. Fatal at startup."""


class ActionError(TaskRunnerError):
    """A job's action failed. The runner retries these."""


class ActionTimeout(TaskRunnerError):
    """A job's action exceeded its deadline. Never retried."""

    def __init__(self, timeout_seconds: float, message: str = None, abandoned: bool = False):
        self.timeout_seconds = timeout_seconds
        # The action is still running in a thread that was given up on
        self.abandoned = abandoned
        super().__init__(message or f"Timed out after {timeout_seconds:g}s")


class NotifierError(TaskRunnerError):
    """A notification could not be delivered."""


class OutcomeLogError(TaskRunnerError):
    """The run history could not be written. Fatal to the process."""


class UnknownJobError(TaskRunnerError):
    """A job name that is not registered."""

    def __init__(self, job_name: str):
        self.job_name = job_name
        super().__init__(f"Job '{job_name}' not found")
