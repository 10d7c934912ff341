"""
Job definitions for the task runner.

Python jobs inherit from BaseJob and implement the run() method; the config
file points at them through a `python` action.
"""

from taskrunner.jobs.base import BaseJob, Job, JobResult

__all__ = ['BaseJob', 'Job', 'JobResult']
