"""
Job executor with timeout, retry, overlap protection and notifications.
"""

import threading
import time
import logging
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Optional, Set

from taskrunner.errors import ActionError, ActionTimeout, NotifierError
from taskrunner.jobs.base import Job
from taskrunner.models import RunRecord, RunStatus
from taskrunner.runner.alerts import Notifier
from taskrunner.runner.db import OutcomeLog


logger = logging.getLogger("taskrunner.executor")

DEFAULT_MAX_RETRIES = 3
BACKOFF_BASE_SECONDS = 1.0
BACKOFF_FACTOR = 2.0
BACKOFF_CAP_SECONDS = 30.0

NOTIFY_POLICIES = ('always', 'failure', 'never')
FAILURE_STATUSES = (RunStatus.FAILED, RunStatus.TIMED_OUT)


def backoff_delay(
    attempt: int,
    base: float = BACKOFF_BASE_SECONDS,
    factor: float = BACKOFF_FACTOR,
    cap: float = BACKOFF_CAP_SECONDS
) -> float:
    """Delay before the retry that follows `attempt` (1-based): 1, 2, 4, ... capped."""
    return min(cap, base * factor ** (attempt - 1))


def call_with_deadline(
    func: Callable[[], None],
    timeout: float,
    name: str,
    on_abandoned_exit: Callable[[], None] = None
) -> None:
    """
    Run `func` in a daemon thread and wait at most `timeout` seconds.

    On timeout the thread is abandoned, not stopped: Python can't interrupt
    arbitrary code, so the function may keep running in the background.
    `on_abandoned_exit` is called from that thread once it finally returns,
    and only if it was abandoned.

    Raises:
        ActionTimeout: if the deadline passes first, with `abandoned` set
        Whatever `func` raised, re-raised in the caller
    """
    outcome = {'done': False, 'abandoned': False}
    lock = threading.Lock()

    def target():
        try:
            func()
        except Exception as e:
            outcome['error'] = e
        finally:
            with lock:
                outcome['done'] = True
                late = outcome['abandoned']
            if late:
                logger.info(f"Abandoned run of '{name}' has finished")
                if on_abandoned_exit is not None:
                    on_abandoned_exit()

    worker = threading.Thread(target=target, name=f"job-{name}", daemon=True)
    worker.start()
    worker.join(timeout)

    with lock:
        if not outcome['done']:
            outcome['abandoned'] = True

    if outcome['abandoned']:
        logger.warning(f"Job '{name}' still running after {timeout:g}s; abandoning it")
        raise ActionTimeout(timeout, abandoned=True)
    if 'error' in outcome:
        raise outcome['error']


class JobExecutor:
    """
    Executes jobs with timeout, retry logic and run recording.

    At most one invocation per job name runs at a time. An invocation that
    finds its job already running is not queued: it is recorded as
    skipped_overlap.

    Usage:
        executor = JobExecutor(OutcomeLog(db_path))
        record = executor.run(job, trigger_type='manual')
    """

    def __init__(
        self,
        outcome_log: OutcomeLog,
        notifier: Notifier = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        notify_on: str = 'failure',
        backoff_base: float = BACKOFF_BASE_SECONDS,
        backoff_factor: float = BACKOFF_FACTOR,
        backoff_cap: float = BACKOFF_CAP_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = datetime.now
    ):
        """
        Initialize the executor.

        Args:
            outcome_log: Where run records are appended
            notifier: Optional channel for run summaries
            max_retries: Total attempts per invocation unless the job overrides it
            notify_on: 'always', 'failure' (failed or timed out) or 'never'
            backoff_base: Delay after the first failed attempt
            backoff_factor: Multiplier for each further delay
            backoff_cap: Upper bound on any single delay
            sleep: Called with the backoff delay between attempts
            clock: Source of run timestamps
        """
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if notify_on not in NOTIFY_POLICIES:
            raise ValueError(f"notify_on must be one of {NOTIFY_POLICIES}")

        self.outcome_log = outcome_log
        self.notifier = notifier
        self.max_retries = max_retries
        self.notify_on = notify_on
        self.backoff_base = backoff_base
        self.backoff_factor = backoff_factor
        self.backoff_cap = backoff_cap
        self.sleep = sleep
        self.clock = clock

        self._running: Set[str] = set()
        self._running_lock = threading.Lock()
        # One worker keeps notifications in order and off the job threads
        self._notify_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix='taskrunner-notify')

    def is_running(self, job_name: str) -> bool:
        with self._running_lock:
            return job_name in self._running

    def run(self, job: Job, trigger_type: str = 'manual') -> RunRecord:
        """
        Execute a job in the calling thread.

        Returns:
            The appended RunRecord

        Raises:
            OutcomeLogError: if the record could not be persisted
        """
        if not self._acquire(job.name):
            return self._record_overlap(job, trigger_type)
        return self._execute(job, trigger_type)

    def submit(self, job: Job, pool: Executor, trigger_type: str = 'scheduled') -> Optional[Future]:
        """
        Execute a job on a worker pool.

        The overlap check happens here, in the calling thread, so two
        submissions of the same job can't both start.

        Returns:
            The future for the run, or None if it was skipped as an overlap
        """
        if not self._acquire(job.name):
            self._record_overlap(job, trigger_type)
            return None
        try:
            return pool.submit(self._execute, job, trigger_type)
        except Exception:
            self._release(job.name)
            raise

    def shutdown(self, wait: bool = True) -> None:
        """Stop sending notifications. With `wait`, queued ones are delivered first."""
        self._notify_pool.shutdown(wait=wait)

    def _acquire(self, job_name: str) -> bool:
        with self._running_lock:
            if job_name in self._running:
                return False
            self._running.add(job_name)
            return True

    def _release(self, job_name: str) -> None:
        with self._running_lock:
            self._running.discard(job_name)

    def _execute(self, job: Job, trigger_type: str) -> RunRecord:
        """
        Attempt loop for one invocation. The caller has acquired the job's
        slot; it is released here, or by the abandoned worker thread when an
        attempt timed out without stopping.
        """
        max_retries = job.max_retries or self.max_retries
        started_at = self.clock()
        status = RunStatus.FAILED
        error_message = None
        attempt = 0
        still_running = False

        try:
            while attempt < max_retries:
                attempt += 1
                logger.info(f"Executing job '{job.name}' (attempt {attempt}/{max_retries})")

                try:
                    self._attempt(job)
                except ActionTimeout as e:
                    status = RunStatus.TIMED_OUT
                    error_message = str(e)
                    still_running = e.abandoned
                    logger.error(f"Job '{job.name}' timed out: {error_message}")
                    break
                except ActionError as e:
                    error_message = str(e)
                except Exception as e:
                    error_message = f"{e.__class__.__name__}: {e}"
                else:
                    status = RunStatus.SUCCESS
                    error_message = None
                    break

                logger.warning(f"Job '{job.name}' failed (attempt {attempt}): {error_message}")
                if attempt < max_retries:
                    delay = backoff_delay(attempt, self.backoff_base, self.backoff_factor, self.backoff_cap)
                    logger.info(f"Retrying '{job.name}' in {delay:g} seconds...")
                    self.sleep(delay)

            record = RunRecord(
                job_name=job.name,
                started_at=started_at,
                finished_at=self.clock(),
                attempt_count=attempt,
                status=status,
                error_message=error_message,
                trigger_type=trigger_type,
            )

            if status is RunStatus.SUCCESS:
                logger.info(
                    f"Job '{job.name}' completed successfully in {record.duration_ms / 1000:.2f}s"
                )
            elif status is RunStatus.FAILED:
                logger.error(f"Job '{job.name}' failed after {attempt} attempt(s): {error_message}")

            return self._finish(record)
        finally:
            if not still_running:
                self._release(job.name)

    def _attempt(self, job: Job) -> None:
        if job.action.kills_on_timeout:
            job.action.run(timeout=job.timeout)
        else:
            call_with_deadline(
                job.action.run,
                job.timeout,
                job.name,
                on_abandoned_exit=lambda: self._release(job.name)
            )

    def _record_overlap(self, job: Job, trigger_type: str) -> RunRecord:
        logger.warning(f"Job '{job.name}' is already running; skipping this run")
        now = self.clock()
        record = RunRecord(
            job_name=job.name,
            started_at=now,
            finished_at=now,
            attempt_count=0,
            status=RunStatus.SKIPPED_OVERLAP,
            error_message="Previous run still in progress",
            trigger_type=trigger_type,
        )
        return self._finish(record)

    def _finish(self, record: RunRecord) -> RunRecord:
        record = self.outcome_log.append(record)
        if self._should_notify(record):
            try:
                self._notify_pool.submit(self._deliver, record)
            except RuntimeError:
                logger.warning(f"Notifications are shut down; none sent for job '{record.job_name}'")
        return record

    def _should_notify(self, record: RunRecord) -> bool:
        if self.notifier is None or self.notify_on == 'never':
            return False
        if self.notify_on == 'failure':
            return record.status in FAILURE_STATUSES
        return True

    def _deliver(self, record: RunRecord) -> None:
        try:
            self.notifier.notify(record)
        except NotifierError as e:
            logger.error(f"Failed to send notification for job '{record.job_name}': {e}")
        except Exception as e:
            logger.exception(f"Notifier crashed for job '{record.job_name}': {e}")
