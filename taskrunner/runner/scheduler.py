"""
Polling loop that fires scheduled jobs.

Every poll the trigger decides which jobs are due; each due job is handed
to the executor on a worker pool so slow jobs don't hold up the loop or
each other. A failing job never stops the loop. A failure to write the run
history does: it is re-raised out of run_forever().
"""

import threading
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Callable, List

from taskrunner.config import JobRegistry
from taskrunner.errors import OutcomeLogError
from taskrunner.runner import trigger
from taskrunner.runner.db import OutcomeLog
from taskrunner.runner.executor import JobExecutor


logger = logging.getLogger("taskrunner.scheduler")


class Scheduler:
    """
    Usage:
        scheduler = Scheduler(registry, executor, outcome_log, poll_interval=30)
        scheduler.run_forever(stop_event)
    """

    def __init__(
        self,
        registry: JobRegistry,
        executor: JobExecutor,
        outcome_log: OutcomeLog,
        poll_interval: float = 30,
        max_workers: int = 4,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.registry = registry
        self.executor = executor
        self.outcome_log = outcome_log
        self.poll_interval = poll_interval
        self.clock = clock
        self.pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='taskrunner')
        self._futures: List[Future] = []

        keys = {s.key for s in registry.schedules}
        saved = outcome_log.load_schedule_state()
        self.state = trigger.TriggerState(
            anchors={k: v for k, v in saved.items() if k in keys}
        )
        if self.state.anchors:
            logger.info(f"Restored trigger state for {len(self.state.anchors)} schedule(s)")

    def tick(self, now: datetime = None) -> List[str]:
        """
        Run one poll: find due jobs and dispatch them.

        Returns:
            Names of the jobs that were due
        """
        now = now or self.clock()
        due, self.state = trigger.check(now, self.registry.schedules, self.state)
        self.outcome_log.save_schedule_state(self.state.anchors)

        for name in due:
            job = self.registry.get(name)
            logger.info(f"Job '{name}' is due")
            future = self.executor.submit(job, self.pool, trigger_type='scheduled')
            if future is not None:
                self._futures.append(future)

        return due

    def reap(self) -> int:
        """
        Collect finished runs.

        Returns:
            Number of runs still in flight

        Raises:
            OutcomeLogError: if a run could not be recorded
        """
        pending = []
        for future in self._futures:
            if not future.done():
                pending.append(future)
                continue
            try:
                future.result()
            except OutcomeLogError:
                raise
            except Exception as e:
                logger.exception(f"Unexpected error in job run: {e}")
        self._futures = pending
        return len(pending)

    def run_forever(self, stop_event: threading.Event = None) -> None:
        """Poll until `stop_event` is set."""
        stop_event = stop_event or threading.Event()
        logger.info(
            f"Scheduler started: {len(self.registry)} job(s), "
            f"{len(self.registry.schedules)} schedule(s), polling every {self.poll_interval:g}s"
        )

        try:
            while not stop_event.is_set():
                self.tick()
                self.reap()
                stop_event.wait(self.poll_interval)
        except OutcomeLogError as e:
            logger.critical(f"Run history unavailable, stopping scheduler: {e}")
            raise
        finally:
            logger.info("Scheduler stopping; waiting for running jobs")
            self.shutdown()

    def shutdown(self, wait: bool = True) -> None:
        """Stop the worker pool, then the executor's notification queue."""
        self.pool.shutdown(wait=wait)
        self.executor.shutdown(wait=wait)
        if wait:
            self.reap()
