"""Unit tests for the scheduler polling loop"""
import threading
from concurrent.futures import Future
from datetime import datetime, time

import pytest

from taskrunner.config import JobRegistry, parse_config
from taskrunner.errors import OutcomeLogError
from taskrunner.models import Cadence, RunStatus, Schedule
from taskrunner.runner.executor import JobExecutor
from taskrunner.runner.scheduler import Scheduler
from tests.helpers import RecordingNotifier, make_job


def registry_for(*entries):
    """Build a registry from (job, [schedules]) pairs."""
    registry = JobRegistry()
    for job, schedules in entries:
        registry.jobs[job.name] = job
        registry.schedules.extend(schedules)
    return registry


def every(name, seconds, order=0):
    return Schedule(name, Cadence.INTERVAL, order=order, every=seconds)


@pytest.fixture
def make_scheduler(executor, outcome_log, clock):
    created = []

    def _make(registry, **kwargs):
        scheduler = Scheduler(registry, executor, outcome_log, clock=clock, **kwargs)
        created.append(scheduler)
        return scheduler

    yield _make
    for scheduler in created:
        scheduler.shutdown()


class TestTick:

    def test_first_sight_anchors_without_firing(self, make_scheduler, outcome_log):
        registry = registry_for((make_job('poll', lambda: None), [every('poll', 300)]))
        scheduler = make_scheduler(registry)

        assert scheduler.tick() == []
        assert outcome_log.query().all() == []

    def test_interval_job_dispatched_when_due(self, make_scheduler, outcome_log, clock):
        calls = []
        registry = registry_for((make_job('poll', lambda: calls.append(1)), [every('poll', 300)]))
        scheduler = make_scheduler(registry)

        scheduler.tick()
        clock.advance(minutes=4)
        assert scheduler.tick() == []
        clock.advance(minutes=1)
        assert scheduler.tick() == ['poll']
        scheduler.shutdown()

        assert calls == [1]
        [record] = outcome_log.query('poll').all()
        assert record.status == RunStatus.SUCCESS
        assert record.trigger_type == 'scheduled'

    def test_daily_slot_fires_once(self, make_scheduler, clock):
        registry = registry_for((
            make_job('report', lambda: None),
            [Schedule('report', Cadence.DAILY_AT, at=time(9, 0))],
        ))
        scheduler = make_scheduler(registry)

        scheduler.tick()
        clock.advance(hours=1)
        assert scheduler.tick() == ['report']
        clock.advance(seconds=30)
        assert scheduler.tick() == []

    def test_due_jobs_in_registration_order(self, make_scheduler, clock):
        registry = registry_for(
            (make_job('b', lambda: None), [every('b', 60, order=0)]),
            (make_job('a', lambda: None), [every('a', 60, order=1)]),
        )
        scheduler = make_scheduler(registry)

        scheduler.tick()
        clock.advance(minutes=1)
        assert scheduler.tick() == ['b', 'a']

    def test_failing_job_does_not_stop_others(self, make_scheduler, outcome_log, clock, sleeps):
        def boom():
            raise RuntimeError("kaboom")

        registry = registry_for(
            (make_job('bad', boom), [every('bad', 60, order=0)]),
            (make_job('good', lambda: None), [every('good', 60, order=1)]),
        )
        scheduler = make_scheduler(registry)

        scheduler.tick()
        clock.advance(minutes=1)
        scheduler.tick()
        scheduler.shutdown()

        assert outcome_log.last_run('bad').status == RunStatus.FAILED
        assert outcome_log.last_run('good').status == RunStatus.SUCCESS

    def test_overlapping_run_is_skipped(self, make_scheduler, outcome_log, clock):
        """A job still running when it comes due again is recorded as skipped_overlap"""
        started = threading.Event()
        release = threading.Event()

        def slow():
            started.set()
            release.wait(5)

        registry = registry_for((make_job('slow', slow), [every('slow', 60)]))
        scheduler = make_scheduler(registry)

        scheduler.tick()
        clock.advance(minutes=1)
        scheduler.tick()
        assert started.wait(5)
        clock.advance(minutes=1)
        scheduler.tick()
        release.set()
        scheduler.shutdown()

        statuses = sorted(r.status.value for r in outcome_log.query('slow'))
        assert statuses == ['skipped_overlap', 'success']


class TestTriggerStatePersistence:

    def test_anchors_survive_restart(self, clock, make_scheduler):
        registry = registry_for((make_job('poll', lambda: None), [every('poll', 300)]))
        make_scheduler(registry).tick()

        clock.advance(minutes=5)
        restarted = make_scheduler(registry)

        assert restarted.tick() == ['poll']

    def test_anchors_survive_job_inserted_above(self, clock, make_scheduler):
        """Adding a job earlier in the config doesn't move other schedules' state"""
        def config(*jobs):
            registry, _ = parse_config({'jobs': [
                {
                    'name': name,
                    'timeout': '5s',
                    'action': {'kind': 'command', 'command': 'true'},
                    'schedules': schedules,
                }
                for name, schedules in jobs
            ]})
            return registry

        poll = ('poll', [{'cadence': 'interval', 'every': '5m'}])
        report = ('report', [{'cadence': 'daily_at', 'at': '09:00'}])
        first = config(report, poll)
        make_scheduler(first).tick()

        clock.advance(minutes=5)
        nightly = ('nightly', [{'cadence': 'interval', 'every': '1m'}, {'cadence': 'daily_at', 'at': '02:00'}])
        edited = config(nightly, report, poll)
        restarted = make_scheduler(edited)

        old = {s.key for s in first.schedules}
        assert old <= set(restarted.state.anchors)
        assert restarted.tick() == ['poll']

    def test_stale_schedules_dropped(self, outcome_log, make_scheduler):
        outcome_log.save_schedule_state({'removed|interval|300||': datetime(2026, 10, 1)})
        registry = registry_for((make_job('poll', lambda: None), [every('poll', 300)]))

        scheduler = make_scheduler(registry)

        assert 'removed|interval|300||' not in scheduler.state.anchors


class TestReap:

    def test_outcome_log_error_propagates(self, make_scheduler):
        scheduler = make_scheduler(JobRegistry())
        future = Future()
        future.set_exception(OutcomeLogError("disk I/O error"))
        scheduler._futures.append(future)

        with pytest.raises(OutcomeLogError):
            scheduler.reap()
        scheduler._futures.clear()

    def test_other_errors_logged(self, make_scheduler, caplog):
        scheduler = make_scheduler(JobRegistry())
        future = Future()
        future.set_exception(RuntimeError("surprise"))
        scheduler._futures.append(future)

        assert scheduler.reap() == 0
        assert 'surprise' in caplog.text

    def test_pending_kept(self, make_scheduler):
        scheduler = make_scheduler(JobRegistry())
        scheduler._futures.append(Future())

        assert scheduler.reap() == 1


class TestRunForever:

    def test_stops_when_event_set(self, make_scheduler):
        scheduler = make_scheduler(JobRegistry(), poll_interval=0.01)
        stop = threading.Event()
        thread = threading.Thread(target=scheduler.run_forever, args=(stop,))

        thread.start()
        stop.set()
        thread.join(5)

        assert not thread.is_alive()

    def test_outcome_log_failure_is_fatal(self, make_scheduler, outcome_log, monkeypatch):
        def broken(anchors):
            raise OutcomeLogError("database is locked")

        monkeypatch.setattr(outcome_log, 'save_schedule_state', broken)
        scheduler = make_scheduler(JobRegistry(), poll_interval=0.01)

        with pytest.raises(OutcomeLogError):
            scheduler.run_forever(threading.Event())


class TestShutdown:

    def test_pending_notifications_delivered(self, outcome_log, clock):
        notifier = RecordingNotifier()
        executor = JobExecutor(outcome_log, notifier=notifier, notify_on='always')
        registry = registry_for((make_job('poll', lambda: None), [every('poll', 60)]))
        scheduler = Scheduler(registry, executor, outcome_log, clock=clock)

        scheduler.tick()
        clock.advance(minutes=1)
        scheduler.tick()
        scheduler.shutdown()

        assert [r.job_name for r in notifier.records] == ['poll']
