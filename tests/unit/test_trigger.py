"""Unit tests for the trigger: which schedules are due at a given time"""
from datetime import datetime, time, timedelta

import pytest

from taskrunner.models import Cadence, Schedule
from taskrunner.runner.trigger import TriggerState, check, latest_slot, next_fire_time

# 2026-10-14 is a Wednesday
WEDNESDAY_8AM = datetime(2026, 10, 14, 8, 0, 0)


def interval(name, seconds, order=0):
    return Schedule(name, Cadence.INTERVAL, order=order, every=seconds)


def daily(name, hh, mm, order=0):
    return Schedule(name, Cadence.DAILY_AT, order=order, at=time(hh, mm))


def weekly(name, weekday, hh, mm, order=0):
    return Schedule(name, Cadence.WEEKLY_AT, order=order, at=time(hh, mm), weekday=weekday)


def seen_at(schedules, when):
    """State after the trigger first saw the schedules at `when`."""
    _, state = check(when, schedules, TriggerState())
    return state


class TestFirstSight:
    """Schedules are anchored when first seen, not fired"""

    def test_new_schedules_are_not_due(self):
        schedules = [interval('scrape', 60), daily('backup', 7, 0)]
        due, state = check(WEDNESDAY_8AM, schedules, TriggerState())

        assert due == []
        assert state.anchors == {s.key: WEDNESDAY_8AM for s in schedules}

    def test_input_state_not_mutated(self):
        state = TriggerState()
        check(WEDNESDAY_8AM, [interval('scrape', 60)], state)
        assert state.anchors == {}


class TestInterval:
    """interval cadence fires when now - last_fired >= every"""

    def test_due_after_interval(self):
        schedules = [interval('scrape', 300)]
        state = seen_at(schedules, WEDNESDAY_8AM)

        due, state = check(WEDNESDAY_8AM + timedelta(seconds=299), schedules, state)
        assert due == []

        due, state = check(WEDNESDAY_8AM + timedelta(seconds=300), schedules, state)
        assert due == ['scrape']
        assert state.anchors[schedules[0].key] == WEDNESDAY_8AM + timedelta(seconds=300)

    def test_checks_closer_than_interval_fire_at_most_once(self):
        """Two checks spaced less than the interval apart yield at most one firing"""
        schedules = [interval('scrape', 60)]
        state = seen_at(schedules, WEDNESDAY_8AM)

        now = WEDNESDAY_8AM
        for step in (61, 30, 59, 45, 10):
            first = now + timedelta(seconds=step)
            second = first + timedelta(seconds=59)
            due1, state = check(first, schedules, state)
            due2, state = check(second, schedules, state)
            assert len(due1) + len(due2) <= 1
            now = second

    def test_long_gap_fires_once(self):
        """No backlog after a long pause"""
        schedules = [interval('scrape', 60)]
        state = seen_at(schedules, WEDNESDAY_8AM)

        due, state = check(WEDNESDAY_8AM + timedelta(hours=5), schedules, state)
        assert due == ['scrape']

        due, _ = check(WEDNESDAY_8AM + timedelta(hours=5, seconds=1), schedules, state)
        assert due == []


class TestDaily:
    """daily_at fires once per day, catching up missed slots once"""

    def test_fires_at_slot(self):
        schedules = [daily('backup', 9, 0)]
        state = seen_at(schedules, WEDNESDAY_8AM)

        due, state = check(datetime(2026, 10, 14, 8, 59, 59), schedules, state)
        assert due == []

        due, state = check(datetime(2026, 10, 14, 9, 0, 30), schedules, state)
        assert due == ['backup']

        due, state = check(datetime(2026, 10, 14, 9, 1, 0), schedules, state)
        assert due == []

    def test_fires_again_next_day(self):
        schedules = [daily('backup', 9, 0)]
        state = seen_at(schedules, WEDNESDAY_8AM)
        _, state = check(datetime(2026, 10, 14, 9, 0), schedules, state)

        due, state = check(datetime(2026, 10, 15, 8, 0), schedules, state)
        assert due == []
        due, state = check(datetime(2026, 10, 15, 9, 0), schedules, state)
        assert due == ['backup']

    def test_missed_slots_catch_up_once(self):
        """Process down for three days: one firing on the first check, not three"""
        schedules = [daily('backup', 9, 0)]
        state = TriggerState(anchors={schedules[0].key: datetime(2026, 10, 10, 9, 0, 5)})

        due, state = check(datetime(2026, 10, 13, 15, 0), schedules, state)
        assert due == ['backup']

        due, state = check(datetime(2026, 10, 13, 15, 0, 30), schedules, state)
        assert due == []

    def test_first_seen_after_slot_waits_for_next_slot(self):
        schedules = [daily('backup', 7, 0)]
        state = seen_at(schedules, WEDNESDAY_8AM)

        due, _ = check(datetime(2026, 10, 14, 23, 59), schedules, state)
        assert due == []


class TestWeekly:
    """weekly_at fires once per week on the given weekday"""

    def test_fires_on_weekday(self):
        schedules = [weekly('report', 4, 17, 30)]  # Friday 17:30
        state = seen_at(schedules, WEDNESDAY_8AM)

        due, state = check(datetime(2026, 10, 16, 17, 29), schedules, state)
        assert due == []
        due, state = check(datetime(2026, 10, 16, 17, 31), schedules, state)
        assert due == ['report']
        due, state = check(datetime(2026, 10, 20, 17, 31), schedules, state)
        assert due == []
        due, state = check(datetime(2026, 10, 23, 17, 30), schedules, state)
        assert due == ['report']

    def test_latest_slot_wraps_to_previous_week(self):
        schedule = weekly('report', 4, 17, 30)
        # Wednesday: last Friday slot was 2026-10-09
        assert latest_slot(schedule, WEDNESDAY_8AM) == datetime(2026, 10, 9, 17, 30)

    def test_latest_slot_same_day_before_time(self):
        schedule = weekly('report', 2, 9, 0)  # Wednesday 09:00
        assert latest_slot(schedule, WEDNESDAY_8AM) == datetime(2026, 10, 7, 9, 0)

    def test_interval_has_no_slots(self):
        with pytest.raises(ValueError):
            latest_slot(interval('x', 10), WEDNESDAY_8AM)


class TestOrdering:
    """Due jobs come out in registration order, once each"""

    def test_registration_order(self):
        schedules = [interval('zeta', 60, order=0), interval('alpha', 60, order=1)]
        state = seen_at(schedules, WEDNESDAY_8AM)

        due, _ = check(WEDNESDAY_8AM + timedelta(minutes=1), schedules, state)
        assert due == ['zeta', 'alpha']

    def test_ties_broken_by_name(self):
        schedules = [interval('zeta', 60, order=0), interval('alpha', 60, order=0)]
        state = TriggerState(anchors={s.key: WEDNESDAY_8AM for s in schedules})

        due, _ = check(WEDNESDAY_8AM + timedelta(minutes=1), schedules, state)
        assert due == ['alpha', 'zeta']

    def test_job_due_through_two_schedules_listed_once(self):
        schedules = [interval('sync', 60, order=0), daily('sync', 8, 0, order=1)]
        state = TriggerState(anchors={
            schedules[0].key: WEDNESDAY_8AM - timedelta(minutes=5),
            schedules[1].key: WEDNESDAY_8AM - timedelta(days=1),
        })

        due, state = check(WEDNESDAY_8AM, schedules, state)
        assert due == ['sync']
        assert state.anchors[schedules[0].key] == WEDNESDAY_8AM
        assert state.anchors[schedules[1].key] == WEDNESDAY_8AM


class TestNextFireTime:

    def test_interval(self):
        schedule = interval('scrape', 600)
        state = TriggerState(anchors={schedule.key: WEDNESDAY_8AM})
        assert next_fire_time(schedule, state, WEDNESDAY_8AM) == WEDNESDAY_8AM + timedelta(minutes=10)

    def test_daily(self):
        schedule = daily('backup', 9, 0)
        state = TriggerState(anchors={schedule.key: WEDNESDAY_8AM})
        assert next_fire_time(schedule, state, WEDNESDAY_8AM) == datetime(2026, 10, 14, 9, 0)


class TestScheduleKey:
    """Trigger state is keyed by the rule, not its position in the config"""

    def test_key_ignores_order(self):
        assert interval('scrape', 300, order=0).key == interval('scrape', 300, order=7).key

    def test_key_changes_with_rule(self):
        keys = {
            interval('scrape', 300).key,
            interval('scrape', 600).key,
            daily('scrape', 9, 0).key,
            weekly('scrape', 0, 9, 0).key,
            weekly('scrape', 1, 9, 0).key,
            interval('other', 300).key,
        }
        assert len(keys) == 6
