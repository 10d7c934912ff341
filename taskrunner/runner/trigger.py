"""
Decides which schedules are due.

The check is a pure function of the current time, the schedules and a
TriggerState. It never reads the clock itself and keeps no module state;
the caller owns the state and persists it between polls.

Each schedule has an anchor: the time it last fired, or the time the
trigger first saw it. Interval schedules are due once `every` seconds
have passed since the anchor. Daily and weekly schedules are due when the
most recent calendar slot at or before now is later than the anchor, so a
run missed while the process was down is caught up once, not once per
missed slot.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Tuple

from taskrunner.models import Cadence, Schedule


@dataclass(frozen=True)
class TriggerState:
    """Anchor time per schedule key."""
    anchors: Dict[str, datetime] = field(default_factory=dict)


def latest_slot(schedule: Schedule, now: datetime) -> datetime:
    """The most recent daily/weekly slot at or before `now`."""
    if schedule.cadence is Cadence.DAILY_AT:
        slot = datetime.combine(now.date(), schedule.at)
        if slot > now:
            slot -= timedelta(days=1)
        return slot

    if schedule.cadence is Cadence.WEEKLY_AT:
        days_back = (now.weekday() - schedule.weekday) % 7
        slot = datetime.combine(now.date() - timedelta(days=days_back), schedule.at)
        if slot > now:
            slot -= timedelta(days=7)
        return slot

    raise ValueError(f"{schedule.cadence.value} schedules have no calendar slots")


def is_due(schedule: Schedule, anchor: datetime, now: datetime) -> bool:
    if schedule.cadence is Cadence.INTERVAL:
        return (now - anchor).total_seconds() >= schedule.every
    return latest_slot(schedule, now) > anchor


def check(
    now: datetime,
    schedules: Iterable[Schedule],
    state: TriggerState
) -> Tuple[List[str], TriggerState]:
    """
    Find the jobs due at `now`.

    Args:
        now: Current time
        schedules: All registered schedules
        state: Anchors from the previous check

    Returns:
        (due job names, new state). Names are ordered by schedule
        registration order, ties by name, and a job due through several
        schedules is listed once.
    """
    anchors = dict(state.anchors)
    fired = []

    for schedule in sorted(schedules, key=lambda s: (s.order, s.job_name)):
        anchor = anchors.get(schedule.key)
        if anchor is None:
            anchors[schedule.key] = now
            continue
        if is_due(schedule, anchor, now):
            anchors[schedule.key] = now
            fired.append(schedule.job_name)

    due = []
    for name in fired:
        if name not in due:
            due.append(name)

    return due, TriggerState(anchors=anchors)


def next_fire_time(schedule: Schedule, state: TriggerState, now: datetime) -> datetime:
    """When the schedule will next become due, for display."""
    anchor = state.anchors.get(schedule.key, now)
    if schedule.cadence is Cadence.INTERVAL:
        return max(anchor + timedelta(seconds=schedule.every), now)

    step = timedelta(days=1) if schedule.cadence is Cadence.DAILY_AT else timedelta(days=7)
    slot = latest_slot(schedule, now)
    if slot > anchor:
        return now
    return slot + step
