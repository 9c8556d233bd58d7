"""Reminder window evaluation.

A reminder channel is due when its trigger time lies in the half-open window
``(now, now + offset]``: strictly in the future, and no further away than the
reminder offset. Reminders whose trigger time has already passed never fire;
with a tick of :data:`DEFAULT_TICK_SECONDS`, an offset shorter than one tick
can therefore be skipped entirely if its window closes between two polls.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta

from lifeos.models import ReminderCandidate, ensure_utc

DEFAULT_TICK_SECONDS = 60


def is_due(now: datetime, trigger_at: datetime | None, offset_minutes: int | None) -> bool:
    """Return True iff ``now < trigger_at <= now + offset_minutes``.

    A missing trigger time or offset means the channel has no reminder.
    Naive datetimes are taken as UTC.
    """
    if trigger_at is None or offset_minutes is None:
        return False
    now = ensure_utc(now)
    trigger_at = ensure_utc(trigger_at)
    return now < trigger_at <= now + timedelta(minutes=offset_minutes)


def due_channels(
    now: datetime, candidates: Iterable[ReminderCandidate]
) -> list[ReminderCandidate]:
    """Filter *candidates* down to the ones due at *now*, preserving order."""
    return [c for c in candidates if is_due(now, c.trigger_at, c.offset_minutes)]
