"""Google Calendar reconciliation and write-through."""

from lifeos.calendar.provider import (
    CalendarError,
    CalendarProvider,
    CalendarRequestError,
    EventChanges,
    GoogleCalendarProvider,
)
from lifeos.calendar.sync import CalendarSyncEngine, SyncResult
from lifeos.calendar.writes import CalendarWriteThrough

__all__ = [
    "CalendarError",
    "CalendarProvider",
    "CalendarRequestError",
    "CalendarSyncEngine",
    "CalendarWriteThrough",
    "EventChanges",
    "GoogleCalendarProvider",
    "SyncResult",
]
