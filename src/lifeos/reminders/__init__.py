"""Reminder scanning: window evaluation, message text, push fan-out."""

from lifeos.reminders.dispatcher import DispatchReport, NotificationDispatcher
from lifeos.reminders.scan import ReminderScanJob, ScanReport
from lifeos.reminders.window import DEFAULT_TICK_SECONDS, due_channels, is_due

__all__ = [
    "DEFAULT_TICK_SECONDS",
    "DispatchReport",
    "NotificationDispatcher",
    "ReminderScanJob",
    "ScanReport",
    "due_channels",
    "is_due",
]
