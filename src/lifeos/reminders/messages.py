"""Notification text for fired reminders."""

from __future__ import annotations

from dataclasses import dataclass

from lifeos.models import Priority, ReminderCandidate, ReminderChannel

TASKS_PATH = "/tasks"
CALENDAR_PATH = "/calendar"

_PRIORITY_EMOJI = {
    Priority.URGENT: "🚨",
    Priority.HIGH: "🔴",
    Priority.MEDIUM: "🟡",
}
_DEFAULT_EMOJI = "🔵"

# channel -> notification log type
LOG_TYPES = {
    ReminderChannel.EVENT_START: "event_reminder",
    ReminderChannel.TASK_START: "task_start",
    ReminderChannel.TASK_DEADLINE: "task_deadline",
}


@dataclass(frozen=True)
class ReminderMessage:
    title: str
    body: str
    link_path: str
    log_type: str


def priority_emoji(priority: Priority) -> str:
    return _PRIORITY_EMOJI.get(priority, _DEFAULT_EMOJI)


def priority_title(priority: Priority, is_deadline: bool) -> str:
    emoji = priority_emoji(priority)
    if priority is Priority.URGENT:
        return f"{emoji} URGENT: Deadline Approaching!" if is_deadline else f"{emoji} URGENT Task Reminder"
    if priority is Priority.HIGH:
        return f"{emoji} High Priority Deadline!" if is_deadline else f"{emoji} High Priority Task"
    return "⏰ Task Due Soon" if is_deadline else "🔔 Task Reminder"


def format_time_until(minutes: int) -> str:
    """Render a reminder offset: whole days, else whole hours, else minutes."""
    if minutes >= 1440:
        days = minutes // 1440
        return f"{days} day{'s' if days > 1 else ''}"
    if minutes >= 60:
        hours = minutes // 60
        return f"{hours} hour{'s' if hours > 1 else ''}"
    return f"{minutes} minutes"


def build_message(candidate: ReminderCandidate) -> ReminderMessage:
    """Build the push title/body for a due reminder channel."""
    time_str = format_time_until(candidate.offset_minutes or 0)
    log_type = LOG_TYPES[candidate.channel]

    if candidate.channel is ReminderChannel.EVENT_START:
        return ReminderMessage(
            title="📅 Upcoming Event",
            body=f"{candidate.title} starts in {time_str}!",
            link_path=CALENDAR_PATH,
            log_type=log_type,
        )
    if candidate.channel is ReminderChannel.TASK_DEADLINE:
        return ReminderMessage(
            title=priority_title(candidate.priority, is_deadline=True),
            body=f"⚠️ {candidate.title} - only {time_str} left!",
            link_path=TASKS_PATH,
            log_type=log_type,
        )
    return ReminderMessage(
        title=priority_title(candidate.priority, is_deadline=False),
        body=f"📅 {candidate.title} starts in {time_str}",
        link_path=TASKS_PATH,
        log_type=log_type,
    )
