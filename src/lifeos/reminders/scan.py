"""Periodic reminder scan: fetch candidates, evaluate, dispatch, mark sent.

One tick walks three candidate queries (event start, task start, task
deadline). Every due channel is dispatched and then marked sent, whatever
the delivery outcome, so that a channel fires at most once. A crash between
dispatch and mark-sent can repeat that one reminder on the next tick.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from lifeos.core.metrics import record_reminder_fired
from lifeos.models import NotificationLogEntry, ReminderCandidate, ReminderChannel, ensure_utc
from lifeos.reminders.dispatcher import DispatchReport, NotificationDispatcher
from lifeos.reminders.messages import build_message
from lifeos.reminders.window import due_channels
from lifeos.store import ReminderStore

logger = logging.getLogger(__name__)

JOB_NAME = "reminder_scan"


@dataclass
class ScanReport:
    """Summary of one scan tick."""

    candidates: int = 0
    due: int = 0
    fired: list[tuple[str, ReminderChannel]] = field(default_factory=list)
    skipped: int = 0
    errors: int = 0
    failed_queries: list[ReminderChannel] = field(default_factory=list)


def delivery_status(report: DispatchReport) -> str:
    if report.attempted == 0:
        return "no_devices"
    return "sent" if report.delivered else "failed"


class ReminderScanJob:
    def __init__(
        self,
        store: ReminderStore,
        dispatcher: NotificationDispatcher,
        *,
        default_event_reminder_minutes: int | None = None,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._default_event_offset = default_event_reminder_minutes

    async def run_tick(self, now: datetime | None = None) -> ScanReport:
        """Run one scan at *now* (defaults to the current UTC time)."""
        now = ensure_utc(now) if now is not None else datetime.now(UTC)
        report = ScanReport()

        queries: list[tuple[ReminderChannel, Callable[[], Awaitable[list[ReminderCandidate]]]]] = [
            (
                ReminderChannel.EVENT_START,
                lambda: self._store.list_candidate_events_for_reminder(
                    now, self._default_event_offset
                ),
            ),
            (
                ReminderChannel.TASK_START,
                lambda: self._store.list_candidate_tasks_for_reminder(ReminderChannel.TASK_START),
            ),
            (
                ReminderChannel.TASK_DEADLINE,
                lambda: self._store.list_candidate_tasks_for_reminder(
                    ReminderChannel.TASK_DEADLINE
                ),
            ),
        ]

        for channel, fetch in queries:
            try:
                candidates = await fetch()
            except Exception:
                logger.exception("Failed to fetch %s reminder candidates", channel)
                report.failed_queries.append(channel)
                continue

            report.candidates += len(candidates)
            due = due_channels(now, candidates)
            report.due += len(due)
            for candidate in due:
                await self._fire(candidate, report)

        if report.fired or report.errors or report.failed_queries:
            logger.info(
                "Reminder scan: %d fired, %d skipped, %d errors, %d failed queries",
                len(report.fired),
                report.skipped,
                report.errors,
                len(report.failed_queries),
            )
        return report

    async def _fire(self, candidate: ReminderCandidate, report: ScanReport) -> None:
        try:
            user_id = await self._resolve_owner(candidate)
            if user_id is None:
                report.skipped += 1
                return

            message = build_message(candidate)
            dispatch = await self._dispatcher.dispatch(
                user_id, message.title, message.body, message.link_path
            )

            if not await self._mark_sent(candidate):
                logger.debug(
                    "%s reminder for %s was already marked sent", candidate.channel, candidate.entity_id
                )
            report.fired.append((candidate.entity_id, candidate.channel))
            record_reminder_fired(candidate.channel.value)
        except Exception:
            report.errors += 1
            logger.exception(
                "Failed to process %s reminder for %s", candidate.channel, candidate.entity_id
            )
            return

        try:
            await self._store.create_notification_log(
                NotificationLogEntry(
                    user_id=user_id,
                    workspace_id=candidate.workspace_id,
                    title=message.title,
                    body=message.body,
                    type=message.log_type,
                    related_id=candidate.entity_id,
                    delivery_status=delivery_status(dispatch),
                )
            )
        except Exception:
            logger.exception("Failed to write notification log for %s", candidate.entity_id)

    async def _resolve_owner(self, candidate: ReminderCandidate) -> str | None:
        # An unowned candidate stays unsent and is re-evaluated next tick.
        if candidate.workspace_id is None:
            logger.debug("Reminder candidate %s has no workspace; skipping", candidate.entity_id)
            return None
        workspace = await self._store.get_workspace(candidate.workspace_id)
        if workspace is None or not workspace.owner_user_id:
            logger.debug(
                "Workspace %s of reminder candidate %s has no owner; skipping",
                candidate.workspace_id,
                candidate.entity_id,
            )
            return None
        return workspace.owner_user_id

    async def _mark_sent(self, candidate: ReminderCandidate) -> bool:
        if candidate.channel is ReminderChannel.EVENT_START:
            return await self._store.mark_event_reminder_sent(candidate.entity_id)
        return await self._store.mark_task_reminder_sent(candidate.entity_id, candidate.channel)
