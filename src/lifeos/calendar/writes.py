"""Inline push of local event writes to Google Calendar.

Called by the event write endpoints after the local row has been written.
Remote failures never fail the local write: they are logged and the event
stays as it is locally. Accounts without credentials behave as local-only.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from lifeos.calendar.provider import CalendarError, CalendarProvider, EventChanges
from lifeos.google_oauth import AccountNotConnectedError, OAuthError
from lifeos.models import GOOGLE_PROVIDER, AccountKey, LocalEvent, MirrorFields
from lifeos.store import CalendarStore

logger = logging.getLogger(__name__)

_TIME_FIELDS = ("start_time", "end_time", "is_all_day")


def changes_for_patch(event: LocalEvent, changes: Mapping[str, Any]) -> EventChanges:
    """Translate a local update into the remote patch.

    Only fields present in *changes* are patched; an empty title is not sent.
    When any time field changed, start, end and all-day are sent together,
    taking unchanged values from *event*.
    """
    patch: dict[str, Any] = {}
    if changes.get("title"):
        patch["title"] = changes["title"]
    for key in ("description", "location"):
        if key in changes:
            patch[key] = changes[key]
    if any(key in changes for key in _TIME_FIELDS):
        patch["start_time"] = changes.get("start_time") or event.start_time
        patch["end_time"] = changes.get("end_time") or event.end_time
        is_all_day = changes.get("is_all_day")
        patch["is_all_day"] = event.is_all_day if is_all_day is None else bool(is_all_day)
    return EventChanges(**patch)


class CalendarWriteThrough:
    def __init__(self, store: CalendarStore, provider: CalendarProvider) -> None:
        self._store = store
        self._provider = provider

    async def push_created(self, event_id: str, account: AccountKey) -> LocalEvent | None:
        """Create the remote copy of a new local event and link the two.

        Returns the (possibly linked) local event, or None if it does not exist.
        """
        event = await self._store.get_event(event_id)
        if event is None:
            return None
        if event.is_mirror:
            return event

        try:
            remote_id = await self._provider.insert_event(account, MirrorFields.from_local(event))
        except AccountNotConnectedError:
            logger.debug("Account %s has no calendar connection; event %s stays local", account, event_id)
            return event
        except (OAuthError, CalendarError) as exc:
            logger.warning("Failed to push new event %s to Google Calendar: %s", event_id, exc)
            return event

        await self._store.link_event_to_remote(event.id, remote_id, provider=GOOGLE_PROVIDER)
        logger.info("Linked local event %s to Google event %s", event.id, remote_id)
        return event.model_copy(
            update={"provider": GOOGLE_PROVIDER, "google_event_id": remote_id, "is_from_google": True}
        )

    async def push_updated(
        self, event_id: str, account: AccountKey, changes: Mapping[str, Any]
    ) -> bool:
        """Patch the remote copy of a linked event. Returns True when a patch was sent."""
        event = await self._store.get_event(event_id)
        if event is None or not event.is_mirror or event.google_event_id is None:
            return False
        remote_id = event.google_event_id

        patch = changes_for_patch(event, changes)
        if patch.is_empty:
            return False

        try:
            await self._provider.patch_event(account, remote_id, patch)
        except AccountNotConnectedError:
            logger.debug("Account %s has no calendar connection; update of %s stays local", account, event_id)
            return False
        except (OAuthError, CalendarError) as exc:
            logger.warning("Failed to push update of event %s to Google Calendar: %s", event_id, exc)
            return False
        return True

    async def delete_event(self, event_id: str, account: AccountKey | None = None) -> bool:
        """Delete remotely (best effort) and then always locally.

        Returns False when the local event does not exist.
        """
        event = await self._store.get_event(event_id)
        if event is None:
            return False

        remote_id = event.google_event_id if event.is_mirror else None
        if remote_id is not None and account is not None:
            try:
                deleted = await self._provider.delete_event(account, remote_id)
                if not deleted:
                    logger.info("Google event %s was already gone", remote_id)
            except AccountNotConnectedError:
                logger.debug("Account %s has no calendar connection; deleting %s locally", account, event_id)
            except (OAuthError, CalendarError) as exc:
                # Next sync re-creates the mirror if the remote event still exists.
                logger.warning(
                    "Failed to delete Google event %s; deleting locally anyway: %s",
                    remote_id,
                    exc,
                )

        return await self._store.delete_event(event_id)
