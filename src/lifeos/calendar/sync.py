"""Periodic reconciliation of local event mirrors against Google Calendar.

For every connected account one run:

1. fetches up to ``max_results`` upcoming single-occurrence events (the
   provider refreshes the access token on the way when needed);
2. upserts a local mirror per remote event, writing only when the mapped
   fields differ from the stored mirror;
3. deletes every mirror of the workspace whose remote id was not in the
   fetch. Local-only events are never considered.

A second run with no remote changes performs no writes.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

from lifeos.calendar.provider import CalendarError, CalendarProvider
from lifeos.core.metrics import record_mirror_mutations, record_sync_run
from lifeos.google_oauth import AccountNotConnectedError, OAuthError
from lifeos.models import GOOGLE_PROVIDER, AccountKey, MirrorFields, ensure_utc
from lifeos.store import CalendarStore, CredentialStore

logger = logging.getLogger(__name__)

JOB_NAME = "calendar_sync"
DEFAULT_MAX_RESULTS = 50


class SyncStore(CredentialStore, CalendarStore, Protocol):
    pass


@dataclass
class SyncResult:
    account: AccountKey
    status: str = "ok"
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0

    @property
    def mutations(self) -> int:
        return self.inserted + self.updated + self.deleted


class CalendarSyncEngine:
    def __init__(
        self,
        store: SyncStore,
        provider: CalendarProvider,
        *,
        max_results: int = DEFAULT_MAX_RESULTS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._max_results = max_results
        self._clock = clock or (lambda: datetime.now(UTC))

    async def run_tick(self) -> list[SyncResult]:
        """Sync every connected account; one account failing never stops the others."""
        try:
            accounts = await self._store.list_connected_accounts()
        except Exception:
            logger.exception("Failed to list connected calendar accounts")
            return []

        results: list[SyncResult] = []
        for account in accounts:
            result = await self._sync_isolated(account)
            record_sync_run(result.status)
            results.append(result)
        return results

    async def _sync_isolated(self, account: AccountKey) -> SyncResult:
        try:
            return await self.sync_account(account)
        except AccountNotConnectedError:
            logger.debug("Calendar account %s is not connected; skipping", account)
            return SyncResult(account=account, status="skipped")
        except (OAuthError, CalendarError) as exc:
            logger.warning("Calendar sync failed for account %s: %s", account, exc)
            return SyncResult(account=account, status="failed")
        except Exception:
            logger.exception("Calendar sync crashed for account %s", account)
            return SyncResult(account=account, status="failed")

    async def sync_account(self, account: AccountKey, now: datetime | None = None) -> SyncResult:
        """Reconcile the mirrors of one account's workspace with its remote calendar."""
        now = ensure_utc(now) if now is not None else self._clock()
        result = SyncResult(account=account)

        remote_events = await self._provider.list_upcoming_events(
            account, window_start=now, limit=self._max_results
        )
        result.fetched = len(remote_events)

        mirrors = await self._store.list_local_mirrors_for_workspace(account.workspace_id)
        existing = {m.google_event_id: m for m in mirrors if m.google_event_id}

        fetched_ids: set[str] = set()
        for event in remote_events:
            if event.remote_id in fetched_ids:
                continue
            fetched_ids.add(event.remote_id)

            fields = MirrorFields.from_remote(event)
            current = existing.get(event.remote_id)
            if current is not None and MirrorFields.from_local(current) == fields:
                result.unchanged += 1
                continue

            await self._store.upsert_local_event_mirror(
                account.workspace_id, event.remote_id, fields, provider=GOOGLE_PROVIDER
            )
            if current is None:
                result.inserted += 1
            else:
                result.updated += 1

        for remote_id, mirror in existing.items():
            if remote_id in fetched_ids:
                continue
            logger.info(
                "Deleting local event %s: Google event %s is no longer upcoming", mirror.id, remote_id
            )
            if await self._store.delete_event(mirror.id):
                result.deleted += 1

        record_mirror_mutations(
            inserted=result.inserted, updated=result.updated, deleted=result.deleted
        )
        if result.mutations:
            logger.info(
                "Calendar sync for %s: %d inserted, %d updated, %d deleted, %d unchanged",
                account,
                result.inserted,
                result.updated,
                result.deleted,
                result.unchanged,
            )
        return result
