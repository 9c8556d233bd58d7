"""Data-store contract used by both periodic jobs, plus its asyncpg implementation.

The relational schema belongs to the rest of the application; this module only
touches the columns the engine needs. :meth:`PostgresStore.ensure_schema`
creates them idempotently so the engine can run against an empty database in
development and tests.

Each mark-sent write is a single conditional ``UPDATE … WHERE sent = false``:
it is its own atomic unit and reports whether this call performed the
false→true transition.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

from lifeos.models import (
    GOOGLE_PROVIDER,
    AccountCredentials,
    AccountKey,
    DeviceEndpoint,
    LocalEvent,
    MirrorFields,
    NotificationLogEntry,
    OAuthClientSettings,
    ReminderCandidate,
    ReminderChannel,
    Workspace,
)

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_TASK_CHANNEL_COLUMNS: dict[ReminderChannel, tuple[str, str, str]] = {
    # channel -> (trigger column, offset column, sent-flag column)
    ReminderChannel.TASK_START: ("start_date", "reminder_minutes", "reminder_sent"),
    ReminderChannel.TASK_DEADLINE: ("due_date", "reminder2_minutes", "reminder2_sent"),
}

_SCHEMA_DDL = (
    """
    CREATE TABLE IF NOT EXISTS workspaces (
        id      TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
        name    TEXT NOT NULL DEFAULT '',
        user_id TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id                TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
        workspace_id      TEXT NOT NULL REFERENCES workspaces (id) ON DELETE CASCADE,
        title             TEXT NOT NULL,
        priority          TEXT NOT NULL DEFAULT 'medium',
        start_date        TIMESTAMPTZ,
        due_date          TIMESTAMPTZ,
        reminder_minutes  INTEGER,
        reminder2_minutes INTEGER,
        reminder_sent     BOOLEAN NOT NULL DEFAULT false,
        reminder2_sent    BOOLEAN NOT NULL DEFAULT false
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS events (
        id               TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
        workspace_id     TEXT REFERENCES workspaces (id) ON DELETE CASCADE,
        provider         TEXT,
        google_event_id  TEXT,
        title            TEXT NOT NULL,
        description      TEXT,
        start_time       TIMESTAMPTZ NOT NULL,
        end_time         TIMESTAMPTZ NOT NULL,
        is_all_day       BOOLEAN NOT NULL DEFAULT false,
        color            TEXT,
        location         TEXT,
        reminder_minutes INTEGER,
        reminder_sent    BOOLEAN NOT NULL DEFAULT false,
        is_from_google   BOOLEAN NOT NULL DEFAULT false,
        CONSTRAINT events_mirror_has_remote_id
            CHECK (NOT is_from_google OR google_event_id IS NOT NULL),
        CONSTRAINT events_provider_remote_id_unique UNIQUE (provider, google_event_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS push_subscriptions (
        id         TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
        user_id    TEXT NOT NULL,
        endpoint   TEXT NOT NULL UNIQUE,
        p256dh     TEXT NOT NULL,
        auth       TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS google_oauth_settings (
        workspace_id  TEXT PRIMARY KEY,
        client_id     TEXT NOT NULL,
        client_secret TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS google_calendar_tokens (
        user_id       TEXT NOT NULL,
        workspace_id  TEXT NOT NULL,
        access_token  TEXT NOT NULL,
        refresh_token TEXT,
        expires_at    TIMESTAMPTZ,
        updated_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (user_id, workspace_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notification_logs (
        id              TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
        user_id         TEXT NOT NULL,
        workspace_id    TEXT,
        title           TEXT NOT NULL,
        body            TEXT NOT NULL,
        type            TEXT NOT NULL,
        related_id      TEXT,
        delivery_status TEXT NOT NULL,
        sent_at         TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_push_subscriptions_user ON push_subscriptions (user_id)",
    "CREATE INDEX IF NOT EXISTS ix_events_workspace ON events (workspace_id)",
)


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class ReminderStore(Protocol):
    async def list_candidate_events_for_reminder(
        self, now: datetime, default_offset_minutes: int | None = None
    ) -> list[ReminderCandidate]: ...

    async def list_candidate_tasks_for_reminder(
        self, channel: ReminderChannel
    ) -> list[ReminderCandidate]: ...

    async def mark_event_reminder_sent(self, event_id: str) -> bool: ...

    async def mark_task_reminder_sent(self, task_id: str, channel: ReminderChannel) -> bool: ...

    async def get_workspace(self, workspace_id: str) -> Workspace | None: ...

    async def create_notification_log(self, entry: NotificationLogEntry) -> None: ...


class DeviceStore(Protocol):
    async def list_device_endpoints(self, user_id: str) -> list[DeviceEndpoint]: ...

    async def delete_device_endpoint(self, endpoint_id: str) -> bool: ...


class CredentialStore(Protocol):
    async def list_connected_accounts(self) -> list[AccountKey]: ...

    async def get_credentials(self, account: AccountKey) -> AccountCredentials | None: ...

    async def save_credentials(
        self, account: AccountKey, credentials: AccountCredentials
    ) -> AccountCredentials: ...

    async def delete_credentials(self, account: AccountKey) -> bool: ...

    async def get_oauth_client_settings(self, workspace_id: str) -> OAuthClientSettings | None: ...


class CalendarStore(Protocol):
    async def get_event(self, event_id: str) -> LocalEvent | None: ...

    async def upsert_local_event_mirror(
        self,
        workspace_id: str,
        remote_id: str,
        fields: MirrorFields,
        *,
        provider: str = GOOGLE_PROVIDER,
    ) -> str: ...

    async def list_local_mirrors_for_workspace(self, workspace_id: str) -> list[LocalEvent]: ...

    async def link_event_to_remote(
        self, event_id: str, remote_id: str, *, provider: str = GOOGLE_PROVIDER
    ) -> None: ...

    async def delete_event(self, event_id: str) -> bool: ...


class Store(ReminderStore, DeviceStore, CredentialStore, CalendarStore, Protocol):
    """Everything the engine reads from or writes to the relational store."""


# ---------------------------------------------------------------------------
# asyncpg implementation
# ---------------------------------------------------------------------------


def _affected_rows(status: str) -> int:
    """Return the row count from an asyncpg command status such as ``UPDATE 1``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0


def _normalize_refresh_token(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def _row_to_event(row: Any) -> LocalEvent:
    return LocalEvent(**dict(row))


class PostgresStore:
    """:class:`Store` backed by an asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def ensure_schema(self) -> None:
        async with self.pool.acquire() as conn:
            for ddl in _SCHEMA_DDL:
                await conn.execute(ddl)
        logger.info("Engine tables ensured")

    # -- reminders ---------------------------------------------------------

    async def list_candidate_events_for_reminder(
        self, now: datetime, default_offset_minutes: int | None = None
    ) -> list[ReminderCandidate]:
        rows = await self.pool.fetch(
            """
            SELECT id, workspace_id, title, start_time,
                   COALESCE(reminder_minutes, $2::integer) AS offset_minutes
            FROM events
            WHERE reminder_sent = false
              AND start_time > $1
              AND COALESCE(reminder_minutes, $2::integer) IS NOT NULL
            """,
            now,
            default_offset_minutes,
        )
        return [
            ReminderCandidate(
                entity_id=row["id"],
                workspace_id=row["workspace_id"],
                title=row["title"],
                channel=ReminderChannel.EVENT_START,
                trigger_at=row["start_time"],
                offset_minutes=row["offset_minutes"],
            )
            for row in rows
        ]

    async def list_candidate_tasks_for_reminder(
        self, channel: ReminderChannel
    ) -> list[ReminderCandidate]:
        trigger_col, offset_col, sent_col = _TASK_CHANNEL_COLUMNS[channel]
        rows = await self.pool.fetch(
            f"""
            SELECT id, workspace_id, title, priority,
                   {trigger_col} AS trigger_at, {offset_col} AS offset_minutes
            FROM tasks
            WHERE {sent_col} = false
              AND {trigger_col} IS NOT NULL
              AND {offset_col} IS NOT NULL
            """
        )
        return [
            ReminderCandidate(
                entity_id=row["id"],
                workspace_id=row["workspace_id"],
                title=row["title"],
                priority=row["priority"],
                channel=channel,
                trigger_at=row["trigger_at"],
                offset_minutes=row["offset_minutes"],
            )
            for row in rows
        ]

    async def mark_event_reminder_sent(self, event_id: str) -> bool:
        status = await self.pool.execute(
            "UPDATE events SET reminder_sent = true WHERE id = $1 AND reminder_sent = false",
            event_id,
        )
        return _affected_rows(status) == 1

    async def mark_task_reminder_sent(self, task_id: str, channel: ReminderChannel) -> bool:
        _, _, sent_col = _TASK_CHANNEL_COLUMNS[channel]
        status = await self.pool.execute(
            f"UPDATE tasks SET {sent_col} = true WHERE id = $1 AND {sent_col} = false",
            task_id,
        )
        return _affected_rows(status) == 1

    async def get_workspace(self, workspace_id: str) -> Workspace | None:
        row = await self.pool.fetchrow(
            "SELECT id, user_id AS owner_user_id FROM workspaces WHERE id = $1",
            workspace_id,
        )
        return Workspace(**dict(row)) if row is not None else None

    async def create_notification_log(self, entry: NotificationLogEntry) -> None:
        await self.pool.execute(
            """
            INSERT INTO notification_logs
                (user_id, workspace_id, title, body, type, related_id, delivery_status)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            """,
            entry.user_id,
            entry.workspace_id,
            entry.title,
            entry.body,
            entry.type,
            entry.related_id,
            entry.delivery_status,
        )

    # -- devices -----------------------------------------------------------

    async def list_device_endpoints(self, user_id: str) -> list[DeviceEndpoint]:
        rows = await self.pool.fetch(
            "SELECT id, user_id, endpoint, p256dh, auth FROM push_subscriptions WHERE user_id = $1",
            user_id,
        )
        return [DeviceEndpoint(**dict(row)) for row in rows]

    async def delete_device_endpoint(self, endpoint_id: str) -> bool:
        status = await self.pool.execute("DELETE FROM push_subscriptions WHERE id = $1", endpoint_id)
        return _affected_rows(status) == 1

    # -- credentials -------------------------------------------------------

    async def list_connected_accounts(self) -> list[AccountKey]:
        # Accounts whose access token is expired and cannot be refreshed are
        # not connected any more.
        rows = await self.pool.fetch(
            """
            SELECT user_id, workspace_id
            FROM google_calendar_tokens
            WHERE refresh_token IS NOT NULL
               OR expires_at IS NULL
               OR expires_at > now()
            ORDER BY user_id, workspace_id
            """
        )
        return [AccountKey(user_id=row["user_id"], workspace_id=row["workspace_id"]) for row in rows]

    async def get_credentials(self, account: AccountKey) -> AccountCredentials | None:
        row = await self.pool.fetchrow(
            """
            SELECT access_token, refresh_token, expires_at
            FROM google_calendar_tokens
            WHERE user_id = $1 AND workspace_id = $2
            """,
            account.user_id,
            account.workspace_id,
        )
        return AccountCredentials(**dict(row)) if row is not None else None

    async def save_credentials(
        self, account: AccountKey, credentials: AccountCredentials
    ) -> AccountCredentials:
        # COALESCE keeps refresh tokens sticky: a null never overwrites a stored one.
        row = await self.pool.fetchrow(
            """
            INSERT INTO google_calendar_tokens
                (user_id, workspace_id, access_token, refresh_token, expires_at)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (user_id, workspace_id) DO UPDATE SET
                access_token  = EXCLUDED.access_token,
                refresh_token = COALESCE(EXCLUDED.refresh_token,
                                         google_calendar_tokens.refresh_token),
                expires_at    = EXCLUDED.expires_at,
                updated_at    = now()
            RETURNING access_token, refresh_token, expires_at
            """,
            account.user_id,
            account.workspace_id,
            credentials.access_token,
            _normalize_refresh_token(credentials.refresh_token),
            credentials.expires_at,
        )
        logger.info("Calendar credentials saved for account %s", account)
        return AccountCredentials(**dict(row))

    async def delete_credentials(self, account: AccountKey) -> bool:
        status = await self.pool.execute(
            "DELETE FROM google_calendar_tokens WHERE user_id = $1 AND workspace_id = $2",
            account.user_id,
            account.workspace_id,
        )
        return _affected_rows(status) == 1

    async def get_oauth_client_settings(self, workspace_id: str) -> OAuthClientSettings | None:
        row = await self.pool.fetchrow(
            "SELECT client_id, client_secret FROM google_oauth_settings WHERE workspace_id = $1",
            workspace_id,
        )
        return OAuthClientSettings(**dict(row)) if row is not None else None

    # -- events ------------------------------------------------------------

    _EVENT_COLUMNS = (
        "id, workspace_id, title, description, start_time, end_time, is_all_day, location, "
        "color, reminder_minutes, reminder_sent, provider, google_event_id, is_from_google"
    )

    async def get_event(self, event_id: str) -> LocalEvent | None:
        row = await self.pool.fetchrow(
            f"SELECT {self._EVENT_COLUMNS} FROM events WHERE id = $1",
            event_id,
        )
        return _row_to_event(row) if row is not None else None

    async def upsert_local_event_mirror(
        self,
        workspace_id: str,
        remote_id: str,
        fields: MirrorFields,
        *,
        provider: str = GOOGLE_PROVIDER,
    ) -> str:
        return await self.pool.fetchval(
            """
            INSERT INTO events
                (workspace_id, provider, google_event_id, title, description,
                 start_time, end_time, is_all_day, location, color, is_from_google)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, true)
            ON CONFLICT (provider, google_event_id) DO UPDATE SET
                workspace_id   = EXCLUDED.workspace_id,
                title          = EXCLUDED.title,
                description    = EXCLUDED.description,
                start_time     = EXCLUDED.start_time,
                end_time       = EXCLUDED.end_time,
                is_all_day     = EXCLUDED.is_all_day,
                location       = EXCLUDED.location,
                color          = EXCLUDED.color,
                is_from_google = true
            RETURNING id
            """,
            workspace_id,
            provider,
            remote_id,
            fields.title,
            fields.description,
            fields.start_time,
            fields.end_time,
            fields.is_all_day,
            fields.location,
            fields.color,
        )

    async def list_local_mirrors_for_workspace(self, workspace_id: str) -> list[LocalEvent]:
        rows = await self.pool.fetch(
            f"""
            SELECT {self._EVENT_COLUMNS}
            FROM events
            WHERE workspace_id = $1
              AND is_from_google = true
              AND google_event_id IS NOT NULL
            """,
            workspace_id,
        )
        return [_row_to_event(row) for row in rows]

    async def link_event_to_remote(
        self, event_id: str, remote_id: str, *, provider: str = GOOGLE_PROVIDER
    ) -> None:
        await self.pool.execute(
            """
            UPDATE events
            SET provider = $2, google_event_id = $3, is_from_google = true
            WHERE id = $1
            """,
            event_id,
            provider,
            remote_id,
        )

    async def delete_event(self, event_id: str) -> bool:
        status = await self.pool.execute("DELETE FROM events WHERE id = $1", event_id)
        return _affected_rows(status) == 1
