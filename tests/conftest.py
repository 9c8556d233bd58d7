"""Shared fixtures and in-memory doubles for the engine test suite."""

from __future__ import annotations

import itertools
import shutil
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import pytest

from lifeos.calendar.provider import CalendarProvider, EventChanges
from lifeos.google_oauth import AccountNotConnectedError
from lifeos.models import (
    GOOGLE_PROVIDER,
    AccountCredentials,
    AccountKey,
    DeviceEndpoint,
    LocalEvent,
    MirrorFields,
    NotificationLogEntry,
    OAuthClientSettings,
    Priority,
    ReminderCandidate,
    ReminderChannel,
    RemoteEvent,
    Workspace,
)
from lifeos.push import DeliveryResult

if TYPE_CHECKING:
    from asyncpg.pool import Pool
    from testcontainers.postgres import PostgresContainer

docker_available = shutil.which("docker") is not None

NOW = datetime(2026, 3, 2, 9, 0, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


@dataclass
class TaskRow:
    id: str
    workspace_id: str | None
    title: str
    priority: str = "medium"
    start_date: datetime | None = None
    due_date: datetime | None = None
    reminder_minutes: int | None = None
    reminder2_minutes: int | None = None
    reminder_sent: bool = False
    reminder2_sent: bool = False


class InMemoryStore:
    """Dict-backed implementation of :class:`lifeos.store.Store`."""

    def __init__(self) -> None:
        self.workspaces: dict[str, Workspace] = {}
        self.tasks: dict[str, TaskRow] = {}
        self.events: dict[str, LocalEvent] = {}
        self.endpoints: dict[str, DeviceEndpoint] = {}
        self.credentials: dict[AccountKey, AccountCredentials] = {}
        self.oauth_settings: dict[str, OAuthClientSettings] = {}
        self.notification_logs: list[NotificationLogEntry] = []
        self.writes: list[tuple[str, str]] = []
        self._ids = itertools.count(1)

    # -- seeding helpers ---------------------------------------------------

    def add_workspace(self, workspace_id: str, owner_user_id: str | None) -> Workspace:
        workspace = Workspace(id=workspace_id, owner_user_id=owner_user_id)
        self.workspaces[workspace_id] = workspace
        return workspace

    def add_task(self, **kwargs: Any) -> TaskRow:
        kwargs.setdefault("id", f"task-{next(self._ids)}")
        task = TaskRow(**kwargs)
        self.tasks[task.id] = task
        return task

    def add_event(self, **kwargs: Any) -> LocalEvent:
        kwargs.setdefault("id", f"evt-{next(self._ids)}")
        event = LocalEvent(**kwargs)
        self.events[event.id] = event
        return event

    def add_endpoint(self, user_id: str, endpoint_id: str | None = None) -> DeviceEndpoint:
        endpoint_id = endpoint_id or f"ep-{next(self._ids)}"
        endpoint = DeviceEndpoint(
            id=endpoint_id,
            user_id=user_id,
            endpoint=f"https://push.example.test/{endpoint_id}",
            p256dh="p256dh-key",
            auth="auth-secret",
        )
        self.endpoints[endpoint.id] = endpoint
        return endpoint

    # -- reminders ---------------------------------------------------------

    async def list_candidate_events_for_reminder(
        self, now: datetime, default_offset_minutes: int | None = None
    ) -> list[ReminderCandidate]:
        candidates = []
        for event in self.events.values():
            offset = event.reminder_minutes
            if offset is None:
                offset = default_offset_minutes
            if event.reminder_sent or offset is None or event.start_time <= now:
                continue
            candidates.append(
                ReminderCandidate(
                    entity_id=event.id,
                    workspace_id=event.workspace_id,
                    title=event.title,
                    channel=ReminderChannel.EVENT_START,
                    trigger_at=event.start_time,
                    offset_minutes=offset,
                )
            )
        return candidates

    async def list_candidate_tasks_for_reminder(
        self, channel: ReminderChannel
    ) -> list[ReminderCandidate]:
        candidates = []
        for task in self.tasks.values():
            if channel is ReminderChannel.TASK_START:
                trigger, offset, sent = task.start_date, task.reminder_minutes, task.reminder_sent
            else:
                trigger, offset, sent = task.due_date, task.reminder2_minutes, task.reminder2_sent
            if sent or trigger is None or offset is None:
                continue
            candidates.append(
                ReminderCandidate(
                    entity_id=task.id,
                    workspace_id=task.workspace_id,
                    title=task.title,
                    priority=task.priority,
                    channel=channel,
                    trigger_at=trigger,
                    offset_minutes=offset,
                )
            )
        return candidates

    async def mark_event_reminder_sent(self, event_id: str) -> bool:
        event = self.events.get(event_id)
        if event is None or event.reminder_sent:
            return False
        self.events[event_id] = event.model_copy(update={"reminder_sent": True})
        self.writes.append(("mark_event", event_id))
        return True

    async def mark_task_reminder_sent(self, task_id: str, channel: ReminderChannel) -> bool:
        task = self.tasks.get(task_id)
        if task is None:
            return False
        flag = "reminder_sent" if channel is ReminderChannel.TASK_START else "reminder2_sent"
        if getattr(task, flag):
            return False
        setattr(task, flag, True)
        self.writes.append((f"mark_{channel.value}", task_id))
        return True

    async def get_workspace(self, workspace_id: str) -> Workspace | None:
        return self.workspaces.get(workspace_id)

    async def create_notification_log(self, entry: NotificationLogEntry) -> None:
        self.notification_logs.append(entry)

    # -- devices -----------------------------------------------------------

    async def list_device_endpoints(self, user_id: str) -> list[DeviceEndpoint]:
        return [e for e in self.endpoints.values() if e.user_id == user_id]

    async def delete_device_endpoint(self, endpoint_id: str) -> bool:
        return self.endpoints.pop(endpoint_id, None) is not None

    # -- credentials -------------------------------------------------------

    async def list_connected_accounts(self) -> list[AccountKey]:
        now = datetime.now(UTC)
        return [
            account
            for account, creds in self.credentials.items()
            if creds.refresh_token or creds.expires_at is None or creds.expires_at > now
        ]

    async def get_credentials(self, account: AccountKey) -> AccountCredentials | None:
        return self.credentials.get(account)

    async def save_credentials(
        self, account: AccountKey, credentials: AccountCredentials
    ) -> AccountCredentials:
        existing = self.credentials.get(account)
        refresh_token = credentials.refresh_token or None
        if refresh_token is None and existing is not None:
            refresh_token = existing.refresh_token
        saved = AccountCredentials(
            access_token=credentials.access_token,
            refresh_token=refresh_token,
            expires_at=credentials.expires_at,
        )
        self.credentials[account] = saved
        return saved

    async def delete_credentials(self, account: AccountKey) -> bool:
        return self.credentials.pop(account, None) is not None

    async def get_oauth_client_settings(self, workspace_id: str) -> OAuthClientSettings | None:
        return self.oauth_settings.get(workspace_id)

    # -- events ------------------------------------------------------------

    async def get_event(self, event_id: str) -> LocalEvent | None:
        return self.events.get(event_id)

    async def upsert_local_event_mirror(
        self,
        workspace_id: str,
        remote_id: str,
        fields: MirrorFields,
        *,
        provider: str = GOOGLE_PROVIDER,
    ) -> str:
        values = fields.model_dump()
        for event in self.events.values():
            if event.provider == provider and event.google_event_id == remote_id:
                updated = event.model_copy(
                    update={**values, "workspace_id": workspace_id, "is_from_google": True}
                )
                self.events[event.id] = updated
                self.writes.append(("update", event.id))
                return event.id
        event = self.add_event(
            workspace_id=workspace_id,
            provider=provider,
            google_event_id=remote_id,
            is_from_google=True,
            **values,
        )
        self.writes.append(("insert", event.id))
        return event.id

    async def list_local_mirrors_for_workspace(self, workspace_id: str) -> list[LocalEvent]:
        return [e for e in self.events.values() if e.workspace_id == workspace_id and e.is_mirror]

    async def link_event_to_remote(
        self, event_id: str, remote_id: str, *, provider: str = GOOGLE_PROVIDER
    ) -> None:
        event = self.events[event_id]
        self.events[event_id] = event.model_copy(
            update={"provider": provider, "google_event_id": remote_id, "is_from_google": True}
        )
        self.writes.append(("link", event_id))

    async def delete_event(self, event_id: str) -> bool:
        removed = self.events.pop(event_id, None) is not None
        if removed:
            self.writes.append(("delete", event_id))
        return removed


# ---------------------------------------------------------------------------
# Push transport double
# ---------------------------------------------------------------------------


class FakePushTransport:
    """Records sends; per-endpoint outcomes can be scripted."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.outcomes: dict[str, DeliveryResult | Exception] = {}

    async def send(self, endpoint: DeviceEndpoint, payload: str) -> DeliveryResult:
        self.sent.append((endpoint.id, payload))
        outcome = self.outcomes.get(endpoint.id)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is not None:
            return outcome
        return DeliveryResult(endpoint_id=endpoint.id, delivered=True)


# ---------------------------------------------------------------------------
# Calendar provider double
# ---------------------------------------------------------------------------


@dataclass
class FakeCalendarProvider(CalendarProvider):
    """In-memory remote calendar keyed by account."""

    remote: dict[AccountKey, list[RemoteEvent]] = field(default_factory=dict)
    connected: set[AccountKey] | None = None
    errors: dict[str, Exception] = field(default_factory=dict)
    calls: list[tuple[str, Any]] = field(default_factory=list)
    already_gone: set[str] = field(default_factory=set)
    _ids: Iterator[int] = field(default_factory=lambda: itertools.count(1))

    @property
    def name(self) -> str:
        return "fake"

    def _check(self, operation: str, account: AccountKey) -> None:
        if self.connected is not None and account not in self.connected:
            raise AccountNotConnectedError(f"{account} not connected")
        if operation in self.errors:
            raise self.errors[operation]

    async def list_upcoming_events(
        self, account: AccountKey, *, window_start: datetime, limit: int = 50
    ) -> list[RemoteEvent]:
        self.calls.append(("list", account))
        self._check("list", account)
        upcoming = [e for e in self.remote.get(account, []) if e.end >= window_start]
        return sorted(upcoming, key=lambda e: e.start)[:limit]

    async def insert_event(self, account: AccountKey, fields: MirrorFields) -> str:
        self.calls.append(("insert", fields))
        self._check("insert", account)
        return f"g-new-{next(self._ids)}"

    async def patch_event(self, account: AccountKey, remote_id: str, changes: EventChanges) -> None:
        self.calls.append(("patch", (remote_id, changes)))
        self._check("patch", account)

    async def delete_event(self, account: AccountKey, remote_id: str) -> bool:
        self.calls.append(("delete", remote_id))
        self._check("delete", account)
        return remote_id not in self.already_gone


def remote_event(remote_id: str, start: datetime, end: datetime, **kwargs: Any) -> RemoteEvent:
    kwargs.setdefault("title", f"Remote {remote_id}")
    return RemoteEvent(remote_id=remote_id, start=start, end=end, **kwargs)


def candidate(**kwargs: Any) -> ReminderCandidate:
    kwargs.setdefault("entity_id", "task-1")
    kwargs.setdefault("workspace_id", "ws-1")
    kwargs.setdefault("title", "Write report")
    kwargs.setdefault("channel", ReminderChannel.TASK_START)
    kwargs.setdefault("trigger_at", NOW)
    kwargs.setdefault("offset_minutes", 30)
    kwargs.setdefault("priority", Priority.MEDIUM)
    return ReminderCandidate(**kwargs)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def transport() -> FakePushTransport:
    return FakePushTransport()


@pytest.fixture
def provider() -> FakeCalendarProvider:
    return FakeCalendarProvider()


@pytest.fixture
def account() -> AccountKey:
    return AccountKey(user_id="user-1", workspace_id="ws-1")


def _unique_test_db_name() -> str:
    return f"lifeos_test_{uuid.uuid4().hex[:12]}"


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer; every test provisions its own database."""
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
def provisioned_postgres_pool(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Pool]]:
    """Create a fresh database and asyncpg pool for a single test usage.

    Usage::

        async with provisioned_postgres_pool() as pool:
            ...
    """
    from lifeos.db import Database

    @asynccontextmanager
    async def _provision() -> AsyncIterator[Pool]:
        db = Database(
            db_name=_unique_test_db_name(),
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
            max_pool_size=3,
        )
        await db.provision()
        pool = await db.connect()
        try:
            yield pool
        finally:
            await db.close()

    return _provision
