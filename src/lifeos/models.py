"""Domain models shared by the reminder scanner and the calendar sync engine.

Rows coming out of the store are normalised into these pydantic models so the
jobs never depend on a particular driver's record type.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator

GOOGLE_PROVIDER = "google"
GOOGLE_MIRROR_COLOR = "#DB4437"


def ensure_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class Priority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ReminderChannel(StrEnum):
    """An independently triggerable reminder slot.

    Tasks carry two channels (start and deadline), events carry one.
    """

    EVENT_START = "event_start"
    TASK_START = "task_start"
    TASK_DEADLINE = "task_deadline"


class ReminderCandidate(BaseModel):
    """One (entity, channel) pair whose sent-flag is still false."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    entity_id: str
    workspace_id: str | None
    title: str
    channel: ReminderChannel
    trigger_at: datetime | None
    offset_minutes: int | None
    priority: Priority = Priority.MEDIUM

    @field_validator("priority", mode="before")
    @classmethod
    def _coerce_priority(cls, value: object) -> object:
        if value is None:
            return Priority.MEDIUM
        if isinstance(value, str):
            try:
                return Priority(value.strip().lower())
            except ValueError:
                return Priority.MEDIUM
        return value


class Workspace(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    owner_user_id: str | None = None


class DeviceEndpoint(BaseModel):
    """A push subscription registered by one of a user's devices."""

    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str
    endpoint: str
    p256dh: str
    auth: str

    def subscription_info(self) -> dict[str, object]:
        return {"endpoint": self.endpoint, "keys": {"p256dh": self.p256dh, "auth": self.auth}}

    def __repr__(self) -> str:
        return f"DeviceEndpoint(id={self.id!r}, user_id={self.user_id!r})"

    __str__ = __repr__


class AccountKey(BaseModel):
    """A connected calendar account: one user inside one workspace."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    workspace_id: str

    def __str__(self) -> str:
        return f"{self.user_id}@{self.workspace_id}"


class AccountCredentials(BaseModel):
    """Stored provider tokens for an account. Secrets never appear in repr."""

    model_config = ConfigDict(extra="forbid")

    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_at: datetime | None = None

    def __repr__(self) -> str:
        return (
            "AccountCredentials("
            "access_token=<REDACTED>, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"expires_at={self.expires_at!r})"
        )

    __str__ = __repr__


class TokenGrant(BaseModel):
    """Tokens issued by the provider on code exchange or refresh."""

    model_config = ConfigDict(extra="forbid")

    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_at: datetime
    scope: str | None = None

    def __repr__(self) -> str:
        return f"TokenGrant(access_token=<REDACTED>, expires_at={self.expires_at!r})"

    __str__ = __repr__


class OAuthClientSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)

    def __repr__(self) -> str:
        return f"OAuthClientSettings(client_id={self.client_id!r}, client_secret=<REDACTED>)"

    __str__ = __repr__


class RemoteEvent(BaseModel):
    """A provider event already mapped onto the local event schema."""

    model_config = ConfigDict(extra="forbid")

    remote_id: str = Field(min_length=1)
    title: str
    description: str | None = None
    location: str | None = None
    start: datetime
    end: datetime
    all_day: bool = False


class MirrorFields(BaseModel):
    """Columns written when a remote event is mirrored locally."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    title: str
    description: str | None = None
    start_time: datetime
    end_time: datetime
    is_all_day: bool = False
    location: str | None = None
    color: str | None = GOOGLE_MIRROR_COLOR

    @classmethod
    def from_remote(cls, event: RemoteEvent) -> MirrorFields:
        return cls(
            title=event.title,
            description=event.description,
            start_time=ensure_utc(event.start),
            end_time=ensure_utc(event.end),
            is_all_day=event.all_day,
            location=event.location,
        )

    @classmethod
    def from_local(cls, event: LocalEvent) -> MirrorFields:
        return cls(
            title=event.title,
            description=event.description,
            start_time=ensure_utc(event.start_time),
            end_time=ensure_utc(event.end_time),
            is_all_day=event.is_all_day,
            location=event.location,
            color=event.color,
        )


class LocalEvent(BaseModel):
    """An event row as stored locally (mirror or local-only)."""

    model_config = ConfigDict(extra="ignore")

    id: str
    workspace_id: str | None = None
    title: str
    description: str | None = None
    start_time: datetime
    end_time: datetime
    is_all_day: bool = False
    location: str | None = None
    color: str | None = None
    reminder_minutes: int | None = None
    reminder_sent: bool = False
    provider: str | None = None
    google_event_id: str | None = None
    is_from_google: bool = False

    @property
    def is_mirror(self) -> bool:
        return self.is_from_google and bool(self.google_event_id)


class NotificationLogEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str
    workspace_id: str | None
    title: str
    body: str
    type: str
    related_id: str
    delivery_status: str
