"""Calendar provider abstraction and the Google Calendar v3 implementation."""

from __future__ import annotations

import abc
import asyncio
import logging
from datetime import UTC, date, datetime
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict

from lifeos.google_oauth import TokenManager, safe_google_error_message
from lifeos.models import AccountKey, MirrorFields, RemoteEvent, ensure_utc

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
DEFAULT_EVENT_TITLE = "No Title"

# Retry on 429 Too Many Requests and 503 Service Unavailable with exponential backoff.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0
GONE_STATUS_CODES = {404, 410}
MAX_RESULTS_CAP = 250


class CalendarError(RuntimeError):
    """Base error raised by calendar provider requests."""


class CalendarRequestError(CalendarError):
    """Raised when the provider API answers with a non-success status."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


class EventChanges(BaseModel):
    """Fields to patch on a remote event; only explicitly set fields are sent.

    Time fields travel together: when any of ``start_time``, ``end_time`` or
    ``is_all_day`` is set, all three must be.
    """

    model_config = ConfigDict(extra="forbid")

    title: str | None = None
    description: str | None = None
    location: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    is_all_day: bool | None = None

    @property
    def is_empty(self) -> bool:
        return not self.model_fields_set


class CalendarProvider(abc.ABC):
    """Remote calendar operations used by sync and write-through."""

    @property
    @abc.abstractmethod
    def name(self) -> str: ...

    @abc.abstractmethod
    async def list_upcoming_events(
        self, account: AccountKey, *, window_start: datetime, limit: int = 50
    ) -> list[RemoteEvent]:
        """Return up to *limit* single-occurrence events starting at or after *window_start*."""

    @abc.abstractmethod
    async def insert_event(self, account: AccountKey, fields: MirrorFields) -> str:
        """Create a remote event and return its provider id."""

    @abc.abstractmethod
    async def patch_event(self, account: AccountKey, remote_id: str, changes: EventChanges) -> None:
        ...

    @abc.abstractmethod
    async def delete_event(self, account: AccountKey, remote_id: str) -> bool:
        """Delete a remote event. Returns False when it was already gone."""

    async def shutdown(self) -> None:  # noqa: B027
        """Release provider resources."""


# ---------------------------------------------------------------------------
# Google payload mapping
# ---------------------------------------------------------------------------


def _google_rfc3339(value: datetime) -> str:
    return ensure_utc(value).isoformat().replace("+00:00", "Z")


def _google_date(value: datetime) -> str:
    return ensure_utc(value).date().isoformat()


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return ensure_utc(parsed)


def _parse_google_event_boundary(payload: Any) -> datetime | None:
    """Parse a ``start``/``end`` object; all-day dates become UTC midnight."""
    if not isinstance(payload, dict):
        return None
    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return _parse_google_datetime(date_time)
    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            parsed = date.fromisoformat(date_value.strip())
        except ValueError as exc:
            raise ValueError(f"Google Calendar returned an invalid date value: {date_value}") from exc
        return datetime(parsed.year, parsed.month, parsed.day, tzinfo=UTC)
    return None


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def google_event_to_remote_event(payload: dict[str, Any]) -> RemoteEvent | None:
    """Map a Google event resource onto the local schema.

    Returns None for cancelled events and for items without an id or start.
    """
    status = payload.get("status")
    if isinstance(status, str) and status.lower() == "cancelled":
        return None

    event_id = _normalize_optional_text(payload.get("id"))
    if event_id is None:
        return None

    start_payload = payload.get("start")
    start = _parse_google_event_boundary(start_payload)
    if start is None:
        logger.warning("Google Calendar event %s has no start; ignoring it", event_id)
        return None
    end = _parse_google_event_boundary(payload.get("end")) or start

    all_day = not (
        isinstance(start_payload, dict)
        and isinstance(start_payload.get("dateTime"), str)
        and start_payload["dateTime"].strip()
    )

    return RemoteEvent(
        remote_id=event_id,
        title=_normalize_optional_text(payload.get("summary")) or DEFAULT_EVENT_TITLE,
        description=_normalize_optional_text(payload.get("description")),
        location=_normalize_optional_text(payload.get("location")),
        start=start,
        end=end,
        all_day=all_day,
    )


def _event_boundary(value: datetime, all_day: bool) -> dict[str, str]:
    return {"date": _google_date(value)} if all_day else {"dateTime": _google_rfc3339(value)}


def build_google_event_body(fields: MirrorFields) -> dict[str, Any]:
    return {
        "summary": fields.title,
        "description": fields.description or "",
        "location": fields.location or "",
        "start": _event_boundary(fields.start_time, fields.is_all_day),
        "end": _event_boundary(fields.end_time, fields.is_all_day),
    }


def build_google_patch_body(changes: EventChanges) -> dict[str, Any]:
    body: dict[str, Any] = {}
    fields_set = changes.model_fields_set
    if "title" in fields_set and changes.title:
        body["summary"] = changes.title
    if "description" in fields_set:
        body["description"] = changes.description or ""
    if "location" in fields_set:
        body["location"] = changes.location or ""
    if fields_set & {"start_time", "end_time", "is_all_day"}:
        if changes.start_time is None or changes.end_time is None or changes.is_all_day is None:
            raise ValueError("start_time, end_time and is_all_day must be patched together")
        body["start"] = _event_boundary(changes.start_time, changes.is_all_day)
        body["end"] = _event_boundary(changes.end_time, changes.is_all_day)
    return body


# ---------------------------------------------------------------------------
# Google provider
# ---------------------------------------------------------------------------


class GoogleCalendarProvider(CalendarProvider):
    """Google Calendar v3 with per-account bearer tokens from a :class:`TokenManager`."""

    def __init__(
        self,
        token_manager: TokenManager,
        http_client: httpx.AsyncClient | None = None,
        *,
        calendar_id: str = "primary",
        timeout: float = 30.0,
    ) -> None:
        self._tokens = token_manager
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self._calendar_path = f"/calendars/{quote(calendar_id, safe='')}/events"

    @property
    def name(self) -> str:
        return "google"

    async def list_upcoming_events(
        self, account: AccountKey, *, window_start: datetime, limit: int = 50
    ) -> list[RemoteEvent]:
        if limit < 1:
            raise ValueError("limit must be at least 1")

        params: dict[str, Any] = {
            "singleEvents": "true",
            "showDeleted": "false",
            "orderBy": "startTime",
            "maxResults": min(limit, MAX_RESULTS_CAP),
            "timeMin": _google_rfc3339(window_start),
        }
        payload = await self._request_google_json(account, "GET", self._calendar_path, params=params)
        items = payload.get("items", [])
        if not isinstance(items, list):
            raise CalendarError("Google Calendar list response has a non-list items field")

        events: list[RemoteEvent] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                event = google_event_to_remote_event(item)
            except ValueError:
                logger.warning("Skipping malformed Google Calendar event %r", item.get("id"))
                continue
            if event is not None:
                events.append(event)
        return events

    async def insert_event(self, account: AccountKey, fields: MirrorFields) -> str:
        payload = await self._request_google_json(
            account, "POST", self._calendar_path, json_body=build_google_event_body(fields)
        )
        remote_id = _normalize_optional_text(payload.get("id"))
        if remote_id is None:
            raise CalendarError("Google Calendar insert response is missing the event id")
        return remote_id

    async def patch_event(self, account: AccountKey, remote_id: str, changes: EventChanges) -> None:
        body = build_google_patch_body(changes)
        if not body:
            return
        await self._request_google_json(
            account, "PATCH", self._event_path(remote_id), json_body=body
        )

    async def delete_event(self, account: AccountKey, remote_id: str) -> bool:
        response = await self._request_with_bearer(account, "DELETE", self._event_path(remote_id))
        if response.status_code in GONE_STATUS_CODES:
            logger.info("Google Calendar event %s already gone (%d)", remote_id, response.status_code)
            return False
        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=safe_google_error_message(response),
            )
        return True

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    def _event_path(self, remote_id: str) -> str:
        normalized = remote_id.strip()
        if not normalized:
            raise ValueError("remote_id must be a non-empty string")
        return f"{self._calendar_path}/{quote(normalized, safe='')}"

    async def _request_google_json(
        self,
        account: AccountKey,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(
            account, method, path, params=params, json_body=json_body
        )
        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=safe_google_error_message(response),
            )
        if response.status_code == 204:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarError("Google Calendar API returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise CalendarError("Google Calendar API returned an unexpected JSON payload shape")
        return payload

    async def _request_with_bearer(
        self,
        account: AccountKey,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{path}"

        response = await self._request_once(
            account, method, url, params=params, json_body=json_body, force_refresh=False
        )
        if response.status_code == 401:
            response = await self._request_once(
                account, method, url, params=params, json_body=json_body, force_refresh=True
            )

        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(
                account, method, url, params=params, json_body=json_body, force_refresh=False
            )
            retry += 1

        return response

    async def _request_once(
        self,
        account: AccountKey,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._tokens.get_access_token(account, force_refresh=force_refresh)
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise CalendarError(f"Google Calendar request failed: {type(exc).__name__}") from exc
