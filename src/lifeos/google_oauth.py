"""Google OAuth for calendar accounts: consent, code exchange, token refresh.

:class:`TokenManager` is the single place access tokens come from. It keeps a
stored access token until 60 seconds before its expiry, refreshes it with the
account's refresh token, and hands every newly issued grant to an explicit
``on_tokens`` hook (by default: persist through the credential store).
Refresh tokens are sticky: Google omits them on most refresh responses, and a
grant without one never clears the stored token.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from lifeos.config import DEFAULT_REDIRECT_URI
from lifeos.models import AccountCredentials, AccountKey, OAuthClientSettings, TokenGrant, ensure_utc
from lifeos.store import CredentialStore

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_CALENDAR_SCOPES = (
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
)
TOKEN_REFRESH_MARGIN = timedelta(seconds=60)
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600
_MAX_ERROR_LENGTH = 200

TokensHook = Callable[[AccountKey, TokenGrant], Awaitable[None]]


class OAuthError(RuntimeError):
    """Base error for OAuth consent, exchange and refresh failures."""


class TokenRefreshError(OAuthError):
    """Raised when a refresh-token or authorization-code exchange fails."""


class AccountNotConnectedError(OAuthError):
    """Raised when an account has no usable credentials. Callers skip silently."""


class OAuthClientNotConfiguredError(AccountNotConnectedError):
    """Raised when neither the workspace nor the engine has an OAuth client."""


def safe_google_error_message(response: httpx.Response) -> str:
    """Extract a short, whitespace-normalised error message from a Google response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:_MAX_ERROR_LENGTH]
        if isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            if isinstance(description, str) and description.strip():
                error_payload = f"{error_payload}: {description}"
            return " ".join(error_payload.split())[:_MAX_ERROR_LENGTH]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(redact_credential_values(raw_text).split())[:_MAX_ERROR_LENGTH]
    return "Request failed without an error payload"


def redact_credential_values(message: str) -> str:
    """Mask token and client-secret values embedded in *message*."""
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|code)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    return redacted


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_TOKEN_LIFETIME_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_TOKEN_LIFETIME_SECONDS
    return DEFAULT_TOKEN_LIFETIME_SECONDS


class ConsentState(BaseModel):
    """Opaque ``state`` round-tripped through the consent redirect."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)
    workspace_id: str = Field(alias="workspaceId", min_length=1)

    @classmethod
    def for_account(cls, account: AccountKey) -> ConsentState:
        return cls(user_id=account.user_id, workspace_id=account.workspace_id)

    @classmethod
    def decode(cls, raw: str) -> ConsentState:
        try:
            return cls.model_validate_json(raw)
        except ValidationError as exc:
            raise OAuthError("OAuth state parameter is malformed") from exc

    def encode(self) -> str:
        return json.dumps({"userId": self.user_id, "workspaceId": self.workspace_id})

    @property
    def account(self) -> AccountKey:
        return AccountKey(user_id=self.user_id, workspace_id=self.workspace_id)


class GoogleOAuthClient:
    """One OAuth client (client id/secret + redirect URI) talking to Google."""

    def __init__(
        self,
        settings: OAuthClientSettings,
        http_client: httpx.AsyncClient,
        *,
        redirect_uri: str = DEFAULT_REDIRECT_URI,
    ) -> None:
        self._settings = settings
        self._http_client = http_client
        self.redirect_uri = redirect_uri

    @property
    def client_id(self) -> str:
        return self._settings.client_id

    def authorization_url(self, state: ConsentState) -> str:
        # offline + consent guarantees Google issues a refresh token.
        query = {
            "client_id": self._settings.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(GOOGLE_CALENDAR_SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "state": state.encode(),
        }
        return f"{GOOGLE_OAUTH_AUTHORIZE_URL}?{urlencode(query)}"

    async def exchange_code(self, code: str, *, redirect_uri: str | None = None) -> TokenGrant:
        if not code.strip():
            raise OAuthError("authorization code must be a non-empty string")
        return await self._token_request(
            {
                "code": code.strip(),
                "redirect_uri": redirect_uri or self.redirect_uri,
                "grant_type": "authorization_code",
            },
            action="authorization code exchange",
        )

    async def refresh(self, refresh_token: str) -> TokenGrant:
        return await self._token_request(
            {"refresh_token": refresh_token, "grant_type": "refresh_token"},
            action="token refresh",
        )

    async def fetch_user_info(self, access_token: str) -> dict[str, Any]:
        try:
            response = await self._http_client.get(
                GOOGLE_USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise OAuthError(f"Google userinfo request failed: {type(exc).__name__}") from exc
        if response.status_code < 200 or response.status_code >= 300:
            raise OAuthError(
                f"Google userinfo request failed ({response.status_code}): "
                f"{safe_google_error_message(response)}"
            )
        payload = response.json()
        return payload if isinstance(payload, dict) else {}

    async def _token_request(self, data: dict[str, str], *, action: str) -> TokenGrant:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._settings.client_id,
                    "client_secret": self._settings.client_secret,
                    **data,
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise TokenRefreshError(
                f"Google OAuth {action} request failed: {type(exc).__name__}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise TokenRefreshError(
                f"Google OAuth {action} failed "
                f"({response.status_code}): {safe_google_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise TokenRefreshError("Google OAuth token endpoint returned invalid JSON") from exc

        if not isinstance(payload, dict):
            raise TokenRefreshError("Google OAuth token endpoint returned an unexpected payload")

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise TokenRefreshError(
                "Google OAuth token response is missing a non-empty access_token"
            )

        refresh_token = payload.get("refresh_token")
        if not isinstance(refresh_token, str) or not refresh_token.strip():
            refresh_token = None

        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
        scope = payload.get("scope")
        return TokenGrant(
            access_token=access_token.strip(),
            refresh_token=refresh_token.strip() if refresh_token else None,
            expires_at=datetime.now(UTC) + timedelta(seconds=expires_in),
            scope=scope if isinstance(scope, str) else None,
        )


class ConnectionStatus(BaseModel):
    connected: bool
    email: str | None = None
    name: str | None = None
    picture: str | None = None


class TokenManager:
    """Hands out fresh access tokens for connected accounts."""

    def __init__(
        self,
        store: CredentialStore,
        http_client: httpx.AsyncClient,
        on_tokens: TokensHook | None = None,
        *,
        default_client: OAuthClientSettings | None = None,
        redirect_uri: str = DEFAULT_REDIRECT_URI,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._http_client = http_client
        self._on_tokens = on_tokens or self._persist_grant
        self._default_client = default_client
        self._redirect_uri = redirect_uri
        self._clock = clock or (lambda: datetime.now(UTC))
        self._locks: dict[AccountKey, asyncio.Lock] = {}

    async def client_for(self, workspace_id: str) -> GoogleOAuthClient:
        """Return the OAuth client for *workspace_id*, falling back to the engine-wide one."""
        settings = await self._store.get_oauth_client_settings(workspace_id)
        if settings is None:
            settings = self._default_client
        if settings is None:
            raise OAuthClientNotConfiguredError(
                f"No Google OAuth client configured for workspace {workspace_id}"
            )
        return GoogleOAuthClient(settings, self._http_client, redirect_uri=self._redirect_uri)

    async def authorization_url(self, account: AccountKey) -> str:
        client = await self.client_for(account.workspace_id)
        return client.authorization_url(ConsentState.for_account(account))

    async def complete_consent(
        self, account: AccountKey, code: str, redirect_uri: str | None = None
    ) -> TokenGrant:
        """Exchange an authorization code and hand the grant to ``on_tokens``."""
        client = await self.client_for(account.workspace_id)
        grant = await client.exchange_code(code, redirect_uri=redirect_uri)
        await self._on_tokens(account, grant)
        logger.info("Google Calendar connected for account %s", account)
        return grant

    async def disconnect(self, account: AccountKey) -> bool:
        removed = await self._store.delete_credentials(account)
        if removed:
            logger.info("Google Calendar disconnected for account %s", account)
        return removed

    async def get_access_token(self, account: AccountKey, *, force_refresh: bool = False) -> str:
        """Return a usable access token for *account*, refreshing when needed.

        Raises
        ------
        AccountNotConnectedError
            The account has no stored credentials (or no OAuth client).
        TokenRefreshError
            The token is stale and could not be refreshed.
        """
        lock = self._locks.setdefault(account, asyncio.Lock())
        async with lock:
            credentials = await self._store.get_credentials(account)
            if credentials is None:
                raise AccountNotConnectedError(f"No calendar credentials for account {account}")

            if not force_refresh and self._is_fresh(credentials):
                return credentials.access_token

            if not credentials.refresh_token:
                raise TokenRefreshError(
                    f"Access token for account {account} is expired and no refresh token is stored"
                )

            client = await self.client_for(account.workspace_id)
            grant = await client.refresh(credentials.refresh_token)
            await self._on_tokens(account, grant)
            logger.debug("Refreshed Google access token for account %s", account)
            return grant.access_token

    async def connection_status(self, account: AccountKey) -> ConnectionStatus:
        """Report whether *account* is connected, with profile details when reachable."""
        if await self._store.get_credentials(account) is None:
            return ConnectionStatus(connected=False)
        try:
            token = await self.get_access_token(account)
            client = await self.client_for(account.workspace_id)
            info = await client.fetch_user_info(token)
        except OAuthError as exc:
            logger.warning("Could not fetch Google profile for account %s: %s", account, exc)
            return ConnectionStatus(connected=True)
        return ConnectionStatus(
            connected=True,
            email=info.get("email") or None,
            name=info.get("name") or None,
            picture=info.get("picture") or None,
        )

    def _is_fresh(self, credentials: AccountCredentials) -> bool:
        if credentials.expires_at is None:
            return True
        return self._clock() < ensure_utc(credentials.expires_at) - TOKEN_REFRESH_MARGIN

    async def _persist_grant(self, account: AccountKey, grant: TokenGrant) -> None:
        await self._store.save_credentials(
            account,
            AccountCredentials(
                access_token=grant.access_token,
                refresh_token=grant.refresh_token,
                expires_at=grant.expires_at,
            ),
        )
