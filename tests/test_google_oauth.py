"""Tests for lifeos.google_oauth (Google endpoints served by httpx.MockTransport)."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from lifeos.google_oauth import (
    GOOGLE_OAUTH_TOKEN_URL,
    AccountNotConnectedError,
    ConsentState,
    OAuthClientNotConfiguredError,
    OAuthError,
    TokenManager,
    TokenRefreshError,
    redact_credential_values,
)
from lifeos.models import AccountCredentials, AccountKey, OAuthClientSettings

pytestmark = pytest.mark.unit

CLIENT = OAuthClientSettings(client_id="client-id", client_secret="client-secret")


class TokenEndpoint:
    """Scripted Google token endpoint recording every form it receives."""

    def __init__(self, *responses: httpx.Response) -> None:
        self.responses = list(responses)
        self.forms: list[dict[str, list[str]]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        assert str(request.url) == GOOGLE_OAUTH_TOKEN_URL
        self.forms.append(parse_qs(request.content.decode()))
        return self.responses.pop(0)


def _token_response(access_token="new-access", refresh_token=None, expires_in=3600):
    payload = {"access_token": access_token, "expires_in": expires_in, "token_type": "Bearer"}
    if refresh_token is not None:
        payload["refresh_token"] = refresh_token
    return httpx.Response(200, json=payload)


def _manager(store, handler, **kwargs) -> TokenManager:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("default_client", CLIENT)
    return TokenManager(store, client, **kwargs)


class TestGetAccessToken:
    async def test_fresh_token_is_returned_without_refresh(self, store, account):
        store.credentials[account] = AccountCredentials(
            access_token="still-good",
            refresh_token="refresh-1",
            expires_at=datetime.now(UTC) + timedelta(minutes=30),
        )
        endpoint = TokenEndpoint()

        token = await _manager(store, endpoint).get_access_token(account)

        assert token == "still-good"
        assert endpoint.forms == []

    async def test_token_inside_refresh_margin_is_refreshed(self, store, account):
        store.credentials[account] = AccountCredentials(
            access_token="about-to-expire",
            refresh_token="refresh-1",
            expires_at=datetime.now(UTC) + timedelta(seconds=30),
        )
        endpoint = TokenEndpoint(_token_response("new-access"))

        token = await _manager(store, endpoint).get_access_token(account)

        assert token == "new-access"
        form = endpoint.forms[0]
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["refresh-1"]
        assert form["client_id"] == ["client-id"]

    async def test_refresh_token_is_sticky(self, store, account):
        store.credentials[account] = AccountCredentials(
            access_token="expired",
            refresh_token="refresh-1",
            expires_at=datetime.now(UTC) - timedelta(minutes=1),
        )
        endpoint = TokenEndpoint(_token_response("new-access", refresh_token=None))

        await _manager(store, endpoint).get_access_token(account)

        saved = store.credentials[account]
        assert saved.access_token == "new-access"
        assert saved.refresh_token == "refresh-1"
        assert saved.expires_at > datetime.now(UTC)

    async def test_rotated_refresh_token_replaces_stored_one(self, store, account):
        store.credentials[account] = AccountCredentials(
            access_token="expired",
            refresh_token="refresh-1",
            expires_at=datetime.now(UTC) - timedelta(minutes=1),
        )
        endpoint = TokenEndpoint(_token_response("new-access", refresh_token="refresh-2"))

        await _manager(store, endpoint).get_access_token(account)

        assert store.credentials[account].refresh_token == "refresh-2"

    async def test_force_refresh_bypasses_freshness(self, store, account):
        store.credentials[account] = AccountCredentials(
            access_token="rejected",
            refresh_token="refresh-1",
            expires_at=datetime.now(UTC) + timedelta(hours=1),
        )
        endpoint = TokenEndpoint(_token_response("forced"))

        token = await _manager(store, endpoint).get_access_token(account, force_refresh=True)

        assert token == "forced"

    async def test_missing_credentials_raise_not_connected(self, store, account):
        with pytest.raises(AccountNotConnectedError):
            await _manager(store, TokenEndpoint()).get_access_token(account)

    async def test_expired_without_refresh_token_raises(self, store, account):
        store.credentials[account] = AccountCredentials(
            access_token="expired", expires_at=datetime.now(UTC) - timedelta(minutes=5)
        )
        with pytest.raises(TokenRefreshError):
            await _manager(store, TokenEndpoint()).get_access_token(account)

    async def test_refresh_failure_is_sanitised(self, store, account):
        store.credentials[account] = AccountCredentials(
            access_token="expired",
            refresh_token="refresh-1",
            expires_at=datetime.now(UTC) - timedelta(minutes=5),
        )
        endpoint = TokenEndpoint(
            httpx.Response(
                400, json={"error": "invalid_grant", "error_description": "Token has been revoked."}
            )
        )

        with pytest.raises(TokenRefreshError) as excinfo:
            await _manager(store, endpoint).get_access_token(account)

        assert "invalid_grant" in str(excinfo.value)
        assert "refresh-1" not in str(excinfo.value)
        # Stored credentials untouched.
        assert store.credentials[account].access_token == "expired"

    async def test_workspace_client_settings_take_precedence(self, store, account):
        store.oauth_settings[account.workspace_id] = OAuthClientSettings(
            client_id="workspace-client", client_secret="workspace-secret"
        )
        store.credentials[account] = AccountCredentials(
            access_token="expired",
            refresh_token="refresh-1",
            expires_at=datetime.now(UTC) - timedelta(minutes=5),
        )
        endpoint = TokenEndpoint(_token_response())

        await _manager(store, endpoint).get_access_token(account)

        assert endpoint.forms[0]["client_id"] == ["workspace-client"]

    async def test_no_oauth_client_anywhere_is_not_connected(self, store, account):
        store.credentials[account] = AccountCredentials(
            access_token="expired",
            refresh_token="refresh-1",
            expires_at=datetime.now(UTC) - timedelta(minutes=5),
        )
        manager = _manager(store, TokenEndpoint(), default_client=None)

        with pytest.raises(OAuthClientNotConfiguredError):
            await manager.get_access_token(account)

    async def test_on_tokens_hook_receives_grant(self, store, account):
        store.credentials[account] = AccountCredentials(
            access_token="expired",
            refresh_token="refresh-1",
            expires_at=datetime.now(UTC) - timedelta(minutes=5),
        )
        received = []

        async def hook(acct, grant):
            received.append((acct, grant.access_token))

        manager = _manager(store, TokenEndpoint(_token_response("hooked")), on_tokens=hook)
        await manager.get_access_token(account)

        assert received == [(account, "hooked")]
        # The hook replaces the default persistence.
        assert store.credentials[account].access_token == "expired"


class TestConsent:
    async def test_authorization_url(self, store, account):
        url = await _manager(store, TokenEndpoint()).authorization_url(account)

        query = parse_qs(urlparse(url).query)
        assert query["access_type"] == ["offline"]
        assert query["prompt"] == ["consent"]
        assert query["client_id"] == ["client-id"]
        assert "https://www.googleapis.com/auth/calendar" in query["scope"][0].split()
        assert json.loads(query["state"][0]) == {"userId": "user-1", "workspaceId": "ws-1"}

    async def test_complete_consent_persists_tokens(self, store, account):
        endpoint = TokenEndpoint(_token_response("first-access", refresh_token="first-refresh"))

        await _manager(store, endpoint).complete_consent(account, "auth-code")

        assert endpoint.forms[0]["grant_type"] == ["authorization_code"]
        assert endpoint.forms[0]["code"] == ["auth-code"]
        saved = store.credentials[account]
        assert saved.access_token == "first-access"
        assert saved.refresh_token == "first-refresh"

    async def test_reconsent_without_refresh_token_keeps_old_one(self, store, account):
        store.credentials[account] = AccountCredentials(
            access_token="old", refresh_token="keep-me", expires_at=datetime.now(UTC)
        )
        endpoint = TokenEndpoint(_token_response("again"))

        await _manager(store, endpoint).complete_consent(account, "code-2")

        assert store.credentials[account].refresh_token == "keep-me"

    async def test_disconnect_removes_credentials(self, store, account):
        store.credentials[account] = AccountCredentials(access_token="x")

        assert await _manager(store, TokenEndpoint()).disconnect(account) is True
        assert account not in store.credentials

    def test_state_round_trip(self):
        state = ConsentState.for_account(AccountKey(user_id="u", workspace_id="w"))
        assert ConsentState.decode(state.encode()).account == AccountKey(user_id="u", workspace_id="w")

    def test_malformed_state(self):
        with pytest.raises(OAuthError):
            ConsentState.decode("not json")


async def test_connection_status_reports_profile(store, account):
    store.credentials[account] = AccountCredentials(
        access_token="good", expires_at=datetime.now(UTC) + timedelta(hours=1)
    )

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer good"
        return httpx.Response(200, json={"email": "ada@example.test", "name": "Ada"})

    status = await _manager(store, handler).connection_status(account)

    assert status.connected is True
    assert status.email == "ada@example.test"
    assert status.picture is None


async def test_connection_status_not_connected(store, account):
    status = await _manager(store, TokenEndpoint()).connection_status(account)
    assert status.connected is False


def test_redact_credential_values():
    message = "refresh_token=abc123 and 'client_secret': 'shh'"
    redacted = redact_credential_values(message)
    assert "abc123" not in redacted
    assert "shh" not in redacted
