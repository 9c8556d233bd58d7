"""Tests for lifeos.daemon.Engine wiring (in-memory store, fake transports)."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import httpx
import pytest
from conftest import remote_event

from lifeos.config import ConfigError, EngineConfig, parse_config
from lifeos.daemon import Engine
from lifeos.models import AccountCredentials

pytestmark = pytest.mark.unit


def _config(**sections):
    sections.setdefault("push", {"vapid_private_key": "test-key"})
    return parse_config(sections)


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout)


async def test_start_runs_both_jobs_immediately(store, transport, provider, account):
    start = datetime.now(UTC) + timedelta(minutes=5)
    store.add_workspace("ws-1", "user-1")
    store.add_endpoint("user-1", "ep-1")
    store.add_task(workspace_id="ws-1", title="Stretch", start_date=start, reminder_minutes=10)
    store.credentials[account] = AccountCredentials(access_token="a", refresh_token="r")
    provider.remote[account] = [remote_event("g1", start, start + timedelta(hours=1))]

    engine = Engine(
        _config(), store=store, transport=transport, provider=provider, configure_logs=False
    )
    await engine.start()
    try:
        assert [job.name for job in engine.jobs] == ["reminder_scan", "calendar_sync"]
        await _wait_for(lambda: transport.sent and store.events)
    finally:
        await engine.shutdown()

    assert len(transport.sent) == 1
    (mirror,) = store.events.values()
    assert mirror.google_event_id == "g1"
    assert engine.jobs == []


async def test_disabled_jobs_are_not_built(store, transport, provider):
    config = _config(reminders={"enabled": False}, calendar_sync={"enabled": False})
    engine = Engine(config, store=store, transport=transport, provider=provider, configure_logs=False)

    await engine.start()
    try:
        assert engine.jobs == []
    finally:
        await engine.shutdown()


async def test_write_through_uses_the_engine_provider(store, transport, provider, account):
    event = store.add_event(
        workspace_id="ws-1",
        title="Lunch",
        start_time=datetime.now(UTC) + timedelta(days=2),
        end_time=datetime.now(UTC) + timedelta(days=2, hours=1),
    )
    engine = Engine(
        _config(reminders={"enabled": False}),
        store=store,
        transport=transport,
        provider=provider,
        configure_logs=False,
    )
    await engine.start()
    try:
        linked = await engine.write_through.push_created(event.id, account)
    finally:
        await engine.shutdown()

    assert linked is not None
    assert linked.google_event_id is not None


async def test_store_is_unavailable_before_start():
    engine = Engine(_config(), configure_logs=False)
    with pytest.raises(RuntimeError):
        engine.store  # noqa: B018


async def test_injected_http_client_is_not_closed(store, transport, provider):
    client = httpx.AsyncClient()
    engine = Engine(
        _config(reminders={"enabled": False}, calendar_sync={"enabled": False}),
        store=store,
        transport=transport,
        provider=provider,
        http_client=client,
        configure_logs=False,
    )
    await engine.start()
    await engine.shutdown()

    assert client.is_closed is False
    await client.aclose()


async def test_reminder_job_without_vapid_key_fails_start(store, provider):
    # Built directly, bypassing the validation parse_config performs.
    config = EngineConfig()
    config.calendar_sync.enabled = False
    engine = Engine(config, store=store, provider=provider, configure_logs=False)

    with pytest.raises(ConfigError, match="VAPID"):
        await engine.start()

    await engine.shutdown()
