"""Engine process: wires the store, push, Google and both periodic jobs.

Startup sequence:
1. Configure logging from ``[engine.logging]``
2. Open the asyncpg pool (unless a store was injected)
3. Build the shared httpx client, token manager and calendar provider
4. Build the enabled jobs and start them (each runs its first tick immediately)
5. Expose Prometheus metrics when ``engine.metrics_port`` is set

Shutdown stops the jobs first, then releases HTTP and database resources.
"""

from __future__ import annotations

import logging

import httpx

from lifeos.calendar.provider import CalendarProvider, GoogleCalendarProvider
from lifeos.calendar.sync import JOB_NAME as SYNC_JOB_NAME
from lifeos.calendar.sync import CalendarSyncEngine
from lifeos.calendar.writes import CalendarWriteThrough
from lifeos.config import ConfigError, EngineConfig
from lifeos.core.logging import configure_logging
from lifeos.core.metrics import serve_metrics
from lifeos.core.ticker import PeriodicJob
from lifeos.db import Database
from lifeos.google_oauth import TokenManager
from lifeos.models import OAuthClientSettings
from lifeos.push import PushTransport, WebPushTransport
from lifeos.reminders.dispatcher import NotificationDispatcher
from lifeos.reminders.scan import JOB_NAME as SCAN_JOB_NAME
from lifeos.reminders.scan import ReminderScanJob
from lifeos.store import PostgresStore, Store

logger = logging.getLogger(__name__)


class Engine:
    """Owns every long-lived resource of the background engine."""

    def __init__(
        self,
        config: EngineConfig,
        *,
        store: Store | None = None,
        transport: PushTransport | None = None,
        provider: CalendarProvider | None = None,
        http_client: httpx.AsyncClient | None = None,
        configure_logs: bool = True,
    ) -> None:
        self.config = config
        self._store = store
        self._transport = transport
        self._provider = provider
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._configure_logs = configure_logs
        self.db: Database | None = None
        self.token_manager: TokenManager | None = None
        self.jobs: list[PeriodicJob] = []
        self._started = False

    @property
    def store(self) -> Store:
        if self._store is None:
            raise RuntimeError("Engine has not been started")
        return self._store

    @property
    def write_through(self) -> CalendarWriteThrough:
        """Inline calendar push for the application's event write endpoints."""
        if self._store is None or self._provider is None:
            raise RuntimeError("Calendar sync is not enabled or the engine has not been started")
        return CalendarWriteThrough(self._store, self._provider)

    async def start(self) -> None:
        if self._started:
            return
        cfg = self.config
        if self._configure_logs:
            configure_logging(
                level=cfg.logging.level,
                fmt=cfg.logging.format,
                log_root=cfg.logging.log_root,
                engine_name=cfg.name,
            )

        if self._store is None:
            self.db = Database.from_config(cfg.database)
            pool = await self.db.connect()
            self._store = PostgresStore(pool)

        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=cfg.calendar_sync.http_timeout_seconds)

        default_client = None
        if cfg.google.client_id and cfg.google.client_secret:
            default_client = OAuthClientSettings(
                client_id=cfg.google.client_id, client_secret=cfg.google.client_secret
            )
        self.token_manager = TokenManager(
            self._store,
            self._http_client,
            default_client=default_client,
            redirect_uri=cfg.google.redirect_uri,
        )

        if cfg.reminders.enabled:
            self.jobs.append(self._build_reminder_job())
        else:
            logger.info("Reminder scan disabled")

        if cfg.calendar_sync.enabled:
            self.jobs.append(self._build_sync_job())
        else:
            logger.info("Calendar sync disabled")

        if cfg.metrics_port is not None:
            serve_metrics(cfg.metrics_port)
            logger.info("Prometheus metrics served on port %d", cfg.metrics_port)

        for job in self.jobs:
            job.start()
        self._started = True
        logger.info("Engine %s started with %d job(s)", cfg.name, len(self.jobs))

    def _build_reminder_job(self) -> PeriodicJob:
        cfg = self.config
        if self._transport is None:
            if not cfg.push.vapid_private_key:
                raise ConfigError("Reminders are enabled but no VAPID private key is configured")
            self._transport = WebPushTransport(
                cfg.push.vapid_private_key,
                cfg.push.vapid_subject,
                ttl_seconds=cfg.push.ttl_seconds,
                timeout_seconds=cfg.push.timeout_seconds,
            )
        scan = ReminderScanJob(
            self.store,
            NotificationDispatcher(self.store, self._transport),
            default_event_reminder_minutes=cfg.reminders.default_event_reminder_minutes,
        )
        return PeriodicJob(SCAN_JOB_NAME, cfg.reminders.interval_seconds, scan.run_tick)

    def _build_sync_job(self) -> PeriodicJob:
        cfg = self.config
        if self._provider is None:
            if self.token_manager is None:
                raise RuntimeError("Token manager must be built before the calendar sync job")
            self._provider = GoogleCalendarProvider(
                self.token_manager,
                self._http_client,
                calendar_id=cfg.calendar_sync.calendar_id,
            )
        engine = CalendarSyncEngine(
            self.store, self._provider, max_results=cfg.calendar_sync.max_results
        )
        return PeriodicJob(SYNC_JOB_NAME, cfg.calendar_sync.interval_minutes * 60, engine.run_tick)

    async def shutdown(self) -> None:
        for job in reversed(self.jobs):
            await job.stop()
        self.jobs.clear()

        if self._provider is not None:
            await self._provider.shutdown()
        if self._http_client is not None and self._owns_http_client:
            await self._http_client.aclose()
            self._http_client = None
        if self.db is not None:
            await self.db.close()
            self.db = None
            self._store = None
        self._started = False
        logger.info("Engine %s stopped", self.config.name)
