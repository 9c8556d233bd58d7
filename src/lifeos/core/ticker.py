"""Fixed-cadence background job runner.

A :class:`PeriodicJob` runs its tick function once at start-up and then every
``interval`` seconds, measured from the start of the previous tick, until it
is stopped. Ticks never overlap: when a tick outruns its interval the next
one starts immediately after it and any further missed ticks are coalesced.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from opentelemetry import trace

from lifeos.core.logging import job_context
from lifeos.core.metrics import record_tick

logger = logging.getLogger(__name__)

TickFn = Callable[[], Awaitable[Any]]


class PeriodicJob:
    """Run *fn* every *interval* seconds in its own asyncio task."""

    def __init__(self, name: str, interval: float, fn: TickFn) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval!r}")
        self.name = name
        self.interval = interval
        self._fn = fn
        self._task: asyncio.Task | None = None
        self._ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def ticks(self) -> int:
        """Number of ticks started since construction."""
        return self._ticks

    def start(self) -> None:
        if self._task is not None:
            logger.warning("Periodic job %s already running", self.name)
            return
        self._task = asyncio.create_task(self._loop(), name=f"lifeos-{self.name}")
        logger.info("Started periodic job %s (interval=%ss)", self.name, self.interval)

    async def stop(self) -> None:
        """Cancel the loop; an in-flight tick is abandoned at its next await."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Periodic job %s stopped", self.name)

    async def run_once(self) -> bool:
        """Run a single tick. Returns False when the tick raised."""
        self._ticks += 1
        tracer = trace.get_tracer("lifeos")
        started = time.monotonic()
        status = "ok"
        with job_context(self.name), tracer.start_as_current_span(f"lifeos.{self.name}.tick") as span:
            span.set_attribute("lifeos.job", self.name)
            span.set_attribute("lifeos.tick", self._ticks)
            try:
                await self._fn()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                status = "error"
                span.record_exception(exc)
                logger.exception("Periodic job %s tick failed", self.name)
            finally:
                record_tick(self.name, status, time.monotonic() - started)
        return status == "ok"

    async def _loop(self) -> None:
        try:
            while True:
                started = time.monotonic()
                await self.run_once()
                elapsed = time.monotonic() - started
                if elapsed >= self.interval:
                    logger.warning(
                        "Periodic job %s tick took %.1fs (interval %ss); skipping missed ticks",
                        self.name,
                        elapsed,
                        self.interval,
                    )
                    # Yield so stop() can cancel a job whose ticks never sleep.
                    await asyncio.sleep(0)
                    continue
                await asyncio.sleep(self.interval - elapsed)
        except asyncio.CancelledError:
            logger.debug("Periodic job %s loop cancelled", self.name)
            raise
