"""Fan a notification out to every device a user has registered."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from lifeos.core.metrics import record_push_delivery
from lifeos.push import DeliveryResult, PushTransport, build_payload
from lifeos.store import DeviceStore

logger = logging.getLogger(__name__)

_MAX_ERROR_LENGTH = 200


@dataclass
class DispatchReport:
    """Per-endpoint outcomes of one dispatch."""

    user_id: str
    results: list[DeliveryResult] = field(default_factory=list)
    pruned: list[str] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.results)

    @property
    def delivered(self) -> int:
        return sum(1 for r in self.results if r.delivered)

    @property
    def failed(self) -> int:
        return self.attempted - self.delivered


class NotificationDispatcher:
    """Deliver one notification to all of a user's endpoints.

    Each endpoint is attempted exactly once, concurrently; one endpoint
    failing never prevents delivery to the others. Delivery failures are
    reported per endpoint and logged; only a failing endpoint lookup raises,
    so the caller can leave the reminder unsent and retry it next tick.
    """

    def __init__(self, store: DeviceStore, transport: PushTransport) -> None:
        self._store = store
        self._transport = transport

    async def dispatch(
        self, user_id: str, title: str, body: str, link_path: str = "/"
    ) -> DispatchReport:
        report = DispatchReport(user_id=user_id)
        endpoints = await self._store.list_device_endpoints(user_id)

        if not endpoints:
            logger.debug("No device endpoints registered for user %s", user_id)
            return report

        payload = build_payload(title, body, link_path)
        outcomes = await asyncio.gather(
            *(self._transport.send(endpoint, payload) for endpoint in endpoints),
            return_exceptions=True,
        )

        for endpoint, outcome in zip(endpoints, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.warning(
                    "Push delivery to endpoint %s raised %s",
                    endpoint.id,
                    type(outcome).__name__,
                )
                outcome = DeliveryResult(
                    endpoint_id=endpoint.id,
                    delivered=False,
                    error=f"{type(outcome).__name__}: {outcome}"[:_MAX_ERROR_LENGTH],
                )
            report.results.append(outcome)
            if outcome.delivered:
                record_push_delivery("delivered")
            elif outcome.gone:
                record_push_delivery("gone")
            else:
                record_push_delivery("failed")

        for result in report.results:
            if result.gone:
                await self._prune(result.endpoint_id, report)

        logger.info(
            "Push sent to %d/%d device(s) for user %s (%d failed)",
            report.delivered,
            report.attempted,
            user_id,
            report.failed,
        )
        return report

    async def _prune(self, endpoint_id: str, report: DispatchReport) -> None:
        try:
            if await self._store.delete_device_endpoint(endpoint_id):
                report.pruned.append(endpoint_id)
                logger.info("Pruned expired push endpoint %s", endpoint_id)
        except Exception:
            logger.exception("Failed to prune push endpoint %s", endpoint_id)
