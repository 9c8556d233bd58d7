"""Web Push delivery to registered device endpoints.

``pywebpush`` is synchronous (it posts through ``requests``), so each send runs
in a worker thread under a bounded timeout. A 404 or 410 from the push service
means the subscription no longer exists; the result is flagged ``gone`` so the
caller can prune the endpoint.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Protocol

from pywebpush import WebPushException, webpush

from lifeos.models import DeviceEndpoint

logger = logging.getLogger(__name__)

NOTIFICATION_ICON = "/favicon.png"
_GONE_STATUSES = frozenset({404, 410})
_MAX_ERROR_LENGTH = 200


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one push attempt to one device endpoint."""

    endpoint_id: str
    delivered: bool
    status_code: int | None = None
    error: str | None = None
    gone: bool = False


class PushTransport(Protocol):
    async def send(self, endpoint: DeviceEndpoint, payload: str) -> DeliveryResult: ...


def build_payload(title: str, body: str, url: str) -> str:
    """Serialise the notification the service worker renders."""
    return json.dumps(
        {
            "title": title,
            "body": body,
            "url": url,
            "icon": NOTIFICATION_ICON,
            "badge": NOTIFICATION_ICON,
        }
    )


class WebPushTransport:
    """:class:`PushTransport` that signs requests with the engine's VAPID key."""

    def __init__(
        self,
        vapid_private_key: str,
        vapid_subject: str,
        *,
        ttl_seconds: int = 3600,
        timeout_seconds: float = 10.0,
    ) -> None:
        if not vapid_private_key:
            raise ValueError("vapid_private_key must be a non-empty string")
        self._vapid_private_key = vapid_private_key
        self._vapid_subject = vapid_subject
        self._ttl_seconds = ttl_seconds
        self._timeout_seconds = timeout_seconds

    def __repr__(self) -> str:
        return f"WebPushTransport(vapid_subject={self._vapid_subject!r}, vapid_private_key=<REDACTED>)"

    def _send_blocking(self, endpoint: DeviceEndpoint, payload: str) -> None:
        webpush(
            subscription_info=endpoint.subscription_info(),
            data=payload,
            vapid_private_key=self._vapid_private_key,
            # pywebpush adds aud/exp to the claims dict, so pass a fresh one per call.
            vapid_claims={"sub": self._vapid_subject},
            ttl=self._ttl_seconds,
            timeout=self._timeout_seconds,
        )

    async def send(self, endpoint: DeviceEndpoint, payload: str) -> DeliveryResult:
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self._send_blocking, endpoint, payload),
                timeout=self._timeout_seconds,
            )
        except WebPushException as exc:
            response = exc.response
            status_code = response.status_code if response is not None else None
            gone = status_code in _GONE_STATUSES
            if gone:
                logger.info(
                    "Push endpoint %s rejected with HTTP %s; subscription is gone",
                    endpoint.id,
                    status_code,
                )
            else:
                logger.warning(
                    "Push delivery to endpoint %s failed (HTTP %s)", endpoint.id, status_code
                )
            return DeliveryResult(
                endpoint_id=endpoint.id,
                delivered=False,
                status_code=status_code,
                error=str(exc.message)[:_MAX_ERROR_LENGTH],
                gone=gone,
            )
        except TimeoutError:
            logger.warning(
                "Push delivery to endpoint %s timed out after %ss",
                endpoint.id,
                self._timeout_seconds,
            )
            return DeliveryResult(endpoint_id=endpoint.id, delivered=False, error="timeout")
        return DeliveryResult(endpoint_id=endpoint.id, delivered=True)
