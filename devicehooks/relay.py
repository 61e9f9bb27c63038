"""Fan-out of inbound device events to subscriber webhooks."""

from __future__ import annotations

import asyncio
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Optional

import anyio
import httpx

from .errors import DeliveryError, Unauthorized
from .metrics import DELIVERIES
from .store import SubscriptionStore, relay_bucket_for

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0


@dataclass
class DeliveryOutcome:
    url: str
    ok: bool
    status: Optional[int] = None
    body: Optional[str] = None
    error: Optional[str] = None


class EventRelay:
    def __init__(
        self,
        store: SubscriptionStore,
        secret: str = "",
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.store = store
        self.secret = secret or ""
        self.timeout = timeout
        self.transport = transport

    def authorize(self, token: Optional[str]) -> None:
        """Reject the event before acknowledgement when the shared secret does not match."""

        if not self.secret:
            return
        if not token or not hmac.compare_digest(token.encode(), self.secret.encode()):
            raise Unauthorized("invalid relay token")

    async def forward(self, device_id: str, payload: dict[str, Any]) -> list[DeliveryOutcome]:
        bucket = relay_bucket_for(payload)
        urls = await anyio.to_thread.run_sync(self.store.subscriber_urls, device_id, bucket)
        if not urls:
            log.info("no %s subscribers for %s", bucket, device_id)
            return []

        async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
            results = await asyncio.gather(
                *[self._deliver(client, url, payload) for url in urls],
                return_exceptions=True,
            )

        outcomes: list[DeliveryOutcome] = []
        for url, result in zip(urls, results):
            if isinstance(result, BaseException):
                # unexpected errors from a single delivery
                result = DeliveryOutcome(url=url, ok=False, error=repr(result))
            outcomes.append(result)
            DELIVERIES.labels("ok" if result.ok else "failed").inc()
            if result.ok:
                log.info("delivered %s event for %s to %s (%s)", bucket, device_id, url, result.status)
            else:
                log.warning("delivery of %s event for %s failed: %s", bucket, device_id, result.error)
        return outcomes

    async def _deliver(
        self, client: httpx.AsyncClient, url: str, payload: dict[str, Any]
    ) -> DeliveryOutcome:
        try:
            response = await asyncio.wait_for(client.post(url, json=payload), self.timeout)
        except asyncio.TimeoutError:
            err = DeliveryError(url, f"timed out after {self.timeout}s")
            return DeliveryOutcome(url=url, ok=False, error=err.message)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            err = DeliveryError(url, f"{type(exc).__name__}: {exc}")
            return DeliveryOutcome(url=url, ok=False, error=err.message)
        body = response.text[:2000]
        if response.is_success:
            return DeliveryOutcome(url=url, ok=True, status=response.status_code, body=body)
        err = DeliveryError(url, f"HTTP {response.status_code}")
        return DeliveryOutcome(
            url=url, ok=False, status=response.status_code, body=body, error=err.message
        )
