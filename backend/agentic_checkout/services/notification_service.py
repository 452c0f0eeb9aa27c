"""
Order Notification Sink

Delivers order_created events to the agent platform's webhook endpoint.
publish() only enqueues; a background worker owns the
HTTP delivery and its retries so checkout responses never wait on it.

Each request carries:
- Merchant-Signature: base64 HMAC-SHA256 of the raw body
- Timestamp: ISO-8601 send time
"""
import asyncio
import base64
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from ..timeutils import utcnow, isoformat

logger = logging.getLogger(__name__)

USER_AGENT = "agentic-checkout/0.1"


@dataclass
class OrderEvent:
    """Order webhook event."""
    type: str
    checkout_session_id: str
    permalink_url: str
    status: str
    order_id: Optional[str] = None
    refunds: List[Dict[str, Any]] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "data": {
                "type": "order",
                "checkout_session_id": self.checkout_session_id,
                "permalink_url": self.permalink_url,
                "status": self.status,
                "refunds": self.refunds,
            },
        }


def order_created(order_id: str, checkout_session_id: str, permalink_url: str) -> OrderEvent:
    return OrderEvent(
        type="order_created",
        checkout_session_id=checkout_session_id,
        permalink_url=permalink_url,
        status="created",
        order_id=order_id,
    )


class WebhookNotifier:
    """
    Bounded queue plus one delivery worker.

    Usage:
        notifier = WebhookNotifier(url, secret)
        await notifier.start()
        notifier.publish(order_created(...))
        await notifier.close()
    """

    def __init__(
        self,
        url: Optional[str] = None,
        secret: Optional[str] = None,
        max_retries: int = 3,
        base_delay_seconds: float = 1.0,
        queue_size: int = 100,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.url = url
        self.secret = secret
        self.max_retries = max_retries
        self.base_delay_seconds = base_delay_seconds
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._worker: Optional[asyncio.Task] = None
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def start(self) -> None:
        if self._worker is not None:
            return
        if not self.enabled:
            logger.warning("Webhook URL not configured, order events will not be delivered")
        self._client = httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport)
        self._worker = asyncio.create_task(self._run())
        logger.info("Webhook notifier started")

    async def close(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        logger.info("Webhook notifier stopped")

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        await self._queue.join()

    def publish(self, event: OrderEvent) -> bool:
        """
        Enqueue an event without waiting for delivery.

        Returns:
            False when the event was dropped (no URL configured or queue full)
        """
        if not self.enabled:
            logger.warning(f"Webhook URL not configured, skipping {event.type} for {event.checkout_session_id}")
            return False
        try:
            self._queue.put_nowait(event.to_payload())
        except asyncio.QueueFull:
            logger.error(f"Webhook queue full, dropping {event.type} for {event.checkout_session_id}")
            return False
        logger.debug(f"Queued {event.type} for {event.checkout_session_id}")
        return True

    def sign(self, body: bytes) -> str:
        if not self.secret:
            return ""
        digest = hmac.new(self.secret.encode("utf-8"), body, hashlib.sha256).digest()
        return base64.b64encode(digest).decode("ascii")

    async def _run(self) -> None:
        while True:
            payload = await self._queue.get()
            try:
                await self.deliver(payload)
            except Exception as e:
                logger.error(f"Webhook worker error: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    async def deliver(self, payload: Dict[str, Any]) -> bool:
        """
        POST one payload, retrying with exponential backoff.

        Returns:
            True if the endpoint answered 2xx within max_retries attempts
        """
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport)

        body = json.dumps(payload).encode("utf-8")
        event_type = payload.get("type")

        for attempt in range(1, self.max_retries + 1):
            headers = {
                "Content-Type": "application/json",
                "Merchant-Signature": self.sign(body),
                "Timestamp": isoformat(utcnow()),
                "User-Agent": USER_AGENT,
            }
            logger.info(f"Sending webhook (attempt {attempt}/{self.max_retries}): {event_type}")

            try:
                response = await self._client.post(self.url, content=body, headers=headers)
                if response.status_code < 300:
                    logger.info(f"Webhook delivered: {event_type}")
                    return True
                logger.warning(f"Webhook endpoint returned {response.status_code} for {event_type}")
            except httpx.HTTPError as e:
                logger.warning(f"Webhook delivery failed (attempt {attempt}): {e}")

            if attempt < self.max_retries:
                delay = self.base_delay_seconds * (2 ** (attempt - 1))
                await asyncio.sleep(delay)

        logger.error(f"Webhook delivery failed after {self.max_retries} attempts: {event_type}")
        return False
