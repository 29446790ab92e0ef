"""
Outbound event channel.

    task = publisher.send("raw.flood.alert", "01646500", event)

send() is fire-and-forget: it schedules delivery and returns the task.
A completion callback logs the result; failures never reach the caller
and never touch stored observations.
"""
import asyncio
import functools
import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

import httpx

from app.core.api_errors import PublishError
from app.core.event_bus import EventBus

logger = logging.getLogger(__name__)


class EventPublisher(ABC):
    """Base publisher tracking in-flight sends."""

    def __init__(self):
        self._pending: Set[asyncio.Task] = set()
        self.sent = 0
        self.failed = 0

    @abstractmethod
    async def deliver(self, channel: str, partition_key: str, event: Dict[str, Any]) -> None:
        """
        Deliver one event.

        Raises:
            PublishError: Delivery failed
        """

    async def _deliver_guarded(self, channel: str, partition_key: str, event: Dict[str, Any]) -> None:
        try:
            await self.deliver(channel, partition_key, event)
        except PublishError:
            raise
        except Exception as e:
            raise PublishError(str(e), channel=channel, partition_key=partition_key) from e

    def send(self, channel: str, partition_key: str, event: Dict[str, Any]) -> asyncio.Task:
        """Schedule delivery and return immediately."""
        task = asyncio.create_task(self._deliver_guarded(channel, partition_key, event))
        self._pending.add(task)
        task.add_done_callback(functools.partial(self._on_complete, channel, partition_key))
        return task

    def _on_complete(self, channel: str, partition_key: str, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            self.failed += 1
            logger.warning(f"Publish to {channel} [{partition_key}] cancelled")
            return
        error = task.exception()
        if error is not None:
            self.failed += 1
            logger.error(f"Publish to {channel} [{partition_key}] failed: {error}")
            return
        self.sent += 1
        logger.debug(f"Published to {channel} [{partition_key}]")

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def flush(self) -> None:
        """Wait for every in-flight send to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.flush()


class EventBusPublisher(EventPublisher):
    """Publishes onto the in-process EventBus (and its SSE subscribers)."""

    def __init__(self, bus=EventBus):
        super().__init__()
        self.bus = bus

    async def deliver(self, channel: str, partition_key: str, event: Dict[str, Any]) -> None:
        self.bus.publish(
            channel,
            event.get("event_type", "event"),
            event,
            partition_key=partition_key,
        )


def compute_signature(payload: str, secret: str) -> str:
    """Compute HMAC-SHA256 signature for payload."""
    return hmac.new(
        secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256
    ).hexdigest()


class WebhookPublisher(EventPublisher):
    """
    POSTs each event as a JSON envelope to one webhook URL.

    Any status >= 400, timeout or connection failure is a PublishError.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        secret: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__()
        self.url = url
        self.timeout = timeout
        self.secret = secret
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    def format_payload(self, channel: str, partition_key: str, event: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "channel": channel,
            "partition_key": partition_key,
            "event_type": event.get("event_type"),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": event,
        }

    async def deliver(self, channel: str, partition_key: str, event: Dict[str, Any]) -> None:
        payload_str = json.dumps(self.format_payload(channel, partition_key, event), default=str)

        headers = {"Content-Type": "application/json", "User-Agent": "HazardDataCollector-Webhook/1.0"}
        if self.secret:
            signature = compute_signature(payload_str, self.secret)
            headers["X-Webhook-Signature"] = f"sha256={signature}"

        try:
            response = await self._get_client().post(self.url, content=payload_str, headers=headers)
        except httpx.TimeoutException as e:
            raise PublishError(
                "Request timed out", channel=channel, partition_key=partition_key
            ) from e
        except httpx.RequestError as e:
            raise PublishError(str(e), channel=channel, partition_key=partition_key) from e

        if response.status_code >= 400:
            raise PublishError(
                f"Webhook rejected event: {response.text[:200]}",
                channel=channel,
                partition_key=partition_key,
                status_code=response.status_code,
            )

    async def close(self) -> None:
        await super().close()
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def build_publisher(settings) -> EventPublisher:
    """Webhook publisher when a URL is configured, the in-process bus otherwise."""
    if settings.webhook_url:
        logger.info(f"Publishing events to webhook {settings.webhook_url}")
        return WebhookPublisher(
            settings.webhook_url,
            timeout=settings.webhook_timeout,
            secret=settings.webhook_secret,
        )
    return EventBusPublisher()
