"""
Unit tests for app/core/publisher.py and app/core/event_bus.py

Tests cover fire-and-forget sends, completion callbacks counting and
logging failures, webhook envelopes and HMAC signatures, and the
in-process bus with its SSE stream.

No network required (httpx.MockTransport).
"""
import asyncio
import hashlib
import hmac
import json
import logging
import pytest

import httpx

from app.core.api_errors import PublishError
from app.core.event_bus import EventBus
from app.core.publisher import (
    EventBusPublisher,
    EventPublisher,
    WebhookPublisher,
    build_publisher,
    compute_signature,
)

EVENT = {"event_type": "flood.alert", "station_id": "01646500", "water_level_feet": 12.4}


class FailingPublisher(EventPublisher):
    async def deliver(self, channel, partition_key, event):
        raise RuntimeError("broker unavailable")


class TestEventBusPublisher:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_send_reaches_subscriber(self):
        queue = EventBus.subscribe("raw.flood.alert")
        publisher = EventBusPublisher()

        task = publisher.send("raw.flood.alert", "01646500", EVENT)
        await task

        event = queue.get_nowait()
        assert event["type"] == "flood.alert"
        assert event["key"] == "01646500"
        assert event["data"] == EVENT
        assert publisher.sent == 1
        assert publisher.pending == 0
        assert EventBus.published_counts == {"raw.flood.alert": 1}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_send_returns_before_delivery(self):
        publisher = EventBusPublisher()
        publisher.send("raw.flood.alert", "01646500", EVENT)

        assert publisher.pending == 1
        await publisher.flush()
        assert publisher.pending == 0
        assert publisher.sent == 1


class TestFailureCallback:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_is_logged_not_raised(self, caplog):
        publisher = FailingPublisher()

        with caplog.at_level(logging.ERROR, logger="app.core.publisher"):
            publisher.send("raw.earthquake.alert", "us7000m1a2", EVENT)
            await publisher.flush()

        assert publisher.failed == 1
        assert publisher.sent == 0
        assert any(
            "Publish to raw.earthquake.alert [us7000m1a2] failed" in r.getMessage()
            for r in caplog.records
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unexpected_exception_is_wrapped(self):
        task = FailingPublisher().send("raw.earthquake.alert", "us7000m1a2", EVENT)
        await asyncio.gather(task, return_exceptions=True)

        assert isinstance(task.exception(), PublishError)
        assert task.exception().channel == "raw.earthquake.alert"


class TestWebhookPublisher:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_posts_signed_envelope(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(202)

        publisher = WebhookPublisher(
            "https://hooks.example.com/hazards",
            secret="s3cret",
            transport=httpx.MockTransport(handler),
        )
        publisher.send("raw.flood.alert", "01646500", EVENT)
        await publisher.close()

        request = seen[0]
        body = request.content.decode()
        payload = json.loads(body)
        assert payload["channel"] == "raw.flood.alert"
        assert payload["partition_key"] == "01646500"
        assert payload["event_type"] == "flood.alert"
        assert payload["data"] == EVENT
        assert request.headers["X-Webhook-Signature"] == f"sha256={compute_signature(body, 's3cret')}"
        assert publisher.sent == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unsigned_without_secret(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200)

        publisher = WebhookPublisher("https://hooks.example.com/hazards", transport=httpx.MockTransport(handler))
        publisher.send("raw.flood.alert", "01646500", EVENT)
        await publisher.close()

        assert "X-Webhook-Signature" not in seen[0].headers

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejected_event_counts_as_failure(self):
        publisher = WebhookPublisher(
            "https://hooks.example.com/hazards",
            transport=httpx.MockTransport(lambda request: httpx.Response(500, text="oops")),
        )

        task = publisher.send("raw.flood.alert", "01646500", EVENT)
        await publisher.close()

        assert publisher.failed == 1
        assert task.exception().status_code == 500

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_connection_error_counts_as_failure(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        publisher = WebhookPublisher("https://hooks.example.com/hazards", transport=httpx.MockTransport(handler))
        publisher.send("raw.flood.alert", "01646500", EVENT)
        await publisher.close()

        assert publisher.failed == 1

    @pytest.mark.unit
    def test_signature_is_hmac_sha256(self):
        expected = hmac.new(b"key", b'{"a": 1}', hashlib.sha256).hexdigest()
        assert compute_signature('{"a": 1}', "key") == expected


class TestBuildPublisher:

    @pytest.mark.unit
    def test_bus_by_default(self, settings):
        assert isinstance(build_publisher(settings), EventBusPublisher)

    @pytest.mark.unit
    def test_webhook_when_configured(self, settings):
        settings.webhook_url = "https://hooks.example.com/hazards"
        settings.webhook_secret = "s3cret"

        publisher = build_publisher(settings)

        assert isinstance(publisher, WebhookPublisher)
        assert publisher.secret == "s3cret"


class TestEventBus:

    @pytest.mark.unit
    def test_publish_without_subscribers_counts(self):
        assert EventBus.publish("raw.tsunami.warning", "tsunami.warning", {}) == 0
        assert EventBus.published_counts["raw.tsunami.warning"] == 1

    @pytest.mark.unit
    def test_slow_subscriber_is_dropped(self):
        queue = EventBus.subscribe("raw.waterlevel.data", max_queue_size=1)
        EventBus.publish("raw.waterlevel.data", "waterlevel.data", {"n": 1})
        EventBus.publish("raw.waterlevel.data", "waterlevel.data", {"n": 2})

        assert queue.qsize() == 1
        assert EventBus.active_channels == {}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stream_formats_sse(self):
        stream = EventBus.subscribe_stream("raw.flood.alert")
        pending = asyncio.ensure_future(stream.__anext__())
        await asyncio.sleep(0)

        assert EventBus.active_channels == {"raw.flood.alert": 1}
        EventBus.publish("raw.flood.alert", "flood.alert", {"station_id": "8518750"}, partition_key="8518750")
        message = await asyncio.wait_for(pending, timeout=1)
        await stream.aclose()

        assert message == 'event: flood.alert\nid: 8518750\ndata: {"station_id": "8518750"}\n\n'
        assert EventBus.active_channels == {}
