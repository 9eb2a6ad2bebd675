"""Tests for email routing and delivery recording.

Webhook calls go through an httpx.MockTransport; SMTP sends are AsyncMocks.
"""

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from mailrelay.config_schema import AppConfig
from mailrelay.core.errors import DeliveryError, DispatchError
from mailrelay.db.store import DatabaseStore, EmailAddress, new_id
from mailrelay.delivery.smtp import SmtpSender
from mailrelay.delivery.webhook import WebhookSender
from mailrelay.engine.router import EmailRouter
from mailrelay.engine.threader import EmailThreader


class _Hook:
    """Records webhook requests and answers with a fixed status."""

    def __init__(self, status_code: int = 200, body: str = '{"ok": true}'):
        self.status_code = status_code
        self.body = body
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, text=self.body)


@pytest.fixture
def hook() -> _Hook:
    return _Hook()


@pytest.fixture
async def http_client(hook: _Hook):
    async with httpx.AsyncClient(transport=httpx.MockTransport(hook)) as client:
        yield client


@pytest.fixture
def smtp_sender(sample_config: AppConfig) -> SmtpSender:
    sender = SmtpSender(sample_config.smtp)
    sender.send = AsyncMock(return_value="fwd-1@relay.test")
    return sender


@pytest.fixture
def router(
    store: DatabaseStore,
    sample_config: AppConfig,
    http_client: httpx.AsyncClient,
    smtp_sender: SmtpSender,
) -> EmailRouter:
    return EmailRouter(
        store=store,
        threader=EmailThreader(store, sample_config.threading),
        webhook_sender=WebhookSender(http_client, sample_config.delivery),
        smtp_sender=smtp_sender,
        config=sample_config,
    )


async def _bind(store: DatabaseStore, address: str, endpoint_id: str, user_id: str = "user-1"):
    await store.create_email_address(
        EmailAddress(id=new_id(), user_id=user_id, address=address, endpoint_id=endpoint_id)
    )


class TestWebhookRouting:
    async def test_delivers_and_records_success(
        self, store: DatabaseStore, router: EmailRouter, hook: _Hook, make_email, make_endpoint
    ) -> None:
        await store.create_endpoint(
            make_endpoint("ep-1", config={"url": "https://hooks.example.com/in", "headers": {"X-Tenant": "acme"}})
        )
        await _bind(store, "support@relay.test", "ep-1")
        await store.save_inbound_email(make_email("em-1"))

        result = await router.route_email("em-1", "user-1")

        assert result.delivered is True
        assert result.endpoint_id == "ep-1"
        assert result.thread.is_new_thread is True

        request = hook.requests[0]
        assert request.headers["X-Webhook-Event"] == "email.received"
        assert request.headers["X-Endpoint-ID"] == "ep-1"
        assert request.headers["X-Email-ID"] == "em-1"
        assert request.headers["X-Tenant"] == "acme"
        token = request.headers["X-Webhook-Verification-Token"]
        assert token

        payload = json.loads(request.content)
        assert payload["event"] == "email.received"
        assert payload["email"]["id"] == "em-1"
        assert payload["email"]["threadId"] == result.thread.thread_id
        assert payload["email"]["url"] == "https://relay.example.com/api/v2/emails/em-1"
        assert payload["email"]["parsedData"]["htmlBody"] == "<p>Hello</p>"

        deliveries = await store.list_deliveries("em-1")
        assert len(deliveries) == 1
        assert deliveries[0].status == "success"
        assert deliveries[0].attempts == 1
        assert deliveries[0].response_data["responseCode"] == 200

        # Token is generated once and then reused
        endpoint = await store.get_endpoint("ep-1", "user-1")
        assert endpoint.config["verificationToken"] == token

    async def test_non_2xx_recorded_as_failure(
        self, store: DatabaseStore, router: EmailRouter, hook: _Hook, make_email, make_endpoint
    ) -> None:
        hook.status_code = 503
        await store.create_endpoint(make_endpoint("ep-1"))
        await _bind(store, "support@relay.test", "ep-1")
        await store.save_inbound_email(make_email("em-1"))

        result = await router.route_email("em-1", "user-1")

        assert result.delivered is False
        assert result.failed[0].error == "HTTP 503"
        delivery = (await store.list_deliveries("em-1"))[0]
        assert delivery.status == "failed"
        assert delivery.response_data["responseCode"] == 503

    async def test_oversized_payload_drops_html(
        self, store: DatabaseStore, sample_config: AppConfig, router: EmailRouter, hook: _Hook, make_email, make_endpoint
    ) -> None:
        sample_config.delivery.max_payload_bytes = 500
        await store.create_endpoint(make_endpoint("ep-1"))
        await _bind(store, "support@relay.test", "ep-1")
        await store.save_inbound_email(make_email("em-1"))

        await router.route_email("em-1", "user-1")

        payload = json.loads(hook.requests[0].content)
        assert payload["email"]["parsedData"]["htmlBody"] is None
        delivery = (await store.list_deliveries("em-1"))[0]
        assert delivery.response_data["strippedFields"] == ["htmlBody"]


class TestEndpointResolution:
    async def test_no_endpoint_skips(
        self, store: DatabaseStore, router: EmailRouter, hook: _Hook, make_email
    ) -> None:
        await store.save_inbound_email(make_email("em-1"))

        result = await router.route_email("em-1", "user-1")

        assert result.skipped_reason == "No active endpoint for support@relay.test"
        assert result.deliveries == []
        assert hook.requests == []

    async def test_inactive_endpoint_not_used(
        self, store: DatabaseStore, router: EmailRouter, make_email, make_endpoint
    ) -> None:
        await store.create_endpoint(make_endpoint("ep-1", is_active=False))
        await _bind(store, "support@relay.test", "ep-1")
        await store.save_inbound_email(make_email("em-1"))

        result = await router.route_email("em-1", "user-1")

        assert result.endpoint_id is None
        assert result.skipped_reason is not None

    async def test_domain_catch_all(
        self, store: DatabaseStore, router: EmailRouter, make_email, make_endpoint
    ) -> None:
        await store.create_endpoint(make_endpoint("ep-all"))
        await store.set_domain_catch_all("relay.test", "user-1", "ep-all")
        await store.save_inbound_email(make_email("em-1", recipient="anything@relay.test"))

        result = await router.route_email("em-1", "user-1")

        assert result.endpoint_id == "ep-all"
        assert result.delivered is True

    async def test_reply_follows_thread_root_endpoint(
        self, store: DatabaseStore, router: EmailRouter, make_email, make_endpoint
    ) -> None:
        await store.create_endpoint(make_endpoint("ep-support"))
        await store.create_endpoint(make_endpoint("ep-sales"))
        await _bind(store, "support@relay.test", "ep-support")
        await _bind(store, "sales@relay.test", "ep-sales")

        root = make_email("em-1")
        await store.save_inbound_email(root)
        await router.route_email("em-1", "user-1")

        reply = make_email(
            "em-2",
            in_reply_to=root.message_id,
            to=(None, "sales@relay.test"),
            recipient="sales@relay.test",
        )
        await store.save_inbound_email(reply)
        result = await router.route_email("em-2", "user-1")

        assert result.thread.thread_position == 1
        assert result.endpoint_id == "ep-support"


class TestForwarding:
    async def test_forward_to_group(
        self, store: DatabaseStore, router: EmailRouter, smtp_sender: SmtpSender, make_email, make_endpoint
    ) -> None:
        await store.create_endpoint(
            make_endpoint(
                "ep-1",
                type="email_group",
                config={"emails": ["a@team.test", "b@team.test"], "subjectPrefix": "[Relay] "},
            )
        )
        await _bind(store, "support@relay.test", "ep-1")
        await store.save_inbound_email(make_email("em-1"))

        result = await router.route_email("em-1", "user-1")

        assert result.delivered is True
        message = smtp_sender.send.await_args.args[0]
        assert message["To"] == "a@team.test, b@team.test"
        assert message["Subject"] == "[Relay] Quarterly numbers"
        assert message["From"] == "support@relay.test"
        delivery = (await store.list_deliveries("em-1"))[0]
        assert delivery.delivery_type == "email_forward"
        assert delivery.status == "success"

    async def test_forwarding_loop_detected(
        self, store: DatabaseStore, router: EmailRouter, smtp_sender: SmtpSender, make_email, make_endpoint
    ) -> None:
        await store.create_endpoint(
            make_endpoint("ep-1", type="email", config={"forwardTo": "Support@Relay.test"})
        )
        await _bind(store, "support@relay.test", "ep-1")
        await store.save_inbound_email(make_email("em-1"))

        result = await router.route_email("em-1", "user-1")

        assert result.delivered is False
        smtp_sender.send.assert_not_awaited()
        delivery = (await store.list_deliveries("em-1"))[0]
        assert delivery.status == "failed"
        assert delivery.response_data["error"] == "FORWARDING_LOOP_DETECTED"

    async def test_smtp_failure_recorded(
        self, store: DatabaseStore, router: EmailRouter, smtp_sender: SmtpSender, make_email, make_endpoint
    ) -> None:
        smtp_sender.send.side_effect = DeliveryError("SMTP send failed: connection refused")
        await store.create_endpoint(
            make_endpoint("ep-1", type="email", config={"forwardTo": "ops@team.test"})
        )
        await _bind(store, "support@relay.test", "ep-1")
        await store.save_inbound_email(make_email("em-1"))

        result = await router.route_email("em-1", "user-1")

        assert result.delivered is False
        delivery = (await store.list_deliveries("em-1"))[0]
        assert delivery.status == "failed"
        assert delivery.response_data["errorType"] == "DeliveryError"


class TestDispatch:
    async def test_dispatch_raises_when_skipped(
        self, store: DatabaseStore, router: EmailRouter, make_email
    ) -> None:
        await store.save_inbound_email(make_email("em-1"))

        with pytest.raises(DispatchError):
            await router.dispatch("em-1", "user-1")

    async def test_dispatch_raises_on_failed_delivery(
        self, store: DatabaseStore, router: EmailRouter, hook: _Hook, make_email, make_endpoint
    ) -> None:
        hook.status_code = 500
        await store.create_endpoint(make_endpoint("ep-1"))
        await _bind(store, "support@relay.test", "ep-1")
        await store.save_inbound_email(make_email("em-1"))

        with pytest.raises(DispatchError) as exc_info:
            await router.dispatch("em-1", "user-1")

        assert exc_info.value.delivery_ids

    async def test_redispatch_does_not_rethread(
        self, store: DatabaseStore, router: EmailRouter, make_email, make_endpoint
    ) -> None:
        await store.create_endpoint(make_endpoint("ep-1"))
        await _bind(store, "support@relay.test", "ep-1")
        await store.save_inbound_email(make_email("em-1"))

        first = await router.dispatch("em-1", "user-1")
        await router.dispatch("em-1", "user-1")

        thread = await store.get_thread(first.thread.thread_id, "user-1")
        assert thread.message_count == 1
        assert len(await store.list_deliveries("em-1")) == 2
