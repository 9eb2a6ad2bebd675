"""Tests for operator-triggered delivery retry."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from mailrelay.core.errors import DispatchError, InvalidStateError, NotFoundError
from mailrelay.db.store import DatabaseStore, EndpointDelivery
from mailrelay.engine.retry import DeliveryRetryCoordinator


@pytest.fixture
def dispatcher() -> AsyncMock:
    mock = AsyncMock()
    mock.dispatch = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def coordinator(store: DatabaseStore, dispatcher: AsyncMock) -> DeliveryRetryCoordinator:
    return DeliveryRetryCoordinator(store, dispatcher)


async def _seed(
    store: DatabaseStore,
    make_email,
    make_endpoint,
    status: str = "failed",
    attempts: int = 1,
    endpoint_active: bool = True,
) -> EndpointDelivery:
    await store.save_inbound_email(make_email("em-1"))
    await store.create_endpoint(make_endpoint("ep-1", is_active=endpoint_active))
    delivery = EndpointDelivery(
        id="dlv-1",
        email_id="em-1",
        endpoint_id="ep-1",
        delivery_type="webhook",
        status=status,
        attempts=attempts,
        last_attempt_at=datetime.now(UTC) - timedelta(hours=1),
    )
    await store.create_delivery(delivery)
    return delivery


class TestRetryValidation:
    async def test_email_of_other_account(
        self, store: DatabaseStore, coordinator: DeliveryRetryCoordinator, dispatcher, make_email, make_endpoint
    ) -> None:
        await _seed(store, make_email, make_endpoint)

        with pytest.raises(NotFoundError, match="Email not found or access denied"):
            await coordinator.retry("em-1", "dlv-1", "user-2")
        dispatcher.dispatch.assert_not_awaited()

    async def test_delivery_of_other_email(
        self, store: DatabaseStore, coordinator: DeliveryRetryCoordinator, make_email, make_endpoint
    ) -> None:
        await _seed(store, make_email, make_endpoint)
        await store.save_inbound_email(make_email("em-2"))

        with pytest.raises(NotFoundError, match="Delivery record not found"):
            await coordinator.retry("em-2", "dlv-1", "user-1")

    async def test_inactive_endpoint_leaves_delivery_untouched(
        self, store: DatabaseStore, coordinator: DeliveryRetryCoordinator, dispatcher, make_email, make_endpoint
    ) -> None:
        before = await _seed(store, make_email, make_endpoint, attempts=2, endpoint_active=False)

        with pytest.raises(InvalidStateError, match="Endpoint not found or inactive"):
            await coordinator.retry("em-1", "dlv-1", "user-1")

        after = await store.get_delivery("dlv-1", "em-1")
        assert after.attempts == 2
        assert after.status == "failed"
        assert after.last_attempt_at == before.last_attempt_at
        dispatcher.dispatch.assert_not_awaited()


class TestRetryOutcome:
    async def test_successful_retry(
        self, store: DatabaseStore, coordinator: DeliveryRetryCoordinator, dispatcher, make_email, make_endpoint
    ) -> None:
        before = await _seed(store, make_email, make_endpoint)

        result = await coordinator.retry("em-1", "dlv-1", "user-1")

        assert result.success is True
        assert result.message == "Delivery retry initiated successfully"
        assert result.attempts == 2
        dispatcher.dispatch.assert_awaited_once_with("em-1", "user-1")

        after = await store.get_delivery("dlv-1", "em-1")
        assert after.status == "pending"
        assert after.attempts == 2
        assert after.last_attempt_at > before.last_attempt_at

    async def test_retry_of_successful_delivery_that_fails(
        self, store: DatabaseStore, coordinator: DeliveryRetryCoordinator, dispatcher, make_email, make_endpoint
    ) -> None:
        await _seed(store, make_email, make_endpoint, status="success")
        dispatcher.dispatch.side_effect = DispatchError("HTTP 502", email_id="em-1")

        result = await coordinator.retry("em-1", "dlv-1", "user-1")

        assert result.success is False
        assert result.message == "Delivery retry failed"
        assert result.error == "HTTP 502"

        after = await store.get_delivery("dlv-1", "em-1")
        assert after.status == "failed"
        assert after.attempts == 2
        assert after.response_data["retryAttempt"] is True
        assert after.response_data["emailId"] == "em-1"
        assert after.response_data["error"] == "HTTP 502"

    async def test_each_retry_bumps_attempts(
        self, store: DatabaseStore, coordinator: DeliveryRetryCoordinator, make_email, make_endpoint
    ) -> None:
        await _seed(store, make_email, make_endpoint)

        await coordinator.retry("em-1", "dlv-1", "user-1")
        result = await coordinator.retry("em-1", "dlv-1", "user-1")

        assert result.attempts == 3

    async def test_unexpected_dispatch_error_marks_failed(
        self, store: DatabaseStore, coordinator: DeliveryRetryCoordinator, dispatcher, make_email, make_endpoint
    ) -> None:
        await _seed(store, make_email, make_endpoint, status="success")
        dispatcher.dispatch.side_effect = RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            await coordinator.retry("em-1", "dlv-1", "user-1")

        after = await store.get_delivery("dlv-1", "em-1")
        assert after.status == "failed"
        assert after.attempts == 2
        assert after.response_data["error"] == "boom"
        assert after.response_data["retryAttempt"] is True
        assert "failedAt" in after.response_data
