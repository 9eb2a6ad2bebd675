"""Operator-triggered re-delivery of a prior delivery attempt.

A retry re-runs routing for the delivery's email. The original delivery row
is marked pending with its attempt counter bumped before dispatch, and marked
failed (with retry metadata) if dispatch fails. An unexpected
exception from dispatch is recorded the same way and then re-raised. Routing records its own new
delivery rows.

Retrying is allowed from any status, including success. Concurrent retries
of the same delivery are not serialized; each bumps the counter.

Usage:
    from mailrelay.engine.retry import DeliveryRetryCoordinator

    coordinator = DeliveryRetryCoordinator(store, router)
    result = await coordinator.retry("em_123", "dlv_456", user_id="user_1")
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from mailrelay.core.errors import InvalidStateError, MailRelayError, NotFoundError
from mailrelay.core.logging import get_logger
from mailrelay.db.store import DatabaseStore, utcnow

logger = get_logger(__name__)


class Dispatcher(Protocol):
    """Anything that can re-route an email and raise DispatchError on failure."""

    async def dispatch(self, email_id: str, user_id: str | None = None): ...


@dataclass
class RetryResult:
    """Outcome of a retry request."""

    success: bool
    delivery_id: str
    message: str
    attempts: int
    error: str | None = None


class DeliveryRetryCoordinator:
    """Validates ownership and state, then re-dispatches an email."""

    def __init__(self, store: DatabaseStore, dispatcher: Dispatcher):
        self.store = store
        self.dispatcher = dispatcher

    async def retry(self, email_id: str, delivery_id: str, user_id: str) -> RetryResult:
        """Retry one delivery of one of the account's emails.

        Raises:
            NotFoundError: Email not owned by the account, or delivery not part of the email
            InvalidStateError: The delivery's endpoint is missing or inactive
            DatabaseError: If the delivery row cannot be updated
        """
        email = await self.store.get_inbound_email(email_id, user_id)
        if email is None:
            raise NotFoundError(
                "Email not found or access denied", resource="email", resource_id=email_id
            )

        delivery = await self.store.get_delivery(delivery_id, email_id)
        if delivery is None:
            raise NotFoundError(
                "Delivery record not found", resource="delivery", resource_id=delivery_id
            )

        endpoint = await self.store.get_endpoint(delivery.endpoint_id, user_id, active_only=True)
        if endpoint is None:
            logger.warning(
                "retry_rejected_inactive_endpoint",
                email_id=email_id,
                delivery_id=delivery_id,
                endpoint_id=delivery.endpoint_id,
            )
            raise InvalidStateError("Endpoint not found or inactive")

        updated = await self.store.begin_delivery_retry(delivery_id)
        if updated is None:
            raise NotFoundError(
                "Delivery record not found", resource="delivery", resource_id=delivery_id
            )

        logger.info(
            "delivery_retry_started",
            email_id=email_id,
            delivery_id=delivery_id,
            endpoint_id=endpoint.id,
            previous_status=delivery.status,
            attempts=updated.attempts,
        )

        try:
            await self.dispatcher.dispatch(email_id, user_id)
        except MailRelayError as e:
            await self._mark_failed(delivery_id, email_id, e)
            logger.error(
                "delivery_retry_failed",
                email_id=email_id,
                delivery_id=delivery_id,
                attempts=updated.attempts,
                error=str(e),
            )
            return RetryResult(
                success=False,
                delivery_id=delivery_id,
                message="Delivery retry failed",
                attempts=updated.attempts,
                error=str(e),
            )
        except Exception as e:
            await self._mark_failed(delivery_id, email_id, e)
            logger.exception(
                "delivery_retry_crashed",
                email_id=email_id,
                delivery_id=delivery_id,
                attempts=updated.attempts,
            )
            raise

        logger.info(
            "delivery_retry_dispatched",
            email_id=email_id,
            delivery_id=delivery_id,
            attempts=updated.attempts,
        )
        return RetryResult(
            success=True,
            delivery_id=delivery_id,
            message="Delivery retry initiated successfully",
            attempts=updated.attempts,
        )

    async def _mark_failed(self, delivery_id: str, email_id: str, error: Exception) -> None:
        await self.store.record_delivery_result(
            delivery_id,
            "failed",
            {
                "error": str(error) or type(error).__name__,
                "retryAttempt": True,
                "emailId": email_id,
                "failedAt": utcnow().isoformat(),
            },
        )
