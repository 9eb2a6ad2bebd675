"""Email routing: deliver a stored inbound email to its endpoint.

Routing an email:
1. Thread it (a threading failure is logged and routing continues)
2. Resolve the endpoint:
   - thread continuity: replies go to the endpoint of the thread's root recipient
   - the endpoint bound to the recipient address
   - the recipient domain's catch-all endpoint
3. Pre-create a pending delivery row (attempts = 1)
4. Deliver (webhook POST or SMTP forward) and record success or failure
   with response metadata on the row

route_email() is the ingest path and never raises for delivery problems; the
outcome is on the returned RoutingResult. dispatch() is the retry path and
raises DispatchError when nothing was delivered.

Usage:
    from mailrelay.engine.router import EmailRouter

    router = EmailRouter(store, threader, webhook_sender, smtp_sender, config)
    result = await router.route_email("em_123", "user_1")
"""

from __future__ import annotations

import json
import secrets
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from mailrelay.config_schema import AppConfig
from mailrelay.core.errors import (
    DatabaseError,
    DispatchError,
    InvalidStateError,
    MailRelayError,
    NotFoundError,
)
from mailrelay.core.logging import get_logger
from mailrelay.db.store import (
    DatabaseStore,
    Endpoint,
    EndpointDelivery,
    InboundEmail,
    new_id,
    utcnow,
)
from mailrelay.delivery.smtp import SmtpSender, build_message
from mailrelay.delivery.webhook import WebhookSender
from mailrelay.engine.participants import AddressBlob
from mailrelay.engine.threader import EmailThreader, ThreadingResult, parse_references

logger = get_logger(__name__)

WEBHOOK_EVENT = "email.received"
DEFAULT_FORWARD_PREFIX = "Fwd: "


@dataclass
class DeliveryOutcome:
    """Result of one delivery attempt made while routing."""

    delivery_id: str
    endpoint_id: str
    delivery_type: str
    success: bool
    error: str | None = None


@dataclass
class RoutingResult:
    """What happened when an email was routed.

    Attributes:
        email_id: The routed email
        thread: Thread assignment, or None if threading failed
        endpoint_id: Endpoint the email was routed to, if any
        deliveries: Delivery attempts made
        skipped_reason: Why nothing was delivered, when no attempt was made
    """

    email_id: str
    thread: ThreadingResult | None = None
    endpoint_id: str | None = None
    deliveries: list[DeliveryOutcome] = field(default_factory=list)
    skipped_reason: str | None = None

    @property
    def failed(self) -> list[DeliveryOutcome]:
        return [d for d in self.deliveries if not d.success]

    @property
    def delivered(self) -> bool:
        return bool(self.deliveries) and not self.failed


def _load_blob(raw: str | None) -> dict[str, Any] | None:
    """Parse a stored address blob for inclusion in payloads; None if unreadable."""
    if not raw:
        return None
    try:
        return AddressBlob.model_validate_json(raw).model_dump()
    except ValidationError:
        return None


def _blob_text(raw: str | None) -> str:
    blob = _load_blob(raw)
    if not blob:
        return ""
    if blob.get("text"):
        return blob["text"]
    return ", ".join(
        entry.get("address", "")
        for entry in blob.get("addresses") or []
        if isinstance(entry, dict)
    )


class EmailRouter:
    """Routes inbound emails to endpoints and records delivery attempts."""

    def __init__(
        self,
        store: DatabaseStore,
        threader: EmailThreader,
        webhook_sender: WebhookSender,
        smtp_sender: SmtpSender,
        config: AppConfig,
    ):
        self.store = store
        self.threader = threader
        self.webhook_sender = webhook_sender
        self.smtp_sender = smtp_sender
        self.config = config

    async def route_email(self, email_id: str, user_id: str | None = None) -> RoutingResult:
        """Thread and deliver an email.

        Raises:
            NotFoundError: If the email does not exist (for this account)
            DatabaseError: If a delivery row cannot be written
        """
        email = await self.store.get_inbound_email(email_id, user_id)
        if email is None:
            raise NotFoundError(
                f"Email {email_id} not found", resource="email", resource_id=email_id
            )

        result = RoutingResult(email_id=email.id)

        try:
            result.thread = await self.threader.process_email(email.id, email.user_id)
        except DatabaseError as e:
            logger.error("threading_failed", email_id=email.id, error=str(e))

        if not email.recipient:
            result.skipped_reason = "Email has no recipient"
            logger.warning("routing_skipped", email_id=email.id, reason=result.skipped_reason)
            return result

        endpoint = await self.resolve_endpoint(email, result.thread)
        if endpoint is None:
            result.skipped_reason = f"No active endpoint for {email.recipient}"
            logger.info("routing_skipped", email_id=email.id, reason=result.skipped_reason)
            return result

        result.endpoint_id = endpoint.id
        if endpoint.type == "webhook":
            outcome = await self._deliver_webhook(email, endpoint, result.thread)
        else:
            outcome = await self._deliver_forward(email, endpoint)
        result.deliveries.append(outcome)

        logger.info(
            "email_routed",
            email_id=email.id,
            endpoint_id=endpoint.id,
            endpoint_type=endpoint.type,
            delivery_id=outcome.delivery_id,
            success=outcome.success,
        )
        return result

    async def dispatch(self, email_id: str, user_id: str | None = None) -> RoutingResult:
        """Route an email and require that it was delivered.

        Raises:
            DispatchError: If no delivery was attempted or any attempt failed
        """
        result = await self.route_email(email_id, user_id)

        if result.skipped_reason:
            raise DispatchError(result.skipped_reason, email_id=email_id)
        if result.failed:
            first = result.failed[0]
            raise DispatchError(
                first.error or "Delivery failed",
                email_id=email_id,
                delivery_ids=[d.delivery_id for d in result.failed],
            )
        return result

    async def resolve_endpoint(
        self, email: InboundEmail, thread: ThreadingResult | None
    ) -> Endpoint | None:
        """Pick the endpoint an email should be delivered to, or None."""
        if thread is not None and not thread.is_new_thread and thread.thread_position > 0:
            root_recipient = await self.store.get_thread_root_recipient(
                thread.thread_id, email.user_id
            )
            if root_recipient and root_recipient != email.recipient:
                endpoint = await self._endpoint_for_address(root_recipient, email.user_id)
                if endpoint is not None:
                    logger.info(
                        "thread_continuity_route",
                        email_id=email.id,
                        thread_id=thread.thread_id,
                        root_recipient=root_recipient,
                        endpoint_id=endpoint.id,
                    )
                    return endpoint

        return await self._endpoint_for_address(email.recipient, email.user_id)

    async def _endpoint_for_address(self, address: str, user_id: str) -> Endpoint | None:
        endpoint = await self.store.get_endpoint_for_address(address, user_id)
        if endpoint is not None:
            return endpoint

        if "@" not in address:
            return None
        domain = address.rsplit("@", 1)[1]
        return await self.store.get_catch_all_endpoint(domain, user_id)

    # =========================================================================
    # Webhook endpoints
    # =========================================================================

    async def _deliver_webhook(
        self, email: InboundEmail, endpoint: Endpoint, thread: ThreadingResult | None
    ) -> DeliveryOutcome:
        delivery = await self._start_delivery(email.id, endpoint.id, "webhook")

        try:
            url = endpoint.config.get("url")
            if not url:
                raise InvalidStateError(f"Webhook URL not configured for endpoint {endpoint.id}")
            token = await self._verification_token(endpoint)

            payload, stripped = self.build_webhook_payload(email, endpoint, thread)
            timestamp = payload["timestamp"]
            headers = {
                "X-Webhook-Event": WEBHOOK_EVENT,
                "X-Endpoint-ID": endpoint.id,
                "X-Email-ID": email.id,
                "X-Message-ID": email.message_id or "",
                "X-Webhook-Timestamp": timestamp,
                "X-Webhook-Verification-Token": token,
                **{str(k): str(v) for k, v in (endpoint.config.get("headers") or {}).items()},
            }

            response = await self.webhook_sender.send(
                url, payload, headers, timeout=endpoint.config.get("timeout")
            )
        except MailRelayError as e:
            return await self._fail_delivery(delivery, endpoint, e)

        await self.store.record_delivery_result(
            delivery.id,
            "success" if response.success else "failed",
            {
                "responseCode": response.status_code,
                "responseBody": response.body,
                "responseHeaders": response.headers,
                "deliveryTime": response.elapsed_ms,
                "error": response.error,
                "url": url,
                "strippedFields": stripped or None,
                "deliveredAt": utcnow().isoformat(),
            },
        )
        return DeliveryOutcome(
            delivery_id=delivery.id,
            endpoint_id=endpoint.id,
            delivery_type="webhook",
            success=response.success,
            error=response.error,
        )

    def build_webhook_payload(
        self, email: InboundEmail, endpoint: Endpoint, thread: ThreadingResult | None
    ) -> tuple[dict[str, Any], list[str]]:
        """Build the email.received payload.

        Returns:
            Tuple of (payload, names of fields dropped to fit the size limit)
        """
        from_blob = _load_blob(email.from_data)
        to_blob = _load_blob(email.to_data)
        cc_blob = _load_blob(email.cc_data)
        received_at = email.date.isoformat() if email.date else None

        parsed_data = {
            "messageId": email.message_id,
            "date": received_at,
            "subject": email.subject,
            "from": from_blob,
            "to": to_blob,
            "cc": cc_blob,
            "inReplyTo": email.in_reply_to,
            "references": parse_references(email.references),
            "textBody": email.text_body,
            "htmlBody": email.html_body,
        }
        payload: dict[str, Any] = {
            "event": WEBHOOK_EVENT,
            "timestamp": utcnow().isoformat(),
            "email": {
                "id": email.id,
                "messageId": email.message_id,
                "from": from_blob,
                "to": to_blob,
                "recipient": email.recipient,
                "subject": email.subject,
                "receivedAt": received_at,
                "threadId": thread.thread_id if thread else email.thread_id,
                "threadPosition": thread.thread_position if thread else email.thread_position,
                "url": f"{self.config.public_base_url.rstrip('/')}/api/v2/emails/{email.id}",
                "parsedData": parsed_data,
                "cleanedContent": {
                    "html": email.html_body,
                    "text": email.text_body,
                    "hasHtml": bool(email.html_body),
                    "hasText": bool(email.text_body),
                },
            },
            "endpoint": {"id": endpoint.id, "name": endpoint.name, "type": endpoint.type},
        }

        stripped: list[str] = []
        if len(json.dumps(payload, default=str)) > self.config.delivery.max_payload_bytes:
            parsed_data["htmlBody"] = None
            payload["email"]["cleanedContent"]["html"] = None
            stripped.append("htmlBody")
            logger.warning(
                "webhook_payload_stripped",
                email_id=email.id,
                stripped=stripped,
                limit=self.config.delivery.max_payload_bytes,
            )
        return payload, stripped

    async def _verification_token(self, endpoint: Endpoint) -> str:
        """Endpoint's verification token, generated and saved on first use."""
        token = endpoint.config.get("verificationToken")
        if token:
            return token

        token = secrets.token_urlsafe(32)
        endpoint.config = {**endpoint.config, "verificationToken": token}
        await self.store.update_endpoint(endpoint.id, endpoint.user_id, config=endpoint.config)
        logger.info("verification_token_created", endpoint_id=endpoint.id)
        return token

    # =========================================================================
    # Forwarding endpoints (email, email_group)
    # =========================================================================

    async def _deliver_forward(self, email: InboundEmail, endpoint: Endpoint) -> DeliveryOutcome:
        delivery = await self._start_delivery(email.id, endpoint.id, "email_forward")

        if endpoint.type == "email_group":
            targets = [a for a in endpoint.config.get("emails") or [] if a]
        else:
            forward_to = endpoint.config.get("forwardTo")
            targets = [forward_to] if forward_to else []

        from_address = (
            endpoint.config.get("fromAddress") or email.recipient or self.config.smtp.default_from
        )

        try:
            if not targets:
                raise InvalidStateError(f"No forward targets configured for endpoint {endpoint.id}")

            recipient = (email.recipient or "").strip().lower()
            looping = [t for t in targets if recipient and t.strip().lower() == recipient]
            if looping:
                await self.store.record_delivery_result(
                    delivery.id,
                    "failed",
                    {
                        "error": "FORWARDING_LOOP_DETECTED",
                        "message": (
                            "Cannot forward email to the same address it was received at: "
                            + ", ".join(looping)
                        ),
                        "recipient": recipient,
                        "forwardTargets": targets,
                    },
                )
                logger.error("forwarding_loop_detected", email_id=email.id, targets=looping)
                return DeliveryOutcome(
                    delivery_id=delivery.id,
                    endpoint_id=endpoint.id,
                    delivery_type="email_forward",
                    success=False,
                    error="Forwarding loop detected",
                )

            message = self.build_forward_message(email, endpoint, from_address, targets)
            await self.smtp_sender.send(message)
        except MailRelayError as e:
            return await self._fail_delivery(delivery, endpoint, e)

        await self.store.record_delivery_result(
            delivery.id,
            "success",
            {
                "toAddresses": targets,
                "fromAddress": from_address,
                "forwardedAt": utcnow().isoformat(),
            },
        )
        return DeliveryOutcome(
            delivery_id=delivery.id,
            endpoint_id=endpoint.id,
            delivery_type="email_forward",
            success=True,
        )

    def build_forward_message(
        self, email: InboundEmail, endpoint: Endpoint, from_address: str, targets: list[str]
    ):
        prefix = endpoint.config.get("subjectPrefix", DEFAULT_FORWARD_PREFIX)
        sender_name = endpoint.config.get("senderName")
        display_from = f"{sender_name} <{from_address}>" if sender_name else from_address

        header_block = "\n".join(
            [
                "---------- Forwarded message ----------",
                f"From: {_blob_text(email.from_data)}",
                f"Date: {email.date.isoformat() if email.date else ''}",
                f"Subject: {email.subject or ''}",
                f"To: {_blob_text(email.to_data)}",
            ]
        )
        text_body = f"{header_block}\n\n{email.text_body or ''}"

        return build_message(
            from_address=display_from,
            to=targets,
            subject=f"{prefix}{email.subject or ''}",
            text_body=text_body,
            html_body=email.html_body,
            extra_headers={"X-Forwarded-For": email.recipient or ""},
        )

    # =========================================================================
    # Delivery rows
    # =========================================================================

    async def _start_delivery(
        self, email_id: str, endpoint_id: str, delivery_type: str
    ) -> EndpointDelivery:
        delivery = EndpointDelivery(
            id=new_id(),
            email_id=email_id,
            endpoint_id=endpoint_id,
            delivery_type=delivery_type,
            status="pending",
            attempts=1,
            last_attempt_at=utcnow(),
        )
        await self.store.create_delivery(delivery)
        return delivery

    async def _fail_delivery(
        self, delivery: EndpointDelivery, endpoint: Endpoint, error: Exception
    ) -> DeliveryOutcome:
        await self.store.record_delivery_result(
            delivery.id,
            "failed",
            {
                "error": str(error),
                "errorType": type(error).__name__,
                "failedAt": utcnow().isoformat(),
            },
        )
        logger.error(
            "delivery_failed",
            delivery_id=delivery.id,
            email_id=delivery.email_id,
            endpoint_id=endpoint.id,
            error=str(error),
        )
        return DeliveryOutcome(
            delivery_id=delivery.id,
            endpoint_id=endpoint.id,
            delivery_type=delivery.delivery_type,
            success=False,
            error=str(error),
        )
