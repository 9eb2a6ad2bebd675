"""HTTP API routes for mailrelay.

api_router carries every JSON endpoint under /api. All /api/v2 routes
require `Authorization: Bearer <api key>` and only ever touch the
authenticated account's records; a record owned by another account is
reported exactly like a missing one.

Errors are raised as MailRelayError subclasses (or HTTPException) and
rendered by the app's exception handlers as {"success": false, "error": ...}.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Literal

import httpx
import regex
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from mailrelay.core.errors import DeliveryError, NotFoundError
from mailrelay.core.logging import get_logger
from mailrelay.db.store import (
    DatabaseStore,
    EmailAddress,
    EmailThread,
    Endpoint,
    EndpointDelivery,
    InboundEmail,
    SentEmail,
    new_id,
    utcnow,
)
from mailrelay.delivery.smtp import SmtpSender, build_message
from mailrelay.engine.participants import AddressEntry, ParticipantExtractor
from mailrelay.engine.retry import DeliveryRetryCoordinator
from mailrelay.engine.router import EmailRouter
from mailrelay.engine.threader import EmailThreader, clean_message_id, parse_references
from mailrelay.web.app import VERSION
from mailrelay.web.dependencies import (
    get_current_user_id,
    get_participant_extractor,
    get_retry_coordinator,
    get_router,
    get_smtp_sender,
    get_store,
    get_threader,
)

logger = get_logger(__name__)

api_router = APIRouter(prefix="/api")

# Loose address shape check; delivery will reject anything the server refuses
ADDRESS_PATTERN = regex.compile(r"^[^@\s<>]+@[^@\s<>]+\.[^@\s<>]+$")


# ---------------------------------------------------------------------------
# Pydantic models for API input validation
# ---------------------------------------------------------------------------


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class AddressListIn(_CamelModel):
    """Parsed address header as produced by the upstream mail parser."""

    text: str | None = None
    addresses: list[AddressEntry] = Field(default_factory=list)


class InboundEmailRequest(_CamelModel):
    message_id: str | None = Field(default=None, alias="messageId")
    in_reply_to: str | None = Field(default=None, alias="inReplyTo")
    references: list[str] | str | None = None
    subject: str | None = None
    date: datetime | None = None
    from_: AddressListIn | None = Field(default=None, alias="from")
    to: AddressListIn | None = None
    cc: AddressListIn | None = None
    recipient: str
    text_body: str | None = Field(default=None, alias="textBody")
    html_body: str | None = Field(default=None, alias="htmlBody")

    @field_validator("recipient")
    @classmethod
    def validate_recipient(cls, v: str) -> str:
        v = v.strip().lower()
        if not ADDRESS_PATTERN.match(v):
            raise ValueError("recipient must be an email address")
        return v


class RetryDeliveryRequest(_CamelModel):
    delivery_id: str = Field(alias="deliveryId", min_length=1)


class ReplyRequest(_CamelModel):
    from_: str = Field(alias="from", min_length=3)
    to: list[str] | None = None
    cc: list[str] | None = None
    subject: str | None = None
    text: str = Field(min_length=1)
    html: str | None = None


class CreateEndpointRequest(_CamelModel):
    name: str = Field(min_length=1, max_length=200)
    type: Literal["webhook", "email", "email_group"]
    config: dict[str, Any]
    is_active: bool = Field(default=True, alias="isActive")

    @model_validator(mode="after")
    def validate_config_for_type(self) -> CreateEndpointRequest:
        validate_endpoint_config(self.type, self.config)
        return self


class UpdateEndpointRequest(_CamelModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    config: dict[str, Any] | None = None
    is_active: bool | None = Field(default=None, alias="isActive")


class CreateEmailAddressRequest(_CamelModel):
    address: str
    endpoint_id: str | None = Field(default=None, alias="endpointId")
    is_active: bool = Field(default=True, alias="isActive")

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        v = v.strip().lower()
        if not ADDRESS_PATTERN.match(v):
            raise ValueError("address must be an email address")
        return v


class CatchAllRequest(_CamelModel):
    endpoint_id: str | None = Field(default=None, alias="endpointId")


def validate_endpoint_config(endpoint_type: str, config: dict[str, Any]) -> None:
    """Check that an endpoint config carries what its type needs.

    Raises:
        ValueError: If a required key is missing or malformed
    """
    if endpoint_type == "webhook":
        url = config.get("url")
        if not isinstance(url, str) or not url.startswith(("http://", "https://")):
            raise ValueError("webhook endpoints need an http(s) 'url'")
        try:
            httpx.URL(url)
        except httpx.InvalidURL as e:
            raise ValueError(f"invalid webhook 'url': {e}") from e
        timeout = config.get("timeout")
        if timeout is not None and (not isinstance(timeout, int | float) or timeout <= 0):
            raise ValueError("'timeout' must be a positive number of seconds")
        headers = config.get("headers")
        if headers is not None and not isinstance(headers, dict):
            raise ValueError("'headers' must be an object")
    elif endpoint_type == "email":
        forward_to = config.get("forwardTo")
        if not isinstance(forward_to, str) or not ADDRESS_PATTERN.match(forward_to.strip()):
            raise ValueError("email endpoints need a 'forwardTo' address")
    elif endpoint_type == "email_group":
        emails = config.get("emails")
        if (
            not isinstance(emails, list)
            or not emails
            or not all(isinstance(e, str) and ADDRESS_PATTERN.match(e.strip()) for e in emails)
        ):
            raise ValueError("email_group endpoints need a non-empty 'emails' list of addresses")


# ---------------------------------------------------------------------------
# Serializers
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _json_field(raw: str | None) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


def serialize_delivery(delivery: EndpointDelivery) -> dict[str, Any]:
    return {
        "id": delivery.id,
        "emailId": delivery.email_id,
        "endpointId": delivery.endpoint_id,
        "deliveryType": delivery.delivery_type,
        "status": delivery.status,
        "attempts": delivery.attempts,
        "lastAttemptAt": _iso(delivery.last_attempt_at),
        "responseData": delivery.response_data,
        "createdAt": _iso(delivery.created_at),
        "updatedAt": _iso(delivery.updated_at),
    }


def serialize_endpoint(endpoint: Endpoint) -> dict[str, Any]:
    return {
        "id": endpoint.id,
        "name": endpoint.name,
        "type": endpoint.type,
        "config": endpoint.config,
        "isActive": endpoint.is_active,
        "createdAt": _iso(endpoint.created_at),
        "updatedAt": _iso(endpoint.updated_at),
    }


def serialize_thread(thread: EmailThread) -> dict[str, Any]:
    return {
        "id": thread.id,
        "rootMessageId": thread.root_message_id,
        "normalizedSubject": thread.normalized_subject,
        "participantEmails": thread.participant_emails,
        "messageCount": thread.message_count,
        "lastMessageAt": _iso(thread.last_message_at),
        "createdAt": _iso(thread.created_at),
        "updatedAt": _iso(thread.updated_at),
    }


def serialize_inbound(email: InboundEmail) -> dict[str, Any]:
    return {
        "id": email.id,
        "type": "inbound",
        "threadPosition": email.thread_position,
        "messageId": email.message_id,
        "inReplyTo": email.in_reply_to,
        "references": parse_references(email.references),
        "subject": email.subject,
        "date": _iso(email.date),
        "from": _json_field(email.from_data),
        "to": _json_field(email.to_data),
        "cc": _json_field(email.cc_data),
        "recipient": email.recipient,
        "textBody": email.text_body,
        "htmlBody": email.html_body,
        "threadId": email.thread_id,
        "isRead": email.is_read,
    }


def serialize_sent(sent: SentEmail) -> dict[str, Any]:
    return {
        "id": sent.id,
        "type": "outbound",
        "threadPosition": sent.thread_position,
        "messageId": sent.message_id,
        "inReplyTo": sent.in_reply_to,
        "subject": sent.subject,
        "date": _iso(sent.sent_at or sent.created_at),
        "from": sent.from_address,
        "to": _json_field(sent.to_json),
        "cc": _json_field(sent.cc_json),
        "textBody": sent.text_body,
        "status": sent.status,
        "failureReason": sent.failure_reason,
        "threadId": sent.thread_id,
    }


async def _require_email(store: DatabaseStore, email_id: str, user_id: str) -> InboundEmail:
    email = await store.get_inbound_email(email_id, user_id)
    if email is None:
        raise NotFoundError(
            "Email not found or access denied", resource="email", resource_id=email_id
        )
    return email


async def _require_thread(store: DatabaseStore, thread_id: str, user_id: str) -> EmailThread:
    thread = await store.get_thread(thread_id, user_id)
    if thread is None:
        raise NotFoundError("Thread not found", resource="thread", resource_id=thread_id)
    return thread


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@api_router.get("/health")
async def health_check(store: DatabaseStore = Depends(get_store)):
    """Liveness check for Docker and monitoring."""
    database_ok = await store.ping()
    return {
        "status": "healthy" if database_ok else "degraded",
        "database": database_ok,
        "version": VERSION,
    }


# ---------------------------------------------------------------------------
# Emails
# ---------------------------------------------------------------------------


@api_router.post("/v2/emails/inbound", status_code=201)
async def ingest_email(
    body: InboundEmailRequest,
    user_id: str = Depends(get_current_user_id),
    store: DatabaseStore = Depends(get_store),
    router: EmailRouter = Depends(get_router),
):
    """Store a parsed inbound email, thread it and route it to its endpoint."""
    if isinstance(body.references, str):
        references = parse_references(body.references)
    else:
        references = [clean_message_id(r) for r in body.references or [] if clean_message_id(r)]

    email = InboundEmail(
        id=new_id(),
        user_id=user_id,
        message_id=clean_message_id(body.message_id) or None,
        in_reply_to=clean_message_id(body.in_reply_to) or None,
        references=json.dumps(references) if references else None,
        subject=body.subject,
        date=body.date or utcnow(),
        from_data=body.from_.model_dump_json() if body.from_ else None,
        to_data=body.to.model_dump_json() if body.to else None,
        cc_data=body.cc.model_dump_json() if body.cc else None,
        recipient=body.recipient,
        text_body=body.text_body,
        html_body=body.html_body,
    )
    await store.save_inbound_email(email)
    logger.info("email_ingested", email_id=email.id, recipient=email.recipient)

    result = await router.route_email(email.id, user_id)

    return {
        "success": True,
        "id": email.id,
        "threadId": result.thread.thread_id if result.thread else None,
        "threadPosition": result.thread.thread_position if result.thread else None,
        "isNewThread": result.thread.is_new_thread if result.thread else None,
        "routing": {
            "endpointId": result.endpoint_id,
            "delivered": result.delivered,
            "skippedReason": result.skipped_reason,
            "deliveries": [
                {
                    "id": d.delivery_id,
                    "endpointId": d.endpoint_id,
                    "deliveryType": d.delivery_type,
                    "success": d.success,
                    "error": d.error,
                }
                for d in result.deliveries
            ],
        },
    }


@api_router.get("/v2/emails/{email_id}")
async def get_email(
    email_id: str,
    user_id: str = Depends(get_current_user_id),
    store: DatabaseStore = Depends(get_store),
):
    email = await _require_email(store, email_id, user_id)
    return {"success": True, "email": serialize_inbound(email)}


@api_router.get("/v2/emails/{email_id}/deliveries")
async def list_email_deliveries(
    email_id: str,
    user_id: str = Depends(get_current_user_id),
    store: DatabaseStore = Depends(get_store),
):
    """Delivery attempts of one email, oldest first."""
    await _require_email(store, email_id, user_id)
    deliveries = await store.list_deliveries(email_id)
    return {"success": True, "deliveries": [serialize_delivery(d) for d in deliveries]}


@api_router.post("/v2/emails/{email_id}/retry-delivery")
async def retry_delivery(
    email_id: str,
    body: RetryDeliveryRequest,
    user_id: str = Depends(get_current_user_id),
    coordinator: DeliveryRetryCoordinator = Depends(get_retry_coordinator),
):
    """Re-deliver an email for one of its delivery records."""
    result = await coordinator.retry(email_id, body.delivery_id, user_id)

    if not result.success:
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "message": result.message,
                "error": result.error,
                "deliveryId": result.delivery_id,
            },
        )
    return {"success": True, "message": result.message, "deliveryId": result.delivery_id}


@api_router.post("/v2/emails/{email_id}/reply", status_code=201)
async def reply_to_email(
    email_id: str,
    body: ReplyRequest,
    user_id: str = Depends(get_current_user_id),
    store: DatabaseStore = Depends(get_store),
    threader: EmailThreader = Depends(get_threader),
    smtp_sender: SmtpSender = Depends(get_smtp_sender),
):
    """Send a reply to an email, or to the latest inbound email of a thread.

    The reply is recorded before sending; a failed send leaves it with
    status 'failed' and is reported as an error.
    """
    resolved = await threader.resolve_email_id(email_id, user_id, inbound_only=True)
    if resolved is None:
        raise NotFoundError(
            "Email not found or access denied", resource="email", resource_id=email_id
        )
    original = await _require_email(store, resolved.email_id, user_id)

    to = body.to
    if not to:
        sender = _json_field(original.from_data) or {}
        to = [
            a["address"]
            for a in sender.get("addresses") or []
            if isinstance(a, dict) and a.get("address")
        ][:1]
    if not to:
        raise HTTPException(status_code=400, detail="No recipient given and original sender unknown")

    subject = body.subject or original.subject or ""
    if not body.subject and not subject.lower().startswith("re:"):
        subject = f"Re: {subject}"

    in_reply_to = clean_message_id(original.message_id) or None
    message = build_message(
        from_address=body.from_,
        to=to,
        cc=body.cc,
        subject=subject,
        text_body=body.text,
        html_body=body.html,
        in_reply_to=in_reply_to,
        references=parse_references(original.references),
    )

    sent = SentEmail(
        id=new_id(),
        user_id=user_id,
        from_address=body.from_,
        message_id=message["Message-ID"].strip("<> "),
        in_reply_to=in_reply_to,
        to_json=json.dumps(to),
        cc_json=json.dumps(body.cc) if body.cc else None,
        subject=subject,
        text_body=body.text,
    )
    await store.save_sent_email(sent)

    try:
        await smtp_sender.send(message)
    except DeliveryError as e:
        await store.update_sent_status(sent.id, "failed", failure_reason=str(e))
        raise

    await store.update_sent_status(sent.id, "sent")
    threading = await threader.process_sent_email(sent.id, original.id, user_id)

    return {
        "success": True,
        "id": sent.id,
        "messageId": sent.message_id,
        "threadId": threading.thread_id,
        "threadPosition": threading.thread_position,
    }


# ---------------------------------------------------------------------------
# Threads
# ---------------------------------------------------------------------------


@api_router.get("/v2/threads")
async def list_threads(
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user_id: str = Depends(get_current_user_id),
    store: DatabaseStore = Depends(get_store),
):
    threads, total = await store.list_threads(user_id, limit=limit, offset=offset)
    return {
        "success": True,
        "threads": [serialize_thread(t) for t in threads],
        "pagination": {
            "limit": limit,
            "offset": offset,
            "total": total,
            "hasMore": offset + len(threads) < total,
        },
    }


@api_router.get("/v2/threads/{thread_id}")
async def get_thread(
    thread_id: str,
    user_id: str = Depends(get_current_user_id),
    store: DatabaseStore = Depends(get_store),
    extractor: ParticipantExtractor = Depends(get_participant_extractor),
):
    """Thread details with inbound and outbound messages in thread order."""
    thread = await _require_thread(store, thread_id, user_id)
    inbound, outbound = await store.get_thread_messages(thread_id, user_id)

    messages = [serialize_inbound(e) for e in inbound] + [serialize_sent(s) for s in outbound]
    messages.sort(key=lambda m: (m["threadPosition"] is None, m["threadPosition"] or 0))

    participants = await extractor.get_thread_participants(thread_id, user_id)

    return {
        "success": True,
        "thread": {
            **serialize_thread(thread),
            "participants": participants.participants,
            "participantsPartial": participants.is_partial,
        },
        "messages": messages,
    }


@api_router.get("/v2/threads/{thread_id}/participants")
async def get_thread_participants(
    thread_id: str,
    user_id: str = Depends(get_current_user_id),
    store: DatabaseStore = Depends(get_store),
    extractor: ParticipantExtractor = Depends(get_participant_extractor),
):
    await _require_thread(store, thread_id, user_id)
    result = await extractor.get_thread_participants(thread_id, user_id)
    return {
        "success": True,
        "threadId": thread_id,
        "participants": result.participants,
        "isPartial": result.is_partial,
        "issues": [
            {"emailId": i.email_id, "source": i.source, "error": i.error} for i in result.issues
        ],
    }


# ---------------------------------------------------------------------------
# Endpoints and addresses
# ---------------------------------------------------------------------------


@api_router.post("/v2/endpoints", status_code=201)
async def create_endpoint(
    body: CreateEndpointRequest,
    user_id: str = Depends(get_current_user_id),
    store: DatabaseStore = Depends(get_store),
):
    endpoint = Endpoint(
        id=new_id(),
        user_id=user_id,
        name=body.name,
        type=body.type,
        config=body.config,
        is_active=body.is_active,
    )
    await store.create_endpoint(endpoint)
    created = await store.get_endpoint(endpoint.id, user_id)
    return {"success": True, "endpoint": serialize_endpoint(created)}


@api_router.get("/v2/endpoints")
async def list_endpoints(
    user_id: str = Depends(get_current_user_id),
    store: DatabaseStore = Depends(get_store),
):
    endpoints = await store.list_endpoints(user_id)
    return {"success": True, "endpoints": [serialize_endpoint(e) for e in endpoints]}


@api_router.patch("/v2/endpoints/{endpoint_id}")
async def update_endpoint(
    endpoint_id: str,
    body: UpdateEndpointRequest,
    user_id: str = Depends(get_current_user_id),
    store: DatabaseStore = Depends(get_store),
):
    existing = await store.get_endpoint(endpoint_id, user_id)
    if existing is None:
        raise NotFoundError("Endpoint not found", resource="endpoint", resource_id=endpoint_id)

    if body.config is not None:
        try:
            validate_endpoint_config(existing.type, body.config)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e)) from None

    updated = await store.update_endpoint(
        endpoint_id,
        user_id,
        name=body.name,
        config=body.config,
        is_active=body.is_active,
    )
    if updated is None:
        raise NotFoundError("Endpoint not found", resource="endpoint", resource_id=endpoint_id)

    logger.info("endpoint_updated", endpoint_id=endpoint_id, is_active=updated.is_active)
    return {"success": True, "endpoint": serialize_endpoint(updated)}


@api_router.post("/v2/email-addresses", status_code=201)
async def create_email_address(
    body: CreateEmailAddressRequest,
    user_id: str = Depends(get_current_user_id),
    store: DatabaseStore = Depends(get_store),
):
    """Bind a receiving address to one of the account's endpoints."""
    if body.endpoint_id and await store.get_endpoint(body.endpoint_id, user_id) is None:
        raise NotFoundError("Endpoint not found", resource="endpoint", resource_id=body.endpoint_id)

    address = EmailAddress(
        id=new_id(),
        user_id=user_id,
        address=body.address,
        endpoint_id=body.endpoint_id,
        is_active=body.is_active,
    )
    await store.create_email_address(address)
    return {
        "success": True,
        "emailAddress": {
            "id": address.id,
            "address": address.address,
            "endpointId": address.endpoint_id,
            "isActive": address.is_active,
        },
    }


@api_router.put("/v2/domains/{domain}/catch-all")
async def set_domain_catch_all(
    domain: str,
    body: CatchAllRequest,
    user_id: str = Depends(get_current_user_id),
    store: DatabaseStore = Depends(get_store),
):
    """Route mail for unmapped addresses of a domain to an endpoint (null clears)."""
    if body.endpoint_id and await store.get_endpoint(body.endpoint_id, user_id) is None:
        raise NotFoundError("Endpoint not found", resource="endpoint", resource_id=body.endpoint_id)

    if not await store.set_domain_catch_all(domain, user_id, body.endpoint_id):
        raise NotFoundError(
            "Domain not found or access denied", resource="domain", resource_id=domain.lower()
        )
    logger.info("domain_catch_all_set", domain=domain.lower(), endpoint_id=body.endpoint_id)
    return {"success": True, "domain": domain.lower(), "catchAllEndpointId": body.endpoint_id}
