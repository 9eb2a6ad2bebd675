"""FastAPI dependency injection helpers.

Extracts shared dependencies from app.state for use in route handlers.
All dependencies are built during the FastAPI lifespan (or by tests) and
stored on app.state.

Usage:
    from mailrelay.web.dependencies import get_current_user_id, get_store

    @api_router.get("/v2/threads")
    async def list_threads(
        user_id: str = Depends(get_current_user_id),
        store: DatabaseStore = Depends(get_store),
    ):
        ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Header, Request

if TYPE_CHECKING:
    from mailrelay.db.store import DatabaseStore
    from mailrelay.delivery.smtp import SmtpSender
    from mailrelay.engine.participants import ParticipantExtractor
    from mailrelay.engine.retry import DeliveryRetryCoordinator
    from mailrelay.engine.router import EmailRouter
    from mailrelay.engine.threader import EmailThreader


def get_store(request: Request) -> DatabaseStore:
    """Get the shared DatabaseStore from app state."""
    return request.app.state.store


def get_threader(request: Request) -> EmailThreader:
    return request.app.state.threader


def get_router(request: Request) -> EmailRouter:
    return request.app.state.router


def get_retry_coordinator(request: Request) -> DeliveryRetryCoordinator:
    return request.app.state.retry_coordinator


def get_participant_extractor(request: Request) -> ParticipantExtractor:
    return request.app.state.participant_extractor


def get_smtp_sender(request: Request) -> SmtpSender:
    return request.app.state.smtp_sender


async def get_current_user_id(
    request: Request,
    authorization: str | None = Header(default=None),
) -> str:
    """Authenticate the request's bearer API key and apply its rate limit.

    Raises:
        UnauthorizedError: Missing, malformed or unknown key (401)
        RateLimitExceeded: The key's request budget is exhausted (429)
    """
    token = None
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer":
            token = value.strip()

    api_key = await request.app.state.authenticator.authenticate(token)
    request.app.state.rate_limiter.check(api_key.id)
    return api_key.user_id
