"""FastAPI application for the mailrelay HTTP API.

Creates the FastAPI app with:
- Lifespan context manager that builds the store, transports and engines
  and places them on app.state
- Request ID middleware for log correlation
- Exception handlers that turn MailRelayError subclasses into
  {"success": false, "error": ...} responses with the mapped status

Usage:
    from mailrelay.web.app import create_app

    app = create_app()
    # Run with: uvicorn.run(app, host="127.0.0.1", port=8000)
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from mailrelay.config_schema import AppConfig
from mailrelay.core.errors import MailRelayError
from mailrelay.core.logging import configure_logging, get_logger, set_request_id
from mailrelay.db.store import DatabaseStore

logger = get_logger(__name__)

VERSION = "0.1.0"


def init_app_state(
    app: FastAPI,
    config: AppConfig,
    store: DatabaseStore,
    http_client: httpx.AsyncClient,
) -> None:
    """Build every service the routes need and attach it to app.state.

    Shared by the lifespan and by tests, which pass a temp-dir store and an
    httpx client on a mock transport.
    """
    from mailrelay.auth.api_keys import ApiKeyAuthenticator
    from mailrelay.core.rate_limiter import KeyedRateLimiter
    from mailrelay.delivery.smtp import SmtpSender
    from mailrelay.delivery.webhook import WebhookSender
    from mailrelay.engine.participants import ParticipantExtractor
    from mailrelay.engine.retry import DeliveryRetryCoordinator
    from mailrelay.engine.router import EmailRouter
    from mailrelay.engine.threader import EmailThreader

    threader = EmailThreader(store, config.threading)
    smtp_sender = SmtpSender(config.smtp)
    router = EmailRouter(
        store=store,
        threader=threader,
        webhook_sender=WebhookSender(http_client, config.delivery),
        smtp_sender=smtp_sender,
        config=config,
    )

    app.state.store = store
    app.state.threader = threader
    app.state.smtp_sender = smtp_sender
    app.state.router = router
    app.state.retry_coordinator = DeliveryRetryCoordinator(store, router)
    app.state.participant_extractor = ParticipantExtractor(store)
    app.state.authenticator = ApiKeyAuthenticator(store)
    app.state.rate_limiter = KeyedRateLimiter(
        rate=config.rate_limit.requests_per_second,
        capacity=config.rate_limit.burst,
        enabled=config.rate_limit.enabled,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize dependencies on startup, clean up on shutdown.

    On startup:
    1. Load config (unless create_app was given one)
    2. Initialize database
    3. Build the shared httpx client and all engines

    On shutdown:
    - Close the httpx client
    """
    from mailrelay.config import load_config

    config = app.state.preset_config or load_config()
    configure_logging(config.logging.level, config.logging.json_output)

    store = DatabaseStore(config.database.path)
    await store.initialize()

    async with httpx.AsyncClient(follow_redirects=False) as http_client:
        init_app_state(app, config, store, http_client)
        logger.info(
            "app_started",
            database=config.database.path,
            rate_limit=config.rate_limit.enabled,
        )
        yield

    logger.info("app_stopped")


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def register_exception_handlers(app: FastAPI) -> None:
    """Map exceptions to the API's error body."""

    @app.exception_handler(MailRelayError)
    async def handle_mailrelay_error(request: Request, exc: MailRelayError):
        if exc.status_code >= 500:
            logger.error(
                "request_failed",
                path=request.url.path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        return _error_response(exc.status_code, str(exc))

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        return _error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        details = "; ".join(
            f"{'.'.join(str(loc) for loc in err['loc'] if loc != 'body')}: {err['msg']}"
            for err in exc.errors()
        )
        return _error_response(422, details or "Invalid request")

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("unhandled_error", path=request.url.path, error=str(exc))
        return _error_response(500, "Internal server error")


def create_app(config: AppConfig | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Use this config instead of loading config.yaml at startup

    Returns:
        Configured FastAPI instance
    """
    from mailrelay.web.routes import api_router

    app = FastAPI(
        title="mailrelay",
        description="Inbound email relay: threading, routing and delivery",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.preset_config = config

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        set_request_id(request_id)
        try:
            response = await call_next(request)
        finally:
            set_request_id(None)
        response.headers["X-Request-ID"] = request_id
        return response

    register_exception_handlers(app)
    app.include_router(api_router)

    return app
