"""Webhook delivery over HTTP.

Posts a JSON payload to an endpoint URL and reports what happened. Non-2xx
answers, timeouts, connection errors and unparseable URLs come back as an
unsuccessful WebhookResponse rather than an exception; the router records the
outcome on the delivery row.

The httpx.AsyncClient is created by the caller (app lifespan, CLI, tests) and
shared, so tests can hand in a client built on httpx.MockTransport.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from mailrelay.config_schema import DeliveryConfig
from mailrelay.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class WebhookResponse:
    """Outcome of a single webhook POST."""

    success: bool
    status_code: int = 0
    body: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    elapsed_ms: int = 0
    error: str | None = None


class WebhookSender:
    """Sends webhook requests with a shared httpx client."""

    def __init__(self, client: httpx.AsyncClient, config: DeliveryConfig | None = None):
        self.client = client
        self.config = config or DeliveryConfig()

    async def send(
        self,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str],
        timeout: float | None = None,
    ) -> WebhookResponse:
        timeout = timeout or self.config.webhook_timeout_seconds
        request_headers = {
            "Content-Type": "application/json",
            "User-Agent": self.config.user_agent,
            **headers,
        }
        start = time.monotonic()

        try:
            response = await self.client.post(
                url,
                content=json.dumps(payload, default=str),
                headers=request_headers,
                timeout=timeout,
            )
        except httpx.TimeoutException:
            elapsed = int((time.monotonic() - start) * 1000)
            logger.warning("webhook_timeout", url=url, timeout=timeout)
            return WebhookResponse(
                success=False, elapsed_ms=elapsed, error=f"Request timeout after {timeout}s"
            )
        except httpx.InvalidURL as e:
            logger.warning("webhook_invalid_url", url=url, error=str(e))
            return WebhookResponse(success=False, error=f"Invalid webhook URL: {e}")
        except httpx.HTTPError as e:
            elapsed = int((time.monotonic() - start) * 1000)
            logger.warning("webhook_request_failed", url=url, error=str(e))
            return WebhookResponse(success=False, elapsed_ms=elapsed, error=str(e) or type(e).__name__)

        elapsed = int((time.monotonic() - start) * 1000)
        body = response.text[: self.config.max_response_body]
        success = response.is_success

        log = logger.info if success else logger.warning
        log(
            "webhook_delivered" if success else "webhook_rejected",
            url=url,
            status_code=response.status_code,
            elapsed_ms=elapsed,
        )
        return WebhookResponse(
            success=success,
            status_code=response.status_code,
            body=body,
            headers=dict(response.headers),
            elapsed_ms=elapsed,
            error=None if success else f"HTTP {response.status_code}",
        )
