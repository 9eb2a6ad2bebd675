"""Tests for request-scoped logging context."""

import structlog
from httpx import ASGITransport, AsyncClient

from mailrelay.config_schema import AppConfig
from mailrelay.core.logging import get_request_id, set_request_id
from mailrelay.web.app import create_app


class TestRequestId:
    def test_bound_into_structlog_context(self) -> None:
        set_request_id("req-123")
        try:
            assert get_request_id() == "req-123"
            assert structlog.contextvars.get_contextvars()["request_id"] == "req-123"
        finally:
            set_request_id(None)

        assert get_request_id() is None
        assert "request_id" not in structlog.contextvars.get_contextvars()

    def test_clearing_when_unset(self) -> None:
        set_request_id(None)
        assert get_request_id() is None

    async def test_middleware_echoes_request_id(self, sample_config: AppConfig) -> None:
        app = create_app(sample_config)

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
            response = await c.get("/api/unknown", headers={"X-Request-ID": "req-abc"})

        assert response.headers["X-Request-ID"] == "req-abc"
        assert get_request_id() is None
