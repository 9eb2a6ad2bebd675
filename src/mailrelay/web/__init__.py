"""HTTP API for mailrelay.

Provides a FastAPI application exposing:
- Inbound email ingestion with threading and routing
- Delivery history and retry
- Threads, participants and replies
- Endpoint, address and catch-all management
"""

from mailrelay.web.app import create_app

__all__ = ["create_app"]
