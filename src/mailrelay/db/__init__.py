"""Database layer for mailrelay.

This module provides SQLite database access with async operations.

Usage:
    from mailrelay.db import DatabaseStore, InboundEmail

    store = DatabaseStore("data/mailrelay.db")
    await store.initialize()

    email = InboundEmail(id=new_id(), user_id="user_1", subject="Hello")
    await store.save_inbound_email(email)
"""

from mailrelay.db.models import (
    REQUIRED_TABLES,
    SCHEMA_VERSION,
    init_database,
    verify_schema,
)
from mailrelay.db.store import (
    ApiKey,
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

__all__ = [
    # Models
    "REQUIRED_TABLES",
    "SCHEMA_VERSION",
    "init_database",
    "verify_schema",
    # Store
    "DatabaseStore",
    "new_id",
    "utcnow",
    # Dataclasses
    "ApiKey",
    "EmailAddress",
    "EmailThread",
    "Endpoint",
    "EndpointDelivery",
    "InboundEmail",
    "SentEmail",
]
