"""Database store with CRUD operations for all tables.

This module provides the DatabaseStore class that encapsulates all database
operations for mailrelay. It uses aiosqlite for async access and returns
typed dataclasses.

Every read that crosses an account boundary takes a `user_id` and filters on
it; callers never see another account's rows.

Usage:
    from mailrelay.db.store import DatabaseStore

    store = DatabaseStore("data/mailrelay.db")
    await store.initialize()

    email = await store.get_inbound_email("em_123", user_id="user_1")
    deliveries = await store.list_deliveries("em_123")
"""

from __future__ import annotations

import json
import uuid
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

import aiosqlite

from mailrelay.core.errors import DatabaseError, InvalidStateError
from mailrelay.core.logging import get_logger
from mailrelay.db.models import init_database

logger = get_logger(__name__)

# Type aliases
DeliveryStatus = Literal["pending", "success", "failed"]
DeliveryType = Literal["webhook", "email_forward"]
EndpointType = Literal["webhook", "email", "email_group"]
SentStatus = Literal["pending", "sent", "failed"]
MessageKind = Literal["inbound", "outbound"]

# Thread linkage columns live on a different table per message kind
_MESSAGE_TABLES: dict[str, str] = {
    "inbound": "structured_emails",
    "outbound": "sent_emails",
}


def new_id() -> str:
    """Generate a new opaque record ID."""
    return uuid.uuid4().hex


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def _to_db(value: datetime | None) -> str | None:
    """Serialize a datetime as a UTC ISO string (naive values are taken as UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _from_db(value: str | None) -> datetime | None:
    """Parse a stored datetime; SQLite CURRENT_TIMESTAMP values come back naive."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _json_or_none(value: str | None) -> Any:
    if not value:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return None


@dataclass
class InboundEmail:
    """Inbound email record.

    Address fields hold the serialized blobs exactly as received; parsing
    them is the participant extractor's job.
    """

    id: str
    user_id: str
    message_id: str | None = None
    in_reply_to: str | None = None
    references: str | None = None
    subject: str | None = None
    date: datetime | None = None
    from_data: str | None = None
    to_data: str | None = None
    cc_data: str | None = None
    recipient: str | None = None
    text_body: str | None = None
    html_body: str | None = None
    thread_id: str | None = None
    thread_position: int | None = None
    is_read: bool = False
    created_at: datetime | None = None


@dataclass
class SentEmail:
    """Outbound email record."""

    id: str
    user_id: str
    from_address: str
    message_id: str | None = None
    in_reply_to: str | None = None
    to_json: str | None = None
    cc_json: str | None = None
    subject: str | None = None
    text_body: str | None = None
    status: SentStatus = "pending"
    failure_reason: str | None = None
    thread_id: str | None = None
    thread_position: int | None = None
    sent_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class EmailThread:
    """Conversation thread record."""

    id: str
    user_id: str
    root_message_id: str
    normalized_subject: str | None = None
    participant_emails: list[str] = field(default_factory=list)
    message_count: int = 0
    last_message_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Endpoint:
    """Delivery target record."""

    id: str
    user_id: str
    name: str
    type: EndpointType
    config: dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class EndpointDelivery:
    """One delivery attempt of an email to an endpoint."""

    id: str
    email_id: str
    endpoint_id: str
    delivery_type: DeliveryType
    status: DeliveryStatus = "pending"
    attempts: int = 0
    last_attempt_at: datetime | None = None
    response_data: dict[str, Any] | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class EmailAddress:
    """Receiving address bound to an endpoint."""

    id: str
    user_id: str
    address: str
    endpoint_id: str | None = None
    is_active: bool = True
    created_at: datetime | None = None


@dataclass
class ApiKey:
    """Hashed API key record."""

    id: str
    user_id: str
    key_hash: str
    name: str | None = None
    is_active: bool = True
    created_at: datetime | None = None
    last_used_at: datetime | None = None


class DatabaseStore:
    """Database store for all mailrelay data.

    Provides async CRUD operations for all tables. Each operation opens its
    own connection; multi-statement operations run in one transaction.

    Attributes:
        db_path: Path to the SQLite database file
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)

    async def initialize(self) -> None:
        """Create tables if needed. Must be called before any other operation."""
        await init_database(self.db_path)

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        Usage:
            async with self._db() as db:
                await db.execute(...)
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")
            await db.execute("PRAGMA synchronous = NORMAL")
            db.row_factory = aiosqlite.Row
            yield db

    async def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT 1")
                return (await cursor.fetchone()) is not None
        except aiosqlite.Error as e:
            logger.warning("database_ping_failed", error=str(e))
            return False

    # =========================================================================
    # Inbound Email Operations
    # =========================================================================

    async def save_inbound_email(self, email: InboundEmail) -> None:
        """Insert an inbound email.

        Raises:
            DatabaseError: If the insert fails (including duplicate IDs)
        """
        now = utcnow()
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO structured_emails (
                        id, user_id, message_id, in_reply_to, references_json,
                        subject, date, from_data, to_data, cc_data, recipient,
                        text_body, html_body, thread_id, thread_position, is_read,
                        created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        email.id,
                        email.user_id,
                        email.message_id,
                        email.in_reply_to,
                        email.references,
                        email.subject,
                        _to_db(email.date),
                        email.from_data,
                        email.to_data,
                        email.cc_data,
                        email.recipient.lower() if email.recipient else None,
                        email.text_body,
                        email.html_body,
                        email.thread_id,
                        email.thread_position,
                        1 if email.is_read else 0,
                        _to_db(email.created_at or now),
                        _to_db(now),
                    ),
                )
                await db.commit()
                logger.debug("Inbound email saved", email_id=email.id)

        except aiosqlite.Error as e:
            logger.error("Failed to save inbound email", email_id=email.id, error=str(e))
            raise DatabaseError(f"Failed to save inbound email {email.id}: {e}") from e

    async def get_inbound_email(
        self, email_id: str, user_id: str | None = None
    ) -> InboundEmail | None:
        """Get an inbound email by ID, optionally scoped to an account.

        Returns:
            InboundEmail or None if not found (or owned by another account)
        """
        try:
            async with self._db() as db:
                if user_id is None:
                    cursor = await db.execute(
                        "SELECT * FROM structured_emails WHERE id = ?", (email_id,)
                    )
                else:
                    cursor = await db.execute(
                        "SELECT * FROM structured_emails WHERE id = ? AND user_id = ?",
                        (email_id, user_id),
                    )
                row = await cursor.fetchone()
                return self._row_to_inbound(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get inbound email", email_id=email_id, error=str(e))
            raise DatabaseError(f"Failed to get inbound email {email_id}: {e}") from e

    async def list_unthreaded_emails(
        self, user_id: str | None = None, limit: int = 500
    ) -> list[InboundEmail]:
        """Inbound emails without a thread assignment, oldest first.

        Used by the thread backfill command.
        """
        try:
            async with self._db() as db:
                if user_id is None:
                    cursor = await db.execute(
                        """
                        SELECT * FROM structured_emails
                        WHERE thread_id IS NULL
                        ORDER BY COALESCE(date, created_at) ASC
                        LIMIT ?
                        """,
                        (limit,),
                    )
                else:
                    cursor = await db.execute(
                        """
                        SELECT * FROM structured_emails
                        WHERE thread_id IS NULL AND user_id = ?
                        ORDER BY COALESCE(date, created_at) ASC
                        LIMIT ?
                        """,
                        (user_id, limit),
                    )
                rows = await cursor.fetchall()
                return [self._row_to_inbound(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to list unthreaded emails", error=str(e))
            raise DatabaseError(f"Failed to list unthreaded emails: {e}") from e

    def _row_to_inbound(self, row: aiosqlite.Row) -> InboundEmail:
        """Convert a database row to an InboundEmail dataclass."""
        return InboundEmail(
            id=row["id"],
            user_id=row["user_id"],
            message_id=row["message_id"],
            in_reply_to=row["in_reply_to"],
            references=row["references_json"],
            subject=row["subject"],
            date=_from_db(row["date"]),
            from_data=row["from_data"],
            to_data=row["to_data"],
            cc_data=row["cc_data"],
            recipient=row["recipient"],
            text_body=row["text_body"],
            html_body=row["html_body"],
            thread_id=row["thread_id"],
            thread_position=row["thread_position"],
            is_read=bool(row["is_read"]),
            created_at=_from_db(row["created_at"]),
        )

    # =========================================================================
    # Sent Email Operations
    # =========================================================================

    async def save_sent_email(self, sent: SentEmail) -> None:
        """Insert an outbound email record."""
        now = utcnow()
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO sent_emails (
                        id, user_id, message_id, in_reply_to, from_address,
                        to_json, cc_json, subject, text_body, status,
                        failure_reason, thread_id, thread_position, sent_at, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        sent.id,
                        sent.user_id,
                        sent.message_id,
                        sent.in_reply_to,
                        sent.from_address,
                        sent.to_json,
                        sent.cc_json,
                        sent.subject,
                        sent.text_body,
                        sent.status,
                        sent.failure_reason,
                        sent.thread_id,
                        sent.thread_position,
                        _to_db(sent.sent_at),
                        _to_db(sent.created_at or now),
                    ),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to save sent email", sent_email_id=sent.id, error=str(e))
            raise DatabaseError(f"Failed to save sent email {sent.id}: {e}") from e

    async def get_sent_email(self, sent_email_id: str, user_id: str) -> SentEmail | None:
        """Get an outbound email by ID for an account."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM sent_emails WHERE id = ? AND user_id = ?",
                    (sent_email_id, user_id),
                )
                row = await cursor.fetchone()
                return self._row_to_sent(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get sent email", sent_email_id=sent_email_id, error=str(e))
            raise DatabaseError(f"Failed to get sent email {sent_email_id}: {e}") from e

    async def update_sent_status(
        self,
        sent_email_id: str,
        status: SentStatus,
        failure_reason: str | None = None,
    ) -> None:
        """Record the outcome of sending an outbound email."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    UPDATE sent_emails
                    SET status = ?, failure_reason = ?, sent_at = ?
                    WHERE id = ?
                    """,
                    (
                        status,
                        failure_reason,
                        _to_db(utcnow()) if status == "sent" else None,
                        sent_email_id,
                    ),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to update sent status", sent_email_id=sent_email_id, error=str(e))
            raise DatabaseError(f"Failed to update sent email status: {e}") from e

    def _row_to_sent(self, row: aiosqlite.Row) -> SentEmail:
        """Convert a database row to a SentEmail dataclass."""
        return SentEmail(
            id=row["id"],
            user_id=row["user_id"],
            from_address=row["from_address"],
            message_id=row["message_id"],
            in_reply_to=row["in_reply_to"],
            to_json=row["to_json"],
            cc_json=row["cc_json"],
            subject=row["subject"],
            text_body=row["text_body"],
            status=row["status"],
            failure_reason=row["failure_reason"],
            thread_id=row["thread_id"],
            thread_position=row["thread_position"],
            sent_at=_from_db(row["sent_at"]),
            created_at=_from_db(row["created_at"]),
        )

    # =========================================================================
    # Thread Operations
    # =========================================================================

    async def find_thread_by_message_ids(
        self,
        user_id: str,
        message_ids: Iterable[str],
        exclude_email_id: str | None = None,
    ) -> str | None:
        """Find a thread containing any message with one of the given Message-IDs.

        Inbound emails are checked first, then outbound ones.

        Args:
            user_id: Owning account
            message_ids: Cleaned Message-IDs (no angle brackets)
            exclude_email_id: Inbound email to ignore (the one being threaded)

        Returns:
            Thread ID or None
        """
        ids = [m for m in message_ids if m]
        if not ids:
            return None

        placeholders = ",".join("?" * len(ids))
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"""
                    SELECT thread_id FROM structured_emails
                    WHERE user_id = ?
                    AND message_id IN ({placeholders})
                    AND thread_id IS NOT NULL
                    AND id != ?
                    LIMIT 1
                    """,
                    (user_id, *ids, exclude_email_id or ""),
                )
                row = await cursor.fetchone()
                if row:
                    return row["thread_id"]

                cursor = await db.execute(
                    f"""
                    SELECT thread_id FROM sent_emails
                    WHERE user_id = ?
                    AND message_id IN ({placeholders})
                    AND thread_id IS NOT NULL
                    LIMIT 1
                    """,
                    (user_id, *ids),
                )
                row = await cursor.fetchone()
                return row["thread_id"] if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to find thread by message ids", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to find thread by message ids: {e}") from e

    async def find_threads_by_subject(
        self,
        user_id: str,
        normalized_subject: str,
        active_since: datetime,
    ) -> list[EmailThread]:
        """Threads with this normalized subject active since the given time, newest first."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM email_threads
                    WHERE user_id = ?
                    AND normalized_subject = ?
                    AND last_message_at > ?
                    ORDER BY last_message_at DESC
                    LIMIT 10
                    """,
                    (user_id, normalized_subject, _to_db(active_since)),
                )
                rows = await cursor.fetchall()
                return [self._row_to_thread(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to find threads by subject", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to find threads by subject: {e}") from e

    async def create_thread_with_root(
        self,
        thread: EmailThread,
        email_id: str,
        kind: MessageKind = "inbound",
    ) -> None:
        """Create a thread and link its root message at position 0, in one transaction."""
        table = _MESSAGE_TABLES[kind]
        now = utcnow()
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO email_threads (
                        id, user_id, root_message_id, normalized_subject,
                        participant_emails, message_count, last_message_at,
                        created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?)
                    """,
                    (
                        thread.id,
                        thread.user_id,
                        thread.root_message_id,
                        thread.normalized_subject,
                        json.dumps(thread.participant_emails),
                        _to_db(thread.last_message_at or now),
                        _to_db(now),
                        _to_db(now),
                    ),
                )
                await db.execute(
                    f"UPDATE {table} SET thread_id = ?, thread_position = 0 WHERE id = ?",
                    (thread.id, email_id),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to create thread", thread_id=thread.id, error=str(e))
            raise DatabaseError(f"Failed to create thread {thread.id}: {e}") from e

    async def add_message_to_thread(
        self,
        thread_id: str,
        email_id: str,
        kind: MessageKind,
        participants: list[str],
        message_at: datetime | None,
    ) -> int:
        """Append a message to a thread and return its 0-based position.

        Increments message_count by one, moves last_message_at forward and
        unions the participant set, then links the message, all in one
        transaction.

        Raises:
            DatabaseError: If the thread does not exist or the update fails
        """
        table = _MESSAGE_TABLES[kind]
        now = utcnow()
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT participant_emails, last_message_at FROM email_threads WHERE id = ?",
                    (thread_id,),
                )
                row = await cursor.fetchone()
                if not row:
                    raise DatabaseError(f"Thread {thread_id} not found while appending {email_id}")

                current = _json_or_none(row["participant_emails"])
                merged = list(current) if isinstance(current, list) else []
                for address in participants:
                    if address not in merged:
                        merged.append(address)

                message_at = message_at or now
                previous = _from_db(row["last_message_at"])
                last_message_at = max(previous, message_at) if previous else message_at

                cursor = await db.execute(
                    """
                    UPDATE email_threads
                    SET message_count = message_count + 1,
                        last_message_at = ?,
                        participant_emails = ?,
                        updated_at = ?
                    WHERE id = ?
                    RETURNING message_count
                    """,
                    (_to_db(last_message_at), json.dumps(merged), _to_db(now), thread_id),
                )
                count_row = await cursor.fetchone()
                position = count_row[0] - 1

                await db.execute(
                    f"UPDATE {table} SET thread_id = ?, thread_position = ? WHERE id = ?",
                    (thread_id, position, email_id),
                )
                await db.commit()
                return position

        except aiosqlite.Error as e:
            logger.error(
                "Failed to add message to thread",
                thread_id=thread_id,
                email_id=email_id,
                error=str(e),
            )
            raise DatabaseError(f"Failed to add {email_id} to thread {thread_id}: {e}") from e

    async def get_thread(self, thread_id: str, user_id: str) -> EmailThread | None:
        """Get a thread owned by an account."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM email_threads WHERE id = ? AND user_id = ?",
                    (thread_id, user_id),
                )
                row = await cursor.fetchone()
                return self._row_to_thread(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get thread", thread_id=thread_id, error=str(e))
            raise DatabaseError(f"Failed to get thread {thread_id}: {e}") from e

    async def list_threads(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> tuple[list[EmailThread], int]:
        """List an account's threads by most recent activity.

        Returns:
            Tuple of (threads page, total thread count)
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM email_threads
                    WHERE user_id = ?
                    ORDER BY last_message_at DESC
                    LIMIT ? OFFSET ?
                    """,
                    (user_id, limit, offset),
                )
                rows = await cursor.fetchall()
                cursor = await db.execute(
                    "SELECT COUNT(*) FROM email_threads WHERE user_id = ?", (user_id,)
                )
                total = (await cursor.fetchone())[0]
                return [self._row_to_thread(row) for row in rows], total

        except aiosqlite.Error as e:
            logger.error("Failed to list threads", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to list threads: {e}") from e

    async def get_thread_messages(
        self, thread_id: str, user_id: str
    ) -> tuple[list[InboundEmail], list[SentEmail]]:
        """All inbound and outbound messages of a thread, each ordered by position."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM structured_emails
                    WHERE thread_id = ? AND user_id = ?
                    ORDER BY thread_position ASC
                    """,
                    (thread_id, user_id),
                )
                inbound = [self._row_to_inbound(row) for row in await cursor.fetchall()]

                cursor = await db.execute(
                    """
                    SELECT * FROM sent_emails
                    WHERE thread_id = ? AND user_id = ?
                    ORDER BY thread_position ASC
                    """,
                    (thread_id, user_id),
                )
                outbound = [self._row_to_sent(row) for row in await cursor.fetchall()]
                return inbound, outbound

        except aiosqlite.Error as e:
            logger.error("Failed to get thread messages", thread_id=thread_id, error=str(e))
            raise DatabaseError(f"Failed to get thread messages: {e}") from e

    async def get_thread_root_recipient(self, thread_id: str, user_id: str) -> str | None:
        """Recipient address of the earliest inbound message in a thread."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT recipient FROM structured_emails
                    WHERE thread_id = ? AND user_id = ?
                    ORDER BY thread_position ASC, date ASC
                    LIMIT 1
                    """,
                    (thread_id, user_id),
                )
                row = await cursor.fetchone()
                return row["recipient"] if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get thread root recipient", thread_id=thread_id, error=str(e))
            raise DatabaseError(f"Failed to get thread root recipient: {e}") from e

    def _row_to_thread(self, row: aiosqlite.Row) -> EmailThread:
        """Convert a database row to an EmailThread dataclass."""
        participants = _json_or_none(row["participant_emails"])
        return EmailThread(
            id=row["id"],
            user_id=row["user_id"],
            root_message_id=row["root_message_id"],
            normalized_subject=row["normalized_subject"],
            participant_emails=participants if isinstance(participants, list) else [],
            message_count=row["message_count"],
            last_message_at=_from_db(row["last_message_at"]),
            created_at=_from_db(row["created_at"]),
            updated_at=_from_db(row["updated_at"]),
        )

    # =========================================================================
    # Endpoint Operations
    # =========================================================================

    async def create_endpoint(self, endpoint: Endpoint) -> None:
        """Insert an endpoint."""
        now = utcnow()
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO endpoints (
                        id, user_id, name, type, config, is_active, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        endpoint.id,
                        endpoint.user_id,
                        endpoint.name,
                        endpoint.type,
                        json.dumps(endpoint.config),
                        1 if endpoint.is_active else 0,
                        _to_db(now),
                        _to_db(now),
                    ),
                )
                await db.commit()
                logger.info("Endpoint created", endpoint_id=endpoint.id, type=endpoint.type)

        except aiosqlite.Error as e:
            logger.error("Failed to create endpoint", endpoint_id=endpoint.id, error=str(e))
            raise DatabaseError(f"Failed to create endpoint {endpoint.id}: {e}") from e

    async def get_endpoint(
        self,
        endpoint_id: str,
        user_id: str,
        active_only: bool = False,
    ) -> Endpoint | None:
        """Get an endpoint owned by an account, optionally only if active."""
        query = "SELECT * FROM endpoints WHERE id = ? AND user_id = ?"
        if active_only:
            query += " AND is_active = 1"
        try:
            async with self._db() as db:
                cursor = await db.execute(query, (endpoint_id, user_id))
                row = await cursor.fetchone()
                return self._row_to_endpoint(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get endpoint", endpoint_id=endpoint_id, error=str(e))
            raise DatabaseError(f"Failed to get endpoint {endpoint_id}: {e}") from e

    async def list_endpoints(self, user_id: str) -> list[Endpoint]:
        """All endpoints of an account, newest first."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM endpoints WHERE user_id = ? ORDER BY created_at DESC",
                    (user_id,),
                )
                return [self._row_to_endpoint(row) for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("Failed to list endpoints", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to list endpoints: {e}") from e

    async def update_endpoint(
        self,
        endpoint_id: str,
        user_id: str,
        name: str | None = None,
        config: dict[str, Any] | None = None,
        is_active: bool | None = None,
    ) -> Endpoint | None:
        """Update the given fields of an endpoint.

        Returns:
            The updated Endpoint, or None if it does not exist for this account
        """
        assignments: list[str] = []
        params: list[Any] = []
        if name is not None:
            assignments.append("name = ?")
            params.append(name)
        if config is not None:
            assignments.append("config = ?")
            params.append(json.dumps(config))
        if is_active is not None:
            assignments.append("is_active = ?")
            params.append(1 if is_active else 0)
        assignments.append("updated_at = ?")
        params.append(_to_db(utcnow()))

        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"""
                    UPDATE endpoints SET {", ".join(assignments)}
                    WHERE id = ? AND user_id = ?
                    RETURNING *
                    """,
                    (*params, endpoint_id, user_id),
                )
                row = await cursor.fetchone()
                await db.commit()
                return self._row_to_endpoint(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to update endpoint", endpoint_id=endpoint_id, error=str(e))
            raise DatabaseError(f"Failed to update endpoint {endpoint_id}: {e}") from e

    async def create_email_address(self, address: EmailAddress) -> None:
        """Bind a receiving address to an endpoint."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO email_addresses (
                        id, user_id, address, endpoint_id, is_active, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        address.id,
                        address.user_id,
                        address.address.lower(),
                        address.endpoint_id,
                        1 if address.is_active else 0,
                        _to_db(utcnow()),
                    ),
                )
                await db.commit()

        except aiosqlite.IntegrityError as e:
            raise InvalidStateError(
                f"Email address {address.address} is already registered"
            ) from e
        except aiosqlite.Error as e:
            logger.error("Failed to create email address", address=address.address, error=str(e))
            raise DatabaseError(f"Failed to create email address {address.address}: {e}") from e

    async def get_endpoint_for_address(self, address: str, user_id: str) -> Endpoint | None:
        """Active endpoint bound to an active receiving address."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT e.* FROM email_addresses a
                    JOIN endpoints e ON e.id = a.endpoint_id
                    WHERE a.address = ?
                    AND a.user_id = ?
                    AND a.is_active = 1
                    AND e.user_id = ?
                    AND e.is_active = 1
                    LIMIT 1
                    """,
                    (address.lower(), user_id, user_id),
                )
                row = await cursor.fetchone()
                return self._row_to_endpoint(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to resolve endpoint for address", address=address, error=str(e))
            raise DatabaseError(f"Failed to resolve endpoint for {address}: {e}") from e

    async def set_domain_catch_all(
        self, domain: str, user_id: str, endpoint_id: str | None
    ) -> bool:
        """Register a domain and its catch-all endpoint (None clears it).

        Returns:
            False if the domain belongs to another account and nothing was written
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO email_domains (domain, user_id, catch_all_endpoint_id, created_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(domain) DO UPDATE SET
                        catch_all_endpoint_id = excluded.catch_all_endpoint_id
                    WHERE email_domains.user_id = excluded.user_id
                    RETURNING domain
                    """,
                    (domain.lower(), user_id, endpoint_id, _to_db(utcnow())),
                )
                row = await cursor.fetchone()
                await db.commit()
                return row is not None

        except aiosqlite.Error as e:
            logger.error("Failed to set domain catch-all", domain=domain, error=str(e))
            raise DatabaseError(f"Failed to set catch-all for {domain}: {e}") from e

    async def get_catch_all_endpoint(self, domain: str, user_id: str) -> Endpoint | None:
        """Active catch-all endpoint configured for a domain."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT e.* FROM email_domains d
                    JOIN endpoints e ON e.id = d.catch_all_endpoint_id
                    WHERE d.domain = ?
                    AND d.user_id = ?
                    AND e.is_active = 1
                    LIMIT 1
                    """,
                    (domain.lower(), user_id),
                )
                row = await cursor.fetchone()
                return self._row_to_endpoint(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get catch-all endpoint", domain=domain, error=str(e))
            raise DatabaseError(f"Failed to get catch-all endpoint for {domain}: {e}") from e

    def _row_to_endpoint(self, row: aiosqlite.Row) -> Endpoint:
        """Convert a database row to an Endpoint dataclass."""
        config = _json_or_none(row["config"])
        return Endpoint(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            type=row["type"],
            config=config if isinstance(config, dict) else {},
            is_active=bool(row["is_active"]),
            created_at=_from_db(row["created_at"]),
            updated_at=_from_db(row["updated_at"]),
        )

    # =========================================================================
    # Delivery Operations
    # =========================================================================

    async def create_delivery(self, delivery: EndpointDelivery) -> None:
        """Insert a delivery record."""
        now = utcnow()
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO endpoint_deliveries (
                        id, email_id, endpoint_id, delivery_type, status, attempts,
                        last_attempt_at, response_data, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        delivery.id,
                        delivery.email_id,
                        delivery.endpoint_id,
                        delivery.delivery_type,
                        delivery.status,
                        delivery.attempts,
                        _to_db(delivery.last_attempt_at),
                        json.dumps(delivery.response_data) if delivery.response_data else None,
                        _to_db(now),
                        _to_db(now),
                    ),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to create delivery", delivery_id=delivery.id, error=str(e))
            raise DatabaseError(f"Failed to create delivery {delivery.id}: {e}") from e

    async def get_delivery(self, delivery_id: str, email_id: str) -> EndpointDelivery | None:
        """Get a delivery record only if it belongs to the given email."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM endpoint_deliveries WHERE id = ? AND email_id = ?",
                    (delivery_id, email_id),
                )
                row = await cursor.fetchone()
                return self._row_to_delivery(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get delivery", delivery_id=delivery_id, error=str(e))
            raise DatabaseError(f"Failed to get delivery {delivery_id}: {e}") from e

    async def list_deliveries(self, email_id: str) -> list[EndpointDelivery]:
        """All delivery records of an email, oldest first."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM endpoint_deliveries
                    WHERE email_id = ?
                    ORDER BY created_at ASC
                    """,
                    (email_id,),
                )
                return [self._row_to_delivery(row) for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("Failed to list deliveries", email_id=email_id, error=str(e))
            raise DatabaseError(f"Failed to list deliveries: {e}") from e

    async def begin_delivery_retry(self, delivery_id: str) -> EndpointDelivery | None:
        """Mark a delivery pending, bump its attempt counter and stamp the attempt time.

        Uses RETURNING for an atomic read of the new state (SQLite 3.35+).

        Returns:
            The updated delivery, or None if it no longer exists
        """
        now = utcnow()
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE endpoint_deliveries
                    SET status = 'pending',
                        attempts = attempts + 1,
                        last_attempt_at = ?,
                        updated_at = ?
                    WHERE id = ?
                    RETURNING *
                    """,
                    (_to_db(now), _to_db(now), delivery_id),
                )
                row = await cursor.fetchone()
                await db.commit()
                return self._row_to_delivery(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to begin delivery retry", delivery_id=delivery_id, error=str(e))
            raise DatabaseError(f"Failed to begin retry of delivery {delivery_id}: {e}") from e

    async def record_delivery_result(
        self,
        delivery_id: str,
        status: DeliveryStatus,
        response_data: dict[str, Any] | None = None,
    ) -> None:
        """Set a delivery's final status and response metadata."""
        now = utcnow()
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    UPDATE endpoint_deliveries
                    SET status = ?,
                        response_data = ?,
                        last_attempt_at = ?,
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        status,
                        json.dumps(response_data) if response_data is not None else None,
                        _to_db(now),
                        _to_db(now),
                        delivery_id,
                    ),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to record delivery result", delivery_id=delivery_id, error=str(e))
            raise DatabaseError(f"Failed to record result of delivery {delivery_id}: {e}") from e

    def _row_to_delivery(self, row: aiosqlite.Row) -> EndpointDelivery:
        """Convert a database row to an EndpointDelivery dataclass."""
        return EndpointDelivery(
            id=row["id"],
            email_id=row["email_id"],
            endpoint_id=row["endpoint_id"],
            delivery_type=row["delivery_type"],
            status=row["status"],
            attempts=row["attempts"],
            last_attempt_at=_from_db(row["last_attempt_at"]),
            response_data=_json_or_none(row["response_data"]),
            created_at=_from_db(row["created_at"]),
            updated_at=_from_db(row["updated_at"]),
        )

    # =========================================================================
    # API Key Operations
    # =========================================================================

    async def create_api_key(self, api_key: ApiKey) -> None:
        """Insert a hashed API key."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO api_keys (id, user_id, name, key_hash, is_active, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        api_key.id,
                        api_key.user_id,
                        api_key.name,
                        api_key.key_hash,
                        1 if api_key.is_active else 0,
                        _to_db(utcnow()),
                    ),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to create API key", key_id=api_key.id, error=str(e))
            raise DatabaseError(f"Failed to create API key: {e}") from e

    async def get_api_key_by_hash(self, key_hash: str) -> ApiKey | None:
        """Look up an active API key by its hash."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM api_keys WHERE key_hash = ? AND is_active = 1",
                    (key_hash,),
                )
                row = await cursor.fetchone()
                if not row:
                    return None
                return ApiKey(
                    id=row["id"],
                    user_id=row["user_id"],
                    key_hash=row["key_hash"],
                    name=row["name"],
                    is_active=bool(row["is_active"]),
                    created_at=_from_db(row["created_at"]),
                    last_used_at=_from_db(row["last_used_at"]),
                )

        except aiosqlite.Error as e:
            logger.error("Failed to look up API key", error=str(e))
            raise DatabaseError(f"Failed to look up API key: {e}") from e

    async def touch_api_key(self, key_id: str) -> None:
        """Stamp last_used_at on an API key."""
        try:
            async with self._db() as db:
                await db.execute(
                    "UPDATE api_keys SET last_used_at = ? WHERE id = ?",
                    (_to_db(utcnow()), key_id),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.warning("Failed to touch API key", key_id=key_id, error=str(e))
