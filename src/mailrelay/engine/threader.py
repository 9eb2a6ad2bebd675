"""Conversation threading for inbound and outbound email.

Every stored message is assigned to exactly one thread and a 0-based position
within it:

1. Header match: In-Reply-To, References and the message's own Message-ID
   are compared against other messages of the same account
2. Subject fallback: only for messages carrying no reply headers, a thread
   with the same normalized subject, recent activity and (by default) a
   shared participant
3. Otherwise the message starts a new thread at position 0

Threading an already-threaded message returns its existing assignment, so
re-dispatching an email never double counts it.

Usage:
    from mailrelay.engine.threader import EmailThreader

    threader = EmailThreader(store, config.threading)
    result = await threader.process_email("em_123", "user_1")
    print(result.thread_id, result.thread_position, result.is_new_thread)
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import timedelta
from typing import Literal

import regex

from mailrelay.config_schema import ThreadingConfig
from mailrelay.core.errors import DatabaseError, NotFoundError
from mailrelay.core.logging import get_logger
from mailrelay.db.store import DatabaseStore, EmailThread, InboundEmail, new_id, utcnow
from mailrelay.engine.participants import message_addresses

logger = get_logger(__name__)

REGEX_TIMEOUT = 1.0

# Reply/forward prefixes in common mail clients (English, German, Nordic, Italian)
# Note: timeout is passed at match time (sub, search), not compile time
SUBJECT_PREFIX_PATTERN = regex.compile(r"^(re|r|fwd|fw|aw|wg|vs|sv):\s*", regex.IGNORECASE)

WHITESPACE_PATTERN = regex.compile(r"\s+")


@dataclass
class ThreadingResult:
    """Thread assignment of one message."""

    thread_id: str
    thread_position: int
    is_new_thread: bool


@dataclass
class LatestMessage:
    """The highest-positioned message in a thread."""

    email_id: str
    kind: Literal["inbound", "outbound"]
    thread_position: int


@dataclass
class ResolvedEmail:
    """Result of resolving an ID that may name either a thread or an email."""

    email_id: str
    is_thread_id: bool
    thread_id: str | None = None


@dataclass
class BackfillStats:
    """Counters for a thread backfill run."""

    processed: int = 0
    new_threads: int = 0
    joined_threads: int = 0
    failed: int = 0


def clean_message_id(message_id: str | None) -> str:
    """Strip angle brackets and surrounding whitespace from a Message-ID."""
    if not message_id:
        return ""
    return message_id.replace("<", "").replace(">", "").strip()


def parse_references(references: str | None) -> list[str]:
    """Parse a stored References value into cleaned Message-IDs.

    Accepts a JSON list or the raw whitespace-separated header form.
    An unparseable JSON value is logged and yields no references.
    """
    if not references or not references.strip():
        return []

    raw = references.strip()
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("references_parse_failed", error=str(e))
            return []
        items = [str(item) for item in parsed] if isinstance(parsed, list) else []
    else:
        items = WHITESPACE_PATTERN.split(raw)

    cleaned = []
    for item in items:
        ref = clean_message_id(item)
        if ref and ref not in cleaned:
            cleaned.append(ref)
    return cleaned


def normalize_subject(subject: str | None) -> str:
    """Normalize a subject for thread matching.

    Repeatedly removes reply/forward prefixes, then lowercases.

    Examples:
        >>> normalize_subject("RE: Fwd: Quarterly numbers")
        'quarterly numbers'
    """
    if not subject:
        return ""

    normalized = subject.strip()
    try:
        while True:
            stripped = SUBJECT_PREFIX_PATTERN.sub("", normalized, timeout=REGEX_TIMEOUT).strip()
            if stripped == normalized:
                break
            normalized = stripped
        return normalized.lower()
    except (regex.error, TimeoutError):
        return subject.strip().lower()


class EmailThreader:
    """Assigns messages to conversation threads.

    Attributes:
        store: Database store
        config: Threading heuristics (subject window, overlap requirement)
    """

    def __init__(self, store: DatabaseStore, config: ThreadingConfig | None = None):
        self.store = store
        self.config = config or ThreadingConfig()

    async def process_email(self, email_id: str, user_id: str) -> ThreadingResult:
        """Thread an inbound email.

        Raises:
            NotFoundError: If the email does not exist for this account
            DatabaseError: If persisting the assignment fails
        """
        email = await self.store.get_inbound_email(email_id, user_id)
        if email is None:
            raise NotFoundError(
                f"Email {email_id} not found", resource="email", resource_id=email_id
            )

        if email.thread_id is not None:
            logger.debug(
                "email_already_threaded",
                email_id=email_id,
                thread_id=email.thread_id,
                thread_position=email.thread_position,
            )
            return ThreadingResult(
                thread_id=email.thread_id,
                thread_position=email.thread_position or 0,
                is_new_thread=False,
            )

        participants = message_addresses(email)

        thread_id = await self._find_thread_by_headers(email, user_id)
        match_method = "headers"
        if thread_id is None and not email.in_reply_to and not email.references:
            thread_id = await self._find_thread_by_subject(email, user_id, participants)
            match_method = "subject"

        if thread_id is None:
            thread = EmailThread(
                id=new_id(),
                user_id=user_id,
                root_message_id=clean_message_id(email.message_id) or email.id,
                normalized_subject=normalize_subject(email.subject),
                participant_emails=participants,
                message_count=1,
                last_message_at=email.date or utcnow(),
            )
            await self.store.create_thread_with_root(thread, email.id, "inbound")
            logger.info("thread_created", email_id=email_id, thread_id=thread.id)
            return ThreadingResult(thread_id=thread.id, thread_position=0, is_new_thread=True)

        position = await self.store.add_message_to_thread(
            thread_id, email.id, "inbound", participants, email.date
        )
        logger.info(
            "email_threaded",
            email_id=email_id,
            thread_id=thread_id,
            thread_position=position,
            match=match_method,
        )
        return ThreadingResult(thread_id=thread_id, thread_position=position, is_new_thread=False)

    async def process_sent_email(
        self, sent_email_id: str, original_email_id: str, user_id: str
    ) -> ThreadingResult:
        """Append an outbound reply to the thread of the email it answers.

        The original is threaded first if it has not been yet.

        Raises:
            NotFoundError: If either message does not exist for this account
        """
        sent = await self.store.get_sent_email(sent_email_id, user_id)
        if sent is None:
            raise NotFoundError(
                f"Sent email {sent_email_id} not found",
                resource="sent_email",
                resource_id=sent_email_id,
            )
        if sent.thread_id is not None:
            return ThreadingResult(
                thread_id=sent.thread_id,
                thread_position=sent.thread_position or 0,
                is_new_thread=False,
            )

        original = await self.process_email(original_email_id, user_id)
        position = await self.store.add_message_to_thread(
            original.thread_id,
            sent.id,
            "outbound",
            message_addresses(sent),
            sent.sent_at or utcnow(),
        )
        logger.info(
            "sent_email_threaded",
            sent_email_id=sent_email_id,
            thread_id=original.thread_id,
            thread_position=position,
        )
        return ThreadingResult(
            thread_id=original.thread_id, thread_position=position, is_new_thread=False
        )

    async def get_latest_email_in_thread(
        self, thread_id: str, user_id: str, inbound_only: bool = False
    ) -> LatestMessage | None:
        """The message with the highest position in a thread.

        Args:
            inbound_only: Ignore outbound messages (reply targets must be inbound)
        """
        inbound, outbound = await self.store.get_thread_messages(thread_id, user_id)
        if inbound_only:
            outbound = []

        latest: LatestMessage | None = None
        for email in inbound:
            position = email.thread_position or 0
            if latest is None or position >= latest.thread_position:
                latest = LatestMessage(email.id, "inbound", position)
        for sent in outbound:
            position = sent.thread_position or 0
            if latest is None or position > latest.thread_position:
                latest = LatestMessage(sent.id, "outbound", position)
        return latest

    async def resolve_email_id(
        self, id_: str, user_id: str, inbound_only: bool = False
    ) -> ResolvedEmail | None:
        """Resolve a thread ID to its latest email, or confirm an inbound email ID."""
        thread = await self.store.get_thread(id_, user_id)
        if thread is not None:
            latest = await self.get_latest_email_in_thread(id_, user_id, inbound_only)
            if latest is None:
                return None
            return ResolvedEmail(email_id=latest.email_id, is_thread_id=True, thread_id=id_)

        email = await self.store.get_inbound_email(id_, user_id)
        if email is not None:
            return ResolvedEmail(email_id=email.id, is_thread_id=False, thread_id=email.thread_id)
        return None

    async def backfill(self, user_id: str | None = None, limit: int = 500) -> BackfillStats:
        """Thread unthreaded inbound emails, oldest first.

        A failure on one email is logged and counted; the run continues.
        """
        stats = BackfillStats()
        emails = await self.store.list_unthreaded_emails(user_id=user_id, limit=limit)

        for email in emails:
            stats.processed += 1
            try:
                result = await self.process_email(email.id, email.user_id)
            except (DatabaseError, NotFoundError) as e:
                stats.failed += 1
                logger.error("backfill_email_failed", email_id=email.id, error=str(e))
                continue
            if result.is_new_thread:
                stats.new_threads += 1
            else:
                stats.joined_threads += 1

        logger.info(
            "backfill_complete",
            processed=stats.processed,
            new_threads=stats.new_threads,
            joined_threads=stats.joined_threads,
            failed=stats.failed,
        )
        return stats

    async def _find_thread_by_headers(self, email: InboundEmail, user_id: str) -> str | None:
        message_ids: list[str] = []
        for candidate in (email.message_id, email.in_reply_to):
            cleaned = clean_message_id(candidate)
            if cleaned and cleaned not in message_ids:
                message_ids.append(cleaned)
        for ref in parse_references(email.references):
            if ref not in message_ids:
                message_ids.append(ref)

        if not message_ids:
            return None
        return await self.store.find_thread_by_message_ids(
            user_id, message_ids, exclude_email_id=email.id
        )

    async def _find_thread_by_subject(
        self, email: InboundEmail, user_id: str, participants: list[str]
    ) -> str | None:
        normalized = normalize_subject(email.subject)
        if len(normalized) < self.config.min_subject_length:
            return None

        since = utcnow() - timedelta(days=self.config.subject_window_days)
        candidates = await self.store.find_threads_by_subject(user_id, normalized, since)
        if not candidates:
            return None
        if not self.config.require_participant_overlap:
            return candidates[0].id

        wanted = set(participants)
        for thread in candidates:
            if wanted & set(thread.participant_emails):
                return thread.id

        logger.debug(
            "subject_match_rejected",
            email_id=email.id,
            candidates=len(candidates),
            reason="no shared participants",
        )
        return None
