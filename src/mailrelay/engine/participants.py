"""Thread participant extraction.

Builds the deduplicated, display-friendly participant list of a thread from
the serialized address data of its inbound and outbound messages:

- One entry per address, compared case-insensitively
- "Name <email>" when any occurrence carried a display name, else the bare email
- First-seen order: inbound from/to/cc per message, then outbound from/to

Stored address blobs are not trusted. A blob that fails to parse is reported
as a ParseIssue on the result instead of aborting the whole list, so callers
can tell "nobody in this thread" from "some data could not be read".

Usage:
    from mailrelay.engine.participants import ParticipantExtractor

    extractor = ParticipantExtractor(store)
    result = await extractor.get_thread_participants("thr_123", "user_1")
    result.participants  # ["Alice <alice@example.com>", "bob@example.com"]
    result.is_partial    # True if any blob was malformed
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import regex
from pydantic import BaseModel, ConfigDict, ValidationError

from mailrelay.core.logging import get_logger
from mailrelay.db.store import DatabaseStore, InboundEmail, SentEmail

logger = get_logger(__name__)

REGEX_TIMEOUT = 1.0

# "Display Name <user@example.com>", display name optionally quoted
NAMED_ADDRESS_PATTERN = regex.compile(r'^\s*"?(?P<name>[^"<]*?)"?\s*<(?P<address>[^<>]+)>\s*$')


class AddressEntry(BaseModel):
    """One parsed mailbox inside an address blob."""

    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    address: str | None = None


class AddressBlob(BaseModel):
    """Serialized address field of an inbound email (from_data, to_data, cc_data)."""

    model_config = ConfigDict(extra="ignore")

    text: str | None = None
    addresses: list[Any] | None = None


@dataclass
class ParseIssue:
    """A stored address value that could not be read.

    Attributes:
        email_id: Row ID of the message carrying the bad value
        source: Field name ("from_data", "to_json", ...)
        error: What went wrong
    """

    email_id: str
    source: str
    error: str


@dataclass
class ParticipantResult:
    """Participants of a thread plus any parse problems met on the way."""

    participants: list[str] = field(default_factory=list)
    issues: list[ParseIssue] = field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        """True when some stored address data could not be parsed."""
        return bool(self.issues)


def format_participant(name: str | None, email: str) -> str:
    """Format as "Name <email>", or just the email when the name is blank."""
    if name and name.strip():
        return f"{name} <{email}>"
    return email


def split_named_address(value: str) -> tuple[str | None, str]:
    """Split "Name <email>" into (name, email). Bare addresses return (None, value).

    Examples:
        >>> split_named_address("Alice <alice@example.com>")
        ('Alice', 'alice@example.com')
        >>> split_named_address("bob@example.com")
        (None, 'bob@example.com')
    """
    try:
        match = NAMED_ADDRESS_PATTERN.match(value, timeout=REGEX_TIMEOUT)
    except (regex.error, TimeoutError):
        match = None
    if not match:
        return None, value.strip()
    name = match.group("name").strip()
    return (name or None), match.group("address").strip()


class ParticipantCollector:
    """Accumulates participants in first-seen order with the name-upgrade rule.

    An address first seen without a name is upgraded the first time it shows
    up with one. Once an entry has a name it is never replaced.
    """

    def __init__(self) -> None:
        self._entries: dict[str, str] = {}
        self._named: set[str] = set()
        self.issues: list[ParseIssue] = []

    def add(self, name: str | None, address: str | None) -> None:
        if not address or not address.strip():
            return
        address = address.strip()
        key = address.lower()
        has_name = bool(name and name.strip())

        if key not in self._entries:
            self._entries[key] = format_participant(name, address)
            if has_name:
                self._named.add(key)
        elif has_name and key not in self._named:
            self._entries[key] = format_participant(name, address)
            self._named.add(key)

    def add_blob(self, raw: str | None, email_id: str, source: str) -> None:
        """Add every mailbox from a serialized address blob."""
        if not raw:
            return
        try:
            blob = AddressBlob.model_validate_json(raw)
        except ValidationError as e:
            self._issue(email_id, source, _first_error(e))
            return

        for index, item in enumerate(blob.addresses or []):
            if isinstance(item, str):
                self.add(*split_named_address(item))
                continue
            try:
                entry = AddressEntry.model_validate(item)
            except ValidationError as e:
                self._issue(email_id, f"{source}.addresses[{index}]", _first_error(e))
                continue
            self.add(entry.name, entry.address)

    def add_inbound(self, email: InboundEmail) -> None:
        self.add_blob(email.from_data, email.id, "from_data")
        self.add_blob(email.to_data, email.id, "to_data")
        self.add_blob(email.cc_data, email.id, "cc_data")

    def add_outbound(self, sent: SentEmail) -> None:
        if sent.from_address:
            self.add(*split_named_address(sent.from_address))

        if not sent.to_json:
            return
        try:
            recipients = json.loads(sent.to_json)
        except json.JSONDecodeError as e:
            self._issue(sent.id, "to_json", f"invalid JSON: {e.msg}")
            return
        if not isinstance(recipients, list):
            self._issue(sent.id, "to_json", f"expected a list, got {type(recipients).__name__}")
            return

        for index, item in enumerate(recipients):
            if isinstance(item, str):
                self.add(*split_named_address(item))
                continue
            try:
                entry = AddressEntry.model_validate(item)
            except ValidationError as e:
                self._issue(sent.id, f"to_json[{index}]", _first_error(e))
                continue
            self.add(entry.name, entry.address)

    def addresses(self) -> list[str]:
        """Lowercase addresses seen so far, in first-seen order."""
        return list(self._entries)

    def participants(self) -> list[str]:
        """Display strings in first-seen order."""
        return list(self._entries.values())

    def result(self) -> ParticipantResult:
        return ParticipantResult(participants=self.participants(), issues=list(self.issues))

    def _issue(self, email_id: str, source: str, error: str) -> None:
        logger.warning("address_parse_failed", email_id=email_id, source=source, error=error)
        self.issues.append(ParseIssue(email_id=email_id, source=source, error=error))


def _first_error(error: ValidationError) -> str:
    err = error.errors()[0]
    location = ".".join(str(loc) for loc in err["loc"])
    return f"{location}: {err['msg']}" if location else err["msg"]


def extract_participants(
    inbound: Iterable[InboundEmail],
    outbound: Iterable[SentEmail] = (),
) -> ParticipantResult:
    """Compute the participant list for a set of messages.

    Inbound messages are processed before outbound ones, each group in the
    order given.
    """
    collector = ParticipantCollector()
    for email in inbound:
        collector.add_inbound(email)
    for sent in outbound:
        collector.add_outbound(sent)
    return collector.result()


def message_addresses(email: InboundEmail | SentEmail) -> list[str]:
    """Lowercase addresses of a single message, for thread participant sets.

    Parse problems are logged and otherwise ignored here; the thread's
    participant list reports them.
    """
    collector = ParticipantCollector()
    if isinstance(email, InboundEmail):
        collector.add_inbound(email)
    else:
        collector.add_outbound(email)
    return collector.addresses()


class ParticipantExtractor:
    """Loads a thread's messages and computes its participants."""

    def __init__(self, store: DatabaseStore):
        self.store = store

    async def get_thread_participants(self, thread_id: str, user_id: str) -> ParticipantResult:
        """Participants of one of the account's threads.

        An unknown thread (or one owned by another account) has no messages
        and yields an empty, non-partial result.
        """
        inbound, outbound = await self.store.get_thread_messages(thread_id, user_id)
        result = extract_participants(inbound, outbound)

        logger.debug(
            "thread_participants_extracted",
            thread_id=thread_id,
            participants=len(result.participants),
            issues=len(result.issues),
        )
        return result
