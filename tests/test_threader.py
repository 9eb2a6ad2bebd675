"""Tests for conversation threading.

Covers header matching, the subject fallback heuristics, position and
count bookkeeping, idempotence, outbound replies and backfill.
"""

from datetime import UTC, datetime, timedelta

import pytest

from mailrelay.config_schema import ThreadingConfig
from mailrelay.core.errors import NotFoundError
from mailrelay.db.store import DatabaseStore, SentEmail
from mailrelay.engine.threader import (
    EmailThreader,
    clean_message_id,
    normalize_subject,
    parse_references,
)


@pytest.fixture
def threader(store: DatabaseStore) -> EmailThreader:
    return EmailThreader(store, ThreadingConfig())


class TestHelpers:
    def test_clean_message_id(self) -> None:
        assert clean_message_id(" <abc@x.com> ") == "abc@x.com"
        assert clean_message_id(None) == ""

    def test_parse_references_json(self) -> None:
        assert parse_references('["<a@x>", "b@x", "<a@x>"]') == ["a@x", "b@x"]

    def test_parse_references_header_form(self) -> None:
        assert parse_references("<a@x>  <b@x>\n <c@x>") == ["a@x", "b@x", "c@x"]

    def test_parse_references_bad_json(self) -> None:
        assert parse_references("[not json") == []
        assert parse_references(None) == []

    @pytest.mark.parametrize(
        "subject,expected",
        [
            ("Re: Hello", "hello"),
            ("RE: Fwd: AW: Hello", "hello"),
            ("  fw:   Budget 2025 ", "budget 2025"),
            ("Revenue report", "revenue report"),
            (None, ""),
        ],
    )
    def test_normalize_subject(self, subject, expected) -> None:
        assert normalize_subject(subject) == expected


class TestProcessEmail:
    async def test_first_email_starts_thread(
        self, store: DatabaseStore, threader: EmailThreader, make_email
    ) -> None:
        await store.save_inbound_email(make_email("em-1"))

        result = await threader.process_email("em-1", "user-1")

        assert result.is_new_thread is True
        assert result.thread_position == 0
        thread = await store.get_thread(result.thread_id, "user-1")
        assert thread.message_count == 1
        assert thread.root_message_id == "em-1@mail.example.com"
        assert thread.normalized_subject == "quarterly numbers"
        assert "alice@example.com" in thread.participant_emails

    async def test_reply_increments_count_by_one(
        self, store: DatabaseStore, threader: EmailThreader, make_email
    ) -> None:
        root = make_email("em-1")
        await store.save_inbound_email(root)
        first = await threader.process_email("em-1", "user-1")

        reply = make_email(
            "em-2", in_reply_to=f"<{root.message_id}>", subject="Re: Quarterly numbers"
        )
        await store.save_inbound_email(reply)
        second = await threader.process_email("em-2", "user-1")

        assert second.thread_id == first.thread_id
        assert second.is_new_thread is False
        assert second.thread_position == 1
        thread = await store.get_thread(first.thread_id, "user-1")
        assert thread.message_count == 2

    async def test_references_match_when_in_reply_to_unknown(
        self, store: DatabaseStore, threader: EmailThreader, make_email
    ) -> None:
        root = make_email("em-1")
        await store.save_inbound_email(root)
        first = await threader.process_email("em-1", "user-1")

        reply = make_email(
            "em-2",
            in_reply_to="missing@elsewhere",
            references=[root.message_id, "missing@elsewhere"],
        )
        await store.save_inbound_email(reply)
        second = await threader.process_email("em-2", "user-1")

        assert second.thread_id == first.thread_id

    async def test_processing_twice_is_idempotent(
        self, store: DatabaseStore, threader: EmailThreader, make_email
    ) -> None:
        root = make_email("em-1")
        await store.save_inbound_email(root)
        await threader.process_email("em-1", "user-1")
        await store.save_inbound_email(make_email("em-2", in_reply_to=root.message_id))

        once = await threader.process_email("em-2", "user-1")
        twice = await threader.process_email("em-2", "user-1")

        assert twice.thread_id == once.thread_id
        assert twice.thread_position == once.thread_position
        thread = await store.get_thread(once.thread_id, "user-1")
        assert thread.message_count == 2

    async def test_headers_never_cross_accounts(
        self, store: DatabaseStore, threader: EmailThreader, make_email
    ) -> None:
        root = make_email("em-1", user_id="user-1")
        await store.save_inbound_email(root)
        await threader.process_email("em-1", "user-1")

        await store.save_inbound_email(
            make_email("em-2", user_id="user-2", in_reply_to=root.message_id)
        )
        result = await threader.process_email("em-2", "user-2")

        assert result.is_new_thread is True

    async def test_missing_email_raises(self, threader: EmailThreader) -> None:
        with pytest.raises(NotFoundError):
            await threader.process_email("nope", "user-1")


class TestSubjectFallback:
    async def test_same_subject_shared_participant_joins(
        self, store: DatabaseStore, threader: EmailThreader, make_email
    ) -> None:
        await store.save_inbound_email(make_email("em-1"))
        first = await threader.process_email("em-1", "user-1")

        await store.save_inbound_email(make_email("em-2", subject="RE: Quarterly Numbers"))
        second = await threader.process_email("em-2", "user-1")

        assert second.thread_id == first.thread_id
        assert second.thread_position == 1

    async def test_no_shared_participant_starts_new_thread(
        self, store: DatabaseStore, threader: EmailThreader, make_email
    ) -> None:
        await store.save_inbound_email(make_email("em-1"))
        await threader.process_email("em-1", "user-1")

        stranger = make_email(
            "em-2",
            sender=("Zed", "zed@other.com"),
            to=(None, "sales@relay.test"),
            recipient="sales@relay.test",
        )
        await store.save_inbound_email(stranger)
        result = await threader.process_email("em-2", "user-1")

        assert result.is_new_thread is True

    async def test_overlap_not_required_when_disabled(
        self, store: DatabaseStore, make_email
    ) -> None:
        threader = EmailThreader(store, ThreadingConfig(require_participant_overlap=False))
        await store.save_inbound_email(make_email("em-1"))
        first = await threader.process_email("em-1", "user-1")

        stranger = make_email(
            "em-2",
            sender=("Zed", "zed@other.com"),
            to=(None, "sales@relay.test"),
            recipient="sales@relay.test",
        )
        await store.save_inbound_email(stranger)
        second = await threader.process_email("em-2", "user-1")

        assert second.thread_id == first.thread_id

    async def test_short_subject_never_matches(
        self, store: DatabaseStore, threader: EmailThreader, make_email
    ) -> None:
        await store.save_inbound_email(make_email("em-1", subject="Hi"))
        await threader.process_email("em-1", "user-1")
        await store.save_inbound_email(make_email("em-2", subject="Re: Hi"))

        result = await threader.process_email("em-2", "user-1")

        assert result.is_new_thread is True

    async def test_email_with_reply_headers_skips_subject_fallback(
        self, store: DatabaseStore, threader: EmailThreader, make_email
    ) -> None:
        await store.save_inbound_email(make_email("em-1"))
        await threader.process_email("em-1", "user-1")
        await store.save_inbound_email(make_email("em-2", in_reply_to="unknown@elsewhere"))

        result = await threader.process_email("em-2", "user-1")

        assert result.is_new_thread is True

    async def test_stale_thread_not_joined(
        self, store: DatabaseStore, threader: EmailThreader, make_email
    ) -> None:
        old = datetime.now(UTC) - timedelta(days=90)
        await store.save_inbound_email(make_email("em-1", date=old))
        await threader.process_email("em-1", "user-1")
        await store.save_inbound_email(make_email("em-2"))

        result = await threader.process_email("em-2", "user-1")

        assert result.is_new_thread is True


class TestSentEmails:
    async def test_reply_appended_after_original(
        self, store: DatabaseStore, threader: EmailThreader, make_email
    ) -> None:
        await store.save_inbound_email(make_email("em-1"))
        sent = SentEmail(
            id="sent-1",
            user_id="user-1",
            from_address="support@relay.test",
            message_id="reply-1@relay.test",
            in_reply_to="em-1@mail.example.com",
            to_json='["alice@example.com"]',
            subject="Re: Quarterly numbers",
        )
        await store.save_sent_email(sent)

        result = await threader.process_sent_email("sent-1", "em-1", "user-1")
        again = await threader.process_sent_email("sent-1", "em-1", "user-1")

        assert result.thread_position == 1
        assert again.thread_position == 1
        thread = await store.get_thread(result.thread_id, "user-1")
        assert thread.message_count == 2

        # An inbound answer to our reply joins through the sent Message-ID
        await store.save_inbound_email(make_email("em-2", in_reply_to="reply-1@relay.test"))
        answer = await threader.process_email("em-2", "user-1")
        assert answer.thread_id == result.thread_id
        assert answer.thread_position == 2

    async def test_latest_email_and_resolve(
        self, store: DatabaseStore, threader: EmailThreader, make_email
    ) -> None:
        await store.save_inbound_email(make_email("em-1"))
        await store.save_sent_email(
            SentEmail(id="sent-1", user_id="user-1", from_address="support@relay.test")
        )
        result = await threader.process_sent_email("sent-1", "em-1", "user-1")

        latest = await threader.get_latest_email_in_thread(result.thread_id, "user-1")
        assert (latest.email_id, latest.kind) == ("sent-1", "outbound")

        inbound_latest = await threader.get_latest_email_in_thread(
            result.thread_id, "user-1", inbound_only=True
        )
        assert inbound_latest.email_id == "em-1"

        resolved = await threader.resolve_email_id(result.thread_id, "user-1", inbound_only=True)
        assert resolved.is_thread_id is True
        assert resolved.email_id == "em-1"

        direct = await threader.resolve_email_id("em-1", "user-1")
        assert direct.is_thread_id is False
        assert direct.thread_id == result.thread_id

        assert await threader.resolve_email_id("em-1", "user-2") is None


class TestBackfill:
    async def test_backfill_threads_everything_once(
        self, store: DatabaseStore, threader: EmailThreader, make_email
    ) -> None:
        base = datetime.now(UTC) - timedelta(hours=3)
        root = make_email("em-1", date=base)
        await store.save_inbound_email(root)
        await store.save_inbound_email(
            make_email("em-2", in_reply_to=root.message_id, date=base + timedelta(hours=1))
        )
        await store.save_inbound_email(
            make_email(
                "em-3",
                subject="Unrelated topic",
                sender=("Zed", "zed@other.com"),
                to=(None, "sales@relay.test"),
                recipient="sales@relay.test",
                date=base + timedelta(hours=2),
            )
        )

        stats = await threader.backfill()

        assert stats.processed == 3
        assert stats.new_threads == 2
        assert stats.joined_threads == 1
        assert stats.failed == 0

        again = await threader.backfill()
        assert again.processed == 0
