"""Tests for search criteria, subject variants and chunked fetching."""

from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from mailharvest.imap.fetcher import (
    FetchFilter,
    MailboxFetcher,
    RawEmail,
    build_search_criteria,
    chunked,
    filter_emails,
    normalize_quotes,
    subject_variants,
)
from mailharvest.imap.session import ImapSession


async def _connected(fakes, imap_config, profile, mailbox, **transport_kwargs) -> ImapSession:
    transport = fakes.Transport(mailbox=mailbox, **transport_kwargs)
    session = ImapSession(profile=profile, transport=transport, keep_alive=False)
    result = await session.connect(imap_config)
    assert result.success
    return session


def _inbox(fakes, count: int) -> dict:
    return {"INBOX": {uid: fakes.message(uid) for uid in range(1, count + 1)}}


# ============================================================================
# criteria
# ============================================================================


def test_empty_filter_searches_all():
    assert FetchFilter().is_empty is True
    assert build_search_criteria(FetchFilter()) == ["ALL"]


def test_criteria_include_every_field():
    fetch_filter = FetchFilter(
        date_from=date(2024, 1, 1),
        date_to=datetime(2024, 2, 1, 12, 0),
        sender="deals@shop.example",
        subject="Don’t miss out",
    )

    assert fetch_filter.is_empty is False
    assert build_search_criteria(fetch_filter) == [
        "SINCE",
        date(2024, 1, 1),
        "BEFORE",
        date(2024, 2, 1),
        "FROM",
        "deals@shop.example",
        "SUBJECT",
        "Don't miss out",
    ]


def test_normalize_quotes():
    assert normalize_quotes("‘a’ “b” c–d—e") == "'a' \"b\" c-d-e"


def test_subject_variants_cover_both_apostrophes():
    assert subject_variants("Don’t miss out") == ["Don’t miss out", "Don't miss out"]
    assert subject_variants("Don't miss out") == ["Don't miss out", "Don’t miss out"]


def test_plain_subject_has_single_variant():
    assert subject_variants("Weekly deals") == ["Weekly deals"]


def test_chunked():
    assert list(chunked([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]
    assert list(chunked([], 3)) == []


def test_batch_size_must_be_positive(fast_profile, fakes):
    session = ImapSession(profile=fast_profile, transport=fakes.Transport())
    with pytest.raises(ValueError):
        MailboxFetcher(session, batch_size=0)


# ============================================================================
# search and fetch
# ============================================================================


@pytest.mark.asyncio
async def test_search_unions_subject_variants(fakes, imap_config, fast_profile):
    session = await _connected(fakes, imap_config, fast_profile, _inbox(fakes, 5))
    client = session.client

    def handler(criteria):
        return [1, 3] if "Don’t miss out" in criteria else [3, 5]

    client.search_handler = handler
    fetcher = MailboxFetcher(session)

    uids = await fetcher.search(FetchFilter(subject="Don’t miss out"))

    assert uids == [1, 3, 5]
    assert len(client.searches) == 2
    assert client.searches[0][1] == "UTF-8"
    assert client.searches[1][1] is None
    assert client.selected == [("INBOX", True)]


@pytest.mark.asyncio
async def test_count(fakes, imap_config, fast_profile):
    session = await _connected(fakes, imap_config, fast_profile, _inbox(fakes, 4))

    assert await MailboxFetcher(session).count(FetchFilter()) == 4


@pytest.mark.asyncio
async def test_fetch_yields_messages_in_chunks(fakes, imap_config, fast_profile):
    session = await _connected(fakes, imap_config, fast_profile, _inbox(fakes, 5))
    fetcher = MailboxFetcher(session, batch_size=2)

    emails = [email async for email in fetcher.fetch(FetchFilter())]

    assert [email.uid for email in emails] == [1, 2, 3, 4, 5]
    assert session.client.fetches == [[1, 2], [3, 4], [5]]
    first = emails[0]
    assert first.sender == "deals@shop.example"
    assert first.subject == "Weekly deals"
    assert b"SAVE20" in first.body


@pytest.mark.asyncio
async def test_fetch_respects_limit(fakes, imap_config, fast_profile):
    session = await _connected(fakes, imap_config, fast_profile, _inbox(fakes, 10))
    fetcher = MailboxFetcher(session, batch_size=3)

    emails = [email async for email in fetcher.fetch(FetchFilter(), limit=4)]

    assert [email.uid for email in emails] == [1, 2, 3, 4]


@pytest.mark.asyncio
async def test_fetch_skips_vanished_uids(fakes, imap_config, fast_profile):
    mailbox = _inbox(fakes, 3)
    session = await _connected(fakes, imap_config, fast_profile, mailbox)
    session.client.search_handler = lambda criteria: [1, 2, 3, 4]

    emails = [email async for email in MailboxFetcher(session).fetch(FetchFilter())]

    assert [email.uid for email in emails] == [1, 2, 3]


@pytest.mark.asyncio
async def test_fetch_survives_connection_drop_between_chunks(fakes, imap_config, fast_profile):
    mailbox = _inbox(fakes, 6)
    session = await _connected(fakes, imap_config, fast_profile, mailbox)
    original = session.client
    # search and the first chunk go through, the second chunk finds the socket dead
    original.fail_noop_after = 2
    fetcher = MailboxFetcher(session, batch_size=3)

    emails = [email async for email in fetcher.fetch(FetchFilter())]

    assert [email.uid for email in emails] == [1, 2, 3, 4, 5, 6]
    assert session.client is not original
    assert original.logged_out is True
    assert session.metrics.reconnects == 1
    assert session.client.fetches == [[4, 5, 6]]


# ============================================================================
# client-side filtering
# ============================================================================


def _raw(uid, *, sender="deals@shop.example", subject="Weekly deals", day=10) -> RawEmail:
    return RawEmail(
        uid=uid,
        date=datetime(2024, 3, day, 8, 0, tzinfo=timezone.utc),
        sender=sender,
        subject=subject,
        body=b"",
    )


def test_filter_emails_by_every_field():
    emails = [
        _raw(1, day=1),
        _raw(2, day=10, subject="Don’t miss out"),
        _raw(3, day=10, sender="news@paper.example"),
        _raw(4, day=20),
    ]

    by_date = filter_emails(emails, FetchFilter(date_from=date(2024, 3, 5), date_to=date(2024, 3, 15)))
    by_sender = filter_emails(emails, FetchFilter(sender="PAPER"))
    by_subject = filter_emails(emails, FetchFilter(subject="don't"))

    assert [email.uid for email in by_date] == [2, 3]
    assert [email.uid for email in by_sender] == [3]
    assert [email.uid for email in by_subject] == [2]
    assert filter_emails(emails, FetchFilter()) == emails
