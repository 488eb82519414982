"""Filtered, chunked message fetching on top of :class:`ImapSession`.

Every IMAP round-trip goes through :meth:`ImapSession.execute`, which runs
``ensure_connected`` first. A fetch is split into chunks of ``batch_size``
UIDs that each select the folder again, so a connection that drops in the
middle of a long fetch is re-established before the next chunk instead of
failing the whole run.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from email.header import decode_header, make_header
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence

from .session import ImapSession
from .transport import ImapHandle


logger = logging.getLogger(__name__)

DEFAULT_FOLDER = "INBOX"
FETCH_ITEMS = ["ENVELOPE", "BODY.PEEK[]"]

_SINGLE_QUOTES = re.compile("[‘’`´]")
_DOUBLE_QUOTES = re.compile("[“”]")
_DASHES = re.compile("[–—]")


@dataclass
class FetchFilter:
    """Which messages to fetch. Empty fields do not filter."""

    folder: str = DEFAULT_FOLDER
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    sender: Optional[str] = None
    subject: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.date_from or self.date_to or self.sender or self.subject)


@dataclass
class RawEmail:
    uid: int
    date: datetime
    sender: str
    subject: str
    body: bytes  # RFC 822 source as fetched


def normalize_quotes(text: str) -> str:
    """Replace typographic quotes and dashes with their ASCII forms."""
    text = _SINGLE_QUOTES.sub("'", text)
    text = _DOUBLE_QUOTES.sub('"', text)
    return _DASHES.sub("-", text)


def subject_variants(subject: str) -> List[str]:
    """Spellings of ``subject`` to search for.

    Servers differ in whether they store typographic or plain apostrophes, so
    both forms are tried. Order is stable and duplicates are removed.
    """
    normalized = normalize_quotes(subject)
    candidates = (
        subject,
        normalized,
        subject.replace("'", "’"),
        normalized.replace("'", "’"),
    )
    return list(dict.fromkeys(candidates))


def _as_date(value: date) -> date:
    return value.date() if isinstance(value, datetime) else value


def build_search_criteria(
    fetch_filter: FetchFilter, subject_override: Optional[str] = None
) -> List[Any]:
    """Translate a filter into an ``IMAPClient.search`` criteria list."""
    criteria: List[Any] = []
    if fetch_filter.date_from:
        criteria += ["SINCE", _as_date(fetch_filter.date_from)]
    if fetch_filter.date_to:
        criteria += ["BEFORE", _as_date(fetch_filter.date_to)]
    if fetch_filter.sender:
        criteria += ["FROM", fetch_filter.sender]
    if subject_override is not None:
        criteria += ["SUBJECT", subject_override]
    elif fetch_filter.subject:
        criteria += ["SUBJECT", normalize_quotes(fetch_filter.subject)]
    return criteria or ["ALL"]


def _charset_for(criteria: Sequence[Any]) -> Optional[str]:
    for item in criteria:
        if isinstance(item, str) and not item.isascii():
            return "UTF-8"
    return None


def _release_folder(client: ImapHandle) -> None:
    try:
        client.unselect_folder()
    except Exception as exc:  # noqa: BLE001
        logger.debug("Ignoring error while unselecting folder", exc_info=exc)


def _decode(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    try:
        return str(make_header(decode_header(value)))
    except Exception:  # noqa: BLE001 - malformed encoded-words are kept verbatim
        return value


def _sender_of(envelope: Any) -> str:
    addresses = getattr(envelope, "from_", None) or ()
    if not addresses:
        return ""
    first = addresses[0]
    mailbox = _decode(getattr(first, "mailbox", None))
    host = _decode(getattr(first, "host", None))
    if mailbox and host:
        return f"{mailbox}@{host}"
    return _decode(getattr(first, "name", None)) or mailbox


def _to_raw_email(uid: int, data: Dict[bytes, Any]) -> Optional[RawEmail]:
    envelope = data.get(b"ENVELOPE")
    if envelope is None:
        logger.warning("Message %s has no envelope; skipping", uid)
        return None
    source = data.get(b"BODY[]") or b""
    if isinstance(source, str):
        source = source.encode("utf-8")
    return RawEmail(
        uid=uid,
        date=getattr(envelope, "date", None) or datetime.now(timezone.utc),
        sender=_sender_of(envelope),
        subject=_decode(getattr(envelope, "subject", None)),
        body=source,
    )


class MailboxFetcher:
    """Searches, counts and fetches messages through a session."""

    def __init__(self, session: ImapSession, *, batch_size: int = 50) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.session = session
        self.batch_size = batch_size

    async def search(self, fetch_filter: FetchFilter) -> List[int]:
        """Return matching UIDs in ascending order.

        With a subject filter every spelling from :func:`subject_variants` is
        searched and the results are merged.
        """
        if fetch_filter.subject:
            queries = [
                build_search_criteria(fetch_filter, variant)
                for variant in subject_variants(fetch_filter.subject)
            ]
        else:
            queries = [build_search_criteria(fetch_filter)]

        def run(client: ImapHandle) -> List[int]:
            client.select_folder(fetch_filter.folder, readonly=True)
            try:
                found: set = set()
                for criteria in queries:
                    found.update(client.search(criteria, charset=_charset_for(criteria)) or [])
                return sorted(found)
            finally:
                _release_folder(client)

        uids = await self.session.execute(run)
        logger.debug("Search in %s matched %d messages", fetch_filter.folder, len(uids))
        return uids

    async def count(self, fetch_filter: FetchFilter) -> int:
        return len(await self.search(fetch_filter))

    async def fetch(
        self, fetch_filter: FetchFilter, limit: Optional[int] = None
    ) -> AsyncIterator[RawEmail]:
        """Yield matching messages oldest UID first, at most ``limit`` of them."""
        uids = await self.search(fetch_filter)
        if limit is not None:
            uids = uids[: max(0, limit)]
        for chunk in chunked(uids, self.batch_size):
            for email in await self.fetch_chunk(fetch_filter.folder, chunk):
                yield email

    async def fetch_chunk(self, folder: str, uids: List[int]) -> List[RawEmail]:
        def run(client: ImapHandle) -> Dict[int, Dict[bytes, Any]]:
            client.select_folder(folder, readonly=True)
            try:
                return client.fetch(uids, FETCH_ITEMS)
            finally:
                _release_folder(client)

        response = await self.session.execute(run)
        emails: List[RawEmail] = []
        for uid in uids:
            data = response.get(uid)
            if data is None:
                logger.debug("UID %s vanished before it could be fetched", uid)
                continue
            email = _to_raw_email(uid, data)
            if email is not None:
                emails.append(email)
        return emails


def chunked(items: List[int], size: int) -> Iterable[List[int]]:
    """Split ``items`` into consecutive lists of at most ``size`` elements."""
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _comparable(value: datetime) -> datetime:
    return value.replace(tzinfo=None) if value.tzinfo else value


def filter_emails(emails: Iterable[RawEmail], fetch_filter: FetchFilter) -> List[RawEmail]:
    """Apply ``fetch_filter`` to already fetched messages.

    Dates are compared by calendar day; sender and subject match
    case-insensitively as substrings, subjects after quote normalization.
    """
    sender = fetch_filter.sender.lower() if fetch_filter.sender else None
    subject = normalize_quotes(fetch_filter.subject).lower() if fetch_filter.subject else None
    matched: List[RawEmail] = []
    for email in emails:
        day = _comparable(email.date).date()
        if fetch_filter.date_from and day < _as_date(fetch_filter.date_from):
            continue
        if fetch_filter.date_to and day > _as_date(fetch_filter.date_to):
            continue
        if sender and sender not in email.sender.lower():
            continue
        if subject and subject not in normalize_quotes(email.subject).lower():
            continue
        matched.append(email)
    return matched


__all__ = [
    "DEFAULT_FOLDER",
    "FETCH_ITEMS",
    "FetchFilter",
    "MailboxFetcher",
    "RawEmail",
    "build_search_criteria",
    "chunked",
    "filter_emails",
    "normalize_quotes",
    "subject_variants",
]
