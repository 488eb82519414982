"""Regex extraction over fetched messages.

Patterns use the ``name``/``pattern``/``flags`` shape that users write in
config files and on the command line. Flags are letters from ``gimsx``:
``g`` returns every match instead of only the first, the others map onto
:mod:`re` flags. Named groups may be written either as ``(?P<name>...)`` or
as ``(?<name>...)``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from email import message_from_bytes
from email.message import EmailMessage
from email.policy import default as email_policy
from typing import Any, Dict, List, Optional, Pattern, Tuple

import html2text
from pydantic import BaseModel, Field, field_validator

from mailharvest.errors import ExtractionError, InvalidPatternError
from mailharvest.imap.fetcher import FetchFilter, MailboxFetcher, RawEmail, chunked
from mailharvest.imap.session import ImapSession

from .batch import BatchProcessor, ProcessingStage, ProcessingSummary, ProgressCallback


logger = logging.getLogger(__name__)

MAX_MATCHES = 1000
MAX_CONTENT_LENGTH = 500_000

_FLAG_MAP = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
    "x": re.VERBOSE,
}
_NAMED_GROUP = re.compile(r"\(\?<(?![=!])")


class ExtractionPattern(BaseModel):
    """A named regular expression."""

    name: str = Field(..., min_length=1)
    pattern: str = Field(..., min_length=1)
    flags: str = ""

    @field_validator("flags")
    @classmethod
    def validate_flags(cls, value: str) -> str:
        unknown = set(value) - set("gimsx")
        if unknown:
            raise ValueError(f"Unsupported regex flags: {''.join(sorted(unknown))}")
        return value

    @property
    def find_all(self) -> bool:
        return "g" in self.flags

    def compile(self) -> Pattern[str]:
        """Compile the pattern, raising :class:`InvalidPatternError` if it is malformed."""
        re_flags = 0
        for letter in self.flags:
            re_flags |= _FLAG_MAP.get(letter, 0)
        source = _NAMED_GROUP.sub("(?P<", self.pattern)
        try:
            return re.compile(source, re_flags)
        except re.error as exc:
            raise InvalidPatternError(
                f'Invalid regex pattern "{self.pattern}": {exc}',
                details={"pattern_name": self.name},
            ) from exc


@dataclass
class ExtractionMatch:
    full_match: str
    groups: Dict[str, str]
    index: int


@dataclass
class ParsedEmail:
    uid: int
    date: datetime
    sender: str
    subject: str
    text_content: str
    html_content: Optional[str] = None
    to: Optional[str] = None


@dataclass
class ExtractionResult:
    email: ParsedEmail
    matches: List[ExtractionMatch]
    pattern_name: str

    def to_records(self) -> List[Dict[str, Any]]:
        """Flatten into one row per match, named groups as extra columns."""
        rows = []
        for position, match in enumerate(self.matches):
            row: Dict[str, Any] = {
                "uid": self.email.uid,
                "date": self.email.date.isoformat(),
                "from": self.email.sender,
                "subject": self.email.subject,
                "match_index": position,
                "full_match": match.full_match,
            }
            row.update(match.groups)
            rows.append(row)
        return rows


@dataclass
class ExtractionRun:
    results: List[ExtractionResult] = field(default_factory=list)
    summary: Optional[ProcessingSummary] = None

    @property
    def match_count(self) -> int:
        return sum(len(result.matches) for result in self.results)


def _html_converter() -> html2text.HTML2Text:
    converter = html2text.HTML2Text()
    converter.ignore_links = True
    converter.ignore_images = True
    converter.ignore_emphasis = True
    converter.body_width = 0  # No line wrapping
    return converter


def html_to_text(html: str) -> str:
    if not html:
        return ""
    return " ".join(_html_converter().handle(html).split())


def _split_body(msg: EmailMessage) -> Tuple[Optional[str], Optional[str]]:
    body_plain = None
    body_html = None
    for part in msg.walk():
        if part.is_multipart() or part.get_content_disposition() == "attachment":
            continue
        content_type = part.get_content_type()
        if content_type == "text/plain" and body_plain is None:
            body_plain = part.get_content()
        elif content_type == "text/html" and body_html is None:
            body_html = part.get_content()
    return body_plain, body_html


def parse_email(raw: RawEmail) -> ParsedEmail:
    """Parse the RFC 822 source of ``raw`` into text and HTML parts.

    Raises:
        ExtractionError: the message source cannot be decoded
    """
    try:
        msg = message_from_bytes(raw.body, policy=email_policy)
        text, html = _split_body(msg)
        to = msg.get("To")
    except Exception as exc:  # noqa: BLE001 - any parser failure is a parse error
        raise ExtractionError(
            f"Failed to parse message {raw.uid}: {exc}", details={"uid": raw.uid}
        ) from exc
    return ParsedEmail(
        uid=raw.uid,
        date=raw.date,
        sender=raw.sender,
        subject=raw.subject,
        text_content=text or "",
        html_content=html,
        to=str(to) if to else None,
    )


def _content_of(email: ParsedEmail, strip_html: bool) -> str:
    if email.html_content and (strip_html or not email.text_content):
        return html_to_text(email.html_content) if strip_html else email.html_content
    return email.text_content


def extract_matches(text: str, pattern: ExtractionPattern) -> List[ExtractionMatch]:
    """Apply ``pattern`` to ``text``.

    Content is truncated to ``MAX_CONTENT_LENGTH`` characters and at most
    ``MAX_MATCHES`` matches are returned.
    """
    regex = pattern.compile()
    content = text[:MAX_CONTENT_LENGTH]
    if not pattern.find_all:
        found = regex.search(content)
        return [_to_match(found)] if found else []
    matches = []
    for found in regex.finditer(content):
        matches.append(_to_match(found))
        if len(matches) >= MAX_MATCHES:
            break
    return matches


def _to_match(found: "re.Match[str]") -> ExtractionMatch:
    groups = {name: value for name, value in found.groupdict().items() if value is not None}
    return ExtractionMatch(full_match=found.group(0), groups=groups, index=found.start())


def extract_from_email(
    raw: RawEmail, pattern: ExtractionPattern, *, strip_html: bool = False
) -> ExtractionResult:
    email = parse_email(raw)
    content = _content_of(email, strip_html)
    matches = extract_matches(content, pattern) if content else []
    return ExtractionResult(email=email, matches=matches, pattern_name=pattern.name)


async def run_extraction(
    session: ImapSession,
    fetch_filter: FetchFilter,
    pattern: ExtractionPattern,
    *,
    strip_html: bool = False,
    batch_size: int = 50,
    limit: Optional[int] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> ExtractionRun:
    """Fetch matching messages and extract ``pattern`` from each.

    A chunk that cannot be fetched is recorded as a fetch failure for every
    message in it; a message that cannot be parsed or matched is recorded as
    an extract failure. Neither stops the run.

    Raises:
        InvalidPatternError: ``pattern`` does not compile
    """
    pattern.compile()
    fetcher = MailboxFetcher(session, batch_size=batch_size)
    uids = await fetcher.search(fetch_filter)
    if limit is not None:
        uids = uids[: max(0, limit)]

    processor = BatchProcessor(len(uids), on_progress)
    run = ExtractionRun()
    logger.info(
        "Extracting '%s' from %d messages in %s", pattern.name, len(uids), fetch_filter.folder
    )

    for chunk in chunked(uids, fetcher.batch_size):
        try:
            emails = await fetcher.fetch_chunk(fetch_filter.folder, chunk)
        except Exception as exc:  # noqa: BLE001 - recorded per message
            logger.warning("Failed to fetch %d messages: %s", len(chunk), exc)
            for uid in chunk:
                processor.record_failure(uid, ProcessingStage.FETCH, exc)
            continue

        fetched = {email.uid for email in emails}
        for uid in chunk:
            if uid not in fetched:
                processor.record_failure(
                    uid, ProcessingStage.FETCH, LookupError(f"Message {uid} is no longer available")
                )

        for email in emails:
            result = await processor.process_item(
                email.uid,
                ProcessingStage.EXTRACT,
                lambda email=email: extract_from_email(email, pattern, strip_html=strip_html),
            )
            if result is not None:
                run.results.append(result)

    run.summary = processor.get_summary()
    logger.info(
        "Extraction finished: %d processed, %d failed, %d matches",
        run.summary.total_processed,
        run.summary.failed,
        run.match_count,
    )
    return run


__all__ = [
    "ExtractionMatch",
    "ExtractionPattern",
    "ExtractionResult",
    "ExtractionRun",
    "MAX_CONTENT_LENGTH",
    "MAX_MATCHES",
    "ParsedEmail",
    "extract_from_email",
    "extract_matches",
    "html_to_text",
    "parse_email",
    "run_extraction",
]
